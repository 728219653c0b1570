"""Failure and outcome types raised by the container engine."""


class EncToolsError(Exception):
    """Base class for everything the engine raises on purpose."""


class FormatError(EncToolsError, ValueError):
    """Bad magic, unknown version, truncated header or implausible length field."""


class UnsupportedAlgorithm(EncToolsError, ValueError):
    pass


class AuthenticationFailure(EncToolsError, ValueError):
    """AEAD tag did not verify: likely a wrong password or a corrupted file."""


class PaddingFailure(EncToolsError, ValueError):
    """CBC decryption produced invalid padding: likely a wrong password or a corrupted file."""


class Cancelled(EncToolsError):
    """The caller's cancellation signal was observed; cleanup has already run."""


InvalidFormat = FormatError
CancellationRequested = Cancelled
IOFailure = OSError

# Failures the front end reports as "wrong password or corrupted file".
CREDENTIAL_FAILURES = (AuthenticationFailure, PaddingFailure)
