"""Password-based key derivation with a single-slot memo per execution context."""

import hashlib
import hmac as stdlib_hmac
import threading
import typing

from .config import debug

PasswordLike = typing.Union[str, bytes, bytearray, memoryview]


def _coerce_password_bytes(password: PasswordLike) -> bytes:
    if isinstance(password, str):
        return password.encode("utf-8")
    if isinstance(password, (bytes, bytearray, memoryview)):
        return bytes(password)
    raise TypeError(f"Unsupported password type: {type(password)!r}")


def pbkdf2_sha256(password: PasswordLike, salt: bytes, iterations: int, length: int) -> bytes:
    if length <= 0:
        raise ValueError(f"Key length must be positive, got {length}")
    if iterations <= 0:
        raise ValueError(f"KDF iteration count must be positive, got {iterations}")
    return hashlib.pbkdf2_hmac(
        'sha256',
        _coerce_password_bytes(password),
        bytes(salt),
        iterations,
        dklen=length
    )


class KeyDerivationCache:
    """
    Memoizes the most recent PBKDF2-HMAC-SHA256 derivation.

    Only one entry is kept. A call whose (password, salt, iterations, length)
    tuple matches the stored one returns the stored key; anything else derives
    afresh and replaces the slot. Instances are not meant to be shared between
    threads: use ``for_current_thread()`` or pass one explicitly per worker.
    """

    _local = threading.local()

    def __init__(self) -> None:
        self._slot: "typing.Optional[tuple[bytes, bytes, int, int, bytes]]" = None
        self.hits = 0
        self.misses = 0

    @classmethod
    def for_current_thread(cls) -> "KeyDerivationCache":
        cache = getattr(cls._local, "cache", None)
        if cache is None:
            cache = cls()
            cls._local.cache = cache
        return cache

    def derive(self, password: PasswordLike, salt: bytes, iterations: int, length: int) -> bytes:
        pw = _coerce_password_bytes(password)
        salt = bytes(salt)
        slot = self._slot
        if slot is not None:
            c_pw, c_salt, c_iters, c_len, c_key = slot
            if (
                c_iters == iterations
                and c_len == length
                and stdlib_hmac.compare_digest(c_salt, salt)
                and stdlib_hmac.compare_digest(c_pw, pw)
            ):
                self.hits += 1
                debug("kdf", f"cache hit iterations={iterations} length={length}")
                return c_key
        key = pbkdf2_sha256(pw, salt, iterations, length)
        self.misses += 1
        debug("kdf", f"derived iterations={iterations} length={length}")
        self._slot = (pw, salt, iterations, length, key)
        return key

    def clear(self) -> None:
        self._slot = None

    @property
    def cached(self) -> bool:
        return self._slot is not None
