"""
Self-describing container format.

Layout (little-endian integers)::

    "ENC" + version byte ('1' | '2' | '3')
    algorithm id        1 byte
    kdf iterations      int32
    salt length n       int32, then n salt bytes
    key size bits       int32            (version >= 2; 0 for non-AES)
    filename length m   int32, then m UTF-8 bytes   (version 3)
    payload             algorithm specific, see ``enctools.pipelines``

New containers are always written as version 3.
"""

import contextlib
import dataclasses
import os
import pathlib
import struct
import typing
import warnings

from .config import debug, settings
from .errors import Cancelled, FormatError, UnsupportedAlgorithm
from .kdf import KeyDerivationCache, PasswordLike
from .pipelines import Algorithm, CancelToken, NonceMode, ProgressSink, pipeline_for, read_exact
from .pool import ResourcePool

MAGIC = b"ENC"
VERSIONS = (1, 2, 3)
CURRENT_VERSION = 3
DEFAULT_AES_KEY_BITS = 256
MAX_SALT_LEN = 1024
INT32_MAX = 0x7FFFFFFF

_FIXED = struct.Struct("<Bii")  # algorithm, iterations, salt length
_INT32 = struct.Struct("<i")

PathLike = typing.Union[str, os.PathLike]


@dataclasses.dataclass(frozen=True)
class ContainerHeader:
    algorithm: Algorithm
    iterations: int
    salt: bytes
    key_size_bits: int = DEFAULT_AES_KEY_BITS
    original_filename: "typing.Optional[str]" = None
    version: int = CURRENT_VERSION

    def pack(self) -> bytes:
        if self.version not in VERSIONS:
            raise FormatError(f"Cannot write container version {self.version}")
        if not 0 < self.iterations <= INT32_MAX:
            raise ValueError(f"KDF iteration count {self.iterations} does not fit the header")
        if len(self.salt) > MAX_SALT_LEN:
            raise ValueError(f"Salt is {len(self.salt)} bytes; limit is {MAX_SALT_LEN}")
        if not 0 <= self.key_size_bits <= INT32_MAX:
            raise ValueError(f"Key size {self.key_size_bits} does not fit the header")
        out = bytearray(MAGIC)
        out += str(self.version).encode("ascii")
        out += _FIXED.pack(int(self.algorithm), self.iterations, len(self.salt))
        out += self.salt
        if self.version >= 2:
            out += _INT32.pack(self.key_size_bits if self.algorithm.is_aes else 0)
        if self.version == 3:
            name = (self.original_filename or "").encode("utf-8")
            out += _INT32.pack(len(name))
            out += name
        return bytes(out)


@dataclasses.dataclass
class DecryptResult:
    original_filename: "typing.Optional[str]"
    header: ContainerHeader
    bytes_processed: int = 0


def _read_int32(source, field: str) -> int:
    raw = read_exact(source, _INT32.size)
    if len(raw) != _INT32.size:
        raise FormatError(f"Container header truncated at {field}")
    return _INT32.unpack(raw)[0]


def read_header(source) -> ContainerHeader:
    """Parse and validate a container header, leaving ``source`` at the payload."""
    magic = read_exact(source, 4)
    if len(magic) != 4 or magic[:3] != MAGIC:
        raise FormatError("Not a supported encrypted container (bad magic)")
    try:
        version = int(chr(magic[3]))
    except ValueError:
        version = -1
    if version not in VERSIONS:
        raise FormatError(f"Unsupported container version byte {magic[3]!r}")
    fixed = read_exact(source, _FIXED.size)
    if len(fixed) != _FIXED.size:
        raise FormatError("Container header truncated")
    alg_id, iterations, salt_len = _FIXED.unpack(fixed)
    algorithm = Algorithm.parse(alg_id)
    if iterations <= 0:
        raise FormatError(f"Implausible KDF iteration count {iterations}")
    if salt_len < 0 or salt_len > MAX_SALT_LEN:
        raise FormatError(f"Implausible salt length {salt_len}")
    salt = read_exact(source, salt_len)
    if len(salt) != salt_len:
        raise FormatError("Container header truncated inside salt")
    key_size_bits = DEFAULT_AES_KEY_BITS
    if version >= 2:
        key_size_bits = _read_int32(source, "key size")
        if key_size_bits == 0 and algorithm.is_aes:
            # Recording error in older writers; fall back rather than fail.
            key_size_bits = DEFAULT_AES_KEY_BITS
        if algorithm.is_aes and key_size_bits not in settings.AES_KEY_BITS_ALLOWED:
            raise FormatError(f"Implausible AES key size {key_size_bits} bits")
    original_filename = None
    if version == 3:
        name_len = _read_int32(source, "filename length")
        if name_len < 0 or name_len >= settings.MAX_NAME_BYTES:
            raise FormatError(f"Implausible original filename length {name_len}")
        if name_len:
            raw_name = read_exact(source, name_len)
            if len(raw_name) != name_len:
                raise FormatError("Container header truncated inside filename")
            original_filename = raw_name.decode("utf-8", "replace")
    return ContainerHeader(
        algorithm=algorithm,
        iterations=iterations,
        salt=salt,
        key_size_bits=key_size_bits,
        original_filename=original_filename,
        version=version
    )


def read_header_file(path: PathLike) -> ContainerHeader:
    with open(path, "rb") as handle:
        return read_header(handle)


def is_container(path: PathLike) -> bool:
    try:
        with open(path, "rb") as handle:
            return read_exact(handle, 3) == MAGIC
    except OSError:
        return False


def _check_cancelled(cancel_event: "typing.Optional[CancelToken]") -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise Cancelled("Operation cancelled before it started")


class ContainerCodec:
    """
    Writes headers and hands the payload to the matching cipher pipeline.

    One codec can serve many files; a pipeline is created per operation.
    ``key_cache`` should not be shared between threads.
    """

    def __init__(
        self,
        *,
        key_cache: "typing.Optional[KeyDerivationCache]" = None,
        resources: "typing.Optional[ResourcePool]" = None,
        chunk_size: int | None = None,
        nonce_mode: "typing.Union[NonceMode, str]" = NonceMode.FIXED
    ) -> None:
        self.key_cache = key_cache
        self.resources = resources
        self.chunk_size = chunk_size
        self.nonce_mode = NonceMode(nonce_mode)

    def _pipeline(self, algorithm: Algorithm, progress, cancel_event):
        return pipeline_for(
            algorithm,
            nonce_mode=self.nonce_mode,
            key_cache=self.key_cache or KeyDerivationCache.for_current_thread(),
            resources=self.resources or ResourcePool.default(),
            chunk_size=self.chunk_size,
            progress=progress,
            cancel_event=cancel_event
        )

    @staticmethod
    def build_header(
        algorithm: "typing.Union[Algorithm, int, str]",
        iterations: int | None = None,
        aes_key_size_bits: int | None = None,
        original_filename: "typing.Optional[str]" = None,
        salt: "typing.Optional[bytes]" = None
    ) -> ContainerHeader:
        alg = Algorithm.parse(algorithm)
        iterations = settings.KDF_ITERATIONS if iterations is None else int(iterations)
        if iterations <= 0 or iterations > INT32_MAX:
            raise ValueError(f"KDF iteration count must be between 1 and {INT32_MAX}, got {iterations}")
        key_bits = settings.AES_KEY_BITS if aes_key_size_bits is None else int(aes_key_size_bits)
        if alg.is_aes and key_bits not in settings.AES_KEY_BITS_ALLOWED:
            raise ValueError(
                f"AES key size must be one of {settings.AES_KEY_BITS_ALLOWED} bits, got {key_bits}"
            )
        if original_filename is not None:
            name_len = len(original_filename.encode("utf-8"))
            if name_len >= min(settings.MAX_NAME_BYTES, INT32_MAX):
                raise ValueError(f"Original filename is {name_len} bytes; limit is {settings.MAX_NAME_BYTES - 1}")
        if salt is None:
            salt = os.urandom(settings.SALT_LEN)
        if len(salt) > MAX_SALT_LEN:
            raise ValueError(f"Salt is {len(salt)} bytes; limit is {MAX_SALT_LEN}")
        return ContainerHeader(
            algorithm=alg,
            iterations=iterations,
            salt=salt,
            key_size_bits=key_bits if alg.is_aes else 0,
            original_filename=original_filename
        )

    def _encrypt_payload(self, header, source, dest, password, progress, cancel_event) -> int:
        pipeline = self._pipeline(header.algorithm, progress, cancel_event)
        dest.write(header.pack())
        debug("container", f"encrypt v{header.version} {header.algorithm.label} iterations={header.iterations}")
        return pipeline.encrypt(source, dest, password, header.salt, header.iterations, header.key_size_bits)

    def encrypt_stream(
        self,
        source,
        dest,
        algorithm: "typing.Union[Algorithm, int, str]",
        password: PasswordLike,
        iterations: int | None = None,
        aes_key_size_bits: int | None = None,
        *,
        original_filename: "typing.Optional[str]" = None,
        progress: "typing.Optional[ProgressSink]" = None,
        cancel_event: "typing.Optional[CancelToken]" = None
    ) -> int:
        """Write a header plus payload for ``source``; returns the plaintext byte count."""
        header = self.build_header(algorithm, iterations, aes_key_size_bits, original_filename)
        _check_cancelled(cancel_event)
        return self._encrypt_payload(header, source, dest, password, progress, cancel_event)

    def encrypt(
        self,
        input_path: PathLike,
        output_stream,
        algorithm: "typing.Union[Algorithm, int, str]",
        password: PasswordLike,
        iterations: int | None = None,
        aes_key_size_bits: int | None = None,
        progress: "typing.Optional[ProgressSink]" = None,
        cancel_event: "typing.Optional[CancelToken]" = None
    ) -> int:
        """Encrypt the file at ``input_path`` into ``output_stream``, recording its base name."""
        header = self.build_header(algorithm, iterations, aes_key_size_bits, pathlib.Path(input_path).name)
        _check_cancelled(cancel_event)
        with open(input_path, "rb") as source:
            return self._encrypt_payload(header, source, output_stream, password, progress, cancel_event)

    def decrypt(
        self,
        input_stream,
        output_stream,
        password: PasswordLike,
        progress: "typing.Optional[ProgressSink]" = None,
        cancel_event: "typing.Optional[CancelToken]" = None
    ) -> DecryptResult:
        _check_cancelled(cancel_event)
        header = read_header(input_stream)
        return self._decrypt_payload(header, input_stream, output_stream, password, progress, cancel_event)

    def _decrypt_payload(self, header, input_stream, output_stream, password, progress, cancel_event) -> DecryptResult:
        pipeline = self._pipeline(header.algorithm, progress, cancel_event)
        debug("container", f"decrypt v{header.version} {header.algorithm.label} iterations={header.iterations}")
        processed = pipeline.decrypt(
            input_stream,
            output_stream,
            password,
            header.salt,
            header.iterations,
            header.key_size_bits
        )
        return DecryptResult(header.original_filename, header, processed)

    def encrypt_file(
        self,
        input_path: PathLike,
        output_path: PathLike,
        algorithm: "typing.Union[Algorithm, int, str]",
        password: PasswordLike,
        iterations: int | None = None,
        aes_key_size_bits: int | None = None,
        progress: "typing.Optional[ProgressSink]" = None,
        cancel_event: "typing.Optional[CancelToken]" = None
    ) -> int:
        header = self.build_header(algorithm, iterations, aes_key_size_bits, pathlib.Path(input_path).name)
        _check_cancelled(cancel_event)
        with open(input_path, "rb") as source:
            with _guarded_output(output_path) as dest:
                return self._encrypt_payload(header, source, dest, password, progress, cancel_event)

    def decrypt_file(
        self,
        input_path: PathLike,
        output_path: PathLike,
        password: PasswordLike,
        progress: "typing.Optional[ProgressSink]" = None,
        cancel_event: "typing.Optional[CancelToken]" = None
    ) -> DecryptResult:
        _check_cancelled(cancel_event)
        with open(input_path, "rb") as source:
            header = read_header(source)
            with _guarded_output(output_path) as dest:
                return self._decrypt_payload(header, source, dest, password, progress, cancel_event)


@contextlib.contextmanager
def _guarded_output(path: PathLike) -> "typing.Iterator[typing.BinaryIO]":
    """Open ``path`` for writing; on a storage error, warn that the partial output was left behind."""
    handle = open(path, "wb")
    try:
        yield handle
    except OSError as exc:
        warnings.warn(
            f"Storage error while writing {path}; partial output left in place: {exc}",
            RuntimeWarning,
            stacklevel=3
        )
        raise
    finally:
        handle.close()


_DEFAULT_CODEC = ContainerCodec()


def encrypt(
    input_path: PathLike,
    output_stream,
    algorithm: "typing.Union[Algorithm, int, str]",
    password: PasswordLike,
    iterations: int | None = None,
    aes_key_size_bits: int | None = None,
    on_progress: "typing.Optional[ProgressSink]" = None,
    cancel_event: "typing.Optional[CancelToken]" = None
) -> int:
    return _DEFAULT_CODEC.encrypt(
        input_path, output_stream, algorithm, password, iterations, aes_key_size_bits, on_progress, cancel_event
    )


def decrypt(
    input_stream,
    output_stream,
    password: PasswordLike,
    on_progress: "typing.Optional[ProgressSink]" = None,
    cancel_event: "typing.Optional[CancelToken]" = None
) -> DecryptResult:
    return _DEFAULT_CODEC.decrypt(input_stream, output_stream, password, on_progress, cancel_event)


def encrypt_file(
    input_path: PathLike,
    output_path: PathLike,
    algorithm: "typing.Union[Algorithm, int, str]",
    password: PasswordLike,
    iterations: int | None = None,
    aes_key_size_bits: int | None = None,
    on_progress: "typing.Optional[ProgressSink]" = None,
    cancel_event: "typing.Optional[CancelToken]" = None
) -> int:
    return _DEFAULT_CODEC.encrypt_file(
        input_path, output_path, algorithm, password, iterations, aes_key_size_bits, on_progress, cancel_event
    )


def decrypt_file(
    input_path: PathLike,
    output_path: PathLike,
    password: PasswordLike,
    on_progress: "typing.Optional[ProgressSink]" = None,
    cancel_event: "typing.Optional[CancelToken]" = None
) -> DecryptResult:
    return _DEFAULT_CODEC.decrypt_file(input_path, output_path, password, on_progress, cancel_event)
