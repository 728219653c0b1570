"""
Streaming cipher pipelines, one per container algorithm.

Every pipeline reads its source in fixed-size chunks through a pooled
buffer, checks the cancellation signal before each chunk, transforms the
chunk and writes the result, then reports the cumulative number of source
bytes consumed. Pooled buffers and engines go back to the pool on every
exit path.
"""

import enum
import os
import struct
import typing

import numpy as np
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import debug, settings
from .errors import AuthenticationFailure, Cancelled, FormatError, PaddingFailure, UnsupportedAlgorithm
from .kdf import KeyDerivationCache, PasswordLike
from .pool import EnginePool, ResourcePool

ProgressSink = typing.Callable[[int], None]


class CancelToken(typing.Protocol):
    def is_set(self) -> bool: ...


class Algorithm(enum.IntEnum):
    AES_CBC = 0
    AES_GCM = 1
    TRIPLE_DES = 2
    XOR = 3

    @property
    def is_aes(self) -> bool:
        return self in (Algorithm.AES_CBC, Algorithm.AES_GCM)

    @property
    def extension(self) -> str:
        return _EXTENSIONS[self]

    @property
    def label(self) -> str:
        return _LABELS[self]

    @classmethod
    def parse(cls, value: "typing.Union[Algorithm, int, str]") -> "Algorithm":
        if isinstance(value, Algorithm):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                raise UnsupportedAlgorithm(f"Unsupported algorithm id {value}") from None
        if isinstance(value, str):
            key = value.strip().lower().replace("_", "-")
            if key in _ALIASES:
                return _ALIASES[key]
            if key.isdigit():
                return cls.parse(int(key))
        raise UnsupportedAlgorithm(f"Unsupported algorithm {value!r}")


_EXTENSIONS = {
    Algorithm.AES_CBC: ".aes",
    Algorithm.AES_GCM: ".aesgcm",
    Algorithm.TRIPLE_DES: ".3des",
    Algorithm.XOR: ".xor",
}
_LABELS = {
    Algorithm.AES_CBC: "AES-CBC",
    Algorithm.AES_GCM: "AES-GCM",
    Algorithm.TRIPLE_DES: "TripleDES",
    Algorithm.XOR: "XOR",
}
_ALIASES = {
    "aes-cbc": Algorithm.AES_CBC,
    "aescbc": Algorithm.AES_CBC,
    "aes": Algorithm.AES_CBC,
    "cbc": Algorithm.AES_CBC,
    "aes-gcm": Algorithm.AES_GCM,
    "aesgcm": Algorithm.AES_GCM,
    "gcm": Algorithm.AES_GCM,
    "aead": Algorithm.AES_GCM,
    "3des": Algorithm.TRIPLE_DES,
    "tripledes": Algorithm.TRIPLE_DES,
    "triple-des": Algorithm.TRIPLE_DES,
    "des3": Algorithm.TRIPLE_DES,
    "xor": Algorithm.XOR,
}


class PipelineState(enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    FINALIZED = "finalized"
    FAILED = "failed"


def _fill(source, view: memoryview) -> int:
    """Read into ``view`` until it is full or the source is exhausted."""
    total = 0
    size = len(view)
    readinto = getattr(source, "readinto", None)
    while total < size:
        if readinto is not None:
            got = readinto(view[total:])
        else:
            data = source.read(size - total)
            got = len(data) if data else 0
            if got:
                view[total:total + got] = data
        if not got:
            break
        total += got
    return total


def read_exact(source, size: int) -> bytes:
    if size <= 0:
        return b""
    out = bytearray()
    while len(out) < size:
        chunk = source.read(size - len(out))
        if not chunk:
            break
        out.extend(chunk)
    return bytes(out)


class CipherPipeline:
    """Shared plumbing: key derivation, chunk loop, cancellation and progress."""

    algorithm: "typing.ClassVar[Algorithm]"

    def __init__(
        self,
        *,
        key_cache: "typing.Optional[KeyDerivationCache]" = None,
        resources: "typing.Optional[ResourcePool]" = None,
        chunk_size: int | None = None,
        progress: "typing.Optional[ProgressSink]" = None,
        cancel_event: "typing.Optional[CancelToken]" = None
    ) -> None:
        self.key_cache = key_cache or KeyDerivationCache.for_current_thread()
        self.resources = resources or ResourcePool.default()
        self.chunk_size = settings.CHUNK_SIZE if chunk_size is None else int(chunk_size)
        if self.chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {chunk_size}")
        self.progress = progress
        self.cancel_event = cancel_event
        self.state = PipelineState.IDLE
        self.chunks = 0
        self.failure: "typing.Optional[BaseException]" = None

    def key_length(self, key_size_bits: int) -> int:
        raise NotImplementedError

    def derive_key(self, password: PasswordLike, salt: bytes, iterations: int, key_size_bits: int) -> bytes:
        return self.key_cache.derive(password, salt, iterations, self.key_length(key_size_bits))

    def check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise Cancelled(f"{self.algorithm.label} operation cancelled after {self.chunks} chunk(s)")

    def _advance(self, total: int) -> None:
        self.chunks += 1
        if self.progress is not None:
            self.progress(total)

    def _run(self, step: typing.Callable[[], int]) -> int:
        if self.state is not PipelineState.IDLE:
            raise RuntimeError("Pipelines are single-use; create a new one for each operation")
        self.state = PipelineState.STREAMING
        try:
            total = step()
        except BaseException as exc:
            self.state = PipelineState.FAILED
            self.failure = exc
            raise
        self.state = PipelineState.FINALIZED
        return total

    def encrypt(self, source, dest, password: PasswordLike, salt: bytes, iterations: int, key_size_bits: int = 0) -> int:
        """Stream ``source`` into ``dest``; returns the number of plaintext bytes consumed."""
        debug("pipeline", f"encrypt {self.algorithm.label} chunk={self.chunk_size}")
        return self._run(lambda: self._encrypt(source, dest, password, salt, iterations, key_size_bits))

    def decrypt(self, source, dest, password: PasswordLike, salt: bytes, iterations: int, key_size_bits: int = 0) -> int:
        """Stream the payload in ``source`` into ``dest``; returns the number of payload bytes consumed."""
        debug("pipeline", f"decrypt {self.algorithm.label} chunk={self.chunk_size}")
        return self._run(lambda: self._decrypt(source, dest, password, salt, iterations, key_size_bits))

    def _encrypt(self, source, dest, password, salt, iterations, key_size_bits) -> int:
        raise NotImplementedError

    def _decrypt(self, source, dest, password, salt, iterations, key_size_bits) -> int:
        raise NotImplementedError


def _aes_key_length(key_size_bits: int) -> int:
    if key_size_bits not in settings.AES_KEY_BITS_ALLOWED:
        raise ValueError(
            f"AES key size must be one of {settings.AES_KEY_BITS_ALLOWED} bits, got {key_size_bits}"
        )
    return key_size_bits // 8


class _CbcPipeline(CipherPipeline):
    """Block-cipher CBC with PKCS7 padding; the IV is written length-prefixed before the ciphertext."""

    IV_PREFIX = struct.Struct("<i")

    def _engines(self) -> EnginePool:
        raise NotImplementedError

    def _encrypt(self, source, dest, password, salt, iterations, key_size_bits) -> int:
        pool = self._engines()
        engine = pool.acquire()
        try:
            iv = os.urandom(engine.block_size)
            dest.write(self.IV_PREFIX.pack(len(iv)))
            dest.write(iv)
            engine.configure(self.derive_key(password, salt, iterations, key_size_bits), iv)
            encryptor = engine.encryptor()
            padder = engine.padder()
            total = 0
            with self.resources.buffers.lease(self.chunk_size) as buf, memoryview(buf) as mv:
                view = mv[:self.chunk_size]
                while True:
                    self.check_cancelled()
                    n = _fill(source, view)
                    if not n:
                        break
                    dest.write(encryptor.update(padder.update(view[:n])))
                    total += n
                    self._advance(total)
                    if n < len(view):
                        break
            dest.write(encryptor.update(padder.finalize()) + encryptor.finalize())
            return total
        finally:
            pool.release(engine)

    def _decrypt(self, source, dest, password, salt, iterations, key_size_bits) -> int:
        raw_len = read_exact(source, self.IV_PREFIX.size)
        if len(raw_len) != self.IV_PREFIX.size:
            raise FormatError(f"{self.algorithm.label} payload truncated before IV")
        (iv_len,) = self.IV_PREFIX.unpack(raw_len)
        pool = self._engines()
        engine = pool.acquire()
        try:
            if iv_len != engine.block_size:
                raise FormatError(f"{self.algorithm.label} IV length {iv_len} is not {engine.block_size}")
            iv = read_exact(source, iv_len)
            if len(iv) != iv_len:
                raise FormatError(f"{self.algorithm.label} payload truncated inside IV")
            engine.configure(self.derive_key(password, salt, iterations, key_size_bits), iv)
            decryptor = engine.decryptor()
            unpadder = engine.unpadder()
            total = 0
            with self.resources.buffers.lease(self.chunk_size) as buf, memoryview(buf) as mv:
                view = mv[:self.chunk_size]
                while True:
                    self.check_cancelled()
                    n = _fill(source, view)
                    if not n:
                        break
                    dest.write(unpadder.update(decryptor.update(view[:n])))
                    total += n
                    self._advance(total)
                    if n < len(view):
                        break
            try:
                tail = decryptor.finalize()
            except ValueError as exc:
                raise PaddingFailure(
                    f"{self.algorithm.label} ciphertext is not a whole number of blocks (corrupted or truncated file)"
                ) from exc
            try:
                dest.write(unpadder.update(tail) + unpadder.finalize())
            except ValueError as exc:
                raise PaddingFailure(
                    f"{self.algorithm.label} padding is invalid (wrong password or corrupted file)"
                ) from exc
            return total
        finally:
            pool.release(engine)


class AesCbcPipeline(_CbcPipeline):
    algorithm = Algorithm.AES_CBC

    def key_length(self, key_size_bits: int) -> int:
        return _aes_key_length(key_size_bits)

    def _engines(self) -> EnginePool:
        return self.resources.aes


class TripleDesPipeline(_CbcPipeline):
    algorithm = Algorithm.TRIPLE_DES
    KEY_LEN = 24

    def key_length(self, key_size_bits: int) -> int:
        # 3DES always uses a 192-bit key, whatever the header says.
        return self.KEY_LEN

    def _engines(self) -> EnginePool:
        return self.resources.tdes


GCM_FRAME_SIZE = 4 * 1024 * 1024


class NonceMode(str, enum.Enum):
    FIXED = "fixed"
    COUNTER = "counter"


class AesGcmPipeline(CipherPipeline):
    """
    Chunked AES-GCM: one 12-byte nonce up front, then ``ciphertext || tag``
    per plaintext frame of ``FRAME_SIZE`` bytes (4 MiB). The frame size is
    fixed by the format, so ``chunk_size`` has no effect on this pipeline.

    With ``NonceMode.FIXED`` every chunk is sealed under the stored nonce,
    which is what existing containers use. ``NonceMode.COUNTER`` derives a
    distinct nonce per chunk (4-byte prefix of the stored nonce plus an
    8-byte big-endian chunk index); the mode is not recorded in the header,
    so the decrypting side must be told to use it as well.
    """

    algorithm = Algorithm.AES_GCM
    # Plaintext bytes per sealed frame.
    FRAME_SIZE = GCM_FRAME_SIZE
    NONCE_LEN = 12
    TAG_LEN = 16
    NONCE_PREFIX_LEN = 4

    def __init__(self, *, nonce_mode: "typing.Union[NonceMode, str]" = NonceMode.FIXED, **kwargs) -> None:
        super().__init__(**kwargs)
        self.nonce_mode = NonceMode(nonce_mode)

    def key_length(self, key_size_bits: int) -> int:
        return _aes_key_length(key_size_bits)

    def chunk_nonce(self, nonce: bytes, index: int) -> bytes:
        if self.nonce_mode is NonceMode.FIXED:
            return nonce
        if index < 0 or index >= (1 << 64):
            raise ValueError("AES-GCM chunk counter overflow")
        return nonce[:self.NONCE_PREFIX_LEN] + index.to_bytes(8, "big")

    def _encrypt(self, source, dest, password, salt, iterations, key_size_bits) -> int:
        aead = AESGCM(self.derive_key(password, salt, iterations, key_size_bits))
        nonce = os.urandom(self.NONCE_LEN)
        dest.write(nonce)
        total = 0
        index = 0
        with self.resources.buffers.lease(self.FRAME_SIZE) as buf, memoryview(buf) as mv:
            view = mv[:self.FRAME_SIZE]
            while True:
                self.check_cancelled()
                n = _fill(source, view)
                if not n:
                    break
                dest.write(aead.encrypt(self.chunk_nonce(nonce, index), bytes(view[:n]), None))
                index += 1
                total += n
                self._advance(total)
                if n < len(view):
                    break
        return total

    def _decrypt(self, source, dest, password, salt, iterations, key_size_bits) -> int:
        nonce = read_exact(source, self.NONCE_LEN)
        if len(nonce) != self.NONCE_LEN:
            raise FormatError("AES-GCM payload truncated inside nonce")
        aead = AESGCM(self.derive_key(password, salt, iterations, key_size_bits))
        unit = self.FRAME_SIZE + self.TAG_LEN
        total = 0
        index = 0
        with self.resources.buffers.lease(unit) as buf, memoryview(buf) as mv:
            view = mv[:unit]
            while True:
                self.check_cancelled()
                n = _fill(source, view)
                if not n:
                    break
                if n < self.TAG_LEN:
                    raise FormatError(f"AES-GCM chunk {index} is shorter than its authentication tag")
                try:
                    plain = aead.decrypt(self.chunk_nonce(nonce, index), bytes(view[:n]), None)
                except InvalidTag as exc:
                    raise AuthenticationFailure(
                        f"AES-GCM authentication failed on chunk {index} (wrong password or corrupted file)"
                    ) from exc
                dest.write(plain)
                index += 1
                total += n
                self._advance(total)
                if n < len(view):
                    break
        return total


class XorPipeline(CipherPipeline):
    """
    Cyclic XOR against a 32-byte derived key. Not secure; kept as a simple
    demonstration path. The key index carries across chunk boundaries so the
    keystream is continuous over the whole file, and the transform is its own
    inverse.
    """

    algorithm = Algorithm.XOR
    KEY_LEN = 32

    def key_length(self, key_size_bits: int) -> int:
        return self.KEY_LEN

    def _transform(self, source, dest, password, salt, iterations, key_size_bits) -> int:
        key_arr = np.frombuffer(self.derive_key(password, salt, iterations, key_size_bits), dtype=np.uint8)
        key_len = key_arr.size
        key_index = 0
        total = 0
        with self.resources.buffers.lease(self.chunk_size) as buf, memoryview(buf) as mv:
            view = mv[:self.chunk_size]
            while True:
                self.check_cancelled()
                n = _fill(source, view)
                if not n:
                    break
                arr = np.frombuffer(view[:n], dtype=np.uint8)
                stream = np.tile(np.roll(key_arr, -key_index), n // key_len + 1)[:n]
                np.bitwise_xor(arr, stream, out=arr)
                del arr
                dest.write(view[:n])
                key_index = (key_index + n) % key_len
                total += n
                self._advance(total)
                if n < len(view):
                    break
        return total

    _encrypt = _transform
    _decrypt = _transform


PIPELINES: "dict[Algorithm, type[CipherPipeline]]" = {
    Algorithm.AES_CBC: AesCbcPipeline,
    Algorithm.AES_GCM: AesGcmPipeline,
    Algorithm.TRIPLE_DES: TripleDesPipeline,
    Algorithm.XOR: XorPipeline,
}


def pipeline_for(
    algorithm: "typing.Union[Algorithm, int, str]",
    *,
    nonce_mode: "typing.Union[NonceMode, str]" = NonceMode.FIXED,
    **kwargs
) -> CipherPipeline:
    alg = Algorithm.parse(algorithm)
    cls = PIPELINES.get(alg)
    if cls is None:
        raise UnsupportedAlgorithm(f"No pipeline registered for {alg!r}")
    if cls is AesGcmPipeline:
        return cls(nonce_mode=nonce_mode, **kwargs)
    return cls(**kwargs)
