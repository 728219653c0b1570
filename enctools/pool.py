"""Bounded, thread-safe free lists for cipher engines and chunk buffers."""

import collections
import contextlib
import threading
import typing

from cryptography.hazmat.decrepit.ciphers.algorithms import TripleDES
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .config import debug, settings


class CipherEngine:
    """
    A reusable CBC engine whose key and IV are set per use.

    ``clear()`` zeroes the engine's own key and IV buffers. Each
    ``encryptor()``/``decryptor()`` call hands an immutable ``bytes`` copy to
    a fresh ``Cipher`` context; those copies (and the OpenSSL state behind
    them) are not reachable from here and live until the context is
    garbage collected.
    """

    def __init__(self, family: str, algorithm_factory: typing.Callable[[bytes], typing.Any], block_size: int) -> None:
        self.family = family
        self.block_size = block_size
        self._factory = algorithm_factory
        self._key = bytearray()
        self._iv = bytearray()
        self._disposed = False

    @property
    def configured(self) -> bool:
        return bool(self._key) and bool(self._iv)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def configure(self, key: bytes, iv: bytes) -> None:
        if self._disposed:
            raise RuntimeError(f"{self.family} engine already disposed")
        if len(iv) != self.block_size:
            raise ValueError(f"{self.family} IV must be {self.block_size} bytes, got {len(iv)}")
        self._key = bytearray(key)
        self._iv = bytearray(iv)

    def _cipher(self) -> Cipher:
        if not self.configured:
            raise RuntimeError(f"{self.family} engine used before configure()")
        return Cipher(self._factory(bytes(self._key)), modes.CBC(bytes(self._iv)))

    def encryptor(self):
        return self._cipher().encryptor()

    def decryptor(self):
        return self._cipher().decryptor()

    def padder(self):
        return padding.PKCS7(self.block_size * 8).padder()

    def unpadder(self):
        return padding.PKCS7(self.block_size * 8).unpadder()

    def clear(self) -> None:
        for buf in (self._key, self._iv):
            for i in range(len(buf)):
                buf[i] = 0
        self._key = bytearray()
        self._iv = bytearray()

    def dispose(self) -> None:
        self.clear()
        self._disposed = True


def make_aes_engine() -> CipherEngine:
    return CipherEngine("aes", algorithms.AES, 16)


def make_tdes_engine() -> CipherEngine:
    return CipherEngine("3des", TripleDES, 8)


class EnginePool:
    """
    Free list of idle engines bounded by ``capacity``.

    ``release`` zeroes the engine's key and IV buffers first; when the pool is already full the
    engine is disposed and dropped instead of being kept.
    """

    def __init__(
        self,
        factory: typing.Callable[[], CipherEngine],
        capacity: int | None = None,
        *,
        name: str = "engine"
    ) -> None:
        self.capacity = settings.ENGINE_POOL_SIZE if capacity is None else max(0, int(capacity))
        self.name = name
        self._factory = factory
        self._idle: "collections.deque[CipherEngine]" = collections.deque()
        self._lock = threading.Lock()
        self.created = 0
        self.discarded = 0
        self.outstanding = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._idle)

    def acquire(self) -> CipherEngine:
        with self._lock:
            self.outstanding += 1
            if self._idle:
                return self._idle.popleft()
            self.created += 1
        return self._factory()

    def release(self, engine: CipherEngine) -> bool:
        engine.clear()
        with self._lock:
            self.outstanding = max(0, self.outstanding - 1)
            if len(self._idle) < self.capacity and not engine.disposed:
                self._idle.append(engine)
                return True
            self.discarded += 1
        engine.dispose()
        debug("pool", f"{self.name} pool full ({self.capacity}); engine discarded")
        return False

    @contextlib.contextmanager
    def lease(self) -> "typing.Iterator[CipherEngine]":
        engine = self.acquire()
        try:
            yield engine
        finally:
            self.release(engine)

    def drain(self) -> int:
        with self._lock:
            idle = list(self._idle)
            self._idle.clear()
        for engine in idle:
            engine.dispose()
        return len(idle)


class BufferPool:
    """Free list of reusable chunk buffers; a rented buffer is returned unconditionally."""

    def __init__(self, capacity: int | None = None) -> None:
        self.capacity = settings.BUFFER_POOL_SIZE if capacity is None else max(0, int(capacity))
        self._idle: "list[bytearray]" = []
        self._lock = threading.Lock()
        self.allocated = 0
        self.outstanding = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._idle)

    def rent(self, size: int) -> bytearray:
        if size <= 0:
            raise ValueError(f"Buffer size must be positive, got {size}")
        with self._lock:
            self.outstanding += 1
            for idx, buf in enumerate(self._idle):
                if len(buf) >= size:
                    return self._idle.pop(idx)
            self.allocated += 1
        return bytearray(size)

    def give_back(self, buf: bytearray) -> bool:
        with self._lock:
            self.outstanding = max(0, self.outstanding - 1)
            if len(self._idle) < self.capacity:
                self._idle.append(buf)
                return True
        return False

    @contextlib.contextmanager
    def lease(self, size: int) -> "typing.Iterator[bytearray]":
        buf = self.rent(size)
        try:
            yield buf
        finally:
            self.give_back(buf)

    def drain(self) -> int:
        with self._lock:
            count = len(self._idle)
            self._idle.clear()
        return count


class ResourcePool:
    """The engine pools and buffer pool shared by every pipeline invocation in a process."""

    _default: "typing.ClassVar[typing.Optional[ResourcePool]]" = None
    _default_lock = threading.Lock()

    def __init__(
        self,
        engine_capacity: int | None = None,
        buffer_capacity: int | None = None
    ) -> None:
        self.aes = EnginePool(make_aes_engine, engine_capacity, name="aes")
        self.tdes = EnginePool(make_tdes_engine, engine_capacity, name="3des")
        self.buffers = BufferPool(buffer_capacity)

    @classmethod
    def default(cls) -> "ResourcePool":
        with cls._default_lock:
            if cls._default is None:
                cls._default = cls()
            return cls._default

    def outstanding(self) -> int:
        return self.aes.outstanding + self.tdes.outstanding + self.buffers.outstanding

    def drain(self) -> None:
        self.aes.drain()
        self.tdes.drain()
        self.buffers.drain()
