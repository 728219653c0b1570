"""Environment-driven defaults shared by the engine, orchestrator and CLI."""

import os as _os_module
import sys as _sys_module
import typing


def _env_int(name: str) -> "typing.Optional[int]":
    value = _os_module.getenv(name)
    if not value:
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    if parsed <= 0:
        return None
    return parsed


def _env_flag(name: str) -> bool:
    raw = _os_module.getenv(name)
    if not raw:
        return False
    return raw.strip().lower() in ("1", "true", "yes", "on")


class settings:
    KDF_ITERATIONS = 200_000
    AES_KEY_BITS = 256
    AES_KEY_BITS_ALLOWED = (128, 192, 256)
    CHUNK_SIZE = 4 * 1024 * 1024  # 4 MiB streaming blocks
    ENGINE_POOL_SIZE = 10
    BUFFER_POOL_SIZE = 4
    MAX_NAME_BYTES = 4 * 1024
    SALT_LEN = 16

    _ITERATIONS_ENV = _env_int("ENCTOOLS_ITERATIONS")
    if _ITERATIONS_ENV is not None:
        KDF_ITERATIONS = _ITERATIONS_ENV
    _AES_BITS_ENV = _env_int("ENCTOOLS_AES_KEY_BITS")
    if _AES_BITS_ENV in AES_KEY_BITS_ALLOWED:
        AES_KEY_BITS = _AES_BITS_ENV
    _CHUNK_ENV = _env_int("ENCTOOLS_CHUNK_SIZE")
    if _CHUNK_ENV is not None:
        CHUNK_SIZE = _CHUNK_ENV
    _POOL_ENV = _env_int("ENCTOOLS_POOL_SIZE")
    if _POOL_ENV is not None:
        ENGINE_POOL_SIZE = _POOL_ENV
    _BUFFER_POOL_ENV = _env_int("ENCTOOLS_BUFFER_POOL_SIZE")
    if _BUFFER_POOL_ENV is not None:
        BUFFER_POOL_SIZE = _BUFFER_POOL_ENV
    _NAME_ENV = _env_int("ENCTOOLS_MAX_NAME_BYTES")
    if _NAME_ENV is not None:
        MAX_NAME_BYTES = _NAME_ENV


def verbose_enabled() -> bool:
    return _env_flag("ENCTOOLS_VERBOSE")


def _color_enabled() -> bool:
    if _os_module.getenv("NO_COLOR"):
        return False
    stream = getattr(_sys_module, "stderr", None)
    return bool(stream and hasattr(stream, "isatty") and stream.isatty())


def debug(area: str, message: str) -> None:
    """Print a one-line ``[enctools.<area>]`` diagnostic when ENCTOOLS_VERBOSE is set."""
    if not verbose_enabled():
        return
    tag = f"[enctools.{area}]"
    if _color_enabled():
        tag = f"\033[36;1m{tag}\033[0m"
    try:
        print(f"{tag} {message}", file=_sys_module.stderr)
    except Exception:
        pass
