"""Batch front door: resolve file lists, pick output paths, run the codec per file."""

import os
import pathlib
import threading
import typing

from .config import debug
from .container import ContainerCodec, DecryptResult
from .errors import Cancelled
from .kdf import KeyDerivationCache, PasswordLike
from .pipelines import Algorithm, NonceMode
from .progress import ProgressReporter

KNOWN_EXTENSIONS = (".enc", ".aes", ".aesgcm", ".3des", ".xor")
DECRYPTED_SUFFIX = ".dec"

SUCCESS = "SUCCESS!"
FAIL = "FAIL!"
CANCELLED = "CANCELLED"

PathInput = typing.Union[str, os.PathLike, typing.Iterable[typing.Union[str, os.PathLike]]]
BatchResult = typing.Union[str, typing.Dict[str, str]]


def normalize_path(path_like: "typing.Union[str, os.PathLike]") -> pathlib.Path:
    path = pathlib.Path(path_like).expanduser()
    try:
        return path.resolve(strict=False)
    except OSError:
        return path


def _coerce_file_list(files: PathInput) -> "list[pathlib.Path]":
    if isinstance(files, (str, os.PathLike)):
        candidates = [files]
    else:
        candidates = list(files)
    if not candidates:
        raise ValueError("No files provided")
    return [normalize_path(item) for item in candidates]


def encrypted_output_path(
    path: pathlib.Path,
    algorithm: Algorithm,
    output_dir: "typing.Optional[pathlib.Path]" = None
) -> pathlib.Path:
    name = path.name + algorithm.extension
    return (output_dir / name) if output_dir else path.with_name(name)


def decrypted_output_path(path: pathlib.Path, output_dir: "typing.Optional[pathlib.Path]" = None) -> pathlib.Path:
    suffix = path.suffix.lower()
    name = path.name[:-len(suffix)] if suffix in KNOWN_EXTENSIONS and len(path.name) > len(suffix) else path.name + DECRYPTED_SUFFIX
    return (output_dir / name) if output_dir else path.with_name(name)


def _remove_source(path: pathlib.Path, output_path: pathlib.Path) -> bool:
    """Delete ``path`` only when ``output_path`` exists and is non-empty."""
    try:
        if not output_path.is_file() or output_path.stat().st_size == 0:
            return False
        if normalize_path(path) == normalize_path(output_path):
            return False
        os.remove(path)
        return True
    except FileNotFoundError:
        return False


def _finish(paths: "list[pathlib.Path]", results: "dict[str, str]") -> BatchResult:
    if len(paths) == 1:
        return next(iter(results.values()))
    return results


def _run_batch(
    paths: "list[pathlib.Path]",
    work: "typing.Callable[[pathlib.Path, typing.Callable[[int], None]], pathlib.Path]",
    *,
    phase: str,
    in_place: bool,
    reporter: "typing.Optional[ProgressReporter]",
    cancel_event: "typing.Optional[threading.Event]",
    errors: "typing.Optional[dict[str, BaseException]]"
) -> "dict[str, str]":
    results: "dict[str, str]" = {}
    cancelled = False
    for idx, path in enumerate(paths):
        key = str(path)
        if cancelled or (cancel_event is not None and cancel_event.is_set()):
            cancelled = True
            results[key] = CANCELLED
            continue
        try:
            size = path.stat().st_size
        except OSError as exc:
            results[key] = FAIL
            if errors is not None:
                errors[key] = exc
            if reporter:
                reporter.update(idx, 0.0, "missing", path)
                reporter.finalize_file(idx, path, ok=False)
            continue

        def _on_progress(done: int, _idx: int = idx, _path: pathlib.Path = path, _size: int = size) -> None:
            if reporter:
                reporter.update(_idx, done / _size if _size else 1.0, phase, _path)

        try:
            output_path = work(path, _on_progress)
        except Cancelled as exc:
            cancelled = True
            results[key] = CANCELLED
            if errors is not None:
                errors[key] = exc
            if reporter:
                reporter.update(idx, 0.0, "cancelled", path)
                reporter.finalize_file(idx, path, ok=False)
            continue
        except KeyboardInterrupt:
            if cancel_event is not None:
                cancel_event.set()
            results[key] = CANCELLED
            for rest in paths[idx + 1:]:
                results[str(rest)] = CANCELLED
            raise
        except Exception as exc:
            results[key] = FAIL
            if errors is not None:
                errors[key] = exc
            debug("batch", f"{path.name}: {type(exc).__name__}: {exc}")
            if reporter:
                reporter.update(idx, 0.0, f"error: {exc}", path)
                reporter.finalize_file(idx, path, ok=False)
            continue
        if in_place:
            _remove_source(path, output_path)
        results[key] = SUCCESS
        if reporter:
            try:
                out_size = output_path.stat().st_size
            except OSError:
                out_size = 0
            reporter.finalize_file(idx, path, size_hint=(size, out_size))
    if reporter:
        reporter.reset_terminal_state()
    return results


def encrypt_files(
    files: PathInput,
    password: PasswordLike,
    algorithm: "typing.Union[Algorithm, int, str]" = Algorithm.AES_CBC,
    iterations: int | None = None,
    aes_key_size_bits: int | None = None,
    *,
    output_dir: "typing.Optional[typing.Union[str, os.PathLike]]" = None,
    in_place: bool = False,
    silent: bool = True,
    reporter: "typing.Optional[ProgressReporter]" = None,
    cancel_event: "typing.Optional[threading.Event]" = None,
    chunk_size: int | None = None,
    nonce_mode: "typing.Union[NonceMode, str]" = NonceMode.FIXED,
    errors: "typing.Optional[dict[str, BaseException]]" = None
) -> BatchResult:
    """
    Encrypt each file into ``<name><algorithm extension>`` next to it (or in
    ``output_dir``). Returns ``SUCCESS!``/``FAIL!``/``CANCELLED`` for a single
    path, or a dict keyed by path for several.
    """
    paths = _coerce_file_list(files)
    alg = Algorithm.parse(algorithm)
    if not password:
        raise ValueError("Password must not be empty")
    out_dir = normalize_path(output_dir) if output_dir else None
    if out_dir is not None:
        out_dir.mkdir(parents=True, exist_ok=True)
    if reporter is None and not silent:
        reporter = ProgressReporter(len(paths))
    codec = ContainerCodec(key_cache=KeyDerivationCache(), chunk_size=chunk_size, nonce_mode=nonce_mode)

    def _encrypt_one(path: pathlib.Path, on_progress) -> pathlib.Path:
        target = encrypted_output_path(path, alg, out_dir)
        codec.encrypt_file(path, target, alg, password, iterations, aes_key_size_bits, on_progress, cancel_event)
        return target

    results = _run_batch(
        paths,
        _encrypt_one,
        phase="encrypting",
        in_place=in_place,
        reporter=reporter,
        cancel_event=cancel_event,
        errors=errors
    )
    return _finish(paths, results)


def decrypt_files(
    files: PathInput,
    password: PasswordLike,
    *,
    output_dir: "typing.Optional[typing.Union[str, os.PathLike]]" = None,
    in_place: bool = False,
    silent: bool = True,
    reporter: "typing.Optional[ProgressReporter]" = None,
    cancel_event: "typing.Optional[threading.Event]" = None,
    chunk_size: int | None = None,
    nonce_mode: "typing.Union[NonceMode, str]" = NonceMode.FIXED,
    errors: "typing.Optional[dict[str, BaseException]]" = None,
    names: "typing.Optional[dict[str, typing.Optional[str]]]" = None
) -> BatchResult:
    """
    Decrypt each container, stripping a known extension (or appending
    ``.dec``). Recovered original filenames are reported through ``names``;
    renaming outputs to them is left to the caller.
    """
    paths = _coerce_file_list(files)
    if not password:
        raise ValueError("Password must not be empty")
    out_dir = normalize_path(output_dir) if output_dir else None
    if out_dir is not None:
        out_dir.mkdir(parents=True, exist_ok=True)
    if reporter is None and not silent:
        reporter = ProgressReporter(len(paths))
    codec = ContainerCodec(key_cache=KeyDerivationCache(), chunk_size=chunk_size, nonce_mode=nonce_mode)

    def _decrypt_one(path: pathlib.Path, on_progress) -> pathlib.Path:
        target = decrypted_output_path(path, out_dir)
        result: DecryptResult = codec.decrypt_file(path, target, password, on_progress, cancel_event)
        if names is not None:
            names[str(path)] = result.original_filename
        return target

    results = _run_batch(
        paths,
        _decrypt_one,
        phase="decrypting",
        in_place=in_place,
        reporter=reporter,
        cancel_event=cancel_event,
        errors=errors
    )
    return _finish(paths, results)
