import argparse
import os
import pathlib
import sys
import typing

import colorama

from . import orchestrator
from .config import settings
from .container import read_header_file
from .errors import CREDENTIAL_FAILURES, EncToolsError, FormatError
from .passfile import load_password, save_password
from .pipelines import Algorithm, NonceMode
from .version import __version__


def _cli_plain_mode() -> bool:
    if os.getenv("ENCTOOLS_CLI_PLAIN"):
        return True
    if os.getenv("NO_COLOR"):
        return True
    return not (hasattr(sys.stdout, "isatty") and sys.stdout.isatty())


class _CliTheme:
    """Status-line styling; ``plain`` drops colour and emoji markers."""

    MARKS = {
        "ok": (colorama.Fore.GREEN, "✅"),
        "warn": (colorama.Fore.YELLOW, "⚠️"),
        "err": (colorama.Fore.RED, "❌"),
        "info": (colorama.Fore.CYAN, "✨"),
    }
    # Batch status -> mark kind
    STATUS_KINDS = {
        orchestrator.SUCCESS: "ok",
        orchestrator.CANCELLED: "warn",
        orchestrator.FAIL: "err",
    }

    def __init__(self, plain: bool):
        self.plain = plain

    def paint(self, kind: str, msg: str) -> str:
        if self.plain:
            return msg
        color, emoji = self.MARKS[kind]
        return f"{colorama.Style.BRIGHT}{color}{emoji} {msg}{colorama.Style.RESET_ALL}"

    @staticmethod
    def describe(exc: typing.Optional[BaseException]) -> str:
        if exc is None:
            return ""
        if isinstance(exc, CREDENTIAL_FAILURES):
            return "wrong password or corrupted file"
        if isinstance(exc, FileNotFoundError):
            return "file not found"
        return str(exc) or type(exc).__name__

    def outcome(self, path: str, status: str, exc: typing.Optional[BaseException] = None) -> str:
        kind = self.STATUS_KINDS.get(status, "err")
        line = f"{path}: {status}" if path else status
        if kind == "err":
            line = f"{line} {self.describe(exc)}".rstrip()
        return self.paint(kind, line)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="enctools", description="Password-based file encryption containers")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def _add_common(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("paths", nargs="+", help="One or more file paths")
        sub.add_argument("-p", "--password", default="", help="Password text")
        sub.add_argument("--password-file", default=None, help="Read the password from a saved .pwd file")
        sub.add_argument("-o", "--output-dir", default=None, help="Write outputs into this directory")
        sub.add_argument(
            "--in-place",
            action="store_true",
            help="Delete each source once its output has been written"
        )
        sub.add_argument(
            "--nonce-mode",
            choices=[mode.value for mode in NonceMode],
            default=NonceMode.FIXED.value,
            help="AES-GCM per-chunk nonce strategy (must match on both sides)"
        )
        sub.add_argument("-q", "--quiet", action="store_true", help="Suppress progress output")

    encrypt = subparsers.add_parser("encrypt", help="Encrypt files into containers")
    _add_common(encrypt)
    encrypt.add_argument(
        "-a", "--algorithm",
        default="aes-cbc",
        help="aes-cbc (default), aes-gcm, 3des or xor"
    )
    encrypt.add_argument(
        "-i", "--iterations",
        type=int,
        default=None,
        help=f"PBKDF2 iteration count (default {settings.KDF_ITERATIONS})"
    )
    encrypt.add_argument(
        "-k", "--key-bits",
        type=int,
        choices=settings.AES_KEY_BITS_ALLOWED,
        default=None,
        help=f"AES key size in bits (default {settings.AES_KEY_BITS})"
    )

    decrypt = subparsers.add_parser("decrypt", help="Decrypt containers")
    _add_common(decrypt)

    passfile = subparsers.add_parser("passfile", help="Save or show a password file")
    passfile_sub = passfile.add_subparsers(dest="passfile_command", required=True)
    pf_save = passfile_sub.add_parser("save", help="Write a password file")
    pf_save.add_argument("file", help="Destination path")
    pf_save.add_argument("-p", "--password", required=True, help="Password text")
    pf_show = passfile_sub.add_parser("show", help="Print the password stored in a file")
    pf_show.add_argument("file", help="Password file path")

    inspect = subparsers.add_parser("inspect", help="Print container header fields without decrypting")
    inspect.add_argument("paths", nargs="+", help="One or more container paths")
    return parser


def _resolve_password(args, theme: _CliTheme) -> "typing.Optional[str]":
    if args.password_file:
        try:
            return load_password(args.password_file)
        except CREDENTIAL_FAILURES + (FormatError,):
            print(theme.paint("err", f"{args.password_file}: password file is damaged or was tampered with"), file=sys.stderr)
            return None
        except OSError as exc:
            print(theme.paint("err", f"{args.password_file}: {exc}"), file=sys.stderr)
            return None
    if not args.password:
        print(theme.paint("err", "A password is required (-p or --password-file)"), file=sys.stderr)
        return None
    return args.password


def _report(paths, result, errors: "dict[str, BaseException]", theme: _CliTheme, quiet: bool) -> int:
    if not isinstance(result, dict):
        result = {str(orchestrator.normalize_path(paths[0])): result}
    failures = 0
    for path, status in result.items():
        if status != orchestrator.SUCCESS:
            failures += 1
        elif quiet:
            continue
        print(theme.outcome(path, status, errors.get(path)))
    return 0 if failures == 0 else 1


def _cmd_encrypt(args, theme: _CliTheme) -> int:
    password = _resolve_password(args, theme)
    if password is None:
        return 1
    try:
        algorithm = Algorithm.parse(args.algorithm)
    except EncToolsError as exc:
        print(theme.paint("err", str(exc)), file=sys.stderr)
        return 1
    errors: "dict[str, BaseException]" = {}
    result = orchestrator.encrypt_files(
        args.paths,
        password,
        algorithm,
        args.iterations,
        args.key_bits,
        output_dir=args.output_dir,
        in_place=args.in_place,
        silent=args.quiet,
        nonce_mode=args.nonce_mode,
        errors=errors
    )
    return _report(args.paths, result, errors, theme, args.quiet)


def _cmd_decrypt(args, theme: _CliTheme) -> int:
    password = _resolve_password(args, theme)
    if password is None:
        return 1
    errors: "dict[str, BaseException]" = {}
    names: "dict[str, typing.Optional[str]]" = {}
    result = orchestrator.decrypt_files(
        args.paths,
        password,
        output_dir=args.output_dir,
        in_place=args.in_place,
        silent=args.quiet,
        nonce_mode=args.nonce_mode,
        errors=errors,
        names=names
    )
    code = _report(args.paths, result, errors, theme, args.quiet)
    if not args.quiet:
        for path, name in names.items():
            if name:
                print(theme.paint("info", f"{path}: original name {name}"))
    return code


def _cmd_passfile(args, theme: _CliTheme) -> int:
    if args.passfile_command == "save":
        try:
            target = save_password(args.file, args.password)
        except (OSError, ValueError) as exc:
            print(theme.paint("err", f"{args.file}: {exc}"), file=sys.stderr)
            return 1
        print(theme.paint("ok", f"Password saved to {target}"))
        return 0
    try:
        print(load_password(args.file))
    except CREDENTIAL_FAILURES + (FormatError,):
        print(theme.paint("err", f"{args.file}: password file is damaged or was tampered with"), file=sys.stderr)
        return 1
    except OSError as exc:
        print(theme.paint("err", f"{args.file}: {exc}"), file=sys.stderr)
        return 1
    return 0


def _cmd_inspect(args, theme: _CliTheme) -> int:
    failures = 0
    for raw_path in args.paths:
        path = pathlib.Path(raw_path)
        try:
            header = read_header_file(path)
        except (EncToolsError, OSError) as exc:
            print(theme.paint("err", f"{path}: {exc}"))
            failures += 1
            continue
        key_bits = header.key_size_bits if header.algorithm.is_aes else "-"
        print(f"{path}:")
        print(f"  version:    {header.version}")
        print(f"  algorithm:  {header.algorithm.label} ({int(header.algorithm)})")
        print(f"  iterations: {header.iterations}")
        print(f"  salt:       {header.salt.hex()}")
        print(f"  key bits:   {key_bits}")
        print(f"  filename:   {header.original_filename or '-'}")
    return 0 if failures == 0 else 1


def cli(argv=None) -> int:
    colorama.init()
    theme = _CliTheme(_cli_plain_mode())
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command == "encrypt":
        return _cmd_encrypt(args, theme)
    if args.command == "decrypt":
        return _cmd_decrypt(args, theme)
    if args.command == "passfile":
        return _cmd_passfile(args, theme)
    if args.command == "inspect":
        return _cmd_inspect(args, theme)
    return 0


def main(argv=None) -> int:
    try:
        return cli(argv)
    except KeyboardInterrupt:
        print("Exiting...")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
