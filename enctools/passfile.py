"""
Standalone password files (``*.pwd``).

Layout: 32-byte random key, 12-byte nonce, 16-byte tag, then the AES-GCM
ciphertext of the UTF-8 password. The key travels with the file, so this
only guards against casual reading and detects corruption; it is not a
secret store.
"""

import os
import pathlib
import typing

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import AuthenticationFailure, FormatError

KEY_LEN = 32
NONCE_LEN = 12
TAG_LEN = 16
HEADER_LEN = KEY_LEN + NONCE_LEN + TAG_LEN
SUFFIX = ".pwd"


def pack_password(password: str) -> bytes:
    if not password:
        raise ValueError("Password must not be empty")
    key = AESGCM.generate_key(bit_length=KEY_LEN * 8)
    nonce = os.urandom(NONCE_LEN)
    sealed = AESGCM(key).encrypt(nonce, password.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LEN], sealed[-TAG_LEN:]
    return key + nonce + tag + ciphertext


def unpack_password(blob: bytes) -> str:
    if len(blob) < HEADER_LEN:
        raise FormatError(f"Password file is {len(blob)} bytes; at least {HEADER_LEN} expected")
    key = blob[:KEY_LEN]
    nonce = blob[KEY_LEN:KEY_LEN + NONCE_LEN]
    tag = blob[KEY_LEN + NONCE_LEN:HEADER_LEN]
    ciphertext = blob[HEADER_LEN:]
    try:
        plain = AESGCM(key).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag as exc:
        raise AuthenticationFailure("Password file is damaged or has been tampered with") from exc
    return plain.decode("utf-8")


def save_password(path: "typing.Union[str, os.PathLike]", password: str) -> pathlib.Path:
    target = pathlib.Path(path).expanduser()
    target.write_bytes(pack_password(password))
    return target


def load_password(path: "typing.Union[str, os.PathLike]") -> str:
    return unpack_password(pathlib.Path(path).expanduser().read_bytes())
