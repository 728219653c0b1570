"""Password-based, streaming file encryption into a self-describing container."""

from .config import settings
from .container import (
    ContainerCodec,
    ContainerHeader,
    DecryptResult,
    decrypt,
    decrypt_file,
    encrypt,
    encrypt_file,
    is_container,
    read_header,
    read_header_file,
)
from .errors import (
    AuthenticationFailure,
    Cancelled,
    CancellationRequested,
    EncToolsError,
    FormatError,
    InvalidFormat,
    IOFailure,
    PaddingFailure,
    UnsupportedAlgorithm,
)
from .kdf import KeyDerivationCache, pbkdf2_sha256
from .orchestrator import decrypt_files, encrypt_files
from .passfile import load_password, save_password
from .pipelines import Algorithm, NonceMode, pipeline_for
from .pool import BufferPool, EnginePool, ResourcePool
from .version import __version__

__all__ = [
    "Algorithm",
    "AuthenticationFailure",
    "BufferPool",
    "Cancelled",
    "CancellationRequested",
    "ContainerCodec",
    "ContainerHeader",
    "DecryptResult",
    "EncToolsError",
    "EnginePool",
    "FormatError",
    "IOFailure",
    "InvalidFormat",
    "KeyDerivationCache",
    "NonceMode",
    "PaddingFailure",
    "ResourcePool",
    "UnsupportedAlgorithm",
    "__version__",
    "decrypt",
    "decrypt_file",
    "decrypt_files",
    "encrypt",
    "encrypt_file",
    "encrypt_files",
    "is_container",
    "load_password",
    "pbkdf2_sha256",
    "pipeline_for",
    "read_header",
    "read_header_file",
    "save_password",
    "settings",
]
