"""Secure Store: Encrypted key-value storage in a single local file.

Security Note (Threat Model):
    The decrypted mapping and the content key (secret or master key) live
    in process memory for the lifetime of the store. A memory dump of the
    application process exposes them. Only the file at rest is protected.
"""

from .version import __version__
from .crypto import encode_envelope, decode_envelope, derive_key
from .exceptions import (
    SecureStoreError,
    ConfigurationError,
    FormatError,
    AuthenticationError,
    CorruptionError,
    StoreIOError,
)
from .keying import (
    AESKeyWrapper,
    KeyingStrategy,
    DirectSecretKeying,
    WrappedMasterKeying,
)
from .storage import FileBackend
from .store import SecureStore, StoreState, coerce_numeric, coerce_sequence
from .key_rotation import rotate_secret, rotate_wrapping_key
from .config import StoreConfig, load_wrapping_keys, generate_wrapping_key

__all__ = [
    "__version__",
    "encode_envelope",
    "decode_envelope",
    "derive_key",
    "SecureStoreError",
    "ConfigurationError",
    "FormatError",
    "AuthenticationError",
    "CorruptionError",
    "StoreIOError",
    "AESKeyWrapper",
    "KeyingStrategy",
    "DirectSecretKeying",
    "WrappedMasterKeying",
    "FileBackend",
    "SecureStore",
    "StoreState",
    "coerce_numeric",
    "coerce_sequence",
    "rotate_secret",
    "rotate_wrapping_key",
    "StoreConfig",
    "load_wrapping_keys",
    "generate_wrapping_key",
]
