"""
Store Keying: Key management strategies and the master-key wrapper.

Two strategies, one per store instance:
- ``DirectSecretKeying``: the caller's secret encrypts the mapping and the
  file holds a single envelope.
- ``WrappedMasterKeying``: a random 32-byte master key encrypts the mapping;
  the master key is wrapped by a ``MasterKeyWrapper`` and stored as file
  metadata: ``{"metadata": {"key": <wrapped>}, "payload": <envelope>}``.

Security Note:
    Never log key material. Only log key IDs and versions.
"""
import os
import base64
import binascii
import struct
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional, Protocol

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .crypto import KEY_LENGTH, NONCE_SIZE, TAG_SIZE, Secret
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    CorruptionError,
    FormatError,
)

logger = logging.getLogger("secure_store")

KEY_ID_SIZE = 2  # uint16 big-endian


class MasterKeyWrapper(Protocol):
    """Key-wrapping collaborator used by :class:`WrappedMasterKeying`."""

    def generate_master_key(self) -> bytes:
        ...

    def wrap(self, master_key: bytes) -> str:
        ...

    def unwrap(self, wrapped: str) -> bytes:
        ...


# ---------------------------------------------------------------------------
# AES-GCM key wrapper
# ---------------------------------------------------------------------------

def derive_wrap_key(wrapping_key: bytes, key_id: int) -> bytes:
    """Derive the per-version wrap key using HKDF-SHA256."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,
        info=f"secure-store-wrap-v{key_id}".encode("utf-8"),
    )
    return hkdf.derive(wrapping_key)


class AESKeyWrapper:
    """Wraps master keys under versioned 32-byte wrapping keys.

    Format: base64([key_id 2B uint16 BE][nonce 12B][wrapped_key + tag]).
    The key_id prefix is authenticated as associated data, so the wrapped
    key cannot be replayed under another version.

    Args:
        wrapping_keys: Mapping of key version to raw 32-byte wrapping key.
        active_key_id: Version used by :meth:`wrap`.
    """

    def __init__(self, wrapping_keys: dict[int, bytes], active_key_id: int):
        if not wrapping_keys:
            raise ConfigurationError("at least one wrapping key is required")
        for key_id, key in wrapping_keys.items():
            if len(key) != KEY_LENGTH:
                raise ConfigurationError(
                    f"wrapping key v{key_id} must be exactly {KEY_LENGTH} bytes, "
                    f"got {len(key)}"
                )
        self._wrapping_keys = dict(wrapping_keys)
        self.active_key_id = active_key_id

    @property
    def active_key_id(self) -> int:
        return self._active_key_id

    @active_key_id.setter
    def active_key_id(self, key_id: int) -> None:
        if key_id not in self._wrapping_keys:
            raise ConfigurationError(
                f"wrapping key version {key_id} not found "
                f"(available: {sorted(self._wrapping_keys)})"
            )
        self._active_key_id = key_id

    @property
    def key_ids(self) -> list[int]:
        return sorted(self._wrapping_keys)

    def generate_master_key(self) -> bytes:
        return os.urandom(KEY_LENGTH)

    def wrap(self, master_key: bytes) -> str:
        key_id = self._active_key_id
        key_id_bytes = struct.pack("!H", key_id)
        wrap_key = derive_wrap_key(self._wrapping_keys[key_id], key_id)
        nonce = os.urandom(NONCE_SIZE)
        ct = AESGCM(wrap_key).encrypt(nonce, master_key, key_id_bytes)
        return base64.b64encode(key_id_bytes + nonce + ct).decode("ascii")

    def unwrap(self, wrapped: str) -> bytes:
        """Recover a master key from :meth:`wrap` output.

        Raises:
            FormatError: If the text is malformed.
            ConfigurationError: If the key version is not configured.
            AuthenticationError: If the tag does not verify.
        """
        try:
            raw = base64.b64decode(wrapped, validate=True)
        except (binascii.Error, ValueError, TypeError) as err:
            raise FormatError("wrapped key is not valid base64") from err
        _min = KEY_ID_SIZE + NONCE_SIZE + TAG_SIZE
        if len(raw) < _min:
            raise FormatError(
                f"wrapped key too short: {len(raw)} bytes (minimum {_min})"
            )
        key_id_bytes = raw[:KEY_ID_SIZE]
        key_id = struct.unpack("!H", key_id_bytes)[0]
        if key_id not in self._wrapping_keys:
            raise ConfigurationError(
                f"wrapping key version {key_id} not found in provided keys"
            )
        wrap_key = derive_wrap_key(self._wrapping_keys[key_id], key_id)
        nonce = raw[KEY_ID_SIZE:KEY_ID_SIZE + NONCE_SIZE]
        ct = raw[KEY_ID_SIZE + NONCE_SIZE:]
        try:
            master_key = AESGCM(wrap_key).decrypt(nonce, ct, key_id_bytes)
        except InvalidTag as err:
            raise AuthenticationError(
                "wrong wrapping key or corrupted master key"
            ) from err
        if len(master_key) != KEY_LENGTH:
            raise FormatError(
                f"unwrapped master key has {len(master_key)} bytes, "
                f"expected {KEY_LENGTH}"
            )
        return master_key


# ---------------------------------------------------------------------------
# Keying strategies
# ---------------------------------------------------------------------------

class KeyingStrategy(ABC):
    """How a store obtains its content key and lays out its file."""

    name: str = ""

    @abstractmethod
    def create(self) -> None:
        """Prepare key material for a store file that does not exist yet."""

    @abstractmethod
    def unpack(self, text: str) -> str:
        """Load key material from file text and return the payload envelope."""

    @abstractmethod
    def derive_or_obtain_key(self) -> Secret:
        """Return the secret the payload envelope is encrypted with."""

    @abstractmethod
    def persist_key_metadata(self) -> Optional[dict[str, Any]]:
        """Return metadata stored next to the payload, if any."""

    @abstractmethod
    def pack(self, envelope: str) -> str:
        """Build file text around a payload envelope."""


class DirectSecretKeying(KeyingStrategy):
    """Caller-supplied secret; the file is the envelope itself."""

    name = "direct"

    def __init__(self, secret: Optional[Secret]):
        if not secret:
            raise ConfigurationError("a non-empty secret is required")
        self._secret = secret

    def create(self) -> None:
        pass

    def unpack(self, text: str) -> str:
        return text.strip()

    def derive_or_obtain_key(self) -> Secret:
        return self._secret

    def persist_key_metadata(self) -> None:
        return None

    def pack(self, envelope: str) -> str:
        return envelope

    def replace_secret(self, secret: Secret) -> None:
        if not secret:
            raise ConfigurationError("a non-empty secret is required")
        self._secret = secret


class WrappedMasterKeying(KeyingStrategy):
    """Self-managed master key protected by a key-wrapping collaborator."""

    name = "wrapped"

    def __init__(self, wrapper: MasterKeyWrapper):
        if wrapper is None:
            raise ConfigurationError("a master key wrapper is required")
        self.wrapper = wrapper
        self._master_key: Optional[bytes] = None

    def create(self) -> None:
        # A second master key would orphan every payload sealed with the first.
        if self._master_key is not None:
            raise RuntimeError("master key already exists for this store")
        self._master_key = self.wrapper.generate_master_key()
        logger.debug("Generated new store master key")

    def unpack(self, text: str) -> str:
        try:
            record = orjson.loads(text)
        except orjson.JSONDecodeError as err:
            raise CorruptionError("store file is not a valid JSON record") from err
        try:
            wrapped = record["metadata"]["key"]
            payload = record["payload"]
        except (KeyError, TypeError) as err:
            raise CorruptionError(
                "store record must contain metadata.key and payload"
            ) from err
        if not isinstance(wrapped, str) or not isinstance(payload, str):
            raise CorruptionError("metadata.key and payload must be strings")
        self._master_key = self.wrapper.unwrap(wrapped)
        return payload

    def derive_or_obtain_key(self) -> bytes:
        if self._master_key is None:
            raise RuntimeError("master key has not been created or loaded")
        return self._master_key

    def persist_key_metadata(self) -> dict[str, str]:
        return {"key": self.wrapper.wrap(self.derive_or_obtain_key())}

    def pack(self, envelope: str) -> str:
        record = {"metadata": self.persist_key_metadata(), "payload": envelope}
        return orjson.dumps(record).decode("utf-8")
