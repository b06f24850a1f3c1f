"""
Store Configuration: Wrapping key loading and validated settings.

Reads settings from environment variables:
    SECURE_STORE_PATH = <file path>                      (default ./secure.db)
    SECURE_STORE_MODE = direct | wrapped                 (default direct)
    SECURE_STORE_SECRET = <passphrase>                   (direct mode)
    SECURE_STORE_WRAP_KEY_v{N} = <base64 32-byte key>    (wrapped mode)
    SECURE_STORE_ACTIVE_WRAP_KEY_ID = <integer>          (wrapped mode)

Security Note:
    Never log key material or secrets. Only log key IDs and versions.
"""
import os
import re
import base64
import binascii
import logging
from typing import Literal, Optional

from pydantic import BaseModel, Field, SecretStr, model_validator

from .crypto import KEY_LENGTH
from .keying import AESKeyWrapper
from .store import DEFAULT_PATH, SecureStore

logger = logging.getLogger("secure_store")

_KEY_ENV_PATTERN = re.compile(r"^SECURE_STORE_WRAP_KEY_v(\d+)$")


def _decode_wrapping_key(name: str, value: str) -> bytes:
    try:
        key = base64.b64decode(value, validate=True)
    except binascii.Error as err:
        raise ValueError(f"{name} is not valid base64") from err
    if len(key) != KEY_LENGTH:
        raise ValueError(
            f"{name} must decode to exactly {KEY_LENGTH} bytes, got {len(key)}"
        )
    return key


def load_wrapping_keys() -> dict[int, bytes]:
    """Collect the wrapping keys an :class:`AESKeyWrapper` can unwrap with.

    Every ``SECURE_STORE_WRAP_KEY_v{N}`` variable contributes version N.
    Retired versions stay listed after a rotation so older store files
    still open; only ``SECURE_STORE_ACTIVE_WRAP_KEY_ID`` picks the one new
    writes use.

    Raises:
        RuntimeError: If no version is configured; a wrapped store cannot
            be created or opened without one.
        ValueError: If a variable is not base64 of a 32-byte key.
    """
    keys: dict[int, bytes] = {}
    for name in sorted(os.environ):
        match = _KEY_ENV_PATTERN.match(name)
        if match:
            keys[int(match.group(1))] = _decode_wrapping_key(name, os.environ[name])
    if not keys:
        raise RuntimeError(
            "wrapped mode needs SECURE_STORE_WRAP_KEY_v{N}; "
            "create one with secure_store.generate_wrapping_key()"
        )
    logger.debug("Wrapping key versions available: %s", sorted(keys))
    return keys


def get_active_wrap_key_id() -> int:
    """Version of the wrapping key used when the store file is rewritten.

    Raises:
        RuntimeError: If SECURE_STORE_ACTIVE_WRAP_KEY_ID is not set.
        ValueError: If the value is not a valid integer.
    """
    raw = os.environ.get("SECURE_STORE_ACTIVE_WRAP_KEY_ID")
    if raw is None:
        raise RuntimeError(
            "SECURE_STORE_ACTIVE_WRAP_KEY_ID environment variable is not set"
        )
    return int(raw)


def generate_wrapping_key() -> str:
    """New value for a ``SECURE_STORE_WRAP_KEY_v{N}`` variable.

    Add it under an unused version, then move a store onto it with
    :func:`secure_store.rotate_wrapping_key`.
    """
    return base64.b64encode(os.urandom(KEY_LENGTH)).decode("ascii")


class StoreConfig(BaseModel):
    """Validated store configuration."""

    path: str = Field(default=DEFAULT_PATH, min_length=1)
    mode: Literal["direct", "wrapped"] = "direct"
    secret: Optional[SecretStr] = None
    wrapping_keys: dict[int, bytes] = Field(default_factory=dict)
    active_wrap_key_id: Optional[int] = None

    model_config = {"arbitrary_types_allowed": True}

    @model_validator(mode="after")
    def validate_mode(self) -> "StoreConfig":
        """Ensure the selected mode has its key material."""
        if self.mode == "direct":
            if self.secret is None or not self.secret.get_secret_value():
                raise ValueError("direct mode requires a non-empty secret")
        else:
            if not self.wrapping_keys:
                raise ValueError("wrapped mode requires at least one wrapping key")
            if self.active_wrap_key_id not in self.wrapping_keys:
                raise ValueError(
                    f"active_wrap_key_id {self.active_wrap_key_id} not found in "
                    f"wrapping_keys (available: {sorted(self.wrapping_keys.keys())})"
                )
        return self

    @classmethod
    def from_env(cls) -> "StoreConfig":
        """Create StoreConfig by loading values from environment."""
        mode = os.environ.get("SECURE_STORE_MODE", "direct").lower()
        params = {
            "path": os.environ.get("SECURE_STORE_PATH", DEFAULT_PATH),
            "mode": mode,
        }
        if mode == "wrapped":
            params["wrapping_keys"] = load_wrapping_keys()
            params["active_wrap_key_id"] = get_active_wrap_key_id()
        else:
            params["secret"] = os.environ.get("SECURE_STORE_SECRET")
        return cls(**params)

    def create_store(self, **kwargs) -> SecureStore:
        """Build the configured store; kwargs are passed to SecureStore."""
        if self.mode == "wrapped":
            wrapper = AESKeyWrapper(self.wrapping_keys, self.active_wrap_key_id)
            return SecureStore(self.path, wrapper=wrapper, **kwargs)
        return SecureStore(self.path, self.secret.get_secret_value(), **kwargs)
