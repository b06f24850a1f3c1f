"""
Store Key Rotation: Re-encrypt a store under new key material.

- ``rotate_secret``: direct-secret stores, switch to a new secret.
- ``rotate_wrapping_key``: wrapped stores, re-wrap the master key under
  another configured wrapping key version. The master key itself is kept.

Each rotation rewrites the file once. If the write fails, the store keeps
its previous key material, which still matches the untouched file.

Security Note:
    Never log secrets or key material. Only log key versions.
"""
import logging
from typing import Any

from .crypto import Secret
from .exceptions import ConfigurationError
from .keying import AESKeyWrapper, DirectSecretKeying, WrappedMasterKeying
from .store import SecureStore

logger = logging.getLogger("secure_store")


async def rotate_secret(store: SecureStore, new_secret: Secret) -> dict[str, Any]:
    """Re-encrypt a direct-secret store under new_secret.

    Args:
        store: Store created with a secret.
        new_secret: Non-empty replacement secret.

    Returns:
        Stats dict with keys: mode, keys.

    Raises:
        ConfigurationError: If the store is not a direct-secret store or
            new_secret is empty.
    """
    keying = store.keying
    if not isinstance(keying, DirectSecretKeying):
        raise ConfigurationError("rotate_secret requires a direct-secret store")
    if not new_secret:
        raise ConfigurationError("a non-empty secret is required")
    old_secret = keying.derive_or_obtain_key()
    await store.rekey(
        lambda: keying.replace_secret(new_secret),
        lambda: keying.replace_secret(old_secret),
    )
    stats = {"mode": keying.name, "keys": len(await store.keys())}
    logger.info("Store secret rotated: %s", stats)
    return stats


async def rotate_wrapping_key(store: SecureStore, new_key_id: int) -> dict[str, Any]:
    """Re-wrap the master key of a wrapped store under new_key_id.

    Args:
        store: Store created with an :class:`AESKeyWrapper`.
        new_key_id: Wrapping key version to switch to.

    Returns:
        Stats dict with keys: old_key_id, new_key_id, keys.

    Raises:
        ConfigurationError: If the store is not wrapped by an AESKeyWrapper,
            or new_key_id is not configured.
    """
    keying = store.keying
    if not isinstance(keying, WrappedMasterKeying) or not isinstance(
        keying.wrapper, AESKeyWrapper
    ):
        raise ConfigurationError(
            "rotate_wrapping_key requires a store wrapped by AESKeyWrapper"
        )
    wrapper = keying.wrapper
    await store.ready()
    old_key_id = wrapper.active_key_id
    logger.info(
        "Starting wrapping key rotation from v%d to v%d", old_key_id, new_key_id,
    )
    await store.rekey(
        lambda: setattr(wrapper, "active_key_id", new_key_id),
        lambda: setattr(wrapper, "active_key_id", old_key_id),
    )
    stats = {
        "old_key_id": old_key_id,
        "new_key_id": new_key_id,
        "keys": len(await store.keys()),
    }
    logger.info("Wrapping key rotation complete: %s", stats)
    return stats
