"""
Store Crypto Core: Key derivation, envelope encoding and serialization.

Envelope layout (then base64):
    [0:16) salt | [16:28) nonce | [28:44) tag | [44:end) ciphertext

Each encode draws a fresh salt and nonce, derives a 32-byte key with
scrypt(secret, salt) and encrypts with AES-256-GCM (no associated data).

Security Note:
    Never log plaintext, ciphertext or secrets.
    Wrong secret and tampered data are reported with the same error.
"""
import os
import base64
import binascii
from typing import Any, Union

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .exceptions import AuthenticationError, CorruptionError, FormatError

SALT_SIZE = 16
NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16  # 128-bit GCM tag
KEY_LENGTH = 32  # AES-256
HEADER_SIZE = SALT_SIZE + NONCE_SIZE + TAG_SIZE

# scrypt cost; encode and decode must agree, the envelope does not record them.
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1

Secret = Union[str, bytes]


def _secret_bytes(secret: Secret) -> bytes:
    if isinstance(secret, str):
        return secret.encode("utf-8")
    return bytes(secret)


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(secret: Secret, salt: bytes) -> bytes:
    """Derive a 32-byte encryption key using scrypt.

    Args:
        secret: Password, passphrase or raw key.
        salt: 16 random bytes stored in the envelope.

    Returns:
        32-byte derived key.
    """
    kdf = Scrypt(
        salt=salt,
        length=KEY_LENGTH,
        n=SCRYPT_N,
        r=SCRYPT_R,
        p=SCRYPT_P,
    )
    return kdf.derive(_secret_bytes(secret))


# ---------------------------------------------------------------------------
# Envelope codec
# ---------------------------------------------------------------------------

def encode_envelope(plaintext: bytes, secret: Secret) -> str:
    """Encrypt plaintext into a base64 envelope.

    Args:
        plaintext: Data to encrypt.
        secret: Secret the envelope key is derived from.

    Returns:
        base64(salt + nonce + tag + ciphertext) as ASCII text.
    """
    salt = os.urandom(SALT_SIZE)
    nonce = os.urandom(NONCE_SIZE)
    key = derive_key(secret, salt)
    # AESGCM appends the tag to the ciphertext.
    sealed = AESGCM(key).encrypt(nonce, plaintext, None)
    ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return base64.b64encode(salt + nonce + tag + ciphertext).decode("ascii")


def decode_envelope(envelope: Union[str, bytes], secret: Secret) -> bytes:
    """Decrypt and authenticate a base64 envelope.

    Args:
        envelope: Text produced by :func:`encode_envelope`.
        secret: Secret used at encode time.

    Returns:
        Decrypted plaintext bytes.

    Raises:
        FormatError: If the text is not base64 or shorter than the header.
        AuthenticationError: If the tag does not verify (wrong secret or
            corrupted data).
    """
    try:
        raw = base64.b64decode(envelope, validate=True)
    except (binascii.Error, ValueError) as err:
        raise FormatError("envelope is not valid base64") from err
    if len(raw) < HEADER_SIZE:
        raise FormatError(
            f"envelope too short: {len(raw)} bytes (minimum {HEADER_SIZE})"
        )
    salt = raw[:SALT_SIZE]
    nonce = raw[SALT_SIZE:SALT_SIZE + NONCE_SIZE]
    tag = raw[SALT_SIZE + NONCE_SIZE:HEADER_SIZE]
    ciphertext = raw[HEADER_SIZE:]
    key = derive_key(secret, salt)
    try:
        return AESGCM(key).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag as err:
        raise AuthenticationError("wrong secret or corrupted data") from err


# ---------------------------------------------------------------------------
# Mapping serialization
# ---------------------------------------------------------------------------

def serialize_mapping(mapping: dict[str, Any]) -> bytes:
    """Serialize the store mapping to JSON bytes."""
    return orjson.dumps(mapping)


def deserialize_mapping(data: bytes) -> dict[str, Any]:
    """Parse JSON bytes back into the store mapping.

    Raises:
        CorruptionError: If data is not JSON or not a JSON object.
    """
    try:
        parsed = orjson.loads(data)
    except orjson.JSONDecodeError as err:
        raise CorruptionError("store content is not valid JSON") from err
    if not isinstance(parsed, dict):
        raise CorruptionError(
            f"store content must be a JSON object, got {type(parsed).__name__}"
        )
    return parsed
