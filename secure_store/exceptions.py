"""Secure Store exceptions."""


class SecureStoreError(Exception):
    """Base class for all store errors."""


class ConfigurationError(SecureStoreError):
    """Store cannot be used with the given configuration.

    Raised for a missing secret, invalid construction arguments and a wrong
    secret (or wrapping key) detected while loading an existing file.
    """


class FormatError(SecureStoreError):
    """Envelope or wrapped-key text is malformed."""


class AuthenticationError(SecureStoreError):
    """Authentication tag did not verify.

    Wrong secret and tampered data raise the same error.
    """


class CorruptionError(SecureStoreError):
    """Authenticated content is not a valid store record."""


class StoreIOError(SecureStoreError, OSError):
    """Reading or writing the backing file failed."""
