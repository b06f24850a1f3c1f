"""
SecureStore: Encrypted key-value store backed by a single local file.

Provides the public API:
- ``get(key, default)``: read from the in-memory mapping
- ``set(key, value)`` / ``delete(key)``: write and persist
- ``add`` / ``subtract`` / ``push``: read-modify-write helpers
- ``keys()`` / ``exists(key)`` / ``items()``: inspect the mapping
- ``open()``: factory that returns a store once it is ready

Every mutation re-encrypts the whole mapping and replaces the file before
returning, so callers observe durable state. Key derivation (scrypt) and
the file write run in worker threads; the event loop stays free meanwhile.

Values are stored as they read back from the file: each value goes
through a JSON round-trip first, so tuples become lists, datetimes become
ISO strings and the store never shares objects with the caller. NaN,
infinity and integers outside the 64-bit range are rejected before the
mapping changes.

Concurrency Note:
    Mutations are not serialized by the store. Two concurrent calls may
    interleave and the last full snapshot written wins. Pass ``lock=``
    (e.g. ``asyncio.Lock()``) to run each mutation inside it. Nothing
    coordinates separate processes sharing the same file.

Failure Note:
    A failed write raises ``StoreIOError`` and leaves the in-memory mapping
    already mutated; disk and memory differ until the next successful write
    (``flush()`` rewrites the current mapping).
"""
import math
import asyncio
import logging
import contextlib
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Union

import orjson

from .crypto import (
    Secret,
    encode_envelope,
    decode_envelope,
    serialize_mapping,
    deserialize_mapping,
)
from .exceptions import AuthenticationError, ConfigurationError, StoreIOError
from .keying import (
    KeyingStrategy,
    DirectSecretKeying,
    WrappedMasterKeying,
    MasterKeyWrapper,
)
from .storage import FileBackend

logger = logging.getLogger("secure_store")

DEFAULT_PATH = "./secure.db"

_MISSING = object()

Number = Union[int, float]


class StoreState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    FRESH = "fresh"
    LOADED = "loaded"
    READY = "ready"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Coercion policy
# ---------------------------------------------------------------------------

def is_number(value: Any) -> bool:
    """True for int and float values; bool is not a number here."""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_finite(value: Any) -> None:
    # orjson writes NaN and infinity as null.
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"Store values must be finite numbers, got {value!r}")
    elif isinstance(value, dict):
        for item in value.values():
            _check_finite(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _check_finite(item)


def _check_amount(amount: Any) -> None:
    if not is_number(amount):
        raise TypeError(f"amount must be a number, got {type(amount).__name__}")
    _check_finite(amount)


def coerce_numeric(value: Any) -> Number:
    """Return value when numeric, otherwise 0.

    ``add`` overwrites any non-numeric value with the result of 0 + amount.
    """
    return value if is_number(value) else 0


def coerce_sequence(value: Any) -> list:
    """Return value when it is a list, otherwise a new empty list.

    ``push`` overwrites any non-list value with a one-element list.
    """
    return value if isinstance(value, list) else []


class SecureStore:
    """Key-value mapping encrypted at rest.

    Exactly one of ``secret``, ``wrapper`` or ``keying`` selects how the
    content key is managed:

    - ``secret``: direct-secret variant, the file is one envelope.
    - ``wrapper``: wrapped-master-key variant, a random master key is
      generated on first use and stored wrapped by ``wrapper``.
    - ``keying``: a ready-made :class:`KeyingStrategy`.

    Loading is started by the first operation (or ``open()``) and shared by
    every operation issued before it completes. If loading fails, the same
    error is raised by every later operation.

    Args:
        path: Backing file location.
        secret: Secret for the direct-secret variant.
        wrapper: Key-wrapping collaborator for the wrapped variant.
        keying: Explicit keying strategy.
        backend: Byte I/O collaborator, defaults to :class:`FileBackend`.
        lock: Optional async context manager held around each mutation.
    """

    def __init__(
        self,
        path: Union[str, Path] = DEFAULT_PATH,
        secret: Optional[Secret] = None,
        *,
        wrapper: Optional[MasterKeyWrapper] = None,
        keying: Optional[KeyingStrategy] = None,
        backend: Optional[FileBackend] = None,
        lock: Optional[contextlib.AbstractAsyncContextManager] = None,
    ):
        chosen = [opt for opt in (secret, wrapper, keying) if opt is not None]
        if len(chosen) > 1:
            raise ConfigurationError(
                "pass only one of secret, wrapper or keying"
            )
        if keying is None:
            if wrapper is not None:
                keying = WrappedMasterKeying(wrapper)
            else:
                keying = DirectSecretKeying(secret)
        self._keying = keying
        self._backend = backend or FileBackend(path)
        self._lock = lock if lock is not None else contextlib.nullcontext()
        self._data: dict[str, Any] = {}
        self._state = StoreState.UNINITIALIZED
        self._ready: Optional[asyncio.Future] = None

    def __repr__(self) -> str:
        return (
            f"<SecureStore [{self._keying.name}, {self._state.value}] "
            f"backend={self._backend!r}>"
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def keying(self) -> KeyingStrategy:
        return self._keying

    @property
    def backend(self) -> FileBackend:
        return self._backend

    @property
    def lock(self) -> contextlib.AbstractAsyncContextManager:
        return self._lock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _initialize(self) -> None:
        self._state = StoreState.LOADING
        try:
            text = await self._backend.read()
            if text is None:
                self._keying.create()
                self._data = {}
                await self._save()
                self._state = StoreState.FRESH
                logger.info(
                    "Created new %s store at %s", self._keying.name, self._backend.path,
                )
            else:
                try:
                    envelope = self._keying.unpack(text)
                    plaintext = await asyncio.to_thread(
                        decode_envelope, envelope, self._keying.derive_or_obtain_key(),
                    )
                except AuthenticationError as err:
                    raise ConfigurationError(
                        "wrong secret or corrupted store"
                    ) from err
                self._data = deserialize_mapping(plaintext)
                self._state = StoreState.LOADED
                logger.info(
                    "Loaded %s store from %s: %d key(s)",
                    self._keying.name, self._backend.path, len(self._data),
                )
        except BaseException:
            self._state = StoreState.FAILED
            raise
        self._state = StoreState.READY

    async def ready(self) -> None:
        """Wait until the store file is loaded or created.

        Raises:
            ConfigurationError: Wrong secret or wrapping key.
            FormatError: Malformed envelope in the file.
            CorruptionError: Authenticated content is not a valid mapping.
            StoreIOError: The file could not be read or written.
        """
        if self._ready is None:
            self._ready = asyncio.ensure_future(self._initialize())
        await asyncio.shield(self._ready)

    @classmethod
    async def open(cls, *args, **kwargs) -> "SecureStore":
        """Create a store and wait until it is ready.

        Accepts the same arguments as the constructor.
        """
        store = cls(*args, **kwargs)
        await store.ready()
        return store

    async def _save(self) -> None:
        """Re-encrypt the whole mapping and replace the file."""
        plaintext = serialize_mapping(self._data)
        # scrypt runs in a worker thread; the snapshot above is already taken.
        envelope = await asyncio.to_thread(
            encode_envelope, plaintext, self._keying.derive_or_obtain_key(),
        )
        text = self._keying.pack(envelope)
        try:
            await self._backend.write(text)
        except StoreIOError as err:
            logger.error("Store write failed for %s: %s", self._backend.path, err)
            raise

    async def flush(self) -> None:
        """Rewrite the file from the current in-memory mapping."""
        await self.ready()
        async with self._lock:
            await self._save()

    async def rekey(
        self,
        apply: Callable[[], None],
        restore: Callable[[], None],
    ) -> None:
        """Change key material and rewrite the file under it.

        ``apply`` switches the keying strategy to the new material. If the
        rewrite fails, ``restore`` switches it back, so the store keeps
        matching the untouched file, and the error is re-raised.
        """
        await self.ready()
        async with self._lock:
            apply()
            try:
                await self._save()
            except BaseException:
                restore()
                raise

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_key(self, key: str) -> None:
        """Validate a store key.

        Raises:
            ValueError: If key is not a non-empty string.
        """
        if not isinstance(key, str) or not key:
            raise ValueError("Store key must be a non-empty string")

    def _normalize_value(self, value: Any) -> Any:
        """Return the value exactly as it will read back from the file.

        Tuples become lists, datetimes become ISO strings and the result
        shares no references with the caller's object.

        Raises:
            TypeError: If value is not JSON serializable (including integers
                outside the 64-bit range).
            ValueError: If value holds NaN or infinity.
        """
        _check_finite(value)
        try:
            return orjson.loads(orjson.dumps(value))
        except orjson.JSONEncodeError as err:
            raise TypeError(f"Store value is not JSON serializable: {err}") from err

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get(self, key: str, default: Any = None) -> Any:
        """Return the value stored at key, or default when absent.

        Never reads the file.
        """
        self._validate_key(key)
        await self.ready()
        return self._data.get(key, default)

    async def exists(self, key: str) -> bool:
        self._validate_key(key)
        await self.ready()
        return key in self._data

    async def keys(self) -> list[str]:
        await self.ready()
        return list(self._data.keys())

    async def items(self) -> dict[str, Any]:
        """Return a shallow copy of the whole mapping."""
        await self.ready()
        return dict(self._data)

    async def set(self, key: str, value: Any) -> Any:
        """Store value at key and persist.

        Args:
            key: Non-empty string.
            value: JSON-compatible value (number, str, bool, None, list, dict).

        Returns:
            The value as stored, after the JSON round-trip.

        Raises:
            TypeError: If value is not JSON serializable.
            ValueError: If value holds NaN or infinity.
            StoreIOError: If the file could not be written.
        """
        self._validate_key(key)
        value = self._normalize_value(value)
        await self.ready()
        async with self._lock:
            self._data[key] = value
            await self._save()
        logger.debug("Store set: key=%s", key)
        return value

    async def delete(self, key: str) -> bool:
        """Remove key and persist.

        Returns:
            True if key existed before removal, False otherwise.
        """
        self._validate_key(key)
        await self.ready()
        async with self._lock:
            existed = self._data.pop(key, _MISSING) is not _MISSING
            await self._save()
        logger.debug("Store delete: key=%s existed=%s", key, existed)
        return existed

    async def add(self, key: str, amount: Number) -> Number:
        """Add amount to the number at key and persist.

        A missing or non-numeric value counts as 0 and is overwritten.

        Returns:
            The new value.

        Raises:
            TypeError: If amount is not a number, or the result does not fit
                a 64-bit integer.
            ValueError: If amount or the result is NaN or infinite.
        """
        self._validate_key(key)
        _check_amount(amount)
        await self.ready()
        async with self._lock:
            value = coerce_numeric(self._data.get(key)) + amount
            value = self._normalize_value(value)
            self._data[key] = value
            await self._save()
        logger.debug("Store add: key=%s", key)
        return value

    async def subtract(self, key: str, amount: Number) -> Number:
        """Subtract amount from the number at key; same as ``add(key, -amount)``."""
        _check_amount(amount)
        return await self.add(key, -amount)

    async def push(self, key: str, value: Any) -> list:
        """Append value to the list at key and persist.

        A missing or non-list value is replaced by an empty list first.

        Returns:
            The list after appending.
        """
        self._validate_key(key)
        value = self._normalize_value(value)
        await self.ready()
        async with self._lock:
            sequence = coerce_sequence(self._data.get(key))
            sequence.append(value)
            self._data[key] = sequence
            await self._save()
        logger.debug("Store push: key=%s length=%d", key, len(sequence))
        return sequence

