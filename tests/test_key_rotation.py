"""
Tests for secret and wrapping-key rotation.
"""
import os
import asyncio

import orjson
import pytest

from secure_store.exceptions import ConfigurationError, StoreIOError
from secure_store.key_rotation import rotate_secret, rotate_wrapping_key
from secure_store.keying import AESKeyWrapper
from secure_store.storage import FileBackend
from secure_store.store import SecureStore


class BrokenBackend(FileBackend):
    broken = False

    async def write(self, text):
        if self.broken:
            raise StoreIOError("read-only filesystem")
        await super().write(text)


@pytest.fixture
def keys():
    return {1: os.urandom(32), 2: os.urandom(32)}


class TestRotateSecret:
    """Tests for rotate_secret."""

    async def test_rotation(self, tmp_path):
        """Test only the new secret opens the store after rotation."""
        path = tmp_path / "s.db"
        store = await SecureStore.open(path, "old")
        await store.set("n", 5)
        stats = await rotate_secret(store, "new")
        assert stats == {"mode": "direct", "keys": 1}
        assert await (await SecureStore.open(path, "new")).get("n") == 5
        with pytest.raises(ConfigurationError):
            await SecureStore.open(path, "old")

    async def test_store_keeps_working(self, tmp_path):
        """Test later writes use the new secret."""
        path = tmp_path / "s.db"
        store = await SecureStore.open(path, "old")
        await rotate_secret(store, "new")
        await store.set("after", True)
        assert await (await SecureStore.open(path, "new")).get("after") is True

    async def test_empty_secret(self, tmp_path):
        """Test an empty replacement secret is rejected."""
        store = await SecureStore.open(tmp_path / "s.db", "old")
        with pytest.raises(ConfigurationError):
            await rotate_secret(store, "")

    async def test_requires_direct_store(self, tmp_path, keys):
        """Test wrapped stores cannot rotate a secret."""
        store = await SecureStore.open(
            tmp_path / "w.db", wrapper=AESKeyWrapper(keys, 1),
        )
        with pytest.raises(ConfigurationError):
            await rotate_secret(store, "new")

    async def test_failed_write_keeps_old_secret(self, tmp_path):
        """Test a failed rotation leaves the old secret in place."""
        path = tmp_path / "s.db"
        backend = BrokenBackend(path)
        store = await SecureStore.open(secret="old", backend=backend)
        await store.set("n", 1)
        backend.broken = True
        with pytest.raises(StoreIOError):
            await rotate_secret(store, "new")
        backend.broken = False
        await store.set("n", 2)
        assert await (await SecureStore.open(path, "old")).get("n") == 2


class TestRotateWrappingKey:
    """Tests for rotate_wrapping_key."""

    async def test_rotation(self, tmp_path, keys):
        """Test the master key is re-wrapped under the new version."""
        path = tmp_path / "w.db"
        wrapper = AESKeyWrapper(keys, 1)
        store = await SecureStore.open(path, wrapper=wrapper)
        master = store.keying.derive_or_obtain_key()
        await store.set("n", 5)

        stats = await rotate_wrapping_key(store, 2)
        assert stats == {"old_key_id": 1, "new_key_id": 2, "keys": 1}
        assert wrapper.active_key_id == 2

        only_new = AESKeyWrapper({2: keys[2]}, 2)
        record = orjson.loads(path.read_text())
        assert only_new.unwrap(record["metadata"]["key"]) == master
        reopened = await SecureStore.open(path, wrapper=only_new)
        assert await reopened.get("n") == 5

    async def test_old_version_no_longer_opens(self, tmp_path, keys):
        """Test the retired wrapping key cannot open the rotated file."""
        path = tmp_path / "w.db"
        store = await SecureStore.open(path, wrapper=AESKeyWrapper(keys, 1))
        await rotate_wrapping_key(store, 2)
        with pytest.raises(ConfigurationError):
            await SecureStore.open(path, wrapper=AESKeyWrapper({1: keys[1]}, 1))

    async def test_unknown_version(self, tmp_path, keys):
        """Test rotating to an unconfigured version fails without changes."""
        path = tmp_path / "w.db"
        wrapper = AESKeyWrapper(keys, 1)
        store = await SecureStore.open(path, wrapper=wrapper)
        content = path.read_text()
        with pytest.raises(ConfigurationError):
            await rotate_wrapping_key(store, 3)
        assert wrapper.active_key_id == 1
        assert path.read_text() == content

    async def test_failed_write_keeps_old_version(self, tmp_path, keys):
        """Test a failed rotation restores the active version."""
        path = tmp_path / "w.db"
        backend = BrokenBackend(path)
        wrapper = AESKeyWrapper(keys, 1)
        store = await SecureStore.open(wrapper=wrapper, backend=backend)
        backend.broken = True
        with pytest.raises(StoreIOError):
            await rotate_wrapping_key(store, 2)
        assert wrapper.active_key_id == 1

    async def test_requires_wrapped_store(self, tmp_path):
        """Test direct stores cannot rotate a wrapping key."""
        store = await SecureStore.open(tmp_path / "s.db", "secret")
        with pytest.raises(ConfigurationError):
            await rotate_wrapping_key(store, 2)


class TestRotationLocking:
    """Tests for rotation going through the store's mutation path."""

    async def test_rotation_holds_store_lock(self, tmp_path):
        """Test the rewrite during rotation happens inside the store lock."""
        lock = asyncio.Lock()
        seen = []

        class RecordingBackend(FileBackend):
            async def write(self, text):
                seen.append(lock.locked())
                await super().write(text)

        path = tmp_path / "s.db"
        store = await SecureStore.open(
            secret="old", backend=RecordingBackend(path), lock=lock,
        )
        await rotate_secret(store, "new")
        assert seen == [False, True]
        assert await (await SecureStore.open(path, "new")).keys() == []
