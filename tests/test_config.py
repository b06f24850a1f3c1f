"""
Tests for store configuration and environment loading.
"""
import os
import base64

import pytest
from pydantic import ValidationError

from secure_store.config import (
    StoreConfig,
    generate_wrapping_key,
    get_active_wrap_key_id,
    load_wrapping_keys,
)
from secure_store.key_rotation import rotate_wrapping_key
from secure_store.keying import (
    AESKeyWrapper,
    DirectSecretKeying,
    WrappedMasterKeying,
)
from secure_store.store import DEFAULT_PATH, SecureStore


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every SECURE_STORE_* variable from the environment."""
    for name in list(os.environ):
        if name.startswith("SECURE_STORE_"):
            monkeypatch.delenv(name)
    return monkeypatch


class TestWrappingKeyLoading:
    """Tests for load_wrapping_keys and friends."""

    def test_generate_wrapping_key(self):
        """Test generated keys are base64 of 32 bytes."""
        key = generate_wrapping_key()
        assert len(base64.b64decode(key)) == 32
        assert key != generate_wrapping_key()

    def test_load_versions(self, clean_env):
        """Test every SECURE_STORE_WRAP_KEY_v{N} is loaded."""
        first, second = generate_wrapping_key(), generate_wrapping_key()
        clean_env.setenv("SECURE_STORE_WRAP_KEY_v1", first)
        clean_env.setenv("SECURE_STORE_WRAP_KEY_v3", second)
        keys = load_wrapping_keys()
        assert sorted(keys) == [1, 3]
        assert keys[3] == base64.b64decode(second)

    def test_no_keys(self, clean_env):
        """Test an environment without keys raises RuntimeError."""
        with pytest.raises(RuntimeError):
            load_wrapping_keys()

    def test_bad_length(self, clean_env):
        """Test keys that are not 32 bytes are rejected."""
        clean_env.setenv(
            "SECURE_STORE_WRAP_KEY_v1", base64.b64encode(b"short").decode(),
        )
        with pytest.raises(ValueError, match="32 bytes"):
            load_wrapping_keys()

    def test_bad_base64(self, clean_env):
        """Test keys that are not base64 are rejected."""
        clean_env.setenv("SECURE_STORE_WRAP_KEY_v1", "not base64!")
        with pytest.raises(ValueError, match="base64"):
            load_wrapping_keys()

    def test_active_key_id(self, clean_env):
        """Test the active key id is read as an integer."""
        with pytest.raises(RuntimeError):
            get_active_wrap_key_id()
        clean_env.setenv("SECURE_STORE_ACTIVE_WRAP_KEY_ID", "4")
        assert get_active_wrap_key_id() == 4

    def test_no_keys_names_the_variable(self, clean_env):
        """Test the missing-key error says which variable to set and how."""
        with pytest.raises(RuntimeError) as err:
            load_wrapping_keys()
        assert "SECURE_STORE_WRAP_KEY_v" in str(err.value)
        assert "generate_wrapping_key" in str(err.value)

    def test_bad_key_names_the_variable(self, clean_env):
        """Test the error points at the variable holding the bad key."""
        clean_env.setenv("SECURE_STORE_WRAP_KEY_v1", generate_wrapping_key())
        clean_env.setenv(
            "SECURE_STORE_WRAP_KEY_v7", base64.b64encode(os.urandom(16)).decode(),
        )
        with pytest.raises(ValueError, match="SECURE_STORE_WRAP_KEY_v7"):
            load_wrapping_keys()

    def test_ignores_similar_names(self, clean_env):
        """Test only exact SECURE_STORE_WRAP_KEY_v{N} names are versions."""
        clean_env.setenv("SECURE_STORE_WRAP_KEY_v2", generate_wrapping_key())
        clean_env.setenv("SECURE_STORE_WRAP_KEY_vX", "ignored")
        clean_env.setenv("SECURE_STORE_WRAP_KEY_v2_OLD", "ignored")
        assert sorted(load_wrapping_keys()) == [2]

    async def test_generated_key_rotates_store(self, clean_env, tmp_path):
        """Test a generated key added under a new version can take over a store."""
        path = tmp_path / "wrapped.db"
        clean_env.setenv("SECURE_STORE_WRAP_KEY_v1", generate_wrapping_key())
        store = await SecureStore.open(
            path, wrapper=AESKeyWrapper(load_wrapping_keys(), 1),
        )
        await store.set("k", "v")

        clean_env.setenv("SECURE_STORE_WRAP_KEY_v2", generate_wrapping_key())
        keys = load_wrapping_keys()
        store = await SecureStore.open(path, wrapper=AESKeyWrapper(keys, 1))
        stats = await rotate_wrapping_key(store, 2)
        assert stats == {"old_key_id": 1, "new_key_id": 2, "keys": 1}

        only_new = {2: keys[2]}
        reopened = await SecureStore.open(path, wrapper=AESKeyWrapper(only_new, 2))
        assert await reopened.get("k") == "v"


class TestStoreConfig:
    """Tests for StoreConfig validation."""

    def test_direct_defaults(self):
        """Test a direct config with a secret."""
        config = StoreConfig(secret="pass")
        assert config.mode == "direct"
        assert config.path == DEFAULT_PATH
        assert config.secret.get_secret_value() == "pass"

    def test_secret_is_hidden(self):
        """Test the secret does not appear in repr."""
        assert "pass" not in repr(StoreConfig(secret="pass"))

    @pytest.mark.parametrize("secret", [None, ""])
    def test_direct_requires_secret(self, secret):
        """Test the direct mode rejects a missing secret."""
        with pytest.raises(ValidationError):
            StoreConfig(secret=secret)

    def test_wrapped_requires_active_key(self):
        """Test the wrapped mode needs the active key in wrapping_keys."""
        with pytest.raises(ValidationError):
            StoreConfig(mode="wrapped")
        with pytest.raises(ValidationError, match="not found"):
            StoreConfig(
                mode="wrapped",
                wrapping_keys={1: os.urandom(32)},
                active_wrap_key_id=2,
            )

    def test_unknown_mode(self):
        """Test only direct and wrapped modes are accepted."""
        with pytest.raises(ValidationError):
            StoreConfig(mode="plain", secret="pass")

    def test_from_env_direct(self, clean_env, tmp_path):
        """Test a direct config from environment."""
        path = str(tmp_path / "env.db")
        clean_env.setenv("SECURE_STORE_PATH", path)
        clean_env.setenv("SECURE_STORE_SECRET", "from-env")
        config = StoreConfig.from_env()
        assert config.mode == "direct"
        assert config.path == path
        assert config.secret.get_secret_value() == "from-env"

    def test_from_env_direct_without_secret(self, clean_env):
        """Test the environment must provide a secret in direct mode."""
        with pytest.raises(ValidationError):
            StoreConfig.from_env()

    def test_from_env_wrapped(self, clean_env):
        """Test a wrapped config from environment."""
        clean_env.setenv("SECURE_STORE_MODE", "WRAPPED")
        clean_env.setenv("SECURE_STORE_WRAP_KEY_v2", generate_wrapping_key())
        clean_env.setenv("SECURE_STORE_ACTIVE_WRAP_KEY_ID", "2")
        config = StoreConfig.from_env()
        assert config.mode == "wrapped"
        assert config.active_wrap_key_id == 2
        assert len(config.wrapping_keys[2]) == 32


class TestCreateStore:
    """Tests for StoreConfig.create_store."""

    async def test_direct_store(self, tmp_path):
        """Test a direct config builds a working direct store."""
        config = StoreConfig(path=str(tmp_path / "d.db"), secret="pass")
        store = config.create_store()
        assert isinstance(store.keying, DirectSecretKeying)
        await store.set("n", 1)
        assert await config.create_store().get("n") == 1

    async def test_wrapped_store(self, tmp_path):
        """Test a wrapped config builds a working wrapped store."""
        config = StoreConfig(
            path=str(tmp_path / "w.db"),
            mode="wrapped",
            wrapping_keys={1: os.urandom(32)},
            active_wrap_key_id=1,
        )
        store = config.create_store()
        assert isinstance(store.keying, WrappedMasterKeying)
        await store.set("n", 1)
        assert await config.create_store().get("n") == 1
