"""Tests for vault configuration and master key providers."""
import base64
import secrets

import pytest
from pydantic import ValidationError

from credential_vault.config import (
    EnvironmentKeyProvider,
    StaticKeyProvider,
    VaultConfig,
    generate_master_key,
    load_master_key,
)


@pytest.fixture
def encoded_key():
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "VAULT_MASTER_KEY",
        "VAULT_CIPHER_BACKEND",
        "VAULT_MAX_SECRET_BYTES",
        "VAULT_COLLABORATOR_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)


class TestLoadMasterKey:
    def test_loads_base64_key(self, monkeypatch, encoded_key):
        monkeypatch.setenv("VAULT_MASTER_KEY", encoded_key)
        assert load_master_key() == base64.b64decode(encoded_key)

    def test_missing(self):
        with pytest.raises(RuntimeError, match="VAULT_MASTER_KEY"):
            load_master_key()

    def test_too_short(self, monkeypatch):
        monkeypatch.setenv("VAULT_MASTER_KEY", base64.b64encode(b"short").decode())
        with pytest.raises(ValueError, match="at least 32 bytes"):
            load_master_key()

    def test_not_base64(self, monkeypatch):
        monkeypatch.setenv("VAULT_MASTER_KEY", "not base64!!")
        with pytest.raises(ValueError, match="not valid base64"):
            load_master_key()

    def test_custom_variable(self, monkeypatch, encoded_key):
        monkeypatch.setenv("OTHER_KEY", encoded_key)
        assert len(load_master_key("OTHER_KEY")) == 32

    def test_generate_master_key(self):
        key = generate_master_key()
        assert len(base64.b64decode(key)) == 32
        assert generate_master_key() != key


class TestKeyProviders:
    def test_static_provider(self):
        key = secrets.token_bytes(32)
        provider = StaticKeyProvider(key)
        assert provider.current() == key
        assert key.hex() not in repr(provider)

    def test_static_provider_rejects_short_key(self):
        with pytest.raises(ValueError):
            StaticKeyProvider(b"short")

    def test_environment_provider_caches(self, monkeypatch, encoded_key):
        monkeypatch.setenv("VAULT_MASTER_KEY", encoded_key)
        provider = EnvironmentKeyProvider()
        first = provider.current()
        monkeypatch.setenv("VAULT_MASTER_KEY", generate_master_key())
        assert provider.current() is first

    def test_environment_provider_missing(self):
        with pytest.raises(RuntimeError):
            EnvironmentKeyProvider().current()


class TestVaultConfig:
    def test_defaults(self):
        config = VaultConfig(master_key=secrets.token_bytes(32))
        assert config.cipher_backend == "aesgcm"
        assert config.max_secret_bytes == 1_048_576
        assert config.collaborator_timeout == 1.0

    def test_from_env(self, monkeypatch, encoded_key):
        monkeypatch.setenv("VAULT_MASTER_KEY", encoded_key)
        monkeypatch.setenv("VAULT_CIPHER_BACKEND", "chacha20")
        monkeypatch.setenv("VAULT_MAX_SECRET_BYTES", "4096")
        monkeypatch.setenv("VAULT_COLLABORATOR_TIMEOUT", "1.5")
        config = VaultConfig.from_env()
        assert config.master_key == base64.b64decode(encoded_key)
        assert config.cipher_backend == "chacha20"
        assert config.max_secret_bytes == 4096
        assert config.collaborator_timeout == 1.5
        assert config.key_provider().current() == config.master_key

    def test_invalid_backend(self):
        with pytest.raises(ValidationError, match="Unsupported cipher backend"):
            VaultConfig(master_key=secrets.token_bytes(32), cipher_backend="rot13")

    def test_short_key_not_echoed(self):
        key = b"0123456789abcdef"
        with pytest.raises(ValidationError) as exc:
            VaultConfig(master_key=key)
        assert "0123456789abcdef" not in str(exc.value)

    def test_key_hidden_from_repr(self):
        key = b"k" * 32
        assert "kkkk" not in repr(VaultConfig(master_key=key))
