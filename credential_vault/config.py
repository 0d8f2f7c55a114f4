"""
Vault Configuration — Master key loading and validated settings.

Reads settings from environment variables:
    VAULT_MASTER_KEY = <base64-encoded key, at least 32 bytes>
    VAULT_CIPHER_BACKEND = aesgcm | chacha20
    VAULT_MAX_SECRET_BYTES = <integer>
    VAULT_COLLABORATOR_TIMEOUT = <seconds>

This is the only module that touches the environment; the cryptographic core
and CredentialService receive everything by injection.

Security Note:
    Never log key material. Only log variable names and key lengths.
"""
import os
import base64
import binascii
import secrets
import logging
from typing import Protocol

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("credential_vault.config")

MASTER_KEY_ENV = "VAULT_MASTER_KEY"
MIN_MASTER_KEY_BYTES = 32


class MasterKeyProvider(Protocol):
    def current(self) -> bytes:
        ...


def load_master_key(env_var: str = MASTER_KEY_ENV) -> bytes:
    """Load the master key from a base64-encoded environment variable.

    Returns:
        Raw master key bytes.

    Raises:
        RuntimeError: If the variable is not set.
        ValueError: If the value is not base64 or decodes to fewer than 32 bytes.
    """
    value = os.environ.get(env_var)
    if not value:
        raise RuntimeError(
            f"{env_var} is not set. "
            f"Set {env_var}=<base64-encoded-32-byte-key>"
        )
    try:
        key_bytes = base64.b64decode(value, validate=True)
    except binascii.Error:
        raise ValueError(f"{env_var} is not valid base64") from None
    if len(key_bytes) < MIN_MASTER_KEY_BYTES:
        raise ValueError(
            f"{env_var} must decode to at least {MIN_MASTER_KEY_BYTES} bytes, "
            f"got {len(key_bytes)}"
        )
    logger.debug("Loaded master key from %s (%d bytes)", env_var, len(key_bytes))
    return key_bytes


def generate_master_key() -> str:
    """Generate a random 32-byte master key and return as base64 string.

    This is a utility for operators to generate new keys.
    """
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")


class StaticKeyProvider:
    """Serves a fixed master key."""

    def __init__(self, key: bytes) -> None:
        if len(key) < MIN_MASTER_KEY_BYTES:
            raise ValueError(
                f"Master key must be at least {MIN_MASTER_KEY_BYTES} bytes, "
                f"got {len(key)}"
            )
        self._key = key

    def __repr__(self) -> str:
        return "<StaticKeyProvider>"

    def current(self) -> bytes:
        return self._key


class EnvironmentKeyProvider:
    """Reads the master key from the environment on first use, then caches it.

    Swapping keys means building a new provider; cipher code never changes.
    """

    def __init__(self, env_var: str = MASTER_KEY_ENV) -> None:
        self._env_var = env_var
        self._key: bytes | None = None

    def __repr__(self) -> str:
        return f"<EnvironmentKeyProvider {self._env_var}>"

    def current(self) -> bytes:
        if self._key is None:
            self._key = load_master_key(self._env_var)
        return self._key


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    master_key: bytes = Field(repr=False)
    cipher_backend: str = Field(default="aesgcm")
    max_secret_bytes: int = Field(default=1_048_576, ge=1)
    collaborator_timeout: float = Field(default=1.0, gt=0)

    model_config = {"hide_input_in_errors": True}

    @field_validator("master_key")
    @classmethod
    def validate_master_key(cls, v: bytes) -> bytes:
        """Ensure the master key is long enough."""
        if len(v) < MIN_MASTER_KEY_BYTES:
            raise ValueError(
                f"master_key must be at least {MIN_MASTER_KEY_BYTES} bytes"
            )
        return v

    @field_validator("cipher_backend")
    @classmethod
    def validate_cipher(cls, v: str) -> str:
        """Validate cipher backend is supported."""
        if v not in ("aesgcm", "chacha20"):
            raise ValueError(f"Unsupported cipher backend: {v}")
        return v

    def key_provider(self) -> StaticKeyProvider:
        return StaticKeyProvider(self.master_key)

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Returns:
            Populated VaultConfig instance.
        """
        master_key = load_master_key()
        values = {
            "master_key": master_key,
            "cipher_backend": os.environ.get("VAULT_CIPHER_BACKEND", "aesgcm"),
        }
        if "VAULT_MAX_SECRET_BYTES" in os.environ:
            values["max_secret_bytes"] = os.environ["VAULT_MAX_SECRET_BYTES"]
        if "VAULT_COLLABORATOR_TIMEOUT" in os.environ:
            values["collaborator_timeout"] = os.environ["VAULT_COLLABORATOR_TIMEOUT"]
        return cls(**values)
