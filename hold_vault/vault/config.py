"""
Vault Configuration — Key derivation and storage settings.

Reads optional overrides from environment variables:
    HOLD_VAULT_PBKDF2_ITERATIONS = <integer, >= 600000>
    HOLD_VAULT_SALT_PREFIX = <application tag used in per-user salts>
    HOLD_VAULT_CIPHER_BACKEND = aesgcm | chacha20
    HOLD_VAULT_COLLECTION = <remote collection name>
    HOLD_VAULT_REJECT_PWNED = 1 | 0

Security Note:
    The salt prefix is not secret. Changing it (or the iteration count)
    changes every derived key and makes existing ciphertext unreadable.
"""
import os
import logging

from pydantic import BaseModel, Field, field_validator, model_validator

from ..pwned import DEFAULT_PWNED_API_URL

logger = logging.getLogger("hold_vault.vault")

MIN_PBKDF2_ITERATIONS = 600_000
DEFAULT_SALT_PREFIX = "HOLD_APP_SECURE_SALT_v1_"

_TRUE_VALUES = ("1", "true", "yes", "on")


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    pbkdf2_iterations: int = Field(default=MIN_PBKDF2_ITERATIONS, ge=1)
    allow_weak_kdf: bool = False
    salt_prefix: str = Field(default=DEFAULT_SALT_PREFIX, min_length=1)
    cipher_backend: str = Field(default="aesgcm")
    collection: str = Field(default="holds", min_length=1)
    reject_pwned_passwords: bool = False
    pwned_api_url: str = DEFAULT_PWNED_API_URL
    pwned_timeout: float = Field(default=5.0, gt=0)

    model_config = {"frozen": True}

    @field_validator("cipher_backend")
    @classmethod
    def validate_cipher(cls, v: str) -> str:
        """Validate cipher backend is supported."""
        v = v.lower()
        if v not in ("aesgcm", "chacha20"):
            raise ValueError(f"Unsupported cipher backend: {v}")
        return v

    @field_validator("collection")
    @classmethod
    def validate_collection(cls, v: str) -> str:
        if "/" in v:
            raise ValueError("Collection name cannot contain '/'")
        return v

    @model_validator(mode="after")
    def validate_kdf_cost(self) -> "VaultConfig":
        """Refuse a cheap password stretch unless explicitly allowed."""
        if self.pbkdf2_iterations < MIN_PBKDF2_ITERATIONS and not self.allow_weak_kdf:
            raise ValueError(
                f"pbkdf2_iterations must be at least {MIN_PBKDF2_ITERATIONS} "
                f"(got {self.pbkdf2_iterations})"
            )
        return self

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Returns:
            Populated VaultConfig instance.
        """
        values = {}
        iterations = os.environ.get("HOLD_VAULT_PBKDF2_ITERATIONS")
        if iterations is not None:
            values["pbkdf2_iterations"] = int(iterations)
        prefix = os.environ.get("HOLD_VAULT_SALT_PREFIX")
        if prefix:
            values["salt_prefix"] = prefix
        values["cipher_backend"] = os.environ.get(
            "HOLD_VAULT_CIPHER_BACKEND", "aesgcm"
        )
        collection = os.environ.get("HOLD_VAULT_COLLECTION")
        if collection:
            values["collection"] = collection
        reject = os.environ.get("HOLD_VAULT_REJECT_PWNED")
        if reject is not None:
            values["reject_pwned_passwords"] = reject.strip().lower() in _TRUE_VALUES
        config = cls(**values)
        logger.debug(
            "Vault config loaded: backend=%s iterations=%d collection=%s",
            config.cipher_backend, config.pbkdf2_iterations, config.collection,
        )
        return config
