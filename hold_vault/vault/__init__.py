"""Vault — Key derivation, field encryption, canonical signing and lock state.

Security Note (Threat Model):
    Key material lives in process memory while the vault is unlocked.
    A memory dump of the client process during that window exposes the
    derived keys. Python cannot reliably zero memory; ``destroy()`` only
    drops references. This is an accepted limitation.
"""

from .config import VaultConfig
from .keys import KeyDerivationService, KeyHandle, KeyMaterial
from .cipher import EncryptedEnvelope, encrypt, decrypt, decrypt_text
from .signing import canonicalize, sign, verify, signing_view
from .session_vault import SessionVault, VaultState, Identity, Authenticator

__all__ = [
    "VaultConfig",
    "KeyDerivationService",
    "KeyHandle",
    "KeyMaterial",
    "EncryptedEnvelope",
    "encrypt",
    "decrypt",
    "decrypt_text",
    "canonicalize",
    "sign",
    "verify",
    "signing_view",
    "SessionVault",
    "VaultState",
    "Identity",
    "Authenticator",
]
