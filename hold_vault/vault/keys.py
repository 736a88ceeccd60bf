"""
Vault Key Derivation — Password + identity → independent purpose keys.

    password ──PBKDF2-HMAC-SHA256(tag|uid, ≥600k)──▶ stretched
    stretched ──HKDF-SHA256(salt=tag|purpose|uid)──▶ encryption key
    stretched ──HKDF-SHA256(salt=tag|purpose|uid)──▶ signing key

Salts are deterministic and never secret: the keys must be reproducible
from the password and the user identity alone, with no stored state.
A wrong password is not detectable here; it surfaces later as records
that fail to verify or decrypt.

Security Note:
    Never log passwords or key material. Only log identities and purposes.
"""
import asyncio
import logging

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from ..exceptions import KeyDerivationError, LockedStateError
from .config import VaultConfig

logger = logging.getLogger("hold_vault.vault")

KEY_LENGTH = 32  # AES-256 / HMAC-SHA256

ENCRYPTION = "encryption"
SIGNING = "signing"
PURPOSES = (ENCRYPTION, SIGNING)

_CIPHERS = {
    "aesgcm": AESGCM,
    "chacha20": ChaCha20Poly1305,
}


class KeyHandle:
    """Non-extractable symmetric key bound to a single purpose.

    The raw secret never leaves the handle: callers obtain an AEAD cipher
    (encryption keys) or a fresh HMAC context (signing keys) instead.
    Handles refuse pickling and copying, and ``destroy()`` drops the secret.
    """

    __slots__ = ("_secret", "_purpose", "_backend")

    def __init__(self, secret: bytes, purpose: str, backend: str = "aesgcm"):
        if purpose not in PURPOSES:
            raise ValueError(f"Unknown key purpose: {purpose}")
        if len(secret) != KEY_LENGTH:
            raise ValueError(f"Key must be {KEY_LENGTH} bytes")
        self._secret = secret
        self._purpose = purpose
        self._backend = backend

    @property
    def purpose(self) -> str:
        return self._purpose

    @property
    def destroyed(self) -> bool:
        return self._secret is None

    def _require(self, purpose: str) -> bytes:
        if self._secret is None:
            raise LockedStateError("Key handle has been destroyed")
        if self._purpose != purpose:
            raise TypeError(
                f"A {self._purpose} key cannot be used for {purpose}"
            )
        return self._secret

    def aead(self):
        """Return the AEAD cipher for this encryption key."""
        return _CIPHERS[self._backend](self._require(ENCRYPTION))

    def mac(self) -> hmac.HMAC:
        """Return a fresh HMAC-SHA256 context for this signing key."""
        return hmac.HMAC(self._require(SIGNING), hashes.SHA256())

    def destroy(self) -> None:
        self._secret = None

    def __repr__(self) -> str:
        state = "destroyed" if self._secret is None else "active"
        return f"<KeyHandle purpose={self._purpose} {state}>"

    def __reduce__(self):
        raise TypeError("KeyHandle is not extractable")

    def __copy__(self):
        raise TypeError("KeyHandle is not extractable")

    def __deepcopy__(self, memo):
        raise TypeError("KeyHandle is not extractable")


class KeyMaterial:
    """The (encryption, signing) key pair of one unlocked session."""

    __slots__ = ("encryption", "signing")

    def __init__(self, encryption: KeyHandle, signing: KeyHandle):
        if encryption.purpose != ENCRYPTION or signing.purpose != SIGNING:
            raise ValueError("KeyMaterial needs one encryption and one signing key")
        self.encryption = encryption
        self.signing = signing

    def destroy(self) -> None:
        self.encryption.destroy()
        self.signing.destroy()

    def __repr__(self) -> str:
        return f"<KeyMaterial {self.encryption!r} {self.signing!r}>"

    def __reduce__(self):
        raise TypeError("KeyMaterial is not extractable")


def purpose_salt(identity: str, purpose: str, prefix: str) -> bytes:
    """Deterministic per-purpose salt: application tag, purpose, identity."""
    return f"{prefix}{purpose}_{identity}".encode("utf-8")


class KeyDerivationService:
    """Turns a password and a user identity into independent purpose keys.

    Derivation is slow on purpose (hundreds of milliseconds); the public
    coroutines run it in a worker thread so the event loop stays free.
    """

    def __init__(self, config: VaultConfig | None = None):
        self.config = config or VaultConfig()

    def _stretch(self, password: str, identity: str) -> bytes:
        if not identity:
            raise KeyDerivationError("Cannot derive keys without a verified identity")
        try:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=KEY_LENGTH,
                salt=f"{self.config.salt_prefix}{identity}".encode("utf-8"),
                iterations=self.config.pbkdf2_iterations,
            )
            return kdf.derive(password.encode("utf-8"))
        except (TypeError, ValueError, UnsupportedAlgorithm) as err:
            raise KeyDerivationError(f"Password stretch failed: {err}") from err

    def _expand(self, stretched: bytes, identity: str, purpose: str) -> KeyHandle:
        if purpose not in PURPOSES:
            raise KeyDerivationError(f"Unknown key purpose: {purpose}")
        try:
            hkdf = HKDF(
                algorithm=hashes.SHA256(),
                length=KEY_LENGTH,
                salt=purpose_salt(identity, purpose, self.config.salt_prefix),
                info=f"{self.config.salt_prefix}{purpose}".encode("utf-8"),
            )
            secret = hkdf.derive(stretched)
        except (TypeError, ValueError, UnsupportedAlgorithm) as err:
            raise KeyDerivationError(f"Key expansion failed: {err}") from err
        return KeyHandle(secret, purpose, self.config.cipher_backend)

    def derive_sync(self, password: str, identity: str, purpose: str) -> KeyHandle:
        """Blocking derivation of a single purpose key."""
        if purpose not in PURPOSES:
            raise KeyDerivationError(f"Unknown key purpose: {purpose}")
        stretched = self._stretch(password, identity)
        return self._expand(stretched, identity, purpose)

    def derive_key_material_sync(self, password: str, identity: str) -> KeyMaterial:
        """Blocking derivation of both keys from a single stretch."""
        stretched = self._stretch(password, identity)
        return KeyMaterial(
            encryption=self._expand(stretched, identity, ENCRYPTION),
            signing=self._expand(stretched, identity, SIGNING),
        )

    async def derive(self, password: str, identity: str, purpose: str) -> KeyHandle:
        """Derive one purpose key off the event loop.

        Raises:
            KeyDerivationError: the underlying primitive failed.
        """
        logger.debug("Deriving %s key for identity=%s", purpose, identity)
        return await asyncio.to_thread(self.derive_sync, password, identity, purpose)

    async def derive_key_material(self, password: str, identity: str) -> KeyMaterial:
        """Derive the encryption and signing keys off the event loop."""
        logger.debug("Deriving key material for identity=%s", identity)
        return await asyncio.to_thread(
            self.derive_key_material_sync, password, identity,
        )
