"""
Vault Field Cipher — Authenticated encryption of single field values.

Each call produces an independent envelope:
    EncryptedEnvelope(ciphertext = AEAD(key, iv, plaintext) + tag, iv = 12 random bytes)
Wire form: {"ciphertext": <base64>, "iv": <base64>}

Security Note:
    Never log plaintext or ciphertext values.
    IVs are random 96-bit and never reused by design of this module: there
    is no way to pass an IV in. Collision probability is negligible.
"""
import os
import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Union

from cryptography.exceptions import InvalidTag

from ..exceptions import DecryptionError
from .keys import KeyHandle

logger = logging.getLogger("hold_vault.vault")

IV_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16


@dataclass(frozen=True)
class EncryptedEnvelope:
    """Ciphertext (with tag) and the IV it was produced with."""

    ciphertext: bytes
    iv: bytes

    def to_wire(self) -> dict[str, str]:
        return {
            "ciphertext": base64.b64encode(self.ciphertext).decode("ascii"),
            "iv": base64.b64encode(self.iv).decode("ascii"),
        }

    @classmethod
    def from_wire(cls, data: Any) -> "EncryptedEnvelope":
        """Parse the wire shape.

        Raises:
            DecryptionError: if the value is not a well-formed envelope.
        """
        if not is_envelope(data):
            raise DecryptionError("Value is not an encrypted envelope")
        try:
            return cls(
                ciphertext=base64.b64decode(data["ciphertext"], validate=True),
                iv=base64.b64decode(data["iv"], validate=True),
            )
        except (binascii.Error, ValueError) as err:
            raise DecryptionError(f"Malformed envelope: {err}") from err


def is_envelope(value: Any) -> bool:
    """True when ``value`` has the wire shape of an encrypted envelope."""
    return (
        isinstance(value, dict)
        and isinstance(value.get("ciphertext"), str)
        and isinstance(value.get("iv"), str)
    )


def encrypt(plaintext: Union[bytes, str], key: KeyHandle) -> EncryptedEnvelope:
    """Encrypt a value under a fresh random IV.

    Strings are UTF-8 encoded first; bytes pass through untouched.

    Args:
        plaintext: Value to encrypt.
        key: Encryption key handle.

    Returns:
        A new EncryptedEnvelope.
    """
    if isinstance(plaintext, str):
        plaintext = plaintext.encode("utf-8")
    iv = os.urandom(IV_SIZE)
    ct = key.aead().encrypt(iv, plaintext, None)
    return EncryptedEnvelope(ciphertext=ct, iv=iv)


def decrypt(envelope: EncryptedEnvelope, key: KeyHandle) -> bytes:
    """Decrypt an envelope.

    Raises:
        DecryptionError: wrong key, altered ciphertext/IV, or malformed
            envelope. Recoverable, local to this one value.
    """
    if len(envelope.iv) != IV_SIZE:
        raise DecryptionError(
            f"IV must be {IV_SIZE} bytes, got {len(envelope.iv)}"
        )
    if len(envelope.ciphertext) < TAG_SIZE:
        raise DecryptionError(
            f"ciphertext too short: {len(envelope.ciphertext)} bytes "
            f"(minimum {TAG_SIZE})"
        )
    try:
        return key.aead().decrypt(envelope.iv, envelope.ciphertext, None)
    except InvalidTag as err:
        raise DecryptionError("Authentication tag mismatch") from err


def decrypt_text(envelope: EncryptedEnvelope, key: KeyHandle) -> str:
    """Decrypt an envelope holding a UTF-8 string."""
    data = decrypt(envelope, key)
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as err:
        raise DecryptionError("Decrypted value is not valid UTF-8") from err
