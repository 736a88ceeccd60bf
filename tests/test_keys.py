"""
Tests for key derivation and key handles.

Tests cover:
- Determinism of derive() per (password, identity, purpose)
- Independence of encryption and signing keys
- Consistency between derive() and derive_key_material()
- Non-extractable handles (pickle/copy refused, repr hides secrets)
- KeyDerivationError on primitive failure
"""
import copy
import pickle

import pytest

from hold_vault.exceptions import KeyDerivationError, LockedStateError
from hold_vault.vault.cipher import decrypt, encrypt
from hold_vault.vault.keys import (
    ENCRYPTION,
    SIGNING,
    KeyDerivationService,
    KeyHandle,
    purpose_salt,
)
from hold_vault.vault.signing import sign, verify

from conftest import PASSWORD, UID


class TestDerivation:
    """Tests for KeyDerivationService."""

    @pytest.mark.asyncio
    async def test_derive_is_deterministic(self, deriver):
        """Same password, identity and purpose yield the same key."""
        first = await deriver.derive(PASSWORD, UID, ENCRYPTION)
        second = await deriver.derive(PASSWORD, UID, ENCRYPTION)
        assert first._secret == second._secret

    @pytest.mark.asyncio
    async def test_purposes_yield_different_keys(self, deriver):
        """Encryption and signing keys differ for the same inputs."""
        enc = await deriver.derive(PASSWORD, UID, ENCRYPTION)
        sig = await deriver.derive(PASSWORD, UID, SIGNING)
        assert enc._secret != sig._secret
        assert enc.purpose == ENCRYPTION
        assert sig.purpose == SIGNING

    @pytest.mark.asyncio
    async def test_identity_changes_keys(self, deriver):
        """The per-user salt makes keys differ between users."""
        alice = await deriver.derive(PASSWORD, "alice", ENCRYPTION)
        bob = await deriver.derive(PASSWORD, "bob", ENCRYPTION)
        assert alice._secret != bob._secret

    @pytest.mark.asyncio
    async def test_password_changes_keys(self, deriver):
        good = await deriver.derive(PASSWORD, UID, SIGNING)
        bad = await deriver.derive("not-the-password", UID, SIGNING)
        assert good._secret != bad._secret

    @pytest.mark.asyncio
    async def test_key_material_matches_single_derivations(self, deriver):
        """derive_key_material() and derive() agree on both keys."""
        material = await deriver.derive_key_material(PASSWORD, UID)
        enc = await deriver.derive(PASSWORD, UID, ENCRYPTION)
        sig = await deriver.derive(PASSWORD, UID, SIGNING)

        envelope = encrypt("round trip", material.encryption)
        assert decrypt(envelope, enc) == b"round trip"

        record = {"id": "hold_1", "amount": 500}
        assert verify(record, sign(record, material.signing), sig) is True

    def test_purpose_salt_is_deterministic(self, config):
        salt = purpose_salt(UID, SIGNING, config.salt_prefix)
        assert salt == purpose_salt(UID, SIGNING, config.salt_prefix)
        assert salt != purpose_salt(UID, ENCRYPTION, config.salt_prefix)
        assert UID.encode() in salt

    @pytest.mark.asyncio
    async def test_unknown_purpose_raises(self, deriver):
        with pytest.raises(KeyDerivationError):
            await deriver.derive(PASSWORD, UID, "export")

    @pytest.mark.asyncio
    async def test_missing_identity_raises(self, deriver):
        """Keys are never derived without a verified identity."""
        with pytest.raises(KeyDerivationError):
            await deriver.derive(PASSWORD, "", ENCRYPTION)

    def test_primitive_failure_is_wrapped(self, deriver, monkeypatch):
        """A failing PBKDF2 surfaces as KeyDerivationError."""
        import hold_vault.vault.keys as keys_mod

        class BrokenKDF:
            def __init__(self, **kwargs):
                pass

            def derive(self, data):
                raise ValueError("backend exploded")

        monkeypatch.setattr(keys_mod, "PBKDF2HMAC", BrokenKDF)
        with pytest.raises(KeyDerivationError):
            deriver.derive_key_material_sync(PASSWORD, UID)

    def test_default_service_uses_production_cost(self):
        assert KeyDerivationService().config.pbkdf2_iterations >= 600_000


class TestKeyHandle:
    """Tests for non-extractable key handles."""

    def test_pickle_refused(self, keys):
        with pytest.raises(TypeError):
            pickle.dumps(keys.encryption)
        with pytest.raises(TypeError):
            pickle.dumps(keys)

    def test_copy_refused(self, keys):
        with pytest.raises(TypeError):
            copy.copy(keys.signing)
        with pytest.raises(TypeError):
            copy.deepcopy(keys.encryption)

    def test_repr_hides_secret(self, keys):
        text = repr(keys)
        assert "encryption" in text
        assert keys.encryption._secret.hex() not in text

    def test_purpose_is_enforced(self, keys):
        """An encryption key cannot sign and a signing key cannot encrypt."""
        with pytest.raises(TypeError):
            keys.encryption.mac()
        with pytest.raises(TypeError):
            keys.signing.aead()

    def test_destroy(self, keys):
        keys.destroy()
        assert keys.encryption.destroyed
        assert keys.signing.destroyed
        with pytest.raises(LockedStateError):
            keys.encryption.aead()

    def test_invalid_handle(self):
        with pytest.raises(ValueError):
            KeyHandle(b"short", ENCRYPTION)
        with pytest.raises(ValueError):
            KeyHandle(b"\x00" * 32, "export")
