"""
Shared pytest fixtures for the Hold Vault test suite.

Key derivation uses a deliberately cheap PBKDF2 cost so the suite stays
fast; production configs refuse anything below 600,000 iterations.
"""
from datetime import datetime, timezone

import pytest

from hold_vault.data import HoldCategory, NewHold
from hold_vault.exceptions import AuthenticationError
from hold_vault.store import MemoryBlobStore, MemoryStore
from hold_vault.reconciler import HoldReconciler
from hold_vault.vault.config import VaultConfig
from hold_vault.vault.keys import KeyDerivationService
from hold_vault.vault.session_vault import Identity, SessionVault

EMAIL = "alice@example.com"
PASSWORD = "correct-horse-battery-staple"
UID = "user_12345"


class FakeAuthenticator:
    """In-memory identity provider: one account per email."""

    def __init__(self):
        self.accounts = {EMAIL: (PASSWORD, Identity(uid=UID, email=EMAIL))}
        self.sign_in_calls = 0
        self.signed_out = False
        self.fail_sign_out = False

    async def sign_in(self, email, password):
        self.sign_in_calls += 1
        account = self.accounts.get(email)
        if account is None or account[0] != password:
            raise AuthenticationError("Invalid email or password")
        return account[1]

    async def sign_up(self, email, password, display_name):
        if email in self.accounts:
            raise AuthenticationError("This email is already registered")
        identity = Identity(uid=f"uid-{len(self.accounts)}", email=email, display_name=display_name)
        self.accounts[email] = (password, identity)
        return identity

    async def sign_out(self):
        if self.fail_sign_out:
            raise ConnectionError("network down")
        self.signed_out = True


@pytest.fixture
def config():
    return VaultConfig(pbkdf2_iterations=1000, allow_weak_kdf=True)


@pytest.fixture
def deriver(config):
    return KeyDerivationService(config)


@pytest.fixture
def keys(deriver):
    """Key material for UID/PASSWORD, derived synchronously."""
    return deriver.derive_key_material_sync(PASSWORD, UID)


@pytest.fixture
def other_keys(deriver):
    return deriver.derive_key_material_sync("wrong-password", UID)


@pytest.fixture
def authenticator():
    return FakeAuthenticator()


@pytest.fixture
def vault(authenticator, config):
    return SessionVault(authenticator, config=config)


@pytest.fixture
def store():
    return MemoryStore(scramble_keys=True)


@pytest.fixture
def blobs():
    return MemoryBlobStore()


@pytest.fixture
def reconciler(store, vault, blobs):
    return HoldReconciler(store, vault, blobs=blobs)


@pytest.fixture
def new_hold():
    return NewHold(
        title="Secret Dispute",
        category=HoldCategory.FINANCE,
        counterparty="MegaCorp",
        start_date=datetime(2023, 1, 1, 12, 0, tzinfo=timezone.utc),
        expected_resolution_days=14,
        notes="Sensitive internal notes",
    )
