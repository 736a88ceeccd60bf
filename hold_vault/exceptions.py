"""
Hold Vault exceptions.

Crypto failures (``DecryptionError``, ``SignatureMismatchError``,
``LockedStateError``) are recovered at the reconciler boundary on reads and
turned into markers on the returned ``Hold``. Only unlock/login failures
reach the user as an error message.
"""


class VaultError(Exception):
    """Base class for every Hold Vault error."""


class KeyDerivationError(VaultError):
    """The key derivation primitive failed (never raised for a wrong password)."""


class DecryptionError(VaultError):
    """Authentication tag mismatch or malformed envelope."""


class SignatureMismatchError(VaultError):
    """A record signature does not verify against its content."""


class LockedStateError(VaultError):
    """Operation needs key material that the vault does not hold."""


class IntegrityError(VaultError):
    """Attempt to seal or store a record whose signed field set is incomplete."""


class RecordNotFound(VaultError, KeyError):
    """No record with the given id exists in the remote store."""


class AuthenticationError(VaultError):
    """The remote identity provider rejected the credentials."""


class UnlockError(VaultError):
    """User-facing failure of a login, signup or unlock attempt."""

    def __init__(self, message: str = "Incorrect password or service unavailable"):
        super().__init__(message)


class WeakPasswordError(VaultError):
    """Password appears in a known breach corpus."""

    def __init__(self, count: int):
        self.count = count
        super().__init__(
            f"This password has appeared in {count} data breaches"
        )


class StateTransitionError(VaultError):
    """The requested vault transition is not allowed from the current state."""
