"""Hold Vault.

Zero-knowledge, tamper-evident storage of holds: records are encrypted
field by field and signed on the client, the remote store only ever sees
envelopes and signatures.
"""
from .version import __version__
from .data import (
    Attachment,
    FollowUp,
    Hold,
    HoldCategory,
    HoldStatus,
    NewHold,
    Placeholder,
    Resolution,
)
from .exceptions import (
    DecryptionError,
    KeyDerivationError,
    LockedStateError,
    SignatureMismatchError,
    VaultError,
)
from .reconciler import HoldReconciler
from .store import MemoryBlobStore, MemoryStore
from .vault import Identity, SessionVault, VaultConfig, VaultState

__all__ = [
    "__version__",
    "Attachment",
    "FollowUp",
    "Hold",
    "HoldCategory",
    "HoldStatus",
    "NewHold",
    "Placeholder",
    "Resolution",
    "DecryptionError",
    "KeyDerivationError",
    "LockedStateError",
    "SignatureMismatchError",
    "VaultError",
    "HoldReconciler",
    "MemoryBlobStore",
    "MemoryStore",
    "Identity",
    "SessionVault",
    "VaultConfig",
    "VaultState",
]
