"""
Hold entities as seen by callers, after verify + decrypt.

A sensitive field that could not be read carries a ``Placeholder`` instead
of its value: ``LOCKED`` when no key is held, ``TAMPERED`` when the record
signature failed, ``DECRYPTION_FAILED`` when that one field did not decrypt.
"""
import uuid
from enum import Enum
from typing import Optional, Union
from dataclasses import dataclass, field
from datetime import datetime, timezone


class Placeholder(str, Enum):
    LOCKED = "🔒 Encrypted"
    TAMPERED = "⚠️ Tampered"
    DECRYPTION_FAILED = "⚠️ Decryption Failed"


class HoldCategory(str, Enum):
    FINANCE = "finance"
    HEALTHCARE = "healthcare"
    GOVERNMENT = "government"
    WORK = "work"
    EDUCATION = "education"
    PERSONAL = "personal"


class HoldStatus(str, Enum):
    PENDING = "pending"
    OVERDUE = "overdue"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


class FollowUpTone(str, Enum):
    POLITE = "polite"
    FIRM = "firm"
    ESCALATION = "escalation"


class FollowUpChannel(str, Enum):
    EMAIL = "email"
    CALL = "call"
    PORTAL = "portal"


Text = Union[str, Placeholder]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def to_iso(value: datetime) -> str:
    """ISO-8601 in UTC; naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def from_iso(value: str) -> datetime:
    """Parse ISO-8601, accepting the ``Z`` suffix written by JS clients."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Attachment:
    """Metadata of an encrypted file body kept in the blob store.

    name, original_name and type are sensitive; the rest is plaintext.
    """
    id: str
    name: Text
    original_name: Text
    type: Text
    size: int
    storage_path: str
    iv: str
    uploaded_at: Optional[datetime] = None


@dataclass
class FollowUp:
    id: str
    tone: FollowUpTone
    message: Text
    channel: FollowUpChannel = FollowUpChannel.EMAIL
    sent_at: Optional[datetime] = None


@dataclass
class Resolution:
    date: datetime
    outcome: str
    time_waited_days: int
    notes: Optional[Text] = None


@dataclass
class NewHold:
    """Caller input for creating a hold."""
    title: str
    category: HoldCategory
    counterparty: str
    start_date: datetime
    expected_resolution_days: int
    notes: str = ""
    is_recurring: bool = False
    recurrence_interval: Optional[str] = None
    attachments: list[Attachment] = field(default_factory=list)


@dataclass
class Hold:
    """A hold record after the read path.

    ``tampered``, ``locked`` and ``decryption_failed`` tell the caller how
    much of the record could be trusted and read.
    """
    id: str
    user_id: str
    title: Text
    category: Union[HoldCategory, Placeholder]
    counterparty: Text
    start_date: Union[datetime, Placeholder]
    expected_resolution_days: Union[int, Placeholder]
    status: Union[HoldStatus, Placeholder]
    notes: Text = ""
    attachments: list[Attachment] = field(default_factory=list)
    follow_ups: list[FollowUp] = field(default_factory=list)
    resolution: Optional[Resolution] = None
    created_at: Union[datetime, Placeholder, None] = None
    updated_at: Optional[datetime] = None
    is_recurring: bool = False
    recurrence_interval: Optional[str] = None
    revision: int = 0
    tampered: bool = False
    locked: bool = False
    decryption_failed: frozenset[str] = frozenset()

    @property
    def readable(self) -> bool:
        """True when every field holds real plaintext."""
        return not (self.tampered or self.locked or self.decryption_failed)

    def __repr__(self) -> str:
        flags = []
        if self.tampered:
            flags.append("tampered")
        if self.locked:
            flags.append("locked")
        if self.decryption_failed:
            flags.append(f"failed={sorted(self.decryption_failed)}")
        return (
            f"<Hold id={self.id} rev={self.revision} "
            f"{' '.join(flags) or 'readable'}>"
        )
