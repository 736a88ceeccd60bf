"""
Signed hold records — sealing (write path) and opening (read path).

Wire document stored remotely::

    {
      "userId": "<plain>",
      "title": {"ciphertext": "...", "iv": "..."},     # every sensitive field
      ...
      "attachments": [{"id", "name": <env>, "originalName": <env>,
                       "type": <env>, "size", "storagePath", "iv", "uploadedAt"}],
      "followUps": [{"id", "tone", "message": <env>, "channel", "sentAt"}],
      "resolution": {"date", "outcome", "timeWaitedDays", "notes": <env>} | null,
      "isRecurring": false, "recurrenceInterval": null,
      "_signature": "<base64 HMAC>", "_signatureVersion": 1,
      "_encryptionVersion": "v2-zk", "_revision": 3, "updatedAt": "<iso>"
    }

A ``SignedRecord`` can only be produced by ``RecordBuilder.seal`` from a
complete, readable ``Hold``: every sensitive field is re-encrypted under a
fresh IV and the signature covers the whole frozen field set.

Security Note:
    Never log plaintext or ciphertext values. Only log record ids and
    field names.
"""
import logging
from datetime import datetime
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Union

from .data import (
    Attachment,
    FollowUp,
    FollowUpChannel,
    FollowUpTone,
    Hold,
    HoldCategory,
    HoldStatus,
    Placeholder,
    Resolution,
    from_iso,
    to_iso,
    utcnow,
)
from .exceptions import DecryptionError, IntegrityError, LockedStateError
from .vault.cipher import EncryptedEnvelope, decrypt_text, encrypt, is_envelope
from .vault.keys import KeyHandle, KeyMaterial
from .vault.signing import (
    CURRENT_SIGNATURE_VERSION,
    SIGNATURE_VERSION_FIELD,
    SIGNED_FIELDS,
    decode_signature,
    encode_signature,
    sign,
    signed_fields,
    signing_view,
    verify,
)

logger = logging.getLogger("hold_vault.reconciler")

ENCRYPTION_VERSION = "v2-zk"


# ---------------------------------------------------------------------------
# Field variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PlainField:
    """A stored value that was never encrypted (legacy records)."""
    value: Any


@dataclass(frozen=True)
class EncryptedField:
    envelope: EncryptedEnvelope


StoredField = Union[PlainField, EncryptedField]


def classify(value: Any) -> StoredField:
    """Decide once whether a stored value is an envelope or plaintext.

    A value with the envelope shape but undecodable base64 is still an
    EncryptedField; its decryption fails later, for that field alone.
    """
    if is_envelope(value):
        try:
            return EncryptedField(EncryptedEnvelope.from_wire(value))
        except DecryptionError:
            return EncryptedField(EncryptedEnvelope(ciphertext=b"", iv=b""))
    return PlainField(value)


# ---------------------------------------------------------------------------
# Signed record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SignedRecord:
    """A sealed hold ready for the remote store."""

    id: str
    fields: Mapping[str, Any]
    signature: bytes
    version: int = CURRENT_SIGNATURE_VERSION
    revision: int = 1
    updated_at: Optional[str] = None

    def __post_init__(self):
        expected = set(signed_fields(self.version))
        present = set(self.fields)
        if present != expected:
            missing = sorted(expected - present)
            extra = sorted(present - expected)
            raise IntegrityError(
                f"Signed field set mismatch for record {self.id}: "
                f"missing={missing} unexpected={extra}"
            )

    def to_document(self) -> dict[str, Any]:
        document = dict(self.fields)
        document["_signature"] = encode_signature(self.signature)
        document[SIGNATURE_VERSION_FIELD] = self.version
        document["_encryptionVersion"] = ENCRYPTION_VERSION
        document["_revision"] = self.revision
        document["updatedAt"] = self.updated_at or to_iso(utcnow())
        return document


# ---------------------------------------------------------------------------
# Write path
# ---------------------------------------------------------------------------

class RecordBuilder:
    """Merge-then-seal: turns one complete plaintext Hold into a SignedRecord.

    There is no incremental API on purpose: a record is always sealed from
    the full merged Hold, never patched field by field.
    """

    def __init__(self, keys: KeyMaterial, version: int = CURRENT_SIGNATURE_VERSION):
        if version not in SIGNED_FIELDS:
            raise IntegrityError(f"Unknown signature version: {version}")
        self._enc = keys.encryption
        self._signing = keys.signing
        self.version = version

    def _text(self, name: str, value: Any) -> dict[str, str]:
        if isinstance(value, Placeholder):
            raise IntegrityError(f"Field {name} holds a placeholder, not plaintext")
        if not isinstance(value, str):
            raise IntegrityError(f"Field {name} must be a string")
        return encrypt(value, self._enc).to_wire()

    def _optional_text(self, name: str, value: Any) -> Optional[dict[str, str]]:
        if value is None or value == "":
            return None
        return self._text(name, value)

    def _attachment(self, index: int, att: Attachment) -> dict[str, Any]:
        prefix = f"attachments[{index}]"
        return {
            "id": att.id,
            "name": self._text(f"{prefix}.name", att.name),
            "originalName": self._text(f"{prefix}.originalName", att.original_name),
            "type": self._text(f"{prefix}.type", att.type),
            "size": att.size,
            "storagePath": att.storage_path,
            "iv": att.iv,
            "uploadedAt": to_iso(att.uploaded_at) if att.uploaded_at else None,
        }

    def _follow_up(self, index: int, follow_up: FollowUp) -> dict[str, Any]:
        return {
            "id": follow_up.id,
            "tone": FollowUpTone(follow_up.tone).value,
            "message": self._text(f"followUps[{index}].message", follow_up.message),
            "channel": FollowUpChannel(follow_up.channel).value,
            "sentAt": to_iso(follow_up.sent_at) if follow_up.sent_at else None,
        }

    def _resolution(self, resolution: Optional[Resolution]) -> Optional[dict[str, Any]]:
        if resolution is None:
            return None
        return {
            "date": to_iso(resolution.date),
            "outcome": resolution.outcome,
            "timeWaitedDays": int(resolution.time_waited_days),
            "notes": self._optional_text("resolution.notes", resolution.notes),
        }

    def seal(self, hold: Hold) -> SignedRecord:
        """Encrypt every sensitive field of ``hold`` and sign the result.

        Raises:
            IntegrityError: the hold is not fully readable (tampered, locked,
                or with placeholder fields) and cannot be re-signed.
        """
        if not hold.readable:
            raise IntegrityError(
                f"Hold {hold.id} is not fully readable and cannot be sealed"
            )
        for name in ("category", "status", "start_date",
                     "expected_resolution_days", "created_at"):
            if isinstance(getattr(hold, name), Placeholder):
                raise IntegrityError(f"Field {name} holds a placeholder, not plaintext")
        if not isinstance(hold.created_at, datetime):
            raise IntegrityError(f"Hold {hold.id} has no creation time")
        if not isinstance(hold.start_date, datetime):
            raise IntegrityError(f"Hold {hold.id} has no start date")
        try:
            category = HoldCategory(hold.category).value
            status = HoldStatus(hold.status).value
        except ValueError as err:
            raise IntegrityError(str(err)) from err
        fields = {
            "userId": hold.user_id,
            "title": self._text("title", hold.title),
            "counterparty": self._text("counterparty", hold.counterparty),
            "notes": self._optional_text("notes", hold.notes),
            "category": self._text("category", category),
            "status": self._text("status", status),
            "startDate": self._text("startDate", to_iso(hold.start_date)),
            "expectedResolutionDays": self._text(
                "expectedResolutionDays", str(int(hold.expected_resolution_days)),
            ),
            "createdAt": self._text("createdAt", to_iso(hold.created_at)),
            "attachments": [
                self._attachment(i, att) for i, att in enumerate(hold.attachments)
            ],
            "followUps": [
                self._follow_up(i, f) for i, f in enumerate(hold.follow_ups)
            ],
            "resolution": self._resolution(hold.resolution),
            "isRecurring": bool(hold.is_recurring),
            "recurrenceInterval": hold.recurrence_interval,
        }
        view = signing_view(fields, self.version)
        signature = sign(view, self._signing)
        view.pop(SIGNATURE_VERSION_FIELD)
        return SignedRecord(
            id=hold.id,
            fields=view,
            signature=signature,
            version=self.version,
            revision=hold.revision,
            updated_at=to_iso(hold.updated_at) if hold.updated_at else None,
        )


# ---------------------------------------------------------------------------
# Read path
# ---------------------------------------------------------------------------

def verify_document(document: Mapping[str, Any], signing_key: KeyHandle) -> bool:
    """Re-derive the canonical form of a stored document and verify it."""
    signature = decode_signature(document.get("_signature"))
    if signature is None:
        return False
    version = document.get(SIGNATURE_VERSION_FIELD, CURRENT_SIGNATURE_VERSION)
    if not isinstance(version, int) or version not in SIGNED_FIELDS:
        return False
    return verify(signing_view(document, version), signature, signing_key)


class _FieldReader:
    """Turns stored values into plaintext, one field at a time.

    With ``placeholder`` set, every sensitive field is replaced by it,
    whether stored encrypted or plain; otherwise each field is decrypted
    on its own and a failure only affects that field.
    """

    def __init__(self, record_id: str, key: Optional[KeyHandle], placeholder: Optional[Placeholder]):
        self.record_id = record_id
        self.key = key
        self.placeholder = placeholder
        self.failed: set[str] = set()
        self.locked = placeholder is Placeholder.LOCKED

    def fail(self, name: str, reason: Any) -> Placeholder:
        logger.error(
            "Unreadable field for hold %s: %s (%s)", self.record_id, name, reason,
        )
        self.failed.add(name)
        return Placeholder.DECRYPTION_FAILED

    def read(
        self,
        name: str,
        raw: Any,
        parse: Callable[[Any], Any] = str,
        default: Any = None,
        required: bool = False,
    ) -> Any:
        if self.placeholder is not None:
            return self.placeholder
        stored = classify(raw)
        if isinstance(stored, PlainField):
            if stored.value is None:
                if required:
                    return self.fail(name, "missing")
                return default
            value = stored.value
        else:
            try:
                value = decrypt_text(stored.envelope, self.key)
            except DecryptionError as err:
                return self.fail(name, err)
            except LockedStateError:
                # keys dropped by a lock/logout during this read
                self.locked = True
                return Placeholder.LOCKED
        try:
            return parse(value)
        except (TypeError, ValueError) as err:
            return self.fail(name, err)

    def entries(self, name: str, raw: Any) -> list[tuple[int, Mapping[str, Any]]]:
        """Indexed dict entries of a stored list; other shapes count as failed."""
        if raw is None:
            return []
        if not isinstance(raw, list):
            self.fail(name, "not a list")
            return []
        items = []
        for i, entry in enumerate(raw):
            if isinstance(entry, dict):
                items.append((i, entry))
            else:
                self.fail(f"{name}[{i}]", "not an object")
        return items


def _iso(value: Any):
    if not isinstance(value, str):
        raise TypeError(f"expected an ISO-8601 string, got {type(value).__name__}")
    return from_iso(value)


def _enum(cls, value: Any, default):
    try:
        return cls(value)
    except ValueError:
        return default


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _maybe_iso(value: Any):
    if not isinstance(value, str):
        return None
    try:
        return from_iso(value)
    except ValueError:
        return None


def open_record(record_id: str, document: Mapping[str, Any], keys: Optional[KeyMaterial]) -> Hold:
    """Verify and decrypt a stored document into a Hold.

    Never raises for crypto failures or malformed documents: a bad
    signature yields a tampered Hold, missing keys a locked Hold, and an
    undecryptable or malformed field a ``DECRYPTION_FAILED`` placeholder
    for that field only.
    """
    tampered = False
    placeholder = None
    try:
        if keys is not None and not verify_document(document, keys.signing):
            logger.error("Security alert: signature verification failed for hold %s", record_id)
            tampered = True
    except LockedStateError:
        keys = None
    if tampered:
        placeholder = Placeholder.TAMPERED
    elif keys is None or keys.encryption.destroyed:
        placeholder = Placeholder.LOCKED
    reader = _FieldReader(record_id, keys.encryption if keys else None, placeholder)

    attachments = []
    for i, att in reader.entries("attachments", document.get("attachments")):
        prefix = f"attachments[{i}]"
        attachments.append(Attachment(
            id=att.get("id", ""),
            name=reader.read(f"{prefix}.name", att.get("name"), default=""),
            original_name=reader.read(f"{prefix}.originalName", att.get("originalName"), default=""),
            type=reader.read(f"{prefix}.type", att.get("type"), default=""),
            size=_int(att.get("size")),
            storage_path=att.get("storagePath", ""),
            iv=att.get("iv", ""),
            uploaded_at=_maybe_iso(att.get("uploadedAt")),
        ))

    follow_ups = [
        FollowUp(
            id=f.get("id", ""),
            tone=_enum(FollowUpTone, f.get("tone"), FollowUpTone.POLITE),
            message=reader.read(f"followUps[{i}].message", f.get("message"), default=""),
            channel=_enum(FollowUpChannel, f.get("channel"), FollowUpChannel.EMAIL),
            sent_at=_maybe_iso(f.get("sentAt")),
        )
        for i, f in reader.entries("followUps", document.get("followUps"))
    ]

    resolution = None
    raw_resolution = document.get("resolution")
    if isinstance(raw_resolution, dict):
        resolution = Resolution(
            date=_maybe_iso(raw_resolution.get("date")) or utcnow(),
            outcome=raw_resolution.get("outcome", ""),
            time_waited_days=_int(raw_resolution.get("timeWaitedDays")),
            notes=reader.read("resolution.notes", raw_resolution.get("notes")),
        )
    elif raw_resolution is not None:
        reader.fail("resolution", "not an object")

    hold = Hold(
        id=record_id,
        user_id=document.get("userId"),
        title=reader.read("title", document.get("title"), default=""),
        category=reader.read("category", document.get("category"), HoldCategory, required=True),
        counterparty=reader.read("counterparty", document.get("counterparty"), default=""),
        start_date=reader.read("startDate", document.get("startDate"), _iso, required=True),
        expected_resolution_days=reader.read(
            "expectedResolutionDays", document.get("expectedResolutionDays"), int, default=0,
        ),
        status=reader.read("status", document.get("status"), HoldStatus, default=HoldStatus.PENDING),
        notes=reader.read("notes", document.get("notes"), default=""),
        attachments=attachments,
        follow_ups=follow_ups,
        resolution=resolution,
        created_at=reader.read("createdAt", document.get("createdAt"), _iso, required=True),
        updated_at=_maybe_iso(document.get("updatedAt")),
        is_recurring=bool(document.get("isRecurring", False)),
        recurrence_interval=document.get("recurrenceInterval"),
        revision=_int(document.get("_revision")),
        tampered=tampered,
        locked=reader.locked,
        decryption_failed=frozenset(reader.failed),
    )
    return hold
