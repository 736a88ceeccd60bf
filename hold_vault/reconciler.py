"""
HoldReconciler — Encrypted read-modify-write against the remote store.

Write path: merge caller changes into the latest decrypted record, seal
the whole merged Hold (fresh IVs for every field, new signature over the
full field set) and replace the remote document. Field-level patches are
never sent: the signature covers the entire record.

Read path: verify, then decrypt field by field. Crypto failures come back
as markers on the Hold (``tampered``, ``locked``, ``decryption_failed``),
so one bad record never aborts loading a collection.

Security Note:
    Never log plaintext or ciphertext values. Only log record ids,
    revisions and operations.
"""
import asyncio
import dataclasses
import logging
import math
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any, Callable, Optional

from .attachments import download_attachment, upload_attachment
from .data import (
    FollowUp,
    FollowUpChannel,
    FollowUpTone,
    Hold,
    HoldCategory,
    HoldStatus,
    NewHold,
    Resolution,
    new_id,
    utcnow,
)
from .exceptions import (
    DecryptionError,
    LockedStateError,
    RecordNotFound,
    SignatureMismatchError,
)
from .records import RecordBuilder, SignedRecord, open_record
from .store import BlobStore, Document, RemoteStore
from .vault.config import VaultConfig
from .vault.session_vault import SessionVault

logger = logging.getLogger("hold_vault.reconciler")

# Fields a caller may change through update(); the rest are owned by the store.
_MUTABLE_FIELDS = frozenset({
    "title",
    "category",
    "counterparty",
    "start_date",
    "expected_resolution_days",
    "status",
    "notes",
    "attachments",
    "follow_ups",
    "resolution",
    "is_recurring",
    "recurrence_interval",
})

_SECONDS_PER_DAY = 24 * 60 * 60


def _created_sort_key(hold: Hold) -> float:
    if isinstance(hold.created_at, datetime):
        return hold.created_at.timestamp()
    return float("-inf")


class HoldReconciler:
    """Encrypting, signing gateway between callers and the remote store."""

    def __init__(
        self,
        store: RemoteStore,
        vault: SessionVault,
        blobs: Optional[BlobStore] = None,
        config: Optional[VaultConfig] = None,
    ):
        self._store = store
        self._vault = vault
        self._blobs = blobs
        self.config = config or getattr(vault, "config", None) or VaultConfig()
        self.collection = self.config.collection

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _decode(self, record_id: str, document: Document) -> Hold:
        return open_record(record_id, document, self._vault.keys)

    async def _open(self, record_id: str, document: Document) -> Hold:
        return await asyncio.to_thread(self._decode, record_id, document)

    async def _fetch(self, record_id: str) -> Hold:
        document = await self._store.get(self.collection, record_id)
        if document is None:
            raise RecordNotFound(record_id)
        return await self._open(record_id, document)

    async def _write(self, record: SignedRecord) -> None:
        await self._store.put(self.collection, record.id, record.to_document())
        logger.debug("Hold written: id=%s rev=%d", record.id, record.revision)

    def _require_blobs(self) -> BlobStore:
        if self._blobs is None:
            raise RuntimeError("No blob store configured for attachments")
        return self._blobs

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def get(self, record_id: str) -> Hold:
        """Fetch, verify and decrypt one hold.

        Raises:
            RecordNotFound: no such record.
        """
        return await self._fetch(record_id)

    async def list_holds(self, user_id: Optional[str] = None) -> list[Hold]:
        """All holds of a user, newest first; decrypted concurrently."""
        uid = user_id or self._vault.require_identity().uid
        rows = await self._store.query(self.collection, {"userId": uid})
        holds = await asyncio.gather(
            *(self._open(record_id, document) for record_id, document in rows)
        )
        holds = sorted(holds, key=_created_sort_key, reverse=True)
        tampered = sum(1 for h in holds if h.tampered)
        if tampered:
            logger.warning("Loaded %d hold(s), %d tampered", len(holds), tampered)
        return holds

    async def watch(
        self, user_id: Optional[str] = None,
    ) -> AsyncIterator[tuple[str, Optional[Hold]]]:
        """Follow remote changes as ``(id, Hold)`` or ``(id, None)`` on delete.

        Notifications may repeat or arrive out of order: a document older
        than the newest revision already seen for its id is dropped.
        """
        uid = user_id or self._vault.require_identity().uid
        seen: dict[str, float] = {}
        async for record_id, document in self._store.subscribe(
            self.collection, {"userId": uid},
        ):
            if document is None:
                seen[record_id] = math.inf
                yield record_id, None
                continue
            revision = document.get("_revision", 0)
            if not isinstance(revision, int):
                revision = 0
            if revision < seen.get(record_id, -1):
                logger.debug(
                    "Stale notification dropped: id=%s rev=%s", record_id, revision,
                )
                continue
            seen[record_id] = revision
            yield record_id, await self._open(record_id, document)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def add(self, new_hold: NewHold) -> Hold:
        """Seal and store a new hold (status pending, revision 1).

        Raises:
            LockedStateError: the vault is locked.
        """
        keys = self._vault.require_keys()
        identity = self._vault.require_identity()
        now = utcnow()
        hold = Hold(
            id=new_id(),
            user_id=identity.uid,
            title=new_hold.title,
            category=HoldCategory(new_hold.category),
            counterparty=new_hold.counterparty,
            start_date=new_hold.start_date,
            expected_resolution_days=new_hold.expected_resolution_days,
            status=HoldStatus.PENDING,
            notes=new_hold.notes,
            attachments=list(new_hold.attachments),
            created_at=now,
            updated_at=now,
            is_recurring=new_hold.is_recurring,
            recurrence_interval=new_hold.recurrence_interval,
            revision=1,
        )
        await self._write(RecordBuilder(keys).seal(hold))
        logger.info("Hold added: id=%s", hold.id)
        return hold

    async def _modify(self, record_id: str, changes_for: Callable[[Hold], dict[str, Any]]) -> Hold:
        """Read the latest record, merge, re-seal everything and write.

        Raises:
            LockedStateError: vault locked, or record not readable with the
                current keys.
            SignatureMismatchError: the stored record is tampered.
            DecryptionError: some stored fields cannot be decrypted.
            ValueError: changes touch unknown or immutable fields.
        """
        keys = self._vault.require_keys()
        identity = self._vault.require_identity()
        current = await self._fetch(record_id)
        if current.user_id != identity.uid:
            raise RecordNotFound(record_id)
        if current.tampered:
            raise SignatureMismatchError(f"Hold {record_id} failed verification")
        if current.locked:
            raise LockedStateError(f"Hold {record_id} cannot be read with the current keys")
        if current.decryption_failed:
            raise DecryptionError(
                f"Hold {record_id} has unreadable fields: "
                f"{sorted(current.decryption_failed)}"
            )
        changes = changes_for(current)
        invalid = set(changes) - _MUTABLE_FIELDS
        if invalid:
            raise ValueError(f"Cannot update fields: {sorted(invalid)}")
        merged = dataclasses.replace(
            current,
            **changes,
            updated_at=utcnow(),
            revision=current.revision + 1,
        )
        await self._write(RecordBuilder(keys).seal(merged))
        logger.info("Hold updated: id=%s rev=%d", record_id, merged.revision)
        return merged

    async def update(self, record_id: str, **changes: Any) -> Hold:
        """Apply a partial update; the whole record is re-encrypted and re-signed."""
        return await self._modify(record_id, lambda current: changes)

    async def update_status(self, record_id: str, status: HoldStatus) -> Hold:
        return await self.update(record_id, status=HoldStatus(status))

    async def resolve(self, record_id: str, outcome: str, notes: Optional[str] = None) -> Hold:
        """Mark a hold resolved, recording how many days it was waited on."""
        now = utcnow()

        def _changes(current: Hold) -> dict[str, Any]:
            waited = math.ceil(
                (now - current.start_date).total_seconds() / _SECONDS_PER_DAY
            )
            return {
                "status": HoldStatus.RESOLVED,
                "resolution": Resolution(
                    date=now,
                    outcome=outcome,
                    time_waited_days=waited,
                    notes=notes,
                ),
            }

        return await self._modify(record_id, _changes)

    async def add_follow_up(
        self,
        record_id: str,
        tone: FollowUpTone,
        message: str,
        channel: FollowUpChannel = FollowUpChannel.EMAIL,
        sent_at: Optional[datetime] = None,
    ) -> Hold:
        follow_up = FollowUp(
            id=new_id(),
            tone=FollowUpTone(tone),
            message=message,
            channel=FollowUpChannel(channel),
            sent_at=sent_at,
        )
        return await self._modify(
            record_id,
            lambda current: {"follow_ups": [*current.follow_ups, follow_up]},
        )

    async def delete(self, record_id: str) -> None:
        """Remove a hold and its encrypted attachment bodies."""
        document = await self._store.get(self.collection, record_id)
        if document is None:
            raise RecordNotFound(record_id)
        if self._blobs is not None:
            stored = document.get("attachments")
            for att in stored if isinstance(stored, list) else []:
                path = att.get("storagePath") if isinstance(att, dict) else None
                if isinstance(path, str) and path:
                    await self._blobs.delete(path)
        await self._store.delete(self.collection, record_id)
        logger.info("Hold deleted: id=%s", record_id)

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    async def attach(
        self, record_id: str, name: str, content: bytes, content_type: str,
    ) -> Hold:
        """Encrypt and upload a file, then re-seal the hold with its metadata."""
        blobs = self._require_blobs()
        keys = self._vault.require_keys()
        identity = self._vault.require_identity()
        attachment = await upload_attachment(
            blobs, record_id, identity.uid, name, content, content_type,
            keys.encryption,
        )
        try:
            return await self._modify(
                record_id,
                lambda current: {"attachments": [*current.attachments, attachment]},
            )
        except Exception:
            await blobs.delete(attachment.storage_path)
            raise

    async def download(self, record_id: str, attachment_id: str) -> bytes:
        """Fetch and decrypt one attachment body.

        Raises:
            LockedStateError: vault locked.
            SignatureMismatchError: the hold is tampered.
            DecryptionError: the body is corrupted.
            RecordNotFound: unknown hold or attachment.
        """
        keys = self._vault.require_keys()
        hold = await self._fetch(record_id)
        if hold.tampered:
            raise SignatureMismatchError(f"Hold {record_id} failed verification")
        for attachment in hold.attachments:
            if attachment.id == attachment_id:
                return await download_attachment(
                    self._require_blobs(), attachment, keys.encryption,
                )
        raise RecordNotFound(attachment_id)
