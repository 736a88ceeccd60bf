"""
Tests for encrypted attachment bodies.
"""
import pytest

from hold_vault.attachments import attachment_path, download_attachment, upload_attachment
from hold_vault.exceptions import (
    DecryptionError,
    LockedStateError,
    RecordNotFound,
    SignatureMismatchError,
)
from hold_vault.reconciler import HoldReconciler

from conftest import EMAIL, PASSWORD, UID

CONTENT = b"%PDF-1.4 confidential statement"


class TestAttachmentBodies:

    def test_path_layout(self):
        assert attachment_path("u1", "h1", "f1") == "users/u1/attachments/h1/f1.enc"

    @pytest.mark.asyncio
    async def test_upload_stores_ciphertext(self, blobs, keys):
        att = await upload_attachment(
            blobs, "h1", UID, "statement.pdf", CONTENT, "application/pdf", keys.encryption,
        )
        stored = await blobs.download(att.storage_path)
        assert CONTENT not in stored
        assert att.size == len(stored)
        assert att.storage_path.startswith(f"users/{UID}/attachments/h1/")
        assert await download_attachment(blobs, att, keys.encryption) == CONTENT

    @pytest.mark.asyncio
    async def test_wrong_key(self, blobs, keys, other_keys):
        att = await upload_attachment(
            blobs, "h1", UID, "a.txt", b"hello", "text/plain", keys.encryption,
        )
        with pytest.raises(DecryptionError):
            await download_attachment(blobs, att, other_keys.encryption)

    @pytest.mark.asyncio
    async def test_corrupted_body(self, blobs, keys):
        att = await upload_attachment(
            blobs, "h1", UID, "a.txt", b"hello", "text/plain", keys.encryption,
        )
        body = await blobs.download(att.storage_path)
        await blobs.upload(att.storage_path, bytes([body[0] ^ 0x01]) + body[1:])
        with pytest.raises(DecryptionError):
            await download_attachment(blobs, att, keys.encryption)

    @pytest.mark.asyncio
    async def test_malformed_iv(self, blobs, keys):
        att = await upload_attachment(
            blobs, "h1", UID, "a.txt", b"hello", "text/plain", keys.encryption,
        )
        att.iv = "not base64!"
        with pytest.raises(DecryptionError):
            await download_attachment(blobs, att, keys.encryption)


class TestHoldAttachments:

    @pytest.mark.asyncio
    async def test_attach_and_download(self, reconciler, vault, store, new_hold):
        await vault.login(EMAIL, PASSWORD)
        hold = await reconciler.add(new_hold)
        updated = await reconciler.attach(hold.id, "statement.pdf", CONTENT, "application/pdf")
        att = updated.attachments[0]

        fetched = await reconciler.get(hold.id)
        assert fetched.readable
        assert fetched.attachments[0].name == "statement.pdf"
        assert fetched.attachments[0].type == "application/pdf"
        assert "statement.pdf" not in str(store.raw("holds", hold.id))
        assert await reconciler.download(hold.id, att.id) == CONTENT

    @pytest.mark.asyncio
    async def test_locked_attachment_metadata(self, reconciler, vault, new_hold):
        await vault.login(EMAIL, PASSWORD)
        hold = await reconciler.add(new_hold)
        await reconciler.attach(hold.id, "statement.pdf", CONTENT, "application/pdf")
        vault.lock()
        fetched = await reconciler.get(hold.id)
        assert fetched.attachments[0].name.startswith("🔒")
        with pytest.raises(LockedStateError):
            await reconciler.download(hold.id, fetched.attachments[0].id)

    @pytest.mark.asyncio
    async def test_download_from_tampered_hold(self, reconciler, vault, store, new_hold):
        await vault.login(EMAIL, PASSWORD)
        hold = await reconciler.add(new_hold)
        updated = await reconciler.attach(hold.id, "a.txt", b"hi", "text/plain")
        raw = store.raw("holds", hold.id)
        raw["attachments"][0]["size"] += 1
        store.overwrite("holds", hold.id, raw)
        with pytest.raises(SignatureMismatchError):
            await reconciler.download(hold.id, updated.attachments[0].id)

    @pytest.mark.asyncio
    async def test_unknown_attachment(self, reconciler, vault, new_hold):
        await vault.login(EMAIL, PASSWORD)
        hold = await reconciler.add(new_hold)
        with pytest.raises(RecordNotFound):
            await reconciler.download(hold.id, "missing")

    @pytest.mark.asyncio
    async def test_failed_attach_removes_blob(self, reconciler, vault, blobs):
        await vault.login(EMAIL, PASSWORD)
        with pytest.raises(RecordNotFound):
            await reconciler.attach("missing", "a.txt", b"hi", "text/plain")
        assert len(blobs) == 0

    @pytest.mark.asyncio
    async def test_no_blob_store(self, store, vault, new_hold):
        await vault.login(EMAIL, PASSWORD)
        reconciler = HoldReconciler(store, vault)
        hold = await reconciler.add(new_hold)
        with pytest.raises(RuntimeError):
            await reconciler.attach(hold.id, "a.txt", b"hi", "text/plain")
