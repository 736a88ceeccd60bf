"""
Encrypted attachment bodies.

File contents are encrypted as raw bytes and uploaded to blob storage at
``users/{uid}/attachments/{hold_id}/{file_id}.enc``. The body IV is kept in
the attachment metadata, next to name and type (which are sealed as
ordinary sensitive fields when the hold is written).
"""
import asyncio
import base64
import logging

from .data import Attachment, new_id, utcnow
from .exceptions import DecryptionError
from .store import BlobStore
from .vault.cipher import EncryptedEnvelope, decrypt, encrypt
from .vault.keys import KeyHandle

logger = logging.getLogger("hold_vault.reconciler")


def attachment_path(user_id: str, hold_id: str, file_id: str) -> str:
    return f"users/{user_id}/attachments/{hold_id}/{file_id}.enc"


async def upload_attachment(
    blobs: BlobStore,
    hold_id: str,
    user_id: str,
    name: str,
    content: bytes,
    content_type: str,
    key: KeyHandle,
) -> Attachment:
    """Encrypt ``content`` and upload it.

    Returns:
        Plaintext attachment metadata (sealed later with the hold).
    """
    envelope = await asyncio.to_thread(encrypt, content, key)
    file_id = new_id()
    path = attachment_path(user_id, hold_id, file_id)
    await blobs.upload(path, envelope.ciphertext)
    logger.debug(
        "Attachment uploaded: hold=%s file=%s size=%d",
        hold_id, file_id, len(envelope.ciphertext),
    )
    return Attachment(
        id=file_id,
        name=name,
        original_name=name,
        type=content_type,
        size=len(envelope.ciphertext),
        storage_path=path,
        iv=base64.b64encode(envelope.iv).decode("ascii"),
        uploaded_at=utcnow(),
    )


async def download_attachment(
    blobs: BlobStore, attachment: Attachment, key: KeyHandle,
) -> bytes:
    """Fetch and decrypt an attachment body.

    Raises:
        DecryptionError: the body (or its IV) is corrupted or the key is wrong.
    """
    ciphertext = await blobs.download(attachment.storage_path)
    try:
        iv = base64.b64decode(attachment.iv, validate=True)
    except ValueError as err:
        raise DecryptionError(f"Malformed attachment IV: {err}") from err
    envelope = EncryptedEnvelope(ciphertext=ciphertext, iv=iv)
    try:
        return await asyncio.to_thread(decrypt, envelope, key)
    except DecryptionError:
        logger.error(
            "Attachment decryption failed: file=%s", attachment.id,
        )
        raise
