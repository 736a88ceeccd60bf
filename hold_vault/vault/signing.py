"""
Vault Canonical Signer — Deterministic serialization and HMAC signatures.

Canonical form: orjson, compact, keys sorted at every nesting level.
Remote stores are not required to preserve key order, so a record must
verify no matter in which order its fields come back.

The field set covered by a hold signature is frozen per signature
version. The version number is itself part of the signed bytes, so a
signature over one shape can never verify against another.
"""
import base64
import logging
from typing import Any, Mapping

import orjson
from cryptography.exceptions import InvalidSignature

from .cipher import EncryptedEnvelope
from .keys import KeyHandle

logger = logging.getLogger("hold_vault.vault")

SIGNATURE_VERSION_FIELD = "_signatureVersion"

# Frozen per version: never edit a published tuple, add a new version.
SIGNED_FIELDS: dict[int, tuple[str, ...]] = {
    1: (
        "userId",
        "category",
        "startDate",
        "expectedResolutionDays",
        "status",
        "attachments",
        "followUps",
        "resolution",
        "title",
        "counterparty",
        "notes",
        "createdAt",
        "isRecurring",
        "recurrenceInterval",
    ),
}
CURRENT_SIGNATURE_VERSION = max(SIGNED_FIELDS)

# Values the write path stores for absent optional fields.
_FIELD_DEFAULTS: dict[str, Any] = {
    "attachments": [],
    "followUps": [],
    "resolution": None,
    "notes": None,
    "isRecurring": False,
    "recurrenceInterval": None,
}


def _default(obj: Any) -> Any:
    if isinstance(obj, EncryptedEnvelope):
        return obj.to_wire()
    if isinstance(obj, (bytes, bytearray)):
        return base64.b64encode(obj).decode("ascii")
    raise TypeError(f"Type is not canonicalizable: {type(obj).__name__}")


def canonicalize(record: Mapping[str, Any]) -> bytes:
    """Serialize a record to its canonical byte string."""
    return orjson.dumps(
        dict(record),
        default=_default,
        option=orjson.OPT_SORT_KEYS | orjson.OPT_PASSTHROUGH_DATACLASS,
    )


def signed_fields(version: int) -> tuple[str, ...]:
    """Return the frozen field set of a signature version.

    Raises:
        KeyError: unknown signature version.
    """
    return SIGNED_FIELDS[version]


def signing_view(document: Mapping[str, Any], version: int = CURRENT_SIGNATURE_VERSION) -> dict:
    """Project a stored document onto the signed field set of ``version``.

    Write and read paths both build the canonical record through this
    function, so they can never disagree on which fields are covered.
    """
    view = {}
    for name in signed_fields(version):
        value = document.get(name)
        if value is None:
            value = _FIELD_DEFAULTS.get(name)
        view[name] = value
    view[SIGNATURE_VERSION_FIELD] = version
    return view


def sign(record: Mapping[str, Any], signing_key: KeyHandle) -> bytes:
    """HMAC-SHA256 over the canonical form of ``record``."""
    mac = signing_key.mac()
    mac.update(canonicalize(record))
    return mac.finalize()


def verify(record: Mapping[str, Any], signature: bytes, signing_key: KeyHandle) -> bool:
    """Check ``signature`` against the canonical form of ``record``.

    Comparison is delegated to the MAC verify primitive (constant time).
    Any failure, including an uncanonicalizable record, returns False.
    """
    try:
        payload = canonicalize(record)
    except (TypeError, orjson.JSONEncodeError) as err:
        logger.warning("Record cannot be canonicalized for verification: %s", err)
        return False
    mac = signing_key.mac()
    mac.update(payload)
    try:
        mac.verify(bytes(signature))
    except InvalidSignature:
        return False
    return True


def encode_signature(signature: bytes) -> str:
    return base64.b64encode(signature).decode("ascii")


def decode_signature(value: Any) -> bytes | None:
    """Decode a stored base64 signature; None if absent or malformed."""
    if not isinstance(value, str):
        return None
    try:
        return base64.b64decode(value, validate=True)
    except ValueError:
        return None
