"""
Record codec: hybrid encryption of history, status, event and user payloads.

Every record payload is JSON encrypted with a fresh AES key; the AES key is
wrapped with the recipient's RSA public key. Decryption never raises to the
caller: a record whose payload cannot be recovered comes back with
``blob=None``.
"""

import json
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from shared.crypt import (
    PrivateKey, PublicKey, aes_decrypt, aes_encrypt, aes_random_key,
    public_key_from_pem, rsa_decrypt, rsa_encrypt
)
from shared.errors import DecryptionError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .models import (
    Event, EventBlob, HealthUser, HistoryBlob, HistoryEntry, HistoryType,
    StatusBlob, StatusRecord, UserBlob
)

logger = get_logger("health.codec")


def encrypt_text(text: str, public_key: PublicKey) -> Tuple[str, str]:
    """Encrypt text under a fresh AES key; returns (encrypted_key, encrypted_blob)."""
    aes_key = aes_random_key()
    encrypted_blob = aes_encrypt(text, aes_key)
    encrypted_key = rsa_encrypt(aes_key, public_key)
    return encrypted_key, encrypted_blob


def decrypt_text(encrypted_key: str, encrypted_blob: str, private_key: PrivateKey) -> str:
    """
    Unwrap the AES key and decrypt the payload.

    Raises:
        DecryptionError: Key unwrap or payload decryption failed
    """
    try:
        aes_key = rsa_decrypt(encrypted_key, private_key)
        return aes_decrypt(encrypted_blob, aes_key)
    except (ValueError, TypeError) as e:
        raise DecryptionError(details={"reason": str(e)}) from e


def encrypt_blob(payload: Dict[str, Any], public_key: PublicKey) -> Tuple[str, str]:
    return encrypt_text(json.dumps(payload), public_key)


def decrypt_blob(encrypted_key: Optional[str], encrypted_blob: Optional[str],
                 private_key: Optional[PrivateKey]) -> Optional[Dict[str, Any]]:
    """Decrypted JSON payload, or None when anything is missing or wrong."""
    if encrypted_key is None or encrypted_blob is None or private_key is None:
        return None
    try:
        payload = json.loads(decrypt_text(encrypted_key, encrypted_blob, private_key))
    except DecryptionError as e:
        logger.debug("Payload decryption failed", **e.details)
        return None
    except ValueError as e:
        logger.debug("Decrypted payload is not JSON", error=str(e))
        return None
    return payload if isinstance(payload, dict) else None


def decrypted_status_from_json(json_data: Any, private_key: Optional[PrivateKey]) -> Optional[StatusRecord]:
    record = StatusRecord.from_json(json_data)
    if record is None:
        return None
    payload = decrypt_blob(record.encrypted_key, record.encrypted_blob, private_key)
    return record.with_blob(StatusBlob.from_json(payload))


def decrypted_history_from_json(json_data: Any,
                                private_keys: Optional[Mapping[HistoryType, PrivateKey]]) -> Optional[HistoryEntry]:
    """History entry with its payload decrypted by the key registered for its type."""
    entry = HistoryEntry.from_json(json_data)
    if entry is None:
        return None
    if entry.type is None:
        # no type, no blob
        return entry
    private_key = private_keys.get(entry.type) if private_keys else None
    payload = decrypt_blob(entry.encrypted_key, entry.encrypted_blob, private_key)
    return entry.with_blob(HistoryBlob.from_json(payload))


def decrypted_event_from_json(json_data: Any, private_key: Optional[PrivateKey]) -> Optional[Event]:
    event = Event.from_json(json_data)
    if event is None:
        return None
    payload = decrypt_blob(event.encrypted_key, event.encrypted_blob, private_key)
    return event.with_blob(EventBlob.from_json(payload))


def decrypted_user_from_json(json_data: Any, private_key: Optional[PrivateKey]) -> Optional[HealthUser]:
    user = HealthUser.from_json(json_data)
    if user is None:
        return None
    payload = decrypt_blob(user.encrypted_key, user.encrypted_blob, private_key)
    return HealthUser(
        uuid=user.uuid,
        public_key_pem=user.public_key_pem,
        consent=user.consent,
        exposure_notification=user.exposure_notification,
        repost=user.repost,
        encrypted_key=user.encrypted_key,
        encrypted_blob=user.encrypted_blob,
        blob=UserBlob.from_json(payload),
    )


def encrypted_history_from_blob(blob: HistoryBlob, public_key: PublicKey,
                                id: Optional[str] = None,
                                user_id: Optional[str] = None,
                                date_utc: Optional[datetime] = None,
                                type: Optional[HistoryType] = None,
                                location_id: Optional[str] = None,
                                county_id: Optional[str] = None,
                                image: Optional[str] = None) -> HistoryEntry:
    """Build a history entry ready for upload; the image gets its own AES key."""
    encrypted_key, encrypted_blob = encrypt_blob(blob.to_json(), public_key)
    encrypted_image_key = encrypted_image_blob = None
    if image is not None:
        encrypted_image_key, encrypted_image_blob = encrypt_text(image, public_key)
    return HistoryEntry(
        id=id,
        user_id=user_id,
        date_utc=date_utc,
        type=type,
        encrypted_key=encrypted_key,
        encrypted_blob=encrypted_blob,
        location_id=location_id,
        county_id=county_id,
        encrypted_image_key=encrypted_image_key,
        encrypted_image_blob=encrypted_image_blob,
        blob=blob,
    )


def encrypted_status_from_blob(blob: StatusBlob, public_key: PublicKey,
                               id: Optional[str] = None,
                               user_id: Optional[str] = None,
                               date_utc: Optional[datetime] = None) -> StatusRecord:
    encrypted_key, encrypted_blob = encrypt_blob(blob.to_json(), public_key)
    return StatusRecord(
        id=id,
        user_id=user_id,
        date_utc=date_utc,
        encrypted_key=encrypted_key,
        encrypted_blob=encrypted_blob,
        blob=blob,
    )


def encrypted_user_blob(user: HealthUser, blob: UserBlob, public_key: PublicKey) -> HealthUser:
    encrypted_key, encrypted_blob = encrypt_blob(blob.to_json(), public_key)
    return HealthUser(
        uuid=user.uuid,
        public_key_pem=user.public_key_pem,
        consent=user.consent,
        exposure_notification=user.exposure_notification,
        repost=user.repost,
        encrypted_key=encrypted_key,
        encrypted_blob=encrypted_blob,
        blob=blob,
    )


def user_public_key(user: Optional[HealthUser]) -> Optional[PublicKey]:
    """Parsed public key of a health user, None when absent or unreadable."""
    if user is None or user.public_key_pem is None:
        return None
    try:
        return public_key_from_pem(user.public_key_pem)
    except (ValueError, TypeError) as e:
        logger.warning("Unreadable user public key", uuid=user.uuid, error=str(e))
        return None


def _payload_lost(record: Any) -> bool:
    return (record is not None and
            getattr(record, "encrypted_blob", None) is not None and
            getattr(record, "blob", None) is None)


class BlobCodec:
    """Batch decryption of wire records on a worker pool."""

    def __init__(self, max_workers: int = 4, metrics: Optional[MetricsCollector] = None):
        self.max_workers = max_workers
        self.metrics = metrics
        self.logger = get_logger("health.codec")

    def decrypt_many(self, records: Sequence[Any], decrypt: Callable[[Any], Any],
                     record_kind: str = "history") -> List[Any]:
        """
        Decrypt wire records concurrently.

        Args:
            records: Wire JSON records
            decrypt: Per-record decoder, one of the ``decrypted_*_from_json`` helpers
            record_kind: Label used in logs and metrics

        Returns:
            Decoded records in input order; one bad record never affects another
        """
        if not records:
            return []

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(records))) as executor:
            results = list(executor.map(decrypt, records))

        failures = sum(1 for result in results if _payload_lost(result))
        if failures:
            self.logger.warning(
                "Records decrypted without payload",
                record_kind=record_kind,
                failures=failures,
                total=len(records)
            )
            if self.metrics is not None:
                self.metrics.increment_counter("record_decrypt_failures_total", failures, record_kind=record_kind)

        return results

    def decrypt_histories(self, records: Sequence[Any],
                          private_keys: Mapping[HistoryType, PrivateKey]) -> List[Optional[HistoryEntry]]:
        return self.decrypt_many(records, lambda r: decrypted_history_from_json(r, private_keys), "history")

    def decrypt_statuses(self, records: Sequence[Any], private_key: PrivateKey) -> List[Optional[StatusRecord]]:
        return self.decrypt_many(records, lambda r: decrypted_status_from_json(r, private_key), "status")

    def decrypt_events(self, records: Sequence[Any], private_key: PrivateKey) -> List[Optional[Event]]:
        return self.decrypt_many(records, lambda r: decrypted_event_from_json(r, private_key), "event")
