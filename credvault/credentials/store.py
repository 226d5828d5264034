# FILE: credvault/credentials/store.py
"""
Credential store: the encrypted_credentials table.

Methods flush but never commit. The caller owns the transaction (see
credvault.db.transaction), so a credential insert and the owning proxy
write land together or not at all. The one exception is rotate_key(),
a bulk operation that commits once per record.

Stored values are ciphertext only; this module never sees plaintext
except transiently inside rotate_key().
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, List, Optional, Union

from sqlalchemy import or_
from sqlalchemy.orm import Session

from credvault.batch import BatchOutcome
from credvault.credentials import schemas
from credvault.credentials.models import (
    AccessLevel, CredentialType, EncryptedCredential, new_id, utcnow,
)
from credvault.crypto import BLOB_FORMAT_VERSION, EncryptionEngine, compute_key_id
from credvault.db import transaction
from credvault.errors import DecryptionError, EncryptionError, TransactionError, ValidationError
from credvault.logging_config import short_id

logger = logging.getLogger(__name__)

ROTATION_WARNING_WINDOW = timedelta(days=7)
_UNSET: Any = object()


@dataclass
class RotationResult:
    success: bool
    total_count: int
    rotated_count: int
    failed_count: int
    new_key_id: str
    outcomes: BatchOutcome = field(default_factory=BatchOutcome)


class CredentialStore:
    def __init__(self, db: Session):
        self.db = db

    # ============== CREATE ==============

    def create(self, data: Union[schemas.CredentialCreate, dict]) -> EncryptedCredential:
        data = schemas.validate_input(schemas.CredentialCreate, data)
        if data.owner_entity_id is not None:
            schemas.validate_entity_id(data.owner_entity_id, field="owner_entity_id")

        now = utcnow()
        record = EncryptedCredential(
            id=new_id(),
            owner_entity_id=data.owner_entity_id,
            name=data.name,
            credential_type=data.credential_type.value,
            encrypted_username=data.encrypted_username,
            encrypted_password=data.encrypted_password,
            encrypted_data=data.encrypted_data,
            encryption_version=BLOB_FORMAT_VERSION,
            key_id=data.key_id,
            provider=data.provider,
            expires_at=data.expires_at,
            access_level=data.access_level.value,
            created_at=now,
            updated_at=now,
            access_count=0,
        )
        self.db.add(record)
        self.db.flush()
        return record

    # ============== READ ==============

    def find_by_id(self, credential_id: str) -> Optional[EncryptedCredential]:
        schemas.validate_entity_id(credential_id)
        return self.db.query(EncryptedCredential).filter(EncryptedCredential.id == credential_id).first()

    def find_by_owner(self, owner_entity_id: str) -> List[EncryptedCredential]:
        schemas.validate_entity_id(owner_entity_id, field="owner_entity_id")
        return (
            self.db.query(EncryptedCredential)
            .filter(EncryptedCredential.owner_entity_id == owner_entity_id)
            .order_by(EncryptedCredential.created_at)
            .all()
        )

    def find_by_type(self, credential_type: Union[CredentialType, str]) -> List[EncryptedCredential]:
        credential_type = _coerce_enum(CredentialType, credential_type, "credential_type")
        return (
            self.db.query(EncryptedCredential)
            .filter(EncryptedCredential.credential_type == credential_type.value)
            .all()
        )

    def find_by_provider(self, provider: str) -> List[EncryptedCredential]:
        return self.db.query(EncryptedCredential).filter(EncryptedCredential.provider == provider).all()

    def find_by_encryption_version(self, version: int) -> List[EncryptedCredential]:
        return (
            self.db.query(EncryptedCredential)
            .filter(EncryptedCredential.encryption_version == version)
            .all()
        )

    def find_needing_rotation(self, now: Optional[datetime] = None) -> List[EncryptedCredential]:
        """Flagged for rotation, or expiring within the warning window."""
        now = now or utcnow()
        return (
            self.db.query(EncryptedCredential)
            .filter(
                or_(
                    EncryptedCredential.rotation_required.is_(True),
                    (EncryptedCredential.expires_at.isnot(None))
                    & (EncryptedCredential.expires_at <= now + ROTATION_WARNING_WINDOW),
                )
            )
            .all()
        )

    def find_expired(self, now: Optional[datetime] = None) -> List[EncryptedCredential]:
        now = now or utcnow()
        return (
            self.db.query(EncryptedCredential)
            .filter(EncryptedCredential.expires_at.isnot(None), EncryptedCredential.expires_at <= now)
            .all()
        )

    # ============== UPDATE ==============

    def record_access(self, credential_id: str) -> bool:
        """Increment access_count in SQL, so concurrent increments never go backwards."""
        return self._update(
            credential_id,
            {
                EncryptedCredential.access_count: EncryptedCredential.access_count + 1,
                EncryptedCredential.last_accessed_at: utcnow(),
            },
        )

    def update_encrypted_data(
        self,
        credential_id: str,
        *,
        encrypted_username: Optional[str] = _UNSET,
        encrypted_password: Optional[str] = _UNSET,
        encrypted_data: Optional[str] = _UNSET,
        key_id: Optional[str] = _UNSET,
    ) -> bool:
        """Overwrite only the fields that were passed. Returns False if nothing was given."""
        values = {}
        if encrypted_username is not _UNSET:
            values[EncryptedCredential.encrypted_username] = encrypted_username
        if encrypted_password is not _UNSET:
            values[EncryptedCredential.encrypted_password] = encrypted_password
        if encrypted_data is not _UNSET:
            values[EncryptedCredential.encrypted_data] = encrypted_data
        if key_id is not _UNSET:
            values[EncryptedCredential.key_id] = key_id
        if not values:
            return False

        now = utcnow()
        values[EncryptedCredential.last_rotated_at] = now
        values[EncryptedCredential.updated_at] = now
        return self._update(credential_id, values)

    def mark_for_rotation(self, credential_id: str) -> bool:
        return self._update(credential_id, {EncryptedCredential.rotation_required: True})

    def clear_rotation_required(self, credential_id: str) -> bool:
        return self._update(
            credential_id,
            {EncryptedCredential.rotation_required: False, EncryptedCredential.last_rotated_at: utcnow()},
        )

    def update_expiration(self, credential_id: str, expires_at: Optional[datetime]) -> bool:
        return self._update(credential_id, {EncryptedCredential.expires_at: expires_at})

    def update_access_level(self, credential_id: str, access_level: Union[AccessLevel, str]) -> bool:
        access_level = _coerce_enum(AccessLevel, access_level, "access_level")
        return self._update(credential_id, {EncryptedCredential.access_level: access_level.value})

    def increment_encryption_version(self, credential_id: str) -> bool:
        return self._update(
            credential_id,
            {EncryptedCredential.encryption_version: EncryptedCredential.encryption_version + 1},
        )

    def _update(self, credential_id: str, values: dict) -> bool:
        schemas.validate_entity_id(credential_id)
        changed = (
            self.db.query(EncryptedCredential)
            .filter(EncryptedCredential.id == credential_id)
            .update(values, synchronize_session=False)
        )
        return changed > 0

    # ============== DELETE ==============

    def delete(self, credential_id: str) -> bool:
        schemas.validate_entity_id(credential_id)
        deleted = (
            self.db.query(EncryptedCredential)
            .filter(EncryptedCredential.id == credential_id)
            .delete(synchronize_session=False)
        )
        return deleted > 0

    def delete_by_owner(self, owner_entity_id: str) -> int:
        schemas.validate_entity_id(owner_entity_id, field="owner_entity_id")
        return (
            self.db.query(EncryptedCredential)
            .filter(EncryptedCredential.owner_entity_id == owner_entity_id)
            .delete(synchronize_session=False)
        )

    # ============== DTO ==============

    @staticmethod
    def to_dto(record: EncryptedCredential) -> schemas.CredentialOut:
        return schemas.CredentialOut.model_validate(record)

    # ============== KEY ROTATION ==============

    def rotate_key(self, old_key: bytes, new_key: bytes) -> RotationResult:
        """
        Re-encrypt every record tagged with old_key under new_key.

        Each record is rewritten in its own transaction: all of its encrypted
        fields switch keys together, or none do. Records that fail are
        reported in the outcome list and keep their old ciphertext.
        The caller re-initializes the live engine with new_key afterwards.
        """
        old_key_id = compute_key_id(old_key)
        new_key_id = compute_key_id(new_key)
        outcomes = BatchOutcome()

        record_ids = [
            row.id
            for row in self.db.query(EncryptedCredential.id)
            .filter(EncryptedCredential.key_id == old_key_id)
            .all()
        ]
        logger.info(f"[credentials] Rotating {len(record_ids)} credentials to key {new_key_id[:8]}...")

        for record_id in record_ids:
            try:
                with transaction(self.db):
                    record = self.db.query(EncryptedCredential).filter(EncryptedCredential.id == record_id).one()
                    for column in ("encrypted_username", "encrypted_password", "encrypted_data"):
                        blob = getattr(record, column)
                        if not blob:
                            continue
                        result = EncryptionEngine.re_encrypt(blob, old_key, new_key)
                        if result is None:
                            raise DecryptionError(f"{column} could not be decrypted with the old key")
                        setattr(record, column, result.ciphertext)
                    now = utcnow()
                    record.key_id = new_key_id
                    record.encryption_version = (record.encryption_version or BLOB_FORMAT_VERSION) + 1
                    record.rotation_required = False
                    record.last_rotated_at = now
                    record.updated_at = now
                outcomes.succeeded(record_id)
            except (DecryptionError, EncryptionError, TransactionError) as exc:
                logger.warning(f"[credentials] Rotation failed for credential {short_id(record_id)}: {exc}")
                outcomes.failed(record_id, str(exc))

        logger.info(
            f"[credentials] Key rotation finished: {outcomes.succeeded_count} rotated, "
            f"{outcomes.failed_count} failed"
        )
        return RotationResult(
            success=outcomes.failed_count == 0,
            total_count=len(record_ids),
            rotated_count=outcomes.succeeded_count,
            failed_count=outcomes.failed_count,
            new_key_id=new_key_id,
            outcomes=outcomes,
        )


def _coerce_enum(enum_cls, value, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"{field_name} must be one of: {', '.join(e.value for e in enum_cls)}", field=field_name) from None
