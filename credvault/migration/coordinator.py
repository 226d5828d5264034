# FILE: credvault/migration/coordinator.py
"""
Plaintext password migration.

Moves legacy plaintext secrets from proxies.username / proxies.password into
encrypted_credentials:

1. Snapshot every proxy row with a non-empty plaintext password
2. Per row, in one transaction: encrypt -> insert credential -> link the
   proxy and NULL its plaintext columns
3. After every row, record progress in the password_migration_status
   singleton so an interrupted run can be inspected and re-run
4. verify_migration() confirms zero plaintext and that every proxy_auth
   credential decrypts under the current key

One bad row never aborts the batch: it is recorded as a failed item and
the run continues. Logs carry id prefixes and counts only.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import and_, func, inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from credvault.batch import BatchOutcome, ItemOutcome
from credvault.credentials import schemas
from credvault.credentials.models import (
    CredentialType, EncryptedCredential, MigrationState, PasswordMigrationStatus, Proxy, utcnow,
)
from credvault.credentials.store import CredentialStore
from credvault.crypto import EncryptionEngine
from credvault.db import transaction
from credvault.errors import TransactionError
from credvault.logging_config import short_id

logger = logging.getLogger(__name__)

STATUS_ROW_ID = 1


@dataclass
class MigrationResult:
    success: bool
    total_count: int = 0
    migrated_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    duration_ms: int = 0
    error: Optional[str] = None
    outcomes: List[ItemOutcome] = field(default_factory=list)


@dataclass
class VerificationResult:
    valid: bool
    plaintext_count: int
    encrypted_count: int
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class _LegacyRow:
    id: str
    name: Optional[str]
    username: Optional[str]
    password: Optional[str]
    credential_id: Optional[str]


def _has_plaintext_password():
    return and_(Proxy.password.isnot(None), Proxy.password != "")


class PasswordMigrationCoordinator:
    def __init__(self, db: Session, encryption: EncryptionEngine, run_lock: Optional[threading.Lock] = None):
        """
        run_lock guards against concurrent runs. Pass one shared lock when
        coordinators are created per request; by default each instance has its own.
        """
        self.db = db
        self.encryption = encryption
        self.credentials = CredentialStore(db)
        self._run_lock = run_lock or threading.Lock()

    # =========================================================================
    # STATUS
    # =========================================================================

    def needs_migration(self) -> bool:
        """True iff at least one proxy still has a plaintext password."""
        if not inspect(self.db.connection()).has_table(Proxy.__tablename__):
            # Schema runner has not created the table yet
            logger.warning("[migration] proxies table not found, nothing to migrate")
            return False
        return self._count_plaintext() > 0

    def is_running(self) -> bool:
        return self._run_lock.locked()

    def get_status(self) -> Optional[schemas.MigrationStatusOut]:
        try:
            row = self.db.get(PasswordMigrationStatus, STATUS_ROW_ID)
        except SQLAlchemyError:
            self.db.rollback()
            return None
        return schemas.MigrationStatusOut.model_validate(row) if row else None

    def ensure_status_row(self) -> PasswordMigrationStatus:
        """Create the singleton status row (pending) if it does not exist yet."""
        row = self.db.get(PasswordMigrationStatus, STATUS_ROW_ID)
        if row is None:
            with transaction(self.db):
                row = PasswordMigrationStatus(id=STATUS_ROW_ID, status=MigrationState.PENDING.value)
                self.db.add(row)
        return row

    # =========================================================================
    # MIGRATION
    # =========================================================================

    def run_migration(self) -> MigrationResult:
        """
        Encrypt and relink every plaintext-bearing proxy.

        Returns an "already in progress" failure if another run is active,
        and fails fast if the encryption engine has no key.
        """
        start = time.monotonic()

        if not self._run_lock.acquire(blocking=False):
            return MigrationResult(success=False, error="Migration already in progress")

        try:
            if not self.encryption.is_initialized():
                return MigrationResult(
                    success=False,
                    duration_ms=_elapsed_ms(start),
                    error="Encryption engine not initialized",
                )
            return self._run(start)
        finally:
            self._run_lock.release()

    def _run(self, start: float) -> MigrationResult:
        outcomes = BatchOutcome()
        total = 0
        try:
            rows = self._snapshot_plaintext_rows()
            total = len(rows)
            logger.info(f"[migration] Starting password migration for {total} proxies")
            self._mark_started(total)

            for row in rows:
                self._migrate_one(row, outcomes)
                self._record_progress(outcomes, row.id)

            failed = outcomes.failed_count
            self._mark_finished(
                MigrationState.COMPLETED if failed == 0 else MigrationState.FAILED,
                f"{failed} proxies failed to migrate" if failed else None,
            )
        except (SQLAlchemyError, TransactionError) as exc:
            self.db.rollback()
            message = f"Migration aborted: {type(exc).__name__}"
            logger.error(f"[migration] {message}")
            self._mark_finished(MigrationState.FAILED, message)
            return MigrationResult(
                success=False,
                total_count=total,
                migrated_count=outcomes.succeeded_count,
                failed_count=outcomes.failed_count,
                skipped_count=outcomes.skipped_count,
                duration_ms=_elapsed_ms(start),
                error=message,
                outcomes=list(outcomes.items),
            )

        duration_ms = _elapsed_ms(start)
        logger.info(
            f"[migration] Migration finished in {duration_ms}ms: {outcomes.succeeded_count} migrated, "
            f"{outcomes.failed_count} failed, {outcomes.skipped_count} skipped"
        )
        return MigrationResult(
            success=outcomes.failed_count == 0,
            total_count=total,
            migrated_count=outcomes.succeeded_count,
            failed_count=outcomes.failed_count,
            skipped_count=outcomes.skipped_count,
            duration_ms=duration_ms,
            outcomes=list(outcomes.items),
        )

    def _snapshot_plaintext_rows(self) -> List[_LegacyRow]:
        """Materialize the work list up front so the loop never sees its own writes."""
        rows = (
            self.db.query(Proxy.id, Proxy.name, Proxy.username, Proxy.password, Proxy.credential_id)
            .filter(_has_plaintext_password())
            .order_by(Proxy.created_at, Proxy.id)
            .all()
        )
        return [_LegacyRow(*row) for row in rows]

    def _migrate_one(self, row: _LegacyRow, outcomes: BatchOutcome) -> None:
        try:
            schemas.validate_entity_id(row.id)
        except ValueError:
            logger.warning(f"[migration] Invalid proxy id format: {short_id(row.id)}")
            outcomes.failed(row.id, "invalid id format")
            return

        try:
            with transaction(self.db):
                if row.credential_id and self.credentials.find_by_id(row.credential_id) is not None:
                    # Already linked; only the leftover plaintext needs scrubbing
                    self._scrub_plaintext(row.id, row.credential_id)
                    skipped = True
                else:
                    encrypted = self.encryption.encrypt_credentials(row.username or None, row.password)
                    credential = self.credentials.create(
                        schemas.CredentialCreate(
                            owner_entity_id=row.id,
                            name=f"{row.name or 'proxy'}_credentials",
                            credential_type=CredentialType.PROXY_AUTH,
                            encrypted_username=encrypted.encrypted_username,
                            encrypted_password=encrypted.encrypted_password,
                            key_id=encrypted.key_id,
                        )
                    )
                    self._scrub_plaintext(row.id, credential.id)
                    skipped = False
        except Exception as exc:
            # Partial-failure tolerance: record the item and move on
            logger.error(f"[migration] Failed to migrate proxy {short_id(row.id)}: {type(exc).__name__}")
            outcomes.failed(row.id, type(exc).__name__)
            return

        if skipped:
            logger.info(f"[migration] Scrubbed residual plaintext for linked proxy {short_id(row.id)}")
            outcomes.skipped(row.id, "already linked to a credential")
        else:
            logger.info(f"[migration] Migrated credentials for proxy {short_id(row.id)}")
            outcomes.succeeded(row.id)

    def _scrub_plaintext(self, proxy_id: str, credential_id: str) -> None:
        self.db.query(Proxy).filter(Proxy.id == proxy_id).update(
            {
                Proxy.credential_id: credential_id,
                Proxy.username: None,
                Proxy.password: None,
                Proxy.updated_at: utcnow(),
            },
            synchronize_session=False,
        )

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    def verify_migration(self) -> VerificationResult:
        """
        Check the end state: no plaintext passwords remain and every
        proxy_auth credential decrypts with the current key. Read-only.
        """
        errors: List[str] = []
        try:
            plaintext_count = self._count_plaintext()
            encrypted_count = (
                self.db.query(func.count(Proxy.id)).filter(Proxy.credential_id.isnot(None)).scalar() or 0
            )
            credentials = (
                self.db.query(
                    EncryptedCredential.id,
                    EncryptedCredential.encrypted_username,
                    EncryptedCredential.encrypted_password,
                    EncryptedCredential.key_id,
                )
                .filter(EncryptedCredential.credential_type == CredentialType.PROXY_AUTH.value)
                .order_by(EncryptedCredential.id)
                .all()
            )
        except SQLAlchemyError as exc:
            self.db.rollback()
            return VerificationResult(
                valid=False,
                plaintext_count=-1,
                encrypted_count=-1,
                errors=[f"Verification failed: {type(exc).__name__}"],
            )

        for credential_id, encrypted_username, encrypted_password, key_id in credentials:
            if not encrypted_password:
                errors.append(f"Credential {short_id(credential_id)} has no encrypted password")
                continue
            result = self.encryption.decrypt_credentials(encrypted_username, encrypted_password, key_id=key_id)
            if not result.success:
                errors.append(f"Failed to decrypt credential {short_id(credential_id)}: {result.error}")

        return VerificationResult(
            valid=plaintext_count == 0 and not errors,
            plaintext_count=plaintext_count,
            encrypted_count=encrypted_count,
            errors=errors,
        )

    def _count_plaintext(self) -> int:
        return self.db.query(func.count(Proxy.id)).filter(_has_plaintext_password()).scalar() or 0

    # =========================================================================
    # STATUS ROW UPDATES
    # =========================================================================

    def _mark_started(self, total: int) -> None:
        row = self.ensure_status_row()
        with transaction(self.db):
            row.status = MigrationState.IN_PROGRESS.value
            row.started_at = utcnow()
            row.completed_at = None
            row.total_count = total
            row.migrated_count = 0
            row.failed_count = 0
            row.last_processed_id = None
            row.error_message = None

    def _record_progress(self, outcomes: BatchOutcome, last_id: str) -> None:
        """Progress is advisory: a failed write is logged, not fatal."""
        try:
            with transaction(self.db):
                self.db.query(PasswordMigrationStatus).filter(
                    PasswordMigrationStatus.id == STATUS_ROW_ID
                ).update(
                    {
                        PasswordMigrationStatus.migrated_count: outcomes.succeeded_count,
                        PasswordMigrationStatus.failed_count: outcomes.failed_count,
                        PasswordMigrationStatus.last_processed_id: last_id,
                    },
                    synchronize_session=False,
                )
        except Exception as exc:
            logger.warning(f"[migration] Could not record progress: {type(exc).__name__}")

    def _mark_finished(self, state: MigrationState, error_message: Optional[str]) -> None:
        try:
            with transaction(self.db):
                self.db.query(PasswordMigrationStatus).filter(
                    PasswordMigrationStatus.id == STATUS_ROW_ID
                ).update(
                    {
                        PasswordMigrationStatus.status: state.value,
                        PasswordMigrationStatus.completed_at: utcnow(),
                        PasswordMigrationStatus.error_message: error_message,
                    },
                    synchronize_session=False,
                )
        except Exception as exc:
            logger.warning(f"[migration] Could not record final status: {type(exc).__name__}")


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
