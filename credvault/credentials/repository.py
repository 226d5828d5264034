# FILE: credvault/credentials/repository.py
"""
Secure proxy repository.

CRUD for proxies whose secrets live in encrypted_credentials. Guarantees:
- input is validated before any database access
- a proxy and its credential are written/deleted in one transaction
- the legacy plaintext columns (proxies.username / proxies.password) are
  never written and never copied into a DTO
- decryption failures on reads are logged and reported as a flag, never raised
"""
import logging
from typing import List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from credvault.credentials import schemas
from credvault.credentials.models import CredentialType, EncryptedCredential, Proxy, new_id, utcnow
from credvault.credentials.store import CredentialStore
from credvault.crypto import EncryptionEngine
from credvault.db import transaction
from credvault.errors import ValidationError
from credvault.logging_config import short_id

logger = logging.getLogger(__name__)

# Columns a ProxyUpdate may change directly. Secrets go through the credential store.
_REQUIRED_FIELDS = ("name", "host", "port", "protocol", "status")
_NULLABLE_FIELDS = ("region", "tags")


class SecureProxyRepository:
    def __init__(self, db: Session, encryption: EncryptionEngine):
        self.db = db
        self.encryption = encryption
        self.credentials = CredentialStore(db)

    # ============== CREATE ==============

    def add_proxy(self, data: Union[schemas.ProxyCreate, dict]) -> schemas.ProxyOut:
        """
        Insert a proxy. When a password is supplied, the credential record is
        encrypted and inserted first, then the proxy row referencing it, all in
        one transaction.
        """
        data = schemas.validate_input(schemas.ProxyCreate, data)
        _check_secret_pair(data.username, data.password)

        proxy_id = new_id()
        with transaction(self.db):
            credential_id = None
            if data.has_secret:
                credential = self._create_credential(proxy_id, data.name, data.username, data.password)
                credential_id = credential.id

            now = utcnow()
            proxy = Proxy(
                id=proxy_id,
                name=data.name,
                host=data.host,
                port=data.port,
                protocol=data.protocol.value,
                status=data.status.value,
                region=data.region,
                tags=list(data.tags) if data.tags else None,
                credential_id=credential_id,
                created_at=now,
                updated_at=now,
            )
            self.db.add(proxy)
            self.db.flush()

        logger.info(
            f"[proxies] Added proxy {short_id(proxy_id)} "
            f"({'with' if credential_id else 'without'} credentials)"
        )
        return self._to_dto(proxy, has_credentials=credential_id is not None)

    # ============== UPDATE ==============

    def update_proxy(self, data: Union[schemas.ProxyUpdate, dict]) -> Optional[schemas.ProxyOut]:
        """
        Update non-secret fields and, if a password is supplied, rotate the
        linked credential in place (or create and link one). Returns None if
        the proxy does not exist.
        """
        data = schemas.validate_input(schemas.ProxyUpdate, data)
        schemas.validate_entity_id(data.id)
        _check_secret_pair(data.username, data.password)

        provided = data.model_fields_set
        for name in _REQUIRED_FIELDS:
            if name in provided and getattr(data, name) is None:
                raise ValidationError(f"{name} cannot be null", field=name)

        with transaction(self.db):
            proxy = self.db.query(Proxy).filter(Proxy.id == data.id).first()
            if proxy is None:
                return None

            for name in _REQUIRED_FIELDS + _NULLABLE_FIELDS:
                if name not in provided:
                    continue
                value = getattr(data, name)
                if hasattr(value, "value"):
                    value = value.value
                if name == "tags" and value is not None:
                    value = list(value)
                setattr(proxy, name, value)

            if data.has_secret:
                self._rotate_or_link_credential(proxy, data.username, data.password)

            proxy.updated_at = utcnow()
            self.db.flush()
            has_credentials = proxy.credential_id is not None

        return self._to_dto(proxy, has_credentials=has_credentials)

    def _rotate_or_link_credential(self, proxy: Proxy, username: Optional[str], password: str) -> None:
        existing = self.credentials.find_by_id(proxy.credential_id) if proxy.credential_id else None
        if existing is not None:
            encrypted = self.encryption.encrypt_credentials(username, password)
            fields = {"encrypted_password": encrypted.encrypted_password, "key_id": encrypted.key_id}
            if username:
                fields["encrypted_username"] = encrypted.encrypted_username
            elif existing.encrypted_username and existing.key_id and existing.key_id != encrypted.key_id:
                # The stored username would no longer match the record's key id
                raise ValidationError(
                    "username is required when rotating credentials stored under another key",
                    field="username",
                )
            self.credentials.update_encrypted_data(existing.id, **fields)
            logger.info(f"[proxies] Rotated credentials for proxy {short_id(proxy.id)}")
        else:
            credential = self._create_credential(proxy.id, proxy.name, username, password)
            proxy.credential_id = credential.id
            logger.info(f"[proxies] Linked new credentials to proxy {short_id(proxy.id)}")

    def _create_credential(
        self,
        proxy_id: str,
        proxy_name: Optional[str],
        username: Optional[str],
        password: str,
    ) -> EncryptedCredential:
        encrypted = self.encryption.encrypt_credentials(username, password)
        return self.credentials.create(
            schemas.CredentialCreate(
                owner_entity_id=proxy_id,
                name=f"{proxy_name or 'proxy'}_credentials",
                credential_type=CredentialType.PROXY_AUTH,
                encrypted_username=encrypted.encrypted_username,
                encrypted_password=encrypted.encrypted_password,
                key_id=encrypted.key_id,
            )
        )

    # ============== READ ==============

    def find_by_id(self, proxy_id: str) -> Optional[schemas.ProxyOut]:
        schemas.validate_entity_id(proxy_id)
        row = (
            self.db.query(Proxy, EncryptedCredential.id)
            .outerjoin(EncryptedCredential, Proxy.credential_id == EncryptedCredential.id)
            .filter(Proxy.id == proxy_id)
            .first()
        )
        if row is None:
            return None
        proxy, credential_id = row
        return self._to_dto(proxy, has_credentials=credential_id is not None)

    def find_all(self, filters: Union[schemas.ProxyFilter, dict, None] = None) -> List[schemas.ProxyOut]:
        filters = schemas.validate_input(schemas.ProxyFilter, filters or {})

        query = (
            self.db.query(Proxy, EncryptedCredential.id)
            .outerjoin(EncryptedCredential, Proxy.credential_id == EncryptedCredential.id)
        )
        if filters.status is not None:
            query = query.filter(Proxy.status == filters.status.value)
        if filters.protocol is not None:
            query = query.filter(Proxy.protocol == filters.protocol.value)
        if filters.region is not None:
            query = query.filter(Proxy.region == filters.region)
        if filters.has_credentials is True:
            query = query.filter(EncryptedCredential.id.isnot(None))
        elif filters.has_credentials is False:
            query = query.filter(EncryptedCredential.id.is_(None))
        query = query.order_by(Proxy.created_at, Proxy.id)

        results = []
        for proxy, credential_id in query.all():
            # JSON containment differs per dialect; tags are matched here
            if filters.tag is not None and filters.tag not in (proxy.tags or []):
                continue
            results.append(self._to_dto(proxy, has_credentials=credential_id is not None))
            if filters.limit is not None and len(results) >= filters.limit:
                break
        return results

    def has_credentials(self, proxy_id: str) -> bool:
        """Existence check via join. Decrypts nothing."""
        schemas.validate_entity_id(proxy_id)
        row = (
            self.db.query(Proxy.id)
            .join(EncryptedCredential, Proxy.credential_id == EncryptedCredential.id)
            .filter(Proxy.id == proxy_id)
            .first()
        )
        return row is not None

    def get_proxy_with_credentials(self, proxy_id: str) -> Optional[schemas.ProxyWithCredentials]:
        """
        Load a proxy and decrypt its credentials.

        A successful decryption is audited (access_count + 1). A failed one
        is logged without any secret and returned as decryption_failed=True
        with no decrypted fields, so the caller behaves as if the proxy had
        no credentials.
        """
        schemas.validate_entity_id(proxy_id)
        row = (
            self.db.query(Proxy, EncryptedCredential)
            .outerjoin(EncryptedCredential, Proxy.credential_id == EncryptedCredential.id)
            .filter(Proxy.id == proxy_id)
            .first()
        )
        if row is None:
            return None

        proxy, credential = row
        base = self._to_dto(proxy, has_credentials=credential is not None).model_dump()
        if credential is None:
            return schemas.ProxyWithCredentials(**base)

        credential_id = credential.id
        result = self.encryption.decrypt_credentials(
            credential.encrypted_username,
            credential.encrypted_password,
            key_id=credential.key_id,
        )
        if not result.success:
            logger.warning(
                f"[proxies] Could not decrypt credentials for proxy {short_id(proxy_id)}: {result.error}"
            )
            return schemas.ProxyWithCredentials(**base, decryption_failed=True)

        self._record_access(credential_id)
        return schemas.ProxyWithCredentials(
            **base,
            decrypted_username=result.username,
            decrypted_password=result.password,
        )

    def _record_access(self, credential_id: str) -> None:
        """Best-effort audit write; a failure here never fails the read."""
        try:
            self.credentials.record_access(credential_id)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning(
                f"[proxies] Failed to record access for credential {short_id(credential_id)}: "
                f"{type(exc).__name__}"
            )

    # ============== DELETE ==============

    def delete_proxy(self, proxy_id: str) -> bool:
        """Delete the linked credential (and any other it owns), then the proxy."""
        schemas.validate_entity_id(proxy_id)
        with transaction(self.db):
            proxy = self.db.query(Proxy).filter(Proxy.id == proxy_id).first()
            if proxy is None:
                return False

            if proxy.credential_id:
                self.credentials.delete(proxy.credential_id)
            self.credentials.delete_by_owner(proxy_id)
            self.db.query(Proxy).filter(Proxy.id == proxy_id).delete(synchronize_session=False)
            self.db.expunge(proxy)

        logger.info(f"[proxies] Deleted proxy {short_id(proxy_id)}")
        return True

    # ============== DTO ==============

    @staticmethod
    def _to_dto(proxy: Proxy, has_credentials: bool) -> schemas.ProxyOut:
        # Built field by field: the legacy username/password columns are never read
        return schemas.ProxyOut(
            id=proxy.id,
            name=proxy.name or "",
            host=proxy.host,
            port=proxy.port,
            protocol=proxy.protocol,
            status=proxy.status,
            region=proxy.region,
            tags=list(proxy.tags or []),
            latency=proxy.latency,
            failure_count=proxy.failure_count or 0,
            credential_id=proxy.credential_id if has_credentials else None,
            has_credentials=has_credentials,
            created_at=proxy.created_at,
            updated_at=proxy.updated_at,
        )


def _check_secret_pair(username: Optional[str], password: Optional[str]) -> None:
    if username and not password:
        raise ValidationError("a password is required when a username is given", field="password")
