# credvault/credentials/models.py
"""
SQLAlchemy ORM models for proxy credentials.

Tables:
1. proxies - connection attributes plus an optional credential_id
2. encrypted_credentials - encrypted secret records, not tied to the proxies schema
3. password_migration_status - singleton row tracking plaintext migration

The legacy `username` / `password` columns on proxies are read only by the
migration coordinator. Repository write paths never populate them.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer,
    String, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from credvault.crypto import ALGORITHM, BLOB_FORMAT_VERSION, EncryptedBlobText
from credvault.db import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how SQLite stores DateTime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# ENUMS
# =============================================================================

class ProxyProtocol(str, Enum):
    HTTP = "http"
    HTTPS = "https"
    SOCKS4 = "socks4"
    SOCKS5 = "socks5"


class ProxyStatus(str, Enum):
    ACTIVE = "active"
    FAILED = "failed"
    CHECKING = "checking"
    DISABLED = "disabled"


class CredentialType(str, Enum):
    PROXY_AUTH = "proxy_auth"      # Proxy username/password
    API_KEY = "api_key"            # API key for a proxy provider
    OAUTH_TOKEN = "oauth_token"
    CERTIFICATE = "certificate"
    SSH_KEY = "ssh_key"            # SSH keys for SOCKS proxies


class AccessLevel(str, Enum):
    PRIVATE = "private"
    SHARED = "shared"
    ADMIN = "admin"


class MigrationState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


def _in(values) -> str:
    return ", ".join(f"'{v.value}'" for v in values)


# =============================================================================
# MODELS
# =============================================================================

class EncryptedCredential(Base):
    __tablename__ = "encrypted_credentials"
    __table_args__ = (
        CheckConstraint(f"credential_type IN ({_in(CredentialType)})", name="ck_credential_type"),
        CheckConstraint(f"access_level IN ({_in(AccessLevel)})", name="ck_access_level"),
        CheckConstraint("access_count >= 0", name="ck_access_count"),
    )

    id = Column(String(36), primary_key=True, default=new_id)

    # Owning entity (nullable for shared/pool credentials). No FK: the store
    # does not depend on any particular owner schema.
    owner_entity_id = Column(String(36), nullable=True, index=True)

    name = Column(String(255), nullable=False)
    credential_type = Column(String(20), nullable=False, default=CredentialType.PROXY_AUTH.value, index=True)

    # ENCRYPTED: base64(iv):base64(ciphertext):base64(tag)
    encrypted_username = Column(EncryptedBlobText, nullable=True)
    encrypted_password = Column(EncryptedBlobText, nullable=True)
    encrypted_data = Column(EncryptedBlobText, nullable=True)  # tokens, certs, etc.

    # Encryption metadata
    encryption_version = Column(Integer, nullable=False, default=BLOB_FORMAT_VERSION)
    key_id = Column(String(16), nullable=True, index=True)
    algorithm = Column(String(20), nullable=False, default=ALGORITHM)

    # Credential metadata (not encrypted)
    provider = Column(String(100), nullable=True)
    expires_at = Column(DateTime, nullable=True)
    last_rotated_at = Column(DateTime, nullable=True)
    rotation_required = Column(Boolean, nullable=False, default=False)

    access_level = Column(String(10), nullable=False, default=AccessLevel.PRIVATE.value)

    # Audit fields
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
    last_accessed_at = Column(DateTime, nullable=True)
    access_count = Column(Integer, nullable=False, default=0)


class Proxy(Base):
    __tablename__ = "proxies"
    __table_args__ = (
        UniqueConstraint("host", "port", "protocol", name="uq_proxy_endpoint"),
        CheckConstraint("port >= 1 AND port <= 65535", name="ck_proxy_port"),
        CheckConstraint(f"protocol IN ({_in(ProxyProtocol)})", name="ck_proxy_protocol"),
        CheckConstraint(f"status IN ({_in(ProxyStatus)})", name="ck_proxy_status"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(100), nullable=False, default="")
    host = Column(String(255), nullable=False)
    port = Column(Integer, nullable=False)
    protocol = Column(String(10), nullable=False)

    # LEGACY plaintext columns - migration input only, never written by repositories
    username = Column(Text, nullable=True)
    password = Column(Text, nullable=True)

    credential_id = Column(
        String(36),
        ForeignKey("encrypted_credentials.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    status = Column(String(20), nullable=False, default=ProxyStatus.CHECKING.value, index=True)
    latency = Column(Integer, nullable=True)
    failure_count = Column(Integer, nullable=False, default=0)
    region = Column(String(100), nullable=True)
    tags = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    credential = relationship("EncryptedCredential", foreign_keys=[credential_id])


class PasswordMigrationStatus(Base):
    """Singleton row (id=1) tracking the plaintext password migration."""
    __tablename__ = "password_migration_status"
    __table_args__ = (
        CheckConstraint("id = 1", name="ck_migration_singleton"),
        CheckConstraint(f"status IN ({_in(MigrationState)})", name="ck_migration_status"),
    )

    id = Column(Integer, primary_key=True, default=1)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    total_count = Column(Integer, nullable=False, default=0)
    migrated_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    last_processed_id = Column(String(36), nullable=True)
    status = Column(String(20), nullable=False, default=MigrationState.PENDING.value)
    error_message = Column(Text, nullable=True)
