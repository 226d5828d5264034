# FILE: credvault/credentials/schemas.py
"""
Pydantic schemas for proxies and encrypted credentials.

Input schemas carry every bound checked before a repository touches the
database. Output schemas (DTOs) have no plaintext secret fields at all;
decrypted values only ever appear as SecretStr on ProxyWithCredentials.
"""
import uuid
from datetime import datetime
from typing import Any, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, SecretStr, StringConstraints
from pydantic import ValidationError as PydanticValidationError
from typing_extensions import Annotated

from credvault.credentials.models import (
    AccessLevel, CredentialType, MigrationState, ProxyProtocol, ProxyStatus,
)
from credvault.errors import ValidationError

NAME_MAX_LENGTH = 100
HOST_MAX_LENGTH = 255
USERNAME_MAX_LENGTH = 255
PASSWORD_MAX_LENGTH = 255
REGION_MAX_LENGTH = 100
TAG_MAX_LENGTH = 50
MAX_TAGS_COUNT = 20
MIN_PORT = 1
MAX_PORT = 65535
HOSTNAME_PATTERN = r"^[a-zA-Z0-9]([a-zA-Z0-9.-]*[a-zA-Z0-9])?$"

Tag = Annotated[str, StringConstraints(strip_whitespace=True, max_length=TAG_MAX_LENGTH)]
Host = Annotated[
    str,
    StringConstraints(strip_whitespace=True, min_length=1, max_length=HOST_MAX_LENGTH, pattern=HOSTNAME_PATTERN),
]

ModelT = TypeVar("ModelT", bound=BaseModel)


def validate_input(model_cls: Type[ModelT], data: Any) -> ModelT:
    """
    Validate data against model_cls, raising credvault ValidationError.

    The message lists field locations and reasons only; pydantic's own
    message would echo the rejected input, which may be a password.
    """
    if isinstance(data, model_cls):
        data = data.model_dump(exclude_unset=True)
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as exc:
        problems = []
        first_field = None
        for err in exc.errors(include_input=False, include_url=False):
            loc = ".".join(str(part) for part in err.get("loc", ())) or "input"
            first_field = first_field or loc
            problems.append(f"{loc}: {err.get('msg', 'invalid')}")
        raise ValidationError("; ".join(problems), field=first_field) from None


def validate_entity_id(value: Any, field: str = "id") -> str:
    """Accept only canonical UUID strings."""
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a UUID string", field=field)
    try:
        parsed = uuid.UUID(value)
    except ValueError:
        raise ValidationError(f"{field} is not a valid UUID", field=field) from None
    if str(parsed) != value.lower():
        raise ValidationError(f"{field} is not a valid UUID", field=field)
    return value


# ============== PROXY INPUT ==============

class ProxyCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(default="", max_length=NAME_MAX_LENGTH)
    host: Host
    port: int = Field(ge=MIN_PORT, le=MAX_PORT)
    protocol: ProxyProtocol
    username: Optional[str] = Field(default=None, max_length=USERNAME_MAX_LENGTH, repr=False)
    password: Optional[str] = Field(default=None, max_length=PASSWORD_MAX_LENGTH, repr=False)
    region: Optional[str] = Field(default=None, max_length=REGION_MAX_LENGTH)
    tags: Optional[List[Tag]] = Field(default=None, max_length=MAX_TAGS_COUNT)
    status: ProxyStatus = ProxyStatus.CHECKING

    @property
    def has_secret(self) -> bool:
        return bool(self.password)


class ProxyUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: Optional[str] = Field(default=None, max_length=NAME_MAX_LENGTH)
    host: Optional[Host] = None
    port: Optional[int] = Field(default=None, ge=MIN_PORT, le=MAX_PORT)
    protocol: Optional[ProxyProtocol] = None
    username: Optional[str] = Field(default=None, max_length=USERNAME_MAX_LENGTH, repr=False)
    password: Optional[str] = Field(default=None, max_length=PASSWORD_MAX_LENGTH, repr=False)
    region: Optional[str] = Field(default=None, max_length=REGION_MAX_LENGTH)
    tags: Optional[List[Tag]] = Field(default=None, max_length=MAX_TAGS_COUNT)
    status: Optional[ProxyStatus] = None

    @property
    def has_secret(self) -> bool:
        return bool(self.password)


class ProxyUpdateBody(BaseModel):
    """ProxyUpdate without the id, for the HTTP layer (id comes from the path)."""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    protocol: Optional[str] = None
    username: Optional[str] = Field(default=None, repr=False)
    password: Optional[str] = Field(default=None, repr=False)
    region: Optional[str] = None
    tags: Optional[List[str]] = None
    status: Optional[str] = None


class ProxyFilter(BaseModel):
    """Optional filters for find_all(); each one becomes a bound parameter."""
    model_config = ConfigDict(extra="forbid")

    status: Optional[ProxyStatus] = None
    protocol: Optional[ProxyProtocol] = None
    region: Optional[str] = Field(default=None, max_length=REGION_MAX_LENGTH)
    tag: Optional[Tag] = None
    has_credentials: Optional[bool] = None
    limit: Optional[int] = Field(default=None, ge=1, le=10_000)


# ============== PROXY OUTPUT ==============

class ProxyOut(BaseModel):
    """Proxy DTO. There are no username/password fields."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    host: str
    port: int
    protocol: str
    status: str
    region: Optional[str] = None
    tags: List[str] = []
    latency: Optional[int] = None
    failure_count: int = 0
    credential_id: Optional[str] = None
    has_credentials: bool = False
    created_at: datetime
    updated_at: datetime


class ProxyWithCredentials(ProxyOut):
    decrypted_username: Optional[SecretStr] = None
    decrypted_password: Optional[SecretStr] = None
    decryption_failed: bool = False


# ============== CREDENTIALS ==============

class CredentialCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    owner_entity_id: Optional[str] = None
    name: str = Field(min_length=1, max_length=255)
    credential_type: CredentialType = CredentialType.PROXY_AUTH
    encrypted_username: Optional[str] = None
    encrypted_password: Optional[str] = None
    encrypted_data: Optional[str] = None
    key_id: Optional[str] = Field(default=None, max_length=16)
    provider: Optional[str] = Field(default=None, max_length=100)
    expires_at: Optional[datetime] = None
    access_level: AccessLevel = AccessLevel.PRIVATE


class CredentialOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_entity_id: Optional[str] = None
    name: str
    credential_type: str
    encrypted_username: Optional[str] = Field(default=None, repr=False)
    encrypted_password: Optional[str] = Field(default=None, repr=False)
    encrypted_data: Optional[str] = Field(default=None, repr=False)
    encryption_version: int
    key_id: Optional[str] = None
    algorithm: str
    provider: Optional[str] = None
    expires_at: Optional[datetime] = None
    last_rotated_at: Optional[datetime] = None
    rotation_required: bool = False
    access_level: str
    created_at: datetime
    updated_at: datetime
    last_accessed_at: Optional[datetime] = None
    access_count: int = 0


# ============== MIGRATION ==============

class MigrationStatusOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: MigrationState
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_count: int = 0
    migrated_count: int = 0
    failed_count: int = 0
    last_processed_id: Optional[str] = None
    error_message: Optional[str] = None
