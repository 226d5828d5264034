# file: credvault/router.py
import threading
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from credvault.credentials import schemas
from credvault.credentials.repository import SecureProxyRepository
from credvault.crypto import EncryptionEngine
from credvault.db import get_db
from credvault.errors import (
    ConfigurationError, CredentialVaultError, EncryptionError, TransactionError, ValidationError,
)
from credvault.migration import PasswordMigrationCoordinator

router = APIRouter(tags=["credentials"])

# Shared across requests so two POST /migration/run calls cannot overlap
_migration_lock = threading.Lock()


def get_encryption_engine(request: Request) -> EncryptionEngine:
    engine = getattr(request.app.state, "encryption_engine", None)
    if engine is None or not engine.is_initialized():
        raise HTTPException(status_code=503, detail="Encryption engine not initialized")
    return engine


def get_repository(
    db: Session = Depends(get_db),
    engine: EncryptionEngine = Depends(get_encryption_engine),
) -> SecureProxyRepository:
    return SecureProxyRepository(db, engine)


def get_coordinator(
    db: Session = Depends(get_db),
    engine: EncryptionEngine = Depends(get_encryption_engine),
) -> PasswordMigrationCoordinator:
    return PasswordMigrationCoordinator(db, engine, run_lock=_migration_lock)


def _http_error(exc: CredentialVaultError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=503, detail="Encryption engine not initialized")
    if isinstance(exc, TransactionError):
        return HTTPException(status_code=409, detail="Write rejected by the database")
    if isinstance(exc, EncryptionError):
        return HTTPException(status_code=500, detail="Encryption failed")
    return HTTPException(status_code=500, detail="Credential operation failed")


# ============== PROXIES ==============

@router.post("/proxies", response_model=schemas.ProxyOut, status_code=201)
def create_proxy(data: dict, repo: SecureProxyRepository = Depends(get_repository)):
    # Raw dict body; validate_input reports errors without echoing values
    try:
        return repo.add_proxy(data)
    except CredentialVaultError as exc:
        raise _http_error(exc) from exc


@router.get("/proxies", response_model=List[schemas.ProxyOut])
def list_proxies(
    status: Optional[str] = None,
    protocol: Optional[str] = None,
    region: Optional[str] = None,
    tag: Optional[str] = None,
    has_credentials: Optional[bool] = None,
    limit: Optional[int] = None,
    repo: SecureProxyRepository = Depends(get_repository),
):
    filters = {
        key: value
        for key, value in {
            "status": status,
            "protocol": protocol,
            "region": region,
            "tag": tag,
            "has_credentials": has_credentials,
            "limit": limit,
        }.items()
        if value is not None
    }
    try:
        return repo.find_all(filters)
    except CredentialVaultError as exc:
        raise _http_error(exc) from exc


@router.get("/proxies/{proxy_id}", response_model=schemas.ProxyOut)
def get_proxy(proxy_id: str, repo: SecureProxyRepository = Depends(get_repository)):
    try:
        proxy = repo.find_by_id(proxy_id)
    except CredentialVaultError as exc:
        raise _http_error(exc) from exc
    if not proxy:
        raise HTTPException(status_code=404, detail="Proxy not found")
    return proxy


@router.get("/proxies/{proxy_id}/has-credentials")
def proxy_has_credentials(proxy_id: str, repo: SecureProxyRepository = Depends(get_repository)):
    try:
        if repo.find_by_id(proxy_id) is None:
            raise HTTPException(status_code=404, detail="Proxy not found")
        return {"proxy_id": proxy_id, "has_credentials": repo.has_credentials(proxy_id)}
    except CredentialVaultError as exc:
        raise _http_error(exc) from exc


@router.patch("/proxies/{proxy_id}", response_model=schemas.ProxyOut)
def update_proxy(proxy_id: str, data: schemas.ProxyUpdateBody, repo: SecureProxyRepository = Depends(get_repository)):
    try:
        proxy = repo.update_proxy({**data.model_dump(exclude_unset=True), "id": proxy_id})
    except CredentialVaultError as exc:
        raise _http_error(exc) from exc
    if not proxy:
        raise HTTPException(status_code=404, detail="Proxy not found")
    return proxy


@router.delete("/proxies/{proxy_id}", status_code=204)
def delete_proxy(proxy_id: str, repo: SecureProxyRepository = Depends(get_repository)):
    try:
        success = repo.delete_proxy(proxy_id)
    except CredentialVaultError as exc:
        raise _http_error(exc) from exc
    if not success:
        raise HTTPException(status_code=404, detail="Proxy not found")
    return None


# ============== MIGRATION ==============

@router.get("/migration/status")
def migration_status(coordinator: PasswordMigrationCoordinator = Depends(get_coordinator)):
    status = coordinator.get_status()
    return {
        "needs_migration": coordinator.needs_migration(),
        "running": coordinator.is_running(),
        "status": status.model_dump() if status else None,
    }


@router.post("/migration/run")
def run_migration(coordinator: PasswordMigrationCoordinator = Depends(get_coordinator)):
    result = coordinator.run_migration()
    if not result.success and result.error == "Migration already in progress":
        raise HTTPException(status_code=409, detail=result.error)
    return {
        "success": result.success,
        "total_count": result.total_count,
        "migrated_count": result.migrated_count,
        "failed_count": result.failed_count,
        "skipped_count": result.skipped_count,
        "duration_ms": result.duration_ms,
        "error": result.error,
    }


@router.get("/migration/verify")
def verify_migration(coordinator: PasswordMigrationCoordinator = Depends(get_coordinator)):
    result = coordinator.verify_migration()
    return {
        "valid": result.valid,
        "plaintext_count": result.plaintext_count,
        "encrypted_count": result.encrypted_count,
        "errors": result.errors,
    }
