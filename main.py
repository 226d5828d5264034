# FILE: main.py
"""
Credvault - FastAPI Application
Version: 0.3.0

Security Features:
- Proxy credentials encrypted at rest with AES-256-GCM
- Key material from CREDVAULT_MASTER_KEY (or CREDVAULT_MASTER_PASSWORD + CREDVAULT_KEY_SALT)
- Decrypted secrets are never returned over HTTP

Startup:
- Refuses to start without a valid key
- Optionally creates tables (dev) and migrates legacy plaintext passwords

Run:
    python -m uvicorn main:app --host 127.0.0.1 --port 8000
"""
import os
import logging

from fastapi import FastAPI
from dotenv import load_dotenv

# Load .env FIRST before any other imports that might need env vars
load_dotenv()

from credvault import __version__
from credvault.config import Settings, load_settings
from credvault.crypto import require_engine_or_exit
from credvault.db import create_db_engine, create_session_factory, get_db, init_db
from credvault.logging_config import configure_logging
from credvault.migration import PasswordMigrationCoordinator
from credvault.router import router as credentials_router

logger = logging.getLogger("credvault.main")


def _ensure_sqlite_dir(database_url: str) -> None:
    prefix = "sqlite:///"
    if database_url.startswith(prefix) and ":memory:" not in database_url:
        directory = os.path.dirname(database_url[len(prefix):])
        if directory:
            os.makedirs(directory, exist_ok=True)


def _run_startup_migration(app: FastAPI) -> None:
    db = app.state.session_factory()
    try:
        coordinator = PasswordMigrationCoordinator(db, app.state.encryption_engine)
        if not coordinator.needs_migration():
            logger.info("[startup] Password migration: [OK] nothing to migrate")
            return
        result = coordinator.run_migration()
        if result.success:
            logger.info(f"[startup] Password migration: [OK] {result.migrated_count} migrated")
        else:
            logger.error(
                f"[startup] Password migration: [X] {result.failed_count} failed "
                f"({result.error or 'see log'})"
            )
    finally:
        db.close()


def create_app(settings: Settings = None) -> FastAPI:
    settings = settings or load_settings()

    app = FastAPI(
        title="Credvault",
        version=__version__,
        description="Encrypted credential storage for proxy records",
    )
    app.state.encryption_engine = None
    app.state.db_engine = create_db_engine(settings.database_url, settings.busy_timeout_ms)
    app.state.session_factory = create_session_factory(app.state.db_engine)
    app.include_router(credentials_router)

    def get_app_db():
        db = app.state.session_factory()
        try:
            yield db
        finally:
            db.close()

    # Requests use this app's database, not the one configured at import time
    app.dependency_overrides[get_db] = get_app_db

    @app.on_event("startup")
    def on_startup():
        configure_logging(settings.log_level)

        # Encryption FIRST: exits if no valid key is configured
        logger.info("[startup] Initializing encryption...")
        app.state.encryption_engine = require_engine_or_exit(settings)
        logger.info("[startup] Credential encryption: [OK] key active")

        _ensure_sqlite_dir(settings.database_url)
        if settings.create_tables:
            init_db(bind=app.state.db_engine)

        if settings.auto_migrate:
            _run_startup_migration(app)
        else:
            logger.info("[startup] Password migration: [X] DISABLED (CREDVAULT_AUTO_MIGRATE=false)")

    @app.on_event("shutdown")
    def on_shutdown():
        engine = app.state.encryption_engine
        if engine is not None:
            engine.destroy()
            app.state.encryption_engine = None
        logger.info("[shutdown] Encryption key cleared")
        app.state.db_engine.dispose()

    @app.get("/ping")
    def ping():
        return {"status": "ok"}

    return app


app = create_app()
