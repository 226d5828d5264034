# FILE: tests/conftest.py
"""
Pytest configuration for the credvault test suite.

Provides:
- db_engine / mock_db: in-memory SQLite with every table created
- encryption: an engine with a fresh random key, destroyed after the test
"""
import os
import sys
from pathlib import Path

_project_root = Path(__file__).parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

# Module-level engine in credvault.db must never point at a real file during tests
os.environ.setdefault("CREDVAULT_DATABASE_URL", "sqlite:///:memory:")

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


@pytest.fixture
def db_engine():
    """In-memory SQLite shared by every session in the test (StaticPool)."""
    from credvault.db import create_db_engine, init_db
    engine = create_db_engine("sqlite://", poolclass=StaticPool)
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def mock_db(db_engine):
    """Create in-memory database session for testing."""
    session = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)()
    yield session
    session.close()


@pytest.fixture
def encryption():
    from credvault.crypto import EncryptionEngine, generate_key
    engine = EncryptionEngine.from_key(generate_key())
    yield engine
    engine.destroy()


@pytest.fixture
def repo(mock_db, encryption):
    from credvault.credentials.repository import SecureProxyRepository
    return SecureProxyRepository(mock_db, encryption)


@pytest.fixture
def make_legacy_proxy(mock_db):
    """Insert a proxy row the old way, with plaintext credentials in the proxies table."""
    from credvault.credentials.models import Proxy, new_id

    counter = {"port": 9000}

    def _make(username="user", password="secret", proxy_id=None, credential_id=None, name="legacy"):
        counter["port"] += 1
        proxy = Proxy(
            id=proxy_id or new_id(),
            name=name,
            host="legacy.example.com",
            port=counter["port"],
            protocol="http",
            username=username,
            password=password,
            credential_id=credential_id,
            status="active",
        )
        mock_db.add(proxy)
        mock_db.commit()
        return proxy.id

    return _make
