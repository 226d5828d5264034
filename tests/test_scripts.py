# FILE: tests/test_scripts.py
"""
Tests for scripts/migrate_proxy_passwords.py and scripts/rotate_master_key.py
Operator scripts - run against a file-backed SQLite database.
"""

import sys
from pathlib import Path

_project_root = Path(__file__).parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

import importlib.util

import pytest
from sqlalchemy.orm import sessionmaker

from credvault.credentials.models import EncryptedCredential, Proxy, new_id
from credvault.crypto import EncryptionEngine, derive_key, encode_master_key, generate_key
from credvault.db import create_db_engine, init_db


def _load_script(name):
    path = _project_root / "scripts" / f"{name}.py"
    spec = importlib.util.spec_from_file_location(name, path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def database(tmp_path):
    """File-backed database with one legacy plaintext proxy row."""
    url = f"sqlite:///{tmp_path / 'credvault.db'}"
    engine = create_db_engine(url)
    init_db(bind=engine)
    session = sessionmaker(bind=engine)()
    session.add(
        Proxy(id=new_id(), name="legacy", host="h.example.com", port=8080, protocol="http",
              username="u", password="plaintext-pw", status="active")
    )
    session.commit()
    yield url, session
    session.close()
    engine.dispose()


@pytest.fixture
def master_key(monkeypatch):
    key = generate_key()
    monkeypatch.setenv("CREDVAULT_MASTER_KEY", encode_master_key(key))
    monkeypatch.delenv("CREDVAULT_MASTER_PASSWORD", raising=False)
    return key


class TestMigrateProxyPasswords:

    def test_migrates_and_backs_up(self, database, master_key, tmp_path):
        url, session = database
        script = _load_script("migrate_proxy_passwords")

        assert script.main(["--database-url", url]) == 0

        session.expire_all()
        row = session.query(Proxy).one()
        assert row.password is None
        assert row.credential_id is not None
        assert list(tmp_path.glob("*.pre_password_migration_backup"))

    def test_verify_only_reports_plaintext(self, database, master_key):
        url, session = database
        script = _load_script("migrate_proxy_passwords")

        assert script.main(["--database-url", url, "--verify-only"]) == 1
        assert session.query(Proxy).one().password == "plaintext-pw"

    def test_missing_key(self, database, monkeypatch):
        url, _ = database
        monkeypatch.delenv("CREDVAULT_MASTER_KEY", raising=False)
        monkeypatch.delenv("CREDVAULT_MASTER_PASSWORD", raising=False)
        script = _load_script("migrate_proxy_passwords")

        assert script.main(["--database-url", url]) == 1

    def test_sqlite_path(self):
        script = _load_script("migrate_proxy_passwords")
        assert script.sqlite_path("sqlite:///data/x.db") == Path("data/x.db")
        assert script.sqlite_path("sqlite:///:memory:") is None
        assert script.sqlite_path("postgresql://host/db") is None


class TestRotateMasterKey:

    def test_rotates_to_new_key(self, database, master_key):
        url, session = database
        assert _load_script("migrate_proxy_passwords").main(["--database-url", url, "--no-backup"]) == 0

        new_key = generate_key()
        script = _load_script("rotate_master_key")
        assert script.main(["--database-url", url, "--new-key", encode_master_key(new_key)]) == 0

        session.expire_all()
        record = session.query(EncryptedCredential).one()
        engine = EncryptionEngine.from_key(new_key)
        try:
            assert record.key_id == engine.key_id
            result = engine.decrypt_credentials(record.encrypted_username, record.encrypted_password)
            assert result.password == "plaintext-pw"
        finally:
            engine.destroy()

    def test_same_key_rejected(self, database, master_key):
        url, _ = database
        script = _load_script("rotate_master_key")
        assert script.main(["--database-url", url, "--new-key", encode_master_key(master_key)]) == 1

    def test_generate_prints_new_key(self, database, master_key, capsys):
        url, _ = database
        script = _load_script("rotate_master_key")

        assert script.main(["--database-url", url, "--generate"]) == 0
        assert "CREDVAULT_MASTER_KEY=" in capsys.readouterr().out

    def test_derived_key_resolved_like_application(self, database, monkeypatch):
        url, _ = database
        monkeypatch.delenv("CREDVAULT_MASTER_KEY", raising=False)
        monkeypatch.setenv("CREDVAULT_MASTER_PASSWORD", "pw")
        monkeypatch.setenv("CREDVAULT_KEY_SALT", "abc123")
        script = _load_script("rotate_master_key")

        same_key = encode_master_key(derive_key("pw", "abc123"))
        assert script.main(["--database-url", url, "--new-key", same_key]) == 1
        assert script.main(["--database-url", url, "--generate"]) == 0
