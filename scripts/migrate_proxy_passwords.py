#!/usr/bin/env python3
# scripts/migrate_proxy_passwords.py
"""
Encrypt legacy plaintext proxy passwords.

Moves proxies.username / proxies.password into encrypted_credentials and
links each proxy to its new credential record. Safe to re-run: rows that
no longer hold a plaintext password are not touched.

Key material comes from CREDVAULT_MASTER_KEY (or CREDVAULT_MASTER_PASSWORD
with CREDVAULT_KEY_SALT), same as the application.

Usage:
    python scripts/migrate_proxy_passwords.py
    python scripts/migrate_proxy_passwords.py --verify-only
    python scripts/migrate_proxy_passwords.py --database-url sqlite:///data/other.db --no-backup

Exit code is 0 only if verification passes after the run.
"""

import argparse
import shutil
import sys
from pathlib import Path
from typing import List, Optional

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
from sqlalchemy.orm import sessionmaker

from credvault.batch import Outcome
from credvault.config import load_settings
from credvault.crypto import init_engine_from_settings
from credvault.db import create_db_engine
from credvault.errors import ConfigurationError
from credvault.logging_config import configure_logging
from credvault.migration import PasswordMigrationCoordinator


def sqlite_path(database_url: str) -> Optional[Path]:
    """Filesystem path of a file-backed SQLite URL, else None."""
    prefix = "sqlite:///"
    if not database_url.startswith(prefix) or ":memory:" in database_url:
        return None
    return Path(database_url[len(prefix):])


def backup_database(db_path: Path) -> Path:
    backup_path = db_path.with_suffix(db_path.suffix + ".pre_password_migration_backup")
    if not backup_path.exists():
        shutil.copy(db_path, backup_path)
        print(f"[OK] Created backup: {backup_path}")
    else:
        print(f"[INFO] Backup already exists: {backup_path}")
    return backup_path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Encrypt legacy plaintext proxy passwords")
    parser.add_argument("--database-url", help="SQLAlchemy URL (default: CREDVAULT_DATABASE_URL)")
    parser.add_argument("--no-backup", action="store_true", help="Skip the SQLite file backup")
    parser.add_argument("--verify-only", action="store_true", help="Only report the current state")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    settings = load_settings()
    configure_logging(settings.log_level)
    database_url = args.database_url or settings.database_url

    print("=" * 60)
    print("ENCRYPT PLAINTEXT PROXY PASSWORDS")
    print("=" * 60)

    try:
        encryption = init_engine_from_settings(settings)
    except ConfigurationError as exc:
        print(f"[ERROR] {exc}")
        return 1
    print(f"[OK] Encryption initialized (key id {encryption.key_id[:8]}...)")

    db_path = sqlite_path(database_url)
    if db_path is not None and not db_path.exists():
        print(f"[ERROR] Database not found: {db_path}")
        encryption.destroy()
        return 1
    if db_path is not None and not args.no_backup and not args.verify_only:
        backup_database(db_path)

    db_engine = create_db_engine(database_url, settings.busy_timeout_ms)
    db = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)()
    try:
        coordinator = PasswordMigrationCoordinator(db, encryption)

        if not args.verify_only:
            if coordinator.needs_migration():
                result = coordinator.run_migration()
                print(
                    f"[INFO] Migrated {result.migrated_count}, failed {result.failed_count}, "
                    f"skipped {result.skipped_count} of {result.total_count} ({result.duration_ms}ms)"
                )
                for item in result.outcomes:
                    if item.outcome is Outcome.FAILED:
                        print(f"  [X] {item.item_id[:8]}...: {item.error}")
                if result.error:
                    print(f"[ERROR] {result.error}")
            else:
                print("[OK] No plaintext passwords found")

        verification = coordinator.verify_migration()
        print(
            f"[INFO] Plaintext remaining: {verification.plaintext_count}, "
            f"encrypted proxies: {verification.encrypted_count}"
        )
        for error in verification.errors:
            print(f"  [X] {error}")
    finally:
        db.close()
        db_engine.dispose()
        encryption.destroy()

    print("=" * 60)
    if verification.valid:
        print("VERIFICATION PASSED")
        return 0
    print("VERIFICATION FAILED")
    return 1


if __name__ == "__main__":
    sys.exit(main())
