#!/usr/bin/env python3
# scripts/rotate_master_key.py
"""
Rotate the credential encryption key.

Re-encrypts every encrypted_credentials record tagged with the current key
under a new key. Each record switches keys in its own transaction; records
that fail keep their old ciphertext and are listed at the end.

The current key comes from CREDVAULT_MASTER_KEY (or CREDVAULT_MASTER_PASSWORD
with CREDVAULT_KEY_SALT). The backend should NOT be running during rotation.

Usage:
    python scripts/rotate_master_key.py --generate
    python scripts/rotate_master_key.py --new-key <urlsafe-base64 32-byte key>

After a successful run, set CREDVAULT_MASTER_KEY to the new key before
restarting the backend.
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
from sqlalchemy.orm import sessionmaker

from credvault.config import load_settings
from credvault.credentials.store import CredentialStore
from credvault.crypto import decode_master_key, encode_master_key, generate_key, resolve_master_key
from credvault.db import create_db_engine
from credvault.errors import ConfigurationError
from credvault.logging_config import configure_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Re-encrypt stored credentials under a new key")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--new-key", help="New key, urlsafe base64 of 32 random bytes")
    group.add_argument("--generate", action="store_true", help="Generate a new random key")
    parser.add_argument("--database-url", help="SQLAlchemy URL (default: CREDVAULT_DATABASE_URL)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    settings = load_settings()
    configure_logging(settings.log_level)

    print("=" * 60)
    print("ROTATE CREDENTIAL ENCRYPTION KEY")
    print("=" * 60)

    try:
        old_key = resolve_master_key(settings)
        new_key = generate_key() if args.generate else decode_master_key(args.new_key)
    except ConfigurationError as exc:
        print(f"[ERROR] {exc}")
        return 1
    if new_key == old_key:
        print("[ERROR] New key is the same as the current key")
        return 1

    db_engine = create_db_engine(args.database_url or settings.database_url, settings.busy_timeout_ms)
    db = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)()
    try:
        result = CredentialStore(db).rotate_key(old_key, new_key)
    finally:
        db.close()
        db_engine.dispose()

    print(f"[INFO] Rotated {result.rotated_count} of {result.total_count} credentials")
    for item in result.outcomes.failures:
        print(f"  [X] {item.item_id[:8]}...: {item.error}")

    if args.generate:
        print()
        print("New key (store it before restarting the backend):")
        print(f"  CREDVAULT_MASTER_KEY={encode_master_key(new_key)}")

    print("=" * 60)
    if result.success:
        print(f"ROTATION COMPLETE (new key id {result.new_key_id[:8]}...)")
        return 0
    print("ROTATION INCOMPLETE: failed records still use the old key")
    return 1


if __name__ == "__main__":
    sys.exit(main())
