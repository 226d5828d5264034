# credvault/config.py
"""
Runtime configuration read from environment variables.

The application root calls load_dotenv() before load_settings(), so a
local .env file may provide any of these values during development.

    CREDVAULT_DATABASE_URL     SQLAlchemy URL (default: sqlite:///./data/credvault.db)
    CREDVAULT_MASTER_KEY       URL-safe base64 encoded 32-byte key (preferred)
    CREDVAULT_MASTER_PASSWORD  Password for scrypt derivation (fallback)
    CREDVAULT_KEY_SALT         Salt paired with CREDVAULT_MASTER_PASSWORD
    CREDVAULT_BUSY_TIMEOUT_MS  SQLite lock wait (default: 5000)
    CREDVAULT_AUTO_MIGRATE     Run plaintext migration at startup (default: true)
    CREDVAULT_CREATE_TABLES    Create tables at startup, dev only (default: true)
    CREDVAULT_LOG_LEVEL        Root log level (default: INFO)
"""

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_DATABASE_URL = "sqlite:///./data/credvault.db"
DEFAULT_BUSY_TIMEOUT_MS = 5000


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    master_key: Optional[str] = None
    master_password: Optional[str] = None
    key_salt: Optional[str] = None
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
    auto_migrate: bool = True
    create_tables: bool = True
    log_level: str = "INFO"

    def __repr__(self) -> str:
        # Key material stays out of reprs and tracebacks
        return (
            f"Settings(database_url={self.database_url!r}, "
            f"master_key={'<set>' if self.master_key else None}, "
            f"master_password={'<set>' if self.master_password else None}, "
            f"busy_timeout_ms={self.busy_timeout_ms}, auto_migrate={self.auto_migrate}, "
            f"create_tables={self.create_tables}, log_level={self.log_level!r})"
        )


def load_settings() -> Settings:
    """Build Settings from the current environment."""
    return Settings(
        database_url=os.getenv("CREDVAULT_DATABASE_URL", DEFAULT_DATABASE_URL),
        master_key=os.getenv("CREDVAULT_MASTER_KEY") or None,
        master_password=os.getenv("CREDVAULT_MASTER_PASSWORD") or None,
        key_salt=os.getenv("CREDVAULT_KEY_SALT") or None,
        busy_timeout_ms=_env_int("CREDVAULT_BUSY_TIMEOUT_MS", DEFAULT_BUSY_TIMEOUT_MS),
        auto_migrate=_env_bool("CREDVAULT_AUTO_MIGRATE", True),
        create_tables=_env_bool("CREDVAULT_CREATE_TABLES", True),
        log_level=os.getenv("CREDVAULT_LOG_LEVEL", "INFO"),
    )
