# credvault/logging_config.py
import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once at the application root."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    # SQL echo would print bound parameters (ciphertext and legacy plaintext)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def short_id(value: str | None) -> str:
    """Log-safe identifier prefix: first 8 characters followed by '...'."""
    if not value:
        return "<none>"
    return f"{str(value)[:8]}..."
