# credvault/crypto/__init__.py
"""
Encryption module for credvault.

Exports:
    - EncryptionEngine: AES-256-GCM engine holding one key
    - EncryptionResult, DecryptionResult, ...: structured results
    - EncryptedBlobText: SQLAlchemy column type guarding encrypted columns
    - resolve_master_key, init_engine_from_settings, require_engine_or_exit: startup functions
"""

from .encryption import (
    ALGORITHM,
    BLOB_FORMAT_VERSION,
    KEY_LEN,
    CredentialDecryptionResult,
    DecryptionResult,
    EncryptedCredentials,
    EncryptionEngine,
    EncryptionResult,
    ObjectDecryptionResult,
    compute_key_id,
    decode_master_key,
    derive_key,
    encode_master_key,
    generate_key,
    generate_salt,
    init_engine_from_settings,
    is_encrypted_blob,
    parse_blob,
    require_engine_or_exit,
    resolve_master_key,
)
from .types import EncryptedBlobText

__all__ = [
    "ALGORITHM",
    "BLOB_FORMAT_VERSION",
    "KEY_LEN",
    "EncryptionEngine",
    "EncryptionResult",
    "DecryptionResult",
    "ObjectDecryptionResult",
    "EncryptedCredentials",
    "CredentialDecryptionResult",
    "compute_key_id",
    "decode_master_key",
    "encode_master_key",
    "derive_key",
    "generate_key",
    "generate_salt",
    "is_encrypted_blob",
    "parse_blob",
    "resolve_master_key",
    "init_engine_from_settings",
    "require_engine_or_exit",
    "EncryptedBlobText",
]
