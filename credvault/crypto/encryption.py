# credvault/crypto/encryption.py
"""
Authenticated encryption for credentials at rest (AES-256-GCM).

Each credential field is stored as a three-segment blob:

    base64(iv) : base64(ciphertext) : base64(auth_tag)

with a fresh 16-byte IV per call and a 16-byte GCM tag. The blob layout
itself carries no version marker; the owning record stores
BLOB_FORMAT_VERSION in its encryption_version column so the algorithm can
be upgraded later.

Keys are 32 raw bytes, either imported directly or derived from a password
with scrypt (N=16384, r=8, p=1). A key is tagged by its key id: the first
16 hex characters of its SHA-256 digest.

Write paths fail loud (ConfigurationError / EncryptionError). Read paths
never raise: decrypt() returns a DecryptionResult with success=False and
a description that never contains secret material.

The engine is an explicit instance owned by the application root and
passed to repositories; there is no module-level key holder.
"""

import base64
import binascii
import hashlib
import json
import logging
import secrets
import sys
from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from credvault.config import Settings
from credvault.errors import ConfigurationError, DecryptionError, EncryptionError

logger = logging.getLogger(__name__)

# --- Parameters ---
ALGORITHM = "aes-256-gcm"
KEY_LEN = 32
IV_LEN = 16
TAG_LEN = 16
SALT_LEN = 32
KEY_ID_LEN = 16
BLOB_FORMAT_VERSION = 1
SCRYPT_N = 16384
SCRYPT_R = 8
SCRYPT_P = 1

KeyBytes = Union[bytes, bytearray]


@dataclass(frozen=True)
class EncryptionResult:
    ciphertext: str
    key_id: str


@dataclass(frozen=True)
class DecryptionResult:
    plaintext: str = ""
    success: bool = False
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str) -> "DecryptionResult":
        return cls(plaintext="", success=False, error=error)

    def unwrap(self) -> str:
        """Return the plaintext or raise DecryptionError."""
        if not self.success:
            raise DecryptionError(self.error or "decryption failed")
        return self.plaintext


@dataclass(frozen=True)
class ObjectDecryptionResult:
    data: Any = None
    success: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class EncryptedCredentials:
    encrypted_username: Optional[str]
    encrypted_password: str
    key_id: str


@dataclass(frozen=True)
class CredentialDecryptionResult:
    username: Optional[str] = None
    password: Optional[str] = None
    success: bool = False
    error: Optional[str] = None


# ============================================================================
# WIRE FORMAT + KEY HELPERS
# ============================================================================

def format_blob(iv: bytes, ciphertext: bytes, tag: bytes) -> str:
    return ":".join(
        base64.b64encode(part).decode("ascii") for part in (iv, ciphertext, tag)
    )


def parse_blob(encoded: str) -> Tuple[bytes, bytes, bytes]:
    """
    Split a blob into (iv, ciphertext, tag).
    Raises ValueError with a non-secret description on any malformed input.
    """
    if not isinstance(encoded, str):
        raise ValueError("Invalid encrypted format")
    parts = encoded.split(":")
    if len(parts) != 3:
        raise ValueError("Invalid encrypted format")
    try:
        iv, ciphertext, tag = (base64.b64decode(p.encode("ascii"), validate=True) for p in parts)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ValueError("Invalid encrypted encoding") from exc
    if len(iv) != IV_LEN:
        raise ValueError("Invalid IV length")
    if len(tag) != TAG_LEN:
        raise ValueError("Invalid authentication tag length")
    return iv, ciphertext, tag


def is_encrypted_blob(value: Any) -> bool:
    """Check whether a value has the shape of an encrypted blob."""
    try:
        parse_blob(value)
    except ValueError:
        return False
    return True


def compute_key_id(key: KeyBytes) -> str:
    return hashlib.sha256(bytes(key)).hexdigest()[:KEY_ID_LEN]


def derive_key(password: str, salt: Union[str, bytes]) -> bytes:
    """Derive a 32-byte key from a password with scrypt."""
    salt_bytes = salt.encode("utf-8") if isinstance(salt, str) else salt
    kdf = Scrypt(salt=salt_bytes, length=KEY_LEN, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(password.encode("utf-8"))


def generate_key() -> bytes:
    """Generate a new random 32-byte key."""
    return secrets.token_bytes(KEY_LEN)


def generate_salt() -> str:
    """Generate a random salt as a hex string."""
    return secrets.token_hex(SALT_LEN)


def decode_master_key(key_string: str) -> bytes:
    """
    Decode a URL-safe base64 master key (padding optional).
    Raises ConfigurationError if it does not decode to exactly 32 bytes.
    """
    try:
        padded = key_string + "=" * (-len(key_string) % 4)
        key_bytes = base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
        raise ConfigurationError("master key could not be decoded") from exc
    if len(key_bytes) != KEY_LEN:
        raise ConfigurationError(f"master key must be {KEY_LEN} bytes, got {len(key_bytes)}")
    return key_bytes


def encode_master_key(key: KeyBytes) -> str:
    """Inverse of decode_master_key, for operators generating a new key."""
    return base64.urlsafe_b64encode(bytes(key)).decode("ascii").rstrip("=")


# ============================================================================
# ENGINE
# ============================================================================

class EncryptionEngine:
    """
    Holds one symmetric key and performs AES-256-GCM encrypt/decrypt.

    States: uninitialized -> initialized(key_id) -> uninitialized (destroy).
    """

    def __init__(self):
        self._key: Optional[bytearray] = None
        self._aes: Optional[AESGCM] = None
        self._key_id: Optional[str] = None

    @classmethod
    def from_key(cls, key: KeyBytes) -> "EncryptionEngine":
        engine = cls()
        engine.initialize_with_key(key)
        return engine

    @classmethod
    def from_password(cls, password: str, salt: Union[str, bytes]) -> "EncryptionEngine":
        engine = cls()
        engine.initialize(password, salt)
        return engine

    # --- lifecycle ---

    def initialize(self, password: str, salt: Optional[Union[str, bytes]] = None) -> Union[str, bytes]:
        """
        Derive the key from a password. A salt is generated when none is given.
        Returns the salt that was used so the caller can persist it.
        """
        if not isinstance(password, str) or not password:
            raise ConfigurationError("a non-empty password is required")
        use_salt = salt if salt else generate_salt()
        self._install_key(derive_key(password, use_salt))
        return use_salt

    def initialize_with_key(self, key: KeyBytes) -> None:
        """Use a pre-generated raw key."""
        if not isinstance(key, (bytes, bytearray)):
            raise ConfigurationError("key must be bytes")
        if len(key) != KEY_LEN:
            raise ConfigurationError(f"Key must be {KEY_LEN} bytes")
        self._install_key(key)

    def _install_key(self, key: KeyBytes) -> None:
        self.destroy()
        self._key = bytearray(key)
        self._aes = AESGCM(bytes(self._key))
        self._key_id = compute_key_id(self._key)

    def destroy(self) -> None:
        """Zero the key buffer and forget the key. Safe to call repeatedly."""
        if self._key is not None:
            for i in range(len(self._key)):
                self._key[i] = 0
        self._key = None
        self._aes = None
        self._key_id = None

    def is_initialized(self) -> bool:
        return self._aes is not None

    @property
    def key_id(self) -> Optional[str]:
        return self._key_id

    def verify_key_id(self, expected_key_id: Optional[str]) -> bool:
        return self._key_id is not None and self._key_id == expected_key_id

    # --- strings ---

    def encrypt(self, plaintext: str) -> EncryptionResult:
        aes, key_id = self._aes, self._key_id
        if aes is None or key_id is None:
            raise ConfigurationError("Encryption engine not initialized")
        if not isinstance(plaintext, str):
            raise EncryptionError("plaintext must be a string")

        iv = secrets.token_bytes(IV_LEN)
        try:
            sealed = aes.encrypt(iv, plaintext.encode("utf-8"), None)
        except (ValueError, OverflowError) as exc:
            raise EncryptionError("encryption failed") from exc

        # AESGCM appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_LEN], sealed[-TAG_LEN:]
        return EncryptionResult(ciphertext=format_blob(iv, ciphertext, tag), key_id=key_id)

    def decrypt(self, encoded: str, key_id: Optional[str] = None) -> DecryptionResult:
        """
        Decrypt a blob. Never raises.

        When key_id is given and does not match this engine's key, the blob
        is reported as a key mismatch without attempting decryption.
        """
        aes = self._aes
        if aes is None:
            return DecryptionResult.failure("Encryption engine not initialized")
        if key_id is not None and key_id != self._key_id:
            return DecryptionResult.failure("Key id mismatch")

        try:
            iv, ciphertext, tag = parse_blob(encoded)
        except ValueError as exc:
            return DecryptionResult.failure(str(exc))

        try:
            raw = aes.decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            return DecryptionResult.failure("Authentication failed (wrong key or tampered data)")

        try:
            return DecryptionResult(plaintext=raw.decode("utf-8"), success=True)
        except UnicodeDecodeError:
            return DecryptionResult.failure("Decrypted value is not valid UTF-8")

    # --- objects ---

    def encrypt_object(self, obj: Any) -> EncryptionResult:
        try:
            payload = json.dumps(obj)
        except (TypeError, ValueError) as exc:
            raise EncryptionError("object is not JSON serializable") from exc
        return self.encrypt(payload)

    def decrypt_object(self, encoded: str, key_id: Optional[str] = None) -> ObjectDecryptionResult:
        result = self.decrypt(encoded, key_id=key_id)
        if not result.success:
            return ObjectDecryptionResult(data=None, success=False, error=result.error)
        try:
            return ObjectDecryptionResult(data=json.loads(result.plaintext), success=True)
        except json.JSONDecodeError:
            return ObjectDecryptionResult(data=None, success=False, error="Failed to parse decrypted JSON")

    # --- username/password pairs ---

    def encrypt_credentials(self, username: Optional[str], password: str) -> EncryptedCredentials:
        encrypted_username = self.encrypt(username).ciphertext if username else None
        password_result = self.encrypt(password)
        return EncryptedCredentials(
            encrypted_username=encrypted_username,
            encrypted_password=password_result.ciphertext,
            key_id=password_result.key_id,
        )

    def decrypt_credentials(
        self,
        encrypted_username: Optional[str],
        encrypted_password: str,
        key_id: Optional[str] = None,
    ) -> CredentialDecryptionResult:
        username = None
        if encrypted_username:
            username_result = self.decrypt(encrypted_username, key_id=key_id)
            if not username_result.success:
                return CredentialDecryptionResult(success=False, error=username_result.error)
            username = username_result.plaintext

        password_result = self.decrypt(encrypted_password, key_id=key_id)
        if not password_result.success:
            return CredentialDecryptionResult(success=False, error=password_result.error)

        return CredentialDecryptionResult(
            username=username,
            password=password_result.plaintext,
            success=True,
        )

    # --- key rotation ---

    @staticmethod
    def re_encrypt(encoded: str, old_key: KeyBytes, new_key: KeyBytes) -> Optional[EncryptionResult]:
        """
        Decrypt under old_key and encrypt under new_key.

        Works on short-lived engines built from the explicit keys, so the
        calling engine's key is never swapped. Returns None if the old key
        cannot decrypt the blob.
        """
        old_engine = EncryptionEngine.from_key(old_key)
        new_engine = EncryptionEngine.from_key(new_key)
        try:
            decrypted = old_engine.decrypt(encoded)
            if not decrypted.success:
                return None
            return new_engine.encrypt(decrypted.plaintext)
        finally:
            old_engine.destroy()
            new_engine.destroy()


# ============================================================================
# STARTUP
# ============================================================================

def resolve_master_key(settings: Settings) -> bytes:
    """
    Raw key bytes from the configured key material.

    CREDVAULT_MASTER_KEY takes precedence; otherwise the key is derived from
    CREDVAULT_MASTER_PASSWORD with CREDVAULT_KEY_SALT. A salt is required in
    that case, since a random one would make existing data unreadable.
    """
    if settings.master_key:
        return decode_master_key(settings.master_key)
    if settings.master_password:
        if not settings.key_salt:
            raise ConfigurationError("CREDVAULT_KEY_SALT is required with CREDVAULT_MASTER_PASSWORD")
        return derive_key(settings.master_password, settings.key_salt)
    raise ConfigurationError(
        "no key material configured: set CREDVAULT_MASTER_KEY or CREDVAULT_MASTER_PASSWORD"
    )


def init_engine_from_settings(settings: Settings) -> EncryptionEngine:
    """Build the process-wide engine from configured key material."""
    engine = EncryptionEngine()
    engine.initialize_with_key(resolve_master_key(settings))
    logger.info(f"[crypto] Encryption engine initialized (key id {engine.key_id[:8]}...)")
    return engine


def require_engine_or_exit(settings: Settings) -> EncryptionEngine:
    """Initialize the engine, or exit the process. Startup only."""
    try:
        return init_engine_from_settings(settings)
    except ConfigurationError as exc:
        logger.critical(f"[crypto] FATAL: cannot start without a valid key: {exc}")
        sys.exit(1)
