# FILE: tests/test_encryption.py
"""
Tests for credvault/crypto/encryption.py
AES-256-GCM engine - encrypts credential fields at rest.
"""

import sys
from pathlib import Path

_project_root = Path(__file__).parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

import base64

import pytest

from credvault.crypto import (
    EncryptionEngine,
    compute_key_id,
    decode_master_key,
    derive_key,
    encode_master_key,
    generate_key,
    generate_salt,
    is_encrypted_blob,
    parse_blob,
)
from credvault.errors import ConfigurationError, DecryptionError, EncryptionError


def _flip_segment_byte(blob: str, segment: int) -> str:
    parts = blob.split(":")
    raw = bytearray(base64.b64decode(parts[segment]))
    raw[0] ^= 0x01
    parts[segment] = base64.b64encode(bytes(raw)).decode("ascii")
    return ":".join(parts)


class TestEncryptDecrypt:
    """Test encrypt/decrypt round-trip."""

    def test_encrypt_decrypt_string(self, encryption):
        plaintext = "Hello, World! This is a secret password."
        result = encryption.encrypt(plaintext)

        assert result.ciphertext != plaintext
        assert plaintext not in result.ciphertext
        assert result.key_id == encryption.key_id

        decrypted = encryption.decrypt(result.ciphertext)
        assert decrypted.success is True
        assert decrypted.plaintext == plaintext
        assert decrypted.error is None

    def test_encrypt_decrypt_unicode(self, encryption):
        plaintext = "Unicode test: 日本語 🎉 émoji ñ"
        result = encryption.encrypt(plaintext)
        assert encryption.decrypt(result.ciphertext).plaintext == plaintext

    def test_encrypt_empty_string(self, encryption):
        result = encryption.encrypt("")
        assert encryption.decrypt(result.ciphertext).unwrap() == ""

    def test_same_plaintext_different_ciphertext(self, encryption):
        """Random IV per call: same input never produces the same blob."""
        first = encryption.encrypt("p@ssw0rd")
        second = encryption.encrypt("p@ssw0rd")

        assert first.ciphertext != second.ciphertext
        assert encryption.decrypt(first.ciphertext).plaintext == "p@ssw0rd"
        assert encryption.decrypt(second.ciphertext).plaintext == "p@ssw0rd"

    def test_blob_format(self, encryption):
        blob = encryption.encrypt("abc").ciphertext
        iv, ciphertext, tag = parse_blob(blob)

        assert blob.count(":") == 2
        assert len(iv) == 16
        assert len(tag) == 16
        assert len(ciphertext) == 3
        assert is_encrypted_blob(blob)

    def test_encrypt_rejects_non_string(self, encryption):
        with pytest.raises(EncryptionError):
            encryption.encrypt(12345)


class TestTamperDetection:
    """Any modification of the stored blob must fail authentication."""

    def test_modified_ciphertext_fails(self, encryption):
        blob = encryption.encrypt("tamper me").ciphertext
        result = encryption.decrypt(_flip_segment_byte(blob, 1))

        assert result.success is False
        assert result.plaintext == ""
        assert "Authentication failed" in result.error

    def test_modified_tag_fails(self, encryption):
        blob = encryption.encrypt("tamper me").ciphertext
        result = encryption.decrypt(_flip_segment_byte(blob, 2))
        assert result.success is False

    def test_modified_iv_fails(self, encryption):
        blob = encryption.encrypt("tamper me").ciphertext
        result = encryption.decrypt(_flip_segment_byte(blob, 0))
        assert result.success is False

    def test_malformed_blobs(self, encryption):
        assert encryption.decrypt("not-encrypted").error == "Invalid encrypted format"
        assert encryption.decrypt("a:b").error == "Invalid encrypted format"
        assert encryption.decrypt("!!!:???:***").error == "Invalid encrypted encoding"

        short_iv = ":".join(base64.b64encode(b"x" * n).decode() for n in (8, 4, 16))
        assert encryption.decrypt(short_iv).error == "Invalid IV length"

        short_tag = ":".join(base64.b64encode(b"x" * n).decode() for n in (16, 4, 8))
        assert encryption.decrypt(short_tag).error == "Invalid authentication tag length"

    def test_failed_decrypt_never_echoes_input(self, encryption):
        blob = encryption.encrypt("hunter2").ciphertext
        result = encryption.decrypt(_flip_segment_byte(blob, 1))
        assert "hunter2" not in result.error
        assert blob not in result.error

    def test_unwrap_raises_decryption_error(self, encryption):
        result = encryption.decrypt("garbage")
        with pytest.raises(DecryptionError):
            result.unwrap()


class TestKeyIsolation:
    """Data under key A never decrypts under key B."""

    def test_wrong_key_fails(self, encryption):
        other = EncryptionEngine.from_key(generate_key())
        try:
            blob = encryption.encrypt("isolated").ciphertext
            result = other.decrypt(blob)

            assert result.success is False
            assert other.key_id != encryption.key_id
        finally:
            other.destroy()

    def test_key_id_mismatch_is_reported_without_decrypting(self, encryption):
        blob = encryption.encrypt("x").ciphertext
        result = encryption.decrypt(blob, key_id="0000000000000000")

        assert result.success is False
        assert result.error == "Key id mismatch"

    def test_matching_key_id_decrypts(self, encryption):
        result = encryption.encrypt("x")
        assert encryption.decrypt(result.ciphertext, key_id=result.key_id).plaintext == "x"

    def test_key_id_is_sha256_prefix(self):
        key = b"\x01" * 32
        key_id = compute_key_id(key)
        assert len(key_id) == 16
        assert key_id == compute_key_id(bytearray(key))
        assert EncryptionEngine.from_key(key).verify_key_id(key_id)


class TestLifecycle:
    """Engine states: uninitialized -> initialized -> destroyed."""

    def test_uninitialized_engine(self):
        engine = EncryptionEngine()
        assert engine.is_initialized() is False
        assert engine.key_id is None

        with pytest.raises(ConfigurationError):
            engine.encrypt("x")

        result = engine.decrypt("a:b:c")
        assert result.success is False
        assert result.error == "Encryption engine not initialized"

    def test_initialize_with_key_length_check(self):
        engine = EncryptionEngine()
        with pytest.raises(ConfigurationError):
            engine.initialize_with_key(b"short")
        with pytest.raises(ConfigurationError):
            engine.initialize_with_key("a" * 32)
        assert engine.is_initialized() is False

    def test_initialize_from_password_returns_salt(self):
        engine = EncryptionEngine()
        salt = engine.initialize("correct horse battery staple")
        try:
            assert salt
            assert engine.is_initialized()
            assert engine.key_id == compute_key_id(derive_key("correct horse battery staple", salt))
        finally:
            engine.destroy()

    def test_same_password_and_salt_give_same_key(self):
        salt = generate_salt()
        first = EncryptionEngine.from_password("pw", salt)
        second = EncryptionEngine.from_password("pw", salt)
        try:
            blob = first.encrypt("shared").ciphertext
            assert first.key_id == second.key_id
            assert second.decrypt(blob).plaintext == "shared"
        finally:
            first.destroy()
            second.destroy()

    def test_empty_password_rejected(self):
        with pytest.raises(ConfigurationError):
            EncryptionEngine().initialize("")

    def test_destroy_is_idempotent(self, encryption):
        blob = encryption.encrypt("gone").ciphertext
        encryption.destroy()
        encryption.destroy()

        assert encryption.is_initialized() is False
        assert encryption.decrypt(blob).success is False
        with pytest.raises(ConfigurationError):
            encryption.encrypt("x")

    def test_reinitialize_switches_key(self, encryption):
        old_id = encryption.key_id
        encryption.initialize_with_key(generate_key())
        assert encryption.key_id != old_id


class TestObjectsAndCredentials:
    """JSON objects and username/password pairs."""

    def test_object_round_trip(self, encryption):
        payload = {"token": "abc", "scopes": ["read", "write"], "ttl": 3600}
        blob = encryption.encrypt_object(payload).ciphertext
        result = encryption.decrypt_object(blob)

        assert result.success is True
        assert result.data == payload

    def test_object_not_json_serializable(self, encryption):
        with pytest.raises(EncryptionError):
            encryption.encrypt_object({"bad": object()})

    def test_decrypt_object_with_non_json_plaintext(self, encryption):
        blob = encryption.encrypt("not json {").ciphertext
        result = encryption.decrypt_object(blob)
        assert result.success is False
        assert result.error == "Failed to parse decrypted JSON"

    def test_credentials_round_trip(self, encryption):
        encrypted = encryption.encrypt_credentials("u1", "p1")
        assert encrypted.key_id == encryption.key_id

        result = encryption.decrypt_credentials(
            encrypted.encrypted_username, encrypted.encrypted_password, key_id=encrypted.key_id
        )
        assert result.success is True
        assert (result.username, result.password) == ("u1", "p1")

    def test_credentials_without_username(self, encryption):
        encrypted = encryption.encrypt_credentials(None, "only-password")
        assert encrypted.encrypted_username is None

        result = encryption.decrypt_credentials(None, encrypted.encrypted_password)
        assert result.success is True
        assert result.username is None
        assert result.password == "only-password"

    def test_credentials_failure_returns_no_values(self, encryption):
        encrypted = encryption.encrypt_credentials("u1", "p1")
        result = encryption.decrypt_credentials(
            encrypted.encrypted_username, _flip_segment_byte(encrypted.encrypted_password, 1)
        )
        assert result.success is False
        assert result.username is None
        assert result.password is None


class TestReEncrypt:
    """Key rotation helper works on explicit keys only."""

    def test_re_encrypt_moves_blob_to_new_key(self):
        old_key, new_key = generate_key(), generate_key()
        old_engine = EncryptionEngine.from_key(old_key)
        new_engine = EncryptionEngine.from_key(new_key)
        try:
            blob = old_engine.encrypt("rotate me").ciphertext
            result = EncryptionEngine.re_encrypt(blob, old_key, new_key)

            assert result is not None
            assert result.key_id == compute_key_id(new_key)
            assert new_engine.decrypt(result.ciphertext).plaintext == "rotate me"
            assert old_engine.decrypt(result.ciphertext).success is False
        finally:
            old_engine.destroy()
            new_engine.destroy()

    def test_re_encrypt_wrong_old_key_returns_none(self):
        engine = EncryptionEngine.from_key(generate_key())
        try:
            blob = engine.encrypt("x").ciphertext
            assert EncryptionEngine.re_encrypt(blob, generate_key(), generate_key()) is None
        finally:
            engine.destroy()

    def test_re_encrypt_leaves_caller_engine_untouched(self, encryption):
        key_id = encryption.key_id
        blob = encryption.encrypt("x").ciphertext
        EncryptionEngine.re_encrypt(blob, generate_key(), generate_key())

        assert encryption.key_id == key_id
        assert encryption.decrypt(blob).plaintext == "x"


class TestMasterKeyEncoding:

    def test_encode_decode_round_trip(self):
        key = generate_key()
        encoded = encode_master_key(key)
        assert "=" not in encoded
        assert decode_master_key(encoded) == key

    def test_decode_rejects_wrong_length(self):
        with pytest.raises(ConfigurationError):
            decode_master_key(base64.urlsafe_b64encode(b"x" * 16).decode())

    def test_decode_rejects_garbage(self):
        with pytest.raises(ConfigurationError):
            decode_master_key("###not base64###")
