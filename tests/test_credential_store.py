# FILE: tests/test_credential_store.py
"""
Tests for credvault/credentials/store.py
Credential store - encrypted_credentials CRUD, rotation bookkeeping, key rotation.
"""

import sys
from pathlib import Path

_project_root = Path(__file__).parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

from datetime import timedelta

import pytest

from credvault.credentials.models import AccessLevel, CredentialType, EncryptedCredential, new_id, utcnow
from credvault.credentials.store import CredentialStore
from credvault.crypto import EncryptionEngine, compute_key_id, generate_key
from credvault.db import transaction
from credvault.errors import EncryptionError, TransactionError, ValidationError


@pytest.fixture
def store(mock_db):
    return CredentialStore(mock_db)


def _create(store, encryption, owner=None, password="pw", username="user", **extra):
    encrypted = encryption.encrypt_credentials(username, password)
    with transaction(store.db):
        record = store.create(
            {
                "owner_entity_id": owner,
                "name": "test_credentials",
                "encrypted_username": encrypted.encrypted_username,
                "encrypted_password": encrypted.encrypted_password,
                "key_id": encrypted.key_id,
                **extra,
            }
        )
    return record.id


class TestCreateAndFind:

    def test_create_sets_defaults(self, store, encryption):
        owner = new_id()
        credential_id = _create(store, encryption, owner=owner)
        record = store.find_by_id(credential_id)

        assert record.owner_entity_id == owner
        assert record.credential_type == CredentialType.PROXY_AUTH.value
        assert record.access_level == AccessLevel.PRIVATE.value
        assert record.algorithm == "aes-256-gcm"
        assert record.encryption_version == 1
        assert record.key_id == encryption.key_id
        assert record.access_count == 0
        assert record.rotation_required is False

    def test_stored_values_are_ciphertext(self, store, encryption):
        credential_id = _create(store, encryption, username="alice", password="s3cret")
        record = store.find_by_id(credential_id)

        assert "s3cret" not in record.encrypted_password
        assert "alice" not in record.encrypted_username
        result = encryption.decrypt_credentials(record.encrypted_username, record.encrypted_password)
        assert (result.username, result.password) == ("alice", "s3cret")

    def test_refuses_plaintext_in_encrypted_column(self, store):
        with pytest.raises((TransactionError, EncryptionError)):
            with transaction(store.db):
                store.create({"name": "bad", "encrypted_password": "plaintext-password"})
        assert store.db.query(EncryptedCredential).count() == 0

    def test_find_by_owner_type_provider(self, store, encryption):
        owner = new_id()
        _create(store, encryption, owner=owner)
        _create(store, encryption, owner=owner, credential_type="api_key", provider="acme")
        _create(store, encryption, owner=new_id())

        assert len(store.find_by_owner(owner)) == 2
        assert len(store.find_by_type(CredentialType.API_KEY)) == 1
        assert len(store.find_by_type("proxy_auth")) == 2
        assert [r.provider for r in store.find_by_provider("acme")] == ["acme"]
        assert len(store.find_by_encryption_version(1)) == 3

    def test_find_by_id_missing(self, store):
        assert store.find_by_id(new_id()) is None

    def test_invalid_ids_rejected_before_query(self, store):
        with pytest.raises(ValidationError):
            store.find_by_id("1; DROP TABLE encrypted_credentials")
        with pytest.raises(ValidationError):
            store.find_by_owner("not-a-uuid")

    def test_invalid_enum_rejected(self, store):
        with pytest.raises(ValidationError):
            store.find_by_type("password")

    def test_to_dto(self, store, encryption):
        credential_id = _create(store, encryption)
        dto = store.to_dto(store.find_by_id(credential_id))
        assert dto.id == credential_id
        assert "encrypted_password" not in repr(dto)


class TestUpdates:

    def test_record_access_increments(self, store, encryption):
        credential_id = _create(store, encryption)
        for _ in range(3):
            with transaction(store.db):
                assert store.record_access(credential_id) is True

        record = store.find_by_id(credential_id)
        assert record.access_count == 3
        assert record.last_accessed_at is not None

    def test_update_encrypted_data_only_given_fields(self, store, encryption):
        credential_id = _create(store, encryption, username="u1", password="p1")
        original_username = store.find_by_id(credential_id).encrypted_username

        new_password = encryption.encrypt("p2").ciphertext
        with transaction(store.db):
            assert store.update_encrypted_data(credential_id, encrypted_password=new_password) is True

        record = store.find_by_id(credential_id)
        assert record.encrypted_password == new_password
        assert record.encrypted_username == original_username
        assert record.last_rotated_at is not None

    def test_update_encrypted_data_nothing_given(self, store, encryption):
        credential_id = _create(store, encryption)
        assert store.update_encrypted_data(credential_id) is False

    def test_update_missing_record(self, store):
        with transaction(store.db):
            assert store.mark_for_rotation(new_id()) is False

    def test_rotation_flags_and_windows(self, store, encryption):
        flagged = _create(store, encryption)
        expiring = _create(store, encryption, expires_at=utcnow() + timedelta(days=3))
        expired = _create(store, encryption, expires_at=utcnow() - timedelta(days=1))
        later = _create(store, encryption, expires_at=utcnow() + timedelta(days=60))

        with transaction(store.db):
            store.mark_for_rotation(flagged)

        needing = {r.id for r in store.find_needing_rotation()}
        assert needing == {flagged, expiring, expired}
        assert [r.id for r in store.find_expired()] == [expired]

        with transaction(store.db):
            store.clear_rotation_required(flagged)
            store.update_expiration(later, None)
        assert flagged not in {r.id for r in store.find_needing_rotation()}
        assert store.find_by_id(later).expires_at is None

    def test_access_level_and_version(self, store, encryption):
        credential_id = _create(store, encryption)
        with transaction(store.db):
            store.update_access_level(credential_id, "shared")
            store.increment_encryption_version(credential_id)

        record = store.find_by_id(credential_id)
        assert record.access_level == "shared"
        assert record.encryption_version == 2

        with pytest.raises(ValidationError):
            store.update_access_level(credential_id, "root")


class TestDelete:

    def test_delete_and_delete_by_owner(self, store, encryption):
        owner = new_id()
        first = _create(store, encryption, owner=owner)
        _create(store, encryption, owner=owner)
        other = _create(store, encryption)

        with transaction(store.db):
            assert store.delete(first) is True
            assert store.delete(first) is False
            assert store.delete_by_owner(owner) == 1

        assert store.find_by_owner(owner) == []
        assert store.find_by_id(other) is not None


class TestRotateKey:
    """Re-encrypt every record under a new key, one transaction per record."""

    def test_rotate_all_records(self, store):
        old_key, new_key = generate_key(), generate_key()
        old_engine = EncryptionEngine.from_key(old_key)
        new_engine = EncryptionEngine.from_key(new_key)
        try:
            ids = [_create(store, old_engine, username=f"u{i}", password=f"p{i}") for i in range(3)]
            data_blob = old_engine.encrypt_object({"k": "v"}).ciphertext
            with transaction(store.db):
                store.update_encrypted_data(ids[0], encrypted_data=data_blob)

            result = store.rotate_key(old_key, new_key)

            assert result.success is True
            assert result.total_count == 3
            assert result.rotated_count == 3
            assert result.new_key_id == compute_key_id(new_key)

            store.db.expire_all()
            for i, credential_id in enumerate(ids):
                record = store.find_by_id(credential_id)
                assert record.key_id == new_engine.key_id
                assert record.encryption_version == 2
                decrypted = new_engine.decrypt_credentials(
                    record.encrypted_username, record.encrypted_password, key_id=record.key_id
                )
                assert (decrypted.username, decrypted.password) == (f"u{i}", f"p{i}")
            assert new_engine.decrypt_object(store.find_by_id(ids[0]).encrypted_data).data == {"k": "v"}
        finally:
            old_engine.destroy()
            new_engine.destroy()

    def test_failed_record_keeps_old_ciphertext(self, store):
        old_key, new_key = generate_key(), generate_key()
        old_engine = EncryptionEngine.from_key(old_key)
        stranger = EncryptionEngine.from_key(generate_key())
        try:
            good = _create(store, old_engine)
            bad = _create(store, old_engine)
            # Tagged with the old key id but actually sealed under another key
            foreign_blob = stranger.encrypt("x").ciphertext
            with transaction(store.db):
                store.update_encrypted_data(bad, encrypted_password=foreign_blob)

            result = store.rotate_key(old_key, new_key)

            assert result.success is False
            assert result.rotated_count == 1
            assert result.failed_count == 1
            assert [item.item_id for item in result.outcomes.failures] == [bad]

            store.db.expire_all()
            assert store.find_by_id(good).key_id == compute_key_id(new_key)
            unrotated = store.find_by_id(bad)
            assert unrotated.key_id == old_engine.key_id
            assert unrotated.encrypted_password == foreign_blob
        finally:
            old_engine.destroy()
            stranger.destroy()

    def test_rotate_ignores_other_keys(self, store, encryption):
        _create(store, encryption)
        result = store.rotate_key(generate_key(), generate_key())
        assert result.total_count == 0
        assert result.success is True
