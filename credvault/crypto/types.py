# credvault/crypto/types.py
"""
SQLAlchemy column type for encrypted blob columns.

EncryptedBlobText does not encrypt anything itself; the repositories do
that explicitly so each record can be tagged with the key id. It refuses
to bind any value that is not a well-formed three-segment blob, so a
plaintext secret can never be written to an encrypted column by mistake.
"""

from sqlalchemy import Text, TypeDecorator

from credvault.errors import EncryptionError
from .encryption import is_encrypted_blob


class EncryptedBlobText(TypeDecorator):
    """
    Text column that only accepts base64(iv):base64(ciphertext):base64(tag).

    Usage in models:
        encrypted_password = Column(EncryptedBlobText, nullable=False)
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not is_encrypted_blob(value):
            raise EncryptionError("refusing to store a value that is not an encrypted blob")
        return value

    def process_result_value(self, value, dialect):
        # Malformed stored values are passed through; decrypt() reports them
        return value
