# credvault/errors.py
"""
Error taxonomy for the credential subsystem.

- ConfigurationError: engine not initialized / bad key material (write paths)
- ValidationError: malformed identifiers or out-of-range input, raised before I/O
- EncryptionError: the cipher itself failed while encrypting
- DecryptionError: only raised when a caller explicitly unwraps a failed
  DecryptionResult; read paths return the structured result instead
- TransactionError: a wrapped transaction failed and was rolled back

None of these messages may contain a secret value.
"""


class CredentialVaultError(Exception):
    """Base class for all credvault errors."""


class ConfigurationError(CredentialVaultError):
    """Raised when encryption is used without a valid key."""


class ValidationError(CredentialVaultError, ValueError):
    """Raised when input fails validation before any database access."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class EncryptionError(CredentialVaultError):
    """Raised when encrypting a value fails."""


class DecryptionError(CredentialVaultError):
    """Raised by DecryptionResult.unwrap() for a failed decryption."""


class TransactionError(CredentialVaultError):
    """Raised when a database transaction fails and is rolled back."""
