from .coordinator import MigrationResult, PasswordMigrationCoordinator, VerificationResult

__all__ = ["PasswordMigrationCoordinator", "MigrationResult", "VerificationResult"]
