"""credvault - encrypted-at-rest proxy credentials with plaintext migration."""

__version__ = "0.3.0"
