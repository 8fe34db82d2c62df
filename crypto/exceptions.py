"""
Cryptographic Exceptions

This module defines custom exceptions for key, signature and commitment operations.
"""


class CryptoError(Exception):
    """Base exception for all cryptographic errors."""
    pass


class InvalidKeyError(CryptoError):
    """Raised when a key is invalid or malformed."""
    pass


class InvalidSignatureError(CryptoError):
    """Raised when a signature is invalid or verification fails."""
    pass


class CommitmentError(CryptoError):
    """Raised when a commitment cannot be created or is malformed."""
    pass


class CommitmentMismatchError(CommitmentError):
    """
    Raised when a revealed secret/salt pair does not open a commitment.

    This is always a local check; nothing is broadcast when it is raised.
    """

    def __init__(self, digest: bytes, message: str = None):
        self.digest = digest
        if message is None:
            message = f"Revealed value does not match commitment {digest.hex()}"
        super().__init__(message)
