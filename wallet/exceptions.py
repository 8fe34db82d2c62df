"""
Wallet Exceptions

This module defines exceptions raised by wallet capabilities and signers.
"""

from typing import Any, Optional


class WalletError(Exception):
    """Base exception for wallet errors."""
    pass


class WalletBridgeError(WalletError):
    """Exception raised when the wallet bridge answers with an error."""

    def __init__(self, code: int, message: str, data: Optional[Any] = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"Wallet error {code}: {message}")


class WalletConnectionError(WalletBridgeError):
    """Exception raised when the wallet bridge cannot be reached."""
    pass


class WalletTimeoutError(WalletBridgeError):
    """Exception raised when the wallet bridge does not answer in time.

    The request may still have been carried out.
    """
    pass


class SignerError(WalletError):
    """Base exception for signing failures."""
    pass


class SignerRejectedError(SignerError):
    """Exception raised when the signer denies, times out or returns the wrong shape."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Signer rejected request: {reason}")


class SignerUnavailableError(SignerError):
    """Exception raised when no signing capability is present."""
    pass


class SigningCancelledError(SignerError):
    """Exception raised when the caller cancels an in-progress signing request."""
    pass
