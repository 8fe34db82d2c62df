"""
Transaction Exceptions

This module defines exceptions raised while selecting funds, computing
signature hashes, assembling and finalizing covenant transactions.
"""


class TransactionError(Exception):
    """Base exception for transaction construction errors."""
    pass


class InsufficientFundsError(TransactionError):
    """Exception raised when wallet UTXOs cannot cover outputs and fees."""

    def __init__(self, required: int, available: int, message: str = None):
        self.required = required
        self.available = available
        if message is None:
            message = f"Insufficient funds: required {required} satoshis, available {available} satoshis"
        super().__init__(message)


class MalformedTransactionError(TransactionError):
    """Exception raised when a transaction lacks data needed to sign or serialize it."""
    pass


class UnsupportedSighashCombinationError(TransactionError):
    """Exception raised when a sighash flag combination is invalid or not accepted by the covenant."""
    pass


class SignatureMismatchError(TransactionError):
    """Exception raised when a signature is not bound to the transaction's current shape."""

    def __init__(self, input_index: int, message: str):
        self.input_index = input_index
        super().__init__(f"Input {input_index}: {message}")


class SlotPlanViolationError(TransactionError):
    """Exception raised when inputs or outputs deviate from the fixed slot plan."""
    pass
