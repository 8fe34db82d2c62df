"""
Contract Exceptions

This module defines exceptions raised by contract families and the contract
state machine.
"""

from typing import Optional


class ContractError(Exception):
    """Base exception for contract errors."""
    pass


class IllegalTransitionError(ContractError):
    """Exception raised when a transition is not allowed from the current state."""

    def __init__(self, transition: str, reason: str):
        self.transition = transition
        self.reason = reason
        super().__init__(f"Illegal transition {transition}: {reason}")


class UnknownFamilyError(ContractError):
    """Exception raised when no contract family is registered under a name."""
    pass


class PreCheckVersionError(ContractError):
    """Exception raised when an artifact was written for different pre-check rules."""

    def __init__(self, family: str, expected: int, found: Optional[int]):
        self.family = family
        self.expected = expected
        self.found = found
        super().__init__(
            f"{family} pre-check version {expected} does not match artifact version {found}"
        )


class ArtifactMismatchError(ContractError):
    """Exception raised when an artifact's ABI does not fit the contract family."""
    pass
