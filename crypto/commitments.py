"""
Commit-Reveal Commitments

Salted hash commitments for contracts that need a value hidden at commitment
time and opened later (sealed moves, hash-locked payments).

Only the digest is published in contract state; the caller keeps the secret
value and salt privately until settlement. Opening a commitment is a purely
local check, so a mismatched reveal costs nothing: it is rejected before any
transaction is built.
"""

import hmac
import secrets
from dataclasses import dataclass
from typing import Tuple, Union

from .exceptions import CommitmentError, CommitmentMismatchError
from .keys import hash256


SALT_LENGTH = 32
DIGEST_LENGTH = 32


@dataclass(frozen=True)
class Commitment:
    """
    Published half of a commit-reveal pair.
    """
    digest: bytes

    def __post_init__(self):
        if len(self.digest) != DIGEST_LENGTH:
            raise CommitmentError(f"Commitment digest must be {DIGEST_LENGTH} bytes")

    @property
    def hex(self) -> str:
        return self.digest.hex()

    @classmethod
    def from_hex(cls, digest_hex: str) -> 'Commitment':
        try:
            return cls(bytes.fromhex(digest_hex))
        except ValueError as e:
            raise CommitmentError(f"Commitment digest is not valid hex: {e}")


def encode_secret(value: Union[bytes, str, int]) -> bytes:
    """Canonical byte form of a committed value."""
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode('utf-8')
    if isinstance(value, int) and not isinstance(value, bool):
        if value < 0:
            raise CommitmentError("Committed integers must be non-negative")
        return value.to_bytes(max(1, (value.bit_length() + 7) // 8), 'little')
    raise CommitmentError(f"Unsupported committed value type: {type(value).__name__}")


def compute_digest(secret_value: Union[bytes, str, int], salt: bytes) -> bytes:
    """
    Compute HASH256(secret_value || salt).

    Matches what a covenant script checks with `hash256(secret + salt)`.
    """
    return hash256(encode_secret(secret_value) + salt)


def commit(secret_value: Union[bytes, str, int]) -> Tuple[Commitment, bytes]:
    """
    Commit to a secret value with a fresh random salt.

    Args:
        secret_value: Value to hide (bytes, text or non-negative integer)

    Returns:
        Tuple of (commitment to publish, salt to keep private)
    """
    salt = secrets.token_bytes(SALT_LENGTH)
    return Commitment(compute_digest(secret_value, salt)), salt


def reveal(commitment: Commitment, secret_value: Union[bytes, str, int], salt: bytes) -> bool:
    """
    Check whether (secret_value, salt) opens the commitment.

    Returns:
        True if the recomputed digest matches
    """
    try:
        candidate = compute_digest(secret_value, salt)
    except CommitmentError:
        return False
    return hmac.compare_digest(candidate, commitment.digest)


def require_reveal(commitment: Commitment, secret_value: Union[bytes, str, int], salt: bytes) -> None:
    """
    Like reveal(), but raise CommitmentMismatchError on failure.
    """
    if not reveal(commitment, secret_value, salt):
        raise CommitmentMismatchError(commitment.digest)
