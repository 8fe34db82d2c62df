"""
Covenant Engine - Cryptographic Operations Module

This module provides cryptographic utilities for the covenant engine:
- secp256k1 key wrappers and HASH160/HASH256 helpers
- ECDSA signatures with DER and sighash-byte handling
- Salted commit-reveal commitments

Dependencies:
- coincurve: Fast secp256k1 operations
- pycryptodome: RIPEMD160 for HASH160
- hashlib / secrets: hashing and salt generation
"""

from .exceptions import (
    CryptoError,
    InvalidKeyError,
    InvalidSignatureError,
    CommitmentError,
    CommitmentMismatchError,
)
from .keys import PrivateKey, PublicKey, hash160, hash256, sha256
from .signatures import (
    ECDSASignature,
    sign_ecdsa,
    verify_ecdsa,
    append_sighash_byte,
    split_sighash_byte,
)
from .commitments import Commitment, commit, reveal, require_reveal, compute_digest, encode_secret

__all__ = [
    # Exceptions
    "CryptoError",
    "InvalidKeyError",
    "InvalidSignatureError",
    "CommitmentError",
    "CommitmentMismatchError",

    # Keys
    "PrivateKey",
    "PublicKey",
    "hash160",
    "hash256",
    "sha256",

    # Signatures
    "ECDSASignature",
    "sign_ecdsa",
    "verify_ecdsa",
    "append_sighash_byte",
    "split_sighash_byte",

    # Commitments
    "Commitment",
    "commit",
    "reveal",
    "require_reveal",
    "compute_digest",
    "encode_secret",
]
