"""
ECDSA Signature Operations

DER encoding/decoding, low-S normalization (BIP62) and the helpers for the
trailing sighash-type byte that Bitcoin script signatures carry.

References:
- ECDSA: https://en.wikipedia.org/wiki/Elliptic_Curve_Digital_Signature_Algorithm
- BIP62: https://github.com/bitcoin/bips/blob/master/bip-0062.mediawiki
"""

from dataclasses import dataclass
from typing import Tuple

from .exceptions import InvalidSignatureError
from .keys import CURVE_ORDER, PrivateKey, PublicKey


@dataclass
class ECDSASignature:
    """
    ECDSA signature representation.
    """
    r: int
    s: int

    def __post_init__(self):
        """Validate signature components."""
        if not (1 <= self.r < 2**256):
            raise InvalidSignatureError("Invalid r value")
        if not (1 <= self.s < 2**256):
            raise InvalidSignatureError("Invalid s value")

    @classmethod
    def from_der(cls, der_bytes: bytes) -> 'ECDSASignature':
        """
        Parse DER-encoded signature.

        Args:
            der_bytes: DER-encoded signature (without sighash byte)

        Returns:
            ECDSASignature object
        """
        if len(der_bytes) < 8:
            raise InvalidSignatureError("DER signature too short")

        if der_bytes[0] != 0x30:
            raise InvalidSignatureError("Invalid DER signature header")

        if der_bytes[1] != len(der_bytes) - 2:
            raise InvalidSignatureError("Invalid DER length")

        if der_bytes[2] != 0x02:
            raise InvalidSignatureError("Invalid r component")

        r_length = der_bytes[3]
        s_offset = 4 + r_length
        if s_offset + 2 > len(der_bytes):
            raise InvalidSignatureError("Truncated DER signature")
        r = int.from_bytes(der_bytes[4:s_offset], 'big')

        if der_bytes[s_offset] != 0x02:
            raise InvalidSignatureError("Invalid s component")

        s_length = der_bytes[s_offset + 1]
        if s_offset + 2 + s_length != len(der_bytes):
            raise InvalidSignatureError("Invalid s length")
        s = int.from_bytes(der_bytes[s_offset + 2:s_offset + 2 + s_length], 'big')

        return cls(r=r, s=s)

    def to_der(self) -> bytes:
        """
        Encode signature in DER format.

        Returns:
            DER-encoded signature
        """
        r_bytes = self.r.to_bytes((self.r.bit_length() + 7) // 8, 'big')
        s_bytes = self.s.to_bytes((self.s.bit_length() + 7) // 8, 'big')

        # Keep integers positive
        if r_bytes[0] >= 0x80:
            r_bytes = b'\x00' + r_bytes
        if s_bytes[0] >= 0x80:
            s_bytes = b'\x00' + s_bytes

        r_der = b'\x02' + bytes([len(r_bytes)]) + r_bytes
        s_der = b'\x02' + bytes([len(s_bytes)]) + s_bytes
        sequence = r_der + s_der
        return b'\x30' + bytes([len(sequence)]) + sequence


def sign_ecdsa(private_key: PrivateKey, message_hash: bytes) -> ECDSASignature:
    """
    Sign a 32-byte digest with ECDSA (RFC6979 nonce, low-S).

    Args:
        private_key: Private key for signing
        message_hash: 32-byte digest

    Returns:
        ECDSA signature
    """
    if len(message_hash) != 32:
        raise InvalidSignatureError("Message hash must be 32 bytes")
    return normalize_signature(ECDSASignature.from_der(private_key.sign(message_hash)))


def verify_ecdsa(public_key: PublicKey, signature: ECDSASignature,
                 message_hash: bytes) -> bool:
    """
    Verify ECDSA signature.

    Args:
        public_key: Public key for verification
        signature: ECDSA signature to verify
        message_hash: 32-byte digest

    Returns:
        True if signature is valid
    """
    return public_key.verify(signature.to_der(), message_hash)


def normalize_signature(signature: ECDSASignature) -> ECDSASignature:
    """
    Normalize ECDSA signature to low-s form (BIP62).
    """
    if signature.s > CURVE_ORDER // 2:
        return ECDSASignature(r=signature.r, s=CURVE_ORDER - signature.s)
    return signature


def is_low_s(signature: ECDSASignature) -> bool:
    return signature.s <= CURVE_ORDER // 2


def append_sighash_byte(der_signature: bytes, sighash_type: int) -> bytes:
    """Append the one-byte sighash type that script signatures carry."""
    if not 0 <= sighash_type <= 0xff:
        raise InvalidSignatureError(f"Sighash type out of range: {sighash_type}")
    return der_signature + bytes([sighash_type])


def split_sighash_byte(script_signature: bytes) -> Tuple[bytes, int]:
    """
    Split a script signature into its DER part and trailing sighash type.

    Returns:
        Tuple of (der_signature, sighash_type)
    """
    if len(script_signature) < 9:
        raise InvalidSignatureError("Script signature too short")
    der = script_signature[:-1]
    # Parse to make sure the DER part is well formed
    ECDSASignature.from_der(der)
    return der, script_signature[-1]
