"""
Transaction Serialization Utilities

Compact-size integers, outpoints and hashing helpers shared by the
serializer, the sighash engine and the fee estimator.
"""

import struct
from typing import Tuple

from crypto.keys import hash256


def serialize_compact_size(n: int) -> bytes:
    """
    Serialize integer as Bitcoin compact size.

    Args:
        n: Integer to serialize

    Returns:
        Compact size encoded bytes
    """
    if n < 0xfd:
        return struct.pack('<B', n)
    elif n <= 0xffff:
        return b'\xfd' + struct.pack('<H', n)
    elif n <= 0xffffffff:
        return b'\xfe' + struct.pack('<I', n)
    else:
        return b'\xff' + struct.pack('<Q', n)


def parse_compact_size(data: bytes, offset: int = 0) -> Tuple[int, int]:
    """
    Parse Bitcoin compact size from bytes.

    Args:
        data: Bytes to parse
        offset: Starting offset in bytes

    Returns:
        Tuple of (value, new_offset)
    """
    if offset >= len(data):
        raise ValueError("Insufficient data for compact size")

    first_byte = data[offset]

    if first_byte < 0xfd:
        return first_byte, offset + 1
    elif first_byte == 0xfd:
        if offset + 3 > len(data):
            raise ValueError("Insufficient data for 2-byte compact size")
        return struct.unpack('<H', data[offset + 1:offset + 3])[0], offset + 3
    elif first_byte == 0xfe:
        if offset + 5 > len(data):
            raise ValueError("Insufficient data for 4-byte compact size")
        return struct.unpack('<I', data[offset + 1:offset + 5])[0], offset + 5
    else:
        if offset + 9 > len(data):
            raise ValueError("Insufficient data for 8-byte compact size")
        return struct.unpack('<Q', data[offset + 1:offset + 9])[0], offset + 9


def serialize_varstr(data: bytes) -> bytes:
    """Length-prefixed byte string."""
    return serialize_compact_size(len(data)) + data


def serialize_outpoint(txid: str, vout: int) -> bytes:
    """
    Serialize transaction outpoint.

    Args:
        txid: Transaction ID as hex string
        vout: Output index

    Returns:
        Serialized outpoint (32 bytes txid + 4 bytes vout)
    """
    return bytes.fromhex(txid)[::-1] + struct.pack('<I', vout)


def parse_outpoint(data: bytes, offset: int = 0) -> Tuple[str, int, int]:
    """
    Parse transaction outpoint.

    Returns:
        Tuple of (txid, vout, new_offset)
    """
    if offset + 36 > len(data):
        raise ValueError("Insufficient data for outpoint")

    txid = data[offset:offset + 32][::-1].hex()
    vout = struct.unpack('<I', data[offset + 32:offset + 36])[0]
    return txid, vout, offset + 36


def compute_txid(raw_transaction: bytes) -> str:
    """Transaction ID (reversed HASH256) of a serialized transaction."""
    return hash256(raw_transaction)[::-1].hex()


def is_valid_txid(txid: str) -> bool:
    if not isinstance(txid, str) or len(txid) != 64:
        return False
    try:
        bytes.fromhex(txid)
        return True
    except ValueError:
        return False
