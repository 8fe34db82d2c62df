"""
Script Encoding and Stateful Covenant Layout

Push-data and script-number encoding, P2PKH script helpers, and the stateful
locking-script layout used by sCrypt-style covenants:

    <code part> OP_RETURN <state pushes> <state length: 4 bytes LE> <state version: 1 byte>

The code part is fixed at deploy time; only the state section changes between
transitions. The state section is an ordered sequence of pushes described by
a StateSchema.
"""

import re
import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bitcoinlib.encoding import addr_to_pubkeyhash

from .exceptions import ScriptEncodingError, StateEncodingError
from .opcodes import MAX_DIRECT_PUSH, ScriptOpcode


STATE_VERSION = 0
STATE_TRAILER_LENGTH = 5  # 4-byte length + 1-byte version

_ARRAY_KIND = re.compile(r'^(int|bool|bytes)\[(\d+)\]$')


# Script numbers

def encode_script_number(value: int) -> bytes:
    """
    Encode integer in minimal signed little-endian format for Bitcoin Script.

    Args:
        value: Integer to encode

    Returns:
        Minimal encoding bytes (empty for zero)
    """
    if value == 0:
        return b''

    negative = value < 0
    magnitude = abs(value)
    result = []
    while magnitude > 0:
        result.append(magnitude & 0xff)
        magnitude >>= 8

    # Top bit is the sign bit
    if result[-1] & 0x80:
        result.append(0x80 if negative else 0x00)
    elif negative:
        result[-1] |= 0x80

    return bytes(result)


def decode_script_number(data: bytes) -> int:
    """Decode a minimal script number."""
    if not data:
        return 0

    value = int.from_bytes(data, 'little')
    if data[-1] & 0x80:
        value &= ~(0x80 << (8 * (len(data) - 1)))
        return -value
    return value


# Pushes

def push_data(data: bytes) -> bytes:
    """
    Encode a data push using the smallest push opcode.

    Args:
        data: Bytes to push

    Returns:
        Push opcode(s) followed by the data
    """
    length = len(data)
    if length == 0:
        return bytes([ScriptOpcode.OP_0])
    if length <= MAX_DIRECT_PUSH:
        return bytes([length]) + data
    if length <= 0xff:
        return bytes([ScriptOpcode.OP_PUSHDATA1, length]) + data
    if length <= 0xffff:
        return bytes([ScriptOpcode.OP_PUSHDATA2]) + struct.pack('<H', length) + data
    if length <= 0xffffffff:
        return bytes([ScriptOpcode.OP_PUSHDATA4]) + struct.pack('<I', length) + data
    raise ScriptEncodingError(f"Push too large: {length} bytes")


def push_int(value: int) -> bytes:
    """Push an integer, using the small-integer opcodes where possible."""
    if value == 0:
        return bytes([ScriptOpcode.OP_0])
    if value == -1:
        return bytes([ScriptOpcode.OP_1NEGATE])
    if 1 <= value <= 16:
        return bytes([ScriptOpcode.OP_1 + value - 1])
    return push_data(encode_script_number(value))


def read_push(script: bytes, offset: int) -> Tuple[bytes, int]:
    """
    Read one push operation.

    Args:
        script: Script bytes
        offset: Offset of the push opcode

    Returns:
        Tuple of (pushed data, new offset)
    """
    if offset >= len(script):
        raise ScriptEncodingError("Unexpected end of script")

    opcode = script[offset]
    offset += 1

    if opcode == ScriptOpcode.OP_0:
        return b'', offset
    if opcode == ScriptOpcode.OP_1NEGATE:
        return encode_script_number(-1), offset
    if ScriptOpcode.OP_1 <= opcode <= ScriptOpcode.OP_16:
        return encode_script_number(opcode - ScriptOpcode.OP_1 + 1), offset

    if opcode <= MAX_DIRECT_PUSH:
        length = opcode
    elif opcode == ScriptOpcode.OP_PUSHDATA1:
        if offset + 1 > len(script):
            raise ScriptEncodingError("Truncated OP_PUSHDATA1")
        length = script[offset]
        offset += 1
    elif opcode == ScriptOpcode.OP_PUSHDATA2:
        if offset + 2 > len(script):
            raise ScriptEncodingError("Truncated OP_PUSHDATA2")
        length = struct.unpack('<H', script[offset:offset + 2])[0]
        offset += 2
    elif opcode == ScriptOpcode.OP_PUSHDATA4:
        if offset + 4 > len(script):
            raise ScriptEncodingError("Truncated OP_PUSHDATA4")
        length = struct.unpack('<I', script[offset:offset + 4])[0]
        offset += 4
    else:
        raise ScriptEncodingError(f"Opcode 0x{opcode:02x} at {offset - 1} is not a push")

    if offset + length > len(script):
        raise ScriptEncodingError("Push data runs past end of script")
    return script[offset:offset + length], offset + length


def parse_pushes(script: bytes) -> List[bytes]:
    """Parse a push-only script into its data items."""
    items = []
    offset = 0
    while offset < len(script):
        data, offset = read_push(script, offset)
        items.append(data)
    return items


# P2PKH

def p2pkh_script(pubkey_hash: bytes) -> bytes:
    """
    Create P2PKH locking script.

    Args:
        pubkey_hash: 20-byte HASH160 of the public key

    Returns:
        OP_DUP OP_HASH160 <hash> OP_EQUALVERIFY OP_CHECKSIG
    """
    if len(pubkey_hash) != 20:
        raise ScriptEncodingError(f"Invalid pubkey hash length: {len(pubkey_hash)}")
    return (bytes([ScriptOpcode.OP_DUP, ScriptOpcode.OP_HASH160, 20]) + pubkey_hash +
            bytes([ScriptOpcode.OP_EQUALVERIFY, ScriptOpcode.OP_CHECKSIG]))


def p2pkh_script_for_address(address: str) -> bytes:
    """Create the P2PKH locking script paying to a base58 address."""
    try:
        pubkey_hash = addr_to_pubkeyhash(address)
    except Exception as e:
        raise ScriptEncodingError(f"Invalid address {address!r}: {e}")
    if isinstance(pubkey_hash, str):
        pubkey_hash = bytes.fromhex(pubkey_hash)
    return p2pkh_script(pubkey_hash)


def is_p2pkh(script: bytes) -> bool:
    return (len(script) == 25 and
            script[0] == ScriptOpcode.OP_DUP and
            script[1] == ScriptOpcode.OP_HASH160 and
            script[2] == 20 and
            script[23] == ScriptOpcode.OP_EQUALVERIFY and
            script[24] == ScriptOpcode.OP_CHECKSIG)


# Contract state

@dataclass(frozen=True)
class StateField:
    """
    One field of a contract's public state.

    kind is 'int', 'bool', 'bytes' or a fixed array such as 'int[9]'.
    Byte fields are carried as hex strings in public data so that public data
    stays JSON-serializable.
    """
    name: str
    kind: str

    def __post_init__(self):
        if self.kind not in ('int', 'bool', 'bytes') and not _ARRAY_KIND.match(self.kind):
            raise StateEncodingError(f"Unsupported state field kind: {self.kind}")

    @property
    def element_kind(self) -> str:
        match = _ARRAY_KIND.match(self.kind)
        return match.group(1) if match else self.kind

    @property
    def array_length(self) -> Optional[int]:
        match = _ARRAY_KIND.match(self.kind)
        return int(match.group(2)) if match else None


def _encode_element(kind: str, value: Any, name: str) -> bytes:
    if kind == 'int':
        if isinstance(value, bool) or not isinstance(value, int):
            raise StateEncodingError(f"Field {name} expects int, got {value!r}")
        return push_data(encode_script_number(value))
    if kind == 'bool':
        if not isinstance(value, bool):
            raise StateEncodingError(f"Field {name} expects bool, got {value!r}")
        return push_data(b'\x01' if value else b'')
    if kind == 'bytes':
        if not isinstance(value, str):
            raise StateEncodingError(f"Field {name} expects hex string, got {value!r}")
        try:
            return push_data(bytes.fromhex(value))
        except ValueError as e:
            raise StateEncodingError(f"Field {name} is not valid hex: {e}")
    raise StateEncodingError(f"Unsupported element kind: {kind}")


def _decode_element(kind: str, data: bytes) -> Any:
    if kind == 'int':
        return decode_script_number(data)
    if kind == 'bool':
        return data != b''
    return data.hex()


class StateSchema:
    """
    Ordered description of a contract's public state.
    """

    def __init__(self, fields: Sequence[StateField]):
        names = [f.name for f in fields]
        if len(set(names)) != len(names):
            raise StateEncodingError("Duplicate state field names")
        self.fields = list(fields)

    @property
    def names(self) -> List[str]:
        return [f.name for f in self.fields]

    def serialize(self, public_data: Dict[str, Any]) -> bytes:
        """
        Serialize public data into the state push sequence.

        Args:
            public_data: Mapping of field name to value

        Returns:
            Concatenated pushes
        """
        missing = [name for name in self.names if name not in public_data]
        if missing:
            raise StateEncodingError(f"Missing state fields: {', '.join(missing)}")
        extra = [name for name in public_data if name not in self.names]
        if extra:
            raise StateEncodingError(f"Unknown state fields: {', '.join(extra)}")

        result = b''
        for field in self.fields:
            value = public_data[field.name]
            if field.array_length is None:
                result += _encode_element(field.kind, value, field.name)
                continue
            if not isinstance(value, (list, tuple)) or len(value) != field.array_length:
                raise StateEncodingError(
                    f"Field {field.name} expects {field.array_length} elements"
                )
            for element in value:
                result += _encode_element(field.element_kind, element, field.name)
        return result

    def deserialize(self, state_bytes: bytes) -> Dict[str, Any]:
        """Parse a state push sequence back into public data."""
        items = parse_pushes(state_bytes)
        expected = sum(f.array_length or 1 for f in self.fields)
        if len(items) != expected:
            raise StateEncodingError(
                f"State has {len(items)} items, schema expects {expected}"
            )

        public_data = {}
        position = 0
        for field in self.fields:
            if field.array_length is None:
                public_data[field.name] = _decode_element(field.kind, items[position])
                position += 1
            else:
                chunk = items[position:position + field.array_length]
                public_data[field.name] = [_decode_element(field.element_kind, d) for d in chunk]
                position += field.array_length
        return public_data


def build_stateful_script(code_part: bytes, state_bytes: bytes,
                          version: int = STATE_VERSION) -> bytes:
    """
    Append the state section to a covenant's code part.

    Args:
        code_part: Fixed script produced from the artifact and constructor args
        state_bytes: Serialized state pushes

    Returns:
        Complete locking script
    """
    return (code_part + bytes([ScriptOpcode.OP_RETURN]) + state_bytes +
            struct.pack('<I', len(state_bytes)) + bytes([version]))


def split_stateful_script(locking_script: bytes) -> Tuple[bytes, bytes]:
    """
    Split a stateful locking script into (code_part, state_bytes).
    """
    if len(locking_script) < STATE_TRAILER_LENGTH + 1:
        raise ScriptEncodingError("Script too short to carry contract state")

    version = locking_script[-1]
    if version != STATE_VERSION:
        raise ScriptEncodingError(f"Unsupported state version: {version}")

    state_length = struct.unpack('<I', locking_script[-5:-1])[0]
    state_end = len(locking_script) - STATE_TRAILER_LENGTH
    state_start = state_end - state_length
    if state_start < 1 or locking_script[state_start - 1] != ScriptOpcode.OP_RETURN:
        raise ScriptEncodingError("State section is not preceded by OP_RETURN")

    return locking_script[:state_start - 1], locking_script[state_start:state_end]
