"""
Transaction Data Model

Plain, non-observed data structures for covenant transactions: UTXO
references, inputs/outputs, sighash specifications, signatures, and the
unsigned/signed transaction containers.

Input 0 is reserved for the contract UTXO and output 0 for the
covenant-verified payout; see builder.SlotPlan.
"""

import struct
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import MalformedTransactionError, UnsupportedSighashCombinationError
from .utils import compute_txid, is_valid_txid, serialize_compact_size, serialize_outpoint


DEFAULT_VERSION = 1
FINAL_SEQUENCE = 0xffffffff
NON_FINAL_SEQUENCE = 0xfffffffe

SIGHASH_FORKID = 0x40
SIGHASH_ANYONECANPAY = 0x80


class SighashFlag(IntEnum):
    """Base signature-hash modes."""
    ALL = 0x01
    NONE = 0x02
    SINGLE = 0x03


@dataclass(frozen=True)
class SighashSpec:
    """
    Which parts of a transaction a signature covers.

    Attributes:
        flag: ALL, NONE or SINGLE
        anyone_can_pay: exclude all other inputs from the preimage
        fork_id: set the FORKID bit (BSV/BCH replay protection)
    """
    flag: SighashFlag = SighashFlag.ALL
    anyone_can_pay: bool = False
    fork_id: bool = True

    @property
    def sighash_type(self) -> int:
        value = int(self.flag)
        if self.anyone_can_pay:
            value |= SIGHASH_ANYONECANPAY
        if self.fork_id:
            value |= SIGHASH_FORKID
        return value

    @classmethod
    def from_sighash_type(cls, sighash_type: int) -> 'SighashSpec':
        """
        Decode a one-byte sighash type.

        Raises:
            UnsupportedSighashCombinationError: unknown base flag or stray bits
        """
        if not 0 <= sighash_type <= 0xff:
            raise UnsupportedSighashCombinationError(f"Sighash type out of range: {sighash_type}")

        base = sighash_type & 0x1f
        stray = sighash_type & ~(0x1f | SIGHASH_FORKID | SIGHASH_ANYONECANPAY)
        if base not in (SighashFlag.ALL, SighashFlag.NONE, SighashFlag.SINGLE) or stray:
            raise UnsupportedSighashCombinationError(
                f"Unsupported sighash type 0x{sighash_type:02x}"
            )
        return cls(
            flag=SighashFlag(base),
            anyone_can_pay=bool(sighash_type & SIGHASH_ANYONECANPAY),
            fork_id=bool(sighash_type & SIGHASH_FORKID),
        )

    def describe(self) -> str:
        name = self.flag.name
        if self.anyone_can_pay:
            name = f"ANYONECANPAY|{name}"
        if self.fork_id:
            name += "|FORKID"
        return name


ANYONECANPAY_SINGLE = SighashSpec(SighashFlag.SINGLE, anyone_can_pay=True)
ANYONECANPAY_ALL = SighashSpec(SighashFlag.ALL, anyone_can_pay=True)
SIGHASH_ALL = SighashSpec(SighashFlag.ALL)


@dataclass(frozen=True)
class UtxoRef:
    """
    Reference to an unspent output as observed on the network.
    """
    txid: str
    output_index: int
    satoshis: int
    locking_script: bytes

    def __post_init__(self):
        if not is_valid_txid(self.txid):
            raise MalformedTransactionError(f"Invalid transaction ID: {self.txid}")
        if self.output_index < 0:
            raise MalformedTransactionError(f"Invalid output index: {self.output_index}")
        if self.satoshis < 0:
            raise MalformedTransactionError(f"Negative UTXO value: {self.satoshis}")

    @property
    def outpoint(self) -> Tuple[str, int]:
        return (self.txid, self.output_index)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'txid': self.txid,
            'outputIndex': self.output_index,
            'satoshis': self.satoshis,
            'lockingScript': self.locking_script.hex(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UtxoRef':
        try:
            return cls(
                txid=data['txid'],
                output_index=int(data['outputIndex']),
                satoshis=int(data['satoshis']),
                locking_script=bytes.fromhex(data['lockingScript']),
            )
        except (KeyError, ValueError) as e:
            raise MalformedTransactionError(f"Invalid UTXO record: {e}")


@dataclass
class TxInput:
    """Transaction input spending a known UTXO."""
    utxo: UtxoRef
    sequence: int = FINAL_SEQUENCE


@dataclass(frozen=True)
class TxOutput:
    """Transaction output."""
    satoshis: int
    locking_script: bytes

    def serialize(self) -> bytes:
        return (struct.pack('<Q', self.satoshis) +
                serialize_compact_size(len(self.locking_script)) + self.locking_script)


@dataclass
class Signature:
    """
    Signature for one input, bound to the preimage it was computed over.

    Attributes:
        input_index: Input the signature unlocks
        der_signature: DER-encoded ECDSA signature (no sighash byte)
        sighash_spec: Spec the signature was produced under
        preimage_digest: HASH256 of the preimage at signing time
        public_key: Compressed public key of the signer, when known
    """
    input_index: int
    der_signature: bytes
    sighash_spec: SighashSpec
    preimage_digest: bytes
    public_key: Optional[bytes] = None

    @property
    def script_signature(self) -> bytes:
        """Signature as pushed in an unlocking script (DER + sighash byte)."""
        return self.der_signature + bytes([self.sighash_spec.sighash_type])


@dataclass
class UnsignedTransaction:
    """
    Ordered inputs and outputs plus version and lock time.

    sighash_specs records, per input index, the spec each input must be
    signed under. slot_plan is set by the builder.
    """
    inputs: List[TxInput] = field(default_factory=list)
    outputs: List[TxOutput] = field(default_factory=list)
    version: int = DEFAULT_VERSION
    lock_time: int = 0
    sighash_specs: Dict[int, SighashSpec] = field(default_factory=dict)
    slot_plan: Optional[Any] = None

    def serialize(self, unlocking_scripts: Optional[List[bytes]] = None) -> bytes:
        """
        Serialize in network format.

        Args:
            unlocking_scripts: One script per input; empty scripts if None
        """
        if unlocking_scripts is None:
            unlocking_scripts = [b''] * len(self.inputs)
        if len(unlocking_scripts) != len(self.inputs):
            raise MalformedTransactionError("One unlocking script per input is required")

        result = struct.pack('<I', self.version)
        result += serialize_compact_size(len(self.inputs))
        for tx_input, script in zip(self.inputs, unlocking_scripts):
            result += serialize_outpoint(tx_input.utxo.txid, tx_input.utxo.output_index)
            result += serialize_compact_size(len(script)) + script
            result += struct.pack('<I', tx_input.sequence)
        result += serialize_compact_size(len(self.outputs))
        for output in self.outputs:
            result += output.serialize()
        result += struct.pack('<I', self.lock_time)
        return result

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def total_input(self) -> int:
        return sum(i.utxo.satoshis for i in self.inputs)

    @property
    def total_output(self) -> int:
        return sum(o.satoshis for o in self.outputs)

    @property
    def fee(self) -> int:
        return self.total_input - self.total_output

    def copy(self) -> 'UnsignedTransaction':
        return replace(
            self,
            inputs=[replace(i) for i in self.inputs],
            outputs=list(self.outputs),
            sighash_specs=dict(self.sighash_specs),
        )


@dataclass(frozen=True)
class SignedTransaction:
    """Finalized transaction ready for broadcast."""
    unsigned: UnsignedTransaction
    unlocking_scripts: Tuple[bytes, ...]

    @property
    def raw(self) -> bytes:
        return self.unsigned.serialize(list(self.unlocking_scripts))

    @property
    def hex(self) -> str:
        return self.raw.hex()

    @property
    def txid(self) -> str:
        return compute_txid(self.raw)

    @property
    def fee(self) -> int:
        return self.unsigned.fee

    def output_utxo(self, index: int) -> UtxoRef:
        """UtxoRef for one of this transaction's outputs."""
        output = self.unsigned.outputs[index]
        return UtxoRef(self.txid, index, output.satoshis, output.locking_script)
