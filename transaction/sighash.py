"""
Signature Hash Engine

BIP143-style signature preimages as used by BSV with SIGHASH_FORKID. The
same preimage is both what a signer signs (after HASH256) and what a
stateful covenant receives as its SigHashPreimage argument, so the contract
input's unlocking script carries the exact bytes computed here.

Preimage layout:

    nVersion | hashPrevouts | hashSequence | outpoint | scriptCode |
    value | nSequence | hashOutputs | nLockTime | sighash type
"""

import logging
import struct
from typing import Optional

from crypto.keys import hash256

from .exceptions import MalformedTransactionError, UnsupportedSighashCombinationError
from .models import SighashFlag, SighashSpec, UnsignedTransaction
from .utils import serialize_outpoint, serialize_varstr


ZERO_HASH = b'\x00' * 32


class SighashEngine:
    """
    Computes signature preimages and digests for transaction inputs.
    """

    def __init__(self, fork_id_required: bool = True):
        """
        Initialize sighash engine.

        Args:
            fork_id_required: Reject specs without the FORKID bit
        """
        self.fork_id_required = fork_id_required
        self.logger = logging.getLogger(__name__)

    def check_supported(self, spec: SighashSpec,
                        required: Optional[SighashSpec] = None) -> None:
        """
        Check a sighash spec before anything is signed with it.

        Args:
            spec: Spec the caller wants to sign with
            required: Spec the contract script asserts for this input, if any

        Raises:
            UnsupportedSighashCombinationError: spec is invalid for this network
                or differs from what the covenant asserts
        """
        if not isinstance(spec.flag, SighashFlag):
            raise UnsupportedSighashCombinationError(f"Unknown sighash flag: {spec.flag!r}")
        if self.fork_id_required and not spec.fork_id:
            raise UnsupportedSighashCombinationError(
                f"Sighash {spec.describe()} lacks FORKID, which this network requires"
            )
        if required is not None and spec != required:
            raise UnsupportedSighashCombinationError(
                f"Covenant asserts {required.describe()}, got {spec.describe()}"
            )

    def preimage(self, tx: UnsignedTransaction, input_index: int,
                 spec: SighashSpec) -> bytes:
        """
        Compute the signature preimage for one input.

        Args:
            tx: Transaction whose outputs are final
            input_index: Input being signed
            spec: Sighash spec for this input

        Returns:
            Preimage bytes

        Raises:
            MalformedTransactionError: input index out of range, or the
                prevout's locking script or value is unknown
        """
        self.check_supported(spec)

        if not 0 <= input_index < len(tx.inputs):
            raise MalformedTransactionError(
                f"Input index {input_index} out of range ({len(tx.inputs)} inputs)"
            )

        tx_input = tx.inputs[input_index]
        utxo = tx_input.utxo
        if not utxo.locking_script:
            raise MalformedTransactionError(f"Input {input_index}: prevout locking script unknown")
        if utxo.satoshis is None:
            raise MalformedTransactionError(f"Input {input_index}: prevout value unknown")

        hash_prevouts = ZERO_HASH
        if not spec.anyone_can_pay:
            hash_prevouts = hash256(b''.join(
                serialize_outpoint(i.utxo.txid, i.utxo.output_index) for i in tx.inputs
            ))

        hash_sequence = ZERO_HASH
        if not spec.anyone_can_pay and spec.flag == SighashFlag.ALL:
            hash_sequence = hash256(b''.join(
                struct.pack('<I', i.sequence) for i in tx.inputs
            ))

        if spec.flag == SighashFlag.ALL:
            hash_outputs = hash256(b''.join(o.serialize() for o in tx.outputs))
        elif spec.flag == SighashFlag.SINGLE and input_index < len(tx.outputs):
            hash_outputs = hash256(tx.outputs[input_index].serialize())
        else:
            hash_outputs = ZERO_HASH

        preimage = struct.pack('<I', tx.version)
        preimage += hash_prevouts
        preimage += hash_sequence
        preimage += serialize_outpoint(utxo.txid, utxo.output_index)
        preimage += serialize_varstr(utxo.locking_script)
        preimage += struct.pack('<Q', utxo.satoshis)
        preimage += struct.pack('<I', tx_input.sequence)
        preimage += hash_outputs
        preimage += struct.pack('<I', tx.lock_time)
        preimage += struct.pack('<I', spec.sighash_type)
        return preimage

    def digest(self, tx: UnsignedTransaction, input_index: int,
               spec: SighashSpec) -> bytes:
        """HASH256 of the preimage; the 32-byte message an ECDSA signature covers."""
        result = hash256(self.preimage(tx, input_index, spec))
        self.logger.debug(f"Sighash {spec.describe()} for input {input_index}: {result.hex()}")
        return result
