"""
Covenant Transaction Builder

Assembles deployment and transition transactions with a fixed slot plan:

    inputs:  [0] contract UTXO, [1..n] wallet fee inputs
    outputs: [0] covenant-verified payout (next contract output, or the
             recipient at settle), [1..k] covenant-verified secondary
             outputs, [last] change (omitted below the dust threshold)

The full output set, change included, is fixed before any digest is
computed. finalize() recomputes every digest and refuses signatures that
no longer match the transaction.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from crypto.exceptions import InvalidKeyError
from crypto.keys import PublicKey
from scripts.artifact import ContractArtifact, encode_argument
from scripts.encoding import is_p2pkh, push_data, push_int
from scripts.exceptions import ArtifactError

from .exceptions import MalformedTransactionError, SignatureMismatchError, SlotPlanViolationError
from .models import (
    ANYONECANPAY_SINGLE,
    FINAL_SEQUENCE,
    NON_FINAL_SEQUENCE,
    SIGHASH_ALL,
    Signature,
    SighashSpec,
    SignedTransaction,
    TxInput,
    TxOutput,
    UnsignedTransaction,
    UtxoRef,
)
from .selector import FeePolicy, Outpoint, Reservation, UtxoSelector
from .sighash import SighashEngine
from .utils import serialize_compact_size


# Upper bounds used for fee estimation before signatures exist
MAX_SCRIPT_SIGNATURE_SIZE = 73  # 72-byte DER + sighash byte
COMPRESSED_PUBKEY_SIZE = 33
P2PKH_UNLOCK_SIZE = 1 + MAX_SCRIPT_SIGNATURE_SIZE + 1 + COMPRESSED_PUBKEY_SIZE

PREIMAGE_FIXED_SIZE = 156


@dataclass(frozen=True)
class PayoutSpec:
    """
    What output 0 (and any covenant-verified secondary outputs) must pay.

    For non-terminal transitions output 0 carries the next contract state
    and recipient_script is left None. At settle recipient_script is the
    final recipient.
    """
    satoshis: int
    recipient_script: Optional[bytes] = None
    secondary_outputs: Tuple[TxOutput, ...] = ()


@dataclass(frozen=True)
class SlotPlan:
    """Expected input/output layout of a covenant transaction."""
    contract_outpoint: Optional[Tuple[str, int]]
    covenant_outputs: int
    fee_inputs: int
    has_change: bool
    change_script: Optional[bytes] = None

    @property
    def first_fee_input(self) -> int:
        return 1 if self.contract_outpoint is not None else 0


@dataclass(frozen=True)
class SignatureRequest:
    """
    One input that needs a signature.

    public_key names the key that must sign when the wallet cannot infer it
    from the prevout script (contract inputs).
    """
    input_index: int
    sighash_spec: SighashSpec
    public_key: Optional[bytes] = None


@dataclass
class ContractUnlock:
    """
    How the contract input is unlocked.

    Attributes:
        artifact: Compiled contract
        method: Public method being called
        args: Arguments for the method's non-signature parameters
        sighash_spec: Spec the covenant asserts for its own input
        signer_public_key: Key whose signature fills `Sig` parameters
    """
    artifact: ContractArtifact
    method: str
    args: Dict[str, Any] = field(default_factory=dict)
    sighash_spec: SighashSpec = ANYONECANPAY_SINGLE
    signer_public_key: Optional[bytes] = None

    @property
    def needs_signature(self) -> bool:
        return any(p.type == 'Sig' for p in self.artifact.method(self.method).params)


@dataclass
class BuildResult:
    """Unsigned transaction together with the fee-input reservation backing it."""
    unsigned_tx: UnsignedTransaction
    reservation: Reservation

    @property
    def fee(self) -> int:
        return self.unsigned_tx.fee


class TransactionBuilder:
    """
    Builds and finalizes covenant transactions.
    """

    def __init__(self, selector: UtxoSelector, sighash_engine: Optional[SighashEngine] = None,
                 version: int = 1):
        """
        Initialize builder.

        Args:
            selector: Selector providing fee inputs
            sighash_engine: Engine for digests (default requires FORKID)
            version: Transaction version
        """
        self.selector = selector
        self.sighash_engine = sighash_engine or SighashEngine()
        self.version = version
        self.logger = logging.getLogger(__name__)

    # Building

    def build(self, contract_utxo: UtxoRef, next_state: Optional[bytes],
              fee_policy: FeePolicy, payout_spec: PayoutSpec,
              contract_unlock: ContractUnlock, lock_time: int = 0,
              avoid: Iterable[Outpoint] = ()) -> BuildResult:
        """
        Build a transition or settle transaction spending the contract UTXO.

        Args:
            contract_utxo: Live contract UTXO (input 0)
            next_state: Locking script of the next contract output, or None at settle
            fee_policy: Fee rate and change destination
            payout_spec: Value and recipients of the covenant-verified outputs
            contract_unlock: Method and arguments unlocking the contract input
            lock_time: Transaction lock time (0 for none)
            avoid: Wallet outpoints not to use as fee inputs

        Returns:
            BuildResult holding the unsigned transaction and fee reservation

        Raises:
            MalformedTransactionError: payout spec inconsistent with next_state
            InsufficientFundsError: wallet cannot fund outputs plus fee
        """
        if next_state is not None and payout_spec.recipient_script is not None:
            raise MalformedTransactionError("Transition output carries the next state, not a recipient")
        if next_state is None and payout_spec.recipient_script is None:
            raise MalformedTransactionError("Settle transaction requires a recipient script")

        self.sighash_engine.check_supported(contract_unlock.sighash_spec)

        output0_script = next_state if next_state is not None else payout_spec.recipient_script
        covenant_outputs = [TxOutput(payout_spec.satoshis, output0_script)]
        covenant_outputs.extend(payout_spec.secondary_outputs)

        unlock_size = self.estimate_contract_unlock_size(contract_utxo, contract_unlock)
        result = self._assemble(
            contract_utxo=contract_utxo,
            covenant_outputs=covenant_outputs,
            fee_policy=fee_policy,
            lock_time=lock_time,
            contract_unlock_size=unlock_size,
            contract_spec=contract_unlock.sighash_spec,
            avoid=avoid,
        )
        self.logger.info(
            f"Built {contract_unlock.artifact.contract}.{contract_unlock.method} transaction: "
            f"{len(result.unsigned_tx.inputs)} inputs, {len(result.unsigned_tx.outputs)} outputs, "
            f"fee {result.fee}"
        )
        return result

    def build_deployment(self, locking_script: bytes, satoshis: int,
                         fee_policy: FeePolicy, avoid: Iterable[Outpoint] = ()) -> BuildResult:
        """
        Build the funding transaction creating the first contract output.

        Args:
            locking_script: Initial contract locking script (output 0)
            satoshis: Value locked in the contract
            fee_policy: Fee rate and change destination
        """
        if satoshis <= 0:
            raise MalformedTransactionError(f"Contract value must be positive, got {satoshis}")

        result = self._assemble(
            contract_utxo=None,
            covenant_outputs=[TxOutput(satoshis, locking_script)],
            fee_policy=fee_policy,
            lock_time=0,
            contract_unlock_size=0,
            contract_spec=None,
            avoid=avoid,
        )
        self.logger.info(f"Built deployment transaction locking {satoshis} satoshis, fee {result.fee}")
        return result

    def _assemble(self, contract_utxo: Optional[UtxoRef], covenant_outputs: List[TxOutput],
                  fee_policy: FeePolicy, lock_time: int, contract_unlock_size: int,
                  contract_spec: Optional[SighashSpec],
                  avoid: Iterable[Outpoint] = ()) -> BuildResult:
        sequence = NON_FINAL_SEQUENCE if lock_time > 0 else FINAL_SEQUENCE
        change_script = fee_policy.change_locking_script()

        base = UnsignedTransaction(version=self.version, lock_time=lock_time,
                                   outputs=list(covenant_outputs))
        unlock_sizes = []
        if contract_utxo is not None:
            base.inputs.append(TxInput(contract_utxo, sequence))
            unlock_sizes.append(contract_unlock_size)

        contract_value = contract_utxo.satoshis if contract_utxo is not None else 0
        target = sum(o.satoshis for o in covenant_outputs) - contract_value
        change_output = TxOutput(0, change_script)

        def estimate_fee(fee_input_count: int) -> int:
            size = (len(base.serialize()) + len(change_output.serialize()) +
                    fee_input_count * (36 + 4 + 1) +
                    _scripts_size(unlock_sizes + [P2PKH_UNLOCK_SIZE] * fee_input_count) +
                    _count_growth(len(base.inputs), fee_input_count) +
                    _count_growth(len(base.outputs), 1))
            return fee_policy.fee_for_size(size)

        exclude = list(avoid)
        if contract_utxo is not None:
            exclude.append(contract_utxo.outpoint)
        reservation = self.selector.select(target, estimate_fee, exclude=exclude)
        fee = estimate_fee(len(reservation.utxos))

        try:
            tx = base
            for utxo in reservation.utxos:
                if not is_p2pkh(utxo.locking_script):
                    raise SlotPlanViolationError(
                        f"Fee input {utxo.txid}:{utxo.output_index} is not P2PKH"
                    )
                tx.inputs.append(TxInput(utxo, sequence))

            change = tx.total_input - tx.total_output - fee
            has_change = change >= fee_policy.dust_threshold and change > 0
            if has_change:
                tx.outputs.append(TxOutput(change, change_script))
            else:
                self.logger.debug(f"Dropping change of {change} satoshis below dust threshold")

            if contract_spec is not None:
                tx.sighash_specs[0] = contract_spec
            plan = SlotPlan(
                contract_outpoint=contract_utxo.outpoint if contract_utxo is not None else None,
                covenant_outputs=len(covenant_outputs),
                fee_inputs=len(reservation.utxos),
                has_change=has_change,
                change_script=change_script if has_change else None,
            )
            for index in range(plan.first_fee_input, len(tx.inputs)):
                tx.sighash_specs[index] = SIGHASH_ALL
            tx.slot_plan = plan
            self.check_slot_plan(tx, plan)
        except Exception:
            reservation.release()
            raise

        return BuildResult(tx, reservation)

    # Slot plan

    def check_slot_plan(self, tx: UnsignedTransaction, plan: Optional[SlotPlan] = None) -> None:
        """
        Verify a transaction follows its slot plan.

        Raises:
            SlotPlanViolationError: any input or output is out of place
        """
        plan = plan or tx.slot_plan
        if plan is None:
            raise SlotPlanViolationError("Transaction has no slot plan")

        expected_inputs = plan.first_fee_input + plan.fee_inputs
        if len(tx.inputs) != expected_inputs:
            raise SlotPlanViolationError(f"Expected {expected_inputs} inputs, found {len(tx.inputs)}")

        expected_outputs = plan.covenant_outputs + (1 if plan.has_change else 0)
        if len(tx.outputs) != expected_outputs:
            raise SlotPlanViolationError(f"Expected {expected_outputs} outputs, found {len(tx.outputs)}")

        if plan.contract_outpoint is not None and tx.inputs[0].utxo.outpoint != plan.contract_outpoint:
            raise SlotPlanViolationError("Input 0 must spend the contract UTXO")

        for index in range(plan.first_fee_input, len(tx.inputs)):
            utxo = tx.inputs[index].utxo
            if utxo.outpoint == plan.contract_outpoint:
                raise SlotPlanViolationError(f"Contract UTXO reused as fee input {index}")
            if not is_p2pkh(utxo.locking_script):
                raise SlotPlanViolationError(f"Fee input {index} is not P2PKH")

        if plan.has_change and tx.outputs[-1].locking_script != plan.change_script:
            raise SlotPlanViolationError("Last output must be the change output")

    # Signing support

    def signature_requests(self, tx: UnsignedTransaction,
                           contract_unlock: Optional[ContractUnlock] = None) -> List[SignatureRequest]:
        """
        Inputs that need signatures, in input order.

        The contract input is only listed when the called method takes a
        `Sig` parameter.
        """
        plan = tx.slot_plan
        requests = []
        if plan is not None and plan.contract_outpoint is not None:
            if contract_unlock is not None and contract_unlock.needs_signature:
                requests.append(SignatureRequest(0, tx.sighash_specs[0],
                                                 contract_unlock.signer_public_key))
            first_fee = 1
        else:
            first_fee = 0
        for index in range(first_fee, len(tx.inputs)):
            requests.append(SignatureRequest(index, tx.sighash_specs.get(index, SIGHASH_ALL)))
        return requests

    def estimate_contract_unlock_size(self, contract_utxo: UtxoRef,
                                      contract_unlock: ContractUnlock) -> int:
        """Upper bound on the contract input's unlocking script size."""
        script = contract_utxo.locking_script
        preimage_size = (PREIMAGE_FIXED_SIZE + len(serialize_compact_size(len(script))) + len(script))
        return len(self._contract_unlocking_script(
            contract_unlock,
            script_signature=b'\x00' * MAX_SCRIPT_SIGNATURE_SIZE,
            preimage=b'\x00' * preimage_size,
        ))

    def _contract_unlocking_script(self, contract_unlock: ContractUnlock,
                                   script_signature: Optional[bytes], preimage: bytes) -> bytes:
        artifact = contract_unlock.artifact
        method = artifact.method(contract_unlock.method)

        script = b''
        for param in method.params:
            if param.type == 'Sig':
                if script_signature is None:
                    raise SignatureMismatchError(0, f"{method.name} requires a signature")
                script += push_data(script_signature)
            elif param.type == 'SigHashPreimage':
                script += push_data(preimage)
            else:
                if param.name not in contract_unlock.args:
                    raise MalformedTransactionError(
                        f"Missing argument {param.name!r} for {artifact.contract}.{method.name}"
                    )
                try:
                    script += encode_argument(contract_unlock.args[param.name], param.type)
                except ArtifactError as e:
                    raise MalformedTransactionError(f"Argument {param.name!r}: {e}")

        if len(artifact.public_methods) > 1:
            script += push_int(artifact.method_index(method.name))
        return script

    # Finalization

    def finalize(self, unsigned_tx: UnsignedTransaction, signatures: Sequence[Signature],
                 contract_unlock: Optional[ContractUnlock] = None) -> SignedTransaction:
        """
        Attach unlocking scripts to a transaction.

        Every signature must have been produced over this exact transaction:
        its sighash spec must be the one recorded for its input and its bound
        digest must equal the digest recomputed now.

        Args:
            unsigned_tx: Transaction the signatures were requested for
            signatures: One signature per signature request
            contract_unlock: Unlock description for the contract input

        Returns:
            SignedTransaction ready for broadcast

        Raises:
            SignatureMismatchError: missing, extra or stale signatures
            SlotPlanViolationError: transaction no longer follows its slot plan
        """
        self.check_slot_plan(unsigned_tx)
        plan = unsigned_tx.slot_plan
        if plan.contract_outpoint is not None and contract_unlock is None:
            raise MalformedTransactionError("Contract input needs an unlock description")

        requests = self.signature_requests(unsigned_tx, contract_unlock)
        by_index: Dict[int, Signature] = {}
        for signature in signatures:
            if signature.input_index in by_index:
                raise SignatureMismatchError(signature.input_index, "duplicate signature")
            by_index[signature.input_index] = signature

        requested = {r.input_index for r in requests}
        for index in sorted(set(by_index) - requested):
            raise SignatureMismatchError(index, "signature for an input that was not requested")
        for index in sorted(requested - set(by_index)):
            raise SignatureMismatchError(index, "signature missing")

        for request in requests:
            self._check_signature(unsigned_tx, by_index[request.input_index], request)

        scripts = []
        for index, tx_input in enumerate(unsigned_tx.inputs):
            if index == 0 and plan.contract_outpoint is not None:
                signature = by_index.get(0)
                preimage = self.sighash_engine.preimage(unsigned_tx, 0, unsigned_tx.sighash_specs[0])
                scripts.append(self._contract_unlocking_script(
                    contract_unlock,
                    script_signature=signature.script_signature if signature else None,
                    preimage=preimage,
                ))
            else:
                signature = by_index[index]
                if signature.public_key is None:
                    raise SignatureMismatchError(index, "P2PKH input needs the signer's public key")
                scripts.append(push_data(signature.script_signature) + push_data(signature.public_key))

        signed = SignedTransaction(unsigned_tx, tuple(scripts))
        self.logger.info(f"Finalized transaction {signed.txid} ({len(signed.raw)} bytes)")
        return signed

    def _check_signature(self, tx: UnsignedTransaction, signature: Signature,
                         request: SignatureRequest) -> None:
        index = request.input_index
        if signature.sighash_spec != request.sighash_spec:
            raise SignatureMismatchError(
                index,
                f"signed with {signature.sighash_spec.describe()}, "
                f"expected {request.sighash_spec.describe()}"
            )

        digest = self.sighash_engine.digest(tx, index, request.sighash_spec)
        if signature.preimage_digest != digest:
            raise SignatureMismatchError(index, "stale signature: transaction changed after signing")

        if signature.public_key is not None:
            try:
                public_key = PublicKey(signature.public_key)
            except InvalidKeyError as e:
                raise SignatureMismatchError(index, f"invalid public key: {e}")
            if not public_key.verify(signature.der_signature, digest):
                raise SignatureMismatchError(index, "signature does not verify against its digest")

        if request.public_key is not None and signature.public_key != request.public_key:
            raise SignatureMismatchError(index, "signed by a different key than requested")


def _scripts_size(script_sizes: List[int]) -> int:
    # Each empty script already serializes as one length byte
    return sum(len(serialize_compact_size(size)) - 1 + size for size in script_sizes)


def _count_growth(current: int, added: int) -> int:
    return len(serialize_compact_size(current + added)) - len(serialize_compact_size(current))
