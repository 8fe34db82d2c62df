"""
Deployment/Settlement Orchestrator

Runs a contract end to end: deploy, zero or more calls, settle. Every step
goes through the same pipeline:

    build -> sign -> finalize -> broadcast -> wait for acceptance

Local problems (illegal moves, bad reveals, unsupported sighash specs,
signer failures) stop the step before anything reaches the network. A
rejected broadcast releases the fee reservation and rebuilds from a fresh
selection, with a higher fee rate when the rejection was about fees, until
the retry bound is reached.

A transaction that may have reached the network is never rolled back
locally. When its acceptance cannot be established (the monitor times out,
or the relay timed out mid-request) the handle keeps it as pending and
refuses new transitions until reconcile() commits or drops it.
"""

import copy
import logging
import math
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Union

from contracts.exceptions import IllegalTransitionError
from contracts.families import get_family
from contracts.state_machine import (
    ContractFamily,
    ContractPhase,
    ContractState,
    ContractStateMachine,
    CovenantVerifier,
    TransitionContext,
)
from network.broadcaster import (
    BroadcastRejectedError,
    BroadcastUnavailableError,
    TransactionBroadcaster,
)
from network.fees import FeeRateSource, resolve_fee_rate
from network.monitor import AcceptanceTimeoutError, ConfirmationMonitor
from scripts.artifact import ContractArtifact
from transaction.builder import BuildResult, ContractUnlock, TransactionBuilder
from transaction.models import SignedTransaction
from transaction.selector import FeePolicy, Outpoint
from wallet.signer import SignerCapability

from .exceptions import (
    AcceptancePendingError,
    DeploymentFailedError,
    StepFailedError,
    TransitionFailedError,
)
from .handle import ContractHandle, PendingTransaction, UtxoRecord
from .store import HandleStore


DEPLOY_ACTION = "deploy"


@dataclass
class OrchestratorConfig:
    """
    Retry and acceptance settings.

    Attributes:
        max_retries: Rebuilds allowed after the first rejected broadcast
        fee_bump_factor: Fee rate multiplier applied after a fee rejection
        acceptance_timeout: Override for the monitor's acceptance timeout
    """
    max_retries: int = 3
    fee_bump_factor: float = 1.5
    acceptance_timeout: Optional[float] = None

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if self.fee_bump_factor < 1:
            raise ValueError("fee_bump_factor must be at least 1")


class _Unsettled(Exception):
    """A broadcast step whose acceptance could not be established."""

    def __init__(self, signed: SignedTransaction, fee_outpoints: List[Outpoint], reason: str):
        self.signed = signed
        self.fee_outpoints = list(fee_outpoints)
        self.reason = reason
        super().__init__(reason)


class ContractOrchestrator:
    """
    Sequences deploy, call and settle for contract handles.
    """

    def __init__(self, builder: TransactionBuilder, signer: SignerCapability,
                 broadcaster: TransactionBroadcaster, fee_policy: FeePolicy,
                 monitor: Optional[ConfirmationMonitor] = None,
                 store: Optional[HandleStore] = None,
                 fee_source: Optional[FeeRateSource] = None,
                 verifier: Optional[CovenantVerifier] = None,
                 config: Optional[OrchestratorConfig] = None):
        """
        Initialize orchestrator.

        Args:
            builder: Transaction builder (owns the UTXO selector)
            signer: Signer capability for contract and fee inputs
            broadcaster: Relay for finalized transactions
            fee_policy: Base fee policy; its rate is the fallback rate
            monitor: Acceptance monitor; without one a successful broadcast
                counts as accepted
            store: Where handles are persisted after every step
            fee_source: Preferred fee-rate source
            verifier: Script interpreter checked before each contract spend
            config: Retry settings
        """
        self.builder = builder
        self.signer = signer
        self.broadcaster = broadcaster
        self.fee_policy = fee_policy
        self.monitor = monitor
        self.store = store
        self.fee_source = fee_source
        self.verifier = verifier
        self.config = config or OrchestratorConfig()
        self.logger = logging.getLogger(__name__)

        self._machines: Dict[str, ContractStateMachine] = {}
        self._lock = threading.Lock()

    # Public operations

    def deploy(self, family: Union[str, ContractFamily],
               artifact: Union[ContractArtifact, Dict[str, Any]],
               constructor_args: Dict[str, Any], satoshis: int,
               cancel_event: Optional[threading.Event] = None) -> ContractHandle:
        """
        Fund a new contract output and return its handle.

        Args:
            family: Contract family, or its registered name
            artifact: Compiled artifact (object or JSON form)
            constructor_args: Values for the artifact's constructor parameters
            satoshis: Value locked in the contract
            cancel_event: Set to abandon a pending signing request

        Returns:
            ACTIVE ContractHandle

        Raises:
            DeploymentFailedError: funding transaction rejected past the retry bound
            AcceptancePendingError: funding transaction sent but not seen accepted;
                the error carries the DEPLOYED handle to reconcile
        """
        family = get_family(family) if isinstance(family, str) else family
        if isinstance(artifact, dict):
            artifact = ContractArtifact.from_dict(artifact)
        family.check_artifact(artifact)

        public_data = family.initial_state(constructor_args, satoshis)
        locking_script = family.locking_script(artifact, constructor_args, public_data)

        handle = ContractHandle(
            family=family.name,
            artifact=artifact.to_dict(),
            constructor_args=dict(constructor_args),
            public_data=public_data,
            pre_check_version=artifact.pre_check_version,
        )

        try:
            signed = self._run_step(
                build=lambda policy, avoid: self.builder.build_deployment(
                    locking_script, satoshis, policy, avoid=avoid),
                contract_unlock=None,
                failure=DeploymentFailedError,
                label=f"deploy {family.name}",
                cancel_event=cancel_event,
            )
        except _Unsettled as unsettled:
            handle.in_flight = DEPLOY_ACTION
            handle.pending = self._pending_record(
                DEPLOY_ACTION, unsettled, public_data=public_data,
                next_utxo=UtxoRecord.from_utxo(unsettled.signed.output_utxo(0)),
            )
            self._save(handle)
            raise AcceptancePendingError(handle, unsettled.signed.txid, unsettled.reason)

        handle.current_utxo = UtxoRecord.from_utxo(signed.output_utxo(0))
        handle.lineage = [signed.txid]
        machine = ContractStateMachine(family, ContractState(artifact, dict(constructor_args),
                                                             copy.deepcopy(public_data)))
        machine.activate()
        handle.phase = machine.phase

        with self._lock:
            self._machines[handle.handle_id] = machine
        self._save(handle)
        self.logger.info(f"Deployed {family.name} contract {handle.handle_id} in {signed.txid}")
        return handle

    def call(self, handle: ContractHandle, action: str, args: Optional[Dict[str, Any]] = None,
             lock_time: int = 0, block_height: Optional[int] = None,
             cancel_event: Optional[threading.Event] = None) -> ContractHandle:
        """
        Apply one transition and broadcast it.

        Args:
            handle: Handle of an ACTIVE contract
            action: Transition name
            args: Transition arguments
            lock_time: Lock time requested by the caller
            block_height: Current height (queried from the monitor when omitted)
            cancel_event: Set to abandon a pending signing request

        Returns:
            The same handle, updated

        Raises:
            IllegalTransitionError: transition rejected locally, or a previous
                transaction is still awaiting acceptance
            TransitionFailedError: transaction rejected past the retry bound
            AcceptancePendingError: transaction sent but not seen accepted
        """
        return self._advance(handle, action, args, lock_time, block_height,
                             cancel_event, settle=False)

    def settle(self, handle: ContractHandle, action: Optional[str] = None,
               args: Optional[Dict[str, Any]] = None, lock_time: int = 0,
               block_height: Optional[int] = None,
               cancel_event: Optional[threading.Event] = None) -> str:
        """
        Apply a terminal transition and return its txid.

        Raises:
            IllegalTransitionError: no settle transition, or it would not end the contract
            TransitionFailedError: transaction rejected past the retry bound
            AcceptancePendingError: transaction sent but not seen accepted
        """
        machine = self.machine_for(handle)
        action = action or machine.family.settle_transition
        if action is None:
            raise IllegalTransitionError("settle", f"{machine.family.name} has no settle transition")

        self._advance(handle, action, args, lock_time, block_height, cancel_event, settle=True)
        return handle.latest_txid

    def reconcile(self, handle: ContractHandle, timeout: Optional[float] = None) -> ContractHandle:
        """
        Resolve a transaction left pending by deploy, call or settle.

        Polls the monitor first. When the transaction is still not seen it is
        relayed again: a relay that accepts it (or already knows it) commits
        the step, a rejection drops it and frees its fee inputs.

        Args:
            handle: Handle with a pending transaction
            timeout: Override for the acceptance timeout

        Returns:
            The same handle, with the pending step committed

        Raises:
            AcceptancePendingError: acceptance still cannot be established
            DeploymentFailedError / TransitionFailedError: the network refused
                the pending transaction; the step was dropped
        """
        pending = handle.pending
        if pending is None:
            if handle.in_flight is not None:
                self.logger.warning(
                    f"Contract {handle.handle_id}: clearing {handle.in_flight} marker "
                    f"with no recorded broadcast"
                )
                handle.in_flight = None
                self._save(handle)
            return handle

        if self._seen_accepted(pending.txid, timeout):
            return self._commit_pending(handle)

        try:
            self.broadcaster.broadcast(pending.raw_hex)
        except BroadcastRejectedError as e:
            self._drop_pending(handle)
            if pending.action == DEPLOY_ACTION:
                raise DeploymentFailedError(e.reason, 1, e.code)
            raise TransitionFailedError(e.reason, 1, e.code, action=pending.action)
        except BroadcastUnavailableError as e:
            raise AcceptancePendingError(handle, pending.txid, str(e))

        if self.monitor is None or self._seen_accepted(pending.txid, timeout):
            return self._commit_pending(handle)
        raise AcceptancePendingError(handle, pending.txid, "relayed again but still not accepted")

    def machine_for(self, handle: ContractHandle) -> ContractStateMachine:
        """State machine tracking a handle, rebuilt from the handle if needed."""
        with self._lock:
            machine = self._machines.get(handle.handle_id)
            if machine is None:
                family = get_family(handle.family)
                artifact = handle.contract_artifact()
                family.check_artifact(artifact)
                machine = ContractStateMachine(family, handle.contract_state(),
                                               phase=handle.phase,
                                               terminal_reason=handle.terminal_reason)
                self._machines[handle.handle_id] = machine
            return machine

    def forget(self, handle: ContractHandle) -> None:
        """Stop tracking a handle (its stored copy is kept)."""
        with self._lock:
            self._machines.pop(handle.handle_id, None)

    # Internals

    def _advance(self, handle: ContractHandle, action: str, args: Optional[Dict[str, Any]],
                 lock_time: int, block_height: Optional[int],
                 cancel_event: Optional[threading.Event], settle: bool) -> ContractHandle:
        if handle.pending is not None:
            raise IllegalTransitionError(
                action, f"transaction {handle.pending.txid} for {handle.pending.action} "
                        f"is awaiting acceptance; reconcile the handle first"
            )
        machine = self.machine_for(handle)
        if handle.in_flight is not None:
            raise IllegalTransitionError(
                action, f"transition {handle.in_flight} was left in flight; resolve it first"
            )

        contract_utxo = handle.contract_utxo()
        if contract_utxo is None:
            raise IllegalTransitionError(action, "handle has no live contract output")
        if block_height is None and self.monitor is not None:
            block_height = self.monitor.current_height()

        ctx = TransitionContext(contract_satoshis=contract_utxo.satoshis,
                                lock_time=lock_time, block_height=block_height)
        outcome = machine.propose(action, args or {}, ctx)

        try:
            if settle and not outcome.is_terminal:
                raise IllegalTransitionError(action, "transition does not settle the contract")

            family = machine.family
            artifact = machine.state.artifact
            next_state = None
            if not outcome.is_terminal:
                next_state = family.locking_script(artifact, machine.state.constructor_args,
                                                   outcome.next_public_data)
            contract_unlock = ContractUnlock(
                artifact=artifact,
                method=action,
                args=outcome.unlock_args,
                sighash_spec=outcome.sighash_spec,
                signer_public_key=outcome.signer_public_key,
            )

            handle.in_flight = action
            self._save(handle)

            signed = self._run_step(
                build=lambda policy, avoid: self.builder.build(
                    contract_utxo, next_state, policy, outcome.payout, contract_unlock,
                    lock_time=outcome.lock_time, avoid=avoid),
                contract_unlock=contract_unlock,
                failure=lambda reason, attempts, code: TransitionFailedError(
                    reason, attempts, code, action=action),
                label=f"{family.name}.{action}",
                cancel_event=cancel_event,
            )
        except _Unsettled as unsettled:
            # The machine is rebuilt from the handle once the step is reconciled.
            machine.abort()
            next_utxo = None
            if not outcome.is_terminal:
                next_utxo = UtxoRecord.from_utxo(unsettled.signed.output_utxo(0))
            handle.pending = self._pending_record(
                action, unsettled, public_data=outcome.next_public_data,
                terminal_reason=outcome.terminal_reason, next_utxo=next_utxo,
            )
            self._save(handle)
            raise AcceptancePendingError(handle, unsettled.signed.txid, unsettled.reason)
        except Exception:
            machine.abort()
            if handle.in_flight is not None:
                handle.in_flight = None
                self._save(handle)
            raise

        machine.commit(outcome)
        handle.phase = machine.phase
        handle.terminal_reason = machine.terminal_reason
        handle.public_data = copy.deepcopy(machine.state.public_data)
        handle.current_utxo = (None if outcome.is_terminal
                               else UtxoRecord.from_utxo(signed.output_utxo(0)))
        handle.lineage.append(signed.txid)
        handle.in_flight = None
        handle.touch()
        self._save(handle)

        if handle.phase == ContractPhase.TERMINAL:
            self.logger.info(f"Contract {handle.handle_id} settled: {handle.terminal_reason}")
        else:
            self.logger.info(f"Contract {handle.handle_id} advanced by {action} in {signed.txid}")
        return handle

    def _run_step(self, build: Callable[[FeePolicy, Set[Outpoint]], BuildResult],
                  contract_unlock: Optional[ContractUnlock],
                  failure: Callable[..., StepFailedError], label: str,
                  cancel_event: Optional[threading.Event]) -> SignedTransaction:
        rate = resolve_fee_rate(self.fee_source, self.fee_policy.satoshis_per_kb)
        avoid: Set[Outpoint] = set()
        last_error: Optional[BroadcastRejectedError] = None
        max_attempts = self.config.max_retries + 1

        for attempt in range(1, max_attempts + 1):
            result = build(self.fee_policy.with_rate(rate), avoid)

            with result.reservation as reservation:
                signed = self._sign_and_finalize(result, contract_unlock, cancel_event)
                try:
                    self.broadcaster.broadcast(signed.hex)
                except BroadcastRejectedError as e:
                    last_error = e
                    self.logger.warning(
                        f"{label}: attempt {attempt}/{max_attempts} rejected "
                        f"({e.kind.value}): {e.reason}"
                    )
                    if e.is_double_spend:
                        avoid.update(reservation.outpoints)
                    if e.is_fee_related:
                        rate = self._bump(rate)
                    continue
                except BroadcastUnavailableError as e:
                    if not e.may_have_relayed:
                        self.logger.error(f"{label}: relay unreachable: {e}")
                        raise failure(str(e), attempt, None)
                    # Treated as spent until reconcile() learns otherwise.
                    reservation.commit()
                    self.logger.warning(f"{label}: relay outcome of {signed.txid} unknown: {e}")
                    raise _Unsettled(signed, reservation.outpoints, str(e))
                reservation.commit()

            self._wait_for_acceptance(signed, reservation.outpoints)
            return signed

        self.logger.error(f"{label}: giving up after {max_attempts} attempts")
        raise failure(last_error.reason, max_attempts, last_error.code)

    def _sign_and_finalize(self, result: BuildResult, contract_unlock: Optional[ContractUnlock],
                           cancel_event: Optional[threading.Event]) -> SignedTransaction:
        tx = result.unsigned_tx
        requests = self.builder.signature_requests(tx, contract_unlock)
        signatures = self.signer.sign(tx, requests, cancel_event)
        signed = self.builder.finalize(tx, signatures, contract_unlock)

        if self.verifier is not None and contract_unlock is not None:
            if not self.verifier.verify(signed, 0):
                raise IllegalTransitionError(contract_unlock.method,
                                             "covenant verifier rejected the transaction")
        return signed

    def _wait_for_acceptance(self, signed: SignedTransaction,
                             fee_outpoints: List[Outpoint]) -> None:
        if self.monitor is None:
            return
        try:
            self.monitor.wait_for_acceptance(signed.txid, timeout=self.config.acceptance_timeout)
        except AcceptanceTimeoutError as e:
            raise _Unsettled(signed, fee_outpoints, str(e))

    def _seen_accepted(self, txid: str, timeout: Optional[float]) -> bool:
        if self.monitor is None:
            return False
        timeout = self.config.acceptance_timeout if timeout is None else timeout
        try:
            self.monitor.wait_for_acceptance(txid, timeout=timeout)
        except AcceptanceTimeoutError:
            return False
        return True

    def _pending_record(self, action: str, unsettled: _Unsettled, public_data=None,
                        terminal_reason: Optional[str] = None,
                        next_utxo: Optional[UtxoRecord] = None) -> PendingTransaction:
        return PendingTransaction(
            action=action,
            txid=unsettled.signed.txid,
            raw_hex=unsettled.signed.hex,
            public_data=copy.deepcopy(public_data),
            terminal_reason=terminal_reason,
            next_utxo=next_utxo,
            fee_outpoints=unsettled.fee_outpoints,
            reason=unsettled.reason,
        )

    def _commit_pending(self, handle: ContractHandle) -> ContractHandle:
        pending = handle.pending
        if pending.action == DEPLOY_ACTION:
            handle.phase = ContractPhase.ACTIVE
        elif pending.terminal_reason is not None:
            handle.phase = ContractPhase.TERMINAL
            handle.terminal_reason = pending.terminal_reason
        if pending.public_data is not None:
            handle.public_data = copy.deepcopy(pending.public_data)
        handle.current_utxo = pending.next_utxo
        handle.lineage.append(pending.txid)
        handle.pending = None
        handle.in_flight = None
        handle.touch()
        self.forget(handle)
        self._save(handle)
        self.logger.info(f"Contract {handle.handle_id}: {pending.action} in {pending.txid} accepted")
        return handle

    def _drop_pending(self, handle: ContractHandle) -> None:
        pending = handle.pending
        self.builder.selector.restore(pending.fee_outpoints)
        handle.pending = None
        handle.in_flight = None
        handle.touch()
        self.forget(handle)
        self._save(handle)
        self.logger.warning(f"Contract {handle.handle_id}: {pending.action} in {pending.txid} dropped")

    def _bump(self, rate: int) -> int:
        bumped = max(rate + 1, int(math.ceil(rate * self.config.fee_bump_factor)))
        self.logger.info(f"Raising fee rate from {rate} to {bumped} sat/kB")
        return bumped

    def _save(self, handle: ContractHandle) -> None:
        if self.store is not None:
            self.store.save(handle)
