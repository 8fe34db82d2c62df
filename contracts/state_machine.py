"""
Contract State Machine

A covenant contract moves through three phases:

    DEPLOYED --(funding tx accepted)--> ACTIVE --(settle transition)--> TERMINAL

While ACTIVE, a contract family maps (current public data, action, args,
context) to a TransitionOutcome or raises IllegalTransitionError. The local
rules mirror what the contract script asserts, so an illegal move is caught
before anything is signed or broadcast.

The machine only ever has one transition in flight. propose() reserves the
slot and commit()/abort() release it; the new state becomes authoritative in
commit(), which the orchestrator calls after the transaction is accepted.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from scripts.artifact import ContractArtifact
from scripts.exceptions import ArtifactError
from scripts.encoding import (
    StateSchema,
    build_stateful_script,
    p2pkh_script,
    split_stateful_script,
)
from crypto.keys import PublicKey
from transaction.builder import PayoutSpec
from transaction.models import ANYONECANPAY_SINGLE, SighashSpec

from .exceptions import (
    ArtifactMismatchError,
    ContractError,
    IllegalTransitionError,
    PreCheckVersionError,
)

NON_ARGUMENT_TYPES = ('Sig', 'SigHashPreimage')


class ContractPhase(str, Enum):
    """Lifecycle phase of a contract."""
    DEPLOYED = "deployed"
    ACTIVE = "active"
    TERMINAL = "terminal"


@dataclass
class ContractState:
    """
    State of one contract instance.

    artifact and constructor_args are fixed at deploy; public_data is the
    mutable state carried in the locking script's state section.
    """
    artifact: ContractArtifact
    constructor_args: Dict[str, Any]
    public_data: Dict[str, Any]

    @property
    def script_template(self) -> str:
        return self.artifact.template_hex


@dataclass(frozen=True)
class TransitionContext:
    """
    Chain context a transition is evaluated in.

    Attributes:
        contract_satoshis: Value of the live contract UTXO
        lock_time: Lock time the caller wants on the transaction
        block_height: Current chain height, when known
    """
    contract_satoshis: int
    lock_time: int = 0
    block_height: Optional[int] = None


@dataclass
class TransitionOutcome:
    """
    Result of applying a transition locally.

    Attributes:
        action: Transition name (also the ABI method called)
        next_public_data: Public data of the next contract output; None at settle
        payout: Value and recipients of the covenant-verified outputs
        unlock_args: Arguments for the method's non-signature ABI parameters
        sighash_spec: Spec the covenant asserts for the contract input
        signer_public_key: Key whose signature the method requires
        lock_time: Lock time the transaction must carry
        terminal_reason: Set when the transition settles the contract
    """
    action: str
    next_public_data: Optional[Dict[str, Any]]
    payout: PayoutSpec
    unlock_args: Dict[str, Any] = field(default_factory=dict)
    sighash_spec: SighashSpec = ANYONECANPAY_SINGLE
    signer_public_key: Optional[bytes] = None
    lock_time: int = 0
    terminal_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.terminal_reason is not None


@dataclass(frozen=True)
class TransitionSpec:
    """Registered transition: name and the ABI argument names it fills."""
    name: str
    params: Tuple[str, ...] = ()


def transition(name: str, params: Sequence[str] = ()):
    """
    Register a ContractFamily method as a named transition.

    The method is called as method(self, state, args, ctx) and returns a
    TransitionOutcome or raises IllegalTransitionError.
    """
    def decorator(func: Callable) -> Callable:
        func._transition = TransitionSpec(name, tuple(params))
        return func
    return decorator


def pubkey_script(pubkey_hex: str) -> bytes:
    """P2PKH locking script paying the holder of a hex public key."""
    return p2pkh_script(PublicKey.from_hex(pubkey_hex).pubkey_hash)


class ContractFamily(ABC):
    """
    Local rules of one kind of stateful covenant.

    Subclasses set name, state_schema and constructor_params, and register
    transitions with the @transition decorator. settle_transition names the
    transition used to settle when the caller does not pick one.
    """

    name: str = ""
    pre_check_version: int = 1
    sighash_spec: SighashSpec = ANYONECANPAY_SINGLE
    state_schema: StateSchema = StateSchema([])
    constructor_params: Tuple[str, ...] = ()
    settle_transition: Optional[str] = None

    _transitions: Dict[str, Tuple[TransitionSpec, str]] = {}

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        found = {}
        for klass in reversed(cls.__mro__):
            for attr, value in vars(klass).items():
                spec = getattr(value, '_transition', None)
                if isinstance(spec, TransitionSpec):
                    found[spec.name] = (spec, attr)
        cls._transitions = found

    @property
    def transitions(self) -> List[str]:
        return sorted(self._transitions)

    def transition_spec(self, action: str) -> TransitionSpec:
        if action not in self._transitions:
            raise IllegalTransitionError(action, f"{self.name} has no such transition")
        return self._transitions[action][0]

    # Deployment

    @abstractmethod
    def initial_state(self, constructor_args: Dict[str, Any], satoshis: int) -> Dict[str, Any]:
        """Public data of a freshly deployed contract."""
        pass

    def validate_constructor(self, constructor_args: Dict[str, Any]) -> None:
        missing = [p for p in self.constructor_params if p not in constructor_args]
        if missing:
            raise ContractError(f"{self.name} constructor is missing {', '.join(missing)}")

    def check_artifact(self, artifact: ContractArtifact) -> None:
        """
        Check that an artifact belongs to the pre-check rules of this family.

        Raises:
            PreCheckVersionError: artifact written for other pre-check rules
            ArtifactMismatchError: ABI lacks a transition or its arguments differ
        """
        if artifact.pre_check_version != self.pre_check_version:
            raise PreCheckVersionError(self.name, self.pre_check_version,
                                       artifact.pre_check_version)

        constructor = {p.name for p in artifact.constructor.params}
        if constructor != set(self.constructor_params):
            raise ArtifactMismatchError(
                f"{artifact.contract} constructor takes {sorted(constructor)}, "
                f"{self.name} expects {sorted(self.constructor_params)}"
            )

        for spec, _ in self._transitions.values():
            try:
                method = artifact.method(spec.name)
            except ArtifactError as e:
                raise ArtifactMismatchError(str(e))
            names = tuple(p.name for p in method.params if p.type not in NON_ARGUMENT_TYPES)
            if set(names) != set(spec.params):
                raise ArtifactMismatchError(
                    f"{artifact.contract}.{spec.name} takes {list(names)}, "
                    f"{self.name} fills {list(spec.params)}"
                )

    # Scripts

    def locking_script(self, artifact: ContractArtifact, constructor_args: Dict[str, Any],
                       public_data: Dict[str, Any]) -> bytes:
        """Complete locking script for a contract output carrying public_data."""
        code_part = artifact.build_code_part(constructor_args)
        return build_stateful_script(code_part, self.state_schema.serialize(public_data))

    def decode_state(self, locking_script: bytes) -> Dict[str, Any]:
        """Public data carried by a contract locking script."""
        _, state_bytes = split_stateful_script(locking_script)
        return self.state_schema.deserialize(state_bytes)

    # Transitions

    def apply(self, state: ContractState, action: str, args: Dict[str, Any],
              ctx: TransitionContext) -> TransitionOutcome:
        """
        Evaluate a transition against the current state.

        The state passed in is never modified.

        Raises:
            IllegalTransitionError: the transition is not allowed
        """
        spec = self.transition_spec(action)
        method = getattr(self, self._transitions[action][1])
        snapshot = ContractState(state.artifact, dict(state.constructor_args),
                                 copy.deepcopy(state.public_data))
        outcome = method(snapshot, dict(args or {}), ctx)

        if outcome.action != spec.name:
            raise ContractError(f"{self.name}.{action} returned an outcome for {outcome.action}")
        if outcome.next_public_data is not None:
            self.state_schema.serialize(outcome.next_public_data)
        return outcome

    # Helpers for subclasses

    def _require(self, condition: bool, action: str, reason: str) -> None:
        if not condition:
            raise IllegalTransitionError(action, reason)

    def _require_after(self, action: str, height: int, ctx: TransitionContext) -> int:
        """Lock time a transition valid from `height` on must carry."""
        if ctx.block_height is not None and ctx.block_height < height:
            raise IllegalTransitionError(
                action, f"not allowed before block {height} (current height {ctx.block_height})"
            )
        return max(ctx.lock_time, height)

    def _require_before(self, action: str, height: int, ctx: TransitionContext) -> None:
        if ctx.block_height is not None and ctx.block_height >= height:
            raise IllegalTransitionError(
                action, f"deadline {height} passed (current height {ctx.block_height})"
            )
        if ctx.lock_time >= height:
            raise IllegalTransitionError(action, f"lock time {ctx.lock_time} is past deadline {height}")


class ContractStateMachine:
    """
    Phase tracking and single in-flight transition for one contract.
    """

    def __init__(self, family: ContractFamily, state: ContractState,
                 phase: ContractPhase = ContractPhase.DEPLOYED,
                 terminal_reason: Optional[str] = None):
        self.family = family
        self.state = state
        self.phase = phase
        self.terminal_reason = terminal_reason
        self.logger = logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._pending: Optional[TransitionOutcome] = None

    @property
    def pending(self) -> Optional[TransitionOutcome]:
        return self._pending

    @property
    def is_terminal(self) -> bool:
        return self.phase == ContractPhase.TERMINAL

    def activate(self) -> None:
        """DEPLOYED -> ACTIVE once the funding transaction is accepted."""
        with self._lock:
            if self.phase != ContractPhase.DEPLOYED:
                raise IllegalTransitionError("activate", f"contract is {self.phase.value}")
            self.phase = ContractPhase.ACTIVE
        self.logger.debug(f"{self.family.name} contract activated")

    def propose(self, action: str, args: Dict[str, Any],
                ctx: TransitionContext) -> TransitionOutcome:
        """
        Evaluate a transition and reserve the in-flight slot for it.

        Raises:
            IllegalTransitionError: contract not ACTIVE, a transition already
                in flight, or the family rejects the move
        """
        with self._lock:
            if self.phase == ContractPhase.TERMINAL:
                raise IllegalTransitionError(action, f"contract is terminal ({self.terminal_reason})")
            if self.phase == ContractPhase.DEPLOYED:
                raise IllegalTransitionError(action, "contract is not active yet")
            if self._pending is not None:
                raise IllegalTransitionError(
                    action, f"transition {self._pending.action} is already in flight"
                )

            outcome = self.family.apply(self.state, action, args, ctx)
            self._pending = outcome
        return outcome

    def commit(self, outcome: TransitionOutcome) -> None:
        """Make the in-flight outcome the current state."""
        with self._lock:
            if self._pending is not outcome:
                raise IllegalTransitionError(outcome.action, "outcome is not the one in flight")
            if outcome.is_terminal:
                self.phase = ContractPhase.TERMINAL
                self.terminal_reason = outcome.terminal_reason
            else:
                self.state.public_data = outcome.next_public_data
            self._pending = None
        self.logger.debug(f"{self.family.name}.{outcome.action} committed")

    def abort(self) -> None:
        """Drop the in-flight outcome; the current state is unchanged."""
        with self._lock:
            self._pending = None


class CovenantVerifier(ABC):
    """
    Boundary to the script interpreter that ultimately judges a spend.

    The engine replicates the covenant's assertions in its local pre-checks;
    a verifier lets callers confirm that agreement.
    """

    @abstractmethod
    def verify(self, tx: Any, input_index: int) -> bool:
        """True when the covenant accepts the given input of a signed transaction."""
        pass
