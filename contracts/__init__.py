"""
Covenant Engine - Contract Families and State Machine

Local rules of each stateful covenant family and the lifecycle state
machine that keeps one transition in flight per contract.
"""

from .exceptions import (
    ContractError,
    IllegalTransitionError,
    UnknownFamilyError,
    PreCheckVersionError,
    ArtifactMismatchError,
)
from .state_machine import (
    ContractFamily,
    ContractPhase,
    ContractState,
    ContractStateMachine,
    CovenantVerifier,
    TransitionContext,
    TransitionOutcome,
    transition,
)
from .tictactoe import TicTacToe
from .auction import Auction
from .counter import Counter
from .hashlock import HashLock
from .families import get_family, list_families, register_family

__all__ = [
    'ContractError',
    'IllegalTransitionError',
    'UnknownFamilyError',
    'PreCheckVersionError',
    'ArtifactMismatchError',
    'ContractFamily',
    'ContractPhase',
    'ContractState',
    'ContractStateMachine',
    'CovenantVerifier',
    'TransitionContext',
    'TransitionOutcome',
    'transition',
    'TicTacToe',
    'Auction',
    'Counter',
    'HashLock',
    'get_family',
    'list_families',
    'register_family',
]
