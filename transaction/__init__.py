"""
Covenant Engine - Transaction Construction

UTXO selection, BIP143/FORKID signature hashing, slot-planned transaction
assembly and finalization for stateful covenant contracts.
"""

from .exceptions import (
    TransactionError,
    InsufficientFundsError,
    MalformedTransactionError,
    UnsupportedSighashCombinationError,
    SignatureMismatchError,
    SlotPlanViolationError,
)
from .models import (
    ANYONECANPAY_ALL,
    ANYONECANPAY_SINGLE,
    SIGHASH_ALL,
    SighashFlag,
    SighashSpec,
    Signature,
    SignedTransaction,
    TxInput,
    TxOutput,
    UnsignedTransaction,
    UtxoRef,
)
from .selector import FeePolicy, Reservation, UtxoSelector
from .sighash import SighashEngine
from .builder import (
    BuildResult,
    ContractUnlock,
    PayoutSpec,
    SignatureRequest,
    SlotPlan,
    TransactionBuilder,
)

__all__ = [
    # Exceptions
    'TransactionError',
    'InsufficientFundsError',
    'MalformedTransactionError',
    'UnsupportedSighashCombinationError',
    'SignatureMismatchError',
    'SlotPlanViolationError',

    # Models
    'ANYONECANPAY_ALL',
    'ANYONECANPAY_SINGLE',
    'SIGHASH_ALL',
    'SighashFlag',
    'SighashSpec',
    'Signature',
    'SignedTransaction',
    'TxInput',
    'TxOutput',
    'UnsignedTransaction',
    'UtxoRef',

    # Selection
    'FeePolicy',
    'Reservation',
    'UtxoSelector',

    # Sighash
    'SighashEngine',

    # Builder
    'BuildResult',
    'ContractUnlock',
    'PayoutSpec',
    'SignatureRequest',
    'SlotPlan',
    'TransactionBuilder',
]
