"""
Covenant Engine - Network Access

Node RPC client, transaction relay, acceptance monitoring and fee-rate
sources.
"""

from .rpc import BitcoinRPCClient, RPCConfig, RPCError, RPCConnectionError, RPCAuthError, RPCTimeoutError
from .broadcaster import (
    BroadcastConfig,
    BroadcastRejectedError,
    BroadcastUnavailableError,
    BroadcastResult,
    RejectionKind,
    RPCBroadcastBackend,
    TransactionBroadcaster,
    WalletBroadcastBackend,
    classify_rejection,
)
from .monitor import AcceptanceTimeoutError, ConfirmationMonitor, ConfirmationStatus, MonitorConfig
from .fees import FeeRateSource, RPCFeeRateSource, StaticFeeRateSource, resolve_fee_rate

__all__ = [
    'BitcoinRPCClient',
    'RPCConfig',
    'RPCError',
    'RPCConnectionError',
    'RPCAuthError',
    'RPCTimeoutError',
    'BroadcastConfig',
    'BroadcastRejectedError',
    'BroadcastUnavailableError',
    'BroadcastResult',
    'RejectionKind',
    'RPCBroadcastBackend',
    'TransactionBroadcaster',
    'WalletBroadcastBackend',
    'classify_rejection',
    'AcceptanceTimeoutError',
    'ConfirmationMonitor',
    'ConfirmationStatus',
    'MonitorConfig',
    'FeeRateSource',
    'RPCFeeRateSource',
    'StaticFeeRateSource',
    'resolve_fee_rate',
]
