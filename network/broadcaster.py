"""
Covenant Engine - Transaction Broadcasting

Relays finalized transactions through a node RPC connection or a wallet's
relay. Transport failures are retried with exponential backoff. Rejections
by the network are never retried here: they surface as
BroadcastRejectedError carrying the node's reason verbatim, and the caller
decides whether to rebuild (fresh fee inputs, higher fee rate).
"""

import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from transaction.utils import compute_txid
from wallet.capability import WalletCapability
from wallet.exceptions import WalletBridgeError, WalletConnectionError, WalletTimeoutError

from .rpc import BitcoinRPCClient, RPCConnectionError, RPCError, RPCTimeoutError


class RejectionKind(Enum):
    """Why the network refused a transaction."""
    DOUBLE_SPEND = "double_spend"
    FEE_TOO_LOW = "fee_too_low"
    POLICY = "policy"
    SCRIPT = "script"
    ALREADY_KNOWN = "already_known"
    OTHER = "other"


FEE_REJECTION_MARKERS = (
    "min relay fee not met",
    "mempool min fee not met",
    "insufficient priority",
    "insufficient fee",
    "fee too low",
    "feerate too low",
)

DOUBLE_SPEND_MARKERS = (
    "txn-mempool-conflict",
    "bad-txns-inputs-missingorspent",
    "missing inputs",
    "missing-inputs",
    "double spend",
    "txn-double-spend-detected",
)

ALREADY_KNOWN_MARKERS = (
    "txn-already-known",
    "txn-already-in-mempool",
    "transaction already in block chain",
)

SCRIPT_MARKERS = (
    "mandatory-script-verify-flag-failed",
    "non-mandatory-script-verify-flag",
    "script evaluated without error but finished with a false",
)


def classify_rejection(code: Optional[int], reason: str) -> RejectionKind:
    """Classify a node rejection from its code and message."""
    text = (reason or "").lower()
    if any(marker in text for marker in FEE_REJECTION_MARKERS):
        return RejectionKind.FEE_TOO_LOW
    if any(marker in text for marker in ALREADY_KNOWN_MARKERS) or code == -27:
        return RejectionKind.ALREADY_KNOWN
    if any(marker in text for marker in DOUBLE_SPEND_MARKERS) or code == -25:
        return RejectionKind.DOUBLE_SPEND
    if any(marker in text for marker in SCRIPT_MARKERS):
        return RejectionKind.SCRIPT
    if code == -26:
        return RejectionKind.POLICY
    return RejectionKind.OTHER


class BroadcastRejectedError(Exception):
    """Exception raised when the network refuses a transaction."""

    def __init__(self, reason: str, code: Optional[int] = None,
                 kind: Optional[RejectionKind] = None, txid: Optional[str] = None):
        self.reason = reason
        self.code = code
        self.kind = kind or classify_rejection(code, reason)
        self.txid = txid
        super().__init__(reason)

    @property
    def is_fee_related(self) -> bool:
        return self.kind == RejectionKind.FEE_TOO_LOW

    @property
    def is_double_spend(self) -> bool:
        return self.kind == RejectionKind.DOUBLE_SPEND


class BroadcastUnavailableError(Exception):
    """
    Exception raised when no relay could be reached after all attempts.

    Attributes:
        may_have_relayed: True when an attempt timed out after the request was
            sent, so the transaction may have reached the network
    """

    def __init__(self, message: str, may_have_relayed: bool = False):
        self.may_have_relayed = may_have_relayed
        super().__init__(message)


class BroadcastStatus(Enum):
    """Status of transaction broadcast attempts."""
    SUCCESS = "success"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class BroadcastAttempt:
    """Represents a single broadcast attempt."""
    timestamp: datetime
    success: bool
    error_code: Optional[int] = None
    error_message: Optional[str] = None
    response_time_ms: float = 0.0


@dataclass
class BroadcastConfig:
    """Configuration for transaction broadcasting."""
    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    def get_retry_delay(self, attempt: int) -> float:
        """Calculate retry delay for given attempt number."""
        if attempt <= 0:
            return 0.0

        delay = self.initial_delay_seconds * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay_seconds)

        if self.jitter_factor > 0:
            delay += delay * self.jitter_factor * random.random()

        return delay


@dataclass
class BroadcastResult:
    """Result of a broadcast operation."""
    txid: str
    status: BroadcastStatus
    attempts: List[BroadcastAttempt] = field(default_factory=list)
    final_error: Optional[str] = None

    def is_successful(self) -> bool:
        return self.status == BroadcastStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txid": self.txid,
            "status": self.status.value,
            "attempts": len(self.attempts),
            "final_error": self.final_error,
        }


class BroadcastBackend(ABC):
    """Something that can relay a raw transaction."""

    @abstractmethod
    def send(self, raw_hex: str) -> str:
        """
        Relay a transaction.

        Raises:
            BroadcastRejectedError: the network refused the transaction
            BroadcastUnavailableError: the relay could not be reached
        """
        pass

    @abstractmethod
    def describe(self) -> str:
        pass


class RPCBroadcastBackend(BroadcastBackend):
    """Relay through the node's sendrawtransaction."""

    def __init__(self, rpc_client: BitcoinRPCClient):
        self.rpc_client = rpc_client

    def send(self, raw_hex: str) -> str:
        try:
            return self.rpc_client.sendrawtransaction(raw_hex)
        except RPCTimeoutError as e:
            raise BroadcastUnavailableError(str(e), may_have_relayed=True)
        except RPCConnectionError as e:
            raise BroadcastUnavailableError(str(e))
        except RPCError as e:
            raise BroadcastRejectedError(e.message, code=e.code)

    def describe(self) -> str:
        return f"rpc://{self.rpc_client.config.host}:{self.rpc_client.config.port}"


class WalletBroadcastBackend(BroadcastBackend):
    """Relay through the connected wallet."""

    def __init__(self, wallet: WalletCapability):
        self.wallet = wallet

    def send(self, raw_hex: str) -> str:
        try:
            return self.wallet.broadcast(raw_hex)
        except WalletTimeoutError as e:
            raise BroadcastUnavailableError(str(e), may_have_relayed=True)
        except WalletConnectionError as e:
            raise BroadcastUnavailableError(str(e))
        except WalletBridgeError as e:
            raise BroadcastRejectedError(e.message, code=e.code)

    def describe(self) -> str:
        return "wallet"


class TransactionBroadcaster:
    """
    Synchronous broadcaster with transport retries.
    """

    def __init__(self, backend: BroadcastBackend, config: Optional[BroadcastConfig] = None,
                 sleep=time.sleep):
        """
        Initialize transaction broadcaster.

        Args:
            backend: Relay to use
            config: Broadcast configuration
            sleep: Sleep function used between attempts
        """
        self.backend = backend
        self.config = config or BroadcastConfig()
        self.logger = logging.getLogger(__name__)
        self._sleep = sleep

        self._stats = {
            "total_broadcasts": 0,
            "successful_broadcasts": 0,
            "rejected_broadcasts": 0,
            "failed_broadcasts": 0,
            "total_attempts": 0,
        }

    def broadcast(self, raw_hex: str) -> BroadcastResult:
        """
        Relay a transaction, retrying only transport failures.

        Args:
            raw_hex: Signed transaction hex

        Returns:
            Successful BroadcastResult

        Raises:
            BroadcastRejectedError: the network refused the transaction
            BroadcastUnavailableError: relay unreachable after all attempts
        """
        txid = compute_txid(bytes.fromhex(raw_hex))
        result = BroadcastResult(txid=txid, status=BroadcastStatus.FAILED)
        self._stats["total_broadcasts"] += 1

        last_error = None
        may_have_relayed = False
        for attempt_num in range(1, self.config.max_attempts + 1):
            if attempt_num > 1:
                delay = self.config.get_retry_delay(attempt_num - 1)
                self.logger.debug(f"Waiting {delay:.2f}s before retry {attempt_num}")
                self._sleep(delay)

            start = time.time()
            self._stats["total_attempts"] += 1
            try:
                returned = self.backend.send(raw_hex)
            except BroadcastRejectedError as e:
                e.txid = txid
                result.attempts.append(BroadcastAttempt(
                    timestamp=datetime.now(timezone.utc), success=False,
                    error_code=e.code, error_message=e.reason,
                    response_time_ms=(time.time() - start) * 1000,
                ))
                if e.kind == RejectionKind.ALREADY_KNOWN:
                    self.logger.info(f"Transaction {txid} already known to the network")
                    break
                self._stats["rejected_broadcasts"] += 1
                self.logger.error(f"Broadcast of {txid} rejected ({e.kind.value}): {e.reason}")
                raise
            except BroadcastUnavailableError as e:
                last_error = str(e)
                may_have_relayed = may_have_relayed or e.may_have_relayed
                result.attempts.append(BroadcastAttempt(
                    timestamp=datetime.now(timezone.utc), success=False,
                    error_message=last_error,
                    response_time_ms=(time.time() - start) * 1000,
                ))
                self.logger.warning(f"Broadcast attempt {attempt_num} failed for {txid}: {last_error}")
                continue

            if returned and returned != txid:
                self.logger.warning(f"Relay reported txid {returned}, computed {txid}")
            result.attempts.append(BroadcastAttempt(
                timestamp=datetime.now(timezone.utc), success=True,
                response_time_ms=(time.time() - start) * 1000,
            ))
            break
        else:
            self._stats["failed_broadcasts"] += 1
            result.final_error = last_error
            self.logger.error(f"Failed to broadcast {txid} after {self.config.max_attempts} attempts")
            raise BroadcastUnavailableError(
                f"Failed to broadcast {txid} via {self.backend.describe()}: {last_error}",
                may_have_relayed=may_have_relayed,
            )

        result.status = BroadcastStatus.SUCCESS
        self._stats["successful_broadcasts"] += 1
        self.logger.info(f"Broadcast {txid} via {self.backend.describe()}")
        return result

    def get_statistics(self) -> Dict[str, Any]:
        return dict(self._stats)
