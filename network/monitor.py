"""
Covenant Engine - Transaction Acceptance Monitoring

Polls the node until a broadcast transaction is seen in the mempool or in a
block. A contract transition only becomes the authoritative state once its
transaction is accepted; this module answers that question.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .rpc import BitcoinRPCClient, RPCError, RPC_INVALID_ADDRESS_OR_KEY


class ConfirmationStatus(Enum):
    """Status of a monitored transaction."""
    PENDING = "pending"
    ACCEPTED = "accepted"    # in mempool
    CONFIRMED = "confirmed"  # in a block
    EXPIRED = "expired"


class AcceptanceTimeoutError(Exception):
    """Exception raised when a transaction is not seen before the deadline."""

    def __init__(self, txid: str, timeout: float):
        self.txid = txid
        self.timeout = timeout
        super().__init__(f"Transaction {txid} not accepted within {timeout}s")


@dataclass
class MonitorConfig:
    """Configuration for acceptance monitoring."""
    poll_interval_seconds: float = 2.0
    acceptance_timeout_seconds: float = 120.0
    required_confirmations: int = 0


@dataclass
class AcceptanceResult:
    """Outcome of waiting for a transaction."""
    txid: str
    status: ConfirmationStatus
    confirmations: int = 0
    block_hash: Optional[str] = None
    polls: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txid": self.txid,
            "status": self.status.value,
            "confirmations": self.confirmations,
            "block_hash": self.block_hash,
            "polls": self.polls,
        }


class ConfirmationMonitor:
    """
    Polling acceptance monitor backed by the node RPC.
    """

    def __init__(self, rpc_client: BitcoinRPCClient, config: Optional[MonitorConfig] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize monitor.

        Args:
            rpc_client: Node RPC client
            config: Monitor configuration
            sleep: Sleep function between polls
            clock: Monotonic clock
        """
        self.rpc_client = rpc_client
        self.config = config or MonitorConfig()
        self.logger = logging.getLogger(__name__)
        self._sleep = sleep
        self._clock = clock

    def check(self, txid: str) -> AcceptanceResult:
        """Single status lookup for a transaction."""
        try:
            self.rpc_client.getmempoolentry(txid)
            return AcceptanceResult(txid, ConfirmationStatus.ACCEPTED)
        except RPCError as e:
            if e.code != RPC_INVALID_ADDRESS_OR_KEY:
                raise

        try:
            info = self.rpc_client.getrawtransaction(txid, verbose=True)
        except RPCError as e:
            if e.code == RPC_INVALID_ADDRESS_OR_KEY:
                return AcceptanceResult(txid, ConfirmationStatus.PENDING)
            raise

        confirmations = int(info.get("confirmations", 0) or 0)
        status = ConfirmationStatus.CONFIRMED if confirmations > 0 else ConfirmationStatus.ACCEPTED
        return AcceptanceResult(txid, status, confirmations, info.get("blockhash"))

    def wait_for_acceptance(self, txid: str, timeout: Optional[float] = None) -> AcceptanceResult:
        """
        Block until the transaction is accepted (and confirmed, when required).

        Args:
            txid: Transaction to wait for
            timeout: Override for the configured acceptance timeout

        Returns:
            AcceptanceResult with ACCEPTED or CONFIRMED status

        Raises:
            AcceptanceTimeoutError: not seen before the deadline
        """
        timeout = self.config.acceptance_timeout_seconds if timeout is None else timeout
        deadline = self._clock() + timeout
        polls = 0

        while True:
            polls += 1
            result = self.check(txid)
            result.polls = polls

            if result.status != ConfirmationStatus.PENDING and \
                    result.confirmations >= self.config.required_confirmations:
                self.logger.info(f"Transaction {txid} {result.status.value} after {polls} polls")
                return result

            if self._clock() >= deadline:
                self.logger.error(f"Transaction {txid} not accepted within {timeout}s")
                raise AcceptanceTimeoutError(txid, timeout)

            self._sleep(self.config.poll_interval_seconds)

    def current_height(self) -> int:
        return self.rpc_client.getblockcount()
