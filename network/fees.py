"""
Fee Rate Sources

Where the engine gets its fee rate (satoshis per kB) from: the node's fee
estimate, or a fixed configured rate. resolve_fee_rate() falls back to the
configured rate whenever the source has nothing usable.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from .rpc import BitcoinRPCClient, RPCError


logger = logging.getLogger(__name__)

SATOSHIS_PER_COIN = 100_000_000


class FeeRateSource(ABC):
    """Provides a fee rate in satoshis per kB."""

    @abstractmethod
    def get_rate(self) -> Optional[int]:
        """Current fee rate, or None when unavailable."""
        pass


class StaticFeeRateSource(FeeRateSource):
    """Fixed fee rate."""

    def __init__(self, satoshis_per_kb: int):
        self.satoshis_per_kb = satoshis_per_kb

    def get_rate(self) -> Optional[int]:
        return self.satoshis_per_kb


class RPCFeeRateSource(FeeRateSource):
    """Fee rate from the node's estimatefee call."""

    def __init__(self, rpc_client: BitcoinRPCClient, target_blocks: int = 6):
        self.rpc_client = rpc_client
        self.target_blocks = target_blocks

    def get_rate(self) -> Optional[int]:
        try:
            estimate = self.rpc_client.estimatefee(self.target_blocks)
        except RPCError as e:
            logger.warning(f"Fee estimation failed: {e}")
            return None

        if estimate is None or estimate <= 0:
            return None
        return int(round(estimate * SATOSHIS_PER_COIN))


def resolve_fee_rate(source: Optional[FeeRateSource], fallback: int,
                     minimum: int = 1) -> int:
    """
    Fee rate to build with.

    Args:
        source: Preferred rate source (may be None)
        fallback: Configured rate used when the source has no usable rate
        minimum: Floor applied to the result

    Returns:
        Fee rate in satoshis per kB
    """
    rate = source.get_rate() if source is not None else None
    if rate is None or rate <= 0:
        logger.debug(f"Using configured fee rate {fallback} sat/kB")
        rate = fallback
    return max(rate, minimum)
