"""
UTXO Selection and Fee Policy

Chooses wallet-owned UTXOs that fund a covenant transaction's outputs and
fee, and holds them under a reservation until the transaction is either
broadcast (commit) or abandoned (release). Selection is largest-first, which
yields the fewest inputs for a given target.
"""

import logging
import math
from dataclasses import dataclass, replace
from threading import RLock
from typing import Callable, Iterable, List, Optional, Set, Tuple

from scripts.encoding import p2pkh_script_for_address

from .exceptions import InsufficientFundsError, TransactionError
from .models import UtxoRef


Outpoint = Tuple[str, int]

DEFAULT_DUST_THRESHOLD = 1


@dataclass(frozen=True)
class FeePolicy:
    """
    Fee rate and change handling.

    Attributes:
        satoshis_per_kb: Fee rate in satoshis per 1000 bytes
        change_address: Base58 address receiving change
        change_script: Explicit change locking script (overrides change_address)
        dust_threshold: Change below this value is dropped to the fee
    """
    satoshis_per_kb: int
    change_address: Optional[str] = None
    change_script: Optional[bytes] = None
    dust_threshold: int = DEFAULT_DUST_THRESHOLD

    def __post_init__(self):
        if self.satoshis_per_kb < 0:
            raise TransactionError(f"Negative fee rate: {self.satoshis_per_kb}")
        if self.dust_threshold < 0:
            raise TransactionError(f"Negative dust threshold: {self.dust_threshold}")
        if self.change_address is None and self.change_script is None:
            raise TransactionError("Fee policy needs a change address or change script")

    def fee_for_size(self, size: int) -> int:
        """Fee for a transaction of the given serialized size, rounded up."""
        return math.ceil(size * self.satoshis_per_kb / 1000)

    def change_locking_script(self) -> bytes:
        if self.change_script is not None:
            return self.change_script
        return p2pkh_script_for_address(self.change_address)

    def with_rate(self, satoshis_per_kb: int) -> 'FeePolicy':
        return replace(self, satoshis_per_kb=satoshis_per_kb)


class Reservation:
    """
    Fee UTXOs held for one in-progress transaction.

    Exactly one of release() or commit() takes effect; later calls are no-ops.
    Used as a context manager, an unsettled reservation is released on exit.
    """

    def __init__(self, selector: 'UtxoSelector', utxos: List[UtxoRef]):
        self._selector = selector
        self.utxos = list(utxos)
        self.settled = False

    @property
    def total(self) -> int:
        return sum(u.satoshis for u in self.utxos)

    @property
    def outpoints(self) -> List[Outpoint]:
        return [u.outpoint for u in self.utxos]

    def release(self) -> None:
        """Return the UTXOs to the pool after failure or cancellation."""
        if not self.settled:
            self._selector._release(self.outpoints, spent=False)
            self.settled = True

    def commit(self) -> None:
        """Mark the UTXOs spent after a successful broadcast."""
        if not self.settled:
            self._selector._release(self.outpoints, spent=True)
            self.settled = True

    def __enter__(self) -> 'Reservation':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False

    def __repr__(self) -> str:
        return f"Reservation(utxos={len(self.utxos)}, total={self.total}, settled={self.settled})"


class UtxoSelector:
    """
    Largest-first UTXO selector with reservations.

    Reservations protect against two builds in this process picking the same
    UTXO; they do not coordinate with other processes using the same wallet.
    """

    def __init__(self, utxo_provider: Callable[[], Iterable[UtxoRef]]):
        """
        Initialize selector.

        Args:
            utxo_provider: Callable returning the wallet's spendable UTXOs
        """
        self.utxo_provider = utxo_provider
        self.logger = logging.getLogger(__name__)
        self._lock = RLock()
        self._reserved: Set[Outpoint] = set()
        self._spent: Set[Outpoint] = set()

    def select(self, target: int, estimate_fee: Callable[[int], int],
               exclude: Iterable[Outpoint] = ()) -> Reservation:
        """
        Select and reserve UTXOs covering target plus fee.

        Args:
            target: Satoshis the fee inputs must contribute before fees
            estimate_fee: Fee for a transaction with the given number of fee inputs
            exclude: Outpoints never to select (e.g. the contract UTXO)

        Returns:
            Reservation over the chosen UTXOs

        Raises:
            InsufficientFundsError: available UTXOs cannot cover target + fee
        """
        excluded = set(exclude)

        with self._lock:
            candidates = [
                utxo for utxo in self.utxo_provider()
                if utxo.outpoint not in excluded
                and utxo.outpoint not in self._reserved
                and utxo.outpoint not in self._spent
            ]
            candidates.sort(key=lambda u: (-u.satoshis, u.txid, u.output_index))

            if target + estimate_fee(0) <= 0:
                self.logger.debug(f"Target {target} needs no fee inputs")
                return Reservation(self, [])

            chosen: List[UtxoRef] = []
            total = 0
            for utxo in candidates:
                chosen.append(utxo)
                total += utxo.satoshis
                if total >= target + estimate_fee(len(chosen)):
                    break
            else:
                available = sum(u.satoshis for u in candidates)
                required = target + estimate_fee(max(len(candidates), 1))
                raise InsufficientFundsError(required, available)

            self._reserved.update(u.outpoint for u in chosen)

        self.logger.debug(f"Selected {len(chosen)} UTXOs totalling {total} for target {target}")
        return Reservation(self, chosen)

    def _release(self, outpoints: List[Outpoint], spent: bool) -> None:
        with self._lock:
            self._reserved.difference_update(outpoints)
            if spent:
                self._spent.update(outpoints)

    def mark_spent(self, outpoints: Iterable[Outpoint]) -> None:
        """Record outpoints consumed outside this selector."""
        with self._lock:
            outpoints = list(outpoints)
            self._reserved.difference_update(outpoints)
            self._spent.update(outpoints)

    def restore(self, outpoints: Iterable[Outpoint]) -> None:
        """Make outpoints selectable again after the spend that used them was dropped."""
        with self._lock:
            self._spent.difference_update(outpoints)

    def is_reserved(self, outpoint: Outpoint) -> bool:
        with self._lock:
            return outpoint in self._reserved

    def is_spent(self, outpoint: Outpoint) -> bool:
        with self._lock:
            return outpoint in self._spent
