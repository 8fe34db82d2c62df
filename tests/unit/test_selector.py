"""
Tests for UTXO Selection

Tests fee policy arithmetic, largest-first selection and the reservation
lifecycle, including concurrent selection against one wallet.
"""

import threading

import pytest

from transaction.exceptions import InsufficientFundsError, TransactionError
from transaction.models import UtxoRef
from transaction.selector import FeePolicy, UtxoSelector

from conftest import fake_txid


P2PKH = bytes.fromhex("76a914" + "11" * 20 + "88ac")


def _utxo(label, satoshis, vout=0):
    return UtxoRef(fake_txid(label), vout, satoshis, P2PKH)


def flat_fee(amount):
    return lambda n_inputs: amount


class TestFeePolicy:
    """Test fee policy validation and arithmetic."""

    def test_fee_rounds_up(self):
        policy = FeePolicy(500, change_script=P2PKH)
        assert policy.fee_for_size(200) == 100
        assert policy.fee_for_size(201) == 101

    def test_zero_rate(self):
        assert FeePolicy(0, change_script=P2PKH).fee_for_size(1000) == 0

    def test_negative_rate(self):
        with pytest.raises(TransactionError, match="Negative fee rate"):
            FeePolicy(-1, change_script=P2PKH)

    def test_change_destination_required(self):
        with pytest.raises(TransactionError, match="change address or change script"):
            FeePolicy(500)

    def test_change_from_address(self):
        policy = FeePolicy(500, change_address="1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH")
        script = policy.change_locking_script()
        assert script[3:23].hex() == "751e76e8199196d454941c45d1b3a323f1433bd6"

    def test_explicit_script_wins(self):
        policy = FeePolicy(500, change_address="1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH",
                           change_script=P2PKH)
        assert policy.change_locking_script() == P2PKH

    def test_with_rate(self):
        policy = FeePolicy(500, change_script=P2PKH, dust_threshold=10)
        bumped = policy.with_rate(750)

        assert bumped.satoshis_per_kb == 750
        assert bumped.dust_threshold == 10
        assert policy.satoshis_per_kb == 500


class TestSelection:
    """Test largest-first selection."""

    @pytest.fixture
    def utxos(self):
        return [_utxo("a", 1000), _utxo("b", 5000), _utxo("c", 3000)]

    @pytest.fixture
    def selector(self, utxos):
        return UtxoSelector(lambda: utxos)

    def test_largest_first(self, selector):
        reservation = selector.select(4000, flat_fee(100))
        assert [u.satoshis for u in reservation.utxos] == [5000]

    def test_adds_inputs_until_covered(self, selector):
        reservation = selector.select(7000, flat_fee(100))
        assert [u.satoshis for u in reservation.utxos] == [5000, 3000]
        assert reservation.total == 8000

    def test_fee_grows_with_inputs(self, selector):
        """A per-input fee can require one more input than the target alone."""
        reservation = selector.select(7500, lambda n: 300 * n)
        assert len(reservation.utxos) == 3

    def test_insufficient_funds(self, selector):
        with pytest.raises(InsufficientFundsError) as exc_info:
            selector.select(9000, flat_fee(500))

        assert exc_info.value.required == 9500
        assert exc_info.value.available == 9000

    def test_insufficient_funds_empty_wallet(self):
        selector = UtxoSelector(lambda: [])
        with pytest.raises(InsufficientFundsError) as exc_info:
            selector.select(1, lambda n: 10 * n)

        assert exc_info.value.required == 11
        assert exc_info.value.available == 0

    def test_covered_target_needs_no_inputs(self):
        """A target the contract input already covers selects nothing."""
        selector = UtxoSelector(lambda: [])
        reservation = selector.select(-500, lambda n: 100 + 50 * n)

        assert reservation.utxos == []
        assert reservation.total == 0

    def test_covered_target_leaves_utxos_free(self, selector, utxos):
        reservation = selector.select(-1000, flat_fee(200))

        assert reservation.utxos == []
        assert not any(selector.is_reserved(u.outpoint) for u in utxos)

    def test_exclude(self, selector):
        reservation = selector.select(100, flat_fee(0), exclude=[(fake_txid("b"), 0)])
        assert reservation.utxos[0].satoshis == 3000


class TestReservation:
    """Test reservation lifecycle."""

    @pytest.fixture
    def utxos(self):
        return [_utxo("a", 1000), _utxo("b", 5000)]

    @pytest.fixture
    def selector(self, utxos):
        return UtxoSelector(lambda: utxos)

    def test_reserved_utxos_not_selected_again(self, selector):
        first = selector.select(100, flat_fee(0))
        second = selector.select(100, flat_fee(0))

        assert first.outpoints != second.outpoints
        with pytest.raises(InsufficientFundsError):
            selector.select(100, flat_fee(0))

    def test_release_returns_utxos(self, selector):
        reservation = selector.select(100, flat_fee(0))
        outpoint = reservation.outpoints[0]
        assert selector.is_reserved(outpoint)

        reservation.release()

        assert not selector.is_reserved(outpoint)
        assert selector.select(100, flat_fee(0)).outpoints == [outpoint]

    def test_commit_marks_spent(self, selector):
        reservation = selector.select(100, flat_fee(0))
        outpoint = reservation.outpoints[0]

        reservation.commit()

        assert selector.is_spent(outpoint)
        assert not selector.is_reserved(outpoint)
        assert selector.select(100, flat_fee(0)).outpoints != [outpoint]

    def test_settles_once(self, selector):
        reservation = selector.select(100, flat_fee(0))
        outpoint = reservation.outpoints[0]

        reservation.commit()
        reservation.release()

        assert reservation.settled
        assert selector.is_spent(outpoint)

    def test_release_after_release_is_noop(self, selector):
        reservation = selector.select(100, flat_fee(0))
        reservation.release()
        reservation.release()
        reservation.commit()

        assert not selector.is_spent(reservation.outpoints[0])

    def test_context_manager_releases(self, selector):
        with selector.select(100, flat_fee(0)) as reservation:
            outpoint = reservation.outpoints[0]
            assert selector.is_reserved(outpoint)

        assert not selector.is_reserved(outpoint)
        assert not selector.is_spent(outpoint)

    def test_context_manager_keeps_commit(self, selector):
        with selector.select(100, flat_fee(0)) as reservation:
            reservation.commit()

        assert selector.is_spent(reservation.outpoints[0])

    def test_context_manager_releases_on_error(self, selector):
        with pytest.raises(RuntimeError):
            with selector.select(100, flat_fee(0)) as reservation:
                raise RuntimeError("build failed")

        assert not selector.is_reserved(reservation.outpoints[0])

    def test_mark_spent(self, selector):
        outpoint = (fake_txid("b"), 0)
        selector.mark_spent([outpoint])

        assert selector.is_spent(outpoint)
        assert selector.select(100, flat_fee(0)).utxos[0].satoshis == 1000

    def test_restore(self, selector):
        with selector.select(100, flat_fee(0)) as reservation:
            reservation.commit()
        outpoint = reservation.outpoints[0]

        selector.restore([outpoint])

        assert not selector.is_spent(outpoint)
        assert selector.select(100, flat_fee(0)).outpoints == [outpoint]


class TestConcurrentSelection:
    """Test that concurrent builds never share a UTXO."""

    def test_concurrent_selection_is_disjoint(self):
        utxos = [_utxo(f"u{i}", 1000 + i) for i in range(40)]
        selector = UtxoSelector(lambda: utxos)
        reservations = []
        failures = []
        lock = threading.Lock()
        start = threading.Barrier(8)

        def worker():
            start.wait()
            for _ in range(10):
                try:
                    reservation = selector.select(1500, flat_fee(10))
                except InsufficientFundsError:
                    with lock:
                        failures.append(1)
                    continue
                with lock:
                    reservations.append(reservation)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        selected = [o for r in reservations for o in r.outpoints]
        assert len(selected) == len(set(selected))
        assert len(reservations) == 20
        assert len(failures) == 60
