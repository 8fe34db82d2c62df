"""
Integration tests for the auction covenant.

Each higher bid replaces the contract output and refunds the previous
bidder in the same transaction; the auctioneer closes after the deadline.
"""

import pytest

from contracts.exceptions import IllegalTransitionError
from contracts.state_machine import ContractPhase, pubkey_script
from scripts.artifact import ContractArtifact
from transaction.models import ANYONECANPAY_ALL

from conftest import PushTxVerifier, decode_transaction


RESERVE = 1000
DEADLINE = 200


@pytest.fixture
def verifier(auction_artifact, keys):
    return PushTxVerifier(ContractArtifact.from_dict(auction_artifact), ANYONECANPAY_ALL,
                          [keys["alice"].public_key().bytes])


@pytest.fixture
def orchestrator(make_orchestrator, verifier):
    return make_orchestrator(verifier=verifier)


@pytest.fixture
def auction(orchestrator, auction_artifact, pubkeys):
    return orchestrator.deploy("Auction", auction_artifact,
                               {"auctioneer": pubkeys["alice"], "deadline": DEADLINE}, RESERVE)


def bid(orchestrator, handle, bidder, amount):
    return orchestrator.call(handle, "raiseBid", {"bidder": bidder, "amount": amount})


class TestAuctionWorkflow:
    """Bid, outbid and close."""

    def test_first_bid_refunds_reserve(self, orchestrator, auction, wallet, verifier, pubkeys):
        bid(orchestrator, auction, pubkeys["bob"], 1500)

        tx = decode_transaction(wallet.broadcasts[-1])
        assert tx.outputs[0].satoshis == 1500
        assert tx.outputs[1].satoshis == RESERVE
        assert tx.outputs[1].locking_script == pubkey_script(pubkeys["alice"])
        assert auction.public_data == {"highest_bidder": pubkeys["bob"], "highest_bid": 1500}
        assert auction.current_utxo.satoshis == 1500
        assert verifier.checked == 1

    def test_outbid_refunds_previous_bidder(self, orchestrator, auction, wallet, pubkeys):
        bid(orchestrator, auction, pubkeys["bob"], 1500)
        bid(orchestrator, auction, pubkeys["carol"], 2000)

        tx = decode_transaction(wallet.broadcasts[-1])
        assert tx.inputs[0].utxo.outpoint == (auction.lineage[-2], 0)
        assert tx.outputs[0].satoshis == 2000
        assert tx.outputs[1].satoshis == 1500
        assert tx.outputs[1].locking_script == pubkey_script(pubkeys["bob"])

    def test_lower_bid_rejected(self, orchestrator, auction, wallet, pubkeys):
        bid(orchestrator, auction, pubkeys["bob"], 1500)
        attempts = len(wallet.attempts)

        with pytest.raises(IllegalTransitionError, match="not higher than current bid 1500"):
            bid(orchestrator, auction, pubkeys["carol"], 1200)

        assert len(wallet.attempts) == attempts
        assert auction.public_data["highest_bid"] == 1500

    def test_bid_after_deadline(self, orchestrator, auction, monitor, pubkeys):
        monitor.height = DEADLINE
        with pytest.raises(IllegalTransitionError, match="deadline 200 passed"):
            bid(orchestrator, auction, pubkeys["bob"], 1500)

    def test_close(self, orchestrator, auction, wallet, monitor, pubkeys):
        bid(orchestrator, auction, pubkeys["bob"], 1500)
        bid(orchestrator, auction, pubkeys["carol"], 2000)

        with pytest.raises(IllegalTransitionError, match="not allowed before block 200"):
            orchestrator.settle(auction)

        monitor.height = DEADLINE
        txid = orchestrator.settle(auction)

        assert txid == auction.latest_txid
        assert auction.phase == ContractPhase.TERMINAL
        assert auction.terminal_reason == f"sold to {pubkeys['carol']} for 2000"

        tx = decode_transaction(wallet.broadcasts[-1])
        assert tx.lock_time == DEADLINE
        assert tx.outputs[0].satoshis == 2000
        assert tx.outputs[0].locking_script == pubkey_script(pubkeys["alice"])
