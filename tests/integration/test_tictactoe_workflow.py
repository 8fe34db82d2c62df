"""
Integration tests for a full tic-tac-toe game.

Deploys a game, plays it move by move through the orchestrator with every
contract spend checked by a push-tx verifier, and settles it.
"""

import pytest

from contracts.exceptions import IllegalTransitionError
from contracts.state_machine import ContractPhase, pubkey_script
from scripts.artifact import ContractArtifact
from transaction.models import ANYONECANPAY_SINGLE, NON_FINAL_SEQUENCE
from transaction.utils import compute_txid

from conftest import PushTxVerifier, decode_transaction


POT = 2000


@pytest.fixture
def verifier(tictactoe_artifact, keys):
    return PushTxVerifier(
        ContractArtifact.from_dict(tictactoe_artifact),
        ANYONECANPAY_SINGLE,
        [keys["alice"].public_key().bytes, keys["bob"].public_key().bytes],
    )


@pytest.fixture
def orchestrator(make_orchestrator, verifier):
    return make_orchestrator(verifier=verifier)


@pytest.fixture
def game(orchestrator, tictactoe_artifact, pubkeys):
    return orchestrator.deploy(
        "TicTacToe",
        tictactoe_artifact,
        {"alice": pubkeys["alice"], "bob": pubkeys["bob"], "timeout_height": 1000},
        POT,
    )


def move(orchestrator, handle, player, cell):
    return orchestrator.call(handle, "placeMove", {"player": player, "cell": cell})


class TestTicTacToeGame:
    """Play complete games."""

    def test_deploy(self, game, wallet, monitor):
        assert game.phase == ContractPhase.ACTIVE
        assert game.public_data == {"is_alice_turn": True, "board": [0] * 9}
        assert game.lineage == [compute_txid(bytes.fromhex(wallet.broadcasts[0]))]
        assert game.current_utxo.output_index == 0
        assert game.current_utxo.satoshis == POT
        assert monitor.waited == game.lineage

    def test_alice_wins(self, orchestrator, game, wallet, verifier, pubkeys):
        for player, cell in [("alice", 0), ("bob", 3), ("alice", 1), ("bob", 4), ("alice", 2)]:
            move(orchestrator, game, player, cell)

        assert game.phase == ContractPhase.TERMINAL
        assert game.terminal_reason == "alice won"
        assert game.current_utxo is None
        assert verifier.checked == 5

        final = decode_transaction(wallet.broadcasts[-1])
        assert final.outputs[0].satoshis == POT
        assert final.outputs[0].locking_script == pubkey_script(pubkeys["alice"])

    def test_lineage_chains_contract_outputs(self, orchestrator, game, wallet):
        for player, cell in [("alice", 4), ("bob", 0), ("alice", 8)]:
            move(orchestrator, game, player, cell)

        assert len(game.lineage) == 4
        assert game.lineage == [compute_txid(bytes.fromhex(raw)) for raw in wallet.broadcasts]
        for previous, raw in zip(game.lineage, wallet.broadcasts[1:]):
            tx = decode_transaction(raw)
            assert tx.inputs[0].utxo.outpoint == (previous, 0)
            assert tx.outputs[0].satoshis == POT

    def test_state_carried_in_locking_script(self, orchestrator, game):
        move(orchestrator, game, "alice", 4)
        move(orchestrator, game, "bob", 0)

        family = orchestrator.machine_for(game).family
        decoded = family.decode_state(game.contract_utxo().locking_script)
        assert decoded == {"is_alice_turn": True, "board": [2, 0, 0, 0, 1, 0, 0, 0, 0]}
        assert decoded == game.public_data

    def test_illegal_move_not_broadcast(self, orchestrator, game, wallet):
        move(orchestrator, game, "alice", 4)
        broadcasts = len(wallet.attempts)

        with pytest.raises(IllegalTransitionError, match="cell 4 is occupied"):
            move(orchestrator, game, "bob", 4)
        with pytest.raises(IllegalTransitionError, match="not alice's turn"):
            move(orchestrator, game, "alice", 0)

        assert len(wallet.attempts) == broadcasts
        assert game.in_flight is None
        move(orchestrator, game, "bob", 0)

    def test_terminal_contract_rejects_moves(self, orchestrator, game):
        for player, cell in [("alice", 0), ("bob", 3), ("alice", 1), ("bob", 4), ("alice", 2)]:
            move(orchestrator, game, player, cell)

        with pytest.raises(IllegalTransitionError, match="terminal"):
            move(orchestrator, game, "bob", 5)


class TestPersistence:
    """Handles survive a restart."""

    def test_store_round_trip(self, orchestrator, game, handle_store):
        move(orchestrator, game, "alice", 4)

        stored = handle_store.load(game.handle_id)
        assert stored.model_dump() == game.model_dump()

    def test_resume_with_fresh_orchestrator(self, orchestrator, make_orchestrator, verifier,
                                            game, handle_store, wallet):
        move(orchestrator, game, "alice", 4)
        move(orchestrator, game, "bob", 0)

        restored = handle_store.load(game.handle_id)
        resumed = make_orchestrator(verifier=verifier)
        resumed.call(restored, "placeMove", {"player": "alice", "cell": 8})

        assert restored.public_data["board"] == [2, 0, 0, 0, 1, 0, 0, 0, 1]
        assert restored.lineage[:3] == game.lineage
        assert len(restored.lineage) == 4
        tx = decode_transaction(wallet.broadcasts[-1])
        assert tx.inputs[0].utxo.outpoint == (game.lineage[-1], 0)


class TestClaimTimeout:
    """Timeout claims are time-locked."""

    def test_too_early(self, orchestrator, game, wallet):
        move(orchestrator, game, "alice", 4)
        broadcasts = len(wallet.attempts)

        with pytest.raises(IllegalTransitionError, match="not allowed before block 1000"):
            orchestrator.settle(game, args={"player": "alice"})
        assert len(wallet.attempts) == broadcasts
        assert game.phase == ContractPhase.ACTIVE

    def test_claim(self, orchestrator, game, wallet, monitor, pubkeys):
        move(orchestrator, game, "alice", 4)
        monitor.height = 1000

        txid = orchestrator.settle(game, args={"player": "alice"})

        assert txid == game.latest_txid
        assert game.phase == ContractPhase.TERMINAL
        assert game.terminal_reason == "alice claimed timeout"

        tx = decode_transaction(wallet.broadcasts[-1])
        assert tx.lock_time == 1000
        assert all(tx_input.sequence == NON_FINAL_SEQUENCE for tx_input in tx.inputs)
        assert tx.outputs[0].locking_script == pubkey_script(pubkeys["alice"])

    def test_settle_must_end_the_game(self, orchestrator, game):
        with pytest.raises(IllegalTransitionError, match="does not settle"):
            orchestrator.settle(game, "placeMove", {"player": "alice", "cell": 4})

        assert game.public_data["board"] == [0] * 9
        move(orchestrator, game, "alice", 4)
