"""
Tic-Tac-Toe Covenant

Two players each lock half the pot; the covenant enforces turn order and
cell occupancy and pays the pot out when the game ends:

- a completed line pays the winner,
- a full board with no line pays the deployer (alice) back,
- a player who stops moving can be timed out by the other once the
  timeout height is reached.
"""

from typing import Any, Dict, Optional

from crypto.keys import PublicKey
from scripts.encoding import StateField, StateSchema
from transaction.builder import PayoutSpec

from .state_machine import (
    ContractFamily,
    ContractState,
    TransitionContext,
    TransitionOutcome,
    pubkey_script,
    transition,
)


EMPTY = 0
ALICE = 1
BOB = 2

PLAYERS = {'alice': ALICE, 'bob': BOB}

WIN_LINES = (
    (0, 1, 2), (3, 4, 5), (6, 7, 8),
    (0, 3, 6), (1, 4, 7), (2, 5, 8),
    (0, 4, 8), (2, 4, 6),
)


def winner(board) -> Optional[int]:
    """Player holding a complete line, if any."""
    for a, b, c in WIN_LINES:
        if board[a] != EMPTY and board[a] == board[b] == board[c]:
            return board[a]
    return None


class TicTacToe(ContractFamily):
    """Turn-based game between alice and bob."""

    name = "TicTacToe"
    pre_check_version = 1
    state_schema = StateSchema([
        StateField("is_alice_turn", "bool"),
        StateField("board", "int[9]"),
    ])
    constructor_params = ("alice", "bob", "timeout_height")
    settle_transition = "claimTimeout"

    def initial_state(self, constructor_args: Dict[str, Any], satoshis: int) -> Dict[str, Any]:
        self.validate_constructor(constructor_args)
        return {"is_alice_turn": True, "board": [EMPTY] * 9}

    def _player(self, action: str, args: Dict[str, Any]) -> str:
        player = args.get("player")
        self._require(player in PLAYERS, action, f"unknown player {player!r}")
        return player

    @transition("placeMove", params=("n", "amount"))
    def place_move(self, state: ContractState, args: Dict[str, Any],
                   ctx: TransitionContext) -> TransitionOutcome:
        action = "placeMove"
        player = self._player(action, args)
        cell = args.get("cell")
        board = list(state.public_data["board"])
        alice_turn = state.public_data["is_alice_turn"]

        self._require(isinstance(cell, int) and not isinstance(cell, bool) and 0 <= cell < 9,
                      action, f"cell must be 0-8, got {cell!r}")
        self._require((player == "alice") == alice_turn, action, f"not {player}'s turn")
        self._require(board[cell] == EMPTY, action, f"cell {cell} is occupied")

        board[cell] = PLAYERS[player]
        signer = PublicKey.from_hex(state.constructor_args[player]).bytes
        unlock_args = {"n": cell, "amount": ctx.contract_satoshis}

        won = winner(board)
        if won is not None:
            return TransitionOutcome(
                action=action,
                next_public_data=None,
                payout=PayoutSpec(ctx.contract_satoshis,
                                  recipient_script=pubkey_script(state.constructor_args[player])),
                unlock_args=unlock_args,
                sighash_spec=self.sighash_spec,
                signer_public_key=signer,
                lock_time=ctx.lock_time,
                terminal_reason=f"{player} won",
            )

        if all(c != EMPTY for c in board):
            return TransitionOutcome(
                action=action,
                next_public_data=None,
                payout=PayoutSpec(ctx.contract_satoshis,
                                  recipient_script=pubkey_script(state.constructor_args["alice"])),
                unlock_args=unlock_args,
                sighash_spec=self.sighash_spec,
                signer_public_key=signer,
                lock_time=ctx.lock_time,
                terminal_reason="draw",
            )

        return TransitionOutcome(
            action=action,
            next_public_data={"is_alice_turn": not alice_turn, "board": board},
            payout=PayoutSpec(ctx.contract_satoshis),
            unlock_args=unlock_args,
            sighash_spec=self.sighash_spec,
            signer_public_key=signer,
            lock_time=ctx.lock_time,
        )

    @transition("claimTimeout")
    def claim_timeout(self, state: ContractState, args: Dict[str, Any],
                      ctx: TransitionContext) -> TransitionOutcome:
        action = "claimTimeout"
        player = self._player(action, args)
        alice_turn = state.public_data["is_alice_turn"]

        # Only the player waiting on the opponent may claim
        self._require((player == "alice") != alice_turn, action,
                      f"{player} is the one who has to move")
        lock_time = self._require_after(action, state.constructor_args["timeout_height"], ctx)

        return TransitionOutcome(
            action=action,
            next_public_data=None,
            payout=PayoutSpec(ctx.contract_satoshis,
                              recipient_script=pubkey_script(state.constructor_args[player])),
            sighash_spec=self.sighash_spec,
            signer_public_key=PublicKey.from_hex(state.constructor_args[player]).bytes,
            lock_time=lock_time,
            terminal_reason=f"{player} claimed timeout",
        )
