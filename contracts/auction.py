"""
Auction Covenant

The contract output always holds the current highest bid. A higher bid
replaces it and refunds the previous bidder in the same transaction
(output 1), so both outputs are covenant-verified and the contract input is
signed ANYONECANPAY|ALL. After the deadline the auctioneer closes the
auction and receives the winning bid.
"""

from typing import Any, Dict

from crypto.exceptions import InvalidKeyError
from crypto.keys import PublicKey
from scripts.encoding import StateField, StateSchema
from transaction.builder import PayoutSpec
from transaction.models import ANYONECANPAY_ALL, TxOutput

from .state_machine import (
    ContractFamily,
    ContractState,
    TransitionContext,
    TransitionOutcome,
    pubkey_script,
    transition,
)


class Auction(ContractFamily):
    """English auction with refund-on-outbid."""

    name = "Auction"
    pre_check_version = 1
    sighash_spec = ANYONECANPAY_ALL
    state_schema = StateSchema([
        StateField("highest_bidder", "bytes"),
        StateField("highest_bid", "int"),
    ])
    constructor_params = ("auctioneer", "deadline")
    settle_transition = "close"

    def initial_state(self, constructor_args: Dict[str, Any], satoshis: int) -> Dict[str, Any]:
        self.validate_constructor(constructor_args)
        # The deposit is the reserve price, refundable to the auctioneer
        return {"highest_bidder": constructor_args["auctioneer"], "highest_bid": satoshis}

    @transition("raiseBid", params=("bidder", "bid"))
    def raise_bid(self, state: ContractState, args: Dict[str, Any],
                  ctx: TransitionContext) -> TransitionOutcome:
        action = "raiseBid"
        bidder = args.get("bidder")
        amount = args.get("amount")
        highest_bid = state.public_data["highest_bid"]

        try:
            bidder_key = PublicKey.from_hex(bidder) if isinstance(bidder, str) else None
        except InvalidKeyError:
            bidder_key = None
        self._require(bidder_key is not None, action, f"invalid bidder public key {bidder!r}")
        self._require(isinstance(amount, int) and not isinstance(amount, bool), action,
                      f"bid must be an integer, got {amount!r}")
        self._require(amount > highest_bid, action,
                      f"bid {amount} is not higher than current bid {highest_bid}")
        self._require_before(action, state.constructor_args["deadline"], ctx)

        refund = TxOutput(highest_bid, pubkey_script(state.public_data["highest_bidder"]))
        return TransitionOutcome(
            action=action,
            next_public_data={"highest_bidder": bidder_key.hex, "highest_bid": amount},
            payout=PayoutSpec(amount, secondary_outputs=(refund,)),
            unlock_args={"bidder": bidder_key.hex, "bid": amount},
            sighash_spec=self.sighash_spec,
            signer_public_key=bidder_key.bytes,
            lock_time=ctx.lock_time,
        )

    @transition("close")
    def close(self, state: ContractState, args: Dict[str, Any],
              ctx: TransitionContext) -> TransitionOutcome:
        action = "close"
        lock_time = self._require_after(action, state.constructor_args["deadline"], ctx)
        auctioneer = state.constructor_args["auctioneer"]

        return TransitionOutcome(
            action=action,
            next_public_data=None,
            payout=PayoutSpec(ctx.contract_satoshis, recipient_script=pubkey_script(auctioneer)),
            sighash_spec=self.sighash_spec,
            signer_public_key=PublicKey.from_hex(auctioneer).bytes,
            lock_time=lock_time,
            terminal_reason=f"sold to {state.public_data['highest_bidder']} "
                            f"for {state.public_data['highest_bid']}",
        )
