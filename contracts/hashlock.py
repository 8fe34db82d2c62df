"""
Hash-Locked Escrow Covenant

The owner locks funds against a commitment digest. Whoever holds the secret
and salt lets the recipient claim the funds; if nobody reveals before the
lock height, the owner takes them back.

A reveal is checked locally first. A secret that does not open the
commitment raises CommitmentMismatchError and never reaches the network.
"""

from typing import Any, Dict

from crypto.commitments import Commitment, encode_secret, require_reveal
from crypto.keys import PublicKey
from transaction.builder import PayoutSpec

from .state_machine import (
    ContractFamily,
    ContractState,
    TransitionContext,
    TransitionOutcome,
    pubkey_script,
    transition,
)


class HashLock(ContractFamily):
    """Commit-reveal escrow with a refund time lock."""

    name = "HashLock"
    pre_check_version = 1
    constructor_params = ("owner", "recipient", "digest", "lock_until_height")
    settle_transition = "refund"

    def initial_state(self, constructor_args: Dict[str, Any], satoshis: int) -> Dict[str, Any]:
        self.validate_constructor(constructor_args)
        Commitment.from_hex(constructor_args["digest"])
        return {}

    @transition("reveal", params=("secret", "salt"))
    def reveal(self, state: ContractState, args: Dict[str, Any],
               ctx: TransitionContext) -> TransitionOutcome:
        action = "reveal"
        self._require("secret" in args and "salt" in args, action, "secret and salt are required")

        salt = args["salt"]
        if isinstance(salt, str):
            try:
                salt = bytes.fromhex(salt)
            except ValueError:
                self._require(False, action, "salt must be hex")
        secret = encode_secret(args["secret"])

        commitment = Commitment.from_hex(state.constructor_args["digest"])
        require_reveal(commitment, secret, salt)

        recipient = state.constructor_args["recipient"]
        return TransitionOutcome(
            action=action,
            next_public_data=None,
            payout=PayoutSpec(ctx.contract_satoshis, recipient_script=pubkey_script(recipient)),
            unlock_args={"secret": secret.hex(), "salt": salt.hex()},
            sighash_spec=self.sighash_spec,
            signer_public_key=PublicKey.from_hex(recipient).bytes,
            lock_time=ctx.lock_time,
            terminal_reason="revealed",
        )

    @transition("refund")
    def refund(self, state: ContractState, args: Dict[str, Any],
               ctx: TransitionContext) -> TransitionOutcome:
        action = "refund"
        lock_time = self._require_after(action, state.constructor_args["lock_until_height"], ctx)
        owner = state.constructor_args["owner"]

        return TransitionOutcome(
            action=action,
            next_public_data=None,
            payout=PayoutSpec(ctx.contract_satoshis, recipient_script=pubkey_script(owner)),
            sighash_spec=self.sighash_spec,
            signer_public_key=PublicKey.from_hex(owner).bytes,
            lock_time=lock_time,
            terminal_reason="refunded",
        )
