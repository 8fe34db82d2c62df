"""
Counter Covenant

The smallest stateful covenant: anyone may increment the counter, and the
contract carries its value forward unchanged. There is no settle transition.
"""

from typing import Any, Dict

from scripts.encoding import StateField, StateSchema
from transaction.builder import PayoutSpec

from .state_machine import (
    ContractFamily,
    ContractState,
    TransitionContext,
    TransitionOutcome,
    transition,
)


class Counter(ContractFamily):
    """Monotonic counter."""

    name = "Counter"
    pre_check_version = 1
    state_schema = StateSchema([StateField("count", "int")])

    def initial_state(self, constructor_args: Dict[str, Any], satoshis: int) -> Dict[str, Any]:
        return {"count": 0}

    @transition("increment")
    def increment(self, state: ContractState, args: Dict[str, Any],
                  ctx: TransitionContext) -> TransitionOutcome:
        return TransitionOutcome(
            action="increment",
            next_public_data={"count": state.public_data["count"] + 1},
            payout=PayoutSpec(ctx.contract_satoshis),
            sighash_spec=self.sighash_spec,
            lock_time=ctx.lock_time,
        )
