"""
Workflow Exceptions

This module defines exceptions raised while deploying, advancing and settling
contracts end to end, and while persisting contract handles.
"""

from typing import Optional


class WorkflowError(Exception):
    """Base exception for orchestration errors."""
    pass


class StepFailedError(WorkflowError):
    """
    A workflow step could not be broadcast within the retry bound.

    Attributes:
        reason: Last rejection reason, verbatim from the network
        attempts: Number of build/broadcast attempts made
        code: Last rejection code, when the relay returned one
    """

    step = "step"

    def __init__(self, reason: str, attempts: int, code: Optional[int] = None):
        self.reason = reason
        self.attempts = attempts
        self.code = code
        super().__init__(f"{self.step} failed after {attempts} attempts: {reason}")


class DeploymentFailedError(StepFailedError):
    """Raised when the funding transaction of a contract never gets accepted."""
    step = "Deployment"


class TransitionFailedError(StepFailedError):
    """Raised when a call or settle transaction never gets accepted."""

    step = "Transition"

    def __init__(self, reason: str, attempts: int, code: Optional[int] = None,
                 action: Optional[str] = None):
        self.action = action
        super().__init__(reason, attempts, code)


class AcceptancePendingError(WorkflowError):
    """
    Raised when a broadcast step cannot be confirmed as accepted.

    The transaction may still be relayed or mined, so the handle keeps it as
    pending and refuses new transitions until it is reconciled.

    Attributes:
        handle: Handle holding the pending transaction
        txid: Pending transaction
        reason: Why acceptance is unknown
    """

    def __init__(self, handle, txid: str, reason: str):
        self.handle = handle
        self.txid = txid
        self.reason = reason
        action = handle.pending.action if handle.pending is not None else "step"
        super().__init__(f"{action} transaction {txid} awaiting acceptance: {reason}")


class HandleStoreError(WorkflowError):
    """Raised when a contract handle cannot be read or written."""
    pass


class HandleNotFoundError(HandleStoreError):
    """Raised when no handle is stored under the requested id."""

    def __init__(self, handle_id: str):
        self.handle_id = handle_id
        super().__init__(f"No contract handle {handle_id}")
