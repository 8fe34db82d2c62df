"""
Covenant Engine - Contract Workflows

End-to-end deploy/call/settle orchestration and persisted contract handles.
"""

from .exceptions import (
    WorkflowError,
    StepFailedError,
    DeploymentFailedError,
    TransitionFailedError,
    AcceptancePendingError,
    HandleStoreError,
    HandleNotFoundError,
)
from .handle import ContractHandle, PendingTransaction, UtxoRecord
from .store import HandleStore
from .orchestrator import ContractOrchestrator, OrchestratorConfig

__all__ = [
    'WorkflowError',
    'StepFailedError',
    'DeploymentFailedError',
    'TransitionFailedError',
    'AcceptancePendingError',
    'HandleStoreError',
    'HandleNotFoundError',
    'ContractHandle',
    'PendingTransaction',
    'UtxoRecord',
    'HandleStore',
    'ContractOrchestrator',
    'OrchestratorConfig',
]
