"""
Contract Handle

Persisted record of one contract workflow: which family and artifact it was
deployed with, its current public data and phase, the live contract UTXO and
the txids of every transaction in its lineage. A handle serialized with
to_json() and read back with from_json() is equal to the original, so a
workflow can resume after a restart.
"""

import copy
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from contracts.state_machine import ContractPhase, ContractState
from scripts.artifact import ContractArtifact
from transaction.models import UtxoRef


_TXID = re.compile(r'^[a-fA-F0-9]{64}$')


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UtxoRecord(BaseModel):
    """Live contract output."""

    txid: str = Field(..., description="Transaction ID (hex)")
    output_index: int = Field(..., ge=0)
    satoshis: int = Field(..., ge=0)
    locking_script: str = Field(..., description="Locking script (hex)")

    @field_validator('txid')
    @classmethod
    def validate_txid(cls, v):
        if not _TXID.match(v):
            raise ValueError('Transaction ID must be 64-character hex string')
        return v.lower()

    @field_validator('locking_script')
    @classmethod
    def validate_locking_script(cls, v):
        try:
            bytes.fromhex(v)
        except ValueError:
            raise ValueError('Locking script must be hex')
        return v.lower()

    @classmethod
    def from_utxo(cls, utxo: UtxoRef) -> 'UtxoRecord':
        return cls(txid=utxo.txid, output_index=utxo.output_index,
                   satoshis=utxo.satoshis, locking_script=utxo.locking_script.hex())

    def to_utxo(self) -> UtxoRef:
        return UtxoRef(self.txid, self.output_index, self.satoshis,
                       bytes.fromhex(self.locking_script))


class PendingTransaction(BaseModel):
    """
    Broadcast transaction whose acceptance has not been established.

    Holds what the handle becomes once the transaction is accepted, and the
    fee outpoints it spends, so the step can be committed or dropped later.
    """

    action: str = Field(..., min_length=1)
    txid: str = Field(..., description="Transaction ID (hex)")
    raw_hex: str = Field(..., description="Signed transaction (hex)")
    public_data: Optional[Dict[str, Any]] = None
    terminal_reason: Optional[str] = None
    next_utxo: Optional[UtxoRecord] = None
    fee_outpoints: List[Tuple[str, int]] = Field(default_factory=list)
    reason: str = ""

    @field_validator('txid')
    @classmethod
    def validate_txid(cls, v):
        if not _TXID.match(v):
            raise ValueError('Transaction ID must be 64-character hex string')
        return v.lower()


class ContractHandle(BaseModel):
    """Serializable state of a deployed contract."""

    handle_id: str = Field(default_factory=lambda: uuid4().hex)
    family: str = Field(..., min_length=1)
    artifact: Dict[str, Any] = Field(..., description="Compiled artifact (JSON form)")
    constructor_args: Dict[str, Any] = Field(default_factory=dict)
    public_data: Dict[str, Any] = Field(default_factory=dict)
    phase: ContractPhase = Field(default=ContractPhase.DEPLOYED)
    terminal_reason: Optional[str] = None
    current_utxo: Optional[UtxoRecord] = None
    lineage: List[str] = Field(default_factory=list, description="Txids, oldest first")
    pre_check_version: int = Field(default=1, ge=1)
    in_flight: Optional[str] = Field(None, description="Action being broadcast, if any")
    pending: Optional[PendingTransaction] = Field(None, description="Broadcast awaiting acceptance")
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator('handle_id')
    @classmethod
    def validate_handle_id(cls, v):
        if not re.match(r'^[A-Za-z0-9_-]+$', v):
            raise ValueError('Handle ID may only contain letters, digits, "-" and "_"')
        return v

    @field_validator('lineage')
    @classmethod
    def validate_lineage(cls, v):
        for txid in v:
            if not _TXID.match(txid):
                raise ValueError(f'Invalid txid in lineage: {txid}')
        return [txid.lower() for txid in v]

    @property
    def latest_txid(self) -> Optional[str]:
        return self.lineage[-1] if self.lineage else None

    @property
    def is_terminal(self) -> bool:
        return self.phase == ContractPhase.TERMINAL

    def contract_artifact(self) -> ContractArtifact:
        return ContractArtifact.from_dict(self.artifact)

    def contract_state(self) -> ContractState:
        return ContractState(self.contract_artifact(), dict(self.constructor_args),
                             copy.deepcopy(self.public_data))

    def contract_utxo(self) -> Optional[UtxoRef]:
        return self.current_utxo.to_utxo() if self.current_utxo is not None else None

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)

    @classmethod
    def from_json(cls, data: str) -> 'ContractHandle':
        return cls.model_validate_json(data)
