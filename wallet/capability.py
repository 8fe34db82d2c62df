"""
Wallet Capability Interface

The engine never holds keys. A wallet exposes spendable payment UTXOs,
signs inputs with an explicit per-input sighash type, and relays
transactions. This module defines that boundary and its wire records.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from transaction.models import UtxoRef


@dataclass
class InputSigningInfo:
    """
    What the wallet needs to sign one input.

    Attributes:
        input_index: Input to sign
        script_hex: Locking script of the prevout (the script code)
        satoshis: Value of the prevout
        sighash_type: Full one-byte sighash type, FORKID included
        public_key: Hex public key that must sign, when not implied by the script
    """
    input_index: int
    script_hex: str
    satoshis: int
    sighash_type: int
    public_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'inputIndex': self.input_index,
            'scriptHex': self.script_hex,
            'satoshis': self.satoshis,
            'sigHashType': self.sighash_type,
        }
        if self.public_key is not None:
            data['publicKey'] = self.public_key
        return data


@dataclass
class WalletSignature:
    """Signature returned by a wallet, with the sighash byte still attached."""
    input_index: int
    signature: bytes
    public_key: bytes

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WalletSignature':
        return cls(
            input_index=int(data['inputIndex']),
            signature=bytes.fromhex(data['sig']),
            public_key=bytes.fromhex(data['publicKey']),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'inputIndex': self.input_index,
            'sig': self.signature.hex(),
            'publicKey': self.public_key.hex(),
        }


class WalletCapability(ABC):
    """
    Native wallet interface used by DirectWalletSigner and the orchestrator.
    """

    @abstractmethod
    def get_payment_utxos(self) -> List[UtxoRef]:
        """Spendable P2PKH UTXOs owned by the wallet."""
        pass

    @abstractmethod
    def get_signatures(self, tx_hex: str,
                       inputs: List[InputSigningInfo]) -> List[WalletSignature]:
        """
        Sign the given inputs of a serialized transaction.

        Args:
            tx_hex: Unsigned transaction in network format
            inputs: Inputs to sign, each with its own sighash type

        Returns:
            One signature per requested input, in request order
        """
        pass

    @abstractmethod
    def broadcast(self, raw_hex: str) -> str:
        """Relay a signed transaction and return its txid."""
        pass

    def is_available(self) -> bool:
        return True
