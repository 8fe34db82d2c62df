"""
Covenant Engine - Wallet and Signer Capabilities

The wallet boundary (payment UTXOs, signatures, relay), its HTTP bridge
client, and the two signer implementations behind SignerCapability.
"""

from .exceptions import (
    WalletError,
    WalletBridgeError,
    WalletConnectionError,
    WalletTimeoutError,
    SignerError,
    SignerRejectedError,
    SignerUnavailableError,
    SigningCancelledError,
)
from .capability import InputSigningInfo, WalletCapability, WalletSignature
from .bridge import WalletBridgeClient, WalletBridgeConfig
from .signer import DirectWalletSigner, SdkProviderSigner, SignerCapability, unwrap_plain

__all__ = [
    'WalletError',
    'WalletBridgeError',
    'WalletConnectionError',
    'WalletTimeoutError',
    'SignerError',
    'SignerRejectedError',
    'SignerUnavailableError',
    'SigningCancelledError',
    'InputSigningInfo',
    'WalletCapability',
    'WalletSignature',
    'WalletBridgeClient',
    'WalletBridgeConfig',
    'DirectWalletSigner',
    'SdkProviderSigner',
    'SignerCapability',
    'unwrap_plain',
]
