"""
Signer Capability

Two interchangeable ways to obtain signatures for covenant transactions:

- DirectWalletSigner asks the wallet's native interface for signatures with
  an explicit sighash type per input.
- SdkProviderSigner delegates to a third-party SDK provider object. Such
  providers have been seen to replace the requested sighash flag with their
  own default, so every returned signature is checked against the request.

Both bind each returned signature to the digest recomputed locally, so a
Signature can only leave this module if it verifies over the exact preimage
the request described. A failure anywhere returns no signatures at all.
"""

import dataclasses
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, Callable, Dict, List, Optional, Sequence

from crypto.exceptions import InvalidKeyError, InvalidSignatureError
from crypto.keys import PublicKey
from crypto.signatures import split_sighash_byte
from transaction.builder import SignatureRequest
from transaction.exceptions import MalformedTransactionError
from transaction.models import Signature, UnsignedTransaction
from transaction.sighash import SighashEngine

from .capability import InputSigningInfo, WalletCapability, WalletSignature
from .exceptions import (
    SignerRejectedError,
    SignerUnavailableError,
    SigningCancelledError,
    WalletBridgeError,
    WalletConnectionError,
)


PLAIN_TYPES = (str, bytes, int, float, bool, type(None))
CANCEL_POLL_INTERVAL = 0.05


def unwrap_plain(value: Any, _depth: int = 0) -> Any:
    """
    Convert a value into plain data: dicts, lists and scalars.

    Reactive or proxy wrappers (objects exposing `__wrapped__`) are
    followed to the underlying object first. Dataclasses and objects with a
    to_dict() method are converted.

    Raises:
        TypeError: value contains something that is not plain data
    """
    if _depth > 32:
        raise TypeError("Value nests too deeply to be plain data")

    seen = 0
    while hasattr(value, '__wrapped__') and not isinstance(value, PLAIN_TYPES):
        value = value.__wrapped__
        seen += 1
        if seen > 16:
            raise TypeError("Proxy chain too long")

    if isinstance(value, PLAIN_TYPES):
        return value
    if isinstance(value, Mapping):
        return {str(k): unwrap_plain(v, _depth + 1) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [unwrap_plain(v, _depth + 1) for v in value]
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return unwrap_plain(dataclasses.asdict(value), _depth + 1)
    if callable(getattr(value, 'to_dict', None)):
        return unwrap_plain(value.to_dict(), _depth + 1)
    raise TypeError(f"Cannot convert {type(value).__name__} to plain data")


class SignerCapability(ABC):
    """
    Produces signatures for a transaction's signature requests.

    Contract: exactly one signature per request, in request order, each bound
    to the digest of its input under its requested sighash spec.
    """

    name = "signer"

    def __init__(self, sighash_engine: Optional[SighashEngine] = None,
                 timeout: Optional[float] = None):
        """
        Initialize signer.

        Args:
            sighash_engine: Engine used to recompute digests
            timeout: Seconds to wait for the wallet before rejecting
        """
        self.sighash_engine = sighash_engine or SighashEngine()
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

        self.stats = {
            "requests": 0,
            "signatures_returned": 0,
            "rejections": 0,
            "cancellations": 0,
        }

    def sign(self, tx: UnsignedTransaction, requests: Sequence[SignatureRequest],
             cancel_event: Optional[threading.Event] = None) -> List[Signature]:
        """
        Obtain signatures for every request.

        Args:
            tx: Transaction with its full output set fixed
            requests: Inputs to sign
            cancel_event: Set by the caller to abandon the request

        Returns:
            One Signature per request, same order

        Raises:
            SignerRejectedError: denial, timeout, wrong shape or bad signature
            SignerUnavailableError: no signing capability present
            SigningCancelledError: cancel_event was set
        """
        self.stats["requests"] += 1
        self._check_cancelled(cancel_event)
        if not requests:
            return []

        digests = {}
        for request in requests:
            try:
                digests[request.input_index] = self.sighash_engine.digest(
                    tx, request.input_index, request.sighash_spec
                )
            except MalformedTransactionError as e:
                raise SignerRejectedError(f"cannot compute digest: {e}")

        try:
            raw = self._run_cancellable(
                lambda: self._request_signatures(tx, list(requests)), cancel_event
            )
            self._check_cancelled(cancel_event)
            signatures = self._bind_all(raw, requests, digests)
        except SignerRejectedError:
            self.stats["rejections"] += 1
            raise
        except SigningCancelledError:
            self.stats["cancellations"] += 1
            raise

        self.stats["signatures_returned"] += len(signatures)
        self.logger.debug(f"{self.name} returned {len(signatures)} signatures")
        return signatures

    @abstractmethod
    def _request_signatures(self, tx: UnsignedTransaction,
                            requests: List[SignatureRequest]) -> List[WalletSignature]:
        """Ask the underlying capability for raw signatures."""
        pass

    def _check_cancelled(self, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise SigningCancelledError("Signing cancelled by caller")

    def _run_cancellable(self, call: Callable[[], Any],
                         cancel_event: Optional[threading.Event]) -> Any:
        """
        Run a blocking wallet call, honouring cancellation and timeout.

        Without a cancel event or timeout the call runs on the calling thread.
        """
        if cancel_event is None and self.timeout is None:
            return call()

        outcome: Dict[str, Any] = {}

        def worker():
            try:
                outcome["value"] = call()
            except BaseException as e:
                outcome["error"] = e

        thread = threading.Thread(target=worker, name=f"{self.name}-request", daemon=True)
        thread.start()

        deadline = time.monotonic() + self.timeout if self.timeout is not None else None
        while thread.is_alive():
            thread.join(CANCEL_POLL_INTERVAL)
            self._check_cancelled(cancel_event)
            if deadline is not None and time.monotonic() > deadline:
                raise SignerRejectedError(f"no answer within {self.timeout}s")

        if "error" in outcome:
            raise outcome["error"]
        return outcome["value"]

    def _bind_all(self, raw: List[WalletSignature], requests: Sequence[SignatureRequest],
                  digests: Dict[int, bytes]) -> List[Signature]:
        if not isinstance(raw, list) or len(raw) != len(requests):
            count = len(raw) if isinstance(raw, list) else "no"
            raise SignerRejectedError(f"expected {len(requests)} signatures, got {count}")

        signatures = []
        for request, returned in zip(requests, raw):
            returned = self._as_wallet_signature(returned, request.input_index)
            if returned.input_index != request.input_index:
                raise SignerRejectedError(
                    f"signature for input {returned.input_index} where input "
                    f"{request.input_index} was requested"
                )
            signatures.append(self._bind(request, returned, digests[request.input_index]))
        return signatures

    @staticmethod
    def _as_wallet_signature(returned: Any, index: int) -> WalletSignature:
        if isinstance(returned, WalletSignature):
            return returned
        if isinstance(returned, dict):
            try:
                return WalletSignature.from_dict(returned)
            except (TypeError, KeyError, ValueError) as e:
                raise SignerRejectedError(f"input {index}: malformed signature record: {e}")
        raise SignerRejectedError(
            f"input {index}: expected a signature, got {type(returned).__name__}"
        )

    def _bind(self, request: SignatureRequest, returned: WalletSignature,
              digest: bytes) -> Signature:
        index = request.input_index
        try:
            der, sighash_type = split_sighash_byte(returned.signature)
        except InvalidSignatureError as e:
            raise SignerRejectedError(f"input {index}: malformed signature: {e}")

        expected = request.sighash_spec.sighash_type
        if sighash_type != expected:
            raise SignerRejectedError(
                f"input {index}: sighash flag 0x{sighash_type:02x} returned, "
                f"0x{expected:02x} requested"
            )

        if request.public_key is not None and returned.public_key != request.public_key:
            raise SignerRejectedError(f"input {index}: signed by an unexpected key")

        try:
            public_key = PublicKey(returned.public_key)
        except InvalidKeyError as e:
            raise SignerRejectedError(f"input {index}: invalid public key: {e}")
        if not public_key.verify(der, digest):
            raise SignerRejectedError(f"input {index}: signature does not match the requested preimage")

        return Signature(
            input_index=index,
            der_signature=der,
            sighash_spec=request.sighash_spec,
            preimage_digest=digest,
            public_key=public_key.bytes,
        )

    def get_statistics(self) -> Dict[str, Any]:
        return {"name": self.name, **self.stats}


class DirectWalletSigner(SignerCapability):
    """
    Signs through the wallet's native interface with explicit sighash types.
    """

    name = "direct-wallet"

    def __init__(self, wallet: Optional[WalletCapability],
                 sighash_engine: Optional[SighashEngine] = None,
                 timeout: Optional[float] = None):
        super().__init__(sighash_engine, timeout)
        self.wallet = wallet

    def _request_signatures(self, tx: UnsignedTransaction,
                            requests: List[SignatureRequest]) -> List[WalletSignature]:
        if self.wallet is None or not self.wallet.is_available():
            raise SignerUnavailableError("No wallet connected")

        inputs = []
        for request in requests:
            utxo = tx.inputs[request.input_index].utxo
            inputs.append(InputSigningInfo(
                input_index=request.input_index,
                script_hex=utxo.locking_script.hex(),
                satoshis=utxo.satoshis,
                sighash_type=request.sighash_spec.sighash_type,
                public_key=request.public_key.hex() if request.public_key else None,
            ))

        try:
            return self.wallet.get_signatures(tx.to_hex(), inputs)
        except WalletConnectionError as e:
            raise SignerUnavailableError(str(e))
        except WalletBridgeError as e:
            raise SignerRejectedError(e.message)


class SdkProviderSigner(SignerCapability):
    """
    Signs through a third-party SDK provider.

    The provider must expose sign_transaction(raw_hex, inputs) returning a
    list of {"inputIndex", "sig", "publicKey"} records. Only plain data
    crosses the boundary in either direction.
    """

    name = "sdk-provider"

    def __init__(self, provider: Any, sighash_engine: Optional[SighashEngine] = None,
                 timeout: Optional[float] = None):
        super().__init__(sighash_engine, timeout)
        self.provider = provider

    def _request_signatures(self, tx: UnsignedTransaction,
                            requests: List[SignatureRequest]) -> List[WalletSignature]:
        provider = self.provider
        if provider is None or not callable(getattr(provider, "sign_transaction", None)):
            raise SignerUnavailableError("No SDK provider with sign_transaction is configured")

        payload = unwrap_plain([
            {
                "inputIndex": request.input_index,
                "scriptHex": tx.inputs[request.input_index].utxo.locking_script.hex(),
                "satoshis": tx.inputs[request.input_index].utxo.satoshis,
                "sigHashType": request.sighash_spec.sighash_type,
                "publicKey": request.public_key.hex() if request.public_key else None,
            }
            for request in requests
        ])

        try:
            response = provider.sign_transaction(tx.to_hex(), payload)
        except (SignerRejectedError, SignerUnavailableError, SigningCancelledError):
            raise
        except Exception as e:
            raise SignerRejectedError(f"provider error: {e}") from e

        try:
            records = unwrap_plain(response)
            return [WalletSignature.from_dict(record) for record in records]
        except (TypeError, KeyError, ValueError) as e:
            raise SignerRejectedError(f"provider returned malformed signatures: {e}")
