"""
Wallet Bridge Client

JSON-over-HTTP client for a browser or desktop wallet exposing the
WalletCapability interface through a local bridge:

    GET  /status       -> {"ready": true}
    GET  /utxos        -> [{"txid", "outputIndex", "satoshis", "lockingScript"}]
    POST /signatures   {"txHex", "inputs": [...]} -> {"signatures": [...]}
    POST /broadcast    {"rawTx"} -> {"txid"}

Errors are reported as {"error": {"code", "message"}}.
"""

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from transaction.exceptions import MalformedTransactionError
from transaction.models import UtxoRef

from .capability import InputSigningInfo, WalletCapability, WalletSignature
from .exceptions import WalletBridgeError, WalletConnectionError, WalletTimeoutError


@dataclass
class WalletBridgeConfig:
    """Configuration for the wallet bridge connection."""
    url: str = "http://localhost:3100"
    api_token: Optional[str] = None
    timeout: int = 120
    max_retries: int = 3
    backoff_factor: float = 0.5
    ssl_verify: bool = True

    @classmethod
    def from_env(cls) -> 'WalletBridgeConfig':
        """Create bridge config from environment variables."""
        return cls(
            url=os.getenv("COVENANT_WALLET_URL", "http://localhost:3100"),
            api_token=os.getenv("COVENANT_WALLET_TOKEN"),
            timeout=int(os.getenv("COVENANT_WALLET_TIMEOUT", "120")),
            max_retries=int(os.getenv("COVENANT_WALLET_MAX_RETRIES", "3")),
            ssl_verify=os.getenv("COVENANT_WALLET_SSL_VERIFY", "true").lower() == "true",
        )


class WalletBridgeClient(WalletCapability):
    """
    WalletCapability over the HTTP wallet bridge.
    """

    def __init__(self, config: Optional[WalletBridgeConfig] = None):
        """
        Initialize wallet bridge client.

        Args:
            config: Bridge configuration (uses environment if None)
        """
        self.config = config or WalletBridgeConfig.from_env()
        self.logger = logging.getLogger(__name__)

        self.session = requests.Session()

        # Signing and broadcast are not idempotent, so only reads are retried
        retry_strategy = Retry(
            total=self.config.max_retries,
            backoff_factor=self.config.backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        if self.config.api_token:
            self.session.headers["Authorization"] = f"Bearer {self.config.api_token}"
        self.session.headers["User-Agent"] = "covenant-engine/1.0"

    def _url(self, path: str) -> str:
        return self.config.url.rstrip("/") + path

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        """
        Make a bridge request and return the decoded JSON body.

        Raises:
            WalletConnectionError: bridge unreachable
            WalletTimeoutError: no answer within the configured timeout
            WalletBridgeError: bridge answered with an error or invalid JSON
        """
        try:
            response = self.session.request(
                method,
                self._url(path),
                data=json.dumps(payload) if payload is not None else None,
                headers={"Content-Type": "application/json"},
                timeout=self.config.timeout,
                verify=self.config.ssl_verify,
            )
        except requests.exceptions.Timeout:
            raise WalletTimeoutError(-1, f"Wallet request timed out after {self.config.timeout}s")
        except requests.exceptions.ConnectionError as e:
            raise WalletConnectionError(-1, f"Wallet bridge unreachable: {e}")
        except requests.exceptions.RequestException as e:
            raise WalletBridgeError(-1, f"Wallet request failed: {e}")

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code != 200:
            if isinstance(body, dict) and isinstance(body.get("error"), dict):
                error = body["error"]
                raise WalletBridgeError(error.get("code", response.status_code),
                                        error.get("message", response.reason),
                                        error.get("data"))
            raise WalletBridgeError(response.status_code,
                                    f"HTTP {response.status_code}: {response.reason}")

        if body is None:
            raise WalletBridgeError(-32700, "Invalid JSON response from wallet bridge")
        return body

    def is_available(self) -> bool:
        try:
            return bool(self._request("GET", "/status").get("ready", False))
        except WalletBridgeError as e:
            self.logger.debug(f"Wallet bridge not available: {e}")
            return False

    def get_payment_utxos(self) -> List[UtxoRef]:
        body = self._request("GET", "/utxos")
        try:
            utxos = [UtxoRef.from_dict(item) for item in body]
        except (TypeError, MalformedTransactionError) as e:
            raise WalletBridgeError(-32602, f"Malformed UTXO list: {e}")
        self.logger.debug(f"Wallet reported {len(utxos)} payment UTXOs")
        return utxos

    def get_signatures(self, tx_hex: str,
                       inputs: List[InputSigningInfo]) -> List[WalletSignature]:
        body = self._request("POST", "/signatures", {
            "txHex": tx_hex,
            "inputs": [info.to_dict() for info in inputs],
        })
        try:
            return [WalletSignature.from_dict(item) for item in body["signatures"]]
        except (KeyError, TypeError, ValueError) as e:
            raise WalletBridgeError(-32602, f"Malformed signature response: {e}")

    def broadcast(self, raw_hex: str) -> str:
        body = self._request("POST", "/broadcast", {"rawTx": raw_hex})
        txid = body.get("txid") if isinstance(body, dict) else None
        if not txid:
            raise WalletBridgeError(-32602, "Broadcast response carries no txid")
        return txid

    def close(self):
        if self.session:
            self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
