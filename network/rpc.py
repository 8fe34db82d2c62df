"""
Covenant Engine - Node RPC Client

JSON-RPC client for a BSV node (bitcoind-compatible API) with basic or
cookie authentication, a pooled session with retries, and the handful of
calls the engine needs: relay, transaction lookup, mempool lookup, block
height and fee estimation.
"""

import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import requests
from requests.auth import HTTPBasicAuth
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry


class RPCError(Exception):
    """Base exception for RPC-related errors."""

    def __init__(self, code: int, message: str, data: Optional[Any] = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"RPC Error {code}: {message}")


class RPCConnectionError(RPCError):
    """Exception for RPC connection failures."""
    pass


class RPCAuthError(RPCError):
    """Exception for RPC authentication failures."""
    pass


class RPCTimeoutError(RPCError):
    """Exception for RPC timeout errors."""
    pass


# Node error codes the engine reacts to
RPC_VERIFY_ERROR = -25
RPC_VERIFY_REJECTED = -26
RPC_VERIFY_ALREADY_IN_CHAIN = -27
RPC_INVALID_ADDRESS_OR_KEY = -5


@dataclass
class RPCConfig:
    """Configuration for the node RPC connection."""
    host: str = "localhost"
    port: int = 18332
    username: Optional[str] = None
    password: Optional[str] = None
    cookie_file: Optional[str] = None
    timeout: int = 30
    max_retries: int = 3
    backoff_factor: float = 1.0
    use_ssl: bool = False

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not self.username and not self.cookie_file:
            self.cookie_file = self._find_cookie_file()

        if not self.username and not self.cookie_file:
            raise ValueError("Either username/password or cookie file must be provided")

    def _find_cookie_file(self) -> Optional[str]:
        """Try to find the node cookie file in standard locations."""
        possible_paths = [
            "~/.bitcoinsv/regtest/.cookie",
            "~/.bitcoinsv/testnet3/.cookie",
            "~/.bitcoinsv/.cookie",
            "~/.bitcoin/regtest/.cookie",
            "~/.bitcoin/.cookie",
        ]

        for path in possible_paths:
            expanded_path = Path(path).expanduser()
            if expanded_path.exists():
                return str(expanded_path)

        return None

    @classmethod
    def from_env(cls) -> 'RPCConfig':
        """Create RPC config from environment variables."""
        return cls(
            host=os.getenv("COVENANT_RPC_HOST", "localhost"),
            port=int(os.getenv("COVENANT_RPC_PORT", "18332")),
            username=os.getenv("COVENANT_RPC_USER"),
            password=os.getenv("COVENANT_RPC_PASSWORD"),
            cookie_file=os.getenv("COVENANT_RPC_COOKIE_FILE"),
            timeout=int(os.getenv("COVENANT_RPC_TIMEOUT", "30")),
            max_retries=int(os.getenv("COVENANT_RPC_MAX_RETRIES", "3")),
            use_ssl=os.getenv("COVENANT_RPC_SSL", "false").lower() == "true",
        )


class ConnectionPool:
    """Pooled HTTP session for RPC requests."""

    def __init__(self, config: RPCConfig):
        """Initialize connection pool."""
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.session = requests.Session()

        retry_strategy = Retry(
            total=config.max_retries,
            backoff_factor=config.backoff_factor,
            status_forcelist=[429, 502, 503, 504],
            allowed_methods=["POST"],
        )

        adapter = HTTPAdapter(max_retries=retry_strategy, pool_maxsize=10, pool_block=True)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        self._setup_auth()

        self._stats = {
            "total_requests": 0,
            "successful_requests": 0,
            "failed_requests": 0,
            "total_time": 0.0,
            "last_request_time": None,
        }
        self._stats_lock = threading.Lock()

    def _setup_auth(self):
        """Set up authentication for the session."""
        if self.config.username and self.config.password:
            self.session.auth = HTTPBasicAuth(self.config.username, self.config.password)
            self.logger.debug("Using basic authentication")

        elif self.config.cookie_file:
            try:
                with open(self.config.cookie_file, 'r') as f:
                    cookie_content = f.read().strip()
            except OSError as e:
                raise RPCAuthError(-1, f"Failed to read cookie file: {e}")

            if ':' not in cookie_content:
                raise RPCAuthError(-1, f"Invalid cookie file format: {self.config.cookie_file}")
            username, password = cookie_content.split(':', 1)
            self.session.auth = HTTPBasicAuth(username, password)
            self.logger.debug(f"Using cookie file authentication: {self.config.cookie_file}")

    def get_url(self) -> str:
        protocol = "https" if self.config.use_ssl else "http"
        return f"{protocol}://{self.config.host}:{self.config.port}/"

    def _record(self, success: bool, elapsed: Optional[float] = None):
        with self._stats_lock:
            if elapsed is not None:
                self._stats["total_requests"] += 1
                self._stats["total_time"] += elapsed
                self._stats["last_request_time"] = datetime.now(timezone.utc)
            key = "successful_requests" if success else "failed_requests"
            self._stats[key] += 1

    def request(self, method: str, params: List[Any]) -> Any:
        """
        Make an RPC request and return its result.

        Raises:
            RPCError: node returned an error (code and message verbatim)
            RPCAuthError, RPCConnectionError, RPCTimeoutError: transport failures
        """
        start_time = time.time()
        payload = {
            "jsonrpc": "1.0",
            "method": method,
            "params": params,
            "id": f"req_{int(start_time * 1000000)}",
        }

        try:
            response = self.session.post(
                self.get_url(),
                data=json.dumps(payload),
                headers={"Content-Type": "application/json", "User-Agent": "covenant-engine/1.0"},
                timeout=self.config.timeout,
            )
        except requests.exceptions.Timeout:
            self._record(False, time.time() - start_time)
            raise RPCTimeoutError(-1, f"Request timed out after {self.config.timeout}s")
        except requests.exceptions.ConnectionError as e:
            self._record(False, time.time() - start_time)
            raise RPCConnectionError(-1, f"Connection error: {e}")
        except requests.exceptions.RequestException as e:
            self._record(False, time.time() - start_time)
            raise RPCError(-1, f"Request failed: {e}")

        elapsed = time.time() - start_time

        if response.status_code == 401:
            self._record(False, elapsed)
            raise RPCAuthError(response.status_code, "Authentication failed")

        # bitcoind answers RPC errors with HTTP 500 and a JSON body
        try:
            response_data = response.json()
        except ValueError as e:
            self._record(False, elapsed)
            if response.status_code != 200:
                raise RPCConnectionError(response.status_code,
                                         f"HTTP {response.status_code}: {response.reason}")
            raise RPCError(-32700, f"Invalid JSON response: {e}")

        error = response_data.get("error")
        if error:
            self._record(False, elapsed)
            raise RPCError(error.get("code", -1), error.get("message", ""), error.get("data"))

        self._record(True, elapsed)
        return response_data.get("result")

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = self._stats.copy()

        total = stats["total_requests"]
        return {
            **stats,
            "average_request_time": stats["total_time"] / total if total else 0,
            "success_rate": stats["successful_requests"] / total if total else 0,
        }

    def close(self):
        if self.session:
            self.session.close()


class BitcoinRPCClient:
    """
    Node RPC client with the calls used by the covenant engine.
    """

    def __init__(self, config: Optional[RPCConfig] = None):
        """
        Initialize RPC client.

        Args:
            config: RPC configuration (uses environment if None)
        """
        self.config = config or RPCConfig.from_env()
        self.pool = ConnectionPool(self.config)
        self.logger = logging.getLogger(__name__)

    def _call(self, method: str, *params) -> Any:
        """
        Make an RPC call and return the result.

        Raises:
            RPCError: If RPC call fails
        """
        try:
            return self.pool.request(method, list(params))
        except RPCError as e:
            self.logger.debug(f"RPC call {method} failed: {e}")
            raise

    def getblockcount(self) -> int:
        """Get the current block height."""
        return self._call("getblockcount")

    def sendrawtransaction(self, hex_string: str) -> str:
        """Relay a raw transaction and return its txid."""
        return self._call("sendrawtransaction", hex_string)

    def getrawtransaction(self, txid: str, verbose: bool = False) -> Union[str, Dict[str, Any]]:
        """Get raw transaction data (verbose includes confirmations)."""
        return self._call("getrawtransaction", txid, 1 if verbose else 0)

    def getmempoolentry(self, txid: str) -> Dict[str, Any]:
        """Get mempool entry information."""
        return self._call("getmempoolentry", txid)

    def estimatefee(self, nblocks: int = 6) -> float:
        """Estimated fee rate in BSV per kB, or -1 when the node has no estimate."""
        return self._call("estimatefee", nblocks)

    def test_connection(self) -> bool:
        try:
            return isinstance(self.getblockcount(), int)
        except RPCError as e:
            self.logger.error(f"Connection test failed: {e}")
            return False

    def get_stats(self) -> Dict[str, Any]:
        return {
            "connection": self.pool.get_stats(),
            "client_config": {
                "host": self.config.host,
                "port": self.config.port,
                "timeout": self.config.timeout,
            },
        }

    def close(self):
        self.pool.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
