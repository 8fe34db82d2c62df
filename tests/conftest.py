"""
Pytest configuration and fixtures for covenant engine tests.
"""

import struct
from typing import Dict, List, Optional

import pytest

from contracts.state_machine import CovenantVerifier
from crypto.keys import PrivateKey, PublicKey, hash256
from crypto.signatures import append_sighash_byte, split_sighash_byte
from network.broadcaster import BroadcastConfig, TransactionBroadcaster, WalletBroadcastBackend
from network.monitor import AcceptanceResult, AcceptanceTimeoutError, ConfirmationStatus
from scripts.artifact import ContractArtifact
from scripts.encoding import decode_script_number, is_p2pkh, p2pkh_script, parse_pushes
from transaction.builder import TransactionBuilder
from transaction.models import SighashSpec, TxInput, TxOutput, UnsignedTransaction, UtxoRef
from transaction.selector import FeePolicy, UtxoSelector
from transaction.sighash import SighashEngine
from transaction.utils import compute_txid, parse_compact_size, parse_outpoint
from wallet.capability import InputSigningInfo, WalletCapability, WalletSignature
from wallet.exceptions import WalletBridgeError
from wallet.signer import DirectWalletSigner
from workflow.orchestrator import ContractOrchestrator, OrchestratorConfig
from workflow.store import HandleStore


def fake_txid(label: str) -> str:
    return hash256(label.encode('utf-8')).hex()


def decode_transaction(tx_hex: str, prevouts: Optional[Dict[int, UtxoRef]] = None) -> UnsignedTransaction:
    """
    Parse a serialized transaction.

    Inputs listed in prevouts get their full UtxoRef; the others only carry
    their outpoint, which is all a preimage needs for inputs other than the
    one being signed.
    """
    prevouts = prevouts or {}
    data = bytes.fromhex(tx_hex)
    version = struct.unpack('<I', data[:4])[0]
    offset = 4

    count, offset = parse_compact_size(data, offset)
    inputs = []
    for index in range(count):
        txid, vout, offset = parse_outpoint(data, offset)
        script_length, offset = parse_compact_size(data, offset)
        offset += script_length
        sequence = struct.unpack('<I', data[offset:offset + 4])[0]
        offset += 4
        utxo = prevouts.get(index) or UtxoRef(txid, vout, 0, b'')
        inputs.append(TxInput(utxo, sequence))

    count, offset = parse_compact_size(data, offset)
    outputs = []
    for _ in range(count):
        satoshis = struct.unpack('<Q', data[offset:offset + 8])[0]
        offset += 8
        script_length, offset = parse_compact_size(data, offset)
        outputs.append(TxOutput(satoshis, data[offset:offset + script_length]))
        offset += script_length

    lock_time = struct.unpack('<I', data[offset:offset + 4])[0]
    return UnsignedTransaction(inputs=inputs, outputs=outputs, version=version, lock_time=lock_time)


class FakeWallet(WalletCapability):
    """
    In-memory wallet holding real keys.

    Signs BIP143 digests over whatever transaction it is handed, tracks its
    P2PKH UTXOs across broadcasts, and can be told to reject broadcasts, to
    fail at the transport level, or to sign with a different sighash flag
    than requested. Relaying a transaction it already relayed is answered
    the way a node answers it.
    """

    def __init__(self, keys: List[PrivateKey], utxos: List[UtxoRef]):
        self.keys = {key.public_key().bytes: key for key in keys}
        self.by_hash = {key.public_key().pubkey_hash: key for key in keys}
        self.utxos = list(utxos)
        self.available = True
        self.flag_override: Optional[int] = None
        self.rejections: List[tuple] = []
        self.failures: List[tuple] = []
        self.attempts: List[str] = []
        self.broadcasts: List[str] = []
        self.signing_calls: List[List[InputSigningInfo]] = []
        self.engine = SighashEngine()

    def reject_next(self, code: int, message: str, times: int = 1):
        self.rejections.extend([(code, message)] * times)

    def fail_next(self, error: Exception, times: int = 1, relayed: bool = False):
        """Raise error from the next broadcasts, after relaying them when relayed is set."""
        self.failures.extend([(error, relayed)] * times)

    def is_available(self) -> bool:
        return self.available

    def get_payment_utxos(self) -> List[UtxoRef]:
        return list(self.utxos)

    def _key_for(self, info: InputSigningInfo) -> PrivateKey:
        if info.public_key is not None:
            return self.keys[bytes.fromhex(info.public_key)]
        script = bytes.fromhex(info.script_hex)
        if not is_p2pkh(script):
            raise WalletBridgeError(4001, f"cannot tell which key signs input {info.input_index}")
        return self.by_hash[script[3:23]]

    def get_signatures(self, tx_hex: str,
                       inputs: List[InputSigningInfo]) -> List[WalletSignature]:
        self.signing_calls.append(list(inputs))
        prevouts = {}
        for info in inputs:
            template = decode_transaction(tx_hex).inputs[info.input_index].utxo
            prevouts[info.input_index] = UtxoRef(template.txid, template.output_index,
                                                 info.satoshis, bytes.fromhex(info.script_hex))
        tx = decode_transaction(tx_hex, prevouts)

        signatures = []
        for info in inputs:
            sighash_type = self.flag_override if self.flag_override is not None else info.sighash_type
            digest = self.engine.digest(tx, info.input_index, SighashSpec.from_sighash_type(sighash_type))
            key = self._key_for(info)
            signatures.append(WalletSignature(
                input_index=info.input_index,
                signature=append_sighash_byte(key.sign(digest), sighash_type),
                public_key=key.public_key().bytes,
            ))
        return signatures

    def broadcast(self, raw_hex: str) -> str:
        self.attempts.append(raw_hex)
        if self.failures:
            error, relayed = self.failures.pop(0)
            if relayed:
                self._relay(raw_hex)
            raise error
        if self.rejections:
            code, message = self.rejections.pop(0)
            raise WalletBridgeError(code, message)
        return self._relay(raw_hex)

    def _relay(self, raw_hex: str) -> str:
        txid = compute_txid(bytes.fromhex(raw_hex))
        if raw_hex in self.broadcasts:
            raise WalletBridgeError(-27, "txn-already-known")

        self.broadcasts.append(raw_hex)
        tx = decode_transaction(raw_hex)
        spent = {i.utxo.outpoint for i in tx.inputs}
        self.utxos = [u for u in self.utxos if u.outpoint not in spent]
        for index, output in enumerate(tx.outputs):
            if is_p2pkh(output.locking_script) and output.locking_script[3:23] in self.by_hash:
                self.utxos.append(UtxoRef(txid, index, output.satoshis, output.locking_script))
        return txid


class FixedMonitor:
    """Acceptance monitor stub with a fixed chain height."""

    def __init__(self, height: int = 100):
        self.height = height
        self.waited: List[str] = []
        self.never_accept = False

    def current_height(self) -> int:
        return self.height

    def wait_for_acceptance(self, txid: str, timeout: Optional[float] = None) -> AcceptanceResult:
        self.waited.append(txid)
        if self.never_accept:
            raise AcceptanceTimeoutError(txid, timeout or 0)
        return AcceptanceResult(txid, ConfirmationStatus.ACCEPTED, polls=1)


class PushTxVerifier(CovenantVerifier):
    """
    Checks what an OP_PUSH_TX covenant checks about its own input.

    The pushed preimage must be the preimage of this very input under the
    sighash type the covenant asserts, and a pushed signature must verify
    over it for one of the known keys.
    """

    def __init__(self, artifact: ContractArtifact, required: SighashSpec,
                 public_keys: List[bytes] = ()):
        self.artifact = artifact
        self.required = required
        self.public_keys = [PublicKey(k) for k in public_keys]
        self.engine = SighashEngine()
        self.checked = 0

    def verify(self, tx, input_index: int) -> bool:
        self.checked += 1
        pushes = parse_pushes(tx.unlocking_scripts[input_index])
        methods = self.artifact.public_methods
        if len(methods) > 1:
            selector = decode_script_number(pushes.pop())
            matches = [m for m in methods if self.artifact.method_index(m.name) == selector]
            if not matches:
                return False
            method = matches[0]
        else:
            method = methods[0]
        if len(pushes) != len(method.params):
            return False

        preimage = None
        script_signature = None
        for param, item in zip(method.params, pushes):
            if param.type == 'SigHashPreimage':
                preimage = item
            elif param.type == 'Sig':
                script_signature = item
        if preimage is None:
            return False

        if struct.unpack('<I', preimage[-4:])[0] != self.required.sighash_type:
            return False
        if preimage != self.engine.preimage(tx.unsigned, input_index, self.required):
            return False

        if script_signature is not None:
            der, sighash_type = split_sighash_byte(script_signature)
            if sighash_type != self.required.sighash_type:
                return False
            digest = hash256(preimage)
            if not any(key.verify(der, digest) for key in self.public_keys):
                return False
        return True


# Keys and funds

@pytest.fixture
def keys():
    """Deterministic test keys."""
    return {
        'alice': PrivateKey(b'\x01' * 32),
        'bob': PrivateKey(b'\x02' * 32),
        'carol': PrivateKey(b'\x03' * 32),
        'funder': PrivateKey(b'\x04' * 32),
    }


@pytest.fixture
def pubkeys(keys):
    return {name: key.public_key().hex for name, key in keys.items()}


@pytest.fixture
def funder_script(keys):
    return p2pkh_script(keys['funder'].public_key().pubkey_hash)


@pytest.fixture
def funding_utxos(funder_script):
    return [
        UtxoRef(fake_txid('funding-0'), 0, 50_000, funder_script),
        UtxoRef(fake_txid('funding-1'), 1, 30_000, funder_script),
        UtxoRef(fake_txid('funding-2'), 0, 20_000, funder_script),
    ]


@pytest.fixture
def wallet(keys, funding_utxos):
    return FakeWallet(list(keys.values()), funding_utxos)


@pytest.fixture
def fee_policy(funder_script):
    return FeePolicy(500, change_script=funder_script)


@pytest.fixture
def selector(wallet):
    return UtxoSelector(wallet.get_payment_utxos)


@pytest.fixture
def builder(selector):
    return TransactionBuilder(selector)


@pytest.fixture
def monitor():
    return FixedMonitor(height=100)


@pytest.fixture
def handle_store(tmp_path):
    return HandleStore(tmp_path / "handles")


@pytest.fixture
def make_orchestrator(wallet, builder, fee_policy, monitor, handle_store):
    """Factory wiring an orchestrator to the fake wallet."""
    def factory(verifier=None, config=None, store=handle_store):
        broadcaster = TransactionBroadcaster(
            WalletBroadcastBackend(wallet),
            BroadcastConfig(max_attempts=2, initial_delay_seconds=0),
            sleep=lambda seconds: None,
        )
        return ContractOrchestrator(
            builder=builder,
            signer=DirectWalletSigner(wallet),
            broadcaster=broadcaster,
            fee_policy=fee_policy,
            monitor=monitor,
            store=store,
            verifier=verifier,
            config=config or OrchestratorConfig(max_retries=3),
        )
    return factory


# Compiled artifacts

def _artifact(contract, template, constructor, functions):
    abi = [{'type': 'constructor', 'params': constructor}]
    for index, (name, params) in enumerate(functions):
        abi.append({'type': 'function', 'name': name, 'index': index, 'params': params})
    return {'contract': contract, 'hex': template, 'abi': abi, 'preCheckVersion': 1}


SIG = {'name': 'sig', 'type': 'Sig'}
PREIMAGE = {'name': 'txPreimage', 'type': 'SigHashPreimage'}


@pytest.fixture
def tictactoe_artifact():
    return _artifact(
        'TicTacToe',
        '<alice><bob><timeout_height>0079537a7c7e7eaa',
        [{'name': 'alice', 'type': 'PubKey'}, {'name': 'bob', 'type': 'PubKey'},
         {'name': 'timeout_height', 'type': 'int'}],
        [
            ('placeMove', [{'name': 'n', 'type': 'int'}, SIG,
                           {'name': 'amount', 'type': 'int'}, PREIMAGE]),
            ('claimTimeout', [SIG, PREIMAGE]),
        ],
    )


@pytest.fixture
def auction_artifact():
    return _artifact(
        'Auction',
        '<auctioneer><deadline>6e7c7eaa87',
        [{'name': 'auctioneer', 'type': 'PubKey'}, {'name': 'deadline', 'type': 'int'}],
        [
            ('raiseBid', [{'name': 'bidder', 'type': 'PubKey'},
                          {'name': 'bid', 'type': 'int'}, PREIMAGE]),
            ('close', [SIG, PREIMAGE]),
        ],
    )


@pytest.fixture
def counter_artifact():
    return _artifact('Counter', '0079aa7c87', [], [('increment', [PREIMAGE])])


@pytest.fixture
def hashlock_artifact():
    return _artifact(
        'HashLock',
        '<owner><recipient><digest><lock_until_height>aa7c87',
        [{'name': 'owner', 'type': 'PubKey'}, {'name': 'recipient', 'type': 'PubKey'},
         {'name': 'digest', 'type': 'Sha256'}, {'name': 'lock_until_height', 'type': 'int'}],
        [
            ('reveal', [{'name': 'secret', 'type': 'bytes'}, {'name': 'salt', 'type': 'bytes'},
                        SIG, PREIMAGE]),
            ('refund', [SIG, PREIMAGE]),
        ],
    )


# Test markers for different test categories
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "concurrency: mark test as a concurrency test"
    )


def pytest_collection_modifyitems(config, items):
    """Add markers based on test file paths and names."""
    for item in items:
        if "unit" in str(item.path):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.path):
            item.add_marker(pytest.mark.integration)

        if "concurrent" in item.name or "thread" in item.name:
            item.add_marker(pytest.mark.concurrency)
