"""
Tests for Signer Capabilities

Tests the direct wallet signer and the SDK provider signer: binding of
returned signatures to the requested preimage, rejection of swapped sighash
flags and foreign keys, cancellation and timeouts.
"""

import threading
from dataclasses import dataclass
from unittest.mock import MagicMock

import pytest

from crypto.signatures import append_sighash_byte
from transaction.builder import SignatureRequest
from transaction.models import ANYONECANPAY_ALL, SIGHASH_ALL
from wallet.capability import InputSigningInfo, WalletSignature
from wallet.exceptions import (
    SignerRejectedError,
    SignerUnavailableError,
    SigningCancelledError,
    WalletBridgeError,
    WalletConnectionError,
)
from wallet.signer import DirectWalletSigner, SdkProviderSigner, unwrap_plain

from conftest import FakeWallet


@pytest.fixture
def deployment(builder, fee_policy):
    """Unsigned deployment transaction and its signature requests."""
    tx = builder.build_deployment(bytes.fromhex("0079aa7c876a0000000000"), 5000, fee_policy).unsigned_tx
    return tx, builder.signature_requests(tx)


class BlockingWallet(FakeWallet):
    """Wallet whose signing call blocks until released."""

    def __init__(self, keys, utxos):
        super().__init__(keys, utxos)
        self.release = threading.Event()

    def get_signatures(self, tx_hex, inputs):
        self.release.wait(5)
        return super().get_signatures(tx_hex, inputs)


@pytest.fixture
def blocking_wallet(keys, funding_utxos):
    wallet = BlockingWallet(list(keys.values()), funding_utxos)
    yield wallet
    wallet.release.set()


def mock_wallet(**kwargs):
    wallet = MagicMock()
    wallet.is_available.return_value = True
    for name, value in kwargs.items():
        setattr(wallet.get_signatures, name, value)
    return wallet


class TestDirectWalletSigner:
    """Test signing through the wallet's native interface."""

    def test_sign(self, wallet, builder, deployment):
        tx, requests = deployment
        signer = DirectWalletSigner(wallet)

        signatures = signer.sign(tx, requests)

        assert [s.input_index for s in signatures] == [r.input_index for r in requests]
        for signature, request in zip(signatures, requests):
            assert signature.sighash_spec == request.sighash_spec
            assert signature.preimage_digest == builder.sighash_engine.digest(
                tx, request.input_index, request.sighash_spec)
        assert signer.stats["signatures_returned"] == len(requests)

    def test_passes_explicit_sighash_type(self, wallet, deployment):
        tx, requests = deployment
        DirectWalletSigner(wallet).sign(tx, requests)

        infos = wallet.signing_calls[0]
        assert all(isinstance(info, InputSigningInfo) for info in infos)
        assert [info.sighash_type for info in infos] == [0x41] * len(requests)
        assert infos[0].satoshis == tx.inputs[0].utxo.satoshis

    def test_requested_key_is_passed(self, wallet, deployment, keys):
        tx, _ = deployment
        alice = keys["alice"].public_key().bytes
        signatures = DirectWalletSigner(wallet).sign(tx, [SignatureRequest(0, SIGHASH_ALL, alice)])

        assert signatures[0].public_key == alice
        assert wallet.signing_calls[0][0].public_key == alice.hex()

    def test_swapped_sighash_flag_rejected(self, wallet, deployment):
        tx, requests = deployment
        wallet.flag_override = 0x43
        signer = DirectWalletSigner(wallet)

        with pytest.raises(SignerRejectedError, match="sighash flag 0x43 returned, 0x41 requested"):
            signer.sign(tx, requests)
        assert signer.stats["rejections"] == 1

    def test_wallet_unavailable(self, wallet, deployment):
        tx, requests = deployment
        wallet.available = False

        with pytest.raises(SignerUnavailableError):
            DirectWalletSigner(wallet).sign(tx, requests)

    def test_no_wallet(self, deployment):
        tx, requests = deployment
        with pytest.raises(SignerUnavailableError, match="No wallet"):
            DirectWalletSigner(None).sign(tx, requests)

    def test_denial(self, deployment):
        tx, requests = deployment
        wallet = mock_wallet(side_effect=WalletBridgeError(4001, "User denied the request"))

        with pytest.raises(SignerRejectedError) as exc_info:
            DirectWalletSigner(wallet).sign(tx, requests)
        assert exc_info.value.reason == "User denied the request"

    def test_connection_lost(self, deployment):
        tx, requests = deployment
        wallet = mock_wallet(side_effect=WalletConnectionError(-1, "bridge unreachable"))

        with pytest.raises(SignerUnavailableError):
            DirectWalletSigner(wallet).sign(tx, requests)

    def test_wrong_signature_count(self, deployment):
        tx, requests = deployment
        wallet = mock_wallet(return_value=[])

        with pytest.raises(SignerRejectedError, match=f"expected {len(requests)} signatures, got 0"):
            DirectWalletSigner(wallet).sign(tx, requests)

    def test_unexpected_key(self, deployment, keys, builder):
        tx, _ = deployment
        request = SignatureRequest(0, SIGHASH_ALL, keys["alice"].public_key().bytes)
        digest = builder.sighash_engine.digest(tx, 0, SIGHASH_ALL)
        wallet = mock_wallet(return_value=[WalletSignature(
            0, append_sighash_byte(keys["bob"].sign(digest), 0x41), keys["bob"].public_key().bytes)])

        with pytest.raises(SignerRejectedError, match="unexpected key"):
            DirectWalletSigner(wallet).sign(tx, [request])

    def test_signature_over_other_preimage(self, deployment, keys, builder):
        tx, requests = deployment
        digest = builder.sighash_engine.digest(tx, 0, ANYONECANPAY_ALL)
        wallet = mock_wallet(return_value=[WalletSignature(
            0, append_sighash_byte(keys["funder"].sign(digest), 0x41), keys["funder"].public_key().bytes)])

        with pytest.raises(SignerRejectedError, match="does not match the requested preimage"):
            DirectWalletSigner(wallet).sign(tx, requests[:1])

    def test_plain_dict_records(self, wallet, deployment):
        tx, requests = deployment
        infos = [
            InputSigningInfo(r.input_index, tx.inputs[r.input_index].utxo.locking_script.hex(),
                             tx.inputs[r.input_index].utxo.satoshis, r.sighash_spec.sighash_type)
            for r in requests
        ]
        records = [s.to_dict() for s in wallet.get_signatures(tx.to_hex(), infos)]

        signatures = DirectWalletSigner(mock_wallet(return_value=records)).sign(tx, requests)
        assert [s.input_index for s in signatures] == [r.input_index for r in requests]

    @pytest.mark.parametrize("record", [
        {"inputIndex": 0, "sig": "zz", "publicKey": "02" * 33},
        {"inputIndex": 0},
        "3044deadbeef",
        None,
    ])
    def test_malformed_records_rejected(self, deployment, record):
        tx, requests = deployment
        wallet = mock_wallet(return_value=[record] * len(requests))

        with pytest.raises(SignerRejectedError, match="input 0"):
            DirectWalletSigner(wallet).sign(tx, requests)

    def test_empty_requests(self, wallet, deployment):
        tx, _ = deployment
        assert DirectWalletSigner(wallet).sign(tx, []) == []
        assert wallet.signing_calls == []


class TestCancellation:
    """Test cancellation and timeouts of blocking wallet calls."""

    def test_cancelled_before_request(self, wallet, deployment):
        tx, requests = deployment
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(SigningCancelledError):
            DirectWalletSigner(wallet).sign(tx, requests, cancel)
        assert wallet.signing_calls == []

    def test_cancelled_while_waiting(self, blocking_wallet, deployment):
        tx, requests = deployment
        cancel = threading.Event()
        signer = DirectWalletSigner(blocking_wallet)
        timer = threading.Timer(0.1, cancel.set)
        timer.start()

        try:
            with pytest.raises(SigningCancelledError):
                signer.sign(tx, requests, cancel)
        finally:
            timer.cancel()
        assert signer.stats["cancellations"] == 1

    def test_timeout(self, blocking_wallet, deployment):
        tx, requests = deployment
        signer = DirectWalletSigner(blocking_wallet, timeout=0.1)

        with pytest.raises(SignerRejectedError, match="no answer within"):
            signer.sign(tx, requests)

    def test_answer_within_timeout(self, wallet, deployment):
        tx, requests = deployment
        signatures = DirectWalletSigner(wallet, timeout=5).sign(tx, requests, threading.Event())
        assert len(signatures) == len(requests)


class FakeProvider:
    """SDK-style provider signing through a FakeWallet."""

    def __init__(self, wallet, force_type=None):
        self.wallet = wallet
        self.force_type = force_type
        self.payloads = []

    def sign_transaction(self, raw_hex, inputs):
        self.payloads.append(inputs)
        infos = [
            InputSigningInfo(
                input_index=item["inputIndex"],
                script_hex=item["scriptHex"],
                satoshis=item["satoshis"],
                sighash_type=self.force_type or item["sigHashType"],
                public_key=item["publicKey"],
            )
            for item in inputs
        ]
        return [s.to_dict() for s in self.wallet.get_signatures(raw_hex, infos)]


class Proxy:
    """Reactive-style wrapper exposing the wrapped object."""

    def __init__(self, wrapped):
        self.__wrapped__ = wrapped


class TestSdkProviderSigner:
    """Test signing through a third-party provider."""

    def test_sign(self, wallet, deployment):
        tx, requests = deployment
        provider = FakeProvider(wallet)

        signatures = SdkProviderSigner(provider).sign(tx, requests)

        assert len(signatures) == len(requests)
        assert provider.payloads[0][0]["sigHashType"] == 0x41

    def test_payload_is_plain_data(self, wallet, deployment):
        tx, requests = deployment
        provider = FakeProvider(wallet)
        SdkProviderSigner(provider).sign(tx, requests)

        payload = provider.payloads[0]
        assert isinstance(payload, list)
        assert all(type(item) is dict for item in payload)

    def test_provider_default_flag_rejected(self, wallet, deployment):
        tx, requests = deployment
        provider = FakeProvider(wallet, force_type=0xc1)

        with pytest.raises(SignerRejectedError, match="0xc1 returned, 0x41 requested"):
            SdkProviderSigner(provider).sign(tx, requests)

    def test_wrapped_response(self, wallet, deployment):
        tx, requests = deployment
        provider = FakeProvider(wallet)
        provider.sign_transaction = MagicMock(
            side_effect=lambda raw, inputs: Proxy(FakeProvider(wallet).sign_transaction(raw, inputs)))

        assert len(SdkProviderSigner(provider).sign(tx, requests)) == len(requests)

    def test_no_provider(self, deployment):
        tx, requests = deployment
        with pytest.raises(SignerUnavailableError):
            SdkProviderSigner(None).sign(tx, requests)
        with pytest.raises(SignerUnavailableError):
            SdkProviderSigner(object()).sign(tx, requests)

    def test_provider_error(self, deployment):
        tx, requests = deployment
        provider = MagicMock()
        provider.sign_transaction.side_effect = RuntimeError("popup closed")

        with pytest.raises(SignerRejectedError, match="provider error: popup closed"):
            SdkProviderSigner(provider).sign(tx, requests)

    def test_malformed_response(self, deployment):
        tx, requests = deployment
        provider = MagicMock()
        provider.sign_transaction.return_value = [{"inputIndex": 0}]

        with pytest.raises(SignerRejectedError, match="malformed"):
            SdkProviderSigner(provider).sign(tx, requests)


@dataclass
class Point:
    x: int
    y: int


class Record:
    def to_dict(self):
        return {"kind": "record", "values": (1, 2)}


class TestUnwrapPlain:
    """Test conversion of provider values into plain data."""

    def test_scalars(self):
        assert unwrap_plain(5) == 5
        assert unwrap_plain("a") == "a"
        assert unwrap_plain(None) is None

    def test_proxy_chain(self):
        assert unwrap_plain(Proxy(Proxy({"a": [1, 2]}))) == {"a": [1, 2]}

    def test_dataclass_and_to_dict(self):
        assert unwrap_plain([Point(1, 2), Record()]) == [
            {"x": 1, "y": 2},
            {"kind": "record", "values": [1, 2]},
        ]

    def test_rejects_opaque_objects(self):
        with pytest.raises(TypeError, match="Cannot convert object"):
            unwrap_plain({"a": object()})
