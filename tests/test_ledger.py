"""Pruebas del acceso al contrato.

Tests for ledger handles, signer and digest helpers.
"""

import asyncio
from types import SimpleNamespace

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak
from web3.exceptions import TimeExhausted

from cabina.config import CabinaSettings
from cabina.errors import ConnectivityError, TransactionError
from cabina.ledger import (
    VOTING_ROOM_ABI,
    ZERO_HASH,
    LedgerClient,
    Web3ReadHandle,
    Web3WriteHandle,
    WalletSigner,
    normalize_digest,
    password_digest,
)

KEY = "0x" + f"{7:064x}"


class _Call:
    def __init__(self, result=None, error=None, sink=None):
        self._result = result
        self._error = error
        self._sink = sink

    async def call(self):
        if self._error is not None:
            raise self._error
        return self._result

    async def build_transaction(self, params):
        self._sink.append(params)
        return {**params, "data": "0x00", "gas": 21_000}


class _Functions:
    def __init__(self, result=None, error=None, sink=None):
        self.invocations = []
        self._result = result
        self._error = error
        self._sink = sink if sink is not None else []

    def __getattr__(self, name):
        def build(*args):
            self.invocations.append((name, args))
            return _Call(self._result, self._error, self._sink)

        return build


class _Eth:
    def __init__(self, receipt=None, wait_error=None, block_number=0):
        self._receipt = receipt
        self._wait_error = wait_error
        self._block_number = block_number
        self.raw_sent = []

    async def wait_for_transaction_receipt(self, tx_hash, timeout):
        if self._wait_error is not None:
            raise self._wait_error
        return self._receipt

    @property
    async def block_number(self):
        self._block_number += 1
        return self._block_number

    async def get_transaction_count(self, address, block):
        return 4

    async def send_raw_transaction(self, raw):
        self.raw_sent.append(raw)
        return b"\x12" * 32


def _web3(eth):
    return SimpleNamespace(eth=eth, to_hex=lambda value: "0x" + value.hex())


def test_password_digest_is_keccak_of_utf8():
    assert password_digest("secreto") == "0x" + keccak(text="secreto").hex()
    assert password_digest("secreto") != password_digest("Secreto")


def test_normalize_digest_accepts_bytes_and_text():
    raw = keccak(text="pw")
    assert normalize_digest(raw) == "0x" + raw.hex()
    assert normalize_digest(raw.hex().upper()) == "0x" + raw.hex()
    assert normalize_digest(None) == ZERO_HASH


def test_wallet_signer_messages_recover_to_address():
    signer = WalletSigner.from_key(KEY)
    signature = signer.sign_message("hola")
    recovered = Account.recover_message(encode_defunct(text="hola"), signature=signature)
    assert recovered == signer.address


def test_wallet_signer_from_env(monkeypatch):
    monkeypatch.delenv("CABINA_PRIVATE_KEY", raising=False)
    assert WalletSigner.from_env() is None
    monkeypatch.setenv("CABINA_PRIVATE_KEY", KEY)
    assert WalletSigner.from_env().address == Account.from_key(KEY).address


def test_abi_declares_every_contract_function():
    names = {entry["name"] for entry in VOTING_ROOM_ABI}
    assert {
        "createRoom",
        "createRoomWithCandidatesBatch",
        "addCandidate",
        "addCandidatesBatch",
        "joinRoom",
        "vote",
        "getRoom",
        "getCandidate",
        "hasUserVoted",
        "isUserParticipant",
        "getTotalVotes",
        "getActiveRooms",
        "getRoomsPaginated",
    } <= names


def test_read_handle_maps_transport_errors():
    handle = Web3ReadHandle(_web3(_Eth()), SimpleNamespace(functions=_Functions(error=OSError("refused"))))
    with pytest.raises(ConnectivityError):
        asyncio.run(handle.call("getTotalVotes", "R1"))


def test_read_handle_returns_contract_values():
    functions = _Functions(result=3)
    handle = Web3ReadHandle(_web3(_Eth()), SimpleNamespace(functions=functions))
    assert asyncio.run(handle.call("getTotalVotes", "R1")) == 3
    assert functions.invocations == [("getTotalVotes", ("R1",))]


def test_read_handle_wait_maps_timeout_to_transaction_error():
    eth = _Eth(wait_error=TimeExhausted("slow"))
    handle = Web3ReadHandle(_web3(eth), SimpleNamespace(functions=_Functions()))
    with pytest.raises(TransactionError) as excinfo:
        asyncio.run(handle.wait("0xfeed", timeout=1))
    assert excinfo.value.tx_hash == "0xfeed"


def test_read_handle_wait_counts_confirmations():
    eth = _Eth(receipt={"status": 1, "blockNumber": 10}, block_number=9)
    handle = Web3ReadHandle(_web3(eth), SimpleNamespace(functions=_Functions()), confirmation_poll_seconds=0)
    receipt = asyncio.run(handle.wait("0xfeed", confirmations=3))
    assert receipt["status"] == 1
    assert eth._block_number >= 12


def test_write_handle_builds_signs_and_sends():
    sink = []
    eth = _Eth()
    signer = SimpleNamespace(
        address="0x000000000000000000000000000000000000dEaD",
        sign_transaction=lambda tx: SimpleNamespace(raw_transaction=b"signed"),
    )
    handle = Web3WriteHandle(_web3(eth), SimpleNamespace(functions=_Functions(sink=sink)), signer, 31337)
    tx_hash = asyncio.run(handle.send("joinRoom", "R1", ""))
    assert tx_hash == "0x" + "12" * 32
    assert sink == [{"from": signer.address, "nonce": 4, "chainId": 31337}]
    assert eth.raw_sent == [b"signed"]


def test_ledger_client_requires_signer_for_writes():
    client = LedgerClient(CabinaSettings(contract_address="0x5fbdb2315678afecb367f032d93f642f64180aa3"))
    assert client.wallet_address is None
    assert client.contract_address == "0x5FbDB2315678afecb367f032d93F642f64180aa3"
    with pytest.raises(ConnectivityError):
        client.write_handle()
    client.connect_signer(WalletSigner.from_key(KEY))
    assert client.wallet_address == Account.from_key(KEY).address
