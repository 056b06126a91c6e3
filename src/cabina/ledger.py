"""
======================== ÍNDICE / INDEX ========================
1. Descripción general / Overview
2. Componentes principales / Main components
3. Notas de mantenimiento / Maintenance notes

======================== ESPAÑOL ========================
Archivo: `src/cabina/ledger.py`.
Acceso al contrato VotingRoom: manejadores de solo lectura y manejadores
ligados a un firmante. No guarda estado propio.

Componentes detectados:
  - VOTING_ROOM_ABI
  - password_digest
  - WalletSigner
  - Web3ReadHandle
  - Web3WriteHandle
  - LedgerClient

Notas:
- Construir un manejador no hace llamadas de red.

======================== ENGLISH ========================
File: `src/cabina/ledger.py`.
Access to the VotingRoom contract: read-only handles and signer-bound
handles. Holds no state of its own.

Detected components:
  - VOTING_ROOM_ABI
  - password_digest
  - WalletSigner
  - Web3ReadHandle
  - Web3WriteHandle
  - LedgerClient

Notes:
- Building a handle makes no network call.
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, Dict, List, Optional, Protocol

import structlog
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak, to_hex
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TimeExhausted

from .config import PRIVATE_KEY_ENV, CabinaSettings
from .errors import ConnectivityError, TransactionError

logger = structlog.get_logger(__name__)

ZERO_HASH = "0x" + "00" * 32


def _param(name: str, abi_type: str, components: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"internalType": abi_type, "name": name, "type": abi_type}
    if components is not None:
        entry["components"] = components
        entry["internalType"] = "struct VotingRoom.Room"
    return entry


def _function(
    name: str,
    inputs: List[Dict[str, Any]],
    outputs: Optional[List[Dict[str, Any]]] = None,
    mutability: str = "nonpayable",
) -> Dict[str, Any]:
    return {
        "inputs": inputs,
        "name": name,
        "outputs": outputs or [],
        "stateMutability": mutability,
        "type": "function",
    }


_ROOM_COMPONENTS = [
    _param("code", "string"),
    _param("title", "string"),
    _param("description", "string"),
    _param("creator", "address"),
    _param("maxParticipants", "uint256"),
    _param("participantCount", "uint256"),
    _param("endTime", "uint256"),
    _param("hasPassword", "bool"),
    _param("passwordHash", "bytes32"),
    _param("isActive", "bool"),
    _param("candidateCount", "uint256"),
]

_ROOM_HEADER = [
    _param("code", "string"),
    _param("title", "string"),
    _param("description", "string"),
    _param("maxParticipants", "uint256"),
    _param("endTime", "uint256"),
    _param("hasPassword", "bool"),
    _param("passwordHash", "bytes32"),
]

_CANDIDATE_ARRAYS = [
    _param("names", "string[]"),
    _param("descriptions", "string[]"),
    _param("imageUrls", "string[]"),
]

VOTING_ROOM_ABI = [
    _function("createRoom", _ROOM_HEADER),
    _function("createRoomWithCandidatesBatch", _ROOM_HEADER + _CANDIDATE_ARRAYS),
    _function(
        "addCandidate",
        [
            _param("roomCode", "string"),
            _param("name", "string"),
            _param("description", "string"),
            _param("imageUrl", "string"),
        ],
    ),
    _function("addCandidatesBatch", [_param("roomCode", "string")] + _CANDIDATE_ARRAYS),
    _function("joinRoom", [_param("roomCode", "string"), _param("password", "string")]),
    _function(
        "vote",
        [
            _param("roomCode", "string"),
            _param("candidateId", "uint256"),
            _param("encryptedVote", "bytes32"),
            _param("inputProof", "bytes"),
        ],
    ),
    _function(
        "getRoom",
        [_param("roomCode", "string")],
        [_param("", "tuple", _ROOM_COMPONENTS)],
        "view",
    ),
    _function(
        "getCandidate",
        [_param("roomCode", "string"), _param("index", "uint256")],
        [_param("name", "string"), _param("description", "string"), _param("imageUrl", "string")],
        "view",
    ),
    _function(
        "hasUserVoted",
        [_param("roomCode", "string"), _param("user", "address")],
        [_param("", "bool")],
        "view",
    ),
    _function(
        "isUserParticipant",
        [_param("roomCode", "string"), _param("user", "address")],
        [_param("", "bool")],
        "view",
    ),
    _function("getTotalVotes", [_param("roomCode", "string")], [_param("", "uint256")], "view"),
    _function("getActiveRooms", [], [_param("", "string[]")], "view"),
    _function(
        "getRoomsPaginated",
        [_param("offset", "uint256"), _param("limit", "uint256")],
        [_param("", "string[]")],
        "view",
    ),
]


def password_digest(password: str) -> str:
    """Digest keccak256 de la contraseña, calculado localmente.

    English:
        keccak256 of the UTF-8 password bytes as 0x-hex. Only this digest is
        ever compared or stored on the ledger.
    """
    return to_hex(keccak(text=password))


def normalize_digest(value: Any) -> str:
    """Render a bytes32 read from the contract as lower-case 0x-hex."""
    if isinstance(value, (bytes, bytearray)):
        return to_hex(bytes(value)).lower()
    text = str(value or "").lower()
    if text and not text.startswith("0x"):
        text = f"0x{text}"
    return text or ZERO_HASH


class Signer(Protocol):
    @property
    def address(self) -> str: ...

    def sign_message(self, message: str) -> str: ...

    def sign_transaction(self, transaction: Dict[str, Any]) -> Any: ...


class WalletSigner:
    """Firmante local respaldado por una cuenta de eth_account.

    English: Local signer backed by an ``eth_account`` account.
    """

    def __init__(self, account: Any) -> None:
        self._account = account

    @classmethod
    def from_key(cls, private_key: str) -> "WalletSigner":
        return cls(Account.from_key(private_key))

    @classmethod
    def from_env(cls) -> Optional["WalletSigner"]:
        private_key = os.getenv(PRIVATE_KEY_ENV, "").strip()
        if not private_key:
            return None
        return cls.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    def sign_message(self, message: str) -> str:
        signed = self._account.sign_message(encode_defunct(text=message))
        return to_hex(signed.signature)

    def sign_transaction(self, transaction: Dict[str, Any]) -> Any:
        return self._account.sign_transaction(transaction)


class ReadHandle(Protocol):
    async def call(self, function: str, *args: Any) -> Any: ...

    async def wait(self, tx_hash: str, confirmations: int = 1, timeout: float = 120.0) -> Dict[str, Any]: ...


class WriteHandle(Protocol):
    @property
    def address(self) -> str: ...

    async def send(self, function: str, *args: Any) -> str: ...


class Web3ReadHandle:
    """Manejador de lectura sobre ``AsyncWeb3``.

    English:
        Read handle over ``AsyncWeb3``. Receipt polling lives here because it
        needs no signer: sponsored transactions are awaited the same way.
    """

    def __init__(self, web3: AsyncWeb3, contract: Any, confirmation_poll_seconds: float = 1.0) -> None:
        self._web3 = web3
        self._contract = contract
        self._confirmation_poll_seconds = confirmation_poll_seconds

    async def call(self, function: str, *args: Any) -> Any:
        try:
            return await getattr(self._contract.functions, function)(*args).call()
        except (OSError, asyncio.TimeoutError) as exc:
            raise ConnectivityError(f"Ledger read failed: {exc}") from exc

    async def wait(self, tx_hash: str, confirmations: int = 1, timeout: float = 120.0) -> Dict[str, Any]:
        try:
            receipt = await self._web3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
            if confirmations > 1:
                target = receipt["blockNumber"] + confirmations - 1
                while await self._web3.eth.block_number < target:
                    await asyncio.sleep(self._confirmation_poll_seconds)
        except TimeExhausted as exc:
            raise TransactionError("Transaction was not confirmed in time.", tx_hash=tx_hash) from exc
        except (OSError, asyncio.TimeoutError) as exc:
            raise ConnectivityError(f"Receipt polling failed: {exc}") from exc
        return dict(receipt)


class Web3WriteHandle:
    """Manejador ligado a un firmante.

    English:
        Signer-bound handle. Transactions are built against the pending
        nonce, signed locally and sent raw. Contract reverts raised during
        gas estimation propagate unchanged for the caller to classify.
    """

    def __init__(self, web3: AsyncWeb3, contract: Any, signer: Signer, chain_id: int) -> None:
        self._web3 = web3
        self._contract = contract
        self._signer = signer
        self._chain_id = chain_id

    @property
    def address(self) -> str:
        return self._signer.address

    async def send(self, function: str, *args: Any) -> str:
        call = getattr(self._contract.functions, function)(*args)
        try:
            nonce = await self._web3.eth.get_transaction_count(self.address, "pending")
            tx = await call.build_transaction(
                {
                    "from": self.address,
                    "nonce": nonce,
                    "chainId": self._chain_id,
                }
            )
            signed = self._signer.sign_transaction(tx)
            raw_tx = getattr(signed, "raw_transaction", None) or signed.rawTransaction
            tx_hash = await self._web3.eth.send_raw_transaction(raw_tx)
        except (OSError, asyncio.TimeoutError) as exc:
            raise ConnectivityError(f"Ledger submission failed: {exc}") from exc
        return self._web3.to_hex(tx_hash)


class LedgerClient:
    """Produce manejadores de lectura y escritura del contrato.

    English:
        Produces read-only and signer-bound handles to the voting contract.
        ``read_handle`` works without a connected wallet; ``write_handle``
        raises :class:`ConnectivityError` when no signer is connected.
    """

    def __init__(
        self,
        settings: CabinaSettings,
        signer: Optional[Signer] = None,
        web3: Optional[AsyncWeb3] = None,
    ) -> None:
        self.settings = settings
        self.signer = signer
        self._web3 = web3

    @property
    def contract_address(self) -> str:
        return Web3.to_checksum_address(self.settings.contract_address)

    @property
    def wallet_address(self) -> Optional[str]:
        return self.signer.address if self.signer is not None else None

    @property
    def web3(self) -> AsyncWeb3:
        if self._web3 is None:
            self._web3 = AsyncWeb3(AsyncHTTPProvider(self.settings.rpc_url))
        return self._web3

    def connect_signer(self, signer: Optional[Signer]) -> None:
        self.signer = signer
        logger.info(
            "ledger_signer_changed",
            wallet=signer.address if signer else "none",
        )

    def _contract(self) -> Any:
        return self.web3.eth.contract(address=self.contract_address, abi=VOTING_ROOM_ABI)

    def read_handle(self) -> Web3ReadHandle:
        return Web3ReadHandle(self.web3, self._contract())

    def write_handle(self) -> Web3WriteHandle:
        if self.signer is None:
            raise ConnectivityError("Wallet not connected: a signer is required for transactions.")
        return Web3WriteHandle(self.web3, self._contract(), self.signer, self.settings.chain_id)

    async def is_connected(self) -> bool:
        try:
            return bool(await self.web3.is_connected())
        except (OSError, asyncio.TimeoutError):
            return False
