"""Dobles de prueba: ledger en memoria, cifrador y reloj.

Test doubles: in-memory ledger with the voting contract's rules, a fake
encryptor and a controllable clock.
"""

from __future__ import annotations

import asyncio
import hashlib
from typing import Any, Dict, List, Optional, Sequence, Set

import pytest
from web3.exceptions import ContractLogicError

from cabina.config import CabinaSettings
from cabina.errors import ConnectivityError
from cabina.ledger import LedgerClient, WalletSigner, password_digest
from cabina.models import EncryptedBallot
from cabina.service import VotingRoomService
from cabina.store import MemoryStore

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
CONTRACT_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
START = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = START) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _revert(message: str) -> ContractLogicError:
    return ContractLogicError(f"execution reverted: {message}")


def _digest_bytes(password: str) -> bytes:
    return bytes.fromhex(password_digest(password)[2:])


class FakeChain:
    """Estado del contrato de salas en memoria.

    English: In-memory voting contract. Mutations are mined on submission;
    functions listed in ``failing_receipts`` return status 0 and change
    nothing.
    """

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.rooms: Dict[str, Dict[str, Any]] = {}
        self.candidates: Dict[str, List[tuple]] = {}
        self.participants: Dict[str, Set[str]] = {}
        self.voters: Dict[str, Set[str]] = {}
        self.ballots: Dict[str, List[tuple]] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.sent: List[tuple] = []
        self.reads: List[str] = []
        self.failing_reads: Set[str] = set()
        self.failing_receipts: Set[str] = set()
        self.read_delay = 0.0
        self.read_delays: Dict[str, float] = {}
        self.send_delay = 0.0
        self.block_number = 100

    # -- setup helpers -------------------------------------------------

    def add_room(
        self,
        code: str,
        *,
        max_participants: int = 10,
        duration: float = 3600.0,
        password: Optional[str] = None,
        candidates: Sequence[str] = ("Alice", "Bob"),
        creator: str = ZERO_ADDRESS,
    ) -> None:
        self.rooms[code] = {
            "title": f"Room {code}",
            "description": "",
            "creator": creator,
            "max_participants": max_participants,
            "end_time": int(self.clock() + duration),
            "has_password": password is not None,
            "password_hash": _digest_bytes(password) if password is not None else bytes(32),
        }
        self.candidates[code] = [(name, f"{name} description", "") for name in candidates]
        self.participants[code] = set()
        self.voters[code] = set()
        self.ballots[code] = []

    # -- reads ---------------------------------------------------------

    def call(self, function: str, *args: Any) -> Any:
        if function == "getRoom":
            (code,) = args
            room = self.rooms.get(code)
            if room is None:
                return ("", "", "", ZERO_ADDRESS, 0, 0, 0, False, bytes(32), False, 0)
            return (
                code,
                room["title"],
                room["description"],
                room["creator"],
                room["max_participants"],
                len(self.participants[code]),
                room["end_time"],
                room["has_password"],
                room["password_hash"],
                self.clock() < room["end_time"],
                len(self.candidates[code]),
            )
        if function == "getCandidate":
            code, index = args
            return self.candidates[code][index]
        if function == "hasUserVoted":
            code, address = args
            return address.lower() in self.voters.get(code, set())
        if function == "isUserParticipant":
            code, address = args
            return address.lower() in self.participants.get(code, set())
        if function == "getTotalVotes":
            (code,) = args
            return len(self.ballots.get(code, []))
        if function == "getActiveRooms":
            return [code for code, room in self.rooms.items() if self.clock() < room["end_time"]]
        if function == "getRoomsPaginated":
            offset, limit = args
            return list(self.rooms)[offset : offset + limit]
        raise AssertionError(f"unknown read {function}")

    # -- writes --------------------------------------------------------

    def _require_room(self, code: str) -> Dict[str, Any]:
        room = self.rooms.get(code)
        if room is None:
            raise _revert("Room does not exist")
        return room

    def _apply(self, sender: str, function: str, *args: Any) -> None:
        wallet = sender.lower()
        if function in ("createRoom", "createRoomWithCandidatesBatch"):
            code, title, description, max_participants, end_time, has_password, password_hash = args[:7]
            if code in self.rooms:
                raise _revert("Room already exists")
            self.rooms[code] = {
                "title": title,
                "description": description,
                "creator": sender,
                "max_participants": max_participants,
                "end_time": end_time,
                "has_password": has_password,
                "password_hash": password_hash,
            }
            self.candidates[code] = []
            self.participants[code] = set()
            self.voters[code] = set()
            self.ballots[code] = []
            if function == "createRoomWithCandidatesBatch":
                names, descriptions, images = args[7:]
                self.candidates[code].extend(zip(names, descriptions, images))
        elif function == "addCandidate":
            code, name, description, image = args
            self._require_room(code)
            self.candidates[code].append((name, description, image))
        elif function == "addCandidatesBatch":
            code, names, descriptions, images = args
            self._require_room(code)
            self.candidates[code].extend(zip(names, descriptions, images))
        elif function == "joinRoom":
            code, password = args
            room = self._require_room(code)
            if self.clock() >= room["end_time"]:
                raise _revert("Voting ended")
            if wallet in self.participants[code]:
                raise _revert("Already joined")
            if len(self.participants[code]) >= room["max_participants"]:
                raise _revert("Room is full")
            if room["has_password"] and _digest_bytes(password) != room["password_hash"]:
                raise _revert("Invalid password")
            self.participants[code].add(wallet)
        elif function == "vote":
            code, candidate_id, handle, proof = args
            room = self._require_room(code)
            if self.clock() >= room["end_time"]:
                raise _revert("Voting ended")
            if wallet not in self.participants[code]:
                raise _revert("Not a participant")
            if wallet in self.voters[code]:
                raise _revert("Already voted")
            if candidate_id >= len(self.candidates[code]):
                raise _revert("Invalid candidate")
            self.voters[code].add(wallet)
            self.ballots[code].append((candidate_id, handle, proof))
        else:
            raise AssertionError(f"unknown write {function}")

    def execute(self, sender: str, function: str, *args: Any) -> str:
        tx_hash = "0x" + hashlib.sha256(f"{len(self.sent)}:{sender}:{function}".encode()).hexdigest()
        if function in self.failing_receipts:
            status = 0
        else:
            self._apply(sender, function, *args)
            status = 1
        self.sent.append((sender, function, args))
        self.block_number += 1
        self.receipts[tx_hash] = {"status": status, "blockNumber": self.block_number, "transactionHash": tx_hash}
        return tx_hash

    def relay_join(self, room_code: str, password: str, user_address: str) -> str:
        return self.execute(user_address, "joinRoom", room_code, password)

    def functions_sent(self) -> List[str]:
        return [function for _, function, _ in self.sent]


class FakeReadHandle:
    def __init__(self, chain: FakeChain) -> None:
        self.chain = chain

    async def call(self, function: str, *args: Any) -> Any:
        self.chain.reads.append(function)
        delay = self.chain.read_delays.get(function, self.chain.read_delay)
        if delay:
            await asyncio.sleep(delay)
        if function in self.chain.failing_reads:
            raise ConnectivityError("Ledger read failed: offline")
        return self.chain.call(function, *args)

    async def wait(self, tx_hash: str, confirmations: int = 1, timeout: float = 120.0) -> Dict[str, Any]:
        return dict(self.chain.receipts[tx_hash])


class FakeWriteHandle:
    def __init__(self, chain: FakeChain, address: str) -> None:
        self.chain = chain
        self._address = address

    @property
    def address(self) -> str:
        return self._address

    async def send(self, function: str, *args: Any) -> str:
        if self.chain.send_delay:
            await asyncio.sleep(self.chain.send_delay)
        return self.chain.execute(self._address, function, *args)


class FakeLedgerClient(LedgerClient):
    """LedgerClient whose handles talk to a :class:`FakeChain`."""

    def __init__(self, settings: CabinaSettings, chain: FakeChain, signer: Optional[WalletSigner] = None) -> None:
        super().__init__(settings, signer=signer)
        self.chain = chain

    def read_handle(self) -> FakeReadHandle:
        return FakeReadHandle(self.chain)

    def write_handle(self) -> FakeWriteHandle:
        if self.signer is None:
            raise ConnectivityError("Wallet not connected: a signer is required for transactions.")
        return FakeWriteHandle(self.chain, self.signer.address)


class FakeEncryptedInput:
    def __init__(self, contract_address: str, voter_address: str) -> None:
        self.contract_address = contract_address
        self.voter_address = voter_address
        self.values: List[int] = []

    def add(self, value: int) -> "FakeEncryptedInput":
        self.values.append(value)
        return self

    async def encrypt(self) -> EncryptedBallot:
        seed = f"{self.contract_address}:{self.voter_address}:{self.values}".encode()
        return EncryptedBallot(handle=hashlib.sha256(seed).digest(), proof=b"proof:" + seed[:8])


class FakeEncryptor:
    def __init__(self) -> None:
        self.inputs: List[FakeEncryptedInput] = []

    def create_encrypted_input(self, contract_address: str, voter_address: str) -> FakeEncryptedInput:
        encrypted_input = FakeEncryptedInput(contract_address, voter_address)
        self.inputs.append(encrypted_input)
        return encrypted_input


def make_signer(index: int) -> WalletSigner:
    return WalletSigner.from_key("0x" + f"{index:064x}")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def chain(clock: FakeClock) -> FakeChain:
    return FakeChain(clock)


@pytest.fixture
def settings() -> CabinaSettings:
    return CabinaSettings(
        contract_address=CONTRACT_ADDRESS,
        load_timeout_seconds=1.0,
        poll_interval_seconds=0.01,
        countdown_interval_seconds=0.01,
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def encryptor() -> FakeEncryptor:
    return FakeEncryptor()


@pytest.fixture
def signers() -> List[WalletSigner]:
    return [make_signer(index) for index in range(1, 6)]


@pytest.fixture
def make_service(settings, chain, store, encryptor, clock):
    """Fábrica de servicios por billetera. / Per-wallet service factory."""

    def factory(signer: Optional[WalletSigner] = None, **overrides: Any) -> VotingRoomService:
        ledger = FakeLedgerClient(overrides.pop("settings", settings), chain, signer=signer)
        return VotingRoomService(
            ledger,
            ledger.settings,
            overrides.pop("store", store),
            encryptor=overrides.pop("encryptor", encryptor),
            relay=overrides.pop("relay", None),
            clock=clock,
        )

    return factory


