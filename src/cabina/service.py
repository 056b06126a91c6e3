"""
======================== ÍNDICE / INDEX ========================
1. Descripción general / Overview
2. Componentes principales / Main components
3. Notas de mantenimiento / Maintenance notes

======================== ESPAÑOL ========================
Archivo: `src/cabina/service.py`.
Orquestador de escritura: crear salas, registrar candidatos, unirse y
votar. Toda mutación pasa por enviar -> esperar confirmación -> interpretar
recibo.

Componentes detectados:
  - JoinStrategy
  - VotingRoomService

Notas:
- Una transacción enviada no se puede retirar; los guardas locales evitan
  envíos duplicados.

======================== ENGLISH ========================
File: `src/cabina/service.py`.
Write-path orchestrator: create rooms, register candidates, join and vote.
Every mutation goes through submit -> await confirmation -> interpret
receipt.

Detected components:
  - JoinStrategy
  - VotingRoomService

Notes:
- A submitted transaction cannot be withdrawn; local guards prevent
  duplicate submissions.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, Set, Tuple, Union

import structlog
from pydantic import ValidationError as PydanticValidationError
from web3.exceptions import ContractLogicError

from .config import CabinaSettings
from .directory import RoomDirectory
from .encryption import Encryptor, encrypt_ballot
from .errors import (
    CabinaError,
    ConnectivityError,
    SignatureRejected,
    TransactionError,
    UnexpectedError,
    ValidationError,
    ValidationReason,
    classify_revert,
)
from .ledger import ZERO_HASH, LedgerClient, ReadHandle, password_digest
from .logging import bind_context
from .models import (
    CandidateDraft,
    GaslessErrorKind,
    RememberedVote,
    RoomDraft,
    TransactionOutcome,
    VoteStage,
    VotingStatus,
)
from .relay import GaslessRelay
from .store import KeyValueStore, recall_vote, remember_vote

logger = structlog.get_logger(__name__)

SubmittedHook = Optional[Callable[[str], None]]
StageHook = Optional[Callable[[VoteStage], None]]
CandidateLike = Union[CandidateDraft, dict]


class JoinStrategy(str, Enum):
    """Cómo se paga la unión. / How the join is paid for."""

    SELF_PAID = "self_paid"
    GASLESS = "gasless"


def _digest_bytes(hex_digest: str) -> bytes:
    return bytes.fromhex(hex_digest[2:] if hex_digest.startswith("0x") else hex_digest)


def _candidate_arrays(candidates: Iterable[CandidateLike]) -> Tuple[List[str], List[str], List[str]]:
    drafts = [c if isinstance(c, CandidateDraft) else CandidateDraft.model_validate(c) for c in candidates]
    return (
        [draft.name for draft in drafts],
        [draft.description for draft in drafts],
        [draft.image_ref for draft in drafts],
    )


class VotingRoomService:
    """Orquestador de mutaciones sobre el contrato de salas.

    Bilingual: Orquesta todas las mutaciones del contrato de salas.

    Args:
        ledger: Produces read and signer-bound handles.
        settings: Confirmation count, receipt timeout, participation estimate
            and whether the atomic create is available.
        store: Keyed store for the remembered vote choice.
        encryptor: Homomorphic encryption collaborator, needed to vote.
        relay: Fee-sponsoring relay, needed for gasless joins.
        clock: Wall clock, injectable for tests.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        settings: CabinaSettings,
        store: KeyValueStore,
        encryptor: Optional[Encryptor] = None,
        relay: Optional[GaslessRelay] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ledger = ledger
        self.settings = settings
        self.store = store
        self.encryptor = encryptor
        self.relay = relay
        self._clock = clock
        self.last_message = ""
        self._join_in_flight: Set[Tuple[str, str]] = set()
        self._joined: Set[Tuple[str, str]] = set()
        self._vote_in_flight: Set[Tuple[str, str]] = set()
        self._voted: Set[Tuple[str, str]] = set()
        self._candidates_in_flight: Set[str] = set()
        self._vote_stages: dict[Tuple[str, str], VoteStage] = {}

    # -- helpers -------------------------------------------------------

    @property
    def directory(self) -> RoomDirectory:
        return RoomDirectory(self.ledger.read_handle())

    def _wallet(self) -> str:
        wallet = self.ledger.wallet_address
        if not wallet:
            raise ConnectivityError("Wallet not connected: a signer is required for transactions.")
        return wallet

    @staticmethod
    def _key(room_code: str, wallet: str) -> Tuple[str, str]:
        return room_code, wallet.lower()

    def vote_stage(self, room_code: str, wallet: str) -> VoteStage:
        return self._vote_stages.get(self._key(room_code, wallet), VoteStage.IDLE)

    async def _confirm(self, read: ReadHandle, tx_hash: str, label: str) -> TransactionOutcome:
        log = bind_context(logger, tx_hash=tx_hash).bind(action=label)
        try:
            receipt = await read.wait(
                tx_hash,
                confirmations=self.settings.confirmations,
                timeout=self.settings.receipt_timeout_seconds,
            )
        except CabinaError:
            log.warning("tx_unconfirmed")
            raise
        except Exception as exc:  # noqa: BLE001
            log.error("tx_receipt_error", error_type=type(exc).__name__)
            raise TransactionError(f"Could not confirm transaction {tx_hash}.", tx_hash=tx_hash) from exc

        status = int(receipt.get("status", 0))
        if status != 1:
            log.warning("tx_failed", status=status)
            raise TransactionError(f"Transaction {tx_hash} failed.", tx_hash=tx_hash)
        log.info("tx_confirmed", block_number=receipt.get("blockNumber"))
        return TransactionOutcome(
            success=True,
            tx_hash=tx_hash,
            status=status,
            block_number=receipt.get("blockNumber"),
        )

    async def _transact(self, label: str, function: str, *args: Any, on_submitted: SubmittedHook = None) -> TransactionOutcome:
        """Enviar, esperar confirmación e interpretar el recibo.

        English:
            Submit, await confirmation, interpret the receipt. Classified
            reverts become :class:`ValidationError`, other reverts and failed
            receipts :class:`TransactionError`, anything else
            :class:`UnexpectedError`.
        """
        write = self.ledger.write_handle()
        read = self.ledger.read_handle()
        try:
            tx_hash = await write.send(function, *args)
        except CabinaError:
            raise
        except ContractLogicError as exc:
            reason = classify_revert(str(exc))
            logger.info("tx_rejected", action=label, reason=reason.value if reason else "revert")
            if reason is not None:
                raise ValidationError(reason) from exc
            raise TransactionError(f"{label} reverted: {exc}") from exc
        except Exception as exc:  # noqa: BLE001
            logger.error("tx_submit_unexpected", action=label, error_type=type(exc).__name__)
            raise UnexpectedError() from exc

        logger.info("tx_submitted", action=label, tx_hash=tx_hash)
        self.last_message = f"Waiting for transaction {tx_hash}..."
        if on_submitted is not None:
            on_submitted(tx_hash)
        return await self._confirm(read, tx_hash, label)

    # -- rooms & candidates --------------------------------------------

    def _end_time(self, duration_hours: float) -> int:
        return int(self._clock()) + int(duration_hours * 60 * 60)

    @staticmethod
    def _password_hash(draft: RoomDraft) -> bytes:
        if draft.has_password and draft.password:
            return _digest_bytes(password_digest(draft.password))
        return _digest_bytes(ZERO_HASH)

    async def create_room(
        self,
        code: str,
        title: str,
        description: str,
        max_participants: int,
        duration_hours: float,
        has_password: bool = False,
        password: str = "",
    ) -> bool:
        """Crea una sala; solo el digest de la contraseña sale del cliente.

        English:
            Create a room with ``end_time = now + duration_hours``. Returns
            ``False`` for expected failures (invalid input, revert, failed
            receipt). A missing signer raises :class:`ConnectivityError`;
            anything else raises :class:`UnexpectedError`.
        """
        try:
            draft = RoomDraft(
                code=code,
                title=title,
                description=description,
                max_participants=max_participants,
                duration_hours=duration_hours,
                has_password=has_password,
                password=password,
            )
        except PydanticValidationError as exc:
            self.last_message = f"Invalid room: {exc.errors()[0]['msg']}"
            return False

        self.last_message = "Creating room..."
        try:
            await self._transact(
                "create_room",
                "createRoom",
                draft.code,
                draft.title,
                draft.description,
                draft.max_participants,
                self._end_time(draft.duration_hours),
                draft.has_password,
                self._password_hash(draft),
            )
        except (ValidationError, TransactionError) as exc:
            self.last_message = f"Error creating room: {exc.message}"
            return False
        self.last_message = "Room created successfully!"
        return True

    async def create_room_with_candidates(
        self,
        code: str,
        title: str,
        description: str,
        max_participants: int,
        duration_hours: float,
        candidates: Iterable[CandidateLike],
        has_password: bool = False,
        password: str = "",
    ) -> bool:
        """Crea sala y candidatos, atómicamente cuando el contrato lo permite.

        English:
            Create a room and its candidates. The single-transaction
            ``createRoomWithCandidatesBatch`` is preferred; the two-step path
            is only used when ``supports_atomic_create`` is off and can leave
            a room without candidates if the second step fails.
        """
        try:
            draft = RoomDraft(
                code=code,
                title=title,
                description=description,
                max_participants=max_participants,
                duration_hours=duration_hours,
                has_password=has_password,
                password=password,
                candidates=list(candidates),
            )
            draft.require_candidates()
        except (PydanticValidationError, ValueError) as exc:
            self.last_message = f"Invalid room: {exc}"
            return False

        names, descriptions, images = _candidate_arrays(draft.candidates)
        if not self.settings.supports_atomic_create:
            created = await self.create_room(
                draft.code,
                draft.title,
                draft.description,
                draft.max_participants,
                draft.duration_hours,
                draft.has_password,
                draft.password,
            )
            if not created:
                return False
            if not await self.add_candidates_batch(draft.code, draft.candidates):
                logger.warning("room_created_without_candidates", room_code=draft.code)
                self.last_message = "Room created but candidates could not be added."
                return False
            self.last_message = "Room and candidates created successfully!"
            return True

        self.last_message = "Creating room with candidates in single transaction..."
        try:
            await self._transact(
                "create_room_with_candidates",
                "createRoomWithCandidatesBatch",
                draft.code,
                draft.title,
                draft.description,
                draft.max_participants,
                self._end_time(draft.duration_hours),
                draft.has_password,
                self._password_hash(draft),
                names,
                descriptions,
                images,
            )
        except (ValidationError, TransactionError) as exc:
            self.last_message = f"Error creating room: {exc.message}"
            return False
        self.last_message = "Room and candidates created successfully in one transaction!"
        return True

    async def _guarded_candidates(self, room_code: str, label: str, function: str, *args: Any) -> bool:
        # not idempotent: a concurrent duplicate would register the candidates twice
        if room_code in self._candidates_in_flight:
            raise ValidationError(ValidationReason.IN_FLIGHT)
        self._candidates_in_flight.add(room_code)
        try:
            await self._transact(label, function, room_code, *args)
        except (ValidationError, TransactionError) as exc:
            self.last_message = f"Error adding candidate: {exc.message}"
            return False
        finally:
            self._candidates_in_flight.discard(room_code)
        self.last_message = "Candidates added successfully!"
        return True

    async def add_candidate(self, room_code: str, name: str, description: str = "", image_ref: str = "") -> bool:
        draft = CandidateDraft(name=name, description=description, image_ref=image_ref)
        return await self._guarded_candidates(
            room_code, "add_candidate", "addCandidate", draft.name, draft.description, draft.image_ref
        )

    async def add_candidates_batch(self, room_code: str, candidates: Iterable[CandidateLike]) -> bool:
        names, descriptions, images = _candidate_arrays(candidates)
        if not names:
            return True
        return await self._guarded_candidates(
            room_code, "add_candidates_batch", "addCandidatesBatch", names, descriptions, images
        )

    # -- join ----------------------------------------------------------

    async def _preflight_join(self, room_code: str, wallet: str) -> None:
        directory = self.directory
        room, is_participant = await asyncio.gather(
            directory.get_room(room_code),
            directory.is_user_participant(room_code, wallet),
        )
        if room is None:
            raise ValidationError(ValidationReason.ROOM_NOT_FOUND)
        if is_participant:
            raise ValidationError(ValidationReason.ALREADY_JOINED)
        if not room.is_active_at(self._clock()):
            raise ValidationError(ValidationReason.ROOM_ENDED)
        if room.is_full:
            raise ValidationError(ValidationReason.ROOM_FULL)

    async def _join_gasless(self, room_code: str, password: str, wallet: str, on_submitted: SubmittedHook) -> TransactionOutcome:
        if self.relay is None:
            raise ConnectivityError("Gasless relay is not configured.")
        signer = self.ledger.signer
        if signer is None:
            raise ConnectivityError("Wallet not connected: a signer is required for transactions.")
        result = await self.relay.execute_gasless_join(room_code, password, wallet, signer)
        if not result.success:
            if result.error_kind is GaslessErrorKind.DECLINED:
                raise SignatureRejected(result.error)
            if result.error_kind is GaslessErrorKind.UNREACHABLE:
                raise ConnectivityError(result.error or "Relay unreachable.")
            if result.error_kind is GaslessErrorKind.REVERTED:
                if result.reason is not None:
                    raise ValidationError(result.reason, result.error)
                raise TransactionError(result.error or "Join reverted.")
            raise UnexpectedError(result.error or UnexpectedError().message)

        tx_hash = result.transaction_hash or ""
        self.last_message = f"Waiting for transaction {tx_hash}..."
        if on_submitted is not None:
            on_submitted(tx_hash)
        return await self._confirm(self.ledger.read_handle(), tx_hash, "join_room_gasless")

    async def join_room(
        self,
        room_code: str,
        password: str = "",
        strategy: JoinStrategy = JoinStrategy.SELF_PAID,
        on_submitted: SubmittedHook = None,
    ) -> TransactionOutcome:
        """Une la billetera a la sala con la estrategia elegida.

        English:
            Join the connected wallet to a room, self-paid or sponsored.
            Already joined, full and ended rooms are rejected with
            :class:`ValidationError` before anything is submitted.
            ``on_submitted`` fires once the transaction hash is known, so the
            caller can flip its optimistic state.
        """
        wallet = self._wallet()
        key = self._key(room_code, wallet)
        if key in self._join_in_flight:
            raise ValidationError(ValidationReason.IN_FLIGHT)
        if key in self._joined:
            raise ValidationError(ValidationReason.ALREADY_JOINED)

        self._join_in_flight.add(key)
        log = bind_context(logger, room_code=room_code, wallet=wallet).bind(strategy=strategy.value)
        try:
            self.last_message = "Joining room..."
            await self._preflight_join(room_code, wallet)
            if strategy is JoinStrategy.GASLESS:
                outcome = await self._join_gasless(room_code, password, wallet, on_submitted)
            else:
                outcome = await self._transact("join_room", "joinRoom", room_code, password, on_submitted=on_submitted)
        except CabinaError as exc:
            log.info("join_failed", error_type=type(exc).__name__)
            self.last_message = f"Error joining room: {exc.message}"
            raise
        finally:
            self._join_in_flight.discard(key)

        self._joined.add(key)
        self.last_message = "Joined room successfully!"
        log.info("join_confirmed")
        return outcome

    # -- vote ----------------------------------------------------------

    async def cast_vote(
        self,
        room_code: str,
        candidate_id: int,
        on_stage: StageHook = None,
        on_submitted: SubmittedHook = None,
    ) -> TransactionOutcome:
        """Cifra y envía exactamente una boleta.

        English:
            ``IDLE -> ENCRYPTING -> SUBMITTING -> CONFIRMING -> VOTED | FAILED``.
            A second attempt for the same (room, wallet) is rejected before
            encryption. Nothing can be cancelled once submission begins. On
            success the chosen candidate is remembered locally for display.
        """
        wallet = self._wallet()
        if self.encryptor is None:
            raise ConnectivityError("Encryption collaborator is not available.")
        key = self._key(room_code, wallet)
        if key in self._vote_in_flight or key in self._voted:
            raise ValidationError(ValidationReason.ALREADY_VOTED)
        if candidate_id < 0:
            raise ValidationError(ValidationReason.INVALID_CANDIDATE)

        def advance(stage: VoteStage) -> None:
            self._vote_stages[key] = stage
            if on_stage is not None:
                on_stage(stage)

        def submitted(tx_hash: str) -> None:
            advance(VoteStage.CONFIRMING)
            if on_submitted is not None:
                on_submitted(tx_hash)

        self._vote_in_flight.add(key)
        log = bind_context(logger, room_code=room_code, wallet=wallet)
        try:
            advance(VoteStage.ENCRYPTING)
            self.last_message = "Encrypting vote..."
            try:
                ballot = await encrypt_ballot(self.encryptor, self.ledger.contract_address, wallet)
            except Exception as exc:  # noqa: BLE001
                log.error("ballot_encryption_failed", error_type=type(exc).__name__)
                raise UnexpectedError("Vote encryption failed. Please try again.") from exc

            advance(VoteStage.SUBMITTING)
            self.last_message = "Casting vote..."
            outcome = await self._transact(
                "cast_vote",
                "vote",
                room_code,
                candidate_id,
                ballot.handle,
                ballot.proof,
                on_submitted=submitted,
            )
        except CabinaError as exc:
            advance(VoteStage.FAILED)
            self.last_message = f"Vote casting failed: {exc.message}"
            raise
        finally:
            self._vote_in_flight.discard(key)

        self._voted.add(key)
        remember_vote(self.store, room_code, wallet, candidate_id, now=self._clock())
        advance(VoteStage.VOTED)
        self.last_message = "Vote cast successfully!"
        log.info("vote_confirmed")
        return outcome

    # -- reads ---------------------------------------------------------

    async def check_voting_status(self, room_code: str) -> VotingStatus:
        wallet = self.ledger.wallet_address
        if not wallet:
            return VotingStatus()
        directory = self.directory
        has_voted, is_participant = await asyncio.gather(
            directory.has_user_voted(room_code, wallet),
            directory.is_user_participant(room_code, wallet),
        )
        return VotingStatus(has_voted=has_voted, is_participant=is_participant)

    async def get_total_votes(self, room_code: str, participant_count: Optional[int] = None) -> Tuple[int, bool]:
        """Total de votos; si la lectura falla, estima con la tasa de participación.

        English:
            Aggregate vote count as ``(count, estimated)``. When the read
            fails the count is ``round(participant_count * rate)`` with
            ``estimated=True``.
        """
        try:
            return await self.directory.get_total_votes(room_code), False
        except Exception as exc:  # noqa: BLE001
            estimate = self.estimate_total_votes(participant_count)
            logger.warning(
                "total_votes_estimated",
                room_code=room_code,
                error_type=type(exc).__name__,
                estimate=estimate,
            )
            return estimate, True

    def estimate_total_votes(self, participant_count: Optional[int]) -> int:
        return round((participant_count or 0) * self.settings.participation_rate_estimate)

    def remembered_vote(self, room_code: str, wallet: Optional[str] = None) -> Optional[RememberedVote]:
        address = wallet or self.ledger.wallet_address
        if not address:
            return None
        return recall_vote(self.store, room_code, address)
