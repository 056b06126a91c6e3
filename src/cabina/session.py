"""
======================== ÍNDICE / INDEX ========================
1. Descripción general / Overview
2. Componentes principales / Main components
3. Notas de mantenimiento / Maintenance notes

======================== ESPAÑOL ========================
Archivo: `src/cabina/session.py`.
Modelo de vista por (sala, billetera): carga inicial acotada, sondeo
periódico de reconciliación y cuenta regresiva local independiente.

Componentes detectados:
  - SessionPhase
  - format_time_left
  - RoomSessionController

Notas:
- Sondeo y cuenta regresiva se cancelan juntos al cambiar sala o billetera.
- El resultado del sondeo siempre sobrescribe los flags optimistas.

======================== ENGLISH ========================
File: `src/cabina/session.py`.
Per-(room, wallet) view model: bounded initial load, periodic reconciliation
poll and an independent local countdown.

Detected components:
  - SessionPhase
  - format_time_left
  - RoomSessionController

Notes:
- Poll and countdown are cancelled together on room or wallet change.
- A poll result always overwrites optimistic flags.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from .config import CabinaSettings
from .errors import (
    CabinaError,
    ConnectivityError,
    LoadTimeoutError,
    UnexpectedError,
    ValidationError,
    ValidationReason,
)
from .models import Candidate, ParticipantRecord, Room, VoteStage, VotingStatus
from .password_cache import PasswordValidationCache
from .service import JoinStrategy, VotingRoomService

logger = structlog.get_logger(__name__)

Listener = Callable[[Dict[str, Any]], None]
SessionKey = Tuple[Optional[str], Optional[str]]

STAGE_MESSAGES = {
    VoteStage.ENCRYPTING: "Encrypting vote...",
    VoteStage.SUBMITTING: "Casting vote...",
    VoteStage.CONFIRMING: "Waiting for confirmation...",
    VoteStage.FAILED: "Vote casting failed.",
}


class SessionPhase(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    LOAD_FAILED = "load_failed"
    CLOSED = "closed"


def format_time_left(seconds: int) -> str:
    """Texto de tiempo restante. / Remaining time as ``"Xh Ym"`` or ``"Ended"``."""
    if seconds <= 0:
        return "Ended"
    hours, remainder = divmod(int(seconds), 3600)
    return f"{hours}h {remainder // 60}m"


class RoomSessionController:
    """Sesión de una billetera en una sala.

    Bilingual: Combina directorio, servicio y caché de contraseñas en una
    máquina de estados con fases ``IDLE -> LOADING -> READY | LOAD_FAILED``.

    English:
        Drives one wallet's session in one room. Only this component has
        temporal behaviour: the initial load is bounded by
        ``load_timeout_seconds``, the poll refreshes ledger facts every
        ``poll_interval_seconds`` and the countdown derives remaining time
        from the cached ``end_time`` without any network call.
    """

    def __init__(
        self,
        service: VotingRoomService,
        password_cache: PasswordValidationCache,
        settings: CabinaSettings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.service = service
        self.password_cache = password_cache
        self.settings = settings
        self._clock = clock
        self._listeners: List[Listener] = []
        self._load_task: Optional[asyncio.Task] = None
        self._load_key: SessionKey = (None, None)
        self._poll_task: Optional[asyncio.Task] = None
        self._countdown_task: Optional[asyncio.Task] = None
        self.room_code: Optional[str] = None
        self.wallet: Optional[str] = None
        self._reset_view()
        self.phase = SessionPhase.IDLE

    def _reset_view(self) -> None:
        self.room: Optional[Room] = None
        self.candidates: List[Candidate] = []
        self.record = ParticipantRecord()
        self.total_votes = 0
        self.votes_estimated = False
        self.seconds_left = 0
        self.time_left = ""
        self.is_active = False
        self.can_retry = False
        self.error: Optional[str] = None
        self.error_reason: Optional[ValidationReason] = None
        self.message = ""
        self.vote_stage = VoteStage.IDLE
        self._results_fetched = False
        self._mutating = False

    # -- presentation --------------------------------------------------

    def _key(self) -> SessionKey:
        return self.room_code, self.wallet.lower() if self.wallet else None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Registra un oyente; devuelve la función para darlo de baja."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        view = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception as exc:  # noqa: BLE001
                logger.warning("session_listener_failed", error_type=type(exc).__name__)

    @property
    def show_results(self) -> bool:
        if self.record.has_voted.value:
            return True
        return self.room is not None and not self.is_active

    @property
    def remembered_candidate_id(self) -> Optional[int]:
        if not self.room_code or not self.wallet:
            return None
        remembered = self.service.remembered_vote(self.room_code, self.wallet)
        return remembered.candidate_id if remembered else None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "room_code": self.room_code,
            "wallet": self.wallet,
            "room": self.room.model_dump() if self.room else None,
            "candidates": [candidate.model_dump() for candidate in self.candidates],
            "is_participant": self.record.is_participant.value,
            "participant_pending": self.record.is_participant.pending,
            "has_voted": self.record.has_voted.value,
            "vote_pending": self.record.has_voted.pending,
            "vote_stage": self.vote_stage.value,
            "total_votes": self.total_votes,
            "votes_estimated": self.votes_estimated,
            "seconds_left": self.seconds_left,
            "time_left": self.time_left,
            "is_active": self.is_active,
            "show_results": self.show_results,
            "remembered_candidate_id": self.remembered_candidate_id,
            "can_retry": self.can_retry,
            "error": self.error,
            "message": self.message,
        }

    def _set_phase(self, phase: SessionPhase) -> None:
        self.phase = phase
        self._notify()

    def _report(self, exc: Exception) -> None:
        if isinstance(exc, ValidationError):
            self.error_reason = exc.reason
            self.error = exc.message
        elif isinstance(exc, CabinaError):
            self.error_reason = None
            self.error = exc.message
        else:
            self.error_reason = None
            self.error = UnexpectedError().message
        self._notify()

    def _reject(self, reason: ValidationReason) -> bool:
        logger.info("session_action_rejected", room_code=self.room_code, reason=reason.value)
        self._report(ValidationError(reason))
        return False

    def _clear_error(self) -> None:
        self.error = None
        self.error_reason = None

    # -- lifecycle -----------------------------------------------------

    async def activate(self, room_code: str, wallet: Optional[str] = None) -> SessionPhase:
        """Activa la sesión para (sala, billetera), descartando la anterior.

        English:
            Tear down any previous session, clear the password cache when the
            wallet or room changed, run the guarded initial load and start
            the poll and countdown tasks once the room is ready.
            The session always follows the connected signer; a ``wallet``
            that differs from it raises :class:`ConnectivityError`.
        """
        address = self.service.ledger.wallet_address
        if wallet and (address is None or wallet.lower() != address.lower()):
            raise ConnectivityError("The requested wallet is not the connected signer.")
        await self._teardown()
        self.password_cache.on_wallet_changed(address)
        self.password_cache.on_room_changed(room_code)
        self.room_code = room_code
        self.wallet = address
        self._reset_view()
        self.phase = SessionPhase.IDLE
        logger.info(
            "session_activated",
            room_code=room_code,
            wallet=address or "none",
        )
        await self.load()
        if self.phase is SessionPhase.READY and self._key() == self._load_key:
            self._start_tasks()
        return self.phase

    def _signer_switched(self) -> bool:
        if self.room_code is None or self.phase is SessionPhase.CLOSED:
            return False
        live = self.service.ledger.wallet_address
        return (live.lower() if live else None) != self._key()[1]

    async def _follow_signer(self) -> bool:
        """Reactiva la sesión si cambió el firmante conectado.

        English: Re-activate for the connected signer when it no longer
        matches the session wallet; returns whether that happened.
        """
        if not self._signer_switched():
            return False
        logger.info(
            "session_wallet_switched",
            room_code=self.room_code,
            wallet=self.service.ledger.wallet_address or "none",
        )
        await self.activate(self.room_code)
        return True

    async def load(self) -> SessionPhase:
        """Carga inicial protegida; llamadas concurrentes comparten la tarea."""
        key = self._key()
        if key[0] is None:
            raise ValueError("activate a room before loading it")
        task = self._load_task
        if task is None or task.done() or self._load_key != key:
            self._load_key = key
            self.can_retry = False
            self._clear_error()
            self._set_phase(SessionPhase.LOADING)
            task = asyncio.create_task(self._run_load(key))
            self._load_task = task
        await task
        return self.phase

    async def retry_load(self) -> SessionPhase:
        if not self.can_retry:
            return self.phase
        phase = await self.load()
        if phase is SessionPhase.READY:
            self._start_tasks()
        return phase

    async def _fetch_initial(self, room_code: str) -> Tuple[Room, List[Candidate], VotingStatus, int, bool]:
        directory = self.service.directory
        room, candidates, status = await asyncio.gather(
            directory.get_room(room_code),
            directory.get_candidates(room_code),
            self.service.check_voting_status(room_code),
        )
        if room is None:
            raise ValidationError(ValidationReason.ROOM_NOT_FOUND)
        total, estimated = await self.service.get_total_votes(room_code, room.participant_count)
        return room, candidates, status, total, estimated

    async def _run_load(self, key: SessionKey) -> None:
        room_code = key[0]
        log = logger.bind(room_code=room_code)
        try:
            room, candidates, status, total, estimated = await asyncio.wait_for(
                self._fetch_initial(room_code),
                timeout=self.settings.load_timeout_seconds,
            )
        except asyncio.TimeoutError:
            if key != self._key():
                return
            log.warning("session_load_timeout", timeout_seconds=self.settings.load_timeout_seconds)
            self._fail_load(LoadTimeoutError("Loading the room took too long. Please retry."))
            return
        except Exception as exc:  # noqa: BLE001
            if key != self._key():
                return
            log.warning("session_load_failed", error_type=type(exc).__name__)
            self._fail_load(exc)
            return

        if key != self._key():
            log.debug("session_stale_load_discarded")
            return
        self.room = room
        self.candidates = candidates
        self.record.reconcile(status.is_participant, status.has_voted)
        self.total_votes = total
        self.votes_estimated = estimated
        self._apply_tick()
        self.phase = SessionPhase.READY
        log.info("session_loaded", candidates=len(candidates), is_active=self.is_active)
        self._notify()

    def _fail_load(self, exc: Exception) -> None:
        self.can_retry = True
        self.phase = SessionPhase.LOAD_FAILED
        self._report(exc)

    def _start_tasks(self) -> None:
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop())
        if self._countdown_task is None or self._countdown_task.done():
            self._countdown_task = asyncio.create_task(self._countdown_loop())

    async def _teardown(self) -> None:
        tasks = [self._poll_task, self._countdown_task]
        self._poll_task = None
        self._countdown_task = None
        current = asyncio.current_task()
        for task in tasks:
            if task is None or task is current or task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def close(self) -> None:
        """Cancela sondeo y cuenta regresiva. Idempotente."""
        if self.phase is SessionPhase.CLOSED:
            return
        await self._teardown()
        logger.info("session_closed", room_code=self.room_code)
        self._set_phase(SessionPhase.CLOSED)

    # -- countdown -----------------------------------------------------

    def _apply_tick(self) -> None:
        if self.room is None:
            return
        self.seconds_left = self.room.seconds_left(self._clock())
        self.time_left = format_time_left(self.seconds_left)
        self.is_active = self.seconds_left > 0

    def tick(self) -> None:
        """Deriva el tiempo restante de ``end_time`` sin tocar la red."""
        was_active = self.is_active
        self._apply_tick()
        if was_active and not self.is_active:
            logger.info("session_room_ended", room_code=self.room_code)
        self._notify()

    async def _countdown_loop(self) -> None:
        while True:
            self.tick()
            if not self.is_active:
                return
            await asyncio.sleep(self.settings.countdown_interval_seconds)

    # -- poll ----------------------------------------------------------

    async def poll(self) -> bool:
        """Refresca participación, votos y estado; devuelve si debe seguir.

        English:
            Refresh participant count, total votes and voting status. The
            read always overwrites optimistic flags. Both the room read and
            the tally read are bounded by ``load_timeout_seconds``; a tally
            that does not answer in time falls back to the participation
            estimate. Returns ``False`` once the room has ended and results
            were fetched once, or when the session moved on to another key.
            A signer switch re-activates the session for the new wallet.
        """
        if await self._follow_signer():
            return False
        key = self._key()
        room_code = key[0]
        if room_code is None or self.room is None:
            return False
        ended = not self.room.is_active_at(self._clock())
        if ended and self._results_fetched:
            return False

        directory = self.service.directory
        timeout = self.settings.load_timeout_seconds
        try:
            room, status = await asyncio.wait_for(
                asyncio.gather(
                    directory.get_room(room_code),
                    self.service.check_voting_status(room_code),
                ),
                timeout=timeout,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("session_poll_failed", room_code=room_code, error_type=type(exc).__name__)
            return key == self._key()

        if key != self._key():
            return False
        participants = room.participant_count if room else self.room.participant_count
        try:
            total, estimated = await asyncio.wait_for(
                self.service.get_total_votes(room_code, participants),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            total, estimated = self.service.estimate_total_votes(participants), True
            logger.warning("session_tally_timeout", room_code=room_code, timeout_seconds=timeout, estimate=total)
        if key != self._key():
            return False

        if room is not None:
            self.room = room
        if self.wallet:
            self.record.reconcile(status.is_participant, status.has_voted)
        self.total_votes = total
        self.votes_estimated = estimated
        self._apply_tick()
        logger.debug("session_polled", room_code=room_code, total_votes=total, estimated=estimated)
        self._notify()
        if ended:
            self._results_fetched = True
            return False
        return True

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.poll_interval_seconds)
            if not await self.poll():
                return

    # -- mutations -----------------------------------------------------

    def _begin_mutation(self) -> bool:
        if self._mutating:
            return self._reject(ValidationReason.IN_FLIGHT)
        if self.phase is not SessionPhase.READY or self.room is None:
            self._report(ConnectivityError("Room is not loaded yet."))
            return False
        if not self.wallet:
            self._report(ConnectivityError("Wallet not connected: a signer is required for transactions."))
            return False
        if self._signer_switched():
            self._report(ConnectivityError("The connected wallet changed. Reload the room."))
            return False
        self._clear_error()
        self._mutating = True
        return True

    async def join(self, password: str = "", strategy: JoinStrategy = JoinStrategy.SELF_PAID) -> bool:
        """Une la billetera activa a la sala.

        English:
            A changed signer re-activates the session first. Password rooms
            are validated through the cache; a wallet that is already a
            participant gets access without a transaction.
            On submission the participant flag flips to ``PENDING`` and the
            participant count is bumped (capped at ``max_participants``); a
            confirmed receipt confirms the flag, any failure rolls it back.
        """
        await self._follow_signer()
        if self.record.is_participant.value and not self.record.is_participant.pending:
            self.message = "You are already a participant in this room."
            self._notify()
            return True
        if not self._begin_mutation():
            return False
        try:
            return await self._join(password, strategy)
        finally:
            self._mutating = False

    async def _join(self, password: str, strategy: JoinStrategy) -> bool:
        key = self._key()
        room_code, wallet = self.room_code, self.wallet
        room = self.room
        if room.has_password:
            result = await self.password_cache.validate(room_code, password, wallet)
            if key != self._key():
                return False
            if not result.is_valid:
                return self._reject(ValidationReason.INVALID_PASSWORD)
            if result.is_already_participant:
                self.record.confirm_join()
                self.message = "Access granted."
                self._notify()
                return True

        self.tick()
        if not self.is_active:
            return self._reject(ValidationReason.ROOM_ENDED)
        if room.is_full:
            return self._reject(ValidationReason.ROOM_FULL)

        bumped = False

        def submitted(tx_hash: str) -> None:
            nonlocal bumped
            if key != self._key() or self.room is None:
                return
            self.record.mark_pending_join()
            if self.room.participant_count < self.room.max_participants:
                self.room = self.room.model_copy(update={"participant_count": self.room.participant_count + 1})
                bumped = True
            self.message = "Transaction submitted. Waiting for confirmation..."
            self._notify()

        try:
            await self.service.join_room(room_code, password, strategy, on_submitted=submitted)
        except Exception as exc:  # noqa: BLE001
            if key != self._key():
                return False
            if self.record.is_participant.pending:
                self.record.rollback_join()
                if bumped and self.room is not None and self.room.participant_count > 0:
                    self.room = self.room.model_copy(update={"participant_count": self.room.participant_count - 1})
                logger.info("session_join_rolled_back", room_code=room_code)
            if isinstance(exc, ValidationError) and exc.reason is ValidationReason.ALREADY_JOINED:
                self.record.confirm_join()
            self._report(exc)
            return False

        if key != self._key():
            return True
        self.record.confirm_join()
        if room.has_password:
            self.password_cache.record_join(room_code, wallet)
        self.message = "Joined room successfully!"
        self._notify()
        return True

    async def vote(self, candidate_id: int) -> bool:
        """Emite el voto cifrado; se rechaza localmente si no procede.

        English:
            Rejected before any transaction is built when the room is not
            active (from the countdown, no network), the wallet is not a
            participant, a vote is already recorded or pending, or the
            candidate is unknown.
        """
        await self._follow_signer()
        self.tick()
        if self.room is not None and not self.is_active:
            return self._reject(ValidationReason.ROOM_ENDED)
        if not self.record.is_participant.value:
            return self._reject(ValidationReason.NOT_PARTICIPANT)
        if self.record.has_voted.value:
            return self._reject(ValidationReason.ALREADY_VOTED)
        if candidate_id not in {candidate.id for candidate in self.candidates}:
            return self._reject(ValidationReason.INVALID_CANDIDATE)
        if not self._begin_mutation():
            return False
        try:
            return await self._vote(candidate_id)
        finally:
            self._mutating = False

    async def _vote(self, candidate_id: int) -> bool:
        key = self._key()
        room_code = self.room_code

        def staged(stage: VoteStage) -> None:
            if key != self._key():
                return
            self.vote_stage = stage
            self.message = STAGE_MESSAGES.get(stage, self.message)
            self._notify()

        def submitted(tx_hash: str) -> None:
            if key != self._key():
                return
            self.record.mark_pending_vote()
            self._notify()

        try:
            await self.service.cast_vote(room_code, candidate_id, on_stage=staged, on_submitted=submitted)
        except Exception as exc:  # noqa: BLE001
            if key != self._key():
                return False
            self.record.rollback_vote()
            if isinstance(exc, ValidationError) and exc.reason is ValidationReason.ALREADY_VOTED:
                self.record.confirm_vote()
            self._report(exc)
            return False

        if key != self._key():
            return True
        self.record.confirm_vote()
        self.message = "Vote cast successfully!"
        self._notify()
        return True


