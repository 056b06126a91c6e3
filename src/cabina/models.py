"""Modelos de dominio de salas, candidatos, participantes y boletas.

Domain models for rooms, candidates, participants and ballots.
"""

from __future__ import annotations

import secrets
import string
import time
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import ValidationReason

ROOM_CODE_PREFIX = "ROOM"
_ROOM_CODE_ALPHABET = string.digits + string.ascii_uppercase


def generate_room_code(length: int = 6) -> str:
    """Genera un código de sala compartible. / Generate a shareable room code."""
    suffix = "".join(secrets.choice(_ROOM_CODE_ALPHABET) for _ in range(length))
    return f"{ROOM_CODE_PREFIX}{suffix}"


class Room(BaseModel):
    """Registro de sala leído del ledger.

    English: Room record as read from the ledger. ``is_active`` is the value
    the contract reported at read time; callers derive current activity from
    ``end_time`` through :meth:`is_active_at`.
    """

    code: str
    title: str = ""
    description: str = ""
    creator: str = ""
    max_participants: int = Field(ge=0)
    participant_count: int = Field(ge=0)
    end_time: int = Field(ge=0)
    has_password: bool = False
    password_hash: str = ""
    is_active: bool = False
    candidate_count: int = Field(default=0, ge=0)

    @property
    def is_full(self) -> bool:
        return self.max_participants > 0 and self.participant_count >= self.max_participants

    def is_active_at(self, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        return current < self.end_time

    def seconds_left(self, now: Optional[float] = None) -> int:
        current = time.time() if now is None else now
        return max(0, int(self.end_time - current))


class Candidate(BaseModel):
    """Candidato de una sala. / Candidate of a room."""

    id: int = Field(ge=0)
    name: str
    description: str = ""
    image_ref: str = ""


class CandidateDraft(BaseModel):
    """Candidato a registrar. / Candidate to register."""

    name: str = Field(min_length=1)
    description: str = ""
    image_ref: str = ""

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        """Normaliza texto eliminando espacios y valida no vacío.

        English:
            Normalize text by trimming whitespace and validate non-empty.
        """
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Candidate name cannot be empty")
        return cleaned


class RoomDraft(BaseModel):
    """Parámetros de creación de sala.

    English: Room creation input, validated before any transaction is built.
    """

    code: str = Field(min_length=1, max_length=32)
    title: str = Field(min_length=1)
    description: str = ""
    max_participants: int = Field(ge=1)
    duration_hours: float = Field(gt=0)
    has_password: bool = False
    password: str = ""
    candidates: List[CandidateDraft] = Field(default_factory=list)

    @field_validator("code", "title")
    @classmethod
    def strip_text(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Field cannot be empty")
        return cleaned

    @model_validator(mode="after")
    def password_required_when_protected(self) -> "RoomDraft":
        """A protected room needs a non-blank password."""
        if self.has_password and not self.password.strip():
            raise ValueError("password is required when has_password is set")
        return self

    def require_candidates(self, minimum: int = 2) -> None:
        if len(self.candidates) < minimum:
            raise ValueError(f"at least {minimum} candidates are required")


class FlagState(str, Enum):
    """Estado de confianza de un flag local. / Trust state of a local flag."""

    UNKNOWN = "unknown"
    PENDING = "pending"
    CONFIRMED = "confirmed"


class Flag(BaseModel):
    """Boolean mirror of a ledger fact plus how much it can be trusted."""

    value: bool = False
    state: FlagState = FlagState.UNKNOWN

    @property
    def pending(self) -> bool:
        return self.state is FlagState.PENDING


class ParticipantRecord(BaseModel):
    """Espejo optimista de (sala, billetera) -> {participante, votó}.

    English:
        Optimistic mirror of the ledger's participant record. ``PENDING``
        values come from local flips made on submission; :meth:`reconcile`
        always overwrites them with the authoritative read.
    """

    is_participant: Flag = Field(default_factory=Flag)
    has_voted: Flag = Field(default_factory=Flag)

    def mark_pending_join(self) -> None:
        self.is_participant = Flag(value=True, state=FlagState.PENDING)

    def confirm_join(self) -> None:
        self.is_participant = Flag(value=True, state=FlagState.CONFIRMED)

    def rollback_join(self) -> None:
        if self.is_participant.pending:
            self.is_participant = Flag(value=False, state=FlagState.UNKNOWN)

    def mark_pending_vote(self) -> None:
        self.has_voted = Flag(value=True, state=FlagState.PENDING)

    def confirm_vote(self) -> None:
        self.has_voted = Flag(value=True, state=FlagState.CONFIRMED)

    def rollback_vote(self) -> None:
        if self.has_voted.pending:
            self.has_voted = Flag(value=False, state=FlagState.UNKNOWN)

    def reconcile(self, is_participant: bool, has_voted: bool) -> None:
        # last read wins
        self.is_participant = Flag(value=is_participant, state=FlagState.CONFIRMED)
        self.has_voted = Flag(value=has_voted, state=FlagState.CONFIRMED)


class VotingStatus(BaseModel):
    has_voted: bool = False
    is_participant: bool = False


class EncryptedBallot(BaseModel):
    """Boleta cifrada opaca. / Opaque encrypted ballot ``{handle, proof}``."""

    handle: bytes
    proof: bytes


class VoteStage(str, Enum):
    """Etapas de emisión de voto. / Vote casting stages."""

    IDLE = "idle"
    ENCRYPTING = "encrypting"
    SUBMITTING = "submitting"
    CONFIRMING = "confirming"
    VOTED = "voted"
    FAILED = "failed"


class TransactionOutcome(BaseModel):
    success: bool
    tx_hash: Optional[str] = None
    status: Optional[int] = None
    block_number: Optional[int] = None


class PasswordValidationResult(BaseModel):
    """Resultado de validar contraseña; no revela más que válido/inválido.

    English: Password validation outcome; leaks nothing beyond valid/invalid.
    """

    is_valid: bool
    is_already_participant: bool = False
    requires_transaction: bool = False
    from_cache: bool = False
    error: Optional[str] = None


class GaslessErrorKind(str, Enum):
    DECLINED = "declined"
    UNREACHABLE = "unreachable"
    REVERTED = "reverted"
    UNEXPECTED = "unexpected"


class GaslessJoinResult(BaseModel):
    success: bool
    transaction_hash: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[GaslessErrorKind] = None
    reason: Optional[ValidationReason] = None

    @property
    def retryable(self) -> bool:
        return self.error_kind is GaslessErrorKind.UNREACHABLE


class RememberedVote(BaseModel):
    """Anotación local de solo visualización; no prueba nada.

    English: Display-only local annotation of the chosen candidate.
    """

    room_code: str
    wallet: str
    candidate_id: int
    voted_at: float
