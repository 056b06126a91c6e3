"""Consultas de solo lectura sobre salas.

Read-only room queries: room record, candidate list, participant and vote
flags, active-room enumeration and pagination.
"""

from __future__ import annotations

import asyncio
from typing import Any, List, Optional, Sequence, Tuple

import structlog

from .errors import ValidationError, ValidationReason
from .ledger import ReadHandle, normalize_digest
from .models import Candidate, Room

logger = structlog.get_logger(__name__)


def decode_room(raw: Any) -> Optional[Room]:
    """Decodifica la tupla ``getRoom``; un código vacío significa sala inexistente.

    English: Decode the ``getRoom`` tuple; an empty code means no such room.
    """
    fields: Sequence[Any] = raw
    if isinstance(raw, dict):
        fields = [
            raw.get(key)
            for key in (
                "code",
                "title",
                "description",
                "creator",
                "maxParticipants",
                "participantCount",
                "endTime",
                "hasPassword",
                "passwordHash",
                "isActive",
                "candidateCount",
            )
        ]
    (
        code,
        title,
        description,
        creator,
        max_participants,
        participant_count,
        end_time,
        has_password,
        password_hash,
        is_active,
        candidate_count,
    ) = fields
    if not code:
        return None
    return Room(
        code=code,
        title=title or "",
        description=description or "",
        creator=creator or "",
        max_participants=int(max_participants),
        participant_count=int(participant_count),
        end_time=int(end_time),
        has_password=bool(has_password),
        password_hash=normalize_digest(password_hash),
        is_active=bool(is_active),
        candidate_count=int(candidate_count),
    )


class RoomDirectory:
    """Consultas de sala sobre un manejador de lectura.

    English: Room queries over a read handle. Holds no state.
    """

    def __init__(self, handle: ReadHandle) -> None:
        self._handle = handle

    async def get_room(self, code: str) -> Optional[Room]:
        raw = await self._handle.call("getRoom", code)
        return decode_room(raw)

    async def get_password_info(self, code: str) -> Tuple[bool, str]:
        """Raises :class:`ValidationError` (``ROOM_NOT_FOUND``) for a missing room."""
        room = await self.get_room(code)
        if room is None:
            raise ValidationError(ValidationReason.ROOM_NOT_FOUND)
        return room.has_password, room.password_hash

    async def get_candidate(self, code: str, index: int) -> Candidate:
        name, description, image_ref = await self._handle.call("getCandidate", code, index)
        return Candidate(id=index, name=name, description=description, image_ref=image_ref)

    async def get_candidates(self, code: str, room: Optional[Room] = None) -> List[Candidate]:
        """Lista de candidatos ordenada por id.

        English:
            Candidates ordered by id. The count comes from the room record,
            which is read unless the caller already holds it.
        """
        if room is None:
            room = await self.get_room(code)
        if room is None or room.candidate_count == 0:
            return []
        candidates = await asyncio.gather(
            *(self.get_candidate(code, index) for index in range(room.candidate_count))
        )
        return sorted(candidates, key=lambda candidate: candidate.id)

    async def has_user_voted(self, code: str, address: str) -> bool:
        return bool(await self._handle.call("hasUserVoted", code, address))

    async def is_user_participant(self, code: str, address: str) -> bool:
        return bool(await self._handle.call("isUserParticipant", code, address))

    async def get_total_votes(self, code: str) -> int:
        return int(await self._handle.call("getTotalVotes", code))

    async def _resolve_codes(self, codes: Sequence[str]) -> List[Room]:
        rooms = await asyncio.gather(*(self.get_room(code) for code in codes))
        return [room for room in rooms if room is not None]

    async def get_active_rooms(self) -> List[Room]:
        codes = await self._handle.call("getActiveRooms")
        logger.debug("active_rooms_listed", count=len(codes))
        return await self._resolve_codes(codes)

    async def get_rooms_paginated(self, offset: int, limit: int) -> List[Room]:
        if offset < 0 or limit < 1:
            raise ValueError("offset must be >= 0 and limit >= 1")
        codes = await self._handle.call("getRoomsPaginated", offset, limit)
        return await self._resolve_codes(codes)
