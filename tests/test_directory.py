"""Pruebas de consultas de salas.

Tests for read-only room queries.
"""

import asyncio

import pytest

from cabina.directory import RoomDirectory, decode_room
from cabina.errors import ConnectivityError, ValidationError, ValidationReason
from cabina.ledger import ZERO_HASH, password_digest


def _directory(make_service):
    return make_service().directory


def test_decode_room_empty_code_means_missing():
    assert decode_room(("", "", "", "0x0", 0, 0, 0, False, bytes(32), False, 0)) is None


def test_decode_room_accepts_mappings():
    room = decode_room(
        {
            "code": "R1",
            "title": "Board",
            "description": "",
            "creator": "0x0",
            "maxParticipants": 3,
            "participantCount": 1,
            "endTime": 50,
            "hasPassword": False,
            "passwordHash": bytes(32),
            "isActive": True,
            "candidateCount": 2,
        }
    )
    assert room.code == "R1"
    assert room.password_hash == ZERO_HASH
    assert room.candidate_count == 2


def test_get_room_and_password_info(chain, make_service):
    chain.add_room("R2", password="clave")
    directory = _directory(make_service)
    room = asyncio.run(directory.get_room("R2"))
    assert room.has_password
    has_password, stored = asyncio.run(directory.get_password_info("R2"))
    assert has_password
    assert stored == password_digest("clave")
    assert asyncio.run(directory.get_room("NOPE")) is None
    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(directory.get_password_info("NOPE"))
    assert excinfo.value.reason is ValidationReason.ROOM_NOT_FOUND


def test_get_candidates_ordered_by_id(chain, make_service):
    chain.add_room("R3", candidates=("Ana", "Beto", "Carla"))
    candidates = asyncio.run(_directory(make_service).get_candidates("R3"))
    assert [candidate.id for candidate in candidates] == [0, 1, 2]
    assert candidates[2].name == "Carla"


def test_active_rooms_and_pagination(chain, clock, make_service):
    chain.add_room("A", duration=10)
    chain.add_room("B", duration=1000)
    chain.add_room("C", duration=1000)
    clock.advance(20)
    directory = _directory(make_service)
    active = asyncio.run(directory.get_active_rooms())
    assert [room.code for room in active] == ["B", "C"]
    page = asyncio.run(directory.get_rooms_paginated(1, 1))
    assert [room.code for room in page] == ["B"]
    with pytest.raises(ValueError):
        asyncio.run(directory.get_rooms_paginated(-1, 1))
    with pytest.raises(ValueError):
        asyncio.run(directory.get_rooms_paginated(0, 0))


def test_read_failures_surface_as_connectivity_errors(chain, make_service):
    chain.add_room("R1")
    chain.failing_reads.add("getTotalVotes")
    directory = RoomDirectory(make_service().ledger.read_handle())
    with pytest.raises(ConnectivityError):
        asyncio.run(directory.get_total_votes("R1"))
