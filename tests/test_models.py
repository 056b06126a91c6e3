"""Pruebas de modelos de dominio.

Tests for domain models.
"""

import re

import pytest
from pydantic import ValidationError

from cabina.models import (
    FlagState,
    GaslessErrorKind,
    GaslessJoinResult,
    ParticipantRecord,
    Room,
    RoomDraft,
    generate_room_code,
)


def _room(**overrides):
    data = {
        "code": "ROOM1",
        "max_participants": 2,
        "participant_count": 0,
        "end_time": 1_000,
    }
    data.update(overrides)
    return Room(**data)


def test_generate_room_code_format():
    code = generate_room_code()
    assert re.fullmatch(r"ROOM[0-9A-Z]{6}", code)


def test_room_capacity_and_activity():
    assert _room(participant_count=2).is_full
    assert not _room(participant_count=1).is_full
    room = _room()
    assert room.is_active_at(999)
    assert not room.is_active_at(1_000)
    assert room.seconds_left(400) == 600
    assert room.seconds_left(5_000) == 0


def test_room_draft_requires_password_when_protected():
    with pytest.raises(ValidationError):
        RoomDraft(code="R", title="T", max_participants=1, duration_hours=1, has_password=True)
    draft = RoomDraft(code=" R ", title=" T ", max_participants=1, duration_hours=1, has_password=True, password="pw")
    assert draft.code == "R"
    assert draft.title == "T"


def test_room_draft_rejects_invalid_limits():
    with pytest.raises(ValidationError):
        RoomDraft(code="R", title="T", max_participants=0, duration_hours=1)
    with pytest.raises(ValidationError):
        RoomDraft(code="R", title="T", max_participants=1, duration_hours=0)
    with pytest.raises(ValueError):
        RoomDraft(code="R", title="T", max_participants=1, duration_hours=1, candidates=[{"name": "A"}]).require_candidates()


def test_participant_record_pending_then_confirmed():
    record = ParticipantRecord()
    record.mark_pending_join()
    assert record.is_participant.value
    assert record.is_participant.pending
    record.confirm_join()
    assert record.is_participant.state is FlagState.CONFIRMED
    record.rollback_join()
    assert record.is_participant.value


def test_participant_record_rollback_only_touches_pending():
    record = ParticipantRecord()
    record.mark_pending_vote()
    record.rollback_vote()
    assert not record.has_voted.value
    assert record.has_voted.state is FlagState.UNKNOWN


def test_reconcile_overwrites_optimistic_flags():
    record = ParticipantRecord()
    record.mark_pending_join()
    record.mark_pending_vote()
    record.reconcile(is_participant=False, has_voted=False)
    assert not record.is_participant.value
    assert not record.has_voted.value
    assert record.is_participant.state is FlagState.CONFIRMED


def test_gasless_result_only_unreachable_is_retryable():
    assert GaslessJoinResult(success=False, error_kind=GaslessErrorKind.UNREACHABLE).retryable
    assert not GaslessJoinResult(success=False, error_kind=GaslessErrorKind.DECLINED).retryable
    assert not GaslessJoinResult(success=True, transaction_hash="0x1").retryable
