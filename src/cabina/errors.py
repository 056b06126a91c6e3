"""Taxonomía de errores del motor Cabina.

Error taxonomy for the Cabina engine.

Validation errors are expected and leave the session usable. Transaction
errors mean a submitted mutation did not land. Unexpected errors wrap
anything else so the session can report it generically.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ValidationReason(str, Enum):
    """Motivos de rechazo esperados. / Expected rejection reasons."""

    INVALID_PASSWORD = "invalid_password"
    ROOM_FULL = "room_full"
    ALREADY_JOINED = "already_joined"
    ALREADY_VOTED = "already_voted"
    ROOM_ENDED = "room_ended"
    NOT_PARTICIPANT = "not_participant"
    ROOM_NOT_FOUND = "room_not_found"
    ROOM_EXISTS = "room_exists"
    INVALID_CANDIDATE = "invalid_candidate"
    IN_FLIGHT = "in_flight"
    SIGNATURE_DECLINED = "signature_declined"
    INVALID_INPUT = "invalid_input"


REASON_MESSAGES = {
    ValidationReason.INVALID_PASSWORD: "Invalid password. Please try again.",
    ValidationReason.ROOM_FULL: "This room is full.",
    ValidationReason.ALREADY_JOINED: "You have already joined this room.",
    ValidationReason.ALREADY_VOTED: "You have already voted in this room.",
    ValidationReason.ROOM_ENDED: "Voting in this room has ended.",
    ValidationReason.NOT_PARTICIPANT: "You need to join this room to vote.",
    ValidationReason.ROOM_NOT_FOUND: "Room not found.",
    ValidationReason.ROOM_EXISTS: "A room with this code already exists.",
    ValidationReason.INVALID_CANDIDATE: "Unknown candidate.",
    ValidationReason.IN_FLIGHT: "Another request for this room is still pending.",
    ValidationReason.SIGNATURE_DECLINED: "Signature request was declined in the wallet.",
    ValidationReason.INVALID_INPUT: "Invalid input.",
}

# Substrings of contract revert messages, lower-cased.
_REVERT_PATTERNS = (
    ("room is full", ValidationReason.ROOM_FULL),
    ("room full", ValidationReason.ROOM_FULL),
    ("max participants", ValidationReason.ROOM_FULL),
    ("already joined", ValidationReason.ALREADY_JOINED),
    ("already a participant", ValidationReason.ALREADY_JOINED),
    ("already participant", ValidationReason.ALREADY_JOINED),
    ("already voted", ValidationReason.ALREADY_VOTED),
    ("voting ended", ValidationReason.ROOM_ENDED),
    ("room ended", ValidationReason.ROOM_ENDED),
    ("room has ended", ValidationReason.ROOM_ENDED),
    ("not active", ValidationReason.ROOM_ENDED),
    ("invalid password", ValidationReason.INVALID_PASSWORD),
    ("wrong password", ValidationReason.INVALID_PASSWORD),
    ("incorrect password", ValidationReason.INVALID_PASSWORD),
    ("not a participant", ValidationReason.NOT_PARTICIPANT),
    ("not participant", ValidationReason.NOT_PARTICIPANT),
    ("room already exists", ValidationReason.ROOM_EXISTS),
    ("room exists", ValidationReason.ROOM_EXISTS),
    ("room does not exist", ValidationReason.ROOM_NOT_FOUND),
    ("room not found", ValidationReason.ROOM_NOT_FOUND),
    ("invalid candidate", ValidationReason.INVALID_CANDIDATE),
)


class CabinaError(Exception):
    """Base de todos los errores del motor. / Base of every engine error."""

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class ConnectivityError(CabinaError):
    """Falta firmante o proveedor, o el RPC no responde.

    English: Missing signer/provider or unreachable RPC.
    """


class ValidationError(CabinaError):
    """Rechazo esperado y no fatal.

    English: Expected, non-fatal rejection carrying a ``reason`` code.
    """

    def __init__(self, reason: ValidationReason, message: Optional[str] = None) -> None:
        super().__init__(message or REASON_MESSAGES[reason])
        self.reason = reason


class SignatureRejected(ValidationError):
    """The wallet declined the signature request."""

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(ValidationReason.SIGNATURE_DECLINED, message)


class TransactionError(CabinaError):
    """Transacción enviada pero revertida o con recibo fallido.

    English: Submitted transaction that reverted or produced a failed receipt.
    """

    def __init__(self, message: str, tx_hash: Optional[str] = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class LoadTimeoutError(CabinaError, TimeoutError):
    """La carga o el sondeo superó su límite. / Load or poll exceeded its bound."""


class UnexpectedError(CabinaError):
    """Wraps an uncaught exception so callers can report it generically."""

    def __init__(self, message: str = "An unexpected error occurred. Please try again.") -> None:
        super().__init__(message)


def classify_revert(message: str) -> Optional[ValidationReason]:
    """Traduce un mensaje de reversión del contrato a un motivo de validación.

    English:
        Maps a contract revert message to a validation reason, or ``None``
        when the revert is not one of the expected rejections.
    """
    lowered = (message or "").lower()
    for pattern, reason in _REVERT_PATTERNS:
        if pattern in lowered:
            return reason
    return None
