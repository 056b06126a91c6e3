"""
======================== ÍNDICE / INDEX ========================
1. Descripción general / Overview
2. Componentes principales / Main components
3. Notas de mantenimiento / Maintenance notes

======================== ESPAÑOL ========================
Archivo: `src/cabina/password_cache.py`.
Valida la contraseña de una sala contra su digest almacenado sin enviar el
texto plano, y recuerda validaciones por (sala, billetera).

Componentes detectados:
  - PasswordValidationCache

Notas:
- Toda entrada se borra al cambiar de billetera o de sala.

======================== ENGLISH ========================
File: `src/cabina/password_cache.py`.
Validates a room password against its stored digest without transmitting
the plaintext, and remembers validations per (room, wallet).

Detected components:
  - PasswordValidationCache

Notes:
- Every entry is cleared on wallet or room change.
"""

from __future__ import annotations

import hmac
import time
from typing import Callable, Optional

import structlog

from .directory import RoomDirectory
from .errors import REASON_MESSAGES, ValidationReason
from .ledger import password_digest
from .models import PasswordValidationResult
from .store import PASSWORD_CACHE_PREFIX, KeyValueStore, password_cache_key

logger = structlog.get_logger(__name__)

GENERIC_PASSWORD_ERROR = REASON_MESSAGES[ValidationReason.INVALID_PASSWORD]


class PasswordValidationCache:
    """Validación de contraseña con caché por (sala, billetera).

    Bilingual: Validación local de contraseña con caché acotada en el tiempo.

    Args:
        directory: Read-only room queries.
        store: Keyed store holding ``validated_at`` timestamps.
        ttl_seconds: Lifetime of a cache entry.
        clock: Wall clock, injectable for tests.
    """

    def __init__(
        self,
        directory: RoomDirectory,
        store: KeyValueStore,
        ttl_seconds: float = 1800.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.directory = directory
        self.store = store
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._wallet: Optional[str] = None
        self._room_code: Optional[str] = None

    # -- cache entries -------------------------------------------------

    def is_cached(self, room_code: str, wallet: str) -> bool:
        key = password_cache_key(room_code, wallet)
        entry = self.store.get(key)
        if not entry:
            return False
        validated_at = float(entry.get("validated_at", 0.0))
        if self._clock() - validated_at >= self.ttl_seconds:
            self.store.delete(key)
            return False
        return True

    def _remember(self, room_code: str, wallet: str) -> None:
        self.store.set(password_cache_key(room_code, wallet), {"validated_at": self._clock()})

    def clear(self) -> int:
        keys = self.store.keys(f"{PASSWORD_CACHE_PREFIX}:")
        for key in keys:
            self.store.delete(key)
        if keys:
            logger.info("password_cache_cleared", entries=len(keys))
        return len(keys)

    def on_wallet_changed(self, wallet: Optional[str]) -> None:
        """Borra todo si cambia la billetera activa. / Clear everything on wallet switch."""
        normalized = wallet.lower() if wallet else None
        if normalized != self._wallet:
            self.clear()
        self._wallet = normalized

    def on_room_changed(self, room_code: Optional[str]) -> None:
        if room_code != self._room_code:
            self.clear()
        self._room_code = room_code

    # -- validation ----------------------------------------------------

    async def validate(self, room_code: str, password: str, wallet: str) -> PasswordValidationResult:
        """Valida ``password`` para ``room_code`` en nombre de ``wallet``.

        English:
            1. Read ``{has_password, password_hash}``.
            2. No password: valid, no transaction.
            3. Compare the local digest with the stored one.
            4. Mismatch or any failure: invalid, generic message.
            5. Match: read participant status (skipped on a cache hit).
            6. Already a participant: cache and grant direct access.
            7. Otherwise: valid, a join transaction is required.
        """
        self.on_wallet_changed(wallet)
        self.on_room_changed(room_code)
        log = logger.bind(room_code=room_code, wallet=wallet)
        try:
            has_password, stored_hash = await self.directory.get_password_info(room_code)
            if not has_password:
                return PasswordValidationResult(is_valid=True, requires_transaction=False)

            supplied_hash = password_digest(password)
            if not hmac.compare_digest(supplied_hash.lower(), stored_hash.lower()):
                log.info("password_rejected")
                return PasswordValidationResult(is_valid=False, error=GENERIC_PASSWORD_ERROR)

            if self.is_cached(room_code, wallet):
                log.debug("password_cache_hit")
                return PasswordValidationResult(is_valid=True, is_already_participant=True, from_cache=True)

            is_participant = await self.directory.is_user_participant(room_code, wallet)
            if is_participant:
                self._remember(room_code, wallet)
                log.info("password_accepted_participant")
                return PasswordValidationResult(is_valid=True, is_already_participant=True)

            log.info("password_accepted_join_required")
            return PasswordValidationResult(is_valid=True, requires_transaction=True)
        except Exception as exc:  # noqa: BLE001
            log.warning("password_validation_failed", error_type=type(exc).__name__)
            return PasswordValidationResult(is_valid=False, error=GENERIC_PASSWORD_ERROR)

    def record_join(self, room_code: str, wallet: str) -> None:
        """Cache a validation after a confirmed join."""
        self._remember(room_code, wallet)
