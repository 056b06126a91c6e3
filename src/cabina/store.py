"""Almacén local clave-valor para anotaciones por (sala, billetera).

Local keyed store for per-(room, wallet) annotations: the remembered vote
choice and password validation cache entries. Nothing stored here has any
authority; the ledger is the only source of truth.
"""

from __future__ import annotations

import json
import shutil
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import structlog

from .models import RememberedVote

logger = structlog.get_logger(__name__)

VOTE_PREFIX = "vote"
PASSWORD_CACHE_PREFIX = "pwcache"


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> List[str]: ...


def _normalize_wallet(wallet: str) -> str:
    return wallet.strip().lower()


def vote_key(room_code: str, wallet: str) -> str:
    return f"{VOTE_PREFIX}:{room_code}:{_normalize_wallet(wallet)}"


def password_cache_key(room_code: str, wallet: str) -> str:
    return f"{PASSWORD_CACHE_PREFIX}:{room_code}:{_normalize_wallet(wallet)}"


class MemoryStore:
    """Almacén en memoria. / In-memory store."""

    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [key for key in self._data if key.startswith(prefix)]


def write_atomic(path: Path, content: bytes) -> None:
    """Escritura atómica usando archivo temporal.

    English: Atomic write using a temporary file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(delete=False, dir=str(path.parent)) as tmp_file:
        tmp_file.write(content)
        temp_name = tmp_file.name
    shutil.move(temp_name, path)


class JsonFileStore:
    """Almacén persistido en un único archivo JSON.

    English: Store persisted to a single JSON file, rewritten atomically on
    every mutation.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()
        self._data = self._read()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.error("store_corrupt_file", path=str(self.path), error=str(exc))
            raise
        if not isinstance(data, dict):
            raise ValueError(f"Store file must hold a JSON object: {self.path}")
        return data

    def _flush(self) -> None:
        write_atomic(
            self.path,
            json.dumps(self._data, ensure_ascii=False, indent=2, sort_keys=True).encode("utf-8"),
        )

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            self._flush()

    def delete(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._flush()

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [key for key in self._data if key.startswith(prefix)]


def remember_vote(
    store: KeyValueStore,
    room_code: str,
    wallet: str,
    candidate_id: int,
    *,
    now: Optional[float] = None,
) -> RememberedVote:
    """Guarda la elección local para mostrarla luego.

    English: Persist the chosen candidate for later display. The ciphertext
    hides the choice from the ledger, so this is the only place it survives.
    """
    entry = RememberedVote(
        room_code=room_code,
        wallet=_normalize_wallet(wallet),
        candidate_id=candidate_id,
        voted_at=time.time() if now is None else now,
    )
    store.set(vote_key(room_code, wallet), entry.model_dump())
    return entry


def recall_vote(store: KeyValueStore, room_code: str, wallet: str) -> Optional[RememberedVote]:
    raw = store.get(vote_key(room_code, wallet))
    if raw is None:
        return None
    return RememberedVote.model_validate(raw)


def vote_history(store: KeyValueStore, wallet: str) -> List[RememberedVote]:
    """Historial de votos recordados de una billetera, más reciente primero.

    English: Remembered votes of a wallet, newest first.
    """
    normalized = _normalize_wallet(wallet)
    history: List[RememberedVote] = []
    for key in store.keys(f"{VOTE_PREFIX}:"):
        if not key.endswith(f":{normalized}"):
            continue
        raw = store.get(key)
        if raw is not None:
            history.append(RememberedVote.model_validate(raw))
    history.sort(key=lambda entry: entry.voted_at, reverse=True)
    return history
