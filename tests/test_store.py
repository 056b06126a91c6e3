"""Pruebas del almacén clave-valor local.

Tests for the local keyed store.
"""

import json

from cabina.store import (
    JsonFileStore,
    MemoryStore,
    password_cache_key,
    recall_vote,
    remember_vote,
    vote_history,
    vote_key,
)

WALLET = "0xAbCdEf0000000000000000000000000000000001"


def test_keys_normalize_wallet_case():
    assert vote_key("R1", WALLET) == vote_key("R1", WALLET.lower())
    assert password_cache_key("R1", WALLET).startswith("pwcache:R1:")


def test_memory_store_prefix_listing():
    store = MemoryStore()
    store.set("vote:a", 1)
    store.set("pwcache:a", 2)
    assert store.keys("vote:") == ["vote:a"]
    store.delete("vote:a")
    assert store.get("vote:a") is None
    store.delete("missing")


def test_json_file_store_persists_across_instances(tmp_path):
    path = tmp_path / "state" / "store.json"
    store = JsonFileStore(path)
    store.set("vote:R1:0xabc", {"candidate_id": 2})
    assert json.loads(path.read_text(encoding="utf-8"))["vote:R1:0xabc"]["candidate_id"] == 2

    reopened = JsonFileStore(path)
    assert reopened.get("vote:R1:0xabc") == {"candidate_id": 2}
    reopened.delete("vote:R1:0xabc")
    assert JsonFileStore(path).keys() == []


def test_remember_and_recall_vote():
    store = MemoryStore()
    remember_vote(store, "R3", WALLET, 1, now=10.0)
    remembered = recall_vote(store, "R3", WALLET.lower())
    assert remembered is not None
    assert remembered.candidate_id == 1
    assert recall_vote(store, "R4", WALLET) is None


def test_vote_history_is_newest_first_and_per_wallet():
    store = MemoryStore()
    remember_vote(store, "R1", WALLET, 0, now=10.0)
    remember_vote(store, "R2", WALLET, 1, now=20.0)
    remember_vote(store, "R1", "0x0000000000000000000000000000000000000002", 1, now=30.0)
    history = vote_history(store, WALLET)
    assert [entry.room_code for entry in history] == ["R2", "R1"]
