"""
Test Session Stores, call registration and the results writer

Run with: pytest tests/test_persistence.py
"""

import sys
import os
import json
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from carecall.persistence import (
    HealthCheckResultWriter,
    InMemorySessionStore,
    JsonFileSessionStore,
    SessionStoreError,
    register_call,
)
from carecall.utils.helpers import health_check_key, normalize_phone, parse_health_check_key


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_in_memory_ttl_expiry():
    clock = FakeClock()
    store = InMemorySessionStore(clock=clock)
    store.set("k", {"a": 1}, ttl_seconds=3600)

    clock.now += 3599
    assert store.get("k") == {"a": 1}

    clock.now += 1
    assert store.get("k") is None
    assert store.keys() == []

    print("✓ TTL expiry test passed")


def test_in_memory_returns_copies():
    store = InMemorySessionStore()
    value = {"answers": [1]}
    store.set("k", value)
    value["answers"].append(2)

    loaded = store.get("k")
    assert loaded == {"answers": [1]}
    loaded["answers"].append(3)
    assert store.get("k") == {"answers": [1]}


def test_in_memory_delete_missing_is_noop():
    store = InMemorySessionStore()
    store.delete("nothing")
    assert store.get("nothing") is None


def test_file_store_round_trip_and_ttl(tmp_path):
    clock = FakeClock()
    store = JsonFileSessionStore(str(tmp_path), clock=clock)
    key = health_check_key("u-1", "c-1")

    store.set(key, {"step": "await_answer"}, ttl_seconds=60)
    assert store.get(key) == {"step": "await_answer"}
    assert len(list(tmp_path.iterdir())) == 1

    clock.now += 61
    assert store.get(key) is None
    assert list(tmp_path.iterdir()) == []


def test_file_store_corrupt_file_raises(tmp_path):
    store = JsonFileSessionStore(str(tmp_path))
    store.set("session:c-1", {"ok": True})
    path = next(tmp_path.iterdir())
    path.write_text("{not json")

    with pytest.raises(SessionStoreError):
        store.get("session:c-1")

    store.delete("session:c-1")
    store.delete("session:c-1")
    assert store.get("session:c-1") is None


def test_register_call_writes_session_and_mappings():
    store = InMemorySessionStore()
    record = register_call(store, "c-1", "u-1", phone="+1 (555) 010-2030")

    assert record['callType'] == "general"
    assert record['healthCheckCompleted'] is False
    assert store.get("session:c-1")['userId'] == "u-1"
    assert store.get("rag:user:u-1") == {'conversationId': "c-1"}
    assert store.get("rag:phone:+15550102030") == {'conversationId': "c-1"}


def test_register_call_rejects_bad_input():
    store = InMemorySessionStore()
    with pytest.raises(ValueError):
        register_call(store, "c-1", "u-1", call_type="emergency")
    with pytest.raises(ValueError):
        register_call(store, "", "u-1")
    with pytest.raises(ValueError):
        register_call(store, "c-1", "tenant:u-1")


def test_key_helpers():
    assert health_check_key("u-1", "c-9") == "health_check:u-1:c-9"
    assert parse_health_check_key("health_check:u-1:c-9") == ("u-1", "c-9")
    assert parse_health_check_key("health_check:u-1:call:abc") == ("u-1", "call:abc")
    assert parse_health_check_key("health_check::c-9") is None
    assert parse_health_check_key("health_check:u-1") is None
    assert parse_health_check_key("rag:topic:c-9") is None
    assert parse_health_check_key(None) is None
    assert normalize_phone("+44 20-7946 (0000)") == "+442079460000"


def test_results_writer(tmp_path):
    writer = HealthCheckResultWriter(str(tmp_path))
    path = writer.persist_health_check_results(
        "u-1", "c-1",
        {'health_log': {'overall_wellbeing': 7}},
        [{'question_index': 0, 'is_valid': True}],
    )

    assert os.path.isabs(path)
    assert os.path.dirname(path) == str((tmp_path / "u-1").absolute())
    with open(path) as f:
        saved = json.load(f)
    assert saved['conversation_id'] == "c-1"
    assert saved['parsed']['health_log']['overall_wellbeing'] == 7
    assert len(saved['answers']) == 1
