"""
Tests for the local state store — durability, typed fields, atomic counters.
"""

import json
import threading

from securewipe.store import (
    DEVICE_BLOCKED,
    DEVICE_ID,
    FAILED_UNLOCK_ATTEMPTS,
    SECURITY_SETTINGS,
    LocalStateStore,
    get_or_create_device_id,
)


def test_read_after_write():
    store = LocalStateStore()
    store.set(DEVICE_BLOCKED, "true")
    assert store.get(DEVICE_BLOCKED) == "true"
    assert store.get_bool(DEVICE_BLOCKED) is True
    store.remove(DEVICE_BLOCKED)
    assert store.get(DEVICE_BLOCKED) is None
    assert store.get_bool(DEVICE_BLOCKED) is False


def test_survives_restart(tmp_path):
    path = str(tmp_path / "state.json")
    store = LocalStateStore(path)
    store.set_bool(DEVICE_BLOCKED, True)
    store.set(FAILED_UNLOCK_ATTEMPTS, "3")
    store.set_json(SECURITY_SETTINGS, {"enabled": True})

    reopened = LocalStateStore(path)
    assert reopened.get_bool(DEVICE_BLOCKED) is True
    assert reopened.get_int(FAILED_UNLOCK_ATTEMPTS) == 3
    assert reopened.get_json(SECURITY_SETTINGS) == {"enabled": True}


def test_transaction_flushes_once_at_end(tmp_path):
    path = tmp_path / "state.json"
    store = LocalStateStore(str(path))
    with store.transaction():
        store.set_bool(DEVICE_BLOCKED, True)
        assert not path.exists()
        store.set(FAILED_UNLOCK_ATTEMPTS, "1")
    data = json.loads(path.read_text())
    assert data == {DEVICE_BLOCKED: "true", FAILED_UNLOCK_ATTEMPTS: "1"}


def test_transaction_discards_writes_when_body_raises(tmp_path):
    path = tmp_path / "state.json"
    store = LocalStateStore(str(path))
    store.set(FAILED_UNLOCK_ATTEMPTS, "2")
    try:
        with store.transaction():
            store.set_bool(DEVICE_BLOCKED, True)
            store.increment(FAILED_UNLOCK_ATTEMPTS)
            raise RuntimeError("interrupted")
    except RuntimeError:
        pass
    assert store.get(DEVICE_BLOCKED) is None
    assert store.get_int(FAILED_UNLOCK_ATTEMPTS) == 2
    assert json.loads(path.read_text()) == {FAILED_UNLOCK_ATTEMPTS: "2"}


def test_nested_transaction_failure_keeps_outer_writes(tmp_path):
    path = tmp_path / "state.json"
    store = LocalStateStore(str(path))
    with store.transaction():
        store.set_bool(DEVICE_BLOCKED, True)
        try:
            with store.transaction():
                store.set(FAILED_UNLOCK_ATTEMPTS, "5")
                raise ValueError("inner")
        except ValueError:
            pass
    assert json.loads(path.read_text()) == {DEVICE_BLOCKED: "true"}


def test_rejects_non_string_values():
    store = LocalStateStore()
    try:
        store.set(FAILED_UNLOCK_ATTEMPTS, 3)
    except TypeError:
        pass
    else:
        raise AssertionError("expected TypeError")


def test_garbage_values_fall_back_to_defaults():
    store = LocalStateStore()
    store.set(FAILED_UNLOCK_ATTEMPTS, "many")
    store.set(SECURITY_SETTINGS, "{not json")
    assert store.get_int(FAILED_UNLOCK_ATTEMPTS) == 0
    assert store.get_json(SECURITY_SETTINGS) is None


def test_increment_is_atomic_across_threads():
    store = LocalStateStore()

    def worker():
        for _ in range(200):
            store.increment(FAILED_UNLOCK_ATTEMPTS)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert store.get_int(FAILED_UNLOCK_ATTEMPTS) == 1600


def test_increment_respects_ceiling():
    store = LocalStateStore()
    for _ in range(7):
        value = store.increment(FAILED_UNLOCK_ATTEMPTS, ceiling=5)
    assert value == 5


def test_device_id_is_stable(tmp_path):
    path = str(tmp_path / "state.json")
    first = get_or_create_device_id(LocalStateStore(path))
    assert first.startswith("device-")
    assert get_or_create_device_id(LocalStateStore(path)) == first
    assert LocalStateStore(path).get(DEVICE_ID) == first
