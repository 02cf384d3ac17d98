"""
Tests for the security event log — local journal, remote copies, failure isolation.
"""

from securewipe.events import SecurityEventLog
from securewipe.models import SecurityEvent, SecurityEventType, Severity
from securewipe.remote import (
    GLOBAL_EVENTS_COLLECTION,
    InMemoryDocumentStore,
    RemoteStateMirror,
    RemoteStoreError,
    StaticIdentity,
    user_events_collection,
)
from securewipe.store import LocalStateStore


class BrokenDocumentStore:
    def append_event(self, collection, event):
        raise RemoteStoreError("backend down")


def _log(documents=None, user_id="user-1", limit=200):
    store = LocalStateStore()
    mirror = RemoteStateMirror(documents if documents is not None else InMemoryDocumentStore(), timeout_s=2)
    return SecurityEventLog(store, mirror, StaticIdentity(user_id), journal_limit=limit)


def test_record_stamps_device_and_user():
    log = _log()
    event = log.record(SecurityEventType.DEVICE_BLOCKED, "Device blocked: test", severity=Severity.HIGH)
    assert event.device_id.startswith("device-")
    assert event.user_id == "user-1"
    assert log.recent() == [event]


def test_event_copied_to_user_and_global_collections():
    documents = InMemoryDocumentStore()
    log = _log(documents)
    log.record(SecurityEventType.FAILED_UNLOCK, "Failed unlock attempt (1/5)")
    assert log.mirror.drain(5)

    for collection in (user_events_collection("user-1"), GLOBAL_EVENTS_COLLECTION):
        events = documents.list_events(collection)
        assert len(events) == 1
        assert events[0]["type"] == "failed_unlock"
        assert events[0]["userId"] == "user-1"
        assert "deviceId" in events[0]


def test_signed_out_events_stay_local():
    documents = InMemoryDocumentStore()
    log = _log(documents, user_id=None)
    log.record(SecurityEventType.SYSTEM_ALERT, "alert", severity=Severity.LOW)
    assert log.mirror.drain(5)
    assert documents.collections == {}
    assert len(log.recent()) == 1


def test_remote_failure_never_raises():
    log = _log(BrokenDocumentStore())
    log.log(SecurityEvent(type=SecurityEventType.DEVICE_UNBLOCKED, description="Device unblocked", user_id="u"))
    assert log.mirror.drain(5)
    assert log.recent()[0].type == SecurityEventType.DEVICE_UNBLOCKED


def test_journal_is_capped():
    log = _log(limit=3)
    for i in range(5):
        log.record(SecurityEventType.SUSPICIOUS_ACTIVITY, f"sample {i}")
    assert [e.description for e in log.recent()] == ["sample 2", "sample 3", "sample 4"]
