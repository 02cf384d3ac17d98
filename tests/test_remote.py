"""
Tests for the best-effort remote mirror — bounded reads, ordered writes.
"""

import threading

from securewipe.remote import InMemoryDocumentStore, RemoteStateMirror


class SlowDocumentStore(InMemoryDocumentStore):
    """Writes block until released; reads are counted."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()
        self.reads = 0

    def update_user_doc(self, user_id, patch):
        self.release.wait(5)
        super().update_user_doc(user_id, patch)

    def read_user_doc(self, user_id):
        self.reads += 1
        return super().read_user_doc(user_id)


def test_timed_out_read_is_cancelled():
    documents = SlowDocumentStore()
    mirror = RemoteStateMirror(documents, timeout_s=0.1)
    mirror.update_user("user-1", {"email": "owner@example.com"})

    assert mirror.fetch_user("user-1") is None
    documents.release.set()
    assert mirror.drain(5)
    assert mirror.fetch_user("user-1").email == "owner@example.com"
    assert documents.reads == 1
    mirror.close()


def test_reads_see_earlier_writes():
    documents = InMemoryDocumentStore()
    mirror = RemoteStateMirror(documents, timeout_s=2)
    mirror.update_device("device-1", {"status": {"isBlocked": True}})
    record = mirror.fetch_device("device-1")
    assert record.status.is_blocked
    mirror.close()


def test_invalid_record_is_rejected():
    documents = InMemoryDocumentStore()
    documents.update_user_doc("user-1", {"deviceBlocked": "sometimes"})
    mirror = RemoteStateMirror(documents, timeout_s=2)
    assert mirror.fetch_user("user-1") is None
    mirror.close()
