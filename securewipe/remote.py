"""
Remote state mirror.

The cloud keeps one record per user and one per device, plus event
collections and a queue of remote commands. Every call to it may fail
(no network, expired auth, backend down). The mirror wraps a DocumentStore
so those failures are logged and swallowed: mutations are fire-and-forget
on a single worker thread (which preserves per-writer order), reads wait
for a bounded time and return None on failure.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout, wait
from typing import Any, Callable, Optional, Protocol

import httpx
from pydantic import ValidationError

from .models import (
    DeviceLockState,
    DeviceRecord,
    RemoteCommand,
    RemoteCommandStatus,
    SecuritySettings,
    UserRecord,
    utcnow,
)

logger = logging.getLogger("securewipe.remote")

GLOBAL_EVENTS_COLLECTION = "securityEvents"


def user_events_collection(user_id: str) -> str:
    return f"users/{user_id}/securityEvents"


class RemoteStoreError(Exception):
    """The backend could not be reached or rejected the request."""


class IdentityProvider(Protocol):
    def get_current_user_id(self) -> Optional[str]: ...


class StaticIdentity:
    """Identity provider holding a user id set at login and cleared at logout."""

    def __init__(self, user_id: Optional[str] = None):
        self.user_id = user_id

    def get_current_user_id(self) -> Optional[str]:
        return self.user_id


class DocumentStore(Protocol):
    def read_user_doc(self, user_id: str) -> Optional[dict]: ...
    def update_user_doc(self, user_id: str, patch: dict) -> None: ...
    def read_device_doc(self, device_id: str) -> Optional[dict]: ...
    def update_device_doc(self, device_id: str, patch: dict) -> None: ...
    def append_event(self, collection: str, event: dict) -> str: ...
    def list_pending_commands(self, device_id: str) -> list[dict]: ...
    def update_command(self, command_id: str, patch: dict) -> None: ...


def _deep_merge(target: dict, patch: dict) -> dict:
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


# ═══════════════════════════════════════════════════════════════════════
# In-memory document store, used by the backend and for offline runs
# ═══════════════════════════════════════════════════════════════════════

class InMemoryDocumentStore:
    """Thread-safe dict-backed DocumentStore."""

    def __init__(self):
        self._lock = threading.Lock()
        self.users: dict[str, dict] = {}
        self.devices: dict[str, dict] = {}
        self.collections: dict[str, list[dict]] = {}
        self.commands: dict[str, dict] = {}

    def clear(self) -> None:
        with self._lock:
            self.users.clear()
            self.devices.clear()
            self.collections.clear()
            self.commands.clear()

    def read_user_doc(self, user_id: str) -> Optional[dict]:
        with self._lock:
            doc = self.users.get(user_id)
            return copy.deepcopy(doc) if doc is not None else None

    def update_user_doc(self, user_id: str, patch: dict) -> None:
        with self._lock:
            _deep_merge(self.users.setdefault(user_id, {}), patch)

    def read_device_doc(self, device_id: str) -> Optional[dict]:
        with self._lock:
            doc = self.devices.get(device_id)
            return copy.deepcopy(doc) if doc is not None else None

    def update_device_doc(self, device_id: str, patch: dict) -> None:
        with self._lock:
            _deep_merge(self.devices.setdefault(device_id, {}), patch)

    def append_event(self, collection: str, event: dict) -> str:
        event_id = str(uuid.uuid4())
        with self._lock:
            self.collections.setdefault(collection, []).append(
                {"id": event_id, **copy.deepcopy(event)}
            )
        return event_id

    def list_events(self, collection: str) -> list[dict]:
        with self._lock:
            return copy.deepcopy(self.collections.get(collection, []))

    def enqueue_command(self, command: dict) -> str:
        command_id = command.get("id") or str(uuid.uuid4())
        with self._lock:
            self.commands[command_id] = {**copy.deepcopy(command), "id": command_id}
        return command_id

    def list_pending_commands(self, device_id: str) -> list[dict]:
        with self._lock:
            pending = [
                copy.deepcopy(c) for c in self.commands.values()
                if c.get("deviceId") == device_id
                and c.get("status", RemoteCommandStatus.PENDING.value) == RemoteCommandStatus.PENDING.value
            ]
        return sorted(pending, key=lambda c: str(c.get("createdAt", "")))

    def update_command(self, command_id: str, patch: dict) -> None:
        with self._lock:
            if command_id not in self.commands:
                raise KeyError(command_id)
            _deep_merge(self.commands[command_id], patch)


# ═══════════════════════════════════════════════════════════════════════
# HTTP document store, talks to the FastAPI backend in main.py
# ═══════════════════════════════════════════════════════════════════════

class HttpDocumentStore:
    """
    DocumentStore over the backend's REST API.

    Transport errors and non-2xx replies raise RemoteStoreError; a 404 on a
    read means the record does not exist and returns None.
    """

    def __init__(
        self,
        base_url: str = "",
        timeout_s: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.client = client or httpx.Client(base_url=base_url, timeout=timeout_s)

    def close(self) -> None:
        self.client.close()

    def _request(self, method: str, url: str, json: Any = None) -> Optional[Any]:
        try:
            resp = self.client.request(method, url, json=json)
        except httpx.HTTPError as e:
            raise RemoteStoreError(f"{method} {url} failed: {e}") from e
        if resp.status_code == 404 and method == "GET":
            return None
        if resp.status_code >= 400:
            raise RemoteStoreError(f"{method} {url} returned {resp.status_code}: {resp.text}")
        return resp.json() if resp.content else None

    def read_user_doc(self, user_id: str) -> Optional[dict]:
        return self._request("GET", f"/users/{user_id}")

    def update_user_doc(self, user_id: str, patch: dict) -> None:
        self._request("PATCH", f"/users/{user_id}", json=patch)

    def read_device_doc(self, device_id: str) -> Optional[dict]:
        return self._request("GET", f"/devices/{device_id}")

    def update_device_doc(self, device_id: str, patch: dict) -> None:
        self._request("PATCH", f"/devices/{device_id}", json=patch)

    def append_event(self, collection: str, event: dict) -> str:
        data = self._request("POST", f"/collections/{collection}/events", json=event)
        return (data or {}).get("id", "")

    def list_pending_commands(self, device_id: str) -> list[dict]:
        data = self._request("GET", f"/commands/{device_id}")
        return (data or {}).get("commands", [])

    def update_command(self, command_id: str, patch: dict) -> None:
        self._request("PATCH", f"/commands/{command_id}", json=patch)


# ═══════════════════════════════════════════════════════════════════════
# Best-effort mirror
# ═══════════════════════════════════════════════════════════════════════

class RemoteStateMirror:
    """
    Best-effort view of the cloud lock record.

    Parameters:
        documents: the DocumentStore to mirror into
        timeout_s: how long a read may wait before it is treated as failed
    """

    def __init__(self, documents: DocumentStore, timeout_s: float = 10.0):
        self.documents = documents
        self.timeout_s = timeout_s
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="remote-mirror")
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()

    # ── plumbing ──

    def submit(self, description: str, fn: Callable[..., Any], *args: Any) -> Optional[Future]:
        """Queue a mutation; failures are logged, never raised."""
        try:
            future = self._executor.submit(fn, *args)
        except RuntimeError as e:
            logger.warning(f"REMOTE | {description} dropped: {e}")
            return None
        with self._pending_lock:
            self._pending.add(future)

        def _done(f: Future) -> None:
            with self._pending_lock:
                self._pending.discard(f)
            exc = f.exception()
            if exc is not None:
                logger.warning(f"REMOTE | {description} failed: {exc!r}")

        future.add_done_callback(_done)
        return future

    def read(self, description: str, fn: Callable[..., Any], *args: Any) -> Optional[Any]:
        """Run a read with a bounded wait; any failure yields None."""
        try:
            future = self._executor.submit(fn, *args)
        except RuntimeError as e:
            logger.warning(f"REMOTE | {description} skipped: {e}")
            return None
        try:
            return future.result(timeout=self.timeout_s)
        except FutureTimeout:
            future.cancel()
            logger.warning(f"REMOTE | {description} timed out after {self.timeout_s}s")
        except Exception as e:
            logger.warning(f"REMOTE | {description} failed: {e!r}")
        return None

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued mutations. Returns True if all completed."""
        with self._pending_lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    # ── lock record ──

    def push_lock_state(self, user_id: str, device_id: str, state: DeviceLockState) -> None:
        now = utcnow().isoformat()
        if state.is_blocked:
            blocked_at = (state.blocked_at or utcnow()).isoformat()
            user_patch = {
                "deviceBlocked": True,
                "blockedAt": blocked_at,
                "blockReason": state.block_reason.value,
            }
            status = {"isBlocked": True, "blockedAt": blocked_at, "blockReason": state.block_reason.value}
        else:
            user_patch = {"deviceBlocked": False, "unblockedAt": now}
            status = {"isBlocked": False, "blockedAt": None, "blockReason": None}

        if user_id:
            self.submit(f"user lock update user={user_id}", self.documents.update_user_doc, user_id, user_patch)
        if device_id:
            self.submit(
                f"device lock update device={device_id}",
                self.documents.update_device_doc,
                device_id,
                {"status": status, "lastOnline": now},
            )

    def fetch_user(self, user_id: str) -> Optional[UserRecord]:
        raw = self.read(f"read user={user_id}", self.documents.read_user_doc, user_id)
        if raw is None:
            return None
        try:
            return UserRecord.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"REMOTE | user={user_id} record rejected: {e.error_count()} errors")
            return None

    def fetch_device(self, device_id: str) -> Optional[DeviceRecord]:
        raw = self.read(f"read device={device_id}", self.documents.read_device_doc, device_id)
        if raw is None:
            return None
        try:
            return DeviceRecord.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"REMOTE | device={device_id} record rejected: {e.error_count()} errors")
            return None

    # ── everything else ──

    def push_settings(self, user_id: str, settings: SecuritySettings) -> None:
        self.submit(
            f"settings update user={user_id}",
            self.documents.update_user_doc,
            user_id,
            {"securitySettings": settings.model_dump(mode="json")},
        )

    def update_user(self, user_id: str, patch: dict) -> Optional[Future]:
        return self.submit(f"user update user={user_id}", self.documents.update_user_doc, user_id, patch)

    def update_device(self, device_id: str, patch: dict) -> Optional[Future]:
        return self.submit(f"device update device={device_id}", self.documents.update_device_doc, device_id, patch)

    def append_event(self, collection: str, event: dict) -> Optional[Future]:
        return self.submit(f"event append collection={collection}", self.documents.append_event, collection, event)

    def pending_commands(self, device_id: str) -> Optional[list[RemoteCommand]]:
        raw = self.read(f"poll commands device={device_id}", self.documents.list_pending_commands, device_id)
        if raw is None:
            return None
        commands = []
        for item in raw:
            try:
                commands.append(RemoteCommand.model_validate(item))
            except ValidationError as e:
                logger.warning(f"REMOTE | command rejected: {e.error_count()} errors")
        return commands

    def update_command(self, command_id: str, patch: dict) -> Optional[Future]:
        return self.submit(f"command update id={command_id}", self.documents.update_command, command_id, patch)
