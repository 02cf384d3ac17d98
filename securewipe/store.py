"""
Local state store.

Durable key-value store for the lock flag, counters and cached secrets.
It is the source of truth while offline and is shared by the UI thread,
the background monitor and the command listener.

Values are kept as strings, the way they are persisted on the device:
"true"/"false" flags, decimal counters, ISO timestamps and JSON blobs.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional

logger = logging.getLogger("securewipe.store")


# ── Field names ────────────────────────────────────────────────────────

DEVICE_BLOCKED = "device_blocked"
BLOCK_REASON = "block_reason"
BLOCKED_AT = "blocked_at"
UNBLOCKED_AT = "unblocked_at"
FAILED_UNLOCK_ATTEMPTS = "failed_unlock_attempts"
MONITORING_ACTIVE = "monitoring_active"
LAST_MONITORING_CHECK = "last_monitoring_check"
SECURITY_SETTINGS = "security_settings"
SECURITY_KEY = "security_key"
SUSPICIOUS_ACTIVITY_COUNT = "suspicious_activity_count"
DEVICE_ID = "device_id"
SECURITY_EVENTS = "security_events"


class LocalStateStore:
    """
    String key-value store backed by a JSON file.

    Every public call holds a re-entrant lock, so a read that follows a write
    always observes it. Writes go to a temp file that replaces the state file,
    so a crash mid-write leaves the previous snapshot intact.

    Parameters:
        path: state file location; None keeps everything in memory
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._lock = threading.RLock()
        self._data: dict[str, str] = {}
        self._batch_depth = 0
        self._dirty = False
        if path:
            self._load()

    # ── basic operations ──

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError(f"store values must be str, got {type(value).__name__}")
        with self._lock:
            self._data[key] = value
            self._changed()

    def remove(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._changed()

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._data)

    @contextmanager
    def transaction(self) -> Iterator["LocalStateStore"]:
        """
        Group several writes under one lock hold and a single flush.

        Other threads cannot observe a partially applied group. If the body
        raises, the group's writes are discarded and nothing is flushed.
        """
        with self._lock:
            snapshot = dict(self._data)
            self._batch_depth += 1
            try:
                yield self
            except BaseException:
                self._data = snapshot
                if self._batch_depth == 1:
                    self._dirty = False
                raise
            finally:
                self._batch_depth -= 1
                if self._batch_depth == 0 and self._dirty:
                    self._flush()

    def increment(self, key: str, by: int = 1, ceiling: Optional[int] = None) -> int:
        """Atomically add to an integer field and return the new value."""
        with self._lock:
            value = self.get_int(key) + by
            if ceiling is not None:
                value = min(value, ceiling)
            self.set(key, str(value))
            return value

    # ── typed helpers ──

    def get_bool(self, key: str, default: bool = False) -> bool:
        raw = self.get(key)
        if raw is None:
            return default
        return raw == "true"

    def set_bool(self, key: str, value: bool) -> None:
        self.set(key, "true" if value else "false")

    def get_int(self, key: str, default: int = 0) -> int:
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return int(raw)
        except ValueError:
            logger.warning(f"STORE | field={key} holds non-integer value, using {default}")
            return default

    def get_datetime(self, key: str) -> Optional[datetime]:
        raw = self.get(key)
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            logger.warning(f"STORE | field={key} holds invalid timestamp")
            return None

    def set_datetime(self, key: str, value: datetime) -> None:
        self.set(key, value.isoformat())

    def get_json(self, key: str) -> Any:
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"STORE | field={key} holds invalid JSON")
            return None

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, json.dumps(value, default=str))

    # ── persistence ──

    def _changed(self) -> None:
        if self._batch_depth:
            self._dirty = True
        else:
            self._flush()

    def _load(self) -> None:
        if not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as f:
            raw = json.load(f) or {}
        self._data = {str(k): str(v) for k, v in raw.items()}
        logger.info(f"STORE | loaded fields={len(self._data)} path={self.path}")

    def _flush(self) -> None:
        self._dirty = False
        if not self.path:
            return
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".state-", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise


def get_or_create_device_id(store: LocalStateStore) -> str:
    """Return the persisted device id, minting one on first use."""
    with store.transaction():
        device_id = store.get(DEVICE_ID)
        if not device_id:
            device_id = f"device-{uuid.uuid4().hex[:12]}"
            store.set(DEVICE_ID, device_id)
            logger.info(f"STORE | minted device_id={device_id}")
        return device_id
