"""
Security event log.

Append-only audit trail of every lock transition. Each event lands in the
local journal first, then is copied to the user's event collection and the
global one for console visibility. No path may fail the transition it records.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import ValidationError

from .models import SecurityEvent, SecurityEventRecord, SecurityEventType, Severity
from .remote import GLOBAL_EVENTS_COLLECTION, IdentityProvider, RemoteStateMirror, user_events_collection
from .store import SECURITY_EVENTS, LocalStateStore, get_or_create_device_id

logger = logging.getLogger("securewipe.events")


class SecurityEventLog:
    def __init__(
        self,
        store: LocalStateStore,
        mirror: Optional[RemoteStateMirror],
        identity: IdentityProvider,
        journal_limit: int = 200,
    ):
        self.store = store
        self.mirror = mirror
        self.identity = identity
        self.journal_limit = journal_limit

    def record(
        self,
        type: SecurityEventType,
        description: str,
        severity: Severity = Severity.MEDIUM,
        details: Optional[dict[str, Any]] = None,
    ) -> Optional[SecurityEvent]:
        """Build an event stamped with the current user and device, then log it."""
        try:
            event = SecurityEvent(
                type=type,
                description=description,
                severity=severity,
                details=details or {},
                device_id=get_or_create_device_id(self.store),
                user_id=self.identity.get_current_user_id() or "",
            )
        except (ValidationError, OSError) as e:
            logger.error(f"EVENT | could not build {type.value} event: {e}")
            return None
        self.log(event)
        return event

    def log(self, event: SecurityEvent) -> None:
        logger.info(
            f"EVENT | type={event.type.value} severity={event.severity.value} "
            f"device={event.device_id} user={event.user_id or '-'} desc={event.description!r}"
        )
        self._append_local(event)
        self._append_remote(event)

    def recent(self, limit: int = 50) -> list[SecurityEvent]:
        """Return up to `limit` journal entries, oldest first."""
        entries = self.store.get_json(SECURITY_EVENTS) or []
        events = []
        for raw in entries[-limit:]:
            try:
                events.append(SecurityEvent.model_validate(raw))
            except ValidationError:
                logger.warning("EVENT | skipping malformed journal entry")
        return events

    def _append_local(self, event: SecurityEvent) -> None:
        try:
            with self.store.transaction():
                entries = self.store.get_json(SECURITY_EVENTS) or []
                entries.append(event.model_dump(mode="json"))
                self.store.set_json(SECURITY_EVENTS, entries[-self.journal_limit:])
        except OSError as e:
            logger.error(f"EVENT | local journal write failed: {e}")

    def _append_remote(self, event: SecurityEvent) -> None:
        if self.mirror is None or not event.user_id:
            return
        payload = SecurityEventRecord.from_event(event).model_dump(mode="json", by_alias=True)
        self.mirror.append_event(user_events_collection(event.user_id), payload)
        self.mirror.append_event(GLOBAL_EVENTS_COLLECTION, payload)
