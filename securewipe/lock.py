"""
Lock/unlock state machine.

    UNLOCKED --block(reason)------------------------------> LOCKED
    LOCKED   --attempt_unlock(key), key matches-----------> UNLOCKED
    LOCKED   --attempt_unlock(key), mismatch, n+1 < 5-----> LOCKED  (n += 1)
    LOCKED   --attempt_unlock(key), mismatch, n+1 >= 5----> LOCKED  (too_many_failed_attempts)
    either   --suspicion >= threshold and auto-block------> LOCKED  (suspicious_activity)

The local store is written before any call returns. Cloud writes, audit
copies and notifications are queued on the mirror and never raise here.
Escalation is purely attempt-count based; there is no lockout timer.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import ValidationError

from . import keycodec
from .models import (
    MAX_FAILED_ATTEMPTS,
    VALID_TRANSITIONS,
    BlockReason,
    DeviceInfo,
    DeviceLockState,
    LockEvent,
    LockState,
    SecurityEventType,
    SecuritySettings,
    Severity,
    UnlockResult,
    block_message_for,
    utcnow,
)
from .notify import Notifier
from .events import SecurityEventLog
from .remote import IdentityProvider, RemoteStateMirror
from .store import (
    BLOCK_REASON,
    BLOCKED_AT,
    DEVICE_BLOCKED,
    FAILED_UNLOCK_ATTEMPTS,
    LAST_MONITORING_CHECK,
    MONITORING_ACTIVE,
    SECURITY_KEY,
    SECURITY_SETTINGS,
    SUSPICIOUS_ACTIVITY_COUNT,
    UNBLOCKED_AT,
    LocalStateStore,
    get_or_create_device_id,
)

logger = logging.getLogger("securewipe.lock")


# ── User-facing messages ───────────────────────────────────────────────

MSG_UNLOCKED = "Device unlocked."
MSG_ALREADY_UNLOCKED = "Device is already unlocked."
MSG_MALFORMED_KEY = "The recovery key must have 20 digits."
MSG_KEY_UNAVAILABLE = (
    "The recovery key is not available on this device. "
    "Connect to the internet and try again."
)
MSG_LOCKED_OUT = "Too many failed attempts. Contact support."


def failed_attempt_message(attempts: int) -> str:
    return f"Incorrect recovery key. Failed attempt {attempts}/{MAX_FAILED_ATTEMPTS}."


def coerce_reason(reason: Union[BlockReason, str, None]) -> BlockReason:
    """Map a reason code to BlockReason; unknown remote codes count as remote commands."""
    if isinstance(reason, BlockReason):
        return reason
    try:
        return BlockReason(reason or BlockReason.NONE.value)
    except ValueError:
        return BlockReason.REMOTE_COMMAND


class DeviceLockService:
    """
    Entry points used by the UI, the background monitor and the remote
    command listener.

    Parameters:
        store: local state, the offline source of truth
        mirror: best-effort cloud mirror, or None when running offline
        events: audit log every transition is recorded to
        identity: resolves the signed-in user id (None when signed out)
        notifier: sends the "device blocked" email, optional
        device_info: descriptive data attached to block events and emails
    """

    def __init__(
        self,
        store: LocalStateStore,
        mirror: Optional[RemoteStateMirror],
        events: SecurityEventLog,
        identity: IdentityProvider,
        notifier: Optional[Notifier] = None,
        device_info: Optional[DeviceInfo] = None,
    ):
        self.store = store
        self.mirror = mirror
        self.events = events
        self.identity = identity
        self.notifier = notifier
        self.device_id = get_or_create_device_id(store)
        self.device_info = device_info or DeviceInfo(id=self.device_id)
        self.account_email: Optional[str] = None
        # Serializes whole transitions; the store lock only covers single calls
        self._lock = threading.RLock()

    # ═══════════════════════════════════════════════════════════════════
    # Reads
    # ═══════════════════════════════════════════════════════════════════

    def get_state(self) -> DeviceLockState:
        with self.store.transaction():
            attempts = self.store.get_int(FAILED_UNLOCK_ATTEMPTS)
            return DeviceLockState(
                is_blocked=self.store.get_bool(DEVICE_BLOCKED),
                block_reason=coerce_reason(self.store.get(BLOCK_REASON)),
                blocked_at=self.store.get_datetime(BLOCKED_AT),
                failed_attempts=max(0, min(attempts, MAX_FAILED_ATTEMPTS)),
            )

    def is_blocked(self) -> bool:
        return self.store.get_bool(DEVICE_BLOCKED)

    def get_failed_attempts(self) -> int:
        return self.get_state().failed_attempts

    def get_recovery_key_display(self) -> str:
        return keycodec.format(keycodec.clean(self.store.get(SECURITY_KEY) or ""))

    def block_message(self) -> str:
        return block_message_for(self.store.get(BLOCK_REASON))

    # ═══════════════════════════════════════════════════════════════════
    # Block
    # ═══════════════════════════════════════════════════════════════════

    def block(self, reason: Union[BlockReason, str], details: Optional[dict[str, Any]] = None) -> DeviceLockState:
        """
        Move to LOCKED. Blocking a blocked device refreshes reason and timestamp.

        Once the attempt cap is reached the reason stays too_many_failed_attempts.
        """
        reason = BlockReason(reason)
        if reason == BlockReason.NONE:
            raise ValueError("block reason must not be 'none'")

        with self._lock:
            current = self.get_state()
            if current.failed_attempts >= MAX_FAILED_ATTEMPTS:
                reason = BlockReason.TOO_MANY_FAILED_ATTEMPTS
            event = LockEvent.BLOCK
            if reason == BlockReason.SUSPICIOUS_ACTIVITY:
                event = LockEvent.MONITOR_THRESHOLD
            self._transition(current.state, event)

            now = utcnow()
            with self.store.transaction():
                self.store.set_bool(DEVICE_BLOCKED, True)
                self.store.set(BLOCK_REASON, reason.value)
                self.store.set_datetime(BLOCKED_AT, now)
            state = self.get_state()

        logger.warning(f"BLOCK | device={self.device_id} reason={reason.value} attempts={state.failed_attempts}")
        self._push(state)
        self.events.record(
            SecurityEventType.DEVICE_BLOCKED,
            f"Device blocked: {reason.value}",
            severity=Severity.HIGH,
            details={"reason": reason.value, "device": self.device_info.model_dump(), **(details or {})},
        )
        self._notify_blocked(reason)
        return state

    def manual_block(self, reason: Union[BlockReason, str] = BlockReason.MANUAL_LOCK) -> None:
        self.block(reason)

    # ═══════════════════════════════════════════════════════════════════
    # Unlock
    # ═══════════════════════════════════════════════════════════════════

    def attempt_unlock(self, key: str) -> UnlockResult:
        """
        Try to unlock with the recovery key.

        Separators in either key are ignored; the digits must match exactly,
        leading zeros included. A malformed key is rejected without touching
        the attempt counter.
        """
        if not isinstance(key, str):
            raise TypeError(f"recovery key must be str, got {type(key).__name__}")

        with self._lock:
            state = self.get_state()
            if not state.is_blocked:
                return UnlockResult(success=True, failed_attempts=state.failed_attempts, message=MSG_ALREADY_UNLOCKED)

            if not keycodec.is_well_formed(key):
                logger.info(f"UNLOCK | device={self.device_id} rejected malformed key")
                return UnlockResult(success=False, failed_attempts=state.failed_attempts, message=MSG_MALFORMED_KEY)

            stored = self._stored_key()
            if not stored:
                logger.warning(f"UNLOCK | device={self.device_id} no cached recovery key")
                return UnlockResult(success=False, failed_attempts=state.failed_attempts, message=MSG_KEY_UNAVAILABLE)

            if keycodec.matches(key, stored):
                self._clear_block(LockEvent.UNLOCK_MATCH, state)
                return UnlockResult(success=True, failed_attempts=0, message=MSG_UNLOCKED)

            return self._register_failed_attempt(state)

    def manual_unblock(self) -> None:
        """Administrative unblock. A no-op on an unlocked device."""
        with self._lock:
            state = self.get_state()
            if not state.is_blocked:
                logger.info(f"UNBLOCK | device={self.device_id} already unlocked")
                return
            self._clear_block(LockEvent.ADMIN_UNBLOCK, state)

    def _register_failed_attempt(self, state: DeviceLockState) -> UnlockResult:
        if state.failed_attempts >= MAX_FAILED_ATTEMPTS:
            self.events.record(
                SecurityEventType.FAILED_UNLOCK,
                f"Failed unlock attempt after lockout ({MAX_FAILED_ATTEMPTS}/{MAX_FAILED_ATTEMPTS})",
                severity=Severity.HIGH,
            )
            return UnlockResult(success=False, failed_attempts=MAX_FAILED_ATTEMPTS, message=MSG_LOCKED_OUT)

        attempts = self.store.increment(FAILED_UNLOCK_ATTEMPTS, ceiling=MAX_FAILED_ATTEMPTS)
        reached_cap = attempts >= MAX_FAILED_ATTEMPTS
        self._transition(LockState.LOCKED, LockEvent.UNLOCK_MISMATCH_CAP if reached_cap else LockEvent.UNLOCK_MISMATCH)
        logger.info(f"UNLOCK | device={self.device_id} mismatch attempts={attempts}/{MAX_FAILED_ATTEMPTS}")

        self.events.record(
            SecurityEventType.FAILED_UNLOCK,
            f"Failed unlock attempt ({attempts}/{MAX_FAILED_ATTEMPTS})",
            severity=Severity.HIGH if attempts >= 3 else Severity.MEDIUM,
        )
        if reached_cap:
            self.block(BlockReason.TOO_MANY_FAILED_ATTEMPTS)
            return UnlockResult(success=False, failed_attempts=attempts, message=MSG_LOCKED_OUT)
        return UnlockResult(success=False, failed_attempts=attempts, message=failed_attempt_message(attempts))

    def _clear_block(self, event: LockEvent, previous: DeviceLockState) -> None:
        self._transition(previous.state, event)
        with self.store.transaction():
            self.store.set_bool(DEVICE_BLOCKED, False)
            self.store.set(BLOCK_REASON, BlockReason.NONE.value)
            self.store.remove(BLOCKED_AT)
            self.store.set(FAILED_UNLOCK_ATTEMPTS, "0")
            self.store.set(SUSPICIOUS_ACTIVITY_COUNT, "0")
            self.store.set_datetime(UNBLOCKED_AT, utcnow())
        state = self.get_state()

        logger.info(f"UNBLOCK | device={self.device_id} via={event.value} previous_reason={previous.block_reason.value}")
        self._push(state)
        self.events.record(
            SecurityEventType.DEVICE_UNBLOCKED,
            "Device unblocked" if event == LockEvent.UNLOCK_MATCH else "Device unblocked by administrator",
            severity=Severity.MEDIUM,
            details={"via": event.value, "previous_reason": previous.block_reason.value},
        )

    def _stored_key(self) -> str:
        """Cached key, refreshed from the user record when the cache is empty."""
        stored = keycodec.clean(self.store.get(SECURITY_KEY) or "")
        if stored or self.mirror is None:
            return stored
        user_id = self.identity.get_current_user_id()
        if not user_id:
            return ""
        record = self.mirror.fetch_user(user_id)
        if record is None or not record.security_key:
            return ""
        stored = keycodec.clean(record.security_key)
        self.store.set(SECURITY_KEY, stored)
        logger.info(f"UNLOCK | cached recovery key {keycodec.masked(stored)} from user record")
        return stored

    # ═══════════════════════════════════════════════════════════════════
    # Suspicious activity
    # ═══════════════════════════════════════════════════════════════════

    def get_security_settings(self) -> SecuritySettings:
        raw = self.store.get_json(SECURITY_SETTINGS)
        if raw is None:
            return SecuritySettings()
        try:
            return SecuritySettings.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"SETTINGS | stored settings invalid ({e.error_count()} errors), using defaults")
            return SecuritySettings()

    def update_security_settings(self, settings: SecuritySettings) -> None:
        self.store.set_json(SECURITY_SETTINGS, settings.model_dump(mode="json"))
        user_id = self.identity.get_current_user_id()
        if self.mirror is not None and user_id:
            self.mirror.push_settings(user_id, settings)
        logger.info(
            f"SETTINGS | enabled={settings.enabled} threshold={settings.suspicious_attempts_threshold} "
            f"auto_block={settings.auto_block_enabled}"
        )

    def get_suspicious_activity_count(self) -> int:
        return self.store.get_int(SUSPICIOUS_ACTIVITY_COUNT)

    def record_suspicious_activity(self, details: Optional[dict[str, Any]] = None) -> int:
        """Count one suspicious sample and stamp the check time, as one store update."""
        with self.store.transaction():
            count = self.store.increment(SUSPICIOUS_ACTIVITY_COUNT)
            self.store.set_datetime(LAST_MONITORING_CHECK, utcnow())
        self.events.record(
            SecurityEventType.SUSPICIOUS_ACTIVITY,
            "Suspicious activity detected",
            severity=Severity.MEDIUM,
            details={"count": count, **(details or {})},
        )
        return count

    def check_block_threshold(self) -> bool:
        """Block if the suspicious counter reached the configured threshold."""
        settings = self.get_security_settings()
        count = self.get_suspicious_activity_count()
        if count >= settings.suspicious_attempts_threshold and settings.auto_block_enabled:
            logger.warning(
                f"MONITOR | device={self.device_id} suspicious={count} "
                f"threshold={settings.suspicious_attempts_threshold} auto-block"
            )
            self.block(BlockReason.SUSPICIOUS_ACTIVITY, details={"suspicious_count": count})
            return True
        return False

    def reset_suspicious_activity(self) -> None:
        self.store.set(SUSPICIOUS_ACTIVITY_COUNT, "0")
        self.events.record(
            SecurityEventType.SYSTEM_ALERT,
            "Suspicious activity counter reset manually",
            severity=Severity.LOW,
        )

    def is_monitoring_active(self) -> bool:
        raw = self.store.get(MONITORING_ACTIVE)
        if raw is None:
            return self.get_security_settings().enabled
        return raw == "true"

    def set_monitoring_active(self, active: bool) -> None:
        with self.store.transaction():
            self.store.set_bool(MONITORING_ACTIVE, active)
            self.store.set_datetime(LAST_MONITORING_CHECK, utcnow())
        self.events.record(
            SecurityEventType.MONITORING_ACTIVATED if active else SecurityEventType.MONITORING_DEACTIVATED,
            "Security monitoring activated" if active else "Security monitoring deactivated",
            severity=Severity.LOW,
        )

    def mark_monitoring_check(self) -> None:
        self.store.set_datetime(LAST_MONITORING_CHECK, utcnow())

    def last_monitoring_check(self) -> Optional[datetime]:
        return self.store.get_datetime(LAST_MONITORING_CHECK)

    # ═══════════════════════════════════════════════════════════════════
    # Reconciliation
    # ═══════════════════════════════════════════════════════════════════

    def reconcile(self) -> DeviceLockState:
        """
        Align local state with the cloud record.

        Remote is the escalation authority: a block recorded remotely is
        adopted locally. The reverse never happens; a remote "unblocked"
        cannot clear a local block, which is re-pushed instead.
        """
        if self.mirror is None:
            return self.get_state()
        user_id = self.identity.get_current_user_id()
        user = self.mirror.fetch_user(user_id) if user_id else None
        device = self.mirror.fetch_device(self.device_id)
        if user is None and device is None:
            logger.info(f"RECONCILE | device={self.device_id} remote unavailable, keeping local state")
            return self.get_state()

        if user is not None and user.security_key and not self.store.get(SECURITY_KEY):
            self.store.set(SECURITY_KEY, keycodec.clean(user.security_key))

        remote_blocked, remote_reason, remote_blocked_at = False, None, None
        if device is not None and device.status.is_blocked:
            remote_blocked = True
            remote_reason, remote_blocked_at = device.status.block_reason, device.status.blocked_at
        if user is not None and user.device_blocked:
            remote_blocked = True
            remote_reason = remote_reason or user.block_reason
            remote_blocked_at = remote_blocked_at or user.blocked_at

        with self._lock:
            local = self.get_state()
            if local.is_blocked and not remote_blocked:
                logger.info(f"RECONCILE | device={self.device_id} local block not mirrored, re-pushing")
                self._push(local)
                return local
            if local.is_blocked or not remote_blocked:
                return local

            reason = coerce_reason(remote_reason or BlockReason.REMOTE_COMMAND.value)
            if reason == BlockReason.NONE:
                reason = BlockReason.REMOTE_COMMAND
            self._transition(local.state, LockEvent.BLOCK)
            with self.store.transaction():
                self.store.set_bool(DEVICE_BLOCKED, True)
                self.store.set(BLOCK_REASON, reason.value)
                self.store.set_datetime(BLOCKED_AT, remote_blocked_at or utcnow())
            state = self.get_state()

        logger.warning(f"RECONCILE | device={self.device_id} adopted remote block reason={reason.value}")
        self.events.record(
            SecurityEventType.DEVICE_BLOCKED,
            "Device blocked remotely, applied during reconciliation",
            severity=Severity.HIGH,
            details={"reason": reason.value, "source": "remote"},
        )
        return state

    # ═══════════════════════════════════════════════════════════════════
    # Helpers
    # ═══════════════════════════════════════════════════════════════════

    def _transition(self, current: LockState, event: LockEvent) -> LockState:
        key = (current, event)
        if key not in VALID_TRANSITIONS:
            raise RuntimeError(f"Invalid transition: {current.value} + {event.value}")
        new_state = VALID_TRANSITIONS[key]
        logger.info(f"TRANSITION | device={self.device_id} {current.value} -> {new_state.value} event={event.value}")
        return new_state

    def _push(self, state: DeviceLockState) -> None:
        if self.mirror is None:
            return
        self.mirror.push_lock_state(self.identity.get_current_user_id() or "", self.device_id, state)

    def _notify_blocked(self, reason: BlockReason) -> None:
        if self.notifier is None or self.mirror is None or not self.account_email:
            return
        if not self.get_security_settings().notifications_enabled:
            return
        info = {**self.device_info.model_dump(), "reason": reason.value, "timestamp": utcnow().isoformat()}
        self.mirror.submit(
            f"blocked notification email={self.account_email}",
            self.notifier.send_blocked_notification,
            self.account_email,
            info,
        )
