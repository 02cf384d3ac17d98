"""
Data models and the lock/unlock transition table.
"""

from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


MAX_FAILED_ATTEMPTS = 5
RECOVERY_KEY_LENGTH = 20


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ──────────────────────────────────────────────────────────────

class LockState(str, Enum):
    UNLOCKED = "UNLOCKED"
    LOCKED = "LOCKED"


class BlockReason(str, Enum):
    NONE = "none"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    REMOTE_COMMAND = "remote_command"
    MANUAL_LOCK = "manual_lock"
    TOO_MANY_FAILED_ATTEMPTS = "too_many_failed_attempts"
    TEST = "test"


class LockEvent(str, Enum):
    BLOCK = "block"
    UNLOCK_MATCH = "unlock.match"
    UNLOCK_MISMATCH = "unlock.mismatch"
    UNLOCK_MISMATCH_CAP = "unlock.mismatch_cap"
    MONITOR_THRESHOLD = "monitor.threshold"
    ADMIN_UNBLOCK = "admin.unblock"


class SecurityEventType(str, Enum):
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    DEVICE_BLOCKED = "device_blocked"
    DEVICE_UNBLOCKED = "device_unblocked"
    REMOTE_COMMAND = "remote_command"
    FAILED_UNLOCK = "failed_unlock"
    SYSTEM_ALERT = "system_alert"
    MONITORING_ACTIVATED = "monitoring_activated"
    MONITORING_DEACTIVATED = "monitoring_deactivated"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RemoteCommandType(str, Enum):
    LOCK = "lock"
    UNLOCK = "unlock"
    WIPE = "wipe"
    LOCATE = "locate"


class RemoteCommandStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    EXECUTED = "executed"
    FAILED = "failed"


class MonitorOutcome(str, Enum):
    NEW_DATA = "new_data"
    NO_DATA = "no_data"


# ── Valid state transitions ────────────────────────────────────────────

VALID_TRANSITIONS: dict[tuple[LockState, LockEvent], LockState] = {
    (LockState.UNLOCKED, LockEvent.BLOCK): LockState.LOCKED,
    (LockState.UNLOCKED, LockEvent.MONITOR_THRESHOLD): LockState.LOCKED,

    (LockState.LOCKED, LockEvent.BLOCK): LockState.LOCKED,
    (LockState.LOCKED, LockEvent.UNLOCK_MATCH): LockState.UNLOCKED,
    (LockState.LOCKED, LockEvent.UNLOCK_MISMATCH): LockState.LOCKED,
    (LockState.LOCKED, LockEvent.UNLOCK_MISMATCH_CAP): LockState.LOCKED,
    (LockState.LOCKED, LockEvent.MONITOR_THRESHOLD): LockState.LOCKED,
    (LockState.LOCKED, LockEvent.ADMIN_UNBLOCK): LockState.UNLOCKED,
}

# Unlocking an already-unlocked device is a no-op success, handled in the service.


# ── Lock screen text per reason ────────────────────────────────────────

DEFAULT_BLOCK_MESSAGE = "The security protocol has been activated."

BLOCK_MESSAGES: dict[str, str] = {
    "suspicious_activity": "Suspicious activity was detected on your device.",
    "remote_lock": "Your device has been locked remotely.",
    "remote_command": "Your device has been locked remotely.",
    "too_many_failed_attempts": "Too many failed unlock attempts.",
    "test": "This is a test of the lock system.",
    "manual_lock": "Your device was locked manually.",
}


def block_message_for(reason: Optional[str]) -> str:
    """Map a reason code to lock screen text; unknown codes get the default."""
    if isinstance(reason, Enum):
        reason = reason.value
    return BLOCK_MESSAGES.get(reason or "", DEFAULT_BLOCK_MESSAGE)


# ── Local state ────────────────────────────────────────────────────────

class DeviceLockState(BaseModel):
    is_blocked: bool = False
    block_reason: BlockReason = BlockReason.NONE
    blocked_at: Optional[datetime] = None
    failed_attempts: int = Field(default=0, ge=0, le=MAX_FAILED_ATTEMPTS)

    @property
    def state(self) -> LockState:
        return LockState.LOCKED if self.is_blocked else LockState.UNLOCKED


class SecuritySettings(BaseModel):
    enabled: bool = False
    suspicious_attempts_threshold: int = Field(default=3, ge=1, le=10)
    auto_block_enabled: bool = True
    remote_wipe_enabled: bool = False
    notifications_enabled: bool = True
    sync_frequency_minutes: int = Field(default=15, ge=1)
    last_checked: datetime = Field(default_factory=utcnow)


class UnlockResult(BaseModel):
    success: bool
    failed_attempts: int
    message: str


class SecurityEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: SecurityEventType
    description: str
    timestamp: datetime = Field(default_factory=utcnow)
    device_id: str = ""
    user_id: str = ""
    severity: Severity = Severity.MEDIUM
    details: dict[str, Any] = Field(default_factory=dict)


class DeviceInfo(BaseModel):
    id: str
    name: str = "Device"
    brand: str = "Unknown"
    model_name: str = "Unknown"
    os_name: str = "Unknown"
    os_version: str = "Unknown"


# ── Remote records (validated at the boundary) ─────────────────────────

class RemoteModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class UserRecord(RemoteModel):
    email: Optional[str] = None
    device_blocked: bool = Field(default=False, alias="deviceBlocked")
    blocked_at: Optional[datetime] = Field(default=None, alias="blockedAt")
    block_reason: Optional[str] = Field(default=None, alias="blockReason")
    unblocked_at: Optional[datetime] = Field(default=None, alias="unblockedAt")
    security_key: Optional[str] = Field(default=None, alias="securityKey")
    security_settings: Optional[dict[str, Any]] = Field(default=None, alias="securitySettings")
    devices: dict[str, bool] = Field(default_factory=dict)


class DeviceStatus(RemoteModel):
    is_blocked: bool = Field(default=False, alias="isBlocked")
    blocked_at: Optional[datetime] = Field(default=None, alias="blockedAt")
    block_reason: Optional[str] = Field(default=None, alias="blockReason")
    is_online: bool = Field(default=False, alias="isOnline")


class DeviceRecord(RemoteModel):
    user_id: Optional[str] = Field(default=None, alias="userId")
    name: Optional[str] = None
    status: DeviceStatus = Field(default_factory=DeviceStatus)
    last_online: Optional[datetime] = Field(default=None, alias="lastOnline")


class SecurityEventRecord(RemoteModel):
    type: SecurityEventType
    description: str
    timestamp: datetime
    device_id: str = Field(alias="deviceId")
    user_id: str = Field(alias="userId")
    severity: Severity
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_event(cls, event: SecurityEvent) -> "SecurityEventRecord":
        return cls(
            type=event.type,
            description=event.description,
            timestamp=event.timestamp,
            device_id=event.device_id,
            user_id=event.user_id,
            severity=event.severity,
            details=event.details,
        )


class RemoteCommand(RemoteModel):
    id: str
    type: RemoteCommandType
    device_id: str = Field(alias="deviceId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    status: RemoteCommandStatus = RemoteCommandStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    executed_at: Optional[datetime] = Field(default=None, alias="executedAt")
    params: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] = Field(default_factory=dict)


# ── Backend request schemas ────────────────────────────────────────────

class AdminLockRequest(BaseModel):
    reason: str = Field(default="remote_command", min_length=1, max_length=64)
    actor: str = "admin"


class CommandUpdate(BaseModel):
    status: RemoteCommandStatus
    result: dict[str, Any] = Field(default_factory=dict)
