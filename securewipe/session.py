"""
Session controller.

Owns everything that lives for one signed-in session: the background monitor
and remote command subscriptions, and the account email used for alerts.
Logout tears both subscriptions down explicitly.
"""

from __future__ import annotations

import logging
from typing import Optional

from . import keycodec
from .commands import CommandListener
from .config import Settings
from .events import SecurityEventLog
from .lock import DeviceLockService
from .models import DeviceInfo, DeviceLockState, SecuritySettings, utcnow
from .monitor import BackgroundMonitor, SignalEvaluator, Subscription
from .notify import HttpNotifier, LoggingNotifier, Notifier
from .remote import HttpDocumentStore, RemoteStateMirror, StaticIdentity
from .store import SECURITY_KEY, SUSPICIOUS_ACTIVITY_COUNT, LocalStateStore

logger = logging.getLogger("securewipe.session")


class SecuritySession:
    def __init__(
        self,
        service: DeviceLockService,
        mirror: RemoteStateMirror,
        identity: StaticIdentity,
        notifier: Notifier,
        monitor: BackgroundMonitor,
        commands: CommandListener,
    ):
        self.service = service
        self.mirror = mirror
        self.identity = identity
        self.notifier = notifier
        self.monitor = monitor
        self.commands = commands
        self._monitor_sub: Optional[Subscription] = None
        self._command_sub: Optional[Subscription] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        device_info: Optional[DeviceInfo] = None,
        evaluator: Optional[SignalEvaluator] = None,
    ) -> "SecuritySession":
        store = LocalStateStore(settings.state_path)
        mirror = RemoteStateMirror(
            HttpDocumentStore(settings.backend_url, timeout_s=settings.remote_timeout_s),
            timeout_s=settings.remote_timeout_s,
        )
        notifier: Notifier = LoggingNotifier()
        if settings.notify_url:
            notifier = HttpNotifier(settings.notify_url, timeout_s=settings.remote_timeout_s)
        identity = StaticIdentity()
        events = SecurityEventLog(store, mirror, identity, journal_limit=settings.event_journal_limit)
        service = DeviceLockService(store, mirror, events, identity, notifier=notifier, device_info=device_info)
        monitor = BackgroundMonitor(service, interval_s=settings.monitor_interval_s)
        if evaluator is not None:
            monitor.evaluator = evaluator
        commands = CommandListener(service, mirror, interval_s=settings.command_poll_interval_s)
        return cls(service, mirror, identity, notifier, monitor, commands)

    @property
    def monitoring(self) -> bool:
        return self._monitor_sub is not None and self._monitor_sub.active

    # ── account lifecycle ──

    def provision_account(self, user_id: str, email: str) -> str:
        """
        First-time setup for a new account on this device.

        Generates the recovery key, caches it locally, writes the user and
        device records and emails the key. Returns the bare 20-digit key.
        """
        key = keycodec.generate()
        self.identity.user_id = user_id
        self.service.account_email = email
        self.service.store.set(SECURITY_KEY, key)

        settings = SecuritySettings(enabled=True)
        self.service.update_security_settings(settings)

        device_id = self.service.device_id
        now = utcnow().isoformat()
        self.mirror.update_user(user_id, {
            "email": email,
            "securityKey": key,
            "deviceBlocked": False,
            "devices": {device_id: True},
            "securitySettings": settings.model_dump(mode="json"),
        })
        self.mirror.update_device(device_id, {
            "userId": user_id,
            "name": self.service.device_info.name,
            "registeredAt": now,
            "lastOnline": now,
            "status": {"isOnline": True, "isBlocked": False},
        })
        self.mirror.submit(f"recovery key email={email}", self.notifier.send_recovery_key, email, key)
        logger.info(f"SESSION | provisioned user={user_id} device={device_id} key={keycodec.masked(key)}")
        return key

    def start(self, user_id: str) -> DeviceLockState:
        """Sign-in or resume: mark online, reconcile, start background work."""
        self.identity.user_id = user_id
        user = self.mirror.fetch_user(user_id)
        if user is not None and user.email:
            self.service.account_email = user.email

        self.mirror.update_device(self.service.device_id, {
            "userId": user_id,
            "lastOnline": utcnow().isoformat(),
            "status": {"isOnline": True},
        })
        state = self.service.reconcile()

        if self.service.get_security_settings().enabled:
            self.start_monitoring()
        if self._command_sub is None:
            self._command_sub = self.commands.start()
        logger.info(f"SESSION | started user={user_id} blocked={state.is_blocked}")
        return state

    def close(self, drain_timeout: Optional[float] = 5.0) -> None:
        """Logout. Keeps the cached recovery key so a blocked device can still be unlocked."""
        self.stop_monitoring(record=False)
        if self._command_sub is not None:
            self._command_sub.close()
            self._command_sub = None

        self.mirror.update_device(self.service.device_id, {
            "lastOnline": utcnow().isoformat(),
            "status": {"isOnline": False},
        })
        self.service.store.remove(SUSPICIOUS_ACTIVITY_COUNT)
        self.mirror.drain(drain_timeout)
        logger.info(f"SESSION | closed user={self.identity.user_id}")
        self.identity.user_id = None
        self.service.account_email = None

    # ── monitoring ──

    def update_settings(self, settings: SecuritySettings) -> None:
        self.service.update_security_settings(settings)
        if settings.enabled:
            self.start_monitoring()
        else:
            self.stop_monitoring()

    def start_monitoring(self) -> None:
        if self.monitoring:
            return
        self._monitor_sub = self.monitor.start()
        self.service.set_monitoring_active(True)

    def stop_monitoring(self, record: bool = True) -> None:
        if self._monitor_sub is None:
            return
        self._monitor_sub.close()
        self._monitor_sub = None
        if record:
            self.service.set_monitoring_active(False)
