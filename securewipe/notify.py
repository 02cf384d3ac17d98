"""
Outbound notifications: recovery key delivery and "device blocked" alerts.

Delivery itself happens elsewhere (a mail function behind an HTTP endpoint).
Callers treat every send as fire-and-forget.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

import httpx

from . import keycodec
from .remote import RemoteStoreError

logger = logging.getLogger("securewipe.notify")


class Notifier(Protocol):
    def send_blocked_notification(self, email: str, device_info: dict[str, Any]) -> None: ...
    def send_recovery_key(self, email: str, recovery_key: str) -> None: ...


class LoggingNotifier:
    """Notifier used when no mail endpoint is configured."""

    def send_blocked_notification(self, email: str, device_info: dict[str, Any]) -> None:
        logger.info(f"NOTIFY | blocked email={email} reason={device_info.get('reason')}")

    def send_recovery_key(self, email: str, recovery_key: str) -> None:
        logger.info(f"NOTIFY | recovery key {keycodec.masked(recovery_key)} queued for email={email}")


class HttpNotifier:
    """Posts notification requests to the mail function endpoint."""

    def __init__(self, base_url: str = "", timeout_s: float = 10.0, client: Optional[httpx.Client] = None):
        self.client = client or httpx.Client(base_url=base_url, timeout=timeout_s)

    def _post(self, path: str, payload: dict[str, Any]) -> None:
        try:
            resp = self.client.post(path, json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise RemoteStoreError(f"POST {path} failed: {e}") from e

    def send_blocked_notification(self, email: str, device_info: dict[str, Any]) -> None:
        self._post("/sendDeviceBlockedEmail", {
            "email": email,
            "deviceInfo": device_info,
            "subject": "Device blocked - SecureWipe",
        })

    def send_recovery_key(self, email: str, recovery_key: str) -> None:
        self._post("/sendSecurityKeyEmail", {
            "email": email,
            "securityKey": recovery_key,
            "subject": "Your SecureWipe recovery key",
        })
