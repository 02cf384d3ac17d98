"""
Remote command listener.

Polls the backend for commands queued against this device and applies them
through the lock service. Only LOCK and UNLOCK are executed; wipe and locate
are acknowledged as failed.
"""

from __future__ import annotations

import logging
from typing import Any

from .lock import DeviceLockService
from .models import BlockReason, RemoteCommand, RemoteCommandStatus, RemoteCommandType, SecurityEventType, Severity, utcnow
from .monitor import Subscription, start_periodic
from .remote import RemoteStateMirror

logger = logging.getLogger("securewipe.commands")


class CommandListener:
    def __init__(self, service: DeviceLockService, mirror: RemoteStateMirror, interval_s: float = 60):
        self.service = service
        self.mirror = mirror
        self.interval_s = interval_s

    def poll_once(self) -> list[tuple[str, RemoteCommandStatus]]:
        """Execute every pending command once. Returns (command id, final status) pairs."""
        commands = self.mirror.pending_commands(self.service.device_id)
        if not commands:
            return []
        logger.info(f"COMMANDS | device={self.service.device_id} pending={len(commands)}")
        return [(c.id, self.execute(c)) for c in commands]

    def execute(self, command: RemoteCommand) -> RemoteCommandStatus:
        self.mirror.update_command(command.id, {
            "status": RemoteCommandStatus.EXECUTING.value,
            "executedAt": utcnow().isoformat(),
        })

        result: dict[str, Any] = {"success": False}
        if command.type == RemoteCommandType.LOCK:
            reason = command.params.get("reason") or BlockReason.REMOTE_COMMAND.value
            try:
                self.service.block(BlockReason(reason))
            except ValueError:
                self.service.block(BlockReason.REMOTE_COMMAND)
            result["success"] = True
        elif command.type == RemoteCommandType.UNLOCK:
            key = command.params.get("securityKey")
            if isinstance(key, str) and key:
                outcome = self.service.attempt_unlock(key)
                result.update(success=outcome.success, message=outcome.message)
            else:
                result["error"] = "no recovery key supplied"
        else:
            result["error"] = f"unsupported command: {command.type.value}"

        status = RemoteCommandStatus.EXECUTED if result["success"] else RemoteCommandStatus.FAILED
        self.mirror.update_command(command.id, {"status": status.value, "result": result})
        logger.info(f"COMMAND | id={command.id} type={command.type.value} status={status.value}")

        self.service.events.record(
            SecurityEventType.REMOTE_COMMAND,
            f"Remote command executed: {command.type.value}",
            severity=Severity.HIGH,
            details={"command_id": command.id, "type": command.type.value, "result": result},
        )
        return status

    def start(self) -> Subscription:
        return start_periodic("remote-commands", self.interval_s, self.poll_once)
