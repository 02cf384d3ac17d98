"""
Background security monitor.

Every interval, if monitoring is enabled in the security settings, sample a
suspicion signal. A suspicious sample bumps the counter and runs the lock
service's threshold check, which may auto-block the device.

The signal comes from a pluggable evaluator. The default one is a
probability-based stand-in; real device heuristics (failed biometrics,
uninstall probing, geofencing) implement the same interface.
"""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from .lock import DeviceLockService
from .models import MonitorOutcome, utcnow

logger = logging.getLogger("securewipe.monitor")

DEFAULT_INTERVAL_S = 15 * 60


class SignalEvaluator(Protocol):
    def is_suspicious(self) -> bool: ...


@dataclass
class RandomSignalEvaluator:
    """Flags a sample as suspicious with fixed probability."""

    probability: float = 0.1
    rng: random.Random = field(default_factory=random.Random)

    def is_suspicious(self) -> bool:
        return self.rng.random() < self.probability


# ═══════════════════════════════════════════════════════════════════════
# Owned periodic task handle
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class Subscription:
    """
    Handle for a running periodic task.

    Whoever starts the task owns the handle and must close() it, typically
    on logout. There is no process-wide registry of running tasks.
    """

    name: str
    _stop: threading.Event
    _thread: threading.Thread

    @property
    def active(self) -> bool:
        return self._thread.is_alive() and not self._stop.is_set()

    def close(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout)
        logger.info(f"TASK | {self.name} stopped")


def start_periodic(name: str, interval_s: float, fn: Callable[[], object]) -> Subscription:
    """Run fn every interval_s seconds on a daemon thread until closed."""
    stop = threading.Event()

    def _loop() -> None:
        while not stop.wait(interval_s):
            try:
                fn()
            except Exception:
                logger.exception(f"TASK | {name} iteration failed")

    thread = threading.Thread(target=_loop, name=name, daemon=True)
    thread.start()
    logger.info(f"TASK | {name} started interval={interval_s}s")
    return Subscription(name=name, _stop=stop, _thread=thread)


# ═══════════════════════════════════════════════════════════════════════
# Monitor
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class BackgroundMonitor:
    service: DeviceLockService
    evaluator: SignalEvaluator = field(default_factory=RandomSignalEvaluator)
    interval_s: float = DEFAULT_INTERVAL_S

    def tick(self) -> MonitorOutcome:
        """
        Run one check. Never raises.

        The signal is sampled and the check time stamped before the counter
        moves, so a tick that fails before the increment leaves it untouched.
        The increment itself commits with its timestamp as one store update;
        a threshold check failing after it keeps the recorded sample.
        """
        try:
            settings = self.service.get_security_settings()
            if not settings.enabled:
                return MonitorOutcome.NO_DATA
            suspicious = bool(self.evaluator.is_suspicious())
        except Exception as e:
            logger.error(f"MONITOR | sampling failed: {e!r}")
            return MonitorOutcome.NO_DATA

        try:
            self.service.update_security_settings(settings.model_copy(update={"last_checked": utcnow()}))
            self.service.mark_monitoring_check()
            if suspicious:
                count = self.service.record_suspicious_activity()
                logger.info(f"MONITOR | suspicious sample count={count}")
                self.service.check_block_threshold()
        except Exception as e:
            logger.error(f"MONITOR | tick failed: {e!r}")
            return MonitorOutcome.NO_DATA
        return MonitorOutcome.NEW_DATA

    def start(self) -> Subscription:
        return start_periodic("security-monitor", self.interval_s, self.tick)
