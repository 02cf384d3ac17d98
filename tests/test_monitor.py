"""
Tests for the background monitor tick and periodic task handles.
"""

import random
import threading

from securewipe.events import SecurityEventLog
from securewipe.lock import DeviceLockService
from securewipe.models import BlockReason, MonitorOutcome, SecuritySettings
from securewipe.monitor import BackgroundMonitor, RandomSignalEvaluator, start_periodic
from securewipe.remote import StaticIdentity
from securewipe.store import LocalStateStore


class Always:
    def __init__(self, value):
        self.value = value

    def is_suspicious(self):
        return self.value


class Exploding:
    def is_suspicious(self):
        raise RuntimeError("sensor unavailable")


def _service(enabled=True, threshold=3):
    store = LocalStateStore()
    identity = StaticIdentity()
    events = SecurityEventLog(store, None, identity)
    service = DeviceLockService(store, None, events, identity)
    service.update_security_settings(SecuritySettings(enabled=enabled, suspicious_attempts_threshold=threshold))
    return service


# ── tick ───────────────────────────────────────────────────────────────

def test_three_suspicious_ticks_block():
    service = _service(threshold=3)
    monitor = BackgroundMonitor(service, evaluator=Always(True))

    assert monitor.tick() == MonitorOutcome.NEW_DATA
    assert monitor.tick() == MonitorOutcome.NEW_DATA
    assert not service.is_blocked()
    assert service.get_suspicious_activity_count() == 2

    assert monitor.tick() == MonitorOutcome.NEW_DATA
    state = service.get_state()
    assert state.is_blocked
    assert state.block_reason == BlockReason.SUSPICIOUS_ACTIVITY


def test_clean_tick_updates_last_check_only():
    service = _service()
    monitor = BackgroundMonitor(service, evaluator=Always(False))
    assert monitor.tick() == MonitorOutcome.NEW_DATA
    assert service.get_suspicious_activity_count() == 0
    assert service.last_monitoring_check() is not None


def test_disabled_monitoring_returns_no_data():
    service = _service(enabled=False)
    monitor = BackgroundMonitor(service, evaluator=Always(True))
    assert monitor.tick() == MonitorOutcome.NO_DATA
    assert service.get_suspicious_activity_count() == 0
    assert service.last_monitoring_check() is None


def test_failing_evaluator_leaves_counters_untouched():
    service = _service()
    monitor = BackgroundMonitor(service, evaluator=Exploding())
    assert monitor.tick() == MonitorOutcome.NO_DATA
    assert service.get_suspicious_activity_count() == 0
    assert not service.is_blocked()


def test_settings_write_failure_leaves_counter_untouched(monkeypatch):
    service = _service()
    monitor = BackgroundMonitor(service, evaluator=Always(True))

    def broken(settings):
        raise RuntimeError("identity provider unavailable")

    monkeypatch.setattr(service, "update_security_settings", broken)
    assert monitor.tick() == MonitorOutcome.NO_DATA
    assert service.get_suspicious_activity_count() == 0


def test_threshold_check_failure_does_not_escape(monkeypatch):
    service = _service(threshold=1)
    monitor = BackgroundMonitor(service, evaluator=Always(True))

    def broken():
        raise ValueError("bad settings")

    monkeypatch.setattr(service, "check_block_threshold", broken)
    assert monitor.tick() == MonitorOutcome.NO_DATA
    assert service.get_suspicious_activity_count() == 1
    assert not service.is_blocked()


def test_random_evaluator_uses_probability():
    assert RandomSignalEvaluator(probability=1.0, rng=random.Random(1)).is_suspicious()
    assert not RandomSignalEvaluator(probability=0.0, rng=random.Random(1)).is_suspicious()


# ── periodic task ──────────────────────────────────────────────────────

def test_periodic_task_runs_until_closed():
    ran = threading.Event()
    sub = start_periodic("test-task", 0.01, ran.set)
    assert ran.wait(2)
    assert sub.active
    sub.close()
    assert not sub.active


def test_periodic_task_survives_exceptions():
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")

    sub = start_periodic("flaky-task", 0.01, flaky)
    try:
        for _ in range(200):
            if len(calls) >= 2:
                break
            threading.Event().wait(0.01)
    finally:
        sub.close()
    assert len(calls) >= 2
