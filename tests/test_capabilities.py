"""Tests for collaborator capabilities, the core context and the audit trail."""

import pytest

from freeghost_core.audit import AnomalySeverity, AuditEventType, AuditTrail
from freeghost_core.capabilities import (
    CapabilityRegistry,
    Clock,
    InMemoryStore,
    RandomSource,
    Store,
    SystemClock,
)
from freeghost_core.context import CoreContext
from freeghost_core.entropy import SystemRandomSource
from freeghost_core.exceptions import ConfigurationError


class TestCapabilityRegistry:
    """Ordered providers with fallback."""

    def test_first_registered_is_default(self):
        registry = CapabilityRegistry()
        first, second = SystemClock(), SystemClock()
        registry.register("clock", first)
        registry.register("clock", second)
        assert registry.resolve("clock") is first
        assert registry.providers("clock") == [first, second]

    def test_missing_capability(self):
        registry = CapabilityRegistry()
        with pytest.raises(ConfigurationError):
            registry.resolve("transport")
        default = SystemClock()
        assert registry.resolve("clock", default) is default

    def test_first_success_falls_back(self):
        class Failing:
            def send(self, destination, payload):
                raise ConnectionError("down")

        class Working:
            def __init__(self):
                self.sent = []

            def send(self, destination, payload):
                self.sent.append((destination, payload))
                return "ok"

        registry = CapabilityRegistry()
        working = Working()
        registry.register("transport", Failing())
        registry.register("transport", working)
        assert registry.first_success("transport", lambda t: t.send("bank-42", b"proof")) == "ok"
        assert working.sent == [("bank-42", b"proof")]

    def test_first_success_all_fail(self):
        class Failing:
            def send(self, destination, payload):
                raise ConnectionError("down")

        registry = CapabilityRegistry()
        registry.register("transport", Failing())
        with pytest.raises(ConnectionError):
            registry.first_success("transport", lambda t: t.send("x", b""))

    def test_protocols(self):
        assert isinstance(SystemClock(), Clock)
        assert isinstance(InMemoryStore(), Store)
        assert isinstance(SystemRandomSource(), RandomSource)


class TestInMemoryStore:
    """Append-only contract."""

    def test_append_only(self):
        store = InMemoryStore()
        store.append("nullifiers", b"k", b"v")
        assert store.contains("nullifiers", b"k")
        assert not store.contains("seen", b"k")
        with pytest.raises(KeyError):
            store.append("nullifiers", b"k", b"other")
        assert store.count("nullifiers") == 1


class TestCoreContext:
    """Startup wiring."""

    def test_registered_collaborators_used(self, context, clock, store):
        assert context.clock is clock
        assert context.store is store
        assert context.level.bits == 128
        assert context.audit.events(AuditEventType.SYSTEM_STARTUP)

    def test_invalid_configuration_rejected(self, fast_config):
        from dataclasses import replace

        with pytest.raises(ConfigurationError):
            CoreContext.from_config(replace(fast_config, security_level=64))


class TestAuditTrail:
    """Local audit records."""

    def test_bounded(self, clock):
        trail = AuditTrail(max_events=3, clock=clock)
        for i in range(5):
            trail.record(AuditEventType.VERIFICATION, accepted=True, index=i)
        events = trail.events()
        assert len(events) == 3
        assert events[0].details["index"] == 2

    def test_summary(self, clock):
        trail = AuditTrail(clock=clock)
        trail.record(AuditEventType.VERIFICATION, accepted=False, reason="not_unique")
        trail.record(AuditEventType.VERIFICATION, accepted=True, reason=None)
        trail.anomaly(AnomalySeverity.HIGH, "repeated rejections")
        summary = trail.summary()
        assert summary["total_events"] == 3
        assert summary["anomalies_detected"] == 1
        assert summary["rejections_by_reason"] == {"not_unique": 1}

    def test_since_filter(self, clock):
        trail = AuditTrail(clock=clock)
        trail.record(AuditEventType.KEY_ROTATION)
        clock.advance(10.0)
        trail.record(AuditEventType.KEY_BACKUP)
        assert [e.event_type for e in trail.events(since=clock.now())] == [AuditEventType.KEY_BACKUP]
        assert trail.events()[0].to_dict()["event_type"] == "key_rotation"
