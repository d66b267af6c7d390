"""
Tests for phiguard.audit -- Append-Only, Tamper-Evident PHI Audit Ledger.

Covers: append ordering, entry immutability, chain verification, tamper
detection, query filtering, monotonic timestamps, security events and
alerting, sink outages and recovery, export redaction, and concurrent
append ordering.
"""

from __future__ import annotations

import itertools
import json
import threading
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from phiguard.audit import (
    SYSTEM_ACTOR,
    AuditEntry,
    AuditLogger,
    InMemoryAuditStore,
    redact_phi_from_text,
)
from phiguard.environment import EnvironmentAuditSink, InMemoryEnvironment
from phiguard.models import (
    AuditAction,
    ClientMetadata,
    PHICategory,
    Role,
    SecurityEventKind,
)


T0 = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)


def _stepping_clock(start: datetime = T0, step: timedelta = timedelta(minutes=1)):
    """Clock that advances by ``step`` on every call."""
    ticks = itertools.count()
    return lambda: start + step * next(ticks)


class _RecordingSink:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.written: list[AuditEntry] = []

    def write(self, entry: AuditEntry) -> None:
        if self.fail:
            raise RuntimeError("sink offline")
        self.written.append(entry)


class _RecordingAlerter:
    def __init__(self) -> None:
        self.alerts: list[AuditEntry] = []

    def alert(self, entry: AuditEntry) -> None:
        self.alerts.append(entry)


class _BrokenAlerter:
    def alert(self, entry: AuditEntry) -> None:
        raise ConnectionError("pager down")


def _make_logger(**kwargs) -> AuditLogger:
    kwargs.setdefault("clock", _stepping_clock())
    kwargs.setdefault("sink", _RecordingSink())
    return AuditLogger(**kwargs)


def _log_view(log: AuditLogger, actor_id: str = "dr_house", **kwargs) -> str:
    kwargs.setdefault("actor_role", Role.PROVIDER)
    kwargs.setdefault("resource", "chart:42")
    return log.log_access(actor_id, action=AuditAction.VIEW, **kwargs)


# ---------------------------------------------------------------------------
# 1. Append + chain verification
# ---------------------------------------------------------------------------

class TestAppendAndChainVerification:
    def test_append_single_entry(self):
        log = _make_logger()
        entry_id = _log_view(log)
        entries = log.query()
        assert len(log) == 1
        assert entries[0].entry_id == entry_id
        assert entries[0].previous_hash == ""

    def test_entries_kept_in_call_order(self):
        log = _make_logger()
        ids = [_log_view(log, actor_id=f"user_{i}") for i in range(5)]
        assert [e.entry_id for e in log.query()] == ids
        assert log.length == 5

    def test_chain_links_previous_hash(self):
        log = _make_logger()
        for i in range(3):
            _log_view(log, actor_id=f"user_{i}")
        e1, e2, e3 = log.query()
        assert e2.previous_hash == e1.compute_hash()
        assert e3.previous_hash == e2.compute_hash()

    def test_verify_chain_on_intact_log(self):
        log = _make_logger()
        for i in range(10):
            _log_view(log, actor_id=f"user_{i}")
        assert log.verify_chain() == (True, None)

    def test_verify_empty_log(self):
        assert _make_logger().verify_chain() == (True, None)

    def test_entries_are_immutable(self):
        log = _make_logger()
        _log_view(log)
        entry = log.query()[0]
        with pytest.raises(ValidationError):
            entry.detail = "rewritten"

    def test_query_returns_copy_of_ledger(self):
        log = _make_logger()
        _log_view(log)
        log.query().clear()
        assert len(log) == 1

    def test_store_has_no_update_or_delete(self):
        store = InMemoryAuditStore()
        assert not hasattr(store, "update")
        assert not hasattr(store, "delete")

    def test_client_metadata_is_stamped(self):
        env = InMemoryEnvironment(ClientMetadata(client_address="10.0.0.5", user_agent="pytest"))
        log = _make_logger(environment=env)
        _log_view(log)
        entry = log.query()[0]
        assert entry.client_address == "10.0.0.5"
        assert entry.user_agent == "pytest"

    def test_unknown_action_rejected(self):
        log = _make_logger()
        with pytest.raises(ValueError):
            log.log_access("u1", Role.NURSE, "teleport", "chart:1")
        assert len(log) == 0


# ---------------------------------------------------------------------------
# 2. Tamper detection
# ---------------------------------------------------------------------------

class TestTamperDetection:
    def test_modified_entry_detected(self):
        log = _make_logger()
        for i in range(3):
            _log_view(log, actor_id=f"user_{i}")

        original = log._store._entries[1]
        log._store._entries[1] = original.model_copy(update={"detail": "tampered"})

        valid, broken_at = log.verify_chain()
        assert valid is False
        assert broken_at == 1

    def test_first_entry_with_previous_hash_detected(self):
        log = _make_logger()
        _log_view(log)
        original = log._store._entries[0]
        log._store._entries[0] = original.model_copy(update={"previous_hash": "abc"})
        assert log.verify_chain() == (False, 0)


# ---------------------------------------------------------------------------
# 3. Timestamps
# ---------------------------------------------------------------------------

class TestTimestamps:
    def test_timestamps_never_go_backwards(self):
        times = iter([T0, T0 - timedelta(hours=1), T0 + timedelta(hours=1)])
        log = _make_logger(clock=lambda: next(times))
        for _ in range(3):
            _log_view(log)
        stamps = [e.timestamp for e in log.query()]
        assert stamps == [T0, T0, T0 + timedelta(hours=1)]

    def test_naive_clock_treated_as_utc(self):
        log = _make_logger(clock=lambda: datetime(2024, 3, 4, 10, 0))
        _log_view(log)
        assert log.query()[0].timestamp == T0


# ---------------------------------------------------------------------------
# 4. Query filtering
# ---------------------------------------------------------------------------

class TestQueryFiltering:
    def _populated(self) -> AuditLogger:
        log = _make_logger()
        _log_view(log, actor_id="dr_a", actor_role=Role.PROVIDER, subject_id="pt_1")
        _log_view(log, actor_id="rn_b", actor_role=Role.NURSE, subject_id="pt_1")
        _log_view(log, actor_id="dr_a", actor_role=Role.PROVIDER, subject_id="pt_2")
        log.log_access("bill_c", Role.BILLING, AuditAction.EXPORT, "claims")
        log.log_security_event("intruder", Role.GUEST, SecurityEventKind.FAILED_LOGIN, "bad password")
        return log

    def test_filter_by_actor(self):
        assert len(self._populated().query(actor_id="dr_a")) == 2

    def test_filter_by_subject(self):
        assert len(self._populated().query(subject_id="pt_1")) == 2

    def test_filter_by_role(self):
        log = self._populated()
        assert len(log.query(actor_role=Role.NURSE)) == 1
        assert len(log.query(actor_role="provider")) == 2

    def test_filter_by_action(self):
        assert len(self._populated().query(action=AuditAction.EXPORT)) == 1

    def test_filter_by_event_kind(self):
        results = self._populated().query(event_kind="failed-login")
        assert len(results) == 1
        assert results[0].actor_id == "intruder"

    def test_filter_by_time_window_is_inclusive(self):
        log = self._populated()
        results = log.query(
            start_time=T0 + timedelta(minutes=1),
            end_time=T0 + timedelta(minutes=2),
        )
        assert [e.actor_id for e in results] == ["rn_b", "dr_a"]

    def test_combined_filters(self):
        log = self._populated()
        assert len(log.query(actor_id="dr_a", subject_id="pt_2")) == 1
        assert log.query(actor_id="dr_a", actor_role=Role.NURSE) == []

    def test_timezone_less_bounds_read_as_utc(self):
        log = self._populated()
        naive_start = (T0 + timedelta(minutes=1)).replace(tzinfo=None)
        naive_end = (T0 + timedelta(minutes=2)).replace(tzinfo=None)
        results = log.query(start_time=naive_start, end_time=naive_end)
        assert [e.actor_id for e in results] == ["rn_b", "dr_a"]

    def test_timezone_less_bounds_in_export(self):
        log = self._populated()
        export = log.export_for_review(start_time=datetime(2000, 1, 1))
        assert export["export_metadata"]["entry_count"] == 5
        assert export["export_metadata"]["window_start"] == "2000-01-01T00:00:00+00:00"


# ---------------------------------------------------------------------------
# 5. Security events and alerting
# ---------------------------------------------------------------------------

class TestSecurityEvents:
    def test_failed_login_recorded_as_failed_login_action(self):
        log = _make_logger()
        log.log_security_event("u1", Role.NURSE, SecurityEventKind.FAILED_LOGIN, "bad password")
        entry = log.query()[0]
        assert entry.action == AuditAction.LOGIN
        assert entry.success is False
        assert entry.resource == "security"
        assert entry.is_security_event
        assert entry.detail == "SECURITY EVENT: failed-login - bad password"

    def test_high_severity_event_is_alerted(self):
        alerter = _RecordingAlerter()
        log = _make_logger(alerter=alerter)
        entry_id = log.log_security_event("u1", Role.GUEST, SecurityEventKind.DATA_BREACH, "bulk export")
        log.flush(timeout=5)
        assert [a.entry_id for a in alerter.alerts] == [entry_id]

    def test_unauthorized_access_is_alerted(self):
        alerter = _RecordingAlerter()
        log = _make_logger(alerter=alerter)
        log.log_security_event("u1", Role.GUEST, SecurityEventKind.UNAUTHORIZED_ACCESS, "chart:9")
        log.flush(timeout=5)
        assert len(alerter.alerts) == 1

    def test_low_severity_event_not_alerted(self):
        alerter = _RecordingAlerter()
        log = _make_logger(alerter=alerter)
        log.log_security_event("u1", Role.NURSE, SecurityEventKind.FAILED_LOGIN)
        log.log_security_event("u1", Role.NURSE, SecurityEventKind.SESSION_TIMEOUT)
        log.flush(timeout=5)
        assert alerter.alerts == []

    def test_alerter_failure_does_not_reach_caller(self):
        log = _make_logger(alerter=_BrokenAlerter())
        log.log_security_event("u1", Role.GUEST, SecurityEventKind.DATA_BREACH, "bulk export")
        log.flush(timeout=5)
        assert len(log) == 1
        log.shutdown()


# ---------------------------------------------------------------------------
# 6. Sink delivery and outages
# ---------------------------------------------------------------------------

class TestSinkDelivery:
    def test_entries_forwarded_to_sink(self):
        sink = _RecordingSink()
        log = _make_logger(sink=sink)
        ids = [_log_view(log, actor_id=f"user_{i}") for i in range(3)]
        log.flush(timeout=5)
        assert [e.entry_id for e in sink.written] == ids
        assert log.sink_available is True

    def test_outage_recorded_once(self):
        log = _make_logger(sink=_RecordingSink(fail=True))
        for i in range(3):
            _log_view(log, actor_id=f"user_{i}")
        log.flush(timeout=5)

        outage = log.query(event_kind=SecurityEventKind.AUDIT_SINK_UNAVAILABLE)
        assert len(outage) == 1
        assert outage[0].actor_id == SYSTEM_ACTOR
        assert len(log) == 4
        assert log.sink_available is False

    def test_failed_entries_retained_locally(self):
        log = _make_logger(sink=_RecordingSink(fail=True))
        ids = [_log_view(log, actor_id=f"user_{i}") for i in range(2)]
        log.flush(timeout=5)

        undelivered_ids = {e.entry_id for e in log.undelivered()}
        assert set(ids) <= undelivered_ids
        # The outage event itself is queued for the sink as well.
        assert len(undelivered_ids) == 3
        assert log.verify_chain() == (True, None)

    def test_recovery_and_retry(self):
        sink = _RecordingSink(fail=True)
        log = _make_logger(sink=sink)
        _log_view(log)
        log.flush(timeout=5)
        assert log.sink_available is False

        sink.fail = False
        assert log.retry_undelivered() == 2
        log.flush(timeout=5)

        assert log.sink_available is True
        assert log.undelivered() == []
        assert len(sink.written) == 2

    def test_second_outage_recorded_again(self):
        sink = _RecordingSink(fail=True)
        log = _make_logger(sink=sink)
        _log_view(log)
        log.flush(timeout=5)
        sink.fail = False
        _log_view(log)
        log.flush(timeout=5)
        sink.fail = True
        _log_view(log)
        log.flush(timeout=5)
        assert len(log.query(event_kind=SecurityEventKind.AUDIT_SINK_UNAVAILABLE)) == 2

    def test_environment_sink_persists_json(self):
        env = InMemoryEnvironment()
        log = AuditLogger(environment=env, clock=_stepping_clock())
        entry_id = _log_view(log)
        log.flush(timeout=5)

        key = f"{EnvironmentAuditSink.KEY_PREFIX}{entry_id}"
        assert key in env.storage
        assert json.loads(env.storage[key])["entry_id"] == entry_id

    def test_shutdown_is_repeatable(self):
        log = _make_logger()
        _log_view(log)
        log.shutdown()
        log.shutdown()
        _log_view(log)
        log.flush(timeout=5)
        assert len(log) == 2
        log.shutdown()


# ---------------------------------------------------------------------------
# 7. Convenience loggers
# ---------------------------------------------------------------------------

class TestConvenienceLoggers:
    def test_component_access(self):
        log = _make_logger()
        log.log_component_access(
            "rn_b", Role.NURSE, "vitals-panel", "click", item_id="obs-1",
            category="vitals", subject_id="pt_1",
        )
        entry = log.query()[0]
        assert entry.action == AuditAction.VIEW
        assert entry.resource == "vitals-panel:obs-1"
        assert entry.detail == "Component access: click vitals"
        assert entry.subject_id == "pt_1"

    def test_component_access_without_item(self):
        log = _make_logger()
        log.log_component_access("rn_b", Role.NURSE, "dashboard", "open")
        entry = log.query()[0]
        assert entry.resource == "dashboard"
        assert entry.detail == "Component access: open general"

    def test_progress_update(self):
        log = _make_logger()
        log.log_progress("pt_1", Role.PATIENT, "weight", 70.5, 50.0, subject_id="pt_1", critical=True)
        entry = log.query()[0]
        assert entry.action == AuditAction.UPDATE
        assert entry.resource == "progress:weight"
        assert entry.detail == "Progress update: 70.5 (50.0%) [CRITICAL]"

    def test_phi_categories_recorded(self):
        log = _make_logger()
        _log_view(log, phi_categories=[PHICategory.DIAGNOSIS, "medication"])
        assert log.query()[0].phi_categories == (PHICategory.DIAGNOSIS, PHICategory.MEDICATION)

    def test_unknown_phi_category_does_not_block_entry(self):
        log = _make_logger()
        entry_id = _log_view(log, phi_categories=["shoe-size", PHICategory.VITALS])
        entry = log.query()[0]
        assert entry.entry_id == entry_id
        assert entry.phi_categories == (PHICategory.VITALS,)


# ---------------------------------------------------------------------------
# 8. Export and PHI redaction
# ---------------------------------------------------------------------------

class TestExportForReview:
    def test_export_structure(self):
        log = _make_logger()
        _log_view(log)
        _log_view(log)
        export = log.export_for_review()
        meta = export["export_metadata"]
        assert meta["entry_count"] == 2
        assert meta["chain_integrity"] == "VALID"
        assert meta["window_start"] is None
        assert len(export["entries"]) == 2
        json.dumps(export)

    def test_export_redacts_phi_in_detail(self):
        log = _make_logger()
        _log_view(log, detail="Caller gave SSN 123-45-6789 and jane@example.com")
        detail = log.export_for_review()["entries"][0]["detail"]
        assert "123-45-6789" not in detail
        assert "[REDACTED-SSN]" in detail
        assert "[REDACTED-EMAIL]" in detail

    def test_export_reports_broken_chain(self):
        log = _make_logger()
        for _ in range(3):
            _log_view(log)
        log._store._entries[2] = log._store._entries[2].model_copy(update={"resource": "x"})
        assert log.export_for_review()["export_metadata"]["chain_integrity"] == "BROKEN_AT_INDEX_2"

    def test_redact_none(self):
        assert redact_phi_from_text(None) is None

    def test_redact_phone_and_dob(self):
        text = redact_phi_from_text("dob 1980-03-15 phone 555-123-4567")
        assert text == "dob [REDACTED-DOB] phone [REDACTED-PHONE]"


# ---------------------------------------------------------------------------
# 9. Concurrency
# ---------------------------------------------------------------------------

class TestConcurrentAppends:
    def test_concurrent_appends_keep_chain_intact(self):
        log = _make_logger(clock=lambda: T0)

        def worker(n: int) -> None:
            for i in range(25):
                _log_view(log, actor_id=f"worker_{n}_{i}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        log.flush(timeout=10)
        assert len(log) == 200
        assert log.verify_chain() == (True, None)
        log.shutdown()
