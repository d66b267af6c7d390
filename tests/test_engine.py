"""
Tests for phiguard.engine -- end-to-end wiring of masking, audit and sessions.
"""

from __future__ import annotations

from datetime import timedelta

from phiguard.audit import AuditLogger
from phiguard.config import EngineConfig, SessionPolicy
from phiguard.engine import PHIGuardEngine
from phiguard.environment import InMemoryEnvironment, InMemorySessionClient
from phiguard.models import AuditAction, PHICategory, Role, SecurityEventKind
from phiguard.scheduling import ManualScheduler
from phiguard.session import SessionManager


def _make_engine(config: EngineConfig | None = None):
    sched = ManualScheduler()
    client = InMemorySessionClient()
    engine = PHIGuardEngine(
        config=config,
        scheduler=sched,
        session_client=client,
        clock=sched.now,
    )
    return engine, sched, client


class TestLifecycle:
    def test_start_and_shutdown(self):
        engine, _, _ = _make_engine()
        assert engine.running is False
        assert engine.start() is engine
        assert engine.running is True
        engine.shutdown()
        assert engine.running is False

    def test_context_manager(self):
        engine, _, _ = _make_engine()
        with engine as running:
            assert running.running is True
        assert engine.running is False

    def test_shutdown_without_start_drains_audit_deliveries(self):
        sched = ManualScheduler()
        env = InMemoryEnvironment()
        engine = PHIGuardEngine(scheduler=sched, environment=env, clock=sched.now)
        engine.view("dr_a", Role.PROVIDER, "Type 2 Diabetes", PHICategory.DIAGNOSIS, "chart:42")
        engine.sessions.start_session("dr_a", Role.PROVIDER)

        engine.shutdown()

        assert engine.running is False
        assert len(env.storage) == 2
        assert sched.pending == 0
        engine.shutdown()

    def test_services_are_wired(self):
        engine, _, _ = _make_engine()
        assert isinstance(engine.audit, AuditLogger)
        assert isinstance(engine.sessions, SessionManager)

    def test_session_policy_from_config(self):
        config = EngineConfig(session=SessionPolicy(timeout_seconds=120, warning_seconds=30))
        engine, _, _ = _make_engine(config)
        session = engine.sessions.start_session("rn_b", Role.NURSE)
        assert session.expires_at - session.created_at == timedelta(seconds=120)


class TestView:
    def test_researcher_sees_placeholder_and_is_audited(self):
        engine, _, _ = _make_engine()
        shown = engine.view(
            "res_1", Role.RESEARCHER, "Type 2 Diabetes", PHICategory.DIAGNOSIS,
            "chart:42", subject_id="pt_1",
        )
        assert shown == "[DIAGNOSIS PROTECTED]"

        entries = engine.audit.query(actor_role=Role.RESEARCHER)
        assert len(entries) == 1
        assert entries[0].action == AuditAction.VIEW
        assert entries[0].phi_categories == (PHICategory.DIAGNOSIS,)
        assert entries[0].detail == "Displayed masked"
        assert "Diabetes" not in entries[0].model_dump_json()

    def test_provider_sees_raw_value(self):
        engine, _, _ = _make_engine()
        shown = engine.view("dr_a", Role.PROVIDER, "Type 2 Diabetes", "diagnosis", "chart:42")
        assert shown == "Type 2 Diabetes"
        entries = engine.audit.query(actor_role="provider")
        assert len(entries) == 1
        assert entries[0].detail == "Displayed unmasked"

    def test_unknown_category(self):
        engine, _, _ = _make_engine()
        assert engine.view("dr_a", Role.PROVIDER, "42", "shoe-size", "chart:42") == "[PROTECTED]"
        entry = engine.audit.query()[0]
        assert entry.phi_categories == ()
        assert entry.detail == "Displayed masked"


class TestEndToEnd:
    def test_clinical_shift(self):
        engine, sched, client = _make_engine()
        with engine:
            engine.sessions.start_session("rn_b", Role.NURSE)
            engine.view("rn_b", Role.NURSE, "123-45-6789", PHICategory.SSN, "chart:42", "pt_1")
            engine.view("rn_b", Role.NURSE, "BP 120/80", PHICategory.VITALS, "chart:42", "pt_1")
            engine.audit.log_security_event(
                "intruder", Role.GUEST, SecurityEventKind.FAILED_LOGIN, "bad password"
            )
            sched.advance(engine.config.session.timeout_seconds)

            report = engine.audit.compliance_report()
            assert report.total_access == 5  # login, 2 views, failed login, logout
            assert report.failed_logins == 1
            assert report.patients_accessed == 1
            assert {"resource": "chart:42", "count": 2} in report.top_accessed_resources
            assert client.redirects == [("rn_b", "timeout")]
            assert engine.audit.verify_chain() == (True, None)
