"""
Synthetic Scenario: One Clinic Shift Through the PHI Engine
===========================================================

This script walks a single simulated clinic shift through PHIGuard using
entirely synthetic data.  No real patient data is used.

Steps demonstrated:
  1. Load engine configuration from YAML
  2. Start sessions for a nurse and a researcher
  3. Render one patient record for each role (masked per role)
  4. Record a burst of failed logins and a data-breach alert
  5. Let the nurse's session hit its renewal warning, extend it, then
     let the researcher's session time out
  6. Generate a compliance report
  7. Export the audit ledger for review

The clock is a ``ManualScheduler``, so the whole shift runs instantly.

Usage:
    python -m examples.synthetic_scenario
    # or: python examples/synthetic_scenario.py
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from phiguard.config import DEFAULT_CONFIG, load_config_from_yaml
from phiguard.engine import PHIGuardEngine
from phiguard.environment import InMemorySessionClient
from phiguard.masking import mask_fields
from phiguard.models import PHICategory, Role, SecurityEventKind
from phiguard.scheduling import ManualScheduler


PATIENT_ID = "pt_synthetic_001"

SYNTHETIC_RECORD = {
    "name": ("Jordan Example", PHICategory.NAME),
    "dob": ("1975-06-02", PHICategory.DOB),
    "address": ("12 Sample Lane, Springfield, IL", PHICategory.ADDRESS),
    "phone": ("555-010-0199", PHICategory.PHONE),
    "ssn": ("000-12-3456", PHICategory.SSN),
    "mrn": ("MRN00042424", PHICategory.MRN),
    "diagnosis": ("Hypertension", PHICategory.DIAGNOSIS),
}


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def _render(engine: PHIGuardEngine, actor_id: str, role: Role) -> None:
    for field, (value, category) in SYNTHETIC_RECORD.items():
        shown = engine.view(actor_id, role, value, category, f"chart:{PATIENT_ID}", PATIENT_ID)
        print(f"  {field:<10} {shown}")


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    _banner("PHIGuard Synthetic Scenario: One Clinic Shift")
    print("All data in this demo is entirely synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Load configuration
    # ------------------------------------------------------------------
    _banner("Step 1: Load Engine Configuration")

    sample_yaml = Path(__file__).parent / "phiguard.yaml"
    if sample_yaml.exists():
        config = load_config_from_yaml(sample_yaml)
    else:
        config = DEFAULT_CONFIG
    print(f"Deployment:        {config.name}")
    print(f"Session timeout:   {config.session.timeout_seconds:.0f}s")
    print(f"Renewal warning:   {config.session.warning_seconds:.0f}s before expiry")
    print(f"Report time zone:  {config.thresholds.report_timezone}")

    clock = ManualScheduler()
    client = InMemorySessionClient()

    with PHIGuardEngine(
        config=config,
        scheduler=clock,
        session_client=client,
        clock=clock.now,
    ) as engine:
        # --------------------------------------------------------------
        # Step 2: Sessions
        # --------------------------------------------------------------
        _banner("Step 2: Start Sessions")

        nurse = engine.sessions.start_session("rn_synthetic", Role.NURSE)
        researcher = engine.sessions.start_session("res_synthetic", Role.RESEARCHER)
        for session in (nurse, researcher):
            print(f"{session.user_id} ({session.role.value}) expires at {session.expires_at.isoformat()}")

        # --------------------------------------------------------------
        # Step 3: Render the record for each role
        # --------------------------------------------------------------
        _banner("Step 3: Role-Aware Rendering")

        print("Nurse view:")
        _render(engine, "rn_synthetic", Role.NURSE)
        print("\nResearcher view:")
        _render(engine, "res_synthetic", Role.RESEARCHER)
        print("\nBilling view (no audit, bulk masking only):")
        for field, shown in mask_fields(SYNTHETIC_RECORD, Role.BILLING).items():
            print(f"  {field:<10} {shown}")

        # --------------------------------------------------------------
        # Step 4: Security events
        # --------------------------------------------------------------
        _banner("Step 4: Security Events")

        for attempt in range(12):
            engine.audit.log_security_event(
                "unknown_user", Role.GUEST, SecurityEventKind.FAILED_LOGIN,
                f"Invalid password (attempt {attempt + 1})",
            )
        engine.audit.log_security_event(
            "unknown_user", Role.GUEST, SecurityEventKind.DATA_BREACH,
            "Bulk export attempt from unrecognized device",
        )
        engine.audit.flush(timeout=5)
        print("Recorded 12 failed logins and 1 data-breach event (alert dispatched).")

        # --------------------------------------------------------------
        # Step 5: Warning, extension and timeout
        # --------------------------------------------------------------
        _banner("Step 5: Session Timers")

        warning_due = config.session.timeout_seconds - config.session.warning_seconds
        clock.advance(warning_due)
        print(f"Renewal prompts so far: {client.renewal_prompts}")

        engine.sessions.extend_session("rn_synthetic")
        print("Nurse extended the session.")

        clock.advance(config.session.warning_seconds)
        print(f"Researcher session state: {engine.sessions.get_session('res_synthetic').state.value}")
        print(f"Nurse session state:      {engine.sessions.get_session('rn_synthetic').state.value}")
        print(f"Client redirects:         {client.redirects}")

        # --------------------------------------------------------------
        # Step 6: Compliance report
        # --------------------------------------------------------------
        _banner("Step 6: Compliance Report")

        report = engine.audit.compliance_report()
        print(json.dumps(report.to_dict()["summary"], indent=2))
        print("\nTop resources:")
        for item in report.top_accessed_resources:
            print(f"  {item['resource']:<28} {item['count']}")
        print("\nRecommendations:")
        for rec in report.recommendations:
            print(f"  - {rec}")

        # --------------------------------------------------------------
        # Step 7: Export
        # --------------------------------------------------------------
        _banner("Step 7: Audit Export")

        export = engine.audit.export_for_review()
        meta = export["export_metadata"]
        print(f"Entries exported:  {meta['entry_count']}")
        print(f"Chain integrity:   {meta['chain_integrity']}")

    _banner("Scenario Complete")


if __name__ == "__main__":
    main()
