"""
Compliance Report Generator.

Aggregates audit entries from a reporting window into a summary for
privacy and security officers: how much PHI access happened, by how many
users, touching how many patients, which resources were hit most, which
security events occurred, and heuristic recommendations for follow-up.

Recommendations are driven by ``ComplianceThresholds``:

* failed logins above ``failed_login_threshold`` suggest account lockout;
* after-hours entries above ``after_hours_ratio`` of the total suggest an
  access-pattern review.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional
from zoneinfo import ZoneInfo

from phiguard.config import ComplianceThresholds
from phiguard.models import AuditAction

if TYPE_CHECKING:
    from phiguard.audit import AuditEntry


FAILED_LOGIN_RECOMMENDATION = (
    "High number of failed login attempts detected. "
    "Consider implementing account lockout policies."
)
AFTER_HOURS_RECOMMENDATION = (
    "Significant after-hours access detected. "
    "Review access patterns and consider additional authentication."
)


class ComplianceReport:
    """Summary of audit activity over a reporting window."""

    def __init__(
        self,
        window_start: Optional[datetime],
        window_end: Optional[datetime],
        generated_at: datetime,
        total_access: int,
        unique_users: int,
        patients_accessed: int,
        failed_logins: int,
        after_hours_access: int,
        top_accessed_resources: list[dict[str, Any]],
        security_events: list[AuditEntry],
        recommendations: list[str],
    ) -> None:
        self.window_start = window_start
        self.window_end = window_end
        self.generated_at = generated_at
        self.total_access = total_access
        self.unique_users = unique_users
        self.patients_accessed = patients_accessed
        self.failed_logins = failed_logins
        self.after_hours_access = after_hours_access
        self.top_accessed_resources = top_accessed_resources
        self.security_events = security_events
        self.recommendations = recommendations

    @property
    def security_event_count(self) -> int:
        return len(self.security_events)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the report to a JSON-compatible dictionary."""
        return {
            "report_type": "PHI Access Compliance Report",
            "window_start": self.window_start.isoformat() if self.window_start else None,
            "window_end": self.window_end.isoformat() if self.window_end else None,
            "generated_at": self.generated_at.isoformat(),
            "summary": {
                "total_access": self.total_access,
                "unique_users": self.unique_users,
                "patients_accessed": self.patients_accessed,
                "security_events": self.security_event_count,
                "failed_logins": self.failed_logins,
                "after_hours_access": self.after_hours_access,
            },
            "top_accessed_resources": self.top_accessed_resources,
            "security_events": [e.model_dump(mode="json") for e in self.security_events],
            "recommendations": self.recommendations,
        }

    def __repr__(self) -> str:
        return (
            f"ComplianceReport(total_access={self.total_access}, "
            f"security_events={self.security_event_count}, "
            f"recommendations={len(self.recommendations)})"
        )


def generate_compliance_report(
    entries: list[AuditEntry],
    thresholds: ComplianceThresholds,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
    generated_at: Optional[datetime] = None,
) -> ComplianceReport:
    """Build a ``ComplianceReport`` from entries already filtered to a window.

    Args:
        entries: Audit entries in ledger order.
        thresholds: Recommendation thresholds.
        start_time: Start of the reporting window (for the report header).
        end_time: End of the reporting window (for the report header).
        generated_at: Report timestamp.  Defaults to now (UTC).

    Returns:
        A ``ComplianceReport``.
    """
    if generated_at is None:
        generated_at = datetime.now(timezone.utc)

    failed_logins = sum(
        1 for e in entries if e.action == AuditAction.LOGIN and not e.success
    )
    after_hours = _count_after_hours(entries, thresholds)

    return ComplianceReport(
        window_start=start_time,
        window_end=end_time,
        generated_at=generated_at,
        total_access=len(entries),
        unique_users=len({e.actor_id for e in entries}),
        patients_accessed=len({e.subject_id for e in entries if e.subject_id}),
        failed_logins=failed_logins,
        after_hours_access=after_hours,
        top_accessed_resources=_top_resources(entries, thresholds.top_resources_limit),
        security_events=[e for e in entries if e.is_security_event],
        recommendations=_recommendations(
            len(entries), failed_logins, after_hours, thresholds
        ),
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _top_resources(entries: list[AuditEntry], limit: int) -> list[dict[str, Any]]:
    """Most-accessed resources; ties keep the order of first occurrence."""
    # Counter preserves insertion order and sorted() is stable.
    counts = Counter(e.resource for e in entries)
    ranked = sorted(counts.items(), key=lambda item: -item[1])
    return [{"resource": resource, "count": count} for resource, count in ranked[:limit]]


def _count_after_hours(entries: list[AuditEntry], thresholds: ComplianceThresholds) -> int:
    tz = ZoneInfo(thresholds.report_timezone)
    return sum(
        1 for e in entries if thresholds.is_after_hours(e.timestamp.astimezone(tz).hour)
    )


def _recommendations(
    total: int,
    failed_logins: int,
    after_hours: int,
    thresholds: ComplianceThresholds,
) -> list[str]:
    recommendations: list[str] = []
    if failed_logins > thresholds.failed_login_threshold:
        recommendations.append(FAILED_LOGIN_RECOMMENDATION)
    if after_hours > total * thresholds.after_hours_ratio:
        recommendations.append(AFTER_HOURS_RECOMMENDATION)
    return recommendations
