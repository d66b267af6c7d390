"""
Engine Configuration -- compliance thresholds and session policy.

Every number that drives a compliance heuristic or a session deadline is
a validated configuration field with a documented default, rather than a
constant buried in the reporting or session code.  Deployments tune them
through YAML:

    phiguard:
      name: "north-campus"
      thresholds:
        failed_login_threshold: 5
        after_hours_ratio: 0.05
        report_timezone: "America/Chicago"
      session:
        timeout_seconds: 900
        warning_seconds: 120

The defaults follow the HIPAA technical-safeguard guidance the engine was
built around: a 20 minute idle session with a 5 minute renewal warning,
more than 10 failed logins in a reporting window flagged for review, and
after-hours activity above 10% of total flagged.
"""

from __future__ import annotations

from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Compliance report thresholds
# ---------------------------------------------------------------------------

class ComplianceThresholds(BaseModel):
    """Thresholds for the heuristic recommendations in compliance reports.

    These are review triggers, not enforcement rules.  Exceeding one adds
    a recommendation to the report; nothing is blocked.
    """

    failed_login_threshold: int = Field(
        default=10,
        ge=0,
        description=(
            "Number of failed logins in the report window above which an "
            "account-lockout recommendation is raised."
        ),
    )
    after_hours_ratio: float = Field(
        default=0.10,
        ge=0,
        le=1,
        description=(
            "Fraction of entries in the report window that may fall outside "
            "business hours before an access-pattern review is recommended."
        ),
    )
    after_hours_start_hour: int = Field(
        default=6,
        ge=0,
        le=23,
        description="Local hour at which business hours begin (entries before it are after-hours).",
    )
    after_hours_end_hour: int = Field(
        default=22,
        ge=0,
        le=23,
        description="Local hour after which entries count as after-hours.",
    )
    top_resources_limit: int = Field(
        default=10,
        ge=1,
        description="Number of most-accessed resources listed in a report.",
    )
    report_timezone: str = Field(
        default="UTC",
        description="IANA time zone used to decide the local hour of an entry.",
    )

    @field_validator("after_hours_end_hour")
    @classmethod
    def end_not_before_start(cls, v: int, info) -> int:
        start = info.data.get("after_hours_start_hour")
        if start is not None and v < start:
            raise ValueError(
                f"after_hours_end_hour ({v}) must be >= after_hours_start_hour ({start})"
            )
        return v

    @field_validator("report_timezone")
    @classmethod
    def known_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown report_timezone '{v}'") from exc
        return v

    def is_after_hours(self, hour: int) -> bool:
        """Whether a local hour falls outside business hours."""
        return hour < self.after_hours_start_hour or hour > self.after_hours_end_hour


# ---------------------------------------------------------------------------
# Session policy
# ---------------------------------------------------------------------------

class SessionPolicy(BaseModel):
    """Default lifetime of an authenticated session.

    ``warning_seconds`` is how long before the hard deadline the user is
    prompted to renew.
    """

    timeout_seconds: float = Field(
        default=20 * 60,
        gt=0,
        description="Seconds from start (or last extension) until the session expires.",
    )
    warning_seconds: float = Field(
        default=5 * 60,
        ge=0,
        description="Seconds before expiry at which the renewal prompt is shown.",
    )

    @field_validator("warning_seconds")
    @classmethod
    def warning_inside_timeout(cls, v: float, info) -> float:
        timeout = info.data.get("timeout_seconds")
        if timeout is not None and v >= timeout:
            raise ValueError(
                f"warning_seconds ({v}) must be < timeout_seconds ({timeout})"
            )
        return v


# ---------------------------------------------------------------------------
# Engine configuration
# ---------------------------------------------------------------------------

class EngineConfig(BaseModel):
    """Complete configuration for one engine instance."""

    name: str = Field(
        default="default",
        min_length=1,
        description="Label for this deployment, used in log messages.",
    )
    thresholds: ComplianceThresholds = Field(
        default_factory=ComplianceThresholds,
        description="Compliance report recommendation thresholds.",
    )
    session: SessionPolicy = Field(
        default_factory=SessionPolicy,
        description="Session timeout and warning window.",
    )


DEFAULT_CONFIG = EngineConfig()
"""Built-in configuration: 20 minute sessions, 5 minute warning, default thresholds."""


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_config_from_yaml(path: str | Path) -> EngineConfig:
    """Load engine configuration from a YAML file.

    The file must contain a top-level ``phiguard`` mapping.  Missing
    sections fall back to their defaults.

    Args:
        path: Path to the YAML file.

    Returns:
        A validated ``EngineConfig``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If any value fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "phiguard" not in raw:
        raise ValueError("YAML file must contain a top-level 'phiguard' mapping.")

    section = raw["phiguard"] or {}
    if not isinstance(section, dict):
        raise ValueError("'phiguard' must be a mapping.")

    for key in ("thresholds", "session"):
        if key in section and not isinstance(section[key], dict):
            raise ValueError(f"'{key}' must be a mapping.")

    return EngineConfig(**section)
