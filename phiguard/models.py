"""
Core data models for PHIGuard.

Closed enumerations for PHI categories, user roles, audit actions,
security event kinds and session states, plus the client metadata
captured on every audit entry.

All enums subclass ``str`` so their values serialize directly into audit
entries, YAML configuration and JSON exports.
"""

from __future__ import annotations

import enum

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class PHICategory(str, enum.Enum):
    """Categories of Protected Health Information.

    Structured identifiers (``SSN``, ``MRN``, ``PHONE``, ``EMAIL``) may be
    partially redacted.  Unstructured clinical categories (``DIAGNOSIS``,
    ``MEDICATION``, ``VITALS``, ``IMAGE``, ``DOCUMENT``) are only ever
    replaced by a placeholder.
    """

    NAME = "name"
    SSN = "ssn"
    DOB = "dob"
    ADDRESS = "address"
    PHONE = "phone"
    EMAIL = "email"
    MRN = "mrn"
    INSURANCE = "insurance"
    DIAGNOSIS = "diagnosis"
    MEDICATION = "medication"
    VITALS = "vitals"
    IMAGE = "image"
    DOCUMENT = "document"


class Role(str, enum.Enum):
    """Roles used for PHI access control.

    ``RESEARCHER`` never sees raw PHI; a de-identified rendering is used
    for a few categories instead.  ``GUEST`` sees nothing.
    """

    PATIENT = "patient"
    PROVIDER = "provider"
    NURSE = "nurse"
    ADMIN = "admin"
    TECHNICIAN = "technician"
    BILLING = "billing"
    RESEARCHER = "researcher"
    GUEST = "guest"


class AuditAction(str, enum.Enum):
    """Actions recorded in the audit ledger."""

    VIEW = "view"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    PRINT = "print"
    EXPORT = "export"
    LOGIN = "login"
    LOGOUT = "logout"


class SecurityEventKind(str, enum.Enum):
    """Security-relevant events recorded alongside PHI access.

    ``UNAUTHORIZED_ACCESS`` and ``DATA_BREACH`` are high severity and are
    forwarded to the security alerting channel.
    """

    UNAUTHORIZED_ACCESS = "unauthorized-access"
    FAILED_LOGIN = "failed-login"
    SESSION_TIMEOUT = "session-timeout"
    DATA_BREACH = "data-breach"
    AUDIT_SINK_UNAVAILABLE = "audit-sink-unavailable"


HIGH_SEVERITY_EVENTS = frozenset({
    SecurityEventKind.UNAUTHORIZED_ACCESS,
    SecurityEventKind.DATA_BREACH,
})


class SessionState(str, enum.Enum):
    """Lifecycle states for an authenticated session.

    ``EXPIRED`` and ``TERMINATED`` are terminal.  A ``WARNED`` session
    returns to ``ACTIVE`` when it is extended.
    """

    ACTIVE = "ACTIVE"
    WARNED = "WARNED"
    EXPIRED = "EXPIRED"
    TERMINATED = "TERMINATED"


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

class ClientMetadata(BaseModel):
    """Origin of a request, stamped on every audit entry."""

    client_address: str = Field(
        default="127.0.0.1",
        description="Network address of the client issuing the request.",
    )
    user_agent: str = Field(
        default="unknown",
        description="User agent string reported by the client.",
    )
