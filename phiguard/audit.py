"""
Append-Only, Tamper-Evident PHI Audit Ledger (Hash-Chained).

Every PHI access and every security-relevant event -- logins, logouts,
failed logins, unauthorized access attempts, session timeouts, breaches --
is recorded as an immutable ``AuditEntry``.  Entries are linked via a
SHA-256 hash chain: if any stored entry is replaced after the fact,
``verify_chain()`` detects the inconsistency.

**Write path:**  ``AuditLogger`` serializes appends behind a lock, stamps
each entry with a timestamp that never goes backwards, stores it locally,
and hands it to the durable ``AuditSink`` on a background worker.  The
caller never waits for the sink and never sees its exceptions.

**Sink outages:**  entries that could not be delivered stay in the local
store and in an undelivered queue.  The first failure of an outage adds a
single ``audit-sink-unavailable`` security event -- not one per lost
entry -- and the next successful delivery closes the outage.

**Read path:**  ``query()``, ``compliance_report()`` and
``export_for_review()`` copy a snapshot under the lock and filter outside
it, so readers hold writers up only for the time of a list copy.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field

from phiguard.compliance_report import ComplianceReport, generate_compliance_report
from phiguard.config import ComplianceThresholds
from phiguard.environment import (
    AuditSink,
    Environment,
    EnvironmentAuditSink,
    InMemoryEnvironment,
    LoggingSecurityAlerter,
    SecurityAlerter,
)
from phiguard.models import (
    HIGH_SEVERITY_EVENTS,
    AuditAction,
    PHICategory,
    Role,
    SecurityEventKind,
)

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "SYSTEM"
SECURITY_RESOURCE = "security"


# ---------------------------------------------------------------------------
# Audit entry model
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """A single immutable audit ledger entry.

    Records who did what to which resource, when, from where, whether it
    succeeded, and the hash of the entry before it.
    """

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier for this audit entry (UUID).",
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC timestamp of the event.",
    )
    actor_id: str = Field(
        ...,
        description="Identifier of the user (or SYSTEM) that performed the action.",
    )
    actor_role: str = Field(
        ...,
        description="Role of the actor at the time of the action.",
    )
    action: AuditAction = Field(
        ...,
        description="What was done.",
    )
    resource: str = Field(
        ...,
        description="Identifier of the resource acted on (record, screen, 'session', 'security').",
    )
    phi_categories: tuple[PHICategory, ...] = Field(
        default=(),
        description="PHI categories touched by the action.",
    )
    subject_id: Optional[str] = Field(
        default=None,
        description="Patient whose data was accessed, if any.",
    )
    client_address: str = Field(
        default="",
        description="Network address of the client.",
    )
    user_agent: str = Field(
        default="",
        description="User agent reported by the client.",
    )
    success: bool = Field(
        default=True,
        description="Whether the action succeeded.",
    )
    detail: Optional[str] = Field(
        default=None,
        description="Free-text detail.  Must not contain raw PHI.",
    )
    event_kind: Optional[SecurityEventKind] = Field(
        default=None,
        description="Set only for security events.",
    )
    previous_hash: str = Field(
        default="",
        description=(
            "SHA-256 hash of the previous entry's canonical representation. "
            "Empty string for the first entry in the chain."
        ),
    )

    @property
    def is_security_event(self) -> bool:
        return self.event_kind is not None

    def canonical_bytes(self) -> bytes:
        """Return a deterministic byte representation for hashing.

        Uses sorted JSON serialization to ensure consistent ordering.
        """
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "action": self.action.value,
            "resource": self.resource,
            "phi_categories": [c.value for c in self.phi_categories],
            "subject_id": self.subject_id,
            "client_address": self.client_address,
            "user_agent": self.user_agent,
            "success": self.success,
            "detail": self.detail,
            "event_kind": self.event_kind.value if self.event_kind else None,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        """Compute the SHA-256 hash of this entry's canonical representation."""
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# PHI redaction patterns
# ---------------------------------------------------------------------------

# Patterns that might appear in free-text detail and are redacted on export.
_PHI_PATTERNS: dict[str, re.Pattern] = {
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "dob": re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),  # ISO date as potential DOB
    "phone": re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
}


def redact_phi_from_text(text: Optional[str]) -> Optional[str]:
    """Replace PHI-looking substrings with ``[REDACTED-<KIND>]`` markers.

    Applied to entry detail before any export that leaves the secure
    environment.

    Args:
        text: Free text, or None.

    Returns:
        The redacted text (None stays None).
    """
    if text is None:
        return None
    for pattern_name, pattern in _PHI_PATTERNS.items():
        text = pattern.sub(f"[REDACTED-{pattern_name.upper()}]", text)
    return text


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class AuditStore(Protocol):
    """Append-only storage behind an ``AuditLogger``."""

    def append(self, entry: AuditEntry) -> None: ...

    def last_hash(self) -> str: ...

    def snapshot(self) -> list[AuditEntry]: ...

    def verify_chain(self) -> tuple[bool, Optional[int]]: ...

    def __len__(self) -> int: ...


class InMemoryAuditStore:
    """In-process append-only store with a parallel list of chain hashes.

    There are no ``update()`` or ``delete()`` methods.  Thread safety is
    provided by the owning ``AuditLogger``.
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._hashes: list[str] = []  # parallel list of computed hashes

    def append(self, entry: AuditEntry) -> None:
        self._entries.append(entry)
        self._hashes.append(entry.compute_hash())

    def last_hash(self) -> str:
        return self._hashes[-1] if self._hashes else ""

    def snapshot(self) -> list[AuditEntry]:
        return list(self._entries)

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the store and validate every hash link.

        Returns:
            A tuple of ``(valid, broken_at)`` where ``valid`` is True if
            the entire chain is intact, and ``broken_at`` is the index of
            the first broken link (or None if valid).
        """
        for i, entry in enumerate(self._entries):
            if i == 0:
                if entry.previous_hash != "":
                    return (False, 0)
            elif entry.previous_hash != self._entries[i - 1].compute_hash():
                return (False, i)

            if self._hashes[i] != entry.compute_hash():
                return (False, i)

        return (True, None)

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Audit logger
# ---------------------------------------------------------------------------

def _role_value(role: Union[Role, str]) -> str:
    return role.value if isinstance(role, Role) else str(role)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat a timezone-less datetime as UTC, the same rule the write path uses."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _known_categories(categories: Iterable[Union[PHICategory, str]]) -> tuple[PHICategory, ...]:
    """Keep recognised PHI categories; unknown ones are logged and dropped."""
    known = []
    for category in categories:
        try:
            known.append(PHICategory(category))
        except ValueError:
            logger.warning("Ignoring unknown PHI category %r in audit entry", category)
    return tuple(known)


class AuditLogger:
    """Append-only PHI audit logger with fire-and-forget sink delivery.

    Construct one per application and pass it to whatever needs it; it
    holds no module-level state.  Call ``shutdown()`` when the
    application stops so pending deliveries are drained.

    Args:
        store: Append-only entry store.  Defaults to ``InMemoryAuditStore``.
        sink: Durable destination.  Defaults to ``EnvironmentAuditSink``.
        alerter: High-severity notification channel.  Defaults to
            ``LoggingSecurityAlerter``.
        environment: Source of client metadata.  Defaults to
            ``InMemoryEnvironment``.
        thresholds: Compliance report thresholds.
        clock: Callable returning the current UTC time.
    """

    def __init__(
        self,
        store: Optional[AuditStore] = None,
        sink: Optional[AuditSink] = None,
        alerter: Optional[SecurityAlerter] = None,
        environment: Optional[Environment] = None,
        thresholds: Optional[ComplianceThresholds] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store if store is not None else InMemoryAuditStore()
        self._environment = environment if environment is not None else InMemoryEnvironment()
        self._sink = sink if sink is not None else EnvironmentAuditSink(self._environment)
        self._alerter = alerter if alerter is not None else LoggingSecurityAlerter()
        self.thresholds = thresholds or ComplianceThresholds()
        self._clock = clock or _utc_now

        self._lock = threading.RLock()
        self._last_timestamp: Optional[datetime] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending: set[Future] = set()
        self._undelivered: list[AuditEntry] = []
        self._sink_down = False

    # -- write path --

    def log_access(
        self,
        actor_id: str,
        actor_role: Union[Role, str],
        action: Union[AuditAction, str],
        resource: str,
        phi_categories: Iterable[Union[PHICategory, str]] = (),
        subject_id: Optional[str] = None,
        success: bool = True,
        detail: Optional[str] = None,
    ) -> str:
        """Record a PHI access.

        Args:
            actor_id: User performing the action.
            actor_role: The user's role.
            action: What was done (view, export, login, ...).
            resource: The record or screen acted on.
            phi_categories: PHI categories touched.  Unrecognised values
                are dropped so the access is still recorded.
            subject_id: Patient whose data was accessed, if any.
            success: Whether the action succeeded.
            detail: Optional free text (no raw PHI).

        Returns:
            The new entry's id.
        """
        entry = self._append(
            actor_id=actor_id,
            actor_role=_role_value(actor_role),
            action=AuditAction(action),
            resource=resource,
            phi_categories=_known_categories(phi_categories),
            subject_id=subject_id,
            success=success,
            detail=detail,
        )
        return entry.entry_id

    def log_security_event(
        self,
        actor_id: str,
        actor_role: Union[Role, str],
        event_kind: Union[SecurityEventKind, str],
        detail: str = "",
    ) -> str:
        """Record a security event.

        ``unauthorized-access`` and ``data-breach`` are also forwarded to
        the security alerter.

        Args:
            actor_id: User involved (or SYSTEM).
            actor_role: The user's role.
            event_kind: Kind of security event.
            detail: Human-readable description (no raw PHI).

        Returns:
            The new entry's id.
        """
        kind = SecurityEventKind(event_kind)
        entry = self._append_security_event(actor_id, _role_value(actor_role), kind, detail)
        if kind in HIGH_SEVERITY_EVENTS:
            self._submit(self._alert, entry)
        return entry.entry_id

    def log_component_access(
        self,
        actor_id: str,
        actor_role: Union[Role, str],
        component: str,
        interaction: str,
        item_id: Optional[str] = None,
        category: Optional[str] = None,
        subject_id: Optional[str] = None,
    ) -> str:
        """Record a UI interaction with a PHI-bearing component.

        The resource is ``component`` or ``component:item_id``.

        Returns:
            The new entry's id.
        """
        resource = f"{component}:{item_id}" if item_id else component
        return self.log_access(
            actor_id,
            actor_role,
            AuditAction.VIEW,
            resource,
            subject_id=subject_id,
            detail=f"Component access: {interaction} {category or 'general'}",
        )

    def log_progress(
        self,
        actor_id: str,
        actor_role: Union[Role, str],
        metric: str,
        value: float,
        percentage: float,
        subject_id: Optional[str] = None,
        critical: bool = False,
    ) -> str:
        """Record an update to a tracked health metric.

        Returns:
            The new entry's id.
        """
        detail = f"Progress update: {value} ({percentage}%)"
        if critical:
            detail += " [CRITICAL]"
        return self.log_access(
            actor_id,
            actor_role,
            AuditAction.UPDATE,
            f"progress:{metric}",
            subject_id=subject_id,
            detail=detail,
        )

    # -- read path --

    def query(
        self,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        actor_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        actor_role: Union[Role, str, None] = None,
        action: Union[AuditAction, str, None] = None,
        event_kind: Union[SecurityEventKind, str, None] = None,
    ) -> list[AuditEntry]:
        """Return entries matching every provided filter, in ledger order.

        Args:
            start_time: Optional inclusive start time.  Naive values are UTC.
            end_time: Optional inclusive end time.  Naive values are UTC.
            actor_id: Optional filter by actor.
            subject_id: Optional filter by patient.
            actor_role: Optional filter by role.
            action: Optional filter by action.
            event_kind: Optional filter by security event kind.

        Returns:
            List of matching ``AuditEntry`` objects.
        """
        start_time = _as_utc(start_time)
        end_time = _as_utc(end_time)
        role = _role_value(actor_role) if actor_role is not None else None
        action = AuditAction(action) if action is not None else None
        kind = SecurityEventKind(event_kind) if event_kind is not None else None

        results = []
        for entry in self._snapshot():
            if start_time is not None and entry.timestamp < start_time:
                continue
            if end_time is not None and entry.timestamp > end_time:
                continue
            if actor_id is not None and entry.actor_id != actor_id:
                continue
            if subject_id is not None and entry.subject_id != subject_id:
                continue
            if role is not None and entry.actor_role != role:
                continue
            if action is not None and entry.action != action:
                continue
            if kind is not None and entry.event_kind != kind:
                continue
            results.append(entry)
        return results

    def compliance_report(
        self,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> ComplianceReport:
        """Aggregate the entries in a time window into a ``ComplianceReport``."""
        start_time, end_time = _as_utc(start_time), _as_utc(end_time)
        entries = self.query(start_time=start_time, end_time=end_time)
        return generate_compliance_report(
            entries,
            self.thresholds,
            start_time=start_time,
            end_time=end_time,
            generated_at=self._clock(),
        )

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Validate the hash chain of the underlying store."""
        with self._lock:
            return self._store.verify_chain()

    def export_for_review(
        self,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Produce a JSON-serializable export bundle for compliance review.

        PHI patterns are redacted from entry detail, and the chain
        verification result is included.

        Args:
            start_time: Optional start of export window.
            end_time: Optional end of export window.

        Returns:
            A dictionary with ``export_metadata`` and ``entries``.
        """
        start_time, end_time = _as_utc(start_time), _as_utc(end_time)
        entries = self.query(start_time=start_time, end_time=end_time)

        exported = []
        for entry in entries:
            entry_dict = entry.model_dump(mode="json")
            entry_dict["detail"] = redact_phi_from_text(entry.detail)
            exported.append(entry_dict)

        chain_valid, broken_at = self.verify_chain()

        return {
            "export_metadata": {
                "exported_at": self._clock().isoformat(),
                "window_start": start_time.isoformat() if start_time else None,
                "window_end": end_time.isoformat() if end_time else None,
                "entry_count": len(exported),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": exported,
        }

    # -- delivery --

    @property
    def sink_available(self) -> bool:
        """False while a sink outage is in progress."""
        with self._lock:
            return not self._sink_down

    def undelivered(self) -> list[AuditEntry]:
        """Entries retained locally because the sink rejected them."""
        with self._lock:
            return list(self._undelivered)

    def retry_undelivered(self) -> int:
        """Re-forward every retained entry to the sink.

        Returns:
            The number of entries re-submitted.
        """
        with self._lock:
            pending, self._undelivered = self._undelivered, []
            for entry in pending:
                self._submit(self._deliver, entry)
        return len(pending)

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until every delivery submitted so far has finished."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self, wait_for_pending: bool = True) -> None:
        """Drain and stop the delivery worker.

        A later write starts a fresh worker, so shutdown is safe to call
        more than once.
        """
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait_for_pending)
        logger.debug("Audit logger shut down (%d entries)", len(self))

    @property
    def length(self) -> int:
        """Return the number of entries in the ledger."""
        return len(self)

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    # -- internals --

    def _snapshot(self) -> list[AuditEntry]:
        with self._lock:
            return self._store.snapshot()

    def _now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        # Clock adjustments must not make the ledger go backwards.
        if self._last_timestamp is not None and now < self._last_timestamp:
            now = self._last_timestamp
        self._last_timestamp = now
        return now

    def _append(self, forward: bool = True, **fields: Any) -> AuditEntry:
        metadata = self._environment.get_client_metadata()
        with self._lock:
            entry = AuditEntry(
                timestamp=self._now(),
                client_address=metadata.client_address,
                user_agent=metadata.user_agent,
                previous_hash=self._store.last_hash(),
                **fields,
            )
            self._store.append(entry)
            if forward:
                self._submit(self._deliver, entry)
            else:
                self._undelivered.append(entry)
        logger.debug(
            "AUDIT %s %s by %s (%s) success=%s",
            entry.action.value,
            entry.resource,
            entry.actor_id,
            entry.actor_role,
            entry.success,
        )
        return entry

    def _append_security_event(
        self,
        actor_id: str,
        actor_role: str,
        kind: SecurityEventKind,
        detail: str,
        forward: bool = True,
    ) -> AuditEntry:
        if kind == SecurityEventKind.FAILED_LOGIN:
            action = AuditAction.LOGIN
        elif kind == SecurityEventKind.SESSION_TIMEOUT:
            action = AuditAction.LOGOUT
        else:
            action = AuditAction.VIEW
        return self._append(
            forward=forward,
            actor_id=actor_id,
            actor_role=actor_role,
            action=action,
            resource=SECURITY_RESOURCE,
            success=False,
            detail=f"SECURITY EVENT: {kind.value} - {detail}",
            event_kind=kind,
        )

    def _submit(self, fn: Callable[[AuditEntry], None], entry: AuditEntry) -> None:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="phiguard-audit"
                )
            future = self._executor.submit(fn, entry)
            self._pending.add(future)
        future.add_done_callback(self._discard_pending)

    def _discard_pending(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _deliver(self, entry: AuditEntry) -> None:
        try:
            self._sink.write(entry)
        except Exception as exc:  # sink failures never reach the caller
            self._on_sink_failure(entry, exc)
        else:
            self._on_sink_success()

    def _on_sink_failure(self, entry: AuditEntry, exc: Exception) -> None:
        with self._lock:
            self._undelivered.append(entry)
            if self._sink_down:
                return
            self._sink_down = True
        logger.warning("Audit sink unavailable, retaining entries locally: %s", exc)
        self._append_security_event(
            SYSTEM_ACTOR,
            SYSTEM_ACTOR,
            SecurityEventKind.AUDIT_SINK_UNAVAILABLE,
            f"Durable audit sink rejected entry {entry.entry_id}",
            forward=False,
        )

    def _on_sink_success(self) -> None:
        with self._lock:
            if not self._sink_down:
                return
            self._sink_down = False
        logger.info("Audit sink recovered; %d entries awaiting retry", len(self.undelivered()))

    def _alert(self, entry: AuditEntry) -> None:
        try:
            self._alerter.alert(entry)
        except Exception:
            logger.exception("Security alert delivery failed for entry %s", entry.entry_id)
