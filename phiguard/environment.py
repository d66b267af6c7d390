"""
Collaborator interfaces and their default implementations.

The engine never touches a network, a browser, or a storage backend
directly.  Everything outside its policy and bookkeeping role is reached
through the small ports defined here:

* ``AuditSink``       -- durable destination for audit entries.
* ``SecurityAlerter`` -- notification channel for high-severity events.
* ``Environment``     -- client metadata and local persistence.
* ``SessionClient``   -- the UI-side session store and navigation.

The default implementations are in-memory and suitable for tests and
single-process deployments.  Production deployments supply their own.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from phiguard.models import ClientMetadata, Role

if TYPE_CHECKING:
    from phiguard.audit import AuditEntry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------

@runtime_checkable
class AuditSink(Protocol):
    """Durable destination for audit entries."""

    def write(self, entry: AuditEntry) -> None:
        """Persist one immutable entry.  May raise on failure."""


@runtime_checkable
class SecurityAlerter(Protocol):
    """Delivers high-severity audit entries to a security team."""

    def alert(self, entry: AuditEntry) -> None:
        """Best-effort notification.  May raise on failure."""


@runtime_checkable
class Environment(Protocol):
    """Runtime capabilities of the host the engine is embedded in."""

    def get_client_metadata(self) -> ClientMetadata:
        """Return the origin of the current request."""

    def persist_locally(self, key: str, value: str) -> None:
        """Store a value in host-local storage."""


@runtime_checkable
class SessionClient(Protocol):
    """UI-side session store and navigation."""

    def store_identity(self, user_id: str, role: Role) -> None:
        """Remember the identity of the current session."""

    def prompt_renewal(self, user_id: str, seconds_remaining: float) -> None:
        """Ask the user whether to keep the session alive."""

    def clear(self, user_id: str) -> None:
        """Drop the session-scoped client state held for ``user_id``."""

    def redirect_to_reauthentication(self, user_id: str, reason: str) -> None:
        """Send ``user_id`` back to the login entry point."""


# ---------------------------------------------------------------------------
# Default implementations
# ---------------------------------------------------------------------------

class InMemoryEnvironment:
    """Environment backed by a dict, with fixed client metadata."""

    def __init__(self, metadata: ClientMetadata | None = None) -> None:
        self.metadata = metadata or ClientMetadata()
        self.storage: dict[str, str] = {}

    def get_client_metadata(self) -> ClientMetadata:
        return self.metadata

    def persist_locally(self, key: str, value: str) -> None:
        self.storage[key] = value


class EnvironmentAuditSink:
    """Audit sink that persists each entry as JSON in host-local storage.

    Keys are ``phiguard_audit_<entry_id>``.
    """

    KEY_PREFIX = "phiguard_audit_"

    def __init__(self, environment: Environment) -> None:
        self._environment = environment

    def write(self, entry: AuditEntry) -> None:
        self._environment.persist_locally(
            f"{self.KEY_PREFIX}{entry.entry_id}", entry.model_dump_json()
        )


class LoggingSecurityAlerter:
    """Alerter that reports high-severity events through ``logging``.

    Only identifiers and the event kind are logged, never entry detail.
    """

    def alert(self, entry: AuditEntry) -> None:
        logger.critical(
            "SECURITY ALERT: %s by %s (%s) entry=%s",
            entry.event_kind.value if entry.event_kind else "unknown",
            entry.actor_id,
            entry.actor_role,
            entry.entry_id,
        )


class InMemorySessionClient:
    """Session client that records what it was asked to do.

    Holds a single stored identity, like one browser tab.  ``clear()`` for
    a different user leaves it in place.
    """

    def __init__(self) -> None:
        self.identity: tuple[str, Role] | None = None
        self.renewal_prompts: list[tuple[str, float]] = []
        self.redirects: list[tuple[str, str]] = []
        self.clear_count = 0

    def store_identity(self, user_id: str, role: Role) -> None:
        self.identity = (user_id, role)

    def prompt_renewal(self, user_id: str, seconds_remaining: float) -> None:
        self.renewal_prompts.append((user_id, seconds_remaining))

    def clear(self, user_id: str) -> None:
        if self.identity is not None and self.identity[0] == user_id:
            self.identity = None
            self.clear_count += 1

    def redirect_to_reauthentication(self, user_id: str, reason: str) -> None:
        self.redirects.append((user_id, reason))
