"""
Time-Bounded Session Manager.

Each authenticated identity has at most one session, modelled as an
explicit state machine:

    ACTIVE -> WARNED -> EXPIRED            (timeout, terminal)
    ACTIVE -> WARNED -> ACTIVE             (renewed by extend_session)
    ACTIVE / WARNED -> TERMINATED          (explicit logout, terminal)

Starting a session arms a timer pair through the injected ``Scheduler``:
a warning callback at ``timeout - warning_window`` that moves the session
to WARNED and asks the client to prompt for renewal, and an expiry
callback at ``timeout`` that ends the session.

**Invariants enforced in code:**

* At most one pending timer pair per identity.  Starting or extending a
  session cancels the previous pair before scheduling a new one, under
  the same lock the callbacks take.
* Every armed pair carries a generation number.  A callback whose
  generation is stale, or whose session is already terminal, does
  nothing.
* Ending a session -- by logout or by timeout -- writes exactly one
  ``logout`` audit entry and cancels the outstanding timers.
* An extension that arrives after the hard deadline is rejected; the
  session stays (or becomes) EXPIRED and the user must re-authenticate.
"""

from __future__ import annotations

import enum
import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

from pydantic import BaseModel, Field

from phiguard.audit import AuditLogger
from phiguard.config import SessionPolicy
from phiguard.environment import InMemorySessionClient, SessionClient
from phiguard.models import AuditAction, Role, SessionState
from phiguard.rbac import coerce_role
from phiguard.scheduling import CancellationHandle, Scheduler, ThreadingScheduler

logger = logging.getLogger(__name__)

SESSION_RESOURCE = "session"


class SessionEndReason(str, enum.Enum):
    """Why a session ended.  Shown to the user on the re-authentication page."""

    LOGOUT = "logout"
    TIMEOUT = "timeout"
    SUPERSEDED = "superseded"


# ---------------------------------------------------------------------------
# Valid state transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.ACTIVE: {
        SessionState.WARNED,
        SessionState.EXPIRED,
        SessionState.TERMINATED,
    },
    SessionState.WARNED: {
        SessionState.ACTIVE,
        SessionState.EXPIRED,
        SessionState.TERMINATED,
    },
    SessionState.EXPIRED: set(),  # terminal state
    SessionState.TERMINATED: set(),  # terminal state
}

_LIVE_STATES = frozenset({SessionState.ACTIVE, SessionState.WARNED})


# ---------------------------------------------------------------------------
# Session model
# ---------------------------------------------------------------------------

class Session(BaseModel):
    """Timed session state for one authenticated identity."""

    session_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique session identifier.",
    )
    user_id: str = Field(
        ...,
        description="Identity that owns the session.",
    )
    role: Role = Field(
        ...,
        description="Role the identity authenticated with.",
    )
    timeout_seconds: float = Field(
        ...,
        gt=0,
        description="Lifetime granted on start and on every extension.",
    )
    warning_seconds: float = Field(
        ...,
        ge=0,
        description="How long before expiry the renewal prompt is shown.",
    )
    created_at: datetime = Field(
        ...,
        description="UTC timestamp when the session started.",
    )
    warning_at: datetime = Field(
        ...,
        description="When the renewal prompt is due.",
    )
    expires_at: datetime = Field(
        ...,
        description="Hard deadline.",
    )
    state: SessionState = Field(
        default=SessionState.ACTIVE,
        description="Current lifecycle state.",
    )
    last_extended_at: Optional[datetime] = Field(default=None)
    ended_at: Optional[datetime] = Field(default=None)
    end_reason: Optional[SessionEndReason] = Field(default=None)
    generation: int = Field(
        default=0,
        description="Incremented each time the timer pair is armed.",
    )

    @property
    def is_live(self) -> bool:
        return self.state in _LIVE_STATES


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class SessionError(Exception):
    """Base class for session state errors."""
    pass


class InvalidTransitionError(SessionError):
    """Raised when a state transition is not permitted."""
    pass


class SessionNotExtendableError(SessionError):
    """Raised when a session is missing, terminal, or past its deadline.

    The caller must send the user back to re-authentication.
    """
    pass


class SessionNotActiveError(SessionError):
    """Raised when ending a session that is missing or already ended."""
    pass


# ---------------------------------------------------------------------------
# Session manager
# ---------------------------------------------------------------------------

class SessionManager:
    """Owns every session and its timers.

    Args:
        audit_logger: Receives one ``login`` entry per start and one
            ``logout`` entry per end.
        scheduler: Timer primitive.  Defaults to ``ThreadingScheduler``.
        client: UI-side session store.  Defaults to ``InMemorySessionClient``.
        policy: Default timeout and warning window.
        clock: Callable returning the current UTC time.  Pass
            ``ManualScheduler.now`` when using a manual scheduler.
    """

    def __init__(
        self,
        audit_logger: AuditLogger,
        scheduler: Optional[Scheduler] = None,
        client: Optional[SessionClient] = None,
        policy: Optional[SessionPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._audit = audit_logger
        self._scheduler = scheduler if scheduler is not None else ThreadingScheduler()
        self._client = client if client is not None else InMemorySessionClient()
        self._policy = policy or SessionPolicy()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()
        self._sessions: dict[str, Session] = {}
        self._timers: dict[str, tuple[CancellationHandle, CancellationHandle]] = {}

    # -- lifecycle operations --

    def start_session(
        self,
        user_id: str,
        role: Union[Role, str],
        timeout: Optional[float] = None,
        warning_window: Optional[float] = None,
    ) -> Session:
        """Start a session for an authenticated identity.

        Any live session for the same identity is superseded: its timers
        are cancelled and its end is audited.

        Args:
            user_id: The authenticated identity.
            role: The identity's role.
            timeout: Session lifetime in seconds.  Defaults to the policy.
            warning_window: Seconds before expiry for the renewal prompt.
                Defaults to the policy.

        Returns:
            A copy of the new session.

        Raises:
            ValueError: If the timeout is not positive or the warning
                window does not fit inside it.
        """
        role = coerce_role(role)
        timeout = self._policy.timeout_seconds if timeout is None else timeout
        warning = self._policy.warning_seconds if warning_window is None else warning_window
        if timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {timeout}")
        if not 0 <= warning < timeout:
            raise ValueError(
                f"warning_window ({warning}) must be >= 0 and < timeout ({timeout})"
            )

        with self._lock:
            previous = self._sessions.get(user_id)
            if previous is not None and previous.is_live:
                self._finish(
                    previous,
                    SessionState.TERMINATED,
                    SessionEndReason.SUPERSEDED,
                    notify_client=False,
                )

            now = self._clock()
            session = Session(
                user_id=user_id,
                role=role,
                timeout_seconds=timeout,
                warning_seconds=warning,
                created_at=now,
                warning_at=now,
                expires_at=now,
            )
            self._sessions[user_id] = session
            self._arm(session, now)

            self._audit.log_access(
                user_id,
                role,
                AuditAction.LOGIN,
                SESSION_RESOURCE,
                success=True,
                detail="Session started",
            )
            self._client.store_identity(user_id, role)
            logger.info("Session %s started for %s (%s)", session.session_id, user_id, role.value)
            return session.model_copy()

    def extend_session(self, user_id: str) -> Session:
        """Renew a live session with a fresh deadline.

        Cancels the pending timer pair and arms a new one.  Renewal is
        not audited.

        Args:
            user_id: The identity whose session is extended.

        Returns:
            A copy of the renewed session.

        Raises:
            SessionNotExtendableError: If there is no session, it has
                ended, or its hard deadline has already passed.
        """
        with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                raise SessionNotExtendableError(f"No session for user '{user_id}'.")
            if not session.is_live:
                raise SessionNotExtendableError(
                    f"Session for user '{user_id}' is {session.state.value}; "
                    "re-authentication required."
                )

            now = self._clock()
            if now >= session.expires_at:
                # The expiry timer has not run yet; the deadline still wins.
                self._finish(session, SessionState.EXPIRED, SessionEndReason.TIMEOUT)
                raise SessionNotExtendableError(
                    f"Session for user '{user_id}' expired at "
                    f"{session.expires_at.isoformat()}; re-authentication required."
                )

            if session.state == SessionState.WARNED:
                self._transition(session, SessionState.ACTIVE)
            session.last_extended_at = now
            self._arm(session, now)
            logger.debug("Session %s extended until %s", session.session_id, session.expires_at)
            return session.model_copy()

    def end_session(
        self,
        user_id: str,
        reason: Union[SessionEndReason, str] = SessionEndReason.LOGOUT,
    ) -> Session:
        """End a live session.

        ``logout`` moves the session to TERMINATED, ``timeout`` to
        EXPIRED.  Timers are cancelled, a ``logout`` entry is audited, and
        the client is cleared and sent to re-authentication.

        Args:
            user_id: The identity whose session ends.
            reason: ``"logout"`` or ``"timeout"``.

        Returns:
            A copy of the ended session.

        Raises:
            SessionNotActiveError: If there is no live session.
        """
        reason = SessionEndReason(reason)
        with self._lock:
            session = self._sessions.get(user_id)
            if session is None or not session.is_live:
                raise SessionNotActiveError(f"No live session for user '{user_id}'.")
            target = (
                SessionState.EXPIRED
                if reason == SessionEndReason.TIMEOUT
                else SessionState.TERMINATED
            )
            self._finish(session, target, reason)
            return session.model_copy()

    # -- inspection --

    def get_session(self, user_id: str) -> Optional[Session]:
        """Return a copy of the identity's most recent session, if any."""
        with self._lock:
            session = self._sessions.get(user_id)
            return session.model_copy() if session is not None else None

    def active_sessions(self) -> list[Session]:
        """Return copies of every live session."""
        with self._lock:
            return [s.model_copy() for s in self._sessions.values() if s.is_live]

    def shutdown(self) -> None:
        """Cancel every pending timer.  Sessions keep their current state."""
        with self._lock:
            for user_id in list(self._timers):
                self._cancel_timers(user_id)
        logger.debug("Session manager shut down")

    # -- helpers --

    def _transition(self, session: Session, target: SessionState) -> None:
        """Apply a state change, raising InvalidTransitionError if not allowed."""
        allowed = _VALID_TRANSITIONS.get(session.state, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition from {session.state.value} to {target.value}. "
                f"Allowed transitions: {sorted(s.value for s in allowed)}"
            )
        session.state = target

    def _arm(self, session: Session, now: datetime) -> None:
        self._cancel_timers(session.user_id)
        session.generation += 1
        session.warning_at = now + timedelta(
            seconds=session.timeout_seconds - session.warning_seconds
        )
        session.expires_at = now + timedelta(seconds=session.timeout_seconds)

        user_id, generation = session.user_id, session.generation
        warning = self._scheduler.schedule(
            session.timeout_seconds - session.warning_seconds,
            lambda: self._on_warning(user_id, generation),
        )
        expiry = self._scheduler.schedule(
            session.timeout_seconds,
            lambda: self._on_expiry(user_id, generation),
        )
        self._timers[user_id] = (warning, expiry)

    def _cancel_timers(self, user_id: str) -> None:
        handles = self._timers.pop(user_id, None)
        if handles is not None:
            for handle in handles:
                handle.cancel()

    def _current(self, user_id: str, generation: int) -> Optional[Session]:
        """The live session a timer callback belongs to, or None if stale."""
        session = self._sessions.get(user_id)
        if session is None or session.generation != generation or not session.is_live:
            logger.debug("Ignoring stale session timer for %s (generation %d)", user_id, generation)
            return None
        return session

    def _on_warning(self, user_id: str, generation: int) -> None:
        with self._lock:
            session = self._current(user_id, generation)
            if session is None or session.state != SessionState.ACTIVE:
                return
            self._transition(session, SessionState.WARNED)
            remaining = (session.expires_at - self._clock()).total_seconds()
            logger.info("Session %s expires in %.0f seconds", session.session_id, remaining)
            self._client.prompt_renewal(user_id, max(remaining, 0.0))

    def _on_expiry(self, user_id: str, generation: int) -> None:
        with self._lock:
            session = self._current(user_id, generation)
            if session is None:
                return
            self._finish(session, SessionState.EXPIRED, SessionEndReason.TIMEOUT)

    def _finish(
        self,
        session: Session,
        target: SessionState,
        reason: SessionEndReason,
        notify_client: bool = True,
    ) -> None:
        self._transition(session, target)
        self._cancel_timers(session.user_id)
        session.ended_at = self._clock()
        session.end_reason = reason

        self._audit.log_access(
            session.user_id,
            session.role,
            AuditAction.LOGOUT,
            SESSION_RESOURCE,
            success=True,
            detail=f"Session ended: {reason.value}",
        )
        logger.info("Session %s ended: %s", session.session_id, reason.value)

        if notify_client:
            self._client.clear(session.user_id)
            self._client.redirect_to_reauthentication(session.user_id, reason.value)
