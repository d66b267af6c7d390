"""
Application-scoped wiring for the PHI engine.

``PHIGuardEngine`` builds one ``AuditLogger`` and one ``SessionManager``
from an ``EngineConfig`` and the collaborators the host application
provides, and owns their lifecycle.  The application entry point creates
it, calls ``start()``, passes it (or its services) to callers, and calls
``shutdown()`` on exit.  Nothing is stored at module level.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional, Union

from phiguard.audit import AuditLogger, AuditStore
from phiguard.config import DEFAULT_CONFIG, EngineConfig
from phiguard.environment import AuditSink, Environment, SecurityAlerter, SessionClient
from phiguard.masking import mask
from phiguard.models import AuditAction, PHICategory, Role
from phiguard.rbac import check_permission
from phiguard.scheduling import Scheduler
from phiguard.session import SessionManager

logger = logging.getLogger(__name__)


class PHIGuardEngine:
    """Masker, audit logger and session manager behind one object."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        store: Optional[AuditStore] = None,
        sink: Optional[AuditSink] = None,
        alerter: Optional[SecurityAlerter] = None,
        environment: Optional[Environment] = None,
        scheduler: Optional[Scheduler] = None,
        session_client: Optional[SessionClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.config = config or DEFAULT_CONFIG
        self.audit = AuditLogger(
            store=store,
            sink=sink,
            alerter=alerter,
            environment=environment,
            thresholds=self.config.thresholds,
            clock=clock,
        )
        self.sessions = SessionManager(
            self.audit,
            scheduler=scheduler,
            client=session_client,
            policy=self.config.session,
            clock=clock,
        )
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> "PHIGuardEngine":
        self._running = True
        logger.info(
            "PHI engine '%s' started (session timeout %ss, warning %ss)",
            self.config.name,
            self.config.session.timeout_seconds,
            self.config.session.warning_seconds,
        )
        return self

    def shutdown(self) -> None:
        """Cancel session timers and drain pending audit deliveries.

        Safe to call whether or not ``start()`` was called, and more than once.
        """
        self.sessions.shutdown()
        self.audit.shutdown()
        if self._running:
            self._running = False
            logger.info("PHI engine '%s' stopped", self.config.name)

    def __enter__(self) -> "PHIGuardEngine":
        return self.start()

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    def view(
        self,
        actor_id: str,
        actor_role: Union[Role, str],
        value: str,
        category: Union[PHICategory, str],
        resource: str,
        subject_id: Optional[str] = None,
    ) -> str:
        """Mask a field for display and audit the access in one step.

        The entry detail records whether the value was shown masked.
        """
        masked = mask(value, category, actor_role)
        try:
            categories = [PHICategory(category)]
        except ValueError:
            categories = []
        permitted = bool(categories) and check_permission(actor_role, categories[0])
        self.audit.log_access(
            actor_id,
            actor_role,
            AuditAction.VIEW,
            resource,
            categories,
            subject_id=subject_id,
            detail="Displayed unmasked" if permitted else "Displayed masked",
        )
        return masked
