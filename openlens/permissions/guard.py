"""
OpenLens Permission Guard - scoped, expiring capability grants.

``PermissionGuard.ensure`` is the single enforcement point in front of every
tool call. It reuses a covering grant when one exists, applies the
auto-grant policy for local processing, and otherwise blocks on the
decision surface (the human in the loop).
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from openlens.session.ledger import EventType, SessionLedger
from openlens.state.store import StateStore
from openlens.tools.schema import Capability

logger = logging.getLogger(__name__)

GRANT_TTL = timedelta(minutes=30)
LOCAL = "local"


class Scope(str, Enum):
    """Breadth of a grant, narrowest first."""

    PAGE = "page"  # one handle instance, revoked on navigation
    SITE = "site"  # one origin
    TASK = "task"  # every origin for the rest of the session


class DecisionSurfaceError(Exception):
    """Raised when the consent UI cannot be reached or fails to answer."""


@dataclass
class Decision:
    """What the user chose on the decision surface."""

    granted: bool
    scope: Scope = Scope.PAGE


class DecisionSurface(ABC):
    """Blocking human-in-the-loop consent prompt."""

    @abstractmethod
    def present(self, capability: Capability, reason: str, sensitivity: str) -> Decision:
        """
        Ask the user and wait for the answer. No timeout applies.

        Raises:
            DecisionSurfaceError: If no answer can be obtained.
        """
        pass


@dataclass
class PermissionGrant:
    """One active capability grant."""

    capability: Capability
    scope: Scope
    origin: str
    handle: str
    granted_at: datetime
    expires_at: Optional[datetime]

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def covers(self, capability: Capability, origin: str, handle: str) -> bool:
        if self.capability != capability:
            return False
        if self.scope == Scope.PAGE:
            return self.handle == handle and self.origin == origin
        if self.scope == Scope.SITE:
            return self.origin == origin
        return True

    def same_triple(self, capability: Capability, origin: str, handle: str) -> bool:
        return self.capability == capability and self.origin == origin and self.handle == handle

    def to_dict(self) -> Dict[str, Any]:
        return {
            "capability": self.capability.value,
            "scope": self.scope.value,
            "origin": self.origin,
            "handle": self.handle,
            "granted_at": self.granted_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PermissionGrant":
        return cls(
            capability=Capability(data["capability"]),
            scope=Scope(data["scope"]),
            origin=data["origin"],
            handle=str(data["handle"]),
            granted_at=datetime.fromisoformat(data["granted_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]) if data.get("expires_at") else None,
        )


class PermissionGuard:
    """
    Grant, check and revoke capability grants.

    At most one grant exists per ``(capability, origin, handle)``; granting
    again replaces it. Page grants never expire on a timer; site and task
    grants expire ``GRANT_TTL`` after they are granted.

    Example:
        >>> guard = PermissionGuard(ledger, ConsoleDecisionSurface(), processing_location="cloud")
        >>> guard.ensure(Capability.READ, "a.example", "tab-1", "Read the page", "low")
        True
    """

    def __init__(
        self,
        ledger: SessionLedger,
        decision_surface: DecisionSurface,
        processing_location: str = LOCAL,
        store: Optional[StateStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ledger = ledger
        self.decision_surface = decision_surface
        self.processing_location = processing_location
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._grants: List[PermissionGrant] = []
        if store is not None:
            self._grants = [PermissionGrant.from_dict(g) for g in store.load_grants()]

    @property
    def is_local(self) -> bool:
        return self.processing_location == LOCAL

    # ── Enforcement ───────────────────────────────────────────────────────

    def ensure(
        self,
        capability: Capability,
        origin: str,
        handle: str,
        reason: str,
        sensitivity: str,
        interactive: bool = True,
    ) -> bool:
        """
        Return True once ``capability`` is granted for this origin and handle.

        With ``interactive=False`` the decision surface is never shown: only
        an existing grant or the auto-grant rule can succeed.
        """
        if self.check(capability, origin, handle) is not None:
            return True

        if capability == Capability.READ and self.is_local:
            self.grant(capability, Scope.TASK, origin, handle)
            self._audit(
                EventType.PERMISSION_GRANTED, origin,
                {"capability": capability.value, "scope": Scope.TASK.value, "auto_granted": True,
                 "reason": "Local processing, data stays on device"},
                user_action="auto",
            )
            logger.info("Auto-granted %s on %s (local backend)", capability.value, origin)
            return True

        if not interactive:
            return False

        self._audit(
            EventType.PERMISSION_REQUESTED, origin,
            {"capability": capability.value, "reason": reason, "sensitivity": sensitivity},
        )

        try:
            decision = self.decision_surface.present(capability, reason, sensitivity)
        except DecisionSurfaceError as exc:
            logger.warning("Decision surface failed for %s on %s: %s", capability.value, origin, exc)
            return self._on_surface_failure(capability, origin, handle, str(exc))

        if decision.granted:
            scope = Scope(decision.scope)
            self.grant(capability, scope, origin, handle)
            self._audit(
                EventType.PERMISSION_GRANTED, origin,
                {"capability": capability.value, "scope": scope.value},
                user_action="approved",
            )
            return True

        self._audit(
            EventType.PERMISSION_DENIED, origin,
            {"capability": capability.value},
            user_action="denied",
        )
        return False

    def _on_surface_failure(self, capability: Capability, origin: str, handle: str, error: str) -> bool:
        # Only a local act request survives an unreachable consent UI, and only for this page
        if capability == Capability.ACT and self.is_local:
            self.grant(capability, Scope.PAGE, origin, handle)
            self._audit(
                EventType.PERMISSION_GRANTED, origin,
                {"capability": capability.value, "scope": Scope.PAGE.value, "auto_granted": True,
                 "reason": f"Decision surface unavailable, local backend: {error}"},
                user_action="auto",
            )
            return True

        self._audit(
            EventType.PERMISSION_DENIED, origin,
            {"capability": capability.value, "reason": f"Decision surface unavailable: {error}"},
        )
        return False

    # ── Grant store ───────────────────────────────────────────────────────

    def check(self, capability: Capability, origin: str, handle: str) -> Optional[PermissionGrant]:
        """Return an unexpired grant covering the request, if any."""
        self._purge_expired()
        for grant in self._grants:
            if grant.covers(capability, origin, handle):
                return grant
        return None

    def grant(self, capability: Capability, scope: Scope, origin: str, handle: str) -> PermissionGrant:
        """Create a grant, replacing any prior grant for the same triple."""
        now = self._clock()
        grant = PermissionGrant(
            capability=capability,
            scope=scope,
            origin=origin,
            handle=handle,
            granted_at=now,
            expires_at=None if scope == Scope.PAGE else now + GRANT_TTL,
        )
        self._grants = [g for g in self._grants if not g.same_triple(capability, origin, handle)]
        self._grants.append(grant)
        self._persist()
        return grant

    def revoke(self, capability: Capability, origin: str, handle: str) -> None:
        self._replace([g for g in self._grants if not g.same_triple(capability, origin, handle)])

    def revoke_all_for_handle(self, handle: str) -> None:
        """Drop every grant tied to a handle that was torn down."""
        self._replace([g for g in self._grants if g.handle != handle])

    def revoke_page_grants(self, handle: str) -> None:
        """Drop page-scoped grants for a handle that navigated away."""
        self._replace([g for g in self._grants if not (g.scope == Scope.PAGE and g.handle == handle)])

    def active_grants(self, handle: Optional[str] = None) -> List[PermissionGrant]:
        self._purge_expired()
        return [g for g in self._grants if handle is None or g.handle == handle]

    def _purge_expired(self) -> None:
        now = self._clock()
        live = [g for g in self._grants if not g.is_expired(now)]
        if len(live) != len(self._grants):
            self._replace(live)

    def _replace(self, grants: List[PermissionGrant]) -> None:
        changed = len(grants) != len(self._grants)
        self._grants = grants
        if changed:
            self._persist()

    def _persist(self) -> None:
        if self._store is not None:
            self._store.save_grants([g.to_dict() for g in self._grants])

    def _audit(self, event_type: EventType, origin: str, detail: Dict[str, Any], user_action: Optional[str] = None) -> None:
        self.ledger.add_audit_event(
            event_type, origin, detail,
            processing_location=self.processing_location,
            user_action=user_action,
        )
