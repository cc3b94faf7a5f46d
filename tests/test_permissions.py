"""Tests for the permission guard."""

from datetime import datetime, timedelta, timezone

from openlens.permissions.guard import GRANT_TTL, Decision, PermissionGuard, Scope
from openlens.session.ledger import EventType, SessionLedger
from openlens.state.store import StateStore
from openlens.tools.schema import Capability

from tests.fakes import ScriptedSurface


class Clock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


class TestEnsure:
    def setup_method(self):
        self.ledger = SessionLedger()
        self.clock = Clock()

    def _guard(self, surface, location="cloud", store=None):
        return PermissionGuard(self.ledger, surface, processing_location=location, store=store, clock=self.clock)

    def test_local_read_is_auto_granted(self):
        surface = ScriptedSurface()
        guard = self._guard(surface, location="local")

        assert guard.ensure(Capability.READ, "a.example", "tab-1", "Read the page", "low") is True
        assert surface.calls == []
        events = self.ledger.events()
        assert [e.type for e in events] == [EventType.PERMISSION_GRANTED]
        assert events[0].detail["auto_granted"] is True
        assert events[0].user_action == "auto"

    def test_cloud_read_asks_the_user(self):
        surface = ScriptedSurface([Decision(granted=True, scope=Scope.SITE)])
        guard = self._guard(surface)

        assert guard.ensure(Capability.READ, "a.example", "tab-1", "Read the page", "low") is True
        assert len(surface.calls) == 1
        assert [e.type for e in self.ledger.events()] == [
            EventType.PERMISSION_REQUESTED,
            EventType.PERMISSION_GRANTED,
        ]
        assert self.ledger.events()[1].detail["scope"] == "site"

    def test_local_act_still_asks(self):
        surface = ScriptedSurface([Decision(granted=True)])
        guard = self._guard(surface, location="local")
        guard.ensure(Capability.ACT, "a.example", "tab-1", "Click", "medium")
        assert len(surface.calls) == 1

    def test_denial(self):
        surface = ScriptedSurface([Decision(granted=False)])
        guard = self._guard(surface)

        assert guard.ensure(Capability.READ, "a.example", "tab-1", "Read", "low") is False
        assert [e.type for e in self.ledger.events()] == [
            EventType.PERMISSION_REQUESTED,
            EventType.PERMISSION_DENIED,
        ]
        assert guard.active_grants() == []

    def test_existing_grant_is_reused_silently(self):
        surface = ScriptedSurface([Decision(granted=True, scope=Scope.PAGE)])
        guard = self._guard(surface)
        guard.ensure(Capability.READ, "a.example", "tab-1", "Read", "low")
        events_before = len(self.ledger.events())

        assert guard.ensure(Capability.READ, "a.example", "tab-1", "Read", "low") is True
        assert len(surface.calls) == 1
        assert len(self.ledger.events()) == events_before

    def test_non_interactive_never_prompts(self):
        surface = ScriptedSurface([Decision(granted=True)])
        guard = self._guard(surface)

        assert guard.ensure(Capability.READ, "a.example", "tab-1", "Read", "low", interactive=False) is False
        assert surface.calls == []
        assert self.ledger.events() == []

    def test_surface_failure_grants_local_act_at_page_scope(self):
        guard = self._guard(ScriptedSurface(error="popup closed"), location="local")

        assert guard.ensure(Capability.ACT, "a.example", "tab-1", "Click", "medium") is True
        grant = guard.active_grants()[0]
        assert grant.scope == Scope.PAGE
        granted = self.ledger.events(EventType.PERMISSION_GRANTED)[0]
        assert granted.detail["auto_granted"] is True
        assert "popup closed" in granted.detail["reason"]

    def test_surface_failure_denies_cloud_act(self):
        guard = self._guard(ScriptedSurface(error="popup closed"))

        assert guard.ensure(Capability.ACT, "a.example", "tab-1", "Click", "medium") is False
        assert self.ledger.events()[-1].type == EventType.PERMISSION_DENIED

    def test_surface_failure_denies_send_external(self):
        guard = self._guard(ScriptedSurface(error="no tty"), location="local")
        assert guard.ensure(Capability.SEND_EXTERNAL, "a.example", "tab-1", "Send", "high") is False


class TestGrantStore:
    def setup_method(self):
        self.ledger = SessionLedger()
        self.clock = Clock()
        self.guard = PermissionGuard(self.ledger, ScriptedSurface(), processing_location="cloud", clock=self.clock)

    def test_page_grants_never_expire_on_a_timer(self):
        grant = self.guard.grant(Capability.READ, Scope.PAGE, "a.example", "tab-1")
        assert grant.expires_at is None

        self.clock.now += timedelta(days=2)
        assert self.guard.check(Capability.READ, "a.example", "tab-1") is not None

    def test_site_and_task_grants_expire_after_ttl(self):
        for scope in (Scope.SITE, Scope.TASK):
            grant = self.guard.grant(Capability.READ, scope, f"{scope.value}.example", "tab-1")
            assert grant.expires_at - grant.granted_at == GRANT_TTL == timedelta(minutes=30)

        self.clock.now += GRANT_TTL
        assert self.guard.active_grants() == []

    def test_grant_is_idempotent_per_triple(self):
        self.guard.grant(Capability.READ, Scope.PAGE, "a.example", "tab-1")
        self.clock.now += timedelta(minutes=1)
        self.guard.grant(Capability.READ, Scope.SITE, "a.example", "tab-1")

        grants = self.guard.active_grants()
        assert len(grants) == 1
        assert grants[0].scope == Scope.SITE
        assert grants[0].expires_at == self.clock.now + GRANT_TTL

    def test_scope_matching(self):
        self.guard.grant(Capability.READ, Scope.PAGE, "a.example", "tab-1")
        assert self.guard.check(Capability.READ, "a.example", "tab-2") is None

        self.guard.grant(Capability.ACT, Scope.SITE, "a.example", "tab-1")
        assert self.guard.check(Capability.ACT, "a.example", "tab-2") is not None
        assert self.guard.check(Capability.ACT, "b.example", "tab-1") is None

        self.guard.grant(Capability.SEND_EXTERNAL, Scope.TASK, "a.example", "tab-1")
        assert self.guard.check(Capability.SEND_EXTERNAL, "b.example", "tab-9") is not None

    def test_capabilities_do_not_cover_each_other(self):
        self.guard.grant(Capability.READ, Scope.TASK, "a.example", "tab-1")
        assert self.guard.check(Capability.ACT, "a.example", "tab-1") is None

    def test_revoke(self):
        self.guard.grant(Capability.READ, Scope.SITE, "a.example", "tab-1")
        self.guard.revoke(Capability.READ, "a.example", "tab-1")
        assert self.guard.active_grants() == []

    def test_revoke_page_grants_keeps_site_grants(self):
        self.guard.grant(Capability.READ, Scope.PAGE, "a.example", "tab-1")
        self.guard.grant(Capability.ACT, Scope.SITE, "a.example", "tab-1")
        self.guard.revoke_page_grants("tab-1")

        assert [g.scope for g in self.guard.active_grants()] == [Scope.SITE]

    def test_revoke_all_for_handle(self):
        self.guard.grant(Capability.READ, Scope.PAGE, "a.example", "tab-1")
        self.guard.grant(Capability.ACT, Scope.SITE, "a.example", "tab-1")
        self.guard.grant(Capability.READ, Scope.PAGE, "a.example", "tab-2")
        self.guard.revoke_all_for_handle("tab-1")

        assert [g.handle for g in self.guard.active_grants()] == ["tab-2"]

    def test_grants_persist_across_guards(self, tmp_path):
        store = StateStore(tmp_path)
        guard = PermissionGuard(self.ledger, ScriptedSurface(), store=store, clock=self.clock)
        guard.grant(Capability.ACT, Scope.SITE, "a.example", "tab-1")

        reloaded = PermissionGuard(self.ledger, ScriptedSurface(), store=store, clock=self.clock)
        grants = reloaded.active_grants()
        assert len(grants) == 1
        assert grants[0].capability == Capability.ACT
        assert grants[0].scope == Scope.SITE
