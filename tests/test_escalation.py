"""
Tests for EscalationPolicy and the sweeper that drives it
=========================================================
"""

from datetime import timedelta

import pytest

from conftest import RecordingNotifier
from app.handoff.agent_directory import AgentDirectory
from app.handoff.config import HandoffSettings
from app.handoff.coordinator import AssignmentCoordinator
from app.handoff.escalation import EscalationPolicy
from app.handoff.exceptions import HandoffNotFound, ValidationError
from app.handoff.models import AgentStatus, HandoffStatus, utc_now
from app.handoff.registry import HandoffRegistry
from app.handoff.relay import MessageRelay
from app.handoff.tasks import HandoffSweeper


@pytest.fixture
def config():
    return HandoffSettings(
        pickup_timeout_minutes=10,
        agent_offline_after_seconds=120,
        enable_email_notifications=True,
    )


@pytest.fixture
def policy(db, notifier, config):
    return EscalationPolicy(db, notifier=notifier, config=config)


class TestNoAgentsAvailable:

    def test_contact_recorded_and_handoff_stays_pending(self, policy, notifier, make_handoff):
        handoff = make_handoff()

        assert not policy.agents_available(1)
        updated = policy.on_no_agents_available(1, handoff, "jane@example.com", "Please call me back")

        assert updated.status == HandoffStatus.PENDING.value
        assert updated.user_email == "jane@example.com"
        assert updated.user_message == "Please call me back"
        [notice] = notifier.calls
        assert notice["handoff_id"] == handoff.id
        assert notice["user_email"] == "jane@example.com"

    def test_notifier_failure_is_swallowed(self, db, config, make_handoff):
        failing = RecordingNotifier(fail=True)
        policy = EscalationPolicy(db, notifier=failing, config=config)
        handoff = make_handoff()

        updated = policy.on_no_agents_available(1, handoff, "jane@example.com", None)

        assert updated.user_email == "jane@example.com"
        assert len(failing.calls) == 1

    def test_notice_can_be_deferred(self, policy, notifier, make_handoff):
        deferred = []

        policy.on_no_agents_available(1, make_handoff(), "jane@example.com", None,
                                      defer=lambda func, *args: deferred.append((func, args)))

        assert notifier.calls == []
        func, args = deferred[0]
        func(*args)
        assert len(notifier.calls) == 1

    def test_notifications_disabled(self, db, notifier, make_handoff):
        policy = EscalationPolicy(db, notifier=notifier, config=HandoffSettings(enable_email_notifications=False))

        policy.on_no_agents_available(1, make_handoff(), "jane@example.com", None)

        assert notifier.calls == []

    def test_invalid_email(self, policy, make_handoff):
        with pytest.raises(ValidationError):
            policy.on_no_agents_available(1, make_handoff(), "not-an-email", None)

    def test_wrong_tenant(self, policy, make_handoff):
        with pytest.raises(HandoffNotFound):
            policy.on_no_agents_available(1, make_handoff(tenant_id=2), "jane@example.com", None)

    def test_agents_available_with_capacity(self, policy, make_agent):
        make_agent(max_chats=1, active_chats=1)
        assert not policy.agents_available(1)

        make_agent()
        assert policy.agents_available(1)


class TestPickupTimeout:

    def test_overdue_handoff_expires(self, db, policy, make_handoff):
        handoff = make_handoff(waited=timedelta(minutes=11))

        expired = policy.on_pickup_timeout(handoff.id)

        assert expired.status == HandoffStatus.EXPIRED.value
        assert expired.expired_at is not None
        assert MessageRelay(db).history(handoff.id)[-1].sender_type == "system"

    def test_not_yet_due(self, policy, make_handoff):
        handoff = make_handoff(waited=timedelta(minutes=5))

        assert policy.on_pickup_timeout(handoff.id) is None

    def test_no_sla_configured(self, db, make_handoff):
        policy = EscalationPolicy(db, config=HandoffSettings(pickup_timeout_minutes=None))
        handoff = make_handoff(waited=timedelta(days=2))

        assert policy.on_pickup_timeout(handoff.id) is None
        assert policy.expire_overdue() == []

    def test_active_handoff_untouched(self, db, policy, make_agent, make_handoff):
        agent = make_agent()
        handoff = make_handoff(waited=timedelta(minutes=30))
        AssignmentCoordinator(db).pickup(handoff.id, agent.id, 1)

        assert policy.on_pickup_timeout(handoff.id) is None
        assert HandoffRegistry(db).get(handoff.id).status == HandoffStatus.ACTIVE.value
        assert AgentDirectory(db).get(agent.id).active_chats == 1

    def test_expire_overdue_sweeps_every_tenant(self, db, policy, make_handoff):
        late = make_handoff(waited=timedelta(minutes=15))
        late_other = make_handoff(tenant_id=2, waited=timedelta(minutes=12))
        fresh = make_handoff()

        expired = policy.expire_overdue()

        assert sorted(h.id for h in expired) == sorted([late.id, late_other.id])
        assert HandoffRegistry(db).get(fresh.id).status == HandoffStatus.PENDING.value

    def test_expired_handoff_cannot_be_picked_up(self, db, policy, make_agent, make_handoff):
        from app.handoff.exceptions import InvalidStateTransition

        handoff = make_handoff(waited=timedelta(minutes=20))
        policy.on_pickup_timeout(handoff.id)

        with pytest.raises(InvalidStateTransition):
            AssignmentCoordinator(db).pickup(handoff.id, make_agent().id, 1)


class TestStaleAgents:

    def test_silent_agents_go_offline(self, db, policy, make_agent):
        silent = make_agent(last_seen=utc_now() - timedelta(minutes=5))
        alive = make_agent()

        updated = policy.mark_stale_agents_offline()

        assert [a.id for a in updated] == [silent.id]
        assert AgentDirectory(db).get(silent.id).status == AgentStatus.OFFLINE.value
        assert AgentDirectory(db).get(alive.id).status == AgentStatus.AVAILABLE.value

    def test_disabled_threshold(self, db, make_agent):
        policy = EscalationPolicy(db, config=HandoffSettings(agent_offline_after_seconds=None))
        make_agent(last_seen=utc_now() - timedelta(hours=3))

        assert policy.mark_stale_agents_offline() == []


class TestSweeper:

    def test_run_once(self, db, session_factory, config, make_agent, make_handoff):
        make_handoff(waited=timedelta(minutes=30))
        make_agent(last_seen=utc_now() - timedelta(minutes=10))

        result = HandoffSweeper(session_factory=session_factory, config=config).run_once()

        assert result == {"expired_handoffs": 1, "agents_marked_offline": 1}

    def test_start_respects_disabled_flag(self, session_factory):
        sweeper = HandoffSweeper(session_factory=session_factory, config=HandoffSettings(sweeper_enabled=False))

        assert sweeper.start() is None
        assert not sweeper.running
