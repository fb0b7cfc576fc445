"""
Tests for AssignmentCoordinator
===============================

Exclusive pickup, owner-only resolve and capacity bookkeeping, including
agents racing each other from separate sessions.
"""

import threading

import pytest
from sqlalchemy.orm import sessionmaker

from conftest import build_agent, build_handoff
from app.handoff.agent_directory import AgentDirectory
from app.handoff.coordinator import AssignmentCoordinator
from app.handoff.exceptions import (
    AgentNotFound, AlreadyAssigned, AlreadyResolved, CapacityExceeded, HandoffNotFound,
    InvalidStateTransition, Unauthorized
)
from app.handoff.models import HandoffStatus
from app.handoff.registry import HandoffRegistry
from app.handoff.relay import MessageRelay


@pytest.fixture
def coordinator(db):
    return AssignmentCoordinator(db)


def refresh_agent(db, agent):
    return AgentDirectory(db).get(agent.id)


class TestPickup:

    def test_first_pickup_wins(self, db, coordinator, make_agent, make_handoff):
        a = make_agent(max_chats=1)
        b = make_agent(max_chats=1)
        h1 = make_handoff()

        picked = coordinator.pickup(h1.id, a.id, 1)

        assert picked.status == HandoffStatus.ACTIVE.value
        assert picked.assigned_agent_id == a.id
        assert picked.picked_up_at is not None
        assert refresh_agent(db, a).active_chats == 1

        with pytest.raises(AlreadyAssigned):
            coordinator.pickup(h1.id, b.id, 1)
        assert refresh_agent(db, b).active_chats == 0

    def test_agent_at_capacity(self, db, coordinator, make_agent, make_handoff):
        a = make_agent(max_chats=1, active_chats=1)
        h2 = make_handoff()

        with pytest.raises(CapacityExceeded):
            coordinator.pickup(h2.id, a.id, 1)

        h2 = HandoffRegistry(db).get(h2.id)
        assert h2.status == HandoffStatus.PENDING.value
        assert h2.assigned_agent_id is None
        assert MessageRelay(db).history(h2.id) == []

    def test_join_notice_posted(self, db, coordinator, make_agent, make_handoff):
        agent = make_agent(name="Grace")
        handoff = coordinator.pickup(make_handoff().id, agent.id, 1)

        [notice] = MessageRelay(db).history(handoff.id)
        assert notice.sender_type == "system"
        assert notice.content == "Grace has joined the chat"

    def test_other_tenant_handoff(self, coordinator, make_agent, make_handoff):
        agent = make_agent(tenant_id=1)
        handoff = make_handoff(tenant_id=2)

        with pytest.raises(HandoffNotFound):
            coordinator.pickup(handoff.id, agent.id, 1)

    def test_agent_from_other_tenant(self, db, coordinator, make_agent, make_handoff):
        outsider = make_agent(tenant_id=2)
        handoff = make_handoff(tenant_id=1)

        with pytest.raises(AgentNotFound):
            coordinator.pickup(handoff.id, outsider.id, 1)

        assert HandoffRegistry(db).get(handoff.id).status == HandoffStatus.PENDING.value

    def test_expired_handoff(self, db, coordinator, make_agent, make_handoff):
        agent = make_agent()
        handoff = make_handoff()
        HandoffRegistry(db).transition(handoff.id, HandoffStatus.PENDING, HandoffStatus.EXPIRED)
        db.commit()

        with pytest.raises(InvalidStateTransition):
            coordinator.pickup(handoff.id, agent.id, 1)

    def test_missing_handoff(self, coordinator, make_agent):
        with pytest.raises(HandoffNotFound):
            coordinator.pickup("nope", make_agent().id, 1)


class TestResolve:

    def test_owner_resolves_and_frees_slot(self, db, coordinator, make_agent, make_handoff):
        a = make_agent(max_chats=1)
        h1 = coordinator.pickup(make_handoff().id, a.id, 1)

        resolved = coordinator.resolve(h1.id, a.id)

        assert resolved.status == HandoffStatus.RESOLVED.value
        assert resolved.resolved_at is not None
        assert resolved.resolved_by_agent_id == a.id
        assert resolved.resolved_by == "agent"
        assert refresh_agent(db, a).active_chats == 0

        with pytest.raises(AlreadyResolved):
            coordinator.resolve(h1.id, a.id)
        assert refresh_agent(db, a).active_chats == 0

    def test_non_owner_has_no_effect(self, db, coordinator, make_agent, make_handoff):
        owner = make_agent()
        other = make_agent()
        handoff = coordinator.pickup(make_handoff().id, owner.id, 1)

        with pytest.raises(Unauthorized):
            coordinator.resolve(handoff.id, other.id)

        handoff = HandoffRegistry(db).get(handoff.id)
        assert handoff.status == HandoffStatus.ACTIVE.value
        assert handoff.assigned_agent_id == owner.id
        assert refresh_agent(db, owner).active_chats == 1
        assert refresh_agent(db, other).active_chats == 0

    def test_non_owner_on_resolved_handoff(self, coordinator, make_agent, make_handoff):
        owner = make_agent()
        other = make_agent()
        handoff = coordinator.pickup(make_handoff().id, owner.id, 1)
        coordinator.resolve(handoff.id, owner.id)

        with pytest.raises(AlreadyResolved):
            coordinator.resolve(handoff.id, other.id)

    def test_pending_cannot_be_resolved(self, coordinator, make_agent, make_handoff):
        with pytest.raises(InvalidStateTransition):
            coordinator.resolve(make_handoff().id, make_agent().id)

    def test_resolve_scoped_to_tenant(self, coordinator, make_agent, make_handoff):
        owner = make_agent(tenant_id=2)
        handoff = coordinator.pickup(make_handoff(tenant_id=2).id, owner.id, 2)

        with pytest.raises(HandoffNotFound):
            coordinator.resolve(handoff.id, owner.id, tenant_id=1)


class TestEndByCustomer:

    def test_releases_owner(self, db, coordinator, make_agent, make_handoff):
        owner = make_agent()
        handoff = coordinator.pickup(make_handoff().id, owner.id, 1)

        ended = coordinator.end_by_customer(handoff.id, 1)

        assert ended.status == HandoffStatus.RESOLVED.value
        assert ended.resolved_by == "customer"
        assert ended.assigned_agent_id is None
        assert refresh_agent(db, owner).active_chats == 0
        assert MessageRelay(db).history(handoff.id)[-1].content == "Customer ended the chat"

    def test_pending_left_alone(self, coordinator, make_handoff):
        handoff = make_handoff()

        assert coordinator.end_by_customer(handoff.id, 1).status == HandoffStatus.PENDING.value


class TestConcurrentPickup:

    def _race(self, factory, handoff_ids, agent_ids):
        """Run one pickup per (handoff, agent) pair, all released at the same moment"""
        barrier = threading.Barrier(len(agent_ids))
        outcomes = [None] * len(agent_ids)

        def attempt(index):
            session = factory()
            try:
                barrier.wait()
                AssignmentCoordinator(session).pickup(handoff_ids[index], agent_ids[index], 1)
                outcomes[index] = "ok"
            except Exception as e:
                outcomes[index] = e
            finally:
                session.close()

        threads = [threading.Thread(target=attempt, args=(i,)) for i in range(len(agent_ids))]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)
        return outcomes

    def test_two_agents_one_handoff(self, immediate_engine):
        factory = sessionmaker(autocommit=False, autoflush=False, bind=immediate_engine)
        setup = factory()
        a = build_agent(setup, max_chats=1)
        b = build_agent(setup, max_chats=1)
        handoff = build_handoff(setup)
        ids = (a.id, b.id, handoff.id)
        setup.close()

        outcomes = self._race(factory, [ids[2], ids[2]], [ids[0], ids[1]])

        assert outcomes.count("ok") == 1
        [loser] = [o for o in outcomes if o != "ok"]
        assert isinstance(loser, AlreadyAssigned)

        check = factory()
        try:
            stored = HandoffRegistry(check).get(ids[2])
            winner_id = ids[outcomes.index("ok")]
            assert stored.assigned_agent_id == winner_id
            total = sum(AgentDirectory(check).get(agent_id).active_chats for agent_id in ids[:2])
            assert total == 1
        finally:
            check.close()

    def test_one_slot_two_handoffs(self, immediate_engine):
        factory = sessionmaker(autocommit=False, autoflush=False, bind=immediate_engine)
        setup = factory()
        agent_id = build_agent(setup, max_chats=1).id
        handoff_ids = [build_handoff(setup).id, build_handoff(setup).id]
        setup.close()

        outcomes = self._race(factory, handoff_ids, [agent_id, agent_id])

        assert outcomes.count("ok") == 1
        [loser] = [o for o in outcomes if o != "ok"]
        assert isinstance(loser, CapacityExceeded)

        check = factory()
        try:
            assert AgentDirectory(check).get(agent_id).active_chats == 1
            statuses = sorted(HandoffRegistry(check).get(h).status for h in handoff_ids)
            assert statuses == [HandoffStatus.ACTIVE.value, HandoffStatus.PENDING.value]
        finally:
            check.close()
