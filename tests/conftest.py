import os
import uuid
from datetime import timedelta

# Settings are read at import time, so the environment goes first
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-handoff-desk-0123456789")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "testing"
os.environ["HANDOFF_SWEEPER_ENABLED"] = "false"
os.environ.pop("RESEND_API_KEY", None)

import pytest
from sqlalchemy import create_engine, event, update
from sqlalchemy.orm import sessionmaker

from app.core.security import create_agent_token, create_channel_token
from app.database import create_tables_safely
from app.handoff.models import HandoffRequest, HumanAgent, utc_now
from app.handoff.registry import HandoffRegistry


# ═══════════════════════════════════════════════════════════════════════════════
# DATABASE
# ═══════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so every session gets its own connection"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'handoff.db'}",
        connect_args={"check_same_thread": False},
    )
    create_tables_safely(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def immediate_engine(tmp_path):
    """SQLite engine whose transactions take the write lock up front.

    Concurrent writers then queue on the busy timeout instead of failing
    with 'database is locked' when a reader tries to upgrade its lock.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'concurrent.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_conn, connection_record):
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    create_tables_safely(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# ═══════════════════════════════════════════════════════════════════════════════
# BUILDERS
# ═══════════════════════════════════════════════════════════════════════════════


def build_agent(db, tenant_id=1, name=None, email=None, status="available",
                max_chats=2, active_chats=0, last_seen=None):
    suffix = uuid.uuid4().hex[:8]
    agent = HumanAgent(
        tenant_id=tenant_id,
        name=name or f"Agent {suffix}",
        email=email or f"agent-{suffix}@example.com",
        status=status,
        max_chats=max_chats,
        active_chats=active_chats,
        last_seen=last_seen or utc_now(),
    )
    db.add(agent)
    db.commit()
    db.refresh(agent)
    return agent


def build_handoff(db, tenant_id=1, chat_id=None, waited=None, **context):
    registry = HandoffRegistry(db)
    handoff = registry.create(tenant_id, chat_id or f"chat-{uuid.uuid4().hex[:8]}", context or None)

    if waited is not None:
        requested_at = utc_now() - waited
        db.execute(
            update(HandoffRequest)
            .where(HandoffRequest.id == handoff.id)
            .values(requested_at=requested_at)
        )
        db.commit()

    return registry.get(handoff.id)


@pytest.fixture
def make_agent(db):
    def _make(**kwargs):
        return build_agent(db, **kwargs)
    return _make


@pytest.fixture
def make_handoff(db):
    def _make(**kwargs):
        return build_handoff(db, **kwargs)
    return _make


class RecordingNotifier:
    """Stands in for the email service and remembers every notice"""

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def send_after_hours_notice(self, **payload):
        self.calls.append(payload)
        if self.fail:
            raise RuntimeError("mail provider unavailable")
        return {"success": True, "email_id": f"email-{len(self.calls)}"}


@pytest.fixture
def notifier():
    return RecordingNotifier()


# ═══════════════════════════════════════════════════════════════════════════════
# HTTP
# ═══════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def client(session_factory, monkeypatch, notifier):
    from fastapi.testclient import TestClient

    from app.database import get_db
    from app.handoff import widget_router
    from app.main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    monkeypatch.setattr(widget_router, "email_service", notifier)
    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def agent_headers(agent):
    return {"Authorization": f"Bearer {create_agent_token(agent.id, agent.tenant_id)}"}


def channel_headers(tenant_id=1):
    return {"Authorization": f"Bearer {create_channel_token(tenant_id)}"}


def minutes(n):
    return timedelta(minutes=n)
