"""Pytest configuration and shared fixtures."""
import os

# Keep the application engine off disk while tests import it
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from activity_audit.config import AuditSettings
from activity_audit.context import InMemoryUserDirectory, RequestContext, ScreenFlags, UserRecord
from activity_audit.database import Base
from activity_audit.hooks import HookRegistry
from activity_audit.models.log import ActivityLog
from activity_audit.services.auditor import Auditor
from activity_audit.services.repository import ActivityLogRepository

# A Monday
FIXED_NOW = datetime(2026, 3, 2, 10, 0, 0)
CLIENT_IP = "203.0.113.5"


class Clock:
    """Controllable clock for the request context."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


def user_group(**events):
    """A ``user`` group map holding the given events."""
    return {
        "users": {
            "title": "User Events",
            "group": "user",
            "object": "user",
            "object_id_label": "User ID",
            "description": "Responsible for logging all user related activities.",
            "events": events,
        }
    }


def event(event_id, **attrs):
    """A minimal valid raw event map."""
    args = {
        "title": f"Event {event_id}",
        "action": "modified",
        "event_id": event_id,
        "message": {"_main": f"Event {event_id} happened", "user_id": ["object_id"]},
        "event_handler": {"num_args": 1},
    }
    args.update(attrs)
    return args


@pytest.fixture
def db_session():
    """Create a fresh in-memory database for each test."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(bind=engine)
    session = TestingSessionLocal()

    yield session

    session.close()


@pytest.fixture
def hooks():
    return HookRegistry()


@pytest.fixture
def settings():
    return AuditSettings()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def admin():
    return UserRecord(
        id=7, login="admin", email="admin@example.com", display_name="Site Admin",
        first_name="Ada", last_name="Min", roles=["administrator"],
        caps=["manage_options", "edit_users", "promote_users"],
    )


@pytest.fixture
def target_user():
    return UserRecord(
        id=42, login="bob", email="bob@example.com", display_name="Bob",
        first_name="Bob", last_name="Stone", nickname="bobby",
        roles=["subscriber"], caps=["read"],
    )


@pytest.fixture
def users(admin, target_user):
    return InMemoryUserDirectory([admin, target_user])


@pytest.fixture
def context(admin, clock):
    """A logged-in administrator on a multisite admin screen."""
    return RequestContext(
        user=admin,
        screen=ScreenFlags(is_admin=True, is_multisite=True),
        client_ip=CLIENT_IP,
        client_ips=[CLIENT_IP],
        referer="https://example.com/wp-admin/users.php",
        blog_id=1,
        blog_name="Example",
        blog_url="https://example.com",
        clock=clock,
    )


@pytest.fixture
def anonymous_context(clock):
    """A visitor on the public site."""
    return RequestContext(client_ip=CLIENT_IP, blog_url="https://example.com", clock=clock)


@pytest.fixture
def make_auditor(db_session, hooks, settings, context, users):
    """Build and set up an Auditor; keyword arguments replace the fixtures."""
    def factory(*groups, **overrides):
        auditor = Auditor(
            overrides.pop("context", context),
            overrides.pop("settings", settings),
            overrides.pop("hooks", hooks),
            ActivityLogRepository(db_session),
            users=overrides.pop("users", users),
            **overrides,
        )
        return auditor.setup(*groups)
    return factory


def fire(auditor, slug, group="user", **fields):
    """Prepare and log one occurrence without a host hook."""
    auditor.setup_event_args(group, fields)
    return auditor.log_active_event(group, slug)


def logs(db_session, event_id=None):
    query = db_session.query(ActivityLog)
    if event_id is not None:
        query = query.filter(ActivityLog.event_id == event_id)
    return query.order_by(ActivityLog.log_id).all()
