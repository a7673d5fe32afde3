"""
Shared fixtures.
"""

from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from school_events.core.auth import ROLE_ADMIN, ROLE_GUARDIAN, ROLE_TEACHER, Actor
from school_events.modules.users.models import User, UserRole


@pytest.fixture
def mock_db():
    """Create a mock database session."""
    db = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.refresh = AsyncMock()
    db.flush = AsyncMock()
    db.get = AsyncMock()
    db.execute = AsyncMock()
    db.add = MagicMock()
    return db


@pytest.fixture
def guardian_user():
    """A guardian account with email and phone."""
    user = MagicMock(spec=User)
    user.id = uuid4()
    user.email = "parent@test.com"
    user.phone = "+15550001111"
    user.first_name = "Grace"
    user.last_name = "Parent"
    user.full_name = "Grace Parent"
    user.role = UserRole.GUARDIAN
    user.is_active = True
    return user


@pytest.fixture
def guardian_actor(guardian_user):
    return Actor(id=guardian_user.id, role=ROLE_GUARDIAN, email=guardian_user.email, name="Grace")


@pytest.fixture
def teacher_actor():
    return Actor(id=uuid4(), role=ROLE_TEACHER, email="teacher@test.com", name="Tom Teacher")


@pytest.fixture
def admin_actor():
    return Actor(id=uuid4(), role=ROLE_ADMIN, email="admin@test.com", name="Ada Admin")
