"""
Users module - Accounts, roles and authentication state.
"""

from school_events.modules.users.models import User, UserRole
from school_events.modules.users.repository import UserRepository

__all__ = ["User", "UserRole", "UserRepository"]
