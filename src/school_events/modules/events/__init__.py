"""
Events Module

Registration Manager: registers students for events with capacity and
duplicate-registration guarantees enforced by the database, cancels
registrations and reminds guardians about upcoming events.
"""

from .jobs import register_event_jobs
from .router import router

__all__ = ["router", "register_event_jobs"]
