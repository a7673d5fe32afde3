"""
Notifications module - Multi-channel notification dispatch and delivery logs.
"""

from school_events.modules.notifications.router import router

__all__ = ["router"]
