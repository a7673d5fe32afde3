"""
Students module - Students, their guardian and their class.
"""

from school_events.modules.students.models import Student

__all__ = ["Student"]
