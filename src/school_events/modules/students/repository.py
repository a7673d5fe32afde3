"""
Student Repository
"""

from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from .models import Student


async def get_by_id(db: AsyncSession, id: UUID) -> Student | None:
    """Get student by ID."""
    return await db.get(Student, id)

