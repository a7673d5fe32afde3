"""
Student Models
"""

import uuid

from sqlalchemy import Boolean, ForeignKey, Index, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from school_events.modules.shared import BaseModel
from school_events.modules.users.models import User


class Student(BaseModel):
    """
    A student enrolled in one class (grade + section).

    A student is linked to at most one guardian account at a time; the
    class teacher is the teacher account responsible for the class.
    """

    __tablename__ = "students"

    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    student_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)

    # ON DELETE SET NULL: removing an account unlinks its students
    guardian_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    class_teacher_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    grade: Mapped[str] = mapped_column(String(20), nullable=False)
    section: Mapped[str] = mapped_column(String(10), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    guardian: Mapped[User | None] = relationship(
        "User", foreign_keys=[guardian_id], lazy="selectin"
    )

    __table_args__ = (Index("ix_students_grade_section", "grade", "section"),)

    def __repr__(self) -> str:
        return f"<Student(id={self.id}, grade={self.grade}{self.section})>"

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"
