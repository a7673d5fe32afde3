"""
Shared building blocks for domain modules.

- ``BaseModel``: abstract declarative model with a UUID primary key and
  created/updated timestamps.
- ``ServiceError``: base class for business-rule and security errors raised
  by module services and translated to HTTP responses by routers.
"""

import uuid
from datetime import datetime

from fastapi import HTTPException
from sqlalchemy import DateTime, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from school_events.core.database import Base


class BaseModel(Base):
    """Abstract base model with id and audit timestamps."""

    __abstract__ = True

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class ServiceError(Exception):
    """Base exception for service errors."""

    def __init__(self, message: str, error_code: str, status_code: int = 400):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        super().__init__(message)


class NotAuthorizedError(ServiceError):
    """The actor may not perform this operation on this resource."""

    def __init__(self, message: str = "You are not allowed to perform this action."):
        super().__init__(message=message, error_code="NOT_AUTHORIZED", status_code=403)


def to_http_exception(error: ServiceError) -> HTTPException:
    """Convert a service error to an HTTPException with a stable error body."""
    return HTTPException(
        status_code=error.status_code,
        detail={"error": error.error_code, "message": error.message},
    )


__all__ = ["BaseModel", "NotAuthorizedError", "ServiceError", "to_http_exception"]
