"""Authentication module: login throttling and password reset."""

from school_events.modules.auth.router import router
from school_events.modules.auth.schemas import LoginRequest, LoginResponse

__all__ = ["router", "LoginRequest", "LoginResponse"]
