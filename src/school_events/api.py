from fastapi import APIRouter

from school_events.modules.auth import router as auth_router
from school_events.modules.events import router as events_router
from school_events.modules.notifications import router as notifications_router
from school_events.modules.payments import router as payments_router

api_router = APIRouter()

api_router.include_router(auth_router, prefix="/auth", tags=["Authentication"])

api_router.include_router(events_router, tags=["Event Registrations"])

api_router.include_router(payments_router, prefix="/payments", tags=["Payments"])

api_router.include_router(
    notifications_router,
    prefix="/notifications",
    tags=["Notifications"],
)
