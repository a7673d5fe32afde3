"""
Events Router

Endpoints:
- POST /events/{event_id}/registrations - Register a student for an event
- POST /registrations/{registration_id}/cancel - Cancel a registration
- GET /registrations/mine - Current guardian's registrations
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from school_events.core.auth import Actor, get_current_actor
from school_events.core.database import get_db
from school_events.modules.payments.schemas import PaymentResponse
from school_events.modules.shared import ServiceError, to_http_exception

from . import service
from .schemas import RegisterStudentRequest, RegisterStudentResponse, RegistrationResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/events/{event_id}/registrations",
    response_model=RegisterStudentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register Student for Event",
    description="""
Register a student for an event.

Guardians can register their own children; teachers can register students of
their own class. The registration is rejected when the event is not active,
its registration deadline has passed, the student is already registered or
the event is full.

If the event has a fee, the response contains a pending payment and the
client secret used to pay. Free events are marked paid immediately.
""",
    responses={
        409: {
            "description": "Registration rejected",
            "content": {
                "application/json": {
                    "example": {
                        "detail": {"error": "EVENT_FULL", "message": "This event is full."}
                    }
                }
            },
        },
    },
)
async def register_student(
    event_id: UUID,
    data: RegisterStudentRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> RegisterStudentResponse:
    try:
        outcome = await service.register_student(db, event_id, data.student_id, actor)
    except ServiceError as e:
        logger.warning(f"Registration for event {event_id} rejected: {e.error_code}")
        raise to_http_exception(e) from e

    return RegisterStudentResponse(
        registration=RegistrationResponse.model_validate(outcome.registration),
        payment=PaymentResponse.model_validate(outcome.payment) if outcome.payment else None,
        client_secret=outcome.client_handle,
    )


@router.post(
    "/registrations/{registration_id}/cancel",
    response_model=RegistrationResponse,
    summary="Cancel Registration",
)
async def cancel_registration(
    registration_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> RegistrationResponse:
    """Cancel a registration. Paid fees are not refunded automatically."""
    try:
        registration = await service.cancel_registration(db, registration_id, actor)
    except ServiceError as e:
        raise to_http_exception(e) from e
    return RegistrationResponse.model_validate(registration)


@router.get(
    "/registrations/mine",
    response_model=list[RegistrationResponse],
    summary="My Registrations",
)
async def my_registrations(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> list[RegistrationResponse]:
    registrations = await service.list_guardian_registrations(db, actor.id)
    return [RegistrationResponse.model_validate(r) for r in registrations]
