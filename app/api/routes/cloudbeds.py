import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse

from app.api.deps import get_services
from app.core.exceptions import InvalidInputError, UpstreamError
from app.core.security import create_state_token, decode_state_token
from app.schemas.cloudbeds import ReservationLookupRequest, ReservationLookupResponse
from app.services.container import ServiceContainer

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/start")
def cloudbeds_start(services: ServiceContainer = Depends(get_services)):
    services.ensure_cloudbeds_configured()
    state = create_state_token(services.settings)
    return RedirectResponse(services.cloudbeds.authorize_url(state), status_code=302)


@router.get("/callback")
def cloudbeds_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    services: ServiceContainer = Depends(get_services),
):
    services.ensure_cloudbeds_configured()
    if not code:
        raise InvalidInputError("Missing authorization code (?code=...)")
    try:
        decode_state_token(state or "", services.settings)
    except ValueError:
        raise InvalidInputError("Invalid or expired OAuth state")

    try:
        credential = services.token_vault.store_authorization(code)
    except UpstreamError as exc:
        logger.error("cloudbeds code exchange failed: %s", exc.message)
        raise InvalidInputError("Token exchange failed")
    return {
        "success": True,
        "message": "Cloudbeds connected. Token saved.",
        "expires_in": credential.expires_in,
        "scope": credential.scope,
    }


@router.get("/ping")
def cloudbeds_ping(services: ServiceContainer = Depends(get_services)):
    services.ensure_cloudbeds_configured()
    hotels = services.reservations.list_hotels()
    return {
        "success": True,
        "hotels": [
            {"propertyID": hotel.get("propertyID"), "propertyName": hotel.get("propertyName")} for hotel in hotels
        ],
    }


@router.post("/refresh")
def cloudbeds_refresh(services: ServiceContainer = Depends(get_services)):
    services.ensure_cloudbeds_configured()
    credential = services.token_vault.refresh()
    expires_in = credential.expires_in or 0
    return {
        "success": True,
        "message": "Token refreshed successfully",
        "expires_in": credential.expires_in,
        "expires_in_hours": round(expires_in / 3600),
        "refreshed_at": (credential.updated_at or datetime.utcnow()).isoformat(),
    }


@router.post("/reservation", response_model=ReservationLookupResponse)
def cloudbeds_reservation(
    payload: ReservationLookupRequest,
    services: ServiceContainer = Depends(get_services),
):
    services.ensure_cloudbeds_configured()
    details = services.reservations.resolve(payload.reservation_id)
    return ReservationLookupResponse(
        reservationId=details.reservation_id,
        guestName=details.guest_name,
        roomName=details.room_name,
        checkInDate=details.check_in,
        checkOutDate=details.check_out,
        status=details.status,
        accessCode=details.access_code,
    )
