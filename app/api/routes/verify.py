import logging
from time import perf_counter
from typing import Any, Callable

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from app.api.deps import get_services
from app.core.exceptions import AppException, InvalidInputError
from app.db.session import get_db
from app.schemas.verify import (
    ConsentRequest,
    DocumentUploadRequest,
    FaceVerifyRequest,
    GuestUpdateRequest,
    SessionRequest,
    StartRequest,
    VisitorIntakeRequest,
)
from app.services.container import ServiceContainer
from app.services.verification_service import serialize_session

router = APIRouter()
logger = logging.getLogger(__name__)


def _start(db: Session, services: ServiceContainer, payload: StartRequest) -> dict:
    row = services.verification.start(db, payload.flow_type, payload.expected_guest_count)
    return serialize_session(row)


def _get_session(db: Session, services: ServiceContainer, payload: SessionRequest) -> dict:
    return serialize_session(services.verification.get_session(db, payload.session_token))


def _log_consent(db: Session, services: ServiceContainer, payload: ConsentRequest) -> dict:
    row = services.verification.log_consent(
        db,
        payload.session_token,
        given=payload.consent_given,
        timestamp=payload.consent_timestamp,
        locale=payload.locale,
    )
    return serialize_session(row)


def _update_guest(db: Session, services: ServiceContainer, payload: GuestUpdateRequest) -> dict:
    services.ensure_cloudbeds_configured()
    row, details = services.verification.update_guest(
        db, payload.session_token, payload.guest_name, payload.room_number
    )
    return {**serialize_session(row), "reservation": details.to_dict()}


def _visitor_intake(db: Session, services: ServiceContainer, payload: VisitorIntakeRequest) -> dict:
    row = services.verification.visitor_intake(
        db,
        payload.session_token,
        first_name=payload.first_name,
        last_name=payload.last_name,
        phone=payload.phone,
        reason=payload.reason,
    )
    return serialize_session(row)


def _upload_document(db: Session, services: ServiceContainer, payload: DocumentUploadRequest) -> dict:
    services.ensure_storage_configured()
    row, slot = services.verification.upload_document(db, payload.session_token, payload.document_data)
    return {**serialize_session(row), "guest_index": slot.guest_index}


def _verify_face(db: Session, services: ServiceContainer, payload: FaceVerifyRequest) -> dict:
    services.ensure_storage_configured()
    row, guest_index, decision = services.verification.verify_face(db, payload.session_token, payload.selfie_data)
    return {
        **serialize_session(row),
        "guest_index": guest_index,
        "guest_verified": decision.guest_verified,
        "is_live": decision.is_live,
    }


def _add_guest(db: Session, services: ServiceContainer, payload: SessionRequest) -> dict:
    return serialize_session(services.verification.add_guest(db, payload.session_token))


ACTIONS: dict[str, tuple[type[BaseModel], Callable[..., dict]]] = {
    "start": (StartRequest, _start),
    "get_session": (SessionRequest, _get_session),
    "log_consent": (ConsentRequest, _log_consent),
    "update_guest": (GuestUpdateRequest, _update_guest),
    "visitor_intake": (VisitorIntakeRequest, _visitor_intake),
    "upload_document": (DocumentUploadRequest, _upload_document),
    "verify_face": (FaceVerifyRequest, _verify_face),
    "add_guest": (SessionRequest, _add_guest),
}


def _parse(model: type[BaseModel], body: dict[str, Any]) -> BaseModel:
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        fields = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
        if fields:
            raise InvalidInputError(f"Missing or invalid params: {', '.join(fields)}")
        raise InvalidInputError("Missing params")


@router.post("/verify")
def verify(
    body: dict[str, Any] | None = Body(default=None),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    body = body or {}
    action = body.get("action")
    entry = ACTIONS.get(action) if isinstance(action, str) else None
    if entry is None:
        raise InvalidInputError("Invalid action")

    model, handler = entry
    payload = _parse(model, body)
    session_token = body.get("session_token")
    started = perf_counter()
    try:
        result = handler(db, services, payload)
    except AppException as exc:
        elapsed_ms = (perf_counter() - started) * 1000
        logger.warning(
            "verify.%s failed in %.1fms session=%s code=%s error=%s",
            action,
            elapsed_ms,
            session_token,
            exc.code,
            exc.message,
        )
        raise
    except Exception:
        elapsed_ms = (perf_counter() - started) * 1000
        logger.exception("verify.%s crashed in %.1fms session=%s", action, elapsed_ms, session_token)
        raise

    elapsed_ms = (perf_counter() - started) * 1000
    logger.info(
        "verify.%s completed in %.1fms session=%s",
        action,
        elapsed_ms,
        result.get("session_token") or session_token,
    )
    return {"success": True, **result}
