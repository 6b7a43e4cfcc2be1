import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import (
    AppException,
    BlobNotFound,
    ConflictError,
    DocumentMissing,
    InvalidInputError,
    SessionNotFound,
)
from app.core.security import generate_session_token
from app.db.models import FlowType, GuestSlot, SessionStatus, SlotStatus, VerificationSession
from app.services.face_policy import SIMILARITY_FLOOR, FaceDecision, evaluate_face
from app.services.media_service import DOCUMENT, SELFIE, decode_image, image_key, target_guest_index
from app.services.reservation_service import ReservationDetails

logger = logging.getLogger(__name__)

TOKEN_ATTEMPTS = 5

STATUS_RANK = {
    SessionStatus.started.value: 0,
    SessionStatus.consent_logged.value: 1,
    SessionStatus.guest_verified.value: 2,
    SessionStatus.visitor_info_saved.value: 2,
    SessionStatus.document_uploaded.value: 3,
    SessionStatus.verified.value: 4,
}


def normalize_flow_type(value) -> FlowType:
    return FlowType.visitor if str(value or "").strip().lower() == FlowType.visitor.value else FlowType.guest


def _as_utc_naive(value: datetime | None) -> datetime:
    if value is None:
        return datetime.utcnow()
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _advance(row: VerificationSession, status: SessionStatus) -> None:
    if STATUS_RANK[status.value] >= STATUS_RANK.get(row.status, 0):
        row.status = status.value


def _identity_status(row: VerificationSession) -> SessionStatus:
    if row.flow_type == FlowType.visitor:
        return SessionStatus.visitor_info_saved
    return SessionStatus.guest_verified


def serialize_slot(slot: GuestSlot) -> dict[str, Any]:
    return {
        "guest_index": slot.guest_index,
        "status": slot.status,
        "document_url": slot.document_url,
        "selfie_url": slot.selfie_url,
        "liveness_score": slot.liveness_score,
        "face_match_score": slot.face_match_score,
        "verification_score": slot.verification_score,
    }


def serialize_session(row: VerificationSession) -> dict[str, Any]:
    return {
        "session_token": row.session_token,
        "flow_type": row.flow_type.value,
        "status": row.status,
        "current_step": row.current_step,
        "consent_given": bool(row.consent_given),
        "consent_timestamp": row.consent_timestamp.isoformat() if row.consent_timestamp else None,
        "locale": row.consent_locale,
        "guest_name": row.guest_name,
        "room_number": row.room_number,
        "visitor_first_name": row.visitor_first_name,
        "visitor_last_name": row.visitor_last_name,
        "visitor_phone": row.visitor_phone,
        "visitor_reason": row.visitor_reason,
        "expected_guest_count": row.expected_guest_count,
        "verified_guest_count": row.verified_guest_count,
        "requires_additional_guest": bool(row.requires_additional_guest),
        "is_verified": bool(row.is_verified),
        "document_url": row.document_url,
        "selfie_url": row.selfie_url,
        "verification_score": row.verification_score,
        "liveness_score": row.liveness_score,
        "face_match_score": row.face_match_score,
        "physical_room": row.physical_room,
        "room_access_code": row.room_access_code,
        "upstream_reservation_id": row.upstream_reservation_id,
        "guests": [serialize_slot(slot) for slot in row.slots],
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


class VerificationService:
    """Drives one verification session from creation to verified.

    Each action checks only the precondition it needs, so steps may arrive out
    of order. Every write is a compare-and-swap on the session's version column;
    a concurrent writer loses with ``ConflictError``.
    """

    def __init__(
        self,
        blob_store,
        face_analyzer,
        reservations,
        key_prefix: str = "demo/",
        min_image_bytes: int = 1000,
        max_guests: int = 10,
    ):
        self._blobs = blob_store
        self._faces = face_analyzer
        self._reservations = reservations
        self.key_prefix = key_prefix
        self.min_image_bytes = min_image_bytes
        self.max_guests = max_guests

    def _get(self, db: Session, session_token: str | None) -> VerificationSession:
        token = str(session_token or "").strip()
        row = (
            db.query(VerificationSession).filter(VerificationSession.session_token == token).first()
            if token
            else None
        )
        if not row:
            raise SessionNotFound()
        return row

    def _save(self, db: Session, row: VerificationSession) -> VerificationSession:
        row.recompute_counts()
        row.updated_at = datetime.utcnow()
        try:
            db.commit()
        except StaleDataError:
            db.rollback()
            logger.warning("concurrent update rejected for session %s", row.session_token)
            raise ConflictError()
        db.refresh(row)
        return row

    def _ensure_slots(self, row: VerificationSession) -> None:
        existing = {slot.guest_index for slot in row.slots}
        for index in range(1, max(row.expected_guest_count, 1) + 1):
            if index not in existing:
                row.slots.append(GuestSlot(guest_index=index, status=SlotStatus.pending.value))

    def _slot_for(self, row: VerificationSession, guest_index: int) -> GuestSlot:
        slot = row.slot(guest_index)
        if slot is None:
            slot = GuestSlot(guest_index=guest_index, status=SlotStatus.pending.value)
            row.slots.append(slot)
        return slot

    def _open_guest_index(self, row: VerificationSession) -> int:
        guest_index = target_guest_index(row.verified_guest_count, row.expected_guest_count)
        slot = row.slot(guest_index)
        if slot is not None and slot.status == SlotStatus.verified.value:
            raise InvalidInputError(
                f"Guest {guest_index} is already verified. Add a guest to verify another person."
            )
        return guest_index

    def _clamp_expected(self, flow: FlowType, requested: int | None) -> int:
        lower = 0 if flow == FlowType.visitor else 1
        if requested is None:
            return lower
        return min(max(int(requested), lower), self.max_guests)

    @staticmethod
    def _apply_reservation(row: VerificationSession, details: ReservationDetails) -> None:
        if details.room_name:
            row.physical_room = details.room_name
        if details.access_code:
            row.room_access_code = details.access_code
        if details.reservation_id:
            row.upstream_reservation_id = details.reservation_id

    def start(self, db: Session, flow_type=None, expected_guest_count: int | None = None) -> VerificationSession:
        flow = normalize_flow_type(flow_type)
        expected = self._clamp_expected(flow, expected_guest_count)
        for _ in range(TOKEN_ATTEMPTS):
            row = VerificationSession(
                session_token=generate_session_token(),
                flow_type=flow,
                status=SessionStatus.started.value,
                current_step="consent",
                expected_guest_count=expected,
                verified_guest_count=0,
            )
            row.recompute_counts()
            self._ensure_slots(row)
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.warning("session token collision, regenerating")
                continue
            db.refresh(row)
            logger.info("session %s started flow=%s expected=%s", row.session_token, flow.value, expected)
            return row
        raise AppException("Could not allocate a session token", status_code=500)

    def get_session(self, db: Session, session_token: str) -> VerificationSession:
        return self._get(db, session_token)

    def log_consent(
        self,
        db: Session,
        session_token: str,
        given: bool,
        timestamp: datetime | None = None,
        locale: str | None = None,
    ) -> VerificationSession:
        row = self._get(db, session_token)
        row.consent_given = bool(given)
        row.consent_timestamp = _as_utc_naive(timestamp)
        if locale:
            row.consent_locale = locale.strip()[:20]
        _advance(row, SessionStatus.consent_logged)
        row.current_step = "visitor_details" if row.flow_type == FlowType.visitor else "guest_details"
        return self._save(db, row)

    def update_guest(
        self, db: Session, session_token: str, guest_name: str, booking_ref: str
    ) -> tuple[VerificationSession, ReservationDetails]:
        row = self._get(db, session_token)
        details = self._reservations.resolve(booking_ref)

        row.guest_name = guest_name.strip()
        row.room_number = booking_ref.strip()
        self._apply_reservation(row, details)
        _advance(row, SessionStatus.guest_verified)
        row.current_step = "document"
        return self._save(db, row), details

    def visitor_intake(
        self,
        db: Session,
        session_token: str,
        first_name: str,
        last_name: str,
        phone: str,
        reason: str | None = None,
    ) -> VerificationSession:
        row = self._get(db, session_token)
        row.visitor_first_name = first_name.strip()
        row.visitor_last_name = last_name.strip()
        row.visitor_phone = phone.strip()
        row.visitor_reason = (reason or "").strip() or None
        _advance(row, SessionStatus.visitor_info_saved)
        row.current_step = "document"
        return self._save(db, row)

    def upload_document(self, db: Session, session_token: str, document_data) -> tuple[VerificationSession, GuestSlot]:
        row = self._get(db, session_token)
        image = decode_image(document_data, self.min_image_bytes, label="document_data")
        guest_index = self._open_guest_index(row)

        key = image_key(self.key_prefix, row.session_token, DOCUMENT, guest_index)
        url = self._blobs.put(key, image, "image/jpeg")

        slot = self._slot_for(row, guest_index)
        slot.document_url = url
        slot.status = SlotStatus.document_uploaded.value
        row.document_url = url
        _advance(row, SessionStatus.document_uploaded)
        row.current_step = "selfie"
        self._save(db, row)
        logger.info("session %s document stored for guest %s", row.session_token, guest_index)
        return row, row.slot(guest_index)

    def _load_document(self, row: VerificationSession, guest_index: int) -> bytes:
        slot = row.slot(guest_index)
        message = f"Document not uploaded for guest {guest_index}. Please upload the ID first."
        if slot is None or not slot.document_url:
            raise DocumentMissing(message)
        try:
            return self._blobs.get(image_key(self.key_prefix, row.session_token, DOCUMENT, guest_index))
        except BlobNotFound:
            raise DocumentMissing(message)

    def verify_face(
        self, db: Session, session_token: str, selfie_data
    ) -> tuple[VerificationSession, int, FaceDecision]:
        row = self._get(db, session_token)
        selfie = decode_image(selfie_data, self.min_image_bytes, label="selfie_data")
        guest_index = self._open_guest_index(row)
        document = self._load_document(row, guest_index)

        detection = self._faces.detect_face(selfie)
        best_similarity = self._faces.compare_faces(selfie, document, SIMILARITY_FLOOR)
        decision = evaluate_face(detection, best_similarity)

        verified_before = row.verified_guest_count
        verified_after = (
            min(verified_before + 1, row.expected_guest_count) if decision.guest_verified else verified_before
        )

        details = None
        if verified_after > verified_before and row.flow_type == FlowType.guest and row.room_number:
            try:
                details = self._reservations.resolve(row.room_number)
            except AppException as exc:
                logger.warning(
                    "reservation lookup after verification failed for session %s (non-fatal): %s",
                    row.session_token,
                    exc.message,
                )

        selfie_url = self._blobs.put(
            image_key(self.key_prefix, row.session_token, SELFIE, guest_index), selfie, "image/jpeg"
        )

        slot = row.slot(guest_index)
        slot.selfie_url = selfie_url
        slot.liveness_score = decision.liveness_score
        slot.face_match_score = decision.similarity
        slot.verification_score = decision.verification_score
        slot.status = SlotStatus.verified.value if decision.guest_verified else SlotStatus.rejected.value

        row.selfie_url = selfie_url
        row.document_url = slot.document_url
        row.liveness_score = decision.liveness_score
        row.face_match_score = decision.similarity
        row.verification_score = decision.verification_score
        row.verified_guest_count = verified_after
        if details is not None:
            self._apply_reservation(row, details)
        row.recompute_counts()

        if row.is_verified and decision.guest_verified:
            row.status = SessionStatus.verified.value
            row.current_step = "complete"
        elif verified_after > verified_before:
            row.current_step = "document"
        else:
            row.current_step = "selfie"

        self._save(db, row)
        logger.info(
            "session %s guest %s verified=%s score=%.3f count=%s/%s",
            row.session_token,
            guest_index,
            decision.guest_verified,
            decision.verification_score,
            row.verified_guest_count,
            row.expected_guest_count,
        )
        return row, guest_index, decision

    def add_guest(self, db: Session, session_token: str) -> VerificationSession:
        row = self._get(db, session_token)
        if row.expected_guest_count >= self.max_guests:
            raise InvalidInputError(f"A session can verify at most {self.max_guests} guests")
        row.expected_guest_count += 1
        row.recompute_counts()
        self._ensure_slots(row)
        if row.status == SessionStatus.verified.value and not row.is_verified:
            row.status = _identity_status(row).value
            row.current_step = "document"
        return self._save(db, row)
