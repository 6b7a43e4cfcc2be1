import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, Enum as SqlEnum, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base


class FlowType(str, Enum):
    guest = "guest"
    visitor = "visitor"


class SessionStatus(str, Enum):
    started = "started"
    consent_logged = "consent_logged"
    guest_verified = "guest_verified"
    visitor_info_saved = "visitor_info_saved"
    document_uploaded = "document_uploaded"
    verified = "verified"


class SlotStatus(str, Enum):
    pending = "pending"
    document_uploaded = "document_uploaded"
    verified = "verified"
    rejected = "rejected"


class VerificationSession(Base):
    __tablename__ = "verification_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_token: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    flow_type: Mapped[FlowType] = mapped_column(SqlEnum(FlowType), nullable=False, default=FlowType.guest)
    status: Mapped[str] = mapped_column(String(40), default=SessionStatus.started.value)
    current_step: Mapped[str] = mapped_column(String(40), default="consent")

    consent_given: Mapped[bool] = mapped_column(Boolean, default=False)
    consent_timestamp: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    consent_locale: Mapped[str | None] = mapped_column(String(20), nullable=True)

    guest_name: Mapped[str | None] = mapped_column(String(160), nullable=True)
    room_number: Mapped[str | None] = mapped_column(String(64), nullable=True)

    visitor_first_name: Mapped[str | None] = mapped_column(String(80), nullable=True)
    visitor_last_name: Mapped[str | None] = mapped_column(String(80), nullable=True)
    visitor_phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    visitor_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    expected_guest_count: Mapped[int] = mapped_column(Integer, default=1)
    verified_guest_count: Mapped[int] = mapped_column(Integer, default=0)
    requires_additional_guest: Mapped[bool] = mapped_column(Boolean, default=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)

    document_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    selfie_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    verification_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    liveness_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    face_match_score: Mapped[float | None] = mapped_column(Float, nullable=True)

    physical_room: Mapped[str | None] = mapped_column(String(120), nullable=True)
    room_access_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    upstream_reservation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    slots = relationship(
        "GuestSlot",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="GuestSlot.guest_index",
    )

    __mapper_args__ = {"version_id_col": version}

    def recompute_counts(self) -> None:
        expected = max(int(self.expected_guest_count or 0), 0)
        verified = min(max(int(self.verified_guest_count or 0), 0), expected)
        self.expected_guest_count = expected
        self.verified_guest_count = verified
        self.is_verified = verified >= expected
        self.requires_additional_guest = verified < expected

    def slot(self, guest_index: int) -> "GuestSlot | None":
        for slot in self.slots:
            if slot.guest_index == guest_index:
                return slot
        return None


class GuestSlot(Base):
    __tablename__ = "guest_slots"
    __table_args__ = (UniqueConstraint("session_id", "guest_index", name="uq_guest_slots_session_index"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("verification_sessions.id"), nullable=False, index=True
    )
    guest_index: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(40), default=SlotStatus.pending.value)
    document_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    selfie_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    liveness_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    face_match_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    verification_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    session = relationship("VerificationSession", back_populates="slots")
