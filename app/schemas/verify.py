from datetime import datetime

from pydantic import BaseModel, Field


class StartRequest(BaseModel):
    flow_type: str | None = None
    expected_guest_count: int | None = Field(default=None, ge=0)


class SessionRequest(BaseModel):
    session_token: str = Field(min_length=1)


class ConsentRequest(SessionRequest):
    consent_given: bool = True
    consent_timestamp: datetime | None = None
    locale: str | None = None


class GuestUpdateRequest(SessionRequest):
    guest_name: str = Field(min_length=1)
    room_number: str = Field(min_length=1)


class VisitorIntakeRequest(SessionRequest):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    reason: str | None = None


class DocumentUploadRequest(SessionRequest):
    document_data: str = Field(min_length=1)


class FaceVerifyRequest(SessionRequest):
    selfie_data: str = Field(min_length=1)
