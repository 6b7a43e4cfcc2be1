from pydantic import BaseModel, Field


class ReservationLookupRequest(BaseModel):
    reservation_id: str = Field(min_length=1)


class ReservationLookupResponse(BaseModel):
    success: bool = True
    reservationId: str
    guestName: str | None = None
    roomName: str | None = None
    checkInDate: str | None = None
    checkOutDate: str | None = None
    status: str | None = None
    accessCode: str | None = None
