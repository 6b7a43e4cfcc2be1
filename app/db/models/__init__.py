from app.db.models.credential import CREDENTIAL_ROW_ID, UpstreamCredential
from app.db.models.verification import FlowType, GuestSlot, SessionStatus, SlotStatus, VerificationSession

__all__ = [
    "CREDENTIAL_ROW_ID",
    "FlowType",
    "GuestSlot",
    "SessionStatus",
    "SlotStatus",
    "UpstreamCredential",
    "VerificationSession",
]
