import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable

from app.core.exceptions import ProviderError, ReservationNotFound, UpstreamError, UpstreamUnauthorized

logger = logging.getLogger(__name__)

ACCESS_CODE_FIELDS = ("pin", "code", "accessCode", "pinCode")


@dataclass
class ReservationDetails:
    reservation_id: str
    guest_name: str | None = None
    room_name: str | None = None
    check_in: str | None = None
    check_out: str | None = None
    status: str | None = None
    access_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def extract_room_name(reservation: dict) -> str | None:
    assigned = reservation.get("assigned") or []
    if not isinstance(assigned, list) or not assigned or not isinstance(assigned[0], dict):
        return None
    first = assigned[0]
    return first.get("roomName") or first.get("roomTypeName") or None


def extract_access_code(keys: list[dict]) -> str | None:
    if not keys:
        return None
    first = keys[0]
    for field in ACCESS_CODE_FIELDS:
        value = first.get(field)
        if value not in (None, ""):
            return str(value)
    return None


class ReservationResolver:
    def __init__(self, cloudbeds, token_vault):
        self._cloudbeds = cloudbeds
        self._vault = token_vault

    def _call(self, fn: Callable, *args):
        token = self._vault.get_valid_access_token()
        try:
            return fn(token, *args)
        except UpstreamUnauthorized:
            logger.info("cloudbeds rejected access token, forcing refresh")
            token = self._vault.get_valid_access_token(force_refresh=True, stale_token=token)
            return fn(token, *args)

    def _find_in_listing(self, booking_ref: str) -> dict | None:
        try:
            rows = self._call(self._cloudbeds.list_reservations)
        except UpstreamError as exc:
            logger.warning("cloudbeds reservation listing failed: %s", exc.message)
            raise ProviderError("Reservation lookup failed") from exc

        for row in rows:
            native_id = str(row.get("reservationID") or "")
            third_party_id = str(row.get("thirdPartyIdentifier") or "")
            if booking_ref in (native_id, third_party_id) and native_id:
                return row
        return None

    def _lookup(self, booking_ref: str) -> dict:
        try:
            return self._call(self._cloudbeds.get_reservation, booking_ref)
        except UpstreamUnauthorized as exc:
            logger.warning("cloudbeds rejected the refreshed token, giving up on %s", booking_ref)
            raise ProviderError("Cloudbeds rejected the access token") from exc
        except UpstreamError as exc:
            logger.info("direct reservation lookup failed for %s: %s", booking_ref, exc.message)

        listed = self._find_in_listing(booking_ref)
        if not listed:
            raise ReservationNotFound()

        native_id = str(listed["reservationID"])
        try:
            return self._call(self._cloudbeds.get_reservation, native_id)
        except UpstreamError as exc:
            logger.warning("detail re-fetch failed for %s, using listing record: %s", native_id, exc.message)
            return listed

    def _access_code(self, reservation_id: str) -> str | None:
        try:
            keys = self._call(self._cloudbeds.get_access_keys, reservation_id)
            return extract_access_code(keys)
        except Exception as exc:  # access codes are best effort
            logger.warning("door key lookup failed for %s (non-fatal): %s", reservation_id, exc)
            return None

    def list_hotels(self) -> list[dict]:
        """Authenticated read used to confirm the stored credential works."""
        return self._call(self._cloudbeds.get_hotels)

    def resolve(self, booking_ref: str) -> ReservationDetails:
        booking_ref = str(booking_ref or "").strip()
        if not booking_ref:
            raise ReservationNotFound()

        reservation = self._lookup(booking_ref)
        reservation_id = str(reservation.get("reservationID") or booking_ref)
        details = ReservationDetails(
            reservation_id=reservation_id,
            guest_name=reservation.get("guestName"),
            room_name=extract_room_name(reservation),
            check_in=reservation.get("startDate"),
            check_out=reservation.get("endDate"),
            status=reservation.get("status"),
            access_code=self._access_code(reservation_id),
        )
        logger.info(
            "reservation %s resolved room=%s access_code=%s",
            reservation_id,
            details.room_name,
            "yes" if details.access_code else "no",
        )
        return details
