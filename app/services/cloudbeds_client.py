import json
import logging
import socket
from typing import Any
from urllib import error, parse, request

from app.core.exceptions import UpstreamError, UpstreamUnauthorized

logger = logging.getLogger(__name__)

RESERVATION_PAGE_SIZE = 100
MAX_RESERVATION_PAGES = 50


class CloudbedsClient:
    """Thin client for the Cloudbeds reservation, door-key and OAuth endpoints.

    Every call is bounded by ``timeout`` seconds. HTTP 401 raises
    ``UpstreamUnauthorized`` so callers can refresh and retry; any other
    non-2xx status, transport failure or undecodable body raises
    ``UpstreamError``.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        property_id: str,
        api_base: str,
        keys_url: str,
        token_url: str,
        authorize_url: str,
        scope: str = "",
        timeout: float = 20,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.property_id = property_id
        self.api_base = api_base.rstrip("/")
        self.keys_url = keys_url
        self.token_url = token_url
        self.authorize_url_base = authorize_url
        self.scope = scope
        self.timeout = timeout

    def _request(
        self,
        method: str,
        url: str,
        *,
        token: str | None = None,
        params: dict[str, Any] | None = None,
        form: dict[str, str] | None = None,
    ) -> Any:
        if params:
            url = f"{url}?{parse.urlencode(params)}"
        headers = {"Accept": "application/json"}
        data = None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if form is not None:
            data = parse.urlencode(form).encode("utf-8")
            headers["Content-Type"] = "application/x-www-form-urlencoded"

        req = request.Request(url, data=data, method=method, headers=headers)
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:
                body = resp.read().decode("utf-8")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="ignore")
            if exc.code == 401:
                raise UpstreamUnauthorized()
            logger.warning("cloudbeds %s %s returned %s: %s", method, url.split("?")[0], exc.code, detail[:300])
            raise UpstreamError(
                f"Cloudbeds request failed with status {exc.code}",
                http_status=exc.code,
                not_found=exc.code == 404,
            )
        except (error.URLError, socket.timeout, TimeoutError) as exc:
            logger.warning("cloudbeds %s %s transport failure: %s", method, url.split("?")[0], exc)
            raise UpstreamError("Cloudbeds request failed")

        try:
            return json.loads(body)
        except ValueError:
            raise UpstreamError("Cloudbeds returned a malformed response")

    def get_reservation(self, token: str, reservation_id: str) -> dict:
        payload = self._request(
            "GET",
            f"{self.api_base}/getReservation",
            token=token,
            params={"propertyID": self.property_id, "reservationID": reservation_id},
        )
        if not isinstance(payload, dict) or not payload.get("success") or not isinstance(payload.get("data"), dict):
            message = payload.get("message") if isinstance(payload, dict) else None
            raise UpstreamError(message or "Reservation not found", not_found=True)
        return payload["data"]

    def list_reservations(self, token: str) -> list[dict]:
        rows: list[dict] = []
        for page in range(1, MAX_RESERVATION_PAGES + 1):
            payload = self._request(
                "GET",
                f"{self.api_base}/getReservations",
                token=token,
                params={
                    "propertyID": self.property_id,
                    "pageNumber": page,
                    "pageSize": RESERVATION_PAGE_SIZE,
                },
            )
            if not isinstance(payload, dict) or not payload.get("success"):
                raise UpstreamError("Cloudbeds reservation listing failed")
            batch = [row for row in payload.get("data") or [] if isinstance(row, dict)]
            rows.extend(batch)
            if len(batch) < RESERVATION_PAGE_SIZE:
                break
        return rows

    def get_hotels(self, token: str) -> list[dict]:
        payload = self._request("GET", f"{self.api_base}/getHotels", token=token)
        if not isinstance(payload, dict) or not payload.get("success"):
            raise UpstreamError("Cloudbeds hotel listing failed")
        return [row for row in payload.get("data") or [] if isinstance(row, dict)]

    def get_access_keys(self, token: str, reservation_id: str) -> list[dict]:
        payload = self._request("GET", self.keys_url, token=token, params={"reservationId": reservation_id})
        if not isinstance(payload, dict):
            raise UpstreamError("Cloudbeds returned a malformed key listing")
        keys = payload.get("data") or payload.get("keys") or []
        if not isinstance(keys, list):
            raise UpstreamError("Cloudbeds returned a malformed key listing")
        return [row for row in keys if isinstance(row, dict)]

    def _token_grant(self, form: dict[str, str]) -> dict:
        payload = self._request(
            "POST",
            self.token_url,
            form={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
                **form,
            },
        )
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise UpstreamError("Token response did not include an access token")
        return payload

    def exchange_code(self, code: str) -> dict:
        return self._token_grant({"grant_type": "authorization_code", "code": code})

    def refresh_token(self, refresh_token: str) -> dict:
        return self._token_grant({"grant_type": "refresh_token", "refresh_token": refresh_token})

    def authorize_url(self, state: str) -> str:
        query = parse.urlencode(
            {
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "response_type": "code",
                "scope": self.scope,
                "state": state,
            }
        )
        return f"{self.authorize_url_base}?{query}"
