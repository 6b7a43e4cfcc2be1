import json
import logging
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from app.core.exceptions import CredentialUnavailable, RefreshFailed, UpstreamError
from app.db.models import CREDENTIAL_ROW_ID, UpstreamCredential

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_BUFFER_SECONDS = 300


def credential_expires_at(credential: UpstreamCredential) -> datetime | None:
    if credential.expires_in is None or credential.updated_at is None:
        return None
    return credential.updated_at + timedelta(seconds=int(credential.expires_in))


class TokenVault:
    """Owns the singleton Cloudbeds OAuth credential.

    Reads and writes go through the vault's own sessions so a refresh never
    commits a caller's pending work. Refreshes are serialized by a lock held on
    the instance; the container keeps one vault per process.

    The lock does not span processes. Two workers refreshing at once can burn
    each other's refresh token, so the service runs a single worker
    (``app.main.run``).
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        cloudbeds,
        refresh_buffer_seconds: int = DEFAULT_REFRESH_BUFFER_SECONDS,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory
        self._cloudbeds = cloudbeds
        self._buffer = timedelta(seconds=refresh_buffer_seconds)
        self._clock = clock
        self._lock = Lock()

    def _load(self, db: Session) -> UpstreamCredential:
        credential = db.get(UpstreamCredential, CREDENTIAL_ROW_ID)
        if not credential:
            raise CredentialUnavailable()
        return credential

    def needs_refresh(self, credential: UpstreamCredential) -> bool:
        expires_at = credential_expires_at(credential)
        if expires_at is None:
            return True
        return self._clock() >= expires_at - self._buffer

    def get_credential(self) -> UpstreamCredential | None:
        with self._session_factory() as db:
            credential = db.get(UpstreamCredential, CREDENTIAL_ROW_ID)
            if credential:
                db.expunge(credential)
            return credential

    def get_valid_access_token(self, force_refresh: bool = False, stale_token: str | None = None) -> str:
        with self._session_factory() as db:
            credential = self._load(db)
            if not force_refresh and not self.needs_refresh(credential):
                return credential.access_token

        with self._lock:
            with self._session_factory() as db:
                credential = self._load(db)
                if stale_token and credential.access_token != stale_token:
                    return credential.access_token
                if not force_refresh and not self.needs_refresh(credential):
                    return credential.access_token
                self._refresh_locked(db, credential)
                return credential.access_token

    def refresh(self) -> UpstreamCredential:
        with self._lock:
            with self._session_factory() as db:
                credential = self._load(db)
                self._refresh_locked(db, credential)
                db.expunge(credential)
                return credential

    def _refresh_locked(self, db: Session, credential: UpstreamCredential) -> None:
        if not credential.refresh_token:
            raise RefreshFailed("Stored Cloudbeds credential has no refresh token")

        logger.info("refreshing cloudbeds token, last updated at %s", credential.updated_at)
        try:
            payload = self._cloudbeds.refresh_token(credential.refresh_token)
        except UpstreamError as exc:
            logger.error("cloudbeds token refresh failed: %s", exc.message)
            raise RefreshFailed() from exc

        self._apply(credential, payload, keep_scope=credential.scope)
        try:
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(credential)
        logger.info("cloudbeds token refreshed, expires in %ss", credential.expires_in)

    def store_authorization(self, code: str) -> UpstreamCredential:
        payload = self._cloudbeds.exchange_code(code)
        with self._lock:
            with self._session_factory() as db:
                credential = db.get(UpstreamCredential, CREDENTIAL_ROW_ID)
                if not credential:
                    credential = UpstreamCredential(id=CREDENTIAL_ROW_ID)
                    db.add(credential)
                self._apply(credential, payload)
                db.commit()
                db.refresh(credential)
                db.expunge(credential)
        logger.info("cloudbeds authorization stored")
        return credential

    def _apply(self, credential: UpstreamCredential, payload: dict, keep_scope: str | None = None) -> None:
        credential.access_token = payload["access_token"]
        credential.refresh_token = payload.get("refresh_token") or credential.refresh_token
        credential.token_type = payload.get("token_type") or "Bearer"
        expires_in = payload.get("expires_in")
        credential.expires_in = int(expires_in) if expires_in is not None else None
        credential.scope = payload.get("scope") or keep_scope
        credential.raw_json = json.dumps(payload)
        credential.updated_at = self._clock()
