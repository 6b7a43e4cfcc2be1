import base64
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from app.api.deps import get_services
from app.core.config import Settings
from app.core.exceptions import BlobNotFound, UpstreamError, UpstreamUnauthorized
from app.db import models  # noqa: F401
from app.db.base import Base
from app.db.models import CREDENTIAL_ROW_ID, UpstreamCredential
from app.db.session import build_engine, build_session_factory, get_db
from app.main import app
from app.services.container import ServiceContainer
from app.services.face_policy import FaceDetection


def make_settings(**overrides) -> Settings:
    values = {
        "AWS_REGION": "us-east-1",
        "S3_BUCKET_NAME": "test-bucket",
        "S3_KEY_PREFIX": "demo/",
        "CLOUDBEDS_CLIENT_ID": "client-id",
        "CLOUDBEDS_CLIENT_SECRET": "client-secret",
        "CLOUDBEDS_REDIRECT_URI": "https://verify.example.com/api/cloudbeds/callback",
        "CLOUDBEDS_PROPERTY_ID": "prop-1",
        "OAUTH_STATE_SECRET": "test-state-secret",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def encode_image(size: int = 2048, data_url: bool = False) -> str:
    raw = b"\xff\xd8\xff\xe0" + bytes(range(256)) * (size // 256 + 1)
    encoded = base64.b64encode(raw[:size]).decode("ascii")
    return f"data:image/jpeg;base64,{encoded}" if data_url else encoded


class FakeBlobStore:
    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.put_error: Exception | None = None

    def put(self, key: str, data: bytes, content_type: str = "image/jpeg") -> str:
        if self.put_error:
            raise self.put_error
        self.objects[key] = data
        return f"s3://test-bucket/{key}"

    def get(self, key: str) -> bytes:
        if key not in self.objects:
            raise BlobNotFound(key)
        return self.objects[key]


class FakeFaceAnalyzer:
    def __init__(self):
        self.detection: FaceDetection | None = FaceDetection(eyes_open=True, confidence=99.0)
        self.similarity: float | None = 96.0
        self.error: Exception | None = None
        self.calls: list[str] = []

    def detect_face(self, image: bytes) -> FaceDetection:
        self.calls.append("detect_face")
        if self.error:
            raise self.error
        return self.detection or FaceDetection(eyes_open=False, confidence=0)

    def compare_faces(self, source: bytes, target: bytes, similarity_floor: float) -> float | None:
        self.calls.append("compare_faces")
        if self.error:
            raise self.error
        if self.similarity is None or self.similarity < similarity_floor:
            return None
        return self.similarity


class FakeCloudbeds:
    def __init__(self):
        self.reservations: dict[str, dict] = {}
        self.listing: list[dict] = []
        self.hotels: list[dict] = [{"propertyID": "prop-1", "propertyName": "Harbour Hotel"}]
        self.keys: dict[str, object] = {}
        self.unauthorized_tokens: set[str] = set()
        self.always_unauthorized = False
        self.list_error: Exception | None = None
        self.refresh_error: Exception | None = None
        self.refresh_payload: dict | None = None
        self.exchange_error: Exception | None = None
        self.calls: list[tuple] = []
        self.refresh_calls: list[str] = []
        self.exchange_calls: list[str] = []
        self._issued = 0

    def _check(self, token: str) -> None:
        if self.always_unauthorized or token in self.unauthorized_tokens:
            raise UpstreamUnauthorized()

    def get_reservation(self, token: str, reservation_id: str) -> dict:
        self.calls.append(("get_reservation", token, reservation_id))
        self._check(token)
        record = self.reservations.get(reservation_id)
        if record is None:
            raise UpstreamError("Reservation not found", not_found=True)
        return record

    def list_reservations(self, token: str) -> list[dict]:
        self.calls.append(("list_reservations", token))
        self._check(token)
        if self.list_error:
            raise self.list_error
        return list(self.listing)

    def get_hotels(self, token: str) -> list[dict]:
        self.calls.append(("get_hotels", token))
        self._check(token)
        return list(self.hotels)

    def get_access_keys(self, token: str, reservation_id: str) -> list[dict]:
        self.calls.append(("get_access_keys", token, reservation_id))
        self._check(token)
        value = self.keys.get(reservation_id, [])
        if isinstance(value, Exception):
            raise value
        return value

    def _issue(self) -> dict:
        self._issued += 1
        return {
            "access_token": f"refreshed-{self._issued}",
            "refresh_token": f"refresh-{self._issued}",
            "token_type": "Bearer",
            "expires_in": 3600,
        }

    def refresh_token(self, refresh_token: str) -> dict:
        self.refresh_calls.append(refresh_token)
        if self.refresh_error:
            raise self.refresh_error
        if self.refresh_payload is not None:
            return self.refresh_payload
        return self._issue()

    def exchange_code(self, code: str) -> dict:
        self.exchange_calls.append(code)
        if self.exchange_error:
            raise self.exchange_error
        return {**self._issue(), "scope": "read:reservation"}

    def authorize_url(self, state: str) -> str:
        return f"https://auth.example.com/oauth?response_type=code&state={state}"


def seed_credential(
    session_factory,
    access_token: str = "access-1",
    refresh_token: str | None = "refresh-1",
    expires_in: int | None = 3600,
    updated_at: datetime | None = None,
) -> None:
    with session_factory() as db:
        db.add(
            UpstreamCredential(
                id=CREDENTIAL_ROW_ID,
                access_token=access_token,
                refresh_token=refresh_token,
                token_type="Bearer",
                expires_in=expires_in,
                scope="read:reservation",
                updated_at=updated_at or datetime.utcnow(),
            )
        )
        db.commit()


def load_credential(session_factory) -> UpstreamCredential:
    with session_factory() as db:
        credential = db.get(UpstreamCredential, CREDENTIAL_ROW_ID)
        db.expunge(credential)
        return credential


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def face_analyzer():
    return FakeFaceAnalyzer()


@pytest.fixture
def cloudbeds():
    return FakeCloudbeds()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def services(settings, session_factory, blob_store, face_analyzer, cloudbeds):
    return ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        blob_store=blob_store,
        face_analyzer=face_analyzer,
        cloudbeds=cloudbeds,
    )


@pytest.fixture
def client(services, session_factory):
    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_services] = lambda: services
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def reservation_record():
    return {
        "reservationID": "R-1001",
        "thirdPartyIdentifier": "BK-77",
        "guestName": "Ada Lovelace",
        "status": "confirmed",
        "startDate": "2026-10-17",
        "endDate": "2026-10-20",
        "assigned": [{"roomName": "Room 204", "roomTypeName": "Double"}],
    }
