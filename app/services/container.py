import logging

from sqlalchemy.orm import sessionmaker

from app.core.config import Settings
from app.core.exceptions import UnconfiguredError
from app.services.cloudbeds_client import CloudbedsClient
from app.services.face_service import RekognitionFaceAnalyzer
from app.services.reservation_service import ReservationResolver
from app.services.storage_service import S3BlobStore
from app.services.token_vault import TokenVault
from app.services.verification_service import VerificationService

logger = logging.getLogger(__name__)


class ServiceContainer:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker,
        blob_store,
        face_analyzer,
        cloudbeds,
    ):
        self.settings = settings
        self.blob_store = blob_store
        self.face_analyzer = face_analyzer
        self.cloudbeds = cloudbeds
        self.token_vault = TokenVault(
            session_factory,
            cloudbeds,
            refresh_buffer_seconds=settings.TOKEN_REFRESH_BUFFER_SECONDS,
        )
        self.reservations = ReservationResolver(cloudbeds, self.token_vault)
        self.verification = VerificationService(
            blob_store,
            face_analyzer,
            self.reservations,
            key_prefix=settings.S3_KEY_PREFIX,
            min_image_bytes=settings.MIN_IMAGE_BYTES,
            max_guests=settings.MAX_GUESTS,
        )

    @classmethod
    def from_settings(cls, settings: Settings, session_factory: sessionmaker) -> "ServiceContainer":
        if not settings.storage_configured:
            logger.warning("AWS_REGION / S3_BUCKET_NAME not set, image and face operations will fail")
        if not settings.cloudbeds_configured:
            logger.warning("Cloudbeds OAuth settings incomplete, reservation lookups will fail")
        return cls(
            settings=settings,
            session_factory=session_factory,
            blob_store=S3BlobStore(
                settings.S3_BUCKET_NAME,
                settings.AWS_REGION,
                connect_timeout=settings.AWS_CONNECT_TIMEOUT_SECONDS,
                read_timeout=settings.AWS_READ_TIMEOUT_SECONDS,
            ),
            face_analyzer=RekognitionFaceAnalyzer(
                settings.AWS_REGION,
                connect_timeout=settings.AWS_CONNECT_TIMEOUT_SECONDS,
                read_timeout=settings.AWS_READ_TIMEOUT_SECONDS,
            ),
            cloudbeds=CloudbedsClient(
                client_id=settings.CLOUDBEDS_CLIENT_ID,
                client_secret=settings.CLOUDBEDS_CLIENT_SECRET,
                redirect_uri=settings.CLOUDBEDS_REDIRECT_URI,
                property_id=settings.CLOUDBEDS_PROPERTY_ID,
                api_base=settings.CLOUDBEDS_API_BASE,
                keys_url=settings.CLOUDBEDS_KEYS_URL,
                token_url=settings.CLOUDBEDS_TOKEN_URL,
                authorize_url=settings.CLOUDBEDS_AUTHORIZE_URL,
                scope=settings.CLOUDBEDS_SCOPE,
                timeout=settings.UPSTREAM_TIMEOUT_SECONDS,
            ),
        )

    def ensure_cloudbeds_configured(self) -> None:
        if not self.settings.cloudbeds_configured:
            raise UnconfiguredError(
                "Missing CLOUDBEDS_CLIENT_ID / CLOUDBEDS_CLIENT_SECRET / CLOUDBEDS_REDIRECT_URI / CLOUDBEDS_PROPERTY_ID"
            )

    def ensure_storage_configured(self) -> None:
        if not self.settings.storage_configured:
            raise UnconfiguredError("Server misconfigured: missing AWS env vars")

    def close(self) -> None:
        for client in (getattr(self.blob_store, "_client", None), getattr(self.face_analyzer, "_client", None)):
            if client is not None:
                client.close()
