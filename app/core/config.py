from functools import lru_cache
from pathlib import Path
from typing import List
from urllib.parse import urlparse
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_FILE = Path(__file__).resolve().parents[2] / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=str(ENV_FILE), case_sensitive=False)

    APP_NAME: str = "RoomQuest ID"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    API_PREFIX: str = "/api"
    BACKEND_HOST: str = "0.0.0.0"
    BACKEND_PORT: int = 8000

    DATABASE_URL: str = "sqlite:///./roomquest.db"

    CORS_ORIGINS: str = (
        "http://localhost:3000,"
        "http://127.0.0.1:3000"
    )

    AWS_REGION: str = ""
    S3_BUCKET_NAME: str = ""
    S3_KEY_PREFIX: str = "demo/"
    AWS_CONNECT_TIMEOUT_SECONDS: int = 5
    AWS_READ_TIMEOUT_SECONDS: int = 20

    CLOUDBEDS_CLIENT_ID: str = ""
    CLOUDBEDS_CLIENT_SECRET: str = ""
    CLOUDBEDS_REDIRECT_URI: str = ""
    CLOUDBEDS_PROPERTY_ID: str = ""
    CLOUDBEDS_API_BASE: str = "https://hotels.cloudbeds.com/api/v1.2"
    CLOUDBEDS_KEYS_URL: str = "https://api.cloudbeds.com/v2/keys"
    CLOUDBEDS_TOKEN_URL: str = "https://api.cloudbeds.com/api/v1.3/access_token"
    CLOUDBEDS_AUTHORIZE_URL: str = "https://api.cloudbeds.com/api/v1.3/oauth"
    CLOUDBEDS_SCOPE: str = "read:reservation read:room"
    UPSTREAM_TIMEOUT_SECONDS: int = 20
    TOKEN_REFRESH_BUFFER_SECONDS: int = 300

    OAUTH_STATE_SECRET: str = "change-me"
    OAUTH_STATE_ALGORITHM: str = "HS256"
    OAUTH_STATE_EXPIRE_MINUTES: int = 10

    MIN_IMAGE_BYTES: int = 1000
    MAX_GUESTS: int = 10

    @property
    def cors_origins(self) -> List[str]:
        origins: list[str] = []
        for raw in self.CORS_ORIGINS.split(","):
            value = raw.strip()
            if not value:
                continue
            parsed = urlparse(value)
            if parsed.scheme and parsed.netloc:
                value = f"{parsed.scheme}://{parsed.netloc}"
            origins.append(value.rstrip("/"))
        return origins

    @property
    def storage_configured(self) -> bool:
        return bool(self.AWS_REGION.strip() and self.S3_BUCKET_NAME.strip())

    @property
    def cloudbeds_configured(self) -> bool:
        return bool(
            self.CLOUDBEDS_CLIENT_ID.strip()
            and self.CLOUDBEDS_CLIENT_SECRET.strip()
            and self.CLOUDBEDS_REDIRECT_URI.strip()
            and self.CLOUDBEDS_PROPERTY_ID.strip()
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
