import logging

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.core.exceptions import BlobNotFound, ProviderError, UnconfiguredError

logger = logging.getLogger(__name__)

MISSING_OBJECT_CODES = {"NoSuchKey", "404", "NotFound"}


class S3BlobStore:
    def __init__(self, bucket: str, region: str, connect_timeout: int = 5, read_timeout: int = 20):
        self.bucket = bucket
        self.region = region
        self._config = Config(connect_timeout=connect_timeout, read_timeout=read_timeout)
        self._client = None

    @property
    def client(self):
        if self._client is None:
            if not self.bucket or not self.region:
                raise UnconfiguredError("Server misconfigured: missing AWS env vars")
            self._client = boto3.client("s3", region_name=self.region, config=self._config)
        return self._client

    def url_for(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"

    def put(self, key: str, data: bytes, content_type: str = "image/jpeg") -> str:
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as exc:
            logger.error("s3 put %s failed: %s", key, exc)
            raise ProviderError("Failed to store image") from exc
        return self.url_for(key)

    def get(self, key: str) -> bytes:
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=key)
            return obj["Body"].read()
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in MISSING_OBJECT_CODES:
                raise BlobNotFound(key) from exc
            logger.error("s3 get %s failed: %s", key, exc)
            raise ProviderError("Failed to read image") from exc
        except BotoCoreError as exc:
            logger.error("s3 get %s failed: %s", key, exc)
            raise ProviderError("Failed to read image") from exc
