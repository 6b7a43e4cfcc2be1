import logging

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.core.exceptions import InvalidImage, ProviderError, UnconfiguredError
from app.services.face_policy import FaceDetection

logger = logging.getLogger(__name__)


class RekognitionFaceAnalyzer:
    def __init__(self, region: str, connect_timeout: int = 5, read_timeout: int = 20):
        self.region = region
        self._config = Config(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={"max_attempts": 2},
        )
        self._client = None

    @property
    def client(self):
        if self._client is None:
            if not self.region:
                raise UnconfiguredError("Server misconfigured: missing AWS_REGION")
            self._client = boto3.client("rekognition", region_name=self.region, config=self._config)
        return self._client

    def detect_face(self, image: bytes) -> FaceDetection:
        try:
            result = self.client.detect_faces(Image={"Bytes": image}, Attributes=["ALL"])
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("InvalidImageFormatException", "ImageTooLargeException"):
                raise InvalidImage("Selfie image could not be processed") from exc
            logger.error("rekognition detect_faces failed: %s", exc)
            raise ProviderError("Face analysis failed") from exc
        except BotoCoreError as exc:
            logger.error("rekognition detect_faces transport failure: %s", exc)
            raise ProviderError("Face analysis failed") from exc

        faces = result.get("FaceDetails") or []
        if not faces:
            return FaceDetection(eyes_open=False, confidence=0)
        face = faces[0]
        return FaceDetection(
            eyes_open=bool((face.get("EyesOpen") or {}).get("Value")),
            confidence=float(face.get("Confidence") or 0),
        )

    def compare_faces(self, source: bytes, target: bytes, similarity_floor: float) -> float | None:
        try:
            result = self.client.compare_faces(
                SourceImage={"Bytes": source},
                TargetImage={"Bytes": target},
                SimilarityThreshold=similarity_floor,
            )
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code == "InvalidParameterException":
                # Raised when either image has no detectable face.
                logger.info("rekognition found no comparable face: %s", exc)
                return None
            if code in ("InvalidImageFormatException", "ImageTooLargeException"):
                raise InvalidImage("Image could not be processed") from exc
            logger.error("rekognition compare_faces failed: %s", exc)
            raise ProviderError("Face comparison failed") from exc
        except BotoCoreError as exc:
            logger.error("rekognition compare_faces transport failure: %s", exc)
            raise ProviderError("Face comparison failed") from exc

        matches = result.get("FaceMatches") or []
        if not matches:
            return None
        return max(float(match.get("Similarity") or 0) for match in matches)
