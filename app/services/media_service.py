import base64
import binascii
import re

from app.core.exceptions import InvalidImage

DOCUMENT = "document"
SELFIE = "selfie"

DATA_URL_PREFIX = re.compile(r"^data:image/[\w.+-]+;base64,")


def normalize_base64(value) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    if value.startswith("data:image/"):
        value = DATA_URL_PREFIX.sub("", value, count=1)
    return value or None


def decode_image(value, min_bytes: int, label: str = "image") -> bytes:
    encoded = normalize_base64(value)
    if not encoded:
        raise InvalidImage(f"Invalid {label} format")
    try:
        data = base64.b64decode(encoded, validate=False)
    except (binascii.Error, ValueError):
        raise InvalidImage(f"Invalid {label} format")
    if len(data) < min_bytes:
        raise InvalidImage("Image too small")
    return data


def image_key(prefix: str, session_token: str, kind: str, guest_index: int) -> str:
    return f"{prefix}{session_token}/{kind}_{guest_index}.jpg"


def target_guest_index(verified_guest_count: int, expected_guest_count: int) -> int:
    upper = max(int(expected_guest_count or 0), 1)
    return min(max(int(verified_guest_count or 0) + 1, 1), upper)
