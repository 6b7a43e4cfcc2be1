from dataclasses import dataclass

# Matches below this similarity (0-100) are not returned by the comparator.
SIMILARITY_FLOOR = 80
MATCH_THRESHOLD = 0.65

LIVE_BONUS = 0.4
LIVENESS_WEIGHT = 0.3
SIMILARITY_WEIGHT = 0.3


@dataclass(frozen=True)
class FaceDetection:
    eyes_open: bool
    confidence: float


@dataclass(frozen=True)
class FaceDecision:
    is_live: bool
    liveness_score: float
    similarity: float
    verification_score: float
    guest_verified: bool


def evaluate_face(detection: FaceDetection | None, best_similarity: float | None) -> FaceDecision:
    """Combine the liveness and face-match signals into a decision.

    The composite score is informational; acceptance needs a live selfie and a
    similarity of at least ``MATCH_THRESHOLD``.
    """
    is_live = bool(detection and detection.eyes_open)
    liveness_score = (detection.confidence if detection else 0) / 100
    similarity = (best_similarity or 0) / 100

    verification_score = (LIVE_BONUS if is_live else 0) + liveness_score * LIVENESS_WEIGHT + similarity * SIMILARITY_WEIGHT
    return FaceDecision(
        is_live=is_live,
        liveness_score=liveness_score,
        similarity=similarity,
        verification_score=verification_score,
        guest_verified=is_live and similarity >= MATCH_THRESHOLD,
    )
