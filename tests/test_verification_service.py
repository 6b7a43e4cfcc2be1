"""
Unit tests for the verification session state machine
"""
from datetime import datetime, timezone

import pytest

from app.core.exceptions import (
    ConflictError,
    DocumentMissing,
    InvalidImage,
    InvalidInputError,
    ProviderError,
    ReservationNotFound,
    SessionNotFound,
)
from app.db.models import FlowType, SessionStatus, SlotStatus
from app.services.face_policy import FaceDetection
from tests.conftest import encode_image, seed_credential


def assert_invariants(row):
    assert 0 <= row.verified_guest_count <= row.expected_guest_count
    assert row.is_verified == (row.verified_guest_count >= row.expected_guest_count)
    assert row.requires_additional_guest == (row.verified_guest_count < row.expected_guest_count)


class TestVerificationService:
    @pytest.fixture(autouse=True)
    def setup_service(self, services, db, blob_store, face_analyzer, cloudbeds, session_factory, reservation_record):
        self.service = services.verification
        self.db = db
        self.blobs = blob_store
        self.faces = face_analyzer
        self.cloudbeds = cloudbeds
        self.session_factory = session_factory
        seed_credential(session_factory)
        cloudbeds.reservations["R-1001"] = reservation_record
        cloudbeds.listing = [reservation_record]
        cloudbeds.keys["R-1001"] = [{"pin": "4821"}]

    def _guest_session(self, expected=None):
        return self.service.start(self.db, "guest", expected)

    def test_start_guest_defaults(self):
        row = self._guest_session()

        assert row.flow_type == FlowType.guest
        assert row.status == SessionStatus.started.value
        assert row.current_step == "consent"
        assert row.expected_guest_count == 1
        assert row.verified_guest_count == 0
        assert row.requires_additional_guest is True
        assert row.is_verified is False
        assert [slot.guest_index for slot in row.slots] == [1]
        assert len(row.session_token) >= 12
        assert_invariants(row)

    def test_start_visitor_is_verified_immediately(self):
        row = self.service.start(self.db, "Visitor")

        assert row.flow_type == FlowType.visitor
        assert row.expected_guest_count == 0
        assert row.is_verified is True
        assert row.requires_additional_guest is False
        assert_invariants(row)

    def test_unknown_flow_type_is_guest(self):
        assert self.service.start(self.db, "spaceship").flow_type == FlowType.guest

    def test_expected_count_is_clamped(self):
        assert self._guest_session(0).expected_guest_count == 1
        assert self._guest_session(50).expected_guest_count == 10
        row = self._guest_session(3)
        assert row.expected_guest_count == 3
        assert [slot.guest_index for slot in row.slots] == [1, 2, 3]

    def test_tokens_are_unique(self):
        tokens = {self._guest_session().session_token for _ in range(20)}
        assert len(tokens) == 20

    def test_unknown_token_is_not_found(self):
        with pytest.raises(SessionNotFound):
            self.service.get_session(self.db, "nope")
        with pytest.raises(SessionNotFound):
            self.service.log_consent(self.db, "nope", True)

    def test_log_consent_is_idempotent(self):
        token = self._guest_session().session_token
        stamp = datetime(2026, 10, 17, 9, 30, tzinfo=timezone.utc)

        self.service.log_consent(self.db, token, True, stamp, "en-GB")
        row = self.service.log_consent(self.db, token, True, stamp, "en-GB")

        assert row.consent_given is True
        assert row.consent_timestamp == datetime(2026, 10, 17, 9, 30)
        assert row.consent_locale == "en-GB"
        assert row.status == SessionStatus.consent_logged.value
        assert row.current_step == "guest_details"

    def test_update_guest_resolves_reservation(self):
        token = self._guest_session().session_token

        row, details = self.service.update_guest(self.db, token, " Ada Lovelace ", "BK-77")

        assert details.reservation_id == "R-1001"
        assert row.guest_name == "Ada Lovelace"
        assert row.room_number == "BK-77"
        assert row.physical_room == "Room 204"
        assert row.room_access_code == "4821"
        assert row.upstream_reservation_id == "R-1001"
        assert row.status == SessionStatus.guest_verified.value
        assert row.current_step == "document"

    def test_update_guest_failure_leaves_session_untouched(self):
        created = self._guest_session()
        token, version = created.session_token, created.version

        with pytest.raises(ReservationNotFound):
            self.service.update_guest(self.db, token, "Someone", "UNKNOWN")

        row = self.service.get_session(self.db, token)
        assert row.guest_name is None
        assert row.room_number is None
        assert row.status == SessionStatus.started.value
        assert row.version == version

    def test_visitor_intake(self):
        token = self.service.start(self.db, "visitor").session_token

        row = self.service.visitor_intake(self.db, token, "Alan", "Turing", "+44 20 0000", "Meeting")

        assert (row.visitor_first_name, row.visitor_last_name) == ("Alan", "Turing")
        assert row.visitor_phone == "+44 20 0000"
        assert row.visitor_reason == "Meeting"
        assert row.status == SessionStatus.visitor_info_saved.value

    def test_upload_document_stores_slot_image(self):
        token = self._guest_session().session_token

        row, slot = self.service.upload_document(self.db, token, encode_image(data_url=True))

        key = f"demo/{token}/document_1.jpg"
        assert key in self.blobs.objects
        assert slot.guest_index == 1
        assert slot.status == SlotStatus.document_uploaded.value
        assert row.document_url == f"s3://test-bucket/{key}"
        assert row.status == SessionStatus.document_uploaded.value
        assert row.current_step == "selfie"

    def test_small_document_is_rejected_without_write(self):
        token = self._guest_session().session_token

        with pytest.raises(InvalidImage):
            self.service.upload_document(self.db, token, encode_image(500))

        assert self.blobs.objects == {}
        assert self.service.get_session(self.db, token).document_url is None

    def test_reupload_overwrites_slot(self):
        token = self._guest_session().session_token
        self.service.upload_document(self.db, token, encode_image(2048))
        self.service.upload_document(self.db, token, encode_image(4096))

        assert len(self.blobs.objects[f"demo/{token}/document_1.jpg"]) == 4096

    def test_verify_without_document_fails(self):
        created = self._guest_session()
        token, version = created.session_token, created.version

        with pytest.raises(DocumentMissing):
            self.service.verify_face(self.db, token, encode_image())

        row = self.service.get_session(self.db, token)
        assert row.version == version
        assert row.verification_score is None
        assert row.selfie_url is None
        assert self.faces.calls == []

    def test_small_selfie_is_rejected(self):
        token = self._guest_session().session_token
        self.service.upload_document(self.db, token, encode_image())

        with pytest.raises(InvalidImage):
            self.service.verify_face(self.db, token, encode_image(200))

    def test_guest_scenario_reaches_verified(self):
        token = self._guest_session().session_token
        self.service.update_guest(self.db, token, "Ada Lovelace", "R-1001")
        self.service.upload_document(self.db, token, encode_image())

        row, guest_index, decision = self.service.verify_face(self.db, token, encode_image())

        assert guest_index == 1
        assert decision.guest_verified is True
        assert row.verified_guest_count == 1
        assert row.is_verified is True
        assert row.requires_additional_guest is False
        assert row.status == SessionStatus.verified.value
        assert row.current_step == "complete"
        assert row.liveness_score == pytest.approx(0.99)
        assert row.face_match_score == pytest.approx(0.96)
        assert row.verification_score == pytest.approx(0.4 + 0.99 * 0.3 + 0.96 * 0.3)
        assert row.selfie_url == f"s3://test-bucket/demo/{token}/selfie_1.jpg"
        assert row.slot(1).status == SlotStatus.verified.value
        assert row.physical_room == "Room 204"
        assert row.room_access_code == "4821"
        assert_invariants(row)

    def test_weak_match_is_rejected_but_scored(self):
        token = self._guest_session().session_token
        self.service.upload_document(self.db, token, encode_image())
        self.faces.similarity = 81.0
        self.faces.detection = FaceDetection(eyes_open=True, confidence=95.0)

        # 0.81 passes the comparator floor and the 0.65 bar
        row, _, decision = self.service.verify_face(self.db, token, encode_image())
        assert decision.guest_verified is True

        token = self._guest_session().session_token
        self.service.upload_document(self.db, token, encode_image())
        self.faces.similarity = 50.0

        row, _, decision = self.service.verify_face(self.db, token, encode_image())

        assert decision.guest_verified is False
        assert row.verified_guest_count == 0
        assert row.is_verified is False
        assert row.verification_score == pytest.approx(0.4 + 0.95 * 0.3)
        assert row.slot(1).status == SlotStatus.rejected.value
        assert row.current_step == "selfie"
        assert_invariants(row)

    def test_closed_eyes_are_rejected(self):
        token = self._guest_session().session_token
        self.service.upload_document(self.db, token, encode_image())
        self.faces.detection = FaceDetection(eyes_open=False, confidence=99.0)

        row, _, decision = self.service.verify_face(self.db, token, encode_image())

        assert decision.is_live is False
        assert row.verified_guest_count == 0

    def test_retry_after_rejection_reuses_slot(self):
        token = self._guest_session().session_token
        self.service.upload_document(self.db, token, encode_image())
        self.faces.similarity = None
        self.service.verify_face(self.db, token, encode_image())

        self.faces.similarity = 97.0
        row, guest_index, decision = self.service.verify_face(self.db, token, encode_image())

        assert guest_index == 1
        assert decision.guest_verified is True
        assert row.is_verified is True

    def test_multi_guest_counts_and_slots(self):
        token = self._guest_session(2).session_token

        self.service.upload_document(self.db, token, encode_image())
        row, guest_index, _ = self.service.verify_face(self.db, token, encode_image())
        assert guest_index == 1
        assert row.verified_guest_count == 1
        assert row.requires_additional_guest is True
        assert row.is_verified is False
        assert row.current_step == "document"
        assert_invariants(row)

        with pytest.raises(DocumentMissing):
            self.service.verify_face(self.db, token, encode_image())

        _, slot = self.service.upload_document(self.db, token, encode_image())
        assert slot.guest_index == 2
        assert f"demo/{token}/document_2.jpg" in self.blobs.objects

        row, guest_index, _ = self.service.verify_face(self.db, token, encode_image())
        assert guest_index == 2
        assert row.verified_guest_count == 2
        assert row.is_verified is True
        assert_invariants(row)

        with pytest.raises(InvalidInputError):
            self.service.verify_face(self.db, token, encode_image())
        row = self.service.get_session(self.db, token)
        assert row.verified_guest_count == 2
        assert [slot.status for slot in row.slots] == [SlotStatus.verified.value] * 2
        assert_invariants(row)

    def test_visitor_count_never_exceeds_expected(self):
        token = self.service.start(self.db, "visitor").session_token
        self.service.upload_document(self.db, token, encode_image())

        row, _, decision = self.service.verify_face(self.db, token, encode_image())

        assert decision.guest_verified is True
        assert row.verified_guest_count == 0
        assert row.is_verified is True
        assert row.status == SessionStatus.verified.value
        assert_invariants(row)

    def test_reservation_failure_after_match_is_non_fatal(self):
        token = self._guest_session().session_token
        self.service.update_guest(self.db, token, "Ada Lovelace", "R-1001")
        self.service.upload_document(self.db, token, encode_image())
        self.cloudbeds.reservations.clear()
        self.cloudbeds.listing = []

        row, _, decision = self.service.verify_face(self.db, token, encode_image())

        assert decision.guest_verified is True
        assert row.is_verified is True
        # values from the earlier lookup are never cleared
        assert row.physical_room == "Room 204"
        assert row.upstream_reservation_id == "R-1001"

    def test_provider_failure_leaves_session_untouched(self):
        token = self._guest_session().session_token
        self.service.upload_document(self.db, token, encode_image())
        version = self.service.get_session(self.db, token).version
        self.faces.error = ProviderError("Face analysis failed")

        with pytest.raises(ProviderError):
            self.service.verify_face(self.db, token, encode_image())

        row = self.service.get_session(self.db, token)
        assert row.version == version
        assert row.verified_guest_count == 0
        assert row.verification_score is None
        assert f"demo/{token}/selfie_1.jpg" not in self.blobs.objects

    def test_verified_slot_is_never_overwritten(self):
        token = self._guest_session().session_token
        self.service.upload_document(self.db, token, encode_image())
        row, _, _ = self.service.verify_face(self.db, token, encode_image())
        scores = (row.slot(1).verification_score, row.slot(1).selfie_url, row.slot(1).document_url)
        version = row.version
        self.faces.detection = FaceDetection(eyes_open=False, confidence=99.0)

        with pytest.raises(InvalidInputError):
            self.service.verify_face(self.db, token, encode_image())
        with pytest.raises(InvalidInputError):
            self.service.upload_document(self.db, token, encode_image(4096))

        row = self.service.get_session(self.db, token)
        assert row.version == version
        assert row.verified_guest_count == 1
        assert row.status == SessionStatus.verified.value
        assert row.slot(1).status == SlotStatus.verified.value
        assert (row.slot(1).verification_score, row.slot(1).selfie_url, row.slot(1).document_url) == scores
        assert len(self.blobs.objects[f"demo/{token}/document_1.jpg"]) == 2048

        self.service.add_guest(self.db, token)
        _, slot = self.service.upload_document(self.db, token, encode_image())
        assert slot.guest_index == 2

    def test_verified_visitor_cannot_be_overwritten(self):
        token = self.service.start(self.db, "visitor").session_token
        self.service.upload_document(self.db, token, encode_image())
        self.service.verify_face(self.db, token, encode_image())
        self.faces.similarity = None

        with pytest.raises(InvalidInputError):
            self.service.verify_face(self.db, token, encode_image())
        assert self.service.get_session(self.db, token).slot(1).status == SlotStatus.verified.value

    def test_add_guest_reopens_verified_session(self):
        token = self._guest_session().session_token
        self.service.upload_document(self.db, token, encode_image())
        self.service.verify_face(self.db, token, encode_image())

        row = self.service.add_guest(self.db, token)

        assert row.expected_guest_count == 2
        assert row.verified_guest_count == 1
        assert row.is_verified is False
        assert row.requires_additional_guest is True
        assert row.status == SessionStatus.guest_verified.value
        assert [slot.guest_index for slot in row.slots] == [1, 2]
        assert_invariants(row)

    def test_add_guest_respects_limit(self):
        token = self._guest_session(10).session_token

        with pytest.raises(InvalidInputError):
            self.service.add_guest(self.db, token)

    def test_concurrent_write_is_rejected(self):
        token = self._guest_session().session_token
        other = self.session_factory()
        try:
            stale = self.service.get_session(other, token)
            self.service.log_consent(self.db, token, True)

            stale.consent_locale = "fr"
            with pytest.raises(ConflictError):
                self.service._save(other, stale)
        finally:
            other.close()

        row = self.service.get_session(self.db, token)
        assert row.consent_locale is None
        assert row.consent_given is True
