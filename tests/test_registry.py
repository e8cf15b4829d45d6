import numpy as np
import pytest

from clinic_checkin.camera import StillImageSource
from clinic_checkin.enrollment import EnrollmentService, average_embedding
from clinic_checkin.exceptions import CheckInError, DimensionMismatchError
from clinic_checkin.registry import BiometricRegistry, random_short_code

from conftest import FakeExtractor, blank_frame, face


def test_random_short_code_alphabet():
    code = random_short_code()
    assert len(code) == 6
    assert all(ch in "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ" for ch in code)


def test_enroll_generates_code_and_stores_template(registry):
    profile = registry.enroll("P1", "Ada", embedding=np.arange(4, dtype=np.float32))

    assert len(profile.short_code) == 6
    assert registry.find_by_short_code(profile.short_code.lower()) == profile
    assert registry.get_profile("P1") == profile

    templates = registry.list_all_templates()
    assert [tpl.identity_id for tpl in templates] == ["P1"]
    np.testing.assert_array_equal(templates[0].embedding, np.arange(4, dtype=np.float32))


def test_enroll_without_face_has_no_template(registry):
    registry.enroll("P1", "Ada", short_code="ada001")

    assert registry.find_by_short_code("ADA001").identity_id == "P1"
    assert registry.list_all_templates() == []


def test_re_enroll_keeps_short_code(registry):
    first = registry.enroll("P1", "Ada", embedding=np.zeros(4))
    second = registry.enroll("P1", "Ada L.", embedding=np.ones(4))

    assert second.short_code == first.short_code
    assert second.display_name == "Ada L."
    np.testing.assert_array_equal(registry.list_all_templates()[0].embedding, np.ones(4, dtype=np.float32))


def test_dimension_mismatch_is_rejected(registry):
    registry.enroll("P1", "Ada", embedding=np.zeros(4))
    with pytest.raises(DimensionMismatchError):
        registry.enroll("P2", "Ben", embedding=np.zeros(5))


def test_short_code_collision_retries(db):
    codes = iter(["AAAAAA", "AAAAAA", "BBBBBB"])
    registry = BiometricRegistry(db, code_factory=lambda: next(codes))

    assert registry.enroll("P1", "Ada").short_code == "AAAAAA"
    assert registry.enroll("P2", "Ben").short_code == "BBBBBB"


def test_duplicate_explicit_short_code(registry):
    registry.enroll("P1", "Ada", short_code="SAME01")
    with pytest.raises(CheckInError):
        registry.enroll("P2", "Ben", short_code="SAME01")


def test_list_and_delete(registry):
    registry.enroll("P1", "Ada")
    registry.enroll("P2", "Ben")

    assert {profile.identity_id for profile in registry.list_profiles()} == {"P1", "P2"}
    assert registry.delete("P1") is True
    assert registry.delete("P1") is False
    assert registry.get_profile("P1") is None


def test_blank_names_rejected(registry):
    with pytest.raises(CheckInError):
        registry.enroll("  ", "Ada")
    with pytest.raises(CheckInError):
        registry.enroll("P1", " ")


def test_average_embedding_is_unit_length():
    vector = average_embedding([np.array([3.0, 0.0]), np.array([0.0, 4.0])])
    assert np.linalg.norm(vector) == pytest.approx(1.0)
    with pytest.raises(CheckInError):
        average_embedding([np.zeros(2)])


def test_enrollment_service_collects_single_face_samples(registry):
    service = EnrollmentService(registry, FakeExtractor([face([1.0, 0.0, 0.0])]))
    statuses = []

    profile = service.enroll_from_source(
        "P1",
        "Ada",
        StillImageSource(blank_frame()),
        target_samples=3,
        short_code="ADA001",
        on_status=lambda message, count: statuses.append(count),
    )

    assert profile.short_code == "ADA001"
    assert statuses[-1] == 3
    np.testing.assert_allclose(registry.list_all_templates()[0].embedding, [1.0, 0.0, 0.0])


def test_enrollment_service_refuses_crowded_frames(registry):
    crowded = FakeExtractor([face([1.0, 0.0]), face([0.0, 1.0], x=200)])
    service = EnrollmentService(registry, crowded)

    with pytest.raises(CheckInError):
        service.capture_samples(StillImageSource(blank_frame()), target_samples=2, max_frames=20)
    assert registry.list_profiles() == []
