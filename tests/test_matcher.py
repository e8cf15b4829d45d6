import numpy as np
import pytest

from clinic_checkin.exceptions import DimensionMismatchError
from clinic_checkin.matcher import NearestIdentityMatcher, match
from clinic_checkin.types import BiometricTemplate


def template(identity_id, values):
    return BiometricTemplate(identity_id=identity_id, embedding=np.asarray(values, dtype=np.float32))


def test_match_returns_nearest_identity_under_threshold():
    candidates = [template("P1", [0.0, 0.0]), template("P2", [1.0, 1.0])]
    assert match(np.array([0.1, 0.0]), candidates, threshold=0.6) == "P1"
    assert match(np.array([0.9, 1.0]), candidates, threshold=0.6) == "P2"


def test_threshold_is_strict():
    candidates = [template("P1", [0.0, 0.0])]
    # 3-4-5 triangle keeps the distance exact.
    assert match(np.array([3.0, 4.0]), candidates, threshold=5.0) is None
    assert match(np.array([3.0, 4.0]), candidates, threshold=5.0001) == "P1"
    assert match(np.array([0.5, 0.0]), candidates, threshold=0.5) is None


def test_empty_roster_matches_nothing():
    assert match(np.array([0.0, 0.0]), [], threshold=0.6) is None
    result = NearestIdentityMatcher([]).match(np.array([0.0]))
    assert result.identity_id is None
    assert result.distance == float("inf")


def test_tie_goes_to_first_enrolled():
    candidates = [template("first", [1.0, 0.0]), template("second", [-1.0, 0.0])]
    assert match(np.array([0.0, 0.0]), candidates, threshold=2.0) == "first"

    swapped = list(reversed(candidates))
    assert match(np.array([0.0, 0.0]), swapped, threshold=2.0) == "second"


def test_match_result_reports_distance():
    matcher = NearestIdentityMatcher([template("P1", [0.0, 0.0, 0.0])])
    result = matcher.match(np.array([0.0, 3.0, 4.0]), threshold=10.0)
    assert result.matched
    assert result.distance == pytest.approx(5.0)
    assert matcher.dimension == 3
    assert len(matcher) == 1


def test_query_dimension_must_match_registry():
    matcher = NearestIdentityMatcher([template("P1", [0.0, 0.0])])
    with pytest.raises(DimensionMismatchError):
        matcher.match(np.array([0.0, 0.0, 0.0]))


def test_mixed_template_dimensions_rejected():
    with pytest.raises(DimensionMismatchError):
        NearestIdentityMatcher([template("P1", [0.0, 0.0]), template("P2", [0.0, 0.0, 0.0])])
