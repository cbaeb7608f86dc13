import math

import numpy as np
import pytest

from attendance_engine.descriptor_store import DescriptorStore
from attendance_engine.exceptions import DimensionMismatch
from attendance_engine.matcher import FaceMatcher

from .conftest import identity, vec


def test_probe_close_to_alice_matches_alice(store, matcher, enrolled):
    result = matcher.identify(vec(0.1))

    assert result.matched
    assert result.identity_id == "alice"
    assert result.display_name == "Alice"
    assert result.distance == pytest.approx(0.4, abs=1e-5)
    assert result.confidence == pytest.approx(0.6, abs=1e-5)


def test_probe_between_identities_is_unknown(matcher, enrolled):
    result = matcher.identify(vec(5.0))

    assert not result.matched
    assert result.identity_id is None
    assert result.confidence == 0.0
    assert result.distance == pytest.approx(20.0, abs=1e-4)


def test_empty_gallery_reports_infinite_distance(matcher):
    result = matcher.identify(vec(0.0))

    assert not result.matched
    assert math.isinf(result.distance)
    assert result.confidence == 0.0


def test_threshold_is_strict():
    store = DescriptorStore()
    store.enroll(identity("alice", np.zeros(4, dtype=np.float32)))
    matcher = FaceMatcher(store, threshold=0.5)

    assert not matcher.identify([0.5, 0.0, 0.0, 0.0]).matched
    assert matcher.identify([0.49, 0.0, 0.0, 0.0]).identity_id == "alice"


def test_per_call_threshold_overrides_default(matcher, enrolled):
    assert not matcher.identify(vec(0.1), threshold=0.3).matched
    assert matcher.identify(vec(0.1), threshold=0.5).identity_id == "alice"


@pytest.mark.parametrize(
    "order, expected",
    [
        (("alice", "bob"), "alice"),
        (("bob", "alice"), "bob"),
    ],
)
def test_exact_tie_goes_to_first_enrolled_identity(order, expected):
    positions = {"alice": [0.0, 0.0, 0.0, 0.0], "bob": [2.0, 0.0, 0.0, 0.0]}
    store = DescriptorStore()
    for identity_id in order:
        store.enroll(identity(identity_id, positions[identity_id]))

    result = FaceMatcher(store, threshold=1.5).identify([1.0, 0.0, 0.0, 0.0])

    assert result.identity_id == expected
    assert result.distance == pytest.approx(1.0)
    # Thresholds above 1 can yield a match with zero or negative confidence.
    assert result.confidence == pytest.approx(0.0)


def test_identity_is_represented_by_its_closest_descriptor(store, matcher):
    store.enroll(identity("alice", vec(3.0), vec(0.0)))
    store.enroll(identity("bob", vec(0.12)))

    result = matcher.identify(vec(0.02))

    assert result.identity_id == "alice"
    assert result.distance == pytest.approx(0.08, abs=1e-5)


def test_inactive_identity_is_never_matched(store, matcher, enrolled):
    store.set_active("alice", False)

    assert not matcher.identify(vec(0.0)).matched


def test_probe_with_wrong_dimension_is_rejected(matcher, enrolled):
    with pytest.raises(DimensionMismatch):
        matcher.identify(np.zeros(8, dtype=np.float32))


@pytest.mark.parametrize("threshold", [0.3, 0.6, 1.2])
def test_identify_agrees_with_a_brute_force_scan(threshold):
    rng = np.random.default_rng(7)
    store = DescriptorStore()
    gallery = {f"id-{n}": rng.normal(scale=0.3, size=(3, 8)).astype(np.float32) for n in range(6)}
    for identity_id, descriptors in gallery.items():
        store.enroll(identity(identity_id, *descriptors))
    matcher = FaceMatcher(store, threshold=0.6)

    for probe in rng.normal(scale=0.3, size=(50, 8)).astype(np.float32):
        best_id, best_distance = None, math.inf
        for identity_id, descriptors in gallery.items():
            for descriptor in descriptors:
                distance = float(np.linalg.norm(descriptor - probe))
                if distance < best_distance:
                    best_id, best_distance = identity_id, distance

        result = matcher.identify(probe, threshold)
        assert result.distance == pytest.approx(best_distance, abs=1e-5)
        if best_distance < threshold:
            assert result.identity_id == best_id
            assert result.confidence == pytest.approx(1.0 - best_distance, abs=1e-5)
        else:
            assert result.identity_id is None


def test_nearest_distances_excludes_requested_identity(store, matcher, enrolled):
    distances = matcher.nearest_distances(vec(0.0), exclude="alice")

    assert set(distances) == {"bob"}
    assert distances["bob"] == pytest.approx(40.0, abs=1e-4)


def test_match_timestamp_comes_from_clock(store, enrolled, clock):
    matcher = FaceMatcher(store, clock=clock)
    assert matcher.identify(vec(0.0)).matched_at == clock.current
