"""Unit tests for radiomap.fingerprinting.partition module.

Tests per-source grouping of measurement tuples, anchored and unknown radio
sources, initial guesses and the unknown-vector index map.
"""

import numpy as np
import pytest

from radiomap.fingerprinting.partition import (
    SourceLayout,
    partition_by_source,
    source_centroids,
)
from radiomap.fingerprinting.types import (
    Fingerprint,
    LocatedFingerprint,
    RadioSource,
    Reading,
)

AP1 = RadioSource("AP1", path_loss_exponent=1.6, path_loss_exponent_std=0.1)
AP2 = RadioSource("AP2")
AP3 = RadioSource("AP3")
BEACON = RadioSource("BEACON", path_loss_exponent=1.8).located(
    np.array([10.0, 10.0]), np.diag([0.5, 0.5])
)


@pytest.fixture
def nearest():
    """Four located fingerprints; AP3 is only read by two of them."""
    return [
        LocatedFingerprint(
            [Reading(AP1, -50.0, 2.0), Reading(AP2, -60.0), Reading(AP3, -70.0), Reading(BEACON, -55.0)],
            position=np.array([0.0, 0.0]),
            position_covariance=np.eye(2) * 0.1,
        ),
        LocatedFingerprint(
            [Reading(AP1, -52.0), Reading(AP2, -58.0), Reading(BEACON, -57.0)],
            position=np.array([2.0, 0.0]),
        ),
        LocatedFingerprint(
            [Reading(AP1, -54.0), Reading(AP2, -62.0), Reading(AP3, -68.0)],
            position=np.array([0.0, 2.0]),
        ),
        LocatedFingerprint(
            [Reading(AP1, -51.0), Reading(AP2, -61.0), Reading(RadioSource("OTHER"), -40.0)],
            position=np.array([2.0, 2.0]),
        ),
    ]


@pytest.fixture
def query():
    return Fingerprint(
        [
            Reading(AP1, -53.0, 1.0),
            Reading(AP2, -59.0),
            Reading(AP3, -69.0),
            Reading(RadioSource("BEACON"), -56.0),
        ]
    )


class TestSourceLayout:
    def test_offsets_in_first_seen_order(self):
        layout = SourceLayout.from_sources(3, [AP2, AP1, AP2])

        assert layout.size == 9
        assert layout.n_sources == 2
        assert layout.sources == [AP2, AP1]
        assert layout.slice_for(AP1) == slice(6, 9)
        assert layout.receiver_slice == slice(0, 3)

    def test_pack_and_unpack(self):
        layout = SourceLayout.from_sources(2, [AP1, AP2])
        x = layout.pack(np.array([1.0, 2.0]), {AP1: np.array([3.0, 4.0]), AP2: np.array([5.0, 6.0])})

        np.testing.assert_array_equal(x, [1.0, 2.0, 3.0, 4.0, 5.0, 6.0])
        np.testing.assert_array_equal(layout.receiver_position(x), [1.0, 2.0])
        np.testing.assert_array_equal(layout.source_position(x, AP2), [5.0, 6.0])

    def test_empty(self):
        layout = SourceLayout.from_sources(2, [])

        assert layout.size == 2
        assert layout.sources == []


class TestPartitionBySource:
    """Test suite for partition_by_source()."""

    def test_anchored_and_unknown_sources(self, query, nearest):
        partition = partition_by_source(query, nearest, 2, 2.0)

        by_id = {entry.source.identifier: entry for entry in partition.sources}
        assert set(by_id) == {"AP1", "AP2", "BEACON"}
        assert by_id["BEACON"].anchored
        assert by_id["BEACON"].n_tuples == 2
        np.testing.assert_array_equal(by_id["BEACON"].position, [10.0, 10.0])
        assert not by_id["AP1"].anchored
        assert by_id["AP1"].n_tuples == 4

        # Receiver plus AP1 and AP2
        assert partition.layout.sources == [AP1, AP2]
        assert partition.n_unknowns == 6
        assert partition.n_measurements == 10

    def test_source_with_too_few_readings_excluded(self, query, nearest):
        partition = partition_by_source(query, nearest, 2, 2.0)

        assert AP3 not in partition.layout.offsets
        assert AP3 not in [entry.source for entry in partition.sources]

    def test_source_with_too_few_readings_anchored_at_initial_guess(self, query, nearest):
        initial = AP3.located(np.array([-5.0, 3.0]))

        partition = partition_by_source(query, nearest, 2, 2.0, initial_located_sources=[initial])

        entry = next(e for e in partition.sources if e.source == AP3)
        assert entry.anchored
        assert AP3 not in partition.layout.offsets
        np.testing.assert_array_equal(entry.position, [-5.0, 3.0])

    def test_unused_readings_ignored(self, query, nearest):
        partition = partition_by_source(query, nearest, 2, 2.0)

        assert RadioSource("OTHER") not in [entry.source for entry in partition.sources]

    def test_tuple_arrays(self, query, nearest):
        partition = partition_by_source(query, nearest, 2, 2.0)

        first = partition.sources[partition.source_index[0]]
        assert first.source == AP1
        assert partition.query_rssi[0] == -53.0
        assert partition.fingerprint_rssi[0] == -50.0
        assert partition.measured_differences[0] == pytest.approx(-3.0)
        assert partition.query_rssi_variances[0] == pytest.approx(1.0)
        assert partition.fingerprint_rssi_variances[0] == pytest.approx(4.0)
        np.testing.assert_allclose(partition.fingerprint_position_covariances[0], np.eye(2) * 0.1)

        # AP2 readings carry no standard deviation
        ap2_rows = [i for i, j in enumerate(partition.source_index) if partition.sources[j].source == AP2]
        assert np.all(np.isnan(partition.query_rssi_variances[ap2_rows]))
        assert np.all(partition.fingerprint_position_covariances[ap2_rows[1]] == 0.0)

    def test_path_loss_exponent_selection(self, query, nearest):
        partition = partition_by_source(query, nearest, 2, 2.0)
        exponents = {e.source.identifier: (e.path_loss_exponent, e.path_loss_exponent_std)
                     for e in partition.sources}

        assert exponents["AP1"] == (1.6, 0.1)
        assert exponents["AP2"] == (2.0, None)
        assert exponents["BEACON"] == (1.8, None)

        variances = partition.path_loss_exponent_variances
        ap1_rows = partition.source_index == 0
        np.testing.assert_allclose(variances[ap1_rows], 0.01)

    def test_default_exponent_when_sources_ignored(self, query, nearest):
        partition = partition_by_source(
            query, nearest, 2, 2.2, use_sources_path_loss_exponent=False
        )

        np.testing.assert_allclose(partition.path_loss_exponents, 2.2)
        assert np.all(np.isnan(partition.path_loss_exponent_variances))

    def test_exponent_from_initial_located_source(self, query, nearest):
        initial = RadioSource("AP2", path_loss_exponent=1.7, path_loss_exponent_std=0.2).located(
            np.array([1.0, 1.0]), np.eye(2)
        )

        partition = partition_by_source(query, nearest, 2, 2.0, initial_located_sources=[initial])

        entry = next(e for e in partition.sources if e.source == AP2)
        assert not entry.anchored
        assert entry.path_loss_exponent == 1.7
        np.testing.assert_array_equal(entry.position, [1.0, 1.0])
        np.testing.assert_array_equal(entry.position_covariance, np.eye(2))

    def test_seeds_from_centroids(self, query, nearest):
        centroids = {AP1: np.array([7.0, -1.0])}

        partition = partition_by_source(query, nearest, 2, 2.0, centroids=centroids)

        seeds = {e.source.identifier: e.position for e in partition.sources}
        np.testing.assert_array_equal(seeds["AP1"], [7.0, -1.0])
        # Not in centroids: mean of the nearest fingerprints reading AP2
        np.testing.assert_allclose(seeds["AP2"], [1.0, 1.0])

    def test_source_positions_follow_layout(self, query, nearest):
        partition = partition_by_source(query, nearest, 2, 2.0)
        x = partition.layout.pack(
            np.zeros(2), {AP1: np.array([-1.0, -2.0]), AP2: np.array([3.0, 4.0])}
        )

        positions = partition.source_positions(x)

        for i, j in enumerate(partition.source_index):
            source = partition.sources[j].source
            expected = {"AP1": [-1.0, -2.0], "AP2": [3.0, 4.0], "BEACON": [10.0, 10.0]}
            np.testing.assert_array_equal(positions[i], expected[source.identifier])

        offsets = partition.unknown_offsets
        assert set(offsets[partition.unknown_mask]) == {2, 4}
        assert np.all(offsets[~partition.unknown_mask] == -1)

    def test_source_covariances(self, query, nearest):
        partition = partition_by_source(query, nearest, 2, 2.0)
        covariances = partition.source_position_covariances
        beacon_rows = [i for i, j in enumerate(partition.source_index)
                       if partition.sources[j].source == BEACON]

        np.testing.assert_array_equal(covariances[beacon_rows[0]], np.diag([0.5, 0.5]))
        assert np.all(covariances[partition.unknown_mask] == 0.0)

    def test_dimension_mismatch(self, query, nearest):
        with pytest.raises(ValueError):
            partition_by_source(query, nearest, 3, 2.0)

    def test_no_nearest_fingerprints(self, query):
        partition = partition_by_source(query, [], 2, 2.0)

        assert partition.n_measurements == 0
        assert partition.n_unknowns == 2


class TestSourceCentroids:
    def test_centroids(self, nearest):
        centroids = source_centroids(nearest)

        np.testing.assert_allclose(centroids[AP1], [1.0, 1.0])
        np.testing.assert_allclose(centroids[AP3], [0.0, 1.0])
        np.testing.assert_allclose(centroids[BEACON], [1.0, 0.0])
        np.testing.assert_allclose(centroids[RadioSource("OTHER")], [2.0, 2.0])
