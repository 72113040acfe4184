"""Per-radio-source partitioning of nearest-fingerprint readings.

The joint estimator compares the RSSI of each radio source read by the query
fingerprint against the RSSI of the same source read at the selected nearest
located fingerprints. Each such pair is a measurement tuple. This module
groups tuples by radio source, decides which sources are anchored (their
position is known) and which are unknown (their position is estimated), and
builds the index map of the unknown vector:

    x = [p_1..p_d, s1_1..s1_d, s2_1..s2_d, ...]

with the receiver position first and one block of d coordinates per unknown
source, in the order sources are first seen.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np

from .types import Fingerprint, LocatedFingerprint, RadioSource

logger = logging.getLogger(__name__)


@dataclass
class SourceMeasurements:
    """
    Everything the estimator needs to know about one radio source.

    Attributes:
        source: Radio source (key only matters).
        anchored: True if the source position is known and kept fixed.
        position: Known position when anchored, initial guess otherwise.
        position_covariance: Covariance of the known or seeded position.
        path_loss_exponent: Path-loss exponent used for this source.
        path_loss_exponent_std: Standard deviation of the exponent, if known.
        n_tuples: Number of measurement tuples referring to this source.
    """

    source: RadioSource
    anchored: bool
    position: np.ndarray
    position_covariance: Optional[np.ndarray]
    path_loss_exponent: float
    path_loss_exponent_std: Optional[float] = None
    n_tuples: int = 0


@dataclass
class SourceLayout:
    """
    Index map of the unknown vector.

    The receiver position occupies offsets [0, dim) and each unknown source
    owns the dim offsets starting at offsets[source].

    Examples:
        >>> layout = SourceLayout(2, {RadioSource("AP1"): 2, RadioSource("AP2"): 4})
        >>> layout.size
        6
        >>> layout.slice_for(RadioSource("AP2"))
        slice(4, 6, None)
    """

    dim: int
    offsets: Dict[RadioSource, int] = field(default_factory=dict)

    @classmethod
    def from_sources(cls, dim: int, sources: Iterable[RadioSource]) -> "SourceLayout":
        offsets = {}
        for source in sources:
            if source not in offsets:
                offsets[source] = dim * (1 + len(offsets))
        return cls(dim, offsets)

    @property
    def size(self) -> int:
        return self.dim * (1 + len(self.offsets))

    @property
    def n_sources(self) -> int:
        return len(self.offsets)

    @property
    def sources(self) -> List[RadioSource]:
        return list(self.offsets)

    @property
    def receiver_slice(self) -> slice:
        return slice(0, self.dim)

    def slice_for(self, source: RadioSource) -> slice:
        offset = self.offsets[source]
        return slice(offset, offset + self.dim)

    def pack(self, position: np.ndarray, source_positions: Dict[RadioSource, np.ndarray]) -> np.ndarray:
        """Build an unknown vector from a receiver and source positions."""
        x = np.zeros(self.size)
        x[self.receiver_slice] = position
        for source in self.offsets:
            x[self.slice_for(source)] = source_positions[source]
        return x

    def receiver_position(self, x: np.ndarray) -> np.ndarray:
        return x[self.receiver_slice]

    def source_position(self, x: np.ndarray, source: RadioSource) -> np.ndarray:
        return x[self.slice_for(source)]


@dataclass
class Partition:
    """
    Measurement tuples grouped by radio source, stored as parallel arrays.

    Tuple i pairs the query reading of source sources[source_index[i]] with
    the reading of the same source at fingerprint_positions[i]. Variances
    are NaN where a reading has no standard deviation, covariances are zero
    blocks where a position has no covariance.
    """

    dim: int
    sources: List[SourceMeasurements]
    layout: SourceLayout
    source_index: np.ndarray
    fingerprint_positions: np.ndarray
    fingerprint_position_covariances: np.ndarray
    query_rssi: np.ndarray
    fingerprint_rssi: np.ndarray
    query_rssi_variances: np.ndarray
    fingerprint_rssi_variances: np.ndarray

    @property
    def n_measurements(self) -> int:
        return len(self.source_index)

    @property
    def n_unknowns(self) -> int:
        return self.layout.size

    @property
    def unknown_sources(self) -> List[SourceMeasurements]:
        return [entry for entry in self.sources if not entry.anchored]

    @property
    def measured_differences(self) -> np.ndarray:
        """Measured RSSI differences, query minus fingerprint (dB)."""
        return self.query_rssi - self.fingerprint_rssi

    @property
    def path_loss_exponents(self) -> np.ndarray:
        per_source = np.array([entry.path_loss_exponent for entry in self.sources])
        return per_source[self.source_index]

    @property
    def path_loss_exponent_variances(self) -> np.ndarray:
        per_source = np.array(
            [
                np.nan if entry.path_loss_exponent_std is None
                else entry.path_loss_exponent_std**2
                for entry in self.sources
            ]
        )
        return per_source[self.source_index]

    @property
    def source_position_covariances(self) -> np.ndarray:
        per_source = np.stack(
            [
                np.zeros((self.dim, self.dim)) if entry.position_covariance is None
                else entry.position_covariance
                for entry in self.sources
            ]
        )
        return per_source[self.source_index]

    @property
    def unknown_mask(self) -> np.ndarray:
        """True for tuples whose source position is estimated."""
        per_source = np.array([not entry.anchored for entry in self.sources])
        return per_source[self.source_index]

    @property
    def unknown_offsets(self) -> np.ndarray:
        """Offset of the source block in the unknown vector, -1 if anchored."""
        per_source = np.array(
            [
                -1 if entry.anchored else self.layout.offsets[entry.source]
                for entry in self.sources
            ],
            dtype=int,
        )
        return per_source[self.source_index]

    def source_positions(self, x: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Source position of every tuple, shape (m, d).

        Anchored sources use their known position; unknown sources use their
        block of x, or their initial guess when x is None.
        """
        per_source = np.stack([entry.position for entry in self.sources])
        positions = per_source[self.source_index]
        if x is None:
            return positions

        positions = positions.copy()
        mask = self.unknown_mask
        if np.any(mask):
            columns = self.unknown_offsets[mask][:, np.newaxis] + np.arange(self.dim)
            positions[mask] = x[columns]
        return positions


def source_centroids(
    located_fingerprints: Sequence[LocatedFingerprint],
) -> Dict[RadioSource, np.ndarray]:
    """
    Centroid of the positions of all fingerprints reading each radio source.

    Used as the initial guess of sources without a known position.
    """
    sums: Dict[RadioSource, np.ndarray] = {}
    counts: Dict[RadioSource, int] = {}
    for fingerprint in located_fingerprints:
        for reading in fingerprint:
            source = reading.source
            if source in sums:
                sums[source] = sums[source] + fingerprint.position
                counts[source] += 1
            else:
                sums[source] = fingerprint.position.copy()
                counts[source] = 1
    return {source: sums[source] / counts[source] for source in sums}


def _known_source(readings_sources: Iterable[RadioSource]) -> Optional[RadioSource]:
    """First located copy of a source among its readings, if any."""
    for source in readings_sources:
        if source.is_located:
            return source
    return None


def _select_path_loss_exponent(candidates, default_exponent, use_sources_exponent):
    if use_sources_exponent:
        for candidate in candidates:
            if candidate is not None and candidate.path_loss_exponent is not None:
                return candidate.path_loss_exponent, candidate.path_loss_exponent_std
    return default_exponent, None


def partition_by_source(
    query: Fingerprint,
    nearest_fingerprints: Sequence[LocatedFingerprint],
    dim: int,
    default_path_loss_exponent: float,
    use_sources_path_loss_exponent: bool = True,
    initial_located_sources: Optional[Sequence[RadioSource]] = None,
    centroids: Optional[Dict[RadioSource, np.ndarray]] = None,
) -> Partition:
    """
    Group the usable readings of the nearest fingerprints by radio source.

    A reading of a nearest fingerprint is usable when the query fingerprint
    reads the same radio source. Sources carrying a known position in the
    readings are anchored and kept with any number of tuples. Other sources
    are estimated, and need at least dim + 1 tuples; with fewer tuples they
    are anchored at their initial located copy when one is given, and left
    out of this estimate otherwise.

    Args:
        query: Query fingerprint.
        nearest_fingerprints: Selected nearest located fingerprints.
        dim: Dimensionality d of positions (2 or 3).
        default_path_loss_exponent: Exponent used when a source has none.
        use_sources_path_loss_exponent: Prefer the exponent of a source (or
            of its initial located copy) over the default.
        initial_located_sources: Initial guesses for unknown sources.
        centroids: Initial guesses for unknown sources without an initial
            located copy, usually from source_centroids(). When a source is
            missing here the centroid of its nearest fingerprints is used.

    Returns:
        Partition of the measurement tuples.
    """
    initial_by_source = {source: source for source in (initial_located_sources or [])}
    centroids = centroids or {}

    # Tuples per source, in first-seen order
    grouped: Dict[RadioSource, List] = {}
    located_copies: Dict[RadioSource, List[RadioSource]] = {}
    for fingerprint in nearest_fingerprints:
        for reading in fingerprint:
            query_reading = query.reading_for(reading.source)
            if query_reading is None:
                continue
            grouped.setdefault(reading.source, []).append(
                (fingerprint, reading, query_reading)
            )
            located_copies.setdefault(reading.source, []).extend(
                [query_reading.source, reading.source]
            )

    sources: List[SourceMeasurements] = []
    kept_tuples = []
    for source, tuples in grouped.items():
        known = _known_source(located_copies[source])
        initial = initial_by_source.get(source)
        metadata = known or next(
            (s for s in located_copies[source] if s.path_loss_exponent is not None), None
        )
        exponent, exponent_std = _select_path_loss_exponent(
            [metadata, initial], default_path_loss_exponent, use_sources_path_loss_exponent
        )

        if known is None and len(tuples) < dim + 1 and initial is not None and initial.is_located:
            # Too few readings to estimate it, keep it fixed at the caller's guess
            known = initial

        if known is not None:
            if known.dim != dim:
                raise ValueError(
                    f"Radio source {source.identifier!r} has a {known.dim}D position, "
                    f"expected {dim}D"
                )
            entry = SourceMeasurements(
                source=source,
                anchored=True,
                position=known.position,
                position_covariance=known.position_covariance,
                path_loss_exponent=exponent,
                path_loss_exponent_std=exponent_std,
                n_tuples=len(tuples),
            )
        else:
            if len(tuples) < dim + 1:
                logger.debug(
                    "Excluding radio source %r: %d usable readings, %d required",
                    source.identifier, len(tuples), dim + 1,
                )
                continue

            if initial is not None and initial.is_located:
                if initial.dim != dim:
                    raise ValueError(
                        f"Initial radio source {source.identifier!r} has a "
                        f"{initial.dim}D position, expected {dim}D"
                    )
                seed, seed_covariance = initial.position, initial.position_covariance
            elif source in centroids:
                seed, seed_covariance = centroids[source], None
            else:
                seed = np.mean([fp.position for fp, _, _ in tuples], axis=0)
                seed_covariance = None

            entry = SourceMeasurements(
                source=source,
                anchored=False,
                position=np.asarray(seed, dtype=float),
                position_covariance=seed_covariance,
                path_loss_exponent=exponent,
                path_loss_exponent_std=exponent_std,
                n_tuples=len(tuples),
            )

        index = len(sources)
        sources.append(entry)
        kept_tuples.extend((index, t) for t in tuples)

    layout = SourceLayout.from_sources(
        dim, [entry.source for entry in sources if not entry.anchored]
    )

    m = len(kept_tuples)
    source_index = np.zeros(m, dtype=int)
    fingerprint_positions = np.zeros((m, dim))
    fingerprint_covariances = np.zeros((m, dim, dim))
    query_rssi = np.zeros(m)
    fingerprint_rssi = np.zeros(m)
    query_variances = np.full(m, np.nan)
    fingerprint_variances = np.full(m, np.nan)

    for i, (index, (fingerprint, reading, query_reading)) in enumerate(kept_tuples):
        source_index[i] = index
        fingerprint_positions[i] = fingerprint.position
        if fingerprint.position_covariance is not None:
            fingerprint_covariances[i] = fingerprint.position_covariance
        query_rssi[i] = query_reading.rssi
        fingerprint_rssi[i] = reading.rssi
        if query_reading.rssi_std is not None:
            query_variances[i] = query_reading.rssi_std**2
        if reading.rssi_std is not None:
            fingerprint_variances[i] = reading.rssi_std**2

    return Partition(
        dim=dim,
        sources=sources,
        layout=layout,
        source_index=source_index,
        fingerprint_positions=fingerprint_positions,
        fingerprint_position_covariances=fingerprint_covariances,
        query_rssi=query_rssi,
        fingerprint_rssi=fingerprint_rssi,
        query_rssi_variances=query_variances,
        fingerprint_rssi_variances=fingerprint_variances,
    )
