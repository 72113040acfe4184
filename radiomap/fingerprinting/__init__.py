"""Fingerprint-based joint positioning of a receiver and radio sources.

Main components:
    - RadioSource, Reading, Fingerprint, LocatedFingerprint: data types
    - find_nearest_fingerprints: nearest-fingerprint selection (plain and
      no-mean distances)
    - partition_by_source: per-source measurement tuples and unknown layout
    - FingerprintPositionAndRadioSourceEstimator: joint estimator

Example usage:
    >>> from radiomap.fingerprinting import (
    ...     FingerprintPositionAndRadioSourceEstimator,
    ...     fingerprints_from_radio_map,
    ... )
    >>> database = fingerprints_from_radio_map(locations, rssi, sources)  # doctest: +SKIP
    >>> estimator = FingerprintPositionAndRadioSourceEstimator(
    ...     dim=2, located_fingerprints=database, fingerprint=query)  # doctest: +SKIP
    >>> result = estimator.estimate()  # doctest: +SKIP
"""

from .estimator import (
    EstimatorState,
    FingerprintEstimationResult,
    FingerprintEstimatorListener,
    FingerprintPositionAndRadioSourceEstimator,
    RssiDifferenceModel,
)
from .exceptions import (
    FingerprintEstimationError,
    LockedError,
    NotReadyError,
    RadiomapError,
)
from .nearest import (
    UNBOUNDED,
    NearestFingerprints,
    find_nearest_fingerprints,
    rank_fingerprints,
    signal_distance,
    validate_nearest_bounds,
)
from .partition import (
    Partition,
    SourceLayout,
    SourceMeasurements,
    partition_by_source,
    source_centroids,
)
from .types import (
    Fingerprint,
    LocatedFingerprint,
    RadioSource,
    Reading,
    fingerprints_from_radio_map,
)

__all__ = [
    # Types
    "RadioSource",
    "Reading",
    "Fingerprint",
    "LocatedFingerprint",
    "fingerprints_from_radio_map",
    # Nearest fingerprints
    "UNBOUNDED",
    "NearestFingerprints",
    "signal_distance",
    "rank_fingerprints",
    "find_nearest_fingerprints",
    "validate_nearest_bounds",
    # Partitioning
    "SourceMeasurements",
    "SourceLayout",
    "Partition",
    "partition_by_source",
    "source_centroids",
    # Estimation
    "EstimatorState",
    "FingerprintEstimatorListener",
    "FingerprintEstimationResult",
    "FingerprintPositionAndRadioSourceEstimator",
    "RssiDifferenceModel",
    # Errors
    "RadiomapError",
    "LockedError",
    "NotReadyError",
    "FingerprintEstimationError",
]
