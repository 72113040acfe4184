"""Nearest-fingerprint selection for RSSI fingerprint databases.

Located fingerprints are ranked by the Euclidean distance between their RSSI
readings and the readings of a query fingerprint. Readings are keyed by radio
source, so only sources heard by both fingerprints contribute; a candidate
sharing no source with the query is ranked last with an infinite distance.

The no-mean variant subtracts each fingerprint's mean RSSI over the shared
sources before computing the distance. A constant RSSI offset (e.g. receiver
hardware gain) on either side then leaves the ranking unchanged.

Author: Navigation Engineer
Date: 2024
"""

from dataclasses import dataclass, field
from typing import Iterator, List, Sequence, Tuple

import numpy as np

from .types import Fingerprint, LocatedFingerprint

# Sentinel for an unbounded number of nearest fingerprints
UNBOUNDED = -1


@dataclass
class NearestFingerprints:
    """
    Located fingerprints ranked by signal distance to a query (closest first).

    Attributes:
        fingerprints: Ranked located fingerprints.
        distances: Signal distance of each fingerprint to the query, shape (k,).
    """

    fingerprints: List[LocatedFingerprint] = field(default_factory=list)
    distances: np.ndarray = field(default_factory=lambda: np.zeros(0))

    def __post_init__(self) -> None:
        self.fingerprints = list(self.fingerprints)
        self.distances = np.asarray(self.distances, dtype=float)
        if self.distances.shape != (len(self.fingerprints),):
            raise ValueError(
                f"Expected {len(self.fingerprints)} distances, "
                f"got shape {self.distances.shape}"
            )

    def head(self, k: int) -> "NearestFingerprints":
        """Return the k closest fingerprints."""
        return NearestFingerprints(self.fingerprints[:k], self.distances[:k])

    @property
    def positions(self) -> np.ndarray:
        """Positions of the ranked fingerprints, shape (k, d)."""
        if not self.fingerprints:
            return np.zeros((0, 0))
        return np.vstack([fp.position for fp in self.fingerprints])

    def __iter__(self) -> Iterator[Tuple[LocatedFingerprint, float]]:
        return zip(self.fingerprints, self.distances.tolist())

    def __len__(self) -> int:
        return len(self.fingerprints)


def validate_nearest_bounds(min_nearest: int, max_nearest: int) -> None:
    """
    Check the bounds on the number of nearest fingerprints.

    Both bounds must be unbounded (-1), or satisfy 1 <= min <= max.

    Raises:
        ValueError: If the bounds are inconsistent.
    """
    if min_nearest == UNBOUNDED and max_nearest == UNBOUNDED:
        return
    if min_nearest < 1 or max_nearest < min_nearest:
        raise ValueError(
            f"Nearest fingerprint bounds must both be {UNBOUNDED} or satisfy "
            f"1 <= min <= max, got min={min_nearest}, max={max_nearest}"
        )


def _shared_rssi(query: Fingerprint, candidate: Fingerprint) -> Tuple[np.ndarray, np.ndarray]:
    z, f = [], []
    for reading in query:
        rssi = candidate.rssi(reading.source)
        if rssi is not None:
            z.append(reading.rssi)
            f.append(rssi)
    return np.asarray(z, dtype=float), np.asarray(f, dtype=float)


def signal_distance(
    query: Fingerprint, candidate: Fingerprint, no_mean: bool = False
) -> float:
    """
    Compute the RSSI distance between two fingerprints.

    Args:
        query: Query fingerprint.
        candidate: Candidate (usually located) fingerprint.
        no_mean: If True, remove each fingerprint's mean RSSI over the shared
            sources before comparing.

    Returns:
        Euclidean distance in dB over the shared radio sources, +inf if the
        fingerprints share no source.

    Examples:
        >>> from radiomap.fingerprinting.types import RadioSource, Reading
        >>> ap1, ap2 = RadioSource("AP1"), RadioSource("AP2")
        >>> z = Fingerprint([Reading(ap1, -50.0), Reading(ap2, -60.0)])
        >>> f = Fingerprint([Reading(ap1, -53.0), Reading(ap2, -64.0)])
        >>> print(f"{signal_distance(z, f):.2f}")
        5.00
        >>> print(f"{signal_distance(z, f, no_mean=True):.2f}")
        0.71
    """
    z, f = _shared_rssi(query, candidate)
    if z.size == 0:
        return np.inf

    if no_mean:
        z = z - np.mean(z)
        f = f - np.mean(f)

    return float(np.linalg.norm(z - f))


def rank_fingerprints(
    query: Fingerprint,
    located_fingerprints: Sequence[LocatedFingerprint],
    no_mean: bool = False,
) -> NearestFingerprints:
    """
    Rank all located fingerprints by signal distance to the query.

    The sort is stable: candidates at the same distance keep their database
    order, and candidates sharing no source with the query come last.
    """
    if len(located_fingerprints) == 0:
        return NearestFingerprints()

    distances = np.array(
        [signal_distance(query, fp, no_mean=no_mean) for fp in located_fingerprints]
    )
    order = np.argsort(distances, kind="stable")

    return NearestFingerprints(
        [located_fingerprints[i] for i in order], distances[order]
    )


def find_nearest_fingerprints(
    query: Fingerprint,
    located_fingerprints: Sequence[LocatedFingerprint],
    min_nearest: int = UNBOUNDED,
    max_nearest: int = UNBOUNDED,
    no_mean: bool = False,
) -> NearestFingerprints:
    """
    Find the located fingerprints closest to a query fingerprint.

    Args:
        query: Query fingerprint.
        located_fingerprints: Located fingerprint database.
        min_nearest: Minimum number of fingerprints to return when the
            database is large enough, or -1 for unbounded.
        max_nearest: Maximum number of fingerprints to return, or -1 for
            unbounded (every located fingerprint is returned).
        no_mean: Use the no-mean distance.

    Returns:
        Ranked nearest fingerprints; empty if the database is empty.

    Raises:
        ValueError: If the bounds are inconsistent.

    Examples:
        >>> from radiomap.fingerprinting.types import RadioSource, Reading
        >>> ap = RadioSource("AP1")
        >>> db = [LocatedFingerprint([Reading(ap, rssi)], position=np.array([x, 0.0]))
        ...       for x, rssi in [(0.0, -40.0), (5.0, -55.0), (10.0, -61.0)]]
        >>> nearest = find_nearest_fingerprints(
        ...     Fingerprint([Reading(ap, -57.0)]), db, 1, 2)
        >>> [float(fp.position[0]) for fp in nearest.fingerprints]
        [5.0, 10.0]
    """
    validate_nearest_bounds(min_nearest, max_nearest)

    ranked = rank_fingerprints(query, located_fingerprints, no_mean=no_mean)
    if max_nearest == UNBOUNDED:
        return ranked
    return ranked.head(max_nearest)
