"""Type definitions and data structures for RSSI fingerprinting.

This module defines the radio sources, readings and fingerprints consumed by
the nearest-fingerprint finder and by the joint position and radio source
estimator.

A radio source is identified by its key (identifier + frequency): two
readings referring to sources with the same key refer to the same physical
transmitter, regardless of any location or power metadata attached to them.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from radiomap.rf.measurement_models import DEFAULT_FREQUENCY

# Type aliases for clarity and documentation
Position = np.ndarray  # Shape (d,), d=2 (x, y) or d=3 (x, y, z)
Covariance = np.ndarray  # Shape (d, d)
SourceKey = Tuple[str, float]  # (identifier, frequency)


def _as_position(value, name: str) -> np.ndarray:
    position = np.asarray(value, dtype=float)
    if position.ndim != 1 or position.shape[0] not in (2, 3):
        raise ValueError(f"{name} must be a 2D or 3D vector, got shape {position.shape}")
    if not np.all(np.isfinite(position)):
        raise ValueError(f"{name} contains non-finite values")
    return position


def _as_covariance(value, dim: int, name: str) -> np.ndarray:
    covariance = np.asarray(value, dtype=float)
    if covariance.shape != (dim, dim):
        raise ValueError(
            f"{name} must have shape ({dim}, {dim}), got {covariance.shape}"
        )
    if not np.all(np.isfinite(covariance)):
        raise ValueError(f"{name} contains non-finite values")
    if not np.allclose(covariance, covariance.T):
        raise ValueError(f"{name} must be symmetric")
    return covariance


@dataclass(frozen=True, eq=False)
class RadioSource:
    """
    Radio transmitter (WiFi access point, BLE beacon, ...) heard in readings.

    Equality and hashing only use the source key (identifier, frequency), so
    a located copy of a source still matches the readings of the original.

    Attributes:
        identifier: Unique identifier (BSSID, beacon UUID, ...).
        frequency: Carrier frequency in Hz.
        transmitted_power_dbm: Equivalent transmitted power in dBm, if known.
        path_loss_exponent: Path-loss exponent of this source, if known.
        path_loss_exponent_std: Standard deviation of the path-loss exponent.
        position: Known position of the source, shape (d,), or None.
        position_covariance: Covariance of the known position, shape (d, d).

    Examples:
        >>> ap = RadioSource("00:11:22:33:44:55", frequency=2.4e9)
        >>> located = ap.located(np.array([1.0, 2.0]))
        >>> located == ap
        True
        >>> located.is_located
        True
    """

    identifier: str
    frequency: float = DEFAULT_FREQUENCY
    transmitted_power_dbm: Optional[float] = None
    path_loss_exponent: Optional[float] = None
    path_loss_exponent_std: Optional[float] = None
    position: Optional[np.ndarray] = None
    position_covariance: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        """Validate source metadata after initialization."""
        if self.identifier is None:
            raise ValueError("identifier is required")
        if self.frequency <= 0:
            raise ValueError(f"frequency must be positive, got {self.frequency}")
        if self.path_loss_exponent is not None and self.path_loss_exponent <= 0:
            raise ValueError(
                f"path_loss_exponent must be positive, got {self.path_loss_exponent}"
            )
        if self.path_loss_exponent_std is not None and self.path_loss_exponent_std < 0:
            raise ValueError(
                f"path_loss_exponent_std must be non-negative, "
                f"got {self.path_loss_exponent_std}"
            )

        if self.position is not None:
            position = _as_position(self.position, "position")
            object.__setattr__(self, "position", position)
            if self.position_covariance is not None:
                covariance = _as_covariance(
                    self.position_covariance, len(position), "position_covariance"
                )
                object.__setattr__(self, "position_covariance", covariance)
        elif self.position_covariance is not None:
            raise ValueError("position_covariance requires a position")

    @property
    def key(self) -> SourceKey:
        """Identity of the physical transmitter."""
        return (self.identifier, float(self.frequency))

    @property
    def is_located(self) -> bool:
        """True if the source carries a known position."""
        return self.position is not None

    @property
    def dim(self) -> Optional[int]:
        """Dimensionality of the known position, or None if not located."""
        return None if self.position is None else len(self.position)

    def located(
        self,
        position: Position,
        position_covariance: Optional[Covariance] = None,
    ) -> "RadioSource":
        """Return a copy of this source carrying the given position."""
        return replace(
            self, position=position, position_covariance=position_covariance
        )

    def __eq__(self, other) -> bool:
        if not isinstance(other, RadioSource):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def __repr__(self) -> str:
        location = "" if self.position is None else f", position={self.position.tolist()}"
        return f"RadioSource(identifier={self.identifier!r}, frequency={self.frequency:g}{location})"


@dataclass(frozen=True)
class Reading:
    """
    RSSI reading of one radio source.

    Attributes:
        source: Radio source the reading belongs to.
        rssi: Received signal strength in dBm.
        rssi_std: Standard deviation of the RSSI in dB, or None if unknown.
    """

    source: RadioSource
    rssi: float
    rssi_std: Optional[float] = None

    def __post_init__(self) -> None:
        if not isinstance(self.source, RadioSource):
            raise TypeError(f"source must be a RadioSource, got {type(self.source)}")
        if not np.isfinite(self.rssi):
            raise ValueError(f"rssi must be finite, got {self.rssi}")
        if self.rssi_std is not None and not self.rssi_std > 0:
            raise ValueError(f"rssi_std must be positive, got {self.rssi_std}")


@dataclass(eq=False)
class Fingerprint:
    """
    Collection of readings captured at one location.

    Readings are unordered and each radio source can appear at most once.

    Attributes:
        readings: Readings of the fingerprint.

    Examples:
        >>> ap1, ap2 = RadioSource("AP1"), RadioSource("AP2")
        >>> fp = Fingerprint([Reading(ap1, -50.0), Reading(ap2, -60.0)])
        >>> fp.rssi(ap2)
        -60.0
        >>> len(fp)
        2
    """

    readings: List[Reading] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Validate that readings refer to distinct radio sources."""
        self.readings = list(self.readings)
        by_source: Dict[RadioSource, Reading] = {}
        for reading in self.readings:
            if not isinstance(reading, Reading):
                raise TypeError(f"readings must be Reading objects, got {type(reading)}")
            if reading.source in by_source:
                raise ValueError(
                    f"Duplicate reading for radio source {reading.source.identifier!r}"
                )
            by_source[reading.source] = reading
        self._by_source = by_source

    @property
    def sources(self) -> List[RadioSource]:
        """Radio sources read by this fingerprint, in reading order."""
        return [reading.source for reading in self.readings]

    def reading_for(self, source: RadioSource) -> Optional[Reading]:
        """Reading of the given source, or None if it was not heard."""
        return self._by_source.get(source)

    def rssi(self, source: RadioSource) -> Optional[float]:
        """RSSI of the given source, or None if it was not heard."""
        reading = self._by_source.get(source)
        return None if reading is None else reading.rssi

    def __contains__(self, source: RadioSource) -> bool:
        return source in self._by_source

    def __iter__(self) -> Iterator[Reading]:
        return iter(self.readings)

    def __len__(self) -> int:
        return len(self.readings)


@dataclass(eq=False)
class LocatedFingerprint(Fingerprint):
    """
    Fingerprint whose capture position is known.

    Attributes:
        readings: Readings of the fingerprint.
        position: Capture position, shape (d,).
        position_covariance: Covariance of the capture position, shape (d, d),
            or None if unknown.

    Examples:
        >>> ap = RadioSource("AP1")
        >>> fp = LocatedFingerprint([Reading(ap, -50.0)], position=np.array([1.0, 2.0]))
        >>> fp.dim
        2
    """

    position: Position = None
    position_covariance: Optional[Covariance] = None

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.position is None:
            raise ValueError("position is required for a located fingerprint")
        self.position = _as_position(self.position, "position")
        if self.position_covariance is not None:
            self.position_covariance = _as_covariance(
                self.position_covariance, self.dim, "position_covariance"
            )

    @property
    def dim(self) -> int:
        """Dimensionality (d) of the capture position."""
        return self.position.shape[0]

    def __repr__(self) -> str:
        return (
            f"LocatedFingerprint(n_readings={len(self.readings)}, "
            f"position={self.position.tolist()})"
        )


def fingerprints_from_radio_map(
    locations: np.ndarray,
    features: np.ndarray,
    sources: Sequence[RadioSource],
    rssi_stds: Optional[np.ndarray] = None,
    position_covariances: Optional[np.ndarray] = None,
) -> List[LocatedFingerprint]:
    """
    Build located fingerprints from a dense radio map.

    Dense radio maps store one RSSI column per radio source; missing readings
    are represented as NaN and are simply left out of the fingerprint.

    Args:
        locations: Reference point coordinates, shape (M, d).
        features: RSSI values, shape (M, N), NaN for sources not heard.
        sources: Radio sources matching the N feature columns.
        rssi_stds: Optional RSSI standard deviations, shape (M, N).
        position_covariances: Optional position covariances, shape (M, d, d).

    Returns:
        List of M located fingerprints.

    Examples:
        >>> aps = [RadioSource("AP1"), RadioSource("AP2")]
        >>> fps = fingerprints_from_radio_map(
        ...     np.array([[0.0, 0.0], [5.0, 0.0]]),
        ...     np.array([[-50.0, np.nan], [-60.0, -55.0]]),
        ...     aps)
        >>> [len(fp) for fp in fps]
        [1, 2]
    """
    locations = np.asarray(locations, dtype=float)
    features = np.asarray(features, dtype=float)

    if locations.ndim != 2:
        raise ValueError(f"locations must be 2D array (M, d), got shape {locations.shape}")
    if features.ndim != 2:
        raise ValueError(f"features must be 2D array (M, N), got shape {features.shape}")
    if locations.shape[0] != features.shape[0]:
        raise ValueError(
            f"Inconsistent number of reference points: "
            f"locations={locations.shape[0]}, features={features.shape[0]}"
        )
    if features.shape[1] != len(sources):
        raise ValueError(
            f"Expected {features.shape[1]} radio sources, got {len(sources)}"
        )
    if rssi_stds is not None:
        rssi_stds = np.asarray(rssi_stds, dtype=float)
        if rssi_stds.shape != features.shape:
            raise ValueError("rssi_stds must have the same shape as features")

    fingerprints = []
    for i, location in enumerate(locations):
        readings = []
        for j, source in enumerate(sources):
            rssi = features[i, j]
            if np.isnan(rssi):
                continue
            std = None
            if rssi_stds is not None and not np.isnan(rssi_stds[i, j]):
                std = float(rssi_stds[i, j])
            readings.append(Reading(source, float(rssi), std))

        covariance = None if position_covariances is None else position_covariances[i]
        fingerprints.append(
            LocatedFingerprint(readings, position=location, position_covariance=covariance)
        )

    return fingerprints
