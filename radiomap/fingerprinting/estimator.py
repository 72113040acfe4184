"""Joint receiver position and radio source estimation from RSSI fingerprints.

Given a database of located fingerprints and a query fingerprint captured at
an unknown position p, the estimator finds the positions of the receiver and
of every radio source read by the query whose position is not known.

For each radio source s read both by the query and by a nearest located
fingerprint at position f, the path-loss law predicts the RSSI difference

    ΔPr = Pr(p) - Pr(f) = 5·n·(log10‖f - s‖² - log10‖p - s‖²)

which does not depend on the (unknown) transmitted power of the source. The
unknown vector x = [p, s_1, ..., s_k] is found by weighted nonlinear least
squares on these differences, with weights from first-order propagation of
the RSSI, path-loss exponent and position uncertainties.

The number k of nearest fingerprints is increased from the configured
minimum until a solve succeeds.

Example:
    >>> estimator = FingerprintPositionAndRadioSourceEstimator(
    ...     dim=2, located_fingerprints=database, fingerprint=query)  # doctest: +SKIP
    >>> result = estimator.estimate()  # doctest: +SKIP
    >>> result.position, result.located_sources  # doctest: +SKIP
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

import numpy as np

from radiomap.estimators.nonlinear_least_squares import (
    NonlinearLSResult,
    solve_nonlinear_ls,
)
from radiomap.rf.measurement_models import (
    DEFAULT_PATH_LOSS_EXPONENT,
    rss_difference,
    rss_difference_jacobian,
)
from radiomap.rf.propagation import (
    DEFAULT_FALLBACK_RSSI_STANDARD_DEVIATION,
    PropagationSettings,
    partition_covariance,
    residual_variances,
    residual_weights,
)

from .exceptions import FingerprintEstimationError, LockedError, NotReadyError
from .nearest import (
    UNBOUNDED,
    NearestFingerprints,
    rank_fingerprints,
    validate_nearest_bounds,
)
from .partition import Partition, partition_by_source, source_centroids
from .types import Fingerprint, LocatedFingerprint, RadioSource

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 100
DEFAULT_TOLERANCE = 1e-10


class EstimatorState(Enum):
    """Lifecycle of an estimator."""

    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class FingerprintEstimatorListener:
    """
    Receives estimation start and end notifications.

    Callbacks run while the estimator is locked: they may read its state, and
    any attempt to modify it raises LockedError. on_estimate_end is only
    called after a successful estimation.
    """

    def on_estimate_start(self, estimator: "FingerprintPositionAndRadioSourceEstimator") -> None:
        pass

    def on_estimate_end(self, estimator: "FingerprintPositionAndRadioSourceEstimator") -> None:
        pass


@dataclass
class FingerprintEstimationResult:
    """
    Result of a joint position and radio source estimation.

    Attributes:
        position: Estimated receiver position, shape (d,).
        position_covariance: Covariance of the receiver position (d, d), or
            None if unavailable.
        located_sources: Estimated radio sources, located copies carrying
            their estimated position and (d, d) covariance (or None).
        chi_sq: Weighted sum of squared residuals at the solution.
        covariance: Covariance of the whole unknown vector, or None.
        nearest_fingerprints: Nearest fingerprints used for the estimate.
        iterations: Solver iterations.
        converged: Whether the solver converged.
    """

    position: np.ndarray
    position_covariance: Optional[np.ndarray]
    located_sources: List[RadioSource] = field(default_factory=list)
    chi_sq: float = 0.0
    covariance: Optional[np.ndarray] = None
    nearest_fingerprints: Optional[NearestFingerprints] = None
    iterations: int = 0
    converged: bool = True


class RssiDifferenceModel:
    """
    Measurement model h(x) and Jacobian ∂h/∂x of the RSSI differences.

    The partition's index map tells which block of x holds each unknown
    source; anchored sources stay at their known positions.
    """

    def __init__(self, partition: Partition):
        self.partition = partition
        self.dim = partition.dim
        self.path_loss_exponents = partition.path_loss_exponents

        mask = partition.unknown_mask
        self._rows = np.nonzero(mask)[0]
        self._columns = (
            partition.unknown_offsets[mask][:, np.newaxis] + np.arange(self.dim)
        )

    def h(self, x: np.ndarray) -> np.ndarray:
        return rss_difference(
            x[: self.dim],
            self.partition.fingerprint_positions,
            self.partition.source_positions(x),
            self.path_loss_exponents,
        )

    def jacobian(self, x: np.ndarray) -> np.ndarray:
        gradients = rss_difference_jacobian(
            x[: self.dim],
            self.partition.fingerprint_positions,
            self.partition.source_positions(x),
            self.path_loss_exponents,
        )

        J = np.zeros((self.partition.n_measurements, self.partition.n_unknowns))
        J[:, : self.dim] = gradients["position"]
        if len(self._rows) > 0:
            J[self._rows[:, np.newaxis], self._columns] = gradients["source_position"][
                self._rows
            ]
        return J


def _validate_bool(name: str, value) -> bool:
    if not isinstance(value, (bool, np.bool_)):
        raise TypeError(f"{name} must be a bool, got {type(value).__name__}")
    return bool(value)


class FingerprintPositionAndRadioSourceEstimator:
    """
    Estimates a receiver position and unknown radio source positions.

    Configuration is exposed as validated properties. While estimate() is
    running the estimator is locked: every setter and any nested call to
    estimate() raises LockedError. Invalid values raise ValueError or
    TypeError and leave the estimator unchanged.

    Args:
        dim: Dimensionality of positions (2 or 3).
        located_fingerprints: Database of located fingerprints.
        fingerprint: Query fingerprint captured at the unknown position.
        initial_position: Initial guess of the receiver position.
        initial_located_sources: Initial guesses of radio source positions.
        listener: Object notified when estimation starts and ends.
        **options: Any other configuration property, e.g.
            path_loss_exponent=1.8 or method="gn".

    Example:
        >>> estimator = FingerprintPositionAndRadioSourceEstimator(
        ...     dim=2, located_fingerprints=database, fingerprint=query,
        ...     use_no_mean_nearest_fingerprint_finder=False)  # doctest: +SKIP
        >>> estimator.is_ready  # doctest: +SKIP
        True
    """

    _OPTIONS = (
        "path_loss_exponent",
        "use_sources_path_loss_exponent_when_available",
        "use_no_mean_nearest_fingerprint_finder",
        "fallback_rssi_standard_deviation",
        "fingerprint_rssi_standard_deviation_propagated",
        "pathloss_exponent_standard_deviation_propagated",
        "fingerprint_position_covariance_propagated",
        "radio_source_position_covariance_propagated",
        "method",
        "max_iterations",
        "tolerance",
    )

    def __init__(
        self,
        dim: int = 2,
        located_fingerprints: Optional[Sequence[LocatedFingerprint]] = None,
        fingerprint: Optional[Fingerprint] = None,
        initial_position: Optional[np.ndarray] = None,
        initial_located_sources: Optional[Sequence[RadioSource]] = None,
        listener: Optional[FingerprintEstimatorListener] = None,
        **options,
    ):
        if dim not in (2, 3):
            raise ValueError(f"dim must be 2 or 3, got {dim}")
        self._dim = dim
        self._state = EstimatorState.IDLE

        self._located_fingerprints: Optional[List[LocatedFingerprint]] = None
        self._fingerprint: Optional[Fingerprint] = None
        self._initial_position: Optional[np.ndarray] = None
        self._initial_located_sources: Optional[List[RadioSource]] = None
        self._listener = None

        self._min_nearest_fingerprints = UNBOUNDED
        self._max_nearest_fingerprints = UNBOUNDED
        self._path_loss_exponent = DEFAULT_PATH_LOSS_EXPONENT
        self._use_sources_path_loss_exponent_when_available = True
        self._use_no_mean_nearest_fingerprint_finder = True
        self._propagation = PropagationSettings(DEFAULT_FALLBACK_RSSI_STANDARD_DEVIATION)
        self._method = "lm"
        self._max_iterations = DEFAULT_MAX_ITERATIONS
        self._tolerance = DEFAULT_TOLERANCE

        self._result: Optional[FingerprintEstimationResult] = None

        if located_fingerprints is not None:
            self.located_fingerprints = located_fingerprints
        if fingerprint is not None:
            self.fingerprint = fingerprint
        self.initial_position = initial_position
        self.initial_located_sources = initial_located_sources
        self.listener = listener

        min_nearest = options.pop("min_nearest_fingerprints", UNBOUNDED)
        max_nearest = options.pop("max_nearest_fingerprints", UNBOUNDED)
        self.set_min_max_nearest_fingerprints(min_nearest, max_nearest)

        for name, value in options.items():
            if name not in self._OPTIONS:
                raise TypeError(f"Unknown estimator option: {name!r}")
            setattr(self, name, value)

    def _check_unlocked(self) -> None:
        if self._state is EstimatorState.RUNNING:
            raise LockedError()

    # ------------------------------------------------------------------
    # State

    @property
    def dim(self) -> int:
        return self._dim

    @property
    def state(self) -> EstimatorState:
        return self._state

    @property
    def is_locked(self) -> bool:
        return self._state is EstimatorState.RUNNING

    @property
    def is_ready(self) -> bool:
        """True once both located fingerprints and a fingerprint are set."""
        return self._located_fingerprints is not None and self._fingerprint is not None

    # ------------------------------------------------------------------
    # Inputs

    @property
    def located_fingerprints(self) -> Optional[List[LocatedFingerprint]]:
        return self._located_fingerprints

    @located_fingerprints.setter
    def located_fingerprints(self, value: Sequence[LocatedFingerprint]) -> None:
        self._check_unlocked()
        if value is None:
            raise ValueError("located_fingerprints cannot be None")
        value = list(value)
        if not value:
            raise ValueError("located_fingerprints cannot be empty")
        for fingerprint in value:
            if not isinstance(fingerprint, LocatedFingerprint):
                raise TypeError(
                    f"located_fingerprints must contain LocatedFingerprint objects, "
                    f"got {type(fingerprint).__name__}"
                )
            if fingerprint.dim != self._dim:
                raise ValueError(
                    f"located fingerprint has a {fingerprint.dim}D position, "
                    f"expected {self._dim}D"
                )
        if sum(len(fingerprint) for fingerprint in value) < self._dim:
            raise ValueError(
                f"located_fingerprints must contain at least {self._dim} readings"
            )
        self._located_fingerprints = value

    @property
    def fingerprint(self) -> Optional[Fingerprint]:
        return self._fingerprint

    @fingerprint.setter
    def fingerprint(self, value: Fingerprint) -> None:
        self._check_unlocked()
        if value is None:
            raise ValueError("fingerprint cannot be None")
        if not isinstance(value, Fingerprint):
            raise TypeError(f"fingerprint must be a Fingerprint, got {type(value).__name__}")
        self._fingerprint = value

    @property
    def initial_position(self) -> Optional[np.ndarray]:
        return self._initial_position

    @initial_position.setter
    def initial_position(self, value: Optional[np.ndarray]) -> None:
        self._check_unlocked()
        if value is not None:
            value = np.asarray(value, dtype=float)
            if value.shape != (self._dim,):
                raise ValueError(
                    f"initial_position must have shape ({self._dim},), got {value.shape}"
                )
            if not np.all(np.isfinite(value)):
                raise ValueError("initial_position contains non-finite values")
        self._initial_position = value

    @property
    def initial_located_sources(self) -> Optional[List[RadioSource]]:
        return self._initial_located_sources

    @initial_located_sources.setter
    def initial_located_sources(self, value: Optional[Sequence[RadioSource]]) -> None:
        self._check_unlocked()
        if value is not None:
            value = list(value)
            for source in value:
                if not isinstance(source, RadioSource):
                    raise TypeError(
                        f"initial_located_sources must contain RadioSource objects, "
                        f"got {type(source).__name__}"
                    )
                if not source.is_located:
                    raise ValueError(
                        f"initial radio source {source.identifier!r} has no position"
                    )
                if source.dim != self._dim:
                    raise ValueError(
                        f"initial radio source {source.identifier!r} has a "
                        f"{source.dim}D position, expected {self._dim}D"
                    )
        self._initial_located_sources = value

    @property
    def listener(self) -> Optional[FingerprintEstimatorListener]:
        return self._listener

    @listener.setter
    def listener(self, value: Optional[FingerprintEstimatorListener]) -> None:
        self._check_unlocked()
        if value is not None and not (
            callable(getattr(value, "on_estimate_start", None))
            and callable(getattr(value, "on_estimate_end", None))
        ):
            raise TypeError(
                "listener must provide on_estimate_start() and on_estimate_end()"
            )
        self._listener = value

    # ------------------------------------------------------------------
    # Configuration

    @property
    def min_nearest_fingerprints(self) -> int:
        return self._min_nearest_fingerprints

    @property
    def max_nearest_fingerprints(self) -> int:
        return self._max_nearest_fingerprints

    def set_min_max_nearest_fingerprints(self, min_nearest: int, max_nearest: int) -> None:
        """
        Set the bounds on the number of nearest fingerprints.

        Use -1 for both to consider every located fingerprint.

        Raises:
            LockedError: If the estimator is running.
            ValueError: Unless both are -1 or 1 <= min <= max.
        """
        self._check_unlocked()
        validate_nearest_bounds(min_nearest, max_nearest)
        self._min_nearest_fingerprints = int(min_nearest)
        self._max_nearest_fingerprints = int(max_nearest)

    @property
    def path_loss_exponent(self) -> float:
        """Path-loss exponent used for sources without their own."""
        return self._path_loss_exponent

    @path_loss_exponent.setter
    def path_loss_exponent(self, value: float) -> None:
        self._check_unlocked()
        if not value > 0:
            raise ValueError(f"path_loss_exponent must be positive, got {value}")
        self._path_loss_exponent = float(value)

    @property
    def use_sources_path_loss_exponent_when_available(self) -> bool:
        return self._use_sources_path_loss_exponent_when_available

    @use_sources_path_loss_exponent_when_available.setter
    def use_sources_path_loss_exponent_when_available(self, value: bool) -> None:
        self._check_unlocked()
        self._use_sources_path_loss_exponent_when_available = _validate_bool(
            "use_sources_path_loss_exponent_when_available", value
        )

    @property
    def use_no_mean_nearest_fingerprint_finder(self) -> bool:
        return self._use_no_mean_nearest_fingerprint_finder

    @use_no_mean_nearest_fingerprint_finder.setter
    def use_no_mean_nearest_fingerprint_finder(self, value: bool) -> None:
        self._check_unlocked()
        self._use_no_mean_nearest_fingerprint_finder = _validate_bool(
            "use_no_mean_nearest_fingerprint_finder", value
        )

    @property
    def fallback_rssi_standard_deviation(self) -> float:
        return self._propagation.fallback_rssi_standard_deviation

    @fallback_rssi_standard_deviation.setter
    def fallback_rssi_standard_deviation(self, value: float) -> None:
        self._check_unlocked()
        # PropagationSettings validates the value
        self._propagation = PropagationSettings(
            float(value),
            self._propagation.fingerprint_rssi_standard_deviation_propagated,
            self._propagation.pathloss_exponent_standard_deviation_propagated,
            self._propagation.fingerprint_position_covariance_propagated,
            self._propagation.radio_source_position_covariance_propagated,
        )

    @property
    def fingerprint_rssi_standard_deviation_propagated(self) -> bool:
        return self._propagation.fingerprint_rssi_standard_deviation_propagated

    @fingerprint_rssi_standard_deviation_propagated.setter
    def fingerprint_rssi_standard_deviation_propagated(self, value: bool) -> None:
        self._check_unlocked()
        self._propagation.fingerprint_rssi_standard_deviation_propagated = _validate_bool(
            "fingerprint_rssi_standard_deviation_propagated", value
        )

    @property
    def pathloss_exponent_standard_deviation_propagated(self) -> bool:
        return self._propagation.pathloss_exponent_standard_deviation_propagated

    @pathloss_exponent_standard_deviation_propagated.setter
    def pathloss_exponent_standard_deviation_propagated(self, value: bool) -> None:
        self._check_unlocked()
        self._propagation.pathloss_exponent_standard_deviation_propagated = _validate_bool(
            "pathloss_exponent_standard_deviation_propagated", value
        )

    @property
    def fingerprint_position_covariance_propagated(self) -> bool:
        return self._propagation.fingerprint_position_covariance_propagated

    @fingerprint_position_covariance_propagated.setter
    def fingerprint_position_covariance_propagated(self, value: bool) -> None:
        self._check_unlocked()
        self._propagation.fingerprint_position_covariance_propagated = _validate_bool(
            "fingerprint_position_covariance_propagated", value
        )

    @property
    def radio_source_position_covariance_propagated(self) -> bool:
        return self._propagation.radio_source_position_covariance_propagated

    @radio_source_position_covariance_propagated.setter
    def radio_source_position_covariance_propagated(self, value: bool) -> None:
        self._check_unlocked()
        self._propagation.radio_source_position_covariance_propagated = _validate_bool(
            "radio_source_position_covariance_propagated", value
        )

    @property
    def method(self) -> str:
        """Solver: 'lm' (Levenberg-Marquardt) or 'gn' (Gauss-Newton)."""
        return self._method

    @method.setter
    def method(self, value: str) -> None:
        self._check_unlocked()
        if value not in ("lm", "gn"):
            raise ValueError(f"method must be 'lm' or 'gn', got {value!r}")
        self._method = value

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    @max_iterations.setter
    def max_iterations(self, value: int) -> None:
        self._check_unlocked()
        if not isinstance(value, (int, np.integer)) or isinstance(value, bool):
            raise TypeError(f"max_iterations must be an int, got {type(value).__name__}")
        if value < 1:
            raise ValueError(f"max_iterations must be at least 1, got {value}")
        self._max_iterations = int(value)

    @property
    def tolerance(self) -> float:
        return self._tolerance

    @tolerance.setter
    def tolerance(self, value: float) -> None:
        self._check_unlocked()
        if not value > 0:
            raise ValueError(f"tolerance must be positive, got {value}")
        self._tolerance = float(value)

    # ------------------------------------------------------------------
    # Results

    @property
    def result(self) -> Optional[FingerprintEstimationResult]:
        return self._result

    @property
    def estimated_position(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.position

    @property
    def estimated_position_covariance(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.position_covariance

    @property
    def estimated_located_sources(self) -> Optional[List[RadioSource]]:
        return None if self._result is None else self._result.located_sources

    @property
    def covariance(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.covariance

    @property
    def chi_sq(self) -> Optional[float]:
        return None if self._result is None else self._result.chi_sq

    @property
    def nearest_fingerprints(self) -> Optional[NearestFingerprints]:
        return None if self._result is None else self._result.nearest_fingerprints

    # ------------------------------------------------------------------
    # Estimation

    def estimate(self) -> FingerprintEstimationResult:
        """
        Estimate the receiver position and the unknown radio source positions.

        Returns:
            FingerprintEstimationResult, also exposed through the result
            properties until the next successful call.

        Raises:
            LockedError: If an estimation is already running.
            NotReadyError: If located fingerprints or fingerprint are missing.
            FingerprintEstimationError: If no number of nearest fingerprints
                yields a converged solution. Previous results are kept.
        """
        self._check_unlocked()
        if not self.is_ready:
            raise NotReadyError()

        previous = self._result
        self._state = EstimatorState.RUNNING
        try:
            if self._listener is not None:
                self._listener.on_estimate_start(self)

            result = self._estimate_with_increasing_nearest()
            # Visible to on_estimate_end, rolled back if it raises
            self._result = result

            if self._listener is not None:
                self._listener.on_estimate_end(self)
        except Exception:
            self._result = previous
            self._state = EstimatorState.FAILED
            raise

        self._state = EstimatorState.DONE
        return result

    def _nearest_range(self, n_located: int):
        if self._min_nearest_fingerprints == UNBOUNDED:
            return 1, n_located
        max_k = min(self._max_nearest_fingerprints, n_located)
        min_k = max(1, self._min_nearest_fingerprints)
        return min_k, max_k

    def _estimate_with_increasing_nearest(self) -> FingerprintEstimationResult:
        located = self._located_fingerprints
        query = self._fingerprint
        unbounded = self._min_nearest_fingerprints == UNBOUNDED

        ranked = rank_fingerprints(
            query, located, no_mean=self._use_no_mean_nearest_fingerprint_finder
        )
        centroids = source_centroids(located)
        min_k, max_k = self._nearest_range(len(located))

        last_error: Optional[Exception] = None
        for k in range(min_k, max_k + 1):
            nearest = ranked.head(k)
            partition = partition_by_source(
                query,
                nearest.fingerprints,
                self._dim,
                self._path_loss_exponent,
                self._use_sources_path_loss_exponent_when_available,
                self._initial_located_sources,
                centroids,
            )

            # Without bounds, k must cover the receiver and every source
            # estimated from these k fingerprints
            required = self._dim * (1 + partition.layout.n_sources)
            if unbounded and k < required:
                logger.debug(
                    "k=%d: fewer than %d nearest fingerprints for %d sources, skipping",
                    k, required, partition.layout.n_sources,
                )
                continue

            if partition.n_measurements < partition.n_unknowns:
                logger.debug(
                    "k=%d: %d measurements for %d unknowns, skipping",
                    k, partition.n_measurements, partition.n_unknowns,
                )
                continue

            try:
                solution = self._solve(partition, nearest)
            except (np.linalg.LinAlgError, FloatingPointError) as e:
                logger.debug("k=%d: solver failed: %s", k, e)
                last_error = e
                continue

            if not solution.converged or not np.all(np.isfinite(solution.x)):
                logger.debug("k=%d: no convergence after %d iterations", k, solution.iterations)
                last_error = np.linalg.LinAlgError(
                    f"No convergence with {k} nearest fingerprints"
                )
                continue

            result = self._build_result(partition, nearest, solution)
            logger.info(
                "Estimated position %s and %d radio sources from %d nearest "
                "fingerprints (chi_sq=%.3g)",
                np.array2string(result.position, precision=3),
                len(result.located_sources), k, result.chi_sq,
            )
            return result

        raise FingerprintEstimationError(
            f"Estimation failed for every number of nearest fingerprints "
            f"between {min_k} and {max_k}"
        ) from last_error

    def _solve(self, partition: Partition, nearest: NearestFingerprints) -> NonlinearLSResult:
        layout = partition.layout

        if self._initial_position is not None:
            receiver_seed = self._initial_position
        else:
            receiver_seed = np.mean(nearest.positions, axis=0)

        x0 = layout.pack(
            receiver_seed,
            {entry.source: entry.position for entry in partition.unknown_sources},
        )

        # Weights are linearized once around the initial guesses
        variances = residual_variances(
            receiver_seed,
            partition.fingerprint_positions,
            partition.source_positions(),
            partition.path_loss_exponents,
            self._propagation,
            query_rssi_variances=partition.query_rssi_variances,
            fingerprint_rssi_variances=partition.fingerprint_rssi_variances,
            path_loss_exponent_variances=partition.path_loss_exponent_variances,
            fingerprint_position_covariances=partition.fingerprint_position_covariances,
            source_position_covariances=partition.source_position_covariances,
        )

        model = RssiDifferenceModel(partition)
        return solve_nonlinear_ls(
            model.h,
            model.jacobian,
            partition.measured_differences,
            x0,
            weights=residual_weights(variances),
            method=self._method,
            max_iter=self._max_iterations,
            tol=self._tolerance,
        )

    def _build_result(
        self,
        partition: Partition,
        nearest: NearestFingerprints,
        solution: NonlinearLSResult,
    ) -> FingerprintEstimationResult:
        layout = partition.layout
        position_covariance, source_covariances = partition_covariance(
            solution.covariance, self._dim, layout.n_sources
        )

        located_sources = [
            entry.source.located(layout.source_position(solution.x, entry.source).copy(), covariance)
            for entry, covariance in zip(partition.unknown_sources, source_covariances)
        ]

        return FingerprintEstimationResult(
            position=layout.receiver_position(solution.x).copy(),
            position_covariance=position_covariance,
            located_sources=located_sources,
            chi_sq=solution.chi_sq,
            covariance=solution.covariance,
            nearest_fingerprints=nearest,
            iterations=solution.iterations,
            converged=solution.converged,
        )
