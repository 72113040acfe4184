"""
First-order uncertainty propagation for the RSSI difference model.

The joint fingerprint estimator weights each RSSI-difference residual by the
inverse of its variance. That variance is the sum of every enabled
contribution:

    σ²_r = σ²_rssi                       (query + fingerprint readings)
         + (∂ΔPr/∂n)² σ²_n               (path-loss exponent)
         + g_f' Σ_f g_f                  (fingerprint position)
         + g_s' Σ_s g_s                  (radio source position)

where g_f and g_s are the gradients of the RSSI difference with respect to
the fingerprint and source positions (see rss_difference_jacobian). The
gradients are linearization points only, so they are evaluated once at the
initial receiver and source positions.

After the solve, the inverse of the information matrix J'WJ is partitioned
back into one block per estimated entity.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

import numpy as np

from .measurement_models import rss_difference, rss_difference_jacobian

# Smallest standard deviation and variance treated as informative
MIN_RSSI_STANDARD_DEVIATION = 1e-12
MIN_VARIANCE = 1e-12

# Used when readings carry no RSSI standard deviation
DEFAULT_FALLBACK_RSSI_STANDARD_DEVIATION = 1e-3


@dataclass
class PropagationSettings:
    """
    Which uncertainty contributions are propagated into residual weights.

    Attributes:
        fallback_rssi_standard_deviation: RSSI standard deviation (dB) used
            when no other contribution is available.
        fingerprint_rssi_standard_deviation_propagated: Use the standard
            deviations attached to readings.
        pathloss_exponent_standard_deviation_propagated: Propagate the
            path-loss exponent standard deviation of the radio sources.
        fingerprint_position_covariance_propagated: Propagate the position
            covariance of located fingerprints.
        radio_source_position_covariance_propagated: Propagate the position
            covariance of located radio sources.
    """

    fallback_rssi_standard_deviation: float = DEFAULT_FALLBACK_RSSI_STANDARD_DEVIATION
    fingerprint_rssi_standard_deviation_propagated: bool = True
    pathloss_exponent_standard_deviation_propagated: bool = True
    fingerprint_position_covariance_propagated: bool = True
    radio_source_position_covariance_propagated: bool = True

    def __post_init__(self) -> None:
        if not self.fallback_rssi_standard_deviation >= MIN_RSSI_STANDARD_DEVIATION:
            raise ValueError(
                f"fallback_rssi_standard_deviation must be at least "
                f"{MIN_RSSI_STANDARD_DEVIATION}, got {self.fallback_rssi_standard_deviation}"
            )

    @property
    def fallback_variance(self) -> float:
        return self.fallback_rssi_standard_deviation**2


def quadratic_form(gradient: np.ndarray, covariance: np.ndarray) -> np.ndarray:
    """Batched g' Σ g for gradients (..., d) and covariances (..., d, d)."""
    return np.einsum("...i,...ij,...j->...", gradient, covariance, gradient)


def propagate_rss_difference_variance(
    position: np.ndarray,
    fingerprint_position: np.ndarray,
    source_position: np.ndarray,
    path_loss_exp: Union[float, np.ndarray],
    path_loss_exponent_variance: Optional[Union[float, np.ndarray]] = None,
    fingerprint_position_covariance: Optional[np.ndarray] = None,
    source_position_covariance: Optional[np.ndarray] = None,
    position_covariance: Optional[np.ndarray] = None,
):
    """
    Mean and variance of the predicted RSSI difference.

    The inputs (n, f, s, p) are treated as independent Gaussian variables
    and their uncertainty is propagated to first order:

        σ² = (∂ΔPr/∂n)² σ²_n + g_f' Σ_f g_f + g_s' Σ_s g_s + g_p' Σ_p g_p

    Missing uncertainties are taken as zero. Positions broadcast as in
    rss_difference, so one receiver can be paired with m (fingerprint,
    source) tuples; covariances are then (d, d) or stacks (m, d, d).

    Args:
        position: Receiver position p, shape (d,) or (m, d).
        fingerprint_position: Fingerprint position f, shape (d,) or (m, d).
        source_position: Radio source position s, shape (d,) or (m, d).
        path_loss_exp: Path-loss exponent n, scalar or shape (m,).
        path_loss_exponent_variance: Variance of n, scalar or shape (m,).
        fingerprint_position_covariance: Covariance of f.
        source_position_covariance: Covariance of s.
        position_covariance: Covariance of p.

    Returns:
        Tuple (mean, variance) of the predicted RSSI difference in dB:
        floats for a single tuple, arrays of shape (m,) otherwise.

    Example:
        >>> mean, var = propagate_rss_difference_variance(
        ...     np.array([1.0, 0.0]), np.array([2.0, 0.0]), np.array([0.0, 0.0]),
        ...     2.0, path_loss_exponent_variance=0.01)
        >>> print(f"{mean:.2f} dB, {var:.4f} dB^2")
        6.02 dB, 0.0906 dB^2
    """
    gradients = rss_difference_jacobian(
        position, fingerprint_position, source_position, path_loss_exp
    )

    variance = np.zeros(np.shape(gradients["path_loss_exponent"]))
    if path_loss_exponent_variance is not None:
        variance = variance + gradients["path_loss_exponent"] ** 2 * np.asarray(
            path_loss_exponent_variance, dtype=float
        )
    for key, covariance in (
        ("fingerprint_position", fingerprint_position_covariance),
        ("source_position", source_position_covariance),
        ("position", position_covariance),
    ):
        if covariance is not None:
            variance = variance + quadratic_form(
                gradients[key], np.asarray(covariance, dtype=float)
            )

    mean = rss_difference(position, fingerprint_position, source_position, path_loss_exp)
    if np.ndim(variance) == 0:
        return float(mean), float(variance)
    return mean, variance


def residual_variances(
    position: np.ndarray,
    fingerprint_positions: np.ndarray,
    source_positions: np.ndarray,
    path_loss_exponents: np.ndarray,
    settings: PropagationSettings,
    query_rssi_variances: Optional[np.ndarray] = None,
    fingerprint_rssi_variances: Optional[np.ndarray] = None,
    path_loss_exponent_variances: Optional[np.ndarray] = None,
    fingerprint_position_covariances: Optional[np.ndarray] = None,
    source_position_covariances: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Variance of every RSSI-difference residual.

    Variance arrays use NaN for readings without a standard deviation; the
    covariance stacks use zero blocks for positions without a covariance.

    Args:
        position: Receiver linearization point, shape (d,).
        fingerprint_positions: Fingerprint positions, shape (m, d).
        source_positions: Radio source linearization points, shape (m, d).
        path_loss_exponents: Path-loss exponents, shape (m,).
        settings: Enabled contributions and fallback RSSI deviation.
        query_rssi_variances: Query RSSI variances, shape (m,).
        fingerprint_rssi_variances: Fingerprint RSSI variances, shape (m,).
        path_loss_exponent_variances: Path-loss exponent variances, shape (m,).
        fingerprint_position_covariances: Fingerprint covariances, (m, d, d).
        source_position_covariances: Source position covariances, (m, d, d).

    Returns:
        Residual variances, shape (m,), all at least MIN_VARIANCE.
    """
    fingerprint_positions = np.asarray(fingerprint_positions, dtype=float)
    m = fingerprint_positions.shape[0]
    fallback = settings.fallback_variance

    # RSSI contribution: explicit reading variances, else the fallback
    rssi = np.full(m, fallback)
    if settings.fingerprint_rssi_standard_deviation_propagated:
        explicit = np.zeros(m)
        present = np.zeros(m, dtype=bool)
        for variances in (query_rssi_variances, fingerprint_rssi_variances):
            if variances is None:
                continue
            variances = np.asarray(variances, dtype=float)
            known = ~np.isnan(variances)
            explicit[known] += variances[known]
            present |= known
        rssi[present] = explicit[present]

    variances = rssi

    if m > 0:
        use_exponent = settings.pathloss_exponent_standard_deviation_propagated
        use_fingerprint = settings.fingerprint_position_covariance_propagated
        use_source = settings.radio_source_position_covariance_propagated

        n_var = None
        if use_exponent and path_loss_exponent_variances is not None:
            n_var = np.nan_to_num(np.asarray(path_loss_exponent_variances, dtype=float))

        _, propagated = propagate_rss_difference_variance(
            position,
            fingerprint_positions,
            source_positions,
            path_loss_exponents,
            path_loss_exponent_variance=n_var,
            fingerprint_position_covariance=(
                fingerprint_position_covariances if use_fingerprint else None
            ),
            source_position_covariance=source_position_covariances if use_source else None,
        )
        variances = variances + propagated

    # Degenerate variances fall back to the default RSSI deviation
    variances = np.where(
        np.isfinite(variances) & (variances >= MIN_VARIANCE), variances, fallback
    )
    return np.maximum(variances, MIN_VARIANCE)


def residual_weights(variances: np.ndarray) -> np.ndarray:
    """Inverse-variance weights, w = 1/σ²."""
    return 1.0 / np.asarray(variances, dtype=float)


def partition_covariance(
    covariance: Optional[np.ndarray], dim: int, n_sources: int
) -> Tuple[Optional[np.ndarray], List[Optional[np.ndarray]]]:
    """
    Split the covariance of [p, s_1, ..., s_k] into per-entity blocks.

    Args:
        covariance: Covariance of the unknown vector, shape
            (d(1+k), d(1+k)), or None if unavailable.
        dim: Dimensionality d of each position.
        n_sources: Number k of estimated radio sources.

    Returns:
        Tuple (receiver covariance, list of source covariances). Every block
        is None when the covariance is unavailable.
    """
    if covariance is None:
        return None, [None] * n_sources

    size = dim * (1 + n_sources)
    if covariance.shape != (size, size):
        raise ValueError(
            f"covariance must have shape ({size}, {size}), got {covariance.shape}"
        )

    blocks = [
        covariance[i * dim : (i + 1) * dim, i * dim : (i + 1) * dim].copy()
        for i in range(1 + n_sources)
    ]
    return blocks[0], blocks[1:]
