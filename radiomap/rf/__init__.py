"""
RSSI measurement models and uncertainty propagation.

Main components:
    - Log-distance path-loss law
    - RSSI difference model between a receiver and a located fingerprint
    - First-order propagation of RSSI, path-loss exponent and position
      uncertainty into residual variances
"""

from radiomap.rf.measurement_models import (
    DEFAULT_FREQUENCY,
    DEFAULT_PATH_LOSS_EXPONENT,
    MIN_SQUARED_DISTANCE,
    SPEED_OF_LIGHT,
    path_loss_constant_db,
    received_power_dbm,
    rss_difference,
    rss_difference_jacobian,
    simulate_rss_measurement,
)
from radiomap.rf.propagation import (
    DEFAULT_FALLBACK_RSSI_STANDARD_DEVIATION,
    MIN_RSSI_STANDARD_DEVIATION,
    MIN_VARIANCE,
    PropagationSettings,
    partition_covariance,
    propagate_rss_difference_variance,
    quadratic_form,
    residual_variances,
    residual_weights,
)

__all__ = [
    # Measurement models
    "DEFAULT_FREQUENCY",
    "DEFAULT_PATH_LOSS_EXPONENT",
    "MIN_SQUARED_DISTANCE",
    "SPEED_OF_LIGHT",
    "path_loss_constant_db",
    "received_power_dbm",
    "rss_difference",
    "rss_difference_jacobian",
    "simulate_rss_measurement",
    # Propagation
    "DEFAULT_FALLBACK_RSSI_STANDARD_DEVIATION",
    "MIN_RSSI_STANDARD_DEVIATION",
    "MIN_VARIANCE",
    "PropagationSettings",
    "partition_covariance",
    "propagate_rss_difference_variance",
    "quadratic_form",
    "residual_variances",
    "residual_weights",
]
