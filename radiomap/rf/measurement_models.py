"""
RSSI measurement models for fingerprint-based positioning.

This module implements the log-distance path-loss law used to relate the
received signal strength of a radio source to the distance between the
source and a receiver, together with the RSSI *difference* model used by the
joint fingerprint estimator.

Received power (free-space law generalized to an exponent n):
    Pr(x) = Ptx - 10·n·log10(‖x - s‖) + C(f, n)
    C(f, n) = 10·n·log10(c / (4·π·f))

where Ptx is the equivalent transmitted power in dBm, s the source position,
f the carrier frequency and c the speed of light.

Comparing the power read at an unknown position p against the power read at
a fingerprint position f for the same source, both Ptx and C cancel:
    ΔPr = Pr(p) - Pr(f) = 10·n·log10(‖f - s‖ / ‖p - s‖)
        = 5·n·(log10(‖f - s‖²) - log10(‖p - s‖²))
"""

from typing import Dict, Optional, Union

import numpy as np

# Physical constants
SPEED_OF_LIGHT = 299792458.0  # m/s

# 2.4 GHz ISM band (WiFi / BLE)
DEFAULT_FREQUENCY = 2.4e9  # Hz

DEFAULT_PATH_LOSS_EXPONENT = 2.0

# Floor applied to squared distances to keep log10 finite
MIN_SQUARED_DISTANCE = 1e-12

ArrayLike = Union[float, np.ndarray]


def path_loss_constant_db(
    path_loss_exp: float = DEFAULT_PATH_LOSS_EXPONENT,
    frequency: float = DEFAULT_FREQUENCY,
) -> float:
    """
    Compute the frequency dependent term C(f, n) of the path-loss law.

        C(f, n) = 10·n·log10(c / (4·π·f))

    Args:
        path_loss_exp: Path-loss exponent n. Defaults to 2.0 (free space).
        frequency: Carrier frequency in Hz. Defaults to 2.4 GHz.

    Returns:
        Constant term in dB.

    Example:
        >>> round(path_loss_constant_db(2.0, 2.4e9), 2)
        -40.05
    """
    if frequency <= 0:
        raise ValueError(f"frequency must be positive, got {frequency}")
    return 10.0 * path_loss_exp * np.log10(SPEED_OF_LIGHT / (4.0 * np.pi * frequency))


def received_power_dbm(
    tx_power_dbm: float,
    distance: float,
    path_loss_exp: float = DEFAULT_PATH_LOSS_EXPONENT,
    frequency: float = DEFAULT_FREQUENCY,
) -> float:
    """
    Compute received power using the log-distance path-loss law.

        Pr = Ptx - 10·n·log10(d) + C(f, n)

    Args:
        tx_power_dbm: Equivalent transmitted power in dBm (including gains).
        distance: Distance between source and receiver in meters.
        path_loss_exp: Path-loss exponent n. Defaults to 2.0 (free space).
                      Typical indoor values: 1.6-4.0.
        frequency: Carrier frequency in Hz. Defaults to 2.4 GHz.

    Returns:
        Received signal strength in dBm.

    Example:
        >>> # 0 dBm source heard 10 m away in free space at 2.4 GHz
        >>> rss = received_power_dbm(0.0, 10.0)
        >>> print(f"RSS: {rss:.2f} dBm")
        RSS: -60.05 dBm
    """
    if distance <= 0:
        raise ValueError("Distance must be positive")

    return (
        tx_power_dbm
        - 10.0 * path_loss_exp * np.log10(distance)
        + path_loss_constant_db(path_loss_exp, frequency)
    )


def rss_difference(
    position: np.ndarray,
    fingerprint_position: np.ndarray,
    source_position: np.ndarray,
    path_loss_exp: ArrayLike = DEFAULT_PATH_LOSS_EXPONENT,
) -> np.ndarray:
    """
    Predict the RSSI difference between a position and a fingerprint position.

        ΔPr = Pr(p) - Pr(f) = 5·n·(log10(‖f - s‖²) - log10(‖p - s‖²))

    All position arguments broadcast against each other, so a single receiver
    position can be compared against many (fingerprint, source) pairs at once.

    Args:
        position: Receiver position p, shape (d,) or (m, d).
        fingerprint_position: Fingerprint position f, shape (d,) or (m, d).
        source_position: Radio source position s, shape (d,) or (m, d).
        path_loss_exp: Path-loss exponent n, scalar or shape (m,).

    Returns:
        Predicted RSSI difference in dB, shape () or (m,).

    Example:
        >>> # Receiver twice as close to the source as the fingerprint
        >>> diff = rss_difference(np.array([1.0, 0.0]), np.array([2.0, 0.0]),
        ...                       np.array([0.0, 0.0]), 2.0)
        >>> print(f"{float(diff):.2f} dB")
        6.02 dB
    """
    p = np.asarray(position, dtype=float)
    f = np.asarray(fingerprint_position, dtype=float)
    s = np.asarray(source_position, dtype=float)
    n = np.asarray(path_loss_exp, dtype=float)

    d_f2 = np.maximum(np.sum((f - s) ** 2, axis=-1), MIN_SQUARED_DISTANCE)
    d_p2 = np.maximum(np.sum((p - s) ** 2, axis=-1), MIN_SQUARED_DISTANCE)

    return 5.0 * n * (np.log10(d_f2) - np.log10(d_p2))


def rss_difference_jacobian(
    position: np.ndarray,
    fingerprint_position: np.ndarray,
    source_position: np.ndarray,
    path_loss_exp: ArrayLike = DEFAULT_PATH_LOSS_EXPONENT,
) -> Dict[str, np.ndarray]:
    """
    Partial derivatives of the RSSI difference model.

        ∂ΔPr/∂p = -10·n·(p - s) / (ln10·‖p - s‖²)
        ∂ΔPr/∂f =  10·n·(f - s) / (ln10·‖f - s‖²)
        ∂ΔPr/∂s = -∂ΔPr/∂f - ∂ΔPr/∂p
        ∂ΔPr/∂n =  5·(log10(‖f - s‖²) - log10(‖p - s‖²))

    Args:
        position: Receiver position p, shape (d,) or (m, d).
        fingerprint_position: Fingerprint position f, shape (d,) or (m, d).
        source_position: Radio source position s, shape (d,) or (m, d).
        path_loss_exp: Path-loss exponent n, scalar or shape (m,).

    Returns:
        Dictionary with keys:
            - 'position': ∂ΔPr/∂p, shape (..., d)
            - 'fingerprint_position': ∂ΔPr/∂f, shape (..., d)
            - 'source_position': ∂ΔPr/∂s, shape (..., d)
            - 'path_loss_exponent': ∂ΔPr/∂n, shape (...)
    """
    p = np.asarray(position, dtype=float)
    f = np.asarray(fingerprint_position, dtype=float)
    s = np.asarray(source_position, dtype=float)
    n = np.asarray(path_loss_exp, dtype=float)

    diff_f = f - s
    diff_p = p - s
    d_f2 = np.maximum(np.sum(diff_f**2, axis=-1), MIN_SQUARED_DISTANCE)
    d_p2 = np.maximum(np.sum(diff_p**2, axis=-1), MIN_SQUARED_DISTANCE)

    ln10 = np.log(10.0)
    scale_f = (10.0 * n / (ln10 * d_f2))[..., np.newaxis]
    scale_p = (10.0 * n / (ln10 * d_p2))[..., np.newaxis]

    d_fingerprint = scale_f * diff_f
    d_position = -scale_p * diff_p
    d_source = -d_fingerprint - d_position

    return {
        "position": d_position,
        "fingerprint_position": d_fingerprint,
        "source_position": d_source,
        "path_loss_exponent": 5.0 * (np.log10(d_f2) - np.log10(d_p2)),
    }


def simulate_rss_measurement(
    source_pos: np.ndarray,
    receiver_pos: np.ndarray,
    tx_power_dbm: float,
    path_loss_exp: float = DEFAULT_PATH_LOSS_EXPONENT,
    frequency: float = DEFAULT_FREQUENCY,
    sigma_db: float = 0.0,
    bias_db: float = 0.0,
    rng: Optional[np.random.Generator] = None,
) -> float:
    """
    Simulate an RSSI reading with Gaussian shadowing and a constant bias.

        p̃ = Pr(‖receiver - source‖) + b + ω,   ω ~ N(0, σ²)

    Args:
        source_pos: Radio source position [x, y] or [x, y, z] in meters.
        receiver_pos: Receiver position [x, y] or [x, y, z] in meters.
        tx_power_dbm: Equivalent transmitted power in dBm.
        path_loss_exp: Path-loss exponent n. Defaults to 2.0.
        frequency: Carrier frequency in Hz. Defaults to 2.4 GHz.
        sigma_db: Std dev of the Gaussian noise in dB. Defaults to 0.0.
        bias_db: Constant offset added to the reading (receiver gain). Defaults to 0.0.
        rng: Optional numpy random Generator. Uses np.random when None.

    Returns:
        Simulated RSSI in dBm.

    Example:
        >>> rng = np.random.default_rng(42)
        >>> rss = simulate_rss_measurement(
        ...     np.array([0.0, 0.0]), np.array([10.0, 0.0]),
        ...     tx_power_dbm=0.0, sigma_db=1.0, rng=rng)
    """
    source_pos = np.asarray(source_pos, dtype=float)
    receiver_pos = np.asarray(receiver_pos, dtype=float)

    if source_pos.shape != receiver_pos.shape:
        raise ValueError(
            f"Source and receiver positions must have same shape: "
            f"{source_pos.shape} vs {receiver_pos.shape}"
        )
    if sigma_db < 0:
        raise ValueError(f"sigma_db must be non-negative, got {sigma_db}")

    distance = np.linalg.norm(receiver_pos - source_pos)
    if distance <= 0:
        raise ValueError("Receiver and source positions must be different")

    rss = received_power_dbm(tx_power_dbm, distance, path_loss_exp, frequency)

    if sigma_db > 0:
        noise = rng.normal(0.0, sigma_db) if rng is not None else np.random.randn() * sigma_db
        rss += noise

    return float(rss + bias_db)
