"""Errors raised by the fingerprint estimators."""


class RadiomapError(Exception):
    """Base class for radiomap errors."""


class LockedError(RadiomapError, RuntimeError):
    """Raised when an estimator is modified or re-entered while estimating."""

    def __init__(self, message: str = "Estimator is locked while estimating"):
        super().__init__(message)


class NotReadyError(RadiomapError, RuntimeError):
    """Raised when estimate() is called before the required inputs are set."""

    def __init__(
        self,
        message: str = "Estimator is not ready: located fingerprints and "
        "fingerprint must be set",
    ):
        super().__init__(message)


class FingerprintEstimationError(RadiomapError):
    """Raised when no number of nearest fingerprints yields an estimate."""
