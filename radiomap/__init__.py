"""Joint RSSI-fingerprint positioning of receivers and radio sources.

This package contains:
- fingerprinting: Fingerprint types, nearest-fingerprint selection and the
  joint position and radio source estimator
- rf: Path-loss measurement models and uncertainty propagation
- estimators: Weighted nonlinear least squares solvers
"""

__version__ = "0.1.0"
