"""
Examples for joint receiver and radio source estimation.

Provides:
    - Joint estimation on a synthetic radio map, with and without a
      receiver gain offset

Author: Navigation Engineer
Date: 2024
"""

__all__ = []
