"""RSSI fingerprint positioning.

This package contains:
- rf: Log-distance path-loss model and RSSI-difference residual model
- estimators: Gauss-Newton / Levenberg-Marquardt least squares
- fingerprinting: Data model, nearest-fingerprint search and estimators
- eval: Error metrics and accuracy radius
- sim: Synthetic radio maps
"""

__version__ = "0.1.0"
