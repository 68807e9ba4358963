"""Synthetic radio map generation."""

from .radio_map import (
    DEFAULT_FREQUENCY,
    DEFAULT_TRANSMITTED_POWER,
    generate_fingerprint,
    generate_located_fingerprints,
    generate_radio_sources,
    grid_positions,
)

__all__ = [
    "DEFAULT_FREQUENCY",
    "DEFAULT_TRANSMITTED_POWER",
    "generate_radio_sources",
    "grid_positions",
    "generate_fingerprint",
    "generate_located_fingerprints",
]
