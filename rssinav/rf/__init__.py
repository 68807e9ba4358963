"""Radio propagation models for RSSI-based positioning."""

from .measurement_models import (
    DEFAULT_PATH_LOSS_EXPONENT,
    SPEED_OF_LIGHT,
    dbm_to_watts,
    distance_from_rssi,
    path_loss_constant,
    received_power,
    rssi_from_distance,
    watts_to_dbm,
)
from .residual_model import TINY, RssiDifferenceModel

__all__ = [
    "DEFAULT_PATH_LOSS_EXPONENT",
    "SPEED_OF_LIGHT",
    "TINY",
    "RssiDifferenceModel",
    "dbm_to_watts",
    "distance_from_rssi",
    "path_loss_constant",
    "received_power",
    "rssi_from_distance",
    "watts_to_dbm",
]
