"""
Unit tests for the log-distance path-loss model.

Tests cover:
    - dBm / watts conversions
    - Linear and logarithmic received power agree
    - Distance from RSSI inverts RSSI from distance
"""

import unittest

import numpy as np
from numpy.testing import assert_allclose

from rssinav.rf import (
    SPEED_OF_LIGHT,
    dbm_to_watts,
    distance_from_rssi,
    path_loss_constant,
    received_power,
    rssi_from_distance,
    watts_to_dbm,
)


class TestPowerConversions(unittest.TestCase):
    """Test dBm <-> watts conversions."""

    def test_known_values(self):
        self.assertAlmostEqual(dbm_to_watts(30.0), 1.0)
        self.assertAlmostEqual(dbm_to_watts(0.0), 1e-3)
        self.assertAlmostEqual(watts_to_dbm(1e-3), 0.0)

    def test_arrays(self):
        dbm = np.array([-30.0, 0.0, 20.0])
        assert_allclose(watts_to_dbm(dbm_to_watts(dbm)), dbm)

    def test_non_positive_watts(self):
        with self.assertRaises(ValueError):
            watts_to_dbm(0.0)


class TestLogDistanceModel(unittest.TestCase):
    """Test RSSI prediction and its inverse."""

    def test_path_loss_constant(self):
        """k equals the wavelength over 4π."""
        frequency = 2.4e9
        wavelength = SPEED_OF_LIGHT / frequency
        self.assertAlmostEqual(path_loss_constant(frequency), wavelength / (4 * np.pi))

    def test_rssi_at_ten_meters(self):
        self.assertAlmostEqual(rssi_from_distance(20.0, 10.0, 2.4e9), -40.05, places=2)

    def test_ten_db_per_decade_per_exponent(self):
        """Multiplying distance by 10 loses 10·n dB."""
        for n in (1.5, 2.0, 3.2):
            near = rssi_from_distance(10.0, 3.0, 2.4e9, n)
            far = rssi_from_distance(10.0, 30.0, 2.4e9, n)
            self.assertAlmostEqual(near - far, 10.0 * n)

    def test_linear_and_log_forms_agree(self):
        distances = np.array([1.0, 5.0, 25.0])
        watts = received_power(dbm_to_watts(15.0), distances, 5.0e9, 2.7)
        dbm = rssi_from_distance(15.0, distances, 5.0e9, 2.7)
        assert_allclose(watts_to_dbm(watts), dbm)

    def test_distance_from_rssi_inverts(self):
        distances = np.array([0.5, 4.0, 40.0])
        rssi = rssi_from_distance(18.0, distances, 2.4e9, 2.3)
        assert_allclose(distance_from_rssi(rssi, 18.0, 2.4e9, 2.3), distances)

    def test_invalid_inputs(self):
        with self.assertRaises(ValueError):
            rssi_from_distance(20.0, 0.0, 2.4e9)
        with self.assertRaises(ValueError):
            path_loss_constant(-1.0)
        with self.assertRaises(ValueError):
            distance_from_rssi(-50.0, 20.0, 2.4e9, 0.0)


if __name__ == "__main__":
    unittest.main()
