"""Unit tests for synthetic radio map generation."""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from rssinav.fingerprinting import LocatedFingerprint
from rssinav.rf import rssi_from_distance
from rssinav.sim import (
    DEFAULT_TRANSMITTED_POWER,
    generate_fingerprint,
    generate_located_fingerprints,
    generate_radio_sources,
    grid_positions,
)


class TestRadioSources:
    def test_perimeter_layout(self):
        sources = generate_radio_sources(4, area_size=(50.0, 40.0), margin=2.0)

        assert [s.identifier for s in sources] == ["AP1", "AP2", "AP3", "AP4"]
        assert_allclose(sources[0].position, [-2.0, -2.0])
        assert_allclose(sources[2].position, [52.0, 42.0])
        assert all(s.transmitted_power == DEFAULT_TRANSMITTED_POWER for s in sources)

    def test_perimeter_limit(self):
        with pytest.raises(ValueError):
            generate_radio_sources(9)

    def test_random_layout_is_reproducible(self):
        a = generate_radio_sources(6, layout="random", rng=np.random.default_rng(1))
        b = generate_radio_sources(6, layout="random", rng=np.random.default_rng(1))

        assert_allclose([s.position for s in a], [s.position for s in b])
        assert all(0.0 <= s.position[0] <= 50.0 for s in a)

    def test_unknown_layout(self):
        with pytest.raises(ValueError):
            generate_radio_sources(3, layout="spiral")


class TestFingerprints:
    def test_grid(self):
        grid = grid_positions((10.0, 5.0), grid_spacing=5.0)

        assert grid.shape == (6, 2)
        assert len(grid_positions()) == 121

    def test_noiseless_readings_follow_model(self):
        sources = generate_radio_sources(3)
        position = np.array([10.0, 20.0])

        fp = generate_fingerprint(position, sources)

        for reading, located in zip(fp, sources):
            distance = np.linalg.norm(position - located.position)
            assert reading.rssi == pytest.approx(
                rssi_from_distance(DEFAULT_TRANSMITTED_POWER, distance, located.frequency)
            )
            assert reading.rssi_std is None

    def test_bias_and_noise(self):
        sources = generate_radio_sources(3)
        position = np.array([10.0, 20.0])
        clean = generate_fingerprint(position, sources)

        biased = generate_fingerprint(position, sources, bias=4.0, rssi_std=2.0)
        noisy = generate_fingerprint(
            position, sources, noise_std=2.0, rng=np.random.default_rng(0)
        )

        assert_allclose(
            [r.rssi for r in biased], [r.rssi + 4.0 for r in clean]
        )
        assert all(r.rssi_std == 2.0 for r in biased)
        assert not np.allclose([r.rssi for r in noisy], [r.rssi for r in clean])

    def test_located_fingerprints(self):
        sources = generate_radio_sources(4)
        positions = grid_positions((10.0, 10.0), 5.0)

        radio_map = generate_located_fingerprints(
            positions, sources, position_covariance=0.5 * np.eye(2)
        )

        assert len(radio_map) == 9
        assert all(isinstance(fp, LocatedFingerprint) for fp in radio_map)
        assert all(len(fp) == 4 for fp in radio_map)
        assert_allclose(radio_map[4].position, positions[4])
        assert_allclose(radio_map[0].position_covariance, 0.5 * np.eye(2))
