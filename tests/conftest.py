"""
Pytest Configuration
====================

Shared fixtures for testing.
"""

import logging

import numpy as np
import pytest

from quantcore import logging_config
from quantcore.logging_config import MODULE_LOG_LEVELS
from quantcore.random_variates import VariateGenerator


@pytest.fixture
def variates():
    """Seeded variate generator."""
    return VariateGenerator(seed=42)


@pytest.fixture
def sample_returns():
    """Daily returns: a calm uptrend followed by a volatile stretch."""
    rng = np.random.default_rng(7)
    calm = rng.normal(0.002, 0.008, 120)
    volatile = rng.normal(0.0, 0.03, 60)
    return np.concatenate([calm, volatile])


@pytest.fixture
def test_config():
    """Small engine configuration for fast tests."""
    return {
        "seed": 123,
        "monte_carlo": {
            "n_paths": 20000,
            "n_strata": 10,
            "chunk_size": 5000,
            "n_workers": 2,
        },
        "particle_filter": {
            "n_particles": 1000,
        },
        "anomaly": {
            "method": "zscore",
            "window_size": 50,
        },
        "copula": {
            "family": "student_t",
            "nu": 4,
            "n_samples": 20000,
        },
        "regime": {
            "n_iterations": 5,
        },
    }


@pytest.fixture
def restore_logging():
    """Undo configure_logging: root handlers, module levels and the applied config."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    root_level = root.level
    module_levels = {name: logging.getLogger(name).level for name in MODULE_LOG_LEVELS}
    previous = logging_config._logging_config

    yield

    root.handlers[:] = handlers
    root.setLevel(root_level)
    for name, level in module_levels.items():
        logging.getLogger(name).setLevel(level)
    logging_config._logging_config = previous
