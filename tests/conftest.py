"""
Shared pytest configuration.
"""

import os
import sys

import numpy as np
import pytest

# Add parent directory to path for src imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
# Add tests directory for the test doubles
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))


@pytest.fixture
def rng():
    """Seeded random generator."""
    return np.random.default_rng(1234)


@pytest.fixture
def point_cloud(rng):
    """Structured cloud: three perpendicular walls with some clutter."""
    n = 150
    wall_x = np.column_stack([np.full(n, 4.0), rng.uniform(-3, 3, n), rng.uniform(0, 2, n)])
    wall_y = np.column_stack([rng.uniform(-3, 3, n), np.full(n, 5.0), rng.uniform(0, 2, n)])
    floor = np.column_stack([rng.uniform(-3, 3, n), rng.uniform(-3, 3, n), np.zeros(n)])
    clutter = rng.uniform(-2, 2, (40, 3))
    return np.vstack([wall_x, wall_y, floor, clutter])
