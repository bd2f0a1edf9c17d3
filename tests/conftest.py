"""
Pytest configuration and shared fixtures.
"""

import pytest
import numpy as np


LIFE_RULES = """
rule life() {
    if (alive) {
        if (neighborsAlive == 4 || neighborsAlive == 5) return 255;
        return 0;
    }
    if (neighborsAlive == 5) return 255;
}
"""


@pytest.fixture
def small_grid_config():
    """Configuration for a 5x5x1 test grid."""
    from mplcore.core import GridConfig
    return GridConfig(nx=5, ny=5, nz=1)


@pytest.fixture
def vm(small_grid_config):
    """Fresh VM over a 5x5x1 grid."""
    from mplcore.core import VM, VMConfig
    return VM(VMConfig(grid=small_grid_config))


@pytest.fixture
def make_vm():
    """Factory for VMs of arbitrary size; keyword options go to VMConfig."""
    from mplcore.core import create_vm

    def _make(nx=5, ny=5, nz=1, **options):
        return create_vm(nx, ny, nz, **options)

    return _make


@pytest.fixture
def life_rules():
    """Birth on 5 neighbours, survive on 4-5."""
    return LIFE_RULES


@pytest.fixture
def rng():
    """Reproducible random number generator."""
    return np.random.default_rng(seed=42)
