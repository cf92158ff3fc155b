import logging

import numpy as np
import pytest

from lithophane_pipeline import HeightGrid, PanelParameters


@pytest.fixture
def params() -> PanelParameters:
    return PanelParameters(
        max_height=3.0,
        min_height=0.5,
        outer_diameter=100.0,
        inner_diameter=30.0,
        wall_height=5.0,
        wall_distance=40.0,
    )


@pytest.fixture
def uniform_grid():
    def make(resolution: int, value: float = 128.0) -> HeightGrid:
        return HeightGrid(np.full((resolution, resolution), value, dtype=np.float64))

    return make


@pytest.fixture
def random_grid():
    def make(resolution: int, low: float = 0.0, high: float = 200.0, seed: int = 7) -> HeightGrid:
        rng = np.random.default_rng(seed)
        return HeightGrid(rng.uniform(low, high, size=(resolution, resolution)))

    return make


@pytest.fixture(autouse=True)
def reset_lithophane_logger():
    yield
    logger = logging.getLogger("lithophane")
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
