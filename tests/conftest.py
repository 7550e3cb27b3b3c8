"""
Shared fixtures: synthetic exposure brackets built in memory.
"""

import numpy as np
import pytest

from api.services.exposure import ExposureItem
from api.services.exposure_store import ExposureStore


def _gray_ramp(height, width, low=0.001, high=0.2):
    ramp = np.linspace(low, high, width, dtype=np.float32)
    plane = np.tile(ramp, (height, 1))
    # vertical variation so the y gradients are not all zero
    plane = plane * np.linspace(0.8, 1.0, height, dtype=np.float32)[:, np.newaxis]
    return np.repeat(plane[..., np.newaxis], 3, axis=2).astype(np.float32)


@pytest.fixture
def gray_scene():
    """Return a factory for a gray HxWx3 radiance ramp."""
    return _gray_ramp


@pytest.fixture
def textured_scene():
    """Return a factory for a reproducible gray texture in [0.2, 0.3]."""
    def factory(height=128, width=128, seed=0):
        rng = np.random.default_rng(seed)
        plane = 0.2 + 0.1 * rng.random((height, width), dtype=np.float32)
        return np.repeat(plane[..., np.newaxis], 3, axis=2).astype(np.float32)
    return factory


@pytest.fixture
def make_item():
    """Return a factory producing ExposureItems of a scene shot at a given EV."""
    def factory(scene, ev=0.0, source=None, bit_depth=16, with_metadata=True):
        frame = np.clip(scene * np.float32(2.0 ** ev), 0.0, 1.0).astype(np.float32)
        return ExposureItem(
            source=source or f"exposure_{ev:+.1f}.tif",
            frame=frame,
            ev=float(ev) if with_metadata else None,
            average_luminance=float(2.0 ** ev) if with_metadata else None,
            bit_depth=bit_depth,
        )
    return factory


@pytest.fixture
def bracket(gray_scene, make_item):
    """Three exposures of a static gray scene at EV -2, 0 and +2."""
    scene = gray_scene(64, 96)
    return scene, [make_item(scene, ev, source=f"shot_{i}.tif") for i, ev in enumerate((-2.0, 0.0, 2.0))]


@pytest.fixture
def dict_store():
    """Return a factory for an ExposureStore whose reader serves items from a dict."""
    stores = []

    def factory(items_by_path):
        def reader(path):
            return items_by_path[path]
        store = ExposureStore(reader=reader, max_workers=4)
        stores.append(store)
        return store

    yield factory
    for store in stores:
        store.close()
