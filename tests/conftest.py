import numpy as np
import pytest

from chunkbrain import (
    Hierarchy,
    LayerDesc,
    SerialComputeSystem,
    ThreadPoolComputeSystem,
)


@pytest.fixture
def serial_cs():
    """Single-threaded execution provider."""
    return SerialComputeSystem()


@pytest.fixture
def thread_cs():
    """Thread pool execution provider, shut down after the test."""
    cs = ThreadPoolComputeSystem(num_workers=4, batch_size=1)
    yield cs
    cs.shutdown()


@pytest.fixture
def make_hierarchy():
    """Factory for small single-input hierarchies."""

    def _make(ticks_per_update=(1,), temporal_horizon=None, seed=42, input_size=(4, 4),
              chunk_size=2, width=4, height=4, **desc_overrides):
        horizons = temporal_horizon or [max(2, t) for t in ticks_per_update]
        descs = [
            LayerDesc(width=width, height=height, chunk_size=chunk_size,
                      ticks_per_update=t, temporal_horizon=th, **desc_overrides)
            for t, th in zip(ticks_per_update, horizons)
        ]
        return Hierarchy().create([input_size], [chunk_size], [True], descs, seed=seed)

    return _make


@pytest.fixture
def random_inputs():
    """Deterministic stream of single-input chunk vectors for a 2x2 chunk grid of 4 cells."""

    def _inputs(n, seed=0, num_chunks=4, num_cells=4):
        rng = np.random.default_rng(seed)
        return [[rng.integers(0, num_cells, num_chunks).tolist()] for _ in range(n)]

    return _inputs
