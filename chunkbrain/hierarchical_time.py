"""
Hierarchical Time Scales

Implements:
- Multi-rate layer clocks (each layer ticks once per update of the layer below)
- Reward integration across a layer's update period
- Fixed-depth input histories per layer

Key insight: a layer that fires once every `ticks_per_update` ticks of
the layer below sees a coarser view of time. Stacking clocks gives each
level of the hierarchy its own temporal resolution, and the bottom of
the stack stays cheap because upper layers are mostly idle.
"""

import numpy as np
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import List, Sequence

from .sparse_chunks import zero_code


class ClockState(Enum):
    """Phase of a layer clock"""
    WAITING = "waiting"   # counting ticks of the layer below
    FIRING = "firing"     # due: running its encode-decode-learn cycle


@dataclass
class LayerClock:
    """
    Tick counter gating one layer.

    WAITING -> FIRING when the counter reaches ticks_per_update (the
    counter resets to zero at that moment), FIRING -> WAITING once the
    layer's cycle has completed.
    """
    ticks_per_update: int
    ticks: int = 0
    state: ClockState = ClockState.WAITING

    def tick(self) -> bool:
        """Advance one tick. Returns True when the layer is due."""
        self.ticks += 1
        if self.ticks >= self.ticks_per_update:
            self.ticks = 0
            self.state = ClockState.FIRING
            return True
        return False

    def complete(self) -> None:
        self.state = ClockState.WAITING


@dataclass
class RewardAccumulator:
    """Running sum of rewards seen since the layer last fired."""
    total: float = 0.0
    count: int = 0

    def add(self, reward: float) -> None:
        self.total += float(reward)
        self.count += 1

    def consume(self) -> float:
        """Return the mean reward and reset. Zero if nothing accumulated."""
        mean = self.total / self.count if self.count > 0 else 0.0
        self.total = 0.0
        self.count = 0
        return mean


class ChunkHistory:
    """
    Input history of one layer.

    One FIFO per stream, each exactly `horizon` chunk vectors deep and
    zero-filled at creation. Offset 0 is the newest entry. The flattened
    view is stream-major, matching the layer's visible-layer indexing
    `stream * horizon + offset`.
    """

    def __init__(self, horizon: int, stream_chunks: Sequence[int]):
        self.horizon = horizon
        self.stream_chunks = list(stream_chunks)
        self._streams: List[deque] = [
            deque((zero_code(n) for _ in range(horizon)), maxlen=horizon)
            for n in self.stream_chunks
        ]

    @property
    def num_streams(self) -> int:
        return len(self._streams)

    def push(self, stream: int, code: np.ndarray) -> None:
        """Insert a new newest entry, evicting the oldest."""
        self._streams[stream].appendleft(np.array(code, dtype=np.int64, copy=True))

    def codes(self) -> List[np.ndarray]:
        """Flattened history (live arrays, do not mutate)."""
        return [code for stream in self._streams for code in stream]

    def snapshot(self) -> List[np.ndarray]:
        return [code.copy() for code in self.codes()]

    def restore(self, codes: Sequence[np.ndarray]) -> None:
        """Replace the contents from a flattened snapshot."""
        if len(codes) != self.num_streams * self.horizon:
            raise ValueError(
                f"history needs {self.num_streams * self.horizon} entries, got {len(codes)}"
            )
        for s, n in enumerate(self.stream_chunks):
            entries = codes[s * self.horizon:(s + 1) * self.horizon]
            for code in entries:
                if np.shape(code) != (n,):
                    raise ValueError(f"history entry for stream {s} must have {n} chunks")
            self._streams[s] = deque(
                (np.array(code, dtype=np.int64, copy=True) for code in entries),
                maxlen=self.horizon,
            )

    def __len__(self) -> int:
        return self.num_streams * self.horizon
