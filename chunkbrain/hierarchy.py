"""
Sparse Predictive Hierarchy
===========================

A stack of sparse predictive layers driven by multi-rate clocks.

THE STEP LOOP:
1. Each input chunk vector is pushed into layer 0's history
2. The reward is added to every layer's accumulator
3. Layers are visited bottom-up. A layer whose clock comes due runs its
   encode-decode-learn cycle on its history and the mean reward since it
   last fired, then pushes its hidden code into the next layer's history.
   The first layer that is not due ends the pass.
4. get_prediction(i) reads layer 0's nearest-term prediction of input i

Layer l+1 therefore updates once per ticks_per_update of layer l, so
each level abstracts over a longer stretch of time than the one below.
With a reward signal (delta > 0) the decoders become Q-learners and the
predicted inputs can be used as actions.
"""

import logging
import numpy as np
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .compute import ComputeSystem, SerialComputeSystem
from .errors import ConfigurationError, ContractViolation, PersistenceError
from .hierarchical_time import ChunkHistory, LayerClock, RewardAccumulator
from .layer import Layer, LayerView, VisibleLayerDesc
from .persistence import HierarchyPersistence
from .sparse_chunks import as_code, chunk_grid

logger = logging.getLogger(__name__)


# =============================================================================
# LAYER CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class LayerDesc:
    """
    Parameters for one layer of the hierarchy.

    Extents are in cells; a chunk holds chunk_size**2 cells of which
    exactly one is active. Radii are in chunks.
    """
    # ==========================================================================
    # GEOMETRY
    # ==========================================================================
    width: int = 36
    height: int = 36
    chunk_size: int = 6
    forward_radius: int = 9
    backward_radius: int = 9

    # ==========================================================================
    # TIMING
    # ==========================================================================
    ticks_per_update: int = 2  # Ticks of the layer below per update of this one
    temporal_horizon: int = 2  # History depth, >= ticks_per_update

    # ==========================================================================
    # LEARNING RATES
    # ==========================================================================
    alpha: float = 0.01  # Encoder (feed forward)
    beta: float = 0.05  # Decoder predictive correction
    delta: float = 0.0  # Q-value correction, 0 disables reward-driven learning
    gamma: float = 0.99  # Q discount and trace decay
    trace_cutoff: float = 0.01  # Traces below this are dropped
    epsilon: float = 0.01  # Exploration rate while Q learning is active

    @property
    def chunks(self) -> Tuple[int, int]:
        return chunk_grid(self.width, self.height, self.chunk_size)

    @property
    def cells_per_chunk(self) -> int:
        return self.chunk_size * self.chunk_size

    def validate(self) -> None:
        """Raise ConfigurationError if the description is unusable."""
        if self.chunk_size < 1:
            raise ConfigurationError(f"chunk_size must be >= 1, got {self.chunk_size}")
        if self.width < 1 or self.height < 1:
            raise ConfigurationError(f"layer extent must be positive, got {self.width}x{self.height}")
        if self.width % self.chunk_size or self.height % self.chunk_size:
            raise ConfigurationError(
                f"layer extent {self.width}x{self.height} is not a multiple of chunk_size {self.chunk_size}"
            )
        if self.forward_radius < 0 or self.backward_radius < 0:
            raise ConfigurationError("receptive radii must be >= 0")
        if self.ticks_per_update < 1:
            raise ConfigurationError(f"ticks_per_update must be >= 1, got {self.ticks_per_update}")
        if self.temporal_horizon < self.ticks_per_update:
            raise ConfigurationError(
                f"temporal_horizon ({self.temporal_horizon}) must be >= "
                f"ticks_per_update ({self.ticks_per_update})"
            )
        for name in ('alpha', 'beta', 'delta', 'gamma', 'trace_cutoff', 'epsilon'):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must lie in [0, 1], got {value}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LayerDesc':
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"unknown LayerDesc fields: {sorted(unknown)}")
        return cls(**data)


# =============================================================================
# HIERARCHY
# =============================================================================

class Hierarchy:
    """
    Hierarchy of sparse predictive layers, or an agent when reward is supplied.

    Usage:
        h = Hierarchy().create([(4, 4)], [2], [True], [LayerDesc(width=4, height=4, chunk_size=2)], seed=42)
        h.step([[0, 1, 2, 3]])
        h.get_prediction(0)
    """

    SNAPSHOT_MAGIC = "chunkbrain-hierarchy"

    def __init__(self):
        self._layers: List[Layer] = []
        self._layer_descs: List[LayerDesc] = []
        self._clocks: List[LayerClock] = []
        self._rewards: List[RewardAccumulator] = []
        self._histories: List[ChunkHistory] = []
        self._update_counts: List[int] = []

        self._input_sizes: List[Tuple[int, int]] = []
        self._input_chunk_sizes: List[int] = []
        self._predict_inputs: List[bool] = []

        self._serial = SerialComputeSystem()

    # ==========================================================================
    # CREATION
    # ==========================================================================

    def create(
        self,
        input_sizes: Sequence[Tuple[int, int]],
        input_chunk_sizes: Sequence[int],
        predict_inputs: Sequence[bool],
        layer_descs: Sequence[LayerDesc],
        seed: int = 0
    ) -> 'Hierarchy':
        """
        Create the hierarchy with randomly initialized weights.

        Args:
            input_sizes: (width, height) of each input, in cells
            input_chunk_sizes: Chunk diameter of each input
            predict_inputs: Which inputs get a decoder in layer 0
            layer_descs: One LayerDesc per layer, bottom first
            seed: Seed of the single generator used for all initialization

        Returns:
            self

        Raises:
            ConfigurationError: before any mutation, if the arguments disagree
        """
        header = self._make_header(input_sizes, input_chunk_sizes, predict_inputs, layer_descs)
        rng = np.random.default_rng(seed)
        self._install(header, self._build_layers(header, rng))

        logger.debug(
            f"Created hierarchy: {len(header['inputs'])} inputs, {len(self._layers)} layers, seed={seed}"
        )
        return self

    @staticmethod
    def _make_header(
        input_sizes: Sequence[Tuple[int, int]],
        input_chunk_sizes: Sequence[int],
        predict_inputs: Sequence[bool],
        layer_descs: Sequence[LayerDesc]
    ) -> Dict[str, Any]:
        """Validate creation arguments and return the structural header."""
        if not (len(input_sizes) == len(input_chunk_sizes) == len(predict_inputs)):
            raise ConfigurationError(
                f"input_sizes ({len(input_sizes)}), input_chunk_sizes ({len(input_chunk_sizes)}) "
                f"and predict_inputs ({len(predict_inputs)}) must have equal length"
            )
        if len(input_sizes) == 0:
            raise ConfigurationError("at least one input is required")
        if len(layer_descs) == 0:
            raise ConfigurationError("at least one layer is required")

        inputs = []
        for i, (size, chunk_size, predict) in enumerate(zip(input_sizes, input_chunk_sizes, predict_inputs)):
            if len(size) != 2:
                raise ConfigurationError(f"input {i} size must be (width, height), got {size}")
            width, height = int(size[0]), int(size[1])
            chunk_size = int(chunk_size)
            if chunk_size < 1 or width < 1 or height < 1:
                raise ConfigurationError(f"input {i} extent and chunk size must be positive")
            if width % chunk_size or height % chunk_size:
                raise ConfigurationError(
                    f"input {i} extent {width}x{height} is not a multiple of chunk size {chunk_size}"
                )
            inputs.append({'size': (width, height), 'chunk_size': chunk_size, 'predict': bool(predict)})

        for l, desc in enumerate(layer_descs):
            if not isinstance(desc, LayerDesc):
                raise ConfigurationError(f"layer {l} description must be a LayerDesc")
            try:
                desc.validate()
            except ConfigurationError as e:
                raise ConfigurationError(f"layer {l}: {e}") from e

        return {
            'inputs': inputs,
            'layers': [desc.to_dict() for desc in layer_descs],
        }

    @staticmethod
    def _visible_layers(header: Dict[str, Any], l: int) -> List[VisibleLayerDesc]:
        desc = LayerDesc.from_dict(header['layers'][l])
        if l == 0:
            return [
                VisibleLayerDesc(
                    chunk_grid(inp['size'][0], inp['size'][1], inp['chunk_size']),
                    inp['chunk_size'],
                    inp['predict'],
                )
                for inp in header['inputs']
                for _ in range(desc.temporal_horizon)
            ]
        below = LayerDesc.from_dict(header['layers'][l - 1])
        return [
            VisibleLayerDesc(below.chunks, below.chunk_size, True)
            for _ in range(desc.temporal_horizon)
        ]

    def _build_layers(self, header: Dict[str, Any], rng: np.random.Generator) -> List[Layer]:
        num_layers = len(header['layers'])
        layers = []
        for l in range(num_layers):
            desc = LayerDesc.from_dict(header['layers'][l])
            layers.append(Layer(
                hidden_size=desc.chunks,
                chunk_size=desc.chunk_size,
                visible_layer_descs=self._visible_layers(header, l),
                forward_radius=desc.forward_radius,
                backward_radius=desc.backward_radius,
                has_feedback=l < num_layers - 1,
                rng=rng,
            ))
        return layers

    def _install(self, header: Dict[str, Any], layers: List[Layer]) -> None:
        """Replace the whole structure with fresh clocks, rewards and histories."""
        descs = [LayerDesc.from_dict(d) for d in header['layers']]

        histories = []
        for l, desc in enumerate(descs):
            if l == 0:
                stream_chunks = [
                    int(np.prod(chunk_grid(inp['size'][0], inp['size'][1], inp['chunk_size'])))
                    for inp in header['inputs']
                ]
            else:
                below = descs[l - 1].chunks
                stream_chunks = [below[0] * below[1]]
            histories.append(ChunkHistory(desc.temporal_horizon, stream_chunks))

        self._layers = layers
        self._layer_descs = descs
        self._clocks = [LayerClock(desc.ticks_per_update) for desc in descs]
        self._rewards = [RewardAccumulator() for _ in descs]
        self._histories = histories
        self._update_counts = [0 for _ in descs]
        self._input_sizes = [tuple(inp['size']) for inp in header['inputs']]
        self._input_chunk_sizes = [inp['chunk_size'] for inp in header['inputs']]
        self._predict_inputs = [inp['predict'] for inp in header['inputs']]

    def _header(self) -> Dict[str, Any]:
        return {
            'inputs': [
                {'size': tuple(size), 'chunk_size': chunk_size, 'predict': predict}
                for size, chunk_size, predict in zip(
                    self._input_sizes, self._input_chunk_sizes, self._predict_inputs
                )
            ],
            'layers': [desc.to_dict() for desc in self._layer_descs],
        }

    # ==========================================================================
    # SIMULATION
    # ==========================================================================

    def step(
        self,
        inputs: Sequence[Sequence[int]],
        compute_system: Optional[ComputeSystem] = None,
        learn: bool = True,
        reward: float = 0.0
    ) -> None:
        """
        Simulation tick.

        Args:
            inputs: One sparse chunk vector per input
            compute_system: Execution provider, serial when None
            learn: Whether learning is enabled
            reward: Reinforcement signal

        Raises:
            ContractViolation: if inputs disagree with the configuration
        """
        codes = self._check_inputs(inputs)
        cs = compute_system if compute_system is not None else self._serial

        for i, code in enumerate(codes):
            self._histories[0].push(i, code)

        for accumulator in self._rewards:
            accumulator.add(reward)

        for l, layer in enumerate(self._layers):
            clock = self._clocks[l]
            if not clock.tick():
                break

            feedback = None
            if l + 1 < len(self._layers):
                feedback = self._layers[l + 1].predictions[0]

            layer.step(
                self._histories[l].codes(),
                feedback,
                cs,
                self._layer_descs[l],
                reward=self._rewards[l].consume(),
                learn=learn,
            )
            clock.complete()
            self._update_counts[l] += 1
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"Layer {l} fired (update {self._update_counts[l]})")

            if l + 1 < len(self._layers):
                self._histories[l + 1].push(0, layer.hidden_code)

    def _check_inputs(self, inputs: Sequence[Sequence[int]]) -> List[np.ndarray]:
        if not self._layers:
            raise ContractViolation("hierarchy has not been created or loaded")
        if len(inputs) != len(self._input_sizes):
            raise ContractViolation(
                f"expected {len(self._input_sizes)} inputs, got {len(inputs)}"
            )
        codes = []
        for i, values in enumerate(inputs):
            width, height = self._input_sizes[i]
            chunk_size = self._input_chunk_sizes[i]
            gx, gy = chunk_grid(width, height, chunk_size)
            codes.append(as_code(values, gx * gy, chunk_size * chunk_size, name=f"input {i}"))
        return codes

    # ==========================================================================
    # QUERIES
    # ==========================================================================

    @property
    def num_layers(self) -> int:
        return len(self._layers)

    def get_num_layers(self) -> int:
        """Number of (hidden) layers."""
        return len(self._layers)

    @property
    def num_inputs(self) -> int:
        return len(self._input_sizes)

    @property
    def input_temporal_horizon(self) -> int:
        return self._layer_descs[0].temporal_horizon

    def get_prediction(self, i: int) -> np.ndarray:
        """Nearest-term prediction of input i (a copy)."""
        index = i * self.input_temporal_horizon
        return self._layers[0].predictions[index].copy()

    def get_alpha(self, l: int) -> float:
        return self._layer_descs[l].alpha

    def get_beta(self, l: int) -> float:
        return self._layer_descs[l].beta

    def get_delta(self, l: int) -> float:
        return self._layer_descs[l].delta

    def get_gamma(self, l: int) -> float:
        return self._layer_descs[l].gamma

    def get_epsilon(self, l: int) -> float:
        return self._layer_descs[l].epsilon

    def get_trace_cutoff(self, l: int) -> float:
        return self._layer_descs[l].trace_cutoff

    def get_ticks(self, l: int) -> int:
        """Current ticks of layer l, relative to the layer below."""
        return self._clocks[l].ticks

    def get_ticks_per_update(self, l: int) -> int:
        return self._clocks[l].ticks_per_update

    def get_histories(self, l: int) -> List[np.ndarray]:
        """Copy of layer l's input history, flattened stream-major."""
        return self._histories[l].snapshot()

    def get_layer(self, l: int) -> LayerView:
        return self._layers[l].view()

    def get_layer_desc(self, l: int) -> LayerDesc:
        return self._layer_descs[l]

    def get_reward_accumulator(self, l: int) -> Tuple[float, int]:
        """(sum, count) of rewards not yet consumed by layer l."""
        accumulator = self._rewards[l]
        return accumulator.total, accumulator.count

    def get_update_counts(self) -> List[int]:
        """Number of cycles each layer has run since creation."""
        return list(self._update_counts)

    # ==========================================================================
    # PERSISTENCE
    # ==========================================================================

    def to_snapshot(self) -> Dict[str, Any]:
        """Full state as a plain dict, layers ordered top-down."""
        if not self._layers:
            raise ContractViolation("hierarchy has not been created or loaded")
        return {
            'magic': self.SNAPSHOT_MAGIC,
            'header': self._header(),
            'layers': [layer.state_dict() for layer in reversed(self._layers)],
            'histories': [history.snapshot() for history in reversed(self._histories)],
            'ticks': [clock.ticks for clock in reversed(self._clocks)],
            'reward_sums': [acc.total for acc in reversed(self._rewards)],
            'reward_counts': [acc.count for acc in reversed(self._rewards)],
            'update_counts': list(reversed(self._update_counts)),
        }

    def restore_snapshot(self, snapshot: Dict[str, Any]) -> None:
        """
        Replace the full state from a snapshot.

        Everything is rebuilt in a scratch hierarchy first and swapped in
        only when all of it succeeded.

        Raises:
            PersistenceError: malformed snapshot, or a header that differs
                from this hierarchy's (when it has already been created)
        """
        if not isinstance(snapshot, dict) or snapshot.get('magic') != self.SNAPSHOT_MAGIC:
            raise PersistenceError("not a hierarchy snapshot")

        try:
            header = snapshot['header']
            descs = [LayerDesc.from_dict(dict(d)) for d in header['layers']]
            self._make_header(
                [inp['size'] for inp in header['inputs']],
                [inp['chunk_size'] for inp in header['inputs']],
                [inp['predict'] for inp in header['inputs']],
                descs,
            )
        except (ConfigurationError, KeyError, TypeError, ValueError) as e:
            raise PersistenceError(f"invalid structural header: {e}") from e

        if self._layers and _normalize(header) != _normalize(self._header()):
            raise PersistenceError("snapshot structure does not match this hierarchy")

        scratch = Hierarchy()
        try:
            layer_states = list(reversed(snapshot['layers']))
            if len(layer_states) != len(descs):
                raise ValueError(f"expected {len(descs)} layers, got {len(layer_states)}")
            layers = [Layer.from_state_dict(state) for state in layer_states]
            scratch._install(header, layers)

            expected = scratch._build_shapes()
            for l, layer in enumerate(layers):
                if _layer_shape(layer) != expected[l]:
                    raise ValueError(f"layer {l} structure does not match the header")

            histories = list(reversed(snapshot['histories']))
            ticks = list(reversed(snapshot['ticks']))
            reward_sums = list(reversed(snapshot['reward_sums']))
            reward_counts = list(reversed(snapshot['reward_counts']))
            update_counts = list(reversed(snapshot['update_counts']))
            for name, values in (('histories', histories), ('ticks', ticks),
                                 ('reward_sums', reward_sums), ('reward_counts', reward_counts),
                                 ('update_counts', update_counts)):
                if len(values) != len(descs):
                    raise ValueError(f"{name}: expected {len(descs)} entries, got {len(values)}")

            for l in range(len(descs)):
                scratch._histories[l].restore(histories[l])
                for code, num_cells in zip(scratch._histories[l].codes(), scratch._history_cells(l)):
                    as_code(code, len(code), num_cells, name=f"layer {l} history")
                tick = int(ticks[l])
                if not 0 <= tick < descs[l].ticks_per_update:
                    raise ValueError(f"layer {l} ticks {tick} outside [0, {descs[l].ticks_per_update})")
                scratch._clocks[l].ticks = tick
                scratch._rewards[l].total = float(reward_sums[l])
                scratch._rewards[l].count = int(reward_counts[l])
                scratch._update_counts[l] = int(update_counts[l])
        except (KeyError, TypeError, ValueError, IndexError) as e:
            raise PersistenceError(f"invalid snapshot: {e}") from e

        self._swap(scratch)

    def _build_shapes(self) -> List[Tuple]:
        """Structural signature each layer must have for the current header."""
        header = self._header()
        shapes = []
        for l, desc in enumerate(self._layer_descs):
            shapes.append((
                desc.chunks,
                desc.chunk_size,
                tuple((tuple(v.size), v.chunk_size, v.predict) for v in self._visible_layers(header, l)),
                desc.forward_radius,
                desc.backward_radius,
                l < len(self._layer_descs) - 1,
            ))
        return shapes

    def _history_cells(self, l: int) -> List[int]:
        """Cells per chunk of every flattened history entry of layer l."""
        horizon = self._layer_descs[l].temporal_horizon
        if l == 0:
            return [cs * cs for cs in self._input_chunk_sizes for _ in range(horizon)]
        return [self._layer_descs[l - 1].cells_per_chunk] * horizon

    def _swap(self, other: 'Hierarchy') -> None:
        self._layers = other._layers
        self._layer_descs = other._layer_descs
        self._clocks = other._clocks
        self._rewards = other._rewards
        self._histories = other._histories
        self._update_counts = other._update_counts
        self._input_sizes = other._input_sizes
        self._input_chunk_sizes = other._input_chunk_sizes
        self._predict_inputs = other._predict_inputs

    def save(self, file_name: str) -> str:
        """Write a full-state snapshot. Returns the path written."""
        return HierarchyPersistence().save(self.to_snapshot(), file_name)

    def load(self, file_name: str) -> bool:
        """
        Load a snapshot instead of creating randomly.

        Returns False, leaving this instance untouched, when the file
        cannot be read or does not match this hierarchy's structure.
        """
        try:
            snapshot = HierarchyPersistence().load(file_name)
            self.restore_snapshot(snapshot)
        except PersistenceError as e:
            logger.warning(f"Could not load hierarchy from {file_name}: {e}")
            return False

        logger.info(f"Loaded hierarchy with {len(self._layers)} layers from {file_name}")
        return True


def _layer_shape(layer: Layer) -> Tuple:
    return (
        layer.hidden_size,
        layer.chunk_size,
        tuple((tuple(v.size), v.chunk_size, v.predict) for v in layer.visible_layer_descs),
        layer.forward_radius,
        layer.backward_radius,
        layer.has_feedback,
    )


def _normalize(header: Dict[str, Any]) -> Dict[str, Any]:
    """Header with tuples and numpy scalars turned into comparable plain values."""
    return {
        'inputs': [
            {'size': tuple(int(x) for x in inp['size']),
             'chunk_size': int(inp['chunk_size']),
             'predict': bool(inp['predict'])}
            for inp in header['inputs']
        ],
        'layers': [dict(d) for d in header['layers']],
    }


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

_SCALE_PRESETS = {
    "micro": dict(num_layers=2, width=8, height=8, chunk_size=2, radius=2),
    "small": dict(num_layers=3, width=16, height=16, chunk_size=4, radius=2),
    "medium": dict(num_layers=4, width=36, height=36, chunk_size=6, radius=3),
}


def scale_preset(scale: str = "small", **overrides) -> List[LayerDesc]:
    """
    Layer stack for a named scale.

    Args:
        scale: "micro", "small" or "medium"
        **overrides: LayerDesc fields applied to every layer

    Returns:
        List of LayerDesc, bottom first
    """
    if scale not in _SCALE_PRESETS:
        raise ConfigurationError(f"unknown scale {scale!r}, choose from {sorted(_SCALE_PRESETS)}")
    preset = _SCALE_PRESETS[scale]

    base = dict(
        width=preset['width'],
        height=preset['height'],
        chunk_size=preset['chunk_size'],
        forward_radius=preset['radius'],
        backward_radius=preset['radius'],
    )
    base.update(overrides)
    return [LayerDesc.from_dict(base) for _ in range(preset['num_layers'])]


def create_hierarchy(
    input_sizes: Sequence[Tuple[int, int]],
    input_chunk_sizes: Sequence[int],
    predict_inputs: Optional[Sequence[bool]] = None,
    layer_descs: Optional[Sequence[LayerDesc]] = None,
    scale: str = "small",
    seed: int = 0
) -> Hierarchy:
    """
    Factory function to create a hierarchy.

    Args:
        input_sizes: (width, height) of each input, in cells
        input_chunk_sizes: Chunk diameter of each input
        predict_inputs: Which inputs to predict (all when None)
        layer_descs: Explicit layer stack; scale_preset(scale) when None
        scale: Preset used when layer_descs is None
        seed: Initialization seed

    Returns:
        Created Hierarchy
    """
    if predict_inputs is None:
        predict_inputs = [True] * len(input_sizes)
    if layer_descs is None:
        layer_descs = scale_preset(scale)
    return Hierarchy().create(input_sizes, input_chunk_sizes, predict_inputs, layer_descs, seed=seed)
