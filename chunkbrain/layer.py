"""
Sparse Predictive Layer

Implements:
- Winner-take-all sparse encoding over clipped forward receptive fields
- Competitive (Hebbian) forward learning toward the chosen winners
- Top-down decoding of every predicted visible layer, one step ahead
- Epsilon-greedy exploration while reward-driven learning is active
- Delayed predictive correction plus trace-based Q-value correction

Key insight: the encoder and the decoders are all lookups into flat
weight blocks addressed by (window entry, active cell, target cell).
A chunk only ever touches the rows of its own window, so every phase
splits cleanly into independent per-chunk tasks.
"""

import logging
import numpy as np
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .compute import ComputeSystem
from .sparse_chunks import ReceptiveField, as_code, winner_take_all, zero_code

logger = logging.getLogger(__name__)

WEIGHT_DTYPE = np.float32


@dataclass
class VisibleLayerDesc:
    """One input-side layer of a Layer: a chunk grid it encodes (and maybe predicts)."""
    size: Tuple[int, int]  # in chunks
    chunk_size: int
    predict: bool = True

    @property
    def num_chunks(self) -> int:
        return self.size[0] * self.size[1]

    @property
    def num_cells(self) -> int:
        return self.chunk_size * self.chunk_size


def _init_weights(rng: Optional[np.random.Generator], shape: Tuple[int, ...], low: float, high: float) -> np.ndarray:
    if rng is None:
        return np.zeros(shape, dtype=WEIGHT_DTYPE)
    return rng.uniform(low, high, size=shape).astype(WEIGHT_DTYPE)


def _readonly(arr: Optional[np.ndarray]) -> Optional[np.ndarray]:
    if arr is None:
        return None
    view = arr.view()
    view.flags.writeable = False
    return view


class Layer:
    """
    One level of the hierarchy.

    Encodes its visible layers (its input history) into a hidden chunk
    code, then predicts the next contents of every visible layer flagged
    `predict` from three decoder sources: the current hidden code, the
    previous hidden code and, when a layer sits above, that layer's
    prediction of this layer's code (feedback).

    Weight layout:
        forward_weights[v]:  (entries, visible_cells, hidden_cells)
        backward_weights[v]: (sources, entries, hidden_cells, visible_cells)
        traces[v]:           same shape as backward_weights[v]

    Learning rule for the decoders (both corrections add into the same
    weights, per visible chunk):
        predictive: w += beta * (onehot(actual) - activation_prev)
                    on the rows the previous decoder inputs selected
        value:      w += delta * (r + gamma * Q_new - Q_prev) * trace
    where activation is the summed response divided by the number of
    contributing rows, and Q is the activation of the chosen winner.
    """

    def __init__(
        self,
        hidden_size: Tuple[int, int],
        chunk_size: int,
        visible_layer_descs: Sequence[VisibleLayerDesc],
        forward_radius: int,
        backward_radius: int,
        has_feedback: bool = False,
        rng: Optional[np.random.Generator] = None
    ):
        """
        Initialize the layer.

        Args:
            hidden_size: Hidden grid size in chunks (x, y)
            chunk_size: Hidden chunk diameter (chunk_size**2 cells per chunk)
            visible_layer_descs: Input-side layers, indexed stream * horizon + offset
            forward_radius: Encoder receptive radius, in visible chunks
            backward_radius: Decoder receptive radius, in hidden chunks
            has_feedback: Whether a layer above provides top-down feedback
            rng: Generator for weight initialization; None leaves weights at zero
                 (used when restoring a snapshot)
        """
        self.hidden_size = (int(hidden_size[0]), int(hidden_size[1]))
        self.chunk_size = chunk_size
        self.visible_layer_descs = [
            VisibleLayerDesc(tuple(vld.size), vld.chunk_size, vld.predict)
            for vld in visible_layer_descs
        ]
        self.forward_radius = forward_radius
        self.backward_radius = backward_radius
        self.has_feedback = has_feedback

        self.num_hidden = self.hidden_size[0] * self.hidden_size[1]
        self.hidden_cells = chunk_size * chunk_size
        self.num_sources = 3 if has_feedback else 2

        self.forward_fields: List[ReceptiveField] = []
        self.forward_weights: List[np.ndarray] = []
        self.backward_fields: List[Optional[ReceptiveField]] = []
        self.backward_weights: List[Optional[np.ndarray]] = []
        self.traces: List[Optional[np.ndarray]] = []

        for vld in self.visible_layer_descs:
            field = ReceptiveField(self.hidden_size, vld.size, forward_radius)
            self.forward_fields.append(field)
            self.forward_weights.append(
                _init_weights(rng, (field.num_entries, vld.num_cells, self.hidden_cells), 0.0, 1.0)
            )

            if vld.predict:
                field = ReceptiveField(vld.size, self.hidden_size, backward_radius)
                shape = (self.num_sources, field.num_entries, self.hidden_cells, vld.num_cells)
                self.backward_fields.append(field)
                self.backward_weights.append(_init_weights(rng, shape, -0.01, 0.01))
                self.traces.append(np.zeros(shape, dtype=WEIGHT_DTYPE))
            else:
                self.backward_fields.append(None)
                self.backward_weights.append(None)
                self.traces.append(None)

        # Dynamic state
        self.hidden_code = zero_code(self.num_hidden)
        self.prev_hidden_code = zero_code(self.num_hidden)
        self.predictions = [zero_code(vld.num_chunks) for vld in self.visible_layer_descs]
        self.prediction_values = [np.zeros(vld.num_chunks) for vld in self.visible_layer_descs]
        self._last_sources = [zero_code(self.num_hidden) for _ in range(self.num_sources)]
        self.last_reward = 0.0

        # Exploration draws come from the layer's own stream
        seed = int(rng.integers(0, 2 ** 63 - 1)) if rng is not None else 0
        self._rng = np.random.default_rng(seed)

    # ==========================================================================
    # CYCLE
    # ==========================================================================

    def step(
        self,
        inputs: Sequence[np.ndarray],
        feedback: Optional[np.ndarray],
        cs: ComputeSystem,
        params,
        reward: float = 0.0,
        learn: bool = True
    ) -> np.ndarray:
        """
        Run one encode-decode-learn cycle.

        Args:
            inputs: Current code of every visible layer
            feedback: Prediction of this layer's hidden code from the layer above
            cs: Execution provider for per-chunk work
            params: Object carrying alpha, beta, delta, gamma, trace_cutoff, epsilon
            reward: Mean reward since this layer last fired
            learn: Whether weights and traces are updated

        Returns:
            The new hidden code
        """
        self.prev_hidden_code = self.hidden_code
        self.hidden_code = self._encode(inputs, cs)

        if learn and params.alpha > 0.0:
            self._learn_forward(inputs, cs, params.alpha)

        sources = self._decoder_sources(feedback)

        explore = learn and params.delta > 0.0 and params.epsilon > 0.0
        predictions = [p.copy() for p in self.predictions]
        values = [v.copy() for v in self.prediction_values]
        for v, vld in enumerate(self.visible_layer_descs):
            if vld.predict:
                predictions[v], values[v] = self._decode(
                    v, sources, cs, params.epsilon if explore else 0.0
                )

        if learn:
            for v, vld in enumerate(self.visible_layer_descs):
                if vld.predict:
                    self._learn_backward(
                        v, inputs[v], sources, predictions[v], values[v], cs, params, reward
                    )

        self.predictions = predictions
        self.prediction_values = values
        self._last_sources = sources
        self.last_reward = float(reward)

        return self.hidden_code

    # ==========================================================================
    # ENCODER
    # ==========================================================================

    def _encode(self, inputs: Sequence[np.ndarray], cs: ComputeSystem) -> np.ndarray:
        hidden = zero_code(self.num_hidden)

        def encode_chunk(h: int) -> None:
            response = np.zeros(self.hidden_cells)
            for v, field in enumerate(self.forward_fields):
                start, stop = field.bounds(h)
                active = field.gather(h, inputs[v])
                response += self.forward_weights[v][np.arange(start, stop), active].sum(axis=0)
            hidden[h] = winner_take_all(response)

        cs.parallel_for(self.num_hidden, encode_chunk)
        return hidden

    def _learn_forward(self, inputs: Sequence[np.ndarray], cs: ComputeSystem, alpha: float) -> None:
        """Move each winner's incoming weights toward its one-hot input."""

        def learn_chunk(h: int) -> None:
            winner = self.hidden_code[h]
            for v, field in enumerate(self.forward_fields):
                start, stop = field.bounds(h)
                active = field.gather(h, inputs[v])
                column = self.forward_weights[v][start:stop, :, winner]
                target = np.zeros_like(column)
                target[np.arange(stop - start), active] = 1.0
                column += alpha * (target - column)

        cs.parallel_for(self.num_hidden, learn_chunk)

    # ==========================================================================
    # DECODERS
    # ==========================================================================

    def _decoder_sources(self, feedback: Optional[np.ndarray]) -> List[np.ndarray]:
        sources = [self.hidden_code.copy(), self.prev_hidden_code.copy()]
        if self.has_feedback:
            if feedback is None:
                sources.append(zero_code(self.num_hidden))
            else:
                sources.append(np.array(feedback, dtype=np.int64, copy=True))
        return sources

    def _activation(self, v: int, c: int, sources: Sequence[np.ndarray]) -> np.ndarray:
        """Normalized decoder response of visible chunk c to the given sources."""
        field = self.backward_fields[v]
        weights = self.backward_weights[v]
        start, stop = field.bounds(c)
        rows = np.arange(start, stop)

        response = np.zeros(self.visible_layer_descs[v].num_cells)
        for s, code in enumerate(sources):
            response += weights[s, rows, field.gather(c, code)].sum(axis=0)
        return response / (len(sources) * (stop - start))

    def _decode(
        self,
        v: int,
        sources: Sequence[np.ndarray],
        cs: ComputeSystem,
        epsilon: float
    ) -> Tuple[np.ndarray, np.ndarray]:
        vld = self.visible_layer_descs[v]
        prediction = zero_code(vld.num_chunks)
        values = np.zeros(vld.num_chunks)

        # Drawn up front so results do not depend on task scheduling
        explore_mask = None
        random_cells = None
        if epsilon > 0.0:
            explore_mask = self._rng.random(vld.num_chunks) < epsilon
            random_cells = self._rng.integers(0, vld.num_cells, vld.num_chunks)

        def decode_chunk(c: int) -> None:
            activation = self._activation(v, c, sources)
            winner = winner_take_all(activation)
            if explore_mask is not None and explore_mask[c]:
                winner = int(random_cells[c])
            prediction[c] = winner
            values[c] = activation[winner]

        cs.parallel_for(vld.num_chunks, decode_chunk)
        return prediction, values

    def _learn_backward(
        self,
        v: int,
        actual: np.ndarray,
        sources: Sequence[np.ndarray],
        prediction: np.ndarray,
        values: np.ndarray,
        cs: ComputeSystem,
        params,
        reward: float
    ) -> None:
        """
        Predictive and value corrections for one visible layer, then trace upkeep.

        `actual` is what now sits in the visible slot the previous cycle
        predicted, so the predictive correction is made against the
        previous cycle's decoder inputs. The value correction uses traces
        as the previous cycles left them; this cycle's path is added last.
        """
        field = self.backward_fields[v]
        weights = self.backward_weights[v]
        traces = self.traces[v]
        prev_sources = self._last_sources
        prev_values = self.prediction_values[v]
        use_values = params.delta > 0.0

        def learn_chunk(c: int) -> None:
            start, stop = field.bounds(c)
            rows = np.arange(start, stop)

            if params.beta > 0.0:
                error = -self._activation(v, c, prev_sources)
                error[actual[c]] += 1.0
                for s, code in enumerate(prev_sources):
                    weights[s, rows, field.gather(c, code)] += params.beta * error

            block_traces = traces[:, start:stop]
            if use_values:
                td_error = reward + params.gamma * values[c] - prev_values[c]
                weights[:, start:stop] += params.delta * td_error * block_traces

            for s, code in enumerate(sources):
                block_traces[s, rows - start, field.gather(c, code), prediction[c]] += 1.0
            block_traces *= params.gamma
            block_traces[block_traces < params.trace_cutoff] = 0.0

        cs.parallel_for(field.num_outputs, learn_chunk)

    # ==========================================================================
    # STATE
    # ==========================================================================

    def state_dict(self) -> Dict[str, Any]:
        """Structural description plus every learned and dynamic array (copies)."""
        return {
            'hidden_size': self.hidden_size,
            'chunk_size': self.chunk_size,
            'visible_layer_descs': [asdict(vld) for vld in self.visible_layer_descs],
            'forward_radius': self.forward_radius,
            'backward_radius': self.backward_radius,
            'has_feedback': self.has_feedback,
            'forward_weights': [w.copy() for w in self.forward_weights],
            'backward_weights': [None if w is None else w.copy() for w in self.backward_weights],
            'traces': [None if t is None else t.copy() for t in self.traces],
            'hidden_code': self.hidden_code.copy(),
            'prev_hidden_code': self.prev_hidden_code.copy(),
            'predictions': [p.copy() for p in self.predictions],
            'prediction_values': [p.copy() for p in self.prediction_values],
            'last_sources': [s.copy() for s in self._last_sources],
            'last_reward': self.last_reward,
            'rng_state': self._rng.bit_generator.state,
        }

    @classmethod
    def from_state_dict(cls, state: Dict[str, Any]) -> 'Layer':
        """
        Rebuild a layer from state_dict() output.

        Raises:
            ValueError / KeyError / TypeError: on a missing entry, an array
                whose shape disagrees with the described structure, or a
                chunk code with a cell outside its chunk
        """
        layer = cls(
            hidden_size=tuple(state['hidden_size']),
            chunk_size=int(state['chunk_size']),
            visible_layer_descs=[
                VisibleLayerDesc(tuple(d['size']), int(d['chunk_size']), bool(d['predict']))
                for d in state['visible_layer_descs']
            ],
            forward_radius=int(state['forward_radius']),
            backward_radius=int(state['backward_radius']),
            has_feedback=bool(state['has_feedback']),
            rng=None,
        )

        layer.forward_weights = _restore_list('forward_weights', state['forward_weights'], layer.forward_weights)
        layer.backward_weights = _restore_list('backward_weights', state['backward_weights'], layer.backward_weights)
        layer.traces = _restore_list('traces', state['traces'], layer.traces)
        layer.hidden_code = _restore_array('hidden_code', state['hidden_code'], layer.hidden_code)
        layer.prev_hidden_code = _restore_array('prev_hidden_code', state['prev_hidden_code'], layer.prev_hidden_code)
        layer.predictions = _restore_list('predictions', state['predictions'], layer.predictions)
        layer.prediction_values = _restore_list(
            'prediction_values', state['prediction_values'], layer.prediction_values
        )
        layer._last_sources = _restore_list('last_sources', state['last_sources'], layer._last_sources)
        layer.last_reward = float(state['last_reward'])
        layer._rng.bit_generator.state = state['rng_state']

        # Codes index weight rows, so every stored cell must lie inside its chunk
        codes = [
            ('hidden_code', layer.hidden_code, layer.hidden_cells),
            ('prev_hidden_code', layer.prev_hidden_code, layer.hidden_cells),
        ]
        codes += [
            (f'predictions[{v}]', code, vld.num_cells)
            for v, (code, vld) in enumerate(zip(layer.predictions, layer.visible_layer_descs))
        ]
        codes += [(f'last_sources[{s}]', code, layer.hidden_cells) for s, code in enumerate(layer._last_sources)]
        for name, code, num_cells in codes:
            as_code(code, len(code), num_cells, name=name)
        return layer

    def view(self) -> 'LayerView':
        return LayerView(self)


def _restore_array(name: str, value: Any, like: np.ndarray) -> np.ndarray:
    arr = np.asarray(value)
    if arr.shape != like.shape:
        raise ValueError(f"{name}: expected shape {like.shape}, got {arr.shape}")
    return arr.astype(like.dtype, copy=True)


def _restore_list(name: str, values: Sequence[Any], likes: Sequence[Optional[np.ndarray]]) -> List[Optional[np.ndarray]]:
    if len(values) != len(likes):
        raise ValueError(f"{name}: expected {len(likes)} entries, got {len(values)}")
    restored = []
    for i, (value, like) in enumerate(zip(values, likes)):
        if like is None or value is None:
            if like is not value:
                raise ValueError(f"{name}[{i}]: presence disagrees with the predict flags")
            restored.append(None)
        else:
            restored.append(_restore_array(f"{name}[{i}]", value, like))
    return restored


class LayerView:
    """Read-only handle on a Layer. Arrays are non-writeable views."""

    def __init__(self, layer: Layer):
        self._layer = layer

    @property
    def hidden_size(self) -> Tuple[int, int]:
        return self._layer.hidden_size

    @property
    def chunk_size(self) -> int:
        return self._layer.chunk_size

    @property
    def num_visible_layers(self) -> int:
        return len(self._layer.visible_layer_descs)

    @property
    def visible_layer_descs(self) -> Tuple[VisibleLayerDesc, ...]:
        return tuple(
            VisibleLayerDesc(vld.size, vld.chunk_size, vld.predict)
            for vld in self._layer.visible_layer_descs
        )

    @property
    def has_feedback(self) -> bool:
        return self._layer.has_feedback

    @property
    def hidden_code(self) -> np.ndarray:
        return _readonly(self._layer.hidden_code)

    @property
    def predictions(self) -> Tuple[np.ndarray, ...]:
        return tuple(_readonly(p) for p in self._layer.predictions)

    @property
    def forward_weights(self) -> Tuple[np.ndarray, ...]:
        return tuple(_readonly(w) for w in self._layer.forward_weights)

    @property
    def backward_weights(self) -> Tuple[Optional[np.ndarray], ...]:
        return tuple(_readonly(w) for w in self._layer.backward_weights)

    @property
    def traces(self) -> Tuple[Optional[np.ndarray], ...]:
        return tuple(_readonly(t) for t in self._layer.traces)

    @property
    def forward_fields(self) -> Tuple[ReceptiveField, ...]:
        return tuple(self._layer.forward_fields)

    @property
    def backward_fields(self) -> Tuple[Optional[ReceptiveField], ...]:
        return tuple(self._layer.backward_fields)

    @property
    def last_reward(self) -> float:
        return self._layer.last_reward
