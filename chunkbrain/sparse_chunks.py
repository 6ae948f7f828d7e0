"""
Sparse Chunk Codes and Receptive Fields

Implements:
- Chunk-grid geometry (cells grouped into square chunks)
- Winner-take-all selection, exactly one active cell per chunk
- Clipped square receptive fields between two chunk grids
- Validation of incoming sparse chunk vectors

Key insight: a chunk vector stores one integer per chunk instead of a
dense bitmask. Projecting it through a weight matrix is a row lookup per
chunk, never a full matrix product, so cost scales with the number of
chunks rather than the number of cells.
"""

import numpy as np
from typing import Sequence, Tuple

from .errors import ContractViolation


def chunk_grid(width: int, height: int, chunk_size: int) -> Tuple[int, int]:
    """Number of chunks along x and y for an extent given in cells."""
    return width // chunk_size, height // chunk_size


def zero_code(num_chunks: int) -> np.ndarray:
    """Chunk vector with cell 0 active in every chunk."""
    return np.zeros(num_chunks, dtype=np.int64)


def winner_take_all(responses: np.ndarray) -> int:
    """
    Index of the maximal response.

    np.argmax returns the first occurrence, so ties go to the lowest index.
    """
    return int(np.argmax(responses))


def as_code(values: Sequence[int], num_chunks: int, num_cells: int, name: str = "input") -> np.ndarray:
    """
    Convert a sequence to a chunk vector, checking length and range.

    Raises:
        ContractViolation: wrong number of chunks or an index outside
            [0, num_cells)
    """
    code = np.asarray(values)
    if code.ndim != 1 or code.shape[0] != num_chunks:
        raise ContractViolation(
            f"{name} must hold {num_chunks} chunk indices, got shape {code.shape}"
        )
    if code.size and not np.issubdtype(code.dtype, np.integer):
        raise ContractViolation(f"{name} must contain integers, got dtype {code.dtype}")
    code = code.astype(np.int64, copy=True)
    if code.size and (code.min() < 0 or code.max() >= num_cells):
        raise ContractViolation(
            f"{name} indices must lie in [0, {num_cells}), got range "
            f"[{code.min()}, {code.max()}]"
        )
    return code


def _window(center: int, radius: int, extent: int) -> Tuple[int, int]:
    """Inclusive window along one axis; the whole axis once the diameter covers it."""
    if 2 * radius >= extent:
        return 0, extent - 1
    return max(0, center - radius), min(extent - 1, center + radius)


class ReceptiveField:
    """
    Clipped square windows from an output chunk grid onto an input grid.

    Each output chunk is projected to a center on the input grid and sees
    every input chunk within `radius` of it. Windows are clipped at the
    grid border, so boundary chunks own fewer entries. Along an axis where
    the radius is at least half the extent, every window spans the whole
    axis (full connectivity). All windows are
    concatenated into one flat entry list; output chunk `o` owns entries
    `offsets[o]:offsets[o + 1]`, and `indices[e]` is the input chunk that
    entry `e` reads. Weight arrays are laid out along the same entry axis.
    """

    def __init__(self, output_size: Tuple[int, int], input_size: Tuple[int, int], radius: int):
        self.output_size = tuple(output_size)
        self.input_size = tuple(input_size)
        self.radius = radius

        out_w, out_h = self.output_size
        in_w, in_h = self.input_size

        offsets = [0]
        indices = []
        for oy in range(out_h):
            y0, y1 = _window(int((oy + 0.5) * in_h / out_h), radius, in_h)
            for ox in range(out_w):
                x0, x1 = _window(int((ox + 0.5) * in_w / out_w), radius, in_w)
                for y in range(y0, y1 + 1):
                    indices.extend(range(y * in_w + x0, y * in_w + x1 + 1))
                offsets.append(len(indices))

        self.offsets = np.array(offsets, dtype=np.int64)
        self.indices = np.array(indices, dtype=np.int64)

    @property
    def num_outputs(self) -> int:
        return len(self.offsets) - 1

    @property
    def num_entries(self) -> int:
        return len(self.indices)

    def bounds(self, output_index: int) -> Tuple[int, int]:
        """(start, stop) of the entries owned by an output chunk."""
        return int(self.offsets[output_index]), int(self.offsets[output_index + 1])

    def window_size(self, output_index: int) -> int:
        start, stop = self.bounds(output_index)
        return stop - start

    def gather(self, output_index: int, code: np.ndarray) -> np.ndarray:
        """Active cell of every input chunk in an output chunk's window."""
        start, stop = self.bounds(output_index)
        return code[self.indices[start:stop]]
