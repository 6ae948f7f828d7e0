# Chunk Brain - Sparse Predictive Hierarchy
#
# Online predictive coding + reinforcement learning over sparse chunk codes.
# Each layer encodes its input history into one active cell per chunk,
# predicts its inputs one step ahead, and learns while it runs.
#
# ARCHITECTURE:
# ├── hierarchy.py          - Hierarchy + LayerDesc, multi-rate step loop
# ├── layer.py              - Encode / decode / learn cycle of one layer
# ├── hierarchical_time.py  - Layer clocks, reward accumulators, histories
# ├── sparse_chunks.py      - Chunk geometry, clipped receptive fields
# ├── compute.py            - Execution providers (serial, thread pool)
# ├── persistence.py        - Save/load with dill
# └── visualization.py      - Matplotlib plots (optional, `viz` extra)

__version__ = "0.1.0"

# =============================================================================
# PRIMARY EXPORTS: Hierarchy
# =============================================================================

from .hierarchy import (
    Hierarchy,
    LayerDesc,
    create_hierarchy,  # Primary factory function
    scale_preset,
)

from .layer import (
    Layer,
    LayerView,
    VisibleLayerDesc,
)

# =============================================================================
# SUPPORTING MODULES
# =============================================================================

# Execution providers: parallel-for over chunk grids
from .compute import (
    ComputeBackend,
    ComputeSystem,
    SerialComputeSystem,
    ThreadPoolComputeSystem,
    create_compute_system,
)

# Hierarchical time: clocks, rewards, histories
from .hierarchical_time import (
    ChunkHistory,
    ClockState,
    LayerClock,
    RewardAccumulator,
)

# Sparse chunk codes
from .sparse_chunks import (
    ReceptiveField,
    as_code,
    chunk_grid,
    winner_take_all,
    zero_code,
)

# Persistence: Save/load
from .persistence import (
    HierarchyPersistence,
    save_hierarchy,
    load_hierarchy,
)

# Errors
from .errors import (
    ChunkBrainError,
    ConfigurationError,
    ContractViolation,
    PersistenceError,
)

# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    # Hierarchy
    'Hierarchy',
    'LayerDesc',
    'create_hierarchy',
    'scale_preset',
    'Layer',
    'LayerView',
    'VisibleLayerDesc',

    # Execution providers
    'ComputeBackend',
    'ComputeSystem',
    'SerialComputeSystem',
    'ThreadPoolComputeSystem',
    'create_compute_system',

    # Hierarchical time
    'ChunkHistory',
    'ClockState',
    'LayerClock',
    'RewardAccumulator',

    # Sparse chunk codes
    'ReceptiveField',
    'as_code',
    'chunk_grid',
    'winner_take_all',
    'zero_code',

    # Persistence
    'HierarchyPersistence',
    'save_hierarchy',
    'load_hierarchy',

    # Errors
    'ChunkBrainError',
    'ConfigurationError',
    'ContractViolation',
    'PersistenceError',
]
