"""
Error types raised by the hierarchy.

- ConfigurationError: bad arguments to create / LayerDesc.validate
- PersistenceError: a snapshot could not be read, parsed or matched
- ContractViolation: step() called with inputs that disagree with the
  configuration fixed at creation (a caller bug, never recovered)
"""


class ChunkBrainError(Exception):
    """Base class for all chunkbrain errors."""


class ConfigurationError(ChunkBrainError, ValueError):
    """Raised before any mutation when creation arguments are inconsistent."""


class PersistenceError(ChunkBrainError, IOError):
    """Raised when a snapshot file cannot be opened, parsed or applied."""


class ContractViolation(ChunkBrainError, ValueError):
    """Raised when step() receives inputs of the wrong count, length or range."""
