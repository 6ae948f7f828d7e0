"""
Hierarchy Persistence Module

Full-state snapshots serialized with dill.
Atomic writes, a JSON metadata sidecar and optional backup rotation.
"""

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import IO, Any, Callable, Dict, Optional, Union

import dill

from .errors import PersistenceError

logger = logging.getLogger(__name__)

FORMAT_TAG = "chunkbrain-snapshot"


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


def _atomic_write(filepath: Path, mode: str, write: Callable[[IO], None]) -> None:
    """
    Write through a temp file in the target directory, then os.replace.

    mkstemp creates files as 0600; the final file gets the mode a plain
    open() would have given it under the process umask.
    """
    directory = filepath.parent if str(filepath.parent) else Path('.')
    fd, tmp_path = tempfile.mkstemp(prefix=filepath.name, suffix='.tmp', dir=directory)
    try:
        with os.fdopen(fd, mode) as f:
            write(f)
        os.chmod(tmp_path, 0o666 & ~_current_umask())
        os.replace(tmp_path, filepath)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class HierarchyPersistence:
    """
    Reads and writes hierarchy snapshots.

    Features:
    - dill serialization of the snapshot dict (numpy arrays, generator state)
    - Atomic replace: a crash mid-write never leaves a truncated snapshot
    - <name>.meta.json sidecar for inspection without unpickling
    - Backup rotation (<name>.backup1 ... <name>.backupN)
    """

    def __init__(self, max_backups: int = 0, write_metadata: bool = True):
        self.max_backups = max_backups
        self.write_metadata = write_metadata

    def save(
        self,
        snapshot: Dict[str, Any],
        filepath: Union[str, Path],
        create_backup: Optional[bool] = None
    ) -> str:
        """
        Save a snapshot to file.

        Args:
            snapshot: Hierarchy.to_snapshot() output
            filepath: Target path
            create_backup: Rotate an existing file into backups first
                (defaults to max_backups > 0)

        Returns:
            Path to saved file
        """
        filepath = Path(filepath)
        if create_backup is None:
            create_backup = self.max_backups > 0

        if create_backup and filepath.exists():
            self._rotate_backups(filepath)

        save_data = {
            'format': FORMAT_TAG,
            'saved_at': datetime.now().isoformat(),
            'snapshot': snapshot,
        }

        _atomic_write(filepath, 'wb', lambda f: dill.dump(save_data, f, protocol=dill.HIGHEST_PROTOCOL))

        if self.write_metadata:
            metadata = {
                'format': FORMAT_TAG,
                'saved_at': save_data['saved_at'],
                'num_layers': len(snapshot.get('layers', [])),
                'file_size_bytes': os.path.getsize(filepath),
            }
            _atomic_write(filepath.with_suffix('.meta.json'), 'w', lambda f: json.dump(metadata, f, indent=2))

        logger.info(f"Saved hierarchy snapshot to {filepath}")
        return str(filepath)

    def load(self, filepath: Union[str, Path]) -> Dict[str, Any]:
        """
        Load a snapshot dict from file.

        Raises:
            PersistenceError: file missing or unreadable, or not a snapshot
        """
        filepath = Path(filepath)

        if not filepath.exists():
            raise PersistenceError(f"Save file not found: {filepath}")

        try:
            with open(filepath, 'rb') as f:
                save_data = dill.load(f)
        except Exception as e:
            raise PersistenceError(f"Could not read snapshot {filepath}: {e}") from e

        if not isinstance(save_data, dict) or save_data.get('format') != FORMAT_TAG:
            raise PersistenceError(f"{filepath} is not a hierarchy snapshot")

        return save_data['snapshot']

    def _rotate_backups(self, filepath: Path) -> None:
        """Rotate backup files."""
        oldest = filepath.with_suffix(f'.backup{self.max_backups}')
        if oldest.exists():
            oldest.unlink()

        for i in range(self.max_backups - 1, 0, -1):
            old_backup = filepath.with_suffix(f'.backup{i}')
            if old_backup.exists():
                old_backup.rename(filepath.with_suffix(f'.backup{i + 1}'))

        filepath.rename(filepath.with_suffix('.backup1'))


# Convenience functions for direct use

def save_hierarchy(hierarchy, filepath: Union[str, Path], max_backups: int = 0) -> str:
    """
    Save a hierarchy snapshot.

    Args:
        hierarchy: Created Hierarchy
        filepath: Target path
        max_backups: Number of rotated backups to keep

    Returns:
        Path to saved file
    """
    persistence = HierarchyPersistence(max_backups=max_backups)
    return persistence.save(hierarchy.to_snapshot(), filepath)


def load_hierarchy(filepath: Union[str, Path]):
    """
    Load a hierarchy from file into a new instance.

    Raises:
        PersistenceError: if the snapshot cannot be read or applied
    """
    from .hierarchy import Hierarchy

    hierarchy = Hierarchy()
    hierarchy.restore_snapshot(HierarchyPersistence().load(filepath))
    return hierarchy
