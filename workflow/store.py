"""
Contract Handle Storage

One JSON file per handle under a directory. Writes go to a temporary file in
the same directory which then replaces the target, so a crash never leaves a
half-written handle behind.
"""

import logging
import os
import tempfile
from pathlib import Path
from threading import RLock
from typing import List, Union

from pydantic import ValidationError

from .exceptions import HandleNotFoundError, HandleStoreError
from .handle import ContractHandle


class HandleStore:
    """
    Directory of persisted contract handles.
    """

    def __init__(self, directory: Union[str, Path]):
        """
        Initialize handle store.

        Args:
            directory: Directory holding <handle_id>.json files (created if missing)
        """
        self.directory = Path(directory).expanduser()
        self.logger = logging.getLogger(__name__)
        self._lock = RLock()

        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise HandleStoreError(f"Cannot create handle directory {self.directory}: {e}")

    def _path(self, handle_id: str) -> Path:
        return self.directory / f"{handle_id}.json"

    def save(self, handle: ContractHandle) -> Path:
        """Write a handle atomically, replacing any previous version."""
        target = self._path(handle.handle_id)
        data = handle.to_json().encode('utf-8')

        with self._lock:
            fd, temp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{handle.handle_id}.",
                                             suffix='.tmp')
            try:
                with os.fdopen(fd, 'wb') as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_name, target)
            except OSError as e:
                if os.path.exists(temp_name):
                    os.unlink(temp_name)
                raise HandleStoreError(f"Failed to write handle {handle.handle_id}: {e}")

        self.logger.debug(f"Saved handle {handle.handle_id} ({handle.phase.value})")
        return target

    def load(self, handle_id: str) -> ContractHandle:
        """
        Read a handle.

        Raises:
            HandleNotFoundError: no such handle
            HandleStoreError: file unreadable or not a valid handle
        """
        path = self._path(handle_id)
        with self._lock:
            if not path.exists():
                raise HandleNotFoundError(handle_id)
            try:
                data = path.read_text(encoding='utf-8')
            except OSError as e:
                raise HandleStoreError(f"Failed to read handle {handle_id}: {e}")

        try:
            return ContractHandle.from_json(data)
        except ValidationError as e:
            raise HandleStoreError(f"Handle {handle_id} is corrupt: {e}")

    def exists(self, handle_id: str) -> bool:
        return self._path(handle_id).exists()

    def list(self) -> List[str]:
        """Ids of all stored handles, sorted."""
        with self._lock:
            return sorted(p.stem for p in self.directory.glob('*.json'))

    def delete(self, handle_id: str) -> None:
        path = self._path(handle_id)
        with self._lock:
            if not path.exists():
                raise HandleNotFoundError(handle_id)
            try:
                path.unlink()
            except OSError as e:
                raise HandleStoreError(f"Failed to delete handle {handle_id}: {e}")
        self.logger.info(f"Deleted handle {handle_id}")
