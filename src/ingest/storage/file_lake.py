"""
Filesystem-backed object store for the data lake.
"""

import logging
import os
import tempfile
from pathlib import Path, PurePosixPath
from typing import List, Union

from ..core.exceptions import NotFoundError, ObjectExistsError, TransientIOError, ValidationError
from ..core.object_store import ObjectStore
from ..core.utils import compute_bytes_checksum


logger = logging.getLogger(__name__)

TEMP_PREFIX = ".tmp-"


class FileObjectStore(ObjectStore):
    """
    Stores immutable objects as files under a lake directory.

    Keys map directly to relative paths: ``raw/2024/05/01/shard-00001.jsonl``
    becomes ``{base_dir}/raw/2024/05/01/shard-00001.jsonl``.

    Each put writes to a temp file in the target directory, fsyncs it, then
    hard-links it into place (create-only) or renames it (overwrite), so a
    reader never observes a partially written object.
    """

    def __init__(self, base_dir: Union[str, Path], create_dirs: bool = True, fsync: bool = True):
        """
        Initialize the file object store.

        Args:
            base_dir: Base directory for the data lake
            create_dirs: Whether to create the base directory automatically
            fsync: Whether to fsync objects before publishing them
        """
        self.base_dir = Path(base_dir)
        self.fsync = fsync

        if create_dirs:
            self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        """Resolve a key to a path inside the lake, rejecting escapes."""
        if not key or key.startswith("/") or "\\" in key:
            raise ValidationError(f"Invalid object key: {key!r}")
        parts = PurePosixPath(key).parts
        if any(part in ("..", ".") for part in parts) or parts[-1].startswith(TEMP_PREFIX):
            raise ValidationError(f"Invalid object key: {key!r}")
        return self.base_dir.joinpath(*parts)

    def put(self, key: str, data: bytes, overwrite: bool = False) -> str:
        """
        Store an object atomically.

        Returns:
            ETag (SHA256 of the bytes)
        """
        path = self._path_for(key)
        tmp_path = None

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=TEMP_PREFIX, dir=path.parent)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                if self.fsync:
                    f.flush()
                    os.fsync(f.fileno())

            if overwrite:
                os.replace(tmp_path, path)
                tmp_path = None
            else:
                os.link(tmp_path, path)

        except FileExistsError as e:
            raise ObjectExistsError(f"Object already exists: {key}") from e
        except OSError as e:
            logger.error(f"Failed to write object {key}: {e}")
            raise TransientIOError(f"Failed to write object {key}: {e}") from e
        finally:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)

        logger.debug(f"Wrote object: {path} ({len(data)} bytes)")
        return compute_bytes_checksum(data)

    def get(self, key: str) -> bytes:
        """Fetch an object."""
        path = self._path_for(key)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError as e:
            raise NotFoundError(f"Object not found: {key}") from e
        except OSError as e:
            raise TransientIOError(f"Failed to read object {key}: {e}") from e

    def list(self, prefix: str = "") -> List[str]:
        """List committed keys under a prefix, in ascending order."""
        # Walk only the deepest directory the prefix pins down
        start_dir = self.base_dir
        if "/" in prefix:
            start_dir = self.base_dir.joinpath(*PurePosixPath(prefix.rsplit("/", 1)[0]).parts)

        if not start_dir.is_dir():
            return []

        keys = []
        for root, _dirs, files in os.walk(start_dir):
            for name in files:
                if name.startswith(TEMP_PREFIX):
                    continue
                rel = Path(root, name).relative_to(self.base_dir).as_posix()
                if rel.startswith(prefix):
                    keys.append(rel)

        return sorted(keys)

    def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()

    def get_name(self) -> str:
        """Return the object store name."""
        return "file_lake"
