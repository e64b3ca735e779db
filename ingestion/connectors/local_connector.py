"""
Local Filesystem Object Store
=============================

Object store backed by a local directory. Used for development runs and
tests; writes are atomic (temp file + rename).
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, List

from .base import ObjectStore

logger = logging.getLogger(__name__)


class LocalFileConnector(ObjectStore):
    """Stores objects as files under a root directory."""

    def __init__(self, config: Dict):
        self.root = Path(config.get("path", "data/objects")).resolve()

    def connect(self):
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info(f"Using local object store at {self.root}")

    def _full_path(self, path: str) -> Path:
        full = (self.root / path).resolve()
        if self.root not in full.parents and full != self.root:
            raise ValueError(f"Object path escapes store root: {path}")
        return full

    def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        target = self._full_path(path)
        target.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        return f"file://{target}"

    def get(self, path: str) -> bytes:
        return self._full_path(path).read_bytes()

    def list(self, prefix: str = "") -> List[str]:
        if not self.root.exists():
            return []
        names = []
        for file_path in self.root.rglob("*"):
            if not file_path.is_file() or file_path.name.startswith(".tmp-"):
                continue
            name = file_path.relative_to(self.root).as_posix()
            if name.startswith(prefix):
                names.append(name)
        return sorted(names)

    def delete(self, path: str):
        self._full_path(path).unlink(missing_ok=True)
        logger.info(f"Deleted: {path}")

    def exists(self, path: str) -> bool:
        return self._full_path(path).is_file()
