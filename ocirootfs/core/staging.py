"""Staging directory: the rootfs tree under construction for one build."""

from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


class StagingDirectory:
    """Owns one temporary directory for exactly one build.

    The directory is allocated by ``allocate()`` (not by the constructor)
    and released by ``discard()``, which the build calls at the end of its
    lifetime whether it succeeded or failed.

    Parameters
    ----------
    parent:
        Directory to create the staging tree in.  System temp dir if ``None``.
    keep:
        Abandon the tree for inspection instead of removing it.
    """

    PREFIX = "rootfs-"

    def __init__(self, parent: Path | None = None, *, keep: bool = False) -> None:
        self._parent = parent
        self._keep = keep
        self._path: Path | None = None

    @property
    def path(self) -> Path:
        if self._path is None:
            raise RuntimeError("staging directory has not been allocated")
        return self._path

    @property
    def allocated(self) -> bool:
        return self._path is not None

    def allocate(self) -> Path:
        if self._path is None:
            self._path = Path(tempfile.mkdtemp(prefix=self.PREFIX, dir=self._parent))
            logger.debug("Allocated staging directory %s", self._path)
        return self._path

    def discard(self) -> None:
        """Release the directory.  Safe to call more than once."""
        if self._path is None:
            return
        path, self._path = self._path, None
        if self._keep:
            logger.info("Keeping staging directory %s for inspection", path)
            return
        shutil.rmtree(path, ignore_errors=True)
        logger.debug("Removed staging directory %s", path)

    def __enter__(self) -> Path:
        return self.allocate()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.discard()
