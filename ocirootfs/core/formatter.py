"""Image formatting: staging directory -> ext4 image file.

Wraps the e2fsprogs tools the same way one would by hand::

    mke2fs -t ext4 -d rootfs rootfs.ext4 150M
    resize2fs -M rootfs.ext4
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Protocol, runtime_checkable

from ocirootfs.core.deadline import Deadline
from ocirootfs.core.errors import ImageFormatError

logger = logging.getLogger(__name__)


@runtime_checkable
class ImageFormatter(Protocol):
    """Turns a populated directory into a filesystem image."""

    def format(self, source_dir: Path, output_path: Path, size: str) -> None:
        """Write an image of *source_dir* to *output_path*, sized to *size*."""
        ...


class Ext4ImageFormatter:
    """Builds a minimal-size ext4 image with ``mke2fs`` and ``resize2fs``.

    Parameters
    ----------
    mke2fs / resize2fs:
        Executables to invoke.
    timeout:
        Per-command timeout in seconds.
    deadline:
        Build deadline; caps the per-command timeout.
    """

    def __init__(
        self,
        mke2fs: str = "mke2fs",
        resize2fs: str = "resize2fs",
        *,
        timeout: float | None = 600.0,
        deadline: Deadline | None = None,
    ) -> None:
        self.mke2fs = mke2fs
        self.resize2fs = resize2fs
        self._timeout = timeout
        self._deadline = deadline or Deadline()

    def format(self, source_dir: Path, output_path: Path, size: str) -> None:
        # mke2fs prompts before overwriting an existing filesystem image.
        if output_path.exists():
            output_path.unlink()

        logger.debug("Creating %s from %s (%s)", output_path, source_dir, size)
        self._run([self.mke2fs, "-t", "ext4", "-d", str(source_dir), str(output_path), size])

        logger.debug("Shrinking %s to its minimum size", output_path)
        self._run([self.resize2fs, "-M", str(output_path)])

    def _run(self, cmd: list[str]) -> None:
        self._deadline.check(cmd[0])
        logger.debug("Running command: %s", " ".join(cmd))
        try:
            subprocess.run(
                cmd,
                check=True,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self._deadline.cap(self._timeout),
            )
        except FileNotFoundError as exc:
            raise ImageFormatError(f"{cmd[0]} not found; is e2fsprogs installed?") from exc
        except subprocess.TimeoutExpired as exc:
            raise ImageFormatError(f"{cmd[0]} timed out after {exc.timeout:.0f}s") from exc
        except subprocess.CalledProcessError as exc:
            stderr = exc.stderr.decode(errors="replace") if exc.stderr else ""
            raise ImageFormatError(
                f"{cmd[0]} exited with status {exc.returncode}",
                returncode=exc.returncode,
                stderr=stderr,
            ) from exc
