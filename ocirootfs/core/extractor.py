"""Layer extraction: one gzip-compressed tar stream onto a target directory.

The archive is consumed in streaming mode, entry by entry, without
buffering the decompressed archive.  Entries are applied with overlay
semantics:

- directories are union-merged (created if absent, otherwise reused)
- regular files, symlinks and hardlinks replace whatever is at their path
- ``.wh.<name>`` whiteouts delete ``<name>`` from lower layers, and
  ``.wh..wh..opq`` empties a directory of lower-layer content
- device nodes and FIFOs are skipped with a warning

Every path is resolved inside the target directory with chroot semantics:
entry names that climb out of the target are rejected, and symlinks already
in the tree are followed as if the target were ``/``.  No write can land
outside the target.

Ownership (uid/gid) is not applied.  Directory permission bits always keep
owner rwx so later entries and layers can still be written.
"""

from __future__ import annotations

import gzip
import logging
import os
import posixpath
import shutil
import stat
import tarfile
import zlib
from collections import deque
from pathlib import Path
from typing import BinaryIO

from pydantic import BaseModel

from ocirootfs.core.errors import (
    ArchiveReadError,
    ExtractionIOError,
    RootfsError,
    UnsafeArchiveEntry,
)

logger = logging.getLogger(__name__)

WHITEOUT_PREFIX = ".wh."
WHITEOUT_OPAQUE = ".wh..wh..opq"

# Same limit the Linux kernel applies to nested symlink resolution.
_MAX_SYMLINK_HOPS = 40


class ExtractionStats(BaseModel):
    """Counts of what one layer contributed to the tree."""

    directories: int = 0
    files: int = 0
    symlinks: int = 0
    hardlinks: int = 0
    whiteouts: int = 0
    skipped: int = 0

    @property
    def entries(self) -> int:
        return (
            self.directories + self.files + self.symlinks
            + self.hardlinks + self.whiteouts + self.skipped
        )


def normalize_entry_name(name: str) -> str | None:
    """Normalize an archive entry name to a path relative to the root.

    Returns ``None`` for the root itself.  Raises ``UnsafeArchiveEntry``
    when the name climbs above the root.
    """
    normalized = posixpath.normpath(name.lstrip("/") or ".")
    if normalized == ".":
        return None
    if normalized == ".." or normalized.startswith("../"):
        raise UnsafeArchiveEntry(f"refusing to extract entry outside target: {name!r}")
    return normalized


def resolve_in_root(root: str | Path, relpath: str, *, follow_final: bool = False) -> Path:
    """Resolve *relpath* under *root* as if *root* were the filesystem root.

    Symlinks met along the way are followed; absolute link targets restart
    from *root* and ``..`` never climbs above it.  The final component is
    only followed when *follow_final* is set.
    """
    parts = deque(p for p in relpath.split("/") if p not in ("", "."))
    resolved: list[str] = []
    hops = 0
    while parts:
        part = parts.popleft()
        if part == "..":
            if resolved:
                resolved.pop()
            continue
        candidate = os.path.join(root, *resolved, part)
        if os.path.islink(candidate) and (parts or follow_final):
            hops += 1
            if hops > _MAX_SYMLINK_HOPS:
                raise UnsafeArchiveEntry(f"too many levels of symbolic links in {relpath!r}")
            target = os.readlink(candidate)
            if target.startswith("/"):
                resolved = []
            parts.extendleft(reversed([p for p in target.split("/") if p not in ("", ".")]))
            continue
        resolved.append(part)
    return Path(root, *resolved)


def _remove_path(path: Path) -> None:
    """Remove whatever is at *path* without following symlinks."""
    if path.is_symlink() or not path.exists():
        if os.path.lexists(path):
            path.unlink()
        return
    if path.is_dir():
        shutil.rmtree(path)
    else:
        path.unlink()


def _prune_lower(directory: Path, written: set[str]) -> None:
    """Remove everything under *directory* that the current layer did not write."""
    for child in directory.iterdir():
        if str(child) not in written:
            _remove_path(child)
        elif child.is_dir() and not child.is_symlink():
            _prune_lower(child, written)


class LayerExtractor:
    """Applies compressed layer archives to a directory tree."""

    def extract(self, stream: BinaryIO, target_dir: str | Path) -> ExtractionStats:
        """Extract the gzip-compressed tar *stream* onto *target_dir*.

        Raises
        ------
        ArchiveReadError
            Malformed gzip or tar framing, or an entry escaping the target.
        ExtractionIOError
            A filesystem write failed.  The target is left partially
            populated; cleaning it up is the caller's job.
        """
        root = os.path.realpath(target_dir)
        stats = ExtractionStats()
        # Paths written by this layer; whiteouts only affect lower layers.
        written: set[str] = set()
        try:
            with tarfile.open(fileobj=stream, mode="r|gz") as archive:
                for member in archive:
                    self._apply(archive, member, root, written, stats)
        except RootfsError:
            raise
        except (tarfile.TarError, EOFError, zlib.error, gzip.BadGzipFile) as exc:
            raise ArchiveReadError(f"failed to read layer archive: {exc}") from exc
        except OSError as exc:
            raise ExtractionIOError(f"failed to write into {root}: {exc}") from exc

        logger.debug(
            "Extracted %d entries (%d files, %d dirs, %d links, %d whiteouts, %d skipped)",
            stats.entries, stats.files, stats.directories,
            stats.symlinks + stats.hardlinks, stats.whiteouts, stats.skipped,
        )
        return stats

    def _apply(
        self,
        archive: tarfile.TarFile,
        member: tarfile.TarInfo,
        root: str,
        written: set[str],
        stats: ExtractionStats,
    ) -> None:
        relpath = normalize_entry_name(member.name)
        if relpath is None:
            return

        parent_rel, name = posixpath.split(relpath)
        parent = resolve_in_root(root, parent_rel, follow_final=True)

        if name.startswith(WHITEOUT_PREFIX):
            self._apply_whiteout(parent, name, written)
            stats.whiteouts += 1
            return

        if not (member.isdir() or member.isreg() or member.issym() or member.islnk()):
            logger.warning(
                "Skipping unsupported archive entry %s (type %r)", member.name, member.type
            )
            stats.skipped += 1
            return

        parent.mkdir(parents=True, exist_ok=True)
        target = parent / name
        written.add(str(target))
        mode = stat.S_IMODE(member.mode)

        if member.isdir():
            if os.path.lexists(target) and (target.is_symlink() or not target.is_dir()):
                _remove_path(target)
            target.mkdir(exist_ok=True)
            os.chmod(target, mode | stat.S_IRWXU)
            stats.directories += 1
            return

        if os.path.lexists(target):
            _remove_path(target)

        if member.isreg():
            source = archive.extractfile(member)
            with source, open(target, "wb") as out:
                shutil.copyfileobj(source, out)
            os.chmod(target, mode)
            stats.files += 1
        elif member.issym():
            os.symlink(member.linkname, target)
            stats.symlinks += 1
        else:
            link_rel = normalize_entry_name(member.linkname)
            if link_rel is None:
                raise UnsafeArchiveEntry(f"hardlink {member.name!r} points at the root")
            link_source = resolve_in_root(root, link_rel)
            if not os.path.lexists(link_source):
                raise ExtractionIOError(
                    f"hardlink {member.name!r} points at missing {member.linkname!r}"
                )
            os.link(link_source, target, follow_symlinks=False)
            stats.hardlinks += 1

    @staticmethod
    def _apply_whiteout(parent: Path, name: str, written: set[str]) -> None:
        if name == WHITEOUT_OPAQUE:
            if parent.is_dir() and not parent.is_symlink():
                _prune_lower(parent, written)
            return

        hidden = name[len(WHITEOUT_PREFIX):]
        if hidden in ("", ".", ".."):
            raise UnsafeArchiveEntry(f"invalid whiteout entry {name!r}")
        target = parent / hidden
        if str(target) not in written and os.path.lexists(target):
            _remove_path(target)
