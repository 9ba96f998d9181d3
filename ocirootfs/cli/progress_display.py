"""Rich progress bars for layer downloads.

``DownloadProgress`` is a ``ProgressReader`` callback: each distinct
progress title (the layer's short digest) gets its own bar.
"""

from __future__ import annotations

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TaskID,
    TextColumn,
    TransferSpeedColumn,
)

from ocirootfs.core.progress import ProgressUpdate


class DownloadProgress:
    """Renders ``ProgressUpdate`` callbacks as Rich progress bars.

    Parameters
    ----------
    console:
        Rich Console to draw on.  A stderr console is created if omitted.
    enabled:
        When False, updates are accepted and ignored.
    """

    def __init__(self, console: Console | None = None, *, enabled: bool = True) -> None:
        self.console = console or Console(stderr=True)
        self.enabled = enabled
        self._progress = Progress(
            TextColumn("{task.fields[action]} [bold cyan]{task.description}[/bold cyan]"),
            BarColumn(bar_width=50),
            TextColumn("{task.percentage:>6.2f}%"),
            DownloadColumn(),
            TransferSpeedColumn(),
            console=self.console,
        )
        self._tasks: dict[str, TaskID] = {}
        self._started = False

    def __call__(self, update: ProgressUpdate) -> None:
        if not self.enabled:
            return
        if not self._started:
            self._progress.start()
            self._started = True
        task = self._tasks.get(update.title)
        if task is None:
            task = self._progress.add_task(
                update.title,
                total=update.total or None,
                action=update.action,
            )
            self._tasks[update.title] = task
        self._progress.update(task, completed=update.transferred)

    def stop(self) -> None:
        """Flush and stop drawing.  Safe to call more than once."""
        if self._started:
            self._progress.stop()
            self._started = False

    def __enter__(self) -> DownloadProgress:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()
