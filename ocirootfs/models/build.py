"""Build state machine and build option models.

``BuildOptions`` is an immutable value object assembled by
``BuildOptionsBuilder``.  Every problem found while assembling it is
collected and reported in one ``InvalidBuildOptions``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ocirootfs.config import RootfsSettings
from ocirootfs.core.errors import InvalidBuildOptions

# Default sink for build logs when no logger is supplied: records are discarded.
_DISCARD_LOGGER = logging.getLogger("ocirootfs.build")
_DISCARD_LOGGER.addHandler(logging.NullHandler())
_DISCARD_LOGGER.propagate = False


class BuildState(str, Enum):
    """Lifecycle of one rootfs build."""

    UNINITIALIZED = "uninitialized"
    REFERENCE_RESOLVED = "reference_resolved"
    LAYERS_STAGED = "layers_staged"
    FILE_OVERLAYS_APPLIED = "file_overlays_applied"
    MATERIALIZED = "materialized"
    FAILED = "failed"


# Valid state transitions — enforced by BuildStateMachine.
# Terminal states (MATERIALIZED, FAILED) have no outgoing transitions.
VALID_TRANSITIONS: dict[BuildState, set[BuildState]] = {
    BuildState.UNINITIALIZED: {BuildState.REFERENCE_RESOLVED, BuildState.FAILED},
    BuildState.REFERENCE_RESOLVED: {BuildState.LAYERS_STAGED, BuildState.FAILED},
    BuildState.LAYERS_STAGED: {
        BuildState.FILE_OVERLAYS_APPLIED,
        BuildState.MATERIALIZED,
        BuildState.FAILED,
    },
    BuildState.FILE_OVERLAYS_APPLIED: {BuildState.MATERIALIZED, BuildState.FAILED},
    BuildState.MATERIALIZED: set(),  # terminal
    BuildState.FAILED: set(),  # terminal
}

# States from which the staged tree is complete enough to overlay or materialize.
STAGED_STATES: frozenset[BuildState] = frozenset(
    {BuildState.LAYERS_STAGED, BuildState.FILE_OVERLAYS_APPLIED}
)


class BuildTransition(BaseModel):
    """Records a single state transition for the build history."""

    model_config = ConfigDict(frozen=True)

    from_state: BuildState
    to_state: BuildState
    detail: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


_PLATFORM_TOKEN_RE = re.compile(r"^[a-z0-9_]+$")
_SIZE_RE = re.compile(r"^[1-9][0-9]*[KMGT]?$")


class BuildOptions(BaseModel):
    """Immutable, validated configuration for one build."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    target_os: str = "linux"
    target_arch: str = "amd64"
    output_dir: Path = Path(".")
    image_name: str = "rootfs.ext4"
    image_size: str = "150M"
    staging_parent: Path | None = None
    keep_staging: bool = False
    timeout: float | None = None
    logger: logging.Logger | None = None
    progress: Callable[..., Any] | None = None

    @field_validator("target_os", "target_arch")
    @classmethod
    def _check_platform_token(cls, value: str) -> str:
        if not _PLATFORM_TOKEN_RE.match(value):
            raise ValueError(f"{value!r} is not a valid OS/architecture name")
        return value

    @field_validator("output_dir")
    @classmethod
    def _check_output_dir(cls, value: Path) -> Path:
        if value.exists() and not value.is_dir():
            raise ValueError(f"{value} exists and is not a directory")
        return value

    @field_validator("staging_parent")
    @classmethod
    def _check_staging_parent(cls, value: Path | None) -> Path | None:
        if value is not None and not value.is_dir():
            raise ValueError(f"{value} is not an existing directory")
        return value

    @field_validator("image_name")
    @classmethod
    def _check_image_name(cls, value: str) -> str:
        if not value or "/" in value or value in (".", ".."):
            raise ValueError(f"{value!r} is not a plain file name")
        return value

    @field_validator("image_size")
    @classmethod
    def _check_image_size(cls, value: str) -> str:
        if not _SIZE_RE.match(value):
            raise ValueError(f"{value!r} is not a size like 150M or 2G")
        return value

    @field_validator("timeout")
    @classmethod
    def _check_timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("timeout must be positive")
        return value

    @property
    def output_path(self) -> Path:
        return self.output_dir / self.image_name

    @property
    def effective_logger(self) -> logging.Logger:
        return self.logger or _DISCARD_LOGGER


class BuildOptionsBuilder:
    """Collects option values and produces a validated ``BuildOptions``.

    Setters never raise.  Problems are recorded and surfaced together by
    ``build()``.

    Parameters
    ----------
    settings:
        Source of defaults.  Environment-driven ``RootfsSettings`` if omitted.
    """

    def __init__(self, settings: RootfsSettings | None = None) -> None:
        settings = settings or RootfsSettings()
        self._values: dict[str, Any] = {
            "target_os": settings.default_os,
            "target_arch": settings.default_arch,
            "output_dir": settings.output_dir,
            "image_name": settings.image_name,
            "image_size": settings.image_size,
        }
        self._errors: list[str] = []

    def with_os_arch(self, target_os: str = "", target_arch: str = "") -> BuildOptionsBuilder:
        """Set the target platform.  Empty values keep the current default."""
        if target_os:
            self._values["target_os"] = target_os
        if target_arch:
            self._values["target_arch"] = target_arch
        return self

    def with_logger(self, logger: logging.Logger | None) -> BuildOptionsBuilder:
        """Set the logger the build reports through.  ``None`` keeps the default."""
        if logger is None:
            return self
        if not isinstance(logger, logging.Logger):
            self._errors.append(f"logger: expected logging.Logger, got {type(logger).__name__}")
            return self
        self._values["logger"] = logger
        return self

    def with_output_dir(self, output_dir: str | Path) -> BuildOptionsBuilder:
        self._values["output_dir"] = Path(output_dir)
        return self

    def with_image(self, name: str | None = None, size: str | None = None) -> BuildOptionsBuilder:
        if name is not None:
            self._values["image_name"] = name
        if size is not None:
            self._values["image_size"] = size
        return self

    def with_staging_parent(self, path: str | Path) -> BuildOptionsBuilder:
        self._values["staging_parent"] = Path(path)
        return self

    def with_keep_staging(self, keep: bool = True) -> BuildOptionsBuilder:
        self._values["keep_staging"] = keep
        return self

    def with_timeout(self, seconds: float | None) -> BuildOptionsBuilder:
        self._values["timeout"] = seconds
        return self

    def with_progress(self, callback: Callable[..., Any] | None) -> BuildOptionsBuilder:
        if callback is not None and not callable(callback):
            self._errors.append("progress: callback is not callable")
            return self
        self._values["progress"] = callback
        return self

    def build(self) -> BuildOptions:
        """Validate all collected values at once.

        Raises ``InvalidBuildOptions`` listing every problem found.
        """
        errors = list(self._errors)
        try:
            options = BuildOptions(**self._values)
        except ValidationError as exc:
            for err in exc.errors():
                field = ".".join(str(part) for part in err["loc"])
                errors.append(f"{field}: {err['msg']}")
            options = None
        if errors:
            raise InvalidBuildOptions(errors)
        return options
