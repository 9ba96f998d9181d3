"""Error taxonomy for the rootfs build pipeline.

Every error raised by the pipeline derives from ``RootfsError`` so callers
can catch the whole family at once.  Errors propagate immediately; nothing
in the pipeline retries or recovers locally.
"""

from __future__ import annotations


class RootfsError(RuntimeError):
    """Base class for all ocirootfs errors."""


class InvalidReference(RootfsError, ValueError):
    """Raised when an image reference is empty or malformed."""


class InvalidBuildOptions(RootfsError, ValueError):
    """Raised when build options fail validation.

    All option errors are collected and reported together so a caller
    sees every misconfiguration at once.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__(
            "Invalid build options: " + "; ".join(self.errors)
        )


class RegistryRequestError(RootfsError):
    """Raised when a registry HTTP request fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ManifestFetchError(RootfsError):
    """Raised when a manifest or index cannot be fetched or decoded."""


class NoMatchingPlatform(RootfsError):
    """Raised when an index has no manifest for the requested OS/architecture."""

    def __init__(
        self, target_os: str, target_arch: str, available: list[str] | None = None
    ) -> None:
        self.target_os = target_os
        self.target_arch = target_arch
        self.available = list(available or [])
        message = f"No manifest found for platform {target_os}/{target_arch}"
        if self.available:
            message += f" (available: {', '.join(self.available)})"
        super().__init__(message)


class AuthTokenError(RootfsError):
    """Raised when a registry token exchange fails or returns garbage."""


class BlobFetchError(RootfsError):
    """Raised when a layer blob cannot be downloaded or fails verification."""


class ArchiveReadError(RootfsError):
    """Raised on malformed gzip or tar framing in a layer archive."""


class UnsafeArchiveEntry(ArchiveReadError):
    """Raised when an archive entry would resolve outside the target directory."""


class UnsupportedLayerMediaType(ArchiveReadError):
    """Raised when a layer is not a gzip-compressed tar stream."""


class ExtractionIOError(RootfsError):
    """Raised when writing an extracted entry to the filesystem fails."""


class SourceNotFound(RootfsError):
    """Raised when an overlay source file does not exist."""


class OverlayIOError(RootfsError):
    """Raised when copying an overlay file into the staging tree fails."""


class ImageFormatError(RootfsError):
    """Raised when the external filesystem tooling fails."""

    def __init__(
        self, message: str, *, returncode: int | None = None, stderr: str = ""
    ) -> None:
        self.returncode = returncode
        self.stderr = stderr
        if stderr:
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


class BuildStateError(RootfsError):
    """Raised when a build operation is invoked from the wrong state."""


class PrematureMaterialization(BuildStateError):
    """Raised when materializing before all layers have been staged."""


class BuildTimeout(RootfsError):
    """Raised when the build deadline expires or the build is cancelled."""
