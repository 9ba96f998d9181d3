"""ocirootfs data models — all Pydantic v2, all frozen (immutable)."""

from ocirootfs.models.build import (
    VALID_TRANSITIONS,
    BuildOptions,
    BuildOptionsBuilder,
    BuildState,
    BuildTransition,
)
from ocirootfs.models.manifest import (
    Descriptor,
    ImageIndex,
    ImageManifest,
    ManifestDocument,
    Platform,
    ResolvedManifest,
    parse_manifest_document,
)
from ocirootfs.models.reference import ImageReference

__all__ = [
    # reference
    "ImageReference",
    # manifest
    "Platform",
    "Descriptor",
    "ImageManifest",
    "ImageIndex",
    "ManifestDocument",
    "ResolvedManifest",
    "parse_manifest_document",
    # build
    "BuildState",
    "BuildTransition",
    "VALID_TRANSITIONS",
    "BuildOptions",
    "BuildOptionsBuilder",
]
