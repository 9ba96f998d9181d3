"""Manifest, index and descriptor models.

A fetched manifest document is classified exactly once, at
``parse_manifest_document``, into the tagged union
``ImageManifest | ImageIndex``.  Code past that point branches on the
variant type, never on media type strings.
"""

from __future__ import annotations

import json
from typing import Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ocirootfs.core.errors import ManifestFetchError

# Single-platform manifests
MEDIA_TYPE_OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
MEDIA_TYPE_DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"

# Multi-platform indexes
MEDIA_TYPE_OCI_INDEX = "application/vnd.oci.image.index.v1+json"
MEDIA_TYPE_DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"

# Layers the extractor can apply
MEDIA_TYPE_OCI_LAYER_GZIP = "application/vnd.oci.image.layer.v1.tar+gzip"
MEDIA_TYPE_DOCKER_LAYER_GZIP = "application/vnd.docker.image.rootfs.diff.tar.gzip"

MANIFEST_MEDIA_TYPES = frozenset({MEDIA_TYPE_OCI_MANIFEST, MEDIA_TYPE_DOCKER_MANIFEST})
INDEX_MEDIA_TYPES = frozenset({MEDIA_TYPE_OCI_INDEX, MEDIA_TYPE_DOCKER_MANIFEST_LIST})
GZIP_LAYER_MEDIA_TYPES = frozenset({MEDIA_TYPE_OCI_LAYER_GZIP, MEDIA_TYPE_DOCKER_LAYER_GZIP})

# Sent on every manifest request, preferred types first.
MANIFEST_ACCEPT = ", ".join([
    MEDIA_TYPE_OCI_INDEX,
    MEDIA_TYPE_OCI_MANIFEST,
    MEDIA_TYPE_DOCKER_MANIFEST_LIST,
    MEDIA_TYPE_DOCKER_MANIFEST,
])


class Platform(BaseModel):
    """Platform an index entry targets."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    os: str
    architecture: str
    variant: str | None = None
    os_version: str | None = Field(default=None, alias="os.version")

    def __str__(self) -> str:
        if self.variant:
            return f"{self.os}/{self.architecture}/{self.variant}"
        return f"{self.os}/{self.architecture}"


class Descriptor(BaseModel):
    """Content descriptor: a typed, sized pointer to a blob or manifest."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    media_type: str = Field(alias="mediaType")
    digest: str
    size: int
    platform: Platform | None = None
    annotations: dict[str, str] = {}

    @property
    def encoded(self) -> str:
        """The hex part of the digest."""
        return self.digest.split(":", 1)[-1]

    @property
    def short_id(self) -> str:
        """Last 8 characters of the digest, used for progress titles."""
        return self.encoded[-8:]

    @property
    def is_gzip_tar(self) -> bool:
        return self.media_type in GZIP_LAYER_MEDIA_TYPES

    @property
    def is_manifest(self) -> bool:
        return self.media_type in MANIFEST_MEDIA_TYPES


class ImageManifest(BaseModel):
    """Single-platform image manifest: config plus ordered layers."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: str = Field(default=MEDIA_TYPE_OCI_MANIFEST, alias="mediaType")
    config: Descriptor
    layers: list[Descriptor] = []


class ImageIndex(BaseModel):
    """Multi-platform index: one manifest descriptor per platform."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: str = Field(default=MEDIA_TYPE_OCI_INDEX, alias="mediaType")
    manifests: list[Descriptor] = []

    def select_platform(self, target_os: str, target_arch: str) -> Descriptor | None:
        """Return the first manifest entry exactly matching *target_os*/*target_arch*.

        Matching is case-sensitive and exact; there is no fallback to
        compatible platforms.
        """
        for entry in self.manifests:
            if not entry.is_manifest or entry.platform is None:
                continue
            if entry.platform.os == target_os and entry.platform.architecture == target_arch:
                return entry
        return None

    @property
    def platforms(self) -> list[str]:
        return [str(m.platform) for m in self.manifests if m.platform is not None]


ManifestDocument = Union[ImageManifest, ImageIndex]


def parse_manifest_document(body: bytes, media_type: str) -> ManifestDocument:
    """Decode a manifest or index body into the tagged union.

    *media_type* is the type reported by the registry; when it is missing
    or generic, the ``mediaType`` field of the body is used instead.
    Raises ``ManifestFetchError`` on unknown types or undecodable bodies.
    """
    try:
        document = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ManifestFetchError(f"manifest body is not valid JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise ManifestFetchError("manifest body is not a JSON object")

    kind = media_type.split(";", 1)[0].strip() if media_type else ""
    if kind not in MANIFEST_MEDIA_TYPES and kind not in INDEX_MEDIA_TYPES:
        kind = document.get("mediaType", "")

    try:
        if kind in MANIFEST_MEDIA_TYPES:
            return ImageManifest.model_validate(document)
        if kind in INDEX_MEDIA_TYPES:
            return ImageIndex.model_validate(document)
    except ValidationError as exc:
        raise ManifestFetchError(f"invalid {kind} document: {exc}") from exc
    raise ManifestFetchError(f"unsupported manifest media type: {kind or media_type!r}")


class ResolvedManifest(BaseModel):
    """The single platform-specific manifest selected for a build."""

    model_config = ConfigDict(frozen=True)

    reference: str
    digest: str
    media_type: str
    config: Descriptor
    layers: tuple[Descriptor, ...]
    platform: Platform | None = None

    @property
    def total_size(self) -> int:
        return sum(layer.size for layer in self.layers)
