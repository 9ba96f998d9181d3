"""Manifest resolution: reference + platform -> one platform-specific manifest.

The top-level document is classified once into ``ImageManifest`` or
``ImageIndex``.  An index is narrowed to the first entry whose OS and
architecture exactly equal the target; there is no fallback to
"compatible" platforms.  Nothing partial is ever returned.
"""

from __future__ import annotations

import logging

from ocirootfs.core.errors import (
    AuthTokenError,
    BuildTimeout,
    ManifestFetchError,
    NoMatchingPlatform,
    RootfsError,
)
from ocirootfs.core.registry import RegistryClient
from ocirootfs.models.manifest import (
    Descriptor,
    ImageIndex,
    ImageManifest,
    ResolvedManifest,
    parse_manifest_document,
)
from ocirootfs.models.reference import ImageReference

logger = logging.getLogger(__name__)

# Substituted when a reference carries neither tag nor digest.
DEFAULT_TAG = "latest"


class ManifestResolver:
    """Resolves image references to platform-specific manifests.

    Parameters
    ----------
    client:
        Registry client scoped to the reference's repository.
    """

    def __init__(self, client: RegistryClient) -> None:
        self._client = client

    def resolve(
        self, reference: ImageReference, target_os: str, target_arch: str
    ) -> ResolvedManifest:
        """Resolve *reference* for *target_os*/*target_arch*.

        Raises
        ------
        NoMatchingPlatform
            The reference is an index without an entry for the platform.
        ManifestFetchError
            Any fetch or decoding step failed.
        AuthTokenError
            The registry token exchange failed.
        """
        tag_or_digest = reference.tag_or_digest or DEFAULT_TAG
        logger.info(
            "Resolving %s for %s/%s", reference.raw, target_os, target_arch
        )
        try:
            return self._resolve(reference, tag_or_digest, target_os, target_arch)
        except (AuthTokenError, BuildTimeout, ManifestFetchError, NoMatchingPlatform):
            raise
        except RootfsError as exc:
            raise ManifestFetchError(f"failed to resolve {reference.raw}: {exc}") from exc

    def _resolve(
        self,
        reference: ImageReference,
        tag_or_digest: str,
        target_os: str,
        target_arch: str,
    ) -> ResolvedManifest:
        descriptor = self._client.resolve(tag_or_digest)
        document = self._fetch_document(descriptor)

        if isinstance(document, ImageManifest):
            logger.debug("%s is a single-platform manifest", reference.raw)
            return self._resolved(reference, descriptor, document)

        index: ImageIndex = document
        entry = index.select_platform(target_os, target_arch)
        if entry is None:
            logger.error(
                "No matching manifest found for %s/%s in %s",
                target_os, target_arch, reference.raw,
            )
            raise NoMatchingPlatform(target_os, target_arch, index.platforms)

        logger.debug("Selected %s for platform %s", entry.digest, entry.platform)
        manifest = self._fetch_document(entry)
        if not isinstance(manifest, ImageManifest):
            raise ManifestFetchError(
                f"index entry {entry.digest} of {reference.raw} is not an image manifest"
            )
        return self._resolved(reference, entry, manifest)

    def _fetch_document(self, descriptor: Descriptor) -> ImageManifest | ImageIndex:
        body, media_type = self._client.fetch_manifest(descriptor)
        return parse_manifest_document(body, media_type or descriptor.media_type)

    @staticmethod
    def _resolved(
        reference: ImageReference, descriptor: Descriptor, manifest: ImageManifest
    ) -> ResolvedManifest:
        resolved = ResolvedManifest(
            reference=reference.raw,
            digest=descriptor.digest,
            media_type=manifest.media_type,
            config=manifest.config,
            layers=tuple(manifest.layers),
            platform=descriptor.platform,
        )
        logger.info(
            "Resolved %s to %s with %d layers (%d bytes)",
            reference.raw, resolved.digest, len(resolved.layers), resolved.total_size,
        )
        return resolved
