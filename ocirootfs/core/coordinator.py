"""Build coordinator — the public entry point for producing a rootfs image.

``RootfsBuild`` wires together the ManifestResolver, RegistryClient,
LayerExtractor, StagingDirectory, ImageFormatter and BuildStateMachine
into one strictly sequential pipeline::

    RootfsBuild(ref, options)      parse reference, validate options
      .build()                     resolve -> download + extract each layer in order
      .add_file(src, dest)         overlay local files (zero or more times)
      .create()                    mke2fs + resize2fs -> <output_dir>/rootfs.ext4

Layer order is load-bearing: later layers overwrite earlier ones.  Any
failure marks the build FAILED, releases the staging directory and
re-raises the error; nothing is retried.
"""

from __future__ import annotations

import logging
import posixpath
import shutil
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

from ocirootfs.config import RootfsSettings
from ocirootfs.core.build_machine import BuildStateMachine
from ocirootfs.core.credentials import CredentialProvider, CredentialSelector
from ocirootfs.core.deadline import Deadline
from ocirootfs.core.errors import (
    ExtractionIOError,
    ImageFormatError,
    OverlayIOError,
    PrematureMaterialization,
    SourceNotFound,
    UnsupportedLayerMediaType,
)
from ocirootfs.core.extractor import LayerExtractor, resolve_in_root
from ocirootfs.core.formatter import Ext4ImageFormatter, ImageFormatter
from ocirootfs.core.progress import ProgressReader
from ocirootfs.core.registry import HttpRegistryClient, RegistryClient
from ocirootfs.core.resolver import ManifestResolver
from ocirootfs.core.staging import StagingDirectory
from ocirootfs.models.build import (
    STAGED_STATES,
    BuildOptions,
    BuildOptionsBuilder,
    BuildState,
    BuildTransition,
)
from ocirootfs.models.manifest import Descriptor, ResolvedManifest
from ocirootfs.models.reference import ImageReference


class RootfsBuild:
    """One image-to-rootfs build.

    Parameters
    ----------
    reference:
        Image reference such as ``docker.io/library/ubuntu:latest``.
    options:
        Validated build options.  Defaults from ``settings`` if omitted.
    settings:
        Environment-driven settings.  Loaded from the environment if omitted.
    registry_client:
        Registry access.  An ``HttpRegistryClient`` for the reference if omitted.
    formatter:
        Image formatter.  An ``Ext4ImageFormatter`` if omitted.
    credentials:
        Credential provider for the default registry client.  Built from
        ``settings`` if omitted.
    """

    def __init__(
        self,
        reference: str,
        options: BuildOptions | None = None,
        *,
        settings: RootfsSettings | None = None,
        registry_client: RegistryClient | None = None,
        formatter: ImageFormatter | None = None,
        credentials: CredentialProvider | None = None,
    ) -> None:
        self.reference = ImageReference.parse(reference)
        self.settings = settings or RootfsSettings()
        self.options = options or BuildOptionsBuilder(self.settings).build()
        self._log = self.options.effective_logger
        self.deadline = Deadline(self.options.timeout)

        if registry_client is None:
            registry_client = HttpRegistryClient(
                self.reference,
                credentials=credentials or CredentialSelector.from_settings(self.settings),
                settings=self.settings,
                deadline=self.deadline,
            )
        if formatter is None:
            formatter = Ext4ImageFormatter(
                self.settings.mke2fs_path,
                self.settings.resize2fs_path,
                timeout=self.settings.format_timeout,
                deadline=self.deadline,
            )

        self._client = registry_client
        self._formatter = formatter
        self._resolver = ManifestResolver(registry_client)
        self._extractor = LayerExtractor()
        self._machine = BuildStateMachine(self._log)
        self._staging = StagingDirectory(
            self.options.staging_parent, keep=self.options.keep_staging
        )
        self.manifest: ResolvedManifest | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> BuildState:
        return self._machine.state

    @property
    def history(self) -> list[BuildTransition]:
        return self._machine.history

    @property
    def staging_dir(self) -> Path | None:
        """The staging tree while the build holds one, else ``None``."""
        return self._staging.path if self._staging.allocated else None

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def build(self) -> Path:
        """Resolve the reference and stage every layer, in manifest order.

        Returns the staging directory path.
        """
        self._machine.require({BuildState.UNINITIALIZED}, "build()")
        self.deadline.start()

        with self._abort_on_error("build"):
            try:
                staging = self._staging.allocate()
            except OSError as exc:
                raise ExtractionIOError(f"cannot create staging directory: {exc}") from exc
            self._log.info("Parsing OCI reference %s", self.reference.raw)
            self.manifest = self._resolver.resolve(
                self.reference, self.options.target_os, self.options.target_arch
            )
            self._machine.transition(BuildState.REFERENCE_RESOLVED, self.manifest.digest)

            layers = self.manifest.layers
            self._log.info("Downloading and extracting %d layers", len(layers))
            for position, layer in enumerate(layers, start=1):
                self._stage_layer(position, len(layers), layer, staging)
            self._machine.transition(BuildState.LAYERS_STAGED, f"{len(layers)} layers")

        return staging

    def add_file(self, src: str | Path, dest: str) -> Path:
        """Copy local file *src* into the rootfs at absolute path *dest*.

        A *dest* ending in ``/`` (or equal to ``/`` or empty) names a
        directory; the source's own file name is used.  Returns the path
        written inside the staging tree.
        """
        self._machine.require(STAGED_STATES, "add_file()")
        self._log.info("Adding file to rootfs: local=%s dest=%s", src, dest)

        with self._abort_on_error("add_file"):
            target = self._overlay(Path(src), dest)
            if self.state == BuildState.LAYERS_STAGED:
                self._machine.transition(BuildState.FILE_OVERLAYS_APPLIED, dest)
        return target

    def create(self) -> Path:
        """Materialize the staging tree as the final image.

        Requires ``build()`` to have completed.  Returns the image path.
        """
        self._machine.require(STAGED_STATES, "create()", PrematureMaterialization)
        output = self.options.output_path

        with self._abort_on_error("create"):
            self._log.info("Creating rootfs image %s", output)
            try:
                self.options.output_dir.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise ImageFormatError(
                    f"cannot create output directory {self.options.output_dir}: {exc}"
                ) from exc
            self._formatter.format(self._staging.path, output, self.options.image_size)
            self._machine.transition(BuildState.MATERIALIZED, str(output))

        self._staging.discard()
        return output

    def run(self, files: Iterable[tuple[str | Path, str]] = ()) -> Path:
        """Run the whole pipeline: build, overlay *files*, create."""
        try:
            self.build()
            for src, dest in files:
                self.add_file(src, dest)
            return self.create()
        finally:
            self.close()

    def close(self) -> None:
        """Release the staging directory.  Safe to call at any point."""
        self._staging.discard()

    def __enter__(self) -> RootfsBuild:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _stage_layer(self, position: int, count: int, layer: Descriptor, staging: Path) -> None:
        self.deadline.check(f"layer {layer.digest}")
        if not layer.is_gzip_tar:
            raise UnsupportedLayerMediaType(
                f"layer {layer.digest} has media type {layer.media_type}; "
                "only gzip-compressed tar layers can be extracted"
            )

        self._log.debug(
            "Downloading layer %d/%d: digest=%s size=%d mediaType=%s",
            position, count, layer.encoded, layer.size, layer.media_type,
        )
        stream = self._client.fetch_blob(layer)
        with ProgressReader(
            stream,
            layer.size,
            title=layer.short_id,
            callback=self.options.progress,
            deadline=self.deadline,
        ) as reader:
            self._log.debug("Extracting layer %s", layer.encoded)
            self._extractor.extract(reader, staging)
            reader.finish()

    def _overlay(self, src: Path, dest: str) -> Path:
        if not src.exists():
            raise SourceNotFound(f"file {src} does not exist")
        if not src.is_file():
            raise SourceNotFound(f"{src} is not a regular file")

        dest_dir, name = posixpath.split(dest)
        if name in ("", "/"):
            name = src.name
        if name in (".", ".."):
            raise OverlayIOError(f"destination {dest!r} does not name a file")

        try:
            parent = resolve_in_root(self._staging.path, dest_dir, follow_final=True)
            parent.mkdir(parents=True, exist_ok=True)
            target = parent / name
            if target.is_symlink() or target.is_file():
                # Layer files may lack owner write permission.
                target.unlink()
            shutil.copyfile(src, target)
            shutil.copymode(src, target)
        except OSError as exc:
            raise OverlayIOError(f"failed to copy {src} to {dest}: {exc}") from exc
        return target

    @contextmanager
    def _abort_on_error(self, step: str) -> Iterator[None]:
        """Fail the build and release staging if the wrapped step raises."""
        try:
            yield
        except BaseException as exc:
            self._log.error("Build of %s failed during %s: %s", self.reference.raw, step, exc)
            self._machine.fail(f"{step}: {exc}")
            self._staging.discard()
            raise
