"""Shared test fixtures for ocirootfs."""

from __future__ import annotations

import hashlib
import io
import json
import tarfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from ocirootfs.config import RootfsSettings
from ocirootfs.core.errors import RegistryRequestError
from ocirootfs.models.build import BuildOptions, BuildOptionsBuilder
from ocirootfs.models.manifest import (
    MEDIA_TYPE_OCI_INDEX,
    MEDIA_TYPE_OCI_LAYER_GZIP,
    MEDIA_TYPE_OCI_MANIFEST,
    Descriptor,
)

CONFIG_MEDIA_TYPE = "application/vnd.oci.image.config.v1+json"


def _digest(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


# ---------------------------------------------------------------------------
# Layer archives
# ---------------------------------------------------------------------------


def build_layer(entries: list[tuple[Any, ...]], *, compress: bool = True) -> bytes:
    """Build a (gzip-compressed) tar archive from entry tuples.

    Supported entries::

        ("dir", name, mode)
        ("file", name, content, mode)
        ("symlink", name, target)
        ("hardlink", name, target)
        ("fifo", name)
    """
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz" if compress else "w") as archive:
        for entry in entries:
            kind, name = entry[0], entry[1]
            info = tarfile.TarInfo(name)
            data = None
            if kind == "dir":
                info.type = tarfile.DIRTYPE
                info.mode = entry[2] if len(entry) > 2 else 0o755
            elif kind == "file":
                data = entry[2] if isinstance(entry[2], bytes) else entry[2].encode()
                info.size = len(data)
                info.mode = entry[3] if len(entry) > 3 else 0o644
            elif kind == "symlink":
                info.type = tarfile.SYMTYPE
                info.linkname = entry[2]
            elif kind == "hardlink":
                info.type = tarfile.LNKTYPE
                info.linkname = entry[2]
            elif kind == "fifo":
                info.type = tarfile.FIFOTYPE
            else:
                raise ValueError(f"unknown entry kind {kind}")
            archive.addfile(info, io.BytesIO(data) if data is not None else None)
    return buffer.getvalue()


@pytest.fixture
def make_layer() -> Callable[..., bytes]:
    """Factory fixture: build a gzip-compressed layer from entry tuples."""
    return build_layer


# ---------------------------------------------------------------------------
# In-memory registry
# ---------------------------------------------------------------------------


class FakeRegistry:
    """In-memory stand-in for a registry repository.

    Implements the RegistryClient protocol and records every call.
    """

    def __init__(self) -> None:
        self.tags: dict[str, str] = {}
        self.documents: dict[str, tuple[bytes, str]] = {}
        self.blobs: dict[str, bytes] = {}
        self.calls: list[tuple[str, str]] = []

    # -- population helpers -------------------------------------------------

    def add_blob(self, data: bytes) -> str:
        digest = _digest(data)
        self.blobs[digest] = data
        return digest

    def add_document(self, document: dict[str, Any], media_type: str, tag: str | None = None) -> Descriptor:
        body = json.dumps(document).encode()
        digest = _digest(body)
        self.documents[digest] = (body, media_type)
        if tag:
            self.tags[tag] = digest
        return Descriptor(media_type=media_type, digest=digest, size=len(body))

    def add_image(
        self,
        layers: list[bytes],
        *,
        tag: str | None = "latest",
        layer_media_type: str = MEDIA_TYPE_OCI_LAYER_GZIP,
    ) -> Descriptor:
        config = json.dumps({"architecture": "amd64", "os": "linux"}).encode()
        manifest = {
            "schemaVersion": 2,
            "mediaType": MEDIA_TYPE_OCI_MANIFEST,
            "config": {
                "mediaType": CONFIG_MEDIA_TYPE,
                "digest": self.add_blob(config),
                "size": len(config),
            },
            "layers": [
                {"mediaType": layer_media_type, "digest": self.add_blob(data), "size": len(data)}
                for data in layers
            ],
        }
        return self.add_document(manifest, MEDIA_TYPE_OCI_MANIFEST, tag)

    def add_index(self, platforms: dict[str, Descriptor], *, tag: str = "latest") -> Descriptor:
        """Add an index whose entries map ``"os/arch"`` to manifest descriptors."""
        entries = []
        for name, descriptor in platforms.items():
            os_name, arch = name.split("/", 1)
            entries.append({
                "mediaType": descriptor.media_type,
                "digest": descriptor.digest,
                "size": descriptor.size,
                "platform": {"os": os_name, "architecture": arch},
            })
        index = {"schemaVersion": 2, "mediaType": MEDIA_TYPE_OCI_INDEX, "manifests": entries}
        return self.add_document(index, MEDIA_TYPE_OCI_INDEX, tag)

    # -- RegistryClient protocol --------------------------------------------

    def resolve(self, tag_or_digest: str) -> Descriptor:
        self.calls.append(("resolve", tag_or_digest))
        digest = self.tags.get(tag_or_digest, tag_or_digest)
        if digest not in self.documents:
            raise RegistryRequestError(f"manifest {tag_or_digest} not found", status_code=404)
        body, media_type = self.documents[digest]
        return Descriptor(media_type=media_type, digest=digest, size=len(body))

    def fetch_manifest(self, descriptor: Descriptor) -> tuple[bytes, str]:
        self.calls.append(("fetch_manifest", descriptor.digest))
        return self.documents[descriptor.digest]

    def fetch_blob(self, descriptor: Descriptor) -> io.BytesIO:
        self.calls.append(("fetch_blob", descriptor.digest))
        return io.BytesIO(self.blobs[descriptor.digest])


@pytest.fixture
def registry() -> FakeRegistry:
    """Provide an empty in-memory registry."""
    return FakeRegistry()


# ---------------------------------------------------------------------------
# Formatter
# ---------------------------------------------------------------------------


class FakeFormatter:
    """Records format() calls and writes a listing of the staged tree."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[Path, Path, str]] = []
        self.staged: dict[str, bytes] = {}

    def format(self, source_dir: Path, output_path: Path, size: str) -> None:
        self.calls.append((source_dir, output_path, size))
        if self.error is not None:
            raise self.error
        for path in sorted(source_dir.rglob("*")):
            if path.is_file() and not path.is_symlink():
                self.staged["/" + path.relative_to(source_dir).as_posix()] = path.read_bytes()
        output_path.write_text("\n".join(self.staged))


@pytest.fixture
def formatter() -> FakeFormatter:
    return FakeFormatter()


# ---------------------------------------------------------------------------
# Settings and options
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch) -> RootfsSettings:
    """Settings isolated from the developer's environment."""
    for var in ("GH_PAT", "OCIROOTFS_GHCR_TOKEN", "OCIROOTFS_REGISTRY_AUTH"):
        monkeypatch.delenv(var, raising=False)
    return RootfsSettings(_env_file=None)


@pytest.fixture
def staging_parent(tmp_path: Path) -> Path:
    path = tmp_path / "staging"
    path.mkdir()
    return path


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    return tmp_path / "out"


@pytest.fixture
def options(settings: RootfsSettings, staging_parent: Path, output_dir: Path) -> BuildOptions:
    """Build options writing into the test's temp directories."""
    return (
        BuildOptionsBuilder(settings)
        .with_os_arch("linux", "amd64")
        .with_output_dir(output_dir)
        .with_staging_parent(staging_parent)
        .build()
    )


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


def make_response(
    status: int = 200,
    body: bytes | str = b"",
    headers: dict[str, str] | None = None,
    *,
    stream: bool = False,
    url: str = "https://registry.test/",
) -> requests.Response:
    """Build a ``requests.Response`` without touching the network."""
    if isinstance(body, str):
        body = body.encode()
    response = requests.Response()
    response.status_code = status
    response.url = url
    response.reason = "Test"
    response.headers = CaseInsensitiveDict(headers or {})
    if stream:
        response.raw = io.BytesIO(body)
    else:
        response._content = body
        response._content_consumed = True
    return response


class FakeSession:
    """Stands in for ``requests.Session``.

    Responses are served in queue order; every call is recorded.  A queued
    exception is raised instead of returned.
    """

    def __init__(self, *responses: requests.Response | Exception) -> None:
        self.queue: list[requests.Response | Exception] = list(responses)
        self.calls: list[dict[str, Any]] = []

    def _next(self, call: dict[str, Any]) -> requests.Response:
        self.calls.append(call)
        if not self.queue:
            raise AssertionError(f"unexpected request: {call}")
        item = self.queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        return self._next({"method": method, "url": url, **kwargs})

    def get(self, url: str, **kwargs: Any) -> requests.Response:
        return self._next({"method": "GET", "url": url, **kwargs})


@pytest.fixture
def make_session() -> Callable[..., FakeSession]:
    """Factory fixture: a FakeSession serving the given responses."""
    return FakeSession


@pytest.fixture
def response() -> Callable[..., requests.Response]:
    """Factory fixture: build an offline ``requests.Response``."""
    return make_response
