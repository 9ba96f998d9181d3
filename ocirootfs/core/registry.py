"""Registry client for the OCI distribution API.

The pipeline only needs three capabilities from a registry, captured by
the ``RegistryClient`` protocol.  ``HttpRegistryClient`` implements them
over HTTPS with ``requests``, answering ``401`` challenges with the
credential the injected selector returns for the registry host.
"""

from __future__ import annotations

import base64
import hashlib
import io
import logging
import re
from collections.abc import Iterator
from typing import BinaryIO, Protocol, runtime_checkable

import requests

from ocirootfs.config import RootfsSettings
from ocirootfs.core.credentials import EMPTY_CREDENTIAL, Credential, CredentialProvider
from ocirootfs.core.deadline import Deadline
from ocirootfs.core.errors import (
    AuthTokenError,
    BlobFetchError,
    RegistryRequestError,
)
from ocirootfs.models.manifest import MANIFEST_ACCEPT, Descriptor
from ocirootfs.models.reference import ImageReference

logger = logging.getLogger(__name__)

_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


@runtime_checkable
class RegistryClient(Protocol):
    """Repository-scoped registry operations the build pipeline relies on."""

    def resolve(self, tag_or_digest: str) -> Descriptor:
        """Resolve a tag or digest to the descriptor of its top-level document."""
        ...

    def fetch_manifest(self, descriptor: Descriptor) -> tuple[bytes, str]:
        """Fetch a manifest or index body and its media type."""
        ...

    def fetch_blob(self, descriptor: Descriptor) -> BinaryIO:
        """Open a blob as a readable byte stream."""
        ...


def parse_challenge(header: str) -> tuple[str, dict[str, str]]:
    """Split a ``WWW-Authenticate`` header into its scheme and parameters."""
    scheme, _, rest = header.strip().partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM_RE.findall(rest))


def _sha256_mismatch(digest: str, data: bytes) -> bool:
    algorithm, _, expected = digest.partition(":")
    if algorithm != "sha256":
        return False
    return hashlib.sha256(data).hexdigest() != expected


class _VerifyingBlobStream(io.RawIOBase):
    """Readable view over a streamed blob response.

    Hashes bytes as they pass and checks digest and size at EOF.
    """

    def __init__(self, response: requests.Response, descriptor: Descriptor) -> None:
        super().__init__()
        self._response = response
        self._descriptor = descriptor
        self._chunks: Iterator[bytes] = response.iter_content(chunk_size=64 * 1024)
        self._pending = b""
        self._hash = hashlib.sha256()
        self._received = 0
        self._verified = False

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        if not self._pending:
            try:
                self._pending = next(self._chunks, b"")
            except requests.RequestException as exc:
                raise BlobFetchError(
                    f"download of {self._descriptor.digest} failed: {exc}"
                ) from exc
            if not self._pending:
                self._verify()
                return 0
            self._hash.update(self._pending)
            self._received += len(self._pending)

        n = min(len(buffer), len(self._pending))
        buffer[:n] = self._pending[:n]
        self._pending = self._pending[n:]
        return n

    def _verify(self) -> None:
        if self._verified:
            return
        self._verified = True
        expected_size = self._descriptor.size
        if expected_size and self._received != expected_size:
            raise BlobFetchError(
                f"blob {self._descriptor.digest} size mismatch: "
                f"expected {expected_size}, received {self._received}"
            )
        algorithm, _, expected = self._descriptor.digest.partition(":")
        if algorithm == "sha256" and self._hash.hexdigest() != expected:
            raise BlobFetchError(f"blob {self._descriptor.digest} failed digest verification")

    def close(self) -> None:
        try:
            self._response.close()
        finally:
            super().close()


class HttpRegistryClient:
    """Registry client bound to one repository.

    Parameters
    ----------
    reference:
        The image reference; its registry and repository scope every call.
    credentials:
        Called as ``credentials(registry, repository)`` when the registry
        demands authentication.  Anonymous if omitted.
    settings:
        Endpoint mapping, timeouts and insecure-registry list.
    session:
        HTTP session; a fresh ``requests.Session`` if omitted.
    deadline:
        Build deadline; caps every request timeout.
    """

    def __init__(
        self,
        reference: ImageReference,
        *,
        credentials: CredentialProvider | None = None,
        settings: RootfsSettings | None = None,
        session: requests.Session | None = None,
        deadline: Deadline | None = None,
    ) -> None:
        self.reference = reference
        self._settings = settings or RootfsSettings()
        self._credentials = credentials
        self._session = session or requests.Session()
        self._deadline = deadline or Deadline()
        self._authorization: str | None = None

        host = self._settings.endpoint_for(reference.registry)
        scheme = self._settings.scheme_for(reference.registry)
        self.base_url = f"{scheme}://{host}/v2/{reference.repository}"

    # ------------------------------------------------------------------
    # RegistryClient protocol
    # ------------------------------------------------------------------

    def resolve(self, tag_or_digest: str) -> Descriptor:
        url = f"{self.base_url}/manifests/{tag_or_digest}"
        headers = {"Accept": MANIFEST_ACCEPT}
        response = self._request("HEAD", url, headers=headers)
        digest = response.headers.get("Docker-Content-Digest", "")
        media_type = response.headers.get("Content-Type", "")
        size = int(response.headers.get("Content-Length") or 0)

        if not digest:
            if ":" in tag_or_digest:
                digest = tag_or_digest
            else:
                # Some registries omit the digest on HEAD; hash the body instead.
                response = self._request("GET", url, headers=headers)
                digest = f"sha256:{hashlib.sha256(response.content).hexdigest()}"
                media_type = response.headers.get("Content-Type", media_type)
                size = len(response.content)

        logger.debug("Resolved %s to %s (%s)", tag_or_digest, digest, media_type)
        return Descriptor(media_type=media_type.split(";", 1)[0].strip(), digest=digest, size=size)

    def fetch_manifest(self, descriptor: Descriptor) -> tuple[bytes, str]:
        url = f"{self.base_url}/manifests/{descriptor.digest}"
        response = self._request("GET", url, headers={"Accept": MANIFEST_ACCEPT})
        body = response.content
        if _sha256_mismatch(descriptor.digest, body):
            raise RegistryRequestError(
                f"manifest {descriptor.digest} failed digest verification"
            )
        media_type = response.headers.get("Content-Type") or descriptor.media_type
        return body, media_type.split(";", 1)[0].strip()

    def fetch_blob(self, descriptor: Descriptor) -> BinaryIO:
        url = f"{self.base_url}/blobs/{descriptor.digest}"
        try:
            response = self._request("GET", url, stream=True)
        except RegistryRequestError as exc:
            raise BlobFetchError(f"failed to fetch blob {descriptor.digest}: {exc}") from exc
        return _VerifyingBlobStream(response, descriptor)

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        stream: bool = False,
    ) -> requests.Response:
        response = self._send(method, url, headers, stream)
        if response.status_code == 401:
            challenge = response.headers.get("WWW-Authenticate", "")
            response.close()
            if self._authorization is not None:
                logger.debug("Cached authorization for %s was rejected, re-authenticating", url)
            self._authorization = self._authenticate(challenge)
            response = self._send(method, url, headers, stream)

        if not response.ok:
            status = response.status_code
            response.close()
            raise RegistryRequestError(
                f"{method} {url} returned HTTP {status}", status_code=status
            )
        return response

    def _send(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None,
        stream: bool,
    ) -> requests.Response:
        self._deadline.check(f"{method} {url}")
        request_headers = dict(headers or {})
        if self._authorization:
            request_headers["Authorization"] = self._authorization
        try:
            return self._session.request(
                method,
                url,
                headers=request_headers,
                stream=stream,
                timeout=self._deadline.cap(self._settings.request_timeout),
            )
        except requests.RequestException as exc:
            raise RegistryRequestError(f"{method} {url} failed: {exc}") from exc

    def _authenticate(self, challenge: str) -> str:
        """Turn a ``401`` challenge into an ``Authorization`` header value.

        Tokens are cached on the client and re-obtained when a request using the
        cached one is rejected with ``401``, at most once per request.
        """
        credential = EMPTY_CREDENTIAL
        if self._credentials is not None:
            credential = self._credentials(self.reference.registry, self.reference.repository)

        if credential.access_token:
            return f"Bearer {credential.access_token}"

        scheme, params = parse_challenge(challenge)
        if scheme == "bearer" and params.get("realm"):
            token = self._exchange_token(params, credential)
            return f"Bearer {token}"
        if scheme == "basic" and credential.username:
            pair = f"{credential.username}:{credential.password}".encode()
            return f"Basic {base64.b64encode(pair).decode()}"
        raise RegistryRequestError(
            f"{self.reference.registry} requires authentication and no usable "
            "credential is configured",
            status_code=401,
        )

    def _exchange_token(self, params: dict[str, str], credential: Credential) -> str:
        query = {
            "scope": params.get("scope") or f"repository:{self.reference.repository}:pull",
        }
        if params.get("service"):
            query["service"] = params["service"]
        auth = None
        if credential.username or credential.password:
            auth = (credential.username, credential.password)

        logger.debug("Exchanging credentials for a token at %s", params["realm"])
        try:
            response = self._session.get(
                params["realm"],
                params=query,
                auth=auth,
                timeout=self._deadline.cap(self._settings.request_timeout),
            )
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as exc:
            raise AuthTokenError(f"token exchange with {params['realm']} failed: {exc}") from exc
        except ValueError as exc:
            raise AuthTokenError(f"token response from {params['realm']} is not JSON") from exc

        token = None
        if isinstance(body, dict):
            token = body.get("token") or body.get("access_token")
        if not isinstance(token, str) or not token:
            raise AuthTokenError(f"token response from {params['realm']} carried no token")
        return token
