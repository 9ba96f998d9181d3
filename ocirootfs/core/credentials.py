"""Per-registry credential selection.

The selector is a host-keyed registry of credential providers populated
from ``RootfsSettings`` at startup.  The registry client asks it for a
credential on demand, the first time a registry challenges a request.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

import requests
from pydantic import BaseModel, ConfigDict

from ocirootfs.config import RootfsSettings
from ocirootfs.core.errors import AuthTokenError

logger = logging.getLogger(__name__)


class Credential(BaseModel):
    """Credential handed to the registry client.

    ``access_token`` is sent as a bearer token as-is; ``username`` and
    ``password`` are exchanged for a token (or sent as basic auth).  An
    all-empty credential means anonymous access.
    """

    model_config = ConfigDict(frozen=True)

    username: str = ""
    password: str = ""
    access_token: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.username or self.password or self.access_token)

    def __repr__(self) -> str:
        # Never render secrets.
        password = "***" if self.password else ""
        token = "***" if self.access_token else ""
        return (
            f"Credential(username={self.username!r}, "
            f"password={password!r}, access_token={token!r})"
        )


EMPTY_CREDENTIAL = Credential()

CredentialProvider = Callable[[str, str], Credential]
"""Called as ``provider(registry_host, repository)``."""


class AnonymousTokenProvider:
    """Obtains an anonymous, repository-scoped pull token.

    Parameters
    ----------
    auth_url:
        Token endpoint, e.g. ``https://auth.docker.io/token``.
    service:
        The ``service`` parameter the token endpoint expects.
    session:
        HTTP session; a fresh ``requests.Session`` if omitted.
    timeout:
        Per-request timeout in seconds.
    """

    def __init__(
        self,
        auth_url: str,
        service: str,
        *,
        session: requests.Session | None = None,
        timeout: float | None = 30.0,
    ) -> None:
        self.auth_url = auth_url
        self.service = service
        self._session = session or requests.Session()
        self._timeout = timeout

    def __call__(self, registry: str, repository: str) -> Credential:
        scope = f"repository:{repository}:pull"
        logger.debug("Requesting anonymous token for %s (%s)", registry, scope)
        try:
            response = self._session.get(
                self.auth_url,
                params={"service": self.service, "scope": scope},
                timeout=self._timeout,
            )
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as exc:
            raise AuthTokenError(f"failed to fetch auth token for {registry}: {exc}") from exc
        except ValueError as exc:
            raise AuthTokenError(
                f"failed to decode auth response from {self.auth_url}: {exc}"
            ) from exc

        token = None
        if isinstance(body, dict):
            token = body.get("token") or body.get("access_token")
        if not isinstance(token, str) or not token:
            raise AuthTokenError(f"auth response from {self.auth_url} carried no token")
        return Credential(access_token=token)


class StaticCredentialProvider:
    """Returns a fixed credential sourced from configuration."""

    def __init__(self, credential: Credential) -> None:
        self._credential = credential

    def __call__(self, registry: str, repository: str) -> Credential:
        return self._credential


class CredentialSelector:
    """Host-keyed registry of credential providers.

    Hosts are matched exactly.  Hosts without a provider get an empty
    (anonymous) credential; that is not an error.
    """

    def __init__(self) -> None:
        self._providers: dict[str, CredentialProvider] = {}

    def register(self, registry: str, provider: CredentialProvider) -> None:
        self._providers[registry] = provider

    def hosts(self) -> list[str]:
        return sorted(self._providers)

    def select(self, registry: str, repository: str) -> Credential:
        provider = self._providers.get(registry)
        if provider is None:
            logger.debug("No credential provider for %s; using anonymous access", registry)
            return EMPTY_CREDENTIAL
        return provider(registry, repository)

    def __call__(self, registry: str, repository: str) -> Credential:
        return self.select(registry, repository)

    @classmethod
    def from_settings(
        cls,
        settings: RootfsSettings,
        *,
        session: requests.Session | None = None,
    ) -> CredentialSelector:
        """Build the selector from configured secrets and registry names."""
        selector = cls()
        selector.register(
            settings.docker_hub_registry,
            AnonymousTokenProvider(
                settings.docker_hub_auth_url,
                settings.docker_hub_service,
                session=session,
                timeout=settings.request_timeout,
            ),
        )
        if settings.ghcr_token:
            selector.register(
                settings.ghcr_registry,
                StaticCredentialProvider(
                    Credential(username=settings.ghcr_username, password=settings.ghcr_token)
                ),
            )
        for host, auth in settings.registry_auth.items():
            credential = Credential(
                username=auth.username,
                password=auth.password,
                access_token=auth.token,
            )
            selector.register(host, StaticCredentialProvider(credential))
        return selector
