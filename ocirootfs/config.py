"""Runtime settings — env-driven via pydantic-settings.

Reads ``OCIROOTFS_*`` environment variables and an optional ``.env`` file.
Registry secrets live here and nowhere else; the credential selector is
populated from these settings at startup.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RegistryAuth(BaseModel):
    """Static credential for one registry host.

    Either ``token`` (used as a bearer token) or ``username``/``password``.
    """

    model_config = ConfigDict(frozen=True)

    username: str = ""
    password: str = ""
    token: str = ""


class RootfsSettings(BaseSettings):
    """Settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export OCIROOTFS_IMAGE_SIZE=512M
        export OCIROOTFS_GHCR_USERNAME=octocat
        export OCIROOTFS_GHCR_TOKEN=ghp_...
        export OCIROOTFS_REGISTRY_AUTH='{"registry.example.com": {"token": "abc"}}'
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="OCIROOTFS_",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Build defaults
    default_os: str = "linux"
    default_arch: str = "amd64"
    output_dir: Path = Path(".")
    image_name: str = "rootfs.ext4"
    image_size: str = "150M"

    # Registry access
    request_timeout: float = 30.0
    insecure_registries: list[str] = []

    # Public registry: anonymous scoped pull tokens
    docker_hub_registry: str = "docker.io"
    docker_hub_endpoint: str = "registry-1.docker.io"
    docker_hub_auth_url: str = "https://auth.docker.io/token"
    docker_hub_service: str = "registry.docker.io"

    # Source-hosting registry: username + personal access token
    ghcr_registry: str = "ghcr.io"
    ghcr_username: str = ""
    ghcr_token: str = Field(
        default="",
        validation_alias=AliasChoices("OCIROOTFS_GHCR_TOKEN", "GH_PAT"),
    )

    # Any other registry, keyed by host
    registry_auth: dict[str, RegistryAuth] = {}

    # Image formatting
    mke2fs_path: str = "mke2fs"
    resize2fs_path: str = "resize2fs"
    format_timeout: float = 600.0

    def endpoint_for(self, registry: str) -> str:
        """Return the API endpoint host for a registry name."""
        if registry == self.docker_hub_registry:
            return self.docker_hub_endpoint
        return registry

    def scheme_for(self, registry: str) -> str:
        """Return ``http`` for registries marked insecure, else ``https``."""
        return "http" if registry in self.insecure_registries else "https"
