"""Image reference parsing.

A reference has the shape ``registry/repository[:tag][@digest]``.  The
registry component is mandatory and is never inferred; the tag is left
unset when absent, and defaulting it is the resolver's business.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict

from ocirootfs.core.errors import InvalidReference

_REGISTRY_RE = re.compile(
    r"^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?)"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?)*"
    r"(?::[0-9]+)?$"
)
_PATH_COMPONENT_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_DIGEST_RE = re.compile(
    r"^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-zA-Z0-9=_-]{32,}$"
)


class ImageReference(BaseModel):
    """A parsed, immutable image reference."""

    model_config = ConfigDict(frozen=True)

    raw: str
    registry: str
    repository: str
    tag: str | None = None
    digest: str | None = None

    @classmethod
    def parse(cls, raw: str) -> ImageReference:
        """Parse *raw* into its registry, repository, tag and digest parts.

        Raises ``InvalidReference`` on empty or malformed input.
        """
        if not raw or not raw.strip():
            raise InvalidReference("image reference cannot be empty")
        if raw != raw.strip():
            raise InvalidReference(f"image reference has surrounding whitespace: {raw!r}")

        remainder = raw
        digest: str | None = None
        if "@" in remainder:
            remainder, digest = remainder.split("@", 1)
            if not _DIGEST_RE.match(digest):
                raise InvalidReference(f"invalid digest {digest!r} in reference {raw!r}")

        registry, sep, path = remainder.partition("/")
        if not sep or not path:
            raise InvalidReference(
                f"reference {raw!r} must include a registry and a repository"
            )
        if not _REGISTRY_RE.match(registry):
            raise InvalidReference(f"invalid registry {registry!r} in reference {raw!r}")

        tag: str | None = None
        last_slash = path.rfind("/")
        colon = path.rfind(":")
        if colon > last_slash:
            path, tag = path[:colon], path[colon + 1:]
            if not _TAG_RE.match(tag):
                raise InvalidReference(f"invalid tag {tag!r} in reference {raw!r}")

        for component in path.split("/"):
            if not _PATH_COMPONENT_RE.match(component):
                raise InvalidReference(
                    f"invalid repository {path!r} in reference {raw!r}"
                )

        return cls(raw=raw, registry=registry, repository=path, tag=tag, digest=digest)

    @property
    def tag_or_digest(self) -> str | None:
        """The digest when pinned, else the tag, else ``None``."""
        return self.digest or self.tag

    def __str__(self) -> str:
        return self.raw
