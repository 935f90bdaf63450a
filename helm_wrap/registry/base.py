"""Registry capability used by the lock generator and the transfer engine.

The `Registry` interface is intentionally narrow: it can list the platform
manifests a reference resolves to, save one platform manifest (and its blobs)
as a local archive, and push a multi-platform manifest list assembled from
local archives.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
import hashlib
import logging
from pathlib import Path
import re
from typing import Any, TYPE_CHECKING

from helm_wrap.exceptions import InputException

if TYPE_CHECKING:
    from .archive import ImageIndex

__all__ = [
    "Registry",
    "Reference",
    "Platform",
    "ManifestDescriptor",
    "normalize_platform",
    "compute_digest",
    "digest_hex",
]

_LOGGER = logging.getLogger(__name__)

OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"

IMAGE_MANIFEST_TYPES = frozenset({OCI_MANIFEST, DOCKER_MANIFEST})
INDEX_MANIFEST_TYPES = frozenset({OCI_INDEX, DOCKER_MANIFEST_LIST})

DOCKER_HUB = "docker.io"
DOCKER_HUB_API = "registry-1.docker.io"
DOCKER_HUB_NAMESPACE = "library"

DIGEST_RE = re.compile(r"^[a-z0-9]+(?:[+._-][a-z0-9]+)*:[a-zA-Z0-9=_-]+$")
_PATH_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
_REPOSITORY_RE = re.compile(rf"^{_PATH_COMPONENT}(?:/{_PATH_COMPONENT})*$")
_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")

# Architecture aliases reported by various build tools.
_ARCH_ALIASES = {
    "x86_64": "amd64",
    "x86-64": "amd64",
    "aarch64": "arm64",
    "i386": "386",
    "i686": "386",
}


def compute_digest(content: bytes) -> str:
    """Return the sha256 digest of the content in `algorithm:hex` form."""
    return f"sha256:{hashlib.sha256(content).hexdigest()}"


def digest_hex(digest: str) -> str:
    """Return the encoded portion of a digest, e.g. the hex of a sha256."""
    if not DIGEST_RE.match(digest):
        raise InputException(f"Invalid digest '{digest}'")
    return digest.split(":", 1)[1]


@dataclass(frozen=True)
class Reference:
    """A parsed container image reference."""

    registry: str
    repository: str
    tag: str | None = None
    digest: str | None = None

    @classmethod
    def parse(cls, image: str) -> "Reference":
        """Parse a reference such as `ghcr.io/org/app:1.0@sha256:...`."""
        remainder = image.strip()
        digest: str | None = None
        if "@" in remainder:
            remainder, digest = remainder.split("@", 1)
            if not DIGEST_RE.match(digest):
                raise InputException(f"Invalid digest in image reference '{image}'")
        tag: str | None = None
        last = remainder.rfind(":")
        if last > remainder.rfind("/"):
            remainder, tag = remainder[:last], remainder[last + 1 :]
            if not _TAG_RE.match(tag):
                raise InputException(f"Invalid tag in image reference '{image}'")
        parts = remainder.split("/", 1)
        if len(parts) == 2 and (
            "." in parts[0] or ":" in parts[0] or parts[0] == "localhost"
        ):
            registry, repository = parts
        else:
            registry, repository = DOCKER_HUB, remainder
        if registry == DOCKER_HUB and "/" not in repository:
            repository = f"{DOCKER_HUB_NAMESPACE}/{repository}"
        if not _REPOSITORY_RE.match(repository):
            raise InputException(f"Invalid repository in image reference '{image}'")
        return cls(registry=registry, repository=repository, tag=tag, digest=digest)

    @property
    def api_registry(self) -> str:
        """Host name serving the registry API for this reference."""
        if self.registry == DOCKER_HUB:
            return DOCKER_HUB_API
        return self.registry

    @property
    def identifier(self) -> str:
        """Return the digest, tag, or default tag used to address the manifest."""
        return self.digest or self.tag or "latest"

    def with_digest(self, digest: str) -> "Reference":
        """Return a copy of the reference pinned to the digest."""
        return Reference(self.registry, self.repository, self.tag, digest)

    def __str__(self) -> str:
        value = f"{self.registry}/{self.repository}"
        if self.tag:
            value += f":{self.tag}"
        if self.digest:
            value += f"@{self.digest}"
        return value


@dataclass(frozen=True)
class Platform:
    """An os/architecture/variant tuple identifying one image variant."""

    os: str
    architecture: str
    variant: str | None = None

    @classmethod
    def parse(cls, value: str) -> "Platform":
        """Parse and normalize an `os/arch[/variant]` string."""
        parts = [part.strip().lower() for part in value.split("/")]
        if len(parts) not in (2, 3) or not all(parts):
            raise InputException(
                f"Invalid platform '{value}', expected os/architecture[/variant]"
            )
        return cls.normalized(*parts)

    @classmethod
    def from_dict(cls, doc: Mapping[str, Any]) -> "Platform | None":
        """Build a platform from a manifest descriptor or image config."""
        os_name = doc.get("os")
        arch = doc.get("architecture")
        if not os_name or not arch:
            return None
        return cls.normalized(os_name, arch, doc.get("variant") or None)

    @classmethod
    def normalized(
        cls, os_name: str, arch: str, variant: str | None = None
    ) -> "Platform":
        os_name = os_name.lower()
        arch = _ARCH_ALIASES.get(arch.lower(), arch.lower())
        if variant:
            variant = variant.lower()
        if arch == "arm64" and variant == "v8":
            variant = None
        return cls(os_name, arch, variant)

    @property
    def is_unknown(self) -> bool:
        """True for the placeholder platform used by non-image manifests."""
        return self.os == "unknown" or self.architecture == "unknown"

    def to_dict(self) -> dict[str, str]:
        """Return the platform as a manifest descriptor field."""
        result = {"architecture": self.architecture, "os": self.os}
        if self.variant:
            result["variant"] = self.variant
        return result

    def __str__(self) -> str:
        if self.variant:
            return f"{self.os}/{self.architecture}/{self.variant}"
        return f"{self.os}/{self.architecture}"


def normalize_platform(value: str) -> str:
    """Normalize a platform string, e.g. `Linux/aarch64` to `linux/arm64`."""
    return str(Platform.parse(value))


@dataclass(frozen=True, kw_only=True)
class ManifestDescriptor:
    """One entry of a manifest list, or the single manifest of a tag."""

    media_type: str
    digest: str
    size: int = 0
    platform: Platform | None = None
    annotations: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_image(self) -> bool:
        """True when the descriptor points to a single platform image manifest."""
        return self.media_type in IMAGE_MANIFEST_TYPES

    def matches_annotations(self, annotations: Mapping[str, str]) -> bool:
        """True when the descriptor carries any of the annotation key/values."""
        return any(self.annotations.get(k) == v for k, v in annotations.items())


class Registry(ABC):
    """Access to a container registry."""

    @abstractmethod
    async def list_manifests(self, image: str) -> list[ManifestDescriptor]:
        """Return the manifests the image reference currently resolves to.

        For a manifest list this returns every entry of the list, including
        entries that are not deployable images. For a single manifest this
        returns one descriptor with the platform read from the image config.
        """

    @abstractmethod
    async def save_image(self, image: str, digest: str, archive: Path) -> None:
        """Save the `image@digest` manifest and its blobs as a local archive."""

    @abstractmethod
    async def push_index(self, image: str, index: "ImageIndex") -> str:
        """Push every image of the index and then the index itself to `image`.

        Returns the digest of the pushed manifest list.
        """

    @abstractmethod
    async def pull_artifact(self, reference: str, dest_dir: Path) -> list[Path]:
        """Download the layers of an OCI artifact such as a packaged chart.

        Returns the files written to `dest_dir`.
        """
