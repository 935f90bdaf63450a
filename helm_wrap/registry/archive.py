"""Local single-platform image archives.

Each archive in the local image cache is a tar file containing an OCI image
layout with exactly one image:

```
oci-layout
index.json
blobs/sha256/<manifest>
blobs/sha256/<config>
blobs/sha256/<layer>...
```

Archives are written with fixed ownership and timestamps so that saving the
same image twice produces byte-identical files.
"""

from collections.abc import Generator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
import io
import json
import logging
from pathlib import Path
import tarfile
from typing import Any, IO

from helm_wrap.exceptions import ArchiveException

from .base import (
    DOCKER_MANIFEST,
    DOCKER_MANIFEST_LIST,
    IMAGE_MANIFEST_TYPES,
    OCI_INDEX,
    Platform,
    compute_digest,
    digest_hex,
)

__all__ = [
    "LocalImage",
    "IndexEntry",
    "ImageIndex",
    "write_image_archive",
    "load_image_archive",
]

_LOGGER = logging.getLogger(__name__)

OCI_LAYOUT_FILE = "oci-layout"
INDEX_FILE = "index.json"
REF_NAME_ANNOTATION = "org.opencontainers.image.ref.name"
_OCI_LAYOUT = {"imageLayoutVersion": "1.0.0"}


def _blob_path(digest: str) -> str:
    algorithm = digest.split(":", 1)[0]
    return f"blobs/{algorithm}/{digest_hex(digest)}"


def _json_bytes(doc: dict[str, Any]) -> bytes:
    return json.dumps(doc, sort_keys=True, separators=(",", ":")).encode()


def _tar_info(name: str, size: int) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.size = size
    info.mode = 0o644
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


def _manifest_blobs(manifest: dict[str, Any]) -> list[str]:
    """Return the config and layer digests referenced by a manifest, in order."""
    try:
        digests = [manifest["config"]["digest"]]
        digests.extend(layer["digest"] for layer in manifest.get("layers") or [])
    except (KeyError, TypeError) as err:
        raise ArchiveException(
            f"Image manifest is missing blob digests: {err}"
        ) from err
    return list(dict.fromkeys(digests))


def write_image_archive(
    path: Path,
    image: str,
    manifest: bytes,
    media_type: str,
    blob_files: Mapping[str, Path],
) -> str:
    """Write an image manifest and its blobs to an archive file.

    The `blob_files` map every blob digest referenced by the manifest to a local
    file holding its content. Returns the digest of the manifest.
    """
    if media_type not in IMAGE_MANIFEST_TYPES:
        raise ArchiveException(f"Unsupported manifest media type '{media_type}'")
    digest = compute_digest(manifest)
    try:
        doc = json.loads(manifest)
    except ValueError as err:
        raise ArchiveException(
            f"Image manifest {digest} is not valid json: {err}"
        ) from err
    blobs = _manifest_blobs(doc)
    if missing := [blob for blob in blobs if blob not in blob_files]:
        raise ArchiveException(
            f"Image {image}@{digest} is missing blobs: {', '.join(missing)}"
        )

    index = {
        "schemaVersion": 2,
        "manifests": [
            {
                "mediaType": media_type,
                "digest": digest,
                "size": len(manifest),
                "annotations": {REF_NAME_ANNOTATION: image},
            }
        ],
    }
    _LOGGER.debug("Writing image archive %s for %s@%s", path, image, digest)
    with tarfile.open(path, "w", format=tarfile.PAX_FORMAT) as tar:
        for name, content in (
            (OCI_LAYOUT_FILE, _json_bytes(_OCI_LAYOUT)),
            (INDEX_FILE, _json_bytes(index)),
            (_blob_path(digest), manifest),
        ):
            tar.addfile(_tar_info(name, len(content)), io.BytesIO(content))
        for blob in blobs:
            blob_file = blob_files[blob]
            with blob_file.open("rb") as fd:
                tar.addfile(_tar_info(_blob_path(blob), blob_file.stat().st_size), fd)
    return digest


@dataclass(frozen=True, kw_only=True)
class LocalImage:
    """A single platform image loaded from a local archive."""

    path: Path
    """Archive file the image was loaded from."""

    name: str
    """The image reference recorded when the archive was written."""

    media_type: str
    manifest_bytes: bytes
    manifest: dict[str, Any]
    config: dict[str, Any]

    @property
    def digest(self) -> str:
        """Digest of the image manifest."""
        return compute_digest(self.manifest_bytes)

    @property
    def size(self) -> int:
        return len(self.manifest_bytes)

    @property
    def platform(self) -> Platform:
        """Platform declared by the image configuration."""
        if (platform := Platform.from_dict(self.config)) is None:
            raise ArchiveException(
                f"Image config in {self.path} does not declare os/architecture"
            )
        return platform

    def blobs(self) -> list[dict[str, Any]]:
        """Descriptors of the config and layer blobs, config first."""
        seen: set[str] = set()
        result = []
        for desc in [self.manifest["config"], *(self.manifest.get("layers") or [])]:
            if desc["digest"] not in seen:
                seen.add(desc["digest"])
                result.append(desc)
        return result

    @contextmanager
    def open_blob(self, digest: str) -> Generator[IO[bytes], None, None]:
        """Open a blob stored in the archive for reading."""
        try:
            tar = tarfile.open(self.path, "r")
        except (tarfile.TarError, OSError) as err:
            raise ArchiveException(f"Unable to open {self.path}: {err}") from err
        with tar:
            try:
                fd = tar.extractfile(_blob_path(digest))
            except KeyError as err:
                raise ArchiveException(
                    f"Blob {digest} not found in {self.path}"
                ) from err
            if fd is None:
                raise ArchiveException(f"Blob {digest} in {self.path} is not a file")
            with fd:
                yield fd


def _read_member(tar: tarfile.TarFile, name: str) -> bytes:
    fd = tar.extractfile(name)
    if fd is None:
        raise ArchiveException(f"Archive entry {name} is not a file")
    with fd:
        return fd.read()


def load_image_archive(path: Path) -> LocalImage:
    """Load the image stored in an archive written by `write_image_archive`."""
    if not path.is_file():
        raise ArchiveException(f"Image archive {path} does not exist")
    try:
        with tarfile.open(path, "r") as tar:
            index = json.loads(_read_member(tar, INDEX_FILE))
            manifests = index.get("manifests") or []
            if len(manifests) != 1:
                raise ArchiveException(
                    f"Image archive {path} must contain exactly one manifest, "
                    f"found {len(manifests)}"
                )
            desc = manifests[0]
            manifest_bytes = _read_member(tar, _blob_path(desc["digest"]))
            if compute_digest(manifest_bytes) != desc["digest"]:
                raise ArchiveException(
                    f"Image archive {path} manifest does not match {desc['digest']}"
                )
            manifest = json.loads(manifest_bytes)
            config = json.loads(
                _read_member(tar, _blob_path(manifest["config"]["digest"]))
            )
    except (tarfile.TarError, KeyError, TypeError, ValueError, OSError) as err:
        raise ArchiveException(f"Unable to read image archive {path}: {err}") from err
    return LocalImage(
        path=path,
        name=(desc.get("annotations") or {}).get(REF_NAME_ANNOTATION, ""),
        media_type=desc.get("mediaType") or manifest.get("mediaType") or "",
        manifest_bytes=manifest_bytes,
        manifest=manifest,
        config=config,
    )


@dataclass(frozen=True)
class IndexEntry:
    """An image and the platform it is published under in a manifest list."""

    image: LocalImage
    platform: Platform

    def descriptor(self) -> dict[str, Any]:
        """Return the manifest list descriptor for the image."""
        return {
            "mediaType": self.image.media_type,
            "digest": self.image.digest,
            "size": self.image.size,
            "platform": self.platform.to_dict(),
        }


@dataclass(frozen=True)
class ImageIndex:
    """A multi-platform manifest list assembled from local images."""

    entries: tuple[IndexEntry, ...]

    @property
    def media_type(self) -> str:
        """Docker manifest list for docker images, otherwise an OCI index."""
        if all(entry.image.media_type == DOCKER_MANIFEST for entry in self.entries):
            return DOCKER_MANIFEST_LIST
        return OCI_INDEX

    @property
    def platforms(self) -> list[str]:
        return [str(entry.platform) for entry in self.entries]

    def to_dict(self) -> dict[str, Any]:
        return {
            "schemaVersion": 2,
            "mediaType": self.media_type,
            "manifests": [entry.descriptor() for entry in self.entries],
        }

    def to_bytes(self) -> bytes:
        """Return the serialized manifest list as pushed to the registry."""
        return json.dumps(self.to_dict(), indent=2).encode()

    @property
    def digest(self) -> str:
        return compute_digest(self.to_bytes())
