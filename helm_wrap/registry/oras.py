"""Registry implementation backed by the oras client.

Authentication and token negotiation are handled by `oras`; this module only
issues the OCI distribution API calls needed to resolve manifest lists, save
single platform images, and push manifest lists. Packaged charts stored as OCI
artifacts are fetched with `OrasClient.pull`.
"""

import asyncio
import hashlib
import json
import logging
from pathlib import Path
import tempfile
from typing import Any
from urllib.parse import urljoin

from oras.client import OrasClient
import requests

from helm_wrap.exceptions import RegistryException

from .archive import ImageIndex, LocalImage, write_image_archive
from .base import (
    IMAGE_MANIFEST_TYPES,
    INDEX_MANIFEST_TYPES,
    ManifestDescriptor,
    Platform,
    Reference,
    Registry,
    compute_digest,
)

__all__ = [
    "OrasRegistry",
]

_LOGGER = logging.getLogger(__name__)

_ACCEPT = ", ".join(sorted(IMAGE_MANIFEST_TYPES | INDEX_MANIFEST_TYPES))
_CHUNK_SIZE = 1024 * 1024


class OrasRegistry(Registry):
    """A `Registry` talking to remote registries over HTTP(S)."""

    def __init__(self, insecure: bool = False, client: OrasClient | None = None):
        """Initialize OrasRegistry."""
        self._client = client or OrasClient(insecure=insecure)
        self._scheme = "http" if insecure else "https"

    def _url(self, ref: Reference, path: str) -> str:
        return f"{self._scheme}://{ref.api_registry}/v2/{ref.repository}/{path}"

    def _request(
        self,
        url: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        data: Any = None,
        stream: bool = False,
        ok: tuple[int, ...] = (200,),
    ) -> requests.Response:
        _LOGGER.debug("%s %s", method, url)
        try:
            response = self._client.remote.do_request(
                url, method, data=data, headers=headers or {}, stream=stream
            )
        except requests.RequestException as err:
            raise RegistryException(f"Request {method} {url} failed: {err}") from err
        if response.status_code not in ok:
            raise RegistryException(
                f"Request {method} {url} returned {response.status_code}: "
                f"{response.text[:200]}"
            )
        return response

    def _get_manifest(self, ref: Reference, accept: str) -> tuple[bytes, str]:
        response = self._request(
            self._url(ref, f"manifests/{ref.identifier}"), headers={"Accept": accept}
        )
        content = response.content
        media_type = response.headers.get("Content-Type", "").split(";")[0].strip()
        if not media_type:
            media_type = json.loads(content).get("mediaType", "")
        return content, media_type

    def _get_json_blob(self, ref: Reference, digest: str) -> dict[str, Any]:
        response = self._request(self._url(ref, f"blobs/{digest}"))
        if compute_digest(response.content) != digest:
            raise RegistryException(f"Blob {digest} of {ref} failed digest check")
        return response.json()

    def _list_manifests(self, image: str) -> list[ManifestDescriptor]:
        ref = Reference.parse(image)
        content, media_type = self._get_manifest(ref, _ACCEPT)
        doc = json.loads(content)
        if media_type in INDEX_MANIFEST_TYPES:
            return [
                ManifestDescriptor(
                    media_type=entry.get("mediaType", ""),
                    digest=entry["digest"],
                    size=entry.get("size", 0),
                    platform=Platform.from_dict(entry.get("platform") or {}),
                    annotations=entry.get("annotations") or {},
                )
                for entry in doc.get("manifests") or []
            ]
        if media_type not in IMAGE_MANIFEST_TYPES:
            raise RegistryException(
                f"Image {image} resolved to unsupported media type '{media_type}'"
            )
        config = self._get_json_blob(ref, doc["config"]["digest"])
        return [
            ManifestDescriptor(
                media_type=media_type,
                digest=compute_digest(content),
                size=len(content),
                platform=Platform.from_dict(config),
                annotations=doc.get("annotations") or {},
            )
        ]

    async def list_manifests(self, image: str) -> list[ManifestDescriptor]:
        """Return the manifests the image reference currently resolves to."""
        try:
            return await asyncio.to_thread(self._list_manifests, image)
        except (KeyError, TypeError, ValueError) as err:
            raise RegistryException(f"Invalid manifest for {image}: {err}") from err

    def _download_blob(self, ref: Reference, digest: str, dest: Path) -> None:
        response = self._request(self._url(ref, f"blobs/{digest}"), stream=True)
        sha = hashlib.sha256()
        with dest.open("wb") as fd:
            for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                sha.update(chunk)
                fd.write(chunk)
        if f"sha256:{sha.hexdigest()}" != digest:
            raise RegistryException(f"Blob {digest} of {ref} failed digest check")

    def _save_image(self, image: str, digest: str, archive: Path) -> None:
        ref = Reference.parse(image).with_digest(digest)
        content, media_type = self._get_manifest(
            ref, ", ".join(sorted(IMAGE_MANIFEST_TYPES))
        )
        if compute_digest(content) != digest:
            raise RegistryException(f"Manifest of {ref} does not match its digest")
        doc = json.loads(content)
        blobs = [doc["config"]["digest"]]
        blobs.extend(layer["digest"] for layer in doc.get("layers") or [])
        with tempfile.TemporaryDirectory() as tmp_dir:
            blob_files: dict[str, Path] = {}
            for blob in dict.fromkeys(blobs):
                blob_files[blob] = Path(tmp_dir) / blob.replace(":", "-")
                self._download_blob(ref, blob, blob_files[blob])
            write_image_archive(archive, image, content, media_type, blob_files)

    async def save_image(self, image: str, digest: str, archive: Path) -> None:
        """Save the `image@digest` manifest and its blobs as a local archive."""
        try:
            await asyncio.to_thread(self._save_image, image, digest, archive)
        except (KeyError, TypeError, ValueError) as err:
            raise RegistryException(
                f"Invalid manifest for {image}@{digest}: {err}"
            ) from err

    def _push_blob(
        self, ref: Reference, image: LocalImage, desc: dict[str, Any]
    ) -> None:
        digest = desc["digest"]
        head = self._request(
            self._url(ref, f"blobs/{digest}"), method="HEAD", ok=(200, 404)
        )
        if head.status_code == 200:
            _LOGGER.debug("Blob %s already exists in %s", digest, ref)
            return
        upload_url = self._url(ref, "blobs/uploads/")
        response = self._request(upload_url, method="POST", ok=(202,))
        location = urljoin(upload_url, response.headers["Location"])
        separator = "&" if "?" in location else "?"
        with image.open_blob(digest) as fd:
            self._request(
                f"{location}{separator}digest={digest}",
                method="PUT",
                headers={
                    "Content-Type": "application/octet-stream",
                    "Content-Length": str(desc["size"]),
                },
                data=fd,
                ok=(201,),
            )

    def _put_manifest(
        self, ref: Reference, identifier: str, media_type: str, content: bytes
    ) -> None:
        self._request(
            self._url(ref, f"manifests/{identifier}"),
            method="PUT",
            headers={"Content-Type": media_type},
            data=content,
            ok=(200, 201),
        )

    def _push_index(self, image: str, index: ImageIndex) -> str:
        ref = Reference.parse(image)
        for entry in index.entries:
            for desc in entry.image.blobs():
                self._push_blob(ref, entry.image, desc)
            self._put_manifest(
                ref,
                entry.image.digest,
                entry.image.media_type,
                entry.image.manifest_bytes,
            )
        self._put_manifest(ref, ref.identifier, index.media_type, index.to_bytes())
        return index.digest

    def _pull_artifact(self, reference: str, dest_dir: Path) -> list[Path]:
        ref = Reference.parse(reference)
        target = f"{ref.api_registry}/{ref.repository}"
        target += f"@{ref.digest}" if ref.digest else f":{ref.identifier}"
        files = self._client.pull(target=target, outdir=str(dest_dir))
        _LOGGER.debug("Downloaded files: %s", files)
        return [Path(file) for file in files]

    async def pull_artifact(self, reference: str, dest_dir: Path) -> list[Path]:
        """Download the layers of an OCI artifact such as a packaged chart."""
        _LOGGER.info("Fetching OCI artifact %s", reference)
        try:
            return await asyncio.to_thread(self._pull_artifact, reference, dest_dir)
        except (requests.RequestException, KeyError, TypeError, ValueError) as err:
            raise RegistryException(f"Unable to fetch {reference}: {err}") from err

    async def push_index(self, image: str, index: ImageIndex) -> str:
        """Push every image of the index and then the index itself to `image`."""
        try:
            return await asyncio.to_thread(self._push_index, image, index)
        except (KeyError, TypeError, ValueError) as err:
            raise RegistryException(f"Invalid response pushing {image}: {err}") from err
