"""Test fixtures for helm-wrap."""

from collections.abc import Callable
import json
from pathlib import Path
import tempfile
from typing import Any

import pytest
import yaml

from helm_wrap.config import Config
from helm_wrap.exceptions import RegistryException
from helm_wrap.progress import ProgressEvent, ProgressSink
from helm_wrap.registry.archive import ImageIndex, write_image_archive
from helm_wrap.registry.base import (
    OCI_MANIFEST,
    ManifestDescriptor,
    Platform,
    Registry,
    compute_digest,
)

ATTESTATION_ANNOTATIONS = {
    "vnd.docker.reference.type": "attestation-manifest",
}


class FakeRegistry(Registry):
    """An in-memory registry holding generated single layer images."""

    def __init__(self) -> None:
        self.images: dict[str, list[ManifestDescriptor]] = {}
        self.manifests: dict[str, bytes] = {}
        self.blobs: dict[str, bytes] = {}
        self.pushed: dict[str, ImageIndex] = {}
        self.calls: list[tuple[str, str]] = []
        self.artifacts: dict[str, dict[str, bytes]] = {}
        self._failures: dict[tuple[str, str], int | None] = {}
        self._errors: dict[tuple[str, str], Exception] = {}
        self.on_failure: Callable[[], None] | None = None

    def add_image(
        self,
        image: str,
        platforms: list[str],
        attestation: bool = False,
        revision: str = "",
    ) -> dict[str, str]:
        """Publish an image for each platform, returning their digests.

        Publishing again with a different revision moves the tag to new digests.
        """
        digests = {}
        descriptors = []
        for value in platforms:
            platform = Platform.parse(value)
            digest = self._add_manifest(
                image, platform, layer=f"{image} {platform} {revision}".encode()
            )
            digests[str(platform)] = digest
            descriptors.append(
                ManifestDescriptor(
                    media_type=OCI_MANIFEST,
                    digest=digest,
                    size=len(self.manifests[digest]),
                    platform=platform,
                )
            )
        if attestation:
            descriptors.append(
                ManifestDescriptor(
                    media_type=OCI_MANIFEST,
                    digest=self._add_manifest(
                        image, Platform("unknown", "unknown"), layer=b"attestation"
                    ),
                    platform=Platform("unknown", "unknown"),
                    annotations=ATTESTATION_ANNOTATIONS,
                )
            )
        self.images[image] = descriptors
        return digests

    def _add_blob(self, content: bytes) -> dict[str, Any]:
        digest = compute_digest(content)
        self.blobs[digest] = content
        return {
            "mediaType": "application/octet-stream",
            "digest": digest,
            "size": len(content),
        }

    def _add_manifest(
        self, image: str, platform: Platform, layer: bytes
    ) -> str:
        config = {**platform.to_dict(), "rootfs": {"type": "layers"}}
        manifest = {
            "schemaVersion": 2,
            "mediaType": OCI_MANIFEST,
            "config": self._add_blob(json.dumps(config, sort_keys=True).encode()),
            "layers": [self._add_blob(layer)],
        }
        content = json.dumps(manifest, sort_keys=True).encode()
        digest = compute_digest(content)
        self.manifests[digest] = content
        return digest

    def fail(
        self,
        method: str,
        image: str,
        times: int | None = None,
        error: Exception | None = None,
    ) -> None:
        """Make calls to the method for the image fail, forever if times is None."""
        self._failures[(method, image)] = times
        if error is not None:
            self._errors[(method, image)] = error

    def _call(self, method: str, image: str) -> None:
        self.calls.append((method, image))
        key = (method, image)
        if key not in self._failures:
            return
        remaining = self._failures[key]
        if remaining is not None:
            if remaining <= 0:
                return
            self._failures[key] = remaining - 1
        if self.on_failure:
            self.on_failure()
        raise self._errors.get(key) or RegistryException(f"{method} {image} failed")

    async def list_manifests(self, image: str) -> list[ManifestDescriptor]:
        self._call("list_manifests", image)
        if image not in self.images:
            raise RegistryException(f"{image} not found")
        return list(self.images[image])

    async def save_image(self, image: str, digest: str, archive: Path) -> None:
        self._call("save_image", image)
        if digest not in self.manifests:
            raise RegistryException(f"{image}@{digest} not found")
        content = self.manifests[digest]
        manifest = json.loads(content)
        with tempfile.TemporaryDirectory() as tmp_dir:
            blob_files = {}
            for desc in [manifest["config"], *manifest["layers"]]:
                blob_file = Path(tmp_dir) / desc["digest"].replace(":", "-")
                blob_file.write_bytes(self.blobs[desc["digest"]])
                blob_files[desc["digest"]] = blob_file
            write_image_archive(archive, image, content, OCI_MANIFEST, blob_files)

    async def push_index(self, image: str, index: ImageIndex) -> str:
        self._call("push_index", image)
        self.pushed[image] = index
        return index.digest

    async def pull_artifact(self, reference: str, dest_dir: Path) -> list[Path]:
        self._call("pull_artifact", reference)
        if reference not in self.artifacts:
            raise RegistryException(f"{reference} not found")
        files = []
        for name, content in self.artifacts[reference].items():
            (dest_dir / name).write_bytes(content)
            files.append(dest_dir / name)
        return files


class RecordingProgress(ProgressSink):
    """A progress sink that keeps every event."""

    def __init__(self) -> None:
        self.started: list[tuple[str, int]] = []
        self.events: list[ProgressEvent] = []
        self.stopped = 0

    def start(self, title: str, total: int) -> None:
        self.started.append((title, total))

    def on_event(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def stop(self) -> None:
        self.stopped += 1


def write_chart(
    root: Path,
    name: str = "app",
    version: str = "1.0.0",
    images: list[dict[str, str]] | None = None,
    app_version: str | None = None,
) -> Path:
    """Write a minimal chart declaring the images and return its directory."""
    root.mkdir(parents=True, exist_ok=True)
    doc: dict[str, Any] = {"apiVersion": "v2", "name": name, "version": version}
    if app_version:
        doc["appVersion"] = app_version
    if images is not None:
        doc["annotations"] = {"images": yaml.dump(images)}
    (root / "Chart.yaml").write_text(yaml.dump(doc))
    (root / "values.yaml").write_text("replicaCount: 1\n")
    return root


@pytest.fixture
def registry() -> FakeRegistry:
    """Fixture for an empty fake registry."""
    return FakeRegistry()


@pytest.fixture
def progress() -> RecordingProgress:
    """Fixture for a progress sink recording events."""
    return RecordingProgress()


@pytest.fixture
def config(progress: RecordingProgress) -> Config:
    """Fixture for a Config without retry delays."""
    return Config(retry_delay=0, progress=progress)


@pytest.fixture
def chart_dir(tmp_path: Path, registry: FakeRegistry) -> Path:
    """Fixture for a chart declaring one multi-platform image."""
    registry.add_image("repo/app:1.0", ["linux/amd64", "linux/arm64"])
    return write_chart(
        tmp_path / "app",
        images=[{"name": "app", "image": "repo/app:1.0"}],
        app_version="1.0",
    )
