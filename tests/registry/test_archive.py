"""Tests for local image archives."""

import json
from pathlib import Path
import tarfile

import pytest

from helm_wrap.exceptions import ArchiveException
from helm_wrap.registry.archive import (
    ImageIndex,
    IndexEntry,
    load_image_archive,
    write_image_archive,
)
from helm_wrap.registry.base import (
    DOCKER_MANIFEST,
    DOCKER_MANIFEST_LIST,
    OCI_INDEX,
    OCI_MANIFEST,
    Platform,
    compute_digest,
)


def make_image(
    tmp_path: Path, arch: str, media_type: str = OCI_MANIFEST
) -> tuple[bytes, dict[str, Path]]:
    """Write the blobs of a small image and return its manifest."""
    config = json.dumps({"os": "linux", "architecture": arch}).encode()
    layer = f"layer {arch}".encode()
    blob_files = {}
    for content in (config, layer):
        path = tmp_path / f"blob-{compute_digest(content)[7:19]}"
        path.write_bytes(content)
        blob_files[compute_digest(content)] = path
    manifest = {
        "schemaVersion": 2,
        "mediaType": media_type,
        "config": {"digest": compute_digest(config), "size": len(config)},
        "layers": [{"digest": compute_digest(layer), "size": len(layer)}],
    }
    return json.dumps(manifest).encode(), blob_files


def test_write_and_load(tmp_path: Path) -> None:
    """Test an image written to an archive loads back."""
    manifest, blobs = make_image(tmp_path, "arm64")
    archive = tmp_path / "image.tar"
    digest = write_image_archive(archive, "repo/app:1.0", manifest, OCI_MANIFEST, blobs)
    assert digest == compute_digest(manifest)

    image = load_image_archive(archive)
    assert image.digest == digest
    assert image.name == "repo/app:1.0"
    assert image.media_type == OCI_MANIFEST
    assert image.size == len(manifest)
    assert image.platform == Platform("linux", "arm64")
    assert [b["digest"] for b in image.blobs()] == list(blobs)
    for blob, path in blobs.items():
        with image.open_blob(blob) as fd:
            assert fd.read() == path.read_bytes()


def test_archive_is_deterministic(tmp_path: Path) -> None:
    """Test writing the same image twice produces identical files."""
    manifest, blobs = make_image(tmp_path, "amd64")
    write_image_archive(tmp_path / "a.tar", "repo/app", manifest, OCI_MANIFEST, blobs)
    write_image_archive(tmp_path / "b.tar", "repo/app", manifest, OCI_MANIFEST, blobs)
    assert (tmp_path / "a.tar").read_bytes() == (tmp_path / "b.tar").read_bytes()


def test_write_missing_blob(tmp_path: Path) -> None:
    """Test a manifest referencing a blob that was not provided."""
    manifest, blobs = make_image(tmp_path, "amd64")
    blobs.popitem()
    with pytest.raises(ArchiveException, match="missing blobs"):
        write_image_archive(
            tmp_path / "image.tar", "repo/app", manifest, OCI_MANIFEST, blobs
        )


def test_write_unsupported_media_type(tmp_path: Path) -> None:
    """Test only single platform manifests can be archived."""
    manifest, blobs = make_image(tmp_path, "amd64")
    with pytest.raises(ArchiveException, match="Unsupported manifest media type"):
        write_image_archive(
            tmp_path / "image.tar", "repo/app", manifest, OCI_INDEX, blobs
        )


def test_load_missing_archive(tmp_path: Path) -> None:
    """Test loading an archive that does not exist."""
    with pytest.raises(ArchiveException, match="does not exist"):
        load_image_archive(tmp_path / "missing.tar")


def test_load_corrupt_archive(tmp_path: Path) -> None:
    """Test loading a file that is not an image archive."""
    archive = tmp_path / "image.tar"
    archive.write_bytes(b"not a tar file")
    with pytest.raises(ArchiveException, match="Unable to read image archive"):
        load_image_archive(archive)

    with tarfile.open(archive, "w"):
        pass
    with pytest.raises(ArchiveException, match="Unable to read image archive"):
        load_image_archive(archive)


def test_missing_blob(tmp_path: Path) -> None:
    """Test reading a blob that is not in the archive."""
    manifest, blobs = make_image(tmp_path, "amd64")
    archive = tmp_path / "image.tar"
    write_image_archive(archive, "repo/app", manifest, OCI_MANIFEST, blobs)
    image = load_image_archive(archive)
    with pytest.raises(ArchiveException, match="not found"):
        with image.open_blob("sha256:" + "0" * 64):
            pass


def test_image_index(tmp_path: Path) -> None:
    """Test assembling a manifest list from archived images."""
    entries = []
    for arch in ("amd64", "arm64"):
        arch_dir = tmp_path / arch
        arch_dir.mkdir()
        manifest, blobs = make_image(arch_dir, arch, DOCKER_MANIFEST)
        archive = arch_dir / "image.tar"
        write_image_archive(archive, "repo/app", manifest, DOCKER_MANIFEST, blobs)
        image = load_image_archive(archive)
        entries.append(IndexEntry(image=image, platform=image.platform))

    index = ImageIndex(entries=tuple(entries))
    assert index.media_type == DOCKER_MANIFEST_LIST
    assert index.platforms == ["linux/amd64", "linux/arm64"]
    doc = json.loads(index.to_bytes())
    assert doc["schemaVersion"] == 2
    assert [m["digest"] for m in doc["manifests"]] == [e.image.digest for e in entries]
    assert index.digest == compute_digest(index.to_bytes())
