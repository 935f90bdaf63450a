"""Tests for packing and unpacking chart bundles."""

from pathlib import Path
import tarfile

import pytest

from helm_wrap.bundle import bundle_file_name, is_archive, pack, unpack
from helm_wrap.chart import load_chart
from helm_wrap.exceptions import InputException, PackageFormatError

from .conftest import write_chart


@pytest.fixture
def chart_root(tmp_path: Path) -> Path:
    """Fixture for a chart with templates, a lock and cached images."""
    root = write_chart(tmp_path / "src" / "app", name="app", version="1.2.3")
    (root / "templates").mkdir()
    (root / "templates" / "deployment.yaml").write_text("kind: Deployment\n")
    (root / "Images.lock").write_text("apiVersion: v0\nkind: ImagesLock\n")
    (root / "images").mkdir()
    (root / "images" / "abc.tar").write_bytes(b"image")
    return root


def test_pack(chart_root: Path, tmp_path: Path) -> None:
    """Test every chart file is packed under the name-version prefix."""
    out_file = tmp_path / "app.wrap.tgz"
    assert pack(chart_root, out_file) == out_file.absolute()
    with tarfile.open(out_file, "r:gz") as tar:
        names = tar.getnames()
        assert all(m.mtime == 0 and m.uid == 0 for m in tar.getmembers())
    assert names == [
        "app-1.2.3",
        "app-1.2.3/Chart.yaml",
        "app-1.2.3/Images.lock",
        "app-1.2.3/images",
        "app-1.2.3/images/abc.tar",
        "app-1.2.3/templates",
        "app-1.2.3/templates/deployment.yaml",
        "app-1.2.3/values.yaml",
    ]
    assert not (tmp_path / "app.wrap.tgz.partial").exists()


def test_pack_is_deterministic(chart_root: Path, tmp_path: Path) -> None:
    """Test packing the same chart twice produces identical bytes."""
    first = pack(chart_root, tmp_path / "first.tgz")
    second = pack(chart_root, tmp_path / "second.tgz")
    assert first.read_bytes() == second.read_bytes()


def test_pack_into_chart_directory(chart_root: Path) -> None:
    """Test the bundle does not include itself when written inside the chart."""
    out_file = pack(chart_root, chart_root / "app.wrap.tgz")
    with tarfile.open(out_file, "r:gz") as tar:
        assert "app-1.2.3/app.wrap.tgz" not in tar.getnames()


def test_unpack(chart_root: Path, tmp_path: Path) -> None:
    """Test unpacking returns the chart root with all its files."""
    out_file = pack(chart_root, tmp_path / "bundle")
    root = unpack(out_file, tmp_path / "dest")
    assert root == tmp_path / "dest" / "app-1.2.3"
    assert (root / "images" / "abc.tar").read_bytes() == b"image"
    assert (root / "templates" / "deployment.yaml").exists()
    chart = load_chart(root)
    assert chart.name == "app"
    assert chart.version == "1.2.3"


def test_is_archive(chart_root: Path, tmp_path: Path) -> None:
    """Test archives are detected from their content, not their name."""
    bundle = pack(chart_root, tmp_path / "bundle.txt")
    assert is_archive(bundle)
    assert not is_archive(chart_root / "Chart.yaml")
    assert not is_archive(chart_root)
    assert not is_archive(tmp_path / "missing.tgz")

    plain = tmp_path / "plain.data"
    with tarfile.open(plain, "w") as tar:
        tar.add(chart_root / "values.yaml", arcname="values.yaml")
    assert is_archive(plain)

    fake = tmp_path / "fake.tgz"
    fake.write_bytes(b"\x1f\x8bnot really gzip")
    assert not is_archive(fake)


def test_unpack_not_an_archive(chart_root: Path, tmp_path: Path) -> None:
    """Test a file that is not an archive is rejected."""
    with pytest.raises(PackageFormatError, match="not a recognized archive"):
        unpack(chart_root / "Chart.yaml", tmp_path / "dest")
    assert isinstance(PackageFormatError("x"), InputException)


def test_unpack_without_chart(chart_root: Path, tmp_path: Path) -> None:
    """Test an archive that does not hold a chart."""
    archive = tmp_path / "other.tar"
    with tarfile.open(archive, "w") as tar:
        tar.add(chart_root / "values.yaml", arcname="values.yaml")
    with pytest.raises(InputException, match="Unable to find a single chart"):
        unpack(archive, tmp_path / "dest")


def test_bundle_file_name(chart_root: Path) -> None:
    """Test the default bundle name."""
    assert bundle_file_name(load_chart(chart_root)) == "app-1.2.3.wrap.tgz"
