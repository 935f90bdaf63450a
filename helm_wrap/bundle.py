"""Packs a chart with its Images.lock and image cache into a single archive.

The bundle is a gzip compressed tar whose entries live under a
`<chart name>-<chart version>/` prefix. Entries are written in sorted order with
zeroed timestamps and ownership so packing the same chart twice produces the
same bytes.

Whether an input is a bundle is decided from its content rather than the file
name, since downloaded files may not have a reliable extension.
"""

import gzip
import logging
import os
from pathlib import Path
import tarfile

from .chart import CHART_FILE, Chart, load_chart
from .exceptions import InputException, PackageFormatError

__all__ = [
    "pack",
    "unpack",
    "is_archive",
    "bundle_file_name",
]

_LOGGER = logging.getLogger(__name__)

BUNDLE_SUFFIX = ".wrap.tgz"

_GZIP_MAGIC = b"\x1f\x8b"
_TAR_MAGIC_OFFSET = 257
_TAR_MAGIC = b"ustar"


def bundle_file_name(chart: Chart) -> str:
    """Return the default file name of the bundle for a chart."""
    return f"{chart.bundle_prefix}{BUNDLE_SUFFIX}"


def is_archive(path: Path) -> bool:
    """Return true if the file content looks like a tar or gzip'd tar."""
    if not path.is_file():
        return False
    with path.open("rb") as fd:
        header = fd.read(_TAR_MAGIC_OFFSET + len(_TAR_MAGIC))
    if header.startswith(_GZIP_MAGIC):
        try:
            with gzip.open(path, "rb") as gz:
                header = gz.read(_TAR_MAGIC_OFFSET + len(_TAR_MAGIC))
        except (OSError, EOFError):
            return False
    return header[_TAR_MAGIC_OFFSET:] == _TAR_MAGIC


def _normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


def pack(chart_root: Path, out_file: Path) -> Path:
    """Write the chart directory to a compressed bundle file.

    Returns the path of the written bundle.
    """
    chart = load_chart(chart_root)
    prefix = chart.bundle_prefix
    out_file = out_file.absolute()
    _LOGGER.info("Packing chart %s into %s", chart, out_file)

    paths: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(chart.root):
        dirnames.sort()
        for name in sorted(dirnames + filenames):
            path = Path(dirpath) / name
            if path.absolute() == out_file:
                continue
            paths.append(path)
    paths.sort(key=lambda p: p.relative_to(chart.root).parts)

    tmp_file = out_file.with_name(out_file.name + ".partial")
    try:
        with tmp_file.open("wb") as raw:
            with gzip.GzipFile(filename="", fileobj=raw, mode="wb", mtime=0) as gz:
                with tarfile.open(
                    fileobj=gz, mode="w", format=tarfile.PAX_FORMAT
                ) as tar:
                    tar.add(
                        chart.root, arcname=prefix, recursive=False, filter=_normalize
                    )
                    for path in paths:
                        relative = path.relative_to(chart.root).as_posix()
                        tar.add(
                            path,
                            arcname=f"{prefix}/{relative}",
                            recursive=False,
                            filter=_normalize,
                        )
        os.replace(tmp_file, out_file)
    finally:
        tmp_file.unlink(missing_ok=True)
    return out_file


def _find_chart_root(dest_dir: Path) -> Path:
    if (dest_dir / CHART_FILE).is_file():
        return dest_dir
    candidates = [
        path
        for path in sorted(dest_dir.iterdir())
        if path.is_dir() and (path / CHART_FILE).is_file()
    ]
    if len(candidates) != 1:
        raise InputException(f"Unable to find a single chart in {dest_dir}")
    return candidates[0]


def unpack(archive_file: Path, dest_dir: Path) -> Path:
    """Extract a bundle and return the chart root directory within it."""
    if not is_archive(archive_file):
        raise PackageFormatError(f"{archive_file} is not a recognized archive")
    dest_dir.mkdir(parents=True, exist_ok=True)
    _LOGGER.info("Unpacking %s into %s", archive_file, dest_dir)
    try:
        with tarfile.open(archive_file, "r:*") as tar:
            tar.extractall(dest_dir, filter="data")
    except tarfile.TarError as err:
        raise PackageFormatError(f"Unable to extract {archive_file}: {err}") from err
    return _find_chart_root(dest_dir)
