"""Resolves the chart a command operates on to a directory on disk.

A chart may be given as a chart directory, a packaged chart or bundle, or an
`oci://` reference to a chart stored in a registry:

```
helm-wrap wrap oci://registry.local/charts/app --version 1.0.0
```
"""

import logging
from pathlib import Path

from .bundle import is_archive, unpack
from .exceptions import InputException
from .registry.base import Reference, Registry

__all__ = [
    "is_oci_reference",
    "chart_reference",
    "fetch_chart",
    "resolve_chart",
]

_LOGGER = logging.getLogger(__name__)

OCI_SCHEME = "oci://"


def is_oci_reference(value: str) -> bool:
    """Return true if the value refers to a chart in an OCI registry."""
    return value.startswith(OCI_SCHEME)


def chart_reference(reference: str, version: str | None = None) -> str:
    """Return the registry reference of an `oci://` chart at a version.

    Chart versions may contain `+`, which is not valid in a tag and is stored
    as `_` in the registry.
    """
    ref = Reference.parse(reference.removeprefix(OCI_SCHEME))
    if version:
        tag = version.replace("+", "_")
        if ref.digest or (ref.tag and ref.tag != tag):
            raise InputException(
                f"Chart reference {reference} conflicts with version {version}"
            )
        ref = Reference(ref.registry, ref.repository, tag)
    return str(ref)


async def fetch_chart(
    reference: str, version: str | None, registry: Registry, dest_dir: Path
) -> Path:
    """Download a packaged chart from a registry and return its chart root."""
    target = chart_reference(reference, version)
    download_dir = dest_dir / "download"
    download_dir.mkdir(parents=True, exist_ok=True)
    files = await registry.pull_artifact(target, download_dir)
    archives = [file for file in files if is_archive(file)]
    if len(archives) != 1:
        raise InputException(
            f"Expected a single packaged chart in {target}, found {len(archives)}"
        )
    return unpack(archives[0], dest_dir / "chart")


async def resolve_chart(
    chart: str, version: str | None, registry: Registry, dest_dir: Path
) -> Path:
    """Return the chart directory for a chart directory, archive or reference.

    Archives and remote charts are extracted below `dest_dir`.
    """
    if is_oci_reference(chart):
        return await fetch_chart(chart, version, registry, dest_dir)
    if version:
        _LOGGER.warning("Ignoring version %s for local chart %s", version, chart)
    path = Path(chart)
    if is_archive(path):
        return unpack(path, dest_dir)
    return path
