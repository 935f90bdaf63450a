"""Library for reading the images a Helm chart declares.

A chart declares the container images it deploys with an annotation in its
`Chart.yaml`, by default `images`, holding a yaml list:

```yaml
annotations:
  images: |
    - name: apache
      image: docker.io/bitnami/apache:2.4.57-debian-11-r0
```

Subcharts in the `charts/` directory, either unpacked or as packaged `.tgz`
files, declare their images the same way and are included after the images of
the parent chart.
"""

from collections.abc import Iterator
from dataclasses import dataclass, field
import logging
from pathlib import Path
import tarfile
from typing import Any

import yaml

from .exceptions import InputException
from .imagelock import LOCK_FILE_NAME

__all__ = [
    "Chart",
    "DeclaredImage",
    "load_chart",
    "find_chart_root",
    "list_declared_images",
]

_LOGGER = logging.getLogger(__name__)

CHART_FILE = "Chart.yaml"
IMAGES_DIR = "images"
SUBCHARTS_DIR = "charts"


@dataclass(frozen=True)
class DeclaredImage:
    """An image reference declared in a chart annotation."""

    name: str
    image: str
    chart: str


@dataclass(frozen=True)
class Chart:
    """The metadata of a chart on disk."""

    root: Path
    """Directory containing the Chart.yaml."""

    name: str
    version: str
    app_version: str | None = None
    annotations: dict[str, str] = field(default_factory=dict)

    @property
    def images_dir(self) -> Path:
        """Directory holding the local image archives."""
        return self.root / IMAGES_DIR

    @property
    def lock_file(self) -> Path:
        """Conventional location of the Images.lock."""
        return self.root / LOCK_FILE_NAME

    @property
    def bundle_prefix(self) -> str:
        return f"{self.name}-{self.version}"

    def __str__(self) -> str:
        return f"{self.name}:{self.version}"


def _parse_chart_doc(doc: Any, root: Path, source: str) -> Chart:
    if not isinstance(doc, dict):
        raise InputException(
            f"{source} expected a mapping but got {type(doc).__name__}"
        )
    if not (name := doc.get("name")):
        raise InputException(f"{source} is missing the chart name")
    if (version := doc.get("version")) is None:
        raise InputException(f"{source} is missing the chart version")
    annotations = doc.get("annotations") or {}
    if not isinstance(annotations, dict):
        raise InputException(f"{source} annotations must be a mapping")
    app_version = doc.get("appVersion")
    return Chart(
        root=root,
        name=str(name),
        version=str(version),
        app_version=str(app_version) if app_version is not None else None,
        annotations={str(k): v for k, v in annotations.items()},
    )


def find_chart_root(path: Path) -> Path:
    """Return the chart directory for a path to a chart or its Chart.yaml."""
    if path.is_file() and path.name == CHART_FILE:
        return path.parent
    if (path / CHART_FILE).is_file():
        return path
    raise InputException(f"Unable to find {CHART_FILE} in {path}")


def load_chart(path: Path) -> Chart:
    """Load the Chart.yaml of a chart directory."""
    root = find_chart_root(path)
    chart_file = root / CHART_FILE
    try:
        doc = yaml.safe_load(chart_file.read_text())
    except yaml.YAMLError as err:
        raise InputException(f"{chart_file} is not valid yaml: {err}") from err
    return _parse_chart_doc(doc, root, str(chart_file))


def _packaged_subchart(archive: Path) -> Chart:
    """Read the Chart.yaml of a subchart packaged as a .tgz."""
    try:
        with tarfile.open(archive, "r:*") as tar:
            members = [
                m
                for m in tar.getmembers()
                if m.isfile() and m.name.count("/") == 1
                and m.name.endswith(f"/{CHART_FILE}")
            ]
            if not members:
                raise InputException(
                    f"Subchart {archive} does not contain a {CHART_FILE}"
                )
            fd = tar.extractfile(members[0])
            if fd is None:
                raise InputException(f"Unable to read {CHART_FILE} from {archive}")
            with fd:
                doc = yaml.safe_load(fd.read())
    except (tarfile.TarError, OSError) as err:
        raise InputException(f"Unable to read subchart {archive}: {err}") from err
    except yaml.YAMLError as err:
        raise InputException(
            f"{archive} {CHART_FILE} is not valid yaml: {err}"
        ) from err
    return _parse_chart_doc(doc, archive, f"{archive}:{CHART_FILE}")


def _subcharts(chart: Chart) -> Iterator[Chart]:
    """Yield the subcharts of a chart in name order, depth first."""
    subcharts_dir = chart.root / SUBCHARTS_DIR
    if not subcharts_dir.is_dir():
        return
    for path in sorted(subcharts_dir.iterdir()):
        if path.is_dir() and (path / CHART_FILE).is_file():
            subchart = load_chart(path)
            yield subchart
            yield from _subcharts(subchart)
        elif path.is_file() and path.name.endswith((".tgz", ".tar.gz")):
            yield _packaged_subchart(path)


def _annotation_images(chart: Chart, annotations_key: str) -> list[DeclaredImage]:
    if (value := chart.annotations.get(annotations_key)) is None:
        return []
    try:
        entries = yaml.safe_load(value) if isinstance(value, str) else value
    except yaml.YAMLError as err:
        raise InputException(
            f"Chart {chart} annotation '{annotations_key}' is not valid yaml: {err}"
        ) from err
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise InputException(
            f"Chart {chart} annotation '{annotations_key}' must be a list of images"
        )
    images = []
    for entry in entries:
        if not (
            isinstance(entry, dict)
            and isinstance(entry.get("name"), str)
            and isinstance(entry.get("image"), str)
        ):
            raise InputException(
                f"Chart {chart} annotation '{annotations_key}' entries must have "
                f"string 'name' and 'image' fields: {entry}"
            )
        if "@" in entry["image"]:
            raise InputException(
                f"Chart {chart} image {entry['name']} must not be pinned to a digest: "
                f"{entry['image']}"
            )
        images.append(
            DeclaredImage(name=entry["name"], image=entry["image"], chart=chart.name)
        )
    return images


def list_declared_images(chart: Chart, annotations_key: str) -> list[DeclaredImage]:
    """Return the images declared by the chart and its subcharts, in order."""
    images = _annotation_images(chart, annotations_key)
    for subchart in _subcharts(chart):
        _LOGGER.debug("Reading images from subchart %s", subchart)
        images.extend(_annotation_images(subchart, annotations_key))
    return images
