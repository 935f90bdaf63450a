"""Representation of an Images.lock file.

An Images.lock pins every container image a Helm chart declares to the digest
of each platform it was resolved for. It is stored as YAML next to the chart:

```yaml
apiVersion: v0
kind: ImagesLock
metadata:
  generatedAt: '2024-01-01T00:00:00+00:00'
  generatedBy: helm-wrap
chart:
  name: wordpress
  version: 16.1.24
  appVersion: 6.2.2
images:
- name: wordpress
  image: docker.io/bitnami/wordpress:6.2.2-debian-11-r26
  chart: wordpress
  digests:
  - digest: sha256:...
    arch: linux/amd64
```

The lock is the only source of digests for pulling and pushing images. Two
locks are equivalent when they contain the same set of name, image, platform
and digest entries in any order, see `diff_locks`.
"""

from collections import Counter
from dataclasses import dataclass, field, replace
import datetime
import logging
from pathlib import Path

import aiofiles
from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig
from mashumaro.exceptions import InvalidFieldValue, MissingField
import yaml

from .exceptions import InputException, ParseError
from .registry.base import DIGEST_RE, Reference

__all__ = [
    "ImagesLock",
    "ChartImage",
    "ChartInfo",
    "DigestInfo",
    "LockEntry",
    "LockChange",
    "LockDiff",
    "parse_lock",
    "serialize_lock",
    "read_lock",
    "write_lock",
    "diff_locks",
    "relocate_lock",
]

_LOGGER = logging.getLogger(__name__)

LOCK_API_VERSION = "v0"
LOCK_KIND = "ImagesLock"
LOCK_FILE_NAME = "Images.lock"
GENERATED_BY = "helm-wrap"


@dataclass
class BaseLockObject(DataClassDictMixin):
    """Base class for all objects stored in an Images.lock."""

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass
class DigestInfo(BaseLockObject):
    """The digest of one platform of an image."""

    digest: str
    """Algorithm prefixed digest of the platform image manifest."""

    platform: str = field(metadata=field_options(alias="arch"))
    """Platform as os/architecture[/variant]."""


@dataclass
class ChartImage(BaseLockObject):
    """An image declared by a chart and its resolved digests."""

    name: str
    """Symbolic name of the image within the chart."""

    image: str
    """Registry reference of the image, without a digest."""

    chart: str | None = None
    """Name of the chart or subchart declaring the image."""

    digests: list[DigestInfo] = field(default_factory=list)
    """One digest for each resolved platform."""

    def platforms(self) -> list[str]:
        """Return the platforms of the image in lock order."""
        return [info.platform for info in self.digests]


@dataclass
class ChartInfo(BaseLockObject):
    """Identity of the chart the lock was generated for."""

    name: str = ""
    version: str = ""
    app_version: str | None = field(
        metadata=field_options(alias="appVersion"), default=None
    )


@dataclass
class LockMetadata(BaseLockObject):
    """Provenance information about the lock."""

    generated_at: str = field(metadata=field_options(alias="generatedAt"), default="")
    generated_by: str = field(
        metadata=field_options(alias="generatedBy"), default=GENERATED_BY
    )

    @classmethod
    def now(cls) -> "LockMetadata":
        """Return metadata stamped with the current time."""
        now = datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)
        return cls(generated_at=now.isoformat())


@dataclass
class ImagesLock(BaseLockObject):
    """The images of a chart pinned to their digests."""

    api_version: str = field(
        metadata=field_options(alias="apiVersion"), default=LOCK_API_VERSION
    )
    kind: str = LOCK_KIND
    metadata: LockMetadata = field(default_factory=LockMetadata)
    chart: ChartInfo = field(default_factory=ChartInfo)
    images: list[ChartImage] = field(default_factory=list)

    def num_artifacts(self) -> int:
        """Return the number of platform images in the lock."""
        return sum(len(image.digests) for image in self.images)


def _validate(lock: ImagesLock) -> None:
    if lock.kind != LOCK_KIND:
        raise ParseError(f"Expected kind {LOCK_KIND} but got '{lock.kind}'")
    if lock.api_version != LOCK_API_VERSION:
        raise ParseError(f"Unsupported Images.lock apiVersion '{lock.api_version}'")
    for image in lock.images:
        if "@" in image.image:
            raise ParseError(
                f"Image {image.name} reference '{image.image}' "
                "must not contain a digest"
            )
        try:
            Reference.parse(image.image)
        except InputException as err:
            raise ParseError(
                f"Image {image.name} has an invalid reference: {err}"
            ) from err
        seen: set[str] = set()
        for info in image.digests:
            if not DIGEST_RE.match(info.digest):
                raise ParseError(
                    f"Image {image.name} has invalid digest '{info.digest}'"
                )
            if info.platform in seen:
                raise ParseError(
                    f"Image {image.name} has duplicate digests for {info.platform}"
                )
            seen.add(info.platform)


def parse_lock(content: str | bytes) -> ImagesLock:
    """Parse the contents of an Images.lock file."""
    try:
        doc = yaml.safe_load(content)
    except yaml.YAMLError as err:
        raise ParseError(f"Images.lock is not valid yaml: {err}") from err
    if not isinstance(doc, dict):
        raise ParseError(f"Images.lock expected a mapping but got {type(doc).__name__}")
    if doc.get("images") is None:
        doc["images"] = []
    try:
        lock = ImagesLock.from_dict(doc)
    except (MissingField, InvalidFieldValue, TypeError, ValueError) as err:
        raise ParseError(f"Images.lock is malformed: {err}") from err
    _validate(lock)
    return lock


def serialize_lock(lock: ImagesLock) -> str:
    """Serialize the lock to yaml with a fixed key order."""
    return yaml.dump(lock.to_dict(), sort_keys=False, default_flow_style=False)


async def read_lock(path: Path) -> ImagesLock:
    """Read and parse an Images.lock file."""
    _LOGGER.debug("Reading Images.lock from %s", path)
    try:
        async with aiofiles.open(path) as lock_file:
            content = await lock_file.read()
    except FileNotFoundError as err:
        raise InputException(f"Images.lock file {path} does not exist") from err
    return parse_lock(content)


async def write_lock(path: Path, lock: ImagesLock) -> None:
    """Serialize the lock and write it to an Images.lock file."""
    _LOGGER.debug("Writing Images.lock to %s", path)
    async with aiofiles.open(path, mode="w") as lock_file:
        await lock_file.write(serialize_lock(lock))


@dataclass(frozen=True, order=True)
class LockEntry:
    """One platform digest of a named image, the unit of lock comparison."""

    name: str
    platform: str
    digest: str
    image: str

    def __str__(self) -> str:
        return f"{self.name} {self.image} ({self.platform}) {self.digest}"


@dataclass(frozen=True, order=True)
class LockChange:
    """A platform of a named image that resolved to something different."""

    before: LockEntry
    after: LockEntry

    @property
    def name(self) -> str:
        return self.after.name

    @property
    def platform(self) -> str:
        return self.after.platform

    def __str__(self) -> str:
        return (
            f"{self.name} ({self.platform}) "
            f"{self.before.image}@{self.before.digest} -> "
            f"{self.after.image}@{self.after.digest}"
        )


@dataclass(frozen=True)
class LockDiff:
    """Differences between two locks, each list sorted."""

    added: list[LockEntry]
    """Entries only present in the new lock."""

    removed: list[LockEntry]
    """Entries only present in the old lock."""

    changed: list[LockChange]
    """Same name and platform, with a different digest or image."""

    def __bool__(self) -> bool:
        return bool(self.added or self.removed or self.changed)


def lock_entries(lock: ImagesLock) -> list[LockEntry]:
    """Flatten the lock into one entry per image platform."""
    return [
        LockEntry(
            name=image.name,
            platform=info.platform,
            digest=info.digest,
            image=image.image,
        )
        for image in lock.images
        for info in image.digests
    ]


def diff_locks(old: ImagesLock, new: ImagesLock) -> LockDiff:
    """Compare two locks, ignoring ordering and metadata.

    Entries are compared as a multiset so locks declaring the same image name
    in more than one subchart are compared correctly.
    """
    old_entries = Counter(lock_entries(old))
    new_entries = Counter(lock_entries(new))
    only_old = old_entries - new_entries
    only_new = new_entries - old_entries

    unmatched: dict[tuple[str, str], list[LockEntry]] = {}
    for entry in sorted(only_old.elements()):
        unmatched.setdefault((entry.name, entry.platform), []).append(entry)

    added: list[LockEntry] = []
    changed: list[LockChange] = []
    for entry in sorted(only_new.elements()):
        if candidates := unmatched.get((entry.name, entry.platform)):
            changed.append(LockChange(before=candidates.pop(0), after=entry))
        else:
            added.append(entry)
    removed = sorted(entry for entries in unmatched.values() for entry in entries)
    return LockDiff(added=added, removed=removed, changed=sorted(changed))


def relocate_image(image: str, prefix: str) -> str:
    """Rewrite an image reference to live under a new registry prefix.

    The registry host of the original reference is dropped and the repository
    path is kept, e.g. `docker.io/bitnami/nginx:1.25` relocated to
    `registry.local/mirror` becomes `registry.local/mirror/bitnami/nginx:1.25`.
    """
    prefix = prefix.removeprefix("oci://").strip("/")
    if not prefix:
        raise InputException("Relocation prefix must not be empty")
    ref = Reference.parse(image)
    relocated = f"{prefix}/{ref.repository}"
    if ref.tag:
        relocated += f":{ref.tag}"
    return relocated


def relocate_lock(lock: ImagesLock, prefix: str) -> ImagesLock:
    """Return a copy of the lock with every image moved under the prefix."""
    return replace(
        lock,
        images=[
            replace(
                image,
                image=relocate_image(image.image, prefix),
                digests=[replace(info) for info in image.digests],
            )
            for image in lock.images
        ],
    )
