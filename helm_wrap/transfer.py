"""Moves the images pinned in an Images.lock between registries and disk.

Pulling saves every platform digest of every image in the lock as an archive in
the local image cache. Pushing loads the cached archives of each image,
assembles them into a multi-platform manifest list and pushes it to the image
reference recorded in the lock.

Units of work (one digest when pulling, one image when pushing) run one at a
time in lock order. Each unit goes through the states:

```
PENDING -> IN_FLIGHT -> SUCCEEDED
                     -> RETRYING -> IN_FLIGHT ...
                     -> FAILED
```

A failed unit aborts the whole operation. Cancellation is checked before each
unit and between retries.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
import logging
import os
from pathlib import Path

from .config import Config
from .context import trace_context
from .exceptions import (
    ArchiveException,
    Cancelled,
    RegistryException,
    TransferFailed,
    WrapException,
)
from .imagelock import ChartImage, ImagesLock
from .progress import ProgressEvent, ProgressSink, UnitState
from .registry.archive import ImageIndex, IndexEntry, load_image_archive
from .registry.base import Registry, digest_hex

__all__ = [
    "pull_images",
    "push_images",
    "build_image_index",
    "image_archive_path",
]

_LOGGER = logging.getLogger(__name__)

# Errors that may succeed when the unit is attempted again.
RETRYABLE_ERRORS = (RegistryException, ArchiveException, OSError)

_PARTIAL_SUFFIX = ".partial"


def image_archive_path(images_dir: Path, digest: str) -> Path:
    """Return the local image cache file for the digest."""
    return images_dir / f"{digest_hex(digest)}.tar"


@dataclass
class TransferUnit:
    """A single pull or push and its current state."""

    name: str
    image: str
    digest: str | None = None
    platform: str | None = None
    state: UnitState = UnitState.PENDING
    attempts: int = 0

    @property
    def title(self) -> str:
        target = f"{self.image}@{self.digest}" if self.digest else self.image
        if self.platform:
            return f"{self.name} {target} ({self.platform})"
        return f"{self.name} {target}"

    def failure(
        self, cause: BaseException, cancelled: bool = False
    ) -> TransferFailed:
        return TransferFailed(
            self.name,
            self.image,
            cause,
            digest=self.digest,
            platform=self.platform,
            attempts=self.attempts,
            cancelled=cancelled,
        )


class _Tracker:
    """Reports unit state transitions and keeps the completed count."""

    def __init__(self, sink: ProgressSink, title: str, total: int) -> None:
        self._sink = sink
        self.total = total
        self.completed = 0
        sink.start(title, total)

    def transition(
        self, unit: TransferUnit, state: UnitState, error: BaseException | None = None
    ) -> None:
        unit.state = state
        if state == UnitState.SUCCEEDED:
            self.completed += 1
        self._sink.on_event(
            ProgressEvent(
                state=state,
                title=unit.title,
                completed=self.completed,
                total=self.total,
                attempt=unit.attempts,
                error=error,
            )
        )

    def check_cancelled(self, unit: TransferUnit, config: Config) -> None:
        """Fail a pending unit if cancellation was requested."""
        if config.cancelled:
            err = Cancelled(f"Cancelled before transferring {unit.title}")
            self.transition(unit, UnitState.FAILED, err)
            raise err


async def _backoff(config: Config, delay: float) -> bool:
    """Wait before the next attempt, returning true if cancelled meanwhile."""
    if config.cancel is None:
        await asyncio.sleep(delay)
        return False
    if delay <= 0:
        return config.cancel.is_set()
    try:
        await asyncio.wait_for(config.cancel.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True


async def _run_with_retry(
    unit: TransferUnit,
    func: Callable[[], Awaitable[object]],
    config: Config,
    tracker: _Tracker,
) -> None:
    """Run the unit until it succeeds, retries are exhausted, or cancelled."""
    max_attempts = max(config.max_retries, 0) + 1
    for attempt in range(1, max_attempts + 1):
        unit.attempts = attempt
        tracker.transition(unit, UnitState.IN_FLIGHT)
        try:
            await func()
        except RETRYABLE_ERRORS as err:
            error: BaseException = err
        except WrapException as err:
            # Invalid input does not succeed on another attempt
            tracker.transition(unit, UnitState.FAILED, err)
            raise unit.failure(err) from err
        else:
            tracker.transition(unit, UnitState.SUCCEEDED)
            return

        _LOGGER.debug("Attempt %d of %s failed: %s", attempt, unit.title, error)
        # Do not retry once cancelled, report the error of the last attempt
        if not config.cancelled and attempt < max_attempts:
            tracker.transition(unit, UnitState.RETRYING, error)
            if not await _backoff(config, config.retry_delay * attempt):
                continue
        tracker.transition(unit, UnitState.FAILED, error)
        raise unit.failure(error, cancelled=config.cancelled) from error


async def _pull_image(
    registry: Registry, image: str, digest: str, archive: Path
) -> None:
    """Save the image to a temporary file and move it into place once verified."""
    partial_file = archive.with_name(archive.name + _PARTIAL_SUFFIX)
    try:
        await registry.save_image(image, digest, partial_file)
        saved = await asyncio.to_thread(load_image_archive, partial_file)
        if saved.digest != digest:
            raise ArchiveException(
                f"Saved image {image} has digest {saved.digest}, expected {digest}"
            )
        os.replace(partial_file, archive)
    finally:
        partial_file.unlink(missing_ok=True)


async def pull_images(
    lock: ImagesLock, images_dir: Path, registry: Registry, config: Config
) -> None:
    """Save every platform digest in the lock to the local image cache."""
    images_dir.mkdir(parents=True, exist_ok=True)
    tracker = _Tracker(config.progress, "Pulling images", lock.num_artifacts())
    try:
        with trace_context(f"Pull images into {images_dir}"):
            for chart_image in lock.images:
                for info in chart_image.digests:
                    unit = TransferUnit(
                        name=chart_image.name,
                        image=chart_image.image,
                        digest=info.digest,
                        platform=info.platform,
                    )
                    tracker.check_cancelled(unit, config)
                    archive = image_archive_path(images_dir, info.digest)
                    pull = partial(
                        _pull_image, registry, chart_image.image, info.digest, archive
                    )
                    await _run_with_retry(
                        unit,
                        pull,
                        config,
                        tracker,
                    )
    finally:
        config.progress.stop()


def build_image_index(chart_image: ChartImage, images_dir: Path) -> ImageIndex:
    """Assemble a manifest list from the cached archives of every platform.

    The platform of each entry is read from the image configuration in the
    archive. Raises `ArchiveException` if any platform is missing or unreadable.
    """
    if not chart_image.digests:
        raise ArchiveException(f"Image {chart_image.name} has no digests to push")
    entries = []
    for info in chart_image.digests:
        local = load_image_archive(image_archive_path(images_dir, info.digest))
        if local.digest != info.digest:
            raise ArchiveException(
                f"Archive {local.path} holds {local.digest}, expected {info.digest}"
            )
        platform = local.platform
        if str(platform) != info.platform:
            _LOGGER.warning(
                "Image %s digest %s is locked as %s but its config declares %s",
                chart_image.name,
                info.digest,
                info.platform,
                platform,
            )
        entries.append(IndexEntry(image=local, platform=platform))
    return ImageIndex(entries=tuple(entries))


async def push_images(
    lock: ImagesLock, images_dir: Path, registry: Registry, config: Config
) -> None:
    """Push each image in the lock from the local cache as a manifest list."""
    tracker = _Tracker(config.progress, "Pushing images", len(lock.images))
    try:
        with trace_context(f"Push images from {images_dir}"):
            for chart_image in lock.images:
                unit = TransferUnit(
                    name=chart_image.name,
                    image=chart_image.image,
                    platform=", ".join(chart_image.platforms()),
                )
                tracker.check_cancelled(unit, config)
                try:
                    index = await asyncio.to_thread(
                        build_image_index, chart_image, images_dir
                    )
                except ArchiveException as err:
                    tracker.transition(unit, UnitState.FAILED, err)
                    raise unit.failure(err) from err
                await _run_with_retry(
                    unit,
                    partial(registry.push_index, chart_image.image, index),
                    config,
                    tracker,
                )
    finally:
        config.progress.stop()
