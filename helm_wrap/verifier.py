"""Verifies an Images.lock still matches the chart it was generated for.

The lock is regenerated from the chart declarations and the registry, then
compared with the lock on disk. All differences are reported together in a
single `DriftError`.
"""

from dataclasses import replace
import logging
from pathlib import Path

from .config import Config
from .context import trace_context
from .exceptions import DriftError
from .generator import generate_lock
from .imagelock import ImagesLock, diff_locks, read_lock
from .registry.base import Registry

__all__ = [
    "verify_lock",
]

_LOGGER = logging.getLogger(__name__)


def _restrict_platforms(current: ImagesLock, persisted: ImagesLock) -> ImagesLock:
    """Limit images already in the persisted lock to the platforms it recorded.

    A lock generated for a subset of platforms should not report the platforms
    it intentionally left out. Images not present in the persisted lock keep
    every platform so they are reported in full.
    """
    recorded: dict[str, set[str]] = {}
    for image in persisted.images:
        recorded.setdefault(image.name, set()).update(image.platforms())
    return replace(
        current,
        images=[
            replace(
                image,
                digests=[
                    info
                    for info in image.digests
                    if image.name not in recorded
                    or info.platform in recorded[image.name]
                ],
            )
            for image in current.images
        ],
    )


async def verify_lock(
    chart_path: Path, lock_file: Path, registry: Registry, config: Config
) -> None:
    """Verify the lock file matches the images the chart currently resolves to.

    Raises `DriftError` listing every added, removed and changed image digest.
    """
    persisted = await read_lock(lock_file)
    with trace_context(f"Verify {lock_file}"):
        current = await generate_lock(chart_path, registry, config)
    if not config.platforms:
        current = _restrict_platforms(current, persisted)
    if diff := diff_locks(persisted, current):
        _LOGGER.debug(
            "Images.lock drift: %d added, %d removed, %d changed",
            len(diff.added),
            len(diff.removed),
            len(diff.changed),
        )
        raise DriftError(diff.added, diff.removed, diff.changed)
    _LOGGER.info("Images.lock %s matches chart %s", lock_file, chart_path)
