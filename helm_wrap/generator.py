"""Generates an Images.lock from the images a chart declares.

Each declared image is resolved against its registry and every deployable
platform manifest becomes a digest entry in the lock. Generation is all or
nothing: any registry failure, or an image left without platforms, aborts the
whole lock.
"""

import logging
from pathlib import Path

from .chart import DeclaredImage, list_declared_images, load_chart
from .config import Config
from .context import trace_context
from .exceptions import NoPlatformsResolved, RegistryException, WrapException
from .imagelock import (
    ChartImage,
    ChartInfo,
    DigestInfo,
    ImagesLock,
    LockMetadata,
    write_lock,
)
from .registry.base import ManifestDescriptor, Registry, normalize_platform

__all__ = [
    "generate_lock",
    "create_lock_file",
]

_LOGGER = logging.getLogger(__name__)


def _deployable(desc: ManifestDescriptor, config: Config) -> bool:
    """Return true if the manifest is an image that can be deployed."""
    if desc.matches_annotations(config.skip_annotations):
        _LOGGER.debug("Skipping annotated manifest %s", desc.digest)
        return False
    if not desc.is_image:
        _LOGGER.debug("Skipping %s manifest %s", desc.media_type, desc.digest)
        return False
    if desc.platform is None or desc.platform.is_unknown:
        _LOGGER.debug("Skipping manifest %s without a platform", desc.digest)
        return False
    return True


async def _resolve_image(
    declared: DeclaredImage, registry: Registry, config: Config
) -> ChartImage:
    """Resolve one declared image to its platform digests."""
    try:
        manifests = await registry.list_manifests(declared.image)
    except WrapException as err:
        raise RegistryException(
            f"Failed to resolve image {declared.name} ({declared.image}): {err}"
        ) from err

    platforms = {normalize_platform(p) for p in config.platforms}
    digests: dict[str, DigestInfo] = {}
    for desc in manifests:
        if not _deployable(desc, config):
            continue
        platform = str(desc.platform)
        if platforms and platform not in platforms:
            continue
        if platform in digests:
            _LOGGER.warning(
                "Image %s lists platform %s more than once, using %s",
                declared.image,
                platform,
                digests[platform].digest,
            )
            continue
        digests[platform] = DigestInfo(digest=desc.digest, platform=platform)

    if not digests:
        raise NoPlatformsResolved(declared.name, declared.image, sorted(platforms))
    return ChartImage(
        name=declared.name,
        image=declared.image,
        chart=declared.chart,
        digests=[digests[platform] for platform in sorted(digests)],
    )


async def generate_lock(
    chart_path: Path, registry: Registry, config: Config
) -> ImagesLock:
    """Generate an Images.lock for the chart at the specified path."""
    chart = load_chart(chart_path)
    with trace_context(f"Generate lock {chart}"):
        declared = list_declared_images(chart, config.annotations_key)
        _LOGGER.info("Resolving %d images declared by chart %s", len(declared), chart)
        images = [await _resolve_image(image, registry, config) for image in declared]
    lock = ImagesLock(
        metadata=LockMetadata.now(),
        chart=ChartInfo(
            name=chart.name, version=chart.version, app_version=chart.app_version
        ),
        images=images,
    )
    _LOGGER.debug(
        "Generated lock with %d images and %d artifacts",
        len(lock.images),
        lock.num_artifacts(),
    )
    return lock


async def create_lock_file(
    chart_path: Path, lock_file: Path, registry: Registry, config: Config
) -> ImagesLock:
    """Generate an Images.lock for the chart and write it to `lock_file`."""
    lock = await generate_lock(chart_path, registry, config)
    await write_lock(lock_file, lock)
    _LOGGER.info("Images.lock written to %s", lock_file)
    return lock
