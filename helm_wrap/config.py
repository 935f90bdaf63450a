"""Configuration objects for helm-wrap."""

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field

from .progress import ProgressSink, SilentProgress

__all__ = [
    "Config",
    "DEFAULT_ANNOTATIONS_KEY",
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_RETRY_DELAY",
    "DEFAULT_SKIP_ANNOTATIONS",
]

DEFAULT_ANNOTATIONS_KEY = "images"
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0

# Manifest list entries carrying one of these annotations are not deployable
# images (e.g. buildkit attestations) and are left out of the lock.
DEFAULT_SKIP_ANNOTATIONS: Mapping[str, str] = {
    "vnd.docker.reference.type": "attestation-manifest",
}


@dataclass(frozen=True, kw_only=True)
class Config:
    """Settings for generating, verifying and transferring images.

    A single instance is built by the caller and passed to every operation.
    """

    annotations_key: str = DEFAULT_ANNOTATIONS_KEY
    """Chart.yaml annotation holding the list of images the chart uses."""

    platforms: tuple[str, ...] = ()
    """Platforms to include in the lock, or empty to include all."""

    max_retries: int = DEFAULT_MAX_RETRIES
    """Number of retries after the first failed attempt of a transfer unit."""

    retry_delay: float = DEFAULT_RETRY_DELAY
    """Base delay in seconds between attempts, multiplied by the retry number."""

    skip_annotations: Mapping[str, str] = field(
        default_factory=lambda: dict(DEFAULT_SKIP_ANNOTATIONS)
    )
    """Manifest annotations identifying non-image entries of a manifest list."""

    progress: ProgressSink = field(default_factory=SilentProgress)
    """Receives transfer progress events."""

    cancel: asyncio.Event | None = None
    """When set, long running operations stop at the next opportunity."""

    @property
    def cancelled(self) -> bool:
        """Return true if cancellation has been requested."""
        return self.cancel is not None and self.cancel.is_set()
