"""Shared helpers for building the objects each command line action needs."""

import asyncio
import logging
from argparse import ArgumentParser
from typing import Any

from helm_wrap.config import DEFAULT_ANNOTATIONS_KEY, DEFAULT_MAX_RETRIES, Config
from helm_wrap.progress import LoggingProgress
from helm_wrap.registry import OrasRegistry, Registry

_LOGGER = logging.getLogger(__name__)


def add_global_flags(parser: ArgumentParser) -> None:
    """Add flags shared by every command."""
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Talk to registries over plain http",
    )
    parser.add_argument(
        "--annotations-key",
        default=DEFAULT_ANNOTATIONS_KEY,
        help="Chart.yaml annotation listing the images used by the chart",
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=DEFAULT_MAX_RETRIES,
        help="Number of times to retry a failed image transfer",
    )


def add_platforms_flag(parser: ArgumentParser) -> None:
    """Add the flag restricting which platforms end up in a lock."""
    parser.add_argument(
        "--platforms",
        help="Comma separated list of platforms to include, e.g. linux/amd64",
        type=lambda x: [p.strip() for p in x.split(",") if p.strip()],
        default=None,
    )


def build_config(
    annotations_key: str = DEFAULT_ANNOTATIONS_KEY,
    max_retries: int = DEFAULT_MAX_RETRIES,
    platforms: list[str] | None = None,
    cancel: asyncio.Event | None = None,
    **kwargs: Any,  # pylint: disable=unused-argument
) -> Config:
    """Build a Config from command line flags."""
    return Config(
        annotations_key=annotations_key,
        platforms=tuple(platforms or ()),
        max_retries=max_retries,
        progress=LoggingProgress(),
        cancel=cancel,
    )


def make_registry(insecure: bool = False) -> Registry:
    """Create the client used to talk to container registries."""
    return OrasRegistry(insecure=insecure)
