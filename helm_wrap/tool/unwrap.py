"""Helm-wrap unwrap action.

Unwrapping a bundle extracts the chart, optionally checks the Images.lock
against the original registries, and pushes the bundled images to a registry.
"""

import logging
from argparse import (
    ArgumentParser,
    BooleanOptionalAction,
    _SubParsersAction as SubParsersAction,
)
import pathlib
import tempfile
from typing import cast

from helm_wrap import bundle, transfer, verifier
from helm_wrap.chart import load_chart
from helm_wrap.imagelock import read_lock, relocate_lock

from . import common

_LOGGER = logging.getLogger(__name__)


class UnwrapAction:
    """Helm-wrap unwrap action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "unwrap",
                help="Unwrap a bundle and push its images",
                description=(
                    "Extract a wrapped chart and push the bundled images, "
                    "optionally relocated under another registry"
                ),
            ),
        )
        args.add_argument(
            "bundle_file",
            metavar="BUNDLE",
            help="Path to a bundle created by the wrap command",
            type=pathlib.Path,
        )
        args.add_argument(
            "--registry",
            dest="registry_prefix",
            help="Registry prefix to push the images to, e.g. registry.local/mirror",
            default=None,
        )
        args.add_argument(
            "--output-dir",
            help="Directory to extract the chart into, kept after unwrapping",
            type=pathlib.Path,
            default=None,
        )
        args.add_argument(
            "--verify",
            action=BooleanOptionalAction,
            default=False,
            help="Verify the Images.lock against the original registries first",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        bundle_file: pathlib.Path,
        registry_prefix: str | None,
        output_dir: pathlib.Path | None,
        verify: bool,
        insecure: bool = False,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        registry = common.make_registry(insecure)
        config = common.build_config(**kwargs)
        with tempfile.TemporaryDirectory() as tmp_dir:
            chart_root = bundle.unpack(bundle_file, output_dir or pathlib.Path(tmp_dir))
            chart = load_chart(chart_root)
            if verify:
                await verifier.verify_lock(
                    chart.root, chart.lock_file, registry, config
                )
            lock = await read_lock(chart.lock_file)
            if registry_prefix:
                lock = relocate_lock(lock, registry_prefix)
            await transfer.push_images(lock, chart.images_dir, registry, config)
        print(f"Unwrapped {chart} and pushed {len(lock.images)} images")
        if output_dir:
            print(f"Chart extracted to {chart.root}")
