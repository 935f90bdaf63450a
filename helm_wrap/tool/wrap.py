"""Helm-wrap wrap action.

Wrapping a chart, local or fetched from an OCI registry, makes sure its
Images.lock is present and current, pulls every locked image into the chart and
packs the result into a single bundle.
"""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import pathlib
import tempfile
from typing import cast

from helm_wrap import bundle, fetch, generator, transfer, verifier
from helm_wrap.chart import load_chart
from helm_wrap.imagelock import read_lock

from . import common

_LOGGER = logging.getLogger(__name__)


class WrapAction:
    """Helm-wrap wrap action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "wrap",
                help="Wrap a chart and its images into a single bundle",
                description=(
                    "Lock the images of a chart, pull them and pack everything "
                    "into a bundle that can be moved to another environment"
                ),
            ),
        )
        args.add_argument(
            "chart",
            help="Chart directory, packaged chart or oci:// chart reference",
        )
        args.add_argument(
            "--version",
            help="Version of the chart to fetch when wrapping an oci:// reference",
            default=None,
        )
        args.add_argument(
            "--output-file",
            help="Bundle file to write, defaults to <name>-<version>.wrap.tgz",
            type=pathlib.Path,
            default=None,
        )
        common.add_platforms_flag(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        chart: str,
        version: str | None,
        output_file: pathlib.Path | None,
        insecure: bool = False,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        registry = common.make_registry(insecure)
        config = common.build_config(**kwargs)
        with tempfile.TemporaryDirectory() as tmp_dir:
            chart_root = await fetch.resolve_chart(
                chart, version, registry, pathlib.Path(tmp_dir)
            )
            loaded = load_chart(chart_root)

            if loaded.lock_file.exists():
                _LOGGER.info("Verifying existing %s", loaded.lock_file)
                await verifier.verify_lock(
                    loaded.root, loaded.lock_file, registry, config
                )
                lock = await read_lock(loaded.lock_file)
            else:
                lock = await generator.create_lock_file(
                    loaded.root, loaded.lock_file, registry, config
                )

            await transfer.pull_images(lock, loaded.images_dir, registry, config)

            out_file = output_file or pathlib.Path(bundle.bundle_file_name(loaded))
            bundle.pack(loaded.root, out_file)
        print(f"Wrapped {loaded} into {out_file}")
