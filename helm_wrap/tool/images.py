"""Helm-wrap images action for managing an Images.lock and its image cache."""

import logging
from argparse import (
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
)
import pathlib
from typing import cast

from helm_wrap import bundle, generator, verifier, transfer
from helm_wrap.chart import load_chart
from helm_wrap.imagelock import read_lock, relocate_lock

from . import common

_LOGGER = logging.getLogger(__name__)


def _add_chart_args(args: ArgumentParser) -> None:
    args.add_argument(
        "chart",
        help="Path to the chart directory",
        type=pathlib.Path,
    )


def _add_lock_file_flag(args: ArgumentParser) -> None:
    args.add_argument(
        "--lock-file",
        help="Path to the Images.lock file, defaults to the one in the chart",
        type=pathlib.Path,
        default=None,
    )


class ImagesLockAction:
    """Generate an Images.lock for a chart."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "lock",
                help="Generate an Images.lock for a chart",
                description="Resolve the images declared by a chart to digests",
            ),
        )
        _add_chart_args(args)
        common.add_platforms_flag(args)
        args.add_argument(
            "--output-file",
            help="Where to write the Images.lock, defaults to the chart directory",
            type=pathlib.Path,
            default=None,
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        chart: pathlib.Path,
        output_file: pathlib.Path | None,
        insecure: bool = False,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        loaded = load_chart(chart)
        lock_file = output_file or loaded.lock_file
        lock = await generator.create_lock_file(
            loaded.root,
            lock_file,
            common.make_registry(insecure),
            common.build_config(**kwargs),
        )
        print(f"Wrote {lock_file} with {lock.num_artifacts()} image digests")


class ImagesVerifyAction:
    """Verify the Images.lock of a chart."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "verify",
                help="Verify the Images.lock matches the chart",
                description=(
                    "Regenerate the Images.lock and report any image digest "
                    "that differs from the one on disk"
                ),
            ),
        )
        _add_chart_args(args)
        _add_lock_file_flag(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        chart: pathlib.Path,
        lock_file: pathlib.Path | None,
        insecure: bool = False,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        loaded = load_chart(chart)
        lock_file = lock_file or loaded.lock_file
        await verifier.verify_lock(
            loaded.root,
            lock_file,
            common.make_registry(insecure),
            common.build_config(**kwargs),
        )
        print(f"{lock_file} is up to date")


class ImagesPullAction:
    """Pull the images in an Images.lock into the chart image cache."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "pull",
                help="Pull locked images into the chart",
                description="Save every image digest in the Images.lock to disk",
            ),
        )
        _add_chart_args(args)
        _add_lock_file_flag(args)
        args.add_argument(
            "--output-file",
            help="Pack the chart with its pulled images into this bundle file",
            type=pathlib.Path,
            default=None,
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        chart: pathlib.Path,
        lock_file: pathlib.Path | None,
        output_file: pathlib.Path | None,
        insecure: bool = False,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        loaded = load_chart(chart)
        lock = await read_lock(lock_file or loaded.lock_file)
        await transfer.pull_images(
            lock,
            loaded.images_dir,
            common.make_registry(insecure),
            common.build_config(**kwargs),
        )
        print(f"Pulled {lock.num_artifacts()} images into {loaded.images_dir}")
        if output_file:
            bundle.pack(loaded.root, output_file)
            print(f"Packed {loaded} into {output_file}")


class ImagesPushAction:
    """Push the cached images of a chart to a registry."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "push",
                help="Push cached chart images to a registry",
                description=(
                    "Push the images cached in the chart as multi-platform "
                    "manifest lists"
                ),
            ),
        )
        _add_chart_args(args)
        _add_lock_file_flag(args)
        args.add_argument(
            "--registry",
            dest="registry_prefix",
            help="Registry prefix to push to instead of the locked references",
            default=None,
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        chart: pathlib.Path,
        lock_file: pathlib.Path | None,
        registry_prefix: str | None,
        insecure: bool = False,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        loaded = load_chart(chart)
        lock = await read_lock(lock_file or loaded.lock_file)
        if registry_prefix:
            lock = relocate_lock(lock, registry_prefix)
        await transfer.push_images(
            lock,
            loaded.images_dir,
            common.make_registry(insecure),
            common.build_config(**kwargs),
        )
        print(f"Pushed {len(lock.images)} images")


class ImagesAction:
    """Helm-wrap images action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "images",
                help="Manage the Images.lock and image cache of a chart",
                description="Generate, verify, pull or push the images of a chart",
            ),
        )
        subcmds = args.add_subparsers(
            title="Available commands",
            required=True,
        )
        ImagesLockAction.register(subcmds)
        ImagesVerifyAction.register(subcmds)
        ImagesPullAction.register(subcmds)
        ImagesPushAction.register(subcmds)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        # No-op given subcommands are always the dispatch target
