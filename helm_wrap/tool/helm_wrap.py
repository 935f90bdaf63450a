"""Command line tool for wrapping Helm charts together with their images."""

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
import traceback
from typing import Any

from helm_wrap.exceptions import WrapException
from . import common, images, unwrap, wrap

_LOGGER = logging.getLogger(__name__)


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Command line utility for wrapping Helm charts and their images.",
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )
    common.add_global_flags(parser)

    subparsers = parser.add_subparsers(dest="command", help="Command", required=True)

    wrap.WrapAction.register(subparsers)
    unwrap.UnwrapAction.register(subparsers)
    images.ImagesAction.register(subparsers)
    return parser


async def _run(action: Any, args: argparse.Namespace) -> None:
    """Run the action, requesting cancellation on SIGINT or SIGTERM."""
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not supported on all platforms
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, cancel.set)
    try:
        await action.run(cancel=cancel, **vars(args))
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(sig)


def main() -> None:
    """Helm-wrap command line tool main entry point."""
    parser = _make_parser()
    args = parser.parse_args()

    if args.log_level:
        logging.basicConfig(level=args.log_level)

    action = args.cls()
    try:
        asyncio.run(_run(action, args))
    except WrapException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("helm-wrap error: ", err, file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
