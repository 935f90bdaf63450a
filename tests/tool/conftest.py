"""Fixtures for the helm-wrap command line tests."""

from collections.abc import Awaitable, Callable
from pathlib import Path

import pytest

from helm_wrap.tool import common
from helm_wrap.tool.helm_wrap import _make_parser

from ..conftest import FakeRegistry

CommandRunner = Callable[..., Awaitable[None]]


@pytest.fixture(autouse=True)
def fake_registry(
    monkeypatch: pytest.MonkeyPatch, registry: FakeRegistry
) -> FakeRegistry:
    """Make every command talk to the fake registry."""
    monkeypatch.setattr(common, "make_registry", lambda insecure=False: registry)
    return registry


@pytest.fixture
def run_command() -> CommandRunner:
    """Fixture that parses command line arguments and runs the action."""

    async def run(*argv: str | Path) -> None:
        args = _make_parser().parse_args([str(arg) for arg in argv])
        await args.cls().run(**vars(args))

    return run
