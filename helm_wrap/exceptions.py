"""Exceptions related to helm-wrap."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .imagelock import LockChange, LockEntry

__all__ = [
    "WrapException",
    "InputException",
    "ParseError",
    "NoPlatformsResolved",
    "DriftError",
    "RegistryException",
    "ArchiveException",
    "TransferFailed",
    "Cancelled",
    "PackageFormatError",
]


class WrapException(Exception):
    """Generic base exception used for this library."""


class InputException(WrapException):
    """Raised when the input files or values are not formatted as expected."""


class ParseError(InputException):
    """Raised when an Images.lock document is malformed."""


class NoPlatformsResolved(WrapException):
    """Raised when an image has no usable platforms after filtering."""

    def __init__(self, name: str, image: str, platforms: list[str]) -> None:
        filters = ", ".join(platforms) if platforms else "any"
        super().__init__(
            f"Image {name} ({image}) did not resolve to any platform "
            f"(requested platforms: {filters})"
        )
        self.name = name
        self.image = image
        self.platforms = platforms


class DriftError(WrapException):
    """Raised when the Images.lock does not match the chart declarations.

    Every discrepancy is reported so a caller can present a complete list of
    what needs to be fixed.
    """

    def __init__(
        self,
        added: list["LockEntry"],
        removed: list["LockEntry"],
        changed: list["LockChange"],
    ) -> None:
        self.added = added
        self.removed = removed
        self.changed = changed
        lines = ["Images.lock does not match the chart:"]
        lines.extend(f"  + {entry}" for entry in added)
        lines.extend(f"  - {entry}" for entry in removed)
        lines.extend(f"  ~ {change}" for change in changed)
        super().__init__("\n".join(lines))


class RegistryException(WrapException):
    """Raised when there is a failure talking to a container registry."""


class ArchiveException(WrapException):
    """Raised when a local image archive is missing or unreadable."""


class TransferFailed(WrapException):
    """Raised when an image could not be transferred to or from a registry."""

    def __init__(
        self,
        name: str,
        image: str,
        cause: BaseException,
        digest: str | None = None,
        platform: str | None = None,
        attempts: int = 0,
        cancelled: bool = False,
    ) -> None:
        target = f"{image}@{digest}" if digest else image
        if platform:
            target = f"{target} ({platform})"
        reason = "cancelled" if cancelled else f"failed after {attempts} attempt(s)"
        super().__init__(f"Transfer of image {name} {target} {reason}: {cause}")
        self.name = name
        self.image = image
        self.digest = digest
        self.platform = platform
        self.attempts = attempts
        self.cancelled = cancelled
        self.cause = cause


class Cancelled(WrapException):
    """Raised when an operation was aborted through the cancellation signal."""


class PackageFormatError(InputException):
    """Raised when an input is not a recognized bundle archive."""
