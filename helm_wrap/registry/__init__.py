"""Access to container registries and local image archives."""

from .archive import (
    ImageIndex,
    IndexEntry,
    LocalImage,
    load_image_archive,
    write_image_archive,
)
from .base import (
    ManifestDescriptor,
    Platform,
    Reference,
    Registry,
    compute_digest,
    digest_hex,
    normalize_platform,
)
from .oras import OrasRegistry

__all__ = [
    "ImageIndex",
    "IndexEntry",
    "LocalImage",
    "ManifestDescriptor",
    "OrasRegistry",
    "Platform",
    "Reference",
    "Registry",
    "compute_digest",
    "digest_hex",
    "load_image_archive",
    "normalize_platform",
    "write_image_archive",
]
