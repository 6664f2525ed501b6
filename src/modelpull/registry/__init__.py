"""Model registry access: manifests, blob naming and the pull pipeline."""

from modelpull.registry.client import RegistryClient
from modelpull.registry.manifest import (
    BlobRef,
    Manifest,
    ManifestDecodeError,
    blob_file_name,
    blob_path,
    manifest_path,
)
from modelpull.registry.pull import ManifestPuller, PullReport, resolve_variant

__all__ = [
    "BlobRef",
    "Manifest",
    "ManifestDecodeError",
    "ManifestPuller",
    "PullReport",
    "RegistryClient",
    "blob_file_name",
    "blob_path",
    "manifest_path",
    "resolve_variant",
]
