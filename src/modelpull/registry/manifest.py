"""
Registry manifest models and naming rules.

Manifest wire format (docker distribution v2):
    {
        "schemaVersion": 2,
        "mediaType": "application/vnd.docker.distribution.manifest.v2+json",
        "config": {"mediaType": "...", "digest": "sha256:<hex>", "size": 485},
        "layers": [
            {"mediaType": "application/vnd.ollama.image.model", "digest": "sha256:<hex>", "size": 4661211424},
            ...
        ]
    }

Local blob naming: ``<category>-<hex>.<ext>`` with (category, ext) from the
store's media type table.
"""

from __future__ import annotations

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from modelpull.errors import DigestDecodeError, ModelPullError
from modelpull.transfer.checksum import decode_hex_digest, strip_algorithm


class ManifestDecodeError(ModelPullError, ValueError):
    """Manifest body is not valid JSON or misses required fields."""


class BlobRef(BaseModel):
    """
    Reference to one content-addressed blob.

    Attributes:
        media_type: Layer media type (``application/vnd.ollama.image.model``...).
        digest: ``sha256:<hex>`` content digest.
        size: Blob size in bytes.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    media_type: str = Field(..., alias="mediaType", min_length=1)
    digest: str = Field(..., min_length=1)
    size: int = Field(..., ge=0)

    @field_validator("digest")
    @classmethod
    def validate_digest(cls, v: str) -> str:
        """Reject non-sha256 or malformed digests up front."""
        try:
            decode_hex_digest(strip_algorithm(v))
        except DigestDecodeError as e:
            raise ValueError(str(e)) from e
        return v

    @property
    def hex(self) -> str:
        """Digest without the algorithm prefix."""
        return strip_algorithm(self.digest)


class Manifest(BaseModel):
    """Registry manifest for one variant."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    schema_version: int = Field(..., alias="schemaVersion")
    media_type: str = Field(..., alias="mediaType")
    config: BlobRef
    layers: tuple[BlobRef, ...] = ()

    @classmethod
    def from_json(cls, data: bytes | str) -> Manifest:
        """
        Parse a manifest body.

        Raises:
            ManifestDecodeError: On invalid JSON or schema violations.
        """
        if isinstance(data, str):
            data = data.encode()
        try:
            return cls.model_validate(orjson.loads(data))
        except (orjson.JSONDecodeError, ValidationError) as e:
            msg = f"Invalid manifest: {e}"
            raise ManifestDecodeError(msg) from e

    def blobs(self) -> list[BlobRef]:
        """Config blob first, then layers in manifest order."""
        return [self.config, *self.layers]


def manifest_path(namespace: str, name: str, category: str) -> str:
    return f"/v2/{namespace}/{name}/manifests/{category}"


def blob_path(namespace: str, name: str, digest: str) -> str:
    """Blob URL path; the digest's ``:`` becomes ``-`` (``sha256-<hex>``)."""
    return f"/v2/{namespace}/{name}/blobs/{digest.replace(':', '-')}"


def blob_file_name(media_type: str, hex_digest: str, known: tuple[str, str] | None) -> tuple[str, str]:
    """
    Local file name and category for a blob.

    Args:
        media_type: Layer media type.
        hex_digest: Digest hex (no algorithm prefix).
        known: (category, extension) from the media type table, if recorded.

    Returns:
        (file name, category). Unknown media types use their last dotted
        segment as category and ``txt`` as extension.
    """
    if known is not None:
        category, extension = known
    else:
        category, extension = media_type.rsplit(".", 1)[-1], "txt"
    return f"{category}-{hex_digest}.{extension}", category
