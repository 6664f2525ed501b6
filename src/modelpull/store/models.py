"""Record types persisted by the metadata store."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class CompletionStatus(str, Enum):
    """Progress flag for long-running operations (sync, pull, init).

    Stored as UTF-8 bytes of the value.
    """

    NOT_STARTED = "Not Started"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    FAILED = "Failed"

    def to_bytes(self) -> bytes:
        return self.value.encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes | None) -> CompletionStatus:
        """Decode a stored flag; absent flags read as NOT_STARTED."""
        if raw is None:
            return cls.NOT_STARTED
        return cls(raw.decode("utf-8"))


@dataclass
class VariantRecord:
    """One tagged variant of a catalog entry (e.g. ``qwen2:7b``).

    Attributes:
        name: ``<model>:<category>`` natural key.
        href: Relative path of the variant page.
        size: Human-readable download size as listed.
        context: Context window as listed.
        input: Input modality as listed.
        hash: Short content hash as listed.
        catalog_entry_id: Owning catalog entry (set by the store).
        path: Local path of the model weights once pulled.
        template_path: Local path of the prompt template once pulled.
        blobs: Pulled blobs keyed by media category.
    """

    name: str
    href: str = ""
    size: str = ""
    context: str = ""
    input: str = ""
    hash: str = ""
    catalog_entry_id: str | None = None
    path: str | None = None
    template_path: str | None = None
    blobs: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def category(self) -> str:
        """Tag part of the name (``7b`` for ``qwen2:7b``)."""
        return self.name.rpartition(":")[2]


@dataclass
class CatalogEntry:
    """A model family as listed on the library page.

    Attributes:
        title: Model name (``qwen2``).
        href: Relative detail page path (``/library/qwen2``).
        raw_digest: Base64 SHA-256 of the listing fragment the entry came from.
        introduction: Short description from the listing.
        pull_count: Pull counter as displayed.
        tag_count: Number of tags as displayed.
        summary: Summary from the detail page.
        readme: Readme HTML from the detail page.
        updated_time: Relative update time as displayed.
    """

    title: str
    href: str
    raw_digest: str = ""
    introduction: str = ""
    pull_count: str = ""
    tag_count: str = ""
    summary: str = ""
    readme: str = ""
    updated_time: str = ""
