"""Local metadata store: completion flags, catalog and pulled blobs."""

from modelpull.store.db import (
    CATALOG_SYNC_STATUS,
    INIT_STATUS,
    MetadataStore,
    detail_page_flag,
    pull_status_flag,
)
from modelpull.store.models import CatalogEntry, CompletionStatus, VariantRecord

__all__ = [
    "CATALOG_SYNC_STATUS",
    "INIT_STATUS",
    "CatalogEntry",
    "CompletionStatus",
    "MetadataStore",
    "VariantRecord",
    "detail_page_flag",
    "pull_status_flag",
]
