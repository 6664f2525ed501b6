"""Catalog sync: harvest the remote library into the local store."""

from modelpull.catalog.scrape import ListingItem, parse_detail, parse_listing, parse_variants
from modelpull.catalog.sync import CatalogSync, HarvestedEntry, SyncReport

__all__ = [
    "CatalogSync",
    "HarvestedEntry",
    "ListingItem",
    "SyncReport",
    "parse_detail",
    "parse_listing",
    "parse_variants",
]
