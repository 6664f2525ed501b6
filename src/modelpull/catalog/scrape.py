"""
Harvest rules for the model library pages.

Three page kinds:
- listing (``/library?sort=newest``): one ``<a>`` per model family
- detail (``<href>``): summary + readme
- tags (``<href>/tags``): one row per variant

Each listing item carries the digest of its own HTML fragment so unchanged
entries can be skipped on the next sync.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from bs4 import BeautifulSoup, Tag

from modelpull.store.models import CatalogEntry, VariantRecord
from modelpull.transfer.checksum import digest

logger = logging.getLogger(__name__)

PARSER = "html.parser"

LISTING_ITEM = "div#repo > ul li a"
LISTING_TITLE = "[x-test-model-title]"
LISTING_PULL_COUNT = "[x-test-pull-count]"
LISTING_TAG_COUNT = "[x-test-tag-count]"
LISTING_UPDATED = "[x-test-updated]"
DETAIL_SUMMARY = "#summary-content"
DETAIL_README = "#readme #display"
TAG_ROW = "body section > div > div > div"
TAG_LINK = "span > a"
TAG_INPUT = "div.col-span-2"
TAG_HASH = "span.font-mono"


@dataclass(frozen=True)
class ListingItem:
    """One model family from the listing page."""

    entry: CatalogEntry
    fragment: str

    @property
    def title(self) -> str:
        return self.entry.title


def _text(scope: Tag, selector: str) -> str | None:
    el = scope.select_one(selector)
    return None if el is None else el.get_text(strip=True)


def parse_listing(html: str) -> list[ListingItem]:
    """
    Extract catalog entries from the listing page.

    Items missing a title, introduction or any counter are skipped.
    """
    soup = BeautifulSoup(html, PARSER)
    items: list[ListingItem] = []
    for anchor in soup.select(LISTING_ITEM):
        title_el = anchor.select_one(LISTING_TITLE)
        title = title_el.get("title") if title_el is not None else None
        if not isinstance(title, str) or not title:
            continue
        introduction = _text(title_el, "p")
        pull_count = _text(anchor, LISTING_PULL_COUNT)
        tag_count = _text(anchor, LISTING_TAG_COUNT)
        updated_time = _text(anchor, LISTING_UPDATED)
        if introduction is None or pull_count is None or tag_count is None or updated_time is None:
            logger.debug("Skipping incomplete listing item", extra={"title": title})
            continue
        fragment = str(anchor)
        href = anchor.get("href")
        entry = CatalogEntry(
            title=title,
            href=href if isinstance(href, str) else "",
            raw_digest=digest(fragment.encode("utf-8")),
            introduction=introduction,
            pull_count=pull_count,
            tag_count=tag_count,
            updated_time=updated_time,
        )
        items.append(ListingItem(entry=entry, fragment=fragment))
    return items


def parse_detail(html: str) -> tuple[str, str]:
    """(summary, readme) text of a detail page; missing sections are empty."""
    soup = BeautifulSoup(html, PARSER)
    return _text(soup, DETAIL_SUMMARY) or "", _text(soup, DETAIL_README) or ""


def parse_variants(html: str) -> list[VariantRecord]:
    """Variants listed on a tags page. Rows missing any column are skipped."""
    soup = BeautifulSoup(html, PARSER)
    variants: list[VariantRecord] = []
    for row in soup.select(TAG_ROW):
        link = row.select_one(TAG_LINK)
        input_el = row.select_one(TAG_INPUT)
        hash_el = row.select_one(TAG_HASH)
        paragraphs = row.select("p")
        if link is None or input_el is None or hash_el is None or len(paragraphs) < 2:
            continue
        href = link.get("href")
        variants.append(
            VariantRecord(
                name=link.get_text(strip=True),
                href=href if isinstance(href, str) else "",
                size=paragraphs[0].get_text(strip=True),
                context=paragraphs[1].get_text(strip=True),
                input=input_el.get_text(strip=True),
                hash=hash_el.get_text(strip=True),
            )
        )
    return variants
