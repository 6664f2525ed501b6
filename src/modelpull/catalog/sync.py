"""
Catalog sync pipeline.

Three concurrent tasks:
- producer: fetch listing page, hand it to the listing future, harvest detail
  and tags pages for new or changed entries, push them on a bounded queue
- listing consumer: persist the raw listing page and its digest
- entry consumer: persist each harvested entry with its variants, one
  transaction per entry

Run status (``catalog_sync_status`` flag):
    In Progress -> Completed   every entry persisted
    In Progress -> Failed      any entry failed, or any task raised

Digests from the previous run are only trusted when that run Completed, so a
failed run never hides entries from the next one.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from modelpull.catalog.scrape import ListingItem, parse_detail, parse_listing, parse_variants
from modelpull.errors import ModelPullError, StoreError
from modelpull.store.db import CATALOG_SYNC_STATUS, INIT_STATUS
from modelpull.store.models import CatalogEntry, CompletionStatus, VariantRecord

if TYPE_CHECKING:
    from modelpull.registry.client import RegistryClient
    from modelpull.store.db import MetadataStore

logger = logging.getLogger(__name__)

LISTING_PATH = "/library?sort=newest"
QUEUE_SIZE = 256


@dataclass
class SyncReport:
    """Counters for one sync run."""

    listed: int = 0
    unchanged: int = 0
    persisted: int = 0
    failed: int = 0
    status: CompletionStatus = CompletionStatus.NOT_STARTED


@dataclass(frozen=True)
class HarvestedEntry:
    """Catalog entry with everything fetched for it."""

    entry: CatalogEntry
    variants: list[VariantRecord] = field(default_factory=list)
    detail_html: str | None = None


class _EndOfStream:
    pass


_END = _EndOfStream()


class CatalogSync:
    """Synchronizes the local catalog with the remote library pages."""

    def __init__(
        self,
        store: MetadataStore,
        client: RegistryClient,
        *,
        listing_path: str = LISTING_PATH,
        queue_size: int = QUEUE_SIZE,
    ) -> None:
        self._store = store
        self._client = client
        self._listing_path = listing_path
        self._queue_size = queue_size

    async def run(self) -> SyncReport:
        """
        Run one sync.

        Returns:
            SyncReport with the final status.

        Raises:
            ModelPullError: Listing fetch or listing persistence failed; the
                run is marked Failed before the error propagates.
        """
        previous = self._store.get_status(CATALOG_SYNC_STATUS)
        known = self._store.catalog_digests() if previous == CompletionStatus.COMPLETED else {}
        if previous != CompletionStatus.COMPLETED:
            logger.info("Previous sync incomplete, refetching every entry", extra={"previous": previous.value})
        self._store.set_status(CATALOG_SYNC_STATUS, CompletionStatus.IN_PROGRESS)

        report = SyncReport()
        page: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        queue: asyncio.Queue[HarvestedEntry | _EndOfStream] = asyncio.Queue(self._queue_size)
        tasks = [
            asyncio.create_task(self._produce(page, queue, known, report), name="catalog-producer"),
            asyncio.create_task(self._persist_listing(page), name="catalog-listing"),
            asyncio.create_task(self._persist_entries(queue, report), name="catalog-entries"),
        ]
        try:
            await _gather_or_cancel(tasks)
        except BaseException:
            report.status = CompletionStatus.FAILED
            self._store.set_status(CATALOG_SYNC_STATUS, CompletionStatus.FAILED)
            raise

        report.status = CompletionStatus.COMPLETED if report.failed == 0 else CompletionStatus.FAILED
        self._store.set_status(CATALOG_SYNC_STATUS, report.status)
        if report.status == CompletionStatus.COMPLETED:
            self._store.set_status(INIT_STATUS, CompletionStatus.COMPLETED)
        logger.info(
            "Catalog sync finished",
            extra={
                "status": report.status.value,
                "listed": report.listed,
                "unchanged": report.unchanged,
                "persisted": report.persisted,
                "failed": report.failed,
            },
        )
        return report

    async def _produce(
        self,
        page: asyncio.Future[str],
        queue: asyncio.Queue[HarvestedEntry | _EndOfStream],
        known: dict[str, str],
        report: SyncReport,
    ) -> None:
        try:
            html = await self._client.fetch_text(self._listing_path)
            page.set_result(html)
            items = parse_listing(html)
            report.listed = len(items)
            for item in items:
                if known.get(item.title) == item.entry.raw_digest:
                    report.unchanged += 1
                    continue
                try:
                    harvested = await self.harvest(item)
                except ModelPullError as e:
                    logger.error("Failed to harvest entry", extra={"title": item.title, "error": str(e)})
                    report.failed += 1
                    continue
                await queue.put(harvested)
        except BaseException:
            # Unblock both consumers; the error itself surfaces from this task.
            page.cancel()
            with contextlib.suppress(asyncio.QueueFull):
                queue.put_nowait(_END)
            raise
        await queue.put(_END)

    async def harvest(self, item: ListingItem) -> HarvestedEntry:
        """Fetch detail and tags pages for one listing item."""
        href = item.entry.href
        detail_html = await self._client.fetch_text(href)
        summary, readme = parse_detail(detail_html)
        tags_html = await self._client.fetch_text(f"{href.rstrip('/')}/tags")
        variants = parse_variants(tags_html)
        logger.debug("Harvested entry", extra={"title": item.title, "variants": len(variants)})
        return HarvestedEntry(
            entry=replace(item.entry, summary=summary, readme=readme),
            variants=variants,
            detail_html=detail_html,
        )

    async def _persist_listing(self, page: asyncio.Future[str]) -> None:
        html = await page
        async with self._store.lock:
            self._store.save_listing(html)

    async def _persist_entries(
        self,
        queue: asyncio.Queue[HarvestedEntry | _EndOfStream],
        report: SyncReport,
    ) -> None:
        while True:
            item = await queue.get()
            if isinstance(item, _EndOfStream):
                return
            async with self._store.lock:
                try:
                    self._store.upsert_catalog_entry(
                        item.entry, item.variants, detail_html=item.detail_html
                    )
                except StoreError as e:
                    logger.error(
                        "Failed to persist entry",
                        extra={"title": item.entry.title, "error": str(e)},
                    )
                    report.failed += 1
                    continue
            report.persisted += 1


async def _gather_or_cancel(tasks: list[asyncio.Task[None]]) -> None:
    """Wait for all tasks; on the first failure cancel the rest and re-raise it."""
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    errors = [
        task.exception()
        for task in tasks
        if task in done and not task.cancelled() and task.exception() is not None
    ]
    if errors:
        raise errors[0]  # type: ignore[misc]
