"""
Manifest pull pipeline.

pull(name, category):
1. Resolve the variant against the local catalog.
2. Mark ``pull_status:<variant>`` In Progress.
3. Fetch + parse the manifest, check its dialect against the store.
4. Per blob (config first, then layers): skip if the local file already
   verifies, otherwise download under the retry schedule and verify.
   Register each blob against the variant.
5. Mark Completed; any failure marks Failed and propagates.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from modelpull.config import AppConfig
from modelpull.errors import (
    IntegrityError,
    LocalIOError,
    TransferFailedError,
    VariantNotFoundError,
    is_retryable,
)
from modelpull.registry.manifest import (
    BlobRef,
    Manifest,
    blob_file_name,
    blob_path,
    manifest_path,
)
from modelpull.store.db import INIT_STATUS, pull_status_flag
from modelpull.store.models import CompletionStatus
from modelpull.transfer.backoff import sleep_ms, with_retry_if
from modelpull.transfer.checksum import checksum
from modelpull.transfer.download import Downloader
from modelpull.transfer.types import STAGING_SUFFIX, DownloadOutcome, DownloadStatus, DownloadTask

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from pathlib import Path

    from modelpull.registry.client import RegistryClient
    from modelpull.store.db import MetadataStore

logger = logging.getLogger(__name__)

MANIFEST_ACCEPT = "application/vnd.docker.distribution.manifest.v2+json"


@dataclass
class PullReport:
    """Summary of one pull.

    Attributes:
        variant: ``<name>:<category>`` that was pulled.
        directory: Local blob directory.
        outcomes: One outcome per blob, in manifest order.
    """

    variant: str
    directory: Path
    outcomes: list[DownloadOutcome] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.status == DownloadStatus.SKIPPED)

    @property
    def downloaded(self) -> int:
        return sum(1 for o in self.outcomes if o.status == DownloadStatus.SUCCESS)


def resolve_variant(
    store: MetadataStore,
    name: str,
    category: str | None = None,
    default_category: str | None = None,
) -> str:
    """
    Map a user request to a catalogued ``<name>:<category>``.

    Args:
        store: Metadata store holding the catalog.
        name: Model name, optionally already ``name:category``.
        category: Explicit category.
        default_category: Category tried when none is given; if it is not
            catalogued either, the first recorded variant is used.

    Raises:
        VariantNotFoundError: Nothing matching is catalogued.
    """
    if category is None and ":" in name:
        name, _, category = name.partition(":")
    if category is not None:
        variant = f"{name}:{category}"
        if not store.variant_exists(variant):
            raise _not_found(store, f"{variant} is not in the local catalog")
        return variant
    if default_category is not None and store.variant_exists(f"{name}:{default_category}"):
        return f"{name}:{default_category}"
    first = store.first_variant_name(name)
    if first is None:
        raise _not_found(store, f"No variant of {name} in the local catalog")
    return first


def _not_found(store: MetadataStore, what: str) -> VariantNotFoundError:
    if store.get_status(INIT_STATUS) != CompletionStatus.COMPLETED:
        return VariantNotFoundError(f"{what}; the catalog has never been synced, run a catalog sync first")
    return VariantNotFoundError(f"{what}; check the name or run a catalog sync to refresh it")


class ManifestPuller:
    """Pulls every blob of one variant into the local model directory."""

    def __init__(
        self,
        store: MetadataStore,
        client: RegistryClient,
        config: AppConfig | None = None,
        *,
        sleep: Callable[[int], Awaitable[None]] = sleep_ms,
    ) -> None:
        """
        Initialize the puller.

        Args:
            store: Metadata store (catalog, dialect, media types, pull status).
            client: Registry client; its session is reused for blob transfers.
            config: App config (namespace, model dir, model client settings).
            sleep: Millisecond sleep used between transfer retries.
        """
        self._store = store
        self._client = client
        self._config = config or AppConfig()
        self._sleep = sleep

    async def pull(self, name: str, category: str | None = None) -> PullReport:
        """
        Pull a variant.

        Raises:
            VariantNotFoundError: Variant not catalogued.
            SchemaMismatchError: Manifest dialect changed.
            IntegrityError: A downloaded blob failed verification.
            NetworkError, TransferTimeoutError: Retries exhausted.
            LocalIOError, StoreError: Local failures.
        """
        variant = resolve_variant(self._store, name, category, self._config.default_category)
        flag = pull_status_flag(variant)
        self._store.set_status(flag, CompletionStatus.IN_PROGRESS)
        try:
            report = await self._pull_variant(variant)
        except Exception:
            logger.error("Pull failed", extra={"variant": variant}, exc_info=True)
            self._store.set_status(flag, CompletionStatus.FAILED)
            raise
        self._store.set_status(flag, CompletionStatus.COMPLETED)
        logger.info(
            "Pull completed",
            extra={
                "variant": variant,
                "blobs": len(report.outcomes),
                "downloaded": report.downloaded,
                "skipped": report.skipped,
            },
        )
        return report

    async def fetch_manifest(self, model: str, category: str) -> Manifest:
        """Fetch, parse and dialect-check a manifest."""
        path = manifest_path(self._config.namespace, model, category)
        body = await self._client.fetch_bytes(path, {"Accept": MANIFEST_ACCEPT})
        manifest = Manifest.from_json(body)
        self._store.check_manifest_dialect(manifest.schema_version, manifest.media_type)
        return manifest

    async def _pull_variant(self, variant: str) -> PullReport:
        model, _, category = variant.rpartition(":")
        manifest = await self.fetch_manifest(model, category)
        directory = self._config.model_dir(variant)
        report = PullReport(variant=variant, directory=directory)
        downloader = Downloader(
            await self._client.get_session(),
            proxy=self._config.model_client.proxy,
        )
        for blob in manifest.blobs():
            outcome = await self._pull_blob(downloader, model, variant, blob, directory)
            report.outcomes.append(outcome)
        return report

    async def _pull_blob(
        self,
        downloader: Downloader,
        model: str,
        variant: str,
        blob: BlobRef,
        directory: Path,
    ) -> DownloadOutcome:
        file_name, category = blob_file_name(
            blob.media_type, blob.hex, self._store.media_category(blob.media_type)
        )
        model_client = self._config.model_client
        task = DownloadTask(
            source_url=self._client.url(blob_path(self._config.namespace, model, blob.digest)),
            destination_dir=directory,
            file_name=file_name,
            chunk_timeout_s=model_client.chunk_timeout_s,
            retry_budget=model_client.retry or 0,
        )

        outcome = self._check_existing(task, blob)
        if outcome is None:
            outcome = await with_retry_if(
                itertools.islice(model_client.build_backoff(), task.retry_budget),
                lambda: self._fetch(downloader, task),
                is_retryable,
                sleep=self._sleep,
            )
            final_path = outcome.final_path or task.final_path
            if not checksum(final_path, blob.hex):
                logger.error(
                    "Checksum mismatch",
                    extra={"digest": blob.digest, "file_name": final_path.name},
                )
                msg = f"{blob.digest}: checksum failed for {final_path}"
                raise IntegrityError(msg, digest=blob.digest, path=str(final_path))

        final_path = outcome.final_path or task.final_path
        async with self._store.lock:
            self._store.register_blob(variant, category, final_path, blob.size, blob.media_type)
        return outcome

    def _check_existing(self, task: DownloadTask, blob: BlobRef) -> DownloadOutcome | None:
        """Skipped outcome if the blob is already on disk and verifies."""
        path = task.final_path
        if not path.is_file():
            return None
        if checksum(path, blob.hex):
            logger.info(
                "Blob already present, skipping",
                extra={"digest": blob.digest, "file_name": path.name},
            )
            return DownloadOutcome.skipped(task, "checksum matches")
        if path.stat().st_size > 0:
            # Completed but corrupt: a zero-length file is an interrupted transfer instead.
            logger.warning(
                "Discarding blob that fails verification",
                extra={"digest": blob.digest, "file_name": path.name},
            )
            try:
                path.unlink()
                path.with_name(path.name + STAGING_SUFFIX).unlink(missing_ok=True)
            except OSError as e:
                msg = f"Failed to remove stale blob {path}: {e}"
                raise LocalIOError(msg, path=str(path)) from e
        return None

    async def _fetch(self, downloader: Downloader, task: DownloadTask) -> DownloadOutcome:
        outcome = await downloader.fetch(task)
        if outcome.status == DownloadStatus.FAILED:
            msg = f"Download of {task.file_name} failed: {outcome.reason}"
            raise TransferFailedError(msg, url=task.source_url)
        return outcome
