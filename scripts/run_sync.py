#!/usr/bin/env python3
"""
Synchronize the local catalog with the remote model library.

Entries whose listing fragment is unchanged since the last completed sync
are skipped; after a failed sync every entry is fetched again.

Usage:
    python -m scripts.run_sync
    python -m scripts.run_sync --library-url https://ollama.com/ --retry 5 -v

Exit codes: 0 all entries stored, 1 sync failed, 130 interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace

from modelpull.catalog.sync import CatalogSync, SyncReport
from modelpull.config import AppConfig
from modelpull.errors import ModelPullError
from modelpull.logging_config import setup_logging
from modelpull.registry.client import RegistryClient
from modelpull.store.db import MetadataStore
from modelpull.store.models import CompletionStatus
from scripts.client_args import add_client_arguments, client_overrides

logger = logging.getLogger(__name__)


async def run_sync(config: AppConfig) -> SyncReport:
    """Open the store and client, sync, and release both."""
    store = MetadataStore(config.sqlite_path)
    client = RegistryClient(config.library_url, config.registry_client)
    try:
        return await CatalogSync(store, client).run()
    finally:
        await client.close()
        store.close()


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Synchronize the local model catalog.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--library-url",
        type=str,
        default=None,
        help="Library site root (default: MODELPULL_LIBRARY_URL or https://ollama.com/)",
    )
    add_client_arguments(parser)
    args = parser.parse_args(argv)

    setup_logging(level=logging.DEBUG if args.verbose else logging.INFO, json_format=args.json_logs)

    try:
        config = AppConfig.from_env()
        if args.library_url:
            config = replace(config, library_url=args.library_url)
        config.registry_client = config.registry_client.merge(client_overrides(args))
        report = asyncio.run(run_sync(config))
    except KeyboardInterrupt:
        logger.warning("Interrupted, the next sync will refetch every entry")
        return 130
    except ModelPullError as e:
        logger.error("Sync failed: %s", e)
        return 1

    if report.status != CompletionStatus.COMPLETED:
        logger.error("Sync finished with failed entries", extra={"failed_entries": report.failed})
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
