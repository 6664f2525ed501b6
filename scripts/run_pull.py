#!/usr/bin/env python3
"""
Pull one model variant from the registry.

The variant must already be in the local catalog (run_sync.py). Blobs that
are already on disk and verify are skipped; interrupted transfers resume.

Usage:
    python -m scripts.run_pull --name qwen2 --category 7b
    python -m scripts.run_pull --name qwen2  # first catalogued variant
    python -m scripts.run_pull --name qwen2:7b --retry 10 --chunk-timeout-s 30

Exit codes: 0 success, 1 pull failed, 130 interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from modelpull.config import AppConfig
from modelpull.errors import ModelPullError
from modelpull.logging_config import setup_logging
from modelpull.registry.client import RegistryClient
from modelpull.registry.pull import ManifestPuller, PullReport
from modelpull.store.db import MetadataStore
from scripts.client_args import add_client_arguments, client_overrides

logger = logging.getLogger(__name__)


async def run_pull(config: AppConfig, name: str, category: str | None) -> PullReport:
    """Open the store and client, pull, and release both.

    Manifest and blobs share one client built from the model client config.
    """
    store = MetadataStore(config.sqlite_path)
    client = RegistryClient(config.remote, config.model_client)
    try:
        puller = ManifestPuller(store, client, config)
        return await puller.pull(name, category)
    finally:
        await client.close()
        store.close()


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Pull a model variant into the local data directory.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--name",
        "-n",
        required=True,
        help="Model name, optionally with category (qwen2 or qwen2:7b)",
    )
    parser.add_argument(
        "--category",
        "-c",
        default=None,
        help="Variant category (default: first variant in the local catalog)",
    )
    add_client_arguments(parser)
    args = parser.parse_args(argv)

    setup_logging(level=logging.DEBUG if args.verbose else logging.INFO, json_format=args.json_logs)

    try:
        config = AppConfig.from_env()
        config.model_client = config.model_client.merge(client_overrides(args))
        report = asyncio.run(run_pull(config, args.name, args.category))
    except KeyboardInterrupt:
        logger.warning("Interrupted, partial transfers are kept for resume")
        return 130
    except ModelPullError as e:
        logger.error("Pull failed: %s", e)
        return 1

    logger.info(
        "Pull finished",
        extra={
            "variant": report.variant,
            "directory": str(report.directory),
            "downloaded": report.downloaded,
            "skipped": report.skipped,
        },
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
