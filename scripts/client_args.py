"""Command-line flags shared by the modelpull scripts."""

from __future__ import annotations

import argparse

from modelpull.config import BackoffStrategyName, ClientConfig
from modelpull.errors import ConfigError


def _strategy(value: str) -> BackoffStrategyName:
    try:
        return BackoffStrategyName.parse(value)
    except ConfigError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def add_client_arguments(parser: argparse.ArgumentParser) -> None:
    """HTTP client overrides plus logging flags."""
    parser.add_argument(
        "--proxy",
        type=str,
        default=None,
        help="Proxy URL for every request",
    )
    parser.add_argument(
        "--retry",
        type=int,
        default=None,
        help="Retries after the first attempt",
    )
    parser.add_argument(
        "--backoff-strategy",
        type=_strategy,
        default=None,
        help="Delay schedule between retries: Fibonacci, Exponential or Fixed",
    )
    parser.add_argument(
        "--backoff-time-ms",
        type=int,
        default=None,
        help="Base delay of the backoff schedule in ms (default: 10000)",
    )
    parser.add_argument(
        "--chunk-timeout-s",
        type=float,
        default=None,
        help="Abort a transfer attempt if one chunk takes longer than this",
    )
    parser.add_argument(
        "--timeout-s",
        type=float,
        default=None,
        help="Total timeout per request",
    )
    parser.add_argument(
        "--jitter",
        action="store_true",
        default=None,
        help="Randomize backoff delays",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit JSON log lines",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )


def client_overrides(args: argparse.Namespace) -> ClientConfig:
    """ClientConfig holding only the flags given on the command line."""
    return ClientConfig(
        proxy=args.proxy,
        timeout_s=args.timeout_s,
        chunk_timeout_s=args.chunk_timeout_s,
        retry=args.retry,
        backoff_strategy=args.backoff_strategy,
        backoff_time_ms=args.backoff_time_ms,
        jitter=args.jitter,
    )
