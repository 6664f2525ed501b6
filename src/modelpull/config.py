"""
Runtime configuration.

Two layers:
- ClientConfig: HTTP client knobs (proxy, timeouts, retry budget, backoff)
- AppConfig: data directory, remote endpoints and per-purpose client configs

Values come from dataclass defaults, then MODELPULL_* environment variables
(``AppConfig.from_env``), then command-line overrides (``ClientConfig.merge``).
"""

from __future__ import annotations

import os
import random
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

import aiohttp

from modelpull.errors import ConfigError
from modelpull.transfer.backoff import (
    ExponentialBackoff,
    FibonacciBackoff,
    FixedInterval,
    jitter,
    with_jitter,
)

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

DEFAULT_REMOTE = "https://registry.ollama.ai/"
DEFAULT_LIBRARY_URL = "https://ollama.com/"
DEFAULT_NAMESPACE = "library"
DEFAULT_CATEGORY = "latest"
DEFAULT_BACKOFF_TIME_MS = 10_000
DEFAULT_MODEL_RETRY = 5
DEFAULT_REGISTRY_RETRY = 3
SQLITE_FILE_NAME = "modelpull.sqlite"


class BackoffStrategyName(str, Enum):
    """Backoff strategy selectable from config or the command line."""

    FIBONACCI = "Fibonacci"
    EXPONENTIAL = "Exponential"
    FIXED = "Fixed"

    @classmethod
    def parse(cls, value: str) -> BackoffStrategyName:
        """Case-insensitive lookup by value."""
        for member in cls:
            if member.value.lower() == value.strip().lower():
                return member
        choices = ", ".join(m.value for m in cls)
        msg = f"Unknown backoff strategy {value!r} (expected one of: {choices})"
        raise ConfigError(msg)


@dataclass
class ClientConfig:
    """
    HTTP client configuration.

    Attributes:
        proxy: Proxy URL passed to every request.
        timeout_s: Total timeout per request (None = aiohttp default).
        chunk_timeout_s: Per-chunk read timeout for blob transfers.
        retry: Number of retries after the first attempt.
        backoff_strategy: Delay schedule between retries.
        backoff_time_ms: Base delay of the schedule.
        jitter: Randomize each delay (None = off).
    """

    proxy: str | None = None
    timeout_s: float | None = None
    chunk_timeout_s: float | None = None
    retry: int | None = DEFAULT_MODEL_RETRY
    backoff_strategy: BackoffStrategyName | None = BackoffStrategyName.FIBONACCI
    backoff_time_ms: int | None = DEFAULT_BACKOFF_TIME_MS
    jitter: bool | None = None

    def __post_init__(self) -> None:
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ConfigError(f"timeout_s must be > 0, got {self.timeout_s}")
        if self.chunk_timeout_s is not None and self.chunk_timeout_s <= 0:
            raise ConfigError(f"chunk_timeout_s must be > 0, got {self.chunk_timeout_s}")
        if self.retry is not None and self.retry < 0:
            raise ConfigError(f"retry must be >= 0, got {self.retry}")
        if self.backoff_time_ms is not None and self.backoff_time_ms < 0:
            raise ConfigError(f"backoff_time_ms must be >= 0, got {self.backoff_time_ms}")

    def merge(self, other: ClientConfig) -> ClientConfig:
        """Return a copy where every non-None field of ``other`` wins."""
        overrides = {
            f.name: getattr(other, f.name)
            for f in fields(other)
            if getattr(other, f.name) is not None
        }
        return replace(self, **overrides)

    def build_backoff(self, *, rng: random.Random | None = None) -> Iterator[int]:
        """Bounded delay schedule (ms) for the retry driver."""
        base = self.backoff_time_ms if self.backoff_time_ms is not None else DEFAULT_BACKOFF_TIME_MS
        strategy_name = self.backoff_strategy or BackoffStrategyName.FIBONACCI
        if strategy_name == BackoffStrategyName.EXPONENTIAL:
            strategy: Iterator[int] = ExponentialBackoff.from_millis(base)
        elif strategy_name == BackoffStrategyName.FIXED:
            strategy = FixedInterval.from_millis(base)
        else:
            strategy = FibonacciBackoff.from_millis(base)
        bounded = strategy.take(self.retry or 0)
        if self.jitter:
            return with_jitter(bounded, lambda delay: jitter(delay, rng=rng))
        return bounded

    def build_session(self) -> aiohttp.ClientSession:
        """New aiohttp session honoring ``timeout_s``. Caller closes it."""
        timeout = aiohttp.ClientTimeout(total=self.timeout_s)
        return aiohttp.ClientSession(timeout=timeout)


def _default_data_dir() -> Path:
    return Path.home() / ".local" / "share" / "modelpull"


@dataclass
class AppConfig:
    """Application configuration."""

    data_dir: Path = field(default_factory=_default_data_dir)
    remote: str = DEFAULT_REMOTE
    library_url: str = DEFAULT_LIBRARY_URL
    namespace: str = DEFAULT_NAMESPACE
    default_category: str = DEFAULT_CATEGORY
    registry_client: ClientConfig = field(
        default_factory=lambda: ClientConfig(retry=DEFAULT_REGISTRY_RETRY)
    )
    model_client: ClientConfig = field(default_factory=ClientConfig)

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir).expanduser()
        for name in ("remote", "library_url"):
            value = getattr(self, name)
            if not value.startswith(("http://", "https://")):
                raise ConfigError(f"{name} must be an http(s) URL, got {value!r}")
            if not value.endswith("/"):
                setattr(self, name, f"{value}/")
        if not self.namespace:
            raise ConfigError("namespace must not be empty")

    @property
    def sqlite_path(self) -> Path:
        return self.data_dir / "sqlite" / SQLITE_FILE_NAME

    def model_dir(self, variant: str) -> Path:
        """Blob directory for ``<name>:<category>`` -> ``model/<name>_<category>``."""
        return self.data_dir / "model" / variant.replace(":", "_")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> AppConfig:
        """
        Build config from MODELPULL_* environment variables.

        Client variables (proxy, retry, backoff, timeouts) apply to both the
        registry and the model client.

        Raises:
            ConfigError: On malformed values.
        """
        env = os.environ if environ is None else environ
        kwargs: dict[str, object] = {}
        if data_dir := env.get("MODELPULL_DATA_DIR"):
            kwargs["data_dir"] = Path(data_dir)
        if remote := env.get("MODELPULL_REMOTE"):
            kwargs["remote"] = remote
        if library_url := env.get("MODELPULL_LIBRARY_URL"):
            kwargs["library_url"] = library_url
        if namespace := env.get("MODELPULL_NAMESPACE"):
            kwargs["namespace"] = namespace
        if category := env.get("MODELPULL_CATEGORY"):
            kwargs["default_category"] = category

        config = cls(**kwargs)  # type: ignore[arg-type]
        overrides = client_overrides_from_env(env)
        config.registry_client = config.registry_client.merge(overrides)
        config.model_client = config.model_client.merge(overrides)
        return config


def _parse_number(env: Mapping[str, str], name: str, kind: type[int] | type[float]) -> int | float | None:
    raw = env.get(name)
    if raw is None or raw == "":
        return None
    try:
        return kind(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a {kind.__name__}, got {raw!r}") from e


def client_overrides_from_env(env: Mapping[str, str]) -> ClientConfig:
    """ClientConfig holding only the values set in the environment."""
    strategy = env.get("MODELPULL_BACKOFF_STRATEGY")
    return ClientConfig(
        proxy=env.get("MODELPULL_PROXY") or None,
        timeout_s=_parse_number(env, "MODELPULL_TIMEOUT_S", float),
        chunk_timeout_s=_parse_number(env, "MODELPULL_CHUNK_TIMEOUT_S", float),
        retry=_parse_number(env, "MODELPULL_RETRY", int),  # type: ignore[arg-type]
        backoff_strategy=BackoffStrategyName.parse(strategy) if strategy else None,
        backoff_time_ms=_parse_number(env, "MODELPULL_BACKOFF_TIME_MS", int),  # type: ignore[arg-type]
    )
