"""Transfer layer: backoff, verification and resumable downloads."""

from modelpull.transfer.backoff import (
    MAX_DELAY_MS,
    ExponentialBackoff,
    FibonacciBackoff,
    FixedInterval,
    jitter,
    jitter_range,
    with_jitter,
    with_retry,
    with_retry_if,
    with_retry_on_transient,
)
from modelpull.transfer.checksum import (
    checksum,
    decode_hex_digest,
    digest,
    file_sha256,
    hex_digest,
    strip_algorithm,
)
from modelpull.transfer.download import Downloader, download
from modelpull.transfer.types import (
    DownloadOutcome,
    DownloadStatus,
    DownloadTask,
    file_name_from_url,
)

__all__ = [
    "MAX_DELAY_MS",
    "DownloadOutcome",
    "DownloadStatus",
    "DownloadTask",
    "Downloader",
    "ExponentialBackoff",
    "FibonacciBackoff",
    "FixedInterval",
    "checksum",
    "decode_hex_digest",
    "digest",
    "download",
    "file_name_from_url",
    "file_sha256",
    "hex_digest",
    "jitter",
    "jitter_range",
    "strip_algorithm",
    "with_jitter",
    "with_retry",
    "with_retry_if",
    "with_retry_on_transient",
]
