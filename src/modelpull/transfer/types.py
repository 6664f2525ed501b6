"""
Types for the resumable download engine.

Filesystem layout per transfer:
- final file:   <destination_dir>/<file_name>
- staging file: <destination_dir>/<file_name>.part
- collisions:   <stem>_(n).<ext>
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from urllib.parse import parse_qsl, unquote, urlsplit

STAGING_SUFFIX = ".part"


class DownloadStatus(str, Enum):
    """Terminal state of a transfer."""

    NOT_STARTED = "NotStarted"
    SUCCESS = "Success"
    FAILED = "Failed"
    SKIPPED = "Skipped"


def file_name_from_url(url: str) -> str:
    """
    Derive a file name from the last path segment of a URL.

    Examples:
        - https://host/a/test.html -> test.html
        - https://host/file=test.html -> file_test.html
        - https://host/f1=a.bin&f2=b.bin -> f1_a.bin_f2_b.bin
        - https://host/ -> ""
    """
    segment = urlsplit(url).path.rsplit("/", 1)[-1]
    if not segment:
        return ""
    if "=" not in segment and "&" not in segment:
        return unquote(segment)
    parts: list[str] = []
    for name, value in parse_qsl(segment, keep_blank_values=True):
        if name:
            parts.append(name)
        if value:
            parts.append(value)
    return "_".join(parts)


@dataclass(frozen=True)
class DownloadTask:
    """
    A single transfer request.

    Attributes:
        source_url: Remote resource URL.
        destination_dir: Directory receiving the file.
        file_name: Desired final file name.
        chunk_timeout_s: Per-chunk read timeout (None = unbounded).
        retry_budget: Retries allowed for this transfer; bounds the retry schedule.
    """

    source_url: str
    destination_dir: Path
    file_name: str
    chunk_timeout_s: float | None = None
    retry_budget: int = 0

    def __post_init__(self) -> None:
        if not self.file_name:
            msg = f"file_name must not be empty (url={self.source_url})"
            raise ValueError(msg)
        if "/" in self.file_name or self.file_name in (".", ".."):
            msg = f"file_name must be a bare file name, got {self.file_name!r}"
            raise ValueError(msg)
        if self.chunk_timeout_s is not None and self.chunk_timeout_s <= 0:
            msg = f"chunk_timeout_s must be > 0, got {self.chunk_timeout_s}"
            raise ValueError(msg)

    @classmethod
    def from_url(
        cls,
        url: str,
        destination_dir: Path,
        *,
        chunk_timeout_s: float | None = None,
        retry_budget: int = 0,
    ) -> DownloadTask:
        """Build a task whose file name is derived from the URL."""
        return cls(
            source_url=url,
            destination_dir=destination_dir,
            file_name=file_name_from_url(url),
            chunk_timeout_s=chunk_timeout_s,
            retry_budget=retry_budget,
        )

    @property
    def final_path(self) -> Path:
        return self.destination_dir / self.file_name


@dataclass(frozen=True)
class DownloadOutcome:
    """
    Result of a transfer attempt sequence.

    Attributes:
        task: The task this outcome belongs to.
        status: Terminal status.
        reason: Failure or skip reason.
        content_length: Remote length reported by the probe, if any.
        resumable: Whether the server advertised byte-range support.
        final_path: Where the file ended up (may differ from task on collision).
        bytes_written: Bytes appended to the staging file by this attempt.
    """

    task: DownloadTask
    status: DownloadStatus = DownloadStatus.NOT_STARTED
    reason: str | None = None
    content_length: int | None = None
    resumable: bool = False
    final_path: Path | None = None
    bytes_written: int = 0

    def with_status(self, status: DownloadStatus, reason: str | None = None) -> DownloadOutcome:
        return replace(self, status=status, reason=reason)

    @property
    def ok(self) -> bool:
        """True for Success and Skipped."""
        return self.status in (DownloadStatus.SUCCESS, DownloadStatus.SKIPPED)

    @classmethod
    def skipped(cls, task: DownloadTask, reason: str) -> DownloadOutcome:
        return cls(
            task=task,
            status=DownloadStatus.SKIPPED,
            reason=reason,
            final_path=task.final_path,
        )
