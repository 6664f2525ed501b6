"""
Resumable download engine.

Transfer state machine for one DownloadTask:
1. Prepare destination: create dir, resolve name collisions, detect an
   interrupted previous attempt (zero-length placeholder at the final name).
2. Create placeholder + ``.part`` staging file.
3. Probe remote length and range support (HEAD, GET fallback on zero length).
4. Not resumable -> staging truncated.
5. Staging already complete -> no network, finalize.
6. (Ranged) GET, append + flush per chunk, optional per-chunk timeout.
7. Finalize: remove placeholder, rename staging to final name.

Every exit path leaves the destination directory consistent: flushed staging
bytes are never discarded on failure, so a later attempt can resume.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

import aiohttp

from modelpull.errors import LocalIOError, NetworkError, TransferTimeoutError
from modelpull.transfer.types import (
    STAGING_SUFFIX,
    DownloadOutcome,
    DownloadStatus,
    DownloadTask,
)

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path
    from typing import BinaryIO

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class PreparedTarget:
    """Resolved on-disk names for a transfer.

    Attributes:
        final_path: Where the finished file will live (placeholder until then).
        staging_path: ``<final_path>.part`` accumulating in-flight bytes.
        fresh: True if both files were truncated on open.
    """

    final_path: Path
    staging_path: Path
    fresh: bool


def _disambiguate(file_name: str, n: int) -> str:
    """Insert ``_(n)`` before the extension: report.txt -> report_(1).txt."""
    stem, dot, ext = file_name.rpartition(".")
    if not dot or not stem:
        return f"{file_name}_({n})"
    return f"{stem}_({n}).{ext}"


def resolve_target_name(directory: Path, file_name: str) -> tuple[str, bool]:
    """
    Pick the on-disk name for a new transfer.

    Walks ``name, name_(1), name_(2), ...``: the first missing candidate is
    used fresh; a zero-length candidate is an interrupted transfer and is
    reused without truncation; non-empty candidates are completed files and
    are skipped over.

    Returns:
        (chosen file name, fresh flag).
    """
    n = 0
    candidate = file_name
    while True:
        path = directory / candidate
        if not path.is_file():
            return candidate, True
        if path.stat().st_size == 0:
            logger.debug(
                "Found interrupted transfer, resuming",
                extra={"file_name": candidate},
            )
            return candidate, False
        n += 1
        candidate = _disambiguate(file_name, n)


def prepare_target(directory: Path, file_name: str) -> PreparedTarget:
    """
    Create the destination directory, placeholder and staging file.

    Raises:
        LocalIOError: On any filesystem failure.
    """
    try:
        if not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)
            name, fresh = file_name, True
        else:
            name, fresh = resolve_target_name(directory, file_name)

        final_path = directory / name
        staging_path = directory / f"{name}{STAGING_SUFFIX}"
        mode = "wb" if fresh else "ab"
        with final_path.open(mode):
            pass
        with staging_path.open(mode):
            pass
    except OSError as e:
        msg = f"Failed to prepare download target {file_name!r} in {directory}: {e}"
        raise LocalIOError(msg, path=str(directory)) from e

    return PreparedTarget(final_path=final_path, staging_path=staging_path, fresh=fresh)


def finalize_target(target: PreparedTarget) -> None:
    """
    Promote the staging file: remove placeholder, then rename staging in place.

    Raises:
        LocalIOError: If either step fails.
    """
    try:
        target.final_path.unlink(missing_ok=True)
        target.staging_path.replace(target.final_path)
    except OSError as e:
        msg = f"Failed to promote {target.staging_path} to {target.final_path}: {e}"
        raise LocalIOError(msg, path=str(target.final_path)) from e


def _content_length(headers: Mapping[str, str]) -> int | None:
    value = headers.get("Content-Length")
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _staging_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError as e:
        msg = f"Failed to stat staging file {path}: {e}"
        raise LocalIOError(msg, path=str(path)) from e


def _truncate(path: Path) -> None:
    try:
        with path.open("r+b") as f:
            f.truncate(0)
    except OSError as e:
        msg = f"Failed to truncate staging file {path}: {e}"
        raise LocalIOError(msg, path=str(path)) from e


class Downloader:
    """
    Resumable downloader bound to a shared aiohttp session.

    The session is owned by the caller; the downloader never closes it.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        proxy: str | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        """
        Initialize the downloader.

        Args:
            session: HTTP session used for probe and transfer requests.
            proxy: Optional proxy URL passed to every request.
            chunk_size: Maximum bytes requested per chunk read.
        """
        self._session = session
        self._proxy = proxy
        self._chunk_size = chunk_size

    async def probe(self, url: str) -> tuple[int, int | None, str | None]:
        """
        Ask the server for content length and range support.

        Some servers report ``Content-Length: 0`` or no length at all on HEAD;
        in that case the probe is repeated as a GET whose body is never read.

        Returns:
            (HTTP status, content length, Accept-Ranges value).

        Raises:
            NetworkError: On transport failure.
            TransferTimeoutError: If the session timeout expires.
        """
        try:
            async with self._session.head(url, allow_redirects=True, proxy=self._proxy) as resp:
                status = resp.status
                length = _content_length(resp.headers)
                accept_ranges = resp.headers.get("Accept-Ranges")
            if not length:
                logger.debug("HEAD reported no length, probing with GET", extra={"url": url})
                async with self._session.get(url, proxy=self._proxy) as resp:
                    status = resp.status
                    length = _content_length(resp.headers)
                    accept_ranges = resp.headers.get("Accept-Ranges")
        except asyncio.TimeoutError as e:
            msg = f"Timed out probing {url}"
            raise TransferTimeoutError(msg, url=url) from e
        except aiohttp.ClientError as e:
            msg = f"Failed to probe {url}: {e}"
            raise NetworkError(msg, url=url) from e
        return status, length, accept_ranges

    async def fetch(self, task: DownloadTask) -> DownloadOutcome:
        """
        Run one transfer attempt.

        Args:
            task: What to fetch and where to put it.

        Returns:
            DownloadOutcome with status Success or Failed(reason).

        Raises:
            NetworkError: Transport failure or short body (retryable).
            TransferTimeoutError: Chunk read exceeded ``task.chunk_timeout_s``.
            LocalIOError: Filesystem failure.
        """
        url = task.source_url
        target = prepare_target(task.destination_dir, task.file_name)
        outcome = DownloadOutcome(task=task, final_path=target.final_path)

        status, content_length, accept_ranges = await self.probe(url)
        if status >= 400:
            logger.error("Probe rejected", extra={"url": url, "status": status})
            return outcome.with_status(DownloadStatus.FAILED, f"Probe returned HTTP {status}")

        resumable = accept_ranges == "bytes"
        outcome = replace(outcome, resumable=resumable, content_length=content_length)
        if not resumable:
            _truncate(target.staging_path)

        offset = _staging_size(target.staging_path)
        if content_length is not None and content_length == offset:
            logger.debug(
                "Staging file already complete, finalizing",
                extra={"file_name": target.final_path.name, "size": offset},
            )
            finalize_target(target)
            return outcome.with_status(DownloadStatus.SUCCESS)

        headers: dict[str, str] = {}
        if resumable:
            end = "" if content_length is None else str(content_length - 1)
            headers["Range"] = f"bytes={offset}-{end}"

        written = await self._transfer(task, target, headers, offset)
        if isinstance(written, str):
            return outcome.with_status(DownloadStatus.FAILED, written)

        final_size = _staging_size(target.staging_path)
        if content_length is not None and final_size < content_length:
            msg = f"Short transfer for {url}: {final_size}/{content_length} bytes"
            raise NetworkError(msg, url=url)

        finalize_target(target)
        logger.info(
            "Download complete",
            extra={
                "file_name": target.final_path.name,
                "size": final_size,
                "resumed_from": offset if resumable else 0,
            },
        )
        return replace(outcome, bytes_written=written).with_status(DownloadStatus.SUCCESS)

    async def _transfer(
        self,
        task: DownloadTask,
        target: PreparedTarget,
        headers: dict[str, str],
        offset: int,
    ) -> int | str:
        """Stream the body into the staging file.

        Returns:
            Bytes written, or a failure reason string for non-success statuses.
        """
        url = task.source_url
        written = 0
        try:
            async with self._session.get(url, headers=headers, proxy=self._proxy) as resp:
                if resp.status >= 300:
                    logger.error(
                        "Transfer rejected",
                        extra={"url": url, "status": resp.status, "range": headers.get("Range")},
                    )
                    return f"Response exception: HTTP {resp.status}"

                with target.staging_path.open("ab") as staging:
                    if offset > 0 and resp.status != 206:
                        # Server ignored the range: the body is the whole resource.
                        logger.warning("Range ignored by server, restarting", extra={"url": url})
                        staging.truncate(0)
                    written = await self._copy_chunks(resp, staging, task)
        # TimeoutError and ClientOSError are OSError subclasses: order matters.
        except TransferTimeoutError:
            raise
        except asyncio.TimeoutError as e:
            msg = f"Timed out fetching {url}"
            raise TransferTimeoutError(msg, url=url) from e
        except aiohttp.ClientError as e:
            msg = f"Failed to fetch {url}: {e}"
            raise NetworkError(msg, url=url) from e
        except OSError as e:
            msg = f"Failed to write staging file {target.staging_path}: {e}"
            raise LocalIOError(msg, path=str(target.staging_path)) from e
        return written

    async def _copy_chunks(
        self,
        resp: aiohttp.ClientResponse,
        staging: BinaryIO,
        task: DownloadTask,
    ) -> int:
        """Append each chunk to ``staging`` and flush it; file writes are synchronous."""
        written = 0
        while True:
            try:
                if task.chunk_timeout_s is not None:
                    chunk = await asyncio.wait_for(
                        resp.content.read(self._chunk_size), task.chunk_timeout_s
                    )
                else:
                    chunk = await resp.content.read(self._chunk_size)
            except asyncio.TimeoutError as e:
                logger.warning(
                    "Chunk read timed out",
                    extra={"url": task.source_url, "bytes_flushed": written},
                )
                msg = f"Chunk read exceeded {task.chunk_timeout_s}s for {task.source_url}"
                raise TransferTimeoutError(
                    msg, url=task.source_url, bytes_flushed=written
                ) from e
            if not chunk:
                return written
            staging.write(chunk)
            staging.flush()
            written += len(chunk)


async def download(
    session: aiohttp.ClientSession,
    task: DownloadTask,
    *,
    proxy: str | None = None,
) -> DownloadOutcome:
    """Fetch ``task`` once with a throwaway Downloader."""
    return await Downloader(session, proxy=proxy).fetch(task)
