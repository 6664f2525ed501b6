"""
In-process HTTP server standing in for the registry and library site.

Serves fixed bytes per path and records every request (method, path, Range
header) so tests can assert resume offsets and network-call counts.

Behaviour knobs on ServerState:
- accept_ranges: advertise ``Accept-Ranges: bytes``
- honor_range: answer ranged GETs with 206 (False: ignore Range, send 200)
- head_zero_length: HEAD reports ``Content-Length: 0``
- fail_gets: answer the next N GETs with 503
- stall_after: first GET sends N bytes then stalls until ``release`` is set
- fault_path: restrict fail_gets and stall_after to this path (None: any path)
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from aiohttp import web
from aiohttp.test_utils import TestServer

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


@dataclass(frozen=True)
class RecordedRequest:
    method: str
    path: str
    range: str | None


@dataclass
class ServerState:
    files: dict[str, bytes] = field(default_factory=dict)
    requests: list[RecordedRequest] = field(default_factory=list)
    accept_ranges: bool = True
    honor_range: bool = True
    head_zero_length: bool = False
    fail_gets: int = 0
    stall_after: int | None = None
    fault_path: str | None = None
    release: asyncio.Event = field(default_factory=asyncio.Event)

    def methods(self, path: str | None = None) -> list[str]:
        return [r.method for r in self.requests if path is None or r.path == path]

    def gets(self, path: str | None = None) -> list[RecordedRequest]:
        return [
            r for r in self.requests if r.method == "GET" and (path is None or r.path == path)
        ]


def _parse_range(header: str, size: int) -> tuple[int, int]:
    start, _, end = header.removeprefix("bytes=").partition("-")
    return int(start), int(end) if end else size - 1


def make_app(state: ServerState) -> web.Application:
    async def handle(request: web.Request) -> web.StreamResponse:
        range_header = request.headers.get("Range")
        state.requests.append(RecordedRequest(request.method, request.path_qs, range_header))

        body = state.files.get(request.path_qs)
        if body is None:
            body = state.files.get(request.path)
        if body is None:
            return web.Response(status=404, text="not found")

        headers = {"Accept-Ranges": "bytes"} if state.accept_ranges else {}
        if request.method == "HEAD":
            if state.head_zero_length:
                headers["Content-Length"] = "0"
                return web.Response(headers=headers)
            return web.Response(body=body, headers=headers)

        faulty = state.fault_path is None or state.fault_path == request.path
        if faulty and state.fail_gets > 0:
            state.fail_gets -= 1
            return web.Response(status=503, text="unavailable")

        if faulty and state.stall_after is not None:
            stall_after, state.stall_after = state.stall_after, None
            resp = web.StreamResponse(headers=headers)
            resp.content_length = len(body)
            await resp.prepare(request)
            await resp.write(body[:stall_after])
            await state.release.wait()
            with contextlib.suppress(ConnectionError, RuntimeError):
                await resp.write(body[stall_after:])
                await resp.write_eof()
            return resp

        if range_header and state.accept_ranges and state.honor_range:
            start, end = _parse_range(range_header, len(body))
            headers["Content-Range"] = f"bytes {start}-{end}/{len(body)}"
            return web.Response(status=206, body=body[start : end + 1], headers=headers)

        return web.Response(body=body, headers=headers)

    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", handle)
    return app


@contextlib.asynccontextmanager
async def serve(state: ServerState) -> AsyncIterator[TestServer]:
    """Run the fake server for the duration of the block."""
    server = TestServer(make_app(state))
    await server.start_server()
    try:
        yield server
    finally:
        state.release.set()
        await server.close()
