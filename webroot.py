"""
Static Web Root — Path Containment and Chunked File Streaming
=============================================================

Two halves of the static route:

    resolver = PathResolver("web")
    resolved = resolver.resolve("css/site.css")      # ResolvedPath | PathError
    cursor   = StreamCursor.open(resolved)           # StreamCursor | PathError
    return ChunkedFileResponse(cursor, ChunkedFileStreamer())

Containment is checked component-wise on canonical paths, once lexically
before touching the filesystem and again after symlinks are resolved.
No file is opened until both checks pass.

Streaming reads the file into one reusable buffer per response and awaits
each ASGI ``send`` before reading the next chunk, so memory stays at one
chunk per in-flight download no matter how large the file is or how slow
the peer reads.  The buffer is handed to ``send`` as a ``memoryview``; this
is only safe with a protocol implementation that serializes the body before
``send`` returns (uvicorn's h11 protocol on the asyncio loop, see main.py).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import mimetypes
import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from starlette.requests import ClientDisconnect
from starlette.responses import Response
from starlette.types import Message, Receive, Scope, Send

from errors import PathError, PathErrorKind, RootError, StreamError, StreamErrorKind

log = logging.getLogger("facedetect-api.webroot")

DEFAULT_CHUNK_SIZE = 128 * 1024


def _is_within(root_parts: tuple[str, ...], parts: tuple[str, ...]) -> bool:
    return len(parts) >= len(root_parts) and parts[: len(root_parts)] == root_parts


# =====================================================================
#  PATH RESOLUTION
# =====================================================================

@dataclass(frozen=True)
class ResolvedPath:
    """Canonical path of a regular file inside the web root."""
    path: Path
    request_path: str


class PathResolver:
    """Maps URL paths onto files below a fixed, canonical web root."""

    def __init__(self, root: str | os.PathLike, default_document: str = "index.html"):
        try:
            self.root = Path(root).resolve(strict=True)
        except (OSError, RuntimeError) as e:
            raise RootError(f"Web root '{root}' cannot be resolved: {e}") from e
        if not self.root.is_dir():
            raise RootError(f"Web root '{self.root}' is not a directory")
        self.default_document = default_document
        self._root_parts = self.root.parts

    def contains(self, path: Path) -> bool:
        return _is_within(self._root_parts, path.parts)

    def resolve(self, request_path: str) -> ResolvedPath | PathError:
        # Lexical pass: "..", "." and absolute overrides are rejected here
        # without any filesystem call on the client's path.
        joined = Path(os.path.normpath(os.path.join(self.root, request_path)))
        if not self.contains(joined):
            log.warning("Rejected path outside web root: %r", request_path)
            return PathError(PathErrorKind.OUTSIDE_ROOT)

        path = self._canonical(joined, request_path)
        if isinstance(path, PathError):
            return path

        if path.is_dir():
            path = self._canonical(path / self.default_document, request_path)
            if isinstance(path, PathError):
                return path

        if not path.is_file():
            return PathError(PathErrorKind.NOT_READABLE, "not a regular file")
        return ResolvedPath(path=path, request_path=request_path)

    def _canonical(self, candidate: Path, request_path: str) -> Path | PathError:
        """Resolve symlinks and re-check containment on the real path."""
        try:
            path = candidate.resolve(strict=True)
        except (OSError, RuntimeError, ValueError):
            return PathError(PathErrorKind.NOT_FOUND)
        if not self.contains(path):
            log.warning("Rejected symlink escape from web root: %r -> %s", request_path, path)
            return PathError(PathErrorKind.OUTSIDE_ROOT)
        return path


# =====================================================================
#  STREAMING
# =====================================================================

class StreamCursor:
    """Open read handle on a resolved file plus the current byte offset."""

    def __init__(self, path: Path, handle: BinaryIO, size: int):
        self.path = path
        self.size = size
        self.offset = 0
        self._handle = handle

    @classmethod
    def open(cls, resolved: ResolvedPath) -> StreamCursor | PathError:
        try:
            handle = open(resolved.path, "rb")
        except OSError as e:
            return PathError(PathErrorKind.NOT_READABLE, e.strerror or str(e))
        try:
            size = os.fstat(handle.fileno()).st_size
        except OSError as e:
            handle.close()
            return PathError(PathErrorKind.NOT_READABLE, e.strerror or str(e))
        return cls(resolved.path, handle, size)

    @property
    def closed(self) -> bool:
        return self._handle.closed

    def read_into(self, buffer: bytearray) -> int:
        # Never read past the size announced in Content-Length, even if
        # the file grows while it is being sent.
        remaining = self.size - self.offset
        if remaining <= 0:
            return 0
        if remaining < len(buffer):
            n = self._handle.readinto(memoryview(buffer)[:remaining]) or 0
        else:
            n = self._handle.readinto(buffer) or 0
        self.offset += n
        return n

    def close(self):
        self._handle.close()


class ResponseSink:
    """Body channel of one HTTP response.

    ``write`` returns only once the server has taken the chunk.  After the
    peer has gone away every write raises ``StreamError``.
    """

    def __init__(self, send: Send):
        self._send = send
        self.disconnected = asyncio.Event()
        self.finished = False

    async def write(self, chunk: bytes | memoryview, *, more_body: bool = True):
        if self.disconnected.is_set():
            raise StreamError(StreamErrorKind.WRITE_FAILED, "peer disconnected")
        try:
            await self._send({
                "type": "http.response.body",
                "body": chunk,
                "more_body": more_body,
            })
        except (OSError, ClientDisconnect) as e:
            raise StreamError(StreamErrorKind.WRITE_FAILED, str(e)) from e
        if not more_body:
            self.finished = True

    async def finish(self):
        if not self.finished:
            await self.write(b"", more_body=False)

    async def watch_disconnect(self, receive: Receive):
        while True:
            message: Message = await receive()
            if message["type"] == "http.disconnect":
                self.disconnected.set()
                return


class ChunkedFileStreamer:
    """Sends a file through a sink in fixed-size chunks."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size

    async def stream(self, cursor: StreamCursor, sink: ResponseSink) -> bool:
        """Stream ``cursor`` to ``sink`` until EOF or a failed write.

        Returns True when the whole file was sent.  The cursor is always
        closed on return.
        """
        buffer = bytearray(self.chunk_size)
        view = memoryview(buffer)
        try:
            while True:
                # Disk reads go to a worker thread; the next read starts
                # only after the previous chunk was accepted by the sink.
                n = await asyncio.to_thread(cursor.read_into, buffer)
                if n == 0:
                    await sink.finish()
                    return True
                full = n == self.chunk_size
                await sink.write(view[:n], more_body=full)
                if not full:
                    return True
        except StreamError as e:
            log.warning("Connection interrupted while sending %s after %d of %d bytes: %s",
                        cursor.path.name, cursor.offset, cursor.size, e)
            return False
        finally:
            cursor.close()


class ChunkedFileResponse(Response):
    """Starlette response that streams an already opened ``StreamCursor``."""

    def __init__(
        self,
        cursor: StreamCursor,
        streamer: ChunkedFileStreamer,
        media_type: str | None = None,
    ):
        self.cursor = cursor
        self.streamer = streamer
        self.status_code = 200
        self.media_type = (
            media_type
            or mimetypes.guess_type(cursor.path.name)[0]
            or "application/octet-stream"
        )
        self.background = None
        self.init_headers({"content-length": str(cursor.size)})

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        sink = ResponseSink(send)
        watcher = asyncio.create_task(sink.watch_disconnect(receive))
        try:
            await send({
                "type": "http.response.start",
                "status": self.status_code,
                "headers": self.raw_headers,
            })
            await self.streamer.stream(self.cursor, sink)
        finally:
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher
            self.cursor.close()
