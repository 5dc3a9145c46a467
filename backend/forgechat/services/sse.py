"""Server-sent event framing.

Frames are written whole and flushed immediately; a heartbeat is a comment
frame so clients ignore it while proxies still see traffic.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from forgechat.services.chat_service import ChatServiceError

logger = logging.getLogger(__name__)

PING_FRAME = b": ping\n\n"

SSE_HEADERS = {
    # Pinned so Starlette does not append a charset parameter
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


class UnsupportedSink(ChatServiceError):
    def __init__(self, message: str = "Response sink does not support flushing"):
        super().__init__(message)


def format_event(event: str, payload: dict[str, Any]) -> bytes:
    data = json.dumps(payload, ensure_ascii=False, default=str)
    return f"event: {event}\ndata: {data}\n\n".encode("utf-8")


class QueueSink:
    """Response sink drained by a ``StreamingResponse`` body iterator.

    ``write`` buffers bytes, ``flush`` hands everything buffered to the
    reader as one chunk. Once the reader is gone, flushed data is dropped.
    """

    def __init__(self):
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._pending: list[bytes] = []
        self._detached = False

    @property
    def detached(self) -> bool:
        return self._detached

    def write(self, data: bytes) -> None:
        self._pending.append(data)

    async def flush(self) -> None:
        if not self._pending:
            return
        chunk = b"".join(self._pending)
        self._pending.clear()
        if self._detached:
            logger.debug("Dropping %d bytes for a detached SSE reader", len(chunk))
            return
        await self._queue.put(chunk)

    async def close(self) -> None:
        await self.flush()
        await self._queue.put(None)

    def detach(self) -> None:
        self._detached = True

    async def frames(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk


class SSEWriter:
    def __init__(self, sink):
        if not callable(getattr(sink, "flush", None)) or not callable(getattr(sink, "write", None)):
            raise UnsupportedSink()
        self._sink = sink
        self._lock = asyncio.Lock()

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        await self._write_frame(format_event(event, payload))

    async def ping(self) -> None:
        await self._write_frame(PING_FRAME)

    async def close(self) -> None:
        close = getattr(self._sink, "close", None)
        if callable(close):
            await close()

    async def _write_frame(self, frame: bytes) -> None:
        # One lock per writer so a heartbeat never lands inside an event frame
        async with self._lock:
            self._sink.write(frame)
            await self._sink.flush()
