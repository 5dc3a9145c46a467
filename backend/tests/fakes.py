"""Test doubles for the model driver, the MCP executor and the response sink."""

import asyncio
import json
import time

from forgechat.integrations.mcp_client import MCPClientError, MCPToolExecutor, parse_allow_list, prefixed_name
from forgechat.integrations.model_driver import ChatResponse, ModelDriver, ModelDriverError, StreamChunk


class FakeDriver(ModelDriver):
    """Scripted model driver.

    `deltas` are streamed in order. `gate`, when given, is awaited before the
    delta at index `gate_at`, which lets a test hold the stream open. `stall`
    blocks the whole event loop before the first delta.
    """

    provider = "fake"

    def __init__(
        self,
        deltas=("Hello", " there"),
        *,
        stream_error: str | None = None,
        open_error: str | None = None,
        first_delay: float = 0.0,
        stall: float = 0.0,
        gate: asyncio.Event | None = None,
        gate_at: int = 0,
        title: str = "",
        title_error: str | None = None,
        token_count: int = 12,
    ):
        super().__init__("fake-model")
        self.deltas = list(deltas)
        self.stream_error = stream_error
        self.open_error = open_error
        self.first_delay = first_delay
        self.stall = stall
        self.gate = gate
        self.gate_at = gate_at
        self.title = title
        self.title_error = title_error
        self.token_count = token_count
        self.stream_calls: list[list] = []
        self.title_calls: list[list] = []
        self.stream_closed = False

    async def generate(self, messages, options=None) -> ChatResponse:
        self.title_calls.append(messages)
        if self.title_error:
            raise ModelDriverError(self.title_error)
        return ChatResponse(content=self.title, token_count=8, finish_reason="end_turn")

    async def generate_stream(self, messages, options=None):
        self.stream_calls.append(messages)
        try:
            if self.first_delay:
                await asyncio.sleep(self.first_delay)
            if self.stall:
                # Blocks the event loop, as a burst of CPU-bound work would
                time.sleep(self.stall)
            if self.open_error:
                yield StreamChunk(finished=True, error=self.open_error)
                return
            content = ""
            for i, delta in enumerate(self.deltas):
                if self.gate is not None and i == self.gate_at:
                    await self.gate.wait()
                content += delta
                yield StreamChunk(content=content, delta=delta)
            if self.stream_error:
                yield StreamChunk(content=content, finished=True, error=self.stream_error)
                return
            yield StreamChunk(
                content=content, finished=True, token_count=self.token_count, finish_reason="end_turn"
            )
        finally:
            self.stream_closed = True


class RecordingSink:
    """In-memory flushable sink that records each flushed chunk."""

    def __init__(self):
        self.chunks: list[bytes] = []
        self._pending: list[bytes] = []
        self.closed = False
        self.flushed = asyncio.Event()

    def write(self, data: bytes) -> None:
        self._pending.append(data)

    async def flush(self) -> None:
        self.chunks.append(b"".join(self._pending))
        self._pending.clear()
        self.flushed.set()

    async def close(self) -> None:
        self.closed = True

    @property
    def raw(self) -> str:
        return b"".join(self.chunks).decode("utf-8")

    def events(self) -> list[tuple[str, dict | None]]:
        return parse_sse(self.raw)

    async def wait_for(self, event: str, timeout: float = 2.0) -> None:
        async def _wait():
            while not any(name == event for name, _ in self.events()):
                self.flushed.clear()
                await self.flushed.wait()

        await asyncio.wait_for(_wait(), timeout)


def parse_sse(raw: str) -> list[tuple[str, dict | None]]:
    """Split an SSE body into `(event, payload)` pairs; pings become `("ping", None)`."""
    events = []
    for frame in raw.split("\n\n"):
        if not frame:
            continue
        if frame == ": ping":
            events.append(("ping", None))
            continue
        name, data = None, None
        for line in frame.split("\n"):
            if line.startswith("event: "):
                name = line[len("event: "):]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: "):])
        events.append((name, data))
    return events



class FakeToolExecutor(MCPToolExecutor):
    """MCP executor that answers from memory and records every call."""

    def __init__(self, tools=("search_logs", "restart_service"), error: str | None = None):
        self.tools = list(tools)
        self.error = error
        self.calls: list[tuple[str, dict | None]] = []

    async def list_tools(self, config, prefix=""):
        if self.error:
            raise MCPClientError(self.error)
        allowed = parse_allow_list(config)
        return [
            {"name": prefixed_name(prefix, name), "description": f"{name} tool", "inputSchema": {"type": "object"}}
            for name in self.tools
            if not allowed or name in allowed
        ]

    async def call_tool(self, config, tool_name, arguments=None):
        self.calls.append((tool_name, arguments))
        if self.error:
            raise MCPClientError(self.error)
        return {"content": [f"{tool_name} ok"], "structured": {"echo": arguments}}
