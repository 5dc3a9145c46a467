"""MCP integration — connect to a tool server, list its tools and call them.

A tool's ``config`` describes how to reach its server:

- ``protocol``: ``sse``, ``http_streamable`` or ``stdio``
- ``endpoint``, ``authorization``, ``headers``: network protocols
- ``command``, ``args``, ``env``: ``stdio``
- ``timeout``: seconds, default 15
- ``allowList``: comma-separated tool names to expose
"""

import logging
from typing import Any

from fastmcp import Client
from fastmcp.client.transports import ClientTransport, SSETransport, StdioTransport, StreamableHttpTransport

logger = logging.getLogger(__name__)

PROTO_SSE = "sse"
PROTO_HTTP_STREAMABLE = "http_streamable"
PROTO_STDIO = "stdio"
PROTOCOLS = (PROTO_SSE, PROTO_HTTP_STREAMABLE, PROTO_STDIO)

DEFAULT_TIMEOUT_SEC = 15
PREFIX_SEPARATOR = "__"


class MCPClientError(Exception):
    pass


class MCPConfigError(MCPClientError):
    pass


# --- Config parsing ---

def _as_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip():
        try:
            return int(value.strip())
        except ValueError:
            return 0
    return 0


def maybe_bearer(value: str) -> str:
    if not value or value.strip().lower().startswith("bearer "):
        return value
    return f"Bearer {value}"


def parse_headers(raw: str) -> dict[str, str]:
    """Parse ``Key: Value`` lines; blank lines and lines without a colon are skipped."""
    headers = {}
    for line in raw.splitlines():
        key, sep, value = line.strip().partition(":")
        if sep and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def parse_env(raw: str) -> dict[str, str]:
    env = {}
    for entry in raw.replace(";", "\n").splitlines():
        key, sep, value = entry.strip().partition("=")
        if sep and key:
            env[key] = value
    return env


def parse_allow_list(config: dict) -> set[str]:
    return {name.strip() for name in _as_str(config.get("allowList")).split(",") if name.strip()}


def config_timeout(config: dict) -> int:
    timeout = _as_int(config.get("timeout"))
    return timeout if timeout > 0 else DEFAULT_TIMEOUT_SEC


def validate_mcp_config(config: dict) -> None:
    """Raise ``MCPConfigError`` when ``config`` cannot describe a reachable server."""
    protocol = _as_str(config.get("protocol"))
    if not protocol:
        raise MCPConfigError("missing protocol")
    if protocol not in PROTOCOLS:
        raise MCPConfigError(f"unsupported mcp protocol: {protocol}")
    if protocol == PROTO_STDIO:
        if not _as_str(config.get("command")):
            raise MCPConfigError("missing command for stdio")
    elif not _as_str(config.get("endpoint")):
        raise MCPConfigError(f"missing endpoint for {protocol}")


def build_transport(config: dict) -> ClientTransport:
    validate_mcp_config(config)
    protocol = _as_str(config["protocol"])

    if protocol == PROTO_STDIO:
        args = _as_str(config.get("args")).split()
        env = parse_env(_as_str(config.get("env"))) or None
        return StdioTransport(_as_str(config["command"]), args, env=env)

    headers = parse_headers(_as_str(config.get("headers")))
    authorization = _as_str(config.get("authorization"))
    if authorization:
        headers["Authorization"] = maybe_bearer(authorization)
    endpoint = _as_str(config["endpoint"])
    if protocol == PROTO_SSE:
        return SSETransport(endpoint, headers=headers or None)
    return StreamableHttpTransport(endpoint, headers=headers or None)


# --- Tool names ---

def prefixed_name(prefix: str, name: str) -> str:
    return f"{prefix}{PREFIX_SEPARATOR}{name}" if prefix else name


def strip_prefix(prefix: str, name: str) -> str:
    head = f"{prefix}{PREFIX_SEPARATOR}"
    return name[len(head):] if prefix and name.startswith(head) else name


# --- Executor ---

class MCPToolExecutor:
    """Opens a short-lived MCP session per operation."""

    def client_for(self, config: dict) -> Client:
        return Client(build_transport(config), timeout=config_timeout(config))

    async def test_connection(self, config: dict) -> int:
        """Connect, list the tools and return how many the server exposes."""
        return len(await self.list_tools(config))

    async def list_tools(self, config: dict, prefix: str = "") -> list[dict]:
        client = self.client_for(config)
        try:
            async with client:
                tools = await client.list_tools()
        except Exception as e:
            raise MCPClientError(f"mcp list tools failed: {e}") from e

        allowed = parse_allow_list(config)
        return [
            {
                "name": prefixed_name(prefix, tool.name),
                "description": tool.description or "",
                "inputSchema": tool.inputSchema,
            }
            for tool in tools
            if not allowed or tool.name in allowed
        ]

    async def call_tool(self, config: dict, tool_name: str, arguments: dict | None = None) -> dict:
        client = self.client_for(config)
        try:
            async with client:
                result = await client.call_tool(tool_name, arguments or {})
        except Exception as e:
            raise MCPClientError(f"mcp call {tool_name} failed: {e}") from e

        texts = [item.text for item in result.content if getattr(item, "text", None) is not None]
        logger.debug("MCP tool %s returned %d content items", tool_name, len(result.content))
        return {"content": texts, "structured": result.structured_content}


def get_tool_executor() -> MCPToolExecutor:
    return MCPToolExecutor()
