import pytest
from expects import be_a, be_none, contain, equal, expect, raise_error
from fastmcp import Client, FastMCP
from fastmcp.client.transports import SSETransport, StdioTransport, StreamableHttpTransport

from forgechat.integrations.mcp_client import (
    MCPClientError,
    MCPConfigError,
    MCPToolExecutor,
    build_transport,
    config_timeout,
    maybe_bearer,
    parse_allow_list,
    parse_env,
    parse_headers,
    strip_prefix,
    validate_mcp_config,
)


def _ops_server() -> FastMCP:
    server = FastMCP("ops")

    @server.tool
    def add(a: int, b: int) -> int:
        """Add two numbers."""
        return a + b

    @server.tool
    def restart(service: str) -> str:
        """Restart a service."""
        return f"restarted {service}"

    return server


class InMemoryExecutor(MCPToolExecutor):
    def __init__(self, server: FastMCP):
        self.server = server

    def client_for(self, config):
        return Client(self.server)


# --- Config parsing ---

def test_bearer_prefix_is_added_once():
    expect(maybe_bearer("abc")).to(equal("Bearer abc"))
    expect(maybe_bearer("bearer abc")).to(equal("bearer abc"))
    expect(maybe_bearer("")).to(equal(""))


def test_header_lines_without_a_colon_are_skipped():
    headers = parse_headers("X-Team: sre\n\nnot-a-header\nX-Trace :  on ")

    expect(headers).to(equal({"X-Team": "sre", "X-Trace": "on"}))


def test_env_accepts_newlines_and_semicolons():
    expect(parse_env("A=1;B=two\nC=")).to(equal({"A": "1", "B": "two", "C": ""}))


def test_allow_list_and_timeout_defaults():
    expect(parse_allow_list({"allowList": " add, ,restart "})).to(equal({"add", "restart"}))
    expect(parse_allow_list({})).to(equal(set()))
    expect(config_timeout({})).to(equal(15))
    expect(config_timeout({"timeout": "30"})).to(equal(30))
    expect(config_timeout({"timeout": -1})).to(equal(15))


@pytest.mark.parametrize("config, message", [
    ({}, "missing protocol"),
    ({"protocol": "grpc"}, "unsupported mcp protocol"),
    ({"protocol": "sse"}, "missing endpoint"),
    ({"protocol": "http_streamable", "endpoint": "  "}, "missing endpoint"),
    ({"protocol": "stdio"}, "missing command"),
])
def test_invalid_configs_are_rejected(config, message):
    expect(lambda: validate_mcp_config(config)).to(raise_error(MCPConfigError, contain(message)))


def test_transport_follows_protocol():
    sse = build_transport({"protocol": "sse", "endpoint": "http://mcp.test/sse", "authorization": "tok"})
    expect(sse).to(be_a(SSETransport))
    expect(sse.headers).to(equal({"Authorization": "Bearer tok"}))

    http = build_transport({"protocol": "http_streamable", "endpoint": "http://mcp.test/mcp"})
    expect(http).to(be_a(StreamableHttpTransport))

    stdio = build_transport({"protocol": "stdio", "command": "uvx", "args": "mcp-server-time --local"})
    expect(stdio).to(be_a(StdioTransport))
    expect(stdio.args).to(equal(["mcp-server-time", "--local"]))


def test_prefix_is_stripped_only_when_present():
    expect(strip_prefix("ops", "ops__restart")).to(equal("restart"))
    expect(strip_prefix("ops", "restart")).to(equal("restart"))
    expect(strip_prefix("", "ops__restart")).to(equal("ops__restart"))


# --- Executor against an in-memory server ---

@pytest.mark.asyncio
async def test_list_tools_applies_prefix_and_allow_list():
    executor = InMemoryExecutor(_ops_server())

    tools = await executor.list_tools({"allowList": "restart"}, prefix="ops")

    expect([t["name"] for t in tools]).to(equal(["ops__restart"]))
    expect(tools[0]["description"]).to(equal("Restart a service."))
    expect(tools[0]["inputSchema"]["properties"]).to(contain("service"))


@pytest.mark.asyncio
async def test_connection_check_counts_tools():
    expect(await InMemoryExecutor(_ops_server()).test_connection({})).to(equal(2))


@pytest.mark.asyncio
async def test_call_tool_returns_text_content():
    executor = InMemoryExecutor(_ops_server())

    result = await executor.call_tool({}, "add", {"a": 2, "b": 3})

    expect(result["content"]).to(equal(["5"]))


@pytest.mark.asyncio
async def test_unknown_tool_is_wrapped_in_client_error():
    executor = InMemoryExecutor(_ops_server())

    with pytest.raises(MCPClientError) as excinfo:
        await executor.call_tool({}, "reboot_cluster", {})

    expect(str(excinfo.value)).to(contain("reboot_cluster"))
    expect(excinfo.value.__cause__).not_to(be_none)
