"""Tool API endpoints — MCP tool registry, discovery and execution."""

import logging

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from forgechat.api.chat import MAX_PAGE_SIZE
from forgechat.core.database import get_db
from forgechat.core.errors import AppError, ErrorCode, success_body
from forgechat.core.security import get_current_user
from forgechat.integrations.mcp_client import MCPClientError, MCPToolExecutor, get_tool_executor
from forgechat.models.tool import ToolType
from forgechat.models.user import User
from forgechat.services.tool_service import (
    InvalidExecutionParams,
    InvalidToolConfig,
    ToolNameExists,
    ToolNotFound,
    create_tool,
    delete_tool,
    execute_tool,
    get_tool,
    list_executions,
    list_server_tools,
    list_tools,
    serialize_tool,
    update_tool,
    validate_tool_config,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tools", tags=["tools"])

NAME_MAX_LENGTH = 100


# --- Schemas ---

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateToolRequest(_CamelModel):
    name: str
    display_name: str = Field(alias="displayName")
    description: str = ""
    tool_type: str = Field(ToolType.MCP, alias="toolType")
    config: dict
    auth_config: dict | None = Field(None, alias="authConfig")
    enabled: bool = True


class UpdateToolRequest(_CamelModel):
    display_name: str | None = Field(None, alias="displayName")
    description: str | None = None
    config: dict | None = None
    auth_config: dict | None = Field(None, alias="authConfig")
    enabled: bool | None = None


class ExecuteToolRequest(_CamelModel):
    tool_name: str = Field(alias="toolName")
    input_params: dict = Field(default_factory=dict, alias="inputParams")
    message_id: str | None = Field(None, alias="messageId")


class ConnectionCheckRequest(BaseModel):
    config: dict


def _require_admin(user: User, error_code: int) -> None:
    if user.role != "admin":
        raise AppError(403, error_code, "Admin role required")


def _check_page(page: int, page_size: int) -> None:
    if page < 1 or page_size < 1 or page_size > MAX_PAGE_SIZE:
        raise AppError(400, ErrorCode.TOOL_PARAMS, f"page must be >= 1 and page_size within 1..{MAX_PAGE_SIZE}")


# --- Registry Routes ---

@router.post("", status_code=status.HTTP_201_CREATED)
async def api_create_tool(
    body: CreateToolRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Register an MCP tool server. Admin only."""
    _require_admin(user, ErrorCode.TOOL_CREATE_FORBIDDEN)
    name, display_name = body.name.strip(), body.display_name.strip()
    if not name or not display_name:
        raise AppError(400, ErrorCode.TOOL_PARAMS, "name and displayName are required")
    if len(name) > NAME_MAX_LENGTH or len(display_name) > NAME_MAX_LENGTH:
        raise AppError(400, ErrorCode.TOOL_PARAMS, f"name and displayName must be at most {NAME_MAX_LENGTH} characters")
    try:
        tool = await create_tool(
            db, user.id, name, display_name, body.description, body.tool_type,
            body.config, body.auth_config, body.enabled,
        )
    except ToolNameExists as e:
        raise AppError(409, ErrorCode.TOOL_NAME_EXISTS, str(e))
    except InvalidToolConfig as e:
        raise AppError(400, ErrorCode.TOOL_CONFIG, str(e))
    return success_body(tool)


@router.get("")
async def api_list_tools(
    page: int = Query(1),
    page_size: int = Query(20),
    tool_type: str | None = Query(None, alias="toolType"),
    enabled: bool | None = Query(None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    _check_page(page, page_size)
    return success_body(await list_tools(db, page, page_size, tool_type, enabled))


@router.post("/test-connection")
async def api_test_connection(
    body: ConnectionCheckRequest,
    user: User = Depends(get_current_user),
    executor: MCPToolExecutor = Depends(get_tool_executor),
):
    """Connect to an MCP server and report how many tools it exposes."""
    _require_admin(user, ErrorCode.TOOL_CREATE_FORBIDDEN)
    try:
        validate_tool_config(ToolType.MCP, body.config)
        count = await executor.test_connection(body.config)
    except InvalidToolConfig as e:
        raise AppError(400, ErrorCode.TOOL_CONFIG, str(e))
    except MCPClientError as e:
        raise AppError(500, ErrorCode.EXTERNAL_SERVICE, str(e))
    return success_body({"toolCount": count})


@router.get("/executions")
async def api_list_executions(
    page: int = Query(1),
    page_size: int = Query(20),
    tool_id: str | None = Query(None, alias="toolId"),
    execution_status: str | None = Query(None, alias="status"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List tool executions. Non-admins only see their own."""
    _check_page(page, page_size)
    owner = None if user.role == "admin" else user.id
    return success_body(await list_executions(db, owner, page, page_size, tool_id, execution_status))


@router.get("/{tool_id}")
async def api_get_tool(
    tool_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        return success_body(serialize_tool(await get_tool(db, tool_id)))
    except ToolNotFound as e:
        raise AppError(404, ErrorCode.TOOL_NOT_FOUND, str(e))


@router.put("/{tool_id}")
async def api_update_tool(
    tool_id: str,
    body: UpdateToolRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Update a tool. Admin only."""
    _require_admin(user, ErrorCode.TOOL_UPDATE_FORBIDDEN)
    display_name = body.display_name.strip() if body.display_name is not None else None
    if display_name and len(display_name) > NAME_MAX_LENGTH:
        raise AppError(400, ErrorCode.TOOL_UPDATE_PARAMS, f"displayName must be at most {NAME_MAX_LENGTH} characters")
    try:
        tool = await update_tool(
            db, tool_id, display_name, body.description, body.config, body.auth_config, body.enabled,
        )
    except ToolNotFound as e:
        raise AppError(404, ErrorCode.UPDATE_TOOL_NOT_FOUND, str(e))
    except InvalidToolConfig as e:
        raise AppError(400, ErrorCode.TOOL_UPDATE_CONFIG, str(e))
    return success_body(tool)


@router.delete("/{tool_id}")
async def api_delete_tool(
    tool_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Delete a tool, or disable it when it has executions. Admin only."""
    _require_admin(user, ErrorCode.TOOL_DELETE_FORBIDDEN)
    try:
        removed = await delete_tool(db, tool_id)
    except ToolNotFound as e:
        raise AppError(404, ErrorCode.DELETE_TOOL_NOT_FOUND, str(e))
    return success_body({"deleted": removed}, "Tool deleted" if removed else "Tool disabled")


# --- MCP Routes ---

@router.get("/{tool_id}/server-tools")
async def api_list_server_tools(
    tool_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    executor: MCPToolExecutor = Depends(get_tool_executor),
):
    """List the tools the server exposes, with prefixed names."""
    try:
        tool = await get_tool(db, tool_id)
        return success_body(await list_server_tools(executor, tool))
    except ToolNotFound as e:
        raise AppError(404, ErrorCode.TOOL_NOT_FOUND, str(e))
    except MCPClientError as e:
        raise AppError(500, ErrorCode.EXTERNAL_SERVICE, str(e))


@router.post("/{tool_id}/execute")
async def api_execute_tool(
    tool_id: str,
    body: ExecuteToolRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    executor: MCPToolExecutor = Depends(get_tool_executor),
):
    """Call one server tool. Upstream failures come back as a failed execution."""
    if not body.tool_name.strip():
        raise AppError(400, ErrorCode.TOOL_EXECUTE_PARAMS, "toolName is required")
    try:
        tool = await get_tool(db, tool_id, enabled_only=True)
        execution = await execute_tool(
            db, executor, tool, user.id, body.tool_name.strip(), body.input_params, body.message_id,
        )
    except ToolNotFound as e:
        raise AppError(404, ErrorCode.EXECUTE_TOOL_NOT_FOUND, str(e))
    except InvalidExecutionParams as e:
        raise AppError(400, ErrorCode.TOOL_EXECUTE_PARAMS, str(e))
    return success_body(execution)
