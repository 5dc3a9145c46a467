"""Tool service — MCP tool registry and execution log."""

import logging
import time
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from forgechat.integrations.mcp_client import (
    MCPClientError,
    MCPConfigError,
    MCPToolExecutor,
    parse_allow_list,
    strip_prefix,
    validate_mcp_config,
)
from forgechat.models.conversation import Message
from forgechat.models.tool import ExecutionStatus, Tool, ToolExecution, ToolType
from forgechat.services.chat_service import iso_or_none, page_info

logger = logging.getLogger(__name__)


class ToolServiceError(Exception):
    pass


class ToolNotFound(ToolServiceError):
    def __init__(self, message: str = "Tool not found"):
        super().__init__(message)


class ToolNameExists(ToolServiceError):
    def __init__(self, message: str = "Tool name already exists"):
        super().__init__(message)


class InvalidToolConfig(ToolServiceError):
    pass


class InvalidExecutionParams(ToolServiceError):
    pass


class ToolNotAllowed(InvalidExecutionParams):
    pass


def validate_tool_config(tool_type: str, config: dict) -> None:
    if tool_type not in ToolType.ALL:
        raise InvalidToolConfig(f"unsupported tool type: {tool_type}")
    try:
        validate_mcp_config(config)
    except MCPConfigError as e:
        raise InvalidToolConfig(str(e)) from e


# --- Tool CRUD ---

async def create_tool(
    db: AsyncSession,
    created_by: str,
    name: str,
    display_name: str,
    description: str = "",
    tool_type: str = ToolType.MCP,
    config: dict | None = None,
    auth_config: dict | None = None,
    enabled: bool = True,
) -> dict:
    existing = await db.scalar(select(func.count()).select_from(Tool).where(Tool.name == name))
    if existing:
        raise ToolNameExists()
    config = config or {}
    validate_tool_config(tool_type, config)

    tool = Tool(
        name=name,
        display_name=display_name,
        description=description,
        tool_type=tool_type,
        config=config,
        auth_config=auth_config,
        enabled=enabled,
        created_by=created_by,
    )
    db.add(tool)
    await db.commit()
    await db.refresh(tool)
    logger.info("Tool %s (%s) registered by user %s", tool.name, tool.id, created_by)
    return serialize_tool(tool)


async def list_tools(
    db: AsyncSession,
    page: int = 1,
    page_size: int = 20,
    tool_type: str | None = None,
    enabled: bool | None = None,
) -> dict:
    filters = []
    if tool_type:
        filters.append(Tool.tool_type == tool_type)
    if enabled is not None:
        filters.append(Tool.enabled == enabled)

    total = await db.scalar(select(func.count()).select_from(Tool).where(*filters))
    result = await db.execute(
        select(Tool)
        .where(*filters)
        .order_by(Tool.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return {
        "data": [serialize_tool(t) for t in result.scalars().all()],
        "pagination": page_info(page, page_size, total or 0),
    }


async def get_tool(db: AsyncSession, tool_id: str, enabled_only: bool = False) -> Tool:
    query = select(Tool).where(Tool.id == tool_id)
    if enabled_only:
        query = query.where(Tool.enabled.is_(True))
    tool = (await db.execute(query)).scalar_one_or_none()
    if not tool:
        raise ToolNotFound("Tool not found or disabled" if enabled_only else "Tool not found")
    return tool


async def update_tool(
    db: AsyncSession,
    tool_id: str,
    display_name: str | None = None,
    description: str | None = None,
    config: dict | None = None,
    auth_config: dict | None = None,
    enabled: bool | None = None,
) -> dict:
    tool = await get_tool(db, tool_id)
    if config is not None:
        validate_tool_config(tool.tool_type, config)
        tool.config = config
    if display_name:
        tool.display_name = display_name
    if description:
        tool.description = description
    if auth_config is not None:
        tool.auth_config = auth_config
    if enabled is not None:
        tool.enabled = enabled
    tool.updated_at = datetime.now(timezone.utc)
    await db.commit()
    await db.refresh(tool)
    return serialize_tool(tool)


async def delete_tool(db: AsyncSession, tool_id: str) -> bool:
    """Delete a tool, or only disable it when executions reference it.

    Returns True when the row was removed.
    """
    tool = await get_tool(db, tool_id)
    executions = await db.scalar(
        select(func.count()).select_from(ToolExecution).where(ToolExecution.tool_id == tool_id)
    )
    if executions:
        tool.enabled = False
        await db.commit()
        logger.info("Tool %s has %d executions; disabled instead of deleted", tool_id, executions)
        return False
    await db.delete(tool)
    await db.commit()
    logger.info("Tool %s deleted", tool_id)
    return True


# --- MCP server access ---

async def list_server_tools(executor: MCPToolExecutor, tool: Tool) -> list[dict]:
    return await executor.list_tools(tool.config, prefix=tool.name)


async def execute_tool(
    db: AsyncSession,
    executor: MCPToolExecutor,
    tool: Tool,
    user_id: str,
    tool_name: str,
    input_params: dict,
    message_id: str | None = None,
) -> dict:
    """Call one server tool and record the attempt.

    Upstream failures settle the execution as failed; they are not raised.
    """
    server_tool = strip_prefix(tool.name, tool_name)
    allowed = parse_allow_list(tool.config)
    if allowed and server_tool not in allowed:
        raise ToolNotAllowed(f"tool {server_tool} is not in the allow list of {tool.name}")
    if message_id and not await db.scalar(select(Message.id).where(Message.id == message_id)):
        raise InvalidExecutionParams("messageId does not reference a message")

    execution = ToolExecution(
        tool_id=tool.id,
        message_id=message_id,
        user_id=user_id,
        tool_name=server_tool,
        input_params=input_params,
        status=ExecutionStatus.PENDING,
    )
    db.add(execution)
    await db.commit()

    started = time.monotonic()
    try:
        output = await executor.call_tool(tool.config, server_tool, input_params)
    except MCPClientError as e:
        logger.warning("Tool %s call %s failed: %s", tool.name, server_tool, e)
        execution.status = ExecutionStatus.FAILED
        execution.error_message = str(e)
    else:
        execution.status = ExecutionStatus.SUCCESS
        execution.output_result = output
    execution.execution_time_ms = int((time.monotonic() - started) * 1000)
    await db.commit()
    await db.refresh(execution)
    return serialize_execution(execution, tool)


async def list_executions(
    db: AsyncSession,
    user_id: str | None,
    page: int = 1,
    page_size: int = 20,
    tool_id: str | None = None,
    status: str | None = None,
) -> dict:
    """List executions newest first; ``user_id=None`` lists everyone's."""
    filters = []
    if user_id is not None:
        filters.append(ToolExecution.user_id == user_id)
    if tool_id:
        filters.append(ToolExecution.tool_id == tool_id)
    if status:
        filters.append(ToolExecution.status == status)

    total = await db.scalar(select(func.count()).select_from(ToolExecution).where(*filters))
    result = await db.execute(
        select(ToolExecution, Tool)
        .join(Tool, Tool.id == ToolExecution.tool_id)
        .where(*filters)
        .order_by(ToolExecution.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return {
        "data": [serialize_execution(execution, tool) for execution, tool in result.all()],
        "pagination": page_info(page, page_size, total or 0),
    }


# --- Serialization ---

def serialize_tool(tool: Tool) -> dict[str, Any]:
    return {
        "id": tool.id,
        "name": tool.name,
        "displayName": tool.display_name,
        "description": tool.description,
        "toolType": tool.tool_type,
        "config": tool.config,
        "authConfig": tool.auth_config,
        "enabled": tool.enabled,
        "createdBy": tool.created_by,
        "createdAt": iso_or_none(tool.created_at),
        "updatedAt": iso_or_none(tool.updated_at),
    }


def serialize_execution(execution: ToolExecution, tool: Tool | None = None) -> dict[str, Any]:
    data = {
        "id": execution.id,
        "toolId": execution.tool_id,
        "messageId": execution.message_id,
        "userId": execution.user_id,
        "toolName": execution.tool_name,
        "inputParams": execution.input_params,
        "outputResult": execution.output_result,
        "executionTimeMs": execution.execution_time_ms,
        "status": execution.status,
        "errorMessage": execution.error_message,
        "createdAt": iso_or_none(execution.created_at),
    }
    if tool is not None:
        data["tool"] = {
            "id": tool.id,
            "name": tool.name,
            "displayName": tool.display_name,
            "toolType": tool.tool_type,
        }
    return data
