"""Chat API endpoints — conversation management and AI streaming."""

import asyncio
import logging
import uuid

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from forgechat.core.database import get_db
from forgechat.core.errors import AppError, ErrorCode, success_body
from forgechat.core.security import get_current_user
from forgechat.integrations.model_driver import ModelDriver, get_model_driver
from forgechat.models.conversation import ConversationStatus
from forgechat.models.user import User
from forgechat.services.chat_service import (
    ConversationNotFound,
    InvalidUserMessageId,
    MessageNotFound,
    NoUserPrompt,
    create_conversation,
    delete_conversation,
    get_conversation,
    get_message,
    get_messages,
    get_owned_conversation,
    get_regenerate_source,
    list_conversations,
    save_user_message,
    update_conversation,
)
from forgechat.services.sse import SSE_HEADERS, QueueSink, UnsupportedSink
from forgechat.services.stream_service import PlaceholderCreateError, StreamOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])

MAX_PAGE_SIZE = 100
DISCONNECT_POLL_SEC = 1.0

# Stream workers outlive their request handler; keep references until done
_stream_tasks: set[asyncio.Task] = set()


def get_stream_orchestrator(driver: ModelDriver = Depends(get_model_driver)) -> StreamOrchestrator:
    return StreamOrchestrator(driver)


# --- Schemas ---

class CreateConversationRequest(BaseModel):
    title: str = ""
    context: dict | None = None


class UpdateConversationRequest(BaseModel):
    title: str | None = None
    context: dict | None = None


class SendMessageRequest(BaseModel):
    content: str
    metadata: dict | None = None


def _check_page(page: int, page_size: int, error_code: int) -> None:
    if page < 1 or page_size < 1 or page_size > MAX_PAGE_SIZE:
        raise AppError(400, error_code, f"page must be >= 1 and page_size within 1..{MAX_PAGE_SIZE}")


# --- Conversation Routes ---

@router.get("/conversations")
async def api_list_conversations(
    page: int = Query(1),
    page_size: int = Query(20),
    conversation_status: str = Query(ConversationStatus.ACTIVE, alias="status"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List conversations for the current user, most recent activity first."""
    _check_page(page, page_size, ErrorCode.CONVERSATION_PARAMS)
    if conversation_status not in (ConversationStatus.ACTIVE, ConversationStatus.ARCHIVED):
        raise AppError(400, ErrorCode.CONVERSATION_PARAMS, "status must be active or archived")
    result = await list_conversations(db, user.id, conversation_status, page, page_size)
    return success_body(result)


@router.post("/conversations", status_code=status.HTTP_201_CREATED)
async def api_create_conversation(
    body: CreateConversationRequest | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Create a new conversation."""
    body = body or CreateConversationRequest()
    if len(body.title) > 200:
        raise AppError(400, ErrorCode.CONVERSATION_PARAMS, "title must be at most 200 characters")
    return success_body(await create_conversation(db, user.id, body.title, body.context))


@router.get("/conversations/{conversation_id}")
async def api_get_conversation(
    conversation_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get a single conversation."""
    try:
        return success_body(await get_conversation(db, conversation_id, user.id))
    except ConversationNotFound as e:
        raise AppError(404, ErrorCode.CONVERSATION_NOT_FOUND, str(e))


@router.put("/conversations/{conversation_id}")
async def api_update_conversation(
    conversation_id: str,
    body: UpdateConversationRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Update a conversation's title and/or context."""
    title = body.title.strip() if body.title is not None else None
    if body.title is not None and not title:
        raise AppError(400, ErrorCode.CONVERSATION_UPDATE_PARAMS, "title must not be empty")
    if title and len(title) > 200:
        raise AppError(400, ErrorCode.CONVERSATION_UPDATE_PARAMS, "title must be at most 200 characters")
    if title is None and body.context is None:
        raise AppError(400, ErrorCode.CONVERSATION_UPDATE_PARAMS, "nothing to update")
    try:
        return success_body(await update_conversation(db, conversation_id, user.id, title, body.context))
    except ConversationNotFound as e:
        raise AppError(404, ErrorCode.UPDATE_CONVERSATION_NOT_FOUND, str(e))


@router.delete("/conversations/{conversation_id}")
async def api_delete_conversation(
    conversation_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Delete a conversation."""
    try:
        await delete_conversation(db, conversation_id, user.id)
    except ConversationNotFound as e:
        raise AppError(404, ErrorCode.CONVERSATION_NOT_FOUND, str(e))
    return success_body(None, "Conversation deleted")


# --- Message Routes ---

@router.get("/conversations/{conversation_id}/messages")
async def api_get_messages(
    conversation_id: str,
    page: int = Query(1),
    page_size: int = Query(50),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get messages for a conversation in creation order."""
    _check_page(page, page_size, ErrorCode.MESSAGE_PARAMS)
    try:
        return success_body(await get_messages(db, conversation_id, user.id, page, page_size))
    except ConversationNotFound as e:
        raise AppError(404, ErrorCode.MESSAGES_CONVERSATION_NOT_FOUND, str(e))


@router.post("/conversations/{conversation_id}/messages", status_code=status.HTTP_201_CREATED)
async def api_send_message(
    conversation_id: str,
    body: SendMessageRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Store a user message. The reply is produced by the stream route."""
    content = body.content.strip()
    if not content:
        raise AppError(400, ErrorCode.MESSAGE_PARAMS, "Message cannot be empty")
    try:
        return success_body(await save_user_message(db, conversation_id, user.id, content, body.metadata))
    except ConversationNotFound as e:
        raise AppError(404, ErrorCode.MESSAGES_CONVERSATION_NOT_FOUND, str(e))


@router.get("/conversations/{conversation_id}/messages/{message_id}")
async def api_get_message(
    conversation_id: str,
    message_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        return success_body(await get_message(db, conversation_id, message_id, user.id))
    except ConversationNotFound as e:
        raise AppError(404, ErrorCode.MESSAGES_CONVERSATION_NOT_FOUND, str(e))
    except MessageNotFound as e:
        raise AppError(404, ErrorCode.MESSAGE_NOT_FOUND, str(e))


# --- Streaming Routes ---

@router.get("/conversations/{conversation_id}/stream")
async def api_stream_reply(
    conversation_id: str,
    request: Request,
    user_message_id: str | None = Query(None, alias="userMessageId"),
    user: User = Depends(get_current_user),
    orchestrator: StreamOrchestrator = Depends(get_stream_orchestrator),
):
    """Stream the assistant reply to the latest (or given) user message as SSE."""
    if user_message_id is not None:
        try:
            uuid.UUID(user_message_id)
        except ValueError:
            raise AppError(400, ErrorCode.BAD_USER_MESSAGE_ID, "userMessageId is not a valid id")
    return await _open_stream(request, orchestrator, user.id, conversation_id, user_message_id)


@router.post("/conversations/{conversation_id}/messages/{message_id}/regenerate")
async def api_regenerate_reply(
    conversation_id: str,
    message_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    orchestrator: StreamOrchestrator = Depends(get_stream_orchestrator),
):
    """Stream a fresh reply to the user message behind an assistant message."""
    try:
        await get_owned_conversation(db, conversation_id, user.id)
        source = await get_regenerate_source(db, conversation_id, message_id)
    except ConversationNotFound as e:
        raise AppError(404, ErrorCode.REGENERATE_CONVERSATION_NOT_FOUND, str(e))
    except MessageNotFound as e:
        raise AppError(404, ErrorCode.AI_MESSAGE_NOT_FOUND, str(e))
    except (NoUserPrompt, InvalidUserMessageId) as e:
        raise AppError(404, ErrorCode.PARENT_MESSAGE_MISSING, str(e))
    return await _open_stream(request, orchestrator, user.id, conversation_id, source.id)


async def _open_stream(
    request: Request,
    orchestrator: StreamOrchestrator,
    user_id: str,
    conversation_id: str,
    user_message_id: str | None,
) -> StreamingResponse:
    sink = QueueSink()
    try:
        prepared = await orchestrator.prepare(user_id, conversation_id, user_message_id, sink)
    except ConversationNotFound as e:
        raise AppError(404, ErrorCode.STREAM_CONVERSATION_NOT_FOUND, str(e))
    except InvalidUserMessageId as e:
        raise AppError(400, ErrorCode.BAD_USER_MESSAGE_ID, str(e))
    except NoUserPrompt as e:
        raise AppError(404, ErrorCode.USER_MESSAGE_NOT_FOUND, str(e))
    except UnsupportedSink as e:
        raise AppError(500, ErrorCode.SINK_NOT_FLUSHABLE, str(e))
    except PlaceholderCreateError as e:
        raise AppError(500, ErrorCode.PLACEHOLDER_CREATE_FAILED, str(e))
    except SQLAlchemyError:
        logger.exception("Store error while opening stream for conversation %s", conversation_id)
        raise AppError(500, ErrorCode.DATABASE_ERROR, "Database error")

    cancel_event = asyncio.Event()
    worker = asyncio.create_task(orchestrator.run(prepared, cancel_event))
    _stream_tasks.add(worker)
    worker.add_done_callback(_stream_tasks.discard)
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event, worker))
    _stream_tasks.add(watcher)
    watcher.add_done_callback(_stream_tasks.discard)

    async def body():
        try:
            async for frame in sink.frames():
                yield frame
        finally:
            # Reader gone, either after the final frame or on disconnect
            sink.detach()
            cancel_event.set()

    return StreamingResponse(body(), media_type="text/event-stream", headers=SSE_HEADERS)


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event, worker: asyncio.Task) -> None:
    while not worker.done() and not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected from %s", request.url.path)
            cancel_event.set()
            return
        await asyncio.wait({worker}, timeout=DISCONNECT_POLL_SEC)
