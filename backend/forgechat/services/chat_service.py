"""Chat service — conversation and message management."""

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from forgechat.core.config import settings
from forgechat.models.conversation import (
    Conversation,
    ConversationStatus,
    Message,
    MessageStatus,
    SenderType,
)

logger = logging.getLogger(__name__)


class ChatServiceError(Exception):
    pass


class ConversationNotFound(ChatServiceError):
    def __init__(self, message: str = "Conversation not found"):
        super().__init__(message)


class MessageNotFound(ChatServiceError):
    def __init__(self, message: str = "Message not found"):
        super().__init__(message)


class NoUserPrompt(ChatServiceError):
    def __init__(self, message: str = "No user message found"):
        super().__init__(message)


class InvalidUserMessageId(ChatServiceError):
    def __init__(self, message: str = "userMessageId does not reference a user message in this conversation"):
        super().__init__(message)


# --- Conversation CRUD ---

async def create_conversation(
    db: AsyncSession, user_id: str, title: str = "", context: dict | None = None
) -> dict:
    """Create a new conversation."""
    conv = Conversation(
        user_id=user_id,
        title=title.strip() or settings.default_conversation_title,
        context=context,
        status=ConversationStatus.ACTIVE,
        total_messages=0,
    )
    db.add(conv)
    await db.commit()
    await db.refresh(conv)
    logger.info("Conversation %s created by user %s", conv.id, user_id)
    return serialize_conversation(conv)


async def list_conversations(
    db: AsyncSession,
    user_id: str,
    status: str = ConversationStatus.ACTIVE,
    page: int = 1,
    page_size: int = 20,
) -> dict:
    """List conversations ordered by most recent activity."""
    filters = (Conversation.user_id == user_id, Conversation.status == status)
    total = await db.scalar(select(func.count()).select_from(Conversation).where(*filters))
    result = await db.execute(
        select(Conversation)
        .where(*filters)
        .order_by(Conversation.last_message_at.desc().nulls_last(), Conversation.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    conversations = result.scalars().all()
    return {
        "data": [serialize_conversation(c) for c in conversations],
        "pagination": page_info(page, page_size, total or 0),
    }


async def get_conversation(db: AsyncSession, conversation_id: str, user_id: str) -> dict:
    """Get a single conversation with ownership check."""
    conv = await get_owned_conversation(db, conversation_id, user_id)
    return serialize_conversation(conv)


async def update_conversation(
    db: AsyncSession,
    conversation_id: str,
    user_id: str,
    title: str | None = None,
    context: dict | None = None,
) -> dict:
    """Update a conversation's title and/or context."""
    conv = await get_owned_conversation(db, conversation_id, user_id)
    if title:
        conv.title = title
    if context is not None:
        conv.context = context
    conv.updated_at = datetime.now(timezone.utc)
    await db.commit()
    await db.refresh(conv)
    return serialize_conversation(conv)


async def delete_conversation(db: AsyncSession, conversation_id: str, user_id: str) -> None:
    """Soft-delete a conversation; its messages stay in place."""
    conv = await get_owned_conversation(db, conversation_id, user_id)
    conv.status = ConversationStatus.DELETED
    await db.commit()
    logger.info("Conversation %s deleted by user %s", conversation_id, user_id)


async def set_title_if_default(db: AsyncSession, conversation_id: str, title: str) -> bool:
    """Write ``title`` only while the stored title is still empty or the default.

    Returns False when someone renamed the conversation in the meantime.
    """
    result = await db.execute(
        update(Conversation)
        .where(
            Conversation.id == conversation_id,
            or_(
                Conversation.title == "",
                Conversation.title.is_(None),
                Conversation.title == settings.default_conversation_title,
            ),
        )
        .values(title=title, updated_at=datetime.now(timezone.utc))
    )
    await db.commit()
    return result.rowcount > 0


def is_default_title(title: str | None) -> bool:
    return not title or not title.strip() or title == settings.default_conversation_title


# --- Messages ---

async def get_messages(
    db: AsyncSession, conversation_id: str, user_id: str, page: int = 1, page_size: int = 50
) -> dict:
    """Get a page of messages for a conversation in creation order."""
    await get_owned_conversation(db, conversation_id, user_id)
    filters = (Message.conversation_id == conversation_id, Message.deleted_at.is_(None))
    total = await db.scalar(select(func.count()).select_from(Message).where(*filters))
    result = await db.execute(
        select(Message)
        .where(*filters)
        .order_by(Message.created_at.asc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    messages = result.scalars().all()
    return {
        "data": [serialize_message(m) for m in messages],
        "pagination": page_info(page, page_size, total or 0),
    }


async def get_message(db: AsyncSession, conversation_id: str, message_id: str, user_id: str) -> dict:
    await get_owned_conversation(db, conversation_id, user_id)
    msg = await _get_message_in_conversation(db, conversation_id, message_id)
    if not msg:
        raise MessageNotFound()
    return serialize_message(msg)


async def save_user_message(
    db: AsyncSession,
    conversation_id: str,
    user_id: str,
    content: str,
    metadata: dict | None = None,
) -> dict:
    """Save a user message and update conversation metadata."""
    await get_owned_conversation(db, conversation_id, user_id)
    now = datetime.now(timezone.utc)
    msg = Message(
        conversation_id=conversation_id,
        sender_type=SenderType.USER,
        content=content,
        content_type="text",
        metadata_=metadata,
        status=MessageStatus.COMPLETED,
        created_at=now,
    )
    db.add(msg)

    await db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(
            total_messages=Conversation.total_messages + 1,
            last_message_at=now,
            updated_at=now,
        )
    )
    await db.commit()
    await db.refresh(msg)
    return serialize_message(msg)


async def resolve_user_message(
    db: AsyncSession, conversation_id: str, user_message_id: str | None = None
) -> Message:
    """Pick the user turn a reply should answer.

    An explicit id must name a user message of this conversation; otherwise
    the most recent user message is used.
    """
    if user_message_id:
        msg = await _get_message_in_conversation(db, conversation_id, user_message_id)
        if not msg or msg.sender_type != SenderType.USER:
            raise InvalidUserMessageId()
        return msg

    result = await db.execute(
        select(Message)
        .where(
            Message.conversation_id == conversation_id,
            Message.sender_type == SenderType.USER,
            Message.deleted_at.is_(None),
        )
        .order_by(Message.created_at.desc())
        .limit(1)
    )
    msg = result.scalar_one_or_none()
    if not msg:
        raise NoUserPrompt()
    return msg


async def get_regenerate_source(
    db: AsyncSession, conversation_id: str, message_id: str
) -> Message:
    """Return the user message that prompted assistant message ``message_id``."""
    msg = await _get_message_in_conversation(db, conversation_id, message_id)
    if not msg or msg.sender_type != SenderType.AI:
        raise MessageNotFound("Assistant message not found")
    if not msg.parent_message_id:
        raise NoUserPrompt("Assistant message has no parent user message")
    return await resolve_user_message(db, conversation_id, msg.parent_message_id)


async def load_history(db: AsyncSession, conversation_id: str) -> list[Message]:
    result = await db.execute(
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.asc())
    )
    return list(result.scalars().all())


# --- Helpers ---

async def get_owned_conversation(
    db: AsyncSession, conversation_id: str, user_id: str
) -> Conversation:
    """Fetch a live conversation with ownership check."""
    result = await db.execute(
        select(Conversation).where(
            Conversation.id == conversation_id,
            Conversation.user_id == user_id,
            Conversation.status != ConversationStatus.DELETED,
        )
    )
    conv = result.scalar_one_or_none()
    if not conv:
        raise ConversationNotFound()
    return conv


async def _get_message_in_conversation(
    db: AsyncSession, conversation_id: str, message_id: str
) -> Message | None:
    result = await db.execute(
        select(Message).where(
            Message.id == message_id,
            Message.conversation_id == conversation_id,
            Message.deleted_at.is_(None),
        )
    )
    return result.scalar_one_or_none()


def page_info(page: int, page_size: int, total: int) -> dict:
    return {
        "page": page,
        "pageSize": page_size,
        "total": total,
        "totalPage": (total + page_size - 1) // page_size,
    }


def iso_or_none(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def serialize_conversation(conv: Conversation) -> dict:
    return {
        "id": conv.id,
        "title": conv.title,
        "context": conv.context,
        "status": conv.status,
        "totalMessages": conv.total_messages,
        "lastMessageAt": iso_or_none(conv.last_message_at),
        "createdAt": iso_or_none(conv.created_at),
        "updatedAt": iso_or_none(conv.updated_at),
    }


def serialize_message(msg: Message) -> dict[str, Any]:
    return {
        "id": msg.id,
        "conversationId": msg.conversation_id,
        "parentMessageId": msg.parent_message_id,
        "senderType": "assistant" if msg.sender_type == SenderType.AI else msg.sender_type,
        "content": msg.content,
        "contentType": msg.content_type,
        "metadata": msg.metadata_,
        "tokenCount": msg.token_count,
        "processingTimeMs": msg.processing_time_ms,
        "status": msg.status,
        "errorMessage": msg.error_message,
        "createdAt": iso_or_none(msg.created_at),
    }
