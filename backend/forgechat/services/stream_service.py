"""Streaming reply orchestration.

One ``StreamOrchestrator.prepare`` + ``run`` pair serves one stream request:

- ``prepare`` does the work that can still fail with a JSON error: owner
  check, user turn resolution, sink check, superseding any in-flight reply
  and inserting the ``streaming`` placeholder.
- ``run`` owns the SSE body: ``message_start``, model deltas multiplexed with
  heartbeats and the cancel signal, the terminal event, the optional title
  event and ``done``.

Terminal writes are conditional on the row still being ``streaming`` so a
superseded stream never overwrites the state its successor left behind.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from forgechat.core.config import settings
from forgechat.core.database import async_session
from forgechat.integrations.model_driver import ModelDriver, StreamChunk
from forgechat.models.conversation import Conversation, Message, MessageStatus, SenderType
from forgechat.services import chat_service
from forgechat.services.chat_service import ChatServiceError
from forgechat.services.context_builder import build_context_messages
from forgechat.services.sse import SSEWriter
from forgechat.services.title_service import generate_title

logger = logging.getLogger(__name__)

SUPERSEDED_ERROR = "superseded by new stream"
CLIENT_CANCELED_ERROR = "client canceled"
SERVER_CANCELED_ERROR = "server canceled"


class PlaceholderCreateError(ChatServiceError):
    def __init__(self, message: str = "Failed to create assistant message"):
        super().__init__(message)


@dataclass
class PreparedStream:
    conversation_id: str
    conversation_title: str
    user_message_id: str
    user_content: str
    message_id: str
    writer: SSEWriter
    started_at: float
    # Cumulative text already sent as content_delta
    delivered: str = ""


@dataclass
class StreamOutcome:
    status: str
    content: str = ""
    token_count: int = 0
    finish_reason: str = ""
    error: str | None = None
    processing_time_ms: int = 0


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def supersede_streaming_replies(db: AsyncSession, conversation_id: str) -> int:
    """Fail every in-flight assistant reply of the conversation."""
    result = await db.execute(
        update(Message)
        .where(
            Message.conversation_id == conversation_id,
            Message.sender_type == SenderType.AI,
            Message.status == MessageStatus.STREAMING,
        )
        .values(
            status=MessageStatus.FAILED,
            error_message=SUPERSEDED_ERROR,
            updated_at=datetime.now(timezone.utc),
        )
    )
    return result.rowcount or 0


class StreamOrchestrator:
    def __init__(
        self,
        driver: ModelDriver,
        session_factory: async_sessionmaker = async_session,
        heartbeat_sec: float | None = None,
        max_history_turns: int | None = None,
        system_prompt: str | None = None,
        title_deadline_sec: float | None = None,
    ):
        self.driver = driver
        self.session_factory = session_factory
        self.heartbeat_sec = heartbeat_sec or settings.sse_heartbeat_sec
        self.max_history_turns = max_history_turns or settings.max_history_turns
        self.system_prompt = settings.system_prompt if system_prompt is None else system_prompt
        self.title_deadline_sec = title_deadline_sec or settings.title_deadline_sec

    # --- Pre-stream ---

    async def prepare(
        self,
        user_id: str,
        conversation_id: str,
        user_message_id: str | None,
        sink,
    ) -> PreparedStream:
        """Validate the request and insert the reply placeholder.

        Raises ``ConversationNotFound``, ``InvalidUserMessageId``,
        ``NoUserPrompt``, ``UnsupportedSink`` or ``PlaceholderCreateError``.
        Nothing has been written to the sink when any of them is raised.
        """
        async with self.session_factory() as db:
            conv = await chat_service.get_owned_conversation(db, conversation_id, user_id)
            user_msg = await chat_service.resolve_user_message(db, conversation_id, user_message_id)
            conversation_title = conv.title
            user_msg_id, user_content = user_msg.id, user_msg.content

        writer = SSEWriter(sink)

        try:
            async with self.session_factory() as db:
                superseded = await supersede_streaming_replies(db, conversation_id)
                placeholder = Message(
                    conversation_id=conversation_id,
                    parent_message_id=user_msg_id,
                    sender_type=SenderType.AI,
                    content="",
                    content_type="text",
                    status=MessageStatus.STREAMING,
                )
                db.add(placeholder)
                await db.commit()
                message_id = placeholder.id
        except SQLAlchemyError as e:
            logger.exception("Failed to create reply placeholder in conversation %s", conversation_id)
            raise PlaceholderCreateError() from e

        if superseded:
            logger.info(
                "Superseded %d streaming repl%s in conversation %s",
                superseded, "y" if superseded == 1 else "ies", conversation_id,
            )

        return PreparedStream(
            conversation_id=conversation_id,
            conversation_title=conversation_title,
            user_message_id=user_msg_id,
            user_content=user_content,
            message_id=message_id,
            writer=writer,
            started_at=time.monotonic(),
        )

    # --- Stream body ---

    async def run(self, prepared: PreparedStream, cancel_event: asyncio.Event) -> StreamOutcome:
        """Drive one reply to a terminal state, then close the sink."""
        writer = prepared.writer
        try:
            return await self._run(prepared, cancel_event)
        except asyncio.CancelledError:
            # Server shutdown; the row must not stay streaming
            await self._finalize(prepared, StreamOutcome(
                status=MessageStatus.PARTIAL, content=prepared.delivered, error=SERVER_CANCELED_ERROR,
            ))
            raise
        except Exception as e:
            logger.exception("Stream for message %s aborted", prepared.message_id)
            outcome = StreamOutcome(
                status=MessageStatus.FAILED, content=prepared.delivered, error=f"internal error: {e}",
            )
            await self._finish_failed(prepared, outcome)
            return outcome
        finally:
            await writer.close()

    async def _run(self, prepared: PreparedStream, cancel_event: asyncio.Event) -> StreamOutcome:
        writer = prepared.writer
        await writer.send("message_start", {"messageId": prepared.message_id, "timestamp": _now_iso()})

        try:
            async with self.session_factory() as db:
                history = await chat_service.load_history(db, prepared.conversation_id)
            context = build_context_messages(
                prepared.conversation_id,
                history,
                max_history_turns=self.max_history_turns,
                system_prompt=self.system_prompt,
                up_to_message_id=prepared.user_message_id,
            )
        except (SQLAlchemyError, ChatServiceError) as e:
            logger.exception("Failed to build context for message %s", prepared.message_id)
            outcome = StreamOutcome(status=MessageStatus.FAILED, error=f"failed to build context: {e}")
            await self._finish_failed(prepared, outcome)
            return outcome

        outcome = await self._pump(prepared, context, cancel_event)

        if outcome.status == MessageStatus.PARTIAL:
            # Client is gone; record what it saw and emit nothing more
            await self._finalize(prepared, outcome)
            logger.info(
                "Stream for message %s canceled by client after %d chars",
                prepared.message_id, len(outcome.content),
            )
            return outcome

        if outcome.status == MessageStatus.FAILED:
            await self._finish_failed(prepared, outcome)
            return outcome

        applied = await self._finalize(prepared, outcome)
        if not applied:
            # A newer stream took over this conversation while we were generating
            outcome = StreamOutcome(
                status=MessageStatus.FAILED,
                content=outcome.content,
                error=SUPERSEDED_ERROR,
                processing_time_ms=outcome.processing_time_ms,
            )
            await writer.send("ai_error", self._error_payload(prepared, outcome))
            await writer.send("done", {})
            return outcome

        await writer.send("message_complete", {
            "messageId": prepared.message_id,
            "content": outcome.content,
            "tokenCount": outcome.token_count,
            "processingTimeMs": outcome.processing_time_ms,
            "finishReason": outcome.finish_reason,
            "timestamp": _now_iso(),
        })

        if chat_service.is_default_title(prepared.conversation_title):
            await self._update_title(prepared, outcome.content, cancel_event)

        if not cancel_event.is_set():
            await writer.send("done", {})
        return outcome

    async def _pump(self, prepared: PreparedStream, context, cancel_event: asyncio.Event) -> StreamOutcome:
        """Forward model chunks as ``content_delta`` events until a terminal state.

        Heartbeats go out every ``heartbeat_sec`` while waiting. Cancellation
        abandons the pending read, which closes the upstream request.
        """
        writer = prepared.writer
        try:
            stream = self.driver.generate_stream(context)
        except Exception as e:
            logger.exception("Model stream for message %s failed to open", prepared.message_id)
            return StreamOutcome(status=MessageStatus.FAILED, error=str(e))

        content = ""
        next_chunk: asyncio.Future | None = None
        canceled = asyncio.ensure_future(cancel_event.wait())
        next_heartbeat = time.monotonic() + self.heartbeat_sec

        try:
            while True:
                if next_chunk is None:
                    next_chunk = asyncio.ensure_future(anext(stream))

                timeout = max(0.0, next_heartbeat - time.monotonic())
                done, _ = await asyncio.wait(
                    {next_chunk, canceled}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )

                if canceled in done:
                    return StreamOutcome(status=MessageStatus.PARTIAL, content=content, error=CLIENT_CANCELED_ERROR)

                if not done:
                    try:
                        await writer.ping()
                    except OSError as e:
                        logger.debug("Heartbeat for message %s not written: %s", prepared.message_id, e)
                    next_heartbeat = time.monotonic() + self.heartbeat_sec
                    continue

                task, next_chunk = next_chunk, None
                try:
                    chunk: StreamChunk = task.result()
                except StopAsyncIteration:
                    logger.warning("Model stream for message %s ended without a final chunk", prepared.message_id)
                    return StreamOutcome(status=MessageStatus.COMPLETED, content=content)
                except Exception as e:
                    logger.exception("Model stream for message %s raised", prepared.message_id)
                    return StreamOutcome(status=MessageStatus.FAILED, content=content, error=str(e))

                if chunk.error:
                    return StreamOutcome(
                        status=MessageStatus.FAILED,
                        content=chunk.content or content,
                        error=chunk.error,
                    )

                if chunk.delta:
                    content = chunk.content or content + chunk.delta
                    prepared.delivered = content
                    await writer.send("content_delta", {
                        "messageId": prepared.message_id,
                        "delta": chunk.delta,
                        "content": content,
                        "timestamp": _now_iso(),
                    })

                if chunk.finished:
                    return StreamOutcome(
                        status=MessageStatus.COMPLETED,
                        content=chunk.content or content,
                        token_count=chunk.token_count,
                        finish_reason=chunk.finish_reason,
                    )
        finally:
            canceled.cancel()
            if next_chunk is not None and not next_chunk.done():
                next_chunk.cancel()
                await asyncio.gather(next_chunk, return_exceptions=True)
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    # --- Terminal writes ---

    async def _finish_failed(self, prepared: PreparedStream, outcome: StreamOutcome) -> None:
        await self._finalize(prepared, outcome)
        logger.warning("Stream for message %s failed: %s", prepared.message_id, outcome.error)
        await prepared.writer.send("ai_error", self._error_payload(prepared, outcome))
        await prepared.writer.send("done", {})

    async def _finalize(self, prepared: PreparedStream, outcome: StreamOutcome) -> bool:
        """Move the placeholder to its terminal state if it is still streaming.

        Returns False when the row had already been settled by someone else.
        Store failures are logged; the client-facing outcome does not change.
        """
        now = datetime.now(timezone.utc)
        outcome.processing_time_ms = self._elapsed_ms(prepared)
        values = {
            "status": outcome.status,
            "content": outcome.content,
            "processing_time_ms": outcome.processing_time_ms,
            "error_message": outcome.error,
            "updated_at": now,
        }
        if outcome.status == MessageStatus.COMPLETED:
            values["token_count"] = outcome.token_count
            values["metadata_"] = {"finishReason": outcome.finish_reason, "model": self.driver.model}

        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    update(Message)
                    .where(Message.id == prepared.message_id, Message.status == MessageStatus.STREAMING)
                    .values(**values)
                )
                applied = (result.rowcount or 0) > 0
                if applied and outcome.status == MessageStatus.COMPLETED:
                    await db.execute(
                        update(Conversation)
                        .where(Conversation.id == prepared.conversation_id)
                        .values(
                            total_messages=Conversation.total_messages + 1,
                            last_message_at=now,
                            updated_at=now,
                        )
                    )
                await db.commit()
        except SQLAlchemyError:
            logger.exception("Failed to finalize message %s as %s", prepared.message_id, outcome.status)
            return True

        if not applied:
            logger.info(
                "Message %s was already settled; keeping stored state over %s",
                prepared.message_id, outcome.status,
            )
        return applied

    async def _update_title(self, prepared: PreparedStream, reply: str, cancel_event: asyncio.Event) -> None:
        """Generate and store a title; the event is sent only if the conditional write applied."""
        title_task = asyncio.ensure_future(
            generate_title(self.driver, prepared.user_content, reply, self.title_deadline_sec)
        )
        canceled = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {title_task, canceled},
                timeout=self.title_deadline_sec + 1,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            canceled.cancel()
            if not title_task.done():
                title_task.cancel()
                await asyncio.gather(title_task, return_exceptions=True)

        if title_task not in done or title_task.cancelled():
            return
        title = title_task.result()

        try:
            async with self.session_factory() as db:
                applied = await chat_service.set_title_if_default(db, prepared.conversation_id, title)
        except SQLAlchemyError:
            logger.exception("Failed to store title for conversation %s", prepared.conversation_id)
            return
        if not applied:
            logger.info("Conversation %s was renamed meanwhile; keeping its title", prepared.conversation_id)
            return

        await prepared.writer.send("conversation_title_updated", {
            "conversationId": prepared.conversation_id,
            "title": title,
            "timestamp": _now_iso(),
        })

    def _error_payload(self, prepared: PreparedStream, outcome: StreamOutcome) -> dict:
        return {
            "messageId": prepared.message_id,
            "error": outcome.error or "unknown error",
            "content": outcome.content,
            "processingTimeMs": outcome.processing_time_ms,
            "timestamp": _now_iso(),
        }

    @staticmethod
    def _elapsed_ms(prepared: PreparedStream) -> int:
        return int((time.monotonic() - prepared.started_at) * 1000)
