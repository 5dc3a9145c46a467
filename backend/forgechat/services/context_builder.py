"""Prompt assembly from stored conversation history."""

from collections.abc import Sequence

from forgechat.integrations.model_driver import ChatMessage
from forgechat.models.conversation import Message, MessageStatus, SenderType
from forgechat.services.chat_service import NoUserPrompt

DEFAULT_MAX_HISTORY_TURNS = 20


def to_wire_role(sender_type: str) -> str:
    return "assistant" if sender_type == SenderType.AI else sender_type


def build_context_messages(
    conversation_id: str,
    history: Sequence[Message],
    max_history_turns: int = DEFAULT_MAX_HISTORY_TURNS,
    system_prompt: str = "",
    up_to_message_id: str | None = None,
) -> list[ChatMessage]:
    """Return ``[system?, m_k .. m_n]`` for the model driver.

    ``history`` must be in creation order.

    Only the last ``max_history_turns`` settled messages of the conversation
    are kept. In-flight (``streaming``) and deleted rows never appear, so a
    reply placeholder cannot leak into its own prompt. The window always
    ends on a user turn: trailing assistant/system rows after the newest
    user message are dropped and the window slides back to include earlier
    turns instead.

    With ``up_to_message_id`` the history is cut right after that message,
    which lets a reply to an older user turn ignore later exchanges.
    """
    eligible = [
        m for m in history
        if m.conversation_id == conversation_id
        and m.status != MessageStatus.STREAMING
        and m.deleted_at is None
    ]
    if up_to_message_id:
        cut = next((i for i, m in enumerate(eligible) if m.id == up_to_message_id), None)
        if cut is not None:
            eligible = eligible[: cut + 1]

    last_user = next(
        (i for i in range(len(eligible) - 1, -1, -1) if eligible[i].sender_type == SenderType.USER),
        None,
    )
    if last_user is None:
        raise NoUserPrompt()

    window = eligible[: last_user + 1][-max_history_turns:]

    messages: list[ChatMessage] = []
    if system_prompt:
        messages.append(ChatMessage(role="system", content=system_prompt))
    messages.extend(
        ChatMessage(role=to_wire_role(m.sender_type), content=m.content) for m in window
    )
    return messages
