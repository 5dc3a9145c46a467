"""Best-effort conversation titling from the first exchange."""

import asyncio
import logging
import unicodedata

from forgechat.core.config import settings
from forgechat.integrations.model_driver import ChatMessage, GenerateOptions, ModelDriver

logger = logging.getLogger(__name__)

TITLE_MAX_TOKENS = 24
TITLE_MAX_CHARS = 20
FALLBACK_CHARS = 16

TITLE_SYSTEM_PROMPT = """You write titles for chat conversations.
Reply with a single title of 6 to 16 characters that summarizes the exchange.
Write the title in the same language as the user's message.
Do not use punctuation, quotes, emoji or a trailing period. Output the title only."""

# ASCII and CJK punctuation removed from generated titles
TITLE_PUNCTUATION = frozenset(
    "!\"#$%&'()*+,./:;<=>?@[\\]^_`{|}~"
    "，。！？；：、“”‘’「」『』（）《》〈〉【】〔〕…—～·﹏"
)


def sanitize_title(raw: str) -> str:
    cleaned = "".join(
        ch for ch in raw
        if not unicodedata.category(ch).startswith("C") and ch not in TITLE_PUNCTUATION
    )
    return cleaned.strip()[:TITLE_MAX_CHARS].strip()


def fallback_title(user_text: str) -> str:
    text = " ".join(user_text.split())
    return text[:FALLBACK_CHARS].strip() or settings.default_conversation_title


async def generate_title(
    driver: ModelDriver,
    user_text: str,
    assistant_text: str,
    deadline_sec: float | None = None,
) -> str:
    """Return a short title; never raises.

    Falls back to the start of the user text when the model errors, times
    out or returns nothing usable.
    """
    deadline = deadline_sec if deadline_sec is not None else settings.title_deadline_sec
    messages = [
        ChatMessage(role="system", content=TITLE_SYSTEM_PROMPT),
        ChatMessage(
            role="user",
            content=f"User: {user_text[:500]}\n\nAssistant: {assistant_text[:1000]}",
        ),
    ]
    try:
        response = await asyncio.wait_for(
            driver.generate(messages, GenerateOptions(max_tokens=TITLE_MAX_TOKENS)),
            timeout=deadline,
        )
        title = sanitize_title(response.content)
        if title:
            return title
        logger.info("Title model returned no usable text, using fallback")
    except asyncio.TimeoutError:
        logger.warning("Title generation exceeded %.1fs deadline", deadline)
    except Exception as e:
        logger.warning("Title generation failed: %s", e)
    return fallback_title(user_text)
