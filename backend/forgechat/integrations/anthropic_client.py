"""Claude integration for chat generation and streaming."""

import anthropic

from forgechat.integrations.model_driver import (
    ChatMessage,
    ChatResponse,
    GenerateOptions,
    ModelDriver,
    ModelDriverError,
    StreamChunk,
)

DEFAULT_MAX_TOKENS = 2000


def _to_anthropic_messages(messages: list[ChatMessage]) -> tuple[str, list[dict]]:
    """Split out system prompts and fold the rest into alternating turns.

    The Messages API rejects empty content and consecutive turns of the
    same role, both of which a stored history can contain.
    """
    system_parts: list[str] = []
    turns: list[dict] = []
    for msg in messages:
        if msg.role == "system":
            if msg.content:
                system_parts.append(msg.content)
            continue
        role = "assistant" if msg.role in ("assistant", "ai") else "user"
        if not msg.content.strip():
            continue
        if turns and turns[-1]["role"] == role:
            turns[-1]["content"] += "\n\n" + msg.content
        else:
            turns.append({"role": role, "content": msg.content})

    # The first turn must come from the user
    while turns and turns[0]["role"] != "user":
        turns.pop(0)
    return "\n\n".join(system_parts), turns


class AnthropicDriver(ModelDriver):
    provider = "anthropic"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        temperature: float = 0.0,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        timeout: float = 60,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        super().__init__(model, temperature, max_tokens or DEFAULT_MAX_TOKENS)
        self.client = client or anthropic.AsyncAnthropic(
            api_key=api_key, base_url=base_url, timeout=timeout
        )

    def _request_kwargs(self, messages: list[ChatMessage], options: GenerateOptions | None) -> dict:
        system, turns = _to_anthropic_messages(messages)
        temperature, max_tokens = self._resolve(options)
        kwargs = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": turns,
        }
        if system:
            kwargs["system"] = system
        if temperature is not None:
            kwargs["temperature"] = temperature
        if options and options.top_p:
            kwargs["top_p"] = options.top_p
        return kwargs

    async def generate(self, messages, options=None) -> ChatResponse:
        try:
            response = await self.client.messages.create(**self._request_kwargs(messages, options))
        except anthropic.APIError as e:
            raise ModelDriverError(f"chat model generate error: {e}") from e

        text = "".join(block.text for block in response.content if block.type == "text")
        usage = response.usage
        return ChatResponse(
            content=text,
            token_count=usage.input_tokens + usage.output_tokens,
            finish_reason=response.stop_reason or "",
            metadata={"model": response.model},
        )

    async def generate_stream(self, messages, options=None):
        full_content = ""
        try:
            async with self.client.messages.stream(**self._request_kwargs(messages, options)) as stream:
                async for text in stream.text_stream:
                    if not text:
                        continue
                    full_content += text
                    yield StreamChunk(content=full_content, delta=text)
                final = await stream.get_final_message()
        except anthropic.APIError as e:
            yield StreamChunk(content=full_content, finished=True, error=f"chat model stream error: {e}")
            return

        usage = final.usage
        yield StreamChunk(
            content=full_content,
            finished=True,
            token_count=usage.input_tokens + usage.output_tokens,
            finish_reason=final.stop_reason or "",
        )
