"""OpenAI-compatible chat completions integration."""

import openai

from forgechat.integrations.model_driver import (
    ChatMessage,
    ChatResponse,
    GenerateOptions,
    ModelDriver,
    ModelDriverError,
    StreamChunk,
)


class OpenAIDriver(ModelDriver):
    provider = "openai"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        temperature: float = 0.0,
        max_tokens: int = 0,
        timeout: float = 60,
        client: openai.AsyncOpenAI | None = None,
    ):
        super().__init__(model, temperature, max_tokens)
        self.client = client or openai.AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    def _request_kwargs(self, messages: list[ChatMessage], options: GenerateOptions | None) -> dict:
        temperature, max_tokens = self._resolve(options)
        kwargs = {
            "model": self.model,
            "messages": [
                {"role": "assistant" if m.role == "ai" else m.role, "content": m.content}
                for m in messages
            ],
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        if options and options.top_p:
            kwargs["top_p"] = options.top_p
        return kwargs

    async def generate(self, messages, options=None) -> ChatResponse:
        try:
            response = await self.client.chat.completions.create(**self._request_kwargs(messages, options))
        except openai.OpenAIError as e:
            raise ModelDriverError(f"chat model generate error: {e}") from e

        choice = response.choices[0]
        return ChatResponse(
            content=choice.message.content or "",
            token_count=response.usage.total_tokens if response.usage else 0,
            finish_reason=choice.finish_reason or "",
            metadata={"model": response.model},
        )

    async def generate_stream(self, messages, options=None):
        full_content = ""
        finish_reason = ""
        token_count = 0
        try:
            stream = await self.client.chat.completions.create(
                **self._request_kwargs(messages, options),
                stream=True,
                stream_options={"include_usage": True},
            )
            try:
                async for chunk in stream:
                    # The usage chunk arrives last with no choices
                    if chunk.usage:
                        token_count = chunk.usage.total_tokens
                    if not chunk.choices:
                        continue
                    choice = chunk.choices[0]
                    if choice.finish_reason:
                        finish_reason = choice.finish_reason
                    delta = choice.delta.content if choice.delta else None
                    if delta:
                        full_content += delta
                        yield StreamChunk(content=full_content, delta=delta)
            finally:
                await stream.close()
        except openai.OpenAIError as e:
            yield StreamChunk(content=full_content, finished=True, error=f"chat model stream error: {e}")
            return

        yield StreamChunk(
            content=full_content,
            finished=True,
            token_count=token_count,
            finish_reason=finish_reason,
        )
