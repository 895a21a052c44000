from __future__ import annotations
"""
Sindi — Model Access
=====================
Anthropic client wrapper used by the filter extractor, the title generator
and the chat stream. Bounded one-shot completions raise on failure (callers
fall back); the chat stream retries on the fallback model only if the
primary fails before producing any text.
"""

import logging
from typing import AsyncIterator, Protocol

import anthropic

from sindi.config import (
    ANTHROPIC_API_KEY,
    CHAT_MAX_TOKENS,
    CHAT_TEMPERATURE,
    FALLBACK_MODEL,
    SINDI_MODEL,
    UTILITY_MODEL,
)
from sindi.database import log_llm_usage
from sindi.errors import UpstreamModelError
from sindi.stream_relay import spawn

logger = logging.getLogger(__name__)


class ChatModel(Protocol):
    async def complete(
        self,
        system: str,
        messages: list[dict],
        max_tokens: int,
        temperature: float = 0.0,
        phase: str = "other",
    ) -> str: ...

    def stream(
        self,
        system: str,
        messages: list[dict],
        max_tokens: int = CHAT_MAX_TOKENS,
        conversation_id: str | None = None,
    ) -> AsyncIterator[str]: ...


def to_anthropic_messages(messages: list[dict]) -> list[dict]:
    """Shape chat history for the Messages API.

    Only user/assistant turns are kept, consecutive turns of the same role
    are joined, and the list always opens with a user turn.
    """
    shaped: list[dict] = []
    for m in messages:
        role = m.get("role")
        content = str(m.get("content") or "")
        if role not in ("user", "assistant") or not content.strip():
            continue
        if shaped and shaped[-1]["role"] == role:
            shaped[-1]["content"] += "\n\n" + content
        else:
            shaped.append({"role": role, "content": content})
    while shaped and shaped[0]["role"] != "user":
        shaped.pop(0)
    return shaped


# ---------------------------------------------------------------------------
# Anthropic client
# ---------------------------------------------------------------------------
_client = None


def _get_client() -> anthropic.AsyncAnthropic:
    global _client
    if _client is None:
        if not ANTHROPIC_API_KEY:
            raise RuntimeError("ANTHROPIC_API_KEY not set. Add it to your .env file.")
        _client = anthropic.AsyncAnthropic(api_key=ANTHROPIC_API_KEY)
    return _client


class AnthropicModel:
    """ChatModel backed by Claude."""

    def __init__(
        self,
        chat_model: str = SINDI_MODEL,
        fallback_model: str = FALLBACK_MODEL,
        utility_model: str = UTILITY_MODEL,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        self.chat_model = chat_model
        self.fallback_model = fallback_model
        self.utility_model = utility_model
        self._client = client

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        return self._client or _get_client()

    async def complete(self, system, messages, max_tokens, temperature=0.0, phase="other"):
        response = await self.client.messages.create(
            model=self.utility_model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
            messages=to_anthropic_messages(messages),
        )
        logger.info(
            f"[llm] {phase} model={response.model} "
            f"stop_reason={response.stop_reason} "
            f"input_tokens={response.usage.input_tokens} "
            f"output_tokens={response.usage.output_tokens}"
        )
        await log_llm_usage(response.usage, response.model, phase)
        return "".join(block.text for block in response.content if hasattr(block, "text"))

    async def stream(self, system, messages, max_tokens=CHAT_MAX_TOKENS, conversation_id=None):
        shaped = to_anthropic_messages(messages)
        last_error: Exception | None = None

        for model in [self.chat_model, self.fallback_model]:
            produced = False
            try:
                async with self.client.messages.stream(
                    model=model,
                    max_tokens=max_tokens,
                    temperature=CHAT_TEMPERATURE,
                    system=system,
                    messages=shaped,
                ) as stream:
                    async for text in stream.text_stream:
                        produced = True
                        yield text

                    response = await stream.get_final_message()
                    logger.info(
                        f"[llm] chat stream model={response.model} "
                        f"stop_reason={response.stop_reason} "
                        f"input_tokens={response.usage.input_tokens} "
                        f"output_tokens={response.usage.output_tokens}"
                    )
                    # off the response path; drained with the other background writes
                    spawn(log_llm_usage(response.usage, response.model, "chat", conversation_id))

                    if response.stop_reason == "refusal" and not produced:
                        logger.warning(f"[llm] {model} refused. Retrying with {self.fallback_model}...")
                        last_error = UpstreamModelError(f"{model} refused")
                        continue
                    return
            except anthropic.APIError as e:
                if produced:
                    raise
                logger.error(f"[llm] stream API error with {model}: {e}")
                last_error = e
                continue

        raise UpstreamModelError(f"Unable to generate a response: {last_error}")
