import json
import logging
from typing import Any, Protocol

from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from specpilot import config
from specpilot.agent.messages import (
    Message,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)


logger = logging.getLogger("specpilot.agent.model")

_EPHEMERAL = {"type": "ephemeral"}


class ModelToolCall(BaseModel):
    id: str
    name: str
    # Raw JSON text as returned by the provider
    arguments: str = "{}"


class ModelResponse(BaseModel):
    text: str = ""
    reasoning: str = ""
    tool_calls: list[ModelToolCall] = Field(default_factory=list)


class ModelClient(Protocol):
    """One completion round-trip: messages and tool schemas in, one reply out."""

    async def complete(
        self, messages: list[Message], tools: list[dict[str, Any]]
    ) -> ModelResponse: ...


def _text_block(text: str, cached: bool) -> dict[str, Any]:
    block: dict[str, Any] = {"type": "text", "text": text}
    if cached:
        block["cache_control"] = _EPHEMERAL
    return block


def _result_content(part: ToolResultPart) -> str | list[dict[str, Any]]:
    text = part.result if isinstance(part.result, str) else str(part.result)
    if part.cache_control:
        return [_text_block(text, True)]
    return text


def to_chat_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert history into OpenAI chat-completions messages.

    Cache markers become ``cache_control`` on text blocks, which the gateway
    forwards to providers that support prompt caching. Reasoning parts are
    kept in history for display but not replayed to the provider.
    """
    out: list[dict[str, Any]] = []
    for message in messages:
        if isinstance(message.content, str):
            if message.cache_control:
                content: Any = [_text_block(message.content, True)]
            else:
                content = message.content
            out.append({"role": message.role, "content": content})
            continue

        if message.role == "tool":
            for part in message.content:
                if isinstance(part, ToolResultPart):
                    out.append(
                        {
                            "role": "tool",
                            "tool_call_id": part.tool_call_id,
                            "content": _result_content(part),
                        }
                    )
            continue

        blocks = [
            _text_block(p.text, p.cache_control)
            for p in message.content
            if isinstance(p, TextPart) and p.text
        ]
        # Markers on reasoning or tool-call parts move to the last text block.
        # A message with no text has nowhere to carry one and goes unmarked.
        if blocks and any(p.cache_control for p in message.content):
            if not any("cache_control" in b for b in blocks):
                blocks[-1]["cache_control"] = _EPHEMERAL
        entry: dict[str, Any] = {"role": message.role, "content": blocks or ""}
        if message.role == "assistant":
            calls = [p for p in message.content if isinstance(p, ToolCallPart)]
            if calls:
                entry["tool_calls"] = [
                    {
                        "id": c.tool_call_id,
                        "type": "function",
                        "function": {"name": c.tool_name, "arguments": _dump_args(c.args)},
                    }
                    for c in calls
                ]
                if not blocks:
                    entry["content"] = None
        elif not blocks:
            continue
        out.append(entry)
    return out


def _dump_args(args: dict[str, Any]) -> str:
    return json.dumps(args, ensure_ascii=False)


class GatewayModelClient:
    """Model capability backed by an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        model: str | None = None,
        client: AsyncOpenAI | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        reasoning_budget: int | None = None,
    ) -> None:
        self.model = model or config.DEFAULT_MODEL
        self._client = client or AsyncOpenAI(
            api_key=config.MODEL_API_KEY, base_url=config.MODEL_BASE_URL
        )
        self.max_tokens = max_tokens or config.MODEL_MAX_TOKENS
        self.temperature = config.MODEL_TEMPERATURE if temperature is None else temperature
        self.reasoning_budget = (
            config.MODEL_REASONING_BUDGET if reasoning_budget is None else reasoning_budget
        )

    async def complete(
        self, messages: list[Message], tools: list[dict[str, Any]]
    ) -> ModelResponse:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": to_chat_messages(messages),
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if self.reasoning_budget > 0:
            kwargs["extra_body"] = {
                "reasoning": {"enabled": True, "max_tokens": self.reasoning_budget}
            }

        completion = await self._client.chat.completions.create(**kwargs)
        msg = completion.choices[0].message
        reasoning = getattr(msg, "reasoning", None) or getattr(msg, "reasoning_content", None)
        tool_calls = [
            ModelToolCall(
                id=call.id,
                name=call.function.name,
                arguments=call.function.arguments or "{}",
            )
            for call in (msg.tool_calls or [])
        ]
        logger.debug(
            "completion model=%s tool_calls=%d text_len=%d",
            self.model,
            len(tool_calls),
            len(msg.content or ""),
        )
        return ModelResponse(
            text=msg.content or "",
            reasoning=reasoning if isinstance(reasoning, str) else "",
            tool_calls=tool_calls,
        )
