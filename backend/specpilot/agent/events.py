import json
import time
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from specpilot.agent.messages import ToolCallPart, ToolResultPart


EventType = Literal["userMessage", "aiMessage", "aiReasoning", "toolCall", "toolResult"]
AgentName = Literal["chat", "codeGenerator"]

# Tags wrapped around machine-only context appended to user turns
CONTEXT_TAGS: tuple[str, ...] = ("additional-context",)

_FENCE = "```"
_ESCAPED_FENCE = "\\`\\`\\`"


class ChatEvent(BaseModel):
    """A single entry of the user-visible timeline."""

    model_config = ConfigDict(populate_by_name=True)

    event_type: EventType = Field(alias="eventType")
    markdown: str
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))
    agent: AgentName


class StepOutput(BaseModel):
    """What one agent step produced, in emission order."""

    reasoning: str = ""
    text: str = ""
    tool_calls: list[ToolCallPart] = Field(default_factory=list)
    tool_results: list[ToolResultPart] = Field(default_factory=list)


_events_adapter = TypeAdapter(list[ChatEvent])


class EventLog:
    """Append-only, ordered list of chat events."""

    def __init__(self, events: list[ChatEvent] | None = None) -> None:
        self._events: list[ChatEvent] = list(events or [])

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self):
        return iter(list(self._events))

    @property
    def events(self) -> list[ChatEvent]:
        return list(self._events)

    def extend(self, events: list[ChatEvent]) -> None:
        self._events.extend(events)

    def since(self, index: int) -> list[ChatEvent]:
        return self._events[index:]

    def to_json(self) -> str:
        return dump_events(self._events)

    @classmethod
    def from_json(cls, data: str | None) -> "EventLog":
        return cls(load_events(data))


def dump_events(events: list[ChatEvent]) -> str:
    return _events_adapter.dump_json(events, by_alias=True).decode("utf-8")


def load_events(data: str | None) -> list[ChatEvent]:
    if not data:
        return []
    return _events_adapter.validate_json(data)


def strip_context_tags(content: str) -> str:
    """Remove matched <tag>...</tag> blocks of internal context and trim.

    An opening tag without a matching close tag is left untouched.
    """
    result = content
    for tag in CONTEXT_TAGS:
        open_tag = f"<{tag}>"
        close_tag = f"</{tag}>"
        start = result.find(open_tag)
        while start != -1:
            end = result.find(close_tag, start)
            if end == -1:
                break
            result = result[:start] + result[end + len(close_tag):]
            start = result.find(open_tag)
    return result.strip()


def escape_fences(text: str) -> str:
    return text.replace(_FENCE, _ESCAPED_FENCE)


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, indent=2, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def render_tool_call(call: ToolCallPart) -> str:
    args = json.dumps(call.args, indent=2, ensure_ascii=False)
    return f"#### Tool call: `{call.tool_name}`\n\n```json\n{escape_fences(args)}\n```"


def render_tool_result(result: ToolResultPart) -> str:
    body = escape_fences(_stringify(result.result))
    return f"#### Tool result: `{result.tool_name}`\n\n```\n{body}\n```"


def user_message_event(content: str, agent: AgentName = "chat") -> ChatEvent:
    return ChatEvent(
        event_type="userMessage", markdown=strip_context_tags(content), agent=agent
    )


def system_notice(title: str, body: str, agent: AgentName) -> ChatEvent:
    """A toolResult-style event for pipeline progress and failures."""
    return ChatEvent(
        event_type="toolResult",
        markdown=f"#### {title}\n\n```\n{escape_fences(body)}\n```",
        agent=agent,
    )


def step_to_events(step: StepOutput, agent: AgentName) -> list[ChatEvent]:
    events: list[ChatEvent] = []
    if step.reasoning:
        events.append(
            ChatEvent(event_type="aiReasoning", markdown=step.reasoning, agent=agent)
        )
    if step.text:
        events.append(ChatEvent(event_type="aiMessage", markdown=step.text, agent=agent))
    for call in step.tool_calls:
        events.append(
            ChatEvent(event_type="toolCall", markdown=render_tool_call(call), agent=agent)
        )
    for result in step.tool_results:
        events.append(
            ChatEvent(
                event_type="toolResult", markdown=render_tool_result(result), agent=agent
            )
        )
    return events
