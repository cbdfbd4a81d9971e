from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str
    cache_control: bool = False


class ReasoningPart(BaseModel):
    type: Literal["reasoning"] = "reasoning"
    text: str
    # Provider signature that must be echoed back with the reasoning block
    signature: str | None = None
    cache_control: bool = False


class ToolCallPart(BaseModel):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    cache_control: bool = False


class ToolResultPart(BaseModel):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    result: Any = None
    cache_control: bool = False


Part = Annotated[
    Union[TextPart, ReasoningPart, ToolCallPart, ToolResultPart],
    Field(discriminator="type"),
]


class Message(BaseModel):
    """One conversation entry.

    ``content`` is either plain text or an ordered list of typed parts. The
    message-level ``cache_control`` flag is only used for plain-text content;
    list content carries the flag on its parts.
    """

    role: Literal["system", "user", "assistant", "tool"]
    content: str | list[Part]
    cache_control: bool = False

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content if isinstance(p, TextPart))


_history_adapter = TypeAdapter(list[Message])


def dump_history(messages: list[Message]) -> str:
    return _history_adapter.dump_json(messages).decode("utf-8")


def load_history(data: str | None) -> list[Message]:
    if not data:
        return []
    return _history_adapter.validate_json(data)
