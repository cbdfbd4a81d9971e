import json
import logging
from typing import Any, Callable, Protocol

from pydantic import BaseModel, Field

from specpilot.agent.events import AgentName, ChatEvent, StepOutput, step_to_events
from specpilot.agent.messages import (
    Message,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from specpilot.agent.model import ModelClient, ModelResponse
from specpilot.agent.prompt_cache import apply_cache_budget
from specpilot.agent.tools import ToolRegistry


logger = logging.getLogger("specpilot.agent.runner")


class RunObserver(Protocol):
    """Receives what happened during a run; decides how it is stored."""

    async def on_events(self, events: list[ChatEvent]) -> None: ...

    async def on_state_update(self) -> None: ...


class NullObserver:
    async def on_events(self, events: list[ChatEvent]) -> None:
        return None

    async def on_state_update(self) -> None:
        return None


class LoopResult(BaseModel):
    text: str = ""
    steps: int = 0
    hit_step_limit: bool = False
    response_messages: list[Message] = Field(default_factory=list)


def _parse_args(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError:
        return {"raw": raw}
    return parsed if isinstance(parsed, dict) else {"raw": raw}


class AgentRunner:
    """Bounded tool-calling loop against the model capability.

    Each step sends the full history plus tool schemas, executes any
    requested tool calls against the registry and appends the new messages.
    The loop stops when the model asks for no tools or the step ceiling is
    reached.
    """

    def __init__(self, model: ModelClient, agent_name: AgentName, max_steps: int) -> None:
        self.model = model
        self.agent_name = agent_name
        self.max_steps = max_steps

    async def run(
        self,
        messages: list[Message],
        tools: ToolRegistry,
        observer: RunObserver | None = None,
        max_steps: int | None = None,
        prepare_step: Callable[[list[Message]], Any] | None = apply_cache_budget,
    ) -> LoopResult:
        observer = observer or NullObserver()
        limit = max_steps or self.max_steps
        response_messages: list[Message] = []
        appended = 0
        result = LoopResult()

        for step_number in range(1, limit + 1):
            if prepare_step is not None:
                prepare_step(messages)
            response = await self.model.complete(messages, tools.schemas())
            step, produced = self._execute_step(response, tools)
            response_messages.extend(produced)

            # Append only what this run has not appended yet
            for message in response_messages[appended:]:
                messages.append(message)
                appended += 1

            events = step_to_events(step, self.agent_name)
            if events:
                await observer.on_events(events)
            await observer.on_state_update()

            result.steps = step_number
            result.text = response.text
            logger.debug(
                "%s step %d/%d tool_calls=%d",
                self.agent_name,
                step_number,
                limit,
                len(step.tool_calls),
            )
            if not response.tool_calls:
                break
        else:
            result.hit_step_limit = True
            logger.warning("%s stopped at step limit (%d)", self.agent_name, limit)

        result.response_messages = response_messages
        return result

    def _execute_step(
        self, response: ModelResponse, tools: ToolRegistry
    ) -> tuple[StepOutput, list[Message]]:
        step = StepOutput(reasoning=response.reasoning, text=response.text)
        parts: list[Any] = []
        if response.reasoning:
            parts.append(ReasoningPart(text=response.reasoning))
        if response.text:
            parts.append(TextPart(text=response.text))
        for call in response.tool_calls:
            call_part = ToolCallPart(
                tool_call_id=call.id, tool_name=call.name, args=_parse_args(call.arguments)
            )
            parts.append(call_part)
            step.tool_calls.append(call_part)

        produced = [Message(role="assistant", content=parts or "")]

        for call in response.tool_calls:
            output = tools.execute(call.name, call.arguments)
            step.tool_results.append(
                ToolResultPart(tool_call_id=call.id, tool_name=call.name, result=output)
            )
        if step.tool_results:
            produced.append(Message(role="tool", content=list(step.tool_results)))
        return step, produced
