import logging

from pydantic import BaseModel, Field

from specpilot import config
from specpilot.agent.events import user_message_event
from specpilot.agent.messages import Message
from specpilot.agent.model import ModelClient
from specpilot.agent.prompts import CODE_GENERATOR_INSTRUCTION, get_code_generator_system_prompt
from specpilot.agent.runner import AgentRunner, NullObserver, RunObserver
from specpilot.agent.tools import ToolRegistry
from specpilot.vfs import VirtualFileSystem


logger = logging.getLogger("specpilot.agent.code_generator")


class CodeGenResult(BaseModel):
    response: str
    steps: int = 0
    messages: list[Message] = Field(default_factory=list)


class CodeGeneratorAgent:
    """Reconciles code with the spec using unrestricted VFS tools.

    Every run starts from its own system prompt and instruction; it never
    sees the chat history.
    """

    def __init__(self, model: ModelClient, max_steps: int = config.CODEGEN_MAX_STEPS) -> None:
        self.runner = AgentRunner(model, "codeGenerator", max_steps)

    async def run(
        self,
        vfs: VirtualFileSystem,
        instruction: str = CODE_GENERATOR_INSTRUCTION,
        observer: RunObserver | None = None,
        max_steps: int | None = None,
    ) -> CodeGenResult:
        observer = observer or NullObserver()
        messages = [
            Message(role="system", content=get_code_generator_system_prompt()),
            Message(role="user", content=instruction),
        ]
        await observer.on_events([user_message_event(instruction, "codeGenerator")])

        loop = await self.runner.run(messages, ToolRegistry(vfs), observer, max_steps=max_steps)
        logger.info("code generator finished steps=%d", loop.steps)
        return CodeGenResult(response=loop.text, steps=loop.steps, messages=messages)
