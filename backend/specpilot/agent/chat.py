import hashlib
import json
import logging

from pydantic import BaseModel

from specpilot import config
from specpilot.agent.events import user_message_event
from specpilot.agent.messages import Message
from specpilot.agent.model import ModelClient
from specpilot.agent.prompts import get_chat_system_prompt
from specpilot.agent.runner import AgentRunner, NullObserver, RunObserver
from specpilot.agent.tools import ToolRegistry, filter_files_by_prefixes
from specpilot.vfs import VirtualFileSystem


logger = logging.getLogger("specpilot.agent.chat")


class ChatRunResult(BaseModel):
    response: str
    spec_modified: bool
    steps: int = 0


def spec_digest(vfs: VirtualFileSystem, prefixes: list[str] | None = None) -> str:
    """sha256 over the canonical JSON of every file under the spec prefixes.

    Keys are sorted, so the digest does not depend on insertion order in the
    underlying store.
    """
    prefixes = prefixes or [config.SPEC_PREFIX]
    contents: dict[str, str] = {}
    for path in sorted(vfs.list_files()):
        if not any(path.startswith(p) for p in prefixes):
            continue
        content = vfs.read_file(path)
        if content is not None:
            contents[path] = content
    canonical = json.dumps(contents, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def build_user_turn(message: str, files: list[str]) -> str:
    listing = "\n".join(f"- {f}" for f in files) if files else "No files in project yet."
    return (
        f"{message}\n\n\n"
        "<additional-context>\n"
        "<current-files-in-project>\n"
        f"{listing}\n"
        "</current-files-in-project>\n"
        "</additional-context>"
    )


class ChatAgent:
    """Edits spec files in response to a user message.

    The agent only sees files under the spec prefix. The returned
    ``spec_modified`` flag tells the caller whether the code generator has to
    run.
    """

    def __init__(
        self,
        model: ModelClient,
        max_steps: int = config.CHAT_MAX_STEPS,
        allowed_prefixes: list[str] | None = None,
    ) -> None:
        self.runner = AgentRunner(model, "chat", max_steps)
        self.allowed_prefixes = allowed_prefixes or [config.SPEC_PREFIX]

    async def run(
        self,
        message: str,
        vfs: VirtualFileSystem,
        messages: list[Message],
        observer: RunObserver | None = None,
    ) -> ChatRunResult:
        observer = observer or NullObserver()
        digest_before = spec_digest(vfs, self.allowed_prefixes)

        if not messages:
            messages.append(Message(role="system", content=get_chat_system_prompt()))

        visible = filter_files_by_prefixes(sorted(vfs.list_files()), self.allowed_prefixes)
        content = build_user_turn(message, visible)
        messages.append(Message(role="user", content=content))
        await observer.on_events([user_message_event(content, "chat")])
        await observer.on_state_update()

        tools = ToolRegistry(vfs, self.allowed_prefixes)
        loop = await self.runner.run(messages, tools, observer)

        digest_after = spec_digest(vfs, self.allowed_prefixes)
        spec_modified = digest_before != digest_after
        logger.info(
            "chat run finished steps=%d spec_modified=%s", loop.steps, spec_modified
        )
        return ChatRunResult(response=loop.text, spec_modified=spec_modified, steps=loop.steps)
