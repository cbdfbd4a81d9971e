"""
Pytest fixtures for specpilot tests.

This module provides:
- A scripted model that replays canned responses
- A fake VM that records every command it is asked to run
- Small deploy settings so timing-based tests finish quickly
"""

from typing import Any

import pytest

from specpilot.agent.messages import Message
from specpilot.agent.model import ModelResponse, ModelToolCall
from specpilot.config import DeploySettings
from specpilot.sandbox.vm import ExecResult
from specpilot.store import InMemoryProjectStore
from specpilot.vfs import VirtualFileSystem


class FakeModel:
    """Replays responses in order; repeats the last one once exhausted."""

    def __init__(self, responses: list[ModelResponse] | None = None) -> None:
        self.responses = list(responses or [ModelResponse(text="done")])
        self.calls: list[list[Message]] = []
        self.tools_seen: list[list[dict[str, Any]]] = []

    async def complete(
        self, messages: list[Message], tools: list[dict[str, Any]]
    ) -> ModelResponse:
        self.calls.append([m.model_copy(deep=True) for m in messages])
        self.tools_seen.append(tools)
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        return self.responses[index]


class FakeVM:
    """Records commands; results are chosen by substring match on the command."""

    def __init__(self, url: str = "https://vm-1.example.test") -> None:
        self.url = url
        self.commands: list[tuple[str, str]] = []
        self.sudo_commands: list[str] = []
        self.results: dict[str, ExecResult] = {}
        self.created = 0

    async def create(self) -> str:
        self.created += 1
        return f"vm-{self.created}"

    async def exec(self, vm_id: str, command: str, sudo: bool = False) -> ExecResult:
        self.commands.append((vm_id, command))
        if sudo:
            self.sudo_commands.append(command)
        for needle, result in self.results.items():
            if needle in command:
                return result
        return ExecResult(stdout="ok")

    async def public_url(self, vm_id: str) -> str:
        return self.url

    def count(self, needle: str) -> int:
        return sum(1 for _, cmd in self.commands if needle in cmd)


def tool_call(call_id: str, name: str, arguments: str) -> ModelToolCall:
    return ModelToolCall(id=call_id, name=name, arguments=arguments)


@pytest.fixture
def fast_settings() -> DeploySettings:
    return DeploySettings(
        max_fix_attempts=5,
        fix_max_steps=2,
        proceed_on_verification_failure=True,
        health_timeout_seconds=0.3,
        health_interval_seconds=0.05,
        health_request_timeout_seconds=0.1,
    )


@pytest.fixture
def vfs() -> VirtualFileSystem:
    return VirtualFileSystem.from_template(
        {
            "spec/index.md": "# App\n",
            "code/package.json": "{}",
            "code/.env.local": "VITE_CONVEX_URL=http://127.0.0.1:3210\n",
            "code/src/App.tsx": "export default function App() {}\n",
        }
    )


@pytest.fixture
def fake_vm() -> FakeVM:
    return FakeVM()


@pytest.fixture
def store() -> InMemoryProjectStore:
    return InMemoryProjectStore()
