import asyncio
from collections import deque
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from tern.core.models import Message, Session
from tern.core.orchestrator import Orchestrator
from tern.database import Database
from tern.events import TurnEvent
from tern.llm.endpoint import ModelEndpoint
from tern.llm.retry import NO_RETRY
from tern.permissions import PermissionGate, PermissionRule, PermissionsConfig
from tern.tools.base import ToolOutput, ToolProvider, ToolSpec
from tern.tools.registry import ProviderRegistry


class FakeEndpoint(ModelEndpoint):
    """Replays scripted responses, one list of chunks per model request.

    When `gate` is set, every chunk after the first waits on it, which holds
    a turn in Streaming until the test releases it.
    """

    def __init__(self, responses: list[list[str | bytes]] | None = None, summary: str = "summary of earlier work"):
        super().__init__(NO_RETRY)
        self.responses = deque(responses or [])
        self.summary = summary
        self.requests: list[list[Message]] = []
        self.completions: list[list[Message]] = []
        self.gate: asyncio.Event | None = None
        self.closed = False

    async def _stream(self, messages: list[Message], model: str) -> AsyncGenerator[bytes, None]:
        self.requests.append(list(messages))
        chunks = self.responses.popleft() if self.responses else ["Done."]
        for i, chunk in enumerate(chunks):
            if i > 0 and self.gate is not None:
                await self.gate.wait()
            yield chunk.encode("utf-8") if isinstance(chunk, str) else chunk

    async def _complete(self, messages: list[Message], model: str) -> str:
        self.completions.append(list(messages))
        return self.summary

    async def close(self) -> None:
        self.closed = True


class RecordingProvider(ToolProvider):
    """Answers every call with a fixed result and remembers what it was asked."""

    def __init__(self, server_id: str = "fs", kind: str = "fs", result: str = "file contents", tools=("read",)):
        super().__init__(server_id)
        self.kind = kind
        self.result = result
        self.tools = tools
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def list_tools(self) -> list[ToolSpec]:
        return [ToolSpec(name, f"{name} tool") for name in self.tools]

    async def call_tool(self, name: str, input: dict[str, Any]) -> ToolOutput:
        self.calls.append((name, input))
        return ToolOutput(content=self.result, preview=name)


def tool_call_block(server: str, name: str, input_json: str = "{}") -> str:
    return f'```json\n{{"tool_call": {{"server": "{server}", "name": "{name}", "input": {input_json}}}}}\n```\n'


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    return root


@pytest_asyncio.fixture
async def db(tmp_path: Path) -> AsyncGenerator[Database]:
    db = Database(tmp_path / "sessions.db")
    await db.connect()
    yield db
    await db.close()


@pytest.fixture
def make_orchestrator(workspace: Path):
    """Build an Orchestrator over fakes. Returns (orchestrator, emitted events)."""

    def _make(
        endpoint: FakeEndpoint,
        *providers: ToolProvider,
        rules: list[dict] | None = None,
        confirm=None,
        **kwargs,
    ) -> tuple[Orchestrator, list[TurnEvent]]:
        events: list[TurnEvent] = []
        config = PermissionsConfig(rules=[PermissionRule.model_validate(r) for r in rules or []])
        orchestrator = Orchestrator(
            Session.create(),
            endpoint,
            ProviderRegistry(*providers),
            PermissionGate(config=config, confirm=confirm),
            model="gpt-4o-mini",
            root=workspace,
            emit=events.append,
            **kwargs,
        )
        return orchestrator, events

    return _make
