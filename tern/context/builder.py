from pathlib import Path
from typing import Protocol

from tern.constants import MASK_PRESERVE_RECENT
from tern.context.compression import mask_old_tool_results
from tern.core.models import Message, Role, Session
from tern.core.prompts import build_system_prompt
from tern.tools.registry import ProviderRegistry


class ContextBuilder(Protocol):
    async def build(self, session: Session) -> list[Message]: ...


class DefaultContextBuilder:
    """System prompt (with the attached tools listed) followed by history, old tool results masked.

    The tool listing is fetched once, on first build.
    """

    def __init__(
        self,
        model: str,
        root: Path | str,
        registry: ProviderRegistry | None = None,
        one_liner_overrides: dict[str, str] | None = None,
        preserve_recent: int = MASK_PRESERVE_RECENT,
    ):
        self.model = model
        self.root = str(root)
        self.registry = registry
        self.one_liner_overrides = one_liner_overrides or {}
        self.preserve_recent = preserve_recent
        self._system_prompt: str | None = None

    async def system_prompt(self) -> str:
        if self._system_prompt is None:
            tools = await self.registry.list_all() if self.registry else {}
            self._system_prompt = build_system_prompt(self.model, self.root, tools, self.one_liner_overrides)
        return self._system_prompt

    def invalidate(self) -> None:
        self._system_prompt = None

    async def build(self, session: Session) -> list[Message]:
        system = Message(role=Role.SYSTEM, content=await self.system_prompt())
        return [system, *mask_old_tool_results(session.messages, self.preserve_recent)]
