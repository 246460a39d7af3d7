from tern.errors import TernError, UnknownServer
from tern.logging import get_logger
from tern.tools.base import ToolProvider, ToolSpec

_logger = get_logger(__name__)


class ProviderRegistry:
    """Attached tool providers, addressed by server id."""

    def __init__(self, *providers: ToolProvider):
        self._providers: dict[str, ToolProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: ToolProvider) -> None:
        self._providers[provider.server_id] = provider

    def unregister(self, server_id: str) -> ToolProvider | None:
        return self._providers.pop(server_id, None)

    def get(self, server_id: str) -> ToolProvider | None:
        return self._providers.get(server_id)

    def require(self, server_id: str) -> ToolProvider:
        provider = self._providers.get(server_id)
        if provider is None:
            raise UnknownServer(f"no attached tool provider named {server_id!r}", target=server_id)
        return provider

    async def list_all(self) -> dict[str, list[ToolSpec]]:
        """Tools per server. A provider that fails to list is reported with no tools."""
        result: dict[str, list[ToolSpec]] = {}
        for server_id, provider in self._providers.items():
            try:
                result[server_id] = await provider.list_tools()
            except TernError as e:
                _logger.warning("Failed to list tools for %s: %s", server_id, e.message)
                result[server_id] = []
        return result

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()

    @property
    def providers(self) -> dict[str, ToolProvider]:
        return self._providers

    def __contains__(self, server_id: object) -> bool:
        return server_id in self._providers

    def __len__(self) -> int:
        return len(self._providers)
