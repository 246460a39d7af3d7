import json
from typing import Any
from urllib.parse import quote

import httpx

from tern.constants import REMOTE_TOOL_TIMEOUT
from tern.errors import EndpointStatusError, NetworkError
from tern.llm.retry import RetryPolicy
from tern.logging import get_logger
from tern.tools.base import ToolOutput, ToolProvider, ToolSpec

_logger = get_logger(__name__)

WELL_KNOWN_PREFIX = "/.well-known/mcp"


class RemoteToolProvider(ToolProvider):
    """Tools served over HTTP: `GET {url}/tools`, `POST {url}/tools/{name}` with body `{"input": ...}`.

    A GET falls back to the `/.well-known/mcp` prefix when the plain path
    fails; a POST only when the plain path answers 404.
    """

    kind = "mcp"

    def __init__(
        self,
        server_id: str,
        url: str,
        retry_policy: RetryPolicy | None = None,
        timeout: float = REMOTE_TOOL_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(server_id)
        self.url = url.rstrip("/")
        self.retry_policy = retry_policy or RetryPolicy()
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _endpoints(self, path: str) -> list[str]:
        return [f"{self.url}{path}", f"{self.url}{WELL_KNOWN_PREFIX}{path}"]

    async def _send(self, method: str, url: str, body: dict | None = None) -> Any:
        try:
            response = await self._client.request(method, url, json=body)
        except httpx.HTTPError as e:
            raise NetworkError(f"{method} {url} failed: {e}", target=self.server_id, cause=e) from e
        if response.status_code >= 400:
            raise EndpointStatusError(
                f"{method} {url} returned {response.status_code}",
                status=response.status_code,
                target=self.server_id,
            )
        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"{method} {url} returned invalid JSON", target=self.server_id, cause=e) from e

    async def _request(self, method: str, path: str, body: dict | None = None) -> Any:
        main, well_known = self._endpoints(path)
        try:
            return await self.retry_policy.run(self._send, method, main, body)
        except NetworkError as e:
            # a POST that may have reached the tool is not sent again
            if method != "GET" and e.status != 404:
                raise
            _logger.debug("Remote tool request failed, trying %s: %s", WELL_KNOWN_PREFIX, e.message)
        return await self.retry_policy.run(self._send, method, well_known, body)

    async def list_tools(self) -> list[ToolSpec]:
        data = await self._request("GET", "/tools")
        items = data.get("tools") if isinstance(data, dict) else data
        if not isinstance(items, list):
            raise NetworkError(f"unexpected tools listing from {self.server_id}", target=self.server_id)
        specs = []
        for item in items:
            if not isinstance(item, dict) or not isinstance(item.get("name"), str):
                continue
            schema = item.get("input_schema") or item.get("inputSchema")
            specs.append(ToolSpec(item["name"], item.get("description") or "", input_schema=schema))
        return specs

    async def call_tool(self, name: str, input: dict[str, Any]) -> ToolOutput:
        data = await self._request("POST", f"/tools/{quote(name, safe='')}", {"input": input})
        if isinstance(data, dict) and isinstance(data.get("content"), str):
            is_error = bool(data.get("is_error") or data.get("isError"))
            return ToolOutput(content=data["content"], preview=name, is_error=is_error)
        content = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
        return ToolOutput(content=content, preview=name)

    async def close(self) -> None:
        await self._client.aclose()
