import inspect
import json
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable

import httpx

from tern.constants import UNAUTHORIZED_STATUS
from tern.core.models import Message
from tern.errors import EndpointStatusError, NetworkError
from tern.llm.retry import RetryPolicy
from tern.logging import get_logger

_logger = get_logger(__name__)

CredentialSource = Callable[[], str | Awaitable[str]]


class ModelEndpoint(ABC):
    """A model reachable by message list. Subclasses implement `_stream` and `_complete`.

    Retries (and the single credential refresh on 401) cover only the part of
    a request before its first byte arrives; once a stream has started,
    failures surface as NetworkError.
    """

    def __init__(self, retry_policy: RetryPolicy | None = None):
        self.retry_policy = retry_policy or RetryPolicy()

    @abstractmethod
    def _stream(self, messages: list[Message], model: str) -> AsyncGenerator[bytes, None]: ...

    @abstractmethod
    async def _complete(self, messages: list[Message], model: str) -> str: ...

    async def refresh_credentials(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def _call(self, fn, *args):
        try:
            return await self.retry_policy.run(fn, *args)
        except EndpointStatusError as e:
            if e.status != UNAUTHORIZED_STATUS:
                raise
            _logger.info("Endpoint rejected credentials, refreshing once")
            await self.refresh_credentials()
            return await self.retry_policy.run(fn, *args)

    async def _open(self, messages: list[Message], model: str) -> tuple[AsyncGenerator[bytes, None], bytes | None]:
        gen = self._stream(messages, model)
        try:
            first = await anext(gen)
        except StopAsyncIteration:
            return gen, None
        except BaseException:
            await gen.aclose()
            raise
        return gen, first

    async def stream(self, messages: list[Message], model: str) -> AsyncIterator[bytes]:
        gen, first = await self._call(self._open, messages, model)
        try:
            if first is None:
                return
            yield first
            async for chunk in gen:
                yield chunk
        finally:
            await gen.aclose()

    async def complete(self, messages: list[Message], model: str) -> str:
        return await self._call(self._complete, messages, model)


class HttpModelEndpoint(ModelEndpoint):
    """OpenAI-compatible `/chat/completions` over httpx, streamed as server-sent events."""

    def __init__(
        self,
        api_base: str,
        api_key: str | None = None,
        credentials: CredentialSource | None = None,
        timeout: float = 120.0,
        retry_policy: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(retry_policy)
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.credentials = credentials
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def url(self) -> str:
        return f"{self.api_base}/chat/completions"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _payload(self, messages: list[Message], model: str, stream: bool) -> dict:
        return {"model": model, "messages": [m.to_dict() for m in messages], "stream": stream}

    async def refresh_credentials(self) -> None:
        if self.credentials is None:
            return
        key = self.credentials()
        if inspect.isawaitable(key):
            key = await key
        self.api_key = key

    async def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        body = (await response.aread()).decode("utf-8", errors="replace")
        raise EndpointStatusError(
            f"Model endpoint returned {response.status_code}: {body[:200]}",
            status=response.status_code,
            target=self.url,
        )

    async def _stream(self, messages: list[Message], model: str) -> AsyncGenerator[bytes, None]:
        try:
            async with self._client.stream(
                "POST", self.url, json=self._payload(messages, model, True), headers=self._headers()
            ) as response:
                await self._raise_for_status(response)
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if data == "[DONE]":
                        break
                    content = _delta_content(data)
                    if content:
                        yield content.encode("utf-8")
        except httpx.HTTPError as e:
            raise NetworkError(f"Model stream failed: {e}", target=self.url, cause=e) from e

    async def _complete(self, messages: list[Message], model: str) -> str:
        try:
            response = await self._client.post(
                self.url, json=self._payload(messages, model, False), headers=self._headers()
            )
        except httpx.HTTPError as e:
            raise NetworkError(f"Model request failed: {e}", target=self.url, cause=e) from e
        await self._raise_for_status(response)
        data = response.json()
        return data["choices"][0]["message"].get("content") or ""

    async def close(self) -> None:
        await self._client.aclose()


def _delta_content(data: str) -> str | None:
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        _logger.debug("Skipping unparseable stream event: %s", data[:100])
        return None
    choices = payload.get("choices") or []
    if not choices:
        return None
    return (choices[0].get("delta") or {}).get("content")
