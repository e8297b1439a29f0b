# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator

from echo_chat.adapters.llm.base import ChatReply, ChatRequest, ModelInfo
from echo_chat.adapters.llm.stream_events import Delta, Done, StreamError, Usage
from echo_chat.errors import StorageFailure, error_from_kind
from echo_chat.models.account import ProviderKind
from echo_chat.storage.conversation_store import ConversationStore


@dataclass(frozen=True)
class Pause:
    seconds: float


# Script item: block until the stream is closed
HANG = object()


class ScriptedAdapter:
    """
    Provider adapter that replays scripted stream items.

    Scripts are consumed in call order, or looked up by the request's
    user content when registered with `on_content`.
    """

    def __init__(self, kind: ProviderKind = ProviderKind.CLAUDE) -> None:
        self.kind = kind
        self.scripts: list[list[Any]] = []
        self.by_content: dict[str, list[Any]] = {}
        self.requests: list[ChatRequest] = []
        self.once_requests: list[ChatRequest] = []
        self.models: list[ModelInfo] = [ModelInfo("model-a", "Model A")]
        self.list_models_error: Exception | None = None
        self.opened = 0
        self.closed = 0

    def push(self, *items: Any) -> None:
        self.scripts.append(list(items))

    def on_content(self, content: str, *items: Any) -> None:
        self.by_content[content] = list(items)

    @property
    def calls(self) -> int:
        return len(self.requests) + len(self.once_requests)

    def _next_script(self, request: ChatRequest) -> list[Any]:
        if request.content in self.by_content:
            return self.by_content.pop(request.content)
        if self.scripts:
            return self.scripts.pop(0)
        return [Done()]

    def send_streaming(self, request: ChatRequest) -> AsyncIterator[Any]:
        self.requests.append(request)
        return self._stream(self._next_script(request))

    async def _stream(self, script: list[Any]) -> AsyncIterator[Any]:
        self.opened += 1
        try:
            for item in script:
                if isinstance(item, Pause):
                    await asyncio.sleep(item.seconds)
                    continue
                if item is HANG:
                    await asyncio.Event().wait()
                yield item
        finally:
            self.closed += 1

    async def send_once(self, request: ChatRequest) -> ChatReply:
        self.once_requests.append(request)
        content = ""
        usage = None
        for item in self._next_script(request):
            if isinstance(item, Delta):
                content += item.text
            elif isinstance(item, Usage):
                usage = item.usage
            elif isinstance(item, StreamError):
                raise error_from_kind(item.kind, item.detail, item.reason)
        return ChatReply(content=content, model=request.account.model, usage=usage)

    async def list_models(self, *, secret: str | None, endpoint_url: str | None = None) -> list[ModelInfo]:
        if self.list_models_error is not None:
            raise self.list_models_error
        return list(self.models)

    async def check_endpoint(self, *, endpoint_url: str | None, secret: str | None) -> None:
        return None

    async def aclose(self) -> None:
        return None


class FlakyStore(ConversationStore):
    """ConversationStore whose content updates fail on demand."""

    def __init__(self, engine: Any) -> None:
        super().__init__(engine)
        self.fail_next = 0
        self.fail_always = False
        self.update_calls = 0
        self.crash_next: Exception | None = None

    async def update_message_content(self, message_id: str, content: str, status: Any, **kwargs: Any) -> None:
        self.update_calls += 1
        if self.crash_next is not None:
            error, self.crash_next = self.crash_next, None
            raise error
        if self.fail_always:
            raise StorageFailure("disk I/O error")
        if self.fail_next > 0:
            self.fail_next -= 1
            raise StorageFailure("database is locked")
        await super().update_message_content(message_id, content, status, **kwargs)


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll until predicate() is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
