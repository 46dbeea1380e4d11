"""Completion transport: sends assembled prompts to a backend over HTTP.

One transport class serves every backend; the :class:`BackendProfile`
supplies the endpoint, default model, headers and payload shape.

Two delivery modes:
    - Buffered (:meth:`CompletionTransport.complete`): one POST, one JSON reply
    - Streaming (:meth:`CompletionTransport.stream`): a server-sent event
      stream normalized into :class:`LLMStreamEvent` values

:meth:`CompletionTransport.execute` picks the mode from the presence of a
progress callback, the way callers of the gateway do.

Example:
    ```python
    async with CompletionTransport(profile, config) as transport:
        result = await transport.execute(assembled, on_progress=print)
        print(result.text)
    ```
"""

import asyncio
import inspect
import json
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Dict, Iterator, List, Union

import aiohttp

from chatrelay_common import OperationError
from chatrelay_llm.exceptions import StreamError, TransportError
from chatrelay_llm.llm.backends import BackendProfile, PayloadShape
from chatrelay_llm.llm.base import (
    DONE_SENTINEL,
    LLMConfig,
    LLMResponse,
    LLMStreamEvent,
    StreamEventType,
)

if TYPE_CHECKING:
    from chatrelay_llm.conversations.assembler import AssembledPrompt

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], Union[None, Awaitable[None]]]


@dataclass
class ServerSentEvent:
    """One dispatched server-sent event."""
    data: str = ""
    event: str = "message"
    id: str | None = None


class ServerSentEventParser:
    """Incremental parser for ``text/event-stream`` lines.

    Feed it lines as they arrive; it returns the events completed by each
    blank line. Comment lines and unknown fields are ignored, multiple
    ``data`` lines are joined with newlines.
    """

    def __init__(self) -> None:
        self._data: List[str] = []
        self._event: str | None = None
        self._id: str | None = None

    def feed(self, line: Union[str, bytes]) -> Iterator[ServerSentEvent]:
        if isinstance(line, bytes):
            line = line.decode("utf-8")
        line = line.rstrip("\r\n")

        if not line:
            event = self._dispatch()
            if event is not None:
                yield event
            return

        if line.startswith(":"):
            return

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            self._id = value

    def flush(self) -> Iterator[ServerSentEvent]:
        """Dispatch an event left pending when the stream ended without a blank line."""
        event = self._dispatch()
        if event is not None:
            yield event

    def _dispatch(self) -> ServerSentEvent | None:
        if not self._data and self._event is None:
            return None
        event = ServerSentEvent(
            data="\n".join(self._data),
            event=self._event or "message",
            id=self._id,
        )
        self._data = []
        self._event = None
        return event


def extract_token(payload: Any) -> str:
    """Incremental text of one streamed event.

    Legacy completions put it in ``choices[0].text``, chat completions in
    ``choices[0].delta.content``. The first chat event carries neither.
    """
    if not isinstance(payload, dict):
        return ""
    choices = payload.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    choice = choices[0]
    delta = choice.get("delta") or {}
    return choice.get("text") or delta.get("content") or ""


def extract_completion(payload: Dict[str, Any]) -> str:
    """Completion text of a buffered response (``text`` or ``message.content``)."""
    choices = payload.get("choices") or []
    if not choices:
        raise OperationError(
            "Backend response contains no choices",
            context={"response": payload},
        )
    choice = choices[0]
    message = choice.get("message") or {}
    return choice.get("text") or message.get("content") or ""


@dataclass
class TransportResult:
    """Outcome of :meth:`CompletionTransport.execute`.

    Attributes:
        text: Raw accumulated completion text (not yet normalized)
        raw: Decoded backend response for buffered calls, empty when streamed
        streamed: Whether the streaming mode was used
    """
    text: str
    raw: Dict[str, Any] = field(default_factory=dict)
    streamed: bool = False


class CompletionTransport:
    """HTTP transport for one backend.

    The aiohttp session is created lazily on first use (or by
    :meth:`initialize`) unless one is passed in; a passed-in session is not
    closed by :meth:`close`.
    """

    def __init__(
        self,
        profile: BackendProfile,
        config: LLMConfig,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.profile = profile
        self.config = config
        self._session = session
        self._owns_session = session is None

    async def initialize(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
            logger.debug("Opened HTTP session for backend %s", self.profile.name)

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "CompletionTransport":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def with_config(self, config: LLMConfig) -> "CompletionTransport":
        """Transport for another config sharing this one's session."""
        if config is self.config:
            return self
        transport = CompletionTransport(self.profile, config, self._session)
        transport._owns_session = False
        return transport

    @property
    def url(self) -> str:
        return self.config.api_base or self.profile.completions_url

    def build_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", **self.profile.default_headers}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        headers.update(self.config.headers)
        return headers

    def build_request(self, assembled: "AssembledPrompt", stream: bool = False) -> Dict[str, Any]:
        """Build the JSON request body for an assembled prompt."""
        config = self.config
        body: Dict[str, Any] = {
            "model": config.model or self.profile.default_model,
            "temperature": config.temperature,
            "top_p": config.top_p,
            "presence_penalty": config.presence_penalty,
        }
        if config.max_tokens is not None:
            body["max_tokens"] = config.max_tokens
        body.update(config.options)

        if self.profile.payload_shape is PayloadShape.TEXT:
            body["prompt"] = assembled.prompt
            if self.profile.end_token:
                body.setdefault("stop", [self.profile.end_token])
        else:
            body["messages"] = assembled.messages

        if stream:
            body["stream"] = True
        return body

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.config.timeout)

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            await self.initialize()
        assert self._session is not None
        return self._session

    async def _status_error(self, response: aiohttp.ClientResponse) -> TransportError:
        body = await response.text()
        try:
            parsed = json.loads(body)
        except ValueError:
            parsed = None
        return TransportError(
            response.status,
            body=body,
            json=parsed,
            context={"backend": self.profile.name},
        )

    async def complete(self, body: Dict[str, Any]) -> LLMResponse:
        """Send a buffered request.

        Raises:
            TransportError: If the backend answers with a non-200 status
            OperationError: If the backend cannot be reached or answers garbage
        """
        session = await self._ensure_session()
        try:
            async with session.post(
                self.url, json=body, headers=self.build_headers(), timeout=self._timeout()
            ) as response:
                if response.status != 200:
                    raise await self._status_error(response)
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise OperationError(
                f"Failed to reach backend {self.profile.name}: {e}",
                context={"backend": self.profile.name, "url": self.url},
            ) from e
        except ValueError as e:
            raise OperationError(
                f"Backend {self.profile.name} returned invalid JSON: {e}",
                context={"backend": self.profile.name},
            ) from e

        if not isinstance(data, dict):
            raise OperationError(
                f"Backend {self.profile.name} returned an unexpected response",
                context={"backend": self.profile.name, "response": data},
            )

        choices = data.get("choices") or [{}]
        return LLMResponse(
            content=extract_completion(data),
            model=data.get("model"),
            finish_reason=choices[0].get("finish_reason"),
            raw=data,
        )

    async def stream(self, body: Dict[str, Any]) -> AsyncIterator[LLMStreamEvent]:
        """Open an event stream and yield normalized events.

        Yields TOKEN events, then exactly one final DONE or ERROR event.
        Keep-alive pings and empty events are skipped, as are tokens equal to
        the backend's end token. A stream that closes without ``[DONE]``
        ends with an implicit DONE.

        Closing the generator early releases the connection.
        """
        session = await self._ensure_session()
        try:
            async with session.post(
                self.url, json=body, headers=self.build_headers(), timeout=self._timeout()
            ) as response:
                if response.status != 200:
                    yield LLMStreamEvent.failed(await self._status_error(response))
                    return

                parser = ServerSentEventParser()
                async for line in response.content:
                    for sse in parser.feed(line):
                        event = self._normalize_event(sse)
                        if event is not None:
                            yield event
                            if event.is_final:
                                return
                for sse in parser.flush():
                    event = self._normalize_event(sse)
                    if event is not None:
                        yield event
                        if event.is_final:
                            return

                if self.profile.emits_done_sentinel:
                    logger.warning("Stream from %s closed without [DONE]", self.profile.name)
                else:
                    logger.info("Stream from %s closed without [DONE]", self.profile.name)
                yield LLMStreamEvent.done()
        except StreamError as e:
            yield LLMStreamEvent.failed(e)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            error = StreamError(
                f"Event stream from {self.profile.name} failed: {e}",
                context={"backend": self.profile.name},
            )
            error.__cause__ = e
            yield LLMStreamEvent.failed(error)

    def _normalize_event(self, sse: ServerSentEvent) -> LLMStreamEvent | None:
        if not sse.data or sse.event == "ping":
            return None
        if sse.data == DONE_SENTINEL:
            logger.info("Received final [DONE] chunk for prompt")
            return LLMStreamEvent.done()

        try:
            payload = json.loads(sse.data)
        except ValueError as e:
            raise StreamError(
                f"Malformed event from {self.profile.name}: {sse.data[:200]}",
                context={"backend": self.profile.name},
            ) from e

        token = extract_token(payload)
        if not token or (self.profile.end_token and token == self.profile.end_token):
            return None
        if self.config.debug:
            logger.debug("Token: %r", token)
        return LLMStreamEvent.token_event(token)

    async def execute(
        self,
        assembled: "AssembledPrompt",
        on_progress: ProgressCallback | None = None,
    ) -> TransportResult:
        """Run one completion, streaming when a progress callback is given.

        When streaming, ``on_progress`` receives every token and then the
        ``[DONE]`` sentinel exactly once. It may be a plain function or a
        coroutine function.

        Raises:
            TransportError: Non-200 response from the backend
            StreamError: The event stream failed; any partial reply is discarded
            OperationError: The backend could not be reached
        """
        if on_progress is None:
            response = await self.complete(self.build_request(assembled))
            return TransportResult(text=response.content, raw=response.raw)

        parts: List[str] = []
        body = self.build_request(assembled, stream=True)
        async with aclosing(self.stream(body)) as events:
            async for event in events:
                if event.type is StreamEventType.ERROR:
                    assert event.error is not None
                    raise event.error
                if event.type is StreamEventType.DONE:
                    await invoke_callback(on_progress, DONE_SENTINEL)
                    break
                parts.append(event.token)
                await invoke_callback(on_progress, event.token)

        return TransportResult(text="".join(parts), streamed=True)


async def invoke_callback(callback: ProgressCallback, value: str) -> None:
    result = callback(value)
    if inspect.isawaitable(result):
        await result
