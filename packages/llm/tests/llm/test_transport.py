"""Tests for the HTTP completion transport."""

import json
import logging

import aiohttp
import pytest
from aioresponses import aioresponses

from chatrelay_common import OperationError
from chatrelay_llm.conversations.assembler import AssembledPrompt
from chatrelay_llm.exceptions import StreamError, TransportError
from chatrelay_llm.llm.backends import OPENAI, OPENROUTER, TEXT_COMPLETION, PayloadShape
from chatrelay_llm.llm.base import LLMConfig, StreamEventType
from chatrelay_llm.llm.transport import (
    CompletionTransport,
    ServerSentEventParser,
    extract_token,
)

URL = OPENROUTER.completions_url
TEXT_URL = TEXT_COMPLETION.completions_url


def sse_body(*events):
    """Encode event data strings as an SSE body."""
    return "".join(f"data: {data}\n\n" for data in events)


def delta(text):
    return json.dumps({"choices": [{"delta": {"content": text}}]})


@pytest.fixture
def assembled():
    return AssembledPrompt(
        shape=PayloadShape.CHAT,
        prompt="||>user:\nhi\n||>system:\n",
        messages=[{"role": "user", "content": "hi"}],
    )


@pytest.fixture
def mock_responses():
    with aioresponses() as m:
        yield m


@pytest.fixture
async def transport():
    transport = CompletionTransport(OPENROUTER, LLMConfig(api_key="test-key"))
    await transport.initialize()
    yield transport
    await transport.close()


def sent_request(mock_responses, url=URL):
    """Keyword arguments of the first POST made to ``url``."""
    for (method, request_url), calls in mock_responses.requests.items():
        if method == "POST" and str(request_url) == url:
            return calls[0].kwargs
    raise AssertionError(f"No POST to {url}")


class TestServerSentEventParser:
    """Test SSE line parsing."""

    def test_events_split_on_blank_lines(self):
        """Test each blank line dispatches one event."""
        parser = ServerSentEventParser()
        events = []
        for line in ["data: a\n", "\n", "event: ping\n", "data: b\n", "\n"]:
            events.extend(parser.feed(line))

        assert [(e.event, e.data) for e in events] == [("message", "a"), ("ping", "b")]

    def test_multiline_data_and_comments(self):
        """Test data lines join with newlines and comments are ignored."""
        parser = ServerSentEventParser()
        events = []
        for line in [b": keep-alive\r\n", b"data: one\r\n", b"data:two\r\n", b"\r\n"]:
            events.extend(parser.feed(line))

        assert len(events) == 1
        assert events[0].data == "one\ntwo"

    def test_flush_pending_event(self):
        """Test an unterminated event is dispatched by flush."""
        parser = ServerSentEventParser()
        assert list(parser.feed("data: tail\n")) == []
        assert [e.data for e in parser.flush()] == ["tail"]
        assert list(parser.flush()) == []


class TestExtractToken:
    """Test token extraction from event payloads."""

    def test_legacy_text(self):
        assert extract_token({"choices": [{"text": "He"}]}) == "He"

    def test_chat_delta(self):
        assert extract_token({"choices": [{"delta": {"content": "llo"}}]}) == "llo"

    def test_first_chat_event_has_no_token(self):
        assert extract_token({"choices": [{"delta": {"role": "assistant"}}]}) == ""

    def test_unexpected_shapes(self):
        assert extract_token({"choices": []}) == ""
        assert extract_token([1, 2]) == ""


class TestBuildRequest:
    """Test request body and header construction."""

    def test_chat_body_defaults(self, assembled):
        """Test the default model and sampling parameters."""
        transport = CompletionTransport(OPENROUTER, LLMConfig())

        body = transport.build_request(assembled)

        assert body == {
            "model": "mistralai/mistral-7b-instruct",
            "temperature": 0.1,
            "top_p": 0.9,
            "presence_penalty": 0.25,
            "messages": [{"role": "user", "content": "hi"}],
        }

    def test_stream_flag_and_options(self, assembled):
        """Test streaming requests and extra options."""
        config = LLMConfig(model="m", max_tokens=50, options={"seed": 7})
        transport = CompletionTransport(OPENROUTER, config)

        body = transport.build_request(assembled, stream=True)

        assert body["model"] == "m"
        assert body["max_tokens"] == 50
        assert body["seed"] == 7
        assert body["stream"] is True

    def test_text_body(self, assembled):
        """Test text backends receive the prompt and stop token."""
        transport = CompletionTransport(TEXT_COMPLETION, LLMConfig(backend="text-completion"))

        body = transport.build_request(assembled)

        assert body["prompt"] == assembled.prompt
        assert body["stop"] == ["<|im_end|>"]
        assert "messages" not in body

    def test_headers(self):
        """Test backend headers, bearer auth and custom overrides."""
        config = LLMConfig(api_key="k", headers={"X-Title": "custom", "X-Extra": "1"})
        headers = CompletionTransport(OPENROUTER, config).build_headers()

        assert headers["Authorization"] == "Bearer k"
        assert headers["HTTP-Referer"] == "https://play.v3rpg.com"
        assert headers["X-Title"] == "custom"
        assert headers["X-Extra"] == "1"
        assert headers["Content-Type"] == "application/json"

    def test_api_base_override(self):
        """Test the config can redirect the endpoint."""
        config = LLMConfig(api_base="http://localhost:9000/v1/chat/completions")
        assert CompletionTransport(OPENROUTER, config).url == config.api_base


class TestBufferedCompletion:
    """Test buffered requests."""

    @pytest.mark.asyncio
    async def test_chat_completion(self, transport, mock_responses, assembled):
        """Test the reply is taken from choices[0].message.content."""
        mock_responses.post(URL, payload={
            "model": "mistral",
            "choices": [{"message": {"role": "assistant", "content": "Hi there."}, "finish_reason": "stop"}],
        })

        result = await transport.execute(assembled)

        assert result.text == "Hi there."
        assert result.streamed is False
        assert result.raw["model"] == "mistral"
        sent = sent_request(mock_responses)
        assert sent["json"]["messages"] == assembled.messages
        assert sent["headers"]["Authorization"] == "Bearer test-key"

    @pytest.mark.asyncio
    async def test_legacy_completion(self, mock_responses, assembled):
        """Test the reply is taken from choices[0].text."""
        mock_responses.post(TEXT_URL, payload={"choices": [{"text": "Once upon"}]})

        async with CompletionTransport(TEXT_COMPLETION, LLMConfig(backend="text-completion")) as transport:
            response = await transport.complete(transport.build_request(assembled))

        assert response.content == "Once upon"

    @pytest.mark.asyncio
    async def test_error_with_json_body(self, transport, mock_responses, assembled):
        """Test a non-200 status raises TransportError with the parsed body."""
        mock_responses.post(URL, status=401, body=json.dumps({"error": {"message": "bad key"}}))

        with pytest.raises(TransportError) as excinfo:
            await transport.execute(assembled)

        assert excinfo.value.status == 401
        assert excinfo.value.json == {"error": {"message": "bad key"}}
        assert "HTTP 401" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_error_with_text_body(self, transport, mock_responses, assembled):
        """Test an unparseable error body is kept raw."""
        mock_responses.post(URL, status=502, body="Bad Gateway")

        with pytest.raises(TransportError) as excinfo:
            await transport.execute(assembled)

        assert excinfo.value.json is None
        assert excinfo.value.body == "Bad Gateway"

    @pytest.mark.asyncio
    async def test_connection_failure(self, transport, mock_responses, assembled):
        """Test network failures surface as OperationError."""
        mock_responses.post(URL, exception=aiohttp.ClientConnectionError("refused"))

        with pytest.raises(OperationError):
            await transport.execute(assembled)

    @pytest.mark.asyncio
    async def test_no_choices(self, transport, mock_responses, assembled):
        """Test a response without choices is rejected."""
        mock_responses.post(URL, payload={"choices": []})

        with pytest.raises(OperationError):
            await transport.execute(assembled)


class TestStreamingCompletion:
    """Test event-stream requests."""

    @pytest.mark.asyncio
    async def test_tokens_and_single_sentinel(self, transport, mock_responses, assembled):
        """Test tokens are forwarded and the sentinel is delivered once."""
        mock_responses.post(URL, body=sse_body(delta("He"), delta("llo"), "[DONE]"))
        received = []

        result = await transport.execute(assembled, received.append)

        assert result.text == "Hello"
        assert result.streamed is True
        assert result.raw == {}
        assert received == ["He", "llo", "[DONE]"]
        assert sent_request(mock_responses)["json"]["stream"] is True

    @pytest.mark.asyncio
    async def test_pings_and_empty_deltas_skipped(self, transport, mock_responses, assembled):
        """Test keep-alives and tokenless events produce no callbacks."""
        body = (
            "event: ping\ndata: {}\n\n"
            + sse_body(json.dumps({"choices": [{"delta": {"role": "assistant"}}]}))
            + ": comment\n\n"
            + sse_body(delta("Hi"), "[DONE]")
        )
        mock_responses.post(URL, body=body)
        received = []

        result = await transport.execute(assembled, received.append)

        assert received == ["Hi", "[DONE]"]
        assert result.text == "Hi"

    @pytest.mark.asyncio
    async def test_close_without_sentinel(self, transport, mock_responses, assembled):
        """Test the natural end of the stream acts as the terminal event."""
        mock_responses.post(URL, body=sse_body(delta("A"), delta("B")))
        received = []

        result = await transport.execute(assembled, received.append)

        assert received == ["A", "B", "[DONE]"]
        assert result.text == "AB"

    @pytest.mark.asyncio
    async def test_missing_sentinel_logged_as_info(self, transport, mock_responses, assembled, caplog):
        """Test a backend known to skip [DONE] is not reported as a problem."""
        mock_responses.post(URL, body=sse_body(delta("A")))

        with caplog.at_level(logging.INFO, logger="chatrelay_llm.llm.transport"):
            await transport.execute(assembled, lambda token: None)

        records = [r for r in caplog.records if "closed without" in r.getMessage()]
        assert [r.levelno for r in records] == [logging.INFO]

    @pytest.mark.asyncio
    async def test_missing_sentinel_logged_as_warning(self, mock_responses, assembled, caplog):
        """Test a backend that normally sends [DONE] gets a warning when it does not."""
        url = OPENAI.completions_url
        mock_responses.post(url, body=sse_body(delta("A")))
        received = []

        async with CompletionTransport(OPENAI, LLMConfig(backend="openai", api_key="k")) as transport:
            with caplog.at_level(logging.INFO, logger="chatrelay_llm.llm.transport"):
                await transport.execute(assembled, received.append)

        records = [r for r in caplog.records if "closed without" in r.getMessage()]
        assert [r.levelno for r in records] == [logging.WARNING]
        assert received == ["A", "[DONE]"]

    @pytest.mark.asyncio
    async def test_events_after_sentinel_ignored(self, transport, mock_responses, assembled):
        """Test nothing after [DONE] is delivered."""
        mock_responses.post(URL, body=sse_body(delta("A"), "[DONE]", delta("B")))
        received = []

        await transport.execute(assembled, received.append)

        assert received == ["A", "[DONE]"]

    @pytest.mark.asyncio
    async def test_async_callback(self, transport, mock_responses, assembled):
        """Test coroutine callbacks are awaited."""
        mock_responses.post(URL, body=sse_body(delta("x"), "[DONE]"))
        received = []

        async def on_progress(token):
            received.append(token)

        await transport.execute(assembled, on_progress)

        assert received == ["x", "[DONE]"]

    @pytest.mark.asyncio
    async def test_end_token_dropped(self, mock_responses, assembled):
        """Test tokens equal to the backend end token are not forwarded."""
        body = sse_body(
            json.dumps({"choices": [{"text": "Hi"}]}),
            json.dumps({"choices": [{"text": "<|im_end|>"}]}),
            "[DONE]",
        )
        mock_responses.post(TEXT_URL, body=body)
        received = []

        async with CompletionTransport(TEXT_COMPLETION, LLMConfig(backend="text-completion")) as transport:
            result = await transport.execute(assembled, received.append)

        assert received == ["Hi", "[DONE]"]
        assert result.text == "Hi"

    @pytest.mark.asyncio
    async def test_error_status_aborts_stream(self, transport, mock_responses, assembled):
        """Test a non-200 open fails like the buffered path, without callbacks."""
        mock_responses.post(URL, status=429, body=json.dumps({"error": "slow down"}))
        received = []

        with pytest.raises(TransportError) as excinfo:
            await transport.execute(assembled, received.append)

        assert excinfo.value.status == 429
        assert excinfo.value.json == {"error": "slow down"}
        assert received == []

    @pytest.mark.asyncio
    async def test_error_status_is_error_event(self, transport, mock_responses, assembled):
        """Test stream() reports failures as a final ERROR event."""
        mock_responses.post(URL, status=500, body="oops")

        events = [e async for e in transport.stream(transport.build_request(assembled, stream=True))]

        assert len(events) == 1
        assert events[0].type is StreamEventType.ERROR
        assert isinstance(events[0].error, TransportError)

    @pytest.mark.asyncio
    async def test_malformed_event(self, transport, mock_responses, assembled):
        """Test undecodable event data raises StreamError."""
        mock_responses.post(URL, body=sse_body(delta("A"), "{broken"))
        received = []

        with pytest.raises(StreamError):
            await transport.execute(assembled, received.append)

        assert received == ["A"]

    @pytest.mark.asyncio
    async def test_connection_failure(self, transport, mock_responses, assembled):
        """Test network failures while streaming raise StreamError."""
        mock_responses.post(URL, exception=aiohttp.ClientConnectionError("reset"))

        with pytest.raises(StreamError):
            await transport.execute(assembled, lambda token: None)

    @pytest.mark.asyncio
    async def test_early_close(self, transport, mock_responses, assembled):
        """Test a consumer can stop reading after the first token."""
        mock_responses.post(URL, body=sse_body(delta("A"), delta("B"), "[DONE]"))

        stream = transport.stream(transport.build_request(assembled, stream=True))
        first = await stream.__anext__()
        await stream.aclose()

        assert first.token == "A"
