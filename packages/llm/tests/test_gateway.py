"""Tests for the request-routing gateway."""

import json

import pytest
from aioresponses import aioresponses

from chatrelay_llm.conversations.storage import FileConversationStore, MemoryConversationStore
from chatrelay_llm.gateway import ChatGateway, create_store
from chatrelay_llm.llm.backends import OCTOAI, OPENAI

SETTINGS = {
    "client_to_use": "openai",
    "clients": {
        "openai": {"api_key": "openai-key", "model": "gpt-4o-mini"},
        "octoai": {"api_key": "octo-key"},
    },
    "per_message_client_options_whitelist": {
        "valid_clients_to_use": ["openai", "octoai"],
        "openai": ["model_options.temperature"],
    },
}


def completion(text):
    return {"choices": [{"message": {"content": text}, "finish_reason": "stop"}]}


def posted_json(mock_responses, url):
    """JSON bodies of the POSTs made to ``url``."""
    for (method, request_url), calls in mock_responses.requests.items():
        if method == "POST" and str(request_url) == url:
            return [call.kwargs["json"] for call in calls]
    return []


@pytest.fixture
def mock_responses():
    with aioresponses() as m:
        yield m


@pytest.fixture
async def gateway():
    gateway = ChatGateway(SETTINGS)
    yield gateway
    await gateway.close()


class TestCreateStore:
    """Test store selection from settings."""

    def test_memory_by_default(self):
        assert isinstance(create_store({}), MemoryConversationStore)

    def test_file_store_when_path_set(self, tmp_path):
        store = create_store({"storage_file_path": str(tmp_path / "c.json")})
        assert isinstance(store, FileConversationStore)


class TestSend:
    """Test buffered requests."""

    @pytest.mark.asyncio
    async def test_health(self, gateway):
        assert gateway.health() == {"status": "alive"}

    @pytest.mark.asyncio
    async def test_missing_message(self, gateway, mock_responses):
        """Test a request without a message is rejected with 400."""
        status, body = await gateway.send({"conversation_id": "c1"})

        assert status == 400
        assert body == {"error": "The message parameter is required."}
        assert not mock_responses.requests

    @pytest.mark.asyncio
    async def test_success(self, gateway, mock_responses):
        """Test a turn against the default client."""
        mock_responses.post(OPENAI.completions_url, payload=completion("Hi there."))

        status, body = await gateway.send({"message": "Hello"})

        assert status == 200
        assert body["response"] == "Hi there."
        assert body["details"]["choices"][0]["finish_reason"] == "stop"
        stored = await gateway.store.with_namespace("openai").get(body["conversationId"])
        assert stored.messages[-1].id == body["messageId"]

    @pytest.mark.asyncio
    async def test_follow_up(self, gateway, mock_responses):
        """Test a second request continues the returned thread."""
        mock_responses.post(OPENAI.completions_url, payload=completion("First."))
        mock_responses.post(OPENAI.completions_url, payload=completion("Second."))

        _, first = await gateway.send({"message": "One"})
        status, second = await gateway.send({
            "message": "Two",
            "conversation_id": first["conversationId"],
            "parent_message_id": first["messageId"],
        })

        assert status == 200
        assert second["conversationId"] == first["conversationId"]
        bodies = posted_json(mock_responses, OPENAI.completions_url)
        assert [m["content"] for m in bodies[1]["messages"]] == ["One", "First.", "Two"]

    @pytest.mark.asyncio
    async def test_whitelisted_options(self, gateway, mock_responses):
        """Test only whitelisted options reach the backend."""
        mock_responses.post(OPENAI.completions_url, payload=completion("Ok."))

        await gateway.send({
            "message": "Hello",
            "client_options": {"model_options": {"temperature": 0.7, "model": "other"}},
        })

        body = posted_json(mock_responses, OPENAI.completions_url)[0]
        assert body["temperature"] == 0.7
        assert body["model"] == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_switch_client(self, gateway, mock_responses):
        """Test client_to_use in the options selects another valid client."""
        mock_responses.post(OCTOAI.completions_url, payload=completion("From octo."))

        status, body = await gateway.send({
            "message": "Hello",
            "client_options": {"client_to_use": "octoai"},
        })

        assert status == 200
        assert body["response"] == "From octo."
        assert await gateway.store.with_namespace("octoai").get(body["conversationId"])
        assert await gateway.store.with_namespace("openai").get(body["conversationId"]) is None

    @pytest.mark.asyncio
    async def test_unauthorized(self, gateway, mock_responses):
        """Test a 401 from the backend is passed through."""
        mock_responses.post(OPENAI.completions_url, status=401, body="bad key")

        status, body = await gateway.send({"message": "Hello"})

        assert status == 401
        assert "HTTP 401" in body["error"]

    @pytest.mark.asyncio
    async def test_backend_failure(self, gateway, mock_responses):
        """Test other backend failures map to 503."""
        mock_responses.post(OPENAI.completions_url, status=500, body="oops")

        status, _ = await gateway.send({"message": "Hello"})

        assert status == 503

    @pytest.mark.asyncio
    async def test_unknown_client(self, gateway):
        """Test an unknown client fails without reaching any backend."""
        status, body = await gateway.send({"message": "Hello", "client_to_use": "nope"})

        assert status == 503
        assert "nope" in body["error"]

    @pytest.mark.asyncio
    async def test_file_store(self, tmp_path, mock_responses):
        """Test conversations persist to the configured file."""
        path = tmp_path / "conversations.json"
        mock_responses.post(OPENAI.completions_url, payload=completion("Saved."))

        async with ChatGateway({**SETTINGS, "storage_file_path": str(path)}) as gateway:
            _, body = await gateway.send({"message": "Hello"})

        data = json.loads(path.read_text())
        assert f"openai:{body['conversationId']}" in data


class TestStream:
    """Test streaming requests."""

    @pytest.mark.asyncio
    async def test_stream_events(self, gateway, mock_responses):
        """Test tokens are relayed, then the result and done events."""
        chunks = [
            json.dumps({"choices": [{"delta": {"content": token}}]})
            for token in ["Hi", " there."]
        ]
        body = "".join(f"data: {chunk}\n\n" for chunk in chunks) + "data: [DONE]\n\n"
        mock_responses.post(OPENAI.completions_url, body=body)

        events = [event async for event in gateway.stream({"message": "Hello"})]

        assert [e.type for e in events] == ["token", "token", "result", "done"]
        assert [e.data for e in events[:2]] == ["Hi", " there."]
        assert events[2].data["response"] == "Hi there."
        assert posted_json(mock_responses, OPENAI.completions_url)[0]["stream"] is True

    @pytest.mark.asyncio
    async def test_stream_missing_message(self, gateway):
        """Test a rejected streaming request yields one error event."""
        events = [event async for event in gateway.stream({})]

        assert len(events) == 1
        assert events[0].type == "error"
        assert events[0].data["code"] == 400
