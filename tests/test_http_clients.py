import json

import httpx
import pytest

from nova_assistant.domain.errors import (
    ClassificationError, PersistenceError, SuggestionError, TransportError
)
from nova_assistant.domain.models.conversation import (
    ConversationSnapshot, Message, SuggestionKind, WorkflowState
)
from nova_assistant.domain.streaming.stream_decoder import decode_stream
from nova_assistant.infrastructure.llm.completion_client import CompletionClient
from nova_assistant.infrastructure.persistence.conversation_repository import (
    InMemoryConversationRepository, SupabaseConversationRepository
)
from nova_assistant.infrastructure.services.edge_functions import (
    IntentClassifierClient, SuggestionClient
)
from tests.conftest import sse

BASE_URL = "https://project.supabase.co/functions/v1"


class Recorder:
    """MockTransport handler that answers with a fixed response"""

    def __init__(self, status_code=200, **response_kwargs):
        self.status_code = status_code
        self.response_kwargs = response_kwargs
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, **self.response_kwargs)

    @property
    def body(self):
        return json.loads(self.requests[-1].content)

    def transport(self):
        return httpx.MockTransport(self)


class TestCompletionClient:

    async def test_streamed_reply(self):
        recorder = Recorder(content=sse("Bon", "jour").encode("utf-8"))
        client = CompletionClient(BASE_URL, api_key="anon", transport=recorder.transport())

        async with client.open_stream("Salut", "Vous êtes Nova") as chunks:
            events = [e async for e in decode_stream(chunks)]

        assert "".join(e.content for e in events) == "Bonjour"
        request = recorder.requests[0]
        assert str(request.url) == f"{BASE_URL}/chat-ai"
        assert request.headers["Authorization"] == "Bearer anon"
        assert recorder.body == {"message": "Salut", "systemPrompt": "Vous êtes Nova", "stream": True}

    @pytest.mark.parametrize("status_code,retryable", [(429, True), (500, True), (402, False)])
    async def test_rejected_stream(self, status_code, retryable):
        recorder = Recorder(status_code, json={"error": "nope"})
        client = CompletionClient(BASE_URL, transport=recorder.transport())

        with pytest.raises(TransportError) as exc_info:
            async with client.open_stream("Salut", "prompt"):
                pass

        assert exc_info.value.status_code == status_code
        assert exc_info.value.retryable is retryable

    async def test_connection_failure(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = CompletionClient(BASE_URL, transport=httpx.MockTransport(refuse))

        with pytest.raises(TransportError):
            async with client.open_stream("Salut", "prompt"):
                pass

    async def test_one_shot_reply(self):
        recorder = Recorder(json={"response": "Bonjour !"})
        client = CompletionClient(BASE_URL, transport=recorder.transport())

        assert await client.complete("Salut", "prompt") == "Bonjour !"
        assert recorder.body["stream"] is False

    async def test_one_shot_without_content(self):
        client = CompletionClient(BASE_URL, transport=Recorder(json={"other": 1}).transport())
        with pytest.raises(TransportError):
            await client.complete("Salut", "prompt")


class TestEdgeFunctions:

    async def test_detect_intent(self):
        recorder = Recorder(json={"detectedIntent": "instant_prd"})
        client = IntentClassifierClient(BASE_URL, transport=recorder.transport())

        history = [{"role": "user", "content": "Bonjour"}]
        assert await client.classify("Un PRD svp", history) == "instant_prd"
        assert str(recorder.requests[0].url) == f"{BASE_URL}/detect-tool-intent"
        assert recorder.body == {"message": "Un PRD svp", "conversationHistory": history}

    async def test_missing_intent_means_none(self):
        client = IntentClassifierClient(BASE_URL, transport=Recorder(json={}).transport())
        assert await client.classify("?", []) == "none"

    async def test_classifier_error(self):
        client = IntentClassifierClient(BASE_URL, transport=Recorder(500, text="boom").transport())
        with pytest.raises(ClassificationError):
            await client.classify("?", [])

    async def test_suggestions_are_mapped(self):
        recorder = Recorder(json={"suggestions": [
            {"label": "Créer un Canvas", "action": "canvas_generator", "type": "tool"},
            {"label": "Construire une Squad", "action": "squad_builder", "type": "workflow"},
            {"label": "Cassé", "action": "x", "type": "teleport"},
            "not an object",
        ]})
        client = SuggestionClient(BASE_URL, transport=recorder.transport())

        suggestions = await client.suggestions({"squads": []}, "dashboard", "Bonjour")

        assert [s.action for s in suggestions] == ["canvas_generator", "squad_builder"]
        assert suggestions[1].kind == SuggestionKind.WORKFLOW
        assert recorder.body == {
            "workspaceContext": {"squads": []},
            "currentPage": "dashboard",
            "recentActivity": "Bonjour"
        }

    async def test_suggestion_error(self):
        client = SuggestionClient(BASE_URL, transport=Recorder(503, text="down").transport())
        with pytest.raises(SuggestionError):
            await client.suggestions({}, "dashboard", None)


def snapshot() -> ConversationSnapshot:
    return ConversationSnapshot(
        title="Question",
        messages=[Message.user("Question"), Message.assistant("Réponse")],
        context_snapshot={"squads": []},
        workflow_state=WorkflowState(workflow_type="feature_discovery", step_index=1)
    )


class TestSupabaseRepository:

    REST_URL = "https://project.supabase.co/rest/v1"

    async def test_insert_returns_new_id(self):
        recorder = Recorder(201, json=[{"id": "c-1"}])
        repository = SupabaseConversationRepository(
            self.REST_URL, "anon", user_id="u-1", transport=recorder.transport()
        )

        assert await repository.save(None, snapshot()) == "c-1"

        request = recorder.requests[0]
        assert request.method == "POST"
        assert str(request.url) == f"{self.REST_URL}/nova_conversations"
        assert recorder.body["user_id"] == "u-1"
        assert recorder.body["workflow_state"]["step_index"] == 1
        assert len(recorder.body["messages"]) == 2

    async def test_update_patches_existing_row(self):
        recorder = Recorder(200, json=[{"id": "c-1"}])
        repository = SupabaseConversationRepository(self.REST_URL, "anon", transport=recorder.transport())

        assert await repository.save("c-1", snapshot()) == "c-1"

        request = recorder.requests[0]
        assert request.method == "PATCH"
        assert request.url.params["id"] == "eq.c-1"

    async def test_load(self):
        row = snapshot().model_dump(mode="json")
        recorder = Recorder(200, json=[row])
        repository = SupabaseConversationRepository(self.REST_URL, "anon", transport=recorder.transport())

        loaded = await repository.load("c-1")

        assert loaded.title == "Question"
        assert [m.content for m in loaded.messages] == ["Question", "Réponse"]
        assert loaded.workflow_state.workflow_type == "feature_discovery"

    async def test_load_missing(self):
        repository = SupabaseConversationRepository(
            self.REST_URL, "anon", transport=Recorder(200, json=[]).transport()
        )
        assert await repository.load("c-404") is None

    async def test_save_failure(self):
        repository = SupabaseConversationRepository(
            self.REST_URL, "anon", transport=Recorder(500, text="error").transport()
        )
        with pytest.raises(PersistenceError):
            await repository.save(None, snapshot())


class TestInMemoryRepository:

    async def test_history_is_most_recent_first(self):
        repository = InMemoryConversationRepository(user_id="u-1")
        first = await repository.save(None, snapshot())
        second = await repository.save(None, snapshot().model_copy(update={"title": "Autre"}))
        await repository.save(first, snapshot())

        history = await repository.list_conversations("u-1")

        assert [c.id for c in history] == [first, second]
        assert history[1].title == "Autre"
        assert await repository.list_conversations("someone-else") == []

    async def test_archived_conversation_leaves_the_history(self):
        repository = InMemoryConversationRepository()
        conversation_id = await repository.save(None, snapshot())

        assert await repository.archive(conversation_id) is True
        assert await repository.list_conversations() == []
        assert await repository.archive("missing") is False
        assert (await repository.load(conversation_id)).title == "Question"

    async def test_round_trip_returns_a_copy(self):
        repository = InMemoryConversationRepository()
        conversation_id = await repository.save(None, snapshot())

        loaded = await repository.load(conversation_id)
        loaded.messages.clear()

        assert len((await repository.load(conversation_id)).messages) == 2

    async def test_update_of_unknown_id(self):
        repository = InMemoryConversationRepository()
        with pytest.raises(PersistenceError):
            await repository.save("missing", snapshot())


class TestSupabaseHistory:

    REST_URL = TestSupabaseRepository.REST_URL

    async def test_list_conversations(self):
        recorder = Recorder(200, json=[
            {"id": "c-2", "title": "Roadmap", "updated_at": "2026-10-18T09:30:00+00:00"},
            {"id": "c-1", "title": None, "updated_at": None},
        ])
        repository = SupabaseConversationRepository(
            self.REST_URL, "anon", user_id="u-1", transport=recorder.transport()
        )

        conversations = await repository.list_conversations()

        assert [c.id for c in conversations] == ["c-2", "c-1"]
        assert conversations[1].title == ""
        params = recorder.requests[0].url.params
        assert params["user_id"] == "eq.u-1"
        assert params["is_active"] == "eq.true"
        assert params["order"] == "updated_at.desc"

    async def test_archive_marks_row_inactive(self):
        recorder = Recorder(200, json=[{"id": "c-1"}])
        repository = SupabaseConversationRepository(self.REST_URL, "anon", transport=recorder.transport())

        assert await repository.archive("c-1") is True

        request = recorder.requests[0]
        assert request.method == "PATCH"
        assert request.url.params["id"] == "eq.c-1"
        assert recorder.body == {"is_active": False}

    async def test_archive_unknown_row(self):
        repository = SupabaseConversationRepository(
            self.REST_URL, "anon", transport=Recorder(200, json=[]).transport()
        )
        assert await repository.archive("c-404") is False

    async def test_list_failure(self):
        repository = SupabaseConversationRepository(
            self.REST_URL, "anon", transport=Recorder(500, text="error").transport()
        )
        with pytest.raises(PersistenceError):
            await repository.list_conversations("u-1")
