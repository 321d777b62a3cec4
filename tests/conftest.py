"""Shared fakes for the assistant core tests"""

from typing import Any, Dict, List, Optional, Sequence, Union
from contextlib import asynccontextmanager
import asyncio
import json

import pytest

from nova_assistant.domain.context.conversation_store import ConversationStore
from nova_assistant.domain.errors import TransportError
from nova_assistant.domain.models.conversation import ConversationSnapshot, Suggestion
from nova_assistant.infrastructure.persistence.conversation_repository import InMemoryConversationRepository


def sse(*fragments: str, done: bool = True) -> str:
    """Render content fragments as a chat-completion event stream"""
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"content": fragment}}]}, ensure_ascii=False) + "\n"
        for fragment in fragments
    ]
    if done:
        lines.append("data: [DONE]\n")
    return "".join(lines)


class StreamScript:
    """One scripted reply of the fake completion backend"""

    def __init__(
        self,
        chunks: Sequence[Union[str, bytes]] = (),
        open_error: Optional[TransportError] = None,
        error_after: Optional[TransportError] = None,
        gate: Optional[asyncio.Event] = None
    ):
        self.chunks = list(chunks)
        self.open_error = open_error
        self.error_after = error_after
        self.gate = gate
        self.waiting = asyncio.Event()


class FakeCompletionBackend:
    """Replays scripted streams and records the requests it received"""

    def __init__(self, *scripts: StreamScript, reply: str = "Réponse complète"):
        self.scripts = list(scripts)
        self.reply = reply
        self.requests: List[Dict[str, str]] = []
        self.complete_error: Optional[TransportError] = None

    @asynccontextmanager
    async def open_stream(self, message: str, system_prompt: str):
        self.requests.append({"message": message, "system_prompt": system_prompt})
        script = self.scripts.pop(0) if self.scripts else StreamScript([sse("ok")])
        if script.open_error is not None:
            raise script.open_error
        yield self._chunks(script)

    async def _chunks(self, script: StreamScript):
        for index, chunk in enumerate(script.chunks):
            if index == 1 and script.gate is not None:
                script.waiting.set()
                await script.gate.wait()
            yield chunk
        if script.error_after is not None:
            raise script.error_after

    async def complete(self, message: str, system_prompt: str) -> str:
        self.requests.append({"message": message, "system_prompt": system_prompt})
        if self.complete_error is not None:
            raise self.complete_error
        return self.reply


class FakeClassifier:
    def __init__(self, intent: str = "none", error: Optional[Exception] = None):
        self.intent = intent
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def classify(self, text: str, recent_history: List[Dict[str, str]]) -> str:
        self.calls.append({"text": text, "history": recent_history})
        if self.error is not None:
            raise self.error
        return self.intent


class FakeSuggestionSource:
    def __init__(self, suggestions: Optional[List[Suggestion]] = None, error: Optional[Exception] = None):
        self.result = suggestions or []
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def suggestions(self, context: Dict[str, Any], current_page: str, last_message_text: Optional[str]):
        self.calls.append({"context": context, "page": current_page, "last": last_message_text})
        if self.error is not None:
            raise self.error
        return list(self.result)


class RecordingLauncher:
    def __init__(self):
        self.launched: List[tuple] = []
        self.navigated: List[str] = []

    async def launch(self, action: str, target: str) -> None:
        self.launched.append((action, target))

    async def navigate(self, target: str) -> None:
        self.navigated.append(target)


class GatedRepository(InMemoryConversationRepository):
    """In-memory repository whose saves wait for a gate"""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.saved: List[ConversationSnapshot] = []
        self.active = 0
        self.peak = 0

    async def save(self, conversation_id: Optional[str], snapshot: ConversationSnapshot) -> str:
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await self.gate.wait()
            self.saved.append(snapshot)
            return await super().save(conversation_id, snapshot)
        finally:
            self.active -= 1


class FailingRepository:
    async def save(self, conversation_id, snapshot):
        raise RuntimeError("database unavailable")

    async def load(self, conversation_id):
        raise RuntimeError("database unavailable")

    async def list_conversations(self, user_id=None):
        raise RuntimeError("database unavailable")

    async def archive(self, conversation_id):
        raise RuntimeError("database unavailable")


@pytest.fixture
def repository():
    return InMemoryConversationRepository()


@pytest.fixture
def store(repository):
    return ConversationStore(repository=repository)
