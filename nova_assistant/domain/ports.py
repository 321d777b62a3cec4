"""Contracts of the collaborators the assistant core talks to.

The core never imports an HTTP client or a database driver directly; the
infrastructure package provides implementations of these protocols and the
tests provide fakes.
"""

from typing import Any, AsyncContextManager, AsyncIterator, Dict, List, Optional, Protocol, Union

from nova_assistant.domain.models.conversation import ConversationSnapshot, ConversationSummary, Suggestion


class CompletionBackend(Protocol):
    """Outbound "send message" call of the AI completion service"""

    def open_stream(self, message: str, system_prompt: str) -> AsyncContextManager[AsyncIterator[Union[str, bytes]]]:
        """Open a streamed reply; raises TransportError when rejected"""
        ...

    async def complete(self, message: str, system_prompt: str) -> str:
        """One-shot structured reply"""
        ...


class ConversationRepository(Protocol):
    """Storage of conversation snapshots"""

    async def save(self, conversation_id: Optional[str], snapshot: ConversationSnapshot) -> str:
        """Store a snapshot and return its id (newly created when conversation_id is None)"""
        ...

    async def load(self, conversation_id: str) -> Optional[ConversationSnapshot]:
        """Return a stored snapshot or None when not found"""
        ...

    async def list_conversations(self, user_id: Optional[str] = None) -> List[ConversationSummary]:
        """Active conversations of a user, most recently updated first"""
        ...

    async def archive(self, conversation_id: str) -> bool:
        """Hide a conversation from the history; False when it does not exist"""
        ...


class IntentClassifier(Protocol):
    """Maps free text to a symbolic intent key or "none\""""

    async def classify(self, text: str, recent_history: List[Dict[str, str]]) -> str:
        ...


class SuggestionSource(Protocol):
    """Produces contextual follow-up suggestions"""

    async def suggestions(
        self,
        context: Dict[str, Any],
        current_page: str,
        last_message_text: Optional[str]
    ) -> List[Suggestion]:
        ...


class ToolLauncher(Protocol):
    """Hands control over to the document-generation forms"""

    async def launch(self, action: str, target: str) -> None:
        ...

    async def navigate(self, target: str) -> None:
        ...
