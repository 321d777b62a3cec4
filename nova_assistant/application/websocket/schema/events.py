from typing import Annotated, Dict, Any, Optional, List, Literal, Union
from pydantic import BaseModel, Field, TypeAdapter
from datetime import datetime
from enum import Enum

from nova_assistant.domain.models.conversation import (
    ArtifactReference, ConversationSummary, Message, Suggestion, WorkflowState
)


class EventType(str, Enum):
    """WebSocket event types"""
    # Client -> server
    USER_MESSAGE = "user_message"
    SUGGESTION_CLICK = "suggestion_click"
    ARTIFACT_PRODUCED = "artifact_produced"
    RESUME_CONVERSATION = "resume_conversation"
    NEW_CONVERSATION = "new_conversation"
    RETRY = "retry"
    LIST_CONVERSATIONS = "list_conversations"
    ARCHIVE_CONVERSATION = "archive_conversation"

    # Server -> client
    MESSAGE_APPENDED = "message_appended"
    MESSAGE_DELTA = "message_delta"
    MESSAGE_SETTLED = "message_settled"
    MESSAGE_REMOVED = "message_removed"
    CONVERSATION_RESET = "conversation_reset"
    WORKFLOW_UPDATED = "workflow_updated"
    CONVERSATION_LIST = "conversation_list"
    CONVERSATION_ARCHIVED = "conversation_archived"
    TOOL_HANDOFF = "tool_handoff"
    NAVIGATION = "navigation"
    ERROR = "error"
    CONNECTION = "connection"


class BaseEvent(BaseModel):
    """Base event model for all WebSocket messages"""
    type: EventType
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    session_id: Optional[str] = None


# ----------------------------------------------------------------------
# Client events
# ----------------------------------------------------------------------

class UserMessage(BaseEvent):
    """Free text typed by the user"""
    type: Literal[EventType.USER_MESSAGE] = EventType.USER_MESSAGE
    content: str


class SuggestionClick(BaseEvent):
    """A suggestion attached to an assistant message was clicked"""
    type: Literal[EventType.SUGGESTION_CLICK] = EventType.SUGGESTION_CLICK
    suggestion: Suggestion


class ArtifactProduced(BaseEvent):
    """A tool finished a workflow step out of band"""
    type: Literal[EventType.ARTIFACT_PRODUCED] = EventType.ARTIFACT_PRODUCED
    workflow_type: str
    step_index: int
    artifact: Optional[ArtifactReference] = None


class ResumeConversation(BaseEvent):
    type: Literal[EventType.RESUME_CONVERSATION] = EventType.RESUME_CONVERSATION
    conversation_id: str


class NewConversation(BaseEvent):
    type: Literal[EventType.NEW_CONVERSATION] = EventType.NEW_CONVERSATION
    context_snapshot: Dict[str, Any] = Field(default_factory=dict)
    current_page: str = "dashboard"


class RetryRequest(BaseEvent):
    """Re-issue the last failed completion"""
    type: Literal[EventType.RETRY] = EventType.RETRY


class ListConversations(BaseEvent):
    """Ask for the conversation history"""
    type: Literal[EventType.LIST_CONVERSATIONS] = EventType.LIST_CONVERSATIONS


class ArchiveConversation(BaseEvent):
    type: Literal[EventType.ARCHIVE_CONVERSATION] = EventType.ARCHIVE_CONVERSATION
    conversation_id: str


ClientEvent = Annotated[
    Union[
        UserMessage,
        SuggestionClick,
        ArtifactProduced,
        ResumeConversation,
        NewConversation,
        RetryRequest,
        ListConversations,
        ArchiveConversation
    ],
    Field(discriminator="type")
]

_client_event_adapter = TypeAdapter(ClientEvent)


def parse_client_event(data: Dict[str, Any]) -> ClientEvent:
    """Validate a raw client frame into its event model"""
    return _client_event_adapter.validate_python(data)


# ----------------------------------------------------------------------
# Server events
# ----------------------------------------------------------------------

class MessageAppended(BaseEvent):
    type: Literal[EventType.MESSAGE_APPENDED] = EventType.MESSAGE_APPENDED
    message: Message


class MessageDelta(BaseEvent):
    """Latest snapshot of a streaming reply"""
    type: Literal[EventType.MESSAGE_DELTA] = EventType.MESSAGE_DELTA
    message_id: str
    content: str


class MessageSettled(BaseEvent):
    type: Literal[EventType.MESSAGE_SETTLED] = EventType.MESSAGE_SETTLED
    message: Message


class MessageRemoved(BaseEvent):
    type: Literal[EventType.MESSAGE_REMOVED] = EventType.MESSAGE_REMOVED
    message_id: str


class ConversationReset(BaseEvent):
    """The active conversation was replaced"""
    type: Literal[EventType.CONVERSATION_RESET] = EventType.CONVERSATION_RESET
    conversation_id: Optional[str] = None
    title: str = ""
    messages: List[Message] = Field(default_factory=list)
    workflow_state: Optional[WorkflowState] = None


class WorkflowUpdated(BaseEvent):
    type: Literal[EventType.WORKFLOW_UPDATED] = EventType.WORKFLOW_UPDATED
    workflow_state: Optional[WorkflowState] = None


class ConversationList(BaseEvent):
    """Active stored conversations, most recently updated first"""
    type: Literal[EventType.CONVERSATION_LIST] = EventType.CONVERSATION_LIST
    conversations: List[ConversationSummary] = Field(default_factory=list)


class ConversationArchived(BaseEvent):
    type: Literal[EventType.CONVERSATION_ARCHIVED] = EventType.CONVERSATION_ARCHIVED
    conversation_id: str
    archived: bool


class ToolHandoff(BaseEvent):
    """Open a document-generation tool"""
    type: Literal[EventType.TOOL_HANDOFF] = EventType.TOOL_HANDOFF
    action: str
    target: str


class Navigation(BaseEvent):
    type: Literal[EventType.NAVIGATION] = EventType.NAVIGATION
    target: str


class ErrorEvent(BaseEvent):
    """Error event"""
    type: Literal[EventType.ERROR] = EventType.ERROR
    payload: Dict[str, Any]
    error_code: Optional[str] = None


class ConnectionEvent(BaseEvent):
    """Connection status event"""
    type: Literal[EventType.CONNECTION] = EventType.CONNECTION
    status: Literal["connected", "disconnected", "reconnecting"]
