from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum
import uuid


class MessageRole(str, Enum):
    """Author of a message"""
    USER = "user"
    ASSISTANT = "assistant"


class MessageKind(str, Enum):
    """How the UI should present a message"""
    TEXT = "text"
    NOTICE = "notice"
    ERROR = "error"


class SuggestionKind(str, Enum):
    """What a suggestion resolves to when clicked"""
    TOOL = "tool"
    WORKFLOW = "workflow"
    NAVIGATION = "navigation"


class Suggestion(BaseModel):
    """Clickable shortcut attached to an assistant message"""
    label: str = Field(description="Display text")
    action: str = Field(description="Tool key, workflow type or navigation target")
    kind: SuggestionKind = Field(default=SuggestionKind.TOOL)


class ArtifactReference(BaseModel):
    """Lightweight reference to an artifact produced outside the assistant"""
    id: str = Field(description="Artifact identifier")
    artifact_type: str = Field(description="Artifact type, e.g. prd or persona")
    title: Optional[str] = Field(None, description="Artifact title")


class WorkflowStepInfo(BaseModel):
    """Progress display for the current workflow step"""
    current: str = Field(description="Label of the current step")
    total: int = Field(description="Total number of steps")
    progress: int = Field(ge=0, le=100, description="Completed percentage")


class Message(BaseModel):
    """One entry of a conversation log"""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: MessageRole
    content: str = ""
    kind: MessageKind = Field(default=MessageKind.TEXT)
    suggestions: List[Suggestion] = Field(default_factory=list)
    artifacts: List[ArtifactReference] = Field(default_factory=list)
    workflow_step: Optional[WorkflowStepInfo] = None
    streaming: bool = Field(default=False, description="True while a reply is still arriving")
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=MessageRole.USER, content=content)

    @classmethod
    def assistant(cls, content: str, **kwargs) -> "Message":
        return cls(role=MessageRole.ASSISTANT, content=content, **kwargs)

    @classmethod
    def placeholder(cls) -> "Message":
        """Empty assistant message that a stream fills in"""
        return cls(role=MessageRole.ASSISTANT, content="", streaming=True)


class WorkflowState(BaseModel):
    """Active workflow pointer of a conversation"""
    workflow_type: str
    step_index: int = Field(default=0, ge=0)
    context: Dict[str, Optional[ArtifactReference]] = Field(
        default_factory=dict,
        description="Step name -> artifact produced at that step"
    )


class ConversationSnapshot(BaseModel):
    """Shape handed to and returned by the persistence collaborator"""
    title: str = ""
    messages: List[Message] = Field(default_factory=list)
    context_snapshot: Dict[str, Any] = Field(default_factory=dict)
    workflow_state: Optional[WorkflowState] = None


class ConversationSummary(BaseModel):
    """History entry for one stored conversation"""
    id: str
    title: str = ""
    updated_at: Optional[datetime] = None


class Conversation(BaseModel):
    """A conversation owned by the store"""
    id: Optional[str] = Field(None, description="Identifier assigned by the persistence collaborator")
    local_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str = ""
    messages: List[Message] = Field(default_factory=list)
    context_snapshot: Dict[str, Any] = Field(default_factory=dict)
    workflow_state: Optional[WorkflowState] = None

    @property
    def write_key(self) -> str:
        """Key used to serialize persistence writes, shared by every copy of a persisted conversation"""
        return self.id or self.local_id

    def recent_history(self, limit: int = 5) -> List[Dict[str, str]]:
        """Last settled messages in the role/content shape the classifier expects"""
        settled = [m for m in self.messages if not m.streaming and m.kind == MessageKind.TEXT]
        return [
            {"role": m.role.value, "content": m.content}
            for m in settled[-limit:]
        ]

    def to_snapshot(self) -> ConversationSnapshot:
        """Snapshot of the settled state, deterministic for an unchanged conversation"""
        return ConversationSnapshot(
            title=self.title,
            messages=[m.model_copy(deep=True) for m in self.messages if not m.streaming],
            context_snapshot=dict(self.context_snapshot),
            workflow_state=self.workflow_state.model_copy(deep=True) if self.workflow_state else None
        )

    @classmethod
    def from_snapshot(cls, conversation_id: str, snapshot: ConversationSnapshot) -> "Conversation":
        return cls(
            id=conversation_id,
            title=snapshot.title,
            messages=[m for m in snapshot.messages if not m.streaming],
            context_snapshot=snapshot.context_snapshot,
            workflow_state=snapshot.workflow_state
        )
