from typing import Dict, Any, Optional, List, Callable, Set
from enum import Enum
import structlog
from pydantic import BaseModel, ConfigDict

from nova_assistant.domain.errors import PersistenceError
from nova_assistant.domain.models.conversation import (
    Conversation, ConversationSnapshot, ConversationSummary, Message, MessageRole, WorkflowState
)
from nova_assistant.domain.ports import ConversationRepository
from nova_assistant.infrastructure.observability.logging import assistant_logger

logger = structlog.get_logger(__name__)

TITLE_MAX_LENGTH = 60
PATCHABLE_FIELDS = {"content", "suggestions", "artifacts", "workflow_step", "kind"}


class Turn(BaseModel):
    """Sequence ticket taken when an operation is initiated"""
    model_config = ConfigDict(frozen=True)

    generation: int
    seq: int


class MessageHandle(BaseModel):
    """Stable reference to an appended message"""
    model_config = ConfigDict(frozen=True)

    generation: int
    turn: int
    index: int
    message_id: str


class StoreChangeType(str, Enum):
    """Notifications emitted to store listeners"""
    APPENDED = "appended"
    UPDATED = "updated"
    SETTLED = "settled"
    REMOVED = "removed"
    RESET = "reset"
    WORKFLOW = "workflow"


class StoreChange(BaseModel):
    """A single mutation of the active conversation"""
    type: StoreChangeType
    message: Optional[Message] = None
    message_id: Optional[str] = None
    workflow_state: Optional[WorkflowState] = None


StoreListener = Callable[[StoreChange], None]


class ConversationStore:
    """Single source of truth for the active conversation

    Messages live in an append-only log addressed by handles. Every handle
    carries the store generation, which is bumped whenever the active
    conversation is replaced, so updates from a previous conversation are
    discarded instead of corrupting the new one.
    """

    def __init__(
        self,
        repository: Optional[ConversationRepository] = None,
        context_snapshot: Optional[Dict[str, Any]] = None
    ):
        self.repository = repository
        self.conversation = Conversation(context_snapshot=context_snapshot or {})
        self._generation = 0
        self._turn_seq = 0
        self._last_applied_turn = 0
        self._latest_placeholder_id: Optional[str] = None
        self._writes_in_flight: Set[str] = set()
        self._writes_pending: Dict[str, Conversation] = {}
        self._listeners: List[StoreListener] = []

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def messages(self) -> List[Message]:
        return self.conversation.messages

    def subscribe(self, listener: StoreListener):
        """Register a callback invoked after every mutation"""
        self._listeners.append(listener)

    def _notify(self, change: StoreChange):
        for listener in self._listeners:
            try:
                listener(change)
            except Exception as e:
                logger.error("Error in store listener", change=change.type.value, error=str(e))

    # ------------------------------------------------------------------
    # Message log
    # ------------------------------------------------------------------

    def open_turn(self) -> Turn:
        """Reserve the next position in the initiation order"""
        self._turn_seq += 1
        return Turn(generation=self._generation, seq=self._turn_seq)

    def append_message(self, message: Message, turn: Optional[Turn] = None) -> Optional[MessageHandle]:
        """Append a message to the tail, unless a newer operation already wrote"""

        turn = turn or self.open_turn()

        if turn.generation != self._generation:
            logger.debug("Discarding append from previous conversation", turn=turn.seq)
            return None
        if turn.seq < self._last_applied_turn:
            logger.debug(
                "Discarding late append",
                turn=turn.seq,
                last_applied=self._last_applied_turn
            )
            return None

        self._last_applied_turn = turn.seq
        self.conversation.messages.append(message)
        if message.streaming:
            self._latest_placeholder_id = message.id

        handle = MessageHandle(
            generation=self._generation,
            turn=turn.seq,
            index=len(self.conversation.messages) - 1,
            message_id=message.id
        )
        self._notify(StoreChange(type=StoreChangeType.APPENDED, message=message))
        return handle

    def _resolve(self, handle: MessageHandle) -> Optional[int]:
        if handle.generation != self._generation:
            return None

        messages = self.conversation.messages
        if handle.index < len(messages) and messages[handle.index].id == handle.message_id:
            return handle.index

        # Earlier placeholder removed, index shifted
        for index, message in enumerate(messages):
            if message.id == handle.message_id:
                return index
        return None

    def is_current(self, handle: MessageHandle) -> bool:
        """Whether streamed updates for this handle are still accepted"""
        index = self._resolve(handle)
        return (
            index is not None
            and self.conversation.messages[index].streaming
            and handle.message_id == self._latest_placeholder_id
        )

    def update_message_at(self, handle: MessageHandle, patch: Dict[str, Any]) -> bool:
        """Merge a partial update into a streaming message; stale handles are ignored"""

        if not self.is_current(handle):
            return False

        message = self.conversation.messages[self._resolve(handle)]
        for key, value in patch.items():
            if key in PATCHABLE_FIELDS:
                setattr(message, key, value)

        self._notify(StoreChange(type=StoreChangeType.UPDATED, message=message))
        return True

    def settle_message(self, handle: MessageHandle, patch: Optional[Dict[str, Any]] = None) -> bool:
        """Mark a streaming message as final"""

        index = self._resolve(handle)
        if index is None:
            return False

        message = self.conversation.messages[index]
        if not message.streaming:
            return False

        for key, value in (patch or {}).items():
            if key in PATCHABLE_FIELDS:
                setattr(message, key, value)
        message.streaming = False

        if self._latest_placeholder_id == message.id:
            self._latest_placeholder_id = None

        self._notify(StoreChange(type=StoreChangeType.SETTLED, message=message))
        return True

    def discard_placeholder(self, handle: MessageHandle) -> bool:
        """Remove an unsettled placeholder; settled messages are never deleted"""

        index = self._resolve(handle)
        if index is None:
            return False

        message = self.conversation.messages[index]
        if not message.streaming:
            return False

        self.conversation.messages.pop(index)
        if self._latest_placeholder_id == message.id:
            self._latest_placeholder_id = None

        self._notify(StoreChange(type=StoreChangeType.REMOVED, message_id=message.id))
        return True

    # ------------------------------------------------------------------
    # Workflow pointer
    # ------------------------------------------------------------------

    def get_workflow_state(self) -> Optional[WorkflowState]:
        return self.conversation.workflow_state

    def set_workflow_state(self, state: Optional[WorkflowState]):
        self.conversation.workflow_state = state
        self._notify(StoreChange(type=StoreChangeType.WORKFLOW, workflow_state=state))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> ConversationSnapshot:
        return self._snapshot_of(self.conversation)

    def _snapshot_of(self, conversation: Conversation) -> ConversationSnapshot:
        if not conversation.title:
            first_user = next(
                (m for m in conversation.messages if m.role == MessageRole.USER and m.content.strip()),
                None
            )
            if first_user:
                conversation.title = first_user.content.strip()[:TITLE_MAX_LENGTH]
        return conversation.to_snapshot()

    async def persist(self):
        """Save the active conversation; failures are logged and swallowed"""

        if self.repository is None:
            return

        conversation = self.conversation
        key = conversation.write_key

        if key in self._writes_in_flight:
            # Coalesced into the follow-up write of the running one; the
            # latest copy of the conversation is the one written
            self._writes_pending[key] = conversation
            return

        self._writes_in_flight.add(key)
        try:
            while conversation is not None:
                await self._write(conversation)
                if conversation.write_key != key:
                    key = self._rekey(key, conversation.write_key)
                conversation = self._writes_pending.pop(key, None)
        finally:
            self._writes_in_flight.discard(key)
            self._writes_pending.pop(key, None)

    def _rekey(self, old: str, new: str) -> str:
        """Carry the write lock over to the id assigned by the first insert"""
        self._writes_in_flight.discard(old)
        self._writes_in_flight.add(new)
        if old in self._writes_pending:
            self._writes_pending[new] = self._writes_pending.pop(old)
        return new

    async def _write(self, conversation: Conversation):
        snapshot = self._snapshot_of(conversation)
        try:
            try:
                new_id = await self.repository.save(conversation.id, snapshot)
            except PersistenceError:
                raise
            except Exception as e:
                raise PersistenceError(str(e)) from e

            if conversation.id is None and new_id:
                conversation.id = new_id

            assistant_logger.log_persistence_write(
                conversation_id=conversation.id,
                message_count=len(snapshot.messages),
                success=True
            )
        except PersistenceError as e:
            assistant_logger.log_persistence_write(
                conversation_id=conversation.id,
                message_count=len(snapshot.messages),
                success=False,
                error=str(e)
            )

    async def resume(self, conversation_id: str) -> bool:
        """Replace the active conversation with a persisted one"""

        self._reset(Conversation())
        generation = self._generation

        if self.repository is None:
            return False

        try:
            snapshot = await self.repository.load(conversation_id)
        except Exception as e:
            logger.error("Failed to load conversation", conversation_id=conversation_id, error=str(e))
            return False

        if snapshot is None:
            logger.info("No persisted conversation", conversation_id=conversation_id)
            return False

        if generation != self._generation:
            # Another switch happened while loading
            return False

        self.conversation = Conversation.from_snapshot(conversation_id, snapshot)
        self._notify(StoreChange(type=StoreChangeType.RESET))
        logger.info(
            "Conversation resumed",
            conversation_id=conversation_id,
            messages=len(self.conversation.messages),
            workflow=self.conversation.workflow_state.workflow_type if self.conversation.workflow_state else None
        )
        return True

    async def list_conversations(self, user_id: Optional[str] = None) -> List[ConversationSummary]:
        """Stored conversation history; empty when storage is unavailable"""

        if self.repository is None:
            return []
        try:
            return await self.repository.list_conversations(user_id)
        except Exception as e:
            logger.error("Failed to list conversations", error=str(e))
            return []

    async def archive(self, conversation_id: str) -> bool:
        """Remove a stored conversation from the history"""

        if self.repository is None:
            return False
        try:
            archived = await self.repository.archive(conversation_id)
        except Exception as e:
            logger.error("Failed to archive conversation", conversation_id=conversation_id, error=str(e))
            return False

        logger.info("Conversation archived", conversation_id=conversation_id, archived=archived)
        return archived

    def new_conversation(self, context_snapshot: Optional[Dict[str, Any]] = None):
        """Start a fresh conversation and invalidate outstanding handles"""
        self._reset(Conversation(context_snapshot=context_snapshot or {}))

    def _reset(self, conversation: Conversation):
        self._generation += 1
        self._last_applied_turn = self._turn_seq
        self._latest_placeholder_id = None
        self.conversation = conversation
        self._notify(StoreChange(type=StoreChangeType.RESET))
