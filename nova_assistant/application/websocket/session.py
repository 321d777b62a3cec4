from typing import Awaitable, Callable, Optional, Set
import asyncio

import structlog

from nova_assistant.config import Settings
from nova_assistant.domain.context.conversation_store import (
    ConversationStore, StoreChange, StoreChangeType
)
from nova_assistant.domain.orchestration.core.dispatcher import IntentDispatcher
from nova_assistant.domain.orchestration.workflow.workflow_engine import ArtifactSignal
from nova_assistant.domain.orchestration.workflow.workflow_registry import DEFAULT_WORKFLOWS, WorkflowRegistry
from nova_assistant.domain.ports import ConversationRepository
from nova_assistant.infrastructure.llm.completion_client import CompletionClient
from nova_assistant.infrastructure.persistence.conversation_repository import (
    InMemoryConversationRepository, SupabaseConversationRepository
)
from nova_assistant.infrastructure.services.edge_functions import (
    IntentClassifierClient, SuggestionClient
)
from .schema.events import (
    ArchiveConversation, ArtifactProduced, BaseEvent, ClientEvent, ConversationArchived,
    ConversationList, ConversationReset, ErrorEvent, ListConversations, MessageAppended,
    MessageDelta, MessageRemoved, MessageSettled, Navigation, NewConversation,
    ResumeConversation, RetryRequest, SuggestionClick, ToolHandoff, UserMessage,
    WorkflowUpdated
)

logger = structlog.get_logger(__name__)

EventSender = Callable[[BaseEvent], Awaitable[bool]]


def build_repository(settings: Settings) -> ConversationRepository:
    if settings.in_memory_persistence:
        return InMemoryConversationRepository(user_id=settings.user_id)
    return SupabaseConversationRepository(
        rest_url=settings.rest_url,
        api_key=settings.supabase_anon_key,
        table=settings.conversations_table,
        user_id=settings.user_id,
        timeout=settings.http_timeout
    )


class QueueToolLauncher:
    """Emits hand-off events on the session's outbound queue"""

    def __init__(self, outbox: asyncio.Queue):
        self.outbox = outbox

    async def launch(self, action: str, target: str) -> None:
        self.outbox.put_nowait(ToolHandoff(action=action, target=target))

    async def navigate(self, target: str) -> None:
        self.outbox.put_nowait(Navigation(target=target))


def default_dispatcher(session: "AssistantSession") -> IntentDispatcher:
    """Dispatcher talking to the configured edge functions"""

    settings = session.settings
    return IntentDispatcher(
        session.store,
        completion_backend=CompletionClient(
            settings.functions_url,
            api_key=settings.supabase_anon_key,
            timeout=settings.http_timeout,
            connect_timeout=settings.connect_timeout
        ),
        intent_classifier=IntentClassifierClient(
            settings.functions_url,
            api_key=settings.supabase_anon_key,
            timeout=settings.http_timeout
        ),
        suggestion_source=SuggestionClient(
            settings.functions_url,
            api_key=settings.supabase_anon_key,
            timeout=settings.http_timeout
        ),
        tool_launcher=QueueToolLauncher(session.outbox),
        workflows=WorkflowRegistry(DEFAULT_WORKFLOWS, default_type=settings.default_workflow),
        streaming=settings.completion_streaming,
        history_window=settings.history_window
    )


class AssistantSession:
    """One conversation store, engine and dispatcher bound to a socket"""

    def __init__(
        self,
        session_id: str,
        settings: Settings,
        repository: ConversationRepository,
        send: EventSender,
        dispatcher_factory: Optional[Callable[["AssistantSession"], IntentDispatcher]] = None
    ):
        self.session_id = session_id
        self.settings = settings
        self.send = send
        self.outbox: asyncio.Queue = asyncio.Queue()
        self.store = ConversationStore(repository=repository)
        self.store.subscribe(self._on_store_change)
        self.dispatcher = (dispatcher_factory or default_dispatcher)(self)
        self._tasks: Set[asyncio.Task] = set()
        self._sender: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def _on_store_change(self, change: StoreChange):
        event = self._event_for(change)
        if event is not None:
            self.outbox.put_nowait(event)

    def _event_for(self, change: StoreChange) -> Optional[BaseEvent]:
        if change.type == StoreChangeType.APPENDED:
            return MessageAppended(message=change.message.model_copy(deep=True))
        if change.type == StoreChangeType.UPDATED:
            return MessageDelta(message_id=change.message.id, content=change.message.content)
        if change.type == StoreChangeType.SETTLED:
            return MessageSettled(message=change.message.model_copy(deep=True))
        if change.type == StoreChangeType.REMOVED:
            return MessageRemoved(message_id=change.message_id)
        if change.type == StoreChangeType.WORKFLOW:
            return WorkflowUpdated(workflow_state=change.workflow_state)
        if change.type == StoreChangeType.RESET:
            conversation = self.store.conversation
            structlog.contextvars.bind_contextvars(conversation_id=conversation.id)
            return ConversationReset(
                conversation_id=conversation.id,
                title=conversation.title,
                messages=[m.model_copy(deep=True) for m in conversation.messages],
                workflow_state=conversation.workflow_state
            )
        return None

    async def _drain_outbox(self):
        while True:
            event = await self.outbox.get()
            try:
                await self.send(event)
            except Exception as e:
                logger.error("Failed to deliver event", event_type=event.type.value, error=str(e))
            finally:
                self.outbox.task_done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, context_snapshot: Optional[dict] = None, current_page: str = "dashboard"):
        """Begin delivering events and open a welcome conversation"""
        self._sender = asyncio.create_task(self._drain_outbox())
        await self.dispatcher.open_conversation(context_snapshot, current_page)

    async def close(self):
        await self._cancel_tasks()
        if self._sender is not None:
            self._sender.cancel()
            try:
                await self._sender
            except asyncio.CancelledError:
                pass
            self._sender = None

    async def _cancel_tasks(self):
        tasks = [task for task in self._tasks if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_event(self, event: ClientEvent):
        """Route one client event; conversation switches cancel in-flight work"""

        if isinstance(event, ResumeConversation):
            await self._cancel_tasks()
            found = await self.dispatcher.resume_conversation(event.conversation_id)
            if not found:
                logger.info("Conversation not found, starting a new one", conversation_id=event.conversation_id)
                await self.dispatcher.open_conversation()
            return

        if isinstance(event, NewConversation):
            await self._cancel_tasks()
            await self.dispatcher.open_conversation(event.context_snapshot, event.current_page)
            return

        if isinstance(event, ListConversations):
            conversations = await self.store.list_conversations(self.settings.user_id)
            self.outbox.put_nowait(ConversationList(conversations=conversations))
            return

        if isinstance(event, ArchiveConversation):
            if event.conversation_id == self.store.conversation.id:
                await self._cancel_tasks()
            archived = await self.dispatcher.archive_conversation(event.conversation_id)
            self.outbox.put_nowait(ConversationArchived(conversation_id=event.conversation_id, archived=archived))
            return

        if isinstance(event, UserMessage):
            self._spawn(self.dispatcher.handle_text(event.content))
        elif isinstance(event, SuggestionClick):
            self._spawn(self.dispatcher.handle_suggestion(event.suggestion))
        elif isinstance(event, ArtifactProduced):
            self._spawn(self.dispatcher.handle_artifact_signal(ArtifactSignal(
                workflow_type=event.workflow_type,
                step_index=event.step_index,
                artifact=event.artifact
            )))
        elif isinstance(event, RetryRequest):
            self._spawn(self.dispatcher.retry_last())

    def _spawn(self, coro: Awaitable):
        task = asyncio.create_task(self._run(coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, coro: Awaitable):
        try:
            result = await coro
            logger.debug("Dispatch finished", outcome=result.outcome.value)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Dispatch failed", session_id=self.session_id, error=str(e))
            await self.send_error(str(e))

    async def send_error(self, message: str, error_code: Optional[str] = None):
        self.outbox.put_nowait(ErrorEvent(payload={"message": message}, error_code=error_code))
