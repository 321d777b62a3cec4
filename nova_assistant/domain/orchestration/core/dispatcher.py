from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import asyncio

import structlog
from pydantic import BaseModel

from nova_assistant.domain.context.conversation_store import ConversationStore, Turn
from nova_assistant.domain.errors import TransportError
from nova_assistant.domain.models.conversation import (
    Message, MessageKind, Suggestion, SuggestionKind
)
from nova_assistant.domain.orchestration.core.prompts import (
    WELCOME_MESSAGE, build_context_summary, build_system_prompt
)
from nova_assistant.domain.orchestration.workflow.workflow_engine import (
    ArtifactSignal, WorkflowEngine, WorkflowPhase, WorkflowTransition
)
from nova_assistant.domain.orchestration.workflow.workflow_registry import (
    WorkflowRegistry, workflow_registry
)
from nova_assistant.domain.ports import (
    CompletionBackend, IntentClassifier, SuggestionSource, ToolLauncher
)
from nova_assistant.domain.streaming.completion_accumulator import (
    AccumulatedCompletion, CompletionAccumulator, SnapshotCallback
)
from nova_assistant.domain.streaming.stream_decoder import decode_stream
from nova_assistant.domain.tool.tool_registry import (
    HandoffMode, ToolRegistry, ToolSpec, UnknownAction, tool_registry
)
from nova_assistant.infrastructure.observability.logging import assistant_logger

logger = structlog.get_logger(__name__)

NO_INTENT = "none"

DEFAULT_SUGGESTIONS = (
    Suggestion(label="Créer un Canvas", action="canvas_generator", kind=SuggestionKind.TOOL),
    Suggestion(label="Construire une Squad", action="squad_builder", kind=SuggestionKind.WORKFLOW),
    Suggestion(label="Générer un PRD", action="instant_prd", kind=SuggestionKind.TOOL),
    Suggestion(label="Voir mes Projets", action="dashboard", kind=SuggestionKind.NAVIGATION),
)

START_WORDS = ("start", "begin", "démarrer", "demarrer", "lancer", "commencer")
CONTINUE_COMMANDS = (
    "next", "continue", "/next", "/continue", "suivant", "continuer",
    "étape suivante", "etape suivante", "next step"
)
CANCEL_COMMANDS = ("/cancel", "cancel", "annuler", "stop")
CANCEL_PHRASES = (
    "cancel workflow", "stop workflow", "annuler le workflow",
    "arrêter le workflow", "arreter le workflow"
)


class WorkflowCommand(str, Enum):
    """Explicit workflow affordances recognised in free text"""
    START = "start"
    CONTINUE = "continue"
    CANCEL = "cancel"


class DispatchOutcome(str, Enum):
    """Which path a unit of input took"""
    WORKFLOW = "workflow"
    TOOL = "tool"
    NAVIGATION = "navigation"
    COMPLETION = "completion"
    NOTICE = "notice"
    ERROR = "error"
    DISCARDED = "discarded"
    IGNORED = "ignored"


class DispatchResult(BaseModel):
    """Outcome of one dispatch, including the retry-or-surface decision"""
    outcome: DispatchOutcome
    intent: Optional[str] = None
    action: Optional[str] = None
    transition: Optional[WorkflowTransition] = None
    completion: Optional[AccumulatedCompletion] = None
    error: Optional[str] = None
    retryable: bool = False


def transport_error_text(error: TransportError) -> str:
    return f"Échec de l'envoi du message : {error}. Réessayez."


def parse_workflow_command(text: str, registry: WorkflowRegistry) -> Optional[Tuple[WorkflowCommand, Optional[str]]]:
    """Detect start/continue/cancel commands; returns (command, workflow type)"""

    lowered = text.strip().lower()
    bare = lowered.rstrip(" .!?")

    if bare in CONTINUE_COMMANDS:
        return WorkflowCommand.CONTINUE, None
    if bare in CANCEL_COMMANDS or any(phrase in lowered for phrase in CANCEL_PHRASES):
        return WorkflowCommand.CANCEL, None

    if bare.startswith("/workflow"):
        argument = bare[len("/workflow"):].strip()
        return WorkflowCommand.START, argument or None

    wants_start = "workflow" in lowered or any(word in lowered for word in START_WORDS)
    if not wants_start:
        return None

    definition = registry.match_trigger(lowered)
    if definition is not None:
        return WorkflowCommand.START, definition.type
    if "workflow" in lowered and any(word in lowered for word in START_WORDS):
        # Unnamed workflow, the engine falls back to its default
        return WorkflowCommand.START, None
    return None


class IntentDispatcher:
    """Routes user input to the workflow engine, a tool hand-off or a completion"""

    def __init__(
        self,
        store: ConversationStore,
        completion_backend: CompletionBackend,
        intent_classifier: Optional[IntentClassifier] = None,
        suggestion_source: Optional[SuggestionSource] = None,
        tool_launcher: Optional[ToolLauncher] = None,
        engine: Optional[WorkflowEngine] = None,
        workflows: WorkflowRegistry = workflow_registry,
        tools: ToolRegistry = tool_registry,
        streaming: bool = True,
        history_window: int = 5,
        on_snapshot: Optional[SnapshotCallback] = None
    ):
        self.store = store
        self.completion_backend = completion_backend
        self.intent_classifier = intent_classifier
        self.suggestion_source = suggestion_source
        self.tool_launcher = tool_launcher
        self.workflows = workflows
        self.tools = tools
        self.streaming = streaming
        self.history_window = history_window
        self.on_snapshot = on_snapshot
        self.engine = engine or WorkflowEngine(
            store,
            registry=workflows,
            tools=tools,
            suggestion_provider=self.suggestions
        )
        self._retry_text: Optional[str] = None

    # ------------------------------------------------------------------
    # Conversation lifecycle
    # ------------------------------------------------------------------

    async def open_conversation(
        self,
        context_snapshot: Optional[Dict[str, Any]] = None,
        current_page: str = "dashboard"
    ):
        """Start a new conversation with a welcome message"""

        self.store.new_conversation(context_snapshot)
        self._retry_text = None
        turn = self.store.open_turn()
        suggestions = await self.suggestions(current_page)
        self.store.append_message(Message.assistant(WELCOME_MESSAGE, suggestions=suggestions), turn)

    async def resume_conversation(self, conversation_id: str) -> bool:
        self._retry_text = None
        return await self.store.resume(conversation_id)

    async def archive_conversation(self, conversation_id: str) -> bool:
        """Archive a stored conversation; archiving the active one opens a new one"""

        archived = await self.store.archive(conversation_id)
        if archived and self.store.conversation.id == conversation_id:
            await self.open_conversation(self.store.conversation.context_snapshot)
        return archived

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    async def handle_text(self, text: str) -> DispatchResult:
        """Dispatch one unit of free-text input"""

        text = (text or "").strip()
        if not text:
            return DispatchResult(outcome=DispatchOutcome.IGNORED)

        history = self.store.conversation.recent_history(self.history_window)
        turn = self.store.open_turn()
        if self.store.append_message(Message.user(text), turn) is None:
            return DispatchResult(outcome=DispatchOutcome.DISCARDED)

        # Explicit workflow affordances first
        command = parse_workflow_command(text, self.workflows)
        if command is not None:
            result = await self._run_workflow_command(command, turn)
            if result is not None:
                return result

        intent = await self._classify(text, history)
        if intent != NO_INTENT:
            if self.workflows.is_registered(intent):
                transition = await self.engine.start(intent, turn)
                return DispatchResult(outcome=DispatchOutcome.WORKFLOW, intent=intent, transition=transition)

            resolved = self.tools.resolve(intent)
            if not isinstance(resolved, UnknownAction):
                return await self._answer_tool_intent(self.tools.get(resolved), intent, turn)

            logger.info("Classifier returned an unknown intent, answering normally", intent=intent)

        return await self._complete(text, turn)

    async def handle_suggestion(self, suggestion: Suggestion) -> DispatchResult:
        """Dispatch a suggestion click; never goes through text classification"""

        turn = self.store.open_turn()

        if suggestion.kind == SuggestionKind.WORKFLOW:
            transition = await self.engine.start(suggestion.action, turn)
            return DispatchResult(
                outcome=DispatchOutcome.WORKFLOW,
                action=suggestion.action,
                transition=transition
            )

        resolved = self.tools.resolve(suggestion.action)
        if isinstance(resolved, UnknownAction):
            assistant_logger.log_tool_handoff(
                action=resolved.key,
                target=None,
                source="suggestion",
                available=False
            )
            return await self._not_available(suggestion.label or resolved.key, resolved.key, turn)

        tool = self.tools.get(resolved)
        try:
            await self._hand_off(tool, source="suggestion")
        except Exception as e:
            logger.error("Tool hand-off failed", action=tool.action.value, error=str(e))
            return await self._not_available(suggestion.label or tool.name, tool.action.value, turn)

        outcome = DispatchOutcome.NAVIGATION if tool.mode == HandoffMode.NAVIGATION else DispatchOutcome.TOOL
        return DispatchResult(outcome=outcome, action=tool.action.value)

    async def handle_artifact_signal(self, signal: ArtifactSignal) -> DispatchResult:
        """Out-of-band step completion from a tool"""

        transition = await self.engine.on_artifact_produced(signal)
        if transition is None:
            return DispatchResult(outcome=DispatchOutcome.IGNORED, action=signal.workflow_type)
        return DispatchResult(outcome=DispatchOutcome.WORKFLOW, transition=transition)

    async def retry_last(self) -> DispatchResult:
        """Re-issue the completion whose transport failed"""

        if self._retry_text is None:
            return DispatchResult(outcome=DispatchOutcome.IGNORED)
        text = self._retry_text
        self._retry_text = None
        return await self._complete(text, self.store.open_turn())

    # ------------------------------------------------------------------
    # Suggestions and classification
    # ------------------------------------------------------------------

    async def suggestions(self, current_page: str = "assistant") -> List[Suggestion]:
        """Contextual suggestions, or the fixed fallback list on any failure"""

        if self.suggestion_source is None:
            return list(DEFAULT_SUGGESTIONS)

        conversation = self.store.conversation
        settled = [m for m in conversation.messages if not m.streaming]
        last_text = settled[-1].content if settled else None

        try:
            suggestions = await self.suggestion_source.suggestions(
                conversation.context_snapshot,
                current_page,
                last_text
            )
        except Exception as e:
            logger.warning("Suggestion generation failed, using defaults", error=str(e))
            return list(DEFAULT_SUGGESTIONS)

        return list(suggestions) or list(DEFAULT_SUGGESTIONS)

    async def _classify(self, text: str, history: List[Dict[str, str]]) -> str:
        if self.intent_classifier is None:
            return NO_INTENT

        try:
            intent = await self.intent_classifier.classify(text, history)
        except Exception as e:
            logger.warning("Intent detection failed", error=str(e))
            return NO_INTENT

        return (intent or NO_INTENT).strip().lower()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    async def _run_workflow_command(
        self,
        command: Tuple[WorkflowCommand, Optional[str]],
        turn: Turn
    ) -> Optional[DispatchResult]:
        kind, workflow_type = command

        if kind == WorkflowCommand.START:
            transition = await self.engine.start(workflow_type, turn)
            return DispatchResult(outcome=DispatchOutcome.WORKFLOW, intent=workflow_type, transition=transition)

        if self.engine.phase != WorkflowPhase.IN_STEP:
            # Nothing to continue or cancel, treat as ordinary text
            return None

        if kind == WorkflowCommand.CONTINUE:
            transition = await self.engine.continue_workflow(turn)
        else:
            transition = await self.engine.cancel(turn)
        return DispatchResult(outcome=DispatchOutcome.WORKFLOW, transition=transition)

    async def _answer_tool_intent(self, tool: ToolSpec, intent: str, turn: Turn) -> DispatchResult:
        message = Message.assistant(
            tool.intro,
            suggestions=[
                Suggestion(label=f"Ouvrir {tool.name}", action=tool.action.value, kind=SuggestionKind.TOOL)
            ]
        )
        self.store.append_message(message, turn)

        try:
            await self._hand_off(tool, source="intent")
        except Exception as e:
            logger.error("Tool hand-off failed", action=tool.action.value, error=str(e))

        await self.store.persist()
        return DispatchResult(outcome=DispatchOutcome.TOOL, intent=intent, action=tool.action.value)

    async def _hand_off(self, tool: ToolSpec, source: str):
        assistant_logger.log_tool_handoff(
            action=tool.action.value,
            target=tool.target,
            source=source
        )
        if self.tool_launcher is None:
            return
        if tool.mode == HandoffMode.NAVIGATION:
            await self.tool_launcher.navigate(tool.target)
        else:
            await self.tool_launcher.launch(tool.action.value, tool.target)

    async def _not_available(self, label: str, key: str, turn: Turn) -> DispatchResult:
        notice = Message.assistant(
            f"L'action « {label} » n'est pas disponible pour le moment.",
            kind=MessageKind.NOTICE
        )
        self.store.append_message(notice, turn)
        await self.store.persist()
        return DispatchResult(outcome=DispatchOutcome.NOTICE, action=key)

    def _system_prompt(self) -> str:
        conversation = self.store.conversation
        summary = build_context_summary(
            conversation.context_snapshot,
            conversation.workflow_state,
            self.workflows
        )
        return build_system_prompt(summary)

    async def _complete(self, text: str, turn: Turn) -> DispatchResult:
        system_prompt = self._system_prompt()

        if not self.streaming:
            return await self._complete_once(text, system_prompt, turn)

        handle = self.store.append_message(Message.placeholder(), turn)
        if handle is None:
            return DispatchResult(outcome=DispatchOutcome.DISCARDED)

        accumulator = CompletionAccumulator(self.store, handle, on_snapshot=self.on_snapshot)
        try:
            async with self.completion_backend.open_stream(text, system_prompt) as chunks:
                await accumulator.consume(decode_stream(chunks))
        except TransportError as e:
            if accumulator.fragments == 0:
                shown = accumulator.abort(str(e), notice=transport_error_text(e))
                return await self._surface_transport_error(text, e, turn, shown=shown)
            # Connection dropped mid-reply, keep what arrived
            logger.warning("Stream closed with an error after partial reply", error=str(e))
        except asyncio.CancelledError:
            accumulator.finalize()
            raise

        suggestions = await self.suggestions()
        completion = accumulator.finalize(suggestions)
        await self.store.persist()
        return DispatchResult(outcome=DispatchOutcome.COMPLETION, completion=completion)

    async def _complete_once(self, text: str, system_prompt: str, turn: Turn) -> DispatchResult:
        try:
            reply = await self.completion_backend.complete(text, system_prompt)
        except TransportError as e:
            return await self._surface_transport_error(text, e, turn)

        suggestions = await self.suggestions()
        self.store.append_message(Message.assistant(reply, suggestions=suggestions), turn)
        await self.store.persist()
        return DispatchResult(
            outcome=DispatchOutcome.COMPLETION,
            completion=AccumulatedCompletion(text=reply, fragments=1 if reply else 0, settled=True)
        )

    async def _surface_transport_error(
        self,
        text: str,
        error: TransportError,
        turn: Turn,
        shown: bool = False
    ) -> DispatchResult:
        logger.error("Completion request failed", status_code=error.status_code, error=str(error))

        if not shown and turn.generation == self.store.generation:
            # Later turns may already be in the log; the notice goes to the tail
            self.store.append_message(
                Message.assistant(transport_error_text(error), kind=MessageKind.ERROR),
                self.store.open_turn()
            )
        if error.retryable:
            self._retry_text = text
        await self.store.persist()
        return DispatchResult(
            outcome=DispatchOutcome.ERROR,
            error=str(error),
            retryable=error.retryable
        )

