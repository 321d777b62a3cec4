from typing import Awaitable, Callable, List, Optional
from enum import Enum
import asyncio
import math

import structlog
from pydantic import BaseModel

from nova_assistant.domain.context.conversation_store import ConversationStore, Turn
from nova_assistant.domain.models.conversation import (
    ArtifactReference, Message, MessageKind, Suggestion, SuggestionKind,
    WorkflowState, WorkflowStepInfo
)
from nova_assistant.domain.orchestration.workflow.workflow_registry import (
    WorkflowDefinition, WorkflowRegistry, workflow_registry
)
from nova_assistant.domain.tool.tool_registry import ToolRegistry, tool_registry
from nova_assistant.infrastructure.observability.logging import assistant_logger

logger = structlog.get_logger(__name__)

SuggestionProvider = Callable[[], Awaitable[List[Suggestion]]]


class WorkflowPhase(str, Enum):
    """States of the workflow machine"""
    IDLE = "idle"
    IN_STEP = "in_step"
    COMPLETE = "complete"


class ArtifactSignal(BaseModel):
    """Out-of-band notification that a step's tool produced its artifact"""
    workflow_type: str
    step_index: int
    artifact: ArtifactReference


class WorkflowTransition(BaseModel):
    """Result of one engine transition"""
    workflow_type: str
    from_phase: WorkflowPhase
    to_phase: WorkflowPhase
    step_index: Optional[int] = None
    trigger: str
    message_id: Optional[str] = None


def compute_progress(completed_steps: int, total_steps: int) -> int:
    """Percentage of completed steps, rounded half up"""
    if total_steps <= 0:
        return 100
    return int(math.floor(100 * completed_steps / total_steps + 0.5))


def _describe(phase: WorkflowPhase, step_index: Optional[int] = None) -> str:
    if phase == WorkflowPhase.IN_STEP:
        return f"{phase.value}:{step_index}"
    return phase.value


class WorkflowEngine:
    """Finite-state machine over the registered workflows

    The engine holds no workflow state of its own: it reads and writes the
    active conversation's pointer through the store. Transitions are
    serialized so two signals for the same step advance only once.
    """

    def __init__(
        self,
        store: ConversationStore,
        registry: WorkflowRegistry = workflow_registry,
        tools: ToolRegistry = tool_registry,
        suggestion_provider: Optional[SuggestionProvider] = None
    ):
        self.store = store
        self.registry = registry
        self.tools = tools
        self.suggestion_provider = suggestion_provider
        self._lock = asyncio.Lock()

    @property
    def phase(self) -> WorkflowPhase:
        if self.store.get_workflow_state() is None:
            return WorkflowPhase.IDLE
        return WorkflowPhase.IN_STEP

    async def start(self, workflow_type: Optional[str], turn: Optional[Turn] = None) -> Optional[WorkflowTransition]:
        """Idle -> InStep(type, 0); an active workflow is continued instead of restarted"""

        turn = turn or self.store.open_turn()

        async with self._lock:
            if self.store.get_workflow_state() is not None:
                logger.info(
                    "Start requested while a workflow is active, continuing instead",
                    requested=workflow_type,
                    active=self.store.get_workflow_state().workflow_type
                )
                transition = await self._advance(None, "start_while_active", turn)
            else:
                transition = self._start(workflow_type, turn)

        await self.store.persist()
        return transition

    def _start(self, workflow_type: Optional[str], turn: Turn) -> WorkflowTransition:
        if not self.registry.is_registered(workflow_type or ""):
            logger.warning(
                "Unknown workflow type, using default",
                requested=workflow_type,
                default=self.registry.default_type
            )
        definition = self.registry.get_or_default(workflow_type)

        self.store.set_workflow_state(WorkflowState(workflow_type=definition.type, step_index=0))

        first = definition.steps[0]
        content = (
            f"C'est parti pour le workflow « {definition.name} » !\n\n"
            f"{self._step_text(definition, 0)}"
        )
        message = Message.assistant(
            content,
            suggestions=[self._tool_suggestion(first.tool)],
            workflow_step=WorkflowStepInfo(
                current=first.label,
                total=definition.total_steps,
                progress=compute_progress(0, definition.total_steps)
            )
        )
        handle = self.store.append_message(message, turn)

        assistant_logger.log_workflow_transition(
            workflow_type=definition.type,
            from_state=_describe(WorkflowPhase.IDLE),
            to_state=_describe(WorkflowPhase.IN_STEP, 0),
            trigger="start",
            step_index=0,
            context_entries=0
        )
        return WorkflowTransition(
            workflow_type=definition.type,
            from_phase=WorkflowPhase.IDLE,
            to_phase=WorkflowPhase.IN_STEP,
            step_index=0,
            trigger="start",
            message_id=message.id if handle else None
        )

    async def on_artifact_produced(self, signal: ArtifactSignal, turn: Optional[Turn] = None) -> Optional[WorkflowTransition]:
        """InStep(type, i) -> InStep(type, i+1) when step i's artifact is reported"""

        turn = turn or self.store.open_turn()

        async with self._lock:
            state = self.store.get_workflow_state()
            if state is None:
                logger.info("Ignoring artifact signal, no active workflow", workflow_type=signal.workflow_type)
                return None

            signal_type = signal.workflow_type.strip().lower().replace("-", "_")
            if signal_type != state.workflow_type or signal.step_index != state.step_index:
                logger.info(
                    "Ignoring artifact signal for another step",
                    workflow_type=signal.workflow_type,
                    step_index=signal.step_index,
                    active_type=state.workflow_type,
                    active_step=state.step_index
                )
                return None

            transition = await self._advance(signal.artifact, "artifact_produced", turn)

        await self.store.persist()
        return transition

    async def continue_workflow(self, turn: Optional[Turn] = None) -> Optional[WorkflowTransition]:
        """Manual "next" command; a no-op when idle"""

        turn = turn or self.store.open_turn()

        async with self._lock:
            if self.store.get_workflow_state() is None:
                return None
            transition = await self._advance(None, "continue", turn)

        await self.store.persist()
        return transition

    async def cancel(self, turn: Optional[Turn] = None) -> Optional[WorkflowTransition]:
        """Drop the active workflow"""

        turn = turn or self.store.open_turn()

        async with self._lock:
            state = self.store.get_workflow_state()
            if state is None:
                return None

            definition = self.registry.get_or_default(state.workflow_type)
            self.store.set_workflow_state(None)
            message = Message.assistant(
                f"Workflow « {definition.name} » annulé. "
                f"Vous pourrez le relancer à tout moment.",
                kind=MessageKind.NOTICE
            )
            handle = self.store.append_message(message, turn)

            assistant_logger.log_workflow_transition(
                workflow_type=definition.type,
                from_state=_describe(WorkflowPhase.IN_STEP, state.step_index),
                to_state=_describe(WorkflowPhase.IDLE),
                trigger="cancel",
                step_index=state.step_index,
                context_entries=len(state.context)
            )
            transition = WorkflowTransition(
                workflow_type=definition.type,
                from_phase=WorkflowPhase.IN_STEP,
                to_phase=WorkflowPhase.IDLE,
                step_index=state.step_index,
                trigger="cancel",
                message_id=message.id if handle else None
            )

        await self.store.persist()
        return transition

    async def _advance(self, artifact: Optional[ArtifactReference], trigger: str, turn: Turn) -> WorkflowTransition:
        # Caller holds the lock
        state = self.store.get_workflow_state()
        definition = self.registry.get_or_default(state.workflow_type)
        total = definition.total_steps
        index = min(state.step_index, total - 1)

        completed_step = definition.steps[index]
        context = dict(state.context)
        context[completed_step.name] = artifact
        next_index = index + 1

        if next_index >= total:
            return await self._complete(definition, index, context, artifact, trigger, turn)

        self.store.set_workflow_state(
            WorkflowState(workflow_type=definition.type, step_index=next_index, context=context)
        )

        next_step = definition.steps[next_index]
        content = f"Étape « {completed_step.label} » terminée.\n\n{self._step_text(definition, next_index)}"
        message = Message.assistant(
            content,
            suggestions=[self._tool_suggestion(next_step.tool)],
            artifacts=[artifact] if artifact else [],
            workflow_step=WorkflowStepInfo(
                current=next_step.label,
                total=total,
                progress=compute_progress(next_index, total)
            )
        )
        handle = self.store.append_message(message, turn)

        assistant_logger.log_workflow_transition(
            workflow_type=definition.type,
            from_state=_describe(WorkflowPhase.IN_STEP, index),
            to_state=_describe(WorkflowPhase.IN_STEP, next_index),
            trigger=trigger,
            step_index=next_index,
            context_entries=len(context)
        )
        return WorkflowTransition(
            workflow_type=definition.type,
            from_phase=WorkflowPhase.IN_STEP,
            to_phase=WorkflowPhase.IN_STEP,
            step_index=next_index,
            trigger=trigger,
            message_id=message.id if handle else None
        )

    async def _complete(
        self,
        definition: WorkflowDefinition,
        index: int,
        context: dict,
        artifact: Optional[ArtifactReference],
        trigger: str,
        turn: Turn
    ) -> WorkflowTransition:
        self.store.set_workflow_state(None)

        suggestions: List[Suggestion] = []
        if self.suggestion_provider is not None:
            suggestions = await self.suggestion_provider()

        entries = len(context)
        message = Message.assistant(
            f"Workflow « {definition.name} » terminé ! "
            f"{entries} éléments de contexte ont été accumulés au fil des étapes.",
            suggestions=suggestions,
            artifacts=[artifact] if artifact else [],
            workflow_step=WorkflowStepInfo(
                current="Terminé",
                total=definition.total_steps,
                progress=100
            )
        )
        handle = self.store.append_message(message, turn)

        assistant_logger.log_workflow_transition(
            workflow_type=definition.type,
            from_state=_describe(WorkflowPhase.IN_STEP, index),
            to_state=_describe(WorkflowPhase.COMPLETE),
            trigger=trigger,
            step_index=definition.total_steps,
            context_entries=entries
        )
        return WorkflowTransition(
            workflow_type=definition.type,
            from_phase=WorkflowPhase.IN_STEP,
            to_phase=WorkflowPhase.COMPLETE,
            step_index=definition.total_steps,
            trigger=trigger,
            message_id=message.id if handle else None
        )

    def _step_text(self, definition: WorkflowDefinition, index: int) -> str:
        step = definition.steps[index]
        text = f"**Étape {index + 1}/{definition.total_steps} : {step.label}**"
        if step.description:
            text += f"\n{step.description}"
        return text

    def _tool_suggestion(self, action) -> Suggestion:
        tool = self.tools.get(action)
        return Suggestion(label=f"Ouvrir {tool.name}", action=action.value, kind=SuggestionKind.TOOL)
