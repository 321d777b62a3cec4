from typing import Any, Dict, Optional

from nova_assistant.domain.models.conversation import WorkflowState
from nova_assistant.domain.orchestration.workflow.workflow_registry import WorkflowRegistry

NEW_USER_CONTEXT = "Nouvel utilisateur"

WELCOME_MESSAGE = (
    "Bonjour ! Je suis Nova, votre assistant IA produit. J'ai analysé votre espace de travail "
    "et je peux vous aider avec vos projets en cours.\n\nQue souhaitez-vous faire aujourd'hui ?"
)

SYSTEM_PROMPT_TEMPLATE = """Vous êtes Nova, assistant IA de product management.

CONTEXTE UTILISATEUR:
{context}

Vous aidez avec:
- Stratégie produit et planification
- Création de canvases, PRD, user stories
- Construction d'équipes efficaces
- Guidance sur les workflows
- Analyses et recommandations personnalisées

Soyez concis (2-4 phrases), amical, et proposez des actions suivantes basées sur leur contexte actuel."""


def _count(context_snapshot: Dict[str, Any], key: str) -> int:
    value = context_snapshot.get(key)
    return len(value) if isinstance(value, (list, tuple)) else 0


def build_context_summary(
    context_snapshot: Dict[str, Any],
    workflow_state: Optional[WorkflowState] = None,
    registry: Optional[WorkflowRegistry] = None
) -> str:
    """Render the workspace snapshot and active workflow as prompt context"""

    if not context_snapshot and workflow_state is None:
        return NEW_USER_CONTEXT

    lines = []
    if context_snapshot:
        lines.append(f"Artéfacts récents: {_count(context_snapshot, 'recent_artifacts')}")
        lines.append(f"Contextes actifs: {_count(context_snapshot, 'active_contexts')}")
        lines.append(f"Squads: {_count(context_snapshot, 'squads')}")

    if workflow_state is not None and registry is not None:
        definition = registry.get_or_default(workflow_state.workflow_type)
        index = min(workflow_state.step_index, definition.total_steps - 1)
        lines.append(
            f"Workflow en cours: {definition.name} "
            f"(étape {index + 1}/{definition.total_steps} : {definition.steps[index].label})"
        )
        for step_name, artifact in workflow_state.context.items():
            if artifact is not None:
                title = artifact.title or artifact.id
                lines.append(f"- Artéfact de l'étape {step_name}: {artifact.artifact_type} « {title} »")

    return "\n".join(lines)


def build_system_prompt(context_summary: str) -> str:
    return SYSTEM_PROMPT_TEMPLATE.format(context=context_summary)
