from typing import Dict, Iterable, Optional, Tuple
from types import MappingProxyType
from pydantic import BaseModel, ConfigDict, Field

from nova_assistant.domain.errors import UnknownWorkflowType
from nova_assistant.domain.tool.tool_registry import ToolAction

DEFAULT_WORKFLOW = "feature_discovery"


class WorkflowStep(BaseModel):
    """One step of a workflow, completed by producing an artifact with its tool"""
    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Key of the step in the workflow context")
    label: str = Field(description="Display label")
    tool: ToolAction
    description: str = ""


class WorkflowDefinition(BaseModel):
    """A named, ordered, fixed-length procedure"""
    model_config = ConfigDict(frozen=True)

    type: str
    name: str
    triggers: Tuple[str, ...] = Field(default=(), description="Phrases that start this workflow")
    steps: Tuple[WorkflowStep, ...]

    @property
    def total_steps(self) -> int:
        return len(self.steps)


DEFAULT_WORKFLOWS = (
    WorkflowDefinition(
        type="feature_discovery",
        name="Découverte de fonctionnalité",
        triggers=("feature discovery", "découverte de fonctionnalité", "decouverte de fonctionnalite", "feature-discovery"),
        steps=(
            WorkflowStep(
                name="product_context",
                label="Définir le contexte produit",
                tool=ToolAction.PRODUCT_CONTEXT,
                description="Décrivez la vision, l'audience cible et les contraintes du produit."
            ),
            WorkflowStep(
                name="personas",
                label="Identifier les personas",
                tool=ToolAction.USER_PERSONA,
                description="Créez les personas qui vivent le problème à résoudre."
            ),
            WorkflowStep(
                name="prd",
                label="Rédiger le PRD",
                tool=ToolAction.INSTANT_PRD,
                description="Formalisez la fonctionnalité dans un PRD."
            ),
            WorkflowStep(
                name="user_stories",
                label="Découper en user stories",
                tool=ToolAction.EPIC_TO_STORIES,
                description="Transformez l'epic en user stories testables."
            ),
            WorkflowStep(
                name="estimation",
                label="Estimer l'effort",
                tool=ToolAction.ESTIMATION_TOOL,
                description="Estimez les stories pour planifier la livraison."
            ),
        )
    ),
    WorkflowDefinition(
        type="squad_builder",
        name="Construction de squad",
        triggers=("squad builder", "construire une squad", "build a squad"),
        steps=(
            WorkflowStep(
                name="product_context",
                label="Définir le contexte produit",
                tool=ToolAction.PRODUCT_CONTEXT,
                description="Précisez l'initiative que la squad va porter."
            ),
            WorkflowStep(
                name="squad",
                label="Composer la squad",
                tool=ToolAction.SQUAD_BUILDER,
                description="Sélectionnez les rôles et agents de la squad."
            ),
            WorkflowStep(
                name="raci",
                label="Clarifier les responsabilités",
                tool=ToolAction.RACI_MATRIX,
                description="Formalisez qui fait quoi avec une matrice RACI."
            ),
        )
    ),
    WorkflowDefinition(
        type="sprint_planning",
        name="Planification de sprint",
        triggers=("sprint planning", "planification de sprint", "planifier un sprint"),
        steps=(
            WorkflowStep(
                name="user_stories",
                label="Préparer les user stories",
                tool=ToolAction.STORY_WRITER,
                description="Rédigez les stories candidates au sprint."
            ),
            WorkflowStep(
                name="estimation",
                label="Estimer les stories",
                tool=ToolAction.ESTIMATION_TOOL,
                description="Estimez chaque story."
            ),
            WorkflowStep(
                name="sprint",
                label="Construire le sprint",
                tool=ToolAction.SPRINT_PLANNER,
                description="Répartissez les stories selon la capacité de l'équipe."
            ),
        )
    ),
    WorkflowDefinition(
        type="product_launch",
        name="Lancement produit",
        triggers=("product launch", "lancement produit", "lancer le produit"),
        steps=(
            WorkflowStep(
                name="market",
                label="Analyser le marché",
                tool=ToolAction.MARKET_RESEARCH,
                description="Identifiez le positionnement face aux concurrents."
            ),
            WorkflowStep(
                name="kpis",
                label="Définir les KPIs",
                tool=ToolAction.KPI_GENERATOR,
                description="Choisissez les indicateurs de succès du lancement."
            ),
            WorkflowStep(
                name="roadmap",
                label="Planifier la roadmap",
                tool=ToolAction.ROADMAP_PLANNER,
                description="Placez les jalons du lancement."
            ),
            WorkflowStep(
                name="launch",
                label="Préparer le lancement",
                tool=ToolAction.PRODUCT_LAUNCH,
                description="Complétez la checklist de lancement."
            ),
        )
    ),
)


class WorkflowRegistry:
    """Read-only catalogue of workflow definitions"""

    def __init__(self, workflows: Iterable[WorkflowDefinition] = DEFAULT_WORKFLOWS, default_type: str = DEFAULT_WORKFLOW):
        definitions: Dict[str, WorkflowDefinition] = {}
        for workflow in workflows:
            definitions[workflow.type] = workflow

        if default_type not in definitions:
            raise ValueError(f"Default workflow {default_type!r} is not registered")

        self.workflows = MappingProxyType(definitions)
        self.default_type = default_type

    def get(self, workflow_type: str) -> WorkflowDefinition:
        """Return a definition or raise UnknownWorkflowType"""

        key = (workflow_type or "").strip().lower().replace("-", "_")
        if key not in self.workflows:
            raise UnknownWorkflowType(workflow_type)
        return self.workflows[key]

    def get_or_default(self, workflow_type: Optional[str]) -> WorkflowDefinition:
        try:
            return self.get(workflow_type or "")
        except UnknownWorkflowType:
            return self.workflows[self.default_type]

    def match_trigger(self, text: str) -> Optional[WorkflowDefinition]:
        """Find the workflow whose trigger phrase or type appears in the text"""

        lowered = text.lower()
        for workflow in self.workflows.values():
            if workflow.type in lowered.replace(" ", "_"):
                return workflow
            if any(trigger in lowered for trigger in workflow.triggers):
                return workflow
        return None

    def is_registered(self, workflow_type: str) -> bool:
        return (workflow_type or "").strip().lower().replace("-", "_") in self.workflows


# Process-wide catalogue, built once
workflow_registry = WorkflowRegistry()
