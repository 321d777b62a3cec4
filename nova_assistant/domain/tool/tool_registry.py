from typing import Dict, Iterable, Union
from types import MappingProxyType
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field


class ToolAction(str, Enum):
    """Closed set of tool actions the assistant can hand off to"""
    CANVAS_GENERATOR = "canvas_generator"
    INSTANT_PRD = "instant_prd"
    TEST_GENERATOR = "test_generator"
    CRITICAL_PATH_ANALYZER = "critical_path_analyzer"
    STORY_WRITER = "story_writer"
    EPIC_TO_STORIES = "epic_to_stories"
    ROADMAP_PLANNER = "roadmap_planner"
    SPRINT_PLANNER = "sprint_planner"
    KPI_GENERATOR = "kpi_generator"
    RACI_MATRIX = "raci_matrix"
    MEETING_MINUTES = "meeting_minutes"
    SQUAD_BUILDER = "squad_builder"
    PRODUCT_CONTEXT = "product_context"
    USER_PERSONA = "user_persona"
    ESTIMATION_TOOL = "estimation_tool"
    MARKET_RESEARCH = "market_research"
    PRODUCT_LAUNCH = "product_launch"
    DASHBOARD = "dashboard"
    ARTIFACTS_VIEW = "artifacts_view"


class HandoffMode(str, Enum):
    """How the UI is asked to open a tool"""
    ACTION = "action"
    NAVIGATION = "navigation"


class UnknownAction(BaseModel):
    """An action key that matches no registered tool"""
    model_config = ConfigDict(frozen=True)

    key: str


ResolvedAction = Union[ToolAction, UnknownAction]


class ToolSpec(BaseModel):
    """Static description of a tool"""
    model_config = ConfigDict(frozen=True)

    action: ToolAction
    name: str
    description: str
    category: str = "general"
    mode: HandoffMode = HandoffMode.ACTION
    target: str = Field(description="UI action name or navigation tab")
    intro: str = Field(default="Je peux vous aider avec cet outil.", description="Reply when the tool is requested")


DEFAULT_TOOLS = (
    ToolSpec(
        action=ToolAction.CANVAS_GENERATOR,
        name="Canvas Generator",
        description="Business model, lean and value proposition canvases",
        category="strategy",
        target="create_canvas",
        intro="Je vous aide à créer un canvas stratégique. Quel type souhaitez-vous ?"
    ),
    ToolSpec(
        action=ToolAction.INSTANT_PRD,
        name="Instant PRD",
        description="Product requirements document with specifications and user stories",
        category="documentation",
        target="generate_prd",
        intro="Je vais générer un PRD détaillé pour vous avec spécifications et user stories."
    ),
    ToolSpec(
        action=ToolAction.TEST_GENERATOR,
        name="Test Case Generator",
        description="Test cases for user stories",
        category="quality",
        mode=HandoffMode.NAVIGATION,
        target="test-generator",
        intro="Je peux générer des test cases pour vos stories. Sélectionnez les artéfacts à tester."
    ),
    ToolSpec(
        action=ToolAction.CRITICAL_PATH_ANALYZER,
        name="Critical Path Analyzer",
        description="Dependencies and critical path of a project",
        category="planning",
        mode=HandoffMode.NAVIGATION,
        target="critical-path",
        intro="J'analyse les chemins critiques de votre projet pour identifier les dépendances."
    ),
    ToolSpec(
        action=ToolAction.STORY_WRITER,
        name="Story Writer",
        description="User story with acceptance criteria",
        category="documentation",
        target="create_story",
        intro="Créons une user story avec critères d'acceptation détaillés."
    ),
    ToolSpec(
        action=ToolAction.EPIC_TO_STORIES,
        name="Epic to Stories",
        description="Split an epic into atomic, testable user stories",
        category="documentation",
        target="epic_to_stories",
        intro="Je décompose votre epic en user stories atomiques et testables."
    ),
    ToolSpec(
        action=ToolAction.ROADMAP_PLANNER,
        name="Roadmap Planner",
        description="Product roadmap with priorities and timelines",
        category="planning",
        mode=HandoffMode.NAVIGATION,
        target="roadmap",
        intro="Planifions votre roadmap produit avec priorités et timelines."
    ),
    ToolSpec(
        action=ToolAction.SPRINT_PLANNER,
        name="Sprint Planner",
        description="Sprint organisation with estimates and team capacity",
        category="planning",
        mode=HandoffMode.NAVIGATION,
        target="sprint",
        intro="Organisons votre sprint avec estimation et capacité d'équipe."
    ),
    ToolSpec(
        action=ToolAction.KPI_GENERATOR,
        name="KPI Generator",
        description="Measurable KPIs aligned with objectives",
        category="analytics",
        target="generate_kpis",
        intro="Définissons des KPIs mesurables et alignés avec vos objectifs."
    ),
    ToolSpec(
        action=ToolAction.RACI_MATRIX,
        name="RACI Matrix",
        description="Responsibility assignment matrix",
        category="team",
        target="generate_raci",
        intro="Créons une matrice RACI pour clarifier les responsabilités."
    ),
    ToolSpec(
        action=ToolAction.MEETING_MINUTES,
        name="Meeting Minutes",
        description="Key points and action items of a meeting",
        category="documentation",
        target="meeting_minutes",
        intro="J'extrais les éléments clés et action items de votre réunion."
    ),
    ToolSpec(
        action=ToolAction.SQUAD_BUILDER,
        name="Squad Builder",
        description="Assemble a squad of agents for an initiative",
        category="team",
        mode=HandoffMode.NAVIGATION,
        target="squads",
        intro="Construisons une squad adaptée à votre initiative."
    ),
    ToolSpec(
        action=ToolAction.PRODUCT_CONTEXT,
        name="Product Context",
        description="Vision, audience and constraints of the product",
        category="strategy",
        target="edit_context",
        intro="Commençons par clarifier le contexte de votre produit."
    ),
    ToolSpec(
        action=ToolAction.USER_PERSONA,
        name="User Persona Builder",
        description="User personas with goals and frustrations",
        category="research",
        target="create_persona",
        intro="Créons des personas représentatifs de vos utilisateurs."
    ),
    ToolSpec(
        action=ToolAction.ESTIMATION_TOOL,
        name="Estimation Tool",
        description="Effort estimation of features and stories",
        category="planning",
        target="estimate",
        intro="Estimons l'effort nécessaire pour livrer ces éléments."
    ),
    ToolSpec(
        action=ToolAction.MARKET_RESEARCH,
        name="Market Research",
        description="Competitive landscape and market trends",
        category="research",
        target="market_research",
        intro="Analysons votre marché et vos concurrents."
    ),
    ToolSpec(
        action=ToolAction.PRODUCT_LAUNCH,
        name="Product Launch",
        description="Launch checklist and go-to-market plan",
        category="strategy",
        mode=HandoffMode.NAVIGATION,
        target="launch",
        intro="Préparons la checklist de lancement de votre produit."
    ),
    ToolSpec(
        action=ToolAction.DASHBOARD,
        name="Dashboard",
        description="Projects overview",
        category="navigation",
        mode=HandoffMode.NAVIGATION,
        target="dashboard"
    ),
    ToolSpec(
        action=ToolAction.ARTIFACTS_VIEW,
        name="Artifacts",
        description="All generated artifacts",
        category="navigation",
        mode=HandoffMode.NAVIGATION,
        target="artifacts"
    ),
)


class ToolRegistry:
    """Read-only registry of the tools the assistant can open"""

    def __init__(self, tools: Iterable[ToolSpec] = DEFAULT_TOOLS):
        tools_by_action: Dict[ToolAction, ToolSpec] = {}

        for tool in tools:
            tools_by_action[tool.action] = tool

        self.tools = MappingProxyType(tools_by_action)

    def resolve(self, key: str) -> ResolvedAction:
        """Map an opaque action key onto the closed action set"""

        try:
            action = ToolAction((key or "").strip().lower())
        except ValueError:
            return UnknownAction(key=key)

        if action not in self.tools:
            return UnknownAction(key=key)
        return action

    def get(self, action: ToolAction) -> ToolSpec:
        return self.tools[action]


# Process-wide catalogue, built once
tool_registry = ToolRegistry()
