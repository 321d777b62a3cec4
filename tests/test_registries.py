import pytest

from nova_assistant.domain.orchestration.workflow.workflow_registry import (
    DEFAULT_WORKFLOWS, WorkflowRegistry, workflow_registry
)
from nova_assistant.domain.tool.tool_registry import (
    HandoffMode, ToolAction, UnknownAction, tool_registry
)


class TestToolRegistry:

    @pytest.mark.parametrize("key,expected", [
        ("canvas_generator", ToolAction.CANVAS_GENERATOR),
        ("  Instant_PRD ", ToolAction.INSTANT_PRD),
        ("dashboard", ToolAction.DASHBOARD),
    ])
    def test_resolve_known(self, key, expected):
        assert tool_registry.resolve(key) == expected

    @pytest.mark.parametrize("key", ["teleport", "", None])
    def test_resolve_unknown(self, key):
        resolved = tool_registry.resolve(key)
        assert isinstance(resolved, UnknownAction)
        assert resolved.key == key

    def test_navigation_targets(self):
        dashboard = tool_registry.get(ToolAction.DASHBOARD)
        assert dashboard.mode == HandoffMode.NAVIGATION
        assert dashboard.target == "dashboard"
        assert tool_registry.get(ToolAction.CANVAS_GENERATOR).target == "create_canvas"

    def test_every_action_is_registered(self):
        assert set(tool_registry.tools) == set(ToolAction)


class TestWorkflowRegistry:

    def test_lookup_normalises_type(self):
        assert workflow_registry.get("Sprint-Planning").type == "sprint_planning"
        assert workflow_registry.is_registered("product-launch")
        assert not workflow_registry.is_registered("nope")

    def test_unknown_type_falls_back_to_default(self):
        assert workflow_registry.get_or_default("nope").type == "feature_discovery"
        assert workflow_registry.get_or_default(None).type == "feature_discovery"

    def test_configured_default(self):
        registry = WorkflowRegistry(DEFAULT_WORKFLOWS, default_type="squad_builder")
        assert registry.get_or_default("nope").type == "squad_builder"

    def test_default_must_be_registered(self):
        with pytest.raises(ValueError):
            WorkflowRegistry(DEFAULT_WORKFLOWS, default_type="nope")

    @pytest.mark.parametrize("text,expected", [
        ("je veux faire un sprint planning", "sprint_planning"),
        ("aidez-moi à construire une squad", "squad_builder"),
        ("lançons le product_launch", "product_launch"),
        ("bonjour", None),
    ])
    def test_match_trigger(self, text, expected):
        matched = workflow_registry.match_trigger(text)
        assert (matched.type if matched else None) == expected

    def test_step_counts(self):
        totals = {w.type: w.total_steps for w in DEFAULT_WORKFLOWS}
        assert totals == {
            "feature_discovery": 5,
            "squad_builder": 3,
            "sprint_planning": 3,
            "product_launch": 4,
        }
