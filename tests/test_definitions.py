"""
Tests for workflow definitions, validation and the registry.
"""

import pytest

from flowgate.errors import DefinitionConflict, InvalidDefinition, UnknownWorkflow
from flowgate.registry import WorkflowRegistry
from flowgate.types import (
    CombineWith,
    ConditionOperator,
    Criticality,
    RunContext,
    StepType,
    TriggerType,
    WorkflowDefinition,
)
from flowgate.validation import DefinitionValidator, validate, version_key

from conftest import AGENT, SERVICE, make_definition, make_step


CATALOGUE = {
    (AGENT, SERVICE, "detect"),
    (AGENT, SERVICE, "analyze"),
    (AGENT, SERVICE, "execute"),
}


def _definition(**extra) -> WorkflowDefinition:
    return WorkflowDefinition.from_dict(make_definition(
        [
            make_step("detect", "detect", outputs=["anomalies"]),
            make_step(
                "analyze",
                "analyze",
                parameters={"items": "{{ detect.anomalies }}"},
                conditions=[{"field": "detect.anomalies", "operator": "exists"}],
            ),
            make_step("execute", "execute", error_handling={"retry": {"attempts": 2}}),
        ],
        **extra,
    ))


# === Type Tests ===


class TestDefinitionTypes:
    """Tests for definition parsing and serialization."""

    def test_from_dict(self):
        definition = _definition()

        assert definition.id == "uc_ops@1.0.0"
        assert definition.key == ("uc_ops", "1.0.0")
        assert [s.id for s in definition.steps] == ["detect", "analyze", "execute"]
        assert definition.steps[0].type == StepType.DETECT
        assert definition.steps[0].outputs == ("anomalies",)
        assert definition.steps[1].conditions[0].operator == ConditionOperator.EXISTS
        assert definition.steps[2].error_handling.max_attempts == 2

    def test_round_trip_keeps_fingerprint(self):
        definition = _definition(
            triggers=[{"type": "threshold", "metric": "x", "operator": ">", "value": 10}],
            metadata={"criticality": "high", "tags": ["ops"]},
        )
        restored = WorkflowDefinition.from_dict(definition.to_dict())

        assert restored == definition
        assert restored.fingerprint() == definition.fingerprint()
        assert restored.metadata.criticality == Criticality.HIGH
        assert restored.triggers[0].trigger_type == TriggerType.THRESHOLD
        assert restored.triggers[0].threshold == 10.0

    def test_fingerprint_changes_with_content(self):
        a = _definition()
        b = _definition(description="changed")
        assert a.fingerprint() != b.fingerprint()

    def test_operator_aliases(self):
        assert ConditionOperator("==") == ConditionOperator.EQUALS
        assert ConditionOperator("gte") == ConditionOperator.GREATER_EQUAL
        assert CombineWith("or") == CombineWith.OR
        with pytest.raises(ValueError):
            ConditionOperator("matches")

    def test_parse_errors_are_collected(self):
        with pytest.raises(InvalidDefinition) as exc_info:
            WorkflowDefinition.from_dict({
                "use_case_id": "uc",
                "steps": [
                    {"id": "a", "type": "dance", "agent": "x", "service": "y", "action": "z"},
                    {"id": "b", "type": "detect"},
                ],
                "triggers": [{"type": "webhook"}],
            })

        violations = exc_info.value.violations
        assert len(violations) == 4
        assert any("version" in v for v in violations)
        assert any(v.startswith("step[0]") for v in violations)
        assert any(v.startswith("step[1]") for v in violations)
        assert any(v.startswith("trigger[0]") for v in violations)

    def test_error_handling_defaults(self):
        definition = WorkflowDefinition.from_dict(make_definition([make_step("detect")]))
        handling = definition.steps[0].error_handling

        assert handling.retry is None
        assert handling.max_attempts == 1
        assert handling.escalate is False

    def test_zero_attempts_means_one(self):
        definition = WorkflowDefinition.from_dict(make_definition([
            make_step("detect", error_handling={"retry": {"attempts": 0}}),
        ]))
        assert definition.steps[0].error_handling.max_attempts == 1


class TestRunContext:
    """Tests for run state."""

    def test_outputs_are_committed_once(self):
        run = RunContext(workflow_id="uc", version="1.0.0")
        run.commit_outputs("detect", {"count": 1})

        with pytest.raises(ValueError):
            run.commit_outputs("detect", {"count": 2})

        assert run.outputs == {"detect": {"count": 1}}

    def test_committed_outputs_are_copies(self):
        run = RunContext(workflow_id="uc", version="1.0.0")
        produced = {"items": [1, 2]}
        run.commit_outputs("detect", produced)
        produced["items"].append(3)

        assert run.outputs["detect"]["items"] == [1, 2]

    def test_snapshot_round_trip(self):
        run = RunContext(workflow_id="uc", version="1.0.0", initial_context={"site": "a"})
        run.start()
        run.commit_outputs("detect", {"count": 1})
        run.complete()

        restored = RunContext.from_dict(run.to_dict())

        assert restored.run_id == run.run_id
        assert restored.status == run.status
        assert restored.outputs == run.outputs
        assert restored.to_dict()["awaiting_approval"] is False


# === Validation Tests ===


class TestValidation:
    """Tests for definition validation."""

    def test_valid_definition(self):
        assert DefinitionValidator(CATALOGUE).validate(_definition()) == []

    def test_lists_every_violation(self):
        definition = WorkflowDefinition.from_dict(make_definition(
            [
                make_step(
                    "detect",
                    conditions=[{"field": "analyze.result", "operator": "exists"}],
                ),
                make_step("detect", "analyze", action="analyze"),
                make_step("execute", "execute", action="unknown_action", timeout_seconds=-1),
                make_step(
                    "report",
                    "report",
                    action="execute",
                    parameters={"text": "{{ ghost.value }}"},
                ),
            ],
            version="1.0",
            triggers=[
                {"type": "scheduled", "cron": "not a cron"},
                {"type": "event"},
                {"type": "threshold", "metric": "x", "operator": "contains", "value": 1},
            ],
        ))

        with pytest.raises(InvalidDefinition) as exc_info:
            validate(definition, CATALOGUE)

        violations = exc_info.value.violations
        assert len(violations) == 9
        assert any("semantic version" in v for v in violations)
        assert any("unknown step 'analyze'" in v for v in violations)
        assert any("duplicate step id" in v for v in violations)
        assert any("unknown_action is not declared" in v for v in violations)
        assert any("timeout_seconds must be positive" in v for v in violations)
        assert any("unknown step 'ghost'" in v for v in violations)
        assert any("invalid cron expression" in v for v in violations)
        assert any("requires a topic" in v for v in violations)
        assert any("not a comparison operator" in v for v in violations)

    def test_condition_must_reference_earlier_step(self):
        definition = WorkflowDefinition.from_dict(make_definition([
            make_step("detect", conditions=[{"field": "analyze.ok", "operator": "exists"}]),
            make_step("analyze", "analyze"),
        ]))

        violations = DefinitionValidator(CATALOGUE).validate(definition)

        assert violations == [
            "step 'detect': condition on 'analyze.ok' references later or same step 'analyze'"
        ]

    def test_self_reference_rejected(self):
        definition = WorkflowDefinition.from_dict(make_definition([
            make_step("detect", parameters={"prev": "{{ detect.count }}"}),
        ]))

        violations = DefinitionValidator(CATALOGUE).validate(definition)

        assert len(violations) == 1
        assert "later or same step 'detect'" in violations[0]

    def test_inputs_templates_allowed(self):
        definition = WorkflowDefinition.from_dict(make_definition([
            make_step("detect", parameters={"site": "{{ inputs.site }}"}),
        ]))
        assert DefinitionValidator(CATALOGUE).validate(definition) == []

    def test_without_catalogue_skips_capability_check(self):
        definition = WorkflowDefinition.from_dict(make_definition([
            make_step("detect", action="anything"),
        ]))
        assert DefinitionValidator(None).validate(definition) == []

    def test_required_agents_must_cover_steps(self):
        definition = WorkflowDefinition.from_dict(make_definition(
            [make_step("detect")],
            metadata={"required_agents": ["other_agent"]},
        ))

        violations = DefinitionValidator(CATALOGUE).validate(definition)

        assert len(violations) == 1
        assert "required_agents" in violations[0]

    def test_unknown_timezone(self):
        definition = WorkflowDefinition.from_dict(make_definition(
            [make_step("detect")],
            triggers=[{"type": "scheduled", "cron": "0 9 * * *", "timezone": "Mars/Olympus"}],
        ))

        violations = DefinitionValidator(CATALOGUE).validate(definition)

        assert violations == ["trigger[0]: unknown timezone 'Mars/Olympus'"]

    def test_version_ordering(self):
        versions = ["1.10.0", "1.2.0", "1.2.0-rc.1", "1.2.0-alpha", "0.9.9"]
        assert sorted(versions, key=version_key) == [
            "0.9.9",
            "1.2.0-alpha",
            "1.2.0-rc.1",
            "1.2.0",
            "1.10.0",
        ]


# === Registry Tests ===


class TestWorkflowRegistry:
    """Tests for the definition registry."""

    @pytest.mark.asyncio
    async def test_register_and_get(self):
        registry = WorkflowRegistry(catalogue=lambda: CATALOGUE)
        await registry.initialize()

        created = await registry.register(_definition())

        assert created is True
        assert registry.get("uc_ops").version == "1.0.0"
        assert registry.count() == 1

    @pytest.mark.asyncio
    async def test_registration_callback_fires_once(self):
        registry = WorkflowRegistry(catalogue=lambda: CATALOGUE)
        stored = []
        registry.on_definition_registered(stored.append)

        await registry.register(_definition())
        await registry.register(_definition())

        assert [d.key for d in stored] == [_definition().key]

    @pytest.mark.asyncio
    async def test_identical_registration_is_noop(self):
        registry = WorkflowRegistry(catalogue=lambda: CATALOGUE)

        assert await registry.register(_definition()) is True
        assert await registry.register(_definition()) is False
        assert registry.count() == 1

    @pytest.mark.asyncio
    async def test_conflicting_registration_rejected(self):
        registry = WorkflowRegistry(catalogue=lambda: CATALOGUE)
        await registry.register(_definition())

        with pytest.raises(DefinitionConflict):
            await registry.register(_definition(description="different"))

        assert registry.get("uc_ops").description == ""

    @pytest.mark.asyncio
    async def test_invalid_definition_not_stored(self):
        registry = WorkflowRegistry(catalogue=lambda: set())

        with pytest.raises(InvalidDefinition):
            await registry.register(_definition())

        assert registry.count() == 0

    @pytest.mark.asyncio
    async def test_latest_version_resolution(self):
        registry = WorkflowRegistry(catalogue=lambda: CATALOGUE)
        for version in ("1.2.0", "1.10.0", "1.9.3"):
            await registry.register(WorkflowDefinition.from_dict(
                {**_definition().to_dict(), "id": "", "version": version}
            ))

        assert registry.list_versions("uc_ops") == ["1.2.0", "1.9.3", "1.10.0"]
        assert registry.get("uc_ops").version == "1.10.0"
        assert registry.get("uc_ops", "1.2.0").version == "1.2.0"

        with pytest.raises(UnknownWorkflow):
            registry.get("uc_ops", "2.0.0")
        with pytest.raises(UnknownWorkflow):
            registry.get("missing")

    @pytest.mark.asyncio
    async def test_list_filters(self):
        registry = WorkflowRegistry(catalogue=lambda: CATALOGUE)
        await registry.register(_definition(metadata={"criticality": "high", "tags": ["ops"]}))
        await registry.register(WorkflowDefinition.from_dict(make_definition(
            [make_step("detect")],
            use_case_id="uc_finance",
            metadata={"industry": "finance"},
        )))

        assert [d.use_case_id for d in registry.list(criticality=Criticality.HIGH)] == ["uc_ops"]
        assert [d.use_case_id for d in registry.list(tag="ops")] == ["uc_ops"]
        assert [d.use_case_id for d in registry.list(industry="finance")] == ["uc_finance"]
        assert [d.use_case_id for d in registry.list(search="FINANCE")] == ["uc_finance"]

    @pytest.mark.asyncio
    async def test_export_import(self):
        source = WorkflowRegistry(catalogue=lambda: CATALOGUE)
        await source.register(_definition())
        exported = source.export()

        target = WorkflowRegistry(catalogue=lambda: CATALOGUE)
        assert await target.import_definitions(exported) == 1
        assert await target.import_definitions(exported) == 0
        assert target.get("uc_ops").fingerprint() == source.get("uc_ops").fingerprint()

    @pytest.mark.asyncio
    async def test_persistence(self, tmp_path):
        registry = WorkflowRegistry(catalogue=lambda: CATALOGUE, persistence_path=tmp_path)
        await registry.initialize()
        await registry.register(_definition())
        await registry.shutdown()

        reloaded = WorkflowRegistry(catalogue=lambda: CATALOGUE, persistence_path=tmp_path)
        await reloaded.initialize()

        assert reloaded.get("uc_ops").fingerprint() == _definition().fingerprint()
