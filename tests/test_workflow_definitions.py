"""
Tests: workflow definition store (versioning, validation, seeding, cloning).
"""

import pytest

from bugtracker.core.exceptions import ConflictError, InvalidGraphError, NotFoundError
from bugtracker.models.task import Task
from bugtracker.services import task_service
from bugtracker.services.workflow import definitions
from bugtracker.services.workflow.definitions import (
    BUG_ASSESSMENT_WORKFLOW,
    bump_version,
    get_definition,
    list_definitions,
    save_definition,
    seed_definitions,
)


def _triage_schema(description="Quick triage"):
    return {
        "name": "Triage",
        "description": description,
        "initial_step_id": "look",
        "steps": [
            {"step_id": "look", "name": "Look at the bug", "role": "action", "order": 1, "next": "decide"},
            {"step_id": "decide", "name": "Relevant?", "role": "decision", "order": 2,
             "requires_note": True, "min_note_length": 5,
             "next_if_yes": "keep", "next_if_no": "drop"},
            {"step_id": "keep", "name": "Keep", "role": "terminal", "order": 3},
            {"step_id": "drop", "name": "Drop", "role": "terminal", "order": 4},
        ],
    }


@pytest.mark.parametrize("current, expected", [
    ("1.0.0", "1.0.1"),
    ("2.4.9", "2.4.10"),
    (None, "1.0.0"),
    ("v1", "1.0.0"),
    ("1.x.0", "1.0.0"),
])
def test_bump_version(current, expected):
    assert bump_version(current) == expected


class TestSaveDefinition:
    def test_first_save_is_active_1_0_0(self):
        definition = save_definition(_triage_schema(), created_by="lead")
        assert definition.version == "1.0.0"
        assert definition.is_active is True
        assert definition.created_by == "lead"
        assert definition.schema["initial_step_id"] == "look"

    def test_resave_bumps_version_and_deactivates_previous(self):
        save_definition(_triage_schema())
        save_definition(_triage_schema("Quick triage, revised"))

        active = get_definition("Triage")
        assert active.version == "1.0.1"
        assert active.description == "Quick triage, revised"

        old = get_definition("Triage", version="1.0.0")
        assert old.is_active is False

        assert [d.version for d in list_definitions()] == ["1.0.1"]
        assert [d.version for d in list_definitions(include_inactive=True)] == ["1.0.0", "1.0.1"]

    def test_invalid_graph_is_not_stored(self):
        schema = _triage_schema()
        schema["steps"][1]["next_if_no"] = "look"   # decide → look → decide
        with pytest.raises(InvalidGraphError) as exc:
            save_definition(schema)
        assert any("Cycle" in p for p in exc.value.problems)
        assert list_definitions(include_inactive=True) == []

    def test_name_is_required(self):
        schema = _triage_schema()
        schema["name"] = "  "
        with pytest.raises(InvalidGraphError):
            save_definition(schema)

    def test_non_object_step_is_an_invalid_graph(self):
        schema = _triage_schema()
        schema["steps"].append("drop")
        with pytest.raises(InvalidGraphError) as exc:
            save_definition(schema)
        assert "Step #5 is not an object" in exc.value.problems
        assert list_definitions(include_inactive=True) == []

    def test_concurrent_save_of_the_same_version_conflicts(self, monkeypatch):
        save_definition(_triage_schema())
        # the second writer did not see the first row when picking its version
        monkeypatch.setattr(definitions, "_latest", lambda name: None)

        with pytest.raises(ConflictError) as exc:
            save_definition(_triage_schema("Racing edit"))
        assert exc.value.value == "Triage v1.0.0"

        monkeypatch.undo()
        stored = list_definitions(include_inactive=True)
        assert [(d.version, d.description, d.is_active) for d in stored] == [("1.0.0", "Quick triage", True)]

    def test_unknown_definition_is_not_found(self):
        with pytest.raises(NotFoundError):
            get_definition("Nope")


class TestSeeding:
    def test_seed_is_idempotent(self, app):
        directory = app.config["WORKFLOW_DEFINITIONS_DIR"]
        assert seed_definitions(directory) == 1
        assert seed_definitions(directory) == 0

        definition = get_definition(BUG_ASSESSMENT_WORKFLOW)
        assert definition.version == "1.0.0"
        assert definition.schema["initial_step_id"] == "version-check"

    def test_missing_directory_seeds_nothing(self, tmp_path):
        assert seed_definitions(str(tmp_path / "absent")) == 0
        assert seed_definitions(None) == 0


class TestInstantiation:
    def test_task_steps_are_cloned_with_fresh_ids(self, bug, trial_manager):
        definition = save_definition(_triage_schema())
        task = task_service.create_task(
            bug.id, trial_manager.product_ref, "CORE-101 - ACM-001",
            definition_name="Triage",
        )

        by_template = {s.template_step_id: s for s in task.steps}
        assert set(by_template) == {"look", "decide", "keep", "drop"}
        assert all(s.id != s.template_step_id for s in task.steps)
        assert task.initial_step_id == by_template["look"].id
        assert by_template["look"].next_step_id == by_template["decide"].id
        assert by_template["decide"].next_step_if_yes == by_template["keep"].id
        assert by_template["decide"].next_step_if_no == by_template["drop"].id
        assert by_template["decide"].requires_note is True
        assert by_template["decide"].min_note_length == 5
        assert task.workflow_definition_id == definition.id

    def test_two_tasks_never_share_step_ids(self, bug, trial_manager):
        save_definition(_triage_schema())
        first = task_service.create_task(bug.id, trial_manager.product_ref, "one", definition_name="Triage")
        second = task_service.create_task(bug.id, trial_manager.product_ref, "two", definition_name="Triage")
        assert not {s.id for s in first.steps} & {s.id for s in second.steps}

    def test_auto_check_rule_is_copied(self):
        schema = {
            "name": "Rule copy",
            "steps": [
                {"step_id": "c", "role": "auto_check", "order": 1,
                 "rule": {"conditions": [{"field": "x", "operator": "is_null"}]},
                 "next_if_true": "t"},
                {"step_id": "t", "role": "terminal", "order": 2},
            ],
        }

        task = Task()
        steps = definitions.instantiate_steps(schema, task)
        assert steps[0].auto_check_rule == {"conditions": [{"field": "x", "operator": "is_null"}]}
        assert steps[0].action == "c"
        assert task.initial_step_id == steps[0].id
        assert task.steps == steps
