"""
Tests: step graph construction, validation and traversal.

Pure data-structure tests; graphs are built from definition schemas so no
database rows are involved.
"""

import pytest

from bugtracker.core.exceptions import InvalidGraphError
from bugtracker.services.workflow.step_graph import (
    AutoCheckStep,
    DecisionStep,
    PlainStep,
    StepGraph,
    StepRole,
    TerminalStep,
)


def _schema(steps, initial="a"):
    return {"name": "Test", "initial_step_id": initial, "steps": steps}


BRANCHING = _schema([
    {"step_id": "a", "role": "action", "order": 1, "next": "b"},
    {"step_id": "b", "role": "decision", "order": 2, "next_if_yes": "c", "next_if_no": "d"},
    {"step_id": "c", "role": "auto_check", "order": 3, "next_if_true": "e", "next_if_false": "d"},
    {"step_id": "d", "role": "terminal", "order": 4},
    {"step_id": "e", "role": "terminal", "order": 5},
])


class TestConstruction:
    def test_nodes_take_the_variant_of_their_role(self):
        graph = StepGraph.from_definition(BRANCHING)
        assert isinstance(graph.nodes["a"], PlainStep)
        assert isinstance(graph.nodes["b"], DecisionStep)
        assert isinstance(graph.nodes["c"], AutoCheckStep)
        assert isinstance(graph.nodes["d"], TerminalStep)
        assert graph.nodes["b"].role is StepRole.DECISION
        assert graph.initial_step_id == "a"
        assert len(graph) == 5

    def test_initial_step_defaults_to_lowest_order(self):
        schema = {"name": "x", "steps": [
            {"step_id": "late", "role": "terminal", "order": 2},
            {"step_id": "early", "role": "action", "order": 1, "next": "late"},
        ]}
        assert StepGraph.from_definition(schema).initial_step_id == "early"


class TestValidation:
    def test_cycle_is_rejected(self):
        schema = _schema([
            {"step_id": "a", "role": "action", "next": "b"},
            {"step_id": "b", "role": "decision", "next_if_yes": "a", "next_if_no": "c"},
            {"step_id": "c", "role": "terminal"},
        ])
        with pytest.raises(InvalidGraphError) as exc:
            StepGraph.from_definition(schema)
        assert exc.value.code == "INVALID_GRAPH"
        assert any("Cycle" in p for p in exc.value.problems)

    def test_cycle_in_unreachable_island_is_rejected(self):
        schema = _schema([
            {"step_id": "a", "role": "terminal"},
            {"step_id": "x", "role": "action", "next": "y"},
            {"step_id": "y", "role": "action", "next": "x"},
        ])
        with pytest.raises(InvalidGraphError):
            StepGraph.from_definition(schema)

    def test_self_loop_is_rejected(self):
        schema = _schema([{"step_id": "a", "role": "action", "next": "a"}])
        with pytest.raises(InvalidGraphError) as exc:
            StepGraph.from_definition(schema)
        assert any("itself" in p for p in exc.value.problems)

    def test_decision_without_edges_is_rejected(self):
        schema = _schema([{"step_id": "a", "role": "decision"}])
        with pytest.raises(InvalidGraphError) as exc:
            StepGraph.from_definition(schema)
        assert any("no outgoing edge" in p for p in exc.value.problems)

    def test_auto_check_without_edges_is_rejected(self):
        schema = _schema([{"step_id": "a", "role": "auto_check"}])
        with pytest.raises(InvalidGraphError):
            StepGraph.from_definition(schema)

    def test_decision_with_one_edge_is_accepted(self):
        schema = _schema([
            {"step_id": "a", "role": "decision", "next_if_yes": "b"},
            {"step_id": "b", "role": "terminal"},
        ])
        graph = StepGraph.from_definition(schema)
        assert graph.resolve_next("a", "No") is None

    def test_edge_to_unknown_step_is_rejected(self):
        schema = _schema([{"step_id": "a", "role": "action", "next": "ghost"}])
        with pytest.raises(InvalidGraphError) as exc:
            StepGraph.from_definition(schema)
        assert any("ghost" in p for p in exc.value.problems)

    def test_duplicate_step_ids_are_rejected(self):
        schema = _schema([
            {"step_id": "a", "role": "action", "next": "b"},
            {"step_id": "b", "role": "terminal"},
            {"step_id": "b", "role": "terminal"},
        ])
        with pytest.raises(InvalidGraphError) as exc:
            StepGraph.from_definition(schema)
        assert any("Duplicate" in p for p in exc.value.problems)

    def test_terminal_with_outgoing_edge_is_rejected(self):
        schema = _schema([
            {"step_id": "a", "role": "terminal", "next": "b"},
            {"step_id": "b", "role": "terminal"},
        ])
        with pytest.raises(InvalidGraphError) as exc:
            StepGraph.from_definition(schema)
        assert any("Terminal" in p for p in exc.value.problems)

    def test_unknown_initial_step_is_rejected(self):
        schema = _schema([{"step_id": "a", "role": "terminal"}], initial="zzz")
        with pytest.raises(InvalidGraphError):
            StepGraph.from_definition(schema)

    def test_unknown_role_is_rejected(self):
        schema = _schema([{"step_id": "a", "role": "subprocess"}])
        with pytest.raises(InvalidGraphError) as exc:
            StepGraph.from_definition(schema)
        assert any("unknown role" in p for p in exc.value.problems)

    def test_non_object_steps_are_reported_by_position(self):
        schema = _schema(["s1", {"step_id": "a", "role": "terminal"}, None])
        with pytest.raises(InvalidGraphError) as exc:
            StepGraph.from_definition(schema)
        assert exc.value.problems == ["Step #1 is not an object", "Step #3 is not an object"]

    def test_steps_must_be_a_list(self):
        with pytest.raises(InvalidGraphError) as exc:
            StepGraph.from_definition({"name": "odd", "steps": "a,b"})
        assert "Field 'steps' must be a list of step objects" in exc.value.problems

    def test_empty_graph_is_rejected(self):
        with pytest.raises(InvalidGraphError):
            StepGraph.from_definition({"name": "empty", "steps": []})

    def test_all_problems_are_reported_together(self):
        schema = _schema([
            {"step_id": "a", "role": "action", "next": "ghost"},
            {"step_id": "b", "role": "decision"},
        ])
        graph = StepGraph.from_definition(schema, validate=False)
        assert len(graph.problems()) == 2


class TestTraversal:
    def test_resolve_next_follows_outcome_edges(self):
        graph = StepGraph.from_definition(BRANCHING)
        assert graph.resolve_next("a") == "b"
        assert graph.resolve_next("b", "Yes") == "c"
        assert graph.resolve_next("b", "No") == "d"
        assert graph.resolve_next("b", "yes") == "c"
        assert graph.resolve_next("c", True) == "e"
        assert graph.resolve_next("c", False) == "d"
        assert graph.resolve_next("d") is None

    def test_resolve_next_never_leaves_the_step_set(self):
        graph = StepGraph.from_definition(BRANCHING)
        outcomes = {
            StepRole.ACTION: [None],
            StepRole.DECISION: ["Yes", "No"],
            StepRole.AUTO_CHECK: [True, False],
            StepRole.TERMINAL: [None],
        }
        for step_id, node in graph.nodes.items():
            for outcome in outcomes[node.role]:
                nxt = graph.resolve_next(step_id, outcome)
                assert nxt is None or nxt in graph

    def test_plain_step_ignores_outcome(self):
        graph = StepGraph.from_definition(BRANCHING)
        assert graph.resolve_next("a", "No") == "b"

    def test_decision_rejects_non_answer(self):
        graph = StepGraph.from_definition(BRANCHING)
        with pytest.raises(ValueError):
            graph.resolve_next("b", "Maybe")

    def test_auto_check_rejects_non_boolean(self):
        graph = StepGraph.from_definition(BRANCHING)
        with pytest.raises(ValueError):
            graph.resolve_next("c", "true")

    def test_unknown_step_raises_key_error(self):
        graph = StepGraph.from_definition(BRANCHING)
        with pytest.raises(KeyError):
            graph.resolve_next("nope")

    def test_walk_returns_path_and_current_step(self):
        graph = StepGraph.from_definition(BRANCHING)
        assert graph.walk({}) == ([], "a")
        assert graph.walk({"a": None}) == (["a"], "b")
        assert graph.walk({"a": None, "b": "Yes"}) == (["a", "b"], "c")
        assert graph.walk({"a": None, "b": "No", "d": None}) == (["a", "b", "d"], None)

    def test_walk_ignores_completed_steps_off_the_path(self):
        graph = StepGraph.from_definition(BRANCHING)
        path, current = graph.walk({"a": None, "e": None})
        assert path == ["a"]
        assert current == "b"

    def test_reachable_and_possible_next(self):
        graph = StepGraph.from_definition(BRANCHING)
        assert graph.reachable_from("b") == {"c", "d", "e"}
        assert sorted(graph.possible_next("b")) == ["c", "d"]
        assert graph.reachable_from("d") == set()
