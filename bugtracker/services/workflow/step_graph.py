"""
Step graph for one remediation task.

Steps are held in an arena keyed by step id; edges are plain ids resolved
inside that arena, never object references.  A graph is built once (from a
task's ``TaskStep`` rows or from a workflow definition schema), validated,
and then only read.

Node types:
    PlainStep       next_step_id                 (None = last step)
    DecisionStep    yes_step_id / no_step_id     (at least one set)
    AutoCheckStep   true_step_id / false_step_id (at least one set)
    TerminalStep    no outgoing edges

Usage:
    graph = StepGraph.from_steps(task.steps, task.initial_step_id)
    graph.resolve_next(step_id, "Yes")
    path, current = graph.walk({s.id: s.outcome for s in task.steps if s.is_completed})
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar

from bugtracker.core.exceptions import InvalidGraphError


class StepRole(str, Enum):
    ACTION = "action"
    DECISION = "decision"
    AUTO_CHECK = "auto_check"
    TERMINAL = "terminal"


# ── Node types ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PlainStep:
    step_id: str
    next_step_id: str | None = None

    role: ClassVar[StepRole] = StepRole.ACTION

    def targets(self) -> list[str]:
        return [t for t in (self.next_step_id,) if t]

    def resolve(self, outcome=None) -> str | None:
        return self.next_step_id


@dataclass(frozen=True)
class DecisionStep:
    step_id: str
    yes_step_id: str | None = None
    no_step_id: str | None = None

    role: ClassVar[StepRole] = StepRole.DECISION

    def targets(self) -> list[str]:
        return [t for t in (self.yes_step_id, self.no_step_id) if t]

    def resolve(self, outcome) -> str | None:
        if outcome is True or (isinstance(outcome, str) and outcome.strip().lower() == "yes"):
            return self.yes_step_id
        if outcome is False or (isinstance(outcome, str) and outcome.strip().lower() == "no"):
            return self.no_step_id
        raise ValueError(f"Decision step {self.step_id} needs a Yes/No outcome, got {outcome!r}")


@dataclass(frozen=True)
class AutoCheckStep:
    step_id: str
    true_step_id: str | None = None
    false_step_id: str | None = None

    role: ClassVar[StepRole] = StepRole.AUTO_CHECK

    def targets(self) -> list[str]:
        return [t for t in (self.true_step_id, self.false_step_id) if t]

    def resolve(self, outcome) -> str | None:
        if not isinstance(outcome, bool):
            raise ValueError(f"Auto-check step {self.step_id} needs a boolean outcome, got {outcome!r}")
        return self.true_step_id if outcome else self.false_step_id


@dataclass(frozen=True)
class TerminalStep:
    step_id: str

    role: ClassVar[StepRole] = StepRole.TERMINAL

    def targets(self) -> list[str]:
        return []

    def resolve(self, outcome=None) -> str | None:
        return None


StepNode = PlainStep | DecisionStep | AutoCheckStep | TerminalStep


def make_node(step_id: str, role: str, *, next_step_id=None, yes=None, no=None,
              true=None, false=None, stray_edges=()) -> StepNode:
    """Build the node variant for ``role``; raises ValueError on an unknown role.

    ``stray_edges`` are edges found on a row whose role does not use them
    (only meaningful for terminal steps, where any edge is an error).
    """
    role = StepRole(role)
    if role is StepRole.ACTION:
        return PlainStep(step_id, next_step_id)
    if role is StepRole.DECISION:
        return DecisionStep(step_id, yes, no)
    if role is StepRole.AUTO_CHECK:
        return AutoCheckStep(step_id, true, false)
    node = TerminalStep(step_id)
    if any(stray_edges):
        raise InvalidGraphError([f"Terminal step {step_id} must not have outgoing edges"])
    return node


# ── Graph ────────────────────────────────────────────────────────────────────


class StepGraph:
    """Arena of step nodes plus the id of the step a task starts at."""

    def __init__(self, nodes: Iterable[StepNode], initial_step_id: str | None,
                 validate: bool = True, problems: list[str] | None = None):
        self.nodes: dict[str, StepNode] = {}
        self._problems = list(problems or [])
        for node in nodes:
            if node.step_id in self.nodes:
                self._problems.append(f"Duplicate step id {node.step_id}")
                continue
            self.nodes[node.step_id] = node
        self.initial_step_id = initial_step_id
        if validate:
            self.validate()

    # ── Construction ─────────────────────────────────────────────────────

    @classmethod
    def from_steps(cls, steps, initial_step_id: str | None = None, validate: bool = True) -> "StepGraph":
        """Build from ``TaskStep`` rows.

        When ``initial_step_id`` is not given the lowest-``order`` step is used.
        """
        steps = list(steps)
        nodes, problems = [], []
        for step in steps:
            try:
                nodes.append(make_node(
                    step.id, step.role,
                    next_step_id=step.next_step_id,
                    yes=step.next_step_if_yes, no=step.next_step_if_no,
                    true=step.next_step_if_true, false=step.next_step_if_false,
                    stray_edges=(step.next_step_id, step.next_step_if_yes, step.next_step_if_no,
                                 step.next_step_if_true, step.next_step_if_false),
                ))
            except ValueError:
                problems.append(f"Step {step.id} has unknown role {step.role!r}")
            except InvalidGraphError as exc:
                problems.extend(exc.problems)
        if initial_step_id is None and steps:
            initial_step_id = min(steps, key=lambda s: s.order or 0).id
        return cls(nodes, initial_step_id, validate=validate, problems=problems)

    @classmethod
    def from_definition(cls, schema: Mapping, validate: bool = True) -> "StepGraph":
        """Build from a workflow definition schema (``{"initial_step_id", "steps": [...]}``)."""
        raw_steps, problems = [], []
        declared = schema.get("steps") or []
        if not isinstance(declared, (list, tuple)):
            problems.append("Field 'steps' must be a list of step objects")
            declared = []
        for position, raw in enumerate(declared, start=1):
            if isinstance(raw, Mapping):
                raw_steps.append(raw)
            else:
                problems.append(f"Step #{position} is not an object")

        nodes = []
        for raw in raw_steps:
            step_id = raw.get("step_id")
            if not isinstance(step_id, str) or not step_id:
                problems.append(f"Step {raw.get('name') or '?'} has no step_id")
                continue
            edges = (raw.get("next"), raw.get("next_if_yes"), raw.get("next_if_no"),
                     raw.get("next_if_true"), raw.get("next_if_false"))
            try:
                nodes.append(make_node(
                    step_id, raw.get("role") or StepRole.ACTION.value,
                    next_step_id=raw.get("next"),
                    yes=raw.get("next_if_yes"), no=raw.get("next_if_no"),
                    true=raw.get("next_if_true"), false=raw.get("next_if_false"),
                    stray_edges=edges,
                ))
            except ValueError:
                problems.append(f"Step {step_id} has unknown role {raw.get('role')!r}")
            except InvalidGraphError as exc:
                problems.extend(exc.problems)

        initial = schema.get("initial_step_id")
        if not initial and raw_steps:
            initial = min(raw_steps, key=lambda s: s.get("order") or 0).get("step_id")
        return cls(nodes, initial, validate=validate, problems=problems)

    # ── Validation ───────────────────────────────────────────────────────

    def problems(self) -> list[str]:
        """Every structural problem of the graph; empty when well formed."""
        found = list(self._problems)

        if not self.nodes:
            found.append("Step graph has no steps")
            return found

        if not self.initial_step_id:
            found.append("Step graph has no initial step")
        elif self.initial_step_id not in self.nodes:
            found.append(f"Initial step {self.initial_step_id} is not a step of this graph")

        for node in self.nodes.values():
            if node.role in (StepRole.DECISION, StepRole.AUTO_CHECK) and not node.targets():
                found.append(f"{node.role.value} step {node.step_id} has no outgoing edge")
            for target in node.targets():
                if target not in self.nodes:
                    found.append(f"Step {node.step_id} points to unknown step {target}")
                elif target == node.step_id:
                    found.append(f"Step {node.step_id} points to itself")

        cycle = self.find_cycle()
        if cycle:
            found.append("Cycle detected: " + " -> ".join(cycle))
        return found

    def validate(self) -> None:
        found = self.problems()
        if found:
            raise InvalidGraphError(found)

    def find_cycle(self) -> list[str] | None:
        """Return one cycle as a closed id path, or None.

        Iterative three-colour DFS over every node, so unreachable islands are
        checked too.
        """
        white, grey, black = 0, 1, 2
        colour = {sid: white for sid in self.nodes}

        for root in self.nodes:
            if colour[root] != white:
                continue
            stack = [(root, iter(self._known_targets(root)))]
            colour[root] = grey
            trail = [root]
            while stack:
                sid, children = stack[-1]
                child = next(children, None)
                if child is None:
                    colour[sid] = black
                    stack.pop()
                    trail.pop()
                    continue
                if child == sid:
                    continue  # self-loop is reported separately
                if colour[child] == grey:
                    return trail[trail.index(child):] + [child]
                if colour[child] == white:
                    colour[child] = grey
                    trail.append(child)
                    stack.append((child, iter(self._known_targets(child))))
        return None

    def _known_targets(self, step_id: str) -> list[str]:
        return [t for t in self.nodes[step_id].targets() if t in self.nodes]

    # ── Traversal ────────────────────────────────────────────────────────

    def node(self, step_id: str) -> StepNode:
        try:
            return self.nodes[step_id]
        except KeyError:
            raise KeyError(f"Step {step_id} is not part of this graph") from None

    def resolve_next(self, step_id: str, outcome=None) -> str | None:
        """Step that follows ``step_id`` for ``outcome``; None ends the workflow."""
        return self.node(step_id).resolve(outcome)

    def possible_next(self, step_id: str) -> list[str]:
        return self.node(step_id).targets()

    def walk(self, outcomes: Mapping[str, object]) -> tuple[list[str], str | None]:
        """Follow recorded outcomes from the initial step.

        ``outcomes`` maps each completed step id to its outcome (None for
        plain and terminal steps).  Returns the completed path in traversal
        order and the first step on it that is not completed yet, or None
        when the walk ran off the end of the graph.
        """
        path: list[str] = []
        current = self.initial_step_id
        while current is not None and current in outcomes:
            if current in path:
                raise InvalidGraphError([f"Cycle detected while walking at step {current}"])
            path.append(current)
            current = self.resolve_next(current, outcomes[current])
        return path, current

    def reachable_from(self, step_id: str) -> set[str]:
        """Ids reachable from ``step_id`` (exclusive)."""
        seen: set[str] = set()
        stack = list(self.possible_next(step_id))
        while stack:
            sid = stack.pop()
            if sid in seen or sid not in self.nodes:
                continue
            seen.add(sid)
            stack.extend(self.nodes[sid].targets())
        return seen

    def __contains__(self, step_id) -> bool:
        return step_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def __repr__(self):
        return f"<StepGraph {len(self.nodes)} steps, initial={self.initial_step_id}>"
