"""
Exception hierarchy for the bug tracker services.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Workflow errors carry a machine-readable ``code`` and a list of
human-readable ``messages`` so the transition engine can turn any of them into
an unsuccessful action result without losing detail.

Usage:
    from bugtracker.core.exceptions import NotFoundError, StepMismatchError

    raise NotFoundError(resource="Task", resource_id=task_id)
    raise StepMismatchError(submitted_step_id, current_step_id)
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Task", "CoreBug").
        resource_id: The PK that was looked up. Included in logs and messages.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique value.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


# ── Workflow errors ──────────────────────────────────────────────────────────


class WorkflowError(Exception):
    """Base class for every workflow engine failure."""

    code = "WORKFLOW_ERROR"

    def __init__(self, message: str, messages: list[str] | None = None) -> None:
        self.messages = messages or [message]
        super().__init__(message)


class InvalidGraphError(WorkflowError):
    """Step graph is malformed: dangling edge, cycle, duplicate ids, ...

    Fatal: raised while building a task or saving a workflow definition,
    never while traversing a graph that passed validation.

    Args:
        problems: Every structural problem found, one message each.
    """

    code = "INVALID_GRAPH"

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("Invalid step graph: " + "; ".join(self.problems), self.problems)


class StepMismatchError(WorkflowError):
    """Submitted step is not the task's current step (no skipping or redoing)."""

    code = "STEP_MISMATCH"

    def __init__(self, submitted_step_id: str | None, current_step_id: str | None) -> None:
        self.submitted_step_id = submitted_step_id
        self.current_step_id = current_step_id
        super().__init__(
            f"Step {submitted_step_id} is not the current step "
            f"(current step is {current_step_id})"
        )


class ActionRoleMismatchError(WorkflowError):
    """Action type is not permitted for the current step's role."""

    code = "ACTION_ROLE_MISMATCH"

    def __init__(self, action_type: str, role: str, allowed: list[str] | None = None) -> None:
        self.action_type = action_type
        self.role = role
        self.allowed = sorted(allowed or [])
        msg = f"Action '{action_type}' is not available for a {role} step"
        if self.allowed:
            msg += f" (allowed: {', '.join(self.allowed)})"
        super().__init__(msg)


class ValidationError(WorkflowError):
    """Raised when input fails business-rule validation.

    For workflow actions ``violations`` holds every problem found so the
    caller can display all of them at once.  ``details`` maps field names to
    the first message for that field.

    Args:
        message: Human-readable summary.
        violations: Optional list of ``Violation`` objects.
        details: Optional field-level breakdown; derived from violations when omitted.
    """

    code = "VALIDATION_FAILED"

    def __init__(self, message: str, violations: list | None = None, details: dict | None = None) -> None:
        self.violations = list(violations or [])
        if details is None:
            details = {}
            for v in self.violations:
                details.setdefault(v.field, v.message)
        self.details = details
        messages = [v.message for v in self.violations] or [message]
        super().__init__(message, messages)


class TaskAlreadyCompleteError(WorkflowError):
    """Any action against a completed task is rejected."""

    code = "TASK_ALREADY_COMPLETE"

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task {task_id} is already completed; no further actions are accepted")


class ConcurrencyConflictError(WorkflowError):
    """The task changed between read and write; refetch and retry."""

    code = "CONCURRENCY_CONFLICT"

    def __init__(self, task_id: str, expected_version: int | None = None, actual_version: int | None = None) -> None:
        self.task_id = task_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        msg = f"Task {task_id} was modified by another request"
        if expected_version is not None and actual_version is not None:
            msg += f" (expected version {expected_version}, found {actual_version})"
        super().__init__(msg + "; reload the workflow state and retry")
