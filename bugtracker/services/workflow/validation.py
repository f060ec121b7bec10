"""
Validation & note enforcement for workflow actions.

Pure functions of (step, payload) → list of ``Violation``.  Nothing here
touches the database; the transition engine treats any non-empty result as
a hard precondition failure and reports every violation at once.

Rules:
    - requires_note ⇒ note non-empty after trimming, length in [min, max]
    - add_note always needs a non-empty note
    - an optional note on any other step still respects the max length
    - decision answers are normalised case-insensitively to "Yes" / "No"
    - auto_check needs a boolean result
"""

from __future__ import annotations

from dataclasses import asdict, dataclass

from bugtracker.models.task import DECISION_ANSWERS

# ── Violation codes ──────────────────────────────────────────────────────────

NOTES_REQUIRED = "NOTES_REQUIRED"
NOTE_TOO_SHORT = "NOTE_TOO_SHORT"
NOTE_TOO_LONG = "NOTE_TOO_LONG"
DECISION_REQUIRED = "DECISION_REQUIRED"
INVALID_DECISION = "INVALID_DECISION"
AUTO_CHECK_RESULT_REQUIRED = "AUTO_CHECK_RESULT_REQUIRED"
INVALID_NOTE = "INVALID_NOTE"


@dataclass
class Violation:
    field: str
    code: str
    message: str
    value: object = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class NoteRules:
    """Effective note constraints of one step."""

    required: bool
    min_length: int
    max_length: int | None

    @classmethod
    def for_step(cls, step, default_min: int = 1, default_max: int | None = None) -> "NoteRules":
        min_length = step.min_note_length if step.min_note_length is not None else default_min
        max_length = step.max_note_length if step.max_note_length is not None else default_max
        return cls(bool(step.requires_note), max(int(min_length or 0), 1), max_length)

    def check(self, note: str | None, required: bool | None = None) -> list[Violation]:
        required = self.required if required is None else required
        if note is not None and not isinstance(note, str):
            return [Violation("note", INVALID_NOTE, "Notes must be text", type(note).__name__)]
        text = (note or "").strip()
        if not text:
            if required:
                return [Violation("note", NOTES_REQUIRED, "Notes are required for this step")]
            return []

        violations = []
        if required and len(text) < self.min_length:
            violations.append(Violation(
                "note", NOTE_TOO_SHORT,
                f"Notes must be at least {self.min_length} characters long",
                len(text),
            ))
        if self.max_length is not None and len(text) > self.max_length:
            violations.append(Violation(
                "note", NOTE_TOO_LONG,
                f"Notes cannot exceed {self.max_length} characters",
                len(text),
            ))
        return violations

    def to_dict(self) -> dict:
        return {
            "requires_note": self.required,
            "min_note_length": self.min_length,
            "max_note_length": self.max_length,
        }


def normalize_decision(value) -> str | None:
    """Map a submitted answer onto "Yes" / "No"; None when unrecognised."""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if not isinstance(value, str):
        return None
    cleaned = value.strip().lower()
    for answer in DECISION_ANSWERS:
        if cleaned == answer.lower():
            return answer
    return None


def validate_action(
    step,
    action_type: str,
    note: str | None = None,
    *,
    decision=None,
    auto_check_result=None,
    default_min: int = 1,
    default_max: int | None = None,
) -> list[Violation]:
    """Return every violation of ``action_type`` with this payload on ``step``.

    Role/action compatibility is the transition engine's concern and is not
    checked here.
    """
    rules = NoteRules.for_step(step, default_min, default_max)

    if action_type == "add_note":
        return rules.check(note, required=True)

    violations = rules.check(note)

    if action_type == "decide":
        if decision is None or (isinstance(decision, str) and not decision.strip()):
            violations.append(Violation("decision", DECISION_REQUIRED, "A Yes/No decision is required"))
        elif normalize_decision(decision) is None:
            violations.append(Violation(
                "decision", INVALID_DECISION,
                "Decision must be either 'Yes' or 'No'",
                decision,
            ))
    elif action_type == "auto_check" and not isinstance(auto_check_result, bool):
        violations.append(Violation(
            "auto_check_result", AUTO_CHECK_RESULT_REQUIRED,
            "Auto-check actions need a true/false result",
            auto_check_result,
        ))

    return violations
