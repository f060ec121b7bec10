"""
Core Bug Tracker
CoreBug model: a defect tracked against the product line as a whole.

A bug is later assessed for impact on one product type; assessment fans out
into one remediation Task per impacted product (see ``task_service``).
"""

import json
import uuid
from datetime import datetime, timezone

from bugtracker.models import db

# ── Constants ────────────────────────────────────────────────────────────────

BUG_SEVERITIES = ("critical", "major", "moderate", "minor", "none")

BUG_STATUSES = {"open", "in_progress", "resolved"}


class CoreBug(db.Model):
    """
    Core defect record.

    ``affected_versions_json`` comes from the issue tracker; the assessment
    fields are filled in by a reviewer and take precedence when present.
    """

    __tablename__ = "core_bugs"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    jira_key = db.Column(db.String(50), nullable=False, index=True)
    jira_link = db.Column(db.String(500), nullable=True)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    severity = db.Column(
        db.String(20), nullable=False, default="moderate",
        comment="critical | major | moderate | minor | none",
    )
    status = db.Column(db.String(20), nullable=False, default="open")
    found_in_build = db.Column(db.String(50), nullable=True)
    affected_versions_json = db.Column(db.Text, default="[]")

    # Assessment
    is_assessed = db.Column(db.Boolean, nullable=False, default=False)
    assessed_product_type = db.Column(
        db.String(10), nullable=True,
        comment="tm | irt, product type the assessment found impacted",
    )
    assessed_impacted_versions_json = db.Column(db.Text, nullable=True)
    assessed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    assessed_by = db.Column(db.String(100), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    tasks = db.relationship(
        "Task", backref="bug", lazy="select",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.CheckConstraint(
            "severity IN ('critical','major','moderate','minor','none')",
            name="ck_core_bug_severity",
        ),
    )

    @property
    def affected_versions(self) -> list[str]:
        try:
            return list(json.loads(self.affected_versions_json or "[]"))
        except (json.JSONDecodeError, TypeError):
            return []

    @property
    def versions_to_check(self) -> list[str]:
        """Assessed versions when the bug was assessed, else tracker versions."""
        if self.assessed_impacted_versions_json:
            try:
                return list(json.loads(self.assessed_impacted_versions_json))
            except (json.JSONDecodeError, TypeError):
                pass
        return self.affected_versions

    @property
    def is_major_or_critical(self) -> bool:
        return self.severity in ("major", "critical")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "jira_key": self.jira_key,
            "jira_link": self.jira_link,
            "title": self.title,
            "description": self.description,
            "severity": self.severity,
            "status": self.status,
            "affected_versions": self.affected_versions,
            "is_assessed": self.is_assessed,
            "assessed_product_type": self.assessed_product_type,
            "versions_to_check": self.versions_to_check,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<CoreBug {self.jira_key}>"
