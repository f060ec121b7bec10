"""
Core Bug Tracker
Product domain models.

Models:
    - TrialManager:                   a Trial Manager deployment for one client
    - InteractiveResponseTechnology:  an IRT system for one study

Both are plain records consumed by the workflow engine only as the target of a
remediation Task.  A Task points at exactly one of them through ``ProductRef``.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from bugtracker.models import db


def _uuid() -> str:
    return str(uuid.uuid4())


# ── Product reference (tagged variant) ───────────────────────────────────────


class ProductType(str, Enum):
    TRIAL_MANAGER = "tm"
    IRT = "irt"


@dataclass(frozen=True)
class ProductRef:
    """Reference to the single product a Task targets: TM(id) or IRT(id)."""

    kind: ProductType
    product_id: str

    @classmethod
    def tm(cls, product_id: str) -> "ProductRef":
        return cls(ProductType.TRIAL_MANAGER, str(product_id))

    @classmethod
    def irt(cls, product_id: str) -> "ProductRef":
        return cls(ProductType.IRT, str(product_id))

    @classmethod
    def parse(cls, kind: str, product_id: str) -> "ProductRef":
        """Build from wire values; raises ValueError on an unknown kind."""
        return cls(ProductType((kind or "").strip().lower()), str(product_id))

    @property
    def model(self):
        return TrialManager if self.kind is ProductType.TRIAL_MANAGER else InteractiveResponseTechnology

    def to_dict(self) -> dict:
        return {"product_type": self.kind.value, "product_id": self.product_id}


# ── Products ─────────────────────────────────────────────────────────────────


class TrialManager(db.Model):
    """A Trial Manager deployment; ``version`` drives auto-check version rules."""

    __tablename__ = "trial_managers"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    client_name = db.Column(db.String(200), default="")
    protocol = db.Column(db.String(100), nullable=False)
    version = db.Column(db.String(30), nullable=False)
    jira_key = db.Column(db.String(50), nullable=True)
    web_link = db.Column(db.String(500), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def product_ref(self) -> ProductRef:
        return ProductRef.tm(self.id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_type": ProductType.TRIAL_MANAGER.value,
            "client_name": self.client_name,
            "protocol": self.protocol,
            "version": self.version,
            "jira_key": self.jira_key,
            "web_link": self.web_link,
        }

    def __repr__(self):
        return f"<TrialManager {self.protocol} v{self.version}>"


class InteractiveResponseTechnology(db.Model):
    """An IRT system attached to a study."""

    __tablename__ = "irt_systems"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    study_name = db.Column(db.String(200), default="")
    protocol = db.Column(db.String(100), nullable=False)
    version = db.Column(db.String(30), nullable=False)
    jira_key = db.Column(db.String(50), nullable=True)
    web_link = db.Column(db.String(500), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def product_ref(self) -> ProductRef:
        return ProductRef.irt(self.id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_type": ProductType.IRT.value,
            "study_name": self.study_name,
            "protocol": self.protocol,
            "version": self.version,
            "jira_key": self.jira_key,
            "web_link": self.web_link,
        }

    def __repr__(self):
        return f"<InteractiveResponseTechnology {self.protocol} v{self.version}>"
