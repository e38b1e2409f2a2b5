"""Versioned model bundle and the user backup format."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from homepulse.analysis.anomaly_detector import AnomalyModel
from homepulse.analysis.behavior_analyzer import BehaviorModel
from homepulse.analysis.cost_analyzer import CostModel
from homepulse.analysis.pattern_analyzer import UsagePatternModel
from homepulse.config import EngineConfig
from homepulse.core.entities import TrainingMetrics, UsageSnapshot, UserActionEvent
from homepulse.core.errors import ValidationError

EXPORT_FORMAT_VERSION = 1


def _new_version() -> str:
    return uuid.uuid4().hex[:12]


class ModelBundle(BaseModel):
    """Immutable output of one training pass.

    A retrain builds a new bundle next to the old one and the engine swaps
    the reference in a single assignment.
    """

    model_config = ConfigDict(frozen=True)

    version: str = Field(default_factory=_new_version)
    trained_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    sample_count: int = 0
    action_count: int = 0
    usage: UsagePatternModel = Field(default_factory=UsagePatternModel.empty)
    behavior: BehaviorModel = Field(default_factory=BehaviorModel.empty)
    cost: CostModel = Field(default_factory=CostModel.empty)
    anomaly: AnomalyModel = Field(default_factory=AnomalyModel.empty)

    @property
    def accuracy(self) -> float:
        return self.usage.accuracy


class UserDataExport(BaseModel):
    """Full-fidelity backup of one user's engine state."""

    format_version: int = EXPORT_FORMAT_VERSION
    user_id: str
    exported_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    config: EngineConfig = Field(default_factory=EngineConfig)
    snapshots: list[UsageSnapshot] = Field(default_factory=list)
    actions: list[UserActionEvent] = Field(default_factory=list)
    bundle: ModelBundle | None = None
    metrics: TrainingMetrics = Field(default_factory=TrainingMetrics)

    @classmethod
    def parse(cls, blob: Any) -> UserDataExport:
        """Accept a dict, a JSON string or an existing export."""
        if isinstance(blob, cls):
            return blob
        try:
            if isinstance(blob, (str, bytes)):
                export = cls.model_validate_json(blob)
            else:
                export = cls.model_validate(blob)
        except PydanticValidationError as err:
            raise ValidationError.from_pydantic("export", err) from err
        if export.format_version > EXPORT_FORMAT_VERSION:
            raise ValidationError(
                "Invalid export",
                [f"format_version: unsupported version {export.format_version}"],
            )
        return export
