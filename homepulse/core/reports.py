"""Result shapes returned by engine queries.

Every query result carries a ``ready`` flag. Queries made before a model
exists return ``ready=False`` with empty payloads instead of raising, so a
caller can render a "still learning" state.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from homepulse.analysis.anomaly_detector import DetectedAnomaly
from homepulse.core.entities import DeviceStatus, EngineState, Priority

PredictionMethod = Literal["pattern", "default"]
Transition = Literal["turn_on", "turn_off"]


class HourSchedule(BaseModel):
    hour: int
    probability: float
    will_be_active: bool
    transition: Transition | None = None


class NextStateChange(BaseModel):
    hour: int
    hours_from_now: int
    status: DeviceStatus


class DevicePrediction(BaseModel):
    device_id: str
    device_name: str = ""
    target_hour: int
    probability: float = Field(ge=0, le=1)
    base_probability: float = Field(ge=0, le=1)
    correlation_adjustment: float = 0.0
    will_be_active: bool
    confidence: float = Field(ge=0, le=1)
    method: PredictionMethod
    samples: int = 0
    expected_power: float = 0.0
    typical_usage_hours: list[int] = Field(default_factory=list)
    daily_schedule: list[HourSchedule] = Field(default_factory=list)
    next_state_change: NextStateChange | None = None


class PredictionReport(BaseModel):
    ready: bool
    predictions: list[DevicePrediction] = Field(default_factory=list)
    target_hour: int | None = None
    generated_at: datetime | None = None
    model_version: str | None = None
    message: str = ""

    def for_device(self, device_id: str) -> DevicePrediction | None:
        return next((p for p in self.predictions if p.device_id == device_id), None)


class Recommendation(BaseModel):
    type: str
    priority: Priority
    title: str
    suggestion: str
    devices: list[str] = Field(default_factory=list)
    potential_savings: float = 0.0
    data: dict[str, Any] = Field(default_factory=dict)


class RecommendationReport(BaseModel):
    ready: bool
    recommendations: list[Recommendation] = Field(default_factory=list)
    message: str = ""


class AnomalyReport(BaseModel):
    ready: bool
    has_anomaly: bool = False
    anomalies: list[DetectedAnomaly] = Field(default_factory=list)
    total_power: float = 0.0
    checked_at: datetime | None = None
    message: str = ""


class ForecastHour(BaseModel):
    hour: int
    hour_label: str
    expected_power: float
    energy_kwh: float
    cost: float
    confidence: float
    source: Literal["history", "pattern"]


class EnergyForecast(BaseModel):
    ready: bool
    hours: list[ForecastHour] = Field(default_factory=list)
    total_energy_kwh: float = 0.0
    total_cost: float = 0.0
    confidence: float = 0.0
    message: str = ""


class TrainingProgress(BaseModel):
    """Day patterns collected so far vs. the training threshold."""

    current: int
    required: int
    can_train: bool
    snapshot_count: int
    action_count: int
    state: EngineState

    @property
    def fraction(self) -> float:
        return min(1.0, self.current / self.required) if self.required else 1.0


class TrainingResult(BaseModel):
    success: bool
    accuracy: float
    days_trained: int
    sample_count: int
    action_count: int
    training_seconds: float
    model_version: str
    failed_analyzers: list[str] = Field(default_factory=list)


class ModelMetrics(BaseModel):
    state: EngineState
    accuracy: float
    predictions_made: int
    correct_predictions: int
    hit_rate: float | None
    last_trained_at: datetime | None
    days_collected: int
    snapshot_count: int
    action_count: int
    model_version: str | None = None


class Insights(BaseModel):
    ready: bool
    state: EngineState
    accuracy: float
    snapshot_count: int
    action_count: int
    predictions: PredictionReport
    recommendations: RecommendationReport
    anomalies: AnomalyReport


class SimulationProgress(BaseModel):
    """One progress event of a fast-forward run."""

    day: int
    total_days: int
    snapshots_added: int
    actions_added: int
    done: bool = False
    stopped: bool = False
    trained: bool = False
    message: str = ""

    @property
    def percent(self) -> float:
        return 100.0 * self.day / self.total_days if self.total_days else 100.0
