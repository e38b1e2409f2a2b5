"""Per-user usage engine: history, training passes and queries.

The engine is synchronous and owns no I/O. The coordinator wraps it with
locking, persistence and scheduling.

State machine::

    UNINITIALIZED -> LOADING -> COLLECTING <-> TRAINABLE -> TRAINED <-> RETRAINING
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any, TypeVar

from homepulse.analysis.anomaly_detector import AnomalyDetector, AnomalyModel
from homepulse.analysis.behavior_analyzer import BehaviorAnalyzer, BehaviorModel
from homepulse.analysis.cost_analyzer import CostAnalyzer, CostModel
from homepulse.analysis.pattern_analyzer import PatternAnalyzer, UsagePatternModel
from homepulse.config import EngineConfig
from homepulse.core.bundle import ModelBundle, UserDataExport
from homepulse.core.entities import (
    HOURS_PER_DAY,
    ActionType,
    DeviceRecord,
    EngineState,
    TrainingMetrics,
    UsageSnapshot,
    UserActionEvent,
)
from homepulse.core.errors import ComputeError, InsufficientDataError, ValidationError
from homepulse.core.predictor import PredictionService
from homepulse.core.reports import (
    AnomalyReport,
    EnergyForecast,
    Insights,
    ModelMetrics,
    PredictionReport,
    RecommendationReport,
    TrainingProgress,
    TrainingResult,
)
from homepulse.core.snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOT_TRAINED_MESSAGE = "Still learning your usage patterns"


def _hour_key(moment: datetime) -> datetime:
    """Naive local wall-clock hour, so aware and naive timestamps compare."""
    if moment.tzinfo is not None:
        moment = moment.astimezone().replace(tzinfo=None)
    return moment.replace(minute=0, second=0, microsecond=0)


def default_predictions(devices: Sequence[DeviceRecord], target: datetime, message: str) -> PredictionReport:
    """Not-ready report: every device gets the low-confidence default."""
    return PredictionReport(
        ready=False,
        predictions=[PredictionService.default_prediction(d, target.hour) for d in devices],
        target_hour=target.hour,
        generated_at=target,
        message=message,
    )


class UsageEngine:
    """Learns one user's device usage patterns and answers queries about them."""

    def __init__(self, user_id: str, config: EngineConfig | None = None):
        self.user_id = user_id
        self.config = config or EngineConfig()
        self.store = SnapshotStore(self.config.max_snapshots, self.config.max_actions)
        self.metrics = TrainingMetrics()
        self.state = EngineState.UNINITIALIZED

        self._bundle: ModelBundle | None = None
        self._service: PredictionService | None = None
        # (device id, target hour) -> predicted active, scored by the next snapshot at that hour
        self._pending: dict[tuple[str, datetime], bool] = {}

        self.pattern_analyzer = PatternAnalyzer()
        self.behavior_analyzer = BehaviorAnalyzer()
        self.anomaly_detector = AnomalyDetector()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def bundle(self) -> ModelBundle | None:
        return self._bundle

    @property
    def is_trained(self) -> bool:
        return self._bundle is not None

    @property
    def days_collected(self) -> int:
        """Complete day patterns (24 snapshots each) in the history."""
        return self.store.snapshot_count // HOURS_PER_DAY

    @property
    def can_train(self) -> bool:
        return self.days_collected >= self.config.min_training_days

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def begin_loading(self):
        self.state = EngineState.LOADING

    def restore(
        self,
        snapshots: Sequence[UsageSnapshot] = (),
        actions: Sequence[UserActionEvent] = (),
        bundle: ModelBundle | None = None,
        metrics: TrainingMetrics | None = None,
    ):
        """Install previously persisted state without triggering persistence."""
        self.store.replace(snapshots, actions)
        self.metrics = metrics or TrainingMetrics()
        self._pending.clear()
        self._install(bundle)
        self._refresh_state()
        logger.info(
            "Restored engine for %s: %d snapshots, %d actions, trained=%s",
            self.user_id,
            self.store.snapshot_count,
            self.store.action_count,
            bundle is not None,
        )

    def update_config(self, config: EngineConfig):
        self.config = config
        self.store.max_snapshots = config.max_snapshots
        self.store.max_actions = config.max_actions
        if self._bundle is not None:
            self._service = PredictionService(self._bundle, config.price_per_kwh)
        self._refresh_state()

    def clear(self):
        """Forget all history, models and metrics."""
        self.store.replace((), ())
        self.metrics = TrainingMetrics()
        self._pending.clear()
        self._install(None)
        self._refresh_state()
        logger.info("Cleared engine data for %s", self.user_id)

    def _install(self, bundle: ModelBundle | None):
        # Single reference swap; readers holding the old service keep a consistent view
        self._service = PredictionService(bundle, self.config.price_per_kwh) if bundle else None
        self._bundle = bundle

    def _refresh_state(self):
        if self._bundle is not None:
            self.state = EngineState.TRAINED
        elif self.can_train:
            self.state = EngineState.TRAINABLE
        else:
            self.state = EngineState.COLLECTING

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def collect(self, devices: Sequence[DeviceRecord], timestamp: datetime | None = None) -> UsageSnapshot:
        snapshot = UsageSnapshot.capture(devices, timestamp or datetime.now())
        self._score_predictions(snapshot)
        self.store.append(snapshot)
        if self._bundle is None:
            self._refresh_state()
        return snapshot

    def add_snapshots(
        self,
        snapshots: Sequence[UsageSnapshot | Mapping[str, Any]],
        actions: Sequence[UserActionEvent | Mapping[str, Any]] = (),
    ):
        self.store.extend(snapshots, actions)
        if self._bundle is None:
            self._refresh_state()

    def record_action(
        self,
        device_id: str,
        action: ActionType,
        manual: bool = True,
        context: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> UserActionEvent:
        if action not in ("toggle_on", "toggle_off"):
            raise ValidationError("Invalid action", [f"action: unknown action '{action}'"])
        event = UserActionEvent.at(device_id, action, timestamp or datetime.now(), manual, context)
        return self.store.append_action(event)

    def _score_predictions(self, snapshot: UsageSnapshot):
        if not self._pending:
            return
        key_hour = _hour_key(snapshot.timestamp)
        observed = {d.device_id: d.is_active for d in snapshot.devices}
        for key in list(self._pending):
            device_id, target = key
            if target < key_hour:
                del self._pending[key]
            elif target == key_hour and device_id in observed:
                if self._pending.pop(key) == observed[device_id]:
                    self.metrics.correct_predictions += 1

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def training_progress(self) -> TrainingProgress:
        return TrainingProgress(
            current=self.days_collected,
            required=self.config.min_training_days,
            can_train=self.can_train,
            snapshot_count=self.store.snapshot_count,
            action_count=self.store.action_count,
            state=self.state,
        )

    def should_retrain(self, now: datetime | None = None) -> bool:
        if not self.config.auto_train or not self.can_train:
            return False
        if self._bundle is None or self.metrics.last_trained_at is None:
            return True
        now = now or datetime.now()
        last = self.metrics.last_trained_at
        if (last.tzinfo is None) != (now.tzinfo is None):
            last = last.replace(tzinfo=now.tzinfo)
        return now - last >= timedelta(hours=self.config.retrain_interval_hours)

    def train(self, now: datetime | None = None) -> TrainingResult:
        """Run all analyzers over the full history and swap in a new bundle.

        Raises:
            InsufficientDataError: fewer complete day patterns than required.
        """
        if not self.can_train:
            raise InsufficientDataError(self.days_collected, self.config.min_training_days)

        previous_state = self.state
        if self._bundle is not None:
            self.state = EngineState.RETRAINING

        started = time.perf_counter()
        snapshots = self.store.snapshots
        actions = self.store.actions
        failed: list[str] = []

        try:
            usage = self._run_analyzer(
                "pattern_analyzer",
                lambda: self.pattern_analyzer.analyze(snapshots),
                UsagePatternModel.empty,
                failed,
            )
            behavior = self._run_analyzer(
                "behavior_analyzer",
                lambda: self.behavior_analyzer.analyze(actions),
                BehaviorModel.empty,
                failed,
            )
            cost_analyzer = CostAnalyzer(self.config.price_per_kwh, self.config.off_peak_factor)
            cost = self._run_analyzer(
                "cost_analyzer",
                lambda: cost_analyzer.analyze(usage),
                lambda: CostModel.empty(self.config.price_per_kwh),
                failed,
            )
            anomaly = self._run_analyzer(
                "anomaly_detector",
                lambda: self.anomaly_detector.fit(snapshots),
                AnomalyModel.empty,
                failed,
            )
        except Exception:
            self.state = previous_state
            raise

        bundle = ModelBundle(
            trained_at=now or datetime.now(),
            sample_count=len(snapshots),
            action_count=len(actions),
            usage=usage,
            behavior=behavior,
            cost=cost,
            anomaly=anomaly,
        )
        elapsed = time.perf_counter() - started

        self._install(bundle)
        self.metrics = self.metrics.model_copy(
            update={
                "accuracy": bundle.accuracy,
                "last_trained_at": bundle.trained_at,
                "training_seconds": elapsed,
                "days_trained": self.days_collected,
            }
        )
        self._refresh_state()

        logger.info(
            "Trained %s on %d day patterns (%d snapshots, %d actions): pattern consistency %.2f in %.2fs",
            self.user_id,
            self.days_collected,
            len(snapshots),
            len(actions),
            bundle.accuracy,
            elapsed,
        )
        return TrainingResult(
            success=not failed,
            accuracy=bundle.accuracy,
            days_trained=self.days_collected,
            sample_count=len(snapshots),
            action_count=len(actions),
            training_seconds=elapsed,
            model_version=bundle.version,
            failed_analyzers=failed,
        )

    @staticmethod
    def _run_analyzer(name: str, run: Callable[[], T], fallback: Callable[[], T], failed: list[str]) -> T:
        """Run one analyzer; a crash yields its empty model instead of aborting the pass."""
        try:
            return run()
        except Exception as exc:
            error = ComputeError(name, exc)
            logger.exception("%s, using empty model", error)
            failed.append(name)
            return fallback()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def predict(
        self, devices: Sequence[DeviceRecord], horizon: int = 0, now: datetime | None = None
    ) -> PredictionReport:
        if horizon < 0:
            raise ValidationError("Invalid horizon", [f"horizon: must be >= 0, got {horizon}"])
        now = now or datetime.now()
        service = self._service
        if service is None:
            return default_predictions(devices, now + timedelta(hours=horizon), NOT_TRAINED_MESSAGE)

        report = service.predict(devices, horizon, now)
        self.metrics.predictions_made += 1
        target = _hour_key(now + timedelta(hours=horizon))
        for prediction in report.predictions:
            if prediction.method == "pattern":
                self._pending[(prediction.device_id, target)] = prediction.will_be_active
        return report

    def recommend(self, devices: Sequence[DeviceRecord], now: datetime | None = None) -> RecommendationReport:
        service = self._service
        if service is None:
            return RecommendationReport(ready=False, message=NOT_TRAINED_MESSAGE)
        return service.recommend(devices, now)

    def detect_anomalies(self, devices: Sequence[DeviceRecord], now: datetime | None = None) -> AnomalyReport:
        bundle = self._bundle
        total_power = sum(d.power for d in devices if d.is_on)
        if bundle is None:
            return AnomalyReport(ready=False, total_power=total_power, message=NOT_TRAINED_MESSAGE)

        now = now or datetime.now()
        anomalies = self.anomaly_detector.detect(bundle.anomaly, bundle.usage, devices, now.hour)
        return AnomalyReport(
            ready=True,
            has_anomaly=bool(anomalies),
            anomalies=anomalies,
            total_power=total_power,
            checked_at=now,
        )

    def forecast(
        self, devices: Sequence[DeviceRecord], hours: int = 12, now: datetime | None = None
    ) -> EnergyForecast:
        if hours < 1:
            raise ValidationError("Invalid forecast length", [f"hours: must be >= 1, got {hours}"])
        service = self._service
        if service is None:
            return EnergyForecast(ready=False, message=NOT_TRAINED_MESSAGE)
        return service.forecast(devices, hours, now)

    def model_metrics(self) -> ModelMetrics:
        made = self.metrics.predictions_made
        correct = self.metrics.correct_predictions
        return ModelMetrics(
            state=self.state,
            accuracy=self.metrics.accuracy,
            predictions_made=made,
            correct_predictions=correct,
            hit_rate=correct / made if made else None,
            last_trained_at=self.metrics.last_trained_at,
            days_collected=self.days_collected,
            snapshot_count=self.store.snapshot_count,
            action_count=self.store.action_count,
            model_version=self._bundle.version if self._bundle else None,
        )

    def insights(self, devices: Sequence[DeviceRecord], now: datetime | None = None) -> Insights:
        now = now or datetime.now()
        return Insights(
            ready=self.is_trained,
            state=self.state,
            accuracy=self.metrics.accuracy,
            snapshot_count=self.store.snapshot_count,
            action_count=self.store.action_count,
            predictions=self.predict(devices, 0, now),
            recommendations=self.recommend(devices, now),
            anomalies=self.detect_anomalies(devices, now),
        )

    # ------------------------------------------------------------------
    # Backup / restore
    # ------------------------------------------------------------------

    def export_data(self) -> UserDataExport:
        return UserDataExport(
            user_id=self.user_id,
            config=self.config,
            snapshots=list(self.store.snapshots),
            actions=list(self.store.actions),
            bundle=self._bundle,
            metrics=self.metrics.model_copy(),
        )

    def import_data(self, blob: Any) -> UserDataExport:
        """Replace this engine's state with a backup of the same user."""
        export = UserDataExport.parse(blob)
        if export.user_id != self.user_id:
            raise ValidationError(
                "Invalid export",
                [f"user_id: export belongs to '{export.user_id}', not '{self.user_id}'"],
            )
        self.update_config(export.config)
        self.restore(export.snapshots, export.actions, export.bundle, export.metrics)
        return export
