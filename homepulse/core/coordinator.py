"""Engine coordinator: the single entry point used by UI and orchestration code.

Owns one ``UsageEngine`` per user id, scopes calls to the current user,
serializes training/collection/simulation/cleanup through process-wide
named locks and persists state as fire-and-forget background writes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Coroutine, Iterable, Mapping
from datetime import datetime, timedelta
from typing import Any

from homepulse.config import EngineConfig, HomePulseSettings, StorageConfig
from homepulse.core.bundle import UserDataExport
from homepulse.core.engine import UsageEngine, default_predictions
from homepulse.core.entities import (
    ActionType,
    DeviceRecord,
    EngineState,
    UsageSnapshot,
    UserActionEvent,
    parse_devices,
)
from homepulse.core.errors import EngineError, NoActiveUserError, ValidationError
from homepulse.core.locks import LockName, OperationLocks
from homepulse.core.reports import (
    AnomalyReport,
    EnergyForecast,
    Insights,
    ModelMetrics,
    PredictionReport,
    RecommendationReport,
    SimulationProgress,
    TrainingProgress,
    TrainingResult,
)
from homepulse.data.http_store import HttpRecordStore
from homepulse.data.record_store import JsonFileRecordStore, MemoryRecordStore
from homepulse.data.repository import EngineRepository
from homepulse.data.synthetic import SyntheticUsageGenerator

logger = logging.getLogger(__name__)

NO_USER_MESSAGE = "No user selected"

DeviceInput = Iterable[DeviceRecord | Mapping[str, Any]]


class EngineCoordinator:
    """Registry of per-user engines plus the public API surface."""

    def __init__(
        self,
        settings: HomePulseSettings | None = None,
        repository: EngineRepository | None = None,
    ):
        self.settings = settings or HomePulseSettings()
        self.repository = repository or self.build_repository(self.settings.storage)
        self.locks = OperationLocks(self.settings.locks)

        self._engines: dict[str, UsageEngine] = {}
        self._loading: dict[str, asyncio.Future] = {}
        self._current_user: str | None = None
        self._devices: list[DeviceRecord] = []

        self._pending_writes: set[asyncio.Task] = set()
        self._history_dirty: set[str] = set()
        self._collection_task: asyncio.Task | None = None
        self._stop_simulation = False

    @staticmethod
    def build_repository(storage: StorageConfig) -> EngineRepository:
        """Local JSON files (or memory) plus an optional remote REST store."""
        local = JsonFileRecordStore(storage.local_path) if storage.local_path else MemoryRecordStore()
        remote = None
        if storage.remote_url:
            remote = HttpRecordStore(
                storage.remote_url,
                storage.remote_api_key,
                storage.remote_timeout_seconds,
            )
        return EngineRepository(local=local, remote=remote)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    @property
    def current_user(self) -> str | None:
        return self._current_user

    @property
    def engine(self) -> UsageEngine | None:
        if self._current_user is None:
            return None
        return self._engines.get(self._current_user)

    def has_current_user(self) -> bool:
        return self.engine is not None

    def get_engine(self, user_id: str) -> UsageEngine | None:
        return self._engines.get(user_id)

    async def set_current_user(self, user_id: str) -> UsageEngine:
        """Select the active user, loading their persisted state on first use.

        The engine is registered only once its state is restored; concurrent
        calls for the same user share one load.
        """
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("Invalid user", ["user_id: must be a non-empty string"])

        engine = self._engines.get(user_id)
        if engine is None:
            loading = self._loading.get(user_id)
            if loading is None:
                loading = asyncio.ensure_future(self._load_engine(user_id))
                self._loading[user_id] = loading
            engine = await asyncio.shield(loading)

        if self._current_user != user_id:
            logger.info("Switched to user %s (%s)", user_id, engine.state.value)
        self._current_user = user_id
        return engine

    async def _load_engine(self, user_id: str) -> UsageEngine:
        engine = UsageEngine(user_id, self.settings.engine.model_copy())
        engine.begin_loading()
        try:
            loaded = await self.repository.load(user_id)
        finally:
            self._loading.pop(user_id, None)
        if loaded.config is not None:
            engine.update_config(loaded.config)
        engine.restore(loaded.snapshots, loaded.actions, loaded.bundle, loaded.metrics)
        engine.store.set_change_callback(lambda: self._history_changed(user_id))
        self._engines[user_id] = engine
        return engine

    def _require_engine(self) -> UsageEngine:
        engine = self.engine
        if engine is None:
            raise NoActiveUserError()
        return engine

    # ------------------------------------------------------------------
    # Ingestion and training
    # ------------------------------------------------------------------

    async def collect(self, devices: DeviceInput, timestamp: datetime | None = None) -> UsageSnapshot:
        """Append one snapshot of ``devices``; retrains when due."""
        records = parse_devices(devices)
        engine = self._require_engine()

        async with self.locks.hold(LockName.DATA_COLLECTION):
            snapshot = engine.collect(records, timestamp)
        logger.debug(
            "Collected snapshot for %s: %.0fW, %d active",
            engine.user_id,
            snapshot.total_power_watts,
            snapshot.active_device_count,
        )

        if engine.should_retrain(snapshot.timestamp):
            await self._auto_train(snapshot.timestamp)
        return snapshot

    async def record_action(
        self,
        device_id: str,
        action: ActionType,
        manual: bool = True,
        context: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> UserActionEvent:
        engine = self._require_engine()
        return engine.record_action(device_id, action, manual, context, timestamp)

    async def train(self, now: datetime | None = None) -> TrainingResult:
        """Force a training pass.

        Args:
            now: Training time recorded in the bundle and metrics, defaults
                to the local clock.

        Raises:
            InsufficientDataError: not enough complete day patterns yet.
            LockTimeoutError: another training pass held the lock too long.
        """
        engine = self._require_engine()
        async with self.locks.hold(LockName.TRAINING):
            result = engine.train(now)
        self._schedule(self.repository.save_models(engine.user_id, engine.bundle, engine.metrics.model_copy()))
        return result

    async def _auto_train(self, now: datetime | None = None):
        try:
            await self.train(now)
        except EngineError as e:
            logger.warning("Automatic retraining skipped: %s", e)

    def get_training_progress(self) -> TrainingProgress:
        engine = self.engine
        if engine is None:
            return TrainingProgress(
                current=0,
                required=self.settings.engine.min_training_days,
                can_train=False,
                snapshot_count=0,
                action_count=0,
                state=EngineState.UNINITIALIZED,
            )
        return engine.training_progress()

    async def update_config(self, **changes: Any) -> EngineConfig:
        """Change the current user's engine settings and persist them."""
        engine = self._require_engine()
        try:
            config = EngineConfig.model_validate({**engine.config.model_dump(), **changes})
        except ValueError as e:
            raise ValidationError("Invalid settings", [str(e)]) from e
        engine.update_config(config)
        self._schedule(self.repository.save_settings(engine.user_id, config))
        return config

    # ------------------------------------------------------------------
    # Queries (never raise for "not ready")
    # ------------------------------------------------------------------

    def predict(self, devices: DeviceInput, horizon: int = 0, now: datetime | None = None) -> PredictionReport:
        records = parse_devices(devices)
        engine = self.engine
        if engine is None:
            target = (now or datetime.now()) + timedelta(hours=horizon)
            return default_predictions(records, target, NO_USER_MESSAGE)
        return engine.predict(records, horizon, now)

    def recommend(self, devices: DeviceInput, now: datetime | None = None) -> RecommendationReport:
        records = parse_devices(devices)
        engine = self.engine
        if engine is None:
            return RecommendationReport(ready=False, message=NO_USER_MESSAGE)
        return engine.recommend(records, now)

    def detect_anomalies(self, devices: DeviceInput, now: datetime | None = None) -> AnomalyReport:
        records = parse_devices(devices)
        engine = self.engine
        if engine is None:
            return AnomalyReport(ready=False, message=NO_USER_MESSAGE)
        return engine.detect_anomalies(records, now)

    def forecast(self, devices: DeviceInput, hours: int = 12, now: datetime | None = None) -> EnergyForecast:
        records = parse_devices(devices)
        engine = self.engine
        if engine is None:
            return EnergyForecast(ready=False, message=NO_USER_MESSAGE)
        return engine.forecast(records, hours, now)

    def get_model_metrics(self) -> ModelMetrics | None:
        engine = self.engine
        return engine.model_metrics() if engine else None

    def get_insights(self, devices: DeviceInput, now: datetime | None = None) -> Insights | None:
        records = parse_devices(devices)
        engine = self.engine
        return engine.insights(records, now) if engine else None

    # ------------------------------------------------------------------
    # Backup, restore and wipe
    # ------------------------------------------------------------------

    def export_user_data(self) -> dict[str, Any]:
        engine = self._require_engine()
        return engine.export_data().model_dump(mode="json")

    async def import_user_data(self, blob: UserDataExport | Mapping[str, Any] | str) -> None:
        engine = self._require_engine()
        export = engine.import_data(blob)
        logger.info("Imported %d snapshots for %s", len(export.snapshots), engine.user_id)

        self._schedule(self.repository.save_settings(engine.user_id, engine.config))
        self._schedule(
            self.repository.save_training_data(engine.user_id, engine.store.snapshots, engine.store.actions)
        )
        if engine.bundle is not None:
            self._schedule(
                self.repository.save_models(engine.user_id, engine.bundle, engine.metrics.model_copy())
            )

    async def clear_user_data(self) -> None:
        """Irreversibly wipe the current user's history, models and metrics."""
        engine = self._require_engine()
        async with self.locks.hold(LockName.CLEANUP):
            # Let queued writes land first so none of them resurrects the data
            await self.flush()
            engine.clear()
            self._history_dirty.discard(engine.user_id)
            await self.repository.delete_all(engine.user_id)
        logger.info("Cleared all data for %s", engine.user_id)

    # ------------------------------------------------------------------
    # Synthetic fast-forward
    # ------------------------------------------------------------------

    async def fast_forward(
        self,
        days: int,
        devices: DeviceInput | None = None,
        seed: int | None = None,
        start: datetime | None = None,
    ) -> AsyncIterator[SimulationProgress]:
        """Generate ``days`` of synthetic history, one progress event per day.

        Holds the simulation lock for the whole run. ``stop_simulation()``
        takes effect at the start of the next day. Trains at the end when the
        threshold is met.
        """
        if days < 1:
            raise ValidationError("Invalid simulation", [f"days: must be >= 1, got {days}"])
        engine = self._require_engine()
        records = parse_devices(devices) if devices is not None else list(self._devices)
        if not records:
            raise ValidationError("Invalid simulation", ["devices: no devices to simulate"])

        await self.locks.acquire(LockName.SIMULATION)
        self._stop_simulation = False
        try:
            generator = SyntheticUsageGenerator(records, seed)
            start = start or self._simulation_start(engine, days)
            snapshots_added = actions_added = 0

            for index in range(days):
                if self._stop_simulation:
                    logger.info("Simulation stopped after %d of %d days", index, days)
                    yield SimulationProgress(
                        day=index,
                        total_days=days,
                        snapshots_added=snapshots_added,
                        actions_added=actions_added,
                        done=True,
                        stopped=True,
                        message="Stopped",
                    )
                    return

                day = generator.day(start + timedelta(days=index))
                engine.add_snapshots(day.snapshots, day.actions)
                snapshots_added += len(day.snapshots)
                actions_added += len(day.actions)
                yield SimulationProgress(
                    day=index + 1,
                    total_days=days,
                    snapshots_added=snapshots_added,
                    actions_added=actions_added,
                    message=f"Simulated {day.start:%Y-%m-%d}",
                )
                await asyncio.sleep(0)

            trained = False
            if engine.can_train:
                await self._auto_train()
                trained = engine.is_trained
            yield SimulationProgress(
                day=days,
                total_days=days,
                snapshots_added=snapshots_added,
                actions_added=actions_added,
                done=True,
                trained=trained,
                message="Complete",
            )
        finally:
            self.locks.release(LockName.SIMULATION)

    def stop_simulation(self):
        self._stop_simulation = True

    @staticmethod
    def _simulation_start(engine: UsageEngine, days: int) -> datetime:
        snapshots = engine.store.snapshots
        if snapshots:
            return snapshots[-1].timestamp.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
        today = datetime.now().replace(hour=0, minute=0, second=0, microsecond=0)
        return today - timedelta(days=days)

    # ------------------------------------------------------------------
    # Background collection
    # ------------------------------------------------------------------

    def update_devices(self, devices: DeviceInput):
        """Set the inventory sampled by background collection."""
        self._devices = parse_devices(devices)

    @property
    def is_collecting(self) -> bool:
        return self._collection_task is not None and not self._collection_task.done()

    def start_background_collection(self):
        if not self.settings.collection.enabled:
            logger.debug("Background collection is disabled")
            return
        if self.is_collecting:
            return
        self._collection_task = asyncio.get_running_loop().create_task(self._collection_loop())
        logger.info("Background collection every %.0fs", self.settings.collection.interval_seconds)

    async def stop_background_collection(self):
        task, self._collection_task = self._collection_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def collect_tick(self) -> bool:
        """One background sample; skipped (not queued) while collection is busy."""
        if self.engine is None or not self._devices:
            return False
        if self.locks.is_held(LockName.DATA_COLLECTION):
            logger.debug("Background collection skipped, previous run still active")
            return False
        await self.collect(self._devices)
        return True

    async def _collection_loop(self):
        while True:
            await asyncio.sleep(self.settings.collection.interval_seconds)
            try:
                await self.collect_tick()
            except EngineError as e:
                logger.warning("Background collection failed: %s", e)

    # ------------------------------------------------------------------
    # Persistence scheduling
    # ------------------------------------------------------------------

    def _history_changed(self, user_id: str):
        # Coalesce bursts of appends into one write of the latest history
        if user_id in self._history_dirty:
            return
        self._history_dirty.add(user_id)
        self._schedule(self._save_history(user_id))

    async def _save_history(self, user_id: str):
        await asyncio.sleep(0)
        if user_id not in self._history_dirty:
            return
        self._history_dirty.discard(user_id)
        engine = self._engines.get(user_id)
        if engine is not None:
            await self.repository.save_training_data(user_id, engine.store.snapshots, engine.store.actions)

    def _schedule(self, coro: Coroutine[Any, Any, Any]):
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.debug("No running event loop, write not scheduled")
            return
        self._pending_writes.add(task)
        task.add_done_callback(self._write_done)

    def _write_done(self, task: asyncio.Task):
        self._pending_writes.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background write failed", exc_info=task.exception())

    async def flush(self):
        """Wait until every scheduled write has finished."""
        while self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    async def close(self):
        self.stop_simulation()
        await self.stop_background_collection()
        await self.flush()
