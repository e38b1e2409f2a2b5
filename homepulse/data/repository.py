"""Maps engine state to persisted records and back.

Writes go to every configured store. Reads prefer the remote store and fall
back to the local one per record kind. Store failures are logged and never
propagate: the engine keeps running on in-memory state.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from homepulse.analysis.anomaly_detector import AnomalyModel
from homepulse.analysis.behavior_analyzer import BehaviorModel
from homepulse.analysis.cost_analyzer import CostModel
from homepulse.analysis.pattern_analyzer import UsagePatternModel
from homepulse.config import EngineConfig
from homepulse.core.bundle import ModelBundle
from homepulse.core.entities import TrainingMetrics, UsageSnapshot, UserActionEvent
from homepulse.core.errors import PersistenceError
from homepulse.data.record_store import RecordKind, RecordStore

logger = logging.getLogger(__name__)

_MODEL_TYPES = {
    RecordKind.USAGE_MODEL: ("usage", UsagePatternModel),
    RecordKind.BEHAVIOR_MODEL: ("behavior", BehaviorModel),
    RecordKind.COST_MODEL: ("cost", CostModel),
    RecordKind.ANOMALY_MODEL: ("anomaly", AnomalyModel),
}

_SNAPSHOTS = TypeAdapter(list[UsageSnapshot])
_ACTIONS = TypeAdapter(list[UserActionEvent])


@dataclass
class LoadedState:
    """Everything read back for one user; missing parts are left empty."""

    config: EngineConfig | None = None
    snapshots: list[UsageSnapshot] = field(default_factory=list)
    actions: list[UserActionEvent] = field(default_factory=list)
    bundle: ModelBundle | None = None
    metrics: TrainingMetrics | None = None
    sources: dict[str, str] = field(default_factory=dict)


class EngineRepository:
    """Persistence for per-user engines on top of one or two record stores."""

    def __init__(self, local: RecordStore | None = None, remote: RecordStore | None = None):
        self.local = local
        self.remote = remote

    @property
    def stores(self) -> list[tuple[str, RecordStore]]:
        """(role, store) pairs, remote first."""
        return [(role, s) for role, s in (("remote", self.remote), ("local", self.local)) if s is not None]

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------

    async def save_models(self, user_id: str, bundle: ModelBundle, metrics: TrainingMetrics) -> bool:
        header = {
            "version": bundle.version,
            "trained_at": bundle.trained_at.isoformat(),
            "sample_count": bundle.sample_count,
            "action_count": bundle.action_count,
            "metrics": metrics.model_dump(mode="json"),
        }
        ok = True
        for kind, (attr, _) in _MODEL_TYPES.items():
            payload = dict(header, model=getattr(bundle, attr).model_dump(mode="json"))
            ok &= await self._write(user_id, kind, payload)
        return ok

    async def save_training_data(self, user_id: str, snapshots, actions) -> bool:
        usage = {"records": _SNAPSHOTS.dump_python(list(snapshots), mode="json")}
        events = {"records": _ACTIONS.dump_python(list(actions), mode="json")}
        ok = await self._write(user_id, RecordKind.DEVICE_USAGE, usage)
        ok &= await self._write(user_id, RecordKind.USER_ACTIONS, events)
        return ok

    async def save_settings(self, user_id: str, config: EngineConfig) -> bool:
        return await self._write(user_id, RecordKind.SETTINGS, config.model_dump(mode="json"))

    async def _write(self, user_id: str, kind: RecordKind, payload: dict[str, Any]) -> bool:
        ok = True
        for role, store in self.stores:
            try:
                await store.upsert(user_id, kind, payload)
            except PersistenceError as e:
                logger.warning("Could not save %s for %s to %s store: %s", kind.value, user_id, role, e)
                ok = False
        return ok

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self, user_id: str) -> LoadedState:
        state = LoadedState()

        raw = await self._read(user_id, RecordKind.SETTINGS, state)
        if raw is not None:
            state.config = self._parse(EngineConfig.model_validate, raw, RecordKind.SETTINGS)

        raw = await self._read(user_id, RecordKind.DEVICE_USAGE, state)
        if raw is not None:
            records = raw.get("records", [])
            state.snapshots = self._parse(_SNAPSHOTS.validate_python, records, RecordKind.DEVICE_USAGE) or []

        raw = await self._read(user_id, RecordKind.USER_ACTIONS, state)
        if raw is not None:
            records = raw.get("records", [])
            state.actions = self._parse(_ACTIONS.validate_python, records, RecordKind.USER_ACTIONS) or []

        state.bundle, state.metrics = await self._load_bundle(user_id, state)
        logger.info(
            "Loaded %s: %d snapshots, %d actions, model=%s",
            user_id,
            len(state.snapshots),
            len(state.actions),
            state.bundle.version if state.bundle else None,
        )
        return state

    async def _load_bundle(self, user_id: str, state: LoadedState):
        records = {}
        for kind in RecordKind.models():
            raw = await self._read(user_id, kind, state)
            if raw is not None:
                records[kind] = raw

        usage_record = records.get(RecordKind.USAGE_MODEL)
        if usage_record is None:
            return None, None

        version = usage_record.get("version")
        parts = {}
        for kind, (attr, model_type) in _MODEL_TYPES.items():
            record = records.get(kind)
            if record is None or record.get("version") != version:
                logger.warning("%s for %s is missing or stale, using an empty model", kind.value, user_id)
                continue
            parsed = self._parse(model_type.model_validate, record.get("model"), kind)
            if parsed is not None:
                parts[attr] = parsed

        if "usage" not in parts:
            return None, None

        metrics = self._parse(
            TrainingMetrics.model_validate, usage_record.get("metrics", {}), RecordKind.USAGE_MODEL
        )
        bundle = self._parse(
            ModelBundle.model_validate,
            {
                "version": version,
                "trained_at": usage_record.get("trained_at"),
                "sample_count": usage_record.get("sample_count", 0),
                "action_count": usage_record.get("action_count", 0),
                **parts,
            },
            RecordKind.USAGE_MODEL,
        )
        return bundle, metrics

    async def _read(self, user_id: str, kind: RecordKind, state: LoadedState) -> dict[str, Any] | None:
        for role, store in self.stores:
            try:
                payload = await store.get(user_id, kind)
            except PersistenceError as e:
                logger.warning("Could not load %s for %s from %s store: %s", kind.value, user_id, role, e)
                continue
            if payload is None:
                continue
            if not isinstance(payload, dict):
                logger.warning(
                    "Ignoring malformed %s record for %s from %s store: expected an object, got %s",
                    kind.value,
                    user_id,
                    role,
                    type(payload).__name__,
                )
                continue
            state.sources[kind.value] = role
            return payload
        return None

    @staticmethod
    def _parse(validate, raw, kind: RecordKind):
        try:
            return validate(raw)
        except PydanticValidationError as e:
            logger.warning("Ignoring malformed %s record: %d errors", kind.value, e.error_count())
            return None

    # ------------------------------------------------------------------
    # Deleting
    # ------------------------------------------------------------------

    async def delete_all(self, user_id: str) -> bool:
        ok = True
        for role, store in self.stores:
            try:
                await store.delete_all(user_id)
            except PersistenceError as e:
                logger.warning("Could not delete records of %s from %s store: %s", user_id, role, e)
                ok = False
        return ok
