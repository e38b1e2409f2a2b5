"""Core entities and record types for the usage-pattern engine."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from homepulse.core.errors import ValidationError

HOURS_PER_DAY = 24
HOURS = tuple(range(HOURS_PER_DAY))
WEEKEND_DAYS = (5, 6)  # Saturday, Sunday (datetime.weekday())

DeviceStatus = Literal["on", "off"]
ActionType = Literal["toggle_on", "toggle_off"]
Priority = Literal["high", "medium", "low"]

Probability = Annotated[float, Field(ge=0.0, le=1.0)]
HourlyProbabilities = Annotated[list[Probability], Field(min_length=24, max_length=24)]
HourlyCounts = Annotated[list[int], Field(min_length=24, max_length=24)]
HourlyValues = Annotated[list[float], Field(min_length=24, max_length=24)]


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    COLLECTING = "collecting"
    TRAINABLE = "trainable"
    TRAINED = "trained"
    RETRAINING = "retraining"


class DeviceRecord(BaseModel):
    """One device as handed in by the inventory or the synthetic generator."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str
    type: str
    status: DeviceStatus
    normal_usage: float = Field(ge=0)
    room: str = ""
    current_power: float | None = Field(default=None, ge=0)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @property
    def is_on(self) -> bool:
        return self.status == "on"

    @property
    def power(self) -> float:
        """Current draw if reported, otherwise the rated usage."""
        return self.current_power if self.current_power is not None else self.normal_usage


_DEVICE_LIST = TypeAdapter(list[DeviceRecord])


def parse_devices(devices: Iterable[DeviceRecord | Mapping[str, Any]]) -> list[DeviceRecord]:
    """Validate a device inventory at the boundary.

    Raises ``ValidationError`` listing every missing or invalid field, and
    rejects inventories that contain the same device id twice.
    """
    if devices is None or isinstance(devices, (str, bytes, Mapping)):
        raise ValidationError("Invalid devices", ["devices: expected a list of device records"])

    raw = [d.model_dump() if isinstance(d, DeviceRecord) else d for d in devices]
    try:
        parsed = _DEVICE_LIST.validate_python(raw)
    except PydanticValidationError as err:
        raise ValidationError.from_pydantic("devices", err) from err

    seen: set[str] = set()
    duplicates = []
    for device in parsed:
        if device.id in seen:
            duplicates.append(f"devices: duplicate id '{device.id}'")
        seen.add(device.id)
    if duplicates:
        raise ValidationError("Invalid devices", duplicates)
    return parsed


class DeviceSnapshot(BaseModel):
    """State of one device at one observation instant."""

    model_config = ConfigDict(frozen=True)

    device_id: str = Field(min_length=1)
    device_type: str = ""
    room: str = ""
    status: DeviceStatus
    power_watts: float = Field(default=0.0, ge=0)

    @property
    def is_active(self) -> bool:
        return self.status == "on"


class UsageSnapshot(BaseModel):
    """All devices at one observation instant. Never mutated once recorded."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    hour_of_day: int = Field(ge=0, le=23)
    day_of_week: int = Field(ge=0, le=6)
    devices: tuple[DeviceSnapshot, ...] = ()
    total_power_watts: float = Field(default=0.0, ge=0)
    active_device_count: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _unique_devices(self) -> UsageSnapshot:
        ids = [d.device_id for d in self.devices]
        if len(ids) != len(set(ids)):
            raise ValueError("duplicate device_id in snapshot")
        return self

    @property
    def is_weekend(self) -> bool:
        return self.day_of_week in WEEKEND_DAYS

    @classmethod
    def capture(cls, devices: Iterable[DeviceRecord], timestamp: datetime) -> UsageSnapshot:
        """Build a normalized snapshot from validated device records."""
        entries = tuple(
            DeviceSnapshot(
                device_id=d.id,
                device_type=d.type,
                room=d.room,
                status=d.status,
                power_watts=d.power,
            )
            for d in devices
        )
        active = [e for e in entries if e.is_active]
        return cls(
            timestamp=timestamp,
            hour_of_day=timestamp.hour,
            day_of_week=timestamp.weekday(),
            devices=entries,
            total_power_watts=sum(e.power_watts for e in active),
            active_device_count=len(active),
        )


class UserActionEvent(BaseModel):
    """One manual or automated toggle of a device."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    device_id: str = Field(min_length=1)
    action: ActionType
    hour_of_day: int = Field(ge=0, le=23)
    day_of_week: int = Field(ge=0, le=6)
    is_manual: bool = True
    context: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def at(
        cls,
        device_id: str,
        action: ActionType,
        timestamp: datetime,
        manual: bool = True,
        context: dict[str, Any] | None = None,
    ) -> UserActionEvent:
        return cls(
            timestamp=timestamp,
            device_id=device_id,
            action=action,
            hour_of_day=timestamp.hour,
            day_of_week=timestamp.weekday(),
            is_manual=manual,
            context=context or {},
        )


class TrainingMetrics(BaseModel):
    """Training and prediction bookkeeping for one engine.

    ``accuracy`` is pattern consistency, not held-out prediction accuracy:
    there is no labelled test set, so consistent hourly probabilities are
    used as the proxy for how predictable a household is.
    """

    accuracy: float = Field(default=0.0, ge=0, le=1)
    last_trained_at: datetime | None = None
    predictions_made: int = 0
    correct_predictions: int = 0
    training_seconds: float = 0.0
    days_trained: int = 0
