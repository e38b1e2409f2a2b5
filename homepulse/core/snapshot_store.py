"""Bounded, append-only history of usage snapshots and user actions."""

import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from homepulse.core.entities import UsageSnapshot, UserActionEvent
from homepulse.core.errors import ValidationError

logger = logging.getLogger(__name__)


class SnapshotStore:
    """Holds the snapshot and action history of one user.

    Entries are never modified in place. When a buffer grows past its cap
    the older half is dropped by swapping in a new list, so a reader that
    grabbed ``snapshots`` earlier keeps a consistent view.
    """

    def __init__(self, max_snapshots: int = 10_000, max_actions: int = 5_000):
        self.max_snapshots = max_snapshots
        self.max_actions = max_actions
        self._snapshots: list[UsageSnapshot] = []
        self._actions: list[UserActionEvent] = []
        self._change_callback: Callable[[], None] | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def snapshots(self) -> tuple[UsageSnapshot, ...]:
        return tuple(self._snapshots)

    @property
    def actions(self) -> tuple[UserActionEvent, ...]:
        return tuple(self._actions)

    @property
    def snapshot_count(self) -> int:
        return len(self._snapshots)

    @property
    def action_count(self) -> int:
        return len(self._actions)

    def set_change_callback(self, callback: Callable[[], None] | None):
        """Called after every append or clear; used to schedule persistence."""
        self._change_callback = callback

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def append(self, snapshot: UsageSnapshot | Mapping[str, Any]) -> UsageSnapshot:
        snapshot = self._coerce(UsageSnapshot, snapshot, "snapshot")
        self._snapshots = self._bounded(self._snapshots + [snapshot], self.max_snapshots)
        logger.debug("Snapshot appended (%d stored)", len(self._snapshots))
        self._changed()
        return snapshot

    def append_action(self, event: UserActionEvent | Mapping[str, Any]) -> UserActionEvent:
        event = self._coerce(UserActionEvent, event, "action")
        self._actions = self._bounded(self._actions + [event], self.max_actions)
        self._changed()
        return event

    def extend(
        self,
        snapshots: Iterable[UsageSnapshot | Mapping[str, Any]],
        actions: Iterable[UserActionEvent | Mapping[str, Any]] = (),
    ) -> None:
        """Bulk append (one change notification); everything is validated first."""
        new_snapshots = [self._coerce(UsageSnapshot, s, "snapshot") for s in snapshots]
        new_actions = [self._coerce(UserActionEvent, a, "action") for a in actions]
        self._snapshots = self._bounded(self._snapshots + new_snapshots, self.max_snapshots)
        self._actions = self._bounded(self._actions + new_actions, self.max_actions)
        self._changed()

    def clear(self):
        self._snapshots = []
        self._actions = []
        self._changed()

    def replace(self, snapshots: Iterable[UsageSnapshot], actions: Iterable[UserActionEvent]):
        """Swap in a full history, e.g. after loading or importing."""
        self._snapshots = self._bounded(list(snapshots), self.max_snapshots)
        self._actions = self._bounded(list(actions), self.max_actions)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _bounded(items: list, cap: int) -> list:
        if len(items) <= cap:
            return items
        # Compact to half capacity, newest entries win
        return items[-(cap // 2):]

    @staticmethod
    def _coerce(model, value, what: str):
        if isinstance(value, model):
            return value
        try:
            return model.model_validate(value)
        except PydanticValidationError as err:
            raise ValidationError.from_pydantic(what, err) from err

    def _changed(self):
        if self._change_callback:
            self._change_callback()
