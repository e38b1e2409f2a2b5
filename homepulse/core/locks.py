"""Named, process-wide operation locks with spin-wait acquisition."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from enum import Enum

from homepulse.config import LockConfig
from homepulse.core.errors import LockTimeoutError

logger = logging.getLogger(__name__)


class LockName(str, Enum):
    TRAINING = "training"
    DATA_COLLECTION = "data_collection"
    SIMULATION = "simulation"
    CLEANUP = "cleanup"


class OperationLocks:
    """One flag per named operation, shared by every user's engine.

    Acquisition polls the flag instead of queueing on an ``asyncio.Lock``,
    so a waiter gives up with ``LockTimeoutError`` after its timeout.
    """

    def __init__(self, config: LockConfig | None = None):
        self.config = config or LockConfig()
        self._held: dict[LockName, bool] = {name: False for name in LockName}

    def is_held(self, name: LockName) -> bool:
        return self._held[LockName(name)]

    def try_acquire(self, name: LockName) -> bool:
        name = LockName(name)
        if self._held[name]:
            return False
        self._held[name] = True
        return True

    async def acquire(self, name: LockName, timeout: float | None = None):
        name = LockName(name)
        if timeout is None:
            timeout = self.default_timeout(name)
        deadline = time.monotonic() + timeout
        while self._held[name]:
            if time.monotonic() >= deadline:
                logger.warning("Timed out waiting for %s lock after %.1fs", name.value, timeout)
                raise LockTimeoutError(name.value, timeout)
            await asyncio.sleep(self.config.poll_interval_seconds)
        self._held[name] = True
        logger.debug("Acquired %s lock", name.value)

    def release(self, name: LockName):
        name = LockName(name)
        self._held[name] = False
        logger.debug("Released %s lock", name.value)

    @asynccontextmanager
    async def hold(self, name: LockName, timeout: float | None = None):
        await self.acquire(name, timeout)
        try:
            yield
        finally:
            self.release(name)

    def default_timeout(self, name: LockName) -> float:
        if name == LockName.SIMULATION:
            return self.config.simulation_timeout_seconds
        return self.config.default_timeout_seconds
