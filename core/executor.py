from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional


class Executor(ABC):
    """Runs mutating calls against arr instances and download clients."""

    dry_run = False

    @abstractmethod
    async def run(self, description: str, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        ...


class LiveExecutor(Executor):
    async def run(self, description: str, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        return await fn(*args, **kwargs)


class SimulatingExecutor(Executor):
    dry_run = True

    def __init__(self, event_bus: Any = None, logger: Optional[logging.Logger] = None) -> None:
        self.event_bus = event_bus
        self.logger = logger or logging.getLogger(__name__)
        self.simulated: list = []

    async def run(self, description: str, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        self.simulated.append(description)
        self.logger.info(f"[DRY RUN] {description}")
        if self.event_bus is not None:
            await self.event_bus.emit('dry_run', action=description)
        return None


def make_executor(dry_run: bool, event_bus: Any = None) -> Executor:
    if dry_run:
        return SimulatingExecutor(event_bus)
    return LiveExecutor()
