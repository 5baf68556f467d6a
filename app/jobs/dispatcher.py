"""Poller dispatcher interface."""

from abc import ABC, abstractmethod


class PollerDispatcher(ABC):
    """Runs one completion poller per job in the background."""

    @abstractmethod
    def spawn(self, job_id: str) -> None:
        """Start polling ``job_id``. Returns immediately; never blocks the caller."""
        ...

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop accepting work and cancel pollers still running."""
        ...

    @property
    @abstractmethod
    def active(self) -> int:
        """Number of pollers currently running."""
        ...
