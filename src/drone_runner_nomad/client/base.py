"""Interfaces the poller consumes from the Drone server and the Nomad cluster."""

from __future__ import annotations

from typing import Protocol

from drone_runner_nomad.models import Filter, Job, Stage


class CoordinationClient(Protocol):
    """Protocol implemented by Drone server clients."""

    def request(self, stage_filter: Filter) -> Stage | None:
        """Block until a matching stage is pending; ``None`` means no work."""

    def accept(self, stage: Stage) -> Stage:
        """Claim the stage for ``stage.machine``.

        Raises ``OptimisticLockError`` when another runner already claimed it.
        """


class SchedulerClient(Protocol):
    """Protocol implemented by cluster scheduler clients."""

    def register_job(self, job: Job) -> str:
        """Register the job and return the scheduler-assigned evaluation id."""
