"""Poll the Drone server for pending stages and schedule them on Nomad.

Each cycle requests one stage, claims it for this machine, compiles it into a
batch job and registers the job. Nothing survives a cycle except settings.
Running several pollers against the same server is safe: the server's
optimistic lock lets exactly one of them claim a given stage.
"""

from __future__ import annotations

import logging
import random
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum

from drone_runner_nomad.client.base import CoordinationClient, SchedulerClient
from drone_runner_nomad.client.drone import OptimisticLockError
from drone_runner_nomad.compiler import JobCompiler
from drone_runner_nomad.config import PollerSettings
from drone_runner_nomad.models import Filter, Job, Stage

logger = logging.getLogger(__name__)

DEFAULT_FILTER = Filter(kind="pipeline", type="docker")


class CycleCancelled(Exception):  # noqa: N818
    """A stop signal interrupted a remote call."""


class CycleOutcome(str, Enum):
    """How a single poll cycle ended."""

    NO_WORK = "no_work"
    CANCELLED = "cancelled"
    REQUEST_FAILED = "request_failed"
    LOCK_CONFLICT = "lock_conflict"
    ACCEPT_FAILED = "accept_failed"
    COMPILE_FAILED = "compile_failed"
    SUBMITTED = "submitted"
    SUBMIT_FAILED = "submit_failed"

    @property
    def is_failure(self) -> bool:
        return self in _FAILURES


_FAILURES = frozenset(
    {
        CycleOutcome.REQUEST_FAILED,
        CycleOutcome.ACCEPT_FAILED,
        CycleOutcome.COMPILE_FAILED,
        CycleOutcome.SUBMIT_FAILED,
    },
)


@dataclass(slots=True)
class CycleResult:
    outcome: CycleOutcome
    stage_id: int | None = None
    job_id: str | None = None
    eval_id: str | None = None


@dataclass(slots=True)
class PollerRunSummary:
    """Aggregate poller counters for CLI reporting."""

    cycles: int = 0
    submitted: int = 0
    no_work: int = 0
    cancelled: int = 0
    lock_conflicts: int = 0
    request_failures: int = 0
    accept_failures: int = 0
    compile_failures: int = 0
    submit_failures: int = 0

    def record(self, outcome: CycleOutcome) -> None:
        self.cycles += 1
        match outcome:
            case CycleOutcome.SUBMITTED:
                self.submitted += 1
            case CycleOutcome.NO_WORK:
                self.no_work += 1
            case CycleOutcome.CANCELLED:
                self.cancelled += 1
            case CycleOutcome.LOCK_CONFLICT:
                self.lock_conflicts += 1
            case CycleOutcome.REQUEST_FAILED:
                self.request_failures += 1
            case CycleOutcome.ACCEPT_FAILED:
                self.accept_failures += 1
            case CycleOutcome.COMPILE_FAILED:
                self.compile_failures += 1
            case CycleOutcome.SUBMIT_FAILED:
                self.submit_failures += 1


class Poller:
    """Drives the request → accept → compile → register cycle."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        drone: CoordinationClient,
        scheduler: SchedulerClient,
        compiler: JobCompiler,
        machine: str,
        settings: PollerSettings | None = None,
        stage_filter: Filter = DEFAULT_FILTER,
    ) -> None:
        self.drone = drone
        self.scheduler = scheduler
        self.compiler = compiler
        self.machine = machine
        self.settings = settings or PollerSettings()
        self.stage_filter = stage_filter
        self._random = random.Random()  # noqa: S311
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._in_remote_call = False
        self._consecutive_failures = 0

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def stop(self) -> None:
        """Ask the loop to exit after the current cycle."""

        if not self._stop_requested:
            logger.info("Poller stop requested", extra={"event": "poller_stopping"})
        self._stop_requested = True

    def run_once(self) -> CycleResult:
        """Run one poll cycle. Failures are logged and reported, never raised."""

        stage = self._request_stage()
        if isinstance(stage, CycleResult):
            return stage

        claimed = self._accept_stage(stage)
        if isinstance(claimed, CycleResult):
            return claimed

        job = self._compile_stage(claimed)
        if isinstance(job, CycleResult):
            return job
        return self._submit(claimed, job)

    def run_loop(self, *, max_cycles: int | None = None) -> PollerRunSummary:
        """Poll until a stop is requested or ``max_cycles`` cycles have run."""

        summary = PollerRunSummary()
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    break
                if max_cycles is not None and summary.cycles >= max_cycles:
                    break

                result = self.run_once()
                summary.record(result.outcome)

                if self._stop_requested:
                    continue
                delay = self._next_delay(result.outcome)
                if delay > 0:
                    self._sleep_with_stop(delay)

        logger.info(
            "Poller stopped after %d cycles (%d jobs submitted)",
            summary.cycles,
            summary.submitted,
            extra={"event": "poller_stopped", "signal": self._stop_signal_name},
        )
        return summary

    def _request_stage(self) -> Stage | CycleResult:
        logger.debug("Requesting pipeline from server", extra={"event": "poll_requested"})
        try:
            with self._cancellable():
                stage = self.drone.request(self.stage_filter)
        except CycleCancelled:
            logger.debug("No pipeline returned, request cancelled", extra={"event": "poll_no_work"})
            return CycleResult(outcome=CycleOutcome.CANCELLED)
        except Exception as error:  # noqa: BLE001
            logger.error(
                "Cannot request pipeline: %s",
                error,
                extra={"event": "poll_request_failed"},
            )
            return CycleResult(outcome=CycleOutcome.REQUEST_FAILED)

        if stage is None:
            logger.debug("No pipeline returned", extra={"event": "poll_no_work"})
            return CycleResult(outcome=CycleOutcome.NO_WORK)
        return stage

    def _accept_stage(self, stage: Stage) -> Stage | CycleResult:
        stage_fields = _stage_log_fields(stage)
        if self._stop_requested:
            logger.info(
                "Shutting down, leaving pipeline unclaimed",
                extra={"event": "stage_accept_skipped", **stage_fields},
            )
            return CycleResult(outcome=CycleOutcome.CANCELLED, stage_id=stage.id)

        logger.debug("Accepting pipeline", extra={"event": "stage_accepting", **stage_fields})
        stage.machine = self.machine
        try:
            with self._cancellable(precheck=False):
                claimed = self.drone.accept(stage)
        except OptimisticLockError:
            logger.debug(
                "Pipeline accepted by another runner",
                extra={"event": "stage_lock_conflict", **stage_fields},
            )
            return CycleResult(outcome=CycleOutcome.LOCK_CONFLICT, stage_id=stage.id)
        except CycleCancelled:
            # The server may have committed the claim before the call was cut.
            self._log_orphaned(stage, reason="accept interrupted, claim state unknown")
            return CycleResult(outcome=CycleOutcome.CANCELLED, stage_id=stage.id)
        except Exception as error:  # noqa: BLE001
            logger.error(
                "Cannot accept pipeline: %s",
                error,
                extra={"event": "stage_accept_failed", **stage_fields},
            )
            return CycleResult(outcome=CycleOutcome.ACCEPT_FAILED, stage_id=stage.id)

        logger.debug(
            "Pipeline accepted",
            extra={"event": "stage_accepted", "machine": self.machine, **stage_fields},
        )
        return claimed

    def _compile_stage(self, stage: Stage) -> Job | CycleResult:
        try:
            return self.compiler.compile(stage)
        except Exception as error:  # noqa: BLE001
            logger.error(
                "Cannot compile pipeline: %s",
                error,
                extra={"event": "job_compile_failed", **_stage_log_fields(stage)},
            )
            self._log_orphaned(stage, reason=f"compile failed: {error}")
            return CycleResult(outcome=CycleOutcome.COMPILE_FAILED, stage_id=stage.id)

    def _submit(self, stage: Stage, job: Job) -> CycleResult:
        stage_fields = _stage_log_fields(stage)
        logger.debug(
            "Creating nomad job",
            extra={"event": "job_creating", "job_id": job.id, **stage_fields},
        )
        try:
            with self._cancellable(precheck=False):
                eval_id = self.scheduler.register_job(job)
        except CycleCancelled:
            self._log_orphaned(stage, job, reason="job registration interrupted by shutdown")
            return CycleResult(outcome=CycleOutcome.CANCELLED, stage_id=stage.id, job_id=job.id)
        except Exception as error:  # noqa: BLE001
            logger.error(
                "Cannot create job: %s",
                error,
                extra={"event": "job_create_failed", "job_id": job.id, **stage_fields},
            )
            self._log_orphaned(stage, job, reason=str(error))
            return CycleResult(
                outcome=CycleOutcome.SUBMIT_FAILED,
                stage_id=stage.id,
                job_id=job.id,
            )

        logger.info(
            "Created nomad job %s",
            job.id,
            extra={"event": "job_created", "job_id": job.id, "eval_id": eval_id, **stage_fields},
        )
        return CycleResult(
            outcome=CycleOutcome.SUBMITTED,
            stage_id=stage.id,
            job_id=job.id,
            eval_id=eval_id,
        )

    def _log_orphaned(self, stage: Stage, job: Job | None = None, *, reason: str) -> None:
        # The claim is not released; the server owns reconciliation.
        logger.error(
            "Stage %s was accepted but never scheduled: %s",
            stage.id,
            reason,
            extra={
                "event": "stage_orphaned",
                "job_id": job.id if job is not None else None,
                **_stage_log_fields(stage),
            },
        )

    def _next_delay(self, outcome: CycleOutcome) -> float:
        if outcome.is_failure:
            self._consecutive_failures += 1
        else:
            self._consecutive_failures = 0

        delay = self.settings.cycle_delay_seconds
        base = self.settings.error_backoff_base_seconds
        if self._consecutive_failures and base > 0:
            backoff = self._compute_backoff_delay(failure_number=self._consecutive_failures)
            logger.debug(
                "Backing off after %d consecutive failures",
                self._consecutive_failures,
                extra={"event": "poll_backoff", "delay_seconds": round(backoff, 3)},
            )
            delay = max(delay, backoff)
        return delay

    def _compute_backoff_delay(self, *, failure_number: int) -> float:
        max_delay = min(
            self.settings.error_backoff_max_seconds,
            self.settings.error_backoff_base_seconds * (2 ** max(failure_number - 1, 0)),
        )
        return self._random.uniform(max_delay / 2, max_delay)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _cancellable(self, *, precheck: bool = True) -> Iterator[None]:
        if precheck and self._stop_requested:
            raise CycleCancelled
        self._in_remote_call = True
        try:
            yield
        finally:
            self._in_remote_call = False

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return

        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, *, signal_name: str) -> None:
        already_requested = self._stop_requested
        self._stop_requested = True
        self._stop_signal_name = signal_name
        if not already_requested:
            logger.info(
                "Received %s, terminating process",
                signal_name,
                extra={"event": "poller_stopping", "signal": signal_name},
            )
        if self._in_remote_call:
            self._in_remote_call = False
            raise CycleCancelled(signal_name)


def _stage_log_fields(stage: Stage) -> dict[str, object]:
    return {
        "stage_id": stage.id,
        "stage_number": stage.number,
        "stage_os": stage.os,
        "stage_arch": stage.arch,
        "build_id": stage.build_id,
    }
