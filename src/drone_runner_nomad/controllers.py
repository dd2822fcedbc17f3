"""Controllers for runner CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator, Mapping
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path

from drone_runner_nomad.client import DroneClient, NomadClient
from drone_runner_nomad.client.base import CoordinationClient, SchedulerClient
from drone_runner_nomad.compiler import JobCompiler
from drone_runner_nomad.config import Settings
from drone_runner_nomad.logging_setup import configure_logging
from drone_runner_nomad.models import Stage
from drone_runner_nomad.poller import Poller

DroneFactory = Callable[[Settings], CoordinationClient]
SchedulerFactory = Callable[[Settings], SchedulerClient]


@dataclass(slots=True)
class DaemonCommand:
    """CLI input for the polling daemon."""

    once: bool
    max_cycles: int | None
    json_logs: bool = True


@dataclass(slots=True)
class CompileCommand:
    """CLI input for a dry-run stage compilation."""

    stage_path: Path
    host_os: str | None = None


def default_drone_factory(settings: Settings) -> DroneClient:
    return DroneClient(
        addr=settings.server.addr,
        secret=settings.server.secret,
        skip_verify=settings.server.skip_verify,
        request_timeout_seconds=settings.poller.request_timeout_seconds,
        dump=settings.server.dump,
        dump_body=settings.server.dump_body,
    )


def default_scheduler_factory(settings: Settings) -> NomadClient:
    return NomadClient(settings.nomad)


class RunnerCliController:
    """Wires settings, clients and the poller for CLI operations."""

    def __init__(
        self,
        *,
        drone_factory: DroneFactory = default_drone_factory,
        scheduler_factory: SchedulerFactory = default_scheduler_factory,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.drone_factory = drone_factory
        self.scheduler_factory = scheduler_factory
        self.environ = environ

    def run_daemon(self, command: DaemonCommand) -> list[str]:
        settings = Settings.from_env(self.environ)
        configure_logging(
            debug=settings.debug,
            trace=settings.trace,
            json_output=command.json_logs,
        )
        with self._clients(settings) as (drone, scheduler):
            poller = Poller(
                drone=drone,
                scheduler=scheduler,
                compiler=JobCompiler(settings),
                machine=settings.machine,
                settings=settings.poller,
            )
            if command.once:
                result = poller.run_once()
                return [
                    "Cycle result: "
                    f"outcome={result.outcome.value} stage_id={result.stage_id} "
                    f"job_id={result.job_id} eval_id={result.eval_id}",
                ]
            summary = poller.run_loop(max_cycles=command.max_cycles)

        return [
            "Poller summary: "
            f"cycles={summary.cycles} submitted={summary.submitted} "
            f"no_work={summary.no_work} cancelled={summary.cancelled} "
            f"lock_conflicts={summary.lock_conflicts} "
            f"request_failures={summary.request_failures} "
            f"accept_failures={summary.accept_failures} "
            f"compile_failures={summary.compile_failures} "
            f"submit_failures={summary.submit_failures}",
        ]

    def compile_stage(self, command: CompileCommand) -> list[str]:
        """Compile a stage JSON file into the job payload that would be registered."""

        settings = Settings.from_env(self.environ)
        payload = json.loads(command.stage_path.read_text("utf-8"))
        stage = Stage.from_payload(payload)
        stage.machine = settings.machine
        job = JobCompiler(settings, host_os=command.host_os).compile(stage)
        return [json.dumps({"Job": job.to_api()}, indent=2, sort_keys=True)]

    def show_config(self) -> list[str]:
        settings = Settings.from_env(self.environ)
        return [f"{key}={value}" for key, value in settings.redacted().items()]

    @contextmanager
    def _clients(
        self,
        settings: Settings,
    ) -> Iterator[tuple[CoordinationClient, SchedulerClient]]:
        with ExitStack() as stack:
            drone = self.drone_factory(settings)
            if hasattr(drone, "close"):
                stack.callback(drone.close)
            scheduler = self.scheduler_factory(settings)
            if hasattr(scheduler, "close"):
                stack.callback(scheduler.close)
            yield drone, scheduler
