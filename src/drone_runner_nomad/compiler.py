"""Translate a claimed pipeline stage into a Nomad batch job."""

from __future__ import annotations

import secrets
import string
import sys
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from drone_runner_nomad.config import Settings
from drone_runner_nomad.models import (
    Constraint,
    Job,
    Resources,
    RestartPolicy,
    Stage,
    Task,
    TaskGroup,
)

JOB_NAME_SUFFIX_LENGTH = 12
_JOB_NAME_ALPHABET = string.ascii_letters + string.digits

DOCKER_SOCKET_VOLUME = "/var/run/docker.sock:/var/run/docker.sock"
DOCKER_PIPE_VOLUME = "////./pipe/docker_engine:////./pipe/docker_engine"

# Nomad running directly on a macOS host reports darwin even though the
# containers run inside a linux VM.
HOST_OS_WITHOUT_PLATFORM_CONSTRAINTS = frozenset({"darwin"})

KERNEL_ATTRIBUTE = "${attr.kernel.name}"
ARCH_ATTRIBUTE = "${attr.cpu.arch}"

TASK_GROUP_NAME = "pipeline"
TASK_NAME = "stage"
TASK_DRIVER = "docker"


def random_job_name(prefix: str) -> str:
    suffix = "".join(secrets.choice(_JOB_NAME_ALPHABET) for _ in range(JOB_NAME_SUFFIX_LENGTH))
    return f"{prefix}{suffix}"


def format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%d %H:%M:%S %z %Z")


def format_unix_timestamp(seconds: int) -> str:
    """Format epoch seconds, falling back to the raw number outside datetime's range."""

    try:
        return format_timestamp(datetime.fromtimestamp(seconds, UTC))
    except (OverflowError, ValueError, OSError):
        return str(seconds)


def is_windows_os(value: str) -> bool:
    return value.strip().lower() == "windows"


def meta_attribute(key: str) -> str:
    return f"${{meta.{key}}}"


class JobCompiler:
    """Builds the Nomad job for a stage from static runner settings.

    The compiler does no I/O. Everything except the job name and the
    scheduled timestamp is a function of the stage and the settings; both of
    those come from injectable collaborators.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        name_generator: Callable[[str], str] = random_job_name,
        host_os: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self.name_generator = name_generator
        self.host_os = sys.platform if host_os is None else host_os
        self.clock = clock or (lambda: datetime.now(UTC))

    def compile(self, stage: Stage) -> Job:
        name = self.name_generator(self.settings.job.prefix)
        job = Job(
            id=name,
            name=name,
            type="batch",
            datacenters=tuple(self.settings.job.datacenters),
            namespace=self.settings.job.namespace or None,
            region=self.settings.job.region or None,
            task_groups=[
                TaskGroup(
                    name=TASK_GROUP_NAME,
                    tasks=[self._build_task(stage)],
                    restart_policy=RestartPolicy(mode="fail"),
                ),
            ],
            constraints=self._build_constraints(stage),
            meta=self._build_meta(stage),
        )
        return job

    @property
    def platform_constraints_enabled(self) -> bool:
        return self.host_os not in HOST_OS_WITHOUT_PLATFORM_CONSTRAINTS

    def _build_task(self, stage: Stage) -> Task:
        image = self.settings.image
        config: dict[str, Any] = {
            "image": image.name,
            "force_pull": image.pull,
            "volumes": [DOCKER_PIPE_VOLUME if is_windows_os(stage.os) else DOCKER_SOCKET_VOLUME],
        }
        if image.entrypoint:
            config["entrypoint"] = list(image.entrypoint)
        if image.command:
            config["command"] = " ".join(image.command)
        if image.args:
            config["args"] = list(image.args)

        resources = Resources()
        if self.settings.task.compute:
            resources.cpu = self.settings.task.compute
        if self.settings.task.memory:
            resources.memory_mb = self.settings.task.memory

        return Task(
            name=TASK_NAME,
            driver=TASK_DRIVER,
            env=dict(self.settings.environ),
            resources=resources,
            config=config,
        )

    def _build_constraints(self, stage: Stage) -> list[Constraint]:
        constraints: list[Constraint] = []
        if self.platform_constraints_enabled:
            constraints.append(Constraint(l_target=KERNEL_ATTRIBUTE, r_target=stage.os))
            constraints.append(Constraint(l_target=ARCH_ATTRIBUTE, r_target=stage.arch))

        for labels in (stage.labels, self.settings.job.labels):
            constraints.extend(
                Constraint(l_target=meta_attribute(key), r_target=value)
                for key, value in labels.items()
            )
        return constraints

    def _build_meta(self, stage: Stage) -> dict[str, str]:
        return {
            "io.drone": "true",
            "io.drone.stage.created": format_unix_timestamp(stage.created),
            "io.drone.stage.scheduled": format_timestamp(self.clock()),
            "io.drone.stage.id": str(stage.id),
            "io.drone.stage.number": str(stage.number),
            "io.drone.stage.kind": stage.kind,
            "io.drone.stage.type": stage.type,
            "io.drone.stage.os": stage.os,
            "io.drone.stage.arch": stage.arch,
            "io.drone.build.id": str(stage.build_id),
        }
