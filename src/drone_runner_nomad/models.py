"""Domain models for pipeline stages and Nomad job payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

_STAGE_INT_FIELDS = ("id", "repo_id", "build_id", "number", "created", "updated", "version")
_STAGE_STR_FIELDS = ("name", "kind", "type", "status", "os", "arch", "variant", "kernel", "machine")


@dataclass(slots=True)
class Stage:
    """One schedulable unit of a pipeline, as returned by the Drone server."""

    id: int
    build_id: int = 0
    repo_id: int = 0
    number: int = 0
    name: str = ""
    kind: str = ""
    type: str = ""
    status: str = ""
    os: str = ""
    arch: str = ""
    variant: str = ""
    kernel: str = ""
    machine: str = ""
    created: int = 0
    updated: int = 0
    version: int = 0
    labels: dict[str, str] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: object) -> Stage:
        """Parse a stage JSON object, keeping unknown keys in ``extra``."""

        if not isinstance(payload, dict):
            raise TypeError("stage payload must be a JSON object")

        values: dict[str, Any] = {}
        for name in _STAGE_INT_FIELDS:
            raw = payload.get(name, 0)
            if raw is None:
                raw = 0
            if isinstance(raw, bool) or not isinstance(raw, int):
                raise ValueError(f"stage.{name} must be an integer, got {raw!r}")
            values[name] = raw
        for name in _STAGE_STR_FIELDS:
            raw = payload.get(name) or ""
            if not isinstance(raw, str):
                raise TypeError(f"stage.{name} must be a string")
            values[name] = raw

        labels_raw = payload.get("labels") or {}
        if not isinstance(labels_raw, dict):
            raise TypeError("stage.labels must be an object")
        labels = {str(key): str(value) for key, value in labels_raw.items()}

        known = {*_STAGE_INT_FIELDS, *_STAGE_STR_FIELDS, "labels"}
        extra = {key: value for key, value in payload.items() if key not in known}
        return cls(labels=labels, extra=extra, **values)


@dataclass(slots=True, frozen=True)
class Filter:
    """Selects which pending stages the server may hand to this runner."""

    kind: str = "pipeline"
    type: str = "docker"
    os: str = ""
    arch: str = ""
    variant: str = ""
    kernel: str = ""
    labels: dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            name: getattr(self, name)
            for name in ("kind", "type", "os", "arch", "variant", "kernel")
            if getattr(self, name)
        }
        if self.labels:
            payload["labels"] = dict(self.labels)
        return payload


@dataclass(slots=True, frozen=True)
class Constraint:
    """Scheduler-evaluated placement predicate."""

    l_target: str
    r_target: str
    operand: str = "="

    def to_api(self) -> dict[str, str]:
        return {"LTarget": self.l_target, "RTarget": self.r_target, "Operand": self.operand}


@dataclass(slots=True)
class Resources:
    cpu: int | None = None
    memory_mb: int | None = None

    def to_api(self) -> dict[str, int]:
        payload: dict[str, int] = {}
        if self.cpu is not None:
            payload["CPU"] = self.cpu
        if self.memory_mb is not None:
            payload["MemoryMB"] = self.memory_mb
        return payload


@dataclass(slots=True, frozen=True)
class RestartPolicy:
    mode: str = "fail"
    attempts: int | None = None

    def to_api(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"Mode": self.mode}
        if self.attempts is not None:
            payload["Attempts"] = self.attempts
        return payload


@dataclass(slots=True)
class Task:
    name: str
    driver: str
    env: dict[str, str] = field(default_factory=dict)
    resources: Resources = field(default_factory=Resources)
    config: dict[str, Any] = field(default_factory=dict)

    def to_api(self) -> dict[str, Any]:
        return {
            "Name": self.name,
            "Driver": self.driver,
            "Env": dict(self.env),
            "Resources": self.resources.to_api(),
            "Config": dict(self.config),
        }


@dataclass(slots=True)
class TaskGroup:
    name: str
    tasks: list[Task] = field(default_factory=list)
    restart_policy: RestartPolicy | None = None

    def to_api(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "Name": self.name,
            "Tasks": [task.to_api() for task in self.tasks],
        }
        if self.restart_policy is not None:
            payload["RestartPolicy"] = self.restart_policy.to_api()
        return payload


@dataclass(slots=True)
class Job:
    """Batch job descriptor submitted to the Nomad jobs API."""

    id: str
    name: str
    type: str = "batch"
    datacenters: tuple[str, ...] = ()
    namespace: str | None = None
    region: str | None = None
    task_groups: list[TaskGroup] = field(default_factory=list)
    constraints: list[Constraint] = field(default_factory=list)
    meta: dict[str, str] = field(default_factory=dict)

    def to_api(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "ID": self.id,
            "Name": self.name,
            "Type": self.type,
            "Datacenters": list(self.datacenters),
            "TaskGroups": [group.to_api() for group in self.task_groups],
            "Meta": dict(self.meta),
        }
        if self.namespace is not None:
            payload["Namespace"] = self.namespace
        if self.region is not None:
            payload["Region"] = self.region
        if self.constraints:
            payload["Constraints"] = [constraint.to_api() for constraint in self.constraints]
        return payload
