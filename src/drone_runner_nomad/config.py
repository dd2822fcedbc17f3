"""Runtime configuration for the Nomad runner.

Settings are read once at process start from ``DRONE_*`` and ``NOMAD_*``
environment variables and are immutable afterwards.
"""

from __future__ import annotations

import logging
import os
import socket
from collections.abc import Mapping
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

ENV_PREFIX = "DRONE_"

# Older variable names mapped onto their current equivalents.
LEGACY_ENV_ALIASES: dict[str, str] = {
    "DRONE_HOSTNAME": "DRONE_MACHINE",
    "DRONE_NOMAD_DATACENTER": "DRONE_JOB_DATACENTER",
    "DRONE_NOMAD_NAMESPACE": "DRONE_JOB_NAMESPACE",
    "DRONE_NOMAD_REGION": "DRONE_JOB_REGION",
    "DRONE_NOMAD_IMAGE": "DRONE_IMAGE",
    "DRONE_NOMAD_IMAGE_PULL": "DRONE_IMAGE_PULL",
    "DRONE_NOMAD_DEFAULT_RAM": "DRONE_TASK_MEMORY",
    "DRONE_NOMAD_DEFAULT_CPU": "DRONE_TASK_COMPUTE",
    "DRONE_NOMAD_LABELS": "DRONE_JOB_LABELS",
    "DRONE_NOMAD_JOB_PREFIX": "DRONE_JOB_PREFIX",
}

# Variables that configure the job compiler itself and must not leak into
# the build container environment.
PASSTHROUGH_EXCLUDED: frozenset[str] = frozenset(
    {
        "DRONE_JOB_DATACENTER",
        "DRONE_JOB_NAMESPACE",
        "DRONE_JOB_REGION",
        "DRONE_JOB_PREFIX",
        "DRONE_JOB_LABELS",
        "DRONE_TASK_COMPUTE",
        "DRONE_TASK_MEMORY",
        "DRONE_MACHINE",
        "DRONE_IMAGE",
        "DRONE_IMAGE_PULL",
        "DRONE_IMAGE_ENTRYPOINT",
        "DRONE_IMAGE_COMMAND",
        "DRONE_IMAGE_ARGS",
        "DRONE_POLL_INTERVAL",
        "DRONE_POLL_BACKOFF_BASE",
        "DRONE_POLL_BACKOFF_MAX",
        "DRONE_RPC_TIMEOUT",
    },
)

_TRUE_VALUES = {"1", "t", "true", "yes", "on"}
_FALSE_VALUES = {"0", "f", "false", "no", "off"}


class ConfigurationError(ValueError):
    """Raised when the environment does not describe a usable runner."""


@dataclass(slots=True, frozen=True)
class JobSettings:
    """Placement of compiled jobs on the cluster."""

    datacenters: tuple[str, ...] = ("dc1",)
    namespace: str = ""
    region: str = ""
    prefix: str = "drone-job-"
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class TaskSettings:
    """Default resource requests; ``0`` leaves the scheduler default in place."""

    compute: int = 500
    memory: int = 1024


@dataclass(slots=True, frozen=True)
class ImageSettings:
    """Container image executing the pipeline inside the Nomad task."""

    name: str = "drone/drone-runner-docker:latest"
    pull: bool = False
    entrypoint: tuple[str, ...] = ()
    command: tuple[str, ...] = ()
    args: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class ServerSettings:
    """Drone server RPC endpoint."""

    proto: str = "http"
    host: str = ""
    secret: str = ""
    skip_verify: bool = False
    dump: bool = False
    dump_body: bool = False

    @property
    def addr(self) -> str:
        return f"{self.proto}://{self.host}"


@dataclass(slots=True, frozen=True)
class CallbackSettings:
    """Alternate server address handed to the build container (local development)."""

    proto: str = ""
    host: str = ""


@dataclass(slots=True, frozen=True)
class NomadSettings:
    """Nomad API client settings, named the way the nomad CLI reads them."""

    addr: str = "http://127.0.0.1:4646"
    token: str = ""
    namespace: str = ""
    region: str = ""
    skip_verify: bool = False
    ca_cert: str = ""


@dataclass(slots=True, frozen=True)
class PollerSettings:
    """Cycle pacing. All zero keeps the loop polling back-to-back."""

    cycle_delay_seconds: float = 0.0
    error_backoff_base_seconds: float = 0.0
    error_backoff_max_seconds: float = 30.0
    request_timeout_seconds: float = 60.0


@dataclass(slots=True, frozen=True)
class Settings:
    """Application settings grouped by concern."""

    debug: bool = False
    trace: bool = False
    machine: str = ""
    job: JobSettings = field(default_factory=JobSettings)
    task: TaskSettings = field(default_factory=TaskSettings)
    image: ImageSettings = field(default_factory=ImageSettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    callback: CallbackSettings = field(default_factory=CallbackSettings)
    nomad: NomadSettings = field(default_factory=NomadSettings)
    poller: PollerSettings = field(default_factory=PollerSettings)
    environ: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Load settings from the environment, resolving legacy variable names first."""

        env = resolve_legacy_aliases(os.environ if environ is None else environ)
        reader = _EnvReader(env)

        server = ServerSettings(
            proto=reader.string("DRONE_RPC_PROTO", "http"),
            host=reader.required("DRONE_RPC_HOST"),
            secret=reader.required("DRONE_RPC_SECRET"),
            skip_verify=reader.boolean("DRONE_RPC_SKIP_VERIFY", default=False),
            dump=reader.boolean("DRONE_RPC_DUMP_HTTP", default=False),
            dump_body=reader.boolean("DRONE_RPC_DUMP_HTTP_BODY", default=False),
        )
        callback = CallbackSettings(
            proto=reader.string("DRONE_CALLBACK_PROTO", ""),
            host=reader.string("DRONE_CALLBACK_HOST", ""),
        )
        return cls(
            debug=reader.boolean("DRONE_DEBUG", default=False),
            trace=reader.boolean("DRONE_TRACE", default=False),
            machine=reader.string("DRONE_MACHINE", "") or socket.gethostname(),
            job=JobSettings(
                datacenters=reader.csv("DRONE_JOB_DATACENTER", ("dc1",)),
                namespace=reader.string("DRONE_JOB_NAMESPACE", ""),
                region=reader.string("DRONE_JOB_REGION", ""),
                prefix=reader.string("DRONE_JOB_PREFIX", "drone-job-"),
                labels=reader.mapping("DRONE_JOB_LABELS"),
            ),
            task=TaskSettings(
                compute=reader.non_negative_int("DRONE_TASK_COMPUTE", 500),
                memory=reader.non_negative_int("DRONE_TASK_MEMORY", 1024),
            ),
            image=ImageSettings(
                name=reader.string("DRONE_IMAGE", "drone/drone-runner-docker:latest"),
                pull=reader.boolean("DRONE_IMAGE_PULL", default=False),
                entrypoint=reader.csv("DRONE_IMAGE_ENTRYPOINT", ()),
                command=reader.csv("DRONE_IMAGE_COMMAND", ()),
                args=reader.csv("DRONE_IMAGE_ARGS", ()),
            ),
            server=server,
            callback=callback,
            nomad=NomadSettings(
                addr=reader.string("NOMAD_ADDR", "http://127.0.0.1:4646"),
                token=reader.string("NOMAD_TOKEN", ""),
                namespace=reader.string("NOMAD_NAMESPACE", ""),
                region=reader.string("NOMAD_REGION", ""),
                skip_verify=reader.boolean("NOMAD_SKIP_VERIFY", default=False),
                ca_cert=reader.string("NOMAD_CACERT", ""),
            ),
            poller=PollerSettings(
                cycle_delay_seconds=reader.non_negative_float("DRONE_POLL_INTERVAL", 0.0),
                error_backoff_base_seconds=reader.non_negative_float(
                    "DRONE_POLL_BACKOFF_BASE",
                    0.0,
                ),
                error_backoff_max_seconds=reader.non_negative_float(
                    "DRONE_POLL_BACKOFF_MAX",
                    30.0,
                ),
                request_timeout_seconds=reader.non_negative_float("DRONE_RPC_TIMEOUT", 60.0),
            ),
            environ=collect_passthrough_environ(env, callback=callback),
        )

    def redacted(self) -> dict[str, object]:
        """Flat view of the settings safe to print."""

        return {
            "machine": self.machine,
            "debug": self.debug,
            "trace": self.trace,
            "server.addr": self.server.addr,
            "server.secret": _redact(self.server.secret),
            "server.skip_verify": self.server.skip_verify,
            "job.datacenters": ",".join(self.job.datacenters),
            "job.namespace": self.job.namespace,
            "job.region": self.job.region,
            "job.prefix": self.job.prefix,
            "job.labels": _format_mapping(self.job.labels),
            "task.compute": self.task.compute,
            "task.memory": self.task.memory,
            "image.name": self.image.name,
            "image.pull": self.image.pull,
            "nomad.addr": self.nomad.addr,
            "nomad.token": _redact(self.nomad.token),
            "poller.cycle_delay_seconds": self.poller.cycle_delay_seconds,
            "poller.error_backoff_base_seconds": self.poller.error_backoff_base_seconds,
            "poller.error_backoff_max_seconds": self.poller.error_backoff_max_seconds,
            "environ": ",".join(sorted(self.environ)),
        }


def resolve_legacy_aliases(environ: Mapping[str, str]) -> dict[str, str]:
    """Copy legacy variables onto their current names.

    The current name wins when both are set.
    """

    resolved = dict(environ)
    for legacy, current in LEGACY_ENV_ALIASES.items():
        if legacy not in environ:
            continue
        if current in environ:
            if environ[current] != environ[legacy]:
                logger.warning(
                    "Ignoring legacy variable %s, %s is already set",
                    legacy,
                    current,
                    extra={"event": "config_legacy_ignored", "variable": legacy},
                )
            continue
        resolved[current] = environ[legacy]
    return resolved


def collect_passthrough_environ(
    environ: Mapping[str, str],
    *,
    callback: CallbackSettings | None = None,
) -> dict[str, str]:
    """Collect DRONE_ variables handed to the build container."""

    collected = {
        key: value
        for key, value in environ.items()
        if key.startswith(ENV_PREFIX)
        and key not in PASSTHROUGH_EXCLUDED
        and key not in LEGACY_ENV_ALIASES
    }
    if callback is not None:
        if callback.host:
            collected["DRONE_RPC_HOST"] = callback.host
        if callback.proto:
            collected["DRONE_RPC_PROTO"] = callback.proto
    return collected


class _EnvReader:
    def __init__(self, environ: Mapping[str, str]) -> None:
        self._environ = environ

    def string(self, name: str, default: str) -> str:
        value = self._environ.get(name)
        if value is None:
            return default
        return value.strip()

    def required(self, name: str) -> str:
        value = self.string(name, "")
        if not value:
            raise ConfigurationError(f"{name} is required.")
        return value

    def boolean(self, name: str, *, default: bool) -> bool:
        value = self._environ.get(name)
        if value is None or not value.strip():
            return default
        normalized = value.strip().lower()
        if normalized in _TRUE_VALUES:
            return True
        if normalized in _FALSE_VALUES:
            return False
        raise ConfigurationError(f"Invalid boolean value for {name}: {value!r}")

    def non_negative_int(self, name: str, default: int) -> int:
        raw = self.string(name, "")
        if not raw:
            return default
        try:
            value = int(raw)
        except ValueError as error:
            raise ConfigurationError(f"Invalid integer value for {name}: {raw!r}") from error
        if value < 0:
            raise ConfigurationError(f"{name} must be >= 0.")
        return value

    def non_negative_float(self, name: str, default: float) -> float:
        raw = self.string(name, "")
        if not raw:
            return default
        try:
            value = float(raw)
        except ValueError as error:
            raise ConfigurationError(f"Invalid number value for {name}: {raw!r}") from error
        if value < 0:
            raise ConfigurationError(f"{name} must be >= 0.")
        return value

    def csv(self, name: str, default: tuple[str, ...]) -> tuple[str, ...]:
        raw = self.string(name, "")
        if not raw:
            return default
        return tuple(part.strip() for part in raw.split(",") if part.strip())

    def mapping(self, name: str) -> dict[str, str]:
        raw = self.string(name, "")
        if not raw:
            return {}

        parsed: dict[str, str] = {}
        for part in raw.split(","):
            token = part.strip()
            if not token:
                continue
            if ":" not in token:
                raise ConfigurationError(
                    f"Invalid {name} entry: {token!r}. Expected format '<key>:<value>'.",
                )
            key, value = token.split(":", 1)
            key = key.strip()
            if not key:
                raise ConfigurationError(f"Invalid {name} entry: {token!r}. Empty key.")
            parsed[key] = value.strip()
        return parsed


def _redact(value: str) -> str:
    return "********" if value else ""


def _format_mapping(values: dict[str, str]) -> str:
    return ",".join(f"{key}:{value}" for key, value in values.items())
