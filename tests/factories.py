"""Builders for settings environments and stages used across tests."""

from __future__ import annotations

from datetime import UTC, datetime

from drone_runner_nomad.models import Stage

FIXED_NOW = datetime(2026, 3, 1, 12, 30, 0, tzinfo=UTC)

BASE_ENV = {
    "DRONE_RPC_HOST": "drone.example.com",
    "DRONE_RPC_SECRET": "s3cr3t",
    "DRONE_MACHINE": "runner-1",
}


def make_env(**overrides: str) -> dict[str, str]:
    env = dict(BASE_ENV)
    env.update(overrides)
    return env


def make_stage(**overrides: object) -> Stage:
    values: dict[str, object] = {
        "id": 42,
        "build_id": 7,
        "number": 1,
        "kind": "pipeline",
        "type": "docker",
        "os": "linux",
        "arch": "amd64",
        "created": 1000,
        "labels": {"region": "us"},
    }
    values.update(overrides)
    return Stage(**values)  # type: ignore[arg-type]
