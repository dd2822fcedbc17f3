"""Shared test fixtures."""

from __future__ import annotations

import pytest
from factories import make_env, make_stage

from drone_runner_nomad.config import Settings
from drone_runner_nomad.models import Stage


@pytest.fixture()
def settings() -> Settings:
    return Settings.from_env(
        make_env(
            DRONE_TASK_COMPUTE="500",
            DRONE_TASK_MEMORY="1024",
            DRONE_IMAGE="foo:latest",
        ),
    )


@pytest.fixture()
def stage() -> Stage:
    return make_stage()
