from __future__ import annotations

import json

import allure
import httpx
import pytest

from drone_runner_nomad.client.nomad import NomadClient, NomadClientError
from drone_runner_nomad.config import NomadSettings
from drone_runner_nomad.models import Job, Resources, Task, TaskGroup

pytestmark = [
    allure.epic("Nomad Client"),
    allure.feature("Job Registration"),
]


def _job(**overrides: object) -> Job:
    values: dict[str, object] = {
        "id": "drone-job-abc",
        "name": "drone-job-abc",
        "datacenters": ("dc1",),
        "task_groups": [
            TaskGroup(
                name="pipeline",
                tasks=[Task(name="stage", driver="docker", resources=Resources(cpu=None))],
            ),
        ],
    }
    values.update(overrides)
    return Job(**values)  # type: ignore[arg-type]


def test_register_job_puts_job_payload() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"EvalID": "eval-1", "JobModifyIndex": 10})

    settings = NomadSettings(addr="http://nomad.example.com:4646", token="token")
    with NomadClient(settings, transport=httpx.MockTransport(handler)) as client:
        eval_id = client.register_job(_job())

    assert eval_id == "eval-1"
    request = seen[0]
    assert request.method == "PUT"
    assert request.url.path == "/v1/jobs"
    assert request.headers["X-Nomad-Token"] == "token"
    body = json.loads(request.content)
    assert body["Job"]["ID"] == "drone-job-abc"
    assert body["Job"]["Type"] == "batch"
    assert body["Job"]["TaskGroups"][0]["Tasks"][0]["Resources"] == {}
    assert "Constraints" not in body["Job"]


def test_register_job_adds_client_namespace_when_job_has_none() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"EvalID": "eval-2"})

    settings = NomadSettings(namespace="ci", region="eu")
    with NomadClient(settings, transport=httpx.MockTransport(handler)) as client:
        client.register_job(_job())
        client.register_job(_job(namespace="other", region="us"))

    assert seen[0].url.params["namespace"] == "ci"
    assert seen[0].url.params["region"] == "eu"
    assert "namespace" not in seen[1].url.params
    assert "region" not in seen[1].url.params


def test_register_job_error_status_raises() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(500, text="no leader"))

    with NomadClient(NomadSettings(), transport=transport) as client:
        with pytest.raises(NomadClientError, match="no leader") as excinfo:
            client.register_job(_job())

    assert excinfo.value.status_code == 500


def test_register_job_transport_error_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with NomadClient(NomadSettings(), transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(NomadClientError, match="connection refused"):
            client.register_job(_job())


def test_invalid_address_fails_construction() -> None:
    with pytest.raises(NomadClientError, match="NOMAD_ADDR"):
        NomadClient(NomadSettings(addr="nomad.example.com:4646"))
