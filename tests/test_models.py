from __future__ import annotations

import allure
import pytest

from drone_runner_nomad.models import Constraint, Filter, Job, Stage

pytestmark = [
    allure.epic("Job Compiler"),
    allure.feature("Wire Models"),
]


def test_stage_from_payload_normalizes_missing_fields() -> None:
    stage = Stage.from_payload({"id": 5, "os": "linux", "labels": None, "created": None})

    assert stage.id == 5
    assert stage.labels == {}
    assert stage.created == 0
    assert stage.machine == ""


def test_stage_from_payload_keeps_unknown_keys() -> None:
    payload = {"id": 5, "os": "linux", "depends_on": ["build"], "limit": 0}

    stage = Stage.from_payload(payload)

    assert stage.extra == {"depends_on": ["build"], "limit": 0}
    assert stage.os == "linux"


@pytest.mark.parametrize(
    ("payload", "error"),
    [
        ([], TypeError),
        ({"id": "42"}, ValueError),
        ({"id": True}, ValueError),
        ({"id": 1, "labels": ["a"]}, TypeError),
        ({"id": 1, "os": 7}, TypeError),
    ],
)
def test_stage_from_payload_rejects_malformed(payload: object, error: type[Exception]) -> None:
    with pytest.raises(error):
        Stage.from_payload(payload)


def test_filter_payload_skips_empty_fields() -> None:
    assert Filter().to_payload() == {"kind": "pipeline", "type": "docker"}
    assert Filter(os="linux", labels={"gpu": "true"}).to_payload() == {
        "kind": "pipeline",
        "type": "docker",
        "os": "linux",
        "labels": {"gpu": "true"},
    }


def test_job_to_api_uses_scheduler_field_names() -> None:
    job = Job(
        id="j",
        name="j",
        datacenters=("dc1",),
        namespace="ci",
        constraints=[Constraint(l_target="${meta.gpu}", r_target="true")],
        meta={"io.drone": "true"},
    )

    assert job.to_api() == {
        "ID": "j",
        "Name": "j",
        "Type": "batch",
        "Datacenters": ["dc1"],
        "Namespace": "ci",
        "TaskGroups": [],
        "Constraints": [{"LTarget": "${meta.gpu}", "RTarget": "true", "Operand": "="}],
        "Meta": {"io.drone": "true"},
    }
