from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from clusterdispatch.api.main import AppComponents, build_components, create_app
from clusterdispatch.config.settings import parse_runtime_config
from clusterdispatch.scheduler.facade import SchedulerFacade
from clusterdispatch.storage.blackhole import BlackHolePersistenceEngine
from clusterdispatch.validation.schema_validator import SchemaValidator

from conftest import REPO_ROOT

PAYLOAD = {
    "name": "d1",
    "jar_url": "http://host/app.jar",
    "mem_mb": 1000,
    "cores": 1,
    "supervise": True,
    "command": {"main_class": "mainClass", "arguments": ["arg"]},
    "properties": {"spark.app.id": "s1"},
}


@pytest.fixture
def client(facade: SchedulerFacade) -> Iterator[TestClient]:
    components = AppComponents(
        facade=facade,
        schema_validator=SchemaValidator.load_from_dir(REPO_ROOT / "schemas"),
        engine=BlackHolePersistenceEngine(),
    )
    with TestClient(create_app(components)) as c:
        yield c


def test_health(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "readiness": "READY"}


def test_submit_status_and_kill(client: TestClient) -> None:
    first = client.post("/v1/submissions/create", json=PAYLOAD).json()
    second = client.post("/v1/submissions/create", json=PAYLOAD).json()
    assert first["success"] and second["success"]
    assert first["submissionId"] != second["submissionId"]

    state = client.get("/v1/scheduler/state").json()
    assert [d["submission_id"] for d in state["queued"]] == [first["submissionId"], second["submissionId"]]

    status = client.get(f"/v1/submissions/status/{first['submissionId']}").json()
    assert status["success"] and status["driverState"] == "QUEUED"

    killed = client.post(f"/v1/submissions/kill/{first['submissionId']}").json()
    assert killed == {"success": True, "submissionId": first["submissionId"], "message": "Removed driver while it's still pending"}

    queue = client.get("/v1/scheduler/queue").json()["queued"]
    assert [d["submission_id"] for d in queue] == [second["submissionId"]]


def test_kill_unknown_returns_structured_failure(client: TestClient) -> None:
    resp = client.post("/v1/submissions/kill/driver-missing")
    assert resp.status_code == 200
    assert resp.json()["success"] is False
    assert resp.json()["message"] == "driver not found"


def test_schema_violations_are_422(client: TestClient) -> None:
    bad = dict(PAYLOAD, cores=0, command={"main_class": ""})
    resp = client.post("/v1/submissions/create", json=bad)
    assert resp.status_code == 422
    body = resp.json()
    assert body["error"] == "SCHEMA_VALIDATION_ERROR"
    assert {v["path"] for v in body["violations"]} == {"/command/main_class", "/cores"}


def test_launch_and_terminate(client: TestClient) -> None:
    sid = client.post("/v1/submissions/create", json=PAYLOAD).json()["submissionId"]

    launch = client.post(f"/v1/submissions/launch/{sid}", json={"launch_handle": {"task_id": "t-1"}})
    assert launch.status_code == 200
    command = launch.json()["launch"]
    assert command["submission_id"] == sid
    assert "--class mainClass" in command["shell_command"]

    again = client.post(f"/v1/submissions/launch/{sid}")
    assert again.status_code == 409
    assert again.json()["error"] == "CONFLICT"

    done = client.post(f"/v1/submissions/terminate/{sid}", json={"outcome": "FINISHED"})
    assert done.status_code == 200
    assert done.json()["driver"]["status"] == "FINISHED"

    assert client.get(f"/v1/submissions/status/{sid}").json()["driverState"] == "FINISHED"


def test_callbacks_for_unknown_driver_are_404(client: TestClient) -> None:
    resp = client.post("/v1/submissions/terminate/driver-missing", json={"outcome": "FAILED"})
    assert resp.status_code == 404
    assert resp.json()["error"] == "NOT_FOUND"


def test_bad_outcome_is_422(client: TestClient) -> None:
    sid = client.post("/v1/submissions/create", json=PAYLOAD).json()["submissionId"]
    client.post(f"/v1/submissions/launch/{sid}")
    resp = client.post(f"/v1/submissions/terminate/{sid}", json={"outcome": "EXPLODED"})
    assert resp.status_code == 422


def test_build_components_recovers_from_sqlite(tmp_path: Path) -> None:
    raw = {
        "storage": {"driver": "sqlite", "sqlite": {"path": str(tmp_path / "state.sqlite")}},
        "validation": {"schemas_dir": str(REPO_ROOT / "schemas")},
        "scheduler": {"instance_id": "api"},
    }
    runtime = parse_runtime_config(raw, tmp_path)

    first = build_components(runtime)
    with TestClient(create_app(first)) as c:
        sid = c.post("/v1/submissions/create", json=PAYLOAD).json()["submissionId"]

    second = build_components(runtime)
    assert second.facade.ready
    assert [d.submission_id for d in second.facade.snapshot().queued] == [sid]
    assert sid.startswith("driver-api-")
