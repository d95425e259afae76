"""
Tests for the HTTP API.
"""

import pytest
from fastapi.testclient import TestClient

from stackup.api import app
from stackup.events import EventTypes, emit_event
from stackup.ids import new_run_id
from stackup.state import create_run_dir, write_outputs_json, write_run_json

MANIFEST = """
name: rustapp
services:
  rustapp:
    image: francescoxx/rustapp:1.0.0
    depends_on:
      - db
    ports:
      - "8080:8080"
  db:
    image: postgres:13
    ports:
      - "5432:5432"
"""


@pytest.fixture
def client(stackup_home):
    return TestClient(app)


@pytest.fixture
def finished_run(stackup_home):
    run_id = new_run_id()
    create_run_dir(run_id)
    write_run_json(run_id, "/srv/rustapp/compose.yaml", "rustapp", "local")
    emit_event(run_id, EventTypes.INIT, {})
    emit_event(run_id, EventTypes.PLAN, {"batches": [["db"], ["rustapp"]]})
    emit_event(run_id, EventTypes.SERVICE_STATE, {"service": "db", "state": "running"})
    emit_event(run_id, EventTypes.SERVICE_STATE, {"service": "rustapp", "state": "running"})
    emit_event(run_id, EventTypes.DONE, {"failed": []})
    write_outputs_json(run_id, {"endpoints": {"rustapp": ["localhost:8080"]}})
    return run_id


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["message"] == "Stackup API is running"


class TestManifestEndpoints:

    def test_validate(self, client):
        response = client.post("/validate", json={"manifest": MANIFEST})
        assert response.status_code == 200
        body = response.json()
        assert body["project"] == "rustapp"
        assert body["ok"] is True

    def test_validate_reports_errors(self, client):
        response = client.post("/validate", json={"manifest": "services:\n  web: {}\n"})
        assert response.status_code == 200
        assert response.json()["ok"] is False

    def test_invalid_yaml(self, client):
        response = client.post("/validate", json={"manifest": "services: [oops"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_yaml"

    def test_plan(self, client):
        response = client.post("/plan", json={"manifest": MANIFEST})
        assert response.status_code == 200
        assert response.json()["batches"] == [["db"], ["rustapp"]]

    def test_plan_cycle(self, client):
        text = "services:\n  a:\n    image: x\n    depends_on: [a]\n"
        response = client.post("/plan", json={"manifest": text})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "cycle"


class TestRunEndpoints:

    def test_runs(self, client, finished_run):
        response = client.get("/runs")
        assert response.status_code == 200
        runs = response.json()
        assert runs[0]["run_id"] == finished_run
        assert runs[0]["status"] == "up"
        assert runs[0]["engine"] == "local"

    def test_status(self, client, finished_run):
        response = client.get(f"/runs/{finished_run}/status")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "up"
        assert body["services"] == {"db": "running", "rustapp": "running"}
        assert body["endpoints"] == {"rustapp": ["localhost:8080"]}

    def test_events(self, client, finished_run):
        response = client.get(f"/runs/{finished_run}/events")
        assert response.status_code == 200
        types = [e["type"] for e in response.json()["events"]]
        assert types[0] == "INIT"
        assert types[-1] == "DONE"

    @pytest.mark.parametrize("run_id", ["r-20260101-000000-zzzz", "bogus"])
    def test_unknown_run(self, client, run_id):
        response = client.get(f"/runs/{run_id}/status")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "run_not_found"
