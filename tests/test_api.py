"""
Tests for the FastAPI endpoints, with the pipeline swapped for one on
scripted generation and in-memory search.
"""

import pytest
from fastapi.testclient import TestClient

from opportunity_engine import api
from opportunity_engine.config.settings import PipelineConfig
from opportunity_engine.core.report_store import JsonReportStore
from opportunity_engine.report_pipeline import ReportPipeline, RunRegistry
from tests.conftest import FakeSearch, ScriptedGenerator

IDEA = {
    "title": "Fintech savings app",
    "target_market": "fintech japan",
    "problem_statement": "Young workers do not save",
    "proposed_solution": "Payroll round-up savings",
    "business_model": "Subscription",
}


@pytest.fixture
def client(monkeypatch, tmp_path):
    pipeline = ReportPipeline(
        generator=ScriptedGenerator(),
        search_client=FakeSearch(),
        config=PipelineConfig.build(),
        store=JsonReportStore(tmp_path),
        verbose=False,
    )
    monkeypatch.setattr(api, "pipeline", pipeline)
    monkeypatch.setattr(api, "results", {})
    return TestClient(api.app)


class TestEndpoints:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["budget"]["limit"] == 2000

    def test_create_report_and_poll(self, client):
        response = client.post("/reports?wait=true", json=IDEA)
        assert response.status_code == 202
        body = response.json()
        assert body["meets_threshold"] is True
        assert len(body["report"]["sections"]) == 7

        status = client.get(f"/runs/{body['run_id']}").json()
        assert status["state"] == "completed"
        assert status["result"]["run_id"] == body["run_id"]

    def test_invalid_override_is_422(self, client):
        response = client.post("/reports", json={**IDEA, "constraints": {"monthly_budget": 1}})
        assert response.status_code == 422

    def test_missing_title_is_422(self, client):
        response = client.post("/reports", json={**IDEA, "title": ""})
        assert response.status_code == 422

    def test_unknown_run_is_404(self, client):
        assert client.get("/runs/run_unknown").status_code == 404

    def test_results_follow_tracked_runs(self, client):
        api.pipeline.runs = RunRegistry(max_runs=1)
        first = client.post("/reports?wait=true", json=IDEA).json()["run_id"]
        second = client.post("/reports?wait=true", json=IDEA).json()["run_id"]

        assert client.get(f"/runs/{first}").status_code == 404
        assert first not in api.results
        assert client.get(f"/runs/{second}").json()["result"]["run_id"] == second
