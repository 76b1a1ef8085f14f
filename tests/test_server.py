"""Tests for the local HTTP/WebSocket API contract."""

import time
from unittest.mock import patch

import httpx
import pytest
from fastapi.testclient import TestClient

from computeagent.agent import AgentCore
from computeagent.server import create_app


def wait_for_job(client, job_id, timeout=30.0):
    deadline = time.monotonic() + timeout
    while True:
        job = client.get(f"/jobs/{job_id}").json()
        if job["status"] in ("completed", "failed", "cancelled"):
            return job
        if time.monotonic() > deadline:
            pytest.fail(f"Job {job_id} still {job['status']} after {timeout}s")
        time.sleep(0.05)


@pytest.fixture
def agent(agent_config):
    offline = httpx.MockTransport(lambda request: httpx.Response(503))
    return AgentCore(agent_config, gateway_transport=offline, serve_api=False, handle_signals=False)


@pytest.fixture
def client(agent):
    with TestClient(create_app(agent)) as client:
        yield client


class TestAgentEndpoints:
    """Health, status and shutdown."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "agent_id": None}

    def test_status(self, client):
        data = client.get("/status").json()

        assert data["name"] == "test-agent"
        assert data["status"] == "idle"
        assert data["queue_depth"] == 0
        assert data["kernels"] == 0
        assert data["gateway"] == "disconnected"

    def test_shutdown_requests_stop(self, agent, client):
        with patch.object(agent, "request_stop") as request_stop:
            response = client.post("/shutdown")

        assert response.status_code == 200
        assert response.json() == {"success": True}
        request_stop.assert_called_once_with(reason="api")


class TestJobEndpoints:
    """Job submission and lookups."""

    def test_submit_and_complete(self, client):
        """A submitted job runs to completion and its logs are readable."""
        response = client.post("/jobs", json={"name": "hello", "script": "print('hi')\nprint('there')"})

        assert response.status_code == 200
        submitted = response.json()
        assert submitted["status"] == "queued"
        assert submitted["name"] == "hello"

        job = wait_for_job(client, submitted["id"])
        assert job["status"] == "completed"
        assert job["exit_code"] == 0

        logs = client.get(f"/jobs/{submitted['id']}/logs", params={"tail": 1}).json()
        assert logs == {"logs": ["there"]}

    def test_list_jobs_filters_by_status(self, client):
        ok = client.post("/jobs", json={"script": "pass"}).json()
        bad = client.post("/jobs", json={"script": "import sys; sys.exit(1)"}).json()
        wait_for_job(client, ok["id"])
        wait_for_job(client, bad["id"])

        all_jobs = client.get("/jobs").json()["jobs"]
        failed = client.get("/jobs", params={"status": "failed"}).json()["jobs"]

        assert [j["id"] for j in all_jobs] == [bad["id"], ok["id"]]
        assert [j["id"] for j in failed] == [bad["id"]]

    def test_list_jobs_rejects_non_positive_limit(self, client):
        assert client.get("/jobs", params={"limit": 0}).status_code == 400
        assert client.get("/jobs", params={"limit": 1}).status_code == 200

    def test_missing_script_is_rejected(self, client):
        """Requests without script or script_path return 400."""
        response = client.post("/jobs", json={"name": "empty"})

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_priority_out_of_range(self, client):
        response = client.post("/jobs", json={"script": "pass", "priority": 500})
        assert response.status_code == 400

    def test_unknown_job(self, client):
        response = client.get("/jobs/missing")

        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"

    def test_logs_of_unknown_job_are_empty(self, client):
        response = client.get("/jobs/missing/logs")

        assert response.status_code == 200
        assert response.json() == {"logs": []}

    def test_cancel(self, client):
        """Cancelling a running job succeeds once; a second cancel is a 404."""
        job = client.post("/jobs", json={"script": "import time; time.sleep(30)"}).json()

        assert client.post(f"/jobs/{job['id']}/cancel").json() == {"success": True}
        assert client.get(f"/jobs/{job['id']}").json()["status"] == "cancelled"
        assert client.post(f"/jobs/{job['id']}/cancel").status_code == 404


class TestKernelEndpoints:
    """Kernel lifecycle and code execution."""

    def test_execute_creates_kernel(self, client):
        """POST /execute without a kernel id starts one and returns the result."""
        response = client.post("/execute", json={"code": "x = 20\nx * 2"})

        assert response.status_code == 200
        result = response.json()
        assert result["status"] == "ok"
        assert result["execution_count"] == 1
        assert result["outputs"] == [{"type": "execute_result", "name": None, "text": "40"}]

        kernel_id = result["kernel_id"]
        follow_up = client.post(f"/kernels/{kernel_id}/execute", json={"code": "x"}).json()
        assert follow_up["kernel_id"] == kernel_id
        assert follow_up["execution_count"] == 2

        assert [k["id"] for k in client.get("/kernels").json()["kernels"]] == [kernel_id]
        assert client.delete(f"/kernels/{kernel_id}").status_code == 200
        assert client.get(f"/kernels/{kernel_id}").status_code == 404

    def test_create_and_shutdown_kernel(self, client):
        kernel = client.post("/kernels", json={"language": "python"}).json()

        assert kernel["status"] == "idle"
        assert client.get(f"/kernels/{kernel['id']}").json()["id"] == kernel["id"]
        assert client.delete(f"/kernels/{kernel['id']}").json() == {"success": True}

    def test_unsupported_language(self, client):
        response = client.post("/kernels", json={"language": "ruby"})
        assert response.status_code == 400

    def test_unknown_kernel(self, client):
        assert client.get("/kernels/missing").status_code == 404
        assert client.delete("/kernels/missing").status_code == 404
        assert client.post("/kernels/missing/interrupt").status_code == 404


class TestEventStream:
    """WebSocket subscriptions."""

    def test_subscribe_is_acknowledged(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"subscribe": "kernel", "kernel_id": "k-1"})
            assert ws.receive_json() == {"type": "subscribed", "kernel_id": "k-1"}

            ws.send_json({"subscribe": "weather"})
            assert ws.receive_json()["type"] == "error"

    def test_streams_job_logs(self, client):
        """Subscribed clients receive log lines and the terminal event for their job."""
        job = client.post("/jobs", json={"script": "import time; time.sleep(0.5); print('streamed')"}).json()

        with client.websocket_connect("/ws") as ws:
            ws.send_json({"subscribe": "logs", "job_id": job["id"]})
            assert ws.receive_json() == {"type": "subscribed", "job_id": job["id"]}

            received = []
            while not received or received[-1]["type"] not in ("job:completed", "job:failed"):
                received.append(ws.receive_json())

        logs = [event["line"] for event in received if event["type"] == "job:log"]
        assert logs == ["streamed"]
        assert received[-1]["type"] == "job:completed"
        assert all(event["job_id"] == job["id"] for event in received)
