"""Tests for the CLI module."""

from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from computeagent.cli import main
from computeagent.errors import AgentNotRunningError, NotFoundError
from computeagent.schemas import (
    AgentStatus,
    ExecuteResult,
    ExecutionErrorInfo,
    ExecutionOutput,
    GatewayConnectionState,
    Job,
    JobStatus,
    KernelSession,
    KernelStatus,
)

NOW = datetime(2026, 1, 1, 12, 0, 0)


def make_job(**kwargs) -> Job:
    defaults = dict(id="job-1", name="inline", script="print(1)", submitted_at=NOW)
    defaults.update(kwargs)
    return Job(**defaults)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def client():
    """Patched LocalComputeClient instance used by every command."""
    with patch("computeagent.cli.LocalComputeClient") as client_class:
        yield client_class.return_value


class TestCLI:
    """Top-level group."""

    def test_main_help(self, runner):
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        assert "Compute Agent" in result.output
        for command in ("start", "stop", "status", "submit", "exec", "kernel"):
            assert command in result.output

    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])

        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_port_option_reaches_client(self, runner):
        with patch("computeagent.cli.LocalComputeClient") as client_class:
            client_class.return_value.list_jobs.return_value = []
            runner.invoke(main, ["--port", "9300", "list"])

        client_class.assert_called_once_with(host="127.0.0.1", port=9300)

    def test_agent_not_running(self, runner, client):
        """Commands fail with a readable message when no agent answers."""
        client.get_status.side_effect = AgentNotRunningError("No compute agent at http://127.0.0.1:9200")

        result = runner.invoke(main, ["status"])

        assert result.exit_code == 1
        assert "No compute agent" in result.output
        client.close.assert_called_once()


class TestAgentCommands:
    """status and stop."""

    def test_status(self, runner, client, hardware):
        client.get_status.return_value = AgentStatus(
            id="agent-1",
            name="test-agent",
            status="busy",
            pid=4242,
            uptime="5m 3s",
            current_job=make_job(status=JobStatus.RUNNING),
            jobs_completed=3,
            jobs_failed=1,
            kernels=2,
            gateway=GatewayConnectionState.CONNECTED,
            hardware=hardware,
        )

        result = runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "test-agent (agent-1)" in result.output
        assert "busy (pid 4242, up 5m 3s)" in result.output
        assert "3 completed, 1 failed" in result.output
        assert "Running:   inline (job-1)" in result.output
        assert "Apple M2 Pro (Metal 3)" in result.output

    def test_status_json(self, runner, client):
        client.get_status.return_value = AgentStatus(id=None, name="solo", status="idle", pid=1)

        result = runner.invoke(main, ["status", "--json"])

        assert result.exit_code == 0
        assert '"name": "solo"' in result.output
        assert '"gateway": "disconnected"' in result.output

    def test_stop(self, runner, client):
        with patch("computeagent.agent.read_agent_pid", return_value=None):
            result = runner.invoke(main, ["stop"])

        assert result.exit_code == 0
        client.shutdown.assert_called_once()
        assert "Compute agent stopped" in result.output

    def test_stop_when_not_running(self, runner, client):
        client.shutdown.side_effect = AgentNotRunningError("down")

        result = runner.invoke(main, ["stop"])

        assert result.exit_code == 0
        assert "No compute agent is running" in result.output

    def test_start_refuses_second_daemon(self, runner, tmp_path, monkeypatch):
        """start --daemonize exits with an error when the PID file names a live agent."""
        monkeypatch.setenv("COMPUTE_AGENT_STATE_DIR", str(tmp_path))
        with patch("computeagent.agent.read_agent_pid", return_value=4242):
            result = runner.invoke(main, ["start", "--daemonize"])

        assert result.exit_code == 1
        assert "already running (pid 4242)" in result.output


class TestJobCommands:
    """submit, list, logs and cancel."""

    def test_submit_inline(self, runner, client):
        client.submit_job.return_value = make_job()

        result = runner.invoke(main, ["submit", "print(1)", "-p", "5", "-e", "SEED=7"])

        assert result.exit_code == 0
        assert "Submitted job job-1 (inline)" in result.output
        request = client.submit_job.call_args[0][0]
        assert request.script == "print(1)"
        assert request.script_path is None
        assert request.priority == 5
        assert request.environment == {"SEED": "7"}

    def test_submit_file(self, runner, client, tmp_path):
        """An existing file is sent as a script path named after the file."""
        script = tmp_path / "train.py"
        script.write_text("print('training')\n")
        client.submit_job.return_value = make_job(name="train.py", script=None, script_path=str(script))

        result = runner.invoke(main, ["submit", str(script)])

        assert result.exit_code == 0
        request = client.submit_job.call_args[0][0]
        assert request.name == "train.py"
        assert request.script_path == str(script.resolve())
        assert request.working_dir == str(tmp_path.resolve())

    def test_submit_rejects_bad_env(self, runner, client):
        result = runner.invoke(main, ["submit", "print(1)", "-e", "NOEQUALS"])

        assert result.exit_code == 2
        assert "KEY=VALUE" in result.output
        client.submit_job.assert_not_called()

    def test_submit_follow(self, runner, client):
        """--follow prints logs and exits non-zero when the job fails."""
        client.submit_job.return_value = make_job()
        client.get_job.return_value = make_job(status=JobStatus.FAILED, exit_code=2)
        client.get_job_logs.return_value = ["line one", "line two"]

        result = runner.invoke(main, ["submit", "print(1)", "--follow"])

        assert result.exit_code == 1
        assert "line one\nline two" in result.output
        assert "Job failed (exit 2)" in result.output

    def test_list(self, runner, client):
        client.list_jobs.return_value = [
            make_job(id="job-2", name="second", status=JobStatus.COMPLETED),
            make_job(id="job-1", name="first", status=JobStatus.FAILED),
        ]

        result = runner.invoke(main, ["list", "--status", "completed", "--limit", "5"])

        assert result.exit_code == 0
        client.list_jobs.assert_called_once_with(status="completed", limit=5)
        lines = result.output.strip().splitlines()
        assert lines[0].startswith("job-2  completed")
        assert lines[1].endswith("first")

    def test_list_rejects_zero_limit(self, runner, client):
        result = runner.invoke(main, ["list", "--limit", "0"])

        assert result.exit_code == 2
        client.list_jobs.assert_not_called()

    def test_list_empty(self, runner, client):
        client.list_jobs.return_value = []

        result = runner.invoke(main, ["list"])

        assert "No jobs found." in result.output

    def test_logs_tail(self, runner, client):
        client.get_job_logs.return_value = ["3", "4"]

        result = runner.invoke(main, ["logs", "job-1", "--tail", "2"])

        assert result.exit_code == 0
        assert result.output == "3\n4\n"
        client.get_job_logs.assert_called_once_with("job-1", tail=2)

    def test_cancel(self, runner, client):
        client.cancel_job.return_value = True

        result = runner.invoke(main, ["cancel", "job-1"])

        assert result.exit_code == 0
        assert "Cancelled job job-1" in result.output

    def test_cancel_finished_job(self, runner, client):
        client.cancel_job.return_value = False

        result = runner.invoke(main, ["cancel", "job-1"])

        assert result.exit_code == 1
        assert "not found or already finished" in result.output


class TestKernelCommands:
    """exec and the kernel group."""

    def test_exec(self, runner, client):
        client.execute.return_value = ExecuteResult(
            kernel_id="k-1",
            execution_count=3,
            status="ok",
            outputs=[
                ExecutionOutput(type="stream", name="stdout", text="hello\n"),
                ExecutionOutput(type="execute_result", name=None, text="2"),
            ],
        )

        result = runner.invoke(main, ["exec", "print('hello'); 1+1", "--kernel", "k-1"])

        assert result.exit_code == 0
        assert "hello\nOut[3]: 2" in result.output
        client.execute.assert_called_once_with("print('hello'); 1+1", kernel_id="k-1")

    def test_exec_error_exits_nonzero(self, runner, client):
        client.execute.return_value = ExecuteResult(
            kernel_id="k-1",
            execution_count=1,
            status="error",
            error=ExecutionErrorInfo(name="ZeroDivisionError", value="division by zero"),
        )

        result = runner.invoke(main, ["exec", "1/0", "--kernel", "k-1"])

        assert result.exit_code == 1
        assert "ZeroDivisionError: division by zero" in result.output

    def test_kernel_create_and_list(self, runner, client):
        session = KernelSession(id="k-1", created_at=NOW, last_activity=NOW, status=KernelStatus.IDLE)
        client.create_kernel.return_value = session
        client.list_kernels.return_value = [session]

        created = runner.invoke(main, ["kernel", "create"])
        listed = runner.invoke(main, ["kernel", "list"])

        assert "Created kernel k-1" in created.output
        assert "k-1  idle" in listed.output

    def test_kernel_list_empty(self, runner, client):
        client.list_kernels.return_value = []

        result = runner.invoke(main, ["kernel", "list"])

        assert "No kernels running." in result.output

    def test_kernel_shutdown_unknown(self, runner, client):
        client.shutdown_kernel.side_effect = NotFoundError("Kernel not found: k-9")

        result = runner.invoke(main, ["kernel", "shutdown", "k-9"])

        assert result.exit_code == 1
        assert "Kernel not found: k-9" in result.output

    def test_kernel_interrupt(self, runner, client):
        result = runner.invoke(main, ["kernel", "interrupt", "k-1"])

        assert result.exit_code == 0
        client.interrupt_kernel.assert_called_once_with("k-1")
        assert "Interrupted kernel k-1" in result.output
