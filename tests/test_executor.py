"""Tests for the single-flight job executor."""

import asyncio
import time

import pytest

from computeagent.events import JobCancelled, JobCompleted, JobFailed, JobLog, JobStarted
from computeagent.executor import SIGNAL_EXIT_CODE, JobExecutor
from computeagent.schemas import JobStatus, JobSubmitRequest

from conftest import PYTHON, wait_until

SLEEPER = "import time; print('started', flush=True); time.sleep(30)"


def make_request(script: str, name: str = "job", priority: int = 1, **kwargs) -> JobSubmitRequest:
    return JobSubmitRequest(name=name, script=script, priority=priority, **kwargs)


@pytest.fixture
def executor(bus):
    return JobExecutor(bus, python_executable=PYTHON, cancel_grace_period=1.0)


async def drain(executor: JobExecutor, timeout: float = 30.0) -> None:
    await asyncio.wait_for(executor.wait_idle(), timeout)


class TestScheduling:
    """Queue order and single-flight execution."""

    @pytest.mark.asyncio
    async def test_priority_order_ties_by_submission(self, executor, recorder):
        """Priorities [3, 1, 3] submitted as A, B, C run as A, C, B."""
        a = executor.submit(make_request("pass", name="A", priority=3))
        b = executor.submit(make_request("pass", name="B", priority=1))
        c = executor.submit(make_request("pass", name="C", priority=3))

        await drain(executor)

        started = [event.job_id for event in recorder.of_type(JobStarted)]
        assert started == [a.id, c.id, b.id]

    @pytest.mark.asyncio
    async def test_at_most_one_running(self, executor, bus):
        """No two jobs are ever observed running at once."""
        observed = []

        def check(event):
            if isinstance(event, (JobStarted, JobCompleted, JobFailed)):
                observed.append(len(executor.list_jobs(status=JobStatus.RUNNING)))

        bus.add_listener(check)
        for i in range(4):
            executor.submit(make_request("import time; time.sleep(0.05)", name=f"job-{i}"))

        await drain(executor)

        assert observed
        assert max(observed) <= 1

    @pytest.mark.asyncio
    async def test_submit_returns_queued_copy(self, executor):
        """Submit returns a queued snapshot the caller cannot mutate."""
        job = executor.submit(make_request("pass"))
        assert job.status == JobStatus.QUEUED
        job.name = "changed"

        await drain(executor)
        assert executor.get_job(job.id).name == "job"


class TestCompletion:
    """Exit code and status semantics."""

    @pytest.mark.asyncio
    async def test_success(self, executor, recorder):
        """Exit 0 completes the job with output captured."""
        job = executor.submit(make_request("print('hello')"))
        await drain(executor)

        done = executor.get_job(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.exit_code == 0
        assert done.logs == ["hello"]
        assert done.metrics.duration_seconds > 0
        assert executor.jobs_completed == 1
        assert [e.line for e in recorder.of_type(JobLog)] == ["hello"]
        assert len(recorder.of_type(JobCompleted)) == 1

    @pytest.mark.asyncio
    async def test_nonzero_exit_fails(self, executor):
        """A script exiting 2 fails with exitCode 2."""
        job = executor.submit(make_request("import sys; sys.exit(2)"))
        await drain(executor)

        done = executor.get_job(job.id)
        assert done.status == JobStatus.FAILED
        assert done.exit_code == 2
        assert done.error == "Process exited with code: 2"
        assert executor.jobs_failed == 1

    @pytest.mark.asyncio
    async def test_killed_by_signal(self, executor):
        """A job killed by SIGKILL records exit code 128."""
        job = executor.submit(make_request("import os, signal; os.kill(os.getpid(), signal.SIGKILL)"))
        await drain(executor)

        done = executor.get_job(job.id)
        assert done.status == JobStatus.FAILED
        assert done.exit_code == SIGNAL_EXIT_CODE == 128
        assert done.error == "Process killed by signal: SIGKILL"

    @pytest.mark.asyncio
    async def test_stderr_lines_are_prefixed(self, executor):
        """stderr output lands in the log with a [stderr] prefix."""
        job = executor.submit(make_request("import sys; sys.stderr.write('oops\\n')"))
        await drain(executor)

        assert executor.get_job(job.id).logs == ["[stderr] oops"]

    @pytest.mark.asyncio
    async def test_unterminated_last_line_is_kept(self, executor):
        """Output without a trailing newline is still logged."""
        job = executor.submit(make_request("import sys; sys.stdout.write('partial')"))
        await drain(executor)

        assert executor.get_job(job.id).logs == ["partial"]


class TestCommands:
    """How scripts are launched."""

    @pytest.mark.asyncio
    async def test_python_script_path(self, executor, tmp_path):
        """A .py script path runs under the Python interpreter."""
        script = tmp_path / "train.py"
        script.write_text("import sys\nprint(sys.argv[0].endswith('train.py'))\n")

        job = executor.submit(JobSubmitRequest(name="train", script_path=str(script)))
        await drain(executor)

        assert executor.get_job(job.id).logs == ["True"]

    @pytest.mark.asyncio
    async def test_shell_script_path(self, executor, tmp_path):
        """Any other script path runs under the shell."""
        script = tmp_path / "run.sh"
        script.write_text("echo from-shell\n")

        job = executor.submit(JobSubmitRequest(name="shell", script_path=str(script)))
        await drain(executor)

        done = executor.get_job(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.logs == ["from-shell"]

    @pytest.mark.asyncio
    async def test_environment_merge(self, executor, monkeypatch):
        """Job env overrides the inherited env; None values are dropped."""
        monkeypatch.setenv("CA_TEST_INHERITED", "yes")
        monkeypatch.setenv("CA_TEST_KEEP", "original")
        script = (
            "import os\n"
            "print(os.environ['CA_TEST_INHERITED'])\n"
            "print(os.environ['CA_TEST_OVERRIDE'])\n"
            "print(os.environ['CA_TEST_KEEP'])\n"
        )
        job = executor.submit(make_request(
            script,
            environment={"CA_TEST_OVERRIDE": "set", "CA_TEST_KEEP": None},
        ))
        await drain(executor)

        assert executor.get_job(job.id).logs == ["yes", "set", "original"]

    @pytest.mark.asyncio
    async def test_working_dir(self, executor, tmp_path):
        """Jobs run in their working directory."""
        job = executor.submit(make_request("import os; print(os.getcwd())", working_dir=str(tmp_path)))
        await drain(executor)

        assert executor.get_job(job.id).logs == [str(tmp_path.resolve())]

    @pytest.mark.asyncio
    async def test_spawn_failure_does_not_block_queue(self, bus, tmp_path):
        """A job that cannot spawn fails and the next job still runs."""
        executor = JobExecutor(bus, python_executable=PYTHON, shell_executable="/nonexistent/bash")
        bad = executor.submit(JobSubmitRequest(name="bad", script_path=str(tmp_path / "run.sh"), priority=5))
        good = executor.submit(make_request("print('ok')"))

        await drain(executor)

        failed = executor.get_job(bad.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error.startswith("Failed to start process")
        assert failed.started_at is None
        assert executor.get_job(good.id).status == JobStatus.COMPLETED


class TestCancellation:
    """Cancelling queued and running jobs."""

    @pytest.mark.asyncio
    async def test_cancel_queued_never_spawns(self, executor, recorder):
        """A queued job is removed without a process or start event."""
        running = executor.submit(make_request(SLEEPER, name="running"))
        queued = executor.submit(make_request("print('never')", name="queued"))

        assert await executor.cancel_job(queued.id) is True

        job = executor.get_job(queued.id)
        assert job.status == JobStatus.CANCELLED
        assert job.started_at is None
        assert executor.queue_depth == 0
        assert queued.id not in [e.job_id for e in recorder.of_type(JobStarted)]
        assert [e.job_id for e in recorder.of_type(JobCancelled)] == [queued.id]

        await executor.cancel_job(running.id)
        await drain(executor)

    @pytest.mark.asyncio
    async def test_cancel_running_then_next_starts(self, executor):
        """A running job is cancelled within the grace period and the queue moves on."""
        running = executor.submit(make_request(SLEEPER, name="running"))
        follower = executor.submit(make_request("print('next')", name="follower"))
        await wait_until(lambda: executor.get_job_logs(running.id) == ["started"])

        start = time.monotonic()
        assert await executor.cancel_job(running.id) is True
        assert time.monotonic() - start < executor.cancel_grace_period + 2

        assert executor.get_job(running.id).status == JobStatus.CANCELLED
        await drain(executor)
        assert executor.get_job(follower.id).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_escalates_to_sigkill(self, bus):
        """A job ignoring SIGTERM is killed after the grace period."""
        executor = JobExecutor(bus, python_executable=PYTHON, cancel_grace_period=0.3)
        script = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(30)\n"
        )
        job = executor.submit(make_request(script))
        await wait_until(lambda: executor.get_job_logs(job.id) == ["ready"])

        assert await executor.cancel_job(job.id) is True

        done = executor.get_job(job.id)
        assert done.status == JobStatus.CANCELLED
        assert done.exit_code == SIGNAL_EXIT_CODE
        await drain(executor)

    @pytest.mark.asyncio
    async def test_cancel_while_process_is_spawning(self, executor, recorder):
        """A cancel landing between dequeue and spawn still stops the job."""
        job = executor.submit(make_request("import time; time.sleep(2); print('ran')"))
        await asyncio.sleep(0)

        assert await executor.cancel_job(job.id) is True

        done = executor.get_job(job.id)
        assert done.status == JobStatus.CANCELLED
        assert "ran" not in done.logs
        assert [e.job_id for e in recorder.of_type(JobCancelled)] == [job.id]
        assert not recorder.of_type(JobCompleted)
        await drain(executor)
        assert executor.current_job is None

        follower = executor.submit(make_request("print('next')"))
        await drain(executor)
        assert executor.get_job(follower.id).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_unknown_or_finished(self, executor):
        """Unknown and terminal jobs cannot be cancelled."""
        assert await executor.cancel_job("missing") is False

        job = executor.submit(make_request("pass"))
        await drain(executor)
        assert await executor.cancel_job(job.id) is False


class TestLookups:
    """Read-only accessors."""

    @pytest.mark.asyncio
    async def test_list_jobs_newest_first(self, executor):
        """list_jobs sorts newest first and honours status and limit."""
        first = executor.submit(make_request("pass", name="first"))
        second = executor.submit(make_request("import sys; sys.exit(1)", name="second"))
        third = executor.submit(make_request("pass", name="third"))
        await drain(executor)

        assert [j.id for j in executor.list_jobs()] == [third.id, second.id, first.id]
        assert [j.id for j in executor.list_jobs(limit=2)] == [third.id, second.id]
        assert [j.id for j in executor.list_jobs(status=JobStatus.FAILED)] == [second.id]
        assert executor.list_jobs(limit=0) == []

    @pytest.mark.asyncio
    async def test_logs_tail(self, executor):
        """get_job_logs returns the last N lines when tail is given."""
        job = executor.submit(make_request("for i in range(5): print(i)"))
        await drain(executor)

        assert executor.get_job_logs(job.id) == ["0", "1", "2", "3", "4"]
        assert executor.get_job_logs(job.id, tail=2) == ["3", "4"]

    @pytest.mark.asyncio
    async def test_log_buffer_keeps_newest_lines(self, bus):
        """Stored logs are capped at log_buffer_lines, oldest dropped first."""
        executor = JobExecutor(bus, python_executable=PYTHON, log_buffer_lines=10)
        job = executor.submit(make_request("for i in range(50): print(i)"))
        await drain(executor)

        assert executor.get_job_logs(job.id) == [str(i) for i in range(40, 50)]
        assert executor.get_job_logs(job.id, tail=3) == ["47", "48", "49"]
        assert executor.get_job(job.id).status == JobStatus.COMPLETED

    def test_unknown_ids(self, executor):
        """Unknown ids read as None and empty logs."""
        assert executor.get_job("missing") is None
        assert executor.get_job_logs("missing") == []
        assert executor.current_job is None

    @pytest.mark.asyncio
    async def test_history_limit_evicts_oldest(self, bus):
        """Terminal jobs beyond max_job_history are forgotten oldest first."""
        executor = JobExecutor(bus, python_executable=PYTHON, max_job_history=2)
        jobs = [executor.submit(make_request("pass", name=f"job-{i}")) for i in range(3)]
        await drain(executor)

        assert executor.get_job(jobs[0].id) is None
        assert executor.get_job(jobs[1].id) is not None
        assert executor.get_job(jobs[2].id) is not None
