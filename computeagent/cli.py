"""CLI for the local compute agent: run the agent and drive it over its local API."""

from __future__ import annotations

import json
import logging
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import click

from computeagent import __version__
from computeagent.client import LocalComputeClient
from computeagent.config import load_config
from computeagent.errors import AgentNotRunningError, ComputeAgentError
from computeagent.schemas import ExecuteResult, Job, JobStatus, JobSubmitRequest

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

FOLLOW_POLL_INTERVAL = 1.0  # seconds
STARTUP_WAIT = 15.0  # seconds for a daemonized agent to answer /health
STOP_WAIT = 15.0  # seconds for the agent process to exit


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
    )


@contextmanager
def _agent_client(ctx: click.Context) -> Iterator[LocalComputeClient]:
    """Client for the agent addressed by the group options.

    Agent errors become click errors so commands exit non-zero with a message.
    """
    config = ctx.obj["config"]
    client = LocalComputeClient(host=config.api_host, port=config.api_port)
    try:
        yield client
    except ComputeAgentError as e:
        raise click.ClickException(str(e)) from e
    finally:
        client.close()


def _parse_env(pairs: tuple[str, ...]) -> dict[str, str]:
    environment = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{pair}'", param_hint="--env")
        environment[key] = value
    return environment


def _echo_job(job: Job) -> None:
    click.echo(f"Job:      {job.id}")
    click.echo(f"Name:     {job.name}")
    click.echo(f"Status:   {job.status.value}")
    click.echo(f"Priority: {job.priority}")
    if job.exit_code is not None:
        click.echo(f"Exit:     {job.exit_code}")
    if job.metrics is not None:
        click.echo(f"Duration: {job.metrics.duration_seconds:.2f}s")
    if job.error:
        click.echo(f"Error:    {job.error}")


def _echo_result(result: ExecuteResult) -> None:
    for output in result.outputs:
        if output.type == "stream" and output.name == "stderr":
            click.echo(output.text, nl=False, err=True)
        elif output.type == "stream":
            click.echo(output.text, nl=False)
        else:
            click.echo(f"Out[{result.execution_count}]: {output.text}")
    if result.error is not None:
        for line in result.error.traceback or [f"{result.error.name}: {result.error.value}"]:
            click.echo(line, err=True)


def _follow_logs(client: LocalComputeClient, job_id: str) -> Job:
    """Print new log lines until the job reaches a terminal state."""
    seen = 0
    while True:
        job = client.get_job(job_id)
        logs = client.get_job_logs(job_id)
        for line in logs[seen:]:
            click.echo(line)
        seen = len(logs)
        if job.status.is_terminal:
            return job
        time.sleep(FOLLOW_POLL_INTERVAL)


@click.group()
@click.version_option(version=__version__, prog_name="computeagent")
@click.option("--host", default=None, help="Local API host (default 127.0.0.1)")
@click.option("--port", default=None, type=int, help="Local API port (default 9200)")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, host: str | None, port: int | None, verbose: bool) -> None:
    """Compute Agent - run jobs and Python kernels on this machine.

    Start the agent once, then submit jobs or execute code against it.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config"] = load_config(api_host=host, api_port=port)


# --- Agent lifecycle ---


@main.command()
@click.option("--name", default=None, help="Agent name shown on the gateway (defaults to hostname)")
@click.option("--gateway-url", default=None, help="Orchestration gateway base URL")
@click.option("--idle-timeout", type=float, default=None, help="Stop after N idle minutes (0 disables)")
@click.option("--max-memory-percent", type=click.IntRange(1, 100), default=None, help="Memory share offered to the gateway")
@click.option("--allow-remote-jobs/--no-remote-jobs", default=None, help="Accept jobs from the gateway")
@click.option("--daemonize", "-d", is_flag=True, help="Run the agent in the background")
@click.pass_context
def start(
    ctx: click.Context,
    name: str | None,
    gateway_url: str | None,
    idle_timeout: float | None,
    max_memory_percent: int | None,
    allow_remote_jobs: bool | None,
    daemonize: bool,
) -> None:
    """Start the compute agent.

    \b
    Example:
        computeagent start
        computeagent start --idle-timeout 30 --daemonize
    """
    base = ctx.obj["config"]
    config = load_config(
        name=name,
        gateway_url=gateway_url,
        idle_timeout_minutes=idle_timeout,
        max_memory_percent=max_memory_percent,
        allow_remote_jobs=allow_remote_jobs,
        api_host=base.api_host,
        api_port=base.api_port,
    )

    if daemonize:
        _start_daemon(ctx, config)
        return

    import asyncio

    from computeagent.agent import AgentCore

    _configure_logging(ctx.obj["verbose"])
    click.echo(f"Starting compute agent '{config.name}' on {config.api_host}:{config.api_port}")
    agent = AgentCore(config)
    try:
        asyncio.run(agent.run())
    except ComputeAgentError as e:
        raise click.ClickException(str(e)) from e
    click.echo("Compute agent stopped")


def _start_daemon(ctx: click.Context, config) -> None:
    import subprocess

    from computeagent.agent import read_agent_pid

    pid = read_agent_pid(config.pid_file)
    if pid is not None:
        raise click.ClickException(f"Compute agent already running (pid {pid})")

    config.state_dir.mkdir(parents=True, exist_ok=True)
    log_path = config.state_dir / "agent.log"
    args = [sys.executable, "-m", "computeagent.cli"]
    args += ["--host", config.api_host, "--port", str(config.api_port)]
    if ctx.obj["verbose"]:
        args.append("--verbose")
    args += ["start", "--name", config.name, "--gateway-url", config.gateway_url]
    args += ["--idle-timeout", str(config.idle_timeout_minutes)]
    args += ["--max-memory-percent", str(config.max_memory_percent)]
    args.append("--allow-remote-jobs" if config.allow_remote_jobs else "--no-remote-jobs")

    with open(log_path, "ab") as log_file:
        process = subprocess.Popen(
            args,
            stdin=subprocess.DEVNULL,
            stdout=log_file,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )

    client = LocalComputeClient(host=config.api_host, port=config.api_port)
    try:
        deadline = time.monotonic() + STARTUP_WAIT
        while time.monotonic() < deadline:
            if client.check_health():
                click.echo(f"Compute agent started in background (pid {process.pid})")
                click.echo(f"Logs: {log_path}")
                return
            if process.poll() is not None:
                break
            time.sleep(0.25)
    finally:
        client.close()
    raise click.ClickException(f"Compute agent failed to start, see {log_path}")


@main.command()
@click.pass_context
def stop(ctx: click.Context) -> None:
    """Stop the running compute agent."""
    from computeagent.agent import read_agent_pid

    config = ctx.obj["config"]
    client = LocalComputeClient(host=config.api_host, port=config.api_port)
    try:
        client.shutdown()
    except AgentNotRunningError:
        click.echo("No compute agent is running")
        return
    except ComputeAgentError as e:
        raise click.ClickException(str(e)) from e
    finally:
        client.close()

    deadline = time.monotonic() + STOP_WAIT
    while read_agent_pid(config.pid_file) is not None and time.monotonic() < deadline:
        time.sleep(0.25)
    click.echo("Compute agent stopped")


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Output raw JSON")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show agent status."""
    with _agent_client(ctx) as client:
        info = client.get_status()

    if as_json:
        click.echo(json.dumps(info.model_dump(mode="json"), indent=2))
        return

    click.echo(f"Agent:     {info.name} ({info.id or 'standalone'})")
    click.echo(f"Status:    {info.status} (pid {info.pid}, up {info.uptime or '-'})")
    click.echo(f"Gateway:   {info.gateway.value}")
    click.echo(f"Queue:     {info.queue_depth} queued")
    click.echo(f"Jobs:      {info.jobs_completed} completed, {info.jobs_failed} failed")
    click.echo(f"Compute:   {info.total_compute_time:.1f}s")
    click.echo(f"Kernels:   {info.kernels}")
    if info.current_job is not None:
        click.echo(f"Running:   {info.current_job.name} ({info.current_job.id})")
    if info.hardware is not None:
        hw = info.hardware
        click.echo(f"CPU:       {hw.cpu.model} ({hw.cpu.cores} cores)")
        click.echo(f"Memory:    {hw.memory.total} GB")
        if hw.gpu is not None:
            click.echo(f"GPU:       {hw.gpu.type} ({hw.gpu.api})")


# --- Jobs ---


@main.command()
@click.argument("script")
@click.option("--name", "-n", default=None, help="Job name (defaults to the script file name)")
@click.option("--priority", "-p", type=click.IntRange(0, 100), default=1, help="Higher runs first")
@click.option("--env", "-e", "env", multiple=True, help="Environment override KEY=VALUE")
@click.option("--cwd", default=None, type=click.Path(file_okay=False, resolve_path=True), help="Working directory")
@click.option("--framework", default="generic", help="Framework tag (pytorch, mlx, ...)")
@click.option("--inline", "-c", is_flag=True, help="Treat SCRIPT as inline Python code")
@click.option("--follow", "-f", is_flag=True, help="Stream logs until the job finishes")
@click.pass_context
def submit(
    ctx: click.Context,
    script: str,
    name: str | None,
    priority: int,
    env: tuple[str, ...],
    cwd: str | None,
    framework: str,
    inline: bool,
    follow: bool,
) -> None:
    """Submit a script file or inline Python code as a job.

    \b
    Example:
        computeagent submit train.py --priority 5
        computeagent submit -c "print('hello')" --follow
    """
    path = Path(script)
    if not inline and path.is_file():
        request = JobSubmitRequest(
            name=name or path.name,
            script_path=str(path.resolve()),
            working_dir=cwd or str(path.resolve().parent),
            environment=_parse_env(env),
            priority=priority,
            framework=framework,
        )
    else:
        request = JobSubmitRequest(
            name=name or "inline",
            script=script,
            working_dir=cwd,
            environment=_parse_env(env),
            priority=priority,
            framework=framework,
        )

    with _agent_client(ctx) as client:
        job = client.submit_job(request)
        click.echo(f"Submitted job {job.id} ({job.name})")
        if not follow:
            return
        job = _follow_logs(client, job.id)

    click.echo(f"Job {job.status.value}" + (f" (exit {job.exit_code})" if job.exit_code is not None else ""))
    if job.status != JobStatus.COMPLETED:
        ctx.exit(1)


@main.command(name="list")
@click.option(
    "--status", "-s",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Only jobs with this status",
)
@click.option("--limit", "-l", type=click.IntRange(min=1), default=20, help="Maximum jobs to show")
@click.pass_context
def list_jobs(ctx: click.Context, status: str | None, limit: int) -> None:
    """List jobs, newest first."""
    with _agent_client(ctx) as client:
        jobs = client.list_jobs(status=status, limit=limit)

    if not jobs:
        click.echo("No jobs found.")
        return
    for job in jobs:
        submitted = job.submitted_at.strftime("%Y-%m-%d %H:%M:%S")
        click.echo(f"{job.id}  {job.status.value:<10} p{job.priority:<3} {submitted}  {job.name}")


@main.command()
@click.argument("job_id")
@click.option("--tail", "-t", type=int, default=None, help="Only the last N lines")
@click.option("--follow", "-f", is_flag=True, help="Keep printing until the job finishes")
@click.pass_context
def logs(ctx: click.Context, job_id: str, tail: int | None, follow: bool) -> None:
    """Show a job's output."""
    with _agent_client(ctx) as client:
        if follow:
            _follow_logs(client, job_id)
            return
        lines = client.get_job_logs(job_id, tail=tail)

    for line in lines:
        click.echo(line)


@main.command()
@click.argument("job_id")
@click.pass_context
def cancel(ctx: click.Context, job_id: str) -> None:
    """Cancel a queued or running job."""
    with _agent_client(ctx) as client:
        cancelled = client.cancel_job(job_id)
    if not cancelled:
        raise click.ClickException(f"Job {job_id} not found or already finished")
    click.echo(f"Cancelled job {job_id}")


@main.command(name="exec")
@click.argument("code")
@click.option("--kernel", "-k", "kernel_id", default=None, help="Kernel to run in (created if omitted)")
@click.option("--json", "as_json", is_flag=True, help="Output raw JSON")
@click.pass_context
def exec_code(ctx: click.Context, code: str, kernel_id: str | None, as_json: bool) -> None:
    """Execute Python code in a kernel.

    \b
    Example:
        computeagent exec "import torch; torch.__version__"
        computeagent exec "x += 1; x" --kernel <kernel-id>
    """
    with _agent_client(ctx) as client:
        result = client.execute(code, kernel_id=kernel_id)

    if as_json:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        _echo_result(result)
        if kernel_id is None:
            click.echo(f"[kernel {result.kernel_id}]", err=True)
    if result.status == "error":
        ctx.exit(1)


# --- Kernels ---


@main.group()
def kernel() -> None:
    """Manage interactive Python kernels."""
    pass


@kernel.command(name="create")
@click.pass_context
def kernel_create(ctx: click.Context) -> None:
    """Start a new kernel."""
    with _agent_client(ctx) as client:
        session = client.create_kernel()
    click.echo(f"Created kernel {session.id}")


@kernel.command(name="list")
@click.pass_context
def kernel_list(ctx: click.Context) -> None:
    """List running kernels."""
    with _agent_client(ctx) as client:
        kernels = client.list_kernels()
    if not kernels:
        click.echo("No kernels running.")
        return
    for session in kernels:
        click.echo(f"{session.id}  {session.status.value:<10} executions={session.execution_count}")


@kernel.command(name="shutdown")
@click.argument("kernel_id")
@click.pass_context
def kernel_shutdown(ctx: click.Context, kernel_id: str) -> None:
    """Shut down a kernel."""
    with _agent_client(ctx) as client:
        client.shutdown_kernel(kernel_id)
    click.echo(f"Shut down kernel {kernel_id}")


@kernel.command(name="interrupt")
@click.argument("kernel_id")
@click.pass_context
def kernel_interrupt(ctx: click.Context, kernel_id: str) -> None:
    """Interrupt the code running in a kernel."""
    with _agent_client(ctx) as client:
        client.interrupt_kernel(kernel_id)
    click.echo(f"Interrupted kernel {kernel_id}")


@main.command()
def mcp() -> None:
    """Run the MCP server exposing compute agent tools.

    \b
    Configure in .mcp.json:
        {
            "mcpServers": {
                "computeagent": {
                    "command": "computeagent",
                    "args": ["mcp"]
                }
            }
        }
    """
    from mcp_computeagent.server import mcp as mcp_server
    mcp_server.run()


if __name__ == "__main__":
    main()
