"""MCP server exposing compute agent tools."""

import os

import httpx
from mcp.server.fastmcp import FastMCP

mcp = FastMCP("computeagent")
AGENT = os.environ.get("COMPUTE_AGENT_URL", "http://127.0.0.1:9200")


async def _request(method: str, path: str, timeout: float = 30.0, **kwargs) -> dict:
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            r = await client.request(method, f"{AGENT}{path}", **kwargs)
    except httpx.ConnectError:
        return {"error": f"No compute agent at {AGENT}. Start one with: computeagent start"}
    return r.json()


@mcp.tool()
async def submit_job(
    script: str | None = None,
    script_path: str | None = None,
    name: str = "mcp-job",
    priority: int = 1,
    environment: dict[str, str] | None = None,
    working_dir: str | None = None,
) -> dict:
    """Queue a Python script (inline source or a file path) on the local agent.

    Higher priority jobs run first; one job runs at a time.
    """
    return await _request("POST", "/jobs", json={
        "name": name,
        "script": script,
        "script_path": script_path,
        "priority": priority,
        "environment": environment or {},
        "working_dir": working_dir,
    })


@mcp.tool()
async def job_status(job_id: str) -> dict:
    """Get a job's status, exit code and error."""
    job = await _request("GET", f"/jobs/{job_id}")
    job.pop("logs", None)
    return job


@mcp.tool()
async def job_logs(job_id: str, tail: int = 100) -> dict:
    """Get the last `tail` lines of a job's output."""
    return await _request("GET", f"/jobs/{job_id}/logs", params={"tail": tail})


@mcp.tool()
async def execute_code(code: str, kernel_id: str | None = None) -> dict:
    """Execute Python code in a persistent kernel.

    Omit kernel_id to start a new kernel; pass the returned kernel_id to
    keep state between calls. The value of a trailing expression is returned
    as an execute_result output.
    """
    return await _request(
        "POST",
        "/execute",
        timeout=330.0,
        json={"code": code, "kernel_id": kernel_id},
    )


@mcp.tool()
async def agent_status() -> dict:
    """Agent status: queue depth, running job, kernels, gateway and hardware."""
    return await _request("GET", "/status")


if __name__ == "__main__":
    mcp.run()
