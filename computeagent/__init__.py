"""Local compute agent.

Runs script jobs and interactive Python kernels on this machine, exposes
them over a local HTTP API, and registers the machine with a remote
orchestration gateway.
"""

__version__ = "0.1.0"
