"""Best-effort probe of local CPU, memory, GPU and ML frameworks."""

from __future__ import annotations

import importlib.metadata
import importlib.util
import logging
import os
import platform
import shutil
import socket
import subprocess

from computeagent.schemas import CPUInfo, FrameworkInfo, GPUInfo, HardwareInfo, MemoryInfo

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 5  # seconds

# (import name, distribution name, display name)
KNOWN_FRAMEWORKS = [
    ("torch", "torch", "PyTorch"),
    ("tensorflow", "tensorflow", "TensorFlow"),
    ("jax", "jax", "JAX"),
    ("mlx", "mlx", "MLX"),
    ("numpy", "numpy", "NumPy"),
]

GB = 1024 ** 3


def _run(command: list[str]) -> str | None:
    """Run a probe command, returning stdout or None on any failure."""
    if not shutil.which(command[0]):
        return None
    try:
        result = subprocess.run(
            command,
            capture_output=True,
            text=True,
            timeout=PROBE_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"Probe {command[0]} failed: {e}")
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def _detect_memory() -> MemoryInfo:
    total = available = 0.0
    try:
        page_size = os.sysconf("SC_PAGE_SIZE")
        total = os.sysconf("SC_PHYS_PAGES") * page_size / GB
        available = os.sysconf("SC_AVPHYS_PAGES") * page_size / GB
    except (ValueError, OSError, AttributeError):
        pass
    if not total and platform.system() == "Darwin":
        raw = _run(["sysctl", "-n", "hw.memsize"])
        if raw and raw.isdigit():
            total = int(raw) / GB
    unified = platform.system() == "Darwin" and platform.machine() == "arm64"
    return MemoryInfo(total=round(total, 1), available=round(available, 1), unified=unified)


def _detect_cpu() -> CPUInfo:
    model = platform.processor() or platform.machine() or "unknown"
    if platform.system() == "Darwin":
        model = _run(["sysctl", "-n", "machdep.cpu.brand_string"]) or model
    return CPUInfo(model=model, cores=os.cpu_count() or 1)


def _detect_gpu(cpu: CPUInfo, memory: MemoryInfo) -> GPUInfo | None:
    if memory.unified and cpu.model.startswith("Apple M"):
        return GPUInfo(
            type=cpu.model,
            memory=memory.total,
            api="Metal 3",
            neural_engine=True,
        )

    raw = _run([
        "nvidia-smi",
        "--query-gpu=name,memory.total,compute_cap",
        "--format=csv,noheader,nounits",
    ])
    if raw:
        first = raw.splitlines()[0]
        parts = [p.strip() for p in first.split(",")]
        if len(parts) >= 2:
            try:
                gpu_memory = float(parts[1]) / 1024
            except ValueError:
                gpu_memory = 0.0
            return GPUInfo(
                type=parts[0],
                memory=round(gpu_memory, 1),
                api="CUDA",
                compute_capability=parts[2] if len(parts) > 2 else None,
            )
    return None


def _detect_frameworks(gpu: GPUInfo | None) -> list[FrameworkInfo]:
    frameworks = []
    for module_name, dist_name, display in KNOWN_FRAMEWORKS:
        available = importlib.util.find_spec(module_name) is not None
        version = None
        if available:
            try:
                version = importlib.metadata.version(dist_name)
            except importlib.metadata.PackageNotFoundError:
                pass
        frameworks.append(FrameworkInfo(
            name=display,
            version=version,
            available=available,
            gpu_support=available and gpu is not None and display != "NumPy",
        ))
    return frameworks


def detect_hardware() -> HardwareInfo:
    """Probe the local machine. Never raises; unknown values fall back to defaults."""
    cpu = _detect_cpu()
    memory = _detect_memory()
    gpu = _detect_gpu(cpu, memory)
    return HardwareInfo(
        platform=platform.system().lower(),
        arch=platform.machine(),
        hostname=socket.gethostname(),
        cpu=cpu,
        memory=memory,
        gpu=gpu,
        frameworks=_detect_frameworks(gpu),
    )
