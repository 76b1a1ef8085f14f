"""Interpreter loop run inside each kernel subprocess.

Started as ``python -u kernel_driver.py <ready-token>``. Requests arrive as
one JSON object per line on stdin::

    {"op": "execute", "exec_id": "...", "code": "..."}
    {"op": "quit"}

Replies are JSON frames, one per line, on a private duplicate of the
original stdout. File descriptor 1 is pointed at stderr, and ``sys.stdout``
/ ``sys.stderr`` are replaced by writers that wrap user output in
``stream`` frames, so nothing user code prints can be read as a control
frame. Every frame of an execution carries its ``exec_id``.

SIGINT only interrupts user code. One arriving between executions, or
while the driver itself is framing output, is ignored or held until the
frame is written, so an interrupt never kills the kernel.

This file only uses the standard library: it runs under whatever
interpreter the agent is configured with.
"""

import ast
import builtins
import io
import json
import os
import signal
import sys
import threading
import traceback

# Split large writes so a single frame stays well under the reader limit
MAX_FRAME_TEXT = 64 * 1024

_lock = threading.Lock()
_channel = None
_current_exec = None
# Set while user code runs on the main thread
_interruptible = False
_deferred = False


def _on_sigint(signum, frame):
    global _deferred
    if _interruptible:
        raise KeyboardInterrupt
    if _current_exec is not None:
        _deferred = True


def _emit(frame):
    global _interruptible, _deferred
    data = json.dumps(frame) + "\n"
    masked = _interruptible and threading.current_thread() is threading.main_thread()
    if masked:
        _interruptible = False
    try:
        with _lock:
            _channel.write(data)
            _channel.flush()
    finally:
        if masked:
            _interruptible = True
    if masked and _deferred:
        _deferred = False
        raise KeyboardInterrupt


class _FrameWriter(io.TextIOBase):
    """Text stream that forwards writes as stream frames."""

    def __init__(self, name):
        self.name = name

    def writable(self):
        return True

    def write(self, text):
        if not isinstance(text, str):
            raise TypeError("write() argument must be str, not %s" % type(text).__name__)
        for start in range(0, len(text), MAX_FRAME_TEXT):
            _emit({
                "type": "stream",
                "exec_id": _current_exec,
                "name": self.name,
                "text": text[start:start + MAX_FRAME_TEXT],
            })
        return len(text)

    def flush(self):
        pass

    def isatty(self):
        return False


def _redirect():
    global _channel
    _channel = os.fdopen(os.dup(1), "w", encoding="utf-8", errors="replace")
    # C-level writes to fd 1 now land on stderr, outside the frame channel
    os.dup2(2, 1)
    sys.stdout = _FrameWriter("stdout")
    sys.stderr = _FrameWriter("stderr")


def _preload(namespace):
    """Import common ML libraries when they are installed."""
    try:
        import numpy as np
        namespace["np"] = np
    except ImportError:
        pass
    try:
        import torch
        if torch.backends.mps.is_available():
            print("MPS (Apple Silicon GPU) is available")
    except ImportError:
        pass
    except Exception:
        pass
    try:
        import mlx  # noqa: F401
        print("MLX (Apple ML framework) is available")
    except ImportError:
        pass


def _format_error(exc):
    lines = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return {
        "name": type(exc).__name__,
        "value": str(exc),
        "traceback": "".join(lines).splitlines(),
    }


def _run_cell(exec_id, code, namespace):
    global _current_exec, _interruptible, _deferred
    _current_exec = exec_id
    try:
        _emit({"type": "start", "exec_id": exec_id})
        try:
            tree = ast.parse(code, "<cell>", "exec")
            last_expr = None
            if tree.body and isinstance(tree.body[-1], ast.Expr):
                last_expr = ast.Expression(tree.body.pop().value)
            value = None
            _deferred = False
            _interruptible = True
            try:
                exec(compile(tree, "<cell>", "exec"), namespace)
                if last_expr is not None:
                    value = eval(compile(last_expr, "<cell>", "eval"), namespace)
            finally:
                _interruptible = False
            if value is not None:
                namespace["_"] = value
                _emit({"type": "result", "exec_id": exec_id, "text": repr(value)})
        except (Exception, KeyboardInterrupt) as exc:
            frame = _format_error(exc)
            frame.update({"type": "error", "exec_id": exec_id})
            _emit(frame)
    finally:
        _current_exec = None
        _deferred = False
        _emit({"type": "end", "exec_id": exec_id})


def main():
    ready_token = sys.argv[1] if len(sys.argv) > 1 else "__KERNEL_READY__"
    requests = sys.stdin
    sys.stdin = io.StringIO()

    signal.signal(signal.SIGINT, _on_sigint)
    _redirect()
    namespace = {"__name__": "__main__", "__builtins__": builtins}
    _preload(namespace)
    _emit({"type": "ready", "token": ready_token})

    while True:
        line = requests.readline()
        if not line:
            break
        try:
            request = json.loads(line)
        except ValueError:
            continue
        op = request.get("op")
        if op == "quit":
            break
        if op == "execute":
            _run_cell(request.get("exec_id"), request.get("code", ""), namespace)


if __name__ == "__main__":
    main()
