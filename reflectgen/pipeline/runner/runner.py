"""
Isolated runner: executes the user's application in a fresh Python
process, in reflection mode, and captures its API surface.

The child is started in its own session so that anything the
application spawns can be killed with it; no descendant outlives a run.
"""

from __future__ import annotations

import contextlib
import logging
import os
import signal
import subprocess
import sys
import threading
from enum import Enum
from typing import IO

from ...errors import ReflectionAborted, RunnerFailure, RunnerProtocolError, SpawnFailure, TimedOut
from ...layout import Layout
from ...log import trace
from ..models import ReflectionMode, SchemaReflection
from ..protocol import ErrorResponse, ReflectionResponse, RunRequest, decode_message, encode_message
from .startup import STAGE_REFLECTION, EntryDescriptor

logger = logging.getLogger(__name__)

CHILD_MODULE = "reflectgen.pipeline.runner.child"

# How long output pipes are drained once the child is gone
PIPE_DRAIN_SECONDS = 2.0


class RunnerState(str, Enum):
    IDLE = "idle"
    SPAWNING = "spawning"
    RUNNING = "running"
    CAPTURING_OUTPUT = "capturing_output"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


def kill_process_tree(process: subprocess.Popen) -> None:
    """Kill the child and every process left in its session."""
    if sys.platform == "win32":
        if process.poll() is None:
            process.kill()
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass  # Session already empty


class _PipeReader:
    """Drains one output pipe on a daemon thread."""

    def __init__(self, pipe: IO[bytes]):
        self._pipe = pipe
        self._chunks: list[bytes] = []
        self._thread = threading.Thread(target=self._drain, daemon=True)
        self._thread.start()

    def _drain(self) -> None:
        with self._pipe:
            for chunk in iter(lambda: self._pipe.read1(65536), b""):
                self._chunks.append(chunk)

    def collect(self, timeout: float) -> str:
        """What was read so far, waiting up to timeout for end of file."""
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.debug("output pipe still open after %.1fs, using what was read", timeout)
        return b"".join(self._chunks).decode("utf-8", errors="replace")


class IsolatedRunner:
    """Runs one reflection at a time in a child process.

    abort() may be called from another thread; it kills the child and the
    pending run() raises ReflectionAborted. An abort that arrives before
    the child is spawned prevents the spawn; reset() clears it.
    """

    def __init__(self, python_executable: str | None = None, child_module: str = CHILD_MODULE):
        self.python_executable = python_executable or sys.executable
        self.child_module = child_module
        self.state = RunnerState.IDLE
        self._process: subprocess.Popen | None = None
        self._lock = threading.Lock()
        self._aborted = False

    def reset(self) -> None:
        """Forget an earlier abort()."""
        with self._lock:
            self._aborted = False

    def run(
        self,
        layout: Layout,
        timeout_ms: int | None,
        mode: ReflectionMode = ReflectionMode.ARTIFACTS_ONLY,
    ) -> SchemaReflection:
        """Reflect the application described by layout.

        Args:
            layout: Project layout
            timeout_ms: Kill the child after this many milliseconds, None for no limit
            mode: Whether to also report registered plugins

        Returns:
            The schema reflection sent by the child

        Raises:
            SpawnFailure: If the child process cannot be started
            TimedOut: If the child did not finish within timeout_ms
            RunnerFailure: If the child exited non-zero or reported an error
            RunnerProtocolError: If the channel payload is missing or malformed
            ReflectionAborted: If abort() was called before or during the run
        """
        descriptor = EntryDescriptor(
            project_root=str(layout.project_root),
            entrypoint_path=str(layout.entrypoint_path),
            stage=STAGE_REFLECTION,
            include_plugins=mode is ReflectionMode.FULL,
        )
        request = encode_message(RunRequest(descriptor.to_dict())).encode("utf-8")

        with self._lock:
            if self._aborted:
                self.state = RunnerState.FAILED
                raise ReflectionAborted("Reflection was aborted")
            self.state = RunnerState.SPAWNING
            trace(logger, "spawning %s for %s", self.child_module, layout.entrypoint_path)
            try:
                self._process = subprocess.Popen(
                    [self.python_executable, "-m", self.child_module],
                    cwd=str(layout.project_root),
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    start_new_session=True,
                )
            except OSError as e:
                self.state = RunnerState.FAILED
                raise SpawnFailure(f"Could not start {self.python_executable}: {e}") from e
            process = self._process
            self.state = RunnerState.RUNNING

        # Descendants inherit the output pipes, so the child's exit is what ends the run
        stdout_reader = _PipeReader(process.stdout)
        stderr_reader = _PipeReader(process.stderr)
        self._send_request(process, request)
        timeout = None if timeout_ms is None else timeout_ms / 1000
        try:
            process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            kill_process_tree(process)
            process.wait()
            self.state = RunnerState.TIMED_OUT
            raise TimedOut(f"Reflection did not finish within {timeout_ms} ms", stderr_reader.collect(PIPE_DRAIN_SECONDS))
        finally:
            kill_process_tree(process)
            self._process = None

        stdout = stdout_reader.collect(PIPE_DRAIN_SECONDS)
        stderr = stderr_reader.collect(PIPE_DRAIN_SECONDS)
        self.state = RunnerState.CAPTURING_OUTPUT
        if self._aborted:
            self.state = RunnerState.FAILED
            raise ReflectionAborted("Reflection was aborted")

        try:
            reflection = self._interpret(process.returncode, stdout, stderr)
        except (RunnerFailure, RunnerProtocolError):
            self.state = RunnerState.FAILED
            raise
        self.state = RunnerState.SUCCEEDED
        trace(logger, "reflection succeeded with %d type(s)", len(reflection.types))
        return reflection

    def abort(self) -> None:
        """Force-kill the running child and its descendants, if any."""
        with self._lock:
            self._aborted = True
            process = self._process
        if process is not None:
            logger.debug("killing reflection child pid=%s", process.pid)
            kill_process_tree(process)

    @staticmethod
    def _send_request(process: subprocess.Popen, request: bytes) -> None:
        try:
            process.stdin.write(request)
            process.stdin.flush()
        except BrokenPipeError:
            trace(logger, "child exited before reading its request")
        finally:
            with contextlib.suppress(BrokenPipeError):
                process.stdin.close()

    @staticmethod
    def _interpret(returncode: int, stdout: str, stderr: str) -> SchemaReflection:
        lines = [line for line in stdout.splitlines() if line.strip()]
        message = None
        if len(lines) == 1:
            message = decode_message(lines[0])
        elif len(lines) > 1:
            raise RunnerProtocolError(f"Expected one message on the channel, got {len(lines)}", stderr)

        if isinstance(message, ErrorResponse):
            raise RunnerFailure(
                f"Application failed during reflection: {message.error_type}: {message.message}",
                message.traceback or stderr,
            )
        if returncode != 0:
            raise RunnerFailure(f"Reflection process exited with code {returncode}", stderr)
        if message is None:
            raise RunnerProtocolError("Reflection process exited without sending a result", stderr)
        if not isinstance(message, ReflectionResponse):
            raise RunnerProtocolError(f"Unexpected {type(message).__name__} message from the reflection process", stderr)
        return SchemaReflection(message.reflection)
