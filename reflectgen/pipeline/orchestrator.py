"""
Reflection orchestrator.

Coordinates one pipeline run:
1. Take the per-project single-flight guard
2. Compute the cache key and return early on a cache hit
3. Run the isolated runner and the context type extractor in parallel
4. Join both channels and commit the artifacts only if both succeeded
"""

from __future__ import annotations

import logging
import multiprocessing
import threading
import time
from collections.abc import Iterator
from concurrent.futures import CancelledError, Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor, wait
from concurrent.futures.process import BrokenProcessPool
from contextlib import contextmanager
from pathlib import Path

import portalocker

from ..config import ReflectionConfig, load_config, read_config_bytes
from ..errors import (
    ArtifactWriteFailure,
    Channel,
    ExtractionFailure,
    PartialReflectionFailure,
    ReflectionAborted,
    ReflectionError,
    ReflectionFailure,
    RunnerError,
    RunnerProtocolError,
)
from ..log import trace
from .cache import ArtifactCache, compute_cache_key
from .extractor.program import ProjectProgram
from .extractor.worker import init_worker, run_extraction
from .models import ArtifactManifest, ContextTypeSignature, ReflectionRequest, SchemaReflection
from .protocol import ErrorResponse, ExtractionResponse, decode_message
from .runner.runner import IsolatedRunner
from .writer.writer import ArtifactWriter

logger = logging.getLogger(__name__)

LOCK_FILE = "reflect.lock"

# How long a run waits for another process's run of the same project
LOCK_TIMEOUT_SECONDS = 600

_POLL_SECONDS = 0.05

_project_locks: dict[Path, threading.Lock] = {}
_project_locks_guard = threading.Lock()


def _project_lock(project_root: Path) -> threading.Lock:
    with _project_locks_guard:
        return _project_locks.setdefault(project_root.resolve(), threading.Lock())


@contextmanager
def single_flight(project_root: Path, cache_dir: Path) -> Iterator[None]:
    """Serialize reflection runs of one project, across threads and processes.

    Raises:
        ArtifactWriteFailure: If the lock file cannot be created
        ReflectionAborted: If another process held the lock for too long
    """
    with _project_lock(project_root):
        try:
            cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArtifactWriteFailure(f"Cannot create {cache_dir}: {e}") from e
        try:
            with portalocker.Lock(str(cache_dir / LOCK_FILE), mode="a", timeout=LOCK_TIMEOUT_SECONDS):
                yield
        except portalocker.exceptions.LockException as e:
            raise ReflectionAborted(f"Another reflection of {project_root} is still running: {e}") from e


class ReflectionOrchestrator:
    """Runs the reflection pipeline.

    One orchestrator runs one reflection at a time; abort() may be called
    from any thread to cancel it.
    """

    def __init__(self, runner: IsolatedRunner | None = None):
        self.runner = runner or IsolatedRunner()
        self._aborted = threading.Event()
        self._commit_lock = threading.Lock()
        self._future: Future | None = None

    def reflect(self, request: ReflectionRequest) -> ArtifactManifest:
        """Bring the project's generated artifacts up to date.

        Args:
            request: What to reflect and how

        Returns:
            The manifest of the artifact set on disk

        Raises:
            CompilerConfigInvalid: If the project config cannot be loaded
            ExtractionFailure: If the source file set cannot be assembled
            PartialReflectionFailure: If exactly one channel failed
            ReflectionFailure: If both channels failed
            ReflectionAborted: If abort() was called before the commit
            ArtifactWriteFailure: If the artifacts could not be written
        """
        with self._commit_lock:
            self._aborted.clear()
            self.runner.reset()
        layout = request.layout
        config_bytes = read_config_bytes(layout.compiler_config_path)
        config = load_config(layout.compiler_config_path)

        with single_flight(layout.project_root, config.cache_path(layout.project_root)):
            if self._aborted.is_set():
                raise ReflectionAborted("Reflection was aborted")
            started = time.monotonic()
            manifest = self._reflect_locked(request, config, config_bytes)
            logger.debug("reflection of %s took %.2fs", layout.project_root, time.monotonic() - started)
            return manifest

    def abort(self) -> None:
        """Cancel the run in flight; nothing it produced will be committed."""
        with self._commit_lock:
            self._aborted.set()
        logger.debug("aborting reflection")
        self.runner.abort()
        future = self._future
        if future is not None:
            future.cancel()

    def _reflect_locked(self, request: ReflectionRequest, config: ReflectionConfig, config_bytes: bytes) -> ArtifactManifest:
        layout = request.layout
        program = ProjectProgram(layout.project_root, config)
        key = compute_cache_key(config_bytes, program.fingerprint(), salt=request.mode.value)
        output_dir = config.output_path(layout.project_root)
        cache = ArtifactCache(output_dir, layout.project_root)

        if not request.force:
            manifest = cache.lookup(key)
            if manifest is not None:
                logger.info("Generated types are up to date")
                return manifest

        logger.info("Reflecting %s", layout.entrypoint_path)
        reflection, signatures = self._run_channels(request, config)

        with self._commit_lock:
            if self._aborted.is_set():
                raise ReflectionAborted("Reflection was aborted")
            manifest = ArtifactWriter(output_dir, layout.project_root, cache=cache).write(reflection, signatures)
            cache.store(key, manifest)
        return manifest

    def _run_channels(
        self, request: ReflectionRequest, config: ReflectionConfig
    ) -> tuple[SchemaReflection, list[ContextTypeSignature]]:
        layout = request.layout
        executor = self._make_executor(config)
        runner_error: RunnerError | None = None
        reflection: SchemaReflection | None = None
        try:
            self._future = executor.submit(run_extraction, layout.to_data(), config.to_dict())
            try:
                reflection = self.runner.run(layout, request.timeout_ms, request.mode)
            except RunnerError as e:
                runner_error = e
            if self._aborted.is_set():
                raise ReflectionAborted("Reflection was aborted")
            signatures, extractor_error = self._join(self._future, request.diagnostic_level)
        finally:
            self._future = None
            executor.shutdown(wait=not self._aborted.is_set(), cancel_futures=True)

        if runner_error is not None and extractor_error is not None:
            raise ReflectionFailure(runner_error, extractor_error)
        if runner_error is not None:
            raise PartialReflectionFailure(Channel.RUNNER, runner_error) from runner_error
        if extractor_error is not None:
            raise PartialReflectionFailure(Channel.EXTRACTOR, extractor_error) from extractor_error
        return reflection, signatures

    @staticmethod
    def _make_executor(config: ReflectionConfig) -> Executor:
        if config.extract_in_worker:
            return ProcessPoolExecutor(
                max_workers=1,
                mp_context=multiprocessing.get_context("spawn"),
                initializer=init_worker,
            )
        return ThreadPoolExecutor(max_workers=1, thread_name_prefix="reflectgen-extractor")

    def _join(self, future: Future, diagnostic_level: int) -> tuple[list[ContextTypeSignature], ReflectionError | None]:
        """Wait for the extractor, decoding its message.

        Raises:
            ReflectionAborted: If abort() was called while waiting
        """
        while not future.done():
            if self._aborted.is_set():
                raise ReflectionAborted("Reflection was aborted")
            wait([future], timeout=_POLL_SECONDS)

        try:
            encoded = future.result()
        except CancelledError as e:
            raise ReflectionAborted("Reflection was aborted") from e
        except BrokenProcessPool as e:
            return [], ExtractionFailure(f"Extractor worker died: {e}")
        except Exception as e:
            logger.debug("extractor raised", exc_info=True)
            return [], ExtractionFailure(f"Extractor crashed: {type(e).__name__}: {e}")

        try:
            message = decode_message(encoded)
        except RunnerProtocolError as e:
            return [], e
        if isinstance(message, ErrorResponse):
            return [], ExtractionFailure(message.message)
        if not isinstance(message, ExtractionResponse):
            return [], RunnerProtocolError(f"Unexpected {type(message).__name__} message from the extractor")

        for diagnostic in message.diagnostics:
            logger.log(diagnostic_level, diagnostic)
        trace(logger, "extractor returned %d signature(s)", len(message.signatures))
        return message.signatures, None
