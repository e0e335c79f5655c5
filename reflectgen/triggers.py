"""
Triggers: the ways a reflection run gets started.

Each trigger owns its visibility policy:
    explicit    errors go to stderr and the exit code is 1
    background  never fails, errors are only logged at TRACE level
    watch       errors are logged as warnings and the previous types stay
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

import click
from watchfiles import Change, DefaultFilter, watch

from .config import load_config
from .errors import ReflectionError
from .layout import Layout
from .log import TRACE, trace
from .pipeline.models import ReflectionMode, ReflectionRequest
from .pipeline.orchestrator import ReflectionOrchestrator

logger = logging.getLogger(__name__)

WATCH_DEBOUNCE_MS = 300


def run_explicit(request: ReflectionRequest, orchestrator: ReflectionOrchestrator | None = None) -> int:
    """Run the pipeline on user request.

    Returns:
        The process exit code: 0 on success, 1 on failure
    """
    orchestrator = orchestrator or ReflectionOrchestrator()
    try:
        manifest = orchestrator.reflect(request)
    except ReflectionError as e:
        click.echo(f"reflectgen: {e}", err=True)
        return 1
    logger.info("Generated types are current (%d files, %s)", len(manifest.files), manifest.content_hash[:12])
    return 0


def run_background(layout: Layout, orchestrator: ReflectionOrchestrator | None = None) -> int:
    """Run the pipeline after a dependency install.

    Never fails the surrounding command.

    Returns:
        Always 0
    """
    orchestrator = orchestrator or ReflectionOrchestrator()
    try:
        config = load_config(layout.compiler_config_path)
        orchestrator.reflect(
            ReflectionRequest(layout, timeout_ms=config.background_timeout_ms, diagnostic_level=TRACE)
        )
    except Exception as e:
        trace(logger, "background type generation failed: %s", e, exc_info=True)
    return 0


class ReflectionInputFilter(DefaultFilter):
    """Accepts Python sources and the compiler config, minus generated output."""

    def __init__(self, layout: Layout, output_dir: str, cache_dir: str):
        super().__init__()
        root = layout.project_root.resolve()
        self.config_path = layout.compiler_config_path.resolve().as_posix()
        self.ignored_prefixes = [f"{(root / d).as_posix().rstrip('/')}/" for d in (output_dir, cache_dir)]

    def __call__(self, change: Change, path: str) -> bool:
        if not super().__call__(change, path):
            return False
        p = path.replace("\\", "/")
        if any(p.startswith(prefix) for prefix in self.ignored_prefixes):
            return False
        return p.endswith(".py") or p == self.config_path


def run_watch(
    layout: Layout,
    orchestrator: ReflectionOrchestrator | None = None,
    stop_event: threading.Event | None = None,
    max_iterations: int | None = None,
    mode: ReflectionMode = ReflectionMode.ARTIFACTS_ONLY,
) -> int:
    """Regenerate types whenever sources or the config change.

    Args:
        layout: Project to watch
        orchestrator: Orchestrator to run reflections with
        stop_event: Set to stop watching
        max_iterations: Stop after this many change batches
        mode: What the runtime channel reports

    Returns:
        The process exit code, 0 once watching stops
    """
    orchestrator = orchestrator or ReflectionOrchestrator()
    _reflect_for_watch(orchestrator, layout, mode)
    if max_iterations == 0 or (stop_event is not None and stop_event.is_set()):
        return 0

    config = load_config(layout.compiler_config_path)
    watch_filter = ReflectionInputFilter(layout, config.output_dir, config.cache_dir)
    logger.info("Watching %s for changes", layout.project_root)
    iterations = 0
    for changes in watch(
        str(layout.project_root),
        watch_filter=watch_filter,
        debounce=WATCH_DEBOUNCE_MS,
        stop_event=stop_event,
        raise_interrupt=False,
    ):
        _log_changes(changes, layout)
        _reflect_for_watch(orchestrator, layout, mode)
        iterations += 1
        if max_iterations is not None and iterations >= max_iterations:
            break
    return 0


def _reflect_for_watch(orchestrator: ReflectionOrchestrator, layout: Layout, mode: ReflectionMode) -> bool:
    try:
        config = load_config(layout.compiler_config_path)
        orchestrator.reflect(ReflectionRequest(layout, mode=mode, timeout_ms=config.watch_timeout_ms))
    except ReflectionError as e:
        logger.warning("Type generation failed, keeping the previous types: %s", e)
        return False
    return True


def _log_changes(changes: Iterable[tuple[Change, str]], layout: Layout) -> None:
    for change, path in sorted(changes, key=lambda c: c[1]):
        logger.debug("%s %s", change.name, path)
    logger.info("Change detected in %s, regenerating types", layout.project_root)
