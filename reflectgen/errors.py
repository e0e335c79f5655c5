"""
Error taxonomy for the reflection pipeline.

Every error raised out of the pipeline derives from ReflectionError so
triggers can apply their visibility policy with a single except clause.
"""

from __future__ import annotations

from enum import Enum


class Channel(str, Enum):
    """The two reflection channels."""

    RUNNER = "runner"
    EXTRACTOR = "extractor"


class ReflectionError(Exception):
    """Base class for all pipeline errors."""


class LayoutNotFound(ReflectionError):
    """Raised when no project root or entrypoint can be located."""


class CompilerConfigInvalid(ReflectionError):
    """Raised when pyproject.toml cannot be read or [tool.reflectgen] is malformed."""


class RunnerError(ReflectionError):
    """Base class for failures of the isolated runner."""

    def __init__(self, message: str, diagnostics: str = ""):
        super().__init__(message)
        self.diagnostics = diagnostics

    def __str__(self) -> str:
        message = super().__str__()
        if self.diagnostics:
            return f"{message}\n\n{self.diagnostics.rstrip()}"
        return message


class SpawnFailure(RunnerError):
    """Raised when the child process could not be started."""


class TimedOut(RunnerError):
    """Raised when the child produced no result within the timeout."""


class RunnerProtocolError(RunnerError):
    """Raised when the structured channel carried a malformed payload.

    This can happen when:
    - The child exited without sending any message
    - The message is not valid JSON or misses required fields
    - The message was produced by an incompatible protocol version
    """


class RunnerFailure(RunnerError):
    """Raised when the child exited non-zero or reported an error."""


class ExtractionFailure(ReflectionError):
    """Raised for unrecoverable static analysis errors.

    Per-file syntax errors are not reported this way; those files are
    skipped and extraction continues.
    """


class PartialReflectionFailure(ReflectionError):
    """Raised when exactly one of the two channels failed."""

    def __init__(self, channel: Channel, cause: BaseException):
        super().__init__(f"{channel.value} channel failed: {cause}")
        self.channel = channel
        self.cause = cause


class ReflectionFailure(ReflectionError):
    """Raised when both channels failed."""

    def __init__(self, runner_error: BaseException, extractor_error: BaseException):
        super().__init__(f"both channels failed:\n  runner: {runner_error}\n  extractor: {extractor_error}")
        self.runner_error = runner_error
        self.extractor_error = extractor_error


class ReflectionAborted(ReflectionError):
    """Raised when a run was aborted before it could commit."""


class ArtifactWriteFailure(ReflectionError):
    """Raised when generated artifacts could not be written."""
