"""
Child process side of the isolated runner.

Run as ``python -m reflectgen.pipeline.runner.child``. Reads one
run-request message from stdin and writes exactly one reflection or
error message to the structured channel (the real stdout). Anything
the application prints goes to stderr.
"""

from __future__ import annotations

import os
import sys
import traceback
from typing import TextIO

from ...runtime import app
from ..protocol import ErrorResponse, ReflectionResponse, RunRequest, decode_message, encode_message
from .startup import EntryDescriptor, plan_for


def claim_channel() -> TextIO:
    """Take over fd 1 for messages and point stdout (fd and object) at stderr."""
    sys.stdout.flush()
    channel_fd = os.dup(1)
    os.dup2(2, 1)
    sys.stdout = sys.stderr
    return os.fdopen(channel_fd, "w", encoding="utf-8")


def send(channel: TextIO, message) -> None:
    channel.write(encode_message(message) + "\n")
    channel.flush()


def main() -> int:
    channel = claim_channel()
    try:
        request = decode_message(sys.stdin.read())
        if not isinstance(request, RunRequest):
            raise ValueError(f"expected a run-request message, got {type(request).__name__}")
        descriptor = EntryDescriptor.from_dict(request.descriptor)
    except Exception as e:
        send(channel, ErrorResponse(type(e).__name__, f"invalid run request: {e}"))
        return 2

    try:
        state = plan_for(descriptor).execute(app)
    except Exception as e:
        send(channel, ErrorResponse(type(e).__name__, str(e), traceback.format_exc()))
        return 1

    if state.reflection is not None:
        send(channel, ReflectionResponse(state.reflection))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
