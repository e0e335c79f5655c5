"""
Versioned message schema for the runner and extractor channels.

Every message is a single JSON object:

    {"version": 1, "type": "<tag>", "data": {...}}

Tags:
    run-request  parent -> runner child: the entry descriptor to execute
    reflection   runner child -> parent: the schema reflection payload
    extraction   extractor worker -> orchestrator: signatures and diagnostics
    error        either direction: a failure report

Messages are validated on receipt; anything unexpected raises
RunnerProtocolError.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from ..errors import RunnerProtocolError
from .models import ContextTypeSignature

PROTOCOL_VERSION = 1


@dataclass(frozen=True)
class RunRequest:
    TAG = "run-request"

    descriptor: dict[str, Any]

    def data(self) -> dict:
        return {"descriptor": self.descriptor}


@dataclass(frozen=True)
class ReflectionResponse:
    TAG = "reflection"

    reflection: dict[str, Any]

    def data(self) -> dict:
        return {"reflection": self.reflection}


@dataclass(frozen=True)
class ExtractionResponse:
    TAG = "extraction"

    signatures: list[ContextTypeSignature]
    diagnostics: list[str] = field(default_factory=list)

    def data(self) -> dict:
        return {
            "signatures": [s.to_dict() for s in self.signatures],
            "diagnostics": list(self.diagnostics),
        }


@dataclass(frozen=True)
class ErrorResponse:
    TAG = "error"

    error_type: str
    message: str
    traceback: str = ""

    def data(self) -> dict:
        return {"error_type": self.error_type, "message": self.message, "traceback": self.traceback}


Message = RunRequest | ReflectionResponse | ExtractionResponse | ErrorResponse


def encode_message(message: Message) -> str:
    """Serialize a message to one line of JSON."""
    return json.dumps({"version": PROTOCOL_VERSION, "type": message.TAG, "data": message.data()})


def decode_message(raw: str) -> Message:
    """Parse and validate one message.

    Raises:
        RunnerProtocolError: If the payload is malformed or of another version
    """
    try:
        envelope = json.loads(raw)
    except json.JSONDecodeError as e:
        raise RunnerProtocolError(f"Message is not valid JSON: {e}", raw[:500]) from e

    if not isinstance(envelope, dict):
        raise RunnerProtocolError("Message must be a JSON object", raw[:500])
    version = envelope.get("version")
    if version != PROTOCOL_VERSION:
        raise RunnerProtocolError(f"Unsupported protocol version {version!r}, expected {PROTOCOL_VERSION}")
    tag = envelope.get("type")
    data = envelope.get("data")
    if not isinstance(data, dict):
        raise RunnerProtocolError(f"Message {tag!r} has no data object")

    try:
        if tag == RunRequest.TAG:
            return RunRequest(descriptor=_expect(data, "descriptor", dict))
        if tag == ReflectionResponse.TAG:
            reflection = _expect(data, "reflection", dict)
            _expect(reflection, "types", list)
            return ReflectionResponse(reflection=reflection)
        if tag == ExtractionResponse.TAG:
            signatures = [ContextTypeSignature.from_dict(s) for s in _expect(data, "signatures", list)]
            diagnostics = _expect(data, "diagnostics", list)
            return ExtractionResponse(signatures=signatures, diagnostics=[str(d) for d in diagnostics])
        if tag == ErrorResponse.TAG:
            return ErrorResponse(
                error_type=_expect(data, "error_type", str),
                message=_expect(data, "message", str),
                traceback=data.get("traceback", "") or "",
            )
    except (KeyError, TypeError, ValueError) as e:
        raise RunnerProtocolError(f"Malformed {tag!r} message: {e}") from e

    raise RunnerProtocolError(f"Unknown message type {tag!r}")


def _expect(data: dict, key: str, kind: type) -> Any:
    value = data.get(key)
    if not isinstance(value, kind):
        raise TypeError(f"field {key!r} must be {kind.__name__}, got {type(value).__name__}")
    return value
