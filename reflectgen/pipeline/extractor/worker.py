"""
Entry point for running the extractor in a worker.

The worker receives plain data and answers with an encoded protocol
message, so the same function serves process pools and thread pools.
"""

from __future__ import annotations

import logging

from ...config import ReflectionConfig
from ...errors import ExtractionFailure
from ...layout import Layout
from ..protocol import ErrorResponse, ExtractionResponse, encode_message
from .extractor import extract_with_diagnostics


def init_worker() -> None:
    """Process pool initializer: keep worker logging off the console."""
    logging.getLogger("reflectgen").addHandler(logging.NullHandler())


def run_extraction(layout_data: dict, config_data: dict) -> str:
    """Extract context types for a project.

    Args:
        layout_data: Layout.to_data() of the project
        config_data: ReflectionConfig.to_dict() of the project

    Returns:
        An encoded extraction or error message
    """
    layout = Layout.from_data(layout_data)
    config = ReflectionConfig.from_dict(config_data)
    try:
        result = extract_with_diagnostics(layout, config)
    except ExtractionFailure as e:
        return encode_message(ErrorResponse("ExtractionFailure", str(e)))
    return encode_message(ExtractionResponse(result.signatures, result.diagnostics))
