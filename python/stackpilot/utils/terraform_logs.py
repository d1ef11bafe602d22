"""
stackpilot/utils/terraform_logs.py

Normalizes raw engine output lines. The engine can print one JSON object per
line (its machine-readable log format, keyed by '@message' and '@level'); such
lines are reduced to their human-readable message. Anything else passes through
verbatim. Parsing failures are data, never errors.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from stackpilot.models.stack_events import LogLine

_MESSAGE_KEYS = ("@message", "message")
_LEVEL_KEYS = ("@level", "level")
_ERROR_FLAG_KEYS = ("isError", "is_error")


def _message_of(payload: Dict[str, Any]) -> Optional[str]:
    for key in _MESSAGE_KEYS:
        value = payload.get(key)
        if isinstance(value, str):
            return value
    return None


def _is_error_payload(payload: Dict[str, Any]) -> bool:
    if any(payload.get(key) is True for key in _ERROR_FLAG_KEYS):
        return True
    return any(
        isinstance(payload.get(key), str) and payload[key].lower() == "error"
        for key in _LEVEL_KEYS
    )


def extract_json_log_if_present(line: str) -> LogLine:
    """Normalize one line of engine output.

    Args:
        line: A raw output line.

    Returns:
        LogLine: The payload's message and severity if the line is a JSON object
        carrying a message, otherwise the line itself as a non-error message.
    """
    try:
        payload = json.loads(line)
    except (ValueError, RecursionError):
        return LogLine(message=line, is_error=False)

    if not isinstance(payload, dict):
        return LogLine(message=line, is_error=False)

    message = _message_of(payload)
    if message is None:
        return LogLine(message=line, is_error=False)
    return LogLine(message=message, is_error=_is_error_payload(payload))
