"""Relay endpoint: replies posted by the editor for correlated requests."""

import json
from typing import Any

from pydantic import ValidationError

from shared.logging import get_logger
from shared.models import RelayMessage
from mcp_server.correlator import Correlator

logger = get_logger(__name__)


def handle_relay(body: bytes, correlator: Correlator) -> tuple[int, dict[str, Any]]:
    """
    Feed an editor reply to the correlator.

    Replies for unknown or expired ids are acknowledged like any other;
    no caller is listening for them any more.

    Args:
        body: Raw body of the form {request_id, result?, error?}
        correlator: Correlator holding the pending waits

    Returns:
        Tuple of (HTTP status, response payload)
    """
    try:
        data = json.loads(body) if body else None
    except (ValueError, UnicodeDecodeError):
        return 400, {"error": "Invalid JSON body"}

    if not isinstance(data, dict) or data.get("request_id") is None:
        return 400, {"error": "Missing request_id"}

    raw_id = data["request_id"]
    if isinstance(raw_id, (int, float)) and not isinstance(raw_id, bool):
        data = {**data, "request_id": str(raw_id)}

    try:
        message = RelayMessage.model_validate(data)
    except ValidationError:
        return 400, {"error": "Invalid request_id"}

    delivered = correlator.deliver(message.request_id, message.result, message.error)
    logger.info(
        "Received editor response",
        request_id=message.request_id,
        delivered=delivered,
        has_error=message.error is not None
    )
    return 200, {"status": "ok"}
