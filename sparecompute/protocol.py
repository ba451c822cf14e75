"""Encoding and decoding of frames on the broker socket."""

from __future__ import annotations

import json
import logging

from pydantic import BaseModel, ValidationError

from sparecompute.schemas import (
    ConnectedFrame,
    FrameType,
    HeartbeatFrame,
    InboundFrame,
    InferenceRequestFrame,
)

logger = logging.getLogger(__name__)

# Older brokers namespace frame types as "plugin:<type>" in both directions
LEGACY_PREFIX = "plugin:"

INBOUND_FRAMES: dict[str, type[BaseModel]] = {
    FrameType.CONNECTED.value: ConnectedFrame,
    FrameType.HEARTBEAT.value: HeartbeatFrame,
    FrameType.INFERENCE_REQUEST.value: InferenceRequestFrame,
}


class ProtocolError(Exception):
    """Raised when an inbound frame cannot be parsed or has an unknown type."""

    pass


def normalize_type(frame_type: str) -> str:
    if frame_type.startswith(LEGACY_PREFIX):
        return frame_type[len(LEGACY_PREFIX):]
    return frame_type


def parse_frame(raw: str | bytes) -> InboundFrame:
    """Decode one inbound frame.

    Raises:
        ProtocolError: not JSON, not an object, unknown type, or missing fields.
    """
    frame, _ = parse_frame_with_prefix(raw)
    return frame


def parse_frame_with_prefix(raw: str | bytes) -> tuple[InboundFrame, str]:
    """Decode one inbound frame and report the type prefix it used."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Frame is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError("Frame is not a JSON object")

    raw_type = data.get("type")
    if not isinstance(raw_type, str):
        raise ProtocolError("Frame has no type")

    frame_type = normalize_type(raw_type)
    prefix = raw_type[: len(raw_type) - len(frame_type)]
    model = INBOUND_FRAMES.get(frame_type)
    if model is None:
        raise ProtocolError(f"Unknown frame type: {raw_type}")

    try:
        return model.model_validate({**data, "type": frame_type}), prefix
    except ValidationError as e:
        raise ProtocolError(f"Malformed {frame_type} frame: {e.error_count()} invalid field(s)") from e


def encode_frame(frame: BaseModel, prefix: str = "") -> str:
    """Serialise an outbound frame with the broker's field names.

    ``prefix`` is prepended to the frame type for brokers that namespace
    their frame types.
    """
    if not prefix:
        return frame.model_dump_json(by_alias=True, exclude_none=True)
    data = frame.model_dump(mode="json", by_alias=True, exclude_none=True)
    data["type"] = f"{prefix}{data['type']}"
    return json.dumps(data, separators=(",", ":"))
