"""Typed model of the events posted by the Janus HTTP event handler.

Janus batches events and POSTs them as JSON. Every event shares a small
envelope (``type``, ``session_id``, ``handle_id``, ``timestamp``) and carries a
kind-specific ``event`` object whose shape depends on ``type``. This module
validates the envelope eagerly and the kind-specific payload lazily, so the
engine can reject a single malformed event without touching the rest of the
batch.
"""

from enum import IntEnum
from typing import Any, Dict, List, Optional, Union

from pydantic import (
    BaseModel, ConfigDict, Field, StrictBool, StrictFloat, StrictInt, StrictStr, ValidationError
)


Identifier = Union[StrictInt, StrictStr]
Number = Union[StrictInt, StrictFloat]

VIDEOROOM_PLUGIN = "janus.plugin.videoroom"
WEBSOCKETS_TRANSPORT = "janus.transport.websockets"


class MalformedEventError(ValueError):
    """Raised when an event is missing a required field or has a wrong type."""

    def __init__(self, message: str, raw: Any = None):
        super().__init__(message)
        self.raw = raw


class EventType(IntEnum):
    """Janus event type codes."""
    SESSION = 1
    HANDLE = 2
    JSEP = 8
    WEBRTC = 16
    MEDIA = 32
    PLUGIN = 64
    TRANSPORT = 128
    CORE = 256


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class SessionPayload(_Payload):
    name: StrictStr


class HandlePayload(_Payload):
    name: StrictStr
    plugin: Optional[StrictStr] = None


class Jsep(_Payload):
    type: StrictStr
    sdp: Optional[StrictStr] = None


class JsepPayload(_Payload):
    owner: Optional[StrictStr] = None
    jsep: Jsep


class WebRTCPayload(_Payload):
    ice: Optional[StrictStr] = None
    connection: Optional[StrictStr] = None
    stream_id: Optional[StrictInt] = None
    component_id: Optional[StrictInt] = None
    dtls: Optional[StrictStr] = None
    selected_pair: Optional[StrictStr] = Field(default=None, alias="selected-pair")
    local_candidate: Optional[StrictStr] = Field(default=None, alias="local-candidate")
    remote_candidate: Optional[StrictStr] = Field(default=None, alias="remote-candidate")


class MediaPayload(_Payload):
    media: Optional[StrictStr] = None
    receiving: Optional[StrictBool] = None

    # RTCP statistics, kept for future gauges
    base: Optional[Number] = None
    lsr: Optional[Number] = None
    lost: Optional[Number] = None
    lost_by_remote: Optional[Number] = Field(default=None, alias="lost-by-remote")
    jitter_local: Optional[Number] = Field(default=None, alias="jitter-local")
    jitter_remote: Optional[Number] = Field(default=None, alias="jitter-remote")
    packets_sent: Optional[Number] = Field(default=None, alias="packets-sent")
    packets_received: Optional[Number] = Field(default=None, alias="packets-received")
    bytes_sent: Optional[Number] = Field(default=None, alias="bytes-sent")
    bytes_received: Optional[Number] = Field(default=None, alias="bytes-received")
    nacks_sent: Optional[Number] = Field(default=None, alias="nacks-sent")
    nacks_received: Optional[Number] = Field(default=None, alias="nacks-received")

    @property
    def is_statistics(self) -> bool:
        return self.base is not None


class PluginPayload(_Payload):
    plugin: Optional[StrictStr] = None
    transport: Optional[StrictStr] = None
    data: Optional[Dict[str, Any]] = None

    def body(self) -> Dict[str, Any]:
        """Return the plugin/transport data object.

        Janus nests it under ``data``; events without ``data`` are read flat.
        """
        if self.data is not None:
            return self.data
        return {
            key: value for key, value in self.model_dump(by_alias=True).items()
            if key not in ("plugin", "transport", "data")
        }


class CorePayload(_Payload):
    status: Optional[StrictStr] = None
    signum: Optional[StrictInt] = None


class VideoRoomData(_Payload):
    """Data object of a ``janus.plugin.videoroom`` event."""
    event: Optional[StrictStr] = None
    room: Optional[Identifier] = None
    id: Optional[Identifier] = None
    feed: Optional[Identifier] = None
    display: Optional[StrictStr] = None


class TransportData(_Payload):
    """Data object of a transport event."""
    event: Optional[StrictStr] = None


_PAYLOAD_MODELS = {
    EventType.SESSION: SessionPayload,
    EventType.HANDLE: HandlePayload,
    EventType.JSEP: JsepPayload,
    EventType.WEBRTC: WebRTCPayload,
    EventType.MEDIA: MediaPayload,
    EventType.PLUGIN: PluginPayload,
    EventType.TRANSPORT: PluginPayload,
    EventType.CORE: CorePayload,
}


class JanusEvent(BaseModel):
    """Common envelope of a Janus event."""
    model_config = ConfigDict(extra="allow")

    type: StrictInt
    session_id: Optional[StrictInt] = None
    handle_id: Optional[StrictInt] = None
    timestamp: Optional[StrictInt] = None
    event: Dict[str, Any]

    @property
    def kind(self) -> Optional[EventType]:
        """The event type, or None for codes this exporter does not know."""
        try:
            return EventType(self.type)
        except ValueError:
            return None

    def payload(self) -> _Payload:
        """Validate and return the kind-specific payload."""
        model = _PAYLOAD_MODELS.get(self.kind)
        if model is None:
            raise MalformedEventError(f"No payload model for event type {self.type}")
        return validate_model(model, self.event, f"type {self.type} payload")


def validate_model(model, data: Any, what: str):
    """Validate ``data`` against ``model``, raising MalformedEventError."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise MalformedEventError(f"Invalid {what}: {_describe(e)}", raw=data)


def parse_event(raw: Any) -> JanusEvent:
    """Parse one raw event object into a JanusEvent."""
    if not isinstance(raw, dict):
        raise MalformedEventError(
            f"Event must be an object, got {type(raw).__name__}", raw=raw
        )
    return validate_model(JanusEvent, raw, "event")


def flatten_events(raw: Any) -> List[Any]:
    """Flatten arbitrarily nested lists of events, preserving order."""
    flat = []
    stack = [iter([raw])]
    while stack:
        try:
            item = next(stack[-1])
        except StopIteration:
            stack.pop()
            continue
        if isinstance(item, list):
            stack.append(iter(item))
        else:
            flat.append(item)
    return flat


def _describe(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        location = ".".join(str(loc) for loc in err["loc"]) or "<root>"
        parts.append(f"{location}: {err['msg']}")
    return "; ".join(parts)
