"""
Inbound WebSocket events.

A client frame is ``{"event": <name>, "data": {...}}``. Each event name maps
to exactly one model below; names and field spellings used by older clients
are rewritten to the canonical ones before validation.
"""
from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

LEGACY_EVENT_NAMES = {
    "join_room": "joinExam",
    "leave_room": "leaveExam",
    "sending_signal": "sendingSignal",
    "send_signal": "sendSignal",
    "send_warning": "sendWarning",
}

# addresses the candidate by connection handle instead of exam and user id
LEGACY_WARNING_EVENT = "send_warning"

LEGACY_FIELD_NAMES = {
    "examid": "examId",
}


class InboundEvent(BaseModel):
    class Config:
        populate_by_name = True
        extra = "ignore"


class JoinExam(InboundEvent):
    event: Literal["joinExam"]
    exam_id: str = Field(..., alias="examId", min_length=1)


class LeaveExam(InboundEvent):
    event: Literal["leaveExam"]
    exam_id: str = Field(..., alias="examId", min_length=1)


class StartStream(InboundEvent):
    event: Literal["startStream"]
    exam_id: str = Field(..., alias="examId", min_length=1)


class StopStream(InboundEvent):
    event: Literal["stopStream"]
    exam_id: str = Field(..., alias="examId", min_length=1)
    reason: Optional[str] = Field(None, max_length=500)


class SendWarning(InboundEvent):
    event: Literal["sendWarning"]
    exam_id: str = Field(..., alias="examId", min_length=1)
    user_id: int = Field(..., alias="userId")
    message: str = Field(..., min_length=1, max_length=500)


class AnalyzeFrame(InboundEvent):
    event: Literal["analyzeFrame"]
    exam_id: str = Field(..., alias="examId", min_length=1)
    frame_data: str = Field(..., alias="frameData", min_length=1)
    timestamp: Optional[datetime] = None
    user_id: Optional[int] = Field(None, alias="userId")


class StartAutomatedMonitoring(InboundEvent):
    event: Literal["startAutomatedMonitoring"]
    exam_id: str = Field(..., alias="examId", min_length=1)


class StopAutomatedMonitoring(InboundEvent):
    event: Literal["stopAutomatedMonitoring"]


class SendingSignal(InboundEvent):
    event: Literal["sendingSignal"]
    to: str = Field(..., min_length=1)
    from_handle: Optional[str] = Field(None, alias="from")
    signal: Dict[str, Any]


class SendSignal(InboundEvent):
    event: Literal["sendSignal"]
    to: str = Field(..., min_length=1)
    signal: Dict[str, Any]


class Reconnect(InboundEvent):
    event: Literal["reconnect"]
    exam_id: str = Field(..., alias="examId", min_length=1)


InboundMessage = Annotated[
    Union[
        JoinExam,
        LeaveExam,
        StartStream,
        StopStream,
        SendWarning,
        AnalyzeFrame,
        StartAutomatedMonitoring,
        StopAutomatedMonitoring,
        SendingSignal,
        SendSignal,
        Reconnect,
    ],
    Field(discriminator="event"),
]

KNOWN_EVENTS = frozenset({
    "joinExam",
    "leaveExam",
    "startStream",
    "stopStream",
    "sendWarning",
    "analyzeFrame",
    "startAutomatedMonitoring",
    "stopAutomatedMonitoring",
    "sendingSignal",
    "sendSignal",
    "reconnect",
})

inbound_adapter = TypeAdapter(InboundMessage)


def canonical_event_name(name: Any) -> str:
    name = str(name or "")
    return LEGACY_EVENT_NAMES.get(name, name)


def normalize_frame(frame: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten ``{"event", "data"}`` into one mapping with canonical names"""
    data = frame.get("data")
    if not isinstance(data, dict):
        data = {}

    normalized = {LEGACY_FIELD_NAMES.get(key, key): value for key, value in data.items()}
    normalized["event"] = canonical_event_name(frame.get("event"))
    return normalized


def parse_inbound(frame: Dict[str, Any]) -> InboundMessage:
    """Validate one client frame; raises pydantic.ValidationError on bad shapes"""
    return inbound_adapter.validate_python(normalize_frame(frame))
