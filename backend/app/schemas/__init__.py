from .events import InboundMessage, parse_inbound
from .proctoring import (
    AntiCheatingEventCreate,
    AntiCheatingEventResponse,
    AntiCheatingReport,
    CandidateRiskReport,
    EventBreakdown,
)

__all__ = [
    "InboundMessage",
    "parse_inbound",
    "AntiCheatingEventCreate",
    "AntiCheatingEventResponse",
    "AntiCheatingReport",
    "CandidateRiskReport",
    "EventBreakdown",
]
