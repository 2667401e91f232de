import base64
import binascii
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ..utils.timezone import isoformat, utc_now

logger = logging.getLogger(__name__)


@dataclass
class FrameAnalysis:
    has_multiple_faces: bool = False
    has_no_face: bool = False
    has_unusual_movement: bool = False
    confidence: float = 0.0
    timestamp: datetime = field(default_factory=utc_now)

    def to_payload(self) -> dict:
        return {
            "hasMultipleFaces": self.has_multiple_faces,
            "hasNoFace": self.has_no_face,
            "hasUnusualMovement": self.has_unusual_movement,
            "confidence": self.confidence,
            "timestamp": isoformat(self.timestamp),
        }


def decode_frame(frame_data: str) -> Optional[bytes]:
    """Decode a base64 frame, accepting an optional ``data:<mime>;base64,`` prefix"""
    if not frame_data:
        return None
    if frame_data.startswith("data:") and "," in frame_data:
        frame_data = frame_data.split(",", 1)[1]
    try:
        return base64.b64decode(frame_data, validate=True)
    except (binascii.Error, ValueError):
        return None


class FrameAnalyzer:
    """Capability interface: turn one decoded video frame into detection flags"""

    async def analyze(self, frame: bytes) -> FrameAnalysis:
        raise NotImplementedError


class FrameSizeHeuristicAnalyzer(FrameAnalyzer):
    """
    Stand-in for a computer vision model. Tiny frames are read as an empty or
    covered camera, very large ones as a busy scene with several people.
    """

    def __init__(self, small_frame_bytes: int = 1000, large_frame_bytes: int = 50000):
        self.small_frame_bytes = small_frame_bytes
        self.large_frame_bytes = large_frame_bytes

    async def analyze(self, frame: bytes) -> FrameAnalysis:
        result = FrameAnalysis(confidence=0.8)
        frame_size = len(frame)

        if frame_size < self.small_frame_bytes:
            result.has_no_face = True
            result.confidence = 0.6
        elif frame_size > self.large_frame_bytes:
            result.has_multiple_faces = True
            result.confidence = 0.7

        return result
