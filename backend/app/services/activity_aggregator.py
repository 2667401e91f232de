import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

from ..models.exam import Exam
from ..utils.timezone import ensure_utc, utc_now
from .video_analysis import FrameAnalysis, FrameAnalyzer, FrameSizeHeuristicAnalyzer, decode_frame
from .warning_engine import WarningEngine

logger = logging.getLogger(__name__)

ANTI_CHEATING_EVENT_TYPES = ("tab_switch", "copy_paste", "right_click", "dev_tools", "fullscreen_exit")

# (event type, count within the window that triggers a warning, warning reason)
ANTI_CHEATING_RULES = (
    ("tab_switch", 3, "Multiple tab switches detected"),
    ("copy_paste", 2, "Copy-paste activity detected"),
    ("right_click", 5, "Excessive right-click activity"),
    ("dev_tools", 1, "Developer tools access detected"),
)

RISK_EVENT_TYPES = frozenset({"dev_tools", "copy_paste", "tab_switch"})

AUTOMATED_WARNING_CONFIDENCE = 0.6


@dataclass
class SuspiciousActivity:
    is_suspicious: bool = False
    reasons: List[str] = field(default_factory=list)
    confidence: float = 0.0

    def to_payload(self) -> dict:
        return {
            "isSuspicious": self.is_suspicious,
            "reasons": list(self.reasons),
            "confidence": self.confidence,
        }


def calculate_risk_level(event_types: Iterable[str]) -> str:
    suspicious_events = sum(1 for event_type in event_types if event_type in RISK_EVENT_TYPES)
    if suspicious_events == 0:
        return "low"
    if suspicious_events <= 3:
        return "medium"
    return "high"


def build_anti_cheating_report(exam: Exam, now: Optional[datetime] = None) -> dict:
    """Per-candidate event totals for the admin report; expects events to be loaded"""
    now = now or utc_now()
    day_ago = now - timedelta(hours=24)

    report = []
    for candidate in exam.candidates:
        events = list(candidate.anti_cheating_events or [])
        event_types = [event.event_type for event in events]
        recent = [event for event in events if event.timestamp and ensure_utc(event.timestamp) > day_ago]

        report.append({
            "candidateId": candidate.user_id,
            "totalEvents": len(events),
            "recentEvents": len(recent),
            "eventBreakdown": {
                "tabSwitches": event_types.count("tab_switch"),
                "copyPaste": event_types.count("copy_paste"),
                "rightClicks": event_types.count("right_click"),
                "devTools": event_types.count("dev_tools"),
                "fullscreenExits": event_types.count("fullscreen_exit"),
            },
            "riskLevel": calculate_risk_level(event_types),
            "warnings": candidate.warnings or 0,
            "status": candidate.status,
        })

    return {"examId": exam.id, "report": report}


class SuspiciousActivityAggregator:
    """
    Rolling-window aggregation of per-candidate proctoring signals.

    Two sources are kept apart: frame analysis results (10 minute window by
    default) and discrete browser events such as tab switches (5 minute window).
    Windows are pruned whenever they are written or read; nothing sweeps them
    in the background.
    """

    def __init__(
        self,
        warning_engine: WarningEngine,
        analyzer: Optional[FrameAnalyzer] = None,
        analysis_window: float = 600.0,
        event_window: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.warning_engine = warning_engine
        self.analyzer = analyzer or FrameSizeHeuristicAnalyzer()
        self.analysis_window = analysis_window
        self.event_window = event_window
        self.clock = clock
        self._analysis: Dict[int, Deque[Tuple[float, FrameAnalysis]]] = {}
        self._events: Dict[int, Deque[Tuple[float, str]]] = {}

    @staticmethod
    def _prune(window: Deque[Tuple[float, object]], horizon: float) -> None:
        while window and window[0][0] < horizon:
            window.popleft()

    async def analyze_frame(self, user_id: int, frame_data: str) -> FrameAnalysis:
        frame = decode_frame(frame_data)
        if frame is None:
            logger.debug(f"Undecodable frame from user {user_id}")
            return FrameAnalysis()

        try:
            result = await self.analyzer.analyze(frame)
        except Exception as e:
            logger.error(f"Video analysis error for user {user_id}: {e}", exc_info=True)
            return FrameAnalysis()

        self.add_analysis_result(user_id, result)
        return result

    def add_analysis_result(self, user_id: int, result: FrameAnalysis) -> None:
        now = self.clock()
        window = self._analysis.setdefault(user_id, deque())
        window.append((now, result))
        self._prune(window, now - self.analysis_window)

    def check_suspicious_activity(self, user_id: int) -> SuspiciousActivity:
        window = self._analysis.get(user_id)
        if not window:
            return SuspiciousActivity()

        self._prune(window, self.clock() - self.analysis_window)
        results = [result for _, result in window]
        if not results:
            return SuspiciousActivity()

        total = len(results)
        reasons = []
        confidence = 0.0

        if sum(1 for r in results if r.has_multiple_faces) / total > 0.3:
            reasons.append("Multiple faces detected")
            confidence += 0.4

        if sum(1 for r in results if r.has_no_face) / total > 0.5:
            reasons.append("No face detected for extended period")
            confidence += 0.3

        if sum(1 for r in results if r.has_unusual_movement) / total > 0.4:
            reasons.append("Unusual movement patterns detected")
            confidence += 0.3

        return SuspiciousActivity(
            is_suspicious=bool(reasons),
            reasons=reasons,
            confidence=min(round(confidence, 4), 1.0),
        )

    async def process_automated_warning(self, exam: Exam, user_id: int) -> bool:
        activity = self.check_suspicious_activity(user_id)
        if not activity.is_suspicious or activity.confidence <= AUTOMATED_WARNING_CONFIDENCE:
            return False

        reason = f"Automated detection: {', '.join(activity.reasons)}"
        return await self.warning_engine.issue_warning(exam, user_id, reason)

    def event_counts(self, user_id: int) -> Dict[str, int]:
        window = self._events.get(user_id)
        if not window:
            return {}
        self._prune(window, self.clock() - self.event_window)
        counts: Dict[str, int] = {}
        for _, event_type in window:
            counts[event_type] = counts.get(event_type, 0) + 1
        return counts

    async def record_event(self, exam: Exam, user_id: int, event_type: str) -> List[str]:
        """Add a discrete event and warn for every rule it pushes over the threshold"""
        now = self.clock()
        window = self._events.setdefault(user_id, deque())
        window.append((now, event_type))
        self._prune(window, now - self.event_window)

        counts = self.event_counts(user_id)
        issued = []
        for rule_type, threshold, reason in ANTI_CHEATING_RULES:
            if counts.get(rule_type, 0) >= threshold:
                if await self.warning_engine.issue_warning(exam, user_id, reason):
                    issued.append(reason)
        return issued

    def clear_analysis_data(self, user_id: int) -> None:
        self._analysis.pop(user_id, None)

    def clear(self, user_id: int) -> None:
        self._analysis.pop(user_id, None)
        self._events.pop(user_id, None)
