"""
Tests for rolling-window suspicious activity aggregation
"""
import base64
from collections import deque
from datetime import timedelta

import pytest

from app.models import AntiCheatingEvent
from app.services.activity_aggregator import (
    SuspiciousActivityAggregator,
    build_anti_cheating_report,
    calculate_risk_level,
)
from app.services.connection_manager import ConnectionManager
from app.services.session_registry import SessionRegistry
from app.services.video_analysis import FrameAnalysis, FrameAnalyzer, FrameSizeHeuristicAnalyzer, decode_frame
from app.services.warning_engine import WarningEngine
from app.utils.timezone import utc_now

from conftest import CANDIDATE_ID, EXAM_ID, SECOND_CANDIDATE_ID


def encoded_frame(size: int, data_url: bool = False) -> str:
    encoded = base64.b64encode(b"\xff" * size).decode()
    return f"data:image/jpeg;base64,{encoded}" if data_url else encoded


@pytest.fixture
def engine(repository, clock):
    registry = SessionRegistry()
    return WarningEngine(registry, repository, ConnectionManager(registry), warning_cooldown=60.0, clock=clock)


@pytest.fixture
def aggregator(engine, clock):
    return SuspiciousActivityAggregator(engine, analysis_window=600.0, event_window=300.0, clock=clock)


class TestFrameAnalysis:
    """Frame decoding and the size heuristic"""

    def test_decode_accepts_data_url_prefix(self):
        assert decode_frame(encoded_frame(10, data_url=True)) == b"\xff" * 10

    def test_decode_rejects_garbage(self):
        assert decode_frame("not base64 !!") is None
        assert decode_frame("") is None

    @pytest.mark.asyncio
    async def test_size_heuristic(self):
        analyzer = FrameSizeHeuristicAnalyzer()

        small = await analyzer.analyze(b"\x00" * 500)
        normal = await analyzer.analyze(b"\x00" * 20000)
        large = await analyzer.analyze(b"\x00" * 60000)

        assert (small.has_no_face, small.confidence) == (True, 0.6)
        assert (normal.has_no_face, normal.has_multiple_faces, normal.confidence) == (False, False, 0.8)
        assert (large.has_multiple_faces, large.confidence) == (True, 0.7)

    @pytest.mark.asyncio
    async def test_undecodable_frame_yields_empty_result(self, aggregator):
        result = await aggregator.analyze_frame(CANDIDATE_ID, "%%%")

        assert result.confidence == 0.0
        assert not (result.has_no_face or result.has_multiple_faces or result.has_unusual_movement)
        assert not aggregator.check_suspicious_activity(CANDIDATE_ID).is_suspicious

    @pytest.mark.asyncio
    async def test_custom_analyzer_is_used(self, engine, clock):
        class AlwaysMoving(FrameAnalyzer):
            async def analyze(self, frame):
                return FrameAnalysis(has_unusual_movement=True, confidence=0.9)

        aggregator = SuspiciousActivityAggregator(engine, analyzer=AlwaysMoving(), clock=clock)
        await aggregator.analyze_frame(CANDIDATE_ID, encoded_frame(2000))

        activity = aggregator.check_suspicious_activity(CANDIDATE_ID)
        assert activity.reasons == ["Unusual movement patterns detected"]


class TestSuspiciousActivity:
    """Ratio thresholds over the frame analysis window"""

    def test_no_history_is_not_suspicious(self, aggregator):
        activity = aggregator.check_suspicious_activity(CANDIDATE_ID)

        assert activity.is_suspicious is False
        assert activity.confidence == 0.0

    def test_multiple_faces_and_no_face(self, aggregator):
        for _ in range(4):
            aggregator.add_analysis_result(CANDIDATE_ID, FrameAnalysis(has_multiple_faces=True, has_no_face=True))

        activity = aggregator.check_suspicious_activity(CANDIDATE_ID)

        assert activity.is_suspicious
        assert activity.reasons == ["Multiple faces detected", "No face detected for extended period"]
        assert activity.confidence == pytest.approx(0.7)

    def test_confidence_is_capped_at_one(self, aggregator):
        aggregator.add_analysis_result(CANDIDATE_ID, FrameAnalysis(
            has_multiple_faces=True, has_no_face=True, has_unusual_movement=True
        ))

        assert aggregator.check_suspicious_activity(CANDIDATE_ID).confidence == 1.0

    def test_ratio_below_threshold_is_ignored(self, aggregator):
        aggregator.add_analysis_result(CANDIDATE_ID, FrameAnalysis(has_multiple_faces=True))
        for _ in range(3):
            aggregator.add_analysis_result(CANDIDATE_ID, FrameAnalysis())

        assert not aggregator.check_suspicious_activity(CANDIDATE_ID).is_suspicious

    def test_old_results_fall_out_of_window(self, aggregator, clock):
        aggregator.add_analysis_result(CANDIDATE_ID, FrameAnalysis(has_multiple_faces=True))
        clock.advance(601)

        assert not aggregator.check_suspicious_activity(CANDIDATE_ID).is_suspicious

    @pytest.mark.asyncio
    async def test_automated_warning_needs_confidence_above_threshold(self, aggregator, repository):
        exam = repository.exams[EXAM_ID]
        aggregator.add_analysis_result(CANDIDATE_ID, FrameAnalysis(has_no_face=True))

        assert await aggregator.process_automated_warning(exam, CANDIDATE_ID) is False

        aggregator.add_analysis_result(SECOND_CANDIDATE_ID, FrameAnalysis(has_multiple_faces=True, has_no_face=True))
        assert await aggregator.process_automated_warning(exam, SECOND_CANDIDATE_ID) is True

        records = repository.candidate(EXAM_ID, SECOND_CANDIDATE_ID).warning_records
        assert records[0].reason == "Automated detection: Multiple faces detected, No face detected for extended period"

    def test_clear_analysis_data_keeps_events(self, aggregator):
        aggregator.add_analysis_result(CANDIDATE_ID, FrameAnalysis(has_multiple_faces=True))
        aggregator._events[CANDIDATE_ID] = deque([(0.0, "tab_switch")])

        aggregator.clear_analysis_data(CANDIDATE_ID)

        assert not aggregator.check_suspicious_activity(CANDIDATE_ID).is_suspicious
        assert CANDIDATE_ID in aggregator._events


class TestAntiCheatingEvents:
    """Discrete browser events and their thresholds"""

    @pytest.mark.asyncio
    async def test_three_tab_switches_trigger_one_warning(self, aggregator, repository):
        exam = repository.exams[EXAM_ID]

        results = [await aggregator.record_event(exam, CANDIDATE_ID, "tab_switch") for _ in range(3)]

        assert results == [[], [], ["Multiple tab switches detected"]]
        assert repository.candidate(EXAM_ID, CANDIDATE_ID).warnings == 1
        assert "tab switch" in repository.candidate(EXAM_ID, CANDIDATE_ID).warning_records[0].reason

    @pytest.mark.asyncio
    async def test_fourth_tab_switch_inside_cooldown_adds_nothing(self, aggregator, repository, clock):
        exam = repository.exams[EXAM_ID]
        for _ in range(3):
            await aggregator.record_event(exam, CANDIDATE_ID, "tab_switch")

        clock.advance(30)
        assert await aggregator.record_event(exam, CANDIDATE_ID, "tab_switch") == []

        assert repository.candidate(EXAM_ID, CANDIDATE_ID).warnings == 1

    @pytest.mark.asyncio
    async def test_dev_tools_warns_on_first_event(self, aggregator, repository):
        issued = await aggregator.record_event(repository.exams[EXAM_ID], CANDIDATE_ID, "dev_tools")

        assert issued == ["Developer tools access detected"]

    @pytest.mark.asyncio
    async def test_events_outside_window_do_not_count(self, aggregator, repository, clock):
        exam = repository.exams[EXAM_ID]
        await aggregator.record_event(exam, CANDIDATE_ID, "copy_paste")
        clock.advance(301)

        assert await aggregator.record_event(exam, CANDIDATE_ID, "copy_paste") == []
        assert aggregator.event_counts(CANDIDATE_ID) == {"copy_paste": 1}

    @pytest.mark.asyncio
    async def test_fullscreen_exit_never_warns(self, aggregator, repository):
        exam = repository.exams[EXAM_ID]

        for _ in range(10):
            assert await aggregator.record_event(exam, CANDIDATE_ID, "fullscreen_exit") == []


class TestRiskReport:

    @pytest.mark.parametrize("events, level", [
        ([], "low"),
        (["fullscreen_exit", "right_click"], "low"),
        (["tab_switch", "copy_paste", "dev_tools"], "medium"),
        (["tab_switch"] * 4, "high"),
    ])
    def test_risk_level(self, events, level):
        assert calculate_risk_level(events) == level

    def test_report_counts_recent_events(self, repository):
        now = utc_now()
        candidate = repository.candidate(EXAM_ID, CANDIDATE_ID)
        candidate.anti_cheating_events.extend([
            AntiCheatingEvent(event_type="tab_switch", timestamp=now - timedelta(hours=30)),
            AntiCheatingEvent(event_type="tab_switch", timestamp=now - timedelta(hours=1)),
            AntiCheatingEvent(event_type="dev_tools", timestamp=now),
        ])

        report = build_anti_cheating_report(repository.exams[EXAM_ID], now=now)

        assert report["examId"] == EXAM_ID
        entry = report["report"][0]
        assert entry["candidateId"] == CANDIDATE_ID
        assert entry["totalEvents"] == 3
        assert entry["recentEvents"] == 2
        assert entry["eventBreakdown"]["tabSwitches"] == 2
        assert entry["eventBreakdown"]["devTools"] == 1
        assert entry["riskLevel"] == "medium"
        assert report["report"][1]["riskLevel"] == "low"
