"""
Tests for inbound event validation
"""
import pytest
from pydantic import ValidationError

from app.schemas.events import (
    JoinExam,
    SendingSignal,
    SendWarning,
    StopAutomatedMonitoring,
    canonical_event_name,
    parse_inbound,
)


class TestParseInbound:

    def test_join_exam(self):
        message = parse_inbound({"event": "joinExam", "data": {"examId": "exam-1"}})

        assert isinstance(message, JoinExam)
        assert message.exam_id == "exam-1"

    def test_send_warning_coerces_user_id(self):
        message = parse_inbound({"event": "sendWarning", "data": {"examId": "e", "userId": "10", "message": "Eyes on screen"}})

        assert isinstance(message, SendWarning)
        assert message.user_id == 10

    def test_event_without_data(self):
        message = parse_inbound({"event": "stopAutomatedMonitoring"})

        assert isinstance(message, StopAutomatedMonitoring)

    def test_unknown_fields_are_ignored(self):
        message = parse_inbound({"event": "joinExam", "data": {"examId": "e", "extra": 1}})

        assert message.exam_id == "e"

    @pytest.mark.parametrize("frame", [
        {"event": "joinExam", "data": {}},
        {"event": "joinExam", "data": {"examId": ""}},
        {"event": "sendWarning", "data": {"examId": "e", "userId": "abc", "message": "x"}},
        {"event": "sendWarning", "data": {"examId": "e", "userId": 1, "message": ""}},
        {"event": "sendingSignal", "data": {"to": "h", "signal": "not-a-dict"}},
        {"event": "analyzeFrame", "data": {"examId": "e"}},
        {"event": "noSuchEvent", "data": {}},
    ])
    def test_invalid_frames_raise(self, frame):
        with pytest.raises(ValidationError):
            parse_inbound(frame)


class TestLegacyNames:
    """Older client spellings map onto the canonical events"""

    @pytest.mark.parametrize("legacy, canonical", [
        ("join_room", "joinExam"),
        ("leave_room", "leaveExam"),
        ("sending_signal", "sendingSignal"),
        ("send_signal", "sendSignal"),
        ("joinExam", "joinExam"),
    ])
    def test_canonical_event_name(self, legacy, canonical):
        assert canonical_event_name(legacy) == canonical

    def test_legacy_join_room_with_examid(self):
        message = parse_inbound({"event": "join_room", "data": {"examid": "exam-1"}})

        assert isinstance(message, JoinExam)
        assert message.exam_id == "exam-1"

    def test_legacy_sending_signal_keeps_from(self):
        message = parse_inbound({
            "event": "sending_signal",
            "data": {"to": "admin", "from": "cand", "signal": {"sdp": "offer"}},
        })

        assert isinstance(message, SendingSignal)
        assert message.from_handle == "cand"
        assert message.signal == {"sdp": "offer"}
