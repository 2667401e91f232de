"""
Pytest configuration for exam session tests
"""
import os
import sys
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fastapi.websockets import WebSocketState
from sqlalchemy.exc import SQLAlchemyError

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-exam-sessions-32-chars")

from app.core.config import Settings  # noqa: E402
from app.models import (  # noqa: E402
    AntiCheatingEvent,
    CandidateWarning,
    Exam,
    ExamCandidate,
    User,
    VideoDisconnection,
)
from app.services.auth_service import SocketUser  # noqa: E402
from app.services.session_coordinator import SessionCoordinator  # noqa: E402
from app.utils.timezone import utc_now  # noqa: E402

EXAM_ID = "exam-1"
OTHER_EXAM_ID = "exam-2"
ADMIN_ID = 1
CANDIDATE_ID = 10
SECOND_CANDIDATE_ID = 11
OUTSIDER_ID = 99


class FakeClock:
    """Monotonic clock the tests move by hand"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWebSocket:
    """Records every frame the server sends"""

    def __init__(self):
        self.client_state = WebSocketState.CONNECTED
        self.sent: List[Dict[str, Any]] = []
        self.close_code: Optional[int] = None

    async def send_json(self, data: Dict[str, Any]) -> None:
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.client_state = WebSocketState.DISCONNECTED
        self.close_code = code

    def events(self, name: Optional[str] = None) -> List[Dict[str, Any]]:
        return [frame["data"] for frame in self.sent if name is None or frame["event"] == name]

    def event_names(self) -> List[str]:
        return [frame["event"] for frame in self.sent]

    def clear(self) -> None:
        self.sent.clear()


class InMemoryExamRepository:
    """ExamRepository contract backed by plain ORM instances, no database"""

    def __init__(self):
        self.users: Dict[int, User] = {}
        self.exams: Dict[str, Exam] = {}
        self.fail_writes = False
        self.write_calls: List[str] = []

    def add_user(self, user_id: int, user_type: str = "candidate") -> User:
        user = User(id=user_id, full_name=f"User {user_id}", email=f"user{user_id}@example.com", type=user_type)
        self.users[user_id] = user
        return user

    def add_exam(
        self,
        exam_id: str,
        admin_id: int,
        candidate_ids: List[int],
        settings: Optional[Dict[str, Any]] = None,
        video_disabled: Optional[List[int]] = None,
    ) -> Exam:
        exam = Exam(
            id=exam_id,
            title=f"Exam {exam_id}",
            admin_id=admin_id,
            status="ongoing",
            settings=settings if settings is not None else {"maxWarnings": 3, "autoDisqualifyOnMaxWarnings": True},
        )
        for index, user_id in enumerate(candidate_ids, start=1):
            exam.candidates.append(ExamCandidate(
                id=len(self.exams) * 100 + index,
                exam_id=exam_id,
                user_id=user_id,
                status="ongoing",
                warnings=0,
                video_monitoring_enabled=user_id not in (video_disabled or []),
                video_warning_count=0,
            ))
        self.exams[exam_id] = exam
        return exam

    def candidate(self, exam_id: str, user_id: int) -> Optional[ExamCandidate]:
        exam = self.exams.get(exam_id)
        return exam.find_candidate(user_id) if exam else None

    def _write(self, name: str) -> None:
        self.write_calls.append(name)
        if self.fail_writes:
            raise SQLAlchemyError("database unavailable")

    async def get_exam(self, exam_id: str, with_events: bool = False) -> Optional[Exam]:
        return self.exams.get(exam_id)

    async def get_user(self, user_id: int) -> Optional[User]:
        return self.users.get(user_id)

    async def record_warning(self, exam_id: str, user_id: int, reason: str) -> Optional[int]:
        self._write("record_warning")
        candidate = self.candidate(exam_id, user_id)
        if candidate is None or candidate.status == "disqualified":
            return None
        candidate.warnings += 1
        candidate.video_warning_count += 1
        candidate.last_warning_time = utc_now()
        candidate.warning_records.append(CandidateWarning(reason=reason, issued_at=utc_now()))
        return candidate.warnings

    async def record_disconnection(self, exam_id: str, user_id: int, reason: Optional[str] = None) -> bool:
        self._write("record_disconnection")
        candidate = self.candidate(exam_id, user_id)
        if candidate is None:
            return False
        candidate.disconnections.append(VideoDisconnection(
            start_time=utc_now(),
            reason=reason or "Unknown disconnection",
        ))
        return True

    async def record_reconnection(self, exam_id: str, user_id: int) -> bool:
        self._write("record_reconnection")
        candidate = self.candidate(exam_id, user_id)
        if candidate is None or not candidate.disconnections:
            return False
        candidate.disconnections[-1].end_time = utc_now()
        return True

    async def count_recent_disconnections(self, exam_id: str, user_id: int, since) -> int:
        candidate = self.candidate(exam_id, user_id)
        if candidate is None:
            return 0
        return sum(1 for d in candidate.disconnections if d.start_time >= since)

    async def disqualify(self, exam_id: str, user_id: int) -> bool:
        self._write("disqualify")
        candidate = self.candidate(exam_id, user_id)
        if candidate is None or candidate.status == "disqualified":
            return False
        candidate.status = "disqualified"
        return True

    async def record_anti_cheating_event(self, exam_id: str, user_id: int, event_type: str, details=None) -> bool:
        self._write("record_anti_cheating_event")
        candidate = self.candidate(exam_id, user_id)
        if candidate is None:
            return False
        candidate.anti_cheating_events.append(AntiCheatingEvent(
            event_type=event_type,
            details=details,
            timestamp=utc_now(),
        ))
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repository():
    repo = InMemoryExamRepository()
    repo.add_user(ADMIN_ID, "admin")
    repo.add_user(CANDIDATE_ID)
    repo.add_user(SECOND_CANDIDATE_ID)
    repo.add_user(OUTSIDER_ID)
    repo.add_exam(EXAM_ID, ADMIN_ID, [CANDIDATE_ID, SECOND_CANDIDATE_ID])
    return repo


@pytest.fixture
def test_settings():
    return Settings(
        secret_key="test-secret-key-for-exam-sessions-32-chars",
        reconnection_timeout=0.05,
        max_reconnection_attempts=3,
        warning_cooldown=60.0,
        max_disconnections=3,
        automated_monitoring_interval=0.01,
        analysis_window=600.0,
        anti_cheating_window=300.0,
    )


@pytest.fixture
def fake_cache():
    cache = MagicMock()
    cache.aget = AsyncMock(return_value=None)
    cache.aset = AsyncMock(return_value=True)
    return cache


@pytest_asyncio.fixture
async def coordinator(repository, test_settings, fake_cache, clock):
    coordinator = SessionCoordinator.create(repository, test_settings, cache_manager=fake_cache, clock=clock)
    yield coordinator
    await coordinator.shutdown()


@pytest.fixture
def connect(coordinator):
    """Open a socket for a user: ``conn, ws = connect(user_id, user_type)``"""

    def _connect(user_id: int, user_type: str = "candidate"):
        websocket = FakeWebSocket()
        conn = coordinator.connect(websocket, SocketUser(id=user_id, type=user_type))
        return conn, websocket

    return _connect


async def send(coordinator: SessionCoordinator, conn, event: str, data: Optional[Dict[str, Any]] = None) -> None:
    await coordinator.handle_frame(conn, {"event": event, "data": data or {}})
