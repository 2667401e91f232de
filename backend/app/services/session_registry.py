import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from ..utils.timezone import isoformat

logger = logging.getLogger(__name__)

ROLE_HOST = "host"
ROLE_CANDIDATE = "candidate"


@dataclass
class VideoMonitoringState:
    is_streaming: bool = False
    warning_count: int = 0
    last_warning_time: Optional[datetime] = None

    def to_payload(self) -> dict:
        return {
            "isStreaming": self.is_streaming,
            "warningCount": self.warning_count,
            "lastWarningTime": isoformat(self.last_warning_time),
        }


@dataclass
class Participant:
    handle: str
    exam_id: str
    user_id: int
    role: str

    @property
    def is_host(self) -> bool:
        return self.role == ROLE_HOST


@dataclass
class Session:
    exam_id: str
    participants: Dict[str, Participant] = field(default_factory=dict)          # handle -> participant, insertion ordered
    host_handle: Optional[str] = None
    candidate_handles: Dict[int, str] = field(default_factory=dict)             # user id -> latest handle
    monitoring: Dict[int, VideoMonitoringState] = field(default_factory=dict)   # user id -> state


class SessionRegistry:
    """
    Live exam sessions: which connection handles are in which exam, who the
    host is, and the per-candidate video monitoring state.

    Pure in-memory bookkeeping with no I/O. Unknown exam ids and handles are
    no-ops or yield empty results.

    A candidate has at most one live handle per session; rejoining replaces the
    previous handle. The host leaving only clears the host slot, candidates and
    their monitoring state stay in place.
    """

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._handle_index: Dict[str, str] = {}                                  # handle -> exam id

    def join(self, exam_id: str, handle: str, user_id: int, role: str) -> Participant:
        session = self._sessions.get(exam_id)
        if session is None:
            session = Session(exam_id=exam_id)
            self._sessions[exam_id] = session

        current_exam = self._handle_index.get(handle)
        if current_exam is not None and current_exam != exam_id:
            self.leave(current_exam, handle)

        participant = Participant(handle=handle, exam_id=exam_id, user_id=user_id, role=role)

        if role == ROLE_HOST:
            previous = session.host_handle
            if previous is not None and previous != handle:
                self._drop_handle(session, previous)
            session.host_handle = handle
        else:
            previous = session.candidate_handles.get(user_id)
            if previous is not None and previous != handle:
                self._drop_handle(session, previous)
            session.candidate_handles[user_id] = handle
            session.monitoring.setdefault(user_id, VideoMonitoringState())

        session.participants.pop(handle, None)
        session.participants[handle] = participant
        self._handle_index[handle] = exam_id
        return participant

    def leave(self, exam_id: str, handle: str) -> Optional[Participant]:
        session = self._sessions.get(exam_id)
        if session is None:
            return None

        participant = session.participants.pop(handle, None)
        if participant is None:
            return None
        self._handle_index.pop(handle, None)

        if participant.is_host:
            if session.host_handle == handle:
                session.host_handle = None
                logger.info(f"Host left exam {exam_id}; dashboard feed stopped")
        elif session.candidate_handles.get(participant.user_id) == handle:
            del session.candidate_handles[participant.user_id]
            session.monitoring.pop(participant.user_id, None)

        if not session.participants:
            del self._sessions[exam_id]
        return participant

    def _drop_handle(self, session: Session, handle: str) -> None:
        session.participants.pop(handle, None)
        self._handle_index.pop(handle, None)

    def list_candidates(self, exam_id: str) -> List[Participant]:
        session = self._sessions.get(exam_id)
        if session is None:
            return []
        return [p for p in session.participants.values() if not p.is_host]

    def handles(self, exam_id: str) -> List[str]:
        session = self._sessions.get(exam_id)
        if session is None:
            return []
        return list(session.participants)

    def host_handle(self, exam_id: str) -> Optional[str]:
        session = self._sessions.get(exam_id)
        return session.host_handle if session else None

    def handle_for(self, exam_id: str, user_id: int) -> Optional[str]:
        session = self._sessions.get(exam_id)
        if session is None:
            return None
        return session.candidate_handles.get(user_id)

    def participant(self, handle: str) -> Optional[Participant]:
        exam_id = self._handle_index.get(handle)
        if exam_id is None:
            return None
        return self._sessions[exam_id].participants.get(handle)

    def exam_of(self, handle: str) -> Optional[str]:
        return self._handle_index.get(handle)

    def get_monitoring_state(self, exam_id: str, user_id: int) -> Optional[VideoMonitoringState]:
        session = self._sessions.get(exam_id)
        if session is None:
            return None
        return session.monitoring.get(user_id)

    def has_session(self, exam_id: str) -> bool:
        return exam_id in self._sessions

    def snapshot(self, exam_id: str) -> dict:
        """Dashboard view of a session, safe to serialise"""
        candidates = []
        for participant in self.list_candidates(exam_id):
            state = self.get_monitoring_state(exam_id, participant.user_id)
            candidates.append({
                "handle": participant.handle,
                "userId": participant.user_id,
                "videoState": state.to_payload() if state else None,
            })
        return {
            "examId": exam_id,
            "hostConnected": self.host_handle(exam_id) is not None,
            "candidates": candidates,
        }
