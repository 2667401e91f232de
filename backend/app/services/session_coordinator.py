import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import WebSocket
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from ..core.cache import CacheManager
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import (
    ERROR_MESSAGES,
    Exhausted,
    InvalidState,
    MonitoringDisabled,
    NotAuthorized,
    NotCandidate,
    NotFound,
    SessionError,
)
from ..models.exam import Exam
from ..schemas.events import (
    KNOWN_EVENTS,
    LEGACY_WARNING_EVENT,
    InboundMessage,
    canonical_event_name,
    parse_inbound,
)
from ..utils.timezone import isoformat, utc_now
from .activity_aggregator import SuspiciousActivityAggregator, build_anti_cheating_report
from .auth_service import AuthService, SocketUser
from .connection_manager import ConnectionManager
from .exam_repository import ExamRepository
from .reconnection_tracker import ReconnectionTracker, is_transient_disconnect
from .session_registry import ROLE_CANDIDATE, ROLE_HOST, SessionRegistry
from .signaling_relay import SignalingRelay
from .video_analysis import FrameAnalyzer
from .warning_engine import WarningEngine

logger = logging.getLogger(__name__)

ACTION_LABELS = {
    "joinExam": "join exam",
    "leaveExam": "leave exam",
    "startStream": "start stream",
    "stopStream": "stop stream",
    "sendWarning": "send warning",
    "analyzeFrame": "analyze video frame",
    "startAutomatedMonitoring": "start automated monitoring",
    "stopAutomatedMonitoring": "stop automated monitoring",
    "sendingSignal": "relay signal",
    "sendSignal": "relay signal",
    "reconnect": "reconnect",
}


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    JOINED = "joined"
    STREAMING = "streaming"
    IDLE = "idle"
    LEFT = "left"
    DISCONNECTED = "disconnected"


@dataclass
class Connection:
    handle: str
    user: SocketUser
    state: ConnectionState = ConnectionState.AUTHENTICATED
    exam_id: Optional[str] = None


class SessionCoordinator:
    """
    Entry point for every connection event of the exam session socket.

    One instance per process owns the registry, reconnection tracker, warning
    engine and activity aggregator and is handed to the transport layer. Each
    inbound frame is validated against the event model, routed to exactly one
    handler, and any ``SessionError`` raised on the way is returned to the
    originating connection as an ``error`` event.
    """

    def __init__(
        self,
        repository: ExamRepository,
        registry: SessionRegistry,
        connections: ConnectionManager,
        warning_engine: WarningEngine,
        aggregator: SuspiciousActivityAggregator,
        relay: SignalingRelay,
        auth_service: AuthService,
        reconnection_timeout: float = 30.0,
        max_reconnection_attempts: int = 3,
        monitoring_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.repository = repository
        self.registry = registry
        self.connections = connections
        self.warning_engine = warning_engine
        self.aggregator = aggregator
        self.relay = relay
        self.auth_service = auth_service
        self.monitoring_interval = monitoring_interval
        self.tracker = ReconnectionTracker(
            on_exhausted=self._on_reconnection_exhausted,
            max_attempts=max_reconnection_attempts,
            reconnection_timeout=reconnection_timeout,
            clock=clock,
        )
        self._connections: Dict[str, Connection] = {}
        self._monitoring_tasks: Dict[int, Tuple[str, asyncio.Task]] = {}

        self._handlers = {
            "joinExam": lambda conn, m: self.join_session(conn, m.exam_id),
            "leaveExam": lambda conn, m: self.leave_session(conn, m.exam_id),
            "startStream": lambda conn, m: self.start_stream(conn, m.exam_id),
            "stopStream": lambda conn, m: self.stop_stream(conn, m.exam_id, m.reason),
            "sendWarning": lambda conn, m: self.send_warning(conn, m.exam_id, m.user_id, m.message),
            "analyzeFrame": lambda conn, m: self.analyze_frame(conn, m.exam_id, m.frame_data),
            "startAutomatedMonitoring": lambda conn, m: self.start_automated_monitoring(conn, m.exam_id),
            "stopAutomatedMonitoring": lambda conn, m: self.stop_automated_monitoring(conn),
            "sendingSignal": lambda conn, m: self.relay.relay_offer(m.to, conn.handle, m.signal),
            "sendSignal": lambda conn, m: self.relay.relay_answer(m.to, conn.handle, m.signal),
            "reconnect": lambda conn, m: self.reconnect(conn, m.exam_id),
        }

    @classmethod
    def create(
        cls,
        repository: ExamRepository,
        config: Settings = default_settings,
        analyzer: Optional[FrameAnalyzer] = None,
        cache_manager: Optional[CacheManager] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "SessionCoordinator":
        registry = SessionRegistry()
        connections = ConnectionManager(registry)
        warning_engine = WarningEngine(
            registry,
            repository,
            connections,
            warning_cooldown=config.warning_cooldown,
            reconnection_timeout=config.reconnection_timeout,
            max_disconnections=config.max_disconnections,
            clock=clock,
        )
        aggregator = SuspiciousActivityAggregator(
            warning_engine,
            analyzer=analyzer,
            analysis_window=config.analysis_window,
            event_window=config.anti_cheating_window,
            clock=clock,
        )
        return cls(
            repository=repository,
            registry=registry,
            connections=connections,
            warning_engine=warning_engine,
            aggregator=aggregator,
            relay=SignalingRelay(connections),
            auth_service=AuthService(repository, cache_manager),
            reconnection_timeout=config.reconnection_timeout,
            max_reconnection_attempts=config.max_reconnection_attempts,
            monitoring_interval=config.automated_monitoring_interval,
            clock=clock,
        )

    # connection lifecycle

    async def authenticate(self, token: Optional[str]) -> SocketUser:
        return await self.auth_service.authenticate(token)

    def connect(self, websocket: WebSocket, user: SocketUser) -> Connection:
        conn = Connection(handle=uuid.uuid4().hex, user=user)
        self.connections.connect(conn.handle, websocket)
        self._connections[conn.handle] = conn
        logger.info(f"User connected: {user.id} (handle {conn.handle})")
        return conn

    async def handle_frame(self, conn: Connection, frame: Any) -> None:
        if not isinstance(frame, dict):
            await self._send_error(conn, "Invalid message")
            return

        if frame.get("event") == LEGACY_WARNING_EVENT:
            frame = self._adapt_legacy_warning(conn, frame)

        event = canonical_event_name(frame.get("event"))
        if event not in KNOWN_EVENTS:
            await self._send_error(conn, f"Unknown event: {event}")
            return

        try:
            message = parse_inbound(frame)
        except ValidationError as e:
            logger.debug(f"Invalid {event} payload from handle {conn.handle}: {e}")
            await self._send_error(conn, f"Invalid payload for {event}")
            return

        await self.dispatch(conn, message)

    def _adapt_legacy_warning(self, conn: Connection, frame: Dict[str, Any]) -> Dict[str, Any]:
        """Resolve ``{to: <handle>, message}`` against the sender's current session"""
        data = frame.get("data") if isinstance(frame.get("data"), dict) else {}
        adapted: Dict[str, Any] = {"message": data.get("message")}

        exam_id = self.registry.exam_of(conn.handle)
        if exam_id is not None:
            adapted["examId"] = exam_id
            target = self.registry.participant(str(data.get("to") or ""))
            if target is not None and target.exam_id == exam_id and not target.is_host:
                adapted["userId"] = target.user_id

        return {"event": "sendWarning", "data": adapted}

    async def dispatch(self, conn: Connection, message: InboundMessage) -> None:
        if conn.state in (ConnectionState.CONNECTING, ConnectionState.DISCONNECTED):
            return

        handler = self._handlers[message.event]
        try:
            await handler(conn, message)
        except SessionError as e:
            await self._send_error(conn, e.message)
        except Exception as e:
            logger.error(f"{message.event} failed for user {conn.user.id}: {e}", exc_info=True)
            await self._send_error(conn, f"Failed to {ACTION_LABELS[message.event]}")

    async def disconnect(self, conn: Connection, reason: str) -> None:
        if conn.state == ConnectionState.DISCONNECTED:
            return
        conn.state = ConnectionState.DISCONNECTED
        self.connections.disconnect(conn.handle)
        self._connections.pop(conn.handle, None)

        try:
            await self._handle_disconnect(conn, reason)
        except Exception as e:
            logger.error(f"Disconnect handling failed for user {conn.user.id}: {e}", exc_info=True)

    async def _handle_disconnect(self, conn: Connection, reason: str) -> None:
        user_id = conn.user.id
        exam_id = self.registry.exam_of(conn.handle)
        participant = self.registry.leave(exam_id, conn.handle) if exam_id else None
        self._stop_monitoring_task(user_id, owner=conn.handle)
        conn.exam_id = None

        if participant is None:
            logger.info(f"User disconnected: {user_id} ({reason}), not in a session")
            return

        self.aggregator.clear_analysis_data(user_id)
        transient = is_transient_disconnect(reason)
        logger.info(f"User disconnected: {user_id} from exam {exam_id} ({reason}, transient={transient})")

        if transient and not participant.is_host:
            exam = await self.repository.get_exam(exam_id)
            if exam is not None:
                await self.warning_engine.handle_disconnection(exam, user_id, reason)

        await self.connections.broadcast(exam_id, "userDisconnected", {
            "userId": user_id,
            "reason": reason,
            "timestamp": isoformat(utc_now()),
        })

        if participant.is_host:
            logger.info(f"Host of exam {exam_id} disconnected; candidate monitoring continues")
        else:
            await self._push_user_list(exam_id)

        if transient:
            await self.tracker.register_disconnect(user_id, exam_id)

    async def _on_reconnection_exhausted(self, user_id: int, exam_id: str) -> None:
        await self.connections.broadcast(exam_id, "userDisconnected", {
            "userId": user_id,
            "reason": ERROR_MESSAGES["session"]["reconnection_exhausted"],
            "permanent": True,
            "timestamp": isoformat(utc_now()),
        })

    # session events

    async def join_session(self, conn: Connection, exam_id: str) -> None:
        exam = await self._get_exam(exam_id)
        role = self._authorize(exam, conn.user)

        if role == ROLE_CANDIDATE and exam.find_candidate(conn.user.id).is_disqualified:
            raise InvalidState(ERROR_MESSAGES["exam"]["disqualified"])

        self.registry.join(exam_id, conn.handle, conn.user.id, role)
        conn.exam_id = exam_id
        conn.state = ConnectionState.JOINED
        logger.info(f"User {conn.user.id} joined exam {exam_id} as {role}")

        state = self.registry.get_monitoring_state(exam_id, conn.user.id) if role == ROLE_CANDIDATE else None
        await self.connections.send(conn.handle, "joinedExam", {"examId": exam_id})
        await self.connections.broadcast(exam_id, "userJoined", {
            "userId": conn.user.id,
            "type": conn.user.type,
            "videoState": state.to_payload() if state else None,
        })

        if role == ROLE_HOST:
            await self.connections.send(conn.handle, "userList", self.registry.snapshot(exam_id))
        else:
            await self._push_user_list(exam_id)

    async def leave_session(self, conn: Connection, exam_id: str) -> None:
        participant = self.registry.leave(exam_id, conn.handle)
        if participant is None:
            return

        conn.exam_id = None
        conn.state = ConnectionState.LEFT
        logger.info(f"User {conn.user.id} left exam {exam_id}")

        if not participant.is_host:
            self._stop_monitoring_task(conn.user.id, owner=conn.handle)
            self.aggregator.clear(conn.user.id)

        await self.connections.broadcast(exam_id, "userLeft", {"userId": conn.user.id})
        if not participant.is_host:
            await self._push_user_list(exam_id)

    async def start_stream(self, conn: Connection, exam_id: str) -> None:
        if not conn.user.is_candidate:
            raise NotCandidate(ERROR_MESSAGES["video"]["only_candidates_stream"])

        exam = await self._get_exam(exam_id)
        candidate = exam.find_candidate(conn.user.id)
        if candidate is None:
            raise NotFound(ERROR_MESSAGES["exam"]["candidate_not_found"])
        if candidate.is_disqualified:
            raise InvalidState(ERROR_MESSAGES["exam"]["disqualified"])
        if not candidate.video_monitoring_enabled:
            raise MonitoringDisabled(ERROR_MESSAGES["video"]["monitoring_disabled"])

        state = self.registry.get_monitoring_state(exam_id, conn.user.id)
        if state is None or self.registry.handle_for(exam_id, conn.user.id) != conn.handle:
            raise InvalidState(ERROR_MESSAGES["video"]["not_in_session"])

        state.is_streaming = True
        conn.state = ConnectionState.STREAMING
        await self.connections.broadcast(exam_id, "streamStarted", {
            "userId": conn.user.id,
            "videoState": state.to_payload(),
        })

    async def stop_stream(self, conn: Connection, exam_id: str, reason: Optional[str] = None) -> None:
        exam = await self._get_exam(exam_id)
        if exam.find_candidate(conn.user.id) is None:
            raise NotFound(ERROR_MESSAGES["exam"]["candidate_not_found"])
        if self.registry.handle_for(exam_id, conn.user.id) != conn.handle:
            raise InvalidState(ERROR_MESSAGES["video"]["not_in_session"])

        await self.repository.record_disconnection(exam_id, conn.user.id, reason)

        state = self.registry.get_monitoring_state(exam_id, conn.user.id)
        if state is not None:
            state.is_streaming = False
        if conn.state == ConnectionState.STREAMING:
            conn.state = ConnectionState.IDLE

        await self.connections.broadcast(exam_id, "streamStopped", {
            "userId": conn.user.id,
            "reason": reason,
            "videoState": state.to_payload() if state else None,
        })

    async def send_warning(self, conn: Connection, exam_id: str, user_id: int, message: str) -> bool:
        exam = await self._get_exam(exam_id)
        if not exam.is_admin(conn.user.id):
            raise NotAuthorized(ERROR_MESSAGES["session"]["warning_not_authorized"])
        if exam.find_candidate(user_id) is None:
            raise NotFound(ERROR_MESSAGES["exam"]["candidate_not_found"])

        return await self.warning_engine.issue_warning(exam, user_id, message)

    async def reconnect(self, conn: Connection, exam_id: str) -> None:
        user_id = conn.user.id
        entry = self.tracker.get(user_id)
        if entry is None or entry.exam_id != exam_id:
            raise self._reconnection_rejected(user_id, exam_id)

        exam = await self._get_exam(exam_id)
        role = self._authorize(exam, conn.user)
        if role == ROLE_CANDIDATE and exam.find_candidate(user_id).is_disqualified:
            self.tracker.clear(user_id)
            raise InvalidState(ERROR_MESSAGES["exam"]["disqualified"])

        # the entry may have expired while the exam was loading
        if not self.tracker.reconnect(user_id, exam_id):
            raise self._reconnection_rejected(user_id, exam_id)

        if role == ROLE_CANDIDATE:
            try:
                await self.repository.record_reconnection(exam_id, user_id)
            except SQLAlchemyError as e:
                logger.error(f"Failed to record reconnection of user {user_id} in exam {exam_id}: {e}", exc_info=True)

        self.registry.join(exam_id, conn.handle, user_id, role)
        conn.exam_id = exam_id
        conn.state = ConnectionState.JOINED

        state = self.registry.get_monitoring_state(exam_id, user_id) if role == ROLE_CANDIDATE else None
        await self.connections.broadcast(exam_id, "userReconnected", {
            "userId": user_id,
            "videoState": state.to_payload() if state else None,
        })

        if role == ROLE_HOST:
            await self.connections.send(conn.handle, "userList", self.registry.snapshot(exam_id))
        else:
            await self._push_user_list(exam_id)

    # video analysis

    async def analyze_frame(self, conn: Connection, exam_id: str, frame_data: str) -> None:
        if not conn.user.is_candidate:
            raise NotCandidate(ERROR_MESSAGES["video"]["only_candidates_frames"])

        result = await self.aggregator.analyze_frame(conn.user.id, frame_data)
        activity = self.aggregator.check_suspicious_activity(conn.user.id)

        if activity.is_suspicious and self.registry.exam_of(conn.handle) == exam_id:
            await self.connections.broadcast(exam_id, "suspiciousActivityDetected", {
                "userId": conn.user.id,
                "reasons": activity.reasons,
                "confidence": activity.confidence,
                "timestamp": isoformat(utc_now()),
            })

        await self.connections.send(conn.handle, "frameAnalysisResult", {
            "result": result.to_payload(),
            "suspiciousActivity": activity.to_payload(),
        })

    async def start_automated_monitoring(self, conn: Connection, exam_id: str) -> None:
        if not conn.user.is_candidate:
            raise NotCandidate(ERROR_MESSAGES["video"]["only_candidates_monitoring"])

        exam = await self._get_exam(exam_id)
        if exam.find_candidate(conn.user.id) is None:
            raise NotFound(ERROR_MESSAGES["exam"]["candidate_not_found"])

        self._stop_monitoring_task(conn.user.id)
        task = asyncio.create_task(self._monitoring_loop(conn.user.id, exam_id))
        self._monitoring_tasks[conn.user.id] = (conn.handle, task)
        logger.info(f"Automated monitoring started for user {conn.user.id} in exam {exam_id}")

        await self.connections.send(conn.handle, "automatedMonitoringStarted", {"examId": exam_id})

    async def stop_automated_monitoring(self, conn: Connection) -> None:
        self._stop_monitoring_task(conn.user.id)
        self.aggregator.clear_analysis_data(conn.user.id)
        await self.connections.send(conn.handle, "automatedMonitoringStopped")

    async def _monitoring_loop(self, user_id: int, exam_id: str) -> None:
        while True:
            await asyncio.sleep(self.monitoring_interval)
            try:
                exam = await self.repository.get_exam(exam_id)
                if exam is None:
                    continue
                if await self.aggregator.process_automated_warning(exam, user_id):
                    await self.connections.broadcast(exam_id, "automatedWarningIssued", {
                        "userId": user_id,
                        "timestamp": isoformat(utc_now()),
                    })
            except Exception as e:
                logger.error(f"Automated monitoring check error for user {user_id}: {e}", exc_info=True)

    def _stop_monitoring_task(self, user_id: int, owner: Optional[str] = None) -> None:
        entry = self._monitoring_tasks.get(user_id)
        if entry is None:
            return
        handle, task = entry
        if owner is not None and handle != owner:
            return

        del self._monitoring_tasks[user_id]
        task.cancel()
        logger.info(f"Automated monitoring stopped for user {user_id}")

    def is_monitoring(self, user_id: int) -> bool:
        return user_id in self._monitoring_tasks

    # REST-facing operations

    async def record_anti_cheating_event(
        self,
        exam_id: str,
        user: SocketUser,
        event_type: str,
        details: Optional[Dict[str, Any]] = None
    ) -> List[str]:
        exam = await self._get_exam(exam_id)
        if exam.find_candidate(user.id) is None:
            raise NotAuthorized(ERROR_MESSAGES["exam"]["not_authorized"])

        await self.repository.record_anti_cheating_event(exam_id, user.id, event_type, details)
        return await self.aggregator.record_event(exam, user.id, event_type)

    async def anti_cheating_report(self, exam_id: str, user: SocketUser) -> dict:
        exam = await self._get_exam(exam_id, with_events=True)
        if not exam.is_admin(user.id):
            raise NotAuthorized(ERROR_MESSAGES["exam"]["not_authorized"])
        return build_anti_cheating_report(exam)

    async def monitoring_snapshot(self, exam_id: str, user: SocketUser) -> dict:
        exam = await self._get_exam(exam_id)
        if not exam.is_admin(user.id):
            raise NotAuthorized(ERROR_MESSAGES["exam"]["not_authorized"])
        return self.registry.snapshot(exam_id)

    # helpers

    async def _get_exam(self, exam_id: str, with_events: bool = False) -> Exam:
        exam = await self.repository.get_exam(exam_id, with_events=with_events)
        if exam is None:
            raise NotFound(ERROR_MESSAGES["exam"]["not_found"])
        return exam

    def _reconnection_rejected(self, user_id: int, exam_id: str) -> SessionError:
        if self.tracker.is_exhausted(user_id, exam_id):
            return Exhausted(ERROR_MESSAGES["session"]["reconnection_exhausted"])
        return InvalidState(ERROR_MESSAGES["session"]["invalid_reconnection"])

    def _authorize(self, exam: Exam, user: SocketUser) -> str:
        if exam.is_admin(user.id):
            return ROLE_HOST
        if exam.find_candidate(user.id) is not None:
            return ROLE_CANDIDATE
        raise NotAuthorized(ERROR_MESSAGES["exam"]["not_authorized"])

    async def _push_user_list(self, exam_id: str) -> None:
        host_handle = self.registry.host_handle(exam_id)
        if host_handle is not None:
            await self.connections.send(host_handle, "userList", self.registry.snapshot(exam_id))

    async def _send_error(self, conn: Connection, message: str) -> None:
        await self.connections.send(conn.handle, "error", {"message": message})

    async def shutdown(self) -> None:
        for _, task in list(self._monitoring_tasks.values()):
            task.cancel()
        self._monitoring_tasks.clear()
        await self.tracker.shutdown()
        await self.connections.close_all()
