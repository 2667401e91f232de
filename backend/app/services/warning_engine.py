import logging
import time
from datetime import timedelta
from typing import Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..core.exceptions import ERROR_MESSAGES, NotFound
from ..models.exam import Exam
from ..utils.timezone import utc_now
from .connection_manager import ConnectionManager
from .exam_repository import ExamRepository
from .session_registry import SessionRegistry

logger = logging.getLogger(__name__)


class WarningEngine:
    """
    Cooldown-gated warnings and the escalation policy built on them.

    The cooldown is global per identity. The persisted warning count is the
    one compared against the exam's ``maxWarnings``; the count kept in the
    session's monitoring state is for display only. Disqualification is
    terminal: once a candidate is disqualified no further warning is recorded.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        repository: ExamRepository,
        connections: ConnectionManager,
        warning_cooldown: float = 60.0,
        reconnection_timeout: float = 30.0,
        max_disconnections: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.repository = repository
        self.connections = connections
        self.warning_cooldown = warning_cooldown
        self.reconnection_timeout = reconnection_timeout
        self.max_disconnections = max_disconnections
        self.clock = clock
        self._cooldowns: Dict[int, float] = {}

    def can_issue_warning(self, user_id: int) -> bool:
        last_warning = self._cooldowns.get(user_id)
        if last_warning is None:
            return True
        return self.clock() - last_warning >= self.warning_cooldown

    def clear_cooldown(self, user_id: int) -> None:
        self._cooldowns.pop(user_id, None)

    async def issue_warning(self, exam: Exam, user_id: int, reason: str) -> bool:
        """Record and broadcast one warning; False when gated by cooldown or a terminal status"""
        candidate = exam.find_candidate(user_id)
        if candidate is None:
            raise NotFound(ERROR_MESSAGES["exam"]["candidate_not_found"])

        if candidate.is_disqualified:
            logger.info(f"Skipping warning for disqualified candidate {user_id} in exam {exam.id}")
            return False

        if not self.can_issue_warning(user_id):
            logger.info(f"Warning for candidate {user_id} suppressed by cooldown: {reason}")
            return False

        # claimed before the first await so concurrent handlers see the cooldown
        self._cooldowns[user_id] = self.clock()
        state = self.registry.get_monitoring_state(exam.id, user_id)
        if state is not None:
            state.warning_count += 1
            state.last_warning_time = utc_now()

        try:
            warning_count = await self.repository.record_warning(exam.id, user_id, reason)
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist warning for candidate {user_id} in exam {exam.id}: {e}", exc_info=True)
            return False

        if warning_count is None:
            logger.warning(f"Candidate {user_id} is missing or disqualified in exam {exam.id}; warning not recorded")
            return False

        candidate.warnings = warning_count
        logger.warning(f"Warning issued to candidate {user_id} in exam {exam.id}: {reason}")

        await self.connections.broadcast(exam.id, "warningIssued", {
            "userId": user_id,
            "message": reason,
            "videoState": state.to_payload() if state else None,
        })

        await self.evaluate_disqualification(exam, user_id, warning_count)
        return True

    async def evaluate_disqualification(self, exam: Exam, user_id: int, warning_count: Optional[int] = None) -> bool:
        if not exam.auto_disqualify_on_max_warnings:
            return False

        if warning_count is None:
            candidate = exam.find_candidate(user_id)
            warning_count = candidate.warnings if candidate else 0

        if warning_count < exam.max_warnings:
            return False

        return await self.disqualify(exam, user_id, f"reached {warning_count} warnings")

    async def handle_disconnection(self, exam: Exam, user_id: int, reason: Optional[str] = None) -> bool:
        """Record a transient disconnection; disqualifies on too many within the reconnection window"""
        if exam.find_candidate(user_id) is None:
            return False

        try:
            await self.repository.record_disconnection(exam.id, user_id, reason)
            since = utc_now() - timedelta(seconds=self.reconnection_timeout)
            recent = await self.repository.count_recent_disconnections(exam.id, user_id, since)
        except SQLAlchemyError as e:
            logger.error(f"Failed to record disconnection of candidate {user_id} in exam {exam.id}: {e}", exc_info=True)
            return False

        if recent >= self.max_disconnections:
            return await self.disqualify(exam, user_id, f"{recent} disconnections within {self.reconnection_timeout:g}s")
        return False

    async def disqualify(self, exam: Exam, user_id: int, cause: str) -> bool:
        try:
            transitioned = await self.repository.disqualify(exam.id, user_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to disqualify candidate {user_id} in exam {exam.id}: {e}", exc_info=True)
            return False

        if not transitioned:
            return False

        candidate = exam.find_candidate(user_id)
        if candidate is not None:
            candidate.status = "disqualified"

        logger.warning(f"Candidate {user_id} disqualified from exam {exam.id}: {cause}")
        await self.connections.broadcast(exam.id, "candidateDisqualified", {"userId": user_id})
        return True
