import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..models.exam import Exam, ExamCandidate
from ..models.proctoring import AntiCheatingEvent, CandidateWarning, VideoDisconnection
from ..models.user import User
from ..utils.timezone import utc_now

logger = logging.getLogger(__name__)


class ExamRepository:
    """
    Persistence boundary for the exam aggregate.

    Reads return detached snapshots. Every mutator runs in its own short
    transaction and issues a targeted statement (counter increments, child row
    inserts, guarded status transitions) so that concurrent handlers touching
    the same exam never overwrite each other's changes.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def get_exam(self, exam_id: str, with_events: bool = False) -> Optional[Exam]:
        candidate_loader = selectinload(Exam.candidates)
        options = [candidate_loader]
        if with_events:
            options.append(candidate_loader.selectinload(ExamCandidate.anti_cheating_events))

        async with self.session_factory() as db:
            result = await db.execute(
                select(Exam).options(*options).filter(Exam.id == exam_id)
            )
            return result.scalars().first()

    async def get_user(self, user_id: int) -> Optional[User]:
        async with self.session_factory() as db:
            result = await db.execute(select(User).filter(User.id == user_id))
            return result.scalars().first()

    async def _candidate_id(self, db: AsyncSession, exam_id: str, user_id: int) -> Optional[int]:
        result = await db.execute(
            select(ExamCandidate.id).filter(
                ExamCandidate.exam_id == exam_id,
                ExamCandidate.user_id == user_id
            )
        )
        return result.scalars().first()

    async def record_warning(self, exam_id: str, user_id: int, reason: str) -> Optional[int]:
        """Increment the candidate's warning counters; returns the new persisted count, or None once disqualified"""
        now = utc_now()
        async with self.session_factory() as db:
            result = await db.execute(
                update(ExamCandidate)
                .where(
                    ExamCandidate.exam_id == exam_id,
                    ExamCandidate.user_id == user_id,
                    ExamCandidate.status != "disqualified"
                )
                .values(
                    warnings=ExamCandidate.warnings + 1,
                    video_warning_count=ExamCandidate.video_warning_count + 1,
                    last_warning_time=now
                )
                .returning(ExamCandidate.id, ExamCandidate.warnings)
            )
            row = result.first()
            if row is None:
                await db.rollback()
                return None

            db.add(CandidateWarning(candidate_id=row.id, reason=reason, issued_at=now))
            await db.commit()
            return row.warnings

    async def record_disconnection(self, exam_id: str, user_id: int, reason: Optional[str] = None) -> bool:
        async with self.session_factory() as db:
            candidate_id = await self._candidate_id(db, exam_id, user_id)
            if candidate_id is None:
                return False

            db.add(VideoDisconnection(
                candidate_id=candidate_id,
                start_time=utc_now(),
                reason=reason or "Unknown disconnection"
            ))
            await db.commit()
            return True

    async def record_reconnection(self, exam_id: str, user_id: int) -> bool:
        """Close the most recent disconnection window; never creates a new one"""
        async with self.session_factory() as db:
            candidate_id = await self._candidate_id(db, exam_id, user_id)
            if candidate_id is None:
                return False

            result = await db.execute(
                select(VideoDisconnection.id)
                .filter(VideoDisconnection.candidate_id == candidate_id)
                .order_by(VideoDisconnection.start_time.desc(), VideoDisconnection.id.desc())
                .limit(1)
                .with_for_update()
            )
            latest_id = result.scalars().first()
            if latest_id is None:
                return False

            await db.execute(
                update(VideoDisconnection)
                .where(VideoDisconnection.id == latest_id)
                .values(end_time=utc_now())
            )
            await db.commit()
            return True

    async def count_recent_disconnections(self, exam_id: str, user_id: int, since: datetime) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count(VideoDisconnection.id))
                .join(ExamCandidate, VideoDisconnection.candidate_id == ExamCandidate.id)
                .filter(
                    ExamCandidate.exam_id == exam_id,
                    ExamCandidate.user_id == user_id,
                    VideoDisconnection.start_time >= since
                )
            )
            return result.scalar_one()

    async def disqualify(self, exam_id: str, user_id: int) -> bool:
        """Move the candidate to the terminal disqualified status; True only on the transition"""
        async with self.session_factory() as db:
            result = await db.execute(
                update(ExamCandidate)
                .where(
                    ExamCandidate.exam_id == exam_id,
                    ExamCandidate.user_id == user_id,
                    ExamCandidate.status != "disqualified"
                )
                .values(status="disqualified")
            )
            await db.commit()
            return result.rowcount > 0

    async def record_anti_cheating_event(
        self,
        exam_id: str,
        user_id: int,
        event_type: str,
        details: Optional[Dict[str, Any]] = None
    ) -> bool:
        async with self.session_factory() as db:
            candidate_id = await self._candidate_id(db, exam_id, user_id)
            if candidate_id is None:
                return False

            db.add(AntiCheatingEvent(
                candidate_id=candidate_id,
                event_type=event_type,
                details=details,
                timestamp=utc_now()
            ))
            await db.commit()
            return True
