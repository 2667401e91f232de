from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from ..core.database import Base
from ..utils.timezone import utc_now

DEFAULT_MAX_WARNINGS = 3


class Exam(Base):
    __tablename__ = "exams"

    id = Column(String, primary_key=True, index=True)
    title = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    admin_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    start_time = Column(DateTime(timezone=True), nullable=True)
    duration = Column(Integer, default=60)                                      # minutes
    status = Column(String, default="scheduled")                               # scheduled | ongoing | completed | cancelled
    settings = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    admin = relationship("User", back_populates="administered_exams")
    candidates = relationship(
        "ExamCandidate",
        back_populates="exam",
        order_by="ExamCandidate.id",
        cascade="all, delete-orphan",
    )

    def find_candidate(self, user_id: int) -> Optional["ExamCandidate"]:
        for candidate in self.candidates:
            if candidate.user_id == user_id:
                return candidate
        return None

    def is_admin(self, user_id: int) -> bool:
        return self.admin_id == user_id

    @property
    def max_warnings(self) -> int:
        value = (self.settings or {}).get("maxWarnings")
        return DEFAULT_MAX_WARNINGS if value is None else int(value)

    @property
    def auto_disqualify_on_max_warnings(self) -> bool:
        value = (self.settings or {}).get("autoDisqualifyOnMaxWarnings")
        return True if value is None else bool(value)

    @property
    def require_video_monitoring(self) -> bool:
        return bool((self.settings or {}).get("requireVideoMonitoring", False))

    def __repr__(self):
        return f"<Exam {self.id} {self.title!r}>"


class ExamCandidate(Base):
    __tablename__ = "exam_candidates"
    __table_args__ = (UniqueConstraint("exam_id", "user_id", name="uq_exam_candidate"),)

    id = Column(Integer, primary_key=True, index=True)
    exam_id = Column(String, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String, default="pending")                                 # pending | ongoing | completed | disqualified
    join_time = Column(DateTime(timezone=True), nullable=True)
    submit_time = Column(DateTime(timezone=True), nullable=True)
    score = Column(Float, nullable=True)
    warnings = Column(Integer, default=0, nullable=False)

    video_monitoring_enabled = Column(Boolean, default=True, nullable=False)
    video_warning_count = Column(Integer, default=0, nullable=False)
    last_warning_time = Column(DateTime(timezone=True), nullable=True)

    exam = relationship("Exam", back_populates="candidates")
    user = relationship("User")
    disconnections = relationship(
        "VideoDisconnection",
        back_populates="candidate",
        order_by="VideoDisconnection.id",
        cascade="all, delete-orphan",
    )
    warning_records = relationship(
        "CandidateWarning",
        back_populates="candidate",
        order_by="CandidateWarning.id",
        cascade="all, delete-orphan",
    )
    anti_cheating_events = relationship(
        "AntiCheatingEvent",
        back_populates="candidate",
        order_by="AntiCheatingEvent.id",
        cascade="all, delete-orphan",
    )

    @property
    def is_disqualified(self) -> bool:
        return self.status == "disqualified"

    def __repr__(self):
        return f"<ExamCandidate user={self.user_id} exam={self.exam_id} {self.status}>"
