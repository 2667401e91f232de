from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, JSON
from sqlalchemy.orm import relationship

from ..core.database import Base
from ..utils.timezone import utc_now


class VideoDisconnection(Base):
    __tablename__ = "video_disconnections"

    id = Column(Integer, primary_key=True, index=True)
    candidate_id = Column(Integer, ForeignKey("exam_candidates.id", ondelete="CASCADE"), nullable=False, index=True)
    start_time = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    end_time = Column(DateTime(timezone=True), nullable=True)
    reason = Column(String, nullable=True)

    candidate = relationship("ExamCandidate", back_populates="disconnections")

    def __repr__(self):
        return f"<VideoDisconnection candidate={self.candidate_id} {self.start_time} -> {self.end_time}>"


class CandidateWarning(Base):
    __tablename__ = "candidate_warnings"

    id = Column(Integer, primary_key=True, index=True)
    candidate_id = Column(Integer, ForeignKey("exam_candidates.id", ondelete="CASCADE"), nullable=False, index=True)
    reason = Column(Text)
    issued_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    candidate = relationship("ExamCandidate", back_populates="warning_records")


class AntiCheatingEvent(Base):
    __tablename__ = "anti_cheating_events"

    id = Column(Integer, primary_key=True, index=True)
    candidate_id = Column(Integer, ForeignKey("exam_candidates.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String, nullable=False)                                # tab_switch, copy_paste, right_click, dev_tools, fullscreen_exit
    details = Column(JSON)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    candidate = relationship("ExamCandidate", back_populates="anti_cheating_events")

    def __repr__(self):
        return f"<AntiCheatingEvent {self.event_type} for candidate {self.candidate_id}>"
