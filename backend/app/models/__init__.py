from .user import User
from .exam import Exam, ExamCandidate
from .proctoring import VideoDisconnection, CandidateWarning, AntiCheatingEvent

__all__ = [
    "User",
    "Exam",
    "ExamCandidate",
    "VideoDisconnection",
    "CandidateWarning",
    "AntiCheatingEvent",
]
