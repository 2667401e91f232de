"""Error taxonomy for exam session handling.

Every error carries a client-safe ``message``; handler boundaries turn these
into an ``error`` event (WebSocket) or an HTTP status (REST).
"""


class SessionError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthorized(SessionError):
    status_code = 401


class NotAuthorized(SessionError):
    status_code = 403


class NotCandidate(NotAuthorized):
    pass


class NotFound(SessionError):
    status_code = 404


class InvalidState(SessionError):
    status_code = 409


class MonitoringDisabled(InvalidState):
    pass


class Exhausted(SessionError):
    status_code = 410


ERROR_MESSAGES = {
    "auth": {
        "unauthorized": "Unauthorized access",
        "user_not_found": "User not found",
        "token_expired": "Token has expired",
        "token_invalid": "Invalid token",
    },
    "exam": {
        "not_found": "Exam not found",
        "not_authorized": "You are not authorized for this action",
        "disqualified": "You have been disqualified from this exam",
        "candidate_not_found": "Candidate not found in exam",
    },
    "video": {
        "monitoring_disabled": "Video monitoring is disabled",
        "only_candidates_stream": "Only candidates can stream",
        "only_candidates_frames": "Only candidates can send video frames",
        "only_candidates_monitoring": "Only candidates can start automated monitoring",
        "not_in_session": "Join the exam before streaming",
    },
    "session": {
        "invalid_reconnection": "Invalid reconnection attempt",
        "warning_not_authorized": "Not authorized to send warnings",
        "reconnection_exhausted": "Maximum reconnection attempts exceeded",
    },
}
