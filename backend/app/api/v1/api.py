from fastapi import APIRouter

from .endpoints import exam_session, proctoring

api_router = APIRouter()

api_router.include_router(exam_session.router, prefix="/exam-session", tags=["exam-session"])
api_router.include_router(proctoring.router, prefix="/proctoring", tags=["proctoring"])
