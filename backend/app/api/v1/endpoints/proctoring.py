import logging

from fastapi import APIRouter, Depends

from ....schemas.proctoring import (
    AntiCheatingEventCreate,
    AntiCheatingEventResponse,
    AntiCheatingReport,
)
from ....services.auth_service import SocketUser
from ....services.session_coordinator import SessionCoordinator
from ...deps import get_coordinator, get_current_candidate, get_current_user

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/exams/{exam_id}/anti-cheating", response_model=AntiCheatingEventResponse)
async def record_anti_cheating_event(
    exam_id: str,
    event: AntiCheatingEventCreate,
    current_user: SocketUser = Depends(get_current_candidate),
    coordinator: SessionCoordinator = Depends(get_coordinator),
):
    """Record a browser-side anti-cheating event for the calling candidate"""
    warnings = await coordinator.record_anti_cheating_event(
        exam_id, current_user, event.event_type, event.details
    )
    logger.info(f"Anti-cheating event {event.event_type} recorded for user {current_user.id} in exam {exam_id}")
    return AntiCheatingEventResponse(message="Event recorded", warnings_triggered=warnings)


@router.get("/exams/{exam_id}/anti-cheating-report", response_model=AntiCheatingReport)
async def get_anti_cheating_report(
    exam_id: str,
    current_user: SocketUser = Depends(get_current_user),
    coordinator: SessionCoordinator = Depends(get_coordinator),
):
    """Per-candidate event totals and risk level; exam admin only"""
    return await coordinator.anti_cheating_report(exam_id, current_user)


@router.get("/exams/{exam_id}/monitoring")
async def get_monitoring_snapshot(
    exam_id: str,
    current_user: SocketUser = Depends(get_current_user),
    coordinator: SessionCoordinator = Depends(get_coordinator),
):
    return await coordinator.monitoring_snapshot(exam_id, current_user)
