from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

AntiCheatingEventType = Literal["tab_switch", "copy_paste", "right_click", "dev_tools", "fullscreen_exit"]


class AntiCheatingEventCreate(BaseModel):
    event_type: AntiCheatingEventType = Field(..., alias="eventType")
    details: Optional[Dict[str, Any]] = None

    class Config:
        populate_by_name = True


class AntiCheatingEventResponse(BaseModel):
    message: str
    warnings_triggered: List[str] = Field(default_factory=list, alias="warningsTriggered")

    class Config:
        populate_by_name = True


class EventBreakdown(BaseModel):
    tab_switches: int = Field(0, alias="tabSwitches")
    copy_paste: int = Field(0, alias="copyPaste")
    right_clicks: int = Field(0, alias="rightClicks")
    dev_tools: int = Field(0, alias="devTools")
    fullscreen_exits: int = Field(0, alias="fullscreenExits")

    class Config:
        populate_by_name = True


class CandidateRiskReport(BaseModel):
    candidate_id: int = Field(..., alias="candidateId")
    total_events: int = Field(..., alias="totalEvents")
    recent_events: int = Field(..., alias="recentEvents")
    event_breakdown: EventBreakdown = Field(..., alias="eventBreakdown")
    risk_level: Literal["low", "medium", "high"] = Field(..., alias="riskLevel")
    warnings: int = 0
    status: str

    class Config:
        populate_by_name = True


class AntiCheatingReport(BaseModel):
    exam_id: str = Field(..., alias="examId")
    report: List[CandidateRiskReport]

    class Config:
        populate_by_name = True
