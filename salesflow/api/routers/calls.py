"""Call-priority routes: analysis, call lists, feedback, weights, one-click actions."""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from typing import Dict, Optional

from salesflow.api.deps import get_services
from salesflow.db.entities import Priority, priority_rank

router = APIRouter(prefix="/api/calls", tags=["calls"])


class FeedbackCreate(BaseModel):
    contact_id: str
    reason_code: str
    outcome: str
    notes: Optional[str] = ""
    called_by: Optional[str] = ""
    call_duration: Optional[int] = None
    recommendation_id: Optional[str] = None


class CallOutcome(BaseModel):
    result: str
    notes: Optional[str] = ""
    duration: Optional[int] = None
    called_by: Optional[str] = ""


class WeightsUpdate(BaseModel):
    weights: Dict[str, int]


class CallRequest(BaseModel):
    agent_phone: Optional[str] = None


class SmsRequest(BaseModel):
    message: str


class CallTaskCreate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = ""


class CallTasksRequest(BaseModel):
    min_priority: Optional[str] = Priority.HIGH.value
    limit: Optional[int] = 20


# ─── ANALYSIS ────────────────────────────────────────────────

@router.get("/analyze/{contact_id}")
def analyze(contact_id: str):
    return get_services().scorer.analyze(contact_id).to_dict()


@router.get("/list")
def call_list(min_priority: str = Priority.LOW.value, limit: int = 20):
    priority_rank(min_priority)
    return get_services().scorer.generate_call_list(min_priority=min_priority, limit=limit)


@router.get("/top")
def top_recommendations(limit: int = 5):
    return get_services().actions.get_top_recommendations(limit=limit)


@router.get("/recommendation/{contact_id}")
def recommendation(contact_id: str):
    rec = get_services().actions.get_recommendation_with_actions(contact_id)
    if rec is None:
        return {"contact_id": contact_id, "priority": Priority.NONE.value, "actions": {}}
    return rec


# ─── FEEDBACK + WEIGHTS ──────────────────────────────────────

@router.post("/feedback")
def record_feedback(data: FeedbackCreate):
    record = get_services().tracker.record_feedback(
        data.contact_id, data.reason_code, data.outcome,
        notes=data.notes or "", called_by=data.called_by or "",
        call_duration=data.call_duration, recommendation_id=data.recommendation_id,
    )
    return record.to_dict()


@router.post("/outcome/{contact_id}")
def record_outcome(contact_id: str, data: CallOutcome):
    return get_services().actions.record_call_outcome(
        contact_id, data.result, notes=data.notes or "",
        duration=data.duration, called_by=data.called_by or "",
    )


@router.get("/weights")
def get_weights():
    return get_services().tracker.get_weights()


@router.put("/weights")
def set_weights(data: WeightsUpdate):
    tracker = get_services().tracker
    if not data.weights:
        raise HTTPException(status_code=400, detail="No weights to update")
    for code, value in data.weights.items():
        tracker.set_weight(code, value)
    return tracker.get_weights()


@router.post("/weights/reset")
def reset_weights():
    return get_services().tracker.reset_weights()


@router.get("/learning-stats")
def learning_stats():
    return get_services().tracker.get_learning_stats()


# ─── ONE-CLICK ACTIONS ───────────────────────────────────────

@router.post("/actions/call/{contact_id}")
def call_now(contact_id: str, data: CallRequest = None):
    return get_services().actions.initiate_call(contact_id, data.agent_phone if data else None)


@router.post("/actions/sms-then-call/{contact_id}")
def sms_then_call(contact_id: str, data: CallRequest = None):
    return get_services().actions.sms_then_call(contact_id, data.agent_phone if data else None)


@router.post("/actions/sms/{contact_id}")
def send_sms(contact_id: str, data: SmsRequest):
    return get_services().actions.send_sms(contact_id, data.message)


@router.post("/actions/task/{contact_id}")
def create_call_task(contact_id: str, data: CallTaskCreate = None):
    data = data or CallTaskCreate()
    task = get_services().actions.create_call_task(contact_id, title=data.title,
                                                   description=data.description or "")
    return task.to_dict()


@router.post("/call-tasks")
def create_call_tasks(data: CallTasksRequest = None):
    data = data or CallTasksRequest()
    services = get_services()
    call_list = services.scorer.generate_call_list(min_priority=data.min_priority,
                                                   limit=data.limit or 20)
    return services.actions.create_call_tasks(call_list)
