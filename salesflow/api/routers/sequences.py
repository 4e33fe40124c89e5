"""Sequence routes: catalogue, enrollment, processing, tasks, error log."""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from typing import List, Optional

from salesflow.agents.error_handler import get_errors, resolve_error
from salesflow.api.deps import get_services
from salesflow.config import SEQUENCE_PROCESS_LIMIT

router = APIRouter(prefix="/api/sequences", tags=["sequences"])


class EnrollRequest(BaseModel):
    contact_id: str
    sequence_id: str


class BulkEnrollRequest(BaseModel):
    sequence_id: str
    contact_ids: List[str]


class ProcessRequest(BaseModel):
    limit: Optional[int] = SEQUENCE_PROCESS_LIMIT
    mode: Optional[str] = None
    dry_run: Optional[bool] = None
    ignore_delays: Optional[bool] = False


class StopRequest(BaseModel):
    reason: Optional[str] = "manual"


@router.get("")
def available_sequences():
    return get_services().registry.list_sequences()


@router.get("/stats")
def sequence_stats():
    return get_services().engine.get_stats()


@router.post("/enroll")
def enroll(data: EnrollRequest):
    return get_services().engine.enroll(data.contact_id, data.sequence_id).to_dict()


@router.post("/enroll/bulk")
def bulk_enroll(data: BulkEnrollRequest):
    return get_services().engine.bulk_enroll(data.sequence_id, data.contact_ids)


@router.post("/process")
def process_due_steps(data: ProcessRequest = None):
    data = data or ProcessRequest()
    result = get_services().engine.process_due_steps(
        limit=data.limit if data.limit is not None else SEQUENCE_PROCESS_LIMIT,
        mode=data.mode,
        dry_run=data.dry_run,
        ignore_delays=bool(data.ignore_delays),
    )
    return result.to_dict()


@router.get("/tasks")
def list_tasks(status: str = None):
    return get_services().engine.list_tasks(status=status)


@router.post("/tasks/{task_id}/complete")
def complete_task(task_id: str):
    result = get_services().engine.complete_task(task_id)
    return {"task": result["task"].to_dict(), "resumed": result["resumed"],
            "completed": result["completed"]}


@router.get("/enrollments/{enrollment_id}")
def get_enrollment(enrollment_id: str):
    return get_services().engine.get_enrollment(enrollment_id).to_dict()


@router.post("/enrollments/{enrollment_id}/stop")
def stop_enrollment(enrollment_id: str, data: StopRequest = None):
    reason = (data.reason if data else None) or "manual"
    return get_services().engine.stop(enrollment_id, reason).to_dict()


@router.get("/errors")
def list_errors(phase: str = None, severity: str = None, unresolved_only: bool = True):
    return get_errors(get_services().store, phase=phase, severity=severity,
                      unresolved_only=unresolved_only)


@router.post("/errors/{error_id}/resolve")
def resolve(error_id: int):
    if not resolve_error(get_services().store, error_id):
        raise HTTPException(status_code=404, detail="Error not found")
    return {"resolved": error_id}


@router.get("/{sequence_id}")
def get_sequence(sequence_id: str):
    return get_services().registry.get_sequence(sequence_id).to_dict()
