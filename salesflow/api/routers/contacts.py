"""Contact store routes: CRUD, stage changes, opt-out, interaction log."""

import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from typing import Optional

from salesflow.api.deps import get_services
from salesflow.config import AUTO_ENROLL_SEQUENCE_ID
from salesflow.db.entities import Contact, Interaction, Stage, parse_iso, validate_choice

logger = logging.getLogger("salesflow.api.contacts")

router = APIRouter(prefix="/api/contacts", tags=["contacts"])


class ContactCreate(BaseModel):
    email: str
    first_name: Optional[str] = ""
    last_name: Optional[str] = ""
    company: Optional[str] = ""
    phone: Optional[str] = ""
    mobile: Optional[str] = ""
    stage: Optional[str] = Stage.LEAD.value
    source: Optional[str] = "manual"
    city: Optional[str] = ""
    state: Optional[str] = ""
    timezone: Optional[str] = ""
    sequence_id: Optional[str] = None  # enroll right away; falls back to AUTO_ENROLL_SEQUENCE_ID


class StageUpdate(BaseModel):
    stage: str
    note: Optional[str] = ""


class OptOut(BaseModel):
    reason: Optional[str] = "unsubscribed"


class InteractionCreate(BaseModel):
    type: str
    channel: Optional[str] = "system"
    direction: Optional[str] = "outbound"
    data: Optional[dict] = None
    timestamp: Optional[str] = None


def _require_contact(contact_id: str) -> Contact:
    contact = get_services().store.get_contact(contact_id)
    if not contact:
        raise HTTPException(status_code=404, detail="Contact not found")
    return contact


@router.post("")
def create_contact(data: ContactCreate):
    services = get_services()
    fields = data.model_dump(exclude={"sequence_id"})
    fields["stage"] = validate_choice(fields.get("stage") or Stage.LEAD.value, Stage, "stage")
    contact = services.store.create_contact(
        Contact(**{k: (v if v is not None else "") for k, v in fields.items()})
    )

    sequence_id = data.sequence_id or AUTO_ENROLL_SEQUENCE_ID
    enrollment = None
    if sequence_id:
        enrollment = services.engine.enroll(contact.id, sequence_id).enrollment.to_dict()
        contact = services.store.get_contact(contact.id)

    result = contact.to_dict()
    result["enrollment"] = enrollment
    return result


@router.get("")
def list_contacts(limit: int = 100, offset: int = 0, stage: str = None,
                  has_phone: Optional[bool] = None, opted_out: Optional[bool] = None):
    if stage:
        validate_choice(stage, Stage, "stage")
    contacts = get_services().store.find_contacts(
        stage=stage, has_phone=has_phone, opted_out=opted_out, limit=limit, offset=offset,
    )
    return [c.to_dict() for c in contacts]


@router.get("/{contact_id}")
def get_contact(contact_id: str):
    return _require_contact(contact_id).to_dict()


@router.patch("/{contact_id}/stage")
def update_stage(contact_id: str, data: StageUpdate):
    _require_contact(contact_id)
    return get_services().actions.update_stage(contact_id, data.stage, data.note or "").to_dict()


@router.post("/{contact_id}/opt-out")
def opt_out(contact_id: str, data: OptOut = None):
    services = get_services()
    _require_contact(contact_id)
    reason = (data.reason if data else None) or "unsubscribed"
    services.store.update_contact(contact_id, opted_out=True, opted_out_reason=reason,
                                  updated_at=services.engine.clock())
    stopped = services.engine.stop_for_contact(contact_id, "opted_out")
    logger.info("Contact %s opted out (%s), %d enrollment(s) stopped",
                contact_id, reason, len(stopped), extra={"contact_id": contact_id})
    result = services.store.get_contact(contact_id).to_dict()
    result["stopped_enrollments"] = [e.id for e in stopped]
    return result


@router.post("/{contact_id}/interactions")
def add_interaction(contact_id: str, data: InteractionCreate):
    interaction = Interaction(
        contact_id=contact_id,
        type=data.type,
        channel=data.channel or "system",
        direction=data.direction or "outbound",
        data=data.data or {},
        timestamp=parse_iso(data.timestamp),
    )
    return get_services().store.append_interaction(contact_id, interaction).to_dict()


@router.get("/{contact_id}/interactions")
def list_interactions(contact_id: str, limit: int = 50):
    _require_contact(contact_id)
    return [i.to_dict() for i in get_services().store.get_interactions(contact_id, limit=limit)]


@router.get("/{contact_id}/enrollments")
def list_enrollments(contact_id: str):
    _require_contact(contact_id)
    return [e.to_dict() for e in get_services().store.list_enrollments(contact_id=contact_id)]
