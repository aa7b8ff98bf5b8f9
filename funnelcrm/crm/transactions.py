"""Append-only lead audit log.

Every factory here adds one ``LeadTransaction`` to the caller's session and
flushes it so the row gets an id. None of them commit: the caller commits the
lead change and its audit row together, or rolls both back.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from funnelcrm.crm.models import Lead, LeadTransaction, Stage


IMPORTANT_TYPES = frozenset({"stage_change", "assignment", "qualification", "contact", "creation"})


def lead_snapshot(lead: Lead) -> dict[str, Any]:
    estimated_value = lead.estimated_value
    if isinstance(estimated_value, Decimal):
        estimated_value = str(estimated_value)
    return {
        "funnel_id": lead.funnel_id,
        "stage_id": lead.stage_id,
        "assigned_to": lead.assigned_to,
        "first_name": lead.first_name,
        "last_name": lead.last_name,
        "email": lead.email,
        "phone": lead.phone,
        "source_platform": lead.source_platform,
        "status": lead.status,
        "priority": lead.priority,
        "is_qualified": lead.is_qualified,
        "estimated_value": estimated_value,
        "currency": lead.currency,
        "tags": list(lead.tags or []),
    }


def _append(
    session: Session,
    lead: Lead,
    *,
    user_id: int | None,
    type: str,
    action: str,
    description: str,
    metadata: dict[str, Any] | None = None,
    is_automated: bool = False,
    **fields: Any,
) -> LeadTransaction:
    transaction = LeadTransaction(
        lead_id=lead.id,
        company_id=lead.company_id,
        user_id=user_id,
        type=type,
        action=action,
        description=description,
        event_metadata=metadata,
        source="manual" if user_id is not None else "system",
        is_automated=is_automated,
        is_important=type in IMPORTANT_TYPES,
        **fields,
    )
    session.add(transaction)
    session.flush()
    return transaction


def record_stage_change(
    session: Session,
    lead: Lead,
    from_stage: Stage | None,
    to_stage: Stage,
    *,
    user_id: int | None,
    metadata: dict[str, Any] | None = None,
) -> LeadTransaction:
    from_name = from_stage.name if from_stage is not None else None
    return _append(
        session,
        lead,
        user_id=user_id,
        type="stage_change",
        action="moved",
        description=f"moved lead from '{from_name}' to '{to_stage.name}'",
        metadata=metadata,
        from_stage_id=from_stage.id if from_stage is not None else None,
        to_stage_id=to_stage.id,
        previous_data={"stage_id": from_stage.id if from_stage is not None else None, "stage_name": from_name},
        current_data={"stage_id": to_stage.id, "stage_name": to_stage.name},
    )


def record_assignment(
    session: Session,
    lead: Lead,
    previous_assignee: int | None,
    new_assignee: int | None,
    *,
    user_id: int | None,
) -> LeadTransaction:
    if new_assignee is None:
        action = "unassigned"
        description = "unassigned lead"
    elif previous_assignee is None:
        action = "assigned"
        description = f"assigned lead to user {new_assignee}"
    else:
        action = "assigned"
        description = f"reassigned lead from user {previous_assignee} to user {new_assignee}"

    return _append(
        session,
        lead,
        user_id=user_id,
        type="assignment",
        action=action,
        description=description,
        assigned_from=previous_assignee,
        assigned_to=new_assignee,
        previous_data={"assigned_to": previous_assignee},
        current_data={"assigned_to": new_assignee},
    )


def record_qualification(
    session: Session,
    lead: Lead,
    is_qualified: bool,
    *,
    user_id: int | None,
    reason: str | None = None,
    previous_status: str | None = None,
) -> LeadTransaction:
    if is_qualified:
        description = "qualified the lead" + (f": {reason}" if reason else "")
    else:
        description = "marked lead as unqualified" + (f": {reason}" if reason else "")

    return _append(
        session,
        lead,
        user_id=user_id,
        type="qualification",
        action="qualified" if is_qualified else "unqualified",
        description=description,
        current_qualification=is_qualified,
        qualification_reason=reason,
        previous_status=previous_status,
        current_status=lead.status,
    )


def record_contact(
    session: Session,
    lead: Lead,
    method: str,
    *,
    user_id: int | None,
    direction: str = "outbound",
    message: str | None = None,
) -> LeadTransaction:
    if direction == "inbound":
        description = f"received contact via {method}"
    else:
        description = f"contacted lead via {method}"

    return _append(
        session,
        lead,
        user_id=user_id,
        type="contact",
        action="contacted",
        description=description,
        contact_method=method,
        communication_direction=direction,
        message=message,
    )


def record_status_change(
    session: Session,
    lead: Lead,
    previous_status: str,
    new_status: str,
    *,
    user_id: int | None,
    previous_data: dict[str, Any] | None = None,
) -> LeadTransaction:
    return _append(
        session,
        lead,
        user_id=user_id,
        type="status_change",
        action="changed",
        description=f"changed status from '{previous_status}' to '{new_status}'",
        previous_status=previous_status,
        current_status=new_status,
        previous_data=previous_data if previous_data is not None else {"status": previous_status},
        current_data=lead_snapshot(lead),
    )


def record_note(session: Session, lead: Lead, note: str, *, user_id: int | None) -> LeadTransaction:
    return _append(
        session,
        lead,
        user_id=user_id,
        type="note",
        action="noted",
        description="added a note",
        message=note,
    )


def record_creation(
    session: Session,
    lead: Lead,
    *,
    user_id: int | None,
    source_platform: str | None = None,
) -> LeadTransaction:
    description = "created the lead"
    if source_platform:
        description += f" from {source_platform}"

    return _append(
        session,
        lead,
        user_id=user_id,
        type="creation",
        action="created",
        description=description,
        is_automated=user_id is None,
        current_status=lead.status,
        current_data=lead_snapshot(lead),
    )
