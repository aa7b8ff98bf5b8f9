from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from funnelcrm.context import get_correlation_id
from funnelcrm.core.auth import AuthUser, get_current_user as get_auth_user
from funnelcrm.core.context import get_request_context
from funnelcrm.core.database import get_db
from funnelcrm.crm.errors import CRMError
from funnelcrm.crm.schemas import (
    FunnelBoardRead,
    FunnelCreate,
    FunnelDuplicateRequest,
    FunnelRead,
    FunnelType,
    FunnelUpdate,
    LeadAssignRequest,
    LeadContactRequest,
    LeadCreate,
    LeadMoveStageRequest,
    LeadNoteRequest,
    LeadPriority,
    LeadQualifyRequest,
    LeadRead,
    LeadStatus,
    LeadTagsRequest,
    LeadTransactionRead,
    LeadUpdate,
    StageCreate,
    StageListResponse,
    StageMoveRequest,
    StageRead,
    StageUpdate,
    TransactionType,
)
from funnelcrm.crm.service import ActorUser, FunnelService, LeadService, LeadTransactionService, StageService

funnels_router = APIRouter(prefix="/api", tags=["crm.funnels"])
stages_router = APIRouter(prefix="/api", tags=["crm.stages"])
leads_router = APIRouter(prefix="/api", tags=["crm.leads"])
transactions_router = APIRouter(prefix="/api", tags=["crm.transactions"])
funnel_service = FunnelService()
stage_service = StageService()
lead_service = LeadService()
transaction_service = LeadTransactionService()


def _request_correlation_id(request: Request) -> str | None:
    context = get_request_context(request)
    return get_correlation_id() or (context.correlation_id if context is not None else None)


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=_request_correlation_id(request),
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def crm_error_response(request: Request, exc: CRMError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    return ActorUser(
        user_id=auth_user.user_id,
        company_id=auth_user.company_id,
        permissions=auth_user.grants,
        correlation_id=_request_correlation_id(request),
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@funnels_router.get("/funnels", response_model=list[FunnelRead])
def list_funnels(
    request: Request,
    is_active: bool | None = Query(default=None),
    funnel_type: FunnelType | None = Query(default=None, alias="type"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FunnelRead] | JSONResponse:
    try:
        require_permission(user, "crm.funnels.read")
        return funnel_service.list_funnels(db, user, filters={"is_active": is_active, "type": funnel_type})
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_funnel_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@funnels_router.post("/funnels", response_model=FunnelRead, status_code=status.HTTP_201_CREATED)
def create_funnel(
    request: Request,
    dto: FunnelCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FunnelRead | JSONResponse:
    try:
        require_permission(user, "crm.funnels.manage")
        return funnel_service.create_funnel(db, user, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_funnel_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@funnels_router.get("/funnels/{funnel_id}", response_model=FunnelRead)
def get_funnel(
    request: Request,
    funnel_id: int,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FunnelRead | JSONResponse:
    try:
        require_permission(user, "crm.funnels.read")
        if include_inactive:
            require_permission(user, "crm.funnels.manage")
        return funnel_service.get_funnel(db, user, funnel_id, include_inactive=include_inactive)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_funnel_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@funnels_router.patch("/funnels/{funnel_id}", response_model=FunnelRead)
def patch_funnel(
    request: Request,
    funnel_id: int,
    dto: FunnelUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FunnelRead | JSONResponse:
    try:
        require_permission(user, "crm.funnels.manage")
        return funnel_service.update_funnel(db, user, funnel_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_funnel_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@funnels_router.delete("/funnels/{funnel_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_funnel(
    request: Request,
    funnel_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, str] | JSONResponse:
    try:
        require_permission(user, "crm.funnels.manage")
        funnel_service.delete_funnel_cascade(db, user, funnel_id)
        return {"status": "deleted"}
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_funnel_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@funnels_router.post("/funnels/{funnel_id}/restore", response_model=FunnelRead)
def restore_funnel(
    request: Request,
    funnel_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FunnelRead | JSONResponse:
    try:
        require_permission(user, "crm.funnels.manage")
        return funnel_service.restore_funnel_cascade(db, user, funnel_id)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_funnel_restore_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@funnels_router.post("/funnels/{funnel_id}/duplicate", response_model=FunnelRead, status_code=status.HTTP_201_CREATED)
def duplicate_funnel(
    request: Request,
    funnel_id: int,
    dto: FunnelDuplicateRequest | None = None,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FunnelRead | JSONResponse:
    try:
        require_permission(user, "crm.funnels.manage")
        return funnel_service.duplicate_funnel(db, user, funnel_id, dto or FunnelDuplicateRequest())
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_funnel_duplicate_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@funnels_router.get("/funnels/{funnel_id}/board", response_model=FunnelBoardRead)
def get_funnel_board(
    request: Request,
    funnel_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FunnelBoardRead | JSONResponse:
    try:
        require_permission(user, "crm.funnels.read")
        require_permission(user, "crm.leads.read")
        return funnel_service.get_board(db, user, funnel_id)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_funnel_board_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@stages_router.get("/funnels/{funnel_id}/stages", response_model=list[StageRead])
def list_stages(
    request: Request,
    funnel_id: int,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageRead] | JSONResponse:
    try:
        require_permission(user, "crm.funnels.read")
        if include_inactive:
            require_permission(user, "crm.funnels.manage")
        return stage_service.list_stages(db, user, funnel_id, include_inactive=include_inactive)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_stage_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@stages_router.post("/funnels/{funnel_id}/stages", response_model=StageRead, status_code=status.HTTP_201_CREATED)
def create_stage(
    request: Request,
    funnel_id: int,
    dto: StageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageRead | JSONResponse:
    try:
        require_permission(user, "crm.funnels.manage")
        return stage_service.create_stage(db, user, funnel_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_stage_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@stages_router.get("/funnels/{funnel_id}/stages/{stage_id}", response_model=StageRead)
def get_stage(
    request: Request,
    funnel_id: int,
    stage_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageRead | JSONResponse:
    try:
        require_permission(user, "crm.funnels.read")
        return stage_service.get_stage(db, user, funnel_id, stage_id)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_stage_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@stages_router.patch("/funnels/{funnel_id}/stages/{stage_id}", response_model=StageRead)
def patch_stage(
    request: Request,
    funnel_id: int,
    stage_id: int,
    dto: StageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageRead | JSONResponse:
    try:
        require_permission(user, "crm.funnels.manage")
        return stage_service.update_stage(db, user, funnel_id, stage_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_stage_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@stages_router.delete("/funnels/{funnel_id}/stages/{stage_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_stage(
    request: Request,
    funnel_id: int,
    stage_id: int,
    force: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, str] | JSONResponse:
    try:
        require_permission(user, "crm.funnels.manage")
        stage_service.delete_stage(db, user, funnel_id, stage_id, force=force)
        return {"status": "deleted"}
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_stage_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@stages_router.post("/funnels/{funnel_id}/stages/{stage_id}/restore", response_model=StageRead)
def restore_stage(
    request: Request,
    funnel_id: int,
    stage_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageRead | JSONResponse:
    try:
        require_permission(user, "crm.funnels.manage")
        return stage_service.restore_stage(db, user, funnel_id, stage_id)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_stage_restore_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@stages_router.put("/funnels/{funnel_id}/stages/{stage_id}/move", response_model=StageListResponse)
def move_stage(
    request: Request,
    funnel_id: int,
    stage_id: int,
    dto: StageMoveRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageListResponse | JSONResponse:
    try:
        require_permission(user, "crm.funnels.manage")
        stages = stage_service.move_stage(db, user, funnel_id, stage_id, dto.order)
        return StageListResponse(stages=stages)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_stage_move_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    funnel_id: int | None = Query(default=None),
    stage_id: int | None = Query(default=None),
    status_filter: LeadStatus | None = Query(default=None, alias="status"),
    priority: LeadPriority | None = Query(default=None),
    assigned_to: int | None = Query(default=None),
    q: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.list_leads(
            db,
            user,
            filters={
                "funnel_id": funnel_id,
                "stage_id": stage_id,
                "status": status_filter,
                "priority": priority,
                "assigned_to": assigned_to,
                "q": q,
            },
            cursor=cursor,
            limit=limit,
        )
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.write")
        return lead_service.create_lead(db, user, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.get_lead(db, user, lead_id)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def patch_lead(
    request: Request,
    lead_id: int,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.write")
        return lead_service.update_lead(db, user, lead_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.delete("/leads/{lead_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_lead(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, str] | JSONResponse:
    try:
        require_permission(user, "crm.leads.write")
        lead_service.delete_lead(db, user, lead_id)
        return {"status": "deleted"}
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


def _change_stage(
    request: Request,
    db: Session,
    user: ActorUser,
    lead_id: int,
    target: int | Literal["next", "previous"],
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.move")
        return lead_service.change_stage(db, user, lead_id, target)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_move_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/{lead_id}/move-stage", response_model=LeadRead)
def move_lead_stage(
    request: Request,
    lead_id: int,
    dto: LeadMoveStageRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    return _change_stage(request, db, user, lead_id, dto.stage_id)


@leads_router.post("/leads/{lead_id}/next-stage", response_model=LeadRead)
def move_lead_next_stage(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    return _change_stage(request, db, user, lead_id, "next")


@leads_router.post("/leads/{lead_id}/previous-stage", response_model=LeadRead)
def move_lead_previous_stage(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    return _change_stage(request, db, user, lead_id, "previous")


@leads_router.post("/leads/{lead_id}/assign", response_model=LeadRead)
def assign_lead(
    request: Request,
    lead_id: int,
    dto: LeadAssignRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.write")
        return lead_service.assign_lead(db, user, lead_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_assign_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/{lead_id}/qualify", response_model=LeadRead)
def qualify_lead(
    request: Request,
    lead_id: int,
    dto: LeadQualifyRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.write")
        return lead_service.qualify_lead(db, user, lead_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_qualify_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/{lead_id}/contacts", response_model=LeadRead)
def record_lead_contact(
    request: Request,
    lead_id: int,
    dto: LeadContactRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.write")
        return lead_service.record_contact(db, user, lead_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_contact_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/{lead_id}/notes", response_model=LeadTransactionRead, status_code=status.HTTP_201_CREATED)
def add_lead_note(
    request: Request,
    lead_id: int,
    dto: LeadNoteRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadTransactionRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.write")
        return lead_service.add_note(db, user, lead_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_note_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.put("/leads/{lead_id}/tags", response_model=LeadRead)
def update_lead_tags(
    request: Request,
    lead_id: int,
    dto: LeadTagsRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.write")
        return lead_service.update_tags(db, user, lead_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_tags_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@transactions_router.get("/leads/{lead_id}/transactions", response_model=list[LeadTransactionRead])
def list_lead_transactions(
    request: Request,
    lead_id: int,
    transaction_type: TransactionType | None = Query(default=None, alias="type"),
    is_important: bool | None = Query(default=None),
    user_id: int | None = Query(default=None),
    order: Literal["asc", "desc"] = Query(default="desc"),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadTransactionRead] | JSONResponse:
    try:
        require_permission(user, "crm.transactions.read")
        return transaction_service.list_for_lead(
            db,
            user,
            lead_id,
            filters={"type": transaction_type, "is_important": is_important, "user_id": user_id},
            order=order,
            cursor=cursor,
            limit=limit,
        )
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_transaction_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@transactions_router.get("/companies/{company_id}/transactions", response_model=list[LeadTransactionRead])
def list_company_transactions(
    request: Request,
    company_id: int,
    transaction_type: TransactionType | None = Query(default=None, alias="type"),
    is_important: bool | None = Query(default=None),
    user_id: int | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadTransactionRead] | JSONResponse:
    try:
        require_permission(user, "crm.transactions.read")
        return transaction_service.list_for_company(
            db,
            user,
            company_id,
            filters={"type": transaction_type, "is_important": is_important, "user_id": user_id},
            cursor=cursor,
            limit=limit,
        )
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_transaction_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
