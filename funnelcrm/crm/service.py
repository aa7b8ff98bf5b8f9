from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

from fastapi import HTTPException, status
from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from funnelcrm import events
from funnelcrm.core.config import get_settings
from funnelcrm.crm import transactions
from funnelcrm.crm.errors import (
    CRMError,
    InvalidOrderError,
    InvalidStageForFunnelError,
    NoAdjacentStageError,
    NotFoundError,
    StageInUseError,
)
from funnelcrm.crm.models import Funnel, Lead, LeadTransaction, Stage, utcnow
from funnelcrm.crm.schemas import (
    BoardStageRead,
    FunnelBoardRead,
    FunnelCreate,
    FunnelDuplicateRequest,
    FunnelRead,
    FunnelUpdate,
    LeadAssignRequest,
    LeadContactRequest,
    LeadCreate,
    LeadNoteRequest,
    LeadQualifyRequest,
    LeadRead,
    LeadTagsRequest,
    LeadTransactionRead,
    LeadUpdate,
    StageCreate,
    StageRead,
    StageUpdate,
)
from funnelcrm.metrics import observe_lead_transaction, observe_lead_transition, observe_stage_move
from funnelcrm.otel import get_tracer


logger = logging.getLogger("funnelcrm.crm")
tracer = get_tracer("funnelcrm.crm")


@dataclass
class ActorUser:
    user_id: int | None
    company_id: int | None
    permissions: set[str]
    correlation_id: str | None = None


@dataclass
class StageTransition:
    """Outcome of a lead stage move.

    A rejected move is reported through ``error`` instead of being raised, so
    callers decide how to surface it. ``transaction`` is only set when the lead
    actually changed stage.
    """

    lead: Lead
    from_stage: Stage | None
    to_stage: Stage | None
    transaction: LeadTransaction | None = None
    error: CRMError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def changed(self) -> bool:
        return self.transaction is not None


def _require_company(actor_user: ActorUser) -> int:
    if actor_user.company_id is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="company context required")
    return actor_user.company_id


def _active_stage_clause(funnel_id: int) -> Any:
    return and_(Stage.funnel_id == funnel_id, Stage.deleted_at.is_(None))


def _max_order(session: Session, funnel_id: int) -> int:
    value = session.scalar(select(func.max(Stage.order)).where(_active_stage_clause(funnel_id)))
    return int(value or 0)


def _shift_orders(session: Session, funnel_id: int, lower: int, upper: int, delta: int) -> None:
    # Two passes through negative values so the (funnel_id, order) unique index
    # never sees a duplicate, even on backends that check it row by row.
    if lower > upper:
        return
    active = _active_stage_clause(funnel_id)
    session.execute(
        update(Stage)
        .where(and_(active, Stage.order >= lower, Stage.order <= upper))
        .values(order=-(Stage.order + delta))
        .execution_options(synchronize_session="fetch")
    )
    session.execute(
        update(Stage)
        .where(and_(active, Stage.order < 0))
        .values(order=-Stage.order)
        .execution_options(synchronize_session="fetch")
    )


def _publish(event_type: str, company_id: int, actor_user_id: int | None, payload: dict[str, Any]) -> None:
    events.publish(
        events.build_envelope(
            event_type,
            company_id=company_id,
            actor_user_id=actor_user_id,
            payload=payload,
        )
    )


class StageService:
    entity_type = "crm.stage"

    def list_stages(
        self,
        session: Session,
        actor_user: ActorUser,
        funnel_id: int,
        include_inactive: bool = False,
    ) -> list[StageRead]:
        funnel = self.get_visible_funnel(session, actor_user, funnel_id)
        return [StageRead.model_validate(stage) for stage in self.ordered_stages(session, funnel.id, include_inactive)]

    def get_stage(self, session: Session, actor_user: ActorUser, funnel_id: int, stage_id: int) -> StageRead:
        funnel = self.get_visible_funnel(session, actor_user, funnel_id)
        return StageRead.model_validate(self._get_stage(session, funnel, stage_id))

    def create_stage(self, session: Session, actor_user: ActorUser, funnel_id: int, dto: StageCreate) -> StageRead:
        funnel = self.get_visible_funnel(session, actor_user, funnel_id)
        max_order = _max_order(session, funnel.id)
        if dto.order is not None and dto.order > max_order + 1:
            raise InvalidOrderError(dto.order, max_order + 1)

        stage = Stage(
            funnel_id=funnel.id,
            name=dto.name.strip(),
            description=dto.description,
            color=dto.color or get_settings().default_stage_color,
            order=max_order + 1,
            type=dto.type,
            is_active=dto.is_active,
            settings=dto.settings.model_dump(exclude_none=True),
        )
        try:
            session.add(stage)
            session.flush()
            if dto.order is not None:
                self._apply_move(session, stage, dto.order)
            session.commit()
        except Exception:
            session.rollback()
            raise

        logger.info(
            "stage.created",
            extra={"company_id": funnel.company_id, "funnel_id": funnel.id, "stage_id": stage.id, "to_order": stage.order},
        )
        return StageRead.model_validate(stage)

    def update_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        funnel_id: int,
        stage_id: int,
        dto: StageUpdate,
    ) -> StageRead:
        funnel = self.get_visible_funnel(session, actor_user, funnel_id)
        stage = self._get_stage(session, funnel, stage_id)

        changes = dto.model_dump(exclude_unset=True)
        new_order = changes.pop("order", None)
        if new_order is not None:
            self._check_order(session, stage, new_order)

        if "settings" in changes:
            changes["settings"] = dto.settings.model_dump(exclude_none=True) if dto.settings is not None else {}
        for key, value in changes.items():
            if value is None and key in {"name", "color", "type", "is_active"}:
                continue
            setattr(stage, key, value.strip() if key == "name" else value)

        try:
            if new_order is not None:
                self._apply_move(session, stage, new_order)
            session.commit()
        except Exception:
            session.rollback()
            raise
        return StageRead.model_validate(stage)

    def move_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        funnel_id: int,
        stage_id: int,
        new_order: int,
    ) -> list[StageRead]:
        funnel = self.get_visible_funnel(session, actor_user, funnel_id)
        stage = self._get_stage(session, funnel, stage_id)
        stages = self.move_to_order(session, stage, new_order)
        return [StageRead.model_validate(item) for item in stages]

    def move_to_order(self, session: Session, stage: Stage, new_order: int) -> list[Stage]:
        """Move ``stage`` to ``new_order`` and return the funnel's live stages in order.

        Stages between the old and new position shift by one toward the
        vacated slot. Out-of-range positions raise ``InvalidOrderError`` before
        anything is written.
        """
        funnel_id = stage.funnel_id
        old_order = stage.order
        with tracer.start_as_current_span("crm.stage.move") as span:
            span.set_attribute("crm.funnel_id", funnel_id)
            span.set_attribute("crm.stage_id", stage.id)
            span.set_attribute("crm.from_order", old_order)
            span.set_attribute("crm.to_order", new_order)
            try:
                changed = self._apply_move(session, stage, new_order)
                session.commit()
            except InvalidOrderError as exc:
                session.rollback()
                observe_stage_move("rejected")
                span.set_attribute("crm.outcome", "rejected")
                logger.info(
                    "stage.move_rejected",
                    extra={
                        "funnel_id": funnel_id,
                        "stage_id": stage.id,
                        "from_order": old_order,
                        "to_order": new_order,
                        "error": exc.message,
                    },
                )
                raise
            except Exception:
                session.rollback()
                raise

            outcome = "moved" if changed else "noop"
            observe_stage_move(outcome)
            span.set_attribute("crm.outcome", outcome)

        logger.info(
            "stage.moved",
            extra={
                "funnel_id": funnel_id,
                "stage_id": stage.id,
                "from_order": old_order,
                "to_order": new_order,
                "outcome": outcome,
            },
        )
        return self.ordered_stages(session, funnel_id, include_inactive=True)

    def delete_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        funnel_id: int,
        stage_id: int,
        force: bool = False,
    ) -> None:
        funnel = self.get_visible_funnel(session, actor_user, funnel_id)
        stage = self._get_stage(session, funnel, stage_id, include_deleted=force)

        if not force:
            stage.deleted_at = utcnow()
            session.commit()
            logger.info(
                "stage.deleted",
                extra={"company_id": funnel.company_id, "funnel_id": funnel.id, "stage_id": stage_id, "outcome": "soft"},
            )
            return

        lead_count = session.scalar(select(func.count(Lead.id)).where(Lead.stage_id == stage.id)) or 0
        if lead_count:
            raise StageInUseError(stage.id, int(lead_count))

        position = stage.order if stage.deleted_at is None else None
        try:
            session.delete(stage)
            session.flush()
            if position is not None:
                _shift_orders(session, funnel.id, position + 1, _max_order(session, funnel.id), -1)
            session.commit()
        except Exception:
            session.rollback()
            raise

        logger.info(
            "stage.deleted",
            extra={
                "company_id": funnel.company_id,
                "funnel_id": funnel.id,
                "stage_id": stage_id,
                "from_order": position,
                "outcome": "hard",
            },
        )

    def restore_stage(self, session: Session, actor_user: ActorUser, funnel_id: int, stage_id: int) -> StageRead:
        funnel = self.get_visible_funnel(session, actor_user, funnel_id)
        stage = self._get_stage(session, funnel, stage_id, include_deleted=True)
        if stage.deleted_at is None:
            return StageRead.model_validate(stage)

        stage.order = _max_order(session, funnel.id) + 1
        stage.deleted_at = None
        session.commit()
        logger.info(
            "stage.restored",
            extra={"company_id": funnel.company_id, "funnel_id": funnel.id, "stage_id": stage.id, "to_order": stage.order},
        )
        return StageRead.model_validate(stage)

    def next_stage(self, session: Session, stage: Stage) -> Stage | None:
        return session.scalar(
            select(Stage)
            .where(and_(_active_stage_clause(stage.funnel_id), Stage.order > stage.order))
            .order_by(Stage.order.asc())
            .limit(1)
        )

    def previous_stage(self, session: Session, stage: Stage) -> Stage | None:
        return session.scalar(
            select(Stage)
            .where(and_(_active_stage_clause(stage.funnel_id), Stage.order < stage.order))
            .order_by(Stage.order.desc())
            .limit(1)
        )

    def ordered_stages(self, session: Session, funnel_id: int, include_inactive: bool = False) -> list[Stage]:
        stmt: Select[tuple[Stage]] = select(Stage).where(_active_stage_clause(funnel_id))
        if not include_inactive:
            stmt = stmt.where(Stage.is_active.is_(True))
        return list(session.scalars(stmt.order_by(Stage.order.asc(), Stage.id.asc())).all())

    def get_visible_funnel(
        self,
        session: Session,
        actor_user: ActorUser,
        funnel_id: int,
        include_deleted: bool = False,
    ) -> Funnel:
        company_id = _require_company(actor_user)
        stmt = select(Funnel).where(and_(Funnel.id == funnel_id, Funnel.company_id == company_id))
        if not include_deleted:
            stmt = stmt.where(Funnel.deleted_at.is_(None))
        funnel = session.scalar(stmt)
        if funnel is None:
            raise NotFoundError("funnel", funnel_id)
        return funnel

    def _get_stage(self, session: Session, funnel: Funnel, stage_id: int, include_deleted: bool = False) -> Stage:
        stmt = select(Stage).where(and_(Stage.id == stage_id, Stage.funnel_id == funnel.id))
        if not include_deleted:
            stmt = stmt.where(Stage.deleted_at.is_(None))
        stage = session.scalar(stmt)
        if stage is None:
            raise NotFoundError("stage", stage_id)
        return stage

    def _check_order(self, session: Session, stage: Stage, new_order: int) -> None:
        if new_order == stage.order:
            return
        max_order = _max_order(session, stage.funnel_id)
        if new_order < 1 or new_order > max_order:
            raise InvalidOrderError(new_order, max_order)

    def _apply_move(self, session: Session, stage: Stage, new_order: int) -> bool:
        self._check_order(session, stage, new_order)
        old_order = stage.order
        if new_order == old_order:
            return False

        stage.order = 0
        session.flush()
        if new_order < old_order:
            _shift_orders(session, stage.funnel_id, new_order, old_order - 1, 1)
        else:
            _shift_orders(session, stage.funnel_id, old_order + 1, new_order, -1)
        stage.order = new_order
        session.flush()
        return True


stage_service = StageService()


class FunnelService:
    entity_type = "crm.funnel"

    def create_funnel(self, session: Session, actor_user: ActorUser, dto: FunnelCreate) -> FunnelRead:
        company_id = _require_company(actor_user)
        funnel = Funnel(
            company_id=company_id,
            name=dto.name.strip(),
            description=dto.description,
            type=dto.type,
            is_active=dto.is_active,
            created_by=actor_user.user_id,
            settings=dict(dto.settings),
        )
        session.add(funnel)
        session.commit()
        logger.info("funnel.created", extra={"company_id": company_id, "funnel_id": funnel.id})
        return self._to_read(session, funnel)

    def list_funnels(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
    ) -> list[FunnelRead]:
        company_id = _require_company(actor_user)
        stmt: Select[tuple[Funnel]] = select(Funnel).where(
            and_(Funnel.company_id == company_id, Funnel.deleted_at.is_(None))
        )
        if filters.get("is_active") is not None:
            stmt = stmt.where(Funnel.is_active.is_(bool(filters["is_active"])))
        if filters.get("type"):
            stmt = stmt.where(Funnel.type == filters["type"])

        funnels = session.scalars(stmt.options(selectinload(Funnel.stages)).order_by(Funnel.id.asc())).all()
        return [self._to_read(session, funnel, loaded=True) for funnel in funnels]

    def get_funnel(
        self,
        session: Session,
        actor_user: ActorUser,
        funnel_id: int,
        include_inactive: bool = False,
    ) -> FunnelRead:
        funnel = stage_service.get_visible_funnel(session, actor_user, funnel_id)
        return self._to_read(session, funnel, include_inactive=include_inactive)

    def update_funnel(self, session: Session, actor_user: ActorUser, funnel_id: int, dto: FunnelUpdate) -> FunnelRead:
        funnel = stage_service.get_visible_funnel(session, actor_user, funnel_id)
        changes = dto.model_dump(exclude_unset=True)
        for key, value in changes.items():
            if value is None and key in {"name", "type", "is_active", "settings"}:
                continue
            setattr(funnel, key, value.strip() if key == "name" else value)
        session.commit()
        return self._to_read(session, funnel)

    def delete_funnel_cascade(self, session: Session, actor_user: ActorUser, funnel_id: int) -> None:
        funnel = stage_service.get_visible_funnel(session, actor_user, funnel_id)
        deleted_at = utcnow()
        try:
            result = session.execute(
                update(Stage)
                .where(_active_stage_clause(funnel.id))
                .values(deleted_at=deleted_at)
                .execution_options(synchronize_session="fetch")
            )
            funnel.deleted_at = deleted_at
            session.commit()
        except Exception:
            session.rollback()
            raise

        logger.info(
            "funnel.deleted",
            extra={"company_id": funnel.company_id, "funnel_id": funnel.id, "outcome": f"stages={result.rowcount}"},
        )
        _publish("crm.funnel.deleted", funnel.company_id, actor_user.user_id, {"funnel_id": funnel.id})

    def restore_funnel_cascade(self, session: Session, actor_user: ActorUser, funnel_id: int) -> FunnelRead:
        """Restore a funnel and the stages removed together with it.

        Stages carry the funnel's deletion timestamp when the cascade removed
        them; stages deleted on their own earlier keep a different stamp and
        stay deleted. Restored stages go back to the tail in their old order.
        """
        funnel = stage_service.get_visible_funnel(session, actor_user, funnel_id, include_deleted=True)
        if funnel.deleted_at is None:
            return self._to_read(session, funnel)

        cascaded = session.scalars(
            select(Stage)
            .where(and_(Stage.funnel_id == funnel.id, Stage.deleted_at == funnel.deleted_at))
            .order_by(Stage.order.asc(), Stage.id.asc())
        ).all()
        try:
            next_order = _max_order(session, funnel.id) + 1
            for offset, stage in enumerate(cascaded):
                stage.order = next_order + offset
                stage.deleted_at = None
            funnel.deleted_at = None
            session.commit()
        except Exception:
            session.rollback()
            raise

        logger.info("funnel.restored", extra={"company_id": funnel.company_id, "funnel_id": funnel.id})
        _publish(
            "crm.funnel.restored",
            funnel.company_id,
            actor_user.user_id,
            {"funnel_id": funnel.id, "stage_ids": [stage.id for stage in cascaded]},
        )
        return self._to_read(session, funnel, include_inactive=True)

    def duplicate_funnel(
        self,
        session: Session,
        actor_user: ActorUser,
        funnel_id: int,
        dto: FunnelDuplicateRequest,
    ) -> FunnelRead:
        source = stage_service.get_visible_funnel(session, actor_user, funnel_id)
        source_stages = stage_service.ordered_stages(session, source.id, include_inactive=True)

        copy = Funnel(
            company_id=source.company_id,
            name=dto.name.strip() if dto.name else f"{source.name} (copy)",
            description=source.description,
            type=dto.type or source.type,
            is_active=source.is_active,
            created_by=actor_user.user_id,
            settings=dict(source.settings or {}),
        )
        try:
            session.add(copy)
            session.flush()
            for position, stage in enumerate(source_stages, start=1):
                session.add(
                    Stage(
                        funnel_id=copy.id,
                        name=stage.name,
                        description=stage.description,
                        color=stage.color,
                        order=position,
                        type=stage.type,
                        is_active=stage.is_active,
                        settings=dict(stage.settings or {}),
                    )
                )
            session.commit()
        except Exception:
            session.rollback()
            raise

        logger.info(
            "funnel.duplicated",
            extra={"company_id": copy.company_id, "funnel_id": copy.id, "outcome": f"source={source.id}"},
        )
        return self._to_read(session, copy, include_inactive=True)

    def get_board(self, session: Session, actor_user: ActorUser, funnel_id: int) -> FunnelBoardRead:
        funnel = stage_service.get_visible_funnel(session, actor_user, funnel_id)
        stages = stage_service.ordered_stages(session, funnel.id)
        leads = session.scalars(
            select(Lead)
            .where(
                and_(
                    Lead.funnel_id == funnel.id,
                    Lead.deleted_at.is_(None),
                    Lead.is_active.is_(True),
                )
            )
            .order_by(Lead.created_at.desc(), Lead.id.desc())
        ).all()

        by_stage: dict[int, list[LeadRead]] = {stage.id: [] for stage in stages}
        for lead in leads:
            if lead.stage_id in by_stage:
                by_stage[lead.stage_id].append(LeadRead.model_validate(lead))

        board_stages = [
            BoardStageRead.model_validate(
                {**StageRead.model_validate(stage).model_dump(), "leads": by_stage[stage.id]}
            )
            for stage in stages
        ]
        return FunnelBoardRead(funnel=self._to_read(session, funnel, stages=stages), stages=board_stages)

    def _to_read(
        self,
        session: Session,
        funnel: Funnel,
        *,
        include_inactive: bool = False,
        loaded: bool = False,
        stages: list[Stage] | None = None,
    ) -> FunnelRead:
        if stages is None:
            if loaded:
                stages = [
                    stage
                    for stage in funnel.stages
                    if stage.deleted_at is None and (include_inactive or stage.is_active)
                ]
            else:
                stages = stage_service.ordered_stages(session, funnel.id, include_inactive=include_inactive)

        return FunnelRead.model_validate(
            {
                "id": funnel.id,
                "company_id": funnel.company_id,
                "name": funnel.name,
                "description": funnel.description,
                "type": funnel.type,
                "is_active": funnel.is_active,
                "created_by": funnel.created_by,
                "settings": funnel.settings or {},
                "created_at": funnel.created_at,
                "updated_at": funnel.updated_at,
                "deleted_at": funnel.deleted_at,
                "stages": [StageRead.model_validate(stage) for stage in stages],
            }
        )


class LeadService:
    entity_type = "crm.lead"

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        company_id = _require_company(actor_user)
        funnel = stage_service.get_visible_funnel(session, actor_user, dto.funnel_id)
        stage = self._resolve_initial_stage(session, funnel, dto.stage_id)

        lead = Lead(
            company_id=company_id,
            funnel_id=funnel.id,
            stage_id=stage.id,
            assigned_to=dto.assigned_to,
            first_name=dto.first_name,
            last_name=dto.last_name,
            email=str(dto.email) if dto.email is not None else None,
            phone=dto.phone,
            source_platform=dto.source_platform,
            status=dto.status,
            priority=dto.priority,
            estimated_value=dto.estimated_value,
            currency=(dto.currency or get_settings().default_lead_currency).upper(),
            tags=_unique_tags(dto.tags),
            notes=dto.notes,
        )
        try:
            session.add(lead)
            session.flush()
            transaction = transactions.record_creation(
                session,
                lead,
                user_id=actor_user.user_id,
                source_platform=dto.source_platform,
            )
            session.commit()
        except Exception:
            session.rollback()
            raise

        self._after_transaction(lead, transaction)
        _publish(
            "crm.lead.created",
            lead.company_id,
            actor_user.user_id,
            {"lead_id": lead.id, "funnel_id": lead.funnel_id, "stage_id": lead.stage_id, "status": lead.status},
        )
        return LeadRead.model_validate(lead)

    def list_leads(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        cursor: str | None,
        limit: int,
    ) -> list[LeadRead]:
        company_id = _require_company(actor_user)
        stmt: Select[tuple[Lead]] = select(Lead).where(and_(Lead.company_id == company_id, Lead.deleted_at.is_(None)))

        for key in ("funnel_id", "stage_id", "status", "priority", "assigned_to"):
            if filters.get(key) is not None:
                stmt = stmt.where(getattr(Lead, key) == filters[key])
        if filters.get("q"):
            pattern = f"%{filters['q']}%"
            stmt = stmt.where(
                or_(
                    Lead.first_name.ilike(pattern),
                    Lead.last_name.ilike(pattern),
                    Lead.email.ilike(pattern),
                    Lead.phone.ilike(pattern),
                )
            )

        offset = int(cursor) if cursor and cursor.isdigit() else 0
        leads = session.scalars(stmt.order_by(Lead.created_at.desc(), Lead.id.desc()).offset(offset).limit(limit)).all()
        return [LeadRead.model_validate(lead) for lead in leads]

    def get_lead(self, session: Session, actor_user: ActorUser, lead_id: int) -> LeadRead:
        return LeadRead.model_validate(self.get_visible_lead(session, actor_user, lead_id))

    def update_lead(self, session: Session, actor_user: ActorUser, lead_id: int, dto: LeadUpdate) -> LeadRead:
        lead = self.get_visible_lead(session, actor_user, lead_id)
        before = transactions.lead_snapshot(lead)
        previous_status = lead.status

        for key, value in dto.model_dump(exclude_unset=True).items():
            if value is None and key in {"status", "priority", "currency", "is_active"}:
                continue
            if key == "email" and value is not None:
                value = str(value)
            if key == "currency":
                value = value.upper()
            setattr(lead, key, value)

        transaction: LeadTransaction | None = None
        try:
            if lead.status != previous_status:
                transaction = transactions.record_status_change(
                    session,
                    lead,
                    previous_status,
                    lead.status,
                    user_id=actor_user.user_id,
                    previous_data=before,
                )
            session.commit()
        except Exception:
            session.rollback()
            raise

        if transaction is not None:
            self._after_transaction(lead, transaction)
        return LeadRead.model_validate(lead)

    def delete_lead(self, session: Session, actor_user: ActorUser, lead_id: int) -> None:
        lead = self.get_visible_lead(session, actor_user, lead_id)
        lead.deleted_at = utcnow()
        session.commit()
        logger.info("lead.deleted", extra={"company_id": lead.company_id, "lead_id": lead.id})

    def move_to_stage(
        self,
        session: Session,
        lead: Lead,
        target_stage_id: int,
        acting_user_id: int | None = None,
        *,
        direction: str = "direct",
    ) -> StageTransition:
        """Move ``lead`` to another stage of its own funnel.

        The stage change and its ``stage_change`` audit row are committed
        together. A target outside the lead's funnel is reported through the
        returned ``StageTransition`` and leaves the lead untouched.
        """
        with tracer.start_as_current_span("crm.lead.move_stage") as span:
            span.set_attribute("crm.lead_id", lead.id)
            span.set_attribute("crm.target_stage_id", target_stage_id)
            span.set_attribute("crm.direction", direction)

            from_stage = session.get(Stage, lead.stage_id)
            target = session.scalar(
                select(Stage).where(and_(Stage.id == target_stage_id, Stage.deleted_at.is_(None)))
            )
            if target is None or target.funnel_id != lead.funnel_id:
                error = InvalidStageForFunnelError(target_stage_id, lead.funnel_id)
                span.set_attribute("crm.outcome", "rejected")
                return self._reject(lead, from_stage, target, error, direction)

            if target.id == lead.stage_id:
                span.set_attribute("crm.outcome", "noop")
                observe_lead_transition(direction, "noop")
                return StageTransition(lead=lead, from_stage=from_stage, to_stage=target)

            try:
                lead.stage_id = target.id
                transaction = transactions.record_stage_change(
                    session,
                    lead,
                    from_stage,
                    target,
                    user_id=acting_user_id,
                )
                session.commit()
            except Exception:
                session.rollback()
                raise
            span.set_attribute("crm.outcome", "moved")

        observe_lead_transition(direction, "moved")
        self._after_transaction(lead, transaction)
        logger.info(
            "lead.stage_changed",
            extra={
                "company_id": lead.company_id,
                "lead_id": lead.id,
                "from_stage_id": transaction.from_stage_id,
                "to_stage_id": transaction.to_stage_id,
                "transaction_id": transaction.id,
                "actor_user_id": acting_user_id,
            },
        )
        _publish(
            "crm.lead.stage_changed",
            lead.company_id,
            acting_user_id,
            {
                "lead_id": lead.id,
                "funnel_id": lead.funnel_id,
                "from_stage_id": transaction.from_stage_id,
                "to_stage_id": transaction.to_stage_id,
                "transaction_id": transaction.id,
            },
        )
        return StageTransition(lead=lead, from_stage=from_stage, to_stage=target, transaction=transaction)

    def move_to_next_stage(self, session: Session, lead: Lead, acting_user_id: int | None = None) -> StageTransition:
        return self._move_to_adjacent(session, lead, acting_user_id, "next")

    def move_to_previous_stage(
        self,
        session: Session,
        lead: Lead,
        acting_user_id: int | None = None,
    ) -> StageTransition:
        return self._move_to_adjacent(session, lead, acting_user_id, "previous")

    def change_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: int,
        target: int | Literal["next", "previous"],
    ) -> LeadRead:
        lead = self.get_visible_lead(session, actor_user, lead_id)
        if target == "next":
            result = self.move_to_next_stage(session, lead, actor_user.user_id)
        elif target == "previous":
            result = self.move_to_previous_stage(session, lead, actor_user.user_id)
        else:
            result = self.move_to_stage(session, lead, target, actor_user.user_id)
        if result.error is not None:
            raise result.error
        return LeadRead.model_validate(result.lead)

    def assign_lead(self, session: Session, actor_user: ActorUser, lead_id: int, dto: LeadAssignRequest) -> LeadRead:
        lead = self.get_visible_lead(session, actor_user, lead_id)
        previous = lead.assigned_to
        if previous == dto.assigned_to:
            return LeadRead.model_validate(lead)

        try:
            lead.assigned_to = dto.assigned_to
            transaction = transactions.record_assignment(
                session,
                lead,
                previous,
                dto.assigned_to,
                user_id=actor_user.user_id,
            )
            session.commit()
        except Exception:
            session.rollback()
            raise

        self._after_transaction(lead, transaction)
        return LeadRead.model_validate(lead)

    def qualify_lead(self, session: Session, actor_user: ActorUser, lead_id: int, dto: LeadQualifyRequest) -> LeadRead:
        lead = self.get_visible_lead(session, actor_user, lead_id)
        previous_status = lead.status

        try:
            lead.is_qualified = dto.is_qualified
            lead.qualified_at = utcnow()
            lead.qualified_by = actor_user.user_id
            lead.status = "qualified" if dto.is_qualified else "unqualified"
            transaction = transactions.record_qualification(
                session,
                lead,
                dto.is_qualified,
                user_id=actor_user.user_id,
                reason=dto.reason,
                previous_status=previous_status,
            )
            session.commit()
        except Exception:
            session.rollback()
            raise

        self._after_transaction(lead, transaction)
        return LeadRead.model_validate(lead)

    def record_contact(self, session: Session, actor_user: ActorUser, lead_id: int, dto: LeadContactRequest) -> LeadRead:
        lead = self.get_visible_lead(session, actor_user, lead_id)

        try:
            lead.last_contact_at = utcnow()
            if lead.status == "new":
                lead.status = "contacted"
            transaction = transactions.record_contact(
                session,
                lead,
                dto.method,
                user_id=actor_user.user_id,
                direction=dto.direction,
                message=dto.message,
            )
            session.commit()
        except Exception:
            session.rollback()
            raise

        self._after_transaction(lead, transaction)
        return LeadRead.model_validate(lead)

    def add_note(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: int,
        dto: LeadNoteRequest,
    ) -> LeadTransactionRead:
        lead = self.get_visible_lead(session, actor_user, lead_id)
        try:
            transaction = transactions.record_note(session, lead, dto.note, user_id=actor_user.user_id)
            session.commit()
        except Exception:
            session.rollback()
            raise

        self._after_transaction(lead, transaction)
        return LeadTransactionRead.model_validate(transaction)

    def update_tags(self, session: Session, actor_user: ActorUser, lead_id: int, dto: LeadTagsRequest) -> LeadRead:
        lead = self.get_visible_lead(session, actor_user, lead_id)
        current = list(lead.tags or [])
        if dto.mode == "add":
            tags = _unique_tags(current + dto.tags)
        elif dto.mode == "remove":
            removed = set(dto.tags)
            tags = [tag for tag in current if tag not in removed]
        else:
            tags = _unique_tags(dto.tags)

        lead.tags = tags
        session.commit()
        return LeadRead.model_validate(lead)

    def get_visible_lead(self, session: Session, actor_user: ActorUser, lead_id: int) -> Lead:
        company_id = _require_company(actor_user)
        lead = session.scalar(
            select(Lead).where(
                and_(Lead.id == lead_id, Lead.company_id == company_id, Lead.deleted_at.is_(None))
            )
        )
        if lead is None:
            raise NotFoundError("lead", lead_id)
        return lead

    def _move_to_adjacent(
        self,
        session: Session,
        lead: Lead,
        acting_user_id: int | None,
        direction: Literal["next", "previous"],
    ) -> StageTransition:
        current = session.get(Stage, lead.stage_id)
        target: Stage | None = None
        if current is not None:
            if direction == "next":
                target = stage_service.next_stage(session, current)
            else:
                target = stage_service.previous_stage(session, current)

        if target is None:
            return self._reject(lead, current, None, NoAdjacentStageError(lead.stage_id, direction), direction)
        return self.move_to_stage(session, lead, target.id, acting_user_id, direction=direction)

    def _reject(
        self,
        lead: Lead,
        from_stage: Stage | None,
        to_stage: Stage | None,
        error: CRMError,
        direction: str,
    ) -> StageTransition:
        observe_lead_transition(direction, "rejected")
        logger.info(
            "lead.stage_change_rejected",
            extra={
                "company_id": lead.company_id,
                "lead_id": lead.id,
                "from_stage_id": lead.stage_id,
                "to_stage_id": to_stage.id if to_stage is not None else None,
                "error": error.message,
            },
        )
        return StageTransition(lead=lead, from_stage=from_stage, to_stage=to_stage, error=error)

    def _resolve_initial_stage(self, session: Session, funnel: Funnel, stage_id: int | None) -> Stage:
        if stage_id is not None:
            stage = session.scalar(select(Stage).where(and_(Stage.id == stage_id, Stage.deleted_at.is_(None))))
            if stage is None or stage.funnel_id != funnel.id:
                raise InvalidStageForFunnelError(stage_id, funnel.id)
            return stage

        stages = stage_service.ordered_stages(session, funnel.id, include_inactive=True)
        if not stages:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="funnel has no stages")
        entry_stages = [stage for stage in stages if stage.type == "entry"]
        return entry_stages[0] if entry_stages else stages[0]

    def _after_transaction(self, lead: Lead, transaction: LeadTransaction) -> None:
        observe_lead_transaction(transaction.type)
        logger.info(
            "lead.transaction_recorded",
            extra={
                "company_id": lead.company_id,
                "lead_id": lead.id,
                "transaction_id": transaction.id,
                "transaction_type": transaction.type,
                "actor_user_id": transaction.user_id,
            },
        )


class LeadTransactionService:
    def list_for_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: int,
        filters: dict[str, Any],
        order: Literal["asc", "desc"] = "desc",
        cursor: str | None = None,
        limit: int = 50,
    ) -> list[LeadTransactionRead]:
        company_id = _require_company(actor_user)
        lead = session.scalar(select(Lead).where(and_(Lead.id == lead_id, Lead.company_id == company_id)))
        if lead is None:
            raise NotFoundError("lead", lead_id)

        stmt = self._filtered(select(LeadTransaction).where(LeadTransaction.lead_id == lead.id), filters)
        return self._page(session, stmt, order, cursor, limit)

    def list_for_company(
        self,
        session: Session,
        actor_user: ActorUser,
        company_id: int,
        filters: dict[str, Any],
        cursor: str | None = None,
        limit: int = 50,
    ) -> list[LeadTransactionRead]:
        if _require_company(actor_user) != company_id:
            raise NotFoundError("company", company_id)

        stmt = self._filtered(select(LeadTransaction).where(LeadTransaction.company_id == company_id), filters)
        return self._page(session, stmt, "desc", cursor, limit)

    def _filtered(self, stmt: Select[tuple[LeadTransaction]], filters: dict[str, Any]) -> Select[tuple[LeadTransaction]]:
        if filters.get("type"):
            stmt = stmt.where(LeadTransaction.type == filters["type"])
        if filters.get("is_important") is not None:
            stmt = stmt.where(LeadTransaction.is_important.is_(bool(filters["is_important"])))
        if filters.get("user_id") is not None:
            stmt = stmt.where(LeadTransaction.user_id == filters["user_id"])
        return stmt

    def _page(
        self,
        session: Session,
        stmt: Select[tuple[LeadTransaction]],
        order: Literal["asc", "desc"],
        cursor: str | None,
        limit: int,
    ) -> list[LeadTransactionRead]:
        if order == "asc":
            stmt = stmt.order_by(LeadTransaction.created_at.asc(), LeadTransaction.id.asc())
        else:
            stmt = stmt.order_by(LeadTransaction.created_at.desc(), LeadTransaction.id.desc())
        offset = int(cursor) if cursor and cursor.isdigit() else 0
        rows = session.scalars(stmt.offset(offset).limit(limit)).all()
        return [LeadTransactionRead.model_validate(row) for row in rows]


def _unique_tags(tags: list[str]) -> list[str]:
    seen: dict[str, None] = {}
    for tag in tags:
        cleaned = tag.strip()
        if cleaned:
            seen.setdefault(cleaned, None)
    return list(seen)
