from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    event,
    false,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from funnelcrm.core.database import Base
from funnelcrm.crm.errors import ImmutableTransactionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Funnel(Base):
    __tablename__ = "funnels"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="funnel", server_default="funnel")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    settings: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    stages: Mapped[list[Stage]] = relationship(
        "Stage",
        back_populates="funnel",
        order_by="Stage.order",
        passive_deletes=True,
    )


class Stage(Base):
    __tablename__ = "stages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    funnel_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("funnels.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    color: Mapped[str] = mapped_column(String(16), nullable=False, default="#FFFFFF", server_default="#FFFFFF")
    order: Mapped[int] = mapped_column("order", Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False, default="normal", server_default="normal")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    settings: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    funnel: Mapped[Funnel] = relationship("Funnel", back_populates="stages")


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False)
    funnel_id: Mapped[int] = mapped_column(Integer, ForeignKey("funnels.id", ondelete="RESTRICT"), nullable=False)
    stage_id: Mapped[int] = mapped_column(Integer, ForeignKey("stages.id", ondelete="RESTRICT"), nullable=False)
    assigned_to: Mapped[int | None] = mapped_column(Integer, nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source_platform: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="new", server_default="new")
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium", server_default="medium")
    is_qualified: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    qualified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    qualified_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    estimated_value: Mapped[Decimal | None] = mapped_column(Numeric(15, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD", server_default="USD")
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_contact_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    funnel: Mapped[Funnel] = relationship("Funnel")
    stage: Mapped[Stage] = relationship("Stage")

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


class LeadTransaction(Base):
    __tablename__ = "lead_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[int] = mapped_column(Integer, ForeignKey("leads.id", ondelete="RESTRICT"), nullable=False)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    previous_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    current_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    # "metadata" is reserved on declarative classes.
    event_metadata: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    # Historical references: a hard-deleted stage must not rewrite audit rows.
    from_stage_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    to_stage_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    assigned_from: Mapped[int | None] = mapped_column(Integer, nullable=True)
    assigned_to: Mapped[int | None] = mapped_column(Integer, nullable=True)
    contact_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    communication_direction: Mapped[str | None] = mapped_column(String(16), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    previous_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    current_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    current_qualification: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    qualification_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="manual", server_default="manual")
    is_automated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    is_important: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    lead: Mapped[Lead] = relationship("Lead")


@event.listens_for(LeadTransaction, "before_update")
def _refuse_transaction_update(mapper, connection, target: LeadTransaction) -> None:  # type: ignore[no-untyped-def]
    raise ImmutableTransactionError(target.id, "update")


@event.listens_for(LeadTransaction, "before_delete")
def _refuse_transaction_delete(mapper, connection, target: LeadTransaction) -> None:  # type: ignore[no-untyped-def]
    raise ImmutableTransactionError(target.id, "delete")


Index("ix_funnels_company_id", Funnel.company_id)
Index("ix_funnels_deleted_at", Funnel.deleted_at)
Index("ix_stages_funnel_id", Stage.funnel_id)
Index(
    "uq_stages_funnel_order_active",
    Stage.funnel_id,
    Stage.order,
    unique=True,
    postgresql_where=Stage.deleted_at.is_(None),
    sqlite_where=Stage.deleted_at.is_(None),
)
Index("ix_leads_company_funnel_stage", Lead.company_id, Lead.funnel_id, Lead.stage_id)
Index("ix_leads_email", Lead.email)
Index("ix_lead_transactions_lead_created", LeadTransaction.lead_id, LeadTransaction.created_at)
Index("ix_lead_transactions_company_created", LeadTransaction.company_id, LeadTransaction.created_at)
Index("ix_lead_transactions_type", LeadTransaction.type)
