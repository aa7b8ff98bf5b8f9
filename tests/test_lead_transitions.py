from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from funnelcrm import events
from funnelcrm.core.database import Base
from funnelcrm.crm import transactions
from funnelcrm.crm.errors import InvalidStageForFunnelError, NoAdjacentStageError
from funnelcrm.crm.models import Lead, LeadTransaction, Stage
from funnelcrm.crm.schemas import FunnelCreate, LeadCreate, StageCreate
from funnelcrm.crm.service import ActorUser, FunnelService, LeadService, StageService


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def actor() -> ActorUser:
    return ActorUser(user_id=7, company_id=100, permissions=set())


@pytest.fixture()
def pipeline(db_session: Session, actor: ActorUser) -> dict[str, int]:
    funnels = FunnelService()
    stages = StageService()
    sales = funnels.create_funnel(db_session, actor, FunnelCreate(name="Sales"))
    other = funnels.create_funnel(db_session, actor, FunnelCreate(name="Support"))
    ids = {"funnel": sales.id, "other_funnel": other.id}
    ids["entry"] = stages.create_stage(db_session, actor, sales.id, StageCreate(name="Entry", type="entry")).id
    ids["contacted"] = stages.create_stage(db_session, actor, sales.id, StageCreate(name="Contacted")).id
    ids["won"] = stages.create_stage(db_session, actor, sales.id, StageCreate(name="Won", type="conversion")).id
    ids["foreign"] = stages.create_stage(db_session, actor, other.id, StageCreate(name="Triage", type="entry")).id
    return ids


def _new_lead(session: Session, actor: ActorUser, funnel_id: int) -> Lead:
    created = LeadService().create_lead(
        session,
        actor,
        LeadCreate(funnel_id=funnel_id, first_name="Ada", last_name="Lovelace", email="ada@example.com"),
    )
    lead = session.get(Lead, created.id)
    assert lead is not None
    return lead


def _stage_changes(session: Session, lead_id: int) -> list[LeadTransaction]:
    return list(
        session.scalars(
            select(LeadTransaction)
            .where(LeadTransaction.lead_id == lead_id, LeadTransaction.type == "stage_change")
            .order_by(LeadTransaction.id.asc())
        ).all()
    )


def test_lead_walks_through_funnel_end_to_end(
    db_session: Session,
    actor: ActorUser,
    pipeline: dict[str, int],
) -> None:
    service = LeadService()
    lead = _new_lead(db_session, actor, pipeline["funnel"])
    assert lead.stage_id == pipeline["entry"]

    result = service.move_to_next_stage(db_session, lead, actor.user_id)
    assert result.succeeded
    assert lead.stage_id == pipeline["contacted"]
    assert len(_stage_changes(db_session, lead.id)) == 1

    result = service.move_to_stage(db_session, lead, pipeline["won"], actor.user_id)
    assert result.succeeded
    assert result.transaction is not None
    assert result.transaction.from_stage_id == pipeline["contacted"]
    assert result.transaction.to_stage_id == pipeline["won"]
    assert len(_stage_changes(db_session, lead.id)) == 2

    result = service.move_to_stage(db_session, lead, pipeline["foreign"], actor.user_id)
    assert not result.succeeded
    assert isinstance(result.error, InvalidStageForFunnelError)
    assert result.transaction is None

    db_session.expire_all()
    reloaded = db_session.get(Lead, lead.id)
    assert reloaded is not None
    assert reloaded.stage_id == pipeline["won"]
    assert len(_stage_changes(db_session, lead.id)) == 2
    stage = db_session.get(Stage, reloaded.stage_id)
    assert stage is not None and stage.funnel_id == reloaded.funnel_id


def test_stage_change_row_describes_the_move(
    db_session: Session,
    actor: ActorUser,
    pipeline: dict[str, int],
) -> None:
    lead = _new_lead(db_session, actor, pipeline["funnel"])

    LeadService().move_to_stage(db_session, lead, pipeline["contacted"], actor.user_id)

    [row] = _stage_changes(db_session, lead.id)
    assert row.user_id == 7
    assert row.action == "moved"
    assert row.description == "moved lead from 'Entry' to 'Contacted'"
    assert row.previous_data == {"stage_id": pipeline["entry"], "stage_name": "Entry"}
    assert row.current_data == {"stage_id": pipeline["contacted"], "stage_name": "Contacted"}
    assert row.is_important is True
    assert row.source == "manual"


def test_system_move_is_recorded_without_user(
    db_session: Session,
    actor: ActorUser,
    pipeline: dict[str, int],
) -> None:
    lead = _new_lead(db_session, actor, pipeline["funnel"])

    result = LeadService().move_to_stage(db_session, lead, pipeline["won"])

    assert result.transaction is not None
    assert result.transaction.user_id is None
    assert result.transaction.source == "system"


def test_move_to_current_stage_writes_nothing(
    db_session: Session,
    actor: ActorUser,
    pipeline: dict[str, int],
) -> None:
    lead = _new_lead(db_session, actor, pipeline["funnel"])

    result = LeadService().move_to_stage(db_session, lead, pipeline["entry"], actor.user_id)

    assert result.succeeded
    assert not result.changed
    assert _stage_changes(db_session, lead.id) == []


def test_move_to_deleted_stage_is_rejected(
    db_session: Session,
    actor: ActorUser,
    pipeline: dict[str, int],
) -> None:
    StageService().delete_stage(db_session, actor, pipeline["funnel"], pipeline["won"])
    lead = _new_lead(db_session, actor, pipeline["funnel"])

    result = LeadService().move_to_stage(db_session, lead, pipeline["won"], actor.user_id)

    assert isinstance(result.error, InvalidStageForFunnelError)
    assert lead.stage_id == pipeline["entry"]


def test_neighbour_moves_fail_at_the_edges(
    db_session: Session,
    actor: ActorUser,
    pipeline: dict[str, int],
) -> None:
    service = LeadService()
    lead = _new_lead(db_session, actor, pipeline["funnel"])

    result = service.move_to_previous_stage(db_session, lead, actor.user_id)
    assert isinstance(result.error, NoAdjacentStageError)
    assert result.error.details == {"stage_id": pipeline["entry"], "direction": "previous"}

    service.move_to_stage(db_session, lead, pipeline["won"], actor.user_id)
    result = service.move_to_next_stage(db_session, lead, actor.user_id)
    assert isinstance(result.error, NoAdjacentStageError)
    assert lead.stage_id == pipeline["won"]

    result = service.move_to_previous_stage(db_session, lead, actor.user_id)
    assert result.succeeded
    assert lead.stage_id == pipeline["contacted"]
    assert len(_stage_changes(db_session, lead.id)) == 2


def test_failed_audit_write_rolls_back_stage_change(
    db_session: Session,
    actor: ActorUser,
    pipeline: dict[str, int],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    lead = _new_lead(db_session, actor, pipeline["funnel"])
    lead_id = lead.id

    def _broken(*args, **kwargs):  # type: ignore[no-untyped-def]
        raise RuntimeError("audit store unavailable")

    monkeypatch.setattr(transactions, "record_stage_change", _broken)

    with pytest.raises(RuntimeError):
        LeadService().move_to_stage(db_session, lead, pipeline["contacted"], actor.user_id)

    reloaded = db_session.get(Lead, lead_id)
    assert reloaded is not None
    assert reloaded.stage_id == pipeline["entry"]
    assert _stage_changes(db_session, lead_id) == []


def test_stage_change_event_is_published_after_commit(
    db_session: Session,
    actor: ActorUser,
    pipeline: dict[str, int],
) -> None:
    lead = _new_lead(db_session, actor, pipeline["funnel"])
    events.published_events.clear()

    result = LeadService().move_to_stage(db_session, lead, pipeline["contacted"], actor.user_id)

    [event] = [item for item in events.published_events if item["event_type"] == "crm.lead.stage_changed"]
    assert event["company_id"] == 100
    assert event["actor_user_id"] == 7
    assert event["payload"]["from_stage_id"] == pipeline["entry"]
    assert event["payload"]["to_stage_id"] == pipeline["contacted"]
    assert event["payload"]["transaction_id"] == result.transaction.id


def test_rejected_move_publishes_nothing(
    db_session: Session,
    actor: ActorUser,
    pipeline: dict[str, int],
) -> None:
    lead = _new_lead(db_session, actor, pipeline["funnel"])
    events.published_events.clear()

    LeadService().move_to_stage(db_session, lead, pipeline["foreign"], actor.user_id)

    assert events.published_events == []
    count = db_session.scalar(select(func.count()).select_from(LeadTransaction).where(LeadTransaction.lead_id == lead.id))
    assert int(count or 0) == 1
