from __future__ import annotations

import logging
from collections import Counter
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import orm_models
from ..config import settings
from ..errors import INTERNAL_ERROR, ServiceError, not_found, validation_failed
from ..permissions import Identity, ensure_capability
from ..schemas import (
    DailyCount,
    TemplateUsageCount,
    TemplateUsageStats,
    UsageAnalytics,
    UsageEvent,
    UsageEventCreate,
    UsageEventType,
    UsageOutcome,
    UserUsageStats,
)
from .records import decode_record

logger = logging.getLogger(__name__)

MIN_DAYS = 1
MAX_DAYS = 365
TOP_TEMPLATES_LIMIT = 5


def record_usage_event(
    session: Session,
    *,
    template_id: Optional[str],
    user_id: Optional[str],
    document_id: Optional[str] = None,
    event_type: UsageEventType = UsageEventType.GENERATION,
    outcome: UsageOutcome = UsageOutcome.SUCCESS,
    details: Optional[dict] = None,
) -> Optional[orm_models.UsageEventORM]:
    """Append a usage event without ever failing the caller.

    The insert runs in its own savepoint; a storage error is logged and the
    surrounding work carries on.
    """

    event = orm_models.UsageEventORM(
        template_id=template_id,
        user_id=user_id,
        document_id=document_id,
        event_type=UsageEventType(event_type).value,
        outcome=UsageOutcome(outcome).value,
        details=details or {},
    )
    try:
        with session.begin_nested():
            session.add(event)
            session.flush()
    except SQLAlchemyError:
        logger.exception(
            "Failed to record %s usage event for template %s (user %s)",
            event.event_type,
            template_id,
            user_id,
        )
        return None
    return event


def track_usage_event(session: Session, identity: Identity, payload: UsageEventCreate) -> UsageEvent:
    ensure_capability(identity, "usage.track")
    if session.get(orm_models.TemplateORM, payload.template_id) is None:
        raise not_found("Template", payload.template_id)
    event = record_usage_event(
        session,
        template_id=payload.template_id,
        user_id=identity.user_id,
        document_id=payload.document_id,
        event_type=payload.event_type,
        outcome=payload.outcome,
        details=payload.details,
    )
    if event is None:
        raise ServiceError(INTERNAL_ERROR, "Usage event could not be stored")
    return decode_record(UsageEvent, event, entity="usage event")


def validate_days(days: Optional[int]) -> int:
    value = settings.usage_default_days if days is None else days
    if isinstance(value, bool) or not isinstance(value, int) or not MIN_DAYS <= value <= MAX_DAYS:
        raise validation_failed(
            f"days must be between {MIN_DAYS} and {MAX_DAYS}",
            {"days": days},
        )
    return value


def _first_day(now: datetime, days: int) -> date:
    return now.date() - timedelta(days=days - 1)


def _window_events(
    session: Session,
    now: datetime,
    days: int,
    *,
    template_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> list[orm_models.UsageEventORM]:
    # The window starts at midnight so it lines up with the daily buckets.
    since = datetime.combine(_first_day(now, days), time.min)
    stmt = select(orm_models.UsageEventORM).where(orm_models.UsageEventORM.created_at >= since)
    if template_id:
        stmt = stmt.where(orm_models.UsageEventORM.template_id == template_id)
    if user_id:
        stmt = stmt.where(orm_models.UsageEventORM.user_id == user_id)
    return list(session.execute(stmt.order_by(orm_models.UsageEventORM.created_at)).scalars())


def _summarize(events: list[orm_models.UsageEventORM], days: int, now: datetime) -> dict:
    total = len(events)
    generations = sum(1 for event in events if event.event_type == UsageEventType.GENERATION.value)
    successes = sum(1 for event in events if event.outcome == UsageOutcome.SUCCESS.value)

    per_day = Counter(event.created_at.date() for event in events)
    first_day = _first_day(now, days)
    daily = [
        DailyCount(day=first_day + timedelta(days=offset), count=per_day.get(first_day + timedelta(days=offset), 0))
        for offset in range(days)
    ]

    return {
        "days": days,
        "total_events": total,
        "generations": generations,
        "previews": total - generations,
        "successes": successes,
        "failures": total - successes,
        "success_rate": round(successes * 100 / total, 2) if total else 0.0,
        "generations_per_day": round(generations / days, 2),
        "daily": daily,
    }


def _template_counts(session: Session, events: Iterable[orm_models.UsageEventORM]) -> list[TemplateUsageCount]:
    counts = Counter(event.template_id for event in events if event.template_id)
    if not counts:
        return []
    names = dict(
        session.execute(
            select(orm_models.TemplateORM.id, orm_models.TemplateORM.name).where(
                orm_models.TemplateORM.id.in_(list(counts))
            )
        ).all()
    )
    return [
        TemplateUsageCount(template_id=template_id, name=names.get(template_id), count=count)
        for template_id, count in counts.most_common()
    ]


def get_template_usage_stats(
    session: Session,
    identity: Identity,
    template_id: str,
    days: Optional[int] = None,
    *,
    now: Optional[datetime] = None,
) -> TemplateUsageStats:
    ensure_capability(identity, "usage.template_stats")
    window = validate_days(days)
    if session.get(orm_models.TemplateORM, template_id) is None:
        raise not_found("Template", template_id)

    current = now or datetime.utcnow()
    events = _window_events(session, current, window, template_id=template_id)
    return TemplateUsageStats(
        template_id=template_id,
        unique_users=len({event.user_id for event in events if event.user_id}),
        **_summarize(events, window, current),
    )


def get_user_usage_stats(
    session: Session,
    identity: Identity,
    user_id: str,
    days: Optional[int] = None,
    *,
    now: Optional[datetime] = None,
) -> UserUsageStats:
    ensure_capability(identity, "usage.read_own" if user_id == identity.user_id else "usage.analytics")
    window = validate_days(days)

    current = now or datetime.utcnow()
    events = _window_events(session, current, window, user_id=user_id)
    templates = _template_counts(session, events)
    return UserUsageStats(
        user_id=user_id,
        unique_templates=len(templates),
        most_used_template_id=templates[0].template_id if templates else None,
        templates=templates,
        **_summarize(events, window, current),
    )


def get_usage_analytics(
    session: Session,
    identity: Identity,
    days: Optional[int] = None,
    *,
    now: Optional[datetime] = None,
) -> UsageAnalytics:
    ensure_capability(identity, "usage.analytics")
    window = validate_days(days)

    current = now or datetime.utcnow()
    events = _window_events(session, current, window)
    templates = _template_counts(session, events)
    active_templates = session.execute(
        select(func.count()).select_from(orm_models.TemplateORM).where(orm_models.TemplateORM.is_active.is_(True))
    ).scalar_one()
    return UsageAnalytics(
        unique_users=len({event.user_id for event in events if event.user_id}),
        unique_templates=len(templates),
        active_templates=active_templates,
        top_templates=templates[:TOP_TEMPLATES_LIMIT],
        **_summarize(events, window, current),
    )
