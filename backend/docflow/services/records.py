from __future__ import annotations

import logging
from typing import Type, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from .. import orm_models
from ..errors import DATA_INTEGRITY, ServiceError, not_found
from ..permissions import Action, Identity, Resource, ensure_capability

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)


def decode_record(schema: Type[RecordT], row: object, *, entity: str) -> RecordT:
    """Map an ORM row onto its typed record, rejecting rows of unexpected shape."""

    try:
        return schema.from_orm(row)
    except ValidationError as exc:
        row_id = getattr(row, "id", None)
        logger.error("Stored %s %s does not match its schema: %s", entity, row_id, exc)
        raise ServiceError(
            DATA_INTEGRITY,
            f"Stored {entity} has an unexpected shape",
            {"id": row_id, "errors": exc.errors()},
        ) from exc


def load_quote(session: Session, identity: Identity, quote_id: str, action: Action) -> orm_models.QuoteORM:
    """Load a quote the caller may act on, or raise ``not_found``/``forbidden``."""

    ensure_capability(identity, action)
    quote = session.get(orm_models.QuoteORM, quote_id)
    if quote is None:
        raise not_found("Quote", quote_id)
    ensure_capability(
        identity,
        action,
        Resource(kind="quote", id=quote.id, owner_id=quote.owner_id, company_id=quote.company_id),
    )
    return quote
