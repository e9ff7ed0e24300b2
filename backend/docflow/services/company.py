from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from .. import orm_models
from ..errors import not_found, validation_failed
from ..numbering import FormatError, validate_format
from ..permissions import Identity, Resource, ensure_capability
from ..schemas import CompanySettings, CompanySettingsUpdate
from .records import decode_record

logger = logging.getLogger(__name__)

FORMAT_FIELDS = (
    "numbering_format_invoice",
    "numbering_format_quote",
    "numbering_format_agreement",
)


def _load_company(session: Session, identity: Identity, action) -> orm_models.CompanySettingsORM:
    ensure_capability(identity, action)
    if not identity.company_id:
        raise not_found("Company settings")
    company = session.get(orm_models.CompanySettingsORM, identity.company_id)
    if company is None:
        raise not_found("Company settings", identity.company_id)
    ensure_capability(identity, action, Resource(kind="company", id=company.id, company_id=company.id))
    return company


def get_company_settings(session: Session, identity: Identity) -> CompanySettings:
    return decode_record(CompanySettings, _load_company(session, identity, "settings.read"), entity="company settings")


def update_company_settings(
    session: Session,
    identity: Identity,
    payload: CompanySettingsUpdate,
) -> CompanySettings:
    """Apply a partial settings update. Numbering formats are checked before anything is written."""

    company = _load_company(session, identity, "settings.update")
    changes = {key: value for key, value in payload.dict(exclude_unset=True).items() if value is not None}

    errors = {}
    for field in FORMAT_FIELDS:
        if field in changes:
            try:
                validate_format(changes[field])
            except FormatError as exc:
                errors[field] = str(exc)
    if errors:
        raise validation_failed("Numbering format is invalid", errors)

    for key, value in changes.items():
        setattr(company, key, value)
    session.flush()
    logger.info("Company settings %s updated by %s: %s", company.id, identity.user_id, sorted(changes))
    return decode_record(CompanySettings, company, entity="company settings")
