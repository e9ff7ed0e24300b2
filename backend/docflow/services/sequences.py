from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .. import orm_models
from ..config import settings
from ..errors import INTERNAL_ERROR, ServiceError, not_found
from ..numbering import FormatError, ParseError, extract_sequence, format_number
from ..schemas import DocumentKind

logger = logging.getLogger(__name__)

COUNTERS = {
    DocumentKind.INVOICE: (
        orm_models.CompanySettingsORM.numbering_format_invoice,
        orm_models.CompanySettingsORM.next_invoice_number,
    ),
    DocumentKind.QUOTE: (
        orm_models.CompanySettingsORM.numbering_format_quote,
        orm_models.CompanySettingsORM.next_quote_number,
    ),
    DocumentKind.AGREEMENT: (
        orm_models.CompanySettingsORM.numbering_format_agreement,
        orm_models.CompanySettingsORM.next_agreement_number,
    ),
}

ISSUED_NUMBERS = {
    DocumentKind.INVOICE: (orm_models.InvoiceORM, orm_models.InvoiceORM.invoice_number),
    DocumentKind.QUOTE: (orm_models.QuoteORM, orm_models.QuoteORM.quote_number),
    DocumentKind.AGREEMENT: (orm_models.ServiceAgreementORM, orm_models.ServiceAgreementORM.agreement_number),
}


def highest_issued_sequence(session: Session, kind: DocumentKind, company_id: str) -> int:
    model, number_column = ISSUED_NUMBERS[kind]
    numbers = session.execute(select(number_column).where(model.company_id == company_id)).scalars().all()
    highest = 0
    for raw in numbers:
        try:
            highest = max(highest, extract_sequence(raw))
        except ParseError as exc:
            logger.error("Stored %s number %r carries no sequence (company %s)", kind.value, raw, company_id)
            raise ServiceError(
                INTERNAL_ERROR,
                "Stored document number is malformed",
                {"kind": kind.value, "number": raw},
            ) from exc
    return highest


def reserve_sequence(
    session: Session,
    company_id: str,
    kind: DocumentKind,
    *,
    today: Optional[date] = None,
) -> tuple[str, int]:
    """Claim the next number for ``kind`` inside the caller's transaction.

    The counter moves by compare-and-increment, so two transactions that read
    the same value cannot both issue it. Rolling the transaction back releases
    the number again.
    """

    format_column, counter_column = COUNTERS[kind]
    issue_date = today or date.today()

    for attempt in range(1, settings.sequence_max_retries + 1):
        row = session.execute(
            select(format_column, counter_column).where(orm_models.CompanySettingsORM.id == company_id)
        ).one_or_none()
        if row is None:
            raise not_found("Company settings", company_id)
        template, current = row

        sequence = max(current or 1, highest_issued_sequence(session, kind, company_id) + 1)
        try:
            number = format_number(sequence, template, year=issue_date.year)
        except FormatError as exc:
            logger.error("Numbering format %r for %s is unusable: %s", template, kind.value, exc)
            raise ServiceError(
                INTERNAL_ERROR,
                "Numbering format is invalid",
                {"kind": kind.value, "format": template},
            ) from exc

        result = session.execute(
            update(orm_models.CompanySettingsORM)
            .where(
                orm_models.CompanySettingsORM.id == company_id,
                counter_column == current,
            )
            .values({counter_column.key: sequence + 1})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return number, sequence
        logger.info(
            "Sequence counter for %s moved concurrently (company %s, attempt %d)",
            kind.value,
            company_id,
            attempt,
        )

    raise ServiceError(
        INTERNAL_ERROR,
        "Could not reserve a document number, retry the request",
        {"kind": kind.value},
    )
