from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from .. import orm_models
from ..errors import not_found, validation_failed
from ..permissions import Identity, ensure_capability
from ..schemas import (
    DocumentKind,
    Quote,
    QuoteCreate,
    QuoteItemInput,
    QuoteStatus,
    QuoteUpdate,
    QuoteUpdateResponse,
    normalize_quote_status,
)
from .conversion import run_status_change_conversions
from .records import decode_record, load_quote
from .sequences import reserve_sequence

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _decimal(value: object) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class QuoteTotals:
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    deposit_amount: Decimal
    balance_remaining: Decimal


def line_total(item: QuoteItemInput) -> Decimal:
    return _money(_decimal(item.quantity) * _decimal(item.unit_price))


def compute_totals(
    items: Iterable[QuoteItemInput],
    tax_percentage: object,
    deposit_percentage: object,
) -> QuoteTotals:
    """Derive quote totals; tax applies to taxable lines only."""

    subtotal = Decimal("0")
    taxable = Decimal("0")
    for item in items:
        amount = line_total(item)
        subtotal += amount
        if item.taxable:
            taxable += amount

    tax_amount = _money(taxable * _decimal(tax_percentage) / HUNDRED)
    total = _money(subtotal) + tax_amount
    deposit_amount = _money(total * _decimal(deposit_percentage) / HUNDRED)
    return QuoteTotals(
        subtotal=_money(subtotal),
        tax_amount=tax_amount,
        total=total,
        deposit_amount=deposit_amount,
        balance_remaining=total - deposit_amount,
    )


def _apply_totals(quote: orm_models.QuoteORM, items: list[QuoteItemInput]) -> None:
    totals = compute_totals(items, quote.company.tax_percentage, quote.deposit_percentage)
    quote.subtotal = totals.subtotal
    quote.tax_amount = totals.tax_amount
    quote.total = totals.total
    quote.deposit_amount = totals.deposit_amount
    quote.balance_remaining = totals.balance_remaining


def _apply_deposit(quote: orm_models.QuoteORM) -> None:
    total = _decimal(quote.total)
    quote.deposit_amount = _money(total * _decimal(quote.deposit_percentage) / HUNDRED)
    quote.balance_remaining = total - quote.deposit_amount


def _build_items(items: list[QuoteItemInput]) -> list[orm_models.QuoteItemORM]:
    return [
        orm_models.QuoteItemORM(
            position=position,
            description=item.description,
            quantity=item.quantity,
            unit_price=item.unit_price,
            taxable=item.taxable,
            line_total=line_total(item),
        )
        for position, item in enumerate(items)
    ]


def _quote_to_schema(model: orm_models.QuoteORM) -> Quote:
    return decode_record(Quote, model, entity="quote")


def create_quote(
    session: Session,
    identity: Identity,
    payload: QuoteCreate,
    *,
    today: Optional[date] = None,
) -> Quote:
    ensure_capability(identity, "quote.create")
    if not identity.company_id:
        raise validation_failed("Caller is not attached to a company", {"companyId": "missing"})

    company = session.get(orm_models.CompanySettingsORM, identity.company_id)
    if company is None:
        raise not_found("Company settings", identity.company_id)
    client = session.get(orm_models.ClientORM, payload.client_id)
    if client is None or client.company_id != company.id:
        raise not_found("Client", payload.client_id)

    issue_date = payload.date_issued or today or date.today()
    number, _ = reserve_sequence(session, company.id, DocumentKind.QUOTE, today=issue_date)

    quote = orm_models.QuoteORM(
        company_id=company.id,
        owner_id=identity.user_id,
        client_id=client.id,
        quote_number=number,
        status=payload.status.value,
        date_issued=issue_date,
        valid_until=payload.valid_until,
        deposit_percentage=payload.deposit_percentage,
        notes=payload.notes,
        terms=payload.terms,
        items=_build_items(payload.items),
    )
    quote.company = company
    _apply_totals(quote, payload.items)
    session.add(quote)
    session.flush()
    logger.info("Quote %s (%s) created by %s", quote.id, number, identity.user_id)
    return _quote_to_schema(quote)


def get_quote(session: Session, identity: Identity, quote_id: str) -> Quote:
    return _quote_to_schema(load_quote(session, identity, quote_id, "quote.read"))


def update_quote(
    session: Session,
    identity: Identity,
    quote_id: str,
    patch: QuoteUpdate,
    *,
    today: Optional[date] = None,
) -> QuoteUpdateResponse:
    """Apply ``patch`` and, on the transition into accepted, run the enabled conversions.

    The quote change is flushed before any conversion starts; conversion
    failures come back in ``conversion_results`` instead of raising.
    """

    quote = load_quote(session, identity, quote_id, "quote.update")
    previous_status = normalize_quote_status(quote.status)
    changes = patch.dict(exclude_unset=True)

    if "status" in changes:
        if changes["status"] is None:
            raise validation_failed("Status must not be empty", {"status": "required"})
        quote.status = QuoteStatus(changes["status"]).value
    if "valid_until" in changes:
        quote.valid_until = patch.valid_until
    for field in ("notes", "terms"):
        if changes.get(field) is not None:
            setattr(quote, field, changes[field])
    if changes.get("deposit_percentage") is not None:
        quote.deposit_percentage = patch.deposit_percentage

    # Totals move only when items or the deposit change.
    if patch.items is not None:
        quote.items = _build_items(patch.items)
        _apply_totals(quote, patch.items)
    elif changes.get("deposit_percentage") is not None:
        _apply_deposit(quote)
    session.flush()

    conversion_results = []
    triggered = previous_status != QuoteStatus.ACCEPTED.value and quote.status == QuoteStatus.ACCEPTED.value
    if triggered:
        logger.info("Quote %s accepted by %s; running automatic conversions", quote.id, identity.user_id)
        conversion_results = run_status_change_conversions(session, identity, quote, today=today)

    session.refresh(quote)
    return QuoteUpdateResponse(
        quote=_quote_to_schema(quote),
        conversion_results=conversion_results,
        automation_triggered=triggered,
    )
