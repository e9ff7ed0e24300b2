"""Quote → invoice / service agreement conversion.

Every conversion is find-or-create on the ``quote_conversions`` ledger: the
unique ``(quote_id, document_kind)`` key decides which of two concurrent
requests produces the document, and the loser reads the winner's row back.
"""

from __future__ import annotations

import calendar
import json
import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .. import orm_models
from ..errors import DATA_INTEGRITY, INTERNAL_ERROR, ServiceError, not_found, validation_failed
from ..orm_models import generate_id
from ..packages import detect_package_type
from ..permissions import Identity, Resource, check_capability, ensure_capability
from ..schemas import (
    AgreementStatus,
    AutomationTrigger,
    ConversionOutcome,
    DocumentKind,
    Invoice,
    InvoiceStatus,
    QuoteStatus,
    ServiceAgreement,
    Template,
    UsageEventType,
    UsageOutcome,
    normalize_quote_status,
)
from ..variables import SubstitutionError, extract_variables, substitute, validate
from .records import decode_record, load_quote
from .sequences import reserve_sequence
from .templates import increment_usage, resolve_agreement_template
from .usage import record_usage_event

logger = logging.getLogger(__name__)

DocumentORM = Union[orm_models.InvoiceORM, orm_models.ServiceAgreementORM]

DOCUMENT_MODELS = {
    DocumentKind.INVOICE: (orm_models.InvoiceORM, Invoice, "invoice"),
    DocumentKind.AGREEMENT: (orm_models.ServiceAgreementORM, ServiceAgreement, "service agreement"),
}

DOCUMENT_ID_PREFIXES = {
    DocumentKind.INVOICE: "inv",
    DocumentKind.AGREEMENT: "sla",
}


def add_months(value: date, months: int) -> date:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def _to_schema(kind: DocumentKind, model: DocumentORM) -> Union[Invoice, ServiceAgreement]:
    _, schema, entity = DOCUMENT_MODELS[kind]
    return decode_record(schema, model, entity=entity)


def find_existing_document(session: Session, quote_id: str, kind: DocumentKind) -> Optional[DocumentORM]:
    ledger = session.execute(
        select(orm_models.QuoteConversionORM).where(
            orm_models.QuoteConversionORM.quote_id == quote_id,
            orm_models.QuoteConversionORM.document_kind == kind.value,
        )
    ).scalar_one_or_none()
    if ledger is None:
        return None

    model, _, entity = DOCUMENT_MODELS[kind]
    document = session.get(model, ledger.document_id)
    if document is None:
        logger.error("Conversion ledger for quote %s points at missing %s %s", quote_id, entity, ledger.document_id)
        raise ServiceError(
            DATA_INTEGRITY,
            f"Converted {entity} is missing",
            {"quoteId": quote_id, "documentId": ledger.document_id},
        )
    return document


def _existing_outcome(kind: DocumentKind, document: DocumentORM, trigger: AutomationTrigger) -> ConversionOutcome:
    return ConversionOutcome(
        kind=kind,
        success=True,
        message=f"Quote already converted to {DOCUMENT_MODELS[kind][2]}",
        document_id=document.id,
        document=_to_schema(kind, document),
        created=False,
        automation_ran=trigger == AutomationTrigger.STATUS_CHANGE,
    )


def _financials(quote: orm_models.QuoteORM) -> dict:
    return {
        "company_id": quote.company_id,
        "owner_id": quote.owner_id,
        "client_id": quote.client_id,
        "subtotal": quote.subtotal,
        "tax_amount": quote.tax_amount,
        "total": quote.total,
        "deposit_percentage": quote.deposit_percentage,
        "deposit_amount": quote.deposit_amount,
        "balance_remaining": quote.balance_remaining,
        "created_from_quote_id": quote.id,
    }


def _generation_metadata(trigger: AutomationTrigger) -> dict:
    return {
        "auto_generated": trigger == AutomationTrigger.STATUS_CHANGE,
        "automation_trigger": trigger.value,
        "generated_at": datetime.utcnow(),
    }


def _build_invoice(
    session: Session,
    quote: orm_models.QuoteORM,
    document_id: str,
    trigger: AutomationTrigger,
    today: date,
) -> orm_models.InvoiceORM:
    company = quote.company
    number, _ = reserve_sequence(session, company.id, DocumentKind.INVOICE, today=today)
    return orm_models.InvoiceORM(
        id=document_id,
        invoice_number=number,
        status=InvoiceStatus.DRAFT.value,
        date_issued=today,
        due_date=today + timedelta(days=company.payment_terms_days or 30),
        currency=company.currency,
        deposit_required=Decimal(quote.deposit_percentage or 0) > 0,
        notes=quote.notes or "",
        terms=quote.terms or "",
        items=[
            orm_models.InvoiceItemORM(
                position=item.position,
                description=item.description,
                quantity=item.quantity,
                unit_price=item.unit_price,
                taxable=item.taxable,
                line_total=item.line_total,
            )
            for item in quote.items
        ],
        **_financials(quote),
        **_generation_metadata(trigger),
    )


def _build_agreement(
    session: Session,
    quote: orm_models.QuoteORM,
    document_id: str,
    trigger: AutomationTrigger,
    today: date,
    template_id: Optional[str],
) -> orm_models.ServiceAgreementORM:
    company = quote.company
    package_type = detect_package_type(quote, quote.client)
    template = decode_record(
        Template,
        resolve_agreement_template(session, template_id, package_type),
        entity="template",
    )
    number, _ = reserve_sequence(session, company.id, DocumentKind.AGREEMENT, today=today)
    expiry = add_months(today, company.agreement_term_months or 12)

    variables = extract_variables(
        quote,
        quote.client,
        company,
        {"agreement_number": number, "effective_date": today, "expiry_date": expiry},
    )
    try:
        content, substitutions = substitute(template, variables)
    except SubstitutionError as exc:
        logger.error("Stored template %s has malformed content: %s", template.id, exc)
        raise ServiceError(
            DATA_INTEGRITY,
            "Agreement template content is malformed",
            {"templateId": template.id, "content": str(exc)},
        ) from exc
    missing, violations = validate(template, substitutions, variables)
    if missing or violations:
        logger.info(
            "Agreement %s for quote %s generated with %d missing variables and %d violations",
            number,
            quote.id,
            len(missing),
            len(violations),
        )

    client_label = quote.client.name if quote.client is not None else quote.client_id
    return orm_models.ServiceAgreementORM(
        id=document_id,
        template_id=template.id,
        package_type=package_type.value,
        agreement_number=number,
        title=f"{template.name} - {client_label}",
        content=content,
        substituted_variables=[json.loads(item.json()) for item in substitutions],
        missing_variables=missing,
        validation_errors=violations,
        status=AgreementStatus.GENERATED.value,
        effective_date=today,
        expiry_date=expiry,
        currency=company.currency,
        total_value=quote.total,
        **_financials(quote),
        **_generation_metadata(trigger),
    )


def _convert(
    session: Session,
    identity: Identity,
    quote: orm_models.QuoteORM,
    kind: DocumentKind,
    *,
    trigger: AutomationTrigger,
    template_id: Optional[str] = None,
    today: Optional[date] = None,
) -> ConversionOutcome:
    existing = find_existing_document(session, quote.id, kind)
    if existing is not None:
        return _existing_outcome(kind, existing, trigger)

    issue_date = today or date.today()
    document_id = generate_id(DOCUMENT_ID_PREFIXES[kind])
    try:
        with session.begin_nested():
            # The ledger row goes first so a concurrent loser fails before issuing a number.
            session.add(
                orm_models.QuoteConversionORM(
                    quote_id=quote.id,
                    document_kind=kind.value,
                    document_id=document_id,
                    automation_trigger=trigger.value,
                    created_by_user_id=identity.user_id,
                )
            )
            session.flush()

            if kind == DocumentKind.INVOICE:
                document = _build_invoice(session, quote, document_id, trigger, issue_date)
            else:
                document = _build_agreement(session, quote, document_id, trigger, issue_date, template_id)
            session.add(document)
            session.flush()
    except IntegrityError:
        logger.info("Quote %s was converted to %s concurrently; returning existing document", quote.id, kind.value)
        existing = find_existing_document(session, quote.id, kind)
        if existing is None:
            raise ServiceError(
                INTERNAL_ERROR,
                "Conversion conflicted with another write, retry the request",
                {"quoteId": quote.id, "kind": kind.value},
            )
        return _existing_outcome(kind, existing, trigger)

    if kind == DocumentKind.AGREEMENT:
        increment_usage(session, document.template_id)
        record_usage_event(
            session,
            template_id=document.template_id,
            user_id=identity.user_id,
            document_id=document.id,
            event_type=UsageEventType.GENERATION,
            outcome=UsageOutcome.SUCCESS,
            details={"quoteId": quote.id, "trigger": trigger.value},
        )

    logger.info(
        "Quote %s converted to %s %s (%s)",
        quote.id,
        kind.value,
        document.id,
        trigger.value,
    )
    return ConversionOutcome(
        kind=kind,
        success=True,
        message=f"{DOCUMENT_MODELS[kind][2].capitalize()} created from quote",
        document_id=document.id,
        document=_to_schema(kind, document),
        created=True,
        automation_ran=trigger == AutomationTrigger.STATUS_CHANGE,
    )


def _convert_manually(
    session: Session,
    identity: Identity,
    quote_id: str,
    kind: DocumentKind,
    *,
    template_id: Optional[str] = None,
    today: Optional[date] = None,
) -> ConversionOutcome:
    quote = load_quote(session, identity, quote_id, "quote.convert")
    status = normalize_quote_status(quote.status)
    if status != QuoteStatus.ACCEPTED.value:
        raise validation_failed(
            "Only accepted quotes can be converted",
            {"status": status},
        )
    try:
        return _convert(
            session,
            identity,
            quote,
            kind,
            trigger=AutomationTrigger.MANUAL_CONVERSION,
            template_id=template_id,
            today=today,
        )
    except SQLAlchemyError as exc:
        logger.exception("Converting quote %s to %s failed", quote_id, kind.value)
        raise ServiceError(INTERNAL_ERROR, "Conversion failed, retry the request", {"kind": kind.value}) from exc


def convert_quote_to_invoice(
    session: Session,
    identity: Identity,
    quote_id: str,
    *,
    today: Optional[date] = None,
) -> ConversionOutcome:
    return _convert_manually(session, identity, quote_id, DocumentKind.INVOICE, today=today)


def convert_quote_to_sla(
    session: Session,
    identity: Identity,
    quote_id: str,
    *,
    template_id: Optional[str] = None,
    today: Optional[date] = None,
) -> ConversionOutcome:
    return _convert_manually(
        session,
        identity,
        quote_id,
        DocumentKind.AGREEMENT,
        template_id=template_id,
        today=today,
    )


def enabled_automation_kinds(company: orm_models.CompanySettingsORM) -> list[DocumentKind]:
    kinds = []
    if company.auto_generate_invoice:
        kinds.append(DocumentKind.INVOICE)
    if company.auto_generate_agreement:
        kinds.append(DocumentKind.AGREEMENT)
    return kinds


def run_status_change_conversions(
    session: Session,
    identity: Identity,
    quote: orm_models.QuoteORM,
    *,
    today: Optional[date] = None,
) -> list[ConversionOutcome]:
    """Best-effort conversions after a quote became accepted.

    Each kind runs in its own savepoint; a failure is reported in its outcome
    and never undoes the quote update.
    """

    results: list[ConversionOutcome] = []
    for kind in enabled_automation_kinds(quote.company):
        try:
            with session.begin_nested():
                outcome = _convert(
                    session,
                    identity,
                    quote,
                    kind,
                    trigger=AutomationTrigger.STATUS_CHANGE,
                    today=today,
                )
        except ServiceError as exc:
            logger.warning("Automatic %s conversion of quote %s failed: %s", kind.value, quote.id, exc)
            outcome = ConversionOutcome(
                kind=kind,
                success=False,
                message=exc.message,
                automation_ran=True,
                error=exc.to_dict(),
            )
        except SQLAlchemyError:
            logger.exception("Automatic %s conversion of quote %s failed", kind.value, quote.id)
            error = ServiceError(INTERNAL_ERROR, "Conversion failed, retry the request", {"kind": kind.value})
            outcome = ConversionOutcome(
                kind=kind,
                success=False,
                message=error.message,
                automation_ran=True,
                error=error.to_dict(),
            )
        results.append(outcome)
    return results


def _load_document(session: Session, identity: Identity, kind: DocumentKind, document_id: str) -> DocumentORM:
    ensure_capability(identity, "document.read")
    model, _, entity = DOCUMENT_MODELS[kind]
    document = session.get(model, document_id)
    if document is None:
        raise not_found(entity.capitalize(), document_id)
    ensure_capability(
        identity,
        "document.read",
        Resource(kind=kind.value, id=document.id, owner_id=document.owner_id, company_id=document.company_id),
    )
    return document


def get_invoice(session: Session, identity: Identity, invoice_id: str) -> Invoice:
    return _to_schema(DocumentKind.INVOICE, _load_document(session, identity, DocumentKind.INVOICE, invoice_id))


def get_agreement(session: Session, identity: Identity, agreement_id: str) -> ServiceAgreement:
    return _to_schema(DocumentKind.AGREEMENT, _load_document(session, identity, DocumentKind.AGREEMENT, agreement_id))


def _agreement_status_filter(status: Optional[str]) -> Optional[AgreementStatus]:
    normalized = (status or "").strip().lower()
    if not normalized or normalized == "all":
        return None
    try:
        return AgreementStatus(normalized)
    except ValueError as exc:
        allowed = ", ".join(["all", *(item.value for item in AgreementStatus)])
        raise validation_failed("Unknown agreement status", {"status": f"must be one of {allowed}"}) from exc


def list_agreements(
    session: Session,
    identity: Identity,
    *,
    status: Optional[str] = None,
    client_id: Optional[str] = None,
) -> list[ServiceAgreement]:
    """Agreements the caller may read, newest first.

    ``status`` of ``None`` or ``"all"`` disables the status filter.
    """

    ensure_capability(identity, "document.read")
    status_filter = _agreement_status_filter(status)

    stmt = select(orm_models.ServiceAgreementORM).order_by(
        orm_models.ServiceAgreementORM.created_at.desc(),
        orm_models.ServiceAgreementORM.id.desc(),
    )
    if identity.company_id:
        stmt = stmt.where(orm_models.ServiceAgreementORM.company_id == identity.company_id)
    if status_filter is not None:
        stmt = stmt.where(orm_models.ServiceAgreementORM.status == status_filter.value)
    if client_id:
        stmt = stmt.where(orm_models.ServiceAgreementORM.client_id == client_id)

    visible = [
        row
        for row in session.execute(stmt).scalars()
        if check_capability(
            identity,
            "document.read",
            Resource(kind="agreement", id=row.id, owner_id=row.owner_id, company_id=row.company_id),
        )
    ]
    return [_to_schema(DocumentKind.AGREEMENT, row) for row in visible]
