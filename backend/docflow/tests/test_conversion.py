from __future__ import annotations

import threading
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from docflow import orm_models
from docflow.database import Base, make_engine, make_session_factory, session_scope
from docflow.errors import FORBIDDEN, INTERNAL_ERROR, NOT_FOUND, VALIDATION_FAILED, ServiceError
from docflow.schemas import (
    AutomationTrigger,
    DocumentKind,
    PackageType,
    QuoteCreate,
    QuoteItemInput,
    QuoteUpdate,
    TemplatePayload,
)
from docflow.services import conversion
from docflow.services.auth import create_user, identity_for
from docflow.services.conversion import (
    add_months,
    convert_quote_to_invoice,
    convert_quote_to_sla,
    get_agreement,
    get_invoice,
    list_agreements,
)
from docflow.services.quotes import create_quote, update_quote
from docflow.services.templates import create_template

TODAY = date(2024, 3, 15)


def _count(session, model) -> int:
    return session.execute(select(func.count()).select_from(model)).scalar_one()


def test_accepting_a_quote_generates_invoice_and_agreement(session, owner_identity, make_quote, default_template):
    quote = make_quote(status="sent")

    response = update_quote(session, owner_identity, quote.id, QuoteUpdate(status="Accepted"), today=TODAY)

    assert response.quote.status == "accepted"
    assert response.automation_triggered is True
    assert [outcome.kind for outcome in response.conversion_results] == [DocumentKind.INVOICE, DocumentKind.AGREEMENT]
    assert all(outcome.success and outcome.created and outcome.automation_ran for outcome in response.conversion_results)

    invoice = response.conversion_results[0].document
    assert invoice.invoice_number == "INV-2024-0001"
    assert invoice.auto_generated is True
    assert invoice.automation_trigger == AutomationTrigger.STATUS_CHANGE
    assert invoice.created_from_quote_id == quote.id
    assert (invoice.subtotal, invoice.tax_amount, invoice.total) == (quote.subtotal, quote.tax_amount, quote.total)
    assert (invoice.deposit_amount, invoice.balance_remaining) == (quote.deposit_amount, quote.balance_remaining)
    assert invoice.deposit_required is True
    assert invoice.due_date == TODAY + timedelta(days=30)
    assert [item.description for item in invoice.items] == ["Discovery workshop", "Hosting"]

    agreement = response.conversion_results[1].document
    assert agreement.agreement_number == "SLA-2024-0001"
    assert agreement.status == "generated"
    assert agreement.total_value == quote.total
    assert agreement.expiry_date == date(2025, 3, 15)


def test_conversion_only_runs_on_transition_into_accepted(session, owner_identity, make_quote, default_template):
    quote = make_quote(status="accepted")

    response = update_quote(session, owner_identity, quote.id, QuoteUpdate(notes="Revised scope"), today=TODAY)

    assert response.automation_triggered is False
    assert response.conversion_results == []
    assert _count(session, orm_models.InvoiceORM) == 0


def test_disabled_automation_kind_is_skipped(session, company, owner_identity, make_quote, default_template):
    company.auto_generate_agreement = False
    quote = make_quote(status="draft")

    response = update_quote(session, owner_identity, quote.id, QuoteUpdate(status="accepted"), today=TODAY)

    assert [outcome.kind for outcome in response.conversion_results] == [DocumentKind.INVOICE]
    assert _count(session, orm_models.ServiceAgreementORM) == 0


def test_invoice_conversion_is_idempotent(session, owner_identity, make_quote):
    quote = make_quote(status="accepted")

    outcomes = [convert_quote_to_invoice(session, owner_identity, quote.id, today=TODAY) for _ in range(3)]

    assert {outcome.document_id for outcome in outcomes} == {outcomes[0].document_id}
    assert [outcome.created for outcome in outcomes] == [True, False, False]
    assert outcomes[0].document.auto_generated is False
    assert outcomes[0].document.automation_trigger == AutomationTrigger.MANUAL_CONVERSION
    assert _count(session, orm_models.InvoiceORM) == 1
    assert _count(session, orm_models.QuoteConversionORM) == 1


def test_manual_sla_conversion_twice_returns_same_agreement(session, owner_identity, make_quote, default_template):
    quote = make_quote(status="accepted")

    first = convert_quote_to_sla(session, owner_identity, quote.id, today=TODAY)
    second = convert_quote_to_sla(session, owner_identity, quote.id, today=TODAY)

    assert first.document_id == second.document_id
    assert first.created is True and second.created is False
    assert _count(session, orm_models.ServiceAgreementORM) == 1

    agreement = first.document
    assert "Deposit: 40% (ZAR 1780)" in agreement.content
    assert "between Acme Studio" in agreement.content
    assert "Jane Doe" in agreement.title
    assert agreement.missing_variables == []
    assert agreement.validation_errors == []
    sources = {item.name: item.data_source for item in agreement.substituted_variables}
    assert sources["deposit_percentage"] == "quote"
    assert sources["company_name"] == "company"
    assert sources["agreement_number"] == "user_input"
    assert sources["response_time_hours"] == "default_value"

    session.refresh(default_template)
    assert default_template.usage_count == 1
    events = session.execute(select(orm_models.UsageEventORM)).scalars().all()
    assert [(event.event_type, event.document_id) for event in events] == [("generation", first.document_id)]


def test_invoice_and_agreement_are_independent_per_kind(session, owner_identity, make_quote, default_template):
    quote = make_quote(status="accepted")

    invoice = convert_quote_to_invoice(session, owner_identity, quote.id, today=TODAY)
    agreement = convert_quote_to_sla(session, owner_identity, quote.id, today=TODAY)

    assert invoice.created and agreement.created
    assert _count(session, orm_models.QuoteConversionORM) == 2


def test_losing_a_concurrent_conversion_returns_the_winner(session, company, owner_identity, make_quote, monkeypatch):
    quote = make_quote(status="accepted")
    winner = convert_quote_to_invoice(session, owner_identity, quote.id, today=TODAY)

    real_lookup = conversion.find_existing_document
    calls = []

    def stale_lookup(session_, quote_id, kind):
        calls.append(quote_id)
        if len(calls) == 1:
            return None
        return real_lookup(session_, quote_id, kind)

    monkeypatch.setattr(conversion, "find_existing_document", stale_lookup)

    loser = convert_quote_to_invoice(session, owner_identity, quote.id, today=TODAY)

    assert len(calls) == 2
    assert loser.success is True
    assert loser.created is False
    assert loser.document_id == winner.document_id
    assert _count(session, orm_models.InvoiceORM) == 1
    session.refresh(company)
    assert company.next_invoice_number == 2


def test_invoice_numbers_increase_without_gaps(session, owner_identity, make_quote):
    numbers = []
    for _ in range(4):
        quote = make_quote(status="accepted")
        numbers.append(convert_quote_to_invoice(session, owner_identity, quote.id, today=TODAY).document.invoice_number)

    assert numbers == ["INV-2024-0001", "INV-2024-0002", "INV-2024-0003", "INV-2024-0004"]


def test_counter_is_reconciled_with_hand_edited_numbers(session, company, owner_identity, make_quote):
    first = convert_quote_to_invoice(session, owner_identity, make_quote(status="accepted").id, today=TODAY)
    session.get(orm_models.InvoiceORM, first.document_id).invoice_number = "INV-2024-0041"
    session.execute(update(orm_models.CompanySettingsORM).values(next_invoice_number=1))
    session.flush()

    second = convert_quote_to_invoice(session, owner_identity, make_quote(status="accepted").id, today=TODAY)

    assert second.document.invoice_number == "INV-2024-0042"
    session.refresh(company)
    assert company.next_invoice_number == 43


def test_malformed_stored_number_aborts_without_consuming_sequence(session, company, owner_identity, make_quote):
    first = convert_quote_to_invoice(session, owner_identity, make_quote(status="accepted").id, today=TODAY)
    session.get(orm_models.InvoiceORM, first.document_id).invoice_number = "DRAFT"
    session.flush()
    quote = make_quote(status="accepted")

    with pytest.raises(ServiceError) as excinfo:
        convert_quote_to_invoice(session, owner_identity, quote.id, today=TODAY)

    assert excinfo.value.code == INTERNAL_ERROR
    assert excinfo.value.retriable is True
    assert excinfo.value.details["number"] == "DRAFT"
    session.refresh(company)
    assert company.next_invoice_number == 2
    assert _count(session, orm_models.InvoiceORM) == 1
    assert _count(session, orm_models.QuoteConversionORM) == 1


def test_failed_automatic_conversion_keeps_the_quote_update(
    session, company, owner_identity, make_quote, default_template
):
    first = convert_quote_to_invoice(session, owner_identity, make_quote(status="accepted").id, today=TODAY)
    session.get(orm_models.InvoiceORM, first.document_id).invoice_number = "DRAFT"
    quote = make_quote(status="sent")
    session.commit()

    response = update_quote(session, owner_identity, quote.id, QuoteUpdate(status="accepted"), today=TODAY)
    session.commit()

    invoice_outcome, agreement_outcome = response.conversion_results
    assert invoice_outcome.success is False
    assert invoice_outcome.error["code"] == INTERNAL_ERROR
    assert agreement_outcome.success is True

    session.expire_all()
    assert session.get(orm_models.QuoteORM, quote.id).status == "accepted"
    assert _count(session, orm_models.InvoiceORM) == 1
    ledger_kinds = session.execute(
        select(orm_models.QuoteConversionORM.document_kind).where(orm_models.QuoteConversionORM.quote_id == quote.id)
    ).scalars().all()
    assert ledger_kinds == ["agreement"]


def test_rolled_back_conversion_releases_its_number(session, owner_identity, make_quote):
    quote = make_quote(status="accepted")
    session.commit()

    convert_quote_to_invoice(session, owner_identity, quote.id, today=TODAY)
    session.rollback()

    outcome = convert_quote_to_invoice(session, owner_identity, quote.id, today=TODAY)
    assert outcome.created is True
    assert outcome.document.invoice_number == "INV-2024-0001"


def test_manual_conversion_requires_accepted_quote(session, owner_identity, make_quote):
    quote = make_quote(status="sent")

    with pytest.raises(ServiceError) as excinfo:
        convert_quote_to_invoice(session, owner_identity, quote.id, today=TODAY)

    assert excinfo.value.code == VALIDATION_FAILED
    assert _count(session, orm_models.InvoiceORM) == 0


def test_conversion_checks_ownership_and_capability(
    session, owner_identity, colleague_identity, admin_identity, client_identity, make_quote
):
    quote = make_quote(status="accepted")

    for identity in (colleague_identity, client_identity):
        with pytest.raises(ServiceError) as excinfo:
            convert_quote_to_invoice(session, identity, quote.id, today=TODAY)
        assert excinfo.value.code == FORBIDDEN
    assert _count(session, orm_models.InvoiceORM) == 0

    outcome = convert_quote_to_invoice(session, admin_identity, quote.id, today=TODAY)
    assert outcome.created is True


def test_missing_quote_or_template_is_not_found(session, company, owner_identity, make_quote):
    with pytest.raises(ServiceError) as excinfo:
        convert_quote_to_invoice(session, owner_identity, "quote-missing", today=TODAY)
    assert excinfo.value.code == NOT_FOUND

    quote = make_quote(status="accepted")
    with pytest.raises(ServiceError) as excinfo:
        convert_quote_to_sla(session, owner_identity, quote.id, template_id="tpl-missing", today=TODAY)
    assert excinfo.value.code == NOT_FOUND
    session.refresh(company)
    assert company.next_agreement_number == 1
    assert _count(session, orm_models.QuoteConversionORM) == 0


def test_documents_can_be_read_back(session, owner_identity, client_identity, make_quote, default_template):
    quote = make_quote(status="accepted")
    invoice = convert_quote_to_invoice(session, owner_identity, quote.id, today=TODAY)
    agreement = convert_quote_to_sla(session, owner_identity, quote.id, today=TODAY)

    assert get_invoice(session, owner_identity, invoice.document_id).total == Decimal("4450.00")
    assert get_agreement(session, owner_identity, agreement.document_id).template_id == default_template.id

    with pytest.raises(ServiceError) as excinfo:
        get_invoice(session, client_identity, invoice.document_id)
    assert excinfo.value.code == FORBIDDEN


def test_add_months_clamps_to_month_end():
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2024, 11, 15), 14) == date(2026, 1, 15)


def test_accepting_after_tax_change_invoices_the_quoted_total(session, company, owner_identity, make_quote):
    company.auto_generate_agreement = False
    quote = make_quote(status="sent")
    company.tax_percentage = Decimal("30")
    session.flush()

    response = update_quote(session, owner_identity, quote.id, QuoteUpdate(status="accepted"), today=TODAY)

    assert response.quote.total == Decimal("4450.00")
    assert response.conversion_results[0].document.total == Decimal("4450.00")


def test_concurrent_sessions_converge_on_one_invoice(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'docflow.db'}")
    Base.metadata.create_all(bind=engine)
    factory = make_session_factory(engine)

    with session_scope(factory) as setup:
        company = orm_models.CompanySettingsORM(company_name="Acme Studio", currency="ZAR", tax_percentage=Decimal("15"))
        setup.add(company)
        setup.flush()
        company_id = company.id
        identity = identity_for(
            create_user(setup, email="owner@acme.test", role="internal_user", company_id=company_id)
        )
        client = orm_models.ClientORM(company_id=company_id, name="Jane Doe")
        setup.add(client)
        setup.flush()
        quote_id = create_quote(
            setup,
            identity,
            QuoteCreate(
                client_id=client.id,
                status="accepted",
                items=[QuoteItemInput(description="Audit", unit_price=Decimal("200"))],
            ),
            today=TODAY,
        ).id

    workers = 4
    barrier = threading.Barrier(workers)
    outcomes, errors = [], []

    def convert():
        barrier.wait()
        try:
            with session_scope(factory) as worker_session:
                outcomes.append(convert_quote_to_invoice(worker_session, identity, quote_id, today=TODAY))
        except ServiceError as exc:
            errors.append(exc)

    threads = [threading.Thread(target=convert) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    try:
        assert errors == []
        assert len({outcome.document_id for outcome in outcomes}) == 1
        assert sorted(outcome.created for outcome in outcomes) == [False, False, False, True]
        with session_scope(factory) as check:
            assert _count(check, orm_models.InvoiceORM) == 1
            assert check.get(orm_models.CompanySettingsORM, company_id).next_invoice_number == 2
    finally:
        engine.dispose()


def _store_template(session, identity, package_type):
    return create_template(
        session,
        identity,
        TemplatePayload(
            name=f"{package_type.value} SLA",
            content="Agreement {{agreement_number}} for {{client_name}}",
            variables=[
                {"name": "agreement_number", "required": True, "data_source": "user_input"},
                {"name": "client_name", "required": True, "data_source": "client"},
            ],
            package_type=package_type,
        ),
    )


def test_agreement_uses_template_for_detected_package(session, owner_identity, make_quote, default_template):
    store_template = _store_template(session, owner_identity, PackageType.ECOM_SITE)
    quote = make_quote(
        status="accepted",
        items=[
            QuoteItemInput(description="Online store with payment gateway", quantity=Decimal("1"), unit_price=Decimal("9000")),
            QuoteItemInput(description="Shopping cart", quantity=Decimal("1"), unit_price=Decimal("3000")),
        ],
    )

    outcome = convert_quote_to_sla(session, owner_identity, quote.id, today=TODAY)

    assert outcome.document.template_id == store_template.id
    assert outcome.document.package_type == PackageType.ECOM_SITE
    assert outcome.document.content == "Agreement SLA-2024-0001 for Jane Doe"


def test_agreement_falls_back_to_default_without_package_template(
    session, owner_identity, make_quote, default_template
):
    _store_template(session, owner_identity, PackageType.MARKETING)
    quote = make_quote(status="accepted")

    outcome = convert_quote_to_sla(session, owner_identity, quote.id, today=TODAY)

    assert outcome.document.template_id == default_template.id
    assert outcome.document.package_type == PackageType.GENERAL_WEBSITE


def test_explicit_template_overrides_detected_package(session, owner_identity, make_quote, default_template):
    marketing = _store_template(session, owner_identity, PackageType.MARKETING)
    quote = make_quote(status="accepted")

    outcome = convert_quote_to_sla(session, owner_identity, quote.id, template_id=marketing.id, today=TODAY)

    assert outcome.document.template_id == marketing.id


def _agreement_for(session, identity, make_quote, created_at):
    quote = make_quote(status="accepted", identity=identity)
    outcome = convert_quote_to_sla(session, identity, quote.id, today=TODAY)
    session.get(orm_models.ServiceAgreementORM, outcome.document_id).created_at = created_at
    session.flush()
    return outcome.document_id


def test_list_agreements_scopes_orders_and_filters(
    session, client, owner_identity, colleague_identity, admin_identity, make_quote, default_template
):
    older = _agreement_for(session, owner_identity, make_quote, datetime(2024, 3, 1, 9, 0))
    newer = _agreement_for(session, owner_identity, make_quote, datetime(2024, 3, 2, 9, 0))
    theirs = _agreement_for(session, colleague_identity, make_quote, datetime(2024, 3, 3, 9, 0))
    session.get(orm_models.ServiceAgreementORM, older).status = "signed"
    session.flush()

    assert [item.id for item in list_agreements(session, owner_identity)] == [newer, older]
    assert [item.id for item in list_agreements(session, admin_identity, status="All")] == [theirs, newer, older]
    assert [item.id for item in list_agreements(session, admin_identity, status=" Signed ")] == [older]
    assert [item.id for item in list_agreements(session, owner_identity, status="generated")] == [newer]
    assert [item.id for item in list_agreements(session, admin_identity, client_id=client.id)] == [theirs, newer, older]
    assert list_agreements(session, admin_identity, client_id="client-other") == []


def test_list_agreements_rejects_unknown_status(session, owner_identity):
    with pytest.raises(ServiceError) as excinfo:
        list_agreements(session, owner_identity, status="archived")

    assert excinfo.value.code == VALIDATION_FAILED
    assert "all" in excinfo.value.details["status"]
