from __future__ import annotations

from datetime import date

import pytest
from sqlalchemy import Update, update

from docflow import orm_models
from docflow.config import settings
from docflow.errors import INTERNAL_ERROR, NOT_FOUND, ServiceError
from docflow.schemas import DocumentKind
from docflow.services.sequences import reserve_sequence

TODAY = date(2024, 3, 15)


def _bump_counter_before_each_update(session, monkeypatch, company_id, *, times):
    real_execute = session.execute
    bumps = []

    def racing_execute(statement, *args, **kwargs):
        if isinstance(statement, Update) and len(bumps) < times:
            bumps.append(statement)
            real_execute(
                update(orm_models.CompanySettingsORM)
                .where(orm_models.CompanySettingsORM.id == company_id)
                .values(next_invoice_number=orm_models.CompanySettingsORM.next_invoice_number + 5)
            )
        return real_execute(statement, *args, **kwargs)

    monkeypatch.setattr(session, "execute", racing_execute)
    return bumps


def _counter(session, company) -> int:
    session.expire(company)
    return company.next_invoice_number


def test_reserve_sequence_issues_consecutive_numbers(session, company):
    first = reserve_sequence(session, company.id, DocumentKind.INVOICE, today=TODAY)
    second = reserve_sequence(session, company.id, DocumentKind.INVOICE, today=TODAY)

    assert first == ("INV-2024-0001", 1)
    assert second == ("INV-2024-0002", 2)
    assert _counter(session, company) == 3


def test_counter_moved_by_another_writer_is_reread(session, company, monkeypatch):
    reserve_sequence(session, company.id, DocumentKind.INVOICE, today=TODAY)
    bumps = _bump_counter_before_each_update(session, monkeypatch, company.id, times=1)

    number, sequence = reserve_sequence(session, company.id, DocumentKind.INVOICE, today=TODAY)

    assert len(bumps) == 1
    assert (number, sequence) == ("INV-2024-0007", 7)
    assert _counter(session, company) == 8


def test_retries_are_bounded(session, company, monkeypatch):
    monkeypatch.setattr(settings, "sequence_max_retries", 3)
    bumps = _bump_counter_before_each_update(session, monkeypatch, company.id, times=3)

    with pytest.raises(ServiceError) as excinfo:
        reserve_sequence(session, company.id, DocumentKind.INVOICE, today=TODAY)

    assert excinfo.value.code == INTERNAL_ERROR
    assert excinfo.value.retriable is True
    assert len(bumps) == 3
    assert _counter(session, company) == 16


def test_unusable_stored_format_is_internal_error(session, company):
    company.numbering_format_invoice = "INV-{SEQ}-{YYYY}"
    session.flush()

    with pytest.raises(ServiceError) as excinfo:
        reserve_sequence(session, company.id, DocumentKind.INVOICE, today=TODAY)

    assert excinfo.value.code == INTERNAL_ERROR
    assert excinfo.value.details == {"kind": "invoice", "format": "INV-{SEQ}-{YYYY}"}
    assert _counter(session, company) == 1


def test_unknown_company_is_not_found(session):
    with pytest.raises(ServiceError) as excinfo:
        reserve_sequence(session, "company-missing", DocumentKind.QUOTE, today=TODAY)
    assert excinfo.value.code == NOT_FOUND
