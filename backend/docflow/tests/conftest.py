from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import date  # noqa: E402
from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402

from docflow import orm_models
from docflow.database import Base, make_engine, make_session_factory
from docflow.schemas import QuoteCreate, QuoteItemInput
from docflow.services.auth import create_user, identity_for
from docflow.services.quotes import create_quote
from docflow.services.templates import ensure_default_templates

TODAY = date(2024, 3, 15)


@pytest.fixture()
def session_factory():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture()
def session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture()
def company(session):
    company = orm_models.CompanySettingsORM(
        company_name="Acme Studio",
        email="hello@acme.test",
        currency="ZAR",
        tax_percentage=Decimal("15"),
    )
    session.add(company)
    session.flush()
    return company


@pytest.fixture()
def owner(session, company):
    return create_user(session, email="owner@acme.test", full_name="Olga Owner", role="internal_user", company_id=company.id)


@pytest.fixture()
def owner_identity(owner):
    return identity_for(owner)


@pytest.fixture()
def admin_identity(session, company):
    admin = create_user(session, email="admin@acme.test", role="internal_admin", company_id=company.id)
    return identity_for(admin)


@pytest.fixture()
def colleague_identity(session, company):
    colleague = create_user(session, email="colleague@acme.test", role="internal_user", company_id=company.id)
    return identity_for(colleague)


@pytest.fixture()
def client_identity(session, company):
    viewer = create_user(session, email="viewer@client.test", role="client_user", company_id=company.id)
    return identity_for(viewer)


@pytest.fixture()
def client(session, company):
    client = orm_models.ClientORM(
        company_id=company.id,
        name="Jane Doe",
        company="Doe Holdings",
        email="jane@doe.test",
    )
    session.add(client)
    session.flush()
    return client


@pytest.fixture()
def default_template(session):
    return ensure_default_templates(session)


@pytest.fixture()
def make_quote(session, owner_identity, client):
    def factory(*, status: str = "sent", deposit: str = "40", identity=None, items=None):
        payload = QuoteCreate(
            client_id=client.id,
            status=status,
            deposit_percentage=Decimal(deposit),
            items=items
            or [
                QuoteItemInput(description="Discovery workshop", quantity=Decimal("2"), unit_price=Decimal("1500")),
                QuoteItemInput(description="Hosting", quantity=Decimal("1"), unit_price=Decimal("1000"), taxable=False),
            ],
            notes="Website rebuild",
        )
        return create_quote(session, identity or owner_identity, payload, today=TODAY)

    return factory
