from __future__ import annotations

import uuid
from datetime import datetime

from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base
from .numbering import DEFAULT_AGREEMENT_FORMAT, DEFAULT_INVOICE_FORMAT, DEFAULT_QUOTE_FORMAT


def generate_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


class UserRole(str, PyEnum):
    INTERNAL_ADMIN = "internal_admin"
    INTERNAL_USER = "internal_user"
    CLIENT_ADMIN = "client_admin"
    CLIENT_USER = "client_user"


MONEY = Numeric(12, 2)
PERCENT = Numeric(5, 2)


class CompanySettingsORM(Base):
    __tablename__ = "company_settings"

    id = Column(String, primary_key=True, default=lambda: generate_id("company"))
    company_name = Column(String, nullable=False, default="")
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    address = Column(String, nullable=True)
    currency = Column(String, nullable=False, default="ZAR")
    tax_percentage = Column(PERCENT, nullable=False, default=15)
    numbering_format_invoice = Column(String, nullable=False, default=DEFAULT_INVOICE_FORMAT)
    numbering_format_quote = Column(String, nullable=False, default=DEFAULT_QUOTE_FORMAT)
    numbering_format_agreement = Column(String, nullable=False, default=DEFAULT_AGREEMENT_FORMAT)
    next_invoice_number = Column(Integer, nullable=False, default=1)
    next_quote_number = Column(Integer, nullable=False, default=1)
    next_agreement_number = Column(Integer, nullable=False, default=1)
    payment_terms_days = Column(Integer, nullable=False, default=30)
    agreement_term_months = Column(Integer, nullable=False, default=12)
    auto_generate_invoice = Column(Boolean, nullable=False, default=True)
    auto_generate_agreement = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class UserORM(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: generate_id("user"))
    email = Column(String, nullable=False, unique=True, index=True)
    full_name = Column(String, nullable=False, default="")
    role = Column(String, nullable=True)
    company_id = Column(String, ForeignKey("company_settings.id", ondelete="SET NULL"), nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    company = relationship("CompanySettingsORM")


class ClientORM(Base):
    __tablename__ = "clients"

    id = Column(String, primary_key=True, default=lambda: generate_id("client"))
    company_id = Column(
        String,
        ForeignKey("company_settings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String, nullable=False, default="")
    company = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    billing_address = Column(String, nullable=True)
    vat_number = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class QuoteORM(Base):
    __tablename__ = "quotes"

    id = Column(String, primary_key=True, default=lambda: generate_id("quote"))
    company_id = Column(
        String,
        ForeignKey("company_settings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    owner_id = Column(String, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    client_id = Column(String, ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False)
    quote_number = Column(String, nullable=False)
    status = Column(String, nullable=False, default="draft")
    date_issued = Column(Date, nullable=False)
    valid_until = Column(Date, nullable=True)
    subtotal = Column(MONEY, nullable=False, default=0)
    tax_amount = Column(MONEY, nullable=False, default=0)
    total = Column(MONEY, nullable=False, default=0)
    deposit_percentage = Column(PERCENT, nullable=False, default=0)
    deposit_amount = Column(MONEY, nullable=False, default=0)
    balance_remaining = Column(MONEY, nullable=False, default=0)
    notes = Column(Text, nullable=False, default="")
    terms = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    client = relationship("ClientORM")
    owner = relationship("UserORM")
    company = relationship("CompanySettingsORM")
    items = relationship(
        "QuoteItemORM",
        back_populates="quote",
        cascade="all, delete-orphan",
        order_by="QuoteItemORM.position",
    )

    __table_args__ = (
        UniqueConstraint("company_id", "quote_number", name="uq_quote_company_number"),
    )


class QuoteItemORM(Base):
    __tablename__ = "quote_items"

    id = Column(String, primary_key=True, default=lambda: generate_id("qitem"))
    quote_id = Column(String, ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    description = Column(String, nullable=False, default="")
    quantity = Column(MONEY, nullable=False, default=1)
    unit_price = Column(MONEY, nullable=False, default=0)
    taxable = Column(Boolean, nullable=False, default=True)
    line_total = Column(MONEY, nullable=False, default=0)

    quote = relationship("QuoteORM", back_populates="items")


class InvoiceORM(Base):
    __tablename__ = "invoices"

    id = Column(String, primary_key=True, default=lambda: generate_id("inv"))
    company_id = Column(
        String,
        ForeignKey("company_settings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    owner_id = Column(String, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    client_id = Column(String, ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False)
    invoice_number = Column(String, nullable=False)
    status = Column(String, nullable=False, default="draft")
    date_issued = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False)
    currency = Column(String, nullable=False, default="ZAR")
    subtotal = Column(MONEY, nullable=False, default=0)
    tax_amount = Column(MONEY, nullable=False, default=0)
    total = Column(MONEY, nullable=False, default=0)
    deposit_required = Column(Boolean, nullable=False, default=False)
    deposit_percentage = Column(PERCENT, nullable=False, default=0)
    deposit_amount = Column(MONEY, nullable=False, default=0)
    balance_remaining = Column(MONEY, nullable=False, default=0)
    notes = Column(Text, nullable=False, default="")
    terms = Column(Text, nullable=False, default="")
    created_from_quote_id = Column(
        String,
        ForeignKey("quotes.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    auto_generated = Column(Boolean, nullable=False, default=False)
    automation_trigger = Column(String, nullable=True)
    generated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    items = relationship(
        "InvoiceItemORM",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItemORM.position",
    )

    __table_args__ = (
        UniqueConstraint("company_id", "invoice_number", name="uq_invoice_company_number"),
    )


class InvoiceItemORM(Base):
    __tablename__ = "invoice_items"

    id = Column(String, primary_key=True, default=lambda: generate_id("iitem"))
    invoice_id = Column(String, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    description = Column(String, nullable=False, default="")
    quantity = Column(MONEY, nullable=False, default=1)
    unit_price = Column(MONEY, nullable=False, default=0)
    taxable = Column(Boolean, nullable=False, default=True)
    line_total = Column(MONEY, nullable=False, default=0)

    invoice = relationship("InvoiceORM", back_populates="items")


class ServiceAgreementORM(Base):
    __tablename__ = "service_agreements"

    id = Column(String, primary_key=True, default=lambda: generate_id("sla"))
    company_id = Column(
        String,
        ForeignKey("company_settings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    owner_id = Column(String, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    client_id = Column(String, ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False)
    template_id = Column(String, ForeignKey("sla_templates.id", ondelete="SET NULL"), nullable=True)
    package_type = Column(String, nullable=True)
    agreement_number = Column(String, nullable=False)
    title = Column(String, nullable=False, default="")
    content = Column(Text, nullable=False, default="")
    substituted_variables = Column(JSON, nullable=False, default=list)
    missing_variables = Column(JSON, nullable=False, default=list)
    validation_errors = Column(JSON, nullable=False, default=list)
    status = Column(String, nullable=False, default="draft")
    effective_date = Column(Date, nullable=False)
    expiry_date = Column(Date, nullable=True)
    currency = Column(String, nullable=False, default="ZAR")
    subtotal = Column(MONEY, nullable=False, default=0)
    tax_amount = Column(MONEY, nullable=False, default=0)
    total = Column(MONEY, nullable=False, default=0)
    total_value = Column(MONEY, nullable=False, default=0)
    deposit_percentage = Column(PERCENT, nullable=False, default=0)
    deposit_amount = Column(MONEY, nullable=False, default=0)
    balance_remaining = Column(MONEY, nullable=False, default=0)
    created_from_quote_id = Column(
        String,
        ForeignKey("quotes.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    auto_generated = Column(Boolean, nullable=False, default=False)
    automation_trigger = Column(String, nullable=True)
    generated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    template = relationship("TemplateORM")

    __table_args__ = (
        UniqueConstraint("company_id", "agreement_number", name="uq_agreement_company_number"),
    )


class QuoteConversionORM(Base):
    __tablename__ = "quote_conversions"

    id = Column(String, primary_key=True, default=lambda: generate_id("conv"))
    quote_id = Column(String, ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False)
    document_kind = Column(String, nullable=False)
    document_id = Column(String, nullable=False)
    automation_trigger = Column(String, nullable=False)
    created_by_user_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("quote_id", "document_kind", name="uq_quote_conversion_kind"),
    )


class TemplateORM(Base):
    __tablename__ = "sla_templates"

    id = Column(String, primary_key=True, default=lambda: generate_id("tpl"))
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=False, default="standard")
    package_type = Column(String, nullable=True, index=True)
    content = Column(Text, nullable=False, default="")
    variables = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    is_default = Column(Boolean, nullable=False, default=False)
    usage_count = Column(Integer, nullable=False, default=0)
    parent_template_id = Column(String, nullable=True)
    created_by_user_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class UsageEventORM(Base):
    __tablename__ = "sla_usage_events"

    id = Column(String, primary_key=True, default=lambda: generate_id("usage"))
    template_id = Column(String, nullable=True, index=True)
    user_id = Column(String, nullable=True, index=True)
    document_id = Column(String, nullable=True)
    event_type = Column(String, nullable=False, default="generation")
    outcome = Column(String, nullable=False, default="success")
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
