from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, root_validator, validator


VARIABLE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
TEMPLATE_NAME_MAX_LENGTH = 200


def to_camel(value: str) -> str:
    head, *tail = value.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in tail)


class ApiModel(BaseModel):
    class Config:
        alias_generator = to_camel
        allow_population_by_field_name = True


class RecordModel(ApiModel):
    class Config:
        orm_mode = True


# === Enums ===================================================================


class QuoteStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"


class AgreementStatus(str, Enum):
    DRAFT = "draft"
    GENERATED = "generated"
    SIGNED = "signed"


class DocumentKind(str, Enum):
    INVOICE = "invoice"
    AGREEMENT = "agreement"
    QUOTE = "quote"


class AutomationTrigger(str, Enum):
    STATUS_CHANGE = "status_change"
    MANUAL_CONVERSION = "manual_conversion"


class VariableType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    ENUM = "enum"


class DataSource(str, Enum):
    QUOTE = "quote"
    CLIENT = "client"
    COMPANY = "company"
    USER_INPUT = "user_input"
    DEFAULT_VALUE = "default_value"


class UsageEventType(str, Enum):
    GENERATION = "generation"
    PREVIEW = "preview"


class UsageOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class PackageType(str, Enum):
    ECOM_SITE = "ecom_site"
    GENERAL_WEBSITE = "general_website"
    BUSINESS_PROCESS_SYSTEMS = "business_process_systems"
    MARKETING = "marketing"


def normalize_quote_status(value: Any) -> Any:
    raw = getattr(value, "value", value)
    if isinstance(raw, str):
        return raw.strip().lower()
    return raw


# === Quotes ==================================================================


class QuoteItemInput(ApiModel):
    description: str = ""
    quantity: Decimal = Decimal("1")
    unit_price: Decimal = Decimal("0")
    taxable: bool = True

    @validator("description", pre=True)
    def _strip_description(cls, value: Any) -> Any:  # noqa: D417
        if isinstance(value, str):
            return value.strip()
        return value

    @validator("quantity")
    def _positive_quantity(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError("quantity must be positive")
        return value

    @validator("unit_price")
    def _non_negative_price(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("unit_price must not be negative")
        return value


class QuoteItem(QuoteItemInput, RecordModel):
    id: str
    position: int
    line_total: Decimal


class QuoteCreate(ApiModel):
    client_id: str
    items: List[QuoteItemInput] = Field(default_factory=list)
    status: QuoteStatus = QuoteStatus.DRAFT
    deposit_percentage: Decimal = Decimal("0")
    date_issued: Optional[date] = None
    valid_until: Optional[date] = None
    notes: str = ""
    terms: str = ""

    _normalize_status = validator("status", pre=True, allow_reuse=True)(normalize_quote_status)

    @validator("deposit_percentage")
    def _deposit_in_range(cls, value: Decimal) -> Decimal:
        if value < 0 or value > 100:
            raise ValueError("deposit_percentage must be between 0 and 100")
        return value


class QuoteUpdate(ApiModel):
    status: Optional[QuoteStatus] = None
    items: Optional[List[QuoteItemInput]] = None
    deposit_percentage: Optional[Decimal] = None
    valid_until: Optional[date] = None
    notes: Optional[str] = None
    terms: Optional[str] = None

    _normalize_status = validator("status", pre=True, allow_reuse=True)(normalize_quote_status)

    @validator("deposit_percentage")
    def _deposit_in_range(cls, value: Optional[Decimal]) -> Optional[Decimal]:
        if value is not None and (value < 0 or value > 100):
            raise ValueError("deposit_percentage must be between 0 and 100")
        return value


class Quote(RecordModel):
    id: str
    quote_number: str
    status: QuoteStatus
    company_id: str
    owner_id: str
    client_id: str
    date_issued: date
    valid_until: Optional[date] = None
    items: List[QuoteItem] = Field(default_factory=list)
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    deposit_percentage: Decimal
    deposit_amount: Decimal
    balance_remaining: Decimal
    notes: str = ""
    terms: str = ""
    created_at: datetime
    updated_at: datetime

    _normalize_status = validator("status", pre=True, allow_reuse=True)(normalize_quote_status)


class Client(RecordModel):
    id: str
    company_id: str
    name: str
    company: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    billing_address: Optional[str] = None
    vat_number: Optional[str] = None


class CompanySettings(RecordModel):
    id: str
    company_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    currency: str
    tax_percentage: Decimal
    numbering_format_invoice: str
    numbering_format_quote: str
    numbering_format_agreement: str
    next_invoice_number: int
    next_quote_number: int
    next_agreement_number: int
    payment_terms_days: int
    agreement_term_months: int
    auto_generate_invoice: bool
    auto_generate_agreement: bool


class CompanySettingsUpdate(ApiModel):
    company_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    tax_percentage: Optional[Decimal] = Field(default=None, ge=0, le=100)
    numbering_format_invoice: Optional[str] = None
    numbering_format_quote: Optional[str] = None
    numbering_format_agreement: Optional[str] = None
    payment_terms_days: Optional[int] = Field(default=None, ge=0, le=365)
    agreement_term_months: Optional[int] = Field(default=None, ge=1, le=120)
    auto_generate_invoice: Optional[bool] = None
    auto_generate_agreement: Optional[bool] = None


# === Downstream documents ====================================================


class InvoiceItem(RecordModel):
    id: str
    position: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    taxable: bool
    line_total: Decimal


class Invoice(RecordModel):
    id: str
    invoice_number: str
    status: InvoiceStatus
    company_id: str
    owner_id: str
    client_id: str
    date_issued: date
    due_date: date
    currency: str
    items: List[InvoiceItem] = Field(default_factory=list)
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    deposit_required: bool
    deposit_percentage: Decimal
    deposit_amount: Decimal
    balance_remaining: Decimal
    notes: str = ""
    terms: str = ""
    created_from_quote_id: Optional[str] = None
    auto_generated: bool
    automation_trigger: Optional[AutomationTrigger] = None
    generated_at: Optional[datetime] = None
    created_at: datetime


class Substitution(ApiModel):
    name: str
    value: Any = None
    data_source: DataSource
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class ServiceAgreement(RecordModel):
    id: str
    agreement_number: str
    status: AgreementStatus
    company_id: str
    owner_id: str
    client_id: str
    template_id: Optional[str] = None
    package_type: Optional[PackageType] = None
    title: str
    content: str
    substituted_variables: List[Substitution] = Field(default_factory=list)
    missing_variables: List[str] = Field(default_factory=list)
    validation_errors: List[str] = Field(default_factory=list)
    effective_date: date
    expiry_date: Optional[date] = None
    currency: str
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    total_value: Decimal
    deposit_percentage: Decimal
    deposit_amount: Decimal
    balance_remaining: Decimal
    created_from_quote_id: Optional[str] = None
    auto_generated: bool
    automation_trigger: Optional[AutomationTrigger] = None
    generated_at: Optional[datetime] = None
    created_at: datetime


class ConversionOutcome(ApiModel):
    kind: DocumentKind
    success: bool
    message: str
    document_id: Optional[str] = None
    document: Optional[Union[Invoice, ServiceAgreement]] = None
    created: bool = False
    automation_ran: bool = False
    error: Optional[Dict[str, Any]] = None


class AgreementConversionRequest(ApiModel):
    template_id: Optional[str] = None


class QuoteUpdateResponse(ApiModel):
    quote: Quote
    conversion_results: List[ConversionOutcome] = Field(default_factory=list)
    automation_triggered: bool = False


# === Templates ===============================================================


class ValidationRule(ApiModel):
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None
    options: Optional[List[str]] = None

    @root_validator
    def _check_bounds(cls, values: Dict[str, Any]) -> Dict[str, Any]:  # noqa: D417
        low, high = values.get("min"), values.get("max")
        if low is not None and high is not None and low > high:
            raise ValueError("validation.min must not exceed validation.max")
        pattern = values.get("pattern")
        if pattern:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"validation.pattern is not a valid regex: {exc}") from exc
        return values


class VariableDefinition(ApiModel):
    name: str
    display_name: str = ""
    type: VariableType = VariableType.TEXT
    required: bool = False
    default_value: Any = None
    data_source: DataSource = DataSource.USER_INPUT
    description: str = ""
    validation: Optional[ValidationRule] = None

    @validator("name")
    def _valid_name(cls, value: str) -> str:
        normalized = value.strip()
        if not VARIABLE_NAME_PATTERN.match(normalized):
            raise ValueError(f"invalid variable name {value!r}")
        return normalized

    @validator("display_name", always=True)
    def _default_display_name(cls, value: str, values: Dict[str, Any]) -> str:
        if value and value.strip():
            return value.strip()
        name = values.get("name") or ""
        return name.replace("_", " ").title()


class TemplatePayload(ApiModel):
    name: str = Field(min_length=1, max_length=TEMPLATE_NAME_MAX_LENGTH)
    description: Optional[str] = None
    category: str = "standard"
    package_type: Optional[PackageType] = None
    content: str = ""
    variables: List[VariableDefinition] = Field(default_factory=list)
    is_active: bool = True
    is_default: bool = False

    @validator("name")
    def _strip_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("name must not be blank")
        return normalized

    @validator("description")
    def normalize_description(cls, value: Optional[str]) -> Optional[str]:  # noqa: D417
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @validator("variables")
    def _unique_variables(cls, value: List[VariableDefinition]) -> List[VariableDefinition]:
        seen: set[str] = set()
        for variable in value:
            if variable.name in seen:
                raise ValueError(f"duplicate variable {variable.name!r}")
            seen.add(variable.name)
        return value


class Template(TemplatePayload, RecordModel):
    id: str
    usage_count: int = 0
    parent_template_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class TemplateCloneRequest(ApiModel):
    name: str
    description: Optional[str] = None


class PreviewQuoteContext(ApiModel):
    quote_id: Optional[str] = None
    additional_context: Dict[str, Any] = Field(default_factory=dict)


class TemplatePreviewRequest(ApiModel):
    variables: Dict[str, Any] = Field(default_factory=dict)
    quote_context: Optional[PreviewQuoteContext] = None


class TemplatePreviewResponse(ApiModel):
    content: str
    substitutions: List[Substitution] = Field(default_factory=list)
    missing_variables: List[str] = Field(default_factory=list)
    validation_errors: List[str] = Field(default_factory=list)


class PackageDetectionRequest(ApiModel):
    quote_id: str
    additional_context: Dict[str, Any] = Field(default_factory=dict)


class PackageDetection(ApiModel):
    detected_type: PackageType
    confidence: float
    scores: Dict[str, float] = Field(default_factory=dict)
    reasoning: Dict[str, List[str]] = Field(default_factory=dict)
    is_valid: bool
    warnings: List[str] = Field(default_factory=list)
    suggestions: List[PackageType] = Field(default_factory=list)


# === Usage ===================================================================


class UsageEventCreate(ApiModel):
    template_id: str
    document_id: Optional[str] = None
    event_type: UsageEventType = UsageEventType.GENERATION
    outcome: UsageOutcome = UsageOutcome.SUCCESS
    details: Dict[str, Any] = Field(default_factory=dict)


class UsageEvent(RecordModel):
    id: str
    template_id: Optional[str] = None
    user_id: Optional[str] = None
    document_id: Optional[str] = None
    event_type: UsageEventType
    outcome: UsageOutcome
    created_at: datetime


class DailyCount(ApiModel):
    day: date
    count: int


class TemplateUsageCount(ApiModel):
    template_id: str
    name: Optional[str] = None
    count: int


class UsageSummary(ApiModel):
    days: int
    total_events: int
    generations: int
    previews: int
    successes: int
    failures: int
    success_rate: float
    generations_per_day: float
    daily: List[DailyCount] = Field(default_factory=list)


class TemplateUsageStats(UsageSummary):
    template_id: str
    unique_users: int


class UserUsageStats(UsageSummary):
    user_id: str
    unique_templates: int
    most_used_template_id: Optional[str] = None
    templates: List[TemplateUsageCount] = Field(default_factory=list)


class UsageAnalytics(UsageSummary):
    unique_users: int
    unique_templates: int
    active_templates: int
    top_templates: List[TemplateUsageCount] = Field(default_factory=list)
