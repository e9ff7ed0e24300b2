from __future__ import annotations

import json
import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .. import orm_models
from ..errors import not_found, validation_failed
from ..packages import analyze_package_type
from ..permissions import Identity, ensure_capability
from ..schemas import (
    TEMPLATE_NAME_MAX_LENGTH,
    PackageDetection,
    PackageDetectionRequest,
    PackageType,
    Template,
    TemplatePayload,
    TemplatePreviewRequest,
    TemplatePreviewResponse,
    UsageEventType,
    UsageOutcome,
)
from ..variables import SubstitutionError, extract_variables, parse_placeholders, substitute, validate
from .records import decode_record, load_quote
from .usage import record_usage_event

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_NAME = "Standard Service Level Agreement"

DEFAULT_TEMPLATE_CONTENT = """SERVICE LEVEL AGREEMENT {{agreement_number}}

This agreement is entered into on {{effective_date}} between {{company_name}} ("the Provider") and {{client_name}} ("the Client").

1. Scope
The Provider delivers the services described in quote {{quote_number}}.
{{project_description}}

2. Term
The agreement is effective from {{effective_date}} until {{expiry_date}}.

3. Fees
Total value: {{currency}} {{total}}
Deposit: {{deposit_percentage}}% ({{currency}} {{deposit_amount}}), payable before work starts.
Balance remaining: {{currency}} {{balance_remaining}}

4. Service levels
Support hours: {{support_hours}}
Response time: {{response_time_hours}} hours

Signed for {{company_name}}: ____________________
Signed for {{client_name}}: ____________________
"""

DEFAULT_TEMPLATE_VARIABLES = [
    {"name": "agreement_number", "type": "text", "required": True, "data_source": "user_input"},
    {"name": "effective_date", "type": "date", "required": True, "data_source": "user_input"},
    {"name": "expiry_date", "type": "date", "data_source": "user_input"},
    {"name": "company_name", "type": "text", "required": True, "data_source": "company"},
    {"name": "client_name", "type": "text", "required": True, "data_source": "client"},
    {"name": "quote_number", "type": "text", "data_source": "quote"},
    {"name": "project_description", "type": "text", "default_value": "", "data_source": "quote"},
    {"name": "currency", "type": "text", "default_value": "ZAR", "data_source": "company"},
    {"name": "total", "type": "number", "required": True, "data_source": "quote", "validation": {"min": 0}},
    {
        "name": "deposit_percentage",
        "type": "number",
        "data_source": "quote",
        "default_value": 0,
        "validation": {"min": 0, "max": 100},
    },
    {"name": "deposit_amount", "type": "number", "data_source": "quote", "default_value": 0},
    {"name": "balance_remaining", "type": "number", "data_source": "quote"},
    {
        "name": "support_hours",
        "type": "text",
        "default_value": "Monday to Friday, 08:00 to 17:00",
        "data_source": "default_value",
    },
    {
        "name": "response_time_hours",
        "type": "number",
        "default_value": 24,
        "data_source": "default_value",
        "validation": {"min": 1, "max": 168},
    },
]


def _template_to_schema(model: orm_models.TemplateORM) -> Template:
    return decode_record(Template, model, entity="template")


def _get_template_row(session: Session, template_id: str) -> orm_models.TemplateORM:
    template = session.get(orm_models.TemplateORM, template_id)
    if template is None:
        raise not_found("Template", template_id)
    return template


def _check_content(payload: TemplatePayload) -> None:
    try:
        parse_placeholders(payload.content)
    except SubstitutionError as exc:
        raise validation_failed("Template content is malformed", {"content": str(exc)}) from exc


def _serialize_variables(payload: TemplatePayload) -> list[dict]:
    return [json.loads(variable.json()) for variable in payload.variables]


def _clear_other_defaults(session: Session, keep_id: str) -> None:
    session.execute(
        update(orm_models.TemplateORM)
        .where(orm_models.TemplateORM.id != keep_id, orm_models.TemplateORM.is_default.is_(True))
        .values(is_default=False)
        .execution_options(synchronize_session="fetch")
    )


def _apply_payload(model: orm_models.TemplateORM, payload: TemplatePayload) -> None:
    model.name = payload.name
    model.description = payload.description
    model.category = payload.category
    model.package_type = payload.package_type.value if payload.package_type else None
    model.content = payload.content
    model.variables = _serialize_variables(payload)
    model.is_active = payload.is_active
    model.is_default = payload.is_default


def list_templates(
    session: Session,
    identity: Identity,
    *,
    include_inactive: bool = False,
    category: Optional[str] = None,
    package_type: Optional[PackageType] = None,
) -> list[Template]:
    ensure_capability(identity, "template.read")
    stmt = select(orm_models.TemplateORM).order_by(orm_models.TemplateORM.name)
    if not include_inactive:
        stmt = stmt.where(orm_models.TemplateORM.is_active.is_(True))
    if category:
        stmt = stmt.where(orm_models.TemplateORM.category == category)
    if package_type is not None:
        stmt = stmt.where(orm_models.TemplateORM.package_type == package_type.value)
    return [_template_to_schema(row) for row in session.execute(stmt).scalars()]


def get_template(session: Session, identity: Identity, template_id: str) -> Template:
    ensure_capability(identity, "template.read")
    return _template_to_schema(_get_template_row(session, template_id))


def create_template(session: Session, identity: Identity, payload: TemplatePayload) -> Template:
    ensure_capability(identity, "template.create")
    _check_content(payload)

    template = orm_models.TemplateORM(created_by_user_id=identity.user_id)
    _apply_payload(template, payload)
    session.add(template)
    session.flush()
    if template.is_default:
        _clear_other_defaults(session, template.id)
    logger.info("Template %s created by %s", template.id, identity.user_id)
    return _template_to_schema(template)


def update_template(session: Session, identity: Identity, template_id: str, payload: TemplatePayload) -> Template:
    ensure_capability(identity, "template.update")
    template = _get_template_row(session, template_id)
    _check_content(payload)

    _apply_payload(template, payload)
    session.flush()
    if template.is_default:
        _clear_other_defaults(session, template.id)
    return _template_to_schema(template)


def delete_template(session: Session, identity: Identity, template_id: str) -> None:
    ensure_capability(identity, "template.delete")
    template = _get_template_row(session, template_id)
    session.execute(
        update(orm_models.ServiceAgreementORM)
        .where(orm_models.ServiceAgreementORM.template_id == template_id)
        .values(template_id=None)
        .execution_options(synchronize_session="fetch")
    )
    session.delete(template)
    session.flush()
    logger.info("Template %s deleted by %s", template_id, identity.user_id)


def clone_template(
    session: Session,
    identity: Identity,
    template_id: str,
    new_name: str,
    new_description: Optional[str] = None,
) -> Template:
    ensure_capability(identity, "template.clone")
    name = (new_name or "").strip()
    if not name:
        raise validation_failed("Template name is required", {"name": "must not be empty"})
    if len(name) > TEMPLATE_NAME_MAX_LENGTH:
        raise validation_failed(
            "Template name is too long",
            {"name": f"must be at most {TEMPLATE_NAME_MAX_LENGTH} characters"},
        )

    source = _get_template_row(session, template_id)
    clone = orm_models.TemplateORM(
        name=name,
        description=new_description if new_description is not None else source.description,
        category=source.category,
        package_type=source.package_type,
        content=source.content,
        variables=json.loads(json.dumps(source.variables or [])),
        is_active=True,
        is_default=False,
        usage_count=0,
        parent_template_id=source.id,
        created_by_user_id=identity.user_id,
    )
    session.add(clone)
    session.flush()
    return _template_to_schema(clone)


def _first_active_template(session: Session, package_type: Optional[PackageType] = None):
    stmt = select(orm_models.TemplateORM).where(orm_models.TemplateORM.is_active.is_(True))
    if package_type is not None:
        stmt = stmt.where(orm_models.TemplateORM.package_type == package_type.value)
    stmt = stmt.order_by(orm_models.TemplateORM.is_default.desc(), orm_models.TemplateORM.created_at).limit(1)
    return session.execute(stmt).scalars().first()


def resolve_agreement_template(
    session: Session,
    template_id: Optional[str] = None,
    package_type: Optional[PackageType] = None,
) -> orm_models.TemplateORM:
    """Pick the template an agreement is rendered from.

    An explicit id must exist. Otherwise an active template for the detected
    package type wins, then the active default, then the oldest active
    template.
    """

    if template_id:
        return _get_template_row(session, template_id)

    if package_type is not None:
        matched = _first_active_template(session, package_type)
        if matched is not None:
            return matched
        logger.debug("No active %s template, using the default", package_type.value)

    candidate = _first_active_template(session)
    if candidate is None:
        raise not_found("Default agreement template")
    return candidate


def detect_quote_package_type(
    session: Session,
    identity: Identity,
    request: PackageDetectionRequest,
) -> PackageDetection:
    quote = load_quote(session, identity, request.quote_id, "quote.read")
    analysis = analyze_package_type(quote, quote.client, request.additional_context)
    logger.info(
        "Quote %s detected as %s with %.2f%% confidence",
        quote.id,
        analysis.detected_type.value,
        analysis.confidence,
    )
    return analysis


def increment_usage(session: Session, template_id: str) -> None:
    session.execute(
        update(orm_models.TemplateORM)
        .where(orm_models.TemplateORM.id == template_id)
        .values(usage_count=orm_models.TemplateORM.usage_count + 1)
        .execution_options(synchronize_session="fetch")
    )


def ensure_default_templates(session: Session) -> Optional[orm_models.TemplateORM]:
    existing = session.execute(select(orm_models.TemplateORM.id).limit(1)).scalar_one_or_none()
    if existing is not None:
        return None

    payload = TemplatePayload(
        name=DEFAULT_TEMPLATE_NAME,
        description="Default agreement generated from accepted quotes",
        category="standard",
        content=DEFAULT_TEMPLATE_CONTENT,
        variables=DEFAULT_TEMPLATE_VARIABLES,
        is_default=True,
    )
    template = orm_models.TemplateORM()
    _apply_payload(template, payload)
    session.add(template)
    session.flush()
    logger.info("Seeded default agreement template %s", template.id)
    return template


def preview_template(
    session: Session,
    identity: Identity,
    template_id: str,
    request: TemplatePreviewRequest,
) -> TemplatePreviewResponse:
    ensure_capability(identity, "template.preview")
    template = _template_to_schema(_get_template_row(session, template_id))

    context = request.quote_context
    additional = context.additional_context if context else None
    if context and context.quote_id:
        quote = load_quote(session, identity, context.quote_id, "quote.read")
        variables = extract_variables(quote, quote.client, quote.company, additional)
    else:
        variables = extract_variables(None, None, None, additional)

    try:
        content, substitutions = substitute(template, variables, request.variables)
    except SubstitutionError as exc:
        raise validation_failed("Template content is malformed", {"content": str(exc)}) from exc

    missing, violations = validate(template, substitutions, variables, request.variables)
    record_usage_event(
        session,
        template_id=template_id,
        user_id=identity.user_id,
        event_type=UsageEventType.PREVIEW,
        outcome=UsageOutcome.SUCCESS,
        details={"missing": missing, "violations": len(violations)},
    )
    return TemplatePreviewResponse(
        content=content,
        substitutions=substitutions,
        missing_variables=missing,
        validation_errors=violations,
    )
