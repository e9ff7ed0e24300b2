from __future__ import annotations

from typing import Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from . import __version__
from .config import settings
from .database import get_session, init_db
from .errors import VALIDATION_FAILED, ServiceError
from .logging_config import configure_logging
from .permissions import Identity
from .schemas import (
    AgreementConversionRequest,
    CompanySettings,
    CompanySettingsUpdate,
    ConversionOutcome,
    Invoice,
    PackageDetection,
    PackageDetectionRequest,
    PackageType,
    Quote,
    QuoteCreate,
    QuoteUpdate,
    QuoteUpdateResponse,
    ServiceAgreement,
    Template,
    TemplateCloneRequest,
    TemplatePayload,
    TemplatePreviewRequest,
    TemplatePreviewResponse,
    TemplateUsageStats,
    UsageAnalytics,
    UsageEvent,
    UsageEventCreate,
    UserUsageStats,
)
from .services import company, conversion, quotes, templates, usage
from .services.auth import resolve_identity

app = FastAPI(title="DocFlow Backend", version=__version__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)

RETRY_AFTER_SECONDS = "1"


@app.on_event("startup")
def startup_event() -> None:  # pragma: no cover - side effect
    configure_logging()
    init_db()


if settings.cors_origins:
    allow_origins = [origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()]
else:
    allow_origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _raise_service_error(error: ServiceError) -> None:
    status_map = {
        "unauthorized": status.HTTP_401_UNAUTHORIZED,
        "forbidden": status.HTTP_403_FORBIDDEN,
        "not_found": status.HTTP_404_NOT_FOUND,
        "validation_failed": status.HTTP_400_BAD_REQUEST,
        "internal_error": status.HTTP_500_INTERNAL_SERVER_ERROR,
        "data_integrity": status.HTTP_500_INTERNAL_SERVER_ERROR,
    }
    http_status = status_map.get(error.code, status.HTTP_400_BAD_REQUEST)
    headers = None
    if http_status == status.HTTP_401_UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer"}
    elif error.retriable:
        headers = {"Retry-After": RETRY_AFTER_SECONDS}
    raise HTTPException(status_code=http_status, detail=error.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    error = ServiceError(VALIDATION_FAILED, "Request validation failed", {"errors": exc.errors()})
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=jsonable_encoder({"detail": error.to_dict()}))


def get_current_identity(
    token: Optional[str] = Depends(oauth2_scheme),
    session: Session = Depends(get_session),
) -> Identity:
    try:
        return resolve_identity(session, token)
    except ServiceError as error:
        _raise_service_error(error)


@app.get("/health", tags=["system"])
def api_health() -> dict:
    return {"status": "ok", "version": __version__}


# Quotes ---------------------------------------------------------------------


@app.post("/quotes", response_model=Quote, status_code=201, tags=["quotes"])
def api_create_quote(
    payload: QuoteCreate,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> Quote:
    try:
        return quotes.create_quote(session, identity, payload)
    except ServiceError as error:
        _raise_service_error(error)


@app.get("/quotes/{quote_id}", response_model=Quote, tags=["quotes"])
def api_get_quote(
    quote_id: str,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> Quote:
    try:
        return quotes.get_quote(session, identity, quote_id)
    except ServiceError as error:
        _raise_service_error(error)


@app.patch("/quotes/{quote_id}", response_model=QuoteUpdateResponse, tags=["quotes"])
def api_update_quote(
    quote_id: str,
    payload: QuoteUpdate,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> QuoteUpdateResponse:
    try:
        return quotes.update_quote(session, identity, quote_id, payload)
    except ServiceError as error:
        _raise_service_error(error)


@app.post("/quotes/{quote_id}/convert-to-invoice", response_model=ConversionOutcome, tags=["quotes"])
def api_convert_to_invoice(
    quote_id: str,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> ConversionOutcome:
    try:
        return conversion.convert_quote_to_invoice(session, identity, quote_id)
    except ServiceError as error:
        _raise_service_error(error)


@app.post("/quotes/{quote_id}/convert-to-sla", response_model=ConversionOutcome, tags=["quotes"])
def api_convert_to_sla(
    quote_id: str,
    payload: Optional[AgreementConversionRequest] = None,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> ConversionOutcome:
    template_id = payload.template_id if payload else None
    try:
        return conversion.convert_quote_to_sla(session, identity, quote_id, template_id=template_id)
    except ServiceError as error:
        _raise_service_error(error)


@app.get("/invoices/{invoice_id}", response_model=Invoice, tags=["documents"])
def api_get_invoice(
    invoice_id: str,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> Invoice:
    try:
        return conversion.get_invoice(session, identity, invoice_id)
    except ServiceError as error:
        _raise_service_error(error)


@app.get("/sla/agreements", response_model=list[ServiceAgreement], tags=["documents"])
def api_list_agreements(
    status_filter: Optional[str] = Query(None, alias="status"),
    client_id: Optional[str] = Query(None, alias="clientId"),
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> list[ServiceAgreement]:
    try:
        return conversion.list_agreements(session, identity, status=status_filter, client_id=client_id)
    except ServiceError as error:
        _raise_service_error(error)


@app.get("/sla/agreements/{agreement_id}", response_model=ServiceAgreement, tags=["documents"])
def api_get_agreement(
    agreement_id: str,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> ServiceAgreement:
    try:
        return conversion.get_agreement(session, identity, agreement_id)
    except ServiceError as error:
        _raise_service_error(error)


# Templates ------------------------------------------------------------------


@app.get("/sla/templates", response_model=list[Template], tags=["templates"])
def api_list_templates(
    include_inactive: bool = Query(False, alias="includeInactive"),
    category: Optional[str] = None,
    package_type: Optional[PackageType] = Query(None, alias="packageType"),
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> list[Template]:
    try:
        return templates.list_templates(
            session,
            identity,
            include_inactive=include_inactive,
            category=category,
            package_type=package_type,
        )
    except ServiceError as error:
        _raise_service_error(error)


@app.post("/sla/templates", response_model=Template, status_code=201, tags=["templates"])
def api_create_template(
    payload: TemplatePayload,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> Template:
    try:
        return templates.create_template(session, identity, payload)
    except ServiceError as error:
        _raise_service_error(error)


@app.get("/sla/templates/{template_id}", response_model=Template, tags=["templates"])
def api_get_template(
    template_id: str,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> Template:
    try:
        return templates.get_template(session, identity, template_id)
    except ServiceError as error:
        _raise_service_error(error)


@app.put("/sla/templates/{template_id}", response_model=Template, tags=["templates"])
def api_update_template(
    template_id: str,
    payload: TemplatePayload,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> Template:
    try:
        return templates.update_template(session, identity, template_id, payload)
    except ServiceError as error:
        _raise_service_error(error)


@app.delete("/sla/templates/{template_id}", status_code=204, response_class=Response, tags=["templates"])
def api_delete_template(
    template_id: str,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> Response:
    try:
        templates.delete_template(session, identity, template_id)
    except ServiceError as error:
        _raise_service_error(error)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/sla/templates/{template_id}/clone", response_model=Template, status_code=201, tags=["templates"])
def api_clone_template(
    template_id: str,
    payload: TemplateCloneRequest,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> Template:
    try:
        return templates.clone_template(session, identity, template_id, payload.name, payload.description)
    except ServiceError as error:
        _raise_service_error(error)


@app.post("/sla/templates/{template_id}/preview", response_model=TemplatePreviewResponse, tags=["templates"])
def api_preview_template(
    template_id: str,
    payload: TemplatePreviewRequest,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> TemplatePreviewResponse:
    try:
        return templates.preview_template(session, identity, template_id, payload)
    except ServiceError as error:
        _raise_service_error(error)


@app.post("/sla/detect-package-type", response_model=PackageDetection, tags=["templates"])
def api_detect_package_type(
    payload: PackageDetectionRequest,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> PackageDetection:
    try:
        return templates.detect_quote_package_type(session, identity, payload)
    except ServiceError as error:
        _raise_service_error(error)


# Usage ----------------------------------------------------------------------


@app.get(
    "/sla/usage/analytics",
    response_model=Union[TemplateUsageStats, UserUsageStats, UsageAnalytics],
    tags=["usage"],
)
def api_usage_analytics(
    days: Optional[int] = None,
    template_id: Optional[str] = Query(None, alias="templateId"),
    user_id: Optional[str] = Query(None, alias="userId"),
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> Union[TemplateUsageStats, UserUsageStats, UsageAnalytics]:
    try:
        if template_id:
            return usage.get_template_usage_stats(session, identity, template_id, days)
        if user_id:
            return usage.get_user_usage_stats(session, identity, user_id, days)
        return usage.get_usage_analytics(session, identity, days)
    except ServiceError as error:
        _raise_service_error(error)


@app.post("/sla/usage/track", response_model=UsageEvent, status_code=201, tags=["usage"])
def api_track_usage(
    payload: UsageEventCreate,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> UsageEvent:
    try:
        return usage.track_usage_event(session, identity, payload)
    except ServiceError as error:
        _raise_service_error(error)


# Settings -------------------------------------------------------------------


@app.get("/settings", response_model=CompanySettings, tags=["settings"])
def api_get_settings(
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> CompanySettings:
    try:
        return company.get_company_settings(session, identity)
    except ServiceError as error:
        _raise_service_error(error)


@app.patch("/settings", response_model=CompanySettings, tags=["settings"])
def api_update_settings(
    payload: CompanySettingsUpdate,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> CompanySettings:
    try:
        return company.update_company_settings(session, identity, payload)
    except ServiceError as error:
        _raise_service_error(error)
