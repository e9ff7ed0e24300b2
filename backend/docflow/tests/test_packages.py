from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace

import pytest

from docflow.errors import FORBIDDEN, NOT_FOUND, ServiceError
from docflow.packages import analyze_package_type, detect_package_type, score_package_types
from docflow.schemas import PackageDetectionRequest, PackageType
from docflow.services.templates import detect_quote_package_type


def _quote(*descriptions, notes="", total="0"):
    return SimpleNamespace(
        id="quote-1",
        quote_number="QUO-1",
        notes=notes,
        terms="",
        total=Decimal(total),
        items=[SimpleNamespace(description=description) for description in descriptions],
    )


CLIENT = SimpleNamespace(name="Jane Doe", company="Doe Holdings")


def test_store_quote_is_detected_as_ecommerce():
    quote = _quote("Product page", "Shopping cart", "Checkout process", notes="Online store with payment gateway", total="120000")

    scores = score_package_types(quote, CLIENT)

    assert scores == {
        PackageType.ECOM_SITE: 20.0,
        PackageType.GENERAL_WEBSITE: 2.5,
        PackageType.BUSINESS_PROCESS_SYSTEMS: 2.5,
        PackageType.MARKETING: 2.5,
    }
    assert detect_package_type(quote, CLIENT) == PackageType.ECOM_SITE


def test_analysis_reports_confidence_warnings_and_suggestions():
    quote = _quote("Product page", "Shopping cart", "Checkout process", notes="Online store with payment gateway", total="120000")

    analysis = analyze_package_type(quote, CLIENT)

    assert analysis.detected_type == PackageType.ECOM_SITE
    assert analysis.confidence == 92.73
    assert analysis.warnings == ["Item count 3 is outside the typical range 10 - 50"]
    assert analysis.is_valid is False
    assert analysis.suggestions == [PackageType.GENERAL_WEBSITE, PackageType.BUSINESS_PROCESS_SYSTEMS]
    assert 'Found keyword "payment gateway" (high weight)' in analysis.reasoning["ecom_site"]
    assert 'Found item pattern "checkout process"' in analysis.reasoning["ecom_site"]
    assert analysis.scores["ecom_site"] == 20.0


def test_quote_without_signals_falls_back_to_general_website():
    quote = _quote(notes="Seoul office relaunch")

    analysis = analyze_package_type(quote, None)

    assert set(analysis.scores.values()) == {1.5}
    assert analysis.detected_type == PackageType.GENERAL_WEBSITE
    assert analysis.confidence == 25.0
    assert "Very few keyword matches found" in analysis.warnings
    assert analysis.is_valid is False


def test_additional_context_feeds_detection():
    quote = _quote()

    detected = detect_package_type(quote, CLIENT, {"project": "CRM system with workflow management"})

    assert detected == PackageType.BUSINESS_PROCESS_SYSTEMS
    assert score_package_types(quote, CLIENT, {"project": "CRM system with workflow management"})[
        PackageType.BUSINESS_PROCESS_SYSTEMS
    ] == 6.5


def test_detect_quote_package_type_checks_access(session, owner_identity, colleague_identity, make_quote):
    quote = make_quote()

    analysis = detect_quote_package_type(session, owner_identity, PackageDetectionRequest(quote_id=quote.id))
    assert analysis.detected_type == PackageType.GENERAL_WEBSITE
    assert analysis.suggestions == [PackageType.ECOM_SITE]

    with pytest.raises(ServiceError) as excinfo:
        detect_quote_package_type(session, colleague_identity, PackageDetectionRequest(quote_id=quote.id))
    assert excinfo.value.code == FORBIDDEN

    with pytest.raises(ServiceError) as excinfo:
        detect_quote_package_type(session, owner_identity, PackageDetectionRequest(quote_id="quote-missing"))
    assert excinfo.value.code == NOT_FOUND
