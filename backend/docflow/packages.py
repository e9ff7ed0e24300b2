"""Package type detection for quotes.

Scores every package type by keyword hits in the quote's free text, item
pattern hits in its line items, and how well the quote value and item count
fit the type's typical ranges. The highest score wins.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .schemas import PackageDetection, PackageType

logger = logging.getLogger(__name__)

ITEM_PATTERN_WEIGHT = 1.5
STRONG_LEAD_RATIO = 1.5
CONFIDENCE_BONUS = 20
CONFIDENCE_CEILING = 95
VALID_CONFIDENCE = 60
CLOSE_SCORE_GAP = 2
WEAK_SCORE = 3
SUGGESTION_SCORE = 2


@dataclass(frozen=True)
class PackagePattern:
    keywords: Tuple[str, ...]
    item_patterns: Tuple[str, ...]
    value_range: Tuple[int, int]
    item_range: Tuple[int, int]
    weights: Dict[str, int] = field(default_factory=dict)


PACKAGE_PATTERNS: Dict[PackageType, PackagePattern] = {
    PackageType.ECOM_SITE: PackagePattern(
        keywords=(
            "ecommerce", "e-commerce", "online store", "shopping cart", "product catalog",
            "payment gateway", "checkout", "products", "inventory", "woocommerce", "shopify",
            "magento", "opencart", "prestashop", "bigcommerce", "product management",
            "order management", "cart system", "online shop", "webstore", "digital storefront",
        ),
        item_patterns=(
            "product page", "category page", "shopping cart", "checkout process",
            "payment integration", "order management", "inventory system", "product search",
            "user account", "wishlist", "product reviews", "shipping calculation",
        ),
        value_range=(50_000, 500_000),
        item_range=(10, 50),
        weights={
            "payment gateway": 3,
            "shopping cart": 3,
            "product catalog": 2,
            "inventory management": 2,
            "ecommerce": 3,
            "online store": 2,
        },
    ),
    PackageType.GENERAL_WEBSITE: PackagePattern(
        keywords=(
            "website", "web site", "portfolio", "brochure", "informational", "blog",
            "corporate", "business website", "landing page", "company website", "presentation",
            "brand website", "marketing website", "showcase", "web presence", "online brochure",
        ),
        item_patterns=(
            "home page", "about page", "contact page", "services page", "portfolio",
            "gallery", "blog section", "news section", "testimonials", "team page",
            "faq page", "privacy policy", "terms of service", "sitemap",
        ),
        value_range=(15_000, 150_000),
        item_range=(5, 20),
        weights={
            "company website": 2,
            "corporate website": 2,
            "portfolio website": 2,
            "informational website": 2,
            "landing page": 1,
        },
    ),
    PackageType.BUSINESS_PROCESS_SYSTEMS: PackagePattern(
        keywords=(
            "crm", "erp", "business process", "workflow", "automation", "system",
            "management system", "dashboard", "reporting", "analytics", "database",
            "business intelligence", "process automation", "workflow management",
            "enterprise system", "business software", "management platform",
        ),
        item_patterns=(
            "user management", "role-based access", "data entry forms", "reporting dashboard",
            "analytics dashboard", "workflow automation", "process management", "data export",
            "system integration", "api development", "database design", "user authentication",
            "permission system", "audit trail", "notification system",
        ),
        value_range=(100_000, 1_000_000),
        item_range=(8, 30),
        weights={
            "crm system": 3,
            "erp system": 3,
            "business process": 2,
            "workflow management": 2,
            "management system": 2,
            "automation": 2,
        },
    ),
    PackageType.MARKETING: PackagePattern(
        keywords=(
            "marketing", "campaign", "lead generation", "seo", "sem", "social media",
            "email marketing", "content marketing", "digital marketing", "advertising",
            "marketing automation", "brand promotion", "online marketing", "web marketing",
        ),
        item_patterns=(
            "social media integration", "email campaign", "seo optimization", "content management",
            "landing page", "lead capture", "analytics tracking", "marketing automation",
            "brand guidelines", "advertising banner", "social media management",
            "email template", "marketing dashboard", "campaign management",
        ),
        value_range=(25_000, 200_000),
        item_range=(5, 25),
        weights={
            "digital marketing": 3,
            "marketing automation": 3,
            "lead generation": 2,
            "social media marketing": 2,
            "email marketing": 2,
            "seo optimization": 2,
        },
    ),
}


def _item_descriptions(quote: Any) -> List[str]:
    return [str(getattr(item, "description", "") or "") for item in (getattr(quote, "items", None) or [])]


def _quote_text(quote: Any, client: Any, additional_context: Optional[Mapping[str, Any]]) -> str:
    parts = [
        getattr(quote, "terms", None),
        getattr(quote, "notes", None),
        getattr(quote, "quote_number", None),
        getattr(client, "name", None),
        getattr(client, "company", None),
    ]
    # Item descriptions count twice.
    descriptions = " ".join(_item_descriptions(quote))
    parts.extend([descriptions, descriptions])
    parts.extend(value for value in (additional_context or {}).values() if isinstance(value, str))
    return " ".join(str(part) for part in parts if part).lower()


def _count(text: str, phrase: str) -> int:
    return len(re.findall(rf"\b{re.escape(phrase)}\b", text))


def _in_range(value: float, bounds: Tuple[int, int]) -> bool:
    low, high = bounds
    return low <= value <= high


def _value_score(value: float, pattern: PackagePattern) -> float:
    return 2.0 if _in_range(value, pattern.value_range) else 1.0


def _item_count_score(count: int, pattern: PackagePattern) -> float:
    if _in_range(count, pattern.item_range):
        return 1.5
    if count < pattern.item_range[0] * 2:
        return 0.5
    return 0.0


def score_package_types(
    quote: Any,
    client: Any,
    additional_context: Optional[Mapping[str, Any]] = None,
) -> Dict[PackageType, float]:
    text = _quote_text(quote, client, additional_context)
    items_text = " ".join(_item_descriptions(quote)).lower()
    value = float(getattr(quote, "total", None) or Decimal("0"))
    item_count = len(getattr(quote, "items", None) or [])

    scores: Dict[PackageType, float] = {}
    for package_type, pattern in PACKAGE_PATTERNS.items():
        score = 0.0
        for keyword in pattern.keywords:
            score += _count(text, keyword) * pattern.weights.get(keyword, 1)
        for item_pattern in pattern.item_patterns:
            score += _count(items_text, item_pattern) * ITEM_PATTERN_WEIGHT
        score += _value_score(value, pattern)
        score += _item_count_score(item_count, pattern)
        scores[package_type] = round(score, 2)
    return scores


def _best_match(scores: Mapping[PackageType, float]) -> PackageType:
    # Ties go to the general website package.
    best = PackageType.GENERAL_WEBSITE
    best_score = scores.get(best, 0.0)
    for package_type, score in scores.items():
        if score > best_score:
            best, best_score = package_type, score
    return best


def _ranked(scores: Mapping[PackageType, float]) -> List[Tuple[PackageType, float]]:
    return sorted(scores.items(), key=lambda entry: entry[1], reverse=True)


def _confidence(scores: Mapping[PackageType, float], detected: PackageType) -> float:
    total = sum(scores.values())
    if total == 0:
        return 0.0
    base = scores[detected] / total * 100
    ranked = _ranked(scores)
    if len(ranked) > 1 and ranked[0][1] > ranked[1][1] * STRONG_LEAD_RATIO:
        return round(min(base + CONFIDENCE_BONUS, CONFIDENCE_CEILING), 2)
    return round(base, 2)


def _reasoning(quote: Any, client: Any, package_type: PackageType, additional_context) -> List[str]:
    pattern = PACKAGE_PATTERNS[package_type]
    text = _quote_text(quote, client, additional_context)
    items_text = " ".join(_item_descriptions(quote)).lower()
    value = float(getattr(quote, "total", None) or 0)
    item_count = len(getattr(quote, "items", None) or [])

    reasons = []
    for keyword in pattern.keywords:
        if _count(text, keyword):
            strength = "high weight" if pattern.weights.get(keyword, 1) > 1 else "normal weight"
            reasons.append(f'Found keyword "{keyword}" ({strength})')
    for item_pattern in pattern.item_patterns:
        if _count(items_text, item_pattern):
            reasons.append(f'Found item pattern "{item_pattern}"')
    if _in_range(value, pattern.value_range):
        reasons.append(f"Project value {value:,.2f} is within the typical range")
    if _in_range(item_count, pattern.item_range):
        reasons.append(f"Item count {item_count} is within the typical range")
    return reasons


def detect_package_type(
    quote: Any,
    client: Any,
    additional_context: Optional[Mapping[str, Any]] = None,
) -> PackageType:
    scores = score_package_types(quote, client, additional_context)
    detected = _best_match(scores)
    logger.debug("Quote %s detected as %s (scores %s)", getattr(quote, "id", None), detected.value, scores)
    return detected


def analyze_package_type(
    quote: Any,
    client: Any,
    additional_context: Optional[Mapping[str, Any]] = None,
) -> PackageDetection:
    """Detect the package type and explain how sure the detection is.

    The result is valid when confidence reaches ``VALID_CONFIDENCE`` and no
    warning was raised. Close runners-up are offered as suggestions.
    """

    scores = score_package_types(quote, client, additional_context)
    detected = _best_match(scores)
    confidence = _confidence(scores, detected)
    ranked = _ranked(scores)
    pattern = PACKAGE_PATTERNS[detected]
    value = float(getattr(quote, "total", None) or 0)
    item_count = len(getattr(quote, "items", None) or [])

    warnings: List[str] = []
    suggestions: List[PackageType] = []
    top_score = ranked[0][1]
    runner_up, runner_up_score = ranked[1]
    if top_score - runner_up_score < CLOSE_SCORE_GAP:
        warnings.append(f"Scores are close; {runner_up.value} is nearly as likely")
        suggestions.append(runner_up)
    if top_score < WEAK_SCORE:
        warnings.append("Very few keyword matches found")
    if not _in_range(value, pattern.value_range):
        low, high = pattern.value_range
        warnings.append(f"Project value {value:,.2f} is outside the typical range {low:,} - {high:,}")
    if not _in_range(item_count, pattern.item_range):
        low, high = pattern.item_range
        warnings.append(f"Item count {item_count} is outside the typical range {low} - {high}")
    for package_type, score in ranked[1:3]:
        if score >= SUGGESTION_SCORE and package_type not in suggestions:
            suggestions.append(package_type)

    return PackageDetection(
        detected_type=detected,
        confidence=confidence,
        scores={package_type.value: score for package_type, score in scores.items()},
        reasoning={
            package_type.value: _reasoning(quote, client, package_type, additional_context)
            for package_type in PACKAGE_PATTERNS
        },
        is_valid=confidence >= VALID_CONFIDENCE and not warnings,
        warnings=warnings,
        suggestions=suggestions,
    )
