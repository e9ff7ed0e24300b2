"""Variable extraction and ``{{placeholder}}`` substitution for agreement templates."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional

from .schemas import (
    VARIABLE_NAME_PATTERN,
    DataSource,
    Substitution,
    TemplatePayload,
    VariableDefinition,
    VariableType,
)

logger = logging.getLogger(__name__)

OPEN_TOKEN = "{{"
CLOSE_TOKEN = "}}"


class SubstitutionError(ValueError):
    """Raised when template content has malformed placeholder syntax."""


# name -> (source entity, candidate attributes tried in order)
FIELD_PATHS: dict[str, tuple[DataSource, tuple[str, ...]]] = {
    "client_name": (DataSource.CLIENT, ("name", "company")),
    "client_company": (DataSource.CLIENT, ("company",)),
    "client_email": (DataSource.CLIENT, ("email",)),
    "client_phone": (DataSource.CLIENT, ("phone",)),
    "client_address": (DataSource.CLIENT, ("billing_address",)),
    "client_vat_number": (DataSource.CLIENT, ("vat_number",)),
    "project_title": (DataSource.CLIENT, ("company", "name")),
    "quote_number": (DataSource.QUOTE, ("quote_number",)),
    "quote_date": (DataSource.QUOTE, ("date_issued",)),
    "valid_until": (DataSource.QUOTE, ("valid_until",)),
    "subtotal": (DataSource.QUOTE, ("subtotal",)),
    "tax_amount": (DataSource.QUOTE, ("tax_amount",)),
    "total": (DataSource.QUOTE, ("total",)),
    "deposit_percentage": (DataSource.QUOTE, ("deposit_percentage",)),
    "deposit_amount": (DataSource.QUOTE, ("deposit_amount",)),
    "balance_remaining": (DataSource.QUOTE, ("balance_remaining",)),
    "project_description": (DataSource.QUOTE, ("notes",)),
    "project_terms": (DataSource.QUOTE, ("terms",)),
    "project_value": (DataSource.QUOTE, ("total",)),
    "company_name": (DataSource.COMPANY, ("company_name",)),
    "company_email": (DataSource.COMPANY, ("email",)),
    "company_phone": (DataSource.COMPANY, ("phone",)),
    "company_address": (DataSource.COMPANY, ("address",)),
    "currency": (DataSource.COMPANY, ("currency",)),
    "tax_percentage": (DataSource.COMPANY, ("tax_percentage",)),
}


@dataclass
class VariableSet:
    values: dict[str, Any] = field(default_factory=dict)
    sources: dict[str, DataSource] = field(default_factory=dict)

    def __contains__(self, name: object) -> bool:
        return name in self.values

    def __len__(self) -> int:
        return len(self.values)

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def source_of(self, name: str) -> DataSource:
        return self.sources.get(name, DataSource.USER_INPUT)

    def add(self, name: str, value: Any, source: DataSource) -> None:
        self.values[name] = value
        self.sources[name] = source


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


def _normalize_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, str):
        return value.strip()
    return value


def extract_variables(
    quote: Any,
    client: Any,
    company_settings: Any,
    additional_context: Optional[Mapping[str, Any]] = None,
) -> VariableSet:
    entities = {
        DataSource.QUOTE: quote,
        DataSource.CLIENT: client,
        DataSource.COMPANY: company_settings,
    }
    result = VariableSet()
    for name, (source, attributes) in FIELD_PATHS.items():
        entity = entities[source]
        if entity is None:
            continue
        for attribute in attributes:
            value = getattr(entity, attribute, None)
            if _is_present(value):
                result.add(name, _normalize_value(value), source)
                break

    for name, value in (additional_context or {}).items():
        if name in result or not _is_present(value):
            continue
        result.add(name, _normalize_value(value), DataSource.USER_INPUT)

    logger.debug(
        "Extracted %d variables for quote %s",
        len(result),
        getattr(quote, "id", None),
    )
    return result


def parse_placeholders(content: str) -> list[str]:
    names: list[str] = []
    position = 0
    while True:
        start = content.find(OPEN_TOKEN, position)
        stray_close = content.find(CLOSE_TOKEN, position)
        if start == -1:
            if stray_close != -1:
                raise SubstitutionError(f"Unmatched '}}}}' at offset {stray_close}")
            return names
        if stray_close != -1 and stray_close < start:
            raise SubstitutionError(f"Unmatched '}}}}' at offset {stray_close}")

        end = content.find(CLOSE_TOKEN, start + len(OPEN_TOKEN))
        if end == -1:
            raise SubstitutionError(f"Unclosed placeholder at offset {start}")
        nested = content.find(OPEN_TOKEN, start + len(OPEN_TOKEN))
        if nested != -1 and nested < end:
            raise SubstitutionError(f"Unclosed placeholder at offset {start}")

        name = content[start + len(OPEN_TOKEN):end].strip()
        if not VARIABLE_NAME_PATTERN.match(name):
            raise SubstitutionError(f"Invalid placeholder name {name!r} at offset {start}")
        if name not in names:
            names.append(name)
        position = end + len(CLOSE_TOKEN)


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, date):
        return value.strftime("%d %B %Y")
    if isinstance(value, Decimal):
        value = _normalize_value(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return f"{value:.2f}"
    if isinstance(value, (list, tuple)):
        return ", ".join(format_value(item) for item in value)
    return str(value)


def _placeholder_pattern(name: str) -> re.Pattern[str]:
    return re.compile(r"\{\{\s*" + re.escape(name) + r"\s*\}\}")


def _resolve(
    definition: VariableDefinition,
    variables: VariableSet,
    overrides: Mapping[str, Any],
) -> Optional[tuple[Any, DataSource]]:
    name = definition.name
    if _is_present(overrides.get(name)):
        return overrides[name], DataSource.USER_INPUT
    if _is_present(variables.get(name)):
        return variables.get(name), variables.source_of(name)
    if _is_present(definition.default_value):
        return definition.default_value, DataSource.DEFAULT_VALUE
    return None


def substitute(
    template: TemplatePayload,
    variables: VariableSet,
    overrides: Optional[Mapping[str, Any]] = None,
) -> tuple[str, list[Substitution]]:
    overrides = overrides or {}
    definitions = {definition.name: definition for definition in template.variables}
    content = template.content
    substitutions: list[Substitution] = []
    timestamp = datetime.utcnow()

    for name in parse_placeholders(template.content):
        definition = definitions.get(name)
        if definition is None:
            continue
        resolved = _resolve(definition, variables, overrides)
        if resolved is None:
            rendered = f"[{definition.display_name}]"
        else:
            value, source = resolved
            if definition.type == VariableType.DATE:
                rendered = format_value(_as_date(value) or value)
            else:
                rendered = format_value(value)
            substitutions.append(
                Substitution(name=name, value=value, data_source=source, timestamp=timestamp)
            )
        content = _placeholder_pattern(name).sub(lambda _match: rendered, content)

    return content, substitutions


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().replace(",", ""))
        except ValueError:
            return None
    return None


def _as_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        raw = value.strip()
        try:
            return date.fromisoformat(raw)
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(raw).date()
        except ValueError:
            return None
    return None


def _format_bound(bound: float) -> str:
    return str(int(bound)) if float(bound).is_integer() else str(bound)


def check_value(definition: VariableDefinition, value: Any) -> list[str]:
    errors: list[str] = []
    rule = definition.validation
    label = definition.display_name

    if definition.type == VariableType.NUMBER:
        number = _as_number(value)
        if number is None:
            return [f"{label} must be a number"]
        if rule and rule.min is not None and number < rule.min:
            errors.append(f"{label} must be at least {_format_bound(rule.min)}")
        if rule and rule.max is not None and number > rule.max:
            errors.append(f"{label} must be at most {_format_bound(rule.max)}")
    elif definition.type == VariableType.DATE:
        if _as_date(value) is None:
            return [f"{label} must be a valid date"]
    elif definition.type == VariableType.TEXT:
        if rule and rule.pattern and not re.search(rule.pattern, str(value)):
            errors.append(f"{label} format is invalid")

    if rule and rule.options and format_value(value) not in rule.options:
        errors.append(f"{label} must be one of: {', '.join(rule.options)}")
    return errors


def validate(
    template: TemplatePayload,
    substitutions: Iterable[Substitution],
    variables: VariableSet,
    overrides: Optional[Mapping[str, Any]] = None,
) -> tuple[list[str], list[str]]:
    overrides = overrides or {}
    resolved = {item.name: item for item in substitutions}
    missing: list[str] = []
    violations: list[str] = []

    for definition in template.variables:
        substitution = resolved.get(definition.name)
        if substitution is None:
            if definition.required and _resolve(definition, variables, overrides) is None:
                missing.append(definition.name)
            continue
        violations.extend(check_value(definition, substitution.value))

    return missing, violations


__all__ = [
    "FIELD_PATHS",
    "SubstitutionError",
    "VariableSet",
    "check_value",
    "extract_variables",
    "format_value",
    "parse_placeholders",
    "substitute",
    "validate",
]
