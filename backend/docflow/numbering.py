"""Formatting and parsing of human-readable document numbers.

A numbering format is a free string with a year token (``{YYYY}`` or
``{YY}``) followed by exactly one sequence token. ``{SEQ:4}`` pads the
sequence to four digits, ``{SEQ}`` leaves it unpadded. The ``{seq:04d}`` / ``{seq:d}``
spelling found in older settings rows is accepted as well.
"""

from __future__ import annotations

import re

SEQUENCE_TOKEN = re.compile(r"\{seq(?::(?:0?(?P<width>\d+)d?|d))?\}", re.IGNORECASE)
YEAR_TOKEN = re.compile(r"\{(?P<token>YYYY|YY)\}", re.IGNORECASE)
DIGIT_RUN = re.compile(r"\d+")

DEFAULT_INVOICE_FORMAT = "INV-{YYYY}-{SEQ:4}"
DEFAULT_QUOTE_FORMAT = "QUO-{YYYY}-{SEQ:4}"
DEFAULT_AGREEMENT_FORMAT = "SLA-{YYYY}-{SEQ:4}"


class FormatError(ValueError):
    """Raised when a numbering format cannot produce a parseable number."""


class ParseError(ValueError):
    """Raised when a stored document number carries no sequence."""


def _render_year(fragment: str, year: int) -> str:
    def replace(match: re.Match[str]) -> str:
        if len(match.group("token")) == 4:
            return f"{year:04d}"
        return f"{year % 100:02d}"

    return YEAR_TOKEN.sub(replace, fragment)


def _token_width(match: re.Match[str]) -> int:
    width = match.group("width")
    return int(width) if width else 0


def format_number(sequence: int, template: str, *, year: int) -> str:
    if isinstance(sequence, bool) or not isinstance(sequence, int):
        raise FormatError(f"Sequence must be an integer, got {sequence!r}")
    if sequence < 1:
        raise FormatError(f"Sequence must be positive, got {sequence}")
    if not 1 <= year <= 9999:
        raise FormatError(f"Year out of range: {year}")
    if not template:
        raise FormatError("Numbering format is empty")

    matches = list(SEQUENCE_TOKEN.finditer(template))
    if not matches:
        raise FormatError(f"Numbering format {template!r} lacks a sequence placeholder")
    if len(matches) > 1:
        raise FormatError(f"Numbering format {template!r} has more than one sequence placeholder")

    match = matches[0]
    if not YEAR_TOKEN.search(template[: match.start()]):
        raise FormatError(f"Numbering format {template!r} needs a year placeholder before the sequence")

    prefix = _render_year(template[: match.start()], year)
    suffix = _render_year(template[match.end():], year)

    # The sequence has to stay the last digit run of the rendered number.
    if any(ch.isdigit() for ch in suffix):
        raise FormatError(f"Numbering format {template!r} has digits after the sequence placeholder")
    if prefix and prefix[-1].isdigit():
        raise FormatError(f"Numbering format {template!r} puts the sequence directly after a digit")

    return f"{prefix}{str(sequence).zfill(_token_width(match))}{suffix}"


def validate_format(template: str) -> None:
    format_number(1, template, year=2000)


def extract_sequence(formatted: str) -> int:
    if not isinstance(formatted, str):
        raise ParseError(f"Document number must be a string, got {formatted!r}")
    runs = DIGIT_RUN.findall(formatted)
    # The first run is the year, so a sequence needs a second one.
    if len(runs) < 2:
        raise ParseError(f"No sequence digits after the year in document number {formatted!r}")
    return int(runs[-1])


__all__ = [
    "DEFAULT_AGREEMENT_FORMAT",
    "DEFAULT_INVOICE_FORMAT",
    "DEFAULT_QUOTE_FORMAT",
    "FormatError",
    "ParseError",
    "extract_sequence",
    "format_number",
    "validate_format",
]
