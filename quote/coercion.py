"""
Value coercion for logical fields.
Converts raw request strings into the value written to a cell. Never raises:
anything that does not parse is written as text (control characters removed)
with a warning.
"""

import re
from datetime import datetime, date
from typing import Any, NamedTuple, Optional

import numpy as np
from dateutil import parser as date_parser

# Spreadsheet serial dates count days from 1899-12-30
SERIAL_EPOCH = date(1899, 12, 30)

DECIMAL_RE = re.compile(r'^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$')
INTEGER_RE = re.compile(r'^[+-]?\d+$')
CONTROL_CHARS_RE = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]')
NUMBER_NOISE_RE = re.compile(r'[,\s£$€%]')


class CoercionWarning(NamedTuple):
    """A value that could not be parsed as its declared kind."""
    field_id: str
    value_kind: str
    raw_value: str
    message: str


class Coerced(NamedTuple):
    value: Any
    warning: Optional[CoercionWarning] = None


def coerce(raw: Any, value_kind: str, field_id: str = '') -> Coerced:
    """
    Coerce a raw input to the value written for a field of the given kind.

    Args:
        raw: Raw value from the request (normally a string)
        value_kind: 'number', 'date', 'dropdown' or 'text'
        field_id: Logical field id, used only to label warnings

    Returns:
        Coerced(value, warning) - warning is None when parsing succeeded
    """
    text = '' if raw is None else str(raw)

    if value_kind == 'number':
        return _coerce_number(text, field_id)
    if value_kind == 'date':
        return _coerce_date(text, field_id)
    return Coerced(strip_control_chars(text))


def strip_control_chars(text: str) -> str:
    """Remove control characters, keeping tabs and line breaks."""
    return CONTROL_CHARS_RE.sub('', text)


def to_serial_date(value: date) -> int:
    """Convert a calendar date to the spreadsheet serial day count."""
    if isinstance(value, datetime):
        value = value.date()
    return (value - SERIAL_EPOCH).days


def from_serial_date(serial: float) -> date:
    """Convert a spreadsheet serial day count back to a calendar date."""
    return date.fromordinal(SERIAL_EPOCH.toordinal() + int(serial))


def _coerce_number(text: str, field_id: str) -> Coerced:
    clean = text.strip()
    if clean == '':
        return Coerced(text)

    # Strict decimal first
    if DECIMAL_RE.match(clean):
        number = float(clean)
        if np.isfinite(number):
            if INTEGER_RE.match(clean):
                return Coerced(int(clean))
            return Coerced(number)

    # Integer parse after dropping separators and currency marks ("1,200", "£5000")
    digits = NUMBER_NOISE_RE.sub('', clean)
    if INTEGER_RE.match(digits):
        return Coerced(int(digits))

    message = f"'{text}' is not a number; written as text"
    return Coerced(strip_control_chars(text), CoercionWarning(field_id, 'number', text, message))


def _coerce_date(text: str, field_id: str) -> Coerced:
    clean = text.strip()
    if clean == '':
        return Coerced(text)

    try:
        # ISO dates parse year-first; anything else is read day-first (dd/mm/yyyy)
        if re.match(r'^\d{4}-\d{1,2}-\d{1,2}', clean):
            parsed = date_parser.isoparse(clean)
        else:
            parsed = date_parser.parse(clean, dayfirst=True)
    except (ValueError, OverflowError):
        message = f"'{text}' is not a date; written as text"
        return Coerced(strip_control_chars(text), CoercionWarning(field_id, 'date', text, message))

    return Coerced(to_serial_date(parsed))
