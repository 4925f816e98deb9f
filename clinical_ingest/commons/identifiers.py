"""Canonical forms for patient identifiers.

Every function here is pure, idempotent and tolerant: bad input yields None,
never an exception.
"""

import re
from datetime import date, datetime
from typing import Iterable, Optional, Union

from clinical_ingest.parsers.models import PersonName

_WS = re.compile(r"\s+")
_NON_ALNUM = re.compile(r"[^0-9A-Za-z]")
_HL7_TS = re.compile(r"^(\d{4,14})(?:\.\d{1,4})?(?:[+-]\d{4})?$")
_ISO_DATE = re.compile(r"^(\d{4})(?:-(\d{2})(?:-(\d{2}))?)?$")
_SLASHED = re.compile(r"^(\d{1,2})[/.\-](\d{1,2})[/.\-](\d{4})$")
_YEAR_FIRST = re.compile(r"^(\d{4})[/.](\d{1,2})[/.](\d{1,2})$")

NUMERIC = "numeric"
ALPHANUMERIC = "alphanumeric"


# -------- names --------


def clean_name_part(value: Optional[str]) -> str:
    if not value:
        return ""
    return _WS.sub(" ", value.strip()).upper()


def normalize_name(
    value: Union[None, str, PersonName, Iterable[str]], component_sep: str = "^"
) -> Optional[PersonName]:
    """
    Last^First^Middle components, trimmed, uppercased, whitespace collapsed.
    Free text ("John Doe", "Doe, John") is mapped onto the same component order.
    """
    if value is None:
        return None
    if isinstance(value, PersonName):
        parts = list(value.components)
    elif isinstance(value, str):
        parts = _split_name_text(value, component_sep)
    else:
        parts = list(value)

    parts = [clean_name_part(p) for p in parts]
    while parts and not parts[-1]:
        parts.pop()
    if not parts:
        return None
    parts += [""] * (3 - len(parts))
    return PersonName(
        last=parts[0] or None,
        first=parts[1] or None,
        middle=parts[2] or None,
        extra=tuple(parts[3:]),
    )


def _split_name_text(text: str, component_sep: str) -> list:
    if component_sep in text:
        return text.split(component_sep)
    if "," in text:
        last, _, rest = text.partition(",")
        tokens = rest.split()
        return [last, tokens[0] if tokens else "", " ".join(tokens[1:])]
    tokens = text.split()
    if len(tokens) <= 1:
        return tokens
    return [tokens[-1], tokens[0], " ".join(tokens[1:-1])]


def canonical_name(value: Union[None, str, PersonName, Iterable[str]]) -> Optional[str]:
    name = normalize_name(value)
    return name.canonical() if name else None


# -------- dates --------


def _valid(y: int, m: int, d: int) -> Optional[str]:
    try:
        return date(y, m, d).isoformat()
    except ValueError:
        return None


def normalize_dob(value: Optional[str]) -> Optional[str]:
    """
    ISO-8601 date. Accepts YYYY-MM-DD, MM/DD/YYYY, DD/MM/YYYY and HL7
    YYYYMMDD[HHMMSS]. HL7 partial precision is kept: YYYYMM -> YYYY-MM,
    YYYY -> YYYY.
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()

    m = _ISO_DATE.match(text)
    if m:
        y, mo, d = m.groups()
        if d:
            return _valid(int(y), int(mo), int(d))
        if mo:
            return f"{y}-{mo}" if 1 <= int(mo) <= 12 else None
        return y

    m = _HL7_TS.match(text)
    if m:
        digits = m.group(1)
        if len(digits) >= 8:
            return _valid(int(digits[:4]), int(digits[4:6]), int(digits[6:8]))
        if len(digits) == 6:
            return normalize_dob(f"{digits[:4]}-{digits[4:6]}")
        if len(digits) == 4:
            return digits
        return None

    m = _YEAR_FIRST.match(text)
    if m:
        return _valid(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    m = _SLASHED.match(text)
    if m:
        a, b, y = int(m.group(1)), int(m.group(2)), int(m.group(3))
        # month-first wins when both readings are valid
        return _valid(y, a, b) or _valid(y, b, a)
    return None


def dob_precision(dob: Optional[str]) -> int:
    """3 = full date, 2 = year-month, 1 = year, 0 = absent."""
    if not dob:
        return 0
    return len(dob.split("-"))


def normalize_timestamp(value: Optional[str]) -> Optional[str]:
    """HL7 DTM (MSH-7) to an ISO-8601 timestamp, or None."""
    if not value:
        return None
    m = _HL7_TS.match(value.strip())
    if not m:
        return None
    digits = m.group(1)
    formats = {14: "%Y%m%d%H%M%S", 12: "%Y%m%d%H%M", 10: "%Y%m%d%H", 8: "%Y%m%d"}
    fmt = formats.get(len(digits))
    if fmt is None:
        return None
    try:
        parsed = datetime.strptime(digits, fmt)
    except ValueError:
        return None
    return parsed.date().isoformat() if len(digits) == 8 else parsed.isoformat()


# -------- MRN --------


def normalize_mrn(value: Optional[str]) -> Optional[str]:
    if not value or not isinstance(value, str):
        return None
    cleaned = _NON_ALNUM.sub("", value).upper()
    return cleaned or None


def mrn_kind(mrn: Optional[str]) -> Optional[str]:
    if not mrn:
        return None
    return NUMERIC if mrn.isdigit() else ALPHANUMERIC
