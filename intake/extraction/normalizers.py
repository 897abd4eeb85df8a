"""Locale-aware value normalization for OCR text and extracted fields.

OCR text is in German presentation form ("1.234,56", "05.03.2024"); everything
the pipeline stores or returns is canonical ("1234.56", "2024-03-05"). All
normalizers are pure and idempotent: normalize(normalize(x)) == normalize(x).
"""

import re
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from intake.extraction.schema import FieldName

# Accepted date layouts in priority order (first successful parse wins).
DATE_FORMATS: tuple[str, ...] = (
    "dd.MM.yyyy",
    "d.M.yyyy",
    "dd.MM.yy",
    "d.M.yy",
    "dd/MM/yyyy",
    "d/M/yyyy",
    "dd-MM-yyyy",
    "d-M-yyyy",
    "yyyy-MM-dd",
)

# Two-digit years up to this value map into the current century.
TWO_DIGIT_YEAR_MAX = 2049

_WHITESPACE_RE = re.compile(r"\s+")
_FORMAT_TOKEN_RE = re.compile(r"yyyy|yy|MM|M|dd|d|.")
_TOKEN_PATTERNS = {
    "dd": r"(?P<day>\d{2})",
    "d": r"(?P<day>\d{1,2})",
    "MM": r"(?P<month>\d{2})",
    "M": r"(?P<month>\d{1,2})",
    "yyyy": r"(?P<year>\d{4})",
    "yy": r"(?P<short_year>\d{2})",
}
_CENT = Decimal("0.01")
# Plain decimal notation only; exponents would expand to arbitrarily long digit strings
_PLAIN_DECIMAL_RE = re.compile(r"[-+]?\d+(?:\.\d+)?")
# Largest decimal exponent rendered in fixed-point form
MAX_AMOUNT_EXPONENT = 30


def _compile_date_format(fmt: str) -> re.Pattern[str]:
    parts = []
    for token in _FORMAT_TOKEN_RE.findall(fmt):
        parts.append(_TOKEN_PATTERNS.get(token, re.escape(token)))
    return re.compile("".join(parts))


_DATE_FORMAT_PATTERNS = [(fmt, _compile_date_format(fmt)) for fmt in DATE_FORMATS]


def normalize_whitespace(text: str) -> str:
    """Collapse every whitespace run (including newlines) to a single space."""
    return _WHITESPACE_RE.sub(" ", text)


def parse_decimal(value: str) -> Decimal | None:
    """Parse a plain invariant decimal ("1234.56", "-7", "19").

    Scientific notation, infinities and NaN are rejected.

    Returns:
        Decimal value or None if the string is not a plain decimal
    """
    value = value.strip()
    if not _PLAIN_DECIMAL_RE.fullmatch(value):
        return None
    try:
        return Decimal(value)
    except InvalidOperation:
        return None


def format_decimal(value: Decimal | None) -> str | None:
    """Render a decimal in fixed-point form ("7.00", "1234.5").

    Returns:
        Fixed-point string, or None for missing, non-finite or out-of-range values
    """
    if value is None or not value.is_finite():
        return None
    if abs(value.adjusted()) > MAX_AMOUNT_EXPONENT:
        return None
    return format(value, "f")


def normalize_amount(raw: str) -> str:
    """Normalize an amount to an invariant decimal string.

    "1.234,56" -> "1234.56", "1234,56" -> "1234.56", "1234.56" -> "1234.56".
    A comma marks German formatting (dots are thousands separators); without a
    comma the value is taken as already invariant. Non-numeric input,
    scientific notation included, is returned stripped but otherwise unchanged.

    Args:
        raw: Amount as found in text or entered by a user

    Returns:
        Canonical amount string, or the stripped input if it is not a number
    """
    cleaned = raw.strip()
    if "," in cleaned:
        cleaned = cleaned.replace(".", "").replace(",", ".")

    amount = parse_decimal(cleaned)
    if amount is None:
        return raw.strip()
    return format(amount, "f")


def parse_date(raw: str) -> date | None:
    """Parse a date in any of the accepted layouts.

    Args:
        raw: Date string

    Returns:
        Parsed date or None if no layout matches
    """
    value = raw.strip()
    for _, pattern in _DATE_FORMAT_PATTERNS:
        match = pattern.fullmatch(value)
        if not match:
            continue
        parts = match.groupdict()
        if parts.get("year") is not None:
            year = int(parts["year"])
        else:
            short_year = int(parts["short_year"])
            century = TWO_DIGIT_YEAR_MAX // 100 * 100
            year = century + short_year
            if year > TWO_DIGIT_YEAR_MAX:
                year -= 100
        try:
            return date(year, int(parts["month"]), int(parts["day"]))
        except ValueError:
            continue
    return None


def normalize_date(raw: str) -> str:
    """Normalize a date to ISO form (yyyy-MM-dd).

    Args:
        raw: Date string in one of DATE_FORMATS

    Returns:
        ISO date string, or the stripped input if no layout matches
    """
    parsed = parse_date(raw)
    if parsed is None:
        return raw.strip()
    return parsed.isoformat()


def format_date(value: date, fmt: str) -> str:
    """Render a date using one of the DATE_FORMATS layouts.

    Example:
        >>> format_date(date(2024, 3, 5), "d.M.yy")
        '5.3.24'
    """
    rendered = {
        "dd": f"{value.day:02d}",
        "d": str(value.day),
        "MM": f"{value.month:02d}",
        "M": str(value.month),
        "yyyy": f"{value.year:04d}",
        "yy": f"{value.year % 100:02d}",
    }
    return "".join(rendered.get(token, token) for token in _FORMAT_TOKEN_RE.findall(fmt))


def _round_cents(canonical: str) -> Decimal | None:
    amount = parse_decimal(canonical)
    if amount is None:
        return None
    try:
        return amount.quantize(_CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None


def to_german_amount(canonical: str) -> str | None:
    """Render a canonical amount in grouped German form ("1234.5" -> "1.234,50")."""
    rounded = _round_cents(canonical)
    if rounded is None:
        return None
    return format(rounded, ",.2f").translate(str.maketrans(",.", ".,"))


def to_simple_german_amount(canonical: str) -> str | None:
    """Render a canonical amount as German decimal without grouping ("1234.5" -> "1234,50")."""
    rounded = _round_cents(canonical)
    if rounded is None:
        return None
    return format(rounded, ".2f").replace(".", ",")


def normalize_field_value(field_name: FieldName, raw: str) -> str:
    """Apply the normalizer that belongs to a field.

    Amounts and tax rates go through normalize_amount, the invoice date
    through normalize_date; everything else is only trimmed.
    """
    if field_name.is_amount:
        return normalize_amount(raw)
    if field_name.is_date:
        return normalize_date(raw)
    return raw.strip()


def prepare_text(text: str, max_chars: int | None = None) -> str:
    """Bring raw OCR text into the shape patterns are built from and matched against.

    Args:
        text: Raw OCR text
        max_chars: Optional cap on the normalized length

    Returns:
        Whitespace-normalized text, truncated to max_chars
    """
    normalized = normalize_whitespace(text)
    if max_chars is not None and len(normalized) > max_chars:
        return normalized[:max_chars]
    return normalized
