"""Pattern-based field extraction from OCR text.

Two mutually exclusive modes per call:
- supplier known: only that supplier's learned patterns are applied
- supplier unknown: a fixed list of generic German invoice patterns

Every match runs under a wall-clock deadline (regex library ``timeout``)
because learned patterns come from user data and the engine backtracks.

Based on the regex module documentation:
https://github.com/mrabarnett/mrab-regex
"""

import logging

import regex
from prometheus_client import Counter

from intake.extraction.normalizers import normalize_field_value, prepare_text
from intake.extraction.schema import FieldName
from intake.patterns.store import PatternStore
from intake.shared.config import Settings

logger = logging.getLogger(__name__)

pattern_match_timeouts_total = Counter(
    "pattern_match_timeouts_total",
    "Regex matches aborted by the per-match deadline",
    ["mode"],  # supplier, generic
)

# Value block following a learned context pattern.
VALUE_CAPTURE = r"(?P<value>[A-Za-z0-9.,\-/]+)"

# Supplier-agnostic first guesses; order is the order of evaluation.
GENERIC_PATTERNS: list[tuple[FieldName, str]] = [
    (
        FieldName.AMOUNT_GROSS,
        r"(?:Gesamtbetrag|Summe|Brutto|Endbetrag|Rechnungsbetrag|Gesamtsumme)\s*:?\s*"
        r"(?P<value>[\d.,]+)\s*(?:EUR|€)?",
    ),
    (
        FieldName.AMOUNT_NET,
        r"(?:Netto|Nettobetrag|Nettosumme)\s*:?\s*(?P<value>[\d.,]+)\s*(?:EUR|€)?",
    ),
    (FieldName.TAX_RATE, r"(?P<value>(?:19|7))\s*[%,]"),
    (
        FieldName.INVOICE_NUMBER,
        r"(?:Rechnungsnr\.?|Re[\-.]?Nr\.?|Rechnung\s*Nr\.?|Rechnungsnummer|Invoice\s*No\.?)"
        r"\s*:?\s*(?P<value>[A-Za-z0-9\-/]+)",
    ),
    (
        FieldName.INVOICE_DATE,
        r"(?:Rechnungsdatum|Datum|Date)\s*:?\s*(?P<value>\d{1,2}[./\-]\d{1,2}[./\-]\d{2,4})",
    ),
    (FieldName.IBAN, r"(?P<value>DE\d{20})"),
]


class PatternExtractor:
    """Applies learned or generic patterns to OCR text."""

    def __init__(self, settings: Settings, store: PatternStore) -> None:
        """Initialize pattern extractor.

        Args:
            settings: Application settings (match timeout, text cap)
            store: Pattern store holding learned supplier patterns
        """
        self.settings = settings
        self.store = store

    def extract(self, supplier_id: str | None, raw_text: str) -> dict[FieldName, str]:
        """Extract canonical field values from OCR text.

        A known supplier with no pattern for some field leaves that field
        absent; generic patterns are never consulted for a known supplier.

        Args:
            supplier_id: Resolved supplier or None
            raw_text: OCR text of the document

        Returns:
            Normalized values keyed by field name
        """
        if not raw_text or not raw_text.strip():
            return {}

        text = prepare_text(raw_text, self.settings.extraction_max_text_chars)

        if supplier_id is not None:
            return self._extract_for_supplier(supplier_id, text)
        return self._extract_generic(text)

    def _extract_for_supplier(self, supplier_id: str, text: str) -> dict[FieldName, str]:
        result: dict[FieldName, str] = {}

        for stored in self.store.get_all(supplier_id):
            try:
                raw_value = self._match_value(stored.pattern + VALUE_CAPTURE, text)
            except TimeoutError:
                pattern_match_timeouts_total.labels(mode="supplier").inc()
                logger.warning(
                    f"Pattern timeout for field {stored.field_name.value}, supplier {supplier_id}"
                )
                continue
            except regex.error as e:
                logger.warning(
                    f"Invalid stored pattern for field {stored.field_name.value}, "
                    f"supplier {supplier_id}: {e}"
                )
                continue

            if raw_value is None:
                continue
            try:
                result[stored.field_name] = normalize_field_value(stored.field_name, raw_value)
            except (ArithmeticError, ValueError) as e:
                logger.warning(
                    f"Could not normalize {stored.field_name.value} for supplier {supplier_id}: {e}"
                )
                continue
            logger.debug(
                f"Supplier pattern for {stored.field_name.value} yielded: "
                f"{result[stored.field_name]}"
            )

        return result

    def _extract_generic(self, text: str) -> dict[FieldName, str]:
        result: dict[FieldName, str] = {}

        for field_name, pattern in GENERIC_PATTERNS:
            try:
                raw_value = self._match_value(pattern, text)
            except TimeoutError:
                pattern_match_timeouts_total.labels(mode="generic").inc()
                logger.warning(f"Generic pattern timeout for field {field_name.value}")
                continue

            if raw_value is None:
                continue
            try:
                result[field_name] = normalize_field_value(field_name, raw_value)
            except (ArithmeticError, ValueError) as e:
                logger.warning(f"Could not normalize generic match for {field_name.value}: {e}")
                continue
            logger.debug(f"Generic pattern for {field_name.value} yielded: {result[field_name]}")

        return result

    def _match_value(self, pattern: str, text: str) -> str | None:
        """Run one search under the configured deadline.

        Raises:
            TimeoutError: If the match exceeds pattern_match_timeout_seconds
            regex.error: If the pattern does not compile
        """
        match = regex.search(
            pattern,
            text,
            flags=regex.IGNORECASE,
            timeout=self.settings.pattern_match_timeout_seconds,
        )
        if match and match.group("value"):
            return match.group("value")
        return None
