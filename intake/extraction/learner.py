"""Pattern learning from user-confirmed field values.

Programming by example: given the raw text of a document and the value a user
confirmed for one field, remember the text immediately preceding that value.
Invoices from one supplier share a template, so that label/formatting context
locates the same field in the supplier's next document.
"""

import logging

import regex
from prometheus_client import Counter

from intake.extraction.normalizers import (
    DATE_FORMATS,
    format_date,
    parse_date,
    prepare_text,
    to_german_amount,
    to_simple_german_amount,
)
from intake.extraction.schema import FieldName
from intake.patterns.store import PatternStore, SupplierPattern
from intake.shared.config import Settings

logger = logging.getLogger(__name__)

patterns_learned_total = Counter(
    "patterns_learned_total",
    "Learning events by field and outcome",
    ["field", "status"],  # learned, not_found, skipped
)

_ESCAPED_SPACES_RE = regex.compile(r"(?:\\ )+")
FLEXIBLE_WHITESPACE = r"\s*"


def build_context_pattern(context: str) -> str:
    r"""Turn literal context text into a whitespace-tolerant regex.

    "Rechnungsnr. :" becomes ``Rechnungsnr\.\s*:\s*``.

    Args:
        context: Text immediately preceding a value

    Returns:
        Escaped pattern with space runs replaced by \s* and a trailing \s*
    """
    escaped = regex.escape(context, special_only=True, literal_spaces=False)
    pattern = _ESCAPED_SPACES_RE.sub(lambda _: FLEXIBLE_WHITESPACE, escaped)
    if not pattern.endswith(FLEXIBLE_WHITESPACE):
        pattern += FLEXIBLE_WHITESPACE
    return pattern


class PatternLearner:
    """Derives per-supplier context patterns from confirmed values."""

    def __init__(self, settings: Settings, store: PatternStore) -> None:
        """Initialize pattern learner.

        Args:
            settings: Application settings (context length, text cap, match timeout)
            store: Pattern store that receives learned patterns
        """
        self.settings = settings
        self.store = store

    def learn(
        self,
        supplier_id: str,
        field_name: FieldName,
        raw_text: str,
        confirmed_value: str,
    ) -> SupplierPattern | None:
        """Learn the pattern for one field of one supplier.

        Args:
            supplier_id: Supplier the document belongs to
            field_name: Field the user confirmed
            raw_text: Original OCR text of the document
            confirmed_value: Value the user confirmed (canonical form)

        Returns:
            Stored pattern, or None if nothing was learned
        """
        field = FieldName(field_name)
        if not raw_text or not raw_text.strip() or not confirmed_value or not confirmed_value.strip():
            patterns_learned_total.labels(field=field.value, status="skipped").inc()
            return None

        text = prepare_text(raw_text, self.settings.extraction_max_text_chars)
        position = self.find_value_position(text, confirmed_value.strip(), field)
        if position < 0:
            logger.debug(
                f"Could not locate value '{confirmed_value}' for field {field.value} "
                f"in text of supplier {supplier_id}; nothing learned"
            )
            patterns_learned_total.labels(field=field.value, status="not_found").inc()
            return None

        start = max(0, position - self.settings.pattern_context_length)
        context = text[start:position].lstrip()
        pattern = build_context_pattern(context)

        stored = self.store.upsert(supplier_id, field, pattern)
        patterns_learned_total.labels(field=field.value, status="learned").inc()
        logger.info(f"Learned pattern for supplier {supplier_id}, field {field.value}: {pattern}")
        return stored

    def find_value_position(self, text: str, value: str, field_name: FieldName) -> int:
        """Find where a confirmed value appears in normalized text.

        Tries, in order: the value itself (case-insensitive); for amount
        fields the grouped and the simple German rendering; for the date
        field every accepted date layout.

        Returns:
            Start index of the first hit, or -1
        """
        for candidate in self._candidates(value, FieldName(field_name)):
            position = self._index_of(text, candidate)
            if position >= 0:
                return position
        return -1

    @staticmethod
    def _candidates(value: str, field_name: FieldName) -> list[str]:
        candidates = [value]

        if field_name.is_amount:
            for rendered in (to_german_amount(value), to_simple_german_amount(value)):
                if rendered is not None:
                    candidates.append(rendered)

        if field_name.is_date:
            parsed = parse_date(value)
            if parsed is not None:
                candidates.extend(format_date(parsed, fmt) for fmt in DATE_FORMATS)

        return candidates

    def _index_of(self, text: str, candidate: str) -> int:
        match = regex.search(
            regex.escape(candidate),
            text,
            flags=regex.IGNORECASE,
            timeout=self.settings.pattern_match_timeout_seconds,
        )
        return match.start() if match else -1
