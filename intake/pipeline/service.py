"""Document intake pipeline.

Classifies an uploaded document exactly once per call:

    UNCLASSIFIED -> STRUCTURED_DETECTED | SCAN_DETECTED -> RESOLVED

Structured electronic invoices are read deterministically; everything else goes
through OCR, supplier name matching and pattern extraction. RESOLVED is reached
when a supplier could be identified.
"""

import logging
from collections.abc import Mapping
from datetime import date
from decimal import Decimal
from typing import BinaryIO

from prometheus_client import Counter

from intake.extraction.extractor import PatternExtractor
from intake.extraction.learner import PatternLearner
from intake.extraction.normalizers import (
    format_decimal,
    normalize_amount,
    normalize_field_value,
    parse_date,
    parse_decimal,
    prepare_text,
)
from intake.extraction.schema import (
    ExtractionResult,
    FieldName,
    IntakeState,
    StructuredInvoice,
    SupplierSuggestion,
)
from intake.ocr.service import OCRService
from intake.patterns.store import SupplierPattern
from intake.shared.config import Settings
from intake.structured.base import StructuredInvoiceParser
from intake.suppliers.directory import Supplier
from intake.suppliers.resolver import SupplierResolver

logger = logging.getLogger(__name__)

intake_documents_total = Counter(
    "intake_documents_total",
    "Documents taken in, by classification path",
    ["path"],  # structured, scan
)

ConfirmedValue = str | Decimal | date | None


def _to_decimal(value: str | None) -> Decimal | None:
    if value is None:
        return None
    return parse_decimal(normalize_amount(value))


def _to_canonical(field_name: FieldName, value: ConfirmedValue) -> str:
    """Bring a confirmed value into canonical string form."""
    if value is None:
        return ""
    if isinstance(value, Decimal):
        return format_decimal(value) or ""
    if isinstance(value, date):
        return value.isoformat()
    return normalize_field_value(field_name, str(value))


class IntakePipeline:
    """Turns an uploaded purchase document into canonical invoice fields."""

    def __init__(
        self,
        settings: Settings,
        parser: StructuredInvoiceParser,
        ocr_service: OCRService,
        extractor: PatternExtractor,
        learner: PatternLearner,
        resolver: SupplierResolver,
    ) -> None:
        """Initialize intake pipeline.

        Args:
            settings: Application settings
            parser: Structured electronic invoice parser
            ocr_service: OCR text provider for scans
            extractor: Pattern extractor for OCR text
            learner: Pattern learner for confirmed values
            resolver: Supplier resolver
        """
        self.settings = settings
        self.parser = parser
        self.ocr_service = ocr_service
        self.extractor = extractor
        self.learner = learner
        self.resolver = resolver

    def intake(self, content: bytes | BinaryIO, file_name: str) -> ExtractionResult:
        """Classify a document and extract its fields.

        Never raises for unreadable documents, tool failures or pattern
        timeouts; those yield fewer (or no) fields.

        Args:
            content: File content or a binary stream positioned at its start
            file_name: Original file name (the extension drives handling)

        Returns:
            ExtractionResult for the document
        """
        data = content if isinstance(content, bytes) else content.read()

        invoice = self._try_structured(data, file_name)
        if invoice is not None:
            intake_documents_total.labels(path="structured").inc()
            return self._structured_result(invoice)

        intake_documents_total.labels(path="scan").inc()
        return self._scan_result(data, file_name)

    def _try_structured(self, data: bytes, file_name: str) -> StructuredInvoice | None:
        """Run the structured parser; any refusal or failure means "not structured"."""
        try:
            if not self.parser.can_parse(data, file_name):
                return None
            return self.parser.parse(data, file_name)
        except Exception as e:
            logger.warning(f"Structured parser failed for '{file_name}', using OCR path: {e}")
            return None

    def _structured_result(self, invoice: StructuredInvoice) -> ExtractionResult:
        fields: dict[FieldName, str] = {}
        candidates = {
            FieldName.INVOICE_NUMBER: invoice.invoice_number,
            FieldName.INVOICE_DATE: invoice.invoice_date.isoformat() if invoice.invoice_date else None,
            FieldName.AMOUNT_NET: format_decimal(invoice.amount_net),
            FieldName.AMOUNT_GROSS: format_decimal(invoice.amount_gross),
            FieldName.TAX_RATE: format_decimal(invoice.tax_rate),
            FieldName.IBAN: invoice.supplier_iban,
        }
        for field_name, value in candidates.items():
            if value:
                fields[field_name] = value

        supplier = self.resolver.resolve_structured(invoice)
        state = IntakeState.RESOLVED if supplier else IntakeState.STRUCTURED_DETECTED
        logger.info(
            f"Structured invoice {invoice.invoice_number} taken in "
            f"(supplier: {supplier.id if supplier else 'unknown'})"
        )

        return ExtractionResult(
            fields=fields,
            supplier=self._suggestion(supplier),
            is_structured=True,
            structured_data=invoice,
            state=state,
            invoice_number=invoice.invoice_number,
            invoice_date=invoice.invoice_date,
            due_date=invoice.due_date,
            amount_net=invoice.amount_net,
            amount_gross=invoice.amount_gross,
            amount_tax=invoice.amount_tax,
            tax_rate=invoice.tax_rate,
            iban=invoice.supplier_iban,
        )

    def _scan_result(self, data: bytes, file_name: str) -> ExtractionResult:
        ocr_result = self.ocr_service.extract_text(data, file_name)
        if not ocr_result.success:
            logger.warning(f"No usable OCR text for '{file_name}': {ocr_result.error}")
        raw_text = ocr_result.text

        supplier = self.resolver.resolve_from_text(
            prepare_text(raw_text, self.settings.extraction_max_text_chars)
        )
        fields = self.extractor.extract(supplier.id if supplier else None, raw_text)
        state = IntakeState.RESOLVED if supplier else IntakeState.SCAN_DETECTED
        logger.info(
            f"Scanned document '{file_name}' taken in: {len(fields)} field(s), "
            f"supplier: {supplier.id if supplier else 'unknown'}"
        )

        invoice_date = fields.get(FieldName.INVOICE_DATE)
        return ExtractionResult(
            fields=fields,
            supplier=self._suggestion(supplier),
            raw_text=raw_text,
            is_structured=False,
            state=state,
            invoice_number=fields.get(FieldName.INVOICE_NUMBER),
            invoice_date=parse_date(invoice_date) if invoice_date else None,
            amount_net=_to_decimal(fields.get(FieldName.AMOUNT_NET)),
            amount_gross=_to_decimal(fields.get(FieldName.AMOUNT_GROSS)),
            tax_rate=_to_decimal(fields.get(FieldName.TAX_RATE)),
            iban=fields.get(FieldName.IBAN),
        )

    @staticmethod
    def _suggestion(supplier: Supplier | None) -> SupplierSuggestion | None:
        if supplier is None:
            return None
        return SupplierSuggestion(supplier_id=supplier.id, name=supplier.name)

    def learn(
        self,
        supplier_id: str,
        field_name: FieldName,
        raw_text: str,
        confirmed_value: str,
    ) -> SupplierPattern | None:
        """Learn one confirmed field value (see PatternLearner.learn)."""
        return self.learner.learn(supplier_id, field_name, raw_text, confirmed_value)

    def learn_confirmed(
        self,
        supplier_id: str,
        raw_text: str,
        confirmed: Mapping[FieldName, ConfirmedValue],
    ) -> list[SupplierPattern]:
        """Learn every field of a document the user confirmed.

        Empty values are skipped, and so are zero amounts and tax rates: a
        zero is the form default, not something read off the document.

        Args:
            supplier_id: Supplier the document belongs to
            raw_text: Original OCR text of the document
            confirmed: Confirmed values keyed by field name

        Returns:
            Patterns that were stored
        """
        if not raw_text or not raw_text.strip():
            return []

        learned: list[SupplierPattern] = []
        for key, value in confirmed.items():
            field_name = FieldName(key)
            canonical = _to_canonical(field_name, value)
            if not canonical:
                continue
            if field_name.is_amount and _to_decimal(canonical) == 0:
                continue

            stored = self.learner.learn(supplier_id, field_name, raw_text, canonical)
            if stored is not None:
                learned.append(stored)

        logger.info(f"Learned {len(learned)} pattern(s) for supplier {supplier_id}")
        return learned
