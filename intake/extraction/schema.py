"""Data models for document intake and field extraction.

Canonical string forms used throughout the pipeline:
- amounts and tax rates: invariant decimal strings ("1234.56")
- dates: ISO 8601 ("2024-03-05")
"""

from datetime import date
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class FieldName(str, Enum):
    """Closed set of fields the pipeline can extract and learn."""

    INVOICE_NUMBER = "InvoiceNumber"
    INVOICE_DATE = "InvoiceDate"
    AMOUNT_NET = "AmountNet"
    AMOUNT_GROSS = "AmountGross"
    TAX_RATE = "TaxRate"
    IBAN = "Iban"

    @property
    def is_amount(self) -> bool:
        """Whether values of this field go through amount normalization."""
        return self in (FieldName.AMOUNT_NET, FieldName.AMOUNT_GROSS, FieldName.TAX_RATE)

    @property
    def is_date(self) -> bool:
        """Whether values of this field go through date normalization."""
        return self is FieldName.INVOICE_DATE


class IntakeState(str, Enum):
    """Classification states of a single intake call."""

    UNCLASSIFIED = "unclassified"
    STRUCTURED_DETECTED = "structured_detected"
    SCAN_DETECTED = "scan_detected"
    RESOLVED = "resolved"


class StructuredLineItem(BaseModel):
    """A single invoice line from a structured electronic invoice."""

    description: str | None = None
    quantity: Decimal = Decimal("0")
    unit_code: str | None = None
    unit_price: Decimal = Decimal("0")
    net_amount: Decimal = Decimal("0")
    tax_percent: Decimal = Decimal("0")


class StructuredInvoice(BaseModel):
    """Canonical fields read from a structured electronic invoice.

    Schema follows the seller/header/totals split of EN 16931
    (XRechnung, ZUGFeRD, Factur-X).
    """

    # Supplier (seller) information
    supplier_name: str | None = Field(None, description="Seller trade name")
    supplier_address: str | None = Field(None, description="Seller street line")
    supplier_postal_code: str | None = None
    supplier_city: str | None = None
    supplier_country: str | None = Field(None, description="ISO 3166-1 alpha-2 code")
    supplier_tax_id: str | None = Field(None, description="VAT or tax registration number")
    supplier_iban: str | None = None
    supplier_bic: str | None = None
    supplier_email: str | None = None

    # Invoice header
    invoice_number: str | None = None
    invoice_date: date | None = None
    due_date: date | None = None

    # Totals
    amount_net: Decimal | None = None
    tax_rate: Decimal | None = None
    amount_tax: Decimal | None = None
    amount_gross: Decimal | None = None

    line_items: list[StructuredLineItem] = Field(default_factory=list)


class SupplierSuggestion(BaseModel):
    """Supplier the pipeline believes issued the document."""

    supplier_id: str
    name: str


class ExtractionResult(BaseModel):
    """Outcome of one intake call.

    Attributes:
        fields: Canonical field values keyed by field name
        supplier: Suggested supplier, if one could be resolved
        raw_text: OCR text (kept so later learning has something to search)
        is_structured: Whether the document was read as a structured invoice
        structured_data: Full structured invoice on the structured path
        state: Final classification state
    """

    fields: dict[FieldName, str] = Field(default_factory=dict)
    supplier: SupplierSuggestion | None = None
    raw_text: str = ""
    is_structured: bool = False
    structured_data: StructuredInvoice | None = None
    state: IntakeState = IntakeState.UNCLASSIFIED

    # Typed convenience values
    invoice_number: str | None = None
    invoice_date: date | None = None
    due_date: date | None = None
    amount_net: Decimal | None = None
    amount_gross: Decimal | None = None
    amount_tax: Decimal | None = None
    tax_rate: Decimal | None = None
    iban: str | None = None
