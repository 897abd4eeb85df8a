"""Interface for structured electronic invoice parsers.

A structured parser reads machine-readable invoices deterministically; when it
declines a file the pipeline falls through to OCR.
"""

from typing import Protocol

from intake.extraction.schema import StructuredInvoice


class StructuredParseError(ValueError):
    """The file is not a readable structured invoice."""


class StructuredInvoiceParser(Protocol):
    """Protocol for structured invoice parsers."""

    def can_parse(self, content: bytes, file_name: str) -> bool:
        """Check if the file carries a readable structured invoice."""
        ...

    def parse(self, content: bytes, file_name: str) -> StructuredInvoice:
        """Parse the file into canonical invoice fields.

        Raises:
            StructuredParseError: If the file cannot be read as a structured invoice
        """
        ...
