"""Supplier identity resolution.

Structured invoices are matched tax id -> IBAN -> name, first hit wins.
OCR text is matched by supplier name occurring anywhere in the text.
"""

import logging

from intake.extraction.schema import StructuredInvoice
from intake.suppliers.directory import Supplier, SupplierDirectory

logger = logging.getLogger(__name__)


class SupplierResolver:
    """Matches documents to known suppliers."""

    def __init__(self, directory: SupplierDirectory) -> None:
        """Initialize supplier resolver.

        Args:
            directory: Supplier directory to search
        """
        self.directory = directory

    def resolve_structured(self, invoice: StructuredInvoice) -> Supplier | None:
        """Resolve the seller of a structured invoice.

        Args:
            invoice: Canonical structured invoice fields

        Returns:
            First supplier matched by tax id, then IBAN, then name; else None
        """
        if invoice.supplier_tax_id:
            supplier = self.directory.find_by_tax_id(invoice.supplier_tax_id)
            logger.info(
                f"Supplier lookup by tax id {invoice.supplier_tax_id}: "
                f"{supplier.id if supplier else 'no match'}"
            )
            if supplier is not None:
                return supplier

        if invoice.supplier_iban:
            supplier = self.directory.find_by_iban(invoice.supplier_iban)
            logger.info(
                f"Supplier lookup by IBAN {invoice.supplier_iban}: "
                f"{supplier.id if supplier else 'no match'}"
            )
            if supplier is not None:
                return supplier

        if invoice.supplier_name:
            supplier = self.directory.find_by_name(invoice.supplier_name)
            logger.info(
                f"Supplier lookup by name '{invoice.supplier_name}': "
                f"{supplier.id if supplier else 'no match'}"
            )
            if supplier is not None:
                return supplier

        return None

    def resolve_from_text(self, text: str) -> Supplier | None:
        """Find the first supplier whose name occurs in OCR text.

        Matching is case-insensitive; with several candidates the first one
        in directory order wins.

        Args:
            text: OCR text of the document

        Returns:
            Matched supplier or None
        """
        if not text:
            return None

        haystack = text.casefold()
        for supplier in self.directory.all():
            name = supplier.name.strip().casefold()
            if name and name in haystack:
                logger.info(f"Supplier '{supplier.name}' ({supplier.id}) found in OCR text")
                return supplier

        return None
