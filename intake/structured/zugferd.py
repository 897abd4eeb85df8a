"""Parser for XRechnung, ZUGFeRD 2.x and Factur-X invoices.

Understands both EN 16931 syntaxes:
- UN/CEFACT Cross Industry Invoice (CII): ZUGFeRD 2.x, Factur-X, XRechnung CII
- OASIS UBL 2.1 Invoice: XRechnung UBL

Standalone ``.xml`` files are read directly; ``.pdf`` files are searched for an
embedded invoice XML attachment (PDF/A-3 hybrid invoices).

Based on:
- pikepdf attachments: https://pikepdf.readthedocs.io/en/latest/topics/attachments.html
- XRechnung / EN 16931 syntax bindings: https://xeinkauf.de/xrechnung/
"""

import hashlib
import io
import logging
import threading
import xml.etree.ElementTree as ET
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

import pikepdf

from intake.extraction.normalizers import parse_decimal
from intake.extraction.schema import StructuredInvoice, StructuredLineItem
from intake.structured.base import StructuredParseError

logger = logging.getLogger(__name__)

CII_NS = {
    "rsm": "urn:un:unece:uncefact:data:standard:CrossIndustryInvoice:100",
    "ram": "urn:un:unece:uncefact:data:standard:ReusableAggregateBusinessInformationEntity:100",
    "udt": "urn:un:unece:uncefact:data:standard:UnqualifiedDataType:100",
}

UBL_NS = {
    "inv": "urn:oasis:names:specification:ubl:schema:xsd:Invoice-2",
    "cac": "urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2",
    "cbc": "urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2",
}

# Attachment names used by the hybrid PDF standards
XML_ATTACHMENT_HINTS = ("factur-x", "facturx", "zugferd", "xrechnung")


def _text(element: ET.Element | None, path: str, ns: dict[str, str]) -> str | None:
    if element is None:
        return None
    found = element.find(path, ns)
    if found is None or found.text is None:
        return None
    value = found.text.strip()
    return value or None


def _decimal(value: str | None) -> Decimal | None:
    if value is None:
        return None
    return parse_decimal(value)


def _first_decimal(*values: str | None) -> Decimal | None:
    """First value that parses as a decimal; a zero total counts as present."""
    for value in values:
        amount = _decimal(value)
        if amount is not None:
            return amount
    return None


def _cii_date(element: ET.Element | None, path: str) -> date | None:
    """Read a udt:DateTimeString (format 102 = yyyyMMdd)."""
    value = _text(element, path, CII_NS)
    if value is None:
        return None
    for fmt in ("%Y%m%d", "%Y-%m-%d"):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def _iso_date(value: str | None) -> date | None:
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


class ZugferdInvoiceParser:
    """Structured invoice parser for CII and UBL documents.

    The last successful parse is kept, keyed by content digest and file name,
    so the usual can_parse() then parse() sequence reads a PDF only once.
    """

    def __init__(self) -> None:
        """Initialize parser with an empty last-parse cache."""
        self._lock = threading.Lock()
        self._last: tuple[tuple[str, str], StructuredInvoice] | None = None

    def can_parse(self, content: bytes, file_name: str) -> bool:
        """Check if the file is a structured invoice with an invoice number.

        Args:
            content: File content
            file_name: Original file name (.xml or .pdf)

        Returns:
            True if parse() would succeed
        """
        try:
            invoice = self.parse(content, file_name)
        except StructuredParseError as e:
            logger.debug(f"'{file_name}' is not a structured invoice: {e}")
            return False
        return bool(invoice.invoice_number)

    def parse(self, content: bytes, file_name: str) -> StructuredInvoice:
        """Parse a structured invoice.

        Args:
            content: File content
            file_name: Original file name (.xml or .pdf)

        Returns:
            StructuredInvoice with seller, header, totals and line items

        Raises:
            StructuredParseError: If no invoice XML can be read
        """
        key = (hashlib.sha256(content).hexdigest(), file_name)
        with self._lock:
            if self._last is not None and self._last[0] == key:
                return self._last[1].model_copy(deep=True)

        invoice = self._parse_uncached(content, file_name)
        with self._lock:
            self._last = (key, invoice)
        return invoice

    def _parse_uncached(self, content: bytes, file_name: str) -> StructuredInvoice:
        extension = Path(file_name).suffix.lower()

        if extension == ".pdf":
            xml_bytes = self._extract_embedded_xml(content)
        elif extension == ".xml":
            xml_bytes = content
        else:
            raise StructuredParseError(f"Unsupported file type: {extension or '(none)'}")

        try:
            root = ET.fromstring(xml_bytes)
        except ET.ParseError as e:
            raise StructuredParseError(f"Invalid XML: {e}") from e

        if root.tag == f"{{{CII_NS['rsm']}}}CrossIndustryInvoice":
            invoice = self._map_cii(root)
        elif root.tag == f"{{{UBL_NS['inv']}}}Invoice":
            invoice = self._map_ubl(root)
        else:
            raise StructuredParseError(f"Unknown invoice root element: {root.tag}")

        logger.info(
            f"Parsed structured invoice {invoice.invoice_number}, "
            f"supplier: {invoice.supplier_name}, gross: {invoice.amount_gross}"
        )
        return invoice

    def _extract_embedded_xml(self, content: bytes) -> bytes:
        """Return the invoice XML attached to a hybrid PDF.

        Raises:
            StructuredParseError: If the PDF is unreadable or carries no invoice XML
        """
        try:
            with pikepdf.open(io.BytesIO(content)) as pdf:
                for name, spec in pdf.attachments.items():
                    lname = name.lower()
                    if lname.endswith(".xml") or any(hint in lname for hint in XML_ATTACHMENT_HINTS):
                        data = spec.get_file().read_bytes()
                        if b"Invoice" in data:
                            return data
        except pikepdf.PdfError as e:
            raise StructuredParseError(f"Unreadable PDF: {e}") from e

        raise StructuredParseError("PDF carries no embedded invoice XML")

    def _map_cii(self, root: ET.Element) -> StructuredInvoice:
        ns = CII_NS
        document = root.find("rsm:ExchangedDocument", ns)
        transaction = root.find("rsm:SupplyChainTradeTransaction", ns)
        if transaction is None:
            raise StructuredParseError("CII invoice without SupplyChainTradeTransaction")

        seller = transaction.find("ram:ApplicableHeaderTradeAgreement/ram:SellerTradeParty", ns)
        settlement = transaction.find("ram:ApplicableHeaderTradeSettlement", ns)
        totals = (
            settlement.find("ram:SpecifiedTradeSettlementHeaderMonetarySummation", ns)
            if settlement is not None
            else None
        )
        payment_means = (
            settlement.find("ram:SpecifiedTradeSettlementPaymentMeans", ns)
            if settlement is not None
            else None
        )

        invoice = StructuredInvoice(
            invoice_number=_text(document, "ram:ID", ns),
            invoice_date=_cii_date(document, "ram:IssueDateTime/udt:DateTimeString"),
            due_date=_cii_date(
                settlement, "ram:SpecifiedTradePaymentTerms/ram:DueDateDateTime/udt:DateTimeString"
            ),
            supplier_name=_text(seller, "ram:Name", ns),
            supplier_address=_text(seller, "ram:PostalTradeAddress/ram:LineOne", ns),
            supplier_postal_code=_text(seller, "ram:PostalTradeAddress/ram:PostcodeCode", ns),
            supplier_city=_text(seller, "ram:PostalTradeAddress/ram:CityName", ns),
            supplier_country=_text(seller, "ram:PostalTradeAddress/ram:CountryID", ns),
            supplier_tax_id=self._cii_tax_id(seller),
            supplier_email=_text(
                seller, "ram:DefinedTradeContact/ram:EmailURIUniversalCommunication/ram:URIID", ns
            )
            or _text(seller, "ram:URIUniversalCommunication/ram:URIID", ns),
            supplier_iban=_text(payment_means, "ram:PayeePartyCreditorFinancialAccount/ram:IBANID", ns),
            supplier_bic=_text(
                payment_means, "ram:PayeeSpecifiedCreditorFinancialInstitution/ram:BICID", ns
            ),
            amount_net=_first_decimal(
                _text(totals, "ram:LineTotalAmount", ns),
                _text(totals, "ram:TaxBasisTotalAmount", ns),
            ),
            amount_tax=_decimal(_text(totals, "ram:TaxTotalAmount", ns)),
            amount_gross=_first_decimal(
                _text(totals, "ram:GrandTotalAmount", ns),
                _text(totals, "ram:DuePayableAmount", ns),
            ),
            tax_rate=_decimal(_text(settlement, "ram:ApplicableTradeTax/ram:RateApplicablePercent", ns)),
        )

        for line in transaction.findall("ram:IncludedSupplyChainTradeLineItem", ns):
            quantity = line.find("ram:SpecifiedLineTradeDelivery/ram:BilledQuantity", ns)
            invoice.line_items.append(
                StructuredLineItem(
                    description=_text(line, "ram:SpecifiedTradeProduct/ram:Name", ns),
                    quantity=_decimal(quantity.text if quantity is not None else None) or Decimal("0"),
                    unit_code=quantity.get("unitCode") if quantity is not None else None,
                    unit_price=_decimal(
                        _text(
                            line,
                            "ram:SpecifiedLineTradeAgreement/ram:NetPriceProductTradePrice/ram:ChargeAmount",
                            ns,
                        )
                    )
                    or Decimal("0"),
                    net_amount=_decimal(
                        _text(
                            line,
                            "ram:SpecifiedLineTradeSettlement/"
                            "ram:SpecifiedTradeSettlementLineMonetarySummation/ram:LineTotalAmount",
                            ns,
                        )
                    )
                    or Decimal("0"),
                    tax_percent=_decimal(
                        _text(
                            line,
                            "ram:SpecifiedLineTradeSettlement/ram:ApplicableTradeTax/ram:RateApplicablePercent",
                            ns,
                        )
                    )
                    or Decimal("0"),
                )
            )

        return invoice

    @staticmethod
    def _cii_tax_id(seller: ET.Element | None) -> str | None:
        """VAT registration (scheme VA) preferred, else the first registration."""
        if seller is None:
            return None
        registrations = seller.findall("ram:SpecifiedTaxRegistration/ram:ID", CII_NS)
        values = [(r.get("schemeID"), (r.text or "").strip()) for r in registrations if r.text]
        for scheme, value in values:
            if scheme == "VA" and value:
                return value
        return values[0][1] if values else None

    def _map_ubl(self, root: ET.Element) -> StructuredInvoice:
        ns = UBL_NS
        party = root.find("cac:AccountingSupplierParty/cac:Party", ns)
        totals = root.find("cac:LegalMonetaryTotal", ns)
        payment_means = root.find("cac:PaymentMeans", ns)

        invoice = StructuredInvoice(
            invoice_number=_text(root, "cbc:ID", ns),
            invoice_date=_iso_date(_text(root, "cbc:IssueDate", ns)),
            due_date=_iso_date(_text(root, "cbc:DueDate", ns))
            or _iso_date(_text(root, "cac:PaymentTerms/cbc:PaymentDueDate", ns)),
            supplier_name=_text(party, "cac:PartyName/cbc:Name", ns)
            or _text(party, "cac:PartyLegalEntity/cbc:RegistrationName", ns),
            supplier_address=_text(party, "cac:PostalAddress/cbc:StreetName", ns),
            supplier_postal_code=_text(party, "cac:PostalAddress/cbc:PostalZone", ns),
            supplier_city=_text(party, "cac:PostalAddress/cbc:CityName", ns),
            supplier_country=_text(party, "cac:PostalAddress/cac:Country/cbc:IdentificationCode", ns),
            supplier_tax_id=self._ubl_tax_id(party),
            supplier_email=_text(party, "cac:Contact/cbc:ElectronicMail", ns),
            supplier_iban=_text(payment_means, "cac:PayeeFinancialAccount/cbc:ID", ns),
            supplier_bic=_text(
                payment_means, "cac:PayeeFinancialAccount/cac:FinancialInstitutionBranch/cbc:ID", ns
            ),
            amount_net=_first_decimal(
                _text(totals, "cbc:LineExtensionAmount", ns),
                _text(totals, "cbc:TaxExclusiveAmount", ns),
            ),
            amount_tax=_decimal(_text(root, "cac:TaxTotal/cbc:TaxAmount", ns)),
            amount_gross=_first_decimal(
                _text(totals, "cbc:TaxInclusiveAmount", ns),
                _text(totals, "cbc:PayableAmount", ns),
            ),
            tax_rate=_decimal(
                _text(root, "cac:TaxTotal/cac:TaxSubtotal/cac:TaxCategory/cbc:Percent", ns)
            ),
        )

        for line in root.findall("cac:InvoiceLine", ns):
            quantity = line.find("cbc:InvoicedQuantity", ns)
            invoice.line_items.append(
                StructuredLineItem(
                    description=_text(line, "cac:Item/cbc:Name", ns),
                    quantity=_decimal(quantity.text if quantity is not None else None) or Decimal("0"),
                    unit_code=quantity.get("unitCode") if quantity is not None else None,
                    unit_price=_decimal(_text(line, "cac:Price/cbc:PriceAmount", ns)) or Decimal("0"),
                    net_amount=_decimal(_text(line, "cbc:LineExtensionAmount", ns)) or Decimal("0"),
                    tax_percent=_decimal(
                        _text(line, "cac:Item/cac:ClassifiedTaxCategory/cbc:Percent", ns)
                    )
                    or Decimal("0"),
                )
            )

        return invoice

    @staticmethod
    def _ubl_tax_id(party: ET.Element | None) -> str | None:
        """VAT scheme registration preferred, else the first PartyTaxScheme."""
        if party is None:
            return None
        schemes = party.findall("cac:PartyTaxScheme", UBL_NS)
        values = [
            (_text(s, "cac:TaxScheme/cbc:ID", UBL_NS), _text(s, "cbc:CompanyID", UBL_NS))
            for s in schemes
        ]
        values = [(scheme, value) for scheme, value in values if value]
        for scheme, value in values:
            if scheme == "VAT":
                return value
        return values[0][1] if values else None
