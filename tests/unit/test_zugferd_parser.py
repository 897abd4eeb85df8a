"""Unit tests for the XRechnung / ZUGFeRD / Factur-X parser."""

import io
from datetime import date
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

import pikepdf
import pytest

from intake.structured.base import StructuredParseError
from intake.structured.zugferd import ZugferdInvoiceParser

FIXTURES = Path(__file__).parent.parent / "fixtures"


@pytest.fixture
def parser() -> ZugferdInvoiceParser:
    """Create parser instance."""
    return ZugferdInvoiceParser()


@pytest.fixture
def cii_xml() -> bytes:
    """Load a Factur-X (CII) invoice."""
    return (FIXTURES / "factur-x.xml").read_bytes()


@pytest.fixture
def ubl_xml() -> bytes:
    """Load an XRechnung (UBL) invoice."""
    return (FIXTURES / "xrechnung-ubl.xml").read_bytes()


def _hybrid_pdf(xml: bytes | None, attachment_name: str = "factur-x.xml") -> bytes:
    """Build a one-page PDF, optionally with an embedded invoice XML."""
    pdf = pikepdf.new()
    pdf.add_blank_page()
    if xml is not None:
        pdf.attachments[attachment_name] = pikepdf.AttachedFileSpec(
            pdf, xml, mime_type="text/xml"
        )
    buffer = io.BytesIO()
    pdf.save(buffer)
    return buffer.getvalue()


class TestCrossIndustryInvoice:
    """Test CII mapping."""

    def test_header_and_totals(self, parser: ZugferdInvoiceParser, cii_xml: bytes) -> None:
        """Header, totals and tax rate are mapped."""
        invoice = parser.parse(cii_xml, "invoice.xml")

        assert invoice.invoice_number == "RE-2024-001"
        assert invoice.invoice_date == date(2024, 3, 5)
        assert invoice.due_date == date(2024, 4, 4)
        assert invoice.amount_net == Decimal("1000.00")
        assert invoice.amount_tax == Decimal("190.00")
        assert invoice.amount_gross == Decimal("1190.00")
        assert invoice.tax_rate == Decimal("19")

    def test_seller(self, parser: ZugferdInvoiceParser, cii_xml: bytes) -> None:
        """Seller data is mapped; the VAT registration wins over the tax number."""
        invoice = parser.parse(cii_xml, "invoice.xml")

        assert invoice.supplier_name == "Papier Müller GmbH"
        assert invoice.supplier_address == "Marienplatz 1"
        assert invoice.supplier_postal_code == "80331"
        assert invoice.supplier_city == "München"
        assert invoice.supplier_country == "DE"
        assert invoice.supplier_tax_id == "DE123456789"
        assert invoice.supplier_iban == "DE89370400440532013000"
        assert invoice.supplier_bic == "COBADEFFXXX"
        assert invoice.supplier_email == "rechnung@papier-mueller.de"

    def test_line_items(self, parser: ZugferdInvoiceParser, cii_xml: bytes) -> None:
        """Line items carry quantity, unit, price and tax."""
        invoice = parser.parse(cii_xml, "invoice.xml")

        assert len(invoice.line_items) == 1
        item = invoice.line_items[0]
        assert item.description == "Druckerpapier A4"
        assert item.quantity == Decimal("200")
        assert item.unit_code == "H87"
        assert item.unit_price == Decimal("5.00")
        assert item.net_amount == Decimal("1000.00")
        assert item.tax_percent == Decimal("19")

    def test_gross_falls_back_to_due_payable(
        self, parser: ZugferdInvoiceParser, cii_xml: bytes
    ) -> None:
        """Without a grand total the due payable amount is used."""
        xml = cii_xml.replace(
            b"<ram:GrandTotalAmount>1190.00</ram:GrandTotalAmount>", b""
        ).replace(b"<ram:DuePayableAmount>1190.00", b"<ram:DuePayableAmount>1189.99")

        invoice = parser.parse(xml, "invoice.xml")

        assert invoice.amount_gross == Decimal("1189.99")

    def test_zero_total_is_kept(self, parser: ZugferdInvoiceParser, cii_xml: bytes) -> None:
        """A zero grand total is a value, not a reason to fall back."""
        xml = cii_xml.replace(
            b"<ram:GrandTotalAmount>1190.00", b"<ram:GrandTotalAmount>0.00"
        )

        invoice = parser.parse(xml, "invoice.xml")

        assert invoice.amount_gross == Decimal("0.00")

    def test_exponent_amount_is_ignored(self, parser: ZugferdInvoiceParser, cii_xml: bytes) -> None:
        """Amounts in scientific notation are not accepted as totals."""
        xml = cii_xml.replace(
            b"<ram:GrandTotalAmount>1190.00", b"<ram:GrandTotalAmount>9e99999999999999"
        )

        invoice = parser.parse(xml, "invoice.xml")

        assert invoice.amount_gross == Decimal("1190.00")


class TestUblInvoice:
    """Test UBL mapping."""

    def test_mapping(self, parser: ZugferdInvoiceParser, ubl_xml: bytes) -> None:
        """UBL header, seller and totals are mapped."""
        invoice = parser.parse(ubl_xml, "xrechnung.xml")

        assert invoice.invoice_number == "UBL-77"
        assert invoice.invoice_date == date(2024, 6, 14)
        assert invoice.due_date == date(2024, 7, 14)
        assert invoice.supplier_name == "Nordlicht Logistik GmbH"
        assert invoice.supplier_tax_id == "DE 987 654 321"
        assert invoice.supplier_iban == "DE02120300000000202051"
        assert invoice.supplier_city == "Hamburg"
        assert invoice.amount_net == Decimal("200.00")
        assert invoice.amount_tax == Decimal("14.00")
        assert invoice.amount_gross == Decimal("214.00")
        assert invoice.tax_rate == Decimal("7")
        assert invoice.line_items[0].unit_code == "HUR"
        assert invoice.line_items[0].unit_price == Decimal("50.00")

    def test_zero_tax_inclusive_total_is_kept(
        self, parser: ZugferdInvoiceParser, ubl_xml: bytes
    ) -> None:
        """A zero TaxInclusiveAmount does not fall back to PayableAmount."""
        xml = ubl_xml.replace(
            b"<cbc:TaxInclusiveAmount currencyID=\"EUR\">214.00",
            b"<cbc:TaxInclusiveAmount currencyID=\"EUR\">0.00",
        )

        invoice = parser.parse(xml, "xrechnung.xml")

        assert invoice.amount_gross == Decimal("0.00")


class TestEmbeddedXml:
    """Test hybrid PDF handling."""

    def test_pdf_with_embedded_xml(self, parser: ZugferdInvoiceParser, cii_xml: bytes) -> None:
        """The invoice XML attached to a PDF is parsed."""
        content = _hybrid_pdf(cii_xml)

        assert parser.can_parse(content, "Rechnung.PDF") is True
        assert parser.parse(content, "Rechnung.PDF").invoice_number == "RE-2024-001"

    def test_zugferd_attachment_name(self, parser: ZugferdInvoiceParser, cii_xml: bytes) -> None:
        """ZUGFeRD 2.x attachment naming is recognized."""
        content = _hybrid_pdf(cii_xml, attachment_name="zugferd-invoice.xml")

        assert parser.parse(content, "invoice.pdf").supplier_name == "Papier Müller GmbH"

    def test_plain_pdf_is_declined(self, parser: ZugferdInvoiceParser) -> None:
        """A PDF without an invoice attachment is not structured."""
        content = _hybrid_pdf(None)

        assert parser.can_parse(content, "scan.pdf") is False
        with pytest.raises(StructuredParseError, match="no embedded invoice XML"):
            parser.parse(content, "scan.pdf")

    def test_broken_pdf_is_declined(self, parser: ZugferdInvoiceParser) -> None:
        """Bytes that are not a PDF are declined, not raised."""
        assert parser.can_parse(b"not a pdf at all", "scan.pdf") is False

    def test_pdf_opened_once_for_check_and_parse(
        self, parser: ZugferdInvoiceParser, cii_xml: bytes
    ) -> None:
        """can_parse followed by parse reads the PDF attachment only once."""
        content = _hybrid_pdf(cii_xml)

        with patch.object(
            parser, "_extract_embedded_xml", wraps=parser._extract_embedded_xml
        ) as extract:
            assert parser.can_parse(content, "invoice.pdf") is True
            invoice = parser.parse(content, "invoice.pdf")

        assert invoice.invoice_number == "RE-2024-001"
        assert extract.call_count == 1

    def test_cached_parse_tracks_content(
        self, parser: ZugferdInvoiceParser, cii_xml: bytes, ubl_xml: bytes
    ) -> None:
        """A different document under the same name is parsed afresh."""
        assert parser.parse(cii_xml, "invoice.xml").invoice_number == "RE-2024-001"
        assert parser.parse(ubl_xml, "invoice.xml").invoice_number == "UBL-77"


class TestDeclined:
    """Test files the parser does not accept."""

    @pytest.mark.parametrize("file_name", ["scan.png", "invoice.docx", "noext"])
    def test_other_extensions(self, parser: ZugferdInvoiceParser, file_name: str) -> None:
        """Only .xml and .pdf are considered."""
        assert parser.can_parse(b"<x/>", file_name) is False

    def test_malformed_xml(self, parser: ZugferdInvoiceParser) -> None:
        """Malformed XML raises StructuredParseError from parse()."""
        with pytest.raises(StructuredParseError, match="Invalid XML"):
            parser.parse(b"<rsm:Cross", "invoice.xml")

    def test_unknown_root(self, parser: ZugferdInvoiceParser) -> None:
        """XML that is not an invoice is declined."""
        assert parser.can_parse(b"<order><id>1</id></order>", "order.xml") is False

    def test_missing_invoice_number(self, parser: ZugferdInvoiceParser, cii_xml: bytes) -> None:
        """An invoice without a number cannot be used as structured data."""
        xml = cii_xml.replace(b"<ram:ID>RE-2024-001</ram:ID>", b"<ram:ID></ram:ID>")

        assert parser.can_parse(xml, "invoice.xml") is False
