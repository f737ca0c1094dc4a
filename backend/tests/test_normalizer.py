"""
Unit tests for the invoice extraction normalizer.

Tests convert raw ExtractedInvoice (Claude AI output) into InvoiceFields
checked against the allow-lists of the invoices table.
"""

import pytest
from inboxsync.models.document import ExtractedInvoice, InvoiceFields
from inboxsync.services.normalizer import (
    parse_monetary_value,
    normalize_date,
    normalize_category,
    normalize_business_type,
    normalize_document_type,
    correct_business_type,
    normalize_extracted_invoice,
)


# ---------------------------------------------------------------------------
# parse_monetary_value
# ---------------------------------------------------------------------------

class TestParseMonetaryValue:
    """Tests for amount -> float conversion."""

    def test_shekel_amount_with_commas(self):
        assert parse_monetary_value("₪1,180.00") == 1180.0

    def test_amount_with_currency_label(self):
        assert parse_monetary_value("1180 ILS") == 1180.0

    def test_bare_integer(self):
        assert parse_monetary_value(1180) == 1180.0

    def test_bare_float(self):
        assert parse_monetary_value(99.9) == 99.9

    def test_none_returns_none(self):
        assert parse_monetary_value(None) is None

    def test_empty_string_returns_none(self):
        assert parse_monetary_value("") is None

    def test_non_numeric_string_returns_none(self):
        assert parse_monetary_value("n/a") is None

    def test_bool_is_not_an_amount(self):
        assert parse_monetary_value(True) is None

    def test_negative_credit_amount(self):
        assert parse_monetary_value("-250.50") == -250.5


# ---------------------------------------------------------------------------
# normalize_date
# ---------------------------------------------------------------------------

class TestNormalizeDate:

    def test_iso_date_unchanged(self):
        assert normalize_date("2024-01-31") == "2024-01-31"

    def test_day_first_slash(self):
        assert normalize_date("31/01/2024") == "2024-01-31"

    def test_day_first_dot(self):
        assert normalize_date("31.01.2024") == "2024-01-31"

    def test_ambiguous_date_is_day_first(self):
        # Israeli invoices print DD/MM/YYYY
        assert normalize_date("02/03/2024") == "2024-03-02"

    def test_two_digit_year(self):
        assert normalize_date("31/01/24") == "2024-01-31"

    def test_month_name(self):
        assert normalize_date("January 31, 2024") == "2024-01-31"

    def test_unparsable_returns_none(self):
        assert normalize_date("January 2024") is None

    def test_none_returns_none(self):
        assert normalize_date(None) is None


# ---------------------------------------------------------------------------
# Allow-list normalization
# ---------------------------------------------------------------------------

class TestNormalizeCategory:

    def test_canonical_value_kept(self):
        assert normalize_category("Office expenses") == "Office expenses"

    def test_case_insensitive(self):
        assert normalize_category("office EXPENSES") == "Office expenses"

    def test_hebrew_label_mapped(self):
        assert normalize_category("שיווק ופרסום") == "Marketing & advertising"

    def test_unknown_becomes_other(self):
        assert normalize_category("Crypto mining") == "Other"

    def test_missing_becomes_other(self):
        assert normalize_category(None) == "Other"


class TestNormalizeBusinessType:

    def test_canonical_value_kept(self):
        assert normalize_business_type("Ltd company") == "Ltd company"

    def test_hebrew_exempt_dealer(self):
        assert normalize_business_type("עוסק פטור") == "VAT-exempt"

    def test_hebrew_company_with_gershayim(self):
        assert normalize_business_type("חברה בע\"מ") == "Ltd company"

    def test_unknown_returns_none(self):
        assert normalize_business_type("sole trader?") is None


class TestNormalizeDocumentType:

    def test_hebrew_tax_invoice(self):
        assert normalize_document_type("חשבונית מס") == "tax invoice"

    def test_hebrew_tax_invoice_receipt(self):
        assert normalize_document_type("חשבונית מס קבלה") == "tax invoice-receipt"

    def test_unknown_becomes_other(self):
        assert normalize_document_type("delivery note") == "other"

    def test_missing_returns_none(self):
        assert normalize_document_type(None) is None


# ---------------------------------------------------------------------------
# Business type correction
# ---------------------------------------------------------------------------

class TestCorrectBusinessType:

    def test_tax_invoice_from_exempt_dealer_is_corrected(self):
        assert correct_business_type("tax invoice", "VAT-exempt") == "VAT-liable individual"

    def test_tax_invoice_receipt_from_exempt_dealer_is_corrected(self):
        assert correct_business_type("tax invoice-receipt", "VAT-exempt") == "VAT-liable individual"

    def test_receipt_from_exempt_dealer_unchanged(self):
        assert correct_business_type("receipt", "VAT-exempt") == "VAT-exempt"

    def test_tax_invoice_from_company_unchanged(self):
        assert correct_business_type("tax invoice", "Ltd company") == "Ltd company"

    def test_missing_business_type_unchanged(self):
        assert correct_business_type("tax invoice", None) is None


# ---------------------------------------------------------------------------
# normalize_extracted_invoice
# ---------------------------------------------------------------------------

class TestNormalizeExtractedInvoice:

    def test_full_extraction(self):
        extracted = ExtractedInvoice(
            supplier_name="  Acme Ltd ",
            document_number="INV-1001",
            document_type="חשבונית מס",
            document_date="15/03/2024",
            amount_before_vat="1,000.00",
            vat_amount=170,
            total_amount="₪1,170",
            category="ציוד ומחשוב",
            business_type="חברה בע״מ",
        )

        result = normalize_extracted_invoice(extracted)

        assert isinstance(result, InvoiceFields)
        assert result.supplier_name == "Acme Ltd"
        assert result.document_number == "INV-1001"
        assert result.document_type == "tax invoice"
        assert result.document_date == "2024-03-15"
        assert result.amount_before_vat == 1000.0
        assert result.vat_amount == 170.0
        assert result.total_amount == 1170.0
        assert result.category == "Equipment & computing"
        assert result.business_type == "Ltd company"

    def test_exempt_dealer_tax_invoice_is_corrected(self):
        extracted = ExtractedInvoice(document_type="tax invoice", business_type="VAT-exempt")

        result = normalize_extracted_invoice(extracted)

        assert result.business_type == "VAT-liable individual"

    def test_empty_extraction(self):
        result = normalize_extracted_invoice(ExtractedInvoice())

        assert result.supplier_name is None
        assert result.total_amount is None
        assert result.document_type is None
        assert result.category == "Other"

    def test_numeric_document_number_is_kept_as_text(self):
        extracted = ExtractedInvoice(document_number=40213)

        result = normalize_extracted_invoice(extracted)

        assert result.document_number == "40213"

    def test_extra_fields_are_ignored(self):
        extracted = ExtractedInvoice(**{"supplier_name": "Acme", "confidence": 0.9})

        assert normalize_extracted_invoice(extracted).supplier_name == "Acme"
