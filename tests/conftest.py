"""
Shared fixtures: a small dataset that passes every seeded check.
"""

import pytest

from einvoice_qc.context import DataContext


@pytest.fixture
def clean_header() -> dict:
    return {
        "invoice_id": "h1",
        "invoice_number": "INV-001",
        "issue_date": "2025-01-15",
        "invoice_type": "380",
        "currency": "AED",
        "spec_id": "urn:peppol:pint:billing-1@ae-1",
        "business_process": "urn:peppol:bis:billing",
        "seller_name": "Acme Trading LLC",
        "seller_trn": "100000000000003",
        "seller_electronic_address": "0235:100000000000003",
        "seller_address": "1 Sheikh Zayed Road",
        "seller_city": "Dubai",
        "seller_country": "AE",
        "seller_subdivision": "AE-DU",
        "buyer_id": "b1",
        "total_excl_vat": 300,
        "vat_total": 15,
        "total_incl_vat": 315,
        "amount_due": 315,
        "payment_due_date": "2025-02-14",
        "tax_category_code": "S",
        "tax_category_rate": 5,
    }


@pytest.fixture
def clean_lines() -> list[dict]:
    return [
        {
            "invoice_id": "h1",
            "line_id": "l1",
            "line_number": 1,
            "quantity": 1,
            "unit_price": 100,
            "line_total_excl_vat": 100,
            "vat_rate": 5,
            "vat_amount": 5,
            "unit_of_measure": "EA",
            "tax_category_code": "S",
        },
        {
            "invoice_id": "h1",
            "line_id": "l2",
            "line_number": 2,
            "quantity": 2,
            "unit_price": 100,
            "line_total_excl_vat": 200,
            "vat_rate": 5,
            "vat_amount": 10,
            "unit_of_measure": "EA",
            "tax_category_code": "S",
        },
    ]


@pytest.fixture
def clean_buyer() -> dict:
    return {
        "buyer_id": "b1",
        "buyer_name": "Beta Foods LLC",
        "buyer_trn": "100000000000011",
        "buyer_electronic_address": "0235:100000000000011",
        "buyer_address": "22 Corniche Road",
        "buyer_country": "AE",
    }


@pytest.fixture
def clean_context(clean_header, clean_lines, clean_buyer) -> DataContext:
    return DataContext.build(headers=[clean_header], lines=clean_lines, buyers=[clean_buyer])
