"""
Ledger Rule Tests
Testing: precision helpers, investor rollups, installment schedule, order ids
"""
from datetime import datetime
from decimal import Decimal

import pytest

from models import Payment
from ledger_core import order_ids
from ledger_core.financial_precision import (
    FinancialPrecisionError, NegativeValueError, calculate_commission_amount,
    to_decimal, to_float, validate_positive
)
from ledger_core.installment_schedule import (
    build_next_installment_payment, has_successor, months_for_term, next_due_date
)
from ledger_core.totals_recalculator import (
    extract_units_from_product_label, find_reconciliation_gaps,
    recompute_investor_totals, rollups_match_line_items
)


class TestFinancialPrecision:
    """Decimal helpers"""

    def test_float_conversion_avoids_binary_noise(self):
        assert to_decimal(0.1) + to_decimal(0.2) == Decimal("0.3")

    def test_none_is_zero(self):
        assert to_decimal(None) == Decimal("0")

    def test_bool_rejected(self):
        with pytest.raises(FinancialPrecisionError):
            to_decimal(True)

    def test_commission_rounds_half_up_to_whole_units(self):
        assert calculate_commission_amount(1000000, Decimal("0.02")) == Decimal("20000")
        assert calculate_commission_amount(1025, Decimal("0.02")) == Decimal("21")
        assert calculate_commission_amount(1024, Decimal("0.02")) == Decimal("20")

    def test_positive_validation(self):
        with pytest.raises(NegativeValueError):
            validate_positive(0, "amount")
        validate_positive("0.01", "amount")

    def test_to_float_rounds(self):
        assert to_float(Decimal("10.005")) == 10.01


class TestInvestorTotals:
    """Rollups derived from line items"""

    @pytest.mark.parametrize("label,units", [
        ("Paket Gaharu 10 Pohon", 10),
        ("Alpukat 1 pohon", 1),
        ("Kelapa 25 trees", 25),
        ("Aren 3 Units", 3),
        ("Gaharu Premium", 10),
        ("", 1),
        (None, 1),
    ])
    def test_units_from_label(self, label, units):
        assert extract_units_from_product_label(label) == units

    def test_recompute(self):
        investor = {
            "user_id": "u1",
            "total_capital": 999,
            "investments": [
                {"investment_id": "A", "product_ref": "Gaharu 10 Pohon", "total_amount": 10000000, "amount_paid": 10000000},
                {"investment_id": "B", "product_ref": "Alpukat 5 Pohon", "total_amount": 12000000, "amount_paid": 3000000},
            ],
        }

        recompute_investor_totals(investor)

        assert investor["total_capital"] == 22000000
        assert investor["total_paid_in"] == 13000000
        assert investor["asset_count"] == 15
        assert rollups_match_line_items(investor)

    def test_empty_investor(self):
        investor = recompute_investor_totals({"user_id": "u1"})
        assert investor["total_capital"] == 0
        assert investor["total_paid_in"] == 0
        assert investor["asset_count"] == 0

    def test_stale_rollups_detected(self):
        investor = {
            "total_capital": 1,
            "total_paid_in": 1,
            "investments": [{"total_amount": 5, "amount_paid": 5}],
        }
        assert not rollups_match_line_items(investor)

    def test_overpayment_reported(self):
        investor = {"investments": [
            {"investment_id": "A", "total_amount": 1000, "amount_paid": 1500},
            {"investment_id": "B", "total_amount": 1000, "amount_paid": 1000},
        ]}
        gaps = find_reconciliation_gaps(investor)
        assert len(gaps) == 1
        assert "Investment A" in gaps[0]


class TestInstallmentSchedule:
    """Term months and successor payments"""

    def test_term_months(self):
        assert months_for_term("monthly") == 1
        assert months_for_term("quarterly") == 3
        assert months_for_term("semiannual") == 6
        assert months_for_term("annual") == 12
        assert months_for_term("fortnightly") == 1
        assert months_for_term(None) == 1

    def test_next_due_date_clamps_month_end(self):
        assert next_due_date(datetime(2026, 1, 31), "monthly") == datetime(2026, 2, 28)
        assert next_due_date(datetime(2028, 1, 31), "monthly") == datetime(2028, 2, 29)

    def test_next_due_date_quarterly(self):
        assert next_due_date(datetime(2026, 11, 15), "quarterly") == datetime(2027, 2, 15)

    def test_successor_bounds(self):
        assert has_successor({"installment_number": 1, "total_installments": 12})
        assert not has_successor({"installment_number": 12, "total_installments": 12})
        assert not has_successor({"installment_number": 1})

    def test_next_payment_document(self):
        payment = {
            "order_id": "CIC-1",
            "user_id": "u1",
            "amount": 1000000,
            "kind": "installment",
            "chain_id": "CHAIN-1",
            "installment_number": 4,
            "total_installments": 12,
            "installment_amount": 1000000,
            "payment_term": "monthly",
            "product_ref": "Gaharu 10 Pohon",
            "product_id": "p1",
            "referral_code": "AGT01",
            "payment_method": "transfer",
            "proof_ref": "proof.jpg",
            "processed": True,
        }

        successor = build_next_installment_payment(payment, "CIC-2", datetime(2026, 5, 1))

        assert successor["order_id"] == "CIC-2"
        assert successor["installment_number"] == 5
        assert successor["amount"] == 1000000
        assert successor["status"] == "pending"
        assert successor["processed"] is False
        assert successor["referral_code"] == "AGT01"
        assert successor["payment_method"] == "transfer"
        assert "proof_ref" not in successor
        assert Payment(**successor).kind == "installment"


class TestOrderIds:
    """Order id format and determinism"""

    def test_installment_format(self):
        order_id = order_ids.generate_order_id(
            "Gaharu 10 Pohon", "installment", "CHAIN-1", 2, issued_at=datetime(2026, 1, 15)
        )
        assert order_id.startswith(f"CIC-INV-{order_ids.COMPANY_CODE}-260115-GHR-FIN-02-")
        assert order_ids.validate_order_id(order_id)

    def test_full_format(self):
        order_id = order_ids.generate_order_id(
            "Alpukat 5 Pohon", "full", "CTR-9", issued_at=datetime(2026, 3, 1)
        )
        assert order_id.startswith(f"INV-{order_ids.COMPANY_CODE}-260301-ALP-FIN-01-")
        assert order_ids.validate_order_id(order_id)

    def test_suffix_is_deterministic(self):
        first = order_ids.generate_order_id("Aren", "installment", "CHAIN-1", 3, issued_at=datetime(2026, 1, 1))
        again = order_ids.generate_order_id("Aren", "installment", "CHAIN-1", 3, issued_at=datetime(2026, 1, 1))
        other = order_ids.generate_order_id("Aren", "installment", "CHAIN-1", 4, issued_at=datetime(2026, 1, 1))
        assert first == again
        assert first[-4:] == order_ids.content_suffix("CHAIN-1", 3)
        assert first != other

    def test_attempt_draws_another_suffix(self):
        issued_at = datetime(2026, 1, 1)
        base = order_ids.generate_order_id("Aren", "installment", "CHAIN-1", 2, issued_at=issued_at)
        retry = order_ids.generate_order_id("Aren", "installment", "CHAIN-1", 2, issued_at=issued_at, attempt=1)

        assert order_ids.generate_order_id(
            "Aren", "installment", "CHAIN-1", 2, issued_at=issued_at, attempt=0
        ) == base
        assert retry[-4:] == order_ids.content_suffix("CHAIN-1", 2, attempt=1)
        assert retry[:-4] == base[:-4]
        assert order_ids.validate_order_id(retry)

    def test_unknown_product_code(self):
        assert order_ids.product_code("Durian Musang") == "DUR"
        assert order_ids.product_code(None) == "INV"

    def test_rejects_malformed(self):
        assert not order_ids.validate_order_id("INV-1234")
