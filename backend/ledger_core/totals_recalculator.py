"""
SETTLEMENT CORE - INVESTOR TOTALS RECALCULATOR

Rollups on the investor aggregate are a deterministic function of its
investment line items:

- total_capital = SUM(investments[].total_amount)
- total_paid_in = SUM(investments[].amount_paid)
- asset_count   = SUM(units parsed from investments[].product_ref)

recompute_investor_totals() is the ONLY place that assigns these fields.
It must run after every structural change to investor["investments"].
"""

from typing import Any, Dict, List, Optional
import logging
import re

from ledger_core.financial_precision import safe_sum, to_decimal, to_float

logger = logging.getLogger(__name__)

# Units sold in a package when the label carries no count
DEFAULT_PACKAGE_UNITS = 10

_UNIT_PATTERN = re.compile(r"(\d+)\s*(?:pohon|trees?|units?)\b", re.IGNORECASE)


def extract_units_from_product_label(product_ref: Optional[str]) -> int:
    """
    Number of asset units in a product label.

    "Paket Gaharu 10 Pohon" -> 10, "Alpukat 1 Pohon" -> 1.
    Missing label counts as a single unit; an unrecognised label counts as
    a standard package.
    """
    if not product_ref:
        return 1
    match = _UNIT_PATTERN.search(product_ref)
    if match:
        return int(match.group(1))
    return DEFAULT_PACKAGE_UNITS


def recompute_investor_totals(investor: Dict[str, Any]) -> Dict[str, Any]:
    """Recompute rollups in place from line items. Returns the same dict."""
    investments = investor.get("investments") or []

    total_capital = safe_sum(inv.get("total_amount", 0) for inv in investments)
    total_paid_in = safe_sum(inv.get("amount_paid", 0) for inv in investments)
    asset_count = sum(
        extract_units_from_product_label(inv.get("product_ref"))
        for inv in investments
    )

    investor["total_capital"] = to_float(total_capital)
    investor["total_paid_in"] = to_float(total_paid_in)
    investor["asset_count"] = asset_count

    logger.debug(
        f"[TOTALS] investor={investor.get('user_id')} capital={investor['total_capital']} "
        f"paid_in={investor['total_paid_in']} assets={asset_count}"
    )
    return investor


def rollups_match_line_items(investor: Dict[str, Any]) -> bool:
    """True when stored rollups equal what the line items imply"""
    investments = investor.get("investments") or []
    expected_capital = to_float(safe_sum(inv.get("total_amount", 0) for inv in investments))
    expected_paid = to_float(safe_sum(inv.get("amount_paid", 0) for inv in investments))
    return (
        investor.get("total_capital") == expected_capital
        and investor.get("total_paid_in") == expected_paid
    )


def find_reconciliation_gaps(investor: Dict[str, Any]) -> List[str]:
    """
    Line items whose cash received exceeds the contracted obligation.

    These are reported, never corrected: the contract total is owned by the
    contract store and may have been edited after the first installment.
    """
    gaps = []
    for inv in investor.get("investments") or []:
        if to_decimal(inv.get("amount_paid", 0)) > to_decimal(inv.get("total_amount", 0)):
            gaps.append(
                f"Investment {inv.get('investment_id')}: amount_paid "
                f"{inv.get('amount_paid')} exceeds total_amount {inv.get('total_amount')}"
            )
    return gaps
