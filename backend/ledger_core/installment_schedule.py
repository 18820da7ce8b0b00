"""
Installment chain scheduling: payment term -> month step, next due date,
and the shape of the next Payment in a chain.
"""

from datetime import datetime
from typing import Any, Dict, Optional
import logging

from dateutil.relativedelta import relativedelta

from models import PaymentKind, PaymentStatus, PaymentTermPeriod

logger = logging.getLogger(__name__)

TERM_TO_MONTHS = {
    PaymentTermPeriod.MONTHLY.value: 1,
    PaymentTermPeriod.QUARTERLY.value: 3,
    PaymentTermPeriod.SEMIANNUAL.value: 6,
    PaymentTermPeriod.ANNUAL.value: 12,
}


def months_for_term(payment_term: Optional[str]) -> int:
    """Month step for a payment term; unknown terms step monthly"""
    months = TERM_TO_MONTHS.get(payment_term or "")
    if months is None:
        logger.warning(f"[SCHEDULE] Unknown payment term '{payment_term}', using monthly")
        return 1
    return months


def next_due_date(due_date: Optional[datetime], payment_term: Optional[str]) -> datetime:
    """
    Previous due date advanced by the term's calendar months.

    Month ends clamp (Jan 31 + 1 month -> Feb 28/29).
    """
    base = due_date or datetime.utcnow()
    return base + relativedelta(months=months_for_term(payment_term))


def has_successor(payment: Dict[str, Any]) -> bool:
    """True when the chain continues past this installment"""
    return int(payment.get("installment_number") or 0) < int(payment.get("total_installments") or 0)


def build_next_installment_payment(
    payment: Dict[str, Any],
    order_id: str,
    due_date: datetime,
) -> Dict[str, Any]:
    """Pending Payment document for installment_number + 1 of the same chain"""
    now = datetime.utcnow()
    return {
        "order_id": order_id,
        "user_id": payment["user_id"],
        "amount": payment["installment_amount"],
        "currency": payment.get("currency", "IDR"),
        "kind": PaymentKind.INSTALLMENT.value,
        "chain_id": payment["chain_id"],
        "installment_number": int(payment["installment_number"]) + 1,
        "total_installments": payment["total_installments"],
        "installment_amount": payment["installment_amount"],
        "payment_term": payment.get("payment_term"),
        "due_date": due_date,
        "product_ref": payment.get("product_ref"),
        "product_id": payment.get("product_id"),
        "referral_code": payment.get("referral_code"),
        "payment_method": payment.get("payment_method"),
        "status": PaymentStatus.PENDING.value,
        "processed": False,
        "created_at": now,
        "updated_at": now,
    }
