"""
SETTLEMENT CORE - REFERRAL COMMISSION

Flat-rate commission posted once per Payment that carries a referral code.

- Full payment: base = payment amount (the full contract value)
- Installment:  base = this installment's amount only (progressive commission)
- commission_amount = round_half_up(base * COMMISSION_RATE)

Uniqueness on commission_entries.payment_ref is the idempotency mechanism.
Entries are inserted, never updated.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
import logging

from models import CommissionEntry, PaymentKind
from ledger_core.financial_precision import (
    calculate_commission_amount, to_decimal, to_float
)
from ledger_core.ledger_store import LedgerStore

logger = logging.getLogger(__name__)

COMMISSION_RATE = Decimal("0.02")

QUALIFYING_KINDS = {PaymentKind.FULL.value, PaymentKind.INSTALLMENT.value}


class AgentNotFoundError(Exception):
    """Raised when a backfill targets an unknown or ineligible agent"""
    def __init__(self, agent_id: str, reason: str = "Marketing agent not found"):
        self.agent_id = agent_id
        self.reason = reason
        super().__init__(f"{reason}: {agent_id}")


class CommissionCalculator:
    """Posts CommissionEntry records for referred payments"""

    def __init__(self, store: LedgerStore, rate: Decimal = COMMISSION_RATE):
        self.store = store
        self.rate = to_decimal(rate)

    @staticmethod
    def commission_base(payment: Dict[str, Any]) -> Decimal:
        """Amount the commission is computed on for this payment event"""
        return to_decimal(payment.get("amount", 0))

    async def post_commission(
        self,
        payment: Dict[str, Any],
        customer: Optional[Dict[str, Any]] = None,
        session=None
    ) -> Optional[Dict[str, Any]]:
        """
        Post the commission for a payment.

        Returns the inserted entry, or None when nothing was posted: no
        referral code, kind does not qualify, entry already present, or
        no agent owns the referral code.
        """
        referral_code = payment.get("referral_code")
        order_id = payment["order_id"]

        if not referral_code:
            return None

        if payment.get("kind") not in QUALIFYING_KINDS:
            logger.info(f"[COMMISSION] Payment kind {payment.get('kind')} does not earn commission")
            return None

        existing = await self.store.find_commission_by_payment(order_id, session=session)
        if existing:
            logger.info(f"[COMMISSION] Commission already exists for payment {order_id}")
            return None

        agent = await self.store.find_agent_by_referral_code(referral_code, session=session)
        if not agent:
            logger.warning(f"[COMMISSION] No agent found for referral code: {referral_code}")
            return None

        base_amount = self.commission_base(payment)
        commission_amount = calculate_commission_amount(base_amount, self.rate)

        installment_details = None
        if payment.get("kind") == PaymentKind.INSTALLMENT.value:
            installment_details = {
                "installment_amount": payment.get("installment_amount"),
                "total_installments": payment.get("total_installments"),
                "installment_number": payment.get("installment_number"),
            }

        customer = customer or {}
        entry = CommissionEntry(
            payment_ref=order_id,
            agent_ref=str(agent["_id"]),
            agent_name=agent.get("full_name") or agent.get("name") or "",
            referral_code=referral_code,
            customer_ref=str(customer["_id"]) if customer.get("_id") else payment.get("user_id"),
            customer_name=customer.get("full_name") or customer.get("name"),
            customer_email=customer.get("email"),
            contract_ref=payment.get("chain_id") or order_id,
            product_ref=payment.get("product_ref") or "Unknown Product",
            base_amount=to_float(base_amount),
            rate=float(self.rate),
            commission_amount=to_float(commission_amount),
            payment_kind=payment["kind"],
            installment_details=installment_details,
            earned_at=(
                payment.get("settlement_time")
                or payment.get("admin_review_date")
                or datetime.utcnow()
            ),
        ).model_dump(exclude={"commission_id"})

        inserted = await self.store.insert_commission(entry, session=session)
        if inserted is None:
            return None

        logger.info(
            f"[COMMISSION] Commission created: {entry['commission_amount']} for "
            f"{entry['agent_name']} ({referral_code}) on payment {order_id}"
        )
        return inserted

    async def backfill_for_agent(self, agent_id: str) -> Dict[str, Any]:
        """
        Post any commission missing for an agent's referred, processed payments.

        Safe to run repeatedly; existing entries are skipped.
        """
        agent = await self.store.find_user(agent_id)
        if not agent or agent.get("role") not in ("marketing", "marketing_head"):
            raise AgentNotFoundError(agent_id)

        referral_code = agent.get("referral_code")
        if not referral_code:
            raise AgentNotFoundError(agent_id, "Agent has no referral code")

        payments = await self.store.find_processed_payments_by_referral(referral_code)

        created = 0
        total = Decimal("0")
        errors = []
        for payment in payments:
            try:
                customer = await self.store.find_user(payment.get("user_id"))
                entry = await self.post_commission(payment, customer=customer)
            except Exception as e:
                errors.append(f"Payment {payment.get('order_id')}: {str(e)}")
                continue
            if entry:
                created += 1
                total += to_decimal(entry["commission_amount"])

        logger.info(
            f"[COMMISSION] Backfill for agent {agent_id}: {created} created, "
            f"{len(errors)} errors"
        )
        return {
            "agent_id": agent_id,
            "commissions_created": created,
            "total_commission": to_float(total),
            "errors": errors,
        }

