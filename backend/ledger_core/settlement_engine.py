"""
SETTLEMENT CORE - PAYMENT SETTLEMENT ENGINE

Given a confirmed Payment, inside ONE MongoDB transaction:
1. Provisions the AssetInstance for the contract (exactly once)
2. Mutates the Investor ledger and recomputes its rollups
3. Advances the installment chain (next Payment + pending placeholder)
4. Stamps the contract when already approved (best effort)
5. Flips payment.processed -> True

settle_in_transaction posts the referral commission after the commit (best
effort, guarded by the unique payment_ref index). A failed write inside a
MongoDB transaction aborts it on the server, so the commission insert is
kept out of it.

payment.processed is the idempotency guard: a processed payment is never
settled again; the stored result of the first run is returned instead.

Commission and stamping errors are caught and logged. They never abort
the transaction. Any other error propagates and aborts it, leaving
processed=False so the caller can retry the same payment.
"""

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging

from models import (
    Installment, InstallmentStatus, Investment, InvestmentStatus, Investor,
    PaymentKind
)
from audit_service import AuditService
from ledger_core.asset_provisioning import (
    AssetProvisioner, ProvisioningContext, is_contract_approved
)
from ledger_core.commission_calculator import CommissionCalculator
from ledger_core.financial_precision import (
    FinancialPrecisionError, NegativeValueError, safe_add, safe_multiply,
    to_decimal, to_float, validate_positive
)
from ledger_core.installment_schedule import (
    build_next_installment_payment, has_successor, next_due_date
)
from ledger_core.ledger_store import LedgerStore
from ledger_core.order_ids import generate_order_id
from ledger_core.stamping_trigger import StampingTrigger
from ledger_core.totals_recalculator import (
    find_reconciliation_gaps, recompute_investor_totals
)

logger = logging.getLogger(__name__)

MAX_ORDER_ID_ATTEMPTS = 20


class SettlementError(Exception):
    """Base class for settlement failures that abort the transaction"""
    pass


class PaymentNotFoundError(SettlementError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Payment not found: {order_id}")


class UnsupportedPaymentKindError(SettlementError):
    def __init__(self, order_id: str, kind: Any):
        self.order_id = order_id
        self.kind = kind
        super().__init__(f"Unsupported payment kind '{kind}' for payment {order_id}")


class InvalidPaymentError(SettlementError):
    def __init__(self, order_id: str, reason: str):
        self.order_id = order_id
        self.reason = reason
        super().__init__(f"Invalid payment {order_id}: {reason}")


class OrderIdCollisionError(SettlementError):
    def __init__(self, chain_id: str, installment_number: int):
        self.chain_id = chain_id
        self.installment_number = installment_number
        super().__init__(
            f"No free order id for {chain_id} installment {installment_number} "
            f"after {MAX_ORDER_ID_ATTEMPTS} attempts"
        )


@dataclass
class SettlementResult:
    """Outcome of one settle() call"""
    order_id: str
    asset_created: bool = False
    investor_updated: bool = False
    next_installment_created: Optional[str] = None
    commission_posted: Optional[str] = None
    stamped: Optional[str] = None
    already_processed: bool = False
    warnings: List[str] = field(default_factory=list)

    def to_document(self) -> Dict[str, Any]:
        doc = asdict(self)
        doc.pop("already_processed")
        return doc

    @classmethod
    def from_document(cls, doc: Optional[Dict[str, Any]], order_id: str) -> "SettlementResult":
        doc = dict(doc or {})
        doc["order_id"] = order_id
        doc["already_processed"] = True
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in doc.items() if k in known})


def find_investment(investor: Optional[Dict[str, Any]], investment_id: str) -> Optional[Dict[str, Any]]:
    if not investor:
        return None
    for investment in investor.get("investments") or []:
        if investment.get("investment_id") == investment_id:
            return investment
    return None


def upsert_installment(investment: Dict[str, Any], record: Dict[str, Any]) -> None:
    """Replace the installment with the same number, or append it"""
    installments = investment.setdefault("installments", [])
    for idx, existing in enumerate(installments):
        if existing.get("number") == record["number"]:
            installments[idx] = record
            break
    else:
        installments.append(record)
    installments.sort(key=lambda inst: inst.get("number", 0))


class SettlementEngine:
    """
    Settles confirmed payments into the investor ledger.

    Collaborators are injected so the approval workflow, the HTTP layer and
    tests share one engine configuration.
    """

    def __init__(
        self,
        client: AsyncIOMotorClient,
        db: AsyncIOMotorDatabase,
        stamping_trigger: Optional[StampingTrigger] = None,
        commission_calculator: Optional[CommissionCalculator] = None,
        audit_service: Optional[AuditService] = None,
        order_id_generator: Callable[..., str] = generate_order_id,
        store: Optional[LedgerStore] = None,
    ):
        self.client = client
        self.db = db
        self.store = store or LedgerStore(db)
        self.provisioner = AssetProvisioner(self.store)
        self.commission_calculator = commission_calculator or CommissionCalculator(self.store)
        self.stamping_trigger = stamping_trigger
        self.audit_service = audit_service or AuditService(db)
        self.order_id_generator = order_id_generator

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def settle_in_transaction(self, order_id: str) -> SettlementResult:
        """
        Load and settle a payment inside a new session + transaction.

        TRANSACTION: everything commits together or nothing does.
        """
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                try:
                    payment = await self.store.find_payment(order_id, session=session)
                    if not payment:
                        raise PaymentNotFoundError(order_id)
                    result = await self.settle(payment, session=session, defer_commission=True)
                except SettlementError:
                    raise
                except Exception as e:
                    logger.error(f"[TRANSACTION ERROR] Settlement of {order_id}: {str(e)}")
                    raise

        # Committed. Also retries a commission a previous run failed to post.
        if not result.commission_posted:
            result.commission_posted = await self._post_commission_after_commit(payment)
        return result

    async def settle(
        self,
        payment: Dict[str, Any],
        session=None,
        defer_commission: bool = False
    ) -> SettlementResult:
        """
        Settle one confirmed payment within the caller's session.

        Idempotent: an already processed payment returns its stored result.

        With defer_commission the caller posts the commission once the
        transaction has committed. A failed write inside a server-side
        transaction aborts it, so an in-session commission error would
        still fail the settlement.
        """
        order_id = payment["order_id"]

        if payment.get("processed"):
            logger.info(f"[IDEMPOTENT] Payment already processed: {order_id}")
            return SettlementResult.from_document(payment.get("settlement_result"), order_id)

        self._validate(payment)
        result = SettlementResult(order_id=order_id)
        extra_fields: Dict[str, Any] = {}

        logger.info(f"[SETTLEMENT] Processing {payment['kind']} payment: {order_id}")

        owner = await self.store.find_user(payment["user_id"], session=session)
        if not owner:
            await self._integrity_warning(
                result, order_id, f"Owner {payment['user_id']} not found; ledger not updated", session
            )
        elif payment["kind"] == PaymentKind.FULL.value:
            await self._settle_full(payment, owner, result, session)
            extra_fields["contract_redirect_url"] = f"/contract/{self._contract_ref(payment)}"
        else:
            await self._settle_installment(payment, owner, result, session)

        if not defer_commission:
            result.commission_posted = await self._post_commission(payment, owner, session)

        await self.store.mark_payment_processed(
            order_id, result.to_document(), extra_fields, session=session
        )
        payment["processed"] = True
        payment["status"] = "completed"
        payment["settlement_result"] = result.to_document()

        await self.audit_service.log_action(
            entity_type="PAYMENT",
            entity_id=order_id,
            action_type="SETTLED",
            actor="settlement-engine",
            new_value=result.to_document(),
            session=session
        )

        logger.info(f"[SETTLEMENT] Payment settled: {order_id} -> {result.to_document()}")
        return result

    # =========================================================================
    # FULL PAYMENT PATH
    # =========================================================================

    async def _settle_full(
        self,
        payment: Dict[str, Any],
        owner: Dict[str, Any],
        result: SettlementResult,
        session
    ) -> None:
        contract_ref = self._contract_ref(payment)
        contract = await self.store.find_contract(contract_ref, session=session)

        asset, result.asset_created = await self.provisioner.provision_if_absent(
            contract_ref, self._provisioning_context(payment, owner, contract), session=session
        )

        investor = await self._load_investor(payment, owner, session)
        investment = find_investment(investor, contract_ref)
        now = datetime.utcnow()

        if investment:
            investment["asset_ref"] = asset["instance_id"]
            investment["status"] = InvestmentStatus.COMPLETED.value
            # A repeated full-payment event for the same contract must not re-add the amount
            if to_decimal(investment.get("amount_paid", 0)) == 0:
                investment["amount_paid"] = to_float(payment["amount"])
                if to_decimal(investment.get("total_amount", 0)) == 0:
                    investment["total_amount"] = to_float(payment["amount"])
            investment["completion_date"] = now
        else:
            investor["investments"].append(Investment(
                investment_id=contract_ref,
                product_ref=payment.get("product_ref"),
                asset_ref=asset["instance_id"],
                total_amount=to_float(payment["amount"]),
                amount_paid=to_float(payment["amount"]),
                kind=PaymentKind.FULL,
                status=InvestmentStatus.COMPLETED,
                completion_date=now,
            ).model_dump())

        await self._save_investor(investor, result, session)

        if not contract:
            result.warnings.append(f"Contract {contract_ref} not found; payment completion not recorded")
            logger.warning(f"[SETTLEMENT] Contract not found for full payment: {contract_ref}")
            return

        await self.store.mark_contract_payment_completed(contract_ref, session=session)
        logger.info(f"[SETTLEMENT] Contract {contract_ref} marked as payment completed")

        if contract.get("admin_approval_status") == "approved":
            result.stamped = await self._stamp(contract_ref, asset, session)
        else:
            logger.info(
                f"[SETTLEMENT] Contract {contract_ref} not yet approved, "
                f"stamping will occur after approval"
            )

    # =========================================================================
    # INSTALLMENT PATH
    # =========================================================================

    async def _settle_installment(
        self,
        payment: Dict[str, Any],
        owner: Dict[str, Any],
        result: SettlementResult,
        session
    ) -> None:
        chain_id = payment["chain_id"]
        number = int(payment["installment_number"])
        contract = None
        asset = None

        if number == 1:
            contract = await self.store.find_contract(chain_id, session=session)
            contract_total = self._contract_total(payment, contract, result)

            asset, result.asset_created = await self.provisioner.provision_if_absent(
                chain_id, self._provisioning_context(payment, owner, contract), session=session
            )

            investor = await self._load_investor(payment, owner, session)
            investment = find_investment(investor, chain_id)

            if investment:
                investment["asset_ref"] = asset["instance_id"]
                investment["status"] = InvestmentStatus.ACTIVE.value
                # The contract obligation is fixed at signing; cash is seeded once
                if to_decimal(investment.get("amount_paid", 0)) == 0:
                    investment["total_amount"] = to_float(contract_total)
                    investment["amount_paid"] = to_float(payment["amount"])
            else:
                investor["investments"].append(Investment(
                    investment_id=chain_id,
                    product_ref=payment.get("product_ref"),
                    asset_ref=asset["instance_id"],
                    total_amount=to_float(contract_total),
                    amount_paid=to_float(payment["amount"]),
                    kind=PaymentKind.INSTALLMENT,
                    status=InvestmentStatus.ACTIVE,
                ).model_dump())
                investment = investor["investments"][-1]

            upsert_installment(investment, self._paid_installment(payment))
        else:
            investor = await self.store.find_investor(str(payment["user_id"]), session=session)
            investment = find_investment(investor, chain_id)

            if not investment:
                await self._integrity_warning(
                    result,
                    payment["order_id"],
                    f"Investment {chain_id} not found for installment {number}; ledger not updated",
                    session
                )
            else:
                upsert_installment(investment, self._paid_installment(payment))
                investment["amount_paid"] = to_float(safe_add(investment.get("amount_paid", 0), payment["amount"]))

        next_order_id = None
        if has_successor(payment):
            due_date = next_due_date(payment.get("due_date"), payment.get("payment_term"))
            next_order_id = await self._create_next_installment(payment, due_date, result, session)
            if investment:
                self._ensure_placeholder(investment, payment, number + 1, due_date, next_order_id)

        if investment:
            self._complete_if_fully_paid(investment, payment)
            await self._save_investor(investor, result, session)

        if number == 1 and contract and contract.get("admin_approval_status") == "approved":
            result.stamped = await self._stamp(chain_id, asset, session)
        elif number == 1 and contract:
            logger.info(
                f"[SETTLEMENT] Contract {chain_id} not yet approved, "
                f"stamping will occur after approval"
            )

    async def _create_next_installment(
        self,
        payment: Dict[str, Any],
        due_date: datetime,
        result: SettlementResult,
        session
    ) -> str:
        """Create the successor payment unless it exists. Returns its order id."""
        chain_id = payment["chain_id"]
        next_number = int(payment["installment_number"]) + 1

        for attempt in range(MAX_ORDER_ID_ATTEMPTS):
            existing = await self.store.find_installment_payment(chain_id, next_number, session=session)
            if existing:
                logger.info(f"[SETTLEMENT] Installment {next_number} already scheduled for {chain_id}")
                return existing["order_id"]

            order_id = self.order_id_generator(
                payment.get("product_ref"),
                PaymentKind.INSTALLMENT.value,
                chain_id,
                next_number,
                attempt=attempt,
            )
            next_payment = build_next_installment_payment(payment, order_id, due_date)
            if await self.store.insert_payment(next_payment, session=session):
                result.next_installment_created = order_id
                logger.info(f"[SETTLEMENT] Next installment created: {order_id} due {due_date.isoformat()}")
                return order_id

            # Taken; the next pass re-checks whether it is this chain's own successor
            logger.warning(
                f"[SETTLEMENT] Order id {order_id} already taken, regenerating for "
                f"{chain_id} installment {next_number}"
            )

        raise OrderIdCollisionError(chain_id, next_number)

    # =========================================================================
    # LEDGER HELPERS
    # =========================================================================

    async def _load_investor(self, payment: Dict[str, Any], owner: Dict[str, Any], session) -> Dict[str, Any]:
        """Existing investor aggregate, or a new unsaved one for the owner"""
        user_id = str(payment["user_id"])
        investor = await self.store.find_investor(user_id, session=session)
        if investor:
            investor.setdefault("investments", [])
            return investor
        logger.info(f"[SETTLEMENT] Creating investor record for user {user_id}")
        return Investor(
            user_id=user_id,
            name=owner.get("full_name") or owner.get("name") or "",
            email=owner.get("email"),
            phone_number=owner.get("phone_number"),
        ).model_dump(exclude={"investor_id"})

    async def _save_investor(self, investor: Dict[str, Any], result: SettlementResult, session) -> None:
        recompute_investor_totals(investor)
        for gap in find_reconciliation_gaps(investor):
            logger.warning(f"[RECONCILIATION] {gap}")
            result.warnings.append(gap)
        await self.store.save_investor(investor, session=session)
        result.investor_updated = True

    def _paid_installment(self, payment: Dict[str, Any]) -> Dict[str, Any]:
        now = datetime.utcnow()
        return Installment(
            number=int(payment["installment_number"]),
            amount=to_float(payment["amount"]),
            due_date=payment.get("due_date"),
            is_paid=True,
            paid_date=now,
            status=InstallmentStatus.APPROVED,
            proof_ref=payment.get("proof_ref"),
            order_id=payment["order_id"],
        ).model_dump()

    def _ensure_placeholder(
        self,
        investment: Dict[str, Any],
        payment: Dict[str, Any],
        number: int,
        due_date: datetime,
        order_id: Optional[str]
    ) -> None:
        """Pending installment record mirroring the scheduled payment"""
        for existing in investment.get("installments") or []:
            if existing.get("number") == number:
                return
        upsert_installment(investment, Installment(
            number=number,
            amount=to_float(payment["installment_amount"]),
            due_date=due_date,
            is_paid=False,
            status=InstallmentStatus.PENDING,
            order_id=order_id,
        ).model_dump())

    def _complete_if_fully_paid(self, investment: Dict[str, Any], payment: Dict[str, Any]) -> None:
        total_installments = int(payment.get("total_installments") or 0)
        installments = investment.get("installments") or []
        paid_numbers = {inst.get("number") for inst in installments if inst.get("is_paid")}
        if total_installments and all(n in paid_numbers for n in range(1, total_installments + 1)):
            investment["status"] = InvestmentStatus.COMPLETED.value
            investment["completion_date"] = datetime.utcnow()
            logger.info(f"[SETTLEMENT] Installment plan completed for {investment['investment_id']}")

    def _contract_total(
        self,
        payment: Dict[str, Any],
        contract: Optional[Dict[str, Any]],
        result: SettlementResult
    ):
        """
        Full contract obligation for an installment plan.

        The contract record is authoritative; the installment schedule is the
        fallback. A mismatch is reported, not resolved.
        """
        scheduled_total = safe_multiply(
            payment.get("installment_amount") or 0, payment.get("total_installments") or 0
        )
        contract_total = to_decimal(contract.get("total_amount")) if contract and contract.get("total_amount") else None

        if contract_total is None:
            return scheduled_total

        if scheduled_total and contract_total != scheduled_total:
            gap = (
                f"Contract {payment['chain_id']} total {to_float(contract_total)} differs from "
                f"installment schedule total {to_float(scheduled_total)}"
            )
            logger.warning(f"[RECONCILIATION] {gap}")
            result.warnings.append(gap)
        return contract_total

    # =========================================================================
    # BEST-EFFORT SIDE EFFECTS
    # =========================================================================

    async def _stamp(self, contract_ref: str, asset: Optional[Dict[str, Any]], session) -> Optional[str]:
        if not self.stamping_trigger:
            return None
        logger.info(f"[SETTLEMENT] Stamping contract {contract_ref}")
        try:
            stamp_ref = await self.stamping_trigger.maybe_stamp(contract_ref, session=session, asset=asset)
        except Exception as e:
            logger.error(f"[SETTLEMENT] Stamping error for {contract_ref}: {str(e)}")
            return None
        if not stamp_ref:
            logger.warning(f"[SETTLEMENT] Contract stamping failed, but payment succeeded: {contract_ref}")
        return stamp_ref

    async def _post_commission(
        self,
        payment: Dict[str, Any],
        owner: Optional[Dict[str, Any]],
        session
    ) -> Optional[str]:
        if not payment.get("referral_code"):
            return None
        try:
            entry = await self.commission_calculator.post_commission(payment, customer=owner, session=session)
        except Exception as e:
            logger.error(f"[SETTLEMENT] Commission error for {payment['order_id']}: {str(e)}")
            return None
        return str(entry["_id"]) if entry else None

    async def _post_commission_after_commit(self, payment: Dict[str, Any]) -> Optional[str]:
        """
        Post the commission outside the settlement transaction.

        The unique payment_ref index keeps this safe to repeat; the entry
        id is recorded on the payment's stored settlement result.
        """
        if not payment.get("referral_code") or not payment.get("processed"):
            return None
        try:
            owner = await self.store.find_user(payment["user_id"])
            entry = await self.commission_calculator.post_commission(payment, customer=owner)
            if not entry:
                return None
            commission_ref = str(entry["_id"])
            await self.store.record_commission_posted(payment["order_id"], commission_ref)
        except Exception as e:
            logger.error(f"[SETTLEMENT] Commission error for {payment['order_id']}: {str(e)}")
            return None
        return commission_ref

    # =========================================================================
    # PRECONDITIONS
    # =========================================================================

    def _validate(self, payment: Dict[str, Any]) -> None:
        order_id = payment["order_id"]
        kind = payment.get("kind")

        if kind not in (PaymentKind.FULL.value, PaymentKind.INSTALLMENT.value):
            raise UnsupportedPaymentKindError(order_id, kind)

        if not payment.get("user_id"):
            raise InvalidPaymentError(order_id, "missing user_id")

        try:
            validate_positive(payment.get("amount"), "amount")
        except (FinancialPrecisionError, NegativeValueError) as e:
            raise InvalidPaymentError(order_id, str(e))

        if kind == PaymentKind.INSTALLMENT.value:
            if not payment.get("chain_id"):
                raise InvalidPaymentError(order_id, "installment without chain_id")
            if int(payment.get("installment_number") or 0) < 1:
                raise InvalidPaymentError(order_id, "installment_number must be >= 1")
            if has_successor(payment) and not payment.get("installment_amount"):
                raise InvalidPaymentError(order_id, "installment_amount required to schedule the next installment")

    @staticmethod
    def _contract_ref(payment: Dict[str, Any]) -> str:
        return payment.get("chain_id") or payment["order_id"]

    @staticmethod
    def _provisioning_context(
        payment: Dict[str, Any],
        owner: Dict[str, Any],
        contract: Optional[Dict[str, Any]]
    ) -> ProvisioningContext:
        return ProvisioningContext(
            owner_ref=str(owner.get("_id", payment["user_id"])),
            owner_name=owner.get("full_name") or owner.get("name") or "",
            product_ref=payment.get("product_ref"),
            contract_approved=is_contract_approved(contract),
            payment_kind=payment["kind"],
        )

    async def _integrity_warning(
        self,
        result: SettlementResult,
        order_id: str,
        message: str,
        session
    ) -> None:
        logger.warning(f"[DATA INTEGRITY] {order_id}: {message}")
        result.warnings.append(message)
        await self.audit_service.log_action(
            entity_type="PAYMENT",
            entity_id=order_id,
            action_type="DATA_INTEGRITY_WARNING",
            actor="settlement-engine",
            new_value={"message": message},
            session=session
        )
