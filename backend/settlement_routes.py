# Settlement API Endpoints
#
# To integrate: Add to main server.py with:
# from settlement_routes import create_settlement_routes
# settlement_router = create_settlement_routes(client, db, engine, stamping_trigger, commission_calculator)
# app.include_router(settlement_router)

from fastapi import APIRouter, HTTPException, status, Depends
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError, PyMongoError
import logging

from models import SettlementResponse, StampResponse, CommissionBackfillResponse
from ledger_core.commission_calculator import AgentNotFoundError, CommissionCalculator
from ledger_core.financial_precision import FinancialPrecisionError, NegativeValueError
from ledger_core.ledger_store import ConcurrentModificationError
from ledger_core.settlement_engine import (
    InvalidPaymentError, OrderIdCollisionError, PaymentNotFoundError, SettlementEngine,
    UnsupportedPaymentKindError
)
from ledger_core.stamping_trigger import StampingTrigger
from auth import require_roles

logger = logging.getLogger(__name__)

def create_settlement_routes(
    client: AsyncIOMotorClient,
    db: AsyncIOMotorDatabase,
    engine: SettlementEngine,
    stamping_trigger: StampingTrigger,
    commission_calculator: CommissionCalculator
) -> APIRouter:
    """Create settlement API router"""

    router = APIRouter(prefix="/api/settlement", tags=["Settlement"])
    finance_user = require_roles()

    # ============================================
    # PAYMENT SETTLEMENT
    # ============================================

    @router.post("/payments/{order_id}/settle", response_model=SettlementResponse)
    async def settle_payment(
        order_id: str,
        current_user: dict = Depends(finance_user)
    ):
        """
        Settle a confirmed payment (Finance / Admin).

        Safe to call repeatedly: a processed payment returns its stored
        result with already_processed=true.
        """
        logger.info(f"[SETTLEMENT] Settle requested for {order_id} by {current_user.get('user_id')}")
        try:
            result = await engine.settle_in_transaction(order_id)
        except PaymentNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        except (UnsupportedPaymentKindError, InvalidPaymentError, FinancialPrecisionError, NegativeValueError) as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except (ConcurrentModificationError, DuplicateKeyError, OrderIdCollisionError) as e:
            logger.warning(f"[SETTLEMENT] Conflict settling {order_id}: {str(e)}")
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Payment was modified concurrently. Please retry."
            )
        except PyMongoError as e:
            logger.error(f"[SETTLEMENT] Storage failure settling {order_id}: {str(e)}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Settlement failed. Transaction rolled back."
            )

        return SettlementResponse(**result.__dict__)

    # ============================================
    # CONTRACT STAMPING
    # ============================================

    @router.post("/contracts/{contract_id}/stamp", response_model=StampResponse)
    async def stamp_contract(
        contract_id: str,
        current_user: dict = Depends(finance_user)
    ):
        """Stamp an approved, paid contract (called again after admin approval)"""
        contract = await db.contracts.find_one({"contract_id": contract_id})
        if not contract:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contract not found")

        try:
            async with await client.start_session() as session:
                async with session.start_transaction():
                    stamp_ref = await stamping_trigger.maybe_stamp(contract_id, session=session)
        except PyMongoError as e:
            logger.error(f"[STAMPING] Storage failure stamping {contract_id}: {str(e)}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Stamping failed. Transaction rolled back."
            )

        return StampResponse(contract_id=contract_id, stamped=stamp_ref is not None, stamp_ref=stamp_ref)

    # ============================================
    # COMMISSION BACKFILL
    # ============================================

    @router.post("/agents/{agent_id}/commissions/backfill", response_model=CommissionBackfillResponse)
    async def backfill_commissions(
        agent_id: str,
        current_user: dict = Depends(finance_user)
    ):
        """Post commissions missing for an agent's processed referrals"""
        try:
            summary = await commission_calculator.backfill_for_agent(agent_id)
        except AgentNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

        return CommissionBackfillResponse(**summary)

    return router
