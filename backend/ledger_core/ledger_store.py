"""
SETTLEMENT CORE - LEDGER RECORD STORE

Data-access helpers for the settlement engine. Every method accepts the
active MongoDB session so reads and writes join the caller's transaction.

Uniqueness constraints (see ensure_indexes):
- payments.order_id
- payments.(chain_id, installment_number) for installment payments
- asset_instances.contract_ref
- commission_entries.payment_ref
- investors.user_id
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError
from bson import ObjectId
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

AGENT_ROLES = ["marketing", "marketing_head"]


class ConcurrentModificationError(Exception):
    """Raised when an aggregate changed between read and write"""
    def __init__(self, collection: str, key: str, expected_version: Optional[int] = None):
        self.collection = collection
        self.key = key
        self.expected_version = expected_version
        super().__init__(
            f"Concurrent modification of {collection}:{key} "
            f"(expected version {expected_version})"
        )


def id_filter(value: Any) -> Dict[str, Any]:
    """_id filter accepting ObjectId, its hex form, or a plain string key"""
    if isinstance(value, ObjectId):
        return {"_id": value}
    if isinstance(value, str) and ObjectId.is_valid(value):
        return {"_id": ObjectId(value)}
    return {"_id": value}


class LedgerStore:
    """Collection access for payments, investors, assets, commissions and contracts"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    # =========================================================================
    # PAYMENTS
    # =========================================================================

    async def find_payment(self, order_id: str, session=None) -> Optional[Dict[str, Any]]:
        return await self.db.payments.find_one({"order_id": order_id}, session=session)

    async def find_installment_payment(
        self,
        chain_id: str,
        installment_number: int,
        session=None
    ) -> Optional[Dict[str, Any]]:
        return await self.db.payments.find_one(
            {"chain_id": chain_id, "installment_number": installment_number},
            session=session
        )

    async def insert_payment(self, payment: Dict[str, Any], session=None) -> bool:
        """Insert unless an equivalent payment exists. Returns True if inserted."""
        existing = await self.db.payments.find_one(
            {"order_id": payment["order_id"]}, session=session
        )
        if existing:
            return False
        try:
            await self.db.payments.insert_one(payment, session=session)
            return True
        except DuplicateKeyError:
            logger.info(f"[STORE] Payment already exists: {payment['order_id']}")
            return False

    async def mark_payment_processed(
        self,
        order_id: str,
        settlement_result: Dict[str, Any],
        extra_fields: Optional[Dict[str, Any]] = None,
        session=None
    ) -> None:
        now = datetime.utcnow()
        update = {
            "processed": True,
            "status": "completed",
            "settlement_result": settlement_result,
            "processed_at": now,
            "updated_at": now,
        }
        update.update(extra_fields or {})
        await self.db.payments.update_one(
            {"order_id": order_id},
            {"$set": update},
            session=session
        )

    async def record_commission_posted(self, order_id: str, commission_ref: str, session=None) -> None:
        await self.db.payments.update_one(
            {"order_id": order_id},
            {"$set": {
                "settlement_result.commission_posted": commission_ref,
                "updated_at": datetime.utcnow(),
            }},
            session=session
        )

    async def find_processed_payments_by_referral(
        self,
        referral_code: str,
        session=None
    ) -> List[Dict[str, Any]]:
        cursor = self.db.payments.find(
            {"referral_code": referral_code, "processed": True},
            session=session
        )
        return await cursor.to_list(length=None)

    # =========================================================================
    # USERS / AGENTS
    # =========================================================================

    async def find_user(self, user_id: Any, session=None) -> Optional[Dict[str, Any]]:
        return await self.db.users.find_one(id_filter(user_id), session=session)

    async def find_agent_by_referral_code(
        self,
        referral_code: str,
        session=None
    ) -> Optional[Dict[str, Any]]:
        return await self.db.users.find_one(
            {"referral_code": referral_code, "role": {"$in": AGENT_ROLES}},
            session=session
        )

    async def find_first_admin_name(self, session=None) -> str:
        admin = await self.db.users.find_one({"role": "admin"}, session=session)
        if admin:
            return admin.get("full_name") or admin.get("name") or "Admin"
        return "System"

    # =========================================================================
    # CONTRACTS
    # =========================================================================

    async def find_contract(self, contract_id: str, session=None) -> Optional[Dict[str, Any]]:
        return await self.db.contracts.find_one({"contract_id": contract_id}, session=session)

    async def mark_contract_payment_completed(self, contract_id: str, session=None) -> bool:
        result = await self.db.contracts.update_one(
            {"contract_id": contract_id},
            {"$set": {"payment_completed": True, "updated_at": datetime.utcnow()}},
            session=session
        )
        return result.matched_count > 0

    async def update_contract_stamp(
        self,
        contract_id: str,
        stamp_fields: Dict[str, Any],
        session=None
    ) -> None:
        await self.db.contracts.update_one(
            {"contract_id": contract_id},
            {"$set": {**stamp_fields, "updated_at": datetime.utcnow()}},
            session=session
        )

    # =========================================================================
    # ASSET INSTANCES
    # =========================================================================

    async def find_asset_instance(self, contract_ref: str, session=None) -> Optional[Dict[str, Any]]:
        return await self.db.asset_instances.find_one({"contract_ref": contract_ref}, session=session)

    async def insert_asset_instance(self, asset: Dict[str, Any], session=None) -> Dict[str, Any]:
        """Insert; raises DuplicateKeyError if the contract already has an asset"""
        await self.db.asset_instances.insert_one(asset, session=session)
        return asset

    # =========================================================================
    # INVESTORS
    # =========================================================================

    async def find_investor(self, user_id: str, session=None) -> Optional[Dict[str, Any]]:
        return await self.db.investors.find_one({"user_id": user_id}, session=session)

    async def save_investor(self, investor: Dict[str, Any], session=None) -> Dict[str, Any]:
        """
        Write the whole aggregate back.

        New aggregates are inserted; existing ones are replaced only if their
        version is unchanged since they were read.
        """
        now = datetime.utcnow()
        investor["updated_at"] = now

        if "_id" not in investor:
            investor["version"] = 1
            investor.setdefault("created_at", now)
            try:
                await self.db.investors.insert_one(investor, session=session)
            except DuplicateKeyError:
                raise ConcurrentModificationError("investors", investor["user_id"], 0)
            return investor

        expected_version = investor.get("version", 0)
        investor["version"] = expected_version + 1
        result = await self.db.investors.replace_one(
            {"_id": investor["_id"], "version": expected_version},
            investor,
            session=session
        )
        if result.matched_count == 0:
            investor["version"] = expected_version
            raise ConcurrentModificationError("investors", investor["user_id"], expected_version)
        return investor

    # =========================================================================
    # COMMISSIONS
    # =========================================================================

    async def find_commission_by_payment(self, payment_ref: str, session=None) -> Optional[Dict[str, Any]]:
        return await self.db.commission_entries.find_one({"payment_ref": payment_ref}, session=session)

    async def insert_commission(self, entry: Dict[str, Any], session=None) -> Optional[Dict[str, Any]]:
        """Insert-if-absent. Returns None when the payment already has an entry."""
        try:
            await self.db.commission_entries.insert_one(entry, session=session)
        except DuplicateKeyError:
            logger.info(f"[STORE] Commission already posted for payment {entry['payment_ref']}")
            return None
        return entry

    # =========================================================================
    # INDEXES
    # =========================================================================

    async def ensure_indexes(self):
        """Create the unique indexes that back every exists-then-insert check."""
        try:
            await self.db.payments.create_index(
                [("order_id", 1)],
                unique=True,
                name="unique_payment_order_id"
            )
            await self.db.payments.create_index(
                [("chain_id", 1), ("installment_number", 1)],
                unique=True,
                partialFilterExpression={
                    "kind": "installment",
                    "chain_id": {"$exists": True},
                },
                name="unique_installment_chain_position"
            )
            await self.db.asset_instances.create_index(
                [("contract_ref", 1)],
                unique=True,
                name="unique_asset_contract_ref"
            )
            await self.db.commission_entries.create_index(
                [("payment_ref", 1)],
                unique=True,
                name="unique_commission_payment_ref"
            )
            await self.db.investors.create_index(
                [("user_id", 1)],
                unique=True,
                name="unique_investor_user_id"
            )
            logger.info("Created settlement unique constraints")
        except Exception as e:
            # Index may already exist with different options
            logger.warning(f"Index creation result: {str(e)}")
