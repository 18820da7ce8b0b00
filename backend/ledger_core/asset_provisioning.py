"""
SETTLEMENT CORE - ASSET PROVISIONING

Creates the AssetInstance for a contract the first time a payment event
satisfies provisioning (full payment, or installment #1). At most one asset
exists per contract_ref; the unique index on contract_ref settles races.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple
import logging

from pymongo.errors import DuplicateKeyError

from models import ApprovalStatus, AssetHistoryEntry, AssetInstance, PaymentKind, ProvisioningStatus
from ledger_core.ledger_store import LedgerStore

logger = logging.getLogger(__name__)

DEFAULT_LOCATION = "Musi Rawas Utara"
DEFAULT_CATEGORY = "gaharu"

BASE_ROI_BY_CATEGORY = {
    "gaharu": 0.15,
    "alpukat": 0.12,
    "jengkol": 0.10,
    "aren": 0.18,
    "kelapa": 0.12,
}


@dataclass
class ProvisioningContext:
    """Denormalized facts the asset record is seeded with"""
    owner_ref: str
    owner_name: str
    product_ref: Optional[str]
    contract_approved: bool
    payment_kind: str


def infer_asset_category(product_ref: Optional[str]) -> str:
    """Asset category from a product label, defaulting to gaharu"""
    name = (product_ref or "").lower()
    for category in BASE_ROI_BY_CATEGORY:
        if category in name:
            return category
    return DEFAULT_CATEGORY


def is_contract_approved(contract: Optional[Dict[str, Any]]) -> bool:
    """Administrative approval as recorded by the contract store"""
    return bool(
        contract
        and contract.get("admin_approval_status") == ApprovalStatus.APPROVED.value
        and contract.get("status") == ApprovalStatus.APPROVED.value
    )


class AssetProvisioner:
    """Lazily provisions one AssetInstance per contract"""

    def __init__(self, store: LedgerStore):
        self.store = store

    async def provision_if_absent(
        self,
        contract_ref: str,
        context: ProvisioningContext,
        session=None
    ) -> Tuple[Dict[str, Any], bool]:
        """
        Return (asset, created).

        Looks the asset up by contract_ref and only builds a new one when
        none exists. A concurrent creator winning the unique index is not an
        error: the existing asset is returned with created=False.
        """
        existing = await self.store.find_asset_instance(contract_ref, session=session)
        if existing:
            logger.info(f"[PROVISIONING] Asset already exists for contract {contract_ref}")
            return existing, False

        added_by = await self.store.find_first_admin_name(session=session)
        asset = self.build_asset(contract_ref, context, added_by)

        try:
            await self.store.insert_asset_instance(asset, session=session)
        except DuplicateKeyError:
            logger.warning(f"[PROVISIONING] Lost creation race for contract {contract_ref}")
            existing = await self.store.find_asset_instance(contract_ref, session=session)
            return existing, False

        logger.info(
            f"[PROVISIONING] Asset created: {asset['instance_id']} "
            f"({asset['provisioning_status']})"
        )
        return asset, True

    def build_asset(
        self,
        contract_ref: str,
        context: ProvisioningContext,
        added_by: str
    ) -> Dict[str, Any]:
        category = infer_asset_category(context.product_ref)
        today = datetime.utcnow().strftime("%d/%m/%Y")

        if context.contract_approved:
            status = ProvisioningStatus.NEW_CONTRACT
            plan = "full payment" if context.payment_kind == PaymentKind.FULL.value else "installment plan"
            description = f"New asset created with {plan} for {context.owner_name}"
        else:
            status = ProvisioningStatus.PENDING_CONTRACT
            description = f"Asset created, awaiting contract approval for {context.owner_name}"

        history_entry = AssetHistoryEntry(
            id=f"HISTORY-{contract_ref}-NEW",
            action=status.value,
            type=status.value,
            date=today,
            description=description,
            added_by=added_by,
        )

        asset = AssetInstance(
            instance_id=f"PLANT-{contract_ref}",
            contract_ref=contract_ref,
            owner_ref=context.owner_ref,
            owner_name=context.owner_name,
            asset_category=category,
            instance_name=f"{category.capitalize()} - {context.owner_name}",
            base_annual_roi=BASE_ROI_BY_CATEGORY[category],
            qr_code=f"QR-{context.product_ref or category}",
            location=DEFAULT_LOCATION,
            provisioning_status=status,
            history=[history_entry],
        )
        return asset.model_dump(exclude={"asset_id"})
