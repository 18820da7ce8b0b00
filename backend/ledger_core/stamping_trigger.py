"""
SETTLEMENT CORE - CONTRACT STAMPING TRIGGER

Stamps a contract with an e-stamp once BOTH hold:
1. the contract is administratively approved
2. the payment condition is met (full payment or first installment)

The settlement engine calls this after payment; the approval workflow calls
it again after approval. Stamping failure never fails the caller: errors are
logged and None is returned so the stamp can be retried later.
"""

from datetime import datetime
from typing import Any, Dict, Optional
import logging

from models import ApprovalStatus, ContractStampState
from ledger_core.contract_document import ContractPDFRenderer
from ledger_core.ledger_store import LedgerStore
from ledger_core.stamping_client import EStampClient, StampCoordinates

logger = logging.getLogger(__name__)


class StampingTrigger:
    """Decides whether to stamp a contract and records the outcome"""

    def __init__(
        self,
        store: LedgerStore,
        renderer: ContractPDFRenderer,
        provider: EStampClient,
        audit_service=None
    ):
        self.store = store
        self.renderer = renderer
        self.provider = provider
        self.audit_service = audit_service

    async def maybe_stamp(
        self,
        contract_ref: str,
        session=None,
        asset: Optional[Dict[str, Any]] = None
    ) -> Optional[str]:
        """
        Stamp the contract if approved and not yet stamped.

        Returns the stamp reference (stamped file URL), or None when the
        contract is not eligible or stamping failed.
        """
        try:
            contract = await self.store.find_contract(contract_ref, session=session)
            if not contract:
                logger.error(f"[STAMPING] Contract not found: {contract_ref}")
                return None

            if contract.get("stamped"):
                logger.info(f"[STAMPING] Contract already stamped: {contract_ref}")
                return contract.get("stamp_ref")

            if contract.get("admin_approval_status") != ApprovalStatus.APPROVED.value:
                logger.info(f"[STAMPING] Contract not approved yet, deferring: {contract_ref}")
                return None

            if asset is None:
                asset = await self.store.find_asset_instance(contract_ref, session=session)

            # Asset exists only once a full payment or installment #1 settled
            if not contract.get("payment_completed") and not asset:
                logger.info(f"[STAMPING] Payment condition not met yet, deferring: {contract_ref}")
                return None

            owner = await self.store.find_user(contract.get("user_id"), session=session)
            if not owner:
                logger.error(f"[STAMPING] Owner not found for contract: {contract_ref}")
                return None

            signature = next(
                (
                    attempt for attempt in contract.get("signature_attempts") or []
                    if attempt.get("review_status") == "approved"
                ),
                None
            )
            if not signature:
                logger.error(f"[STAMPING] No approved signature for contract: {contract_ref}")
                return None

            document = self.renderer.render(
                self.build_document_payload(contract, owner, asset, signature)
            )

            receipt = await self.provider.stamp_document(
                document.content,
                document.filename,
                StampCoordinates(page=document.page_count),
            )

            stamped_at = datetime.utcnow()
            await self.store.update_contract_stamp(
                contract_ref,
                ContractStampState(
                    stamped=True,
                    stamp_ref=receipt.file_url,
                    stamp_uuid=receipt.uuid,
                    stamped_at=stamped_at,
                ).model_dump(),
                session=session
            )

            if self.audit_service:
                await self.audit_service.log_action(
                    entity_type="CONTRACT",
                    entity_id=contract_ref,
                    action_type="STAMPED",
                    actor="settlement-engine",
                    new_value={"stamp_ref": receipt.file_url, "stamp_uuid": receipt.uuid},
                    session=session
                )

            logger.info(f"[STAMPING] Success! Stamped URL: {receipt.file_url}")
            return receipt.file_url

        except Exception as e:
            logger.error(f"[STAMPING] Error stamping contract {contract_ref}: {str(e)}")
            return None

    @staticmethod
    def build_document_payload(
        contract: Dict[str, Any],
        owner: Dict[str, Any],
        asset: Optional[Dict[str, Any]],
        signature: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Contract + investor + asset data for the document renderer"""
        return {
            "contract_id": contract.get("contract_id"),
            "contract_number": contract.get("contract_number") or contract.get("contract_id"),
            "contract_date": contract.get("contract_date"),
            "investment": {
                "product_ref": contract.get("product_ref"),
                "total_amount": contract.get("total_amount"),
            },
            "investor": {
                "name": owner.get("full_name") or owner.get("name") or "",
                "nik": owner.get("nik"),
                "email": owner.get("email"),
                "phone_number": owner.get("phone_number"),
                "occupation": owner.get("occupation"),
                "address": owner.get("address"),
                "village": owner.get("village"),
                "city": owner.get("city"),
                "province": owner.get("province"),
                "postal_code": owner.get("postal_code"),
            },
            "asset": {
                "instance_id": asset.get("instance_id"),
                "asset_category": asset.get("asset_category"),
                "location": asset.get("location"),
                "plot": asset.get("plot"),
                "block": asset.get("block"),
            } if asset else None,
            "payment_terms": {
                "kind": contract.get("payment_kind"),
                "payment_term": contract.get("payment_term"),
                "total_installments": contract.get("total_installments"),
                "duration_years": contract.get("duration_years"),
            },
            "signature_data_url": signature.get("signature_data"),
        }
