from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)


class AuditService:
    """Service for immutable settlement audit logging"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.audit_logs

    async def log_action(
        self,
        entity_type: str,
        entity_id: str,
        action_type: str,
        actor: str,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        session=None
    ):
        """
        Log an action to audit trail (INSERT ONLY).

        Joins the caller's session so the entry commits or rolls back with
        the settlement it describes.
        """
        try:
            audit_entry = {
                "module_name": "SETTLEMENT",
                "entity_type": entity_type,
                "entity_id": entity_id,
                "action_type": action_type,
                "old_value_json": old_value,
                "new_value_json": new_value,
                "actor": actor,
                "timestamp": datetime.utcnow()
            }

            await self.collection.insert_one(audit_entry, session=session)
            logger.info(f"Audit log created: {action_type} on {entity_type}:{entity_id} by {actor}")
        except Exception as e:
            # Don't fail the main operation if audit logging fails
            logger.error(f"Failed to create audit log: {str(e)}")
