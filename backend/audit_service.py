from datetime import datetime
from typing import Optional, Dict, Any, List
from fastapi import HTTPException, status
import logging

from core.store import BillStore, BillTransaction

logger = logging.getLogger(__name__)

# ARCHITECTURAL GUARD: Financial entity types that CANNOT be deleted
FINANCIAL_ENTITY_TYPES = [
    "INVOICE",
    "PAYMENT",
    "LEDGER_ENTRY",
]

class AuditService:
    """Service for immutable audit logging"""

    def __init__(self, store: BillStore):
        self.store = store

    def enforce_financial_delete_guard(self, entity_type: str, action_type: str):
        """
        ARCHITECTURAL GUARD: Prevent DELETE operations on financial entities.

        Invoices and payments must NEVER be deleted. An invoice is voided by
        cancelling it (which restocks its lines); a payment is append-only.

        Raises HTTPException if attempting to delete financial entity.
        """
        if action_type == "DELETE" and entity_type in FINANCIAL_ENTITY_TYPES:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"ARCHITECTURAL GUARD: Cannot DELETE {entity_type}. Financial entities are immutable. Cancel the invoice instead."
            )

    def build_entry(
        self,
        entity_type: str,
        entity_id: str,
        action_type: str,
        user_id: Optional[str],
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        return {
            "module_name": "BILLING",
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action_type": action_type,
            "old_value_json": old_value,
            "new_value_json": new_value,
            "user_id": user_id,
            "timestamp": datetime.utcnow()
        }

    async def log_action(
        self,
        txn: BillTransaction,
        entity_type: str,
        entity_id: str,
        action_type: str,
        user_id: Optional[str],
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None
    ):
        """
        Log an action to audit trail (INSERT ONLY).

        The entry is written through the caller's transaction, so it commits
        or aborts together with the change it records.

        ENFORCES: Financial entity delete guard.
        """
        # ARCHITECTURAL GUARD: Enforce financial delete protection
        self.enforce_financial_delete_guard(entity_type, action_type)

        entry = self.build_entry(entity_type, entity_id, action_type, user_id, old_value, new_value)
        await txn.insert_audit_entry(entry)
        logger.info(f"Audit log staged: {action_type} on {entity_type}:{entity_id} by user:{user_id}")

    async def get_audit_logs(
        self,
        entity_id: Optional[str] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Retrieve audit logs (READ ONLY)"""
        return await self.store.list_audit_logs(entity_id=entity_id, limit=limit)
