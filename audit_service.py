"""
Audit Logging Service - append-only trail of payout activation events
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
import json
import logging

log = logging.getLogger(__name__)

# Keys that must never reach the audit trail, masked or not
_FORBIDDEN_KEYS = {"account_number", "confirm_account_number", "tax_id", "pan", "data", "content"}


class AuditService:
    """Append-only audit logging for activation events"""

    @staticmethod
    def _scrub(value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not value:
            return value
        return {k: v for k, v in value.items() if k not in _FORBIDDEN_KEYS}

    @staticmethod
    async def log_action(
        action: str,
        entity_type: str,
        entity_id: Any,
        user_id: Optional[int] = None,
        old_value: Optional[Dict] = None,
        new_value: Optional[Dict] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """
        Log audit event (append-only).

        Actions: activation_attempt, activation_outcome, activation_refresh,
        activation_reset, environment_mismatch, identity_update
        Entity types: community, kyc_profile
        """
        try:
            audit_entry = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "action": action,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "user_id": user_id,
                "old_value": AuditService._scrub(old_value),
                "new_value": AuditService._scrub(new_value),
                "reason": reason,
            }
            log.info(f"AUDIT: {json.dumps(audit_entry, default=str)}")
            return True
        except (TypeError, ValueError) as e:
            log.error(f"Error logging audit: {str(e)}")
            return False

    @staticmethod
    async def log_activation_event(
        action: str,
        community_id: str,
        user_id: Optional[int],
        status: Optional[str] = None,
        old_status: Optional[str] = None,
        details: Optional[Dict] = None,
    ) -> bool:
        """Log a community activation event"""
        new_value = {"kyc_status": status, **(details or {})}
        old_value = {"kyc_status": old_status} if old_status else None
        return await AuditService.log_action(
            action=action,
            entity_type="community",
            entity_id=community_id,
            user_id=user_id,
            old_value=old_value,
            new_value=new_value,
        )
