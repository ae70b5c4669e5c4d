"""
Payout Gate
===========

One rule: no activated payout account, no paid events.

A community may create paid events only while Community.kyc_status is
ACTIVATED. Every other status, including VERIFIED, keeps the gate closed.
The activation workflow owns kyc_status; this module only reads it.
"""

from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kyc_constants import KYCStatus
from models import Community

GATE_REASONS = {
    KYCStatus.NOT_STARTED: "Payout activation has not been started",
    KYCStatus.IN_PROGRESS: "Payout activation is in progress",
    KYCStatus.PENDING: "Payout details are under review",
    KYCStatus.VERIFIED: "Identity verified; settlement account not yet active",
    KYCStatus.NEEDS_INFO: "The payout provider needs more information",
    KYCStatus.REJECTED: "Payout activation was rejected",
    KYCStatus.FAILED: "Payout activation failed",
}


def can_create_paid_events(status: Optional[str]) -> bool:
    return status == KYCStatus.ACTIVATED.value


class PayoutGate:
    """Read-only gate consumed by paid-event creation"""

    @staticmethod
    async def check(db: AsyncSession, community_id: str) -> Tuple[bool, KYCStatus, Optional[str]]:
        """
        Returns: (allowed, status, reason)
        - allowed: bool - True only when kyc_status is ACTIVATED
        - reason: str - Why paid events are blocked (None when allowed)
        """
        result = await db.execute(select(Community.kyc_status).where(Community.id == community_id))
        raw = result.scalar_one_or_none()
        status = KYCStatus(raw) if raw else KYCStatus.NOT_STARTED
        allowed = can_create_paid_events(status.value)
        return allowed, status, None if allowed else GATE_REASONS[status]
