"""
Linked Account Record store.

One row per community, written with upserts keyed on community_id so two
racing activation attempts can never produce two rows. An attempt lease
(`attempt_started_at`) marks the record as in flight; taking it is a single
compare-and-set UPDATE, so only one attempt talks to the provider at a time.

The claim hands back an attempt token. Progress writes, the outcome write and
the release all match on it, so an attempt whose lease expired and was taken
over can no longer touch the record.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from crud import upsert_statement, utcnow
from kyc_constants import ERROR_REASON_STATES, KYCStatus
from kyc_errors import AttemptInProgressError
from models import Community, KYCDocument, LinkedAccount

log = logging.getLogger(__name__)


def _held_by(community_id: str, attempt_token: Optional[str]):
    clauses = [LinkedAccount.community_id == community_id]
    if attempt_token is not None:
        clauses.append(LinkedAccount.attempt_token == attempt_token)
    return clauses


class LinkedAccountStore:
    """Persistence for LinkedAccount rows and the community status they mirror"""

    @staticmethod
    async def get(db: AsyncSession, community_id: str) -> Optional[LinkedAccount]:
        result = await db.execute(
            select(LinkedAccount)
            .where(LinkedAccount.community_id == community_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    def has_live_lease(record: Optional[LinkedAccount], now: Optional[datetime] = None) -> bool:
        if record is None or record.attempt_started_at is None:
            return False
        now = now or utcnow()
        return record.attempt_started_at > now - timedelta(seconds=settings.ACTIVATION_LEASE_SECONDS)

    @staticmethod
    async def claim_attempt(db: AsyncSession, community_id: str, environment: str) -> Optional[str]:
        """
        Create the record if missing and take the attempt lease.

        Returns the attempt token, or None when another attempt holds a live
        lease; nothing is changed in that case.
        """
        now = utcnow()
        inserted = await db.execute(
            upsert_statement(
                db,
                LinkedAccount,
                {
                    "community_id": community_id,
                    "provider_environment": environment,
                    "kyc_status": KYCStatus.IN_PROGRESS.value,
                    "last_updated": now,
                },
                index_elements=["community_id"],
            )
        )
        if inserted.rowcount == 1:
            await db.execute(
                update(Community)
                .where(Community.id == community_id)
                .values(kyc_status=KYCStatus.IN_PROGRESS.value)
            )

        token = uuid.uuid4().hex
        cutoff = now - timedelta(seconds=settings.ACTIVATION_LEASE_SECONDS)
        claimed = await db.execute(
            update(LinkedAccount)
            .where(
                LinkedAccount.community_id == community_id,
                or_(LinkedAccount.attempt_started_at.is_(None), LinkedAccount.attempt_started_at < cutoff),
            )
            .values(attempt_started_at=now, attempt_token=token, last_updated=now)
        )
        await db.commit()
        if claimed.rowcount != 1:
            log.info(f"Activation already in flight for community {community_id}; lease not taken")
            return None
        return token

    @staticmethod
    async def record_progress(db: AsyncSession, community_id: str, attempt_token: str, **fields: Any) -> None:
        """Persist identifiers as soon as the provider returns them"""
        result = await db.execute(
            update(LinkedAccount)
            .where(*_held_by(community_id, attempt_token))
            .values(**fields, last_updated=utcnow())
        )
        if result.rowcount != 1:
            await db.rollback()
            log.warning(f"Community {community_id}: attempt lost its lease; progress not written")
            raise AttemptInProgressError()
        await db.commit()

    @staticmethod
    async def release_attempt(db: AsyncSession, community_id: str, attempt_token: str) -> None:
        """No-op when the lease has since passed to another attempt"""
        await db.execute(
            update(LinkedAccount)
            .where(*_held_by(community_id, attempt_token))
            .values(attempt_started_at=None, attempt_token=None, last_updated=utcnow())
        )
        await db.commit()

    @staticmethod
    async def write_outcome(
        db: AsyncSession,
        community_id: str,
        status: KYCStatus,
        error_reason: Optional[str] = None,
        attempt_token: Optional[str] = None,
        **fields: Any,
    ) -> None:
        """
        Write the record and Community.kyc_status in one transaction and
        release the lease. error_reason is dropped outside the error states.

        With an attempt_token the write only lands while that attempt still
        holds the lease; the status refresh writes without one.
        """
        if status not in ERROR_REASON_STATES:
            error_reason = None
        try:
            result = await db.execute(
                update(LinkedAccount)
                .where(*_held_by(community_id, attempt_token))
                .values(
                    **fields,
                    kyc_status=status.value,
                    error_reason=error_reason,
                    products_activated=status == KYCStatus.ACTIVATED,
                    attempt_started_at=None,
                    attempt_token=None,
                    last_updated=utcnow(),
                )
            )
            if result.rowcount != 1:
                raise AttemptInProgressError()
            await db.execute(
                update(Community)
                .where(Community.id == community_id)
                .values(kyc_status=status.value)
            )
            await db.commit()
        except AttemptInProgressError:
            await db.rollback()
            log.warning(f"Community {community_id}: attempt lost its lease; outcome {status.value} dropped")
            raise
        except Exception:
            await db.rollback()
            raise
        log.info(f"Community {community_id} kyc_status -> {status.value}")

    @staticmethod
    async def delete(db: AsyncSession, community_id: str) -> None:
        """Remove the record and its documents. Caller owns the transaction."""
        await db.execute(delete(KYCDocument).where(KYCDocument.community_id == community_id))
        await db.execute(delete(LinkedAccount).where(LinkedAccount.community_id == community_id))
