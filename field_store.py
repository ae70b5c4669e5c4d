"""
Field Store - identity fields collected by the wizard, keyed by user.

Written incrementally, one wizard step at a time. Every method takes the
caller's own user id; there is no way to address another user's entry.
"""

import logging
from datetime import date
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from crud import upsert_statement, utcnow
from kyc_validation import (
    mask_tax_id,
    normalize_phone,
    normalize_tax_id,
    validate_address,
    validate_date_of_birth,
)
from models import KYCProfile
from schemas import FieldStoreEntry

log = logging.getLogger(__name__)

# Orchestrator preconditions: complete address, phone and tax ID
REQUIRED_FOR_ACTIVATION = ("phone", "street1", "city", "state", "postal_code", "tax_id")
IDENTITY_FIELDS = ("phone", "street1", "street2", "city", "state", "postal_code", "tax_id", "date_of_birth")


class FieldStore:
    """Per-user storage of identity fields"""

    @staticmethod
    async def get_entry(db: AsyncSession, user_id: int) -> Optional[KYCProfile]:
        result = await db.execute(select(KYCProfile).where(KYCProfile.user_id == user_id))
        return result.scalars().first()

    @staticmethod
    async def _write(db: AsyncSession, user_id: int, values: dict) -> KYCProfile:
        values = {**values, "updated_at": utcnow()}
        stmt = upsert_statement(
            db,
            KYCProfile,
            {"user_id": user_id, **values},
            index_elements=["user_id"],
            update_columns=list(values.keys()),
        )
        await db.execute(stmt)
        await db.commit()
        entry = await FieldStore.get_entry(db, user_id)
        await db.refresh(entry)
        return entry

    @staticmethod
    async def save_phone(db: AsyncSession, user_id: int, phone: str) -> KYCProfile:
        entry = await FieldStore._write(db, user_id, {"phone": normalize_phone(phone)})
        log.info(f"Field store: phone saved for user {user_id}")
        return entry

    @staticmethod
    async def save_address(
        db: AsyncSession,
        user_id: int,
        street1: str,
        street2: Optional[str],
        city: str,
        state: str,
        postal_code: str,
    ) -> KYCProfile:
        values = validate_address(street1, street2, city, state, postal_code)
        entry = await FieldStore._write(db, user_id, values)
        log.info(f"Field store: address saved for user {user_id}")
        return entry

    @staticmethod
    async def save_tax_identity(db: AsyncSession, user_id: int, tax_id: str, date_of_birth: date) -> KYCProfile:
        values = {
            "tax_id": normalize_tax_id(tax_id),
            "date_of_birth": validate_date_of_birth(date_of_birth),
        }
        entry = await FieldStore._write(db, user_id, values)
        log.info(f"Field store: PAN {mask_tax_id(values['tax_id'])} and DOB saved for user {user_id}")
        return entry

    @staticmethod
    async def clear_identity_fields(db: AsyncSession, user_id: int) -> None:
        """Null every identity field. Caller owns the transaction."""
        await db.execute(
            update(KYCProfile)
            .where(KYCProfile.user_id == user_id)
            .values({**{field: None for field in IDENTITY_FIELDS}, "updated_at": utcnow()})
        )

    @staticmethod
    def missing_fields(entry: Optional[KYCProfile], required=REQUIRED_FOR_ACTIVATION) -> List[str]:
        if entry is None:
            return list(required)
        return [field for field in required if not getattr(entry, field)]

    @staticmethod
    def to_schema(entry: Optional[KYCProfile]) -> FieldStoreEntry:
        if entry is None:
            return FieldStoreEntry(missing_fields=list(REQUIRED_FOR_ACTIVATION))
        return FieldStoreEntry(
            phone=entry.phone,
            street1=entry.street1,
            street2=entry.street2,
            city=entry.city,
            state=entry.state,
            postal_code=entry.postal_code,
            tax_id_masked=mask_tax_id(entry.tax_id),
            date_of_birth=entry.date_of_birth,
            missing_fields=FieldStore.missing_fields(entry),
            updated_at=entry.updated_at,
        )
