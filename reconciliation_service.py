"""
Status Reconciler - brings the platform's view of a linked account back in
line with the provider's, and resets an activation back to NOT_STARTED.
"""

import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from audit_service import AuditService
from field_store import FieldStore
from kyc_constants import TERMINAL_FAILURE_STATES, KYCStatus, ProviderErrorKind, map_provider_status
from kyc_errors import AttemptInProgressError, ProviderError, TerminalStateError
from linked_account_store import LinkedAccountStore
from models import Community, LinkedAccount
from provider_client import (
    ProviderClient,
    currently_due,
    requirement_errors,
    settlement_fields_due,
)
from schemas import RefreshStatusResponse, ResetResponse

log = logging.getLogger(__name__)

MISMATCH_MESSAGE = "This payout account was created in a different environment. Please reset and start again."
_MISMATCH_KINDS = {ProviderErrorKind.ACCESS_DENIED, ProviderErrorKind.NOT_FOUND}
_TERMINAL_VALUES = {status.value for status in TERMINAL_FAILURE_STATES}


def _is_mismatch_error(error: ProviderError) -> bool:
    # Credentials from the other environment get a 400 or access denied for the account
    return error.kind in _MISMATCH_KINDS or error.http_status == 400


def _mismatch_response() -> RefreshStatusResponse:
    return RefreshStatusResponse(
        status=KYCStatus.NOT_STARTED,
        account_mismatch=True,
        needs_restart=True,
        message=MISMATCH_MESSAGE,
    )


class ReconciliationService:
    """refresh / reset of a community's linked account"""

    @staticmethod
    async def detect_mismatch(provider: ProviderClient, record: Optional[LinkedAccount]) -> bool:
        if record is None or not record.external_account_id:
            return False
        if record.provider_environment != provider.environment:
            return True
        try:
            await provider.get_account(record.external_account_id)
        except ProviderError as e:
            if _is_mismatch_error(e):
                return True
            raise
        return False

    @staticmethod
    async def refresh(db: AsyncSession, provider: ProviderClient, community: Community) -> RefreshStatusResponse:
        record = await LinkedAccountStore.get(db, community.id)
        if record is None or not record.external_account_id:
            return RefreshStatusResponse(
                status=KYCStatus(community.kyc_status),
                message="No linked account found",
            )

        if record.provider_environment != provider.environment:
            log.warning(
                f"Community {community.id}: account {record.external_account_id} belongs to "
                f"{record.provider_environment}, configured environment is {provider.environment}"
            )
            await AuditService.log_activation_event(
                "environment_mismatch", community.id, community.owner_id, status=record.kyc_status
            )
            return _mismatch_response()

        try:
            account = await provider.get_account(record.external_account_id)
        except ProviderError as e:
            if not _is_mismatch_error(e):
                raise
            log.warning(f"Community {community.id}: provider refused account lookup ({e.kind.value})")
            await AuditService.log_activation_event(
                "environment_mismatch", community.id, community.owner_id, status=record.kyc_status
            )
            return _mismatch_response()

        missing, errors = [], {}
        hosted_required, bank_ok, product_status = False, False, None
        if record.product_id:
            try:
                product = await provider.get_product(record.external_account_id, record.product_id)
            except ProviderError as e:
                log.warning(f"Product lookup failed for {record.product_id}: {e.kind.value}")
                product = None
            if product:
                missing = currently_due(product)
                errors = requirement_errors(product)
                product_status = product.get("activation_status")
                hosted_required = bool((product.get("requirements") or {}).get("hosted_onboarding_required"))
                bank_ok = product_status == "activated" and not settlement_fields_due(product)

        account_status = account.get("status")
        status = map_provider_status(product_status, account_status, missing)
        error_reason = None
        if status == KYCStatus.NEEDS_INFO:
            if errors:
                error_reason = "Provider reported errors: " + ", ".join(str(key) for key in errors)
            elif missing:
                error_reason = "Outstanding requirements: " + ", ".join(missing)
            else:
                error_reason = "The provider needs more information"

        changed = (
            status.value != record.kyc_status
            or status.value != community.kyc_status
            or missing != (record.missing_fields or [])
            or errors != (record.requirement_errors or {})
        )
        if changed and LinkedAccountStore.has_live_lease(record):
            # The in-flight attempt writes its own outcome
            log.info(f"Community {community.id}: refresh skipped write while an attempt is in flight")
        elif changed:
            old_status = record.kyc_status
            await LinkedAccountStore.write_outcome(
                db,
                community.id,
                status,
                error_reason=error_reason,
                missing_fields=missing,
                requirement_errors=errors,
            )
            await AuditService.log_activation_event(
                "activation_refresh", community.id, community.owner_id,
                status=status.value, old_status=old_status,
            )
        else:
            log.info(f"Community {community.id}: no status change ({status.value})")

        return RefreshStatusResponse(
            status=status,
            missing_fields=missing,
            requirement_errors=errors,
            hosted_onboarding_required=hosted_required,
            bank_configured=bank_ok,
            account_status=account_status,
        )

    @staticmethod
    async def reset(
        db: AsyncSession,
        provider: ProviderClient,
        community: Community,
        user_id: int,
    ) -> ResetResponse:
        """
        Delete the linked account record and the owner's identity fields and
        start over with a new idempotency generation.
        """
        record = await LinkedAccountStore.get(db, community.id)
        if LinkedAccountStore.has_live_lease(record):
            raise AttemptInProgressError()

        old_status = community.kyc_status
        if old_status == KYCStatus.ACTIVATED.value:
            if not await ReconciliationService.detect_mismatch(provider, record):
                raise TerminalStateError("Payouts are already active for this community and cannot be reset.")
            log.warning(f"Resetting ACTIVATED community {community.id} after environment mismatch")

        retired = community.retired_account_id
        if record is not None and record.external_account_id and record.kyc_status in _TERMINAL_VALUES:
            retired = record.external_account_id

        try:
            await LinkedAccountStore.delete(db, community.id)
            await FieldStore.clear_identity_fields(db, user_id)
            await db.execute(
                update(Community)
                .where(Community.id == community.id)
                .values(
                    kyc_status=KYCStatus.NOT_STARTED.value,
                    kyc_generation=Community.kyc_generation + 1,
                    retired_account_id=retired,
                )
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        log.info(f"Activation reset for community {community.id} (was {old_status})")
        await AuditService.log_activation_event(
            "activation_reset", community.id, user_id,
            status=KYCStatus.NOT_STARTED.value, old_status=old_status,
        )
        return ResetResponse(success=True, message="KYC has been reset. You can start the activation again.")
