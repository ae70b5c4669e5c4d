"""
KYC Service - platform-facing payout activation operations

check_activation_status, submit_activation, refresh_status, reset_activation.
Ownership is enforced by the caller (deps.get_owned_community); everything
here assumes `community` belongs to the acting user.
"""

import logging

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from activation_pipeline import ActivationOutcome, ActivationPipeline, prepare_context
from audit_service import AuditService
from field_store import FieldStore
from kyc_constants import (
    AWAITING_PROVIDER_STATES,
    TERMINAL_FAILURE_STATES,
    ActivationAction,
    KYCStatus,
)
from linked_account_store import LinkedAccountStore
from models import Community, LinkedAccount, User
from provider_client import ProviderClient, dashboard_onboarding_url
from reconciliation_service import ReconciliationService
from schemas import (
    ActivationCheckResponse,
    ActivationRequest,
    ActivationResult,
    RefreshStatusResponse,
    ResetResponse,
)

log = logging.getLogger(__name__)

ALREADY_ACTIVE_MESSAGE = "KYC already verified"
UNDER_REVIEW_MESSAGE = "Your KYC is currently under review. You'll be notified once verified."
IN_FLIGHT_MESSAGE = "Activation is already in progress. Please check back in a moment."


def _awaiting_url(record: LinkedAccount):
    if record.onboarding_url:
        return record.onboarding_url
    if record.external_account_id:
        return dashboard_onboarding_url(record.external_account_id)
    return None


class KYCService:
    """Service for community payout activation"""

    @staticmethod
    async def check_activation_status(db: AsyncSession, community: Community) -> ActivationCheckResponse:
        """Read-only: never contacts the provider"""
        record = await LinkedAccountStore.get(db, community.id)
        profile = await FieldStore.get_entry(db, community.owner_id)
        missing = FieldStore.missing_fields(profile)

        if record is None:
            return ActivationCheckResponse(
                action=ActivationAction.PROCEED,
                status=KYCStatus(community.kyc_status),
                message="Complete your details to activate payouts" if missing else "Ready to activate payouts",
                missing_fields=missing,
            )

        status = KYCStatus(record.kyc_status)
        if status == KYCStatus.ACTIVATED:
            return ActivationCheckResponse(action=ActivationAction.SUCCESS, status=status, message=ALREADY_ACTIVE_MESSAGE)
        if status in AWAITING_PROVIDER_STATES:
            return ActivationCheckResponse(
                action=ActivationAction.WAIT,
                status=status,
                message=UNDER_REVIEW_MESSAGE,
                onboarding_url=_awaiting_url(record),
            )
        if status == KYCStatus.IN_PROGRESS and LinkedAccountStore.has_live_lease(record):
            return ActivationCheckResponse(action=ActivationAction.WAIT, status=status, message=IN_FLIGHT_MESSAGE)

        return ActivationCheckResponse(
            action=ActivationAction.PROCEED,
            status=status,
            message=record.error_reason or "Ready to activate payouts",
            missing_fields=list(record.missing_fields or []) or missing,
            onboarding_url=record.onboarding_url,
        )

    @staticmethod
    async def submit_activation(
        db: AsyncSession,
        provider: ProviderClient,
        community: Community,
        user: User,
        request: ActivationRequest,
    ) -> ActivationResult:
        """
        Run (or resume) activation for a community.

        Validation happens first and raises before any network call. A record
        that is active, under review, or locked by another attempt short-circuits
        without contacting the provider.
        """
        profile = await FieldStore.get_entry(db, user.id)
        ctx = prepare_context(community, user, profile, request)

        record = await LinkedAccountStore.get(db, community.id)
        if record is not None:
            short_circuit = KYCService._short_circuit(record)
            if short_circuit is not None:
                return short_circuit

            if KYCStatus(record.kyc_status) in TERMINAL_FAILURE_STATES:
                await KYCService._restart_after_failure(db, community, record)
                ctx.generation = community.kyc_generation

        ctx.attempt_token = await LinkedAccountStore.claim_attempt(db, community.id, provider.environment)
        if ctx.attempt_token is None:
            return ActivationResult(
                success=True,
                status=KYCStatus.IN_PROGRESS,
                action=ActivationAction.WAIT,
                message=IN_FLIGHT_MESSAGE,
            )

        record = await LinkedAccountStore.get(db, community.id)
        # Another attempt may have finished between the first read and the claim
        short_circuit = KYCService._short_circuit(record, ignore_lease=True)
        if short_circuit is not None:
            await LinkedAccountStore.release_attempt(db, community.id, ctx.attempt_token)
            return short_circuit

        await AuditService.log_activation_event(
            "activation_attempt", community.id, user.id,
            status=record.kyc_status,
            details={"generation": ctx.generation, "resume": bool(record.external_account_id)},
        )
        outcome = await ActivationPipeline(db, provider).run(ctx, record)
        await AuditService.log_activation_event(
            "activation_outcome", community.id, user.id,
            status=outcome.status.value, old_status=record.kyc_status,
            details={"action": outcome.action.value},
        )
        return KYCService._result(outcome, ctx.account_id)

    @staticmethod
    def _short_circuit(record: LinkedAccount, ignore_lease: bool = False):
        status = KYCStatus(record.kyc_status)
        if status == KYCStatus.ACTIVATED:
            return ActivationResult(
                success=True,
                status=status,
                action=ActivationAction.SUCCESS,
                message=ALREADY_ACTIVE_MESSAGE,
                external_account_id=record.external_account_id,
            )
        if status in AWAITING_PROVIDER_STATES:
            return ActivationResult(
                success=True,
                status=status,
                action=ActivationAction.WAIT,
                message=UNDER_REVIEW_MESSAGE,
                onboarding_url=_awaiting_url(record),
                external_account_id=record.external_account_id,
            )
        if not ignore_lease and LinkedAccountStore.has_live_lease(record):
            return ActivationResult(
                success=True,
                status=status,
                action=ActivationAction.WAIT,
                message=IN_FLIGHT_MESSAGE,
            )
        return None

    @staticmethod
    async def _restart_after_failure(db: AsyncSession, community: Community, record: LinkedAccount) -> None:
        """Terminal failures are never retried in place: drop the record and move to a new generation"""
        log.info(
            f"Community {community.id}: restarting after {record.kyc_status} "
            f"(abandoning account {record.external_account_id})"
        )
        try:
            await LinkedAccountStore.delete(db, community.id)
            await db.execute(
                update(Community)
                .where(Community.id == community.id)
                .values(
                    kyc_generation=Community.kyc_generation + 1,
                    retired_account_id=record.external_account_id or community.retired_account_id,
                )
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        await db.refresh(community)

    @staticmethod
    def _result(outcome: ActivationOutcome, account_id) -> ActivationResult:
        return ActivationResult(
            success=outcome.success,
            status=outcome.status,
            action=outcome.action,
            message=outcome.message,
            onboarding_url=outcome.onboarding_url,
            external_account_id=account_id,
            missing_fields=outcome.missing_fields,
        )

    @staticmethod
    async def refresh_status(db: AsyncSession, provider: ProviderClient, community: Community) -> RefreshStatusResponse:
        return await ReconciliationService.refresh(db, provider, community)

    @staticmethod
    async def reset_activation(
        db: AsyncSession, provider: ProviderClient, community: Community, user: User
    ) -> ResetResponse:
        return await ReconciliationService.reset(db, provider, community, user.id)
