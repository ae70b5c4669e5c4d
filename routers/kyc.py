import logging

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse

from deps import CurrentUserDep, OwnedCommunityDep, ProviderDep, SessionDep
from field_store import FieldStore
from kyc_errors import ActivationError, sanitize_error
from kyc_service import KYCService
from payout_gate import PayoutGate
from schemas import (
    ActivationCheckResponse,
    ActivationErrorResponse,
    ActivationRequest,
    ActivationResult,
    AddressStep,
    FieldStoreEntry,
    PayoutGateResponse,
    PhoneStep,
    RefreshStatusResponse,
    ResetResponse,
    TaxIdentityStep,
    WizardStateResponse,
)
from wizard_service import WizardService

log = logging.getLogger(__name__)

kyc_router = APIRouter(prefix="/kyc", tags=["kyc"])

ERROR_RESPONSES = {
    400: {"model": ActivationErrorResponse},
    409: {"model": ActivationErrorResponse},
    422: {"model": ActivationErrorResponse},
    502: {"model": ActivationErrorResponse},
    503: {"model": ActivationErrorResponse},
}


def _error_response(error: Exception, context: str) -> JSONResponse:
    safe = sanitize_error(error, context)
    return JSONResponse(status_code=safe.status_code, content=safe.to_response())


# -----------------------
#  ACTIVATION
# -----------------------
@kyc_router.get("/communities/{community_id}/activation", response_model=ActivationCheckResponse)
async def check_activation(db_session: SessionDep, community: OwnedCommunityDep):
    """Where this community stands and what the owner should do next. Never calls the provider."""
    try:
        return await KYCService.check_activation_status(db_session, community)
    except HTTPException:
        raise
    except Exception as e:
        return _error_response(e, "check_activation")


@kyc_router.post(
    "/communities/{community_id}/activation",
    response_model=ActivationResult,
    responses=ERROR_RESPONSES,
)
async def submit_activation(
    community_id: str,
    payload: ActivationRequest,
    db_session: SessionDep,
    provider: ProviderDep,
    community: OwnedCommunityDep,
    current_user: CurrentUserDep,
):
    """
    Submit bank details (and optional supporting documents) to activate payouts.

    Safe to retry: an existing linked account is resumed or reused, never
    duplicated. Bank details are not stored and never echoed back.
    """
    try:
        return await KYCService.submit_activation(db_session, provider, community, current_user, payload)
    except HTTPException:
        raise
    except ActivationError as e:
        log.info(f"Activation for community {community_id} failed: {e.kind.value}")
        return _error_response(e, "submit_activation")
    except Exception as e:
        return _error_response(e, "submit_activation")


@kyc_router.post(
    "/communities/{community_id}/activation/refresh",
    response_model=RefreshStatusResponse,
    responses=ERROR_RESPONSES,
)
async def refresh_activation(db_session: SessionDep, provider: ProviderDep, community: OwnedCommunityDep):
    try:
        return await KYCService.refresh_status(db_session, provider, community)
    except HTTPException:
        raise
    except Exception as e:
        return _error_response(e, "refresh_status")


@kyc_router.post(
    "/communities/{community_id}/activation/reset",
    response_model=ResetResponse,
    responses=ERROR_RESPONSES,
)
async def reset_activation(
    db_session: SessionDep,
    provider: ProviderDep,
    community: OwnedCommunityDep,
    current_user: CurrentUserDep,
):
    """Start over: removes the linked account record and the owner's identity fields."""
    try:
        return await KYCService.reset_activation(db_session, provider, community, current_user)
    except HTTPException:
        raise
    except Exception as e:
        return _error_response(e, "reset_activation")


@kyc_router.get("/communities/{community_id}/payouts/gate", response_model=PayoutGateResponse)
async def payout_gate(db_session: SessionDep, community: OwnedCommunityDep):
    allowed, status, reason = await PayoutGate.check(db_session, community.id)
    return PayoutGateResponse(
        community_id=community.id,
        kyc_status=status,
        can_create_paid_events=allowed,
        reason=reason,
    )


# -----------------------
#  WIZARD
# -----------------------
@kyc_router.get("/communities/{community_id}/wizard", response_model=WizardStateResponse)
async def wizard_state(db_session: SessionDep, community: OwnedCommunityDep, current_user: CurrentUserDep):
    """Entry state: first incomplete step plus pre-fill from the caller's own stored fields."""
    return await WizardService.get_state(db_session, current_user)


@kyc_router.get("/fields", response_model=FieldStoreEntry)
async def get_fields(db_session: SessionDep, current_user: CurrentUserDep):
    entry = await FieldStore.get_entry(db_session, current_user.id)
    return FieldStore.to_schema(entry)


@kyc_router.put("/fields/phone", response_model=FieldStoreEntry, responses={422: {"model": ActivationErrorResponse}})
async def save_phone(payload: PhoneStep, db_session: SessionDep, current_user: CurrentUserDep):
    try:
        return await WizardService.save_phone(db_session, current_user, payload)
    except HTTPException:
        raise
    except Exception as e:
        return _error_response(e, "save_phone")


@kyc_router.put("/fields/address", response_model=FieldStoreEntry, responses={422: {"model": ActivationErrorResponse}})
async def save_address(payload: AddressStep, db_session: SessionDep, current_user: CurrentUserDep):
    try:
        return await WizardService.save_address(db_session, current_user, payload)
    except HTTPException:
        raise
    except Exception as e:
        return _error_response(e, "save_address")


@kyc_router.put(
    "/fields/tax-identity",
    response_model=FieldStoreEntry,
    responses={422: {"model": ActivationErrorResponse}},
)
async def save_tax_identity(payload: TaxIdentityStep, db_session: SessionDep, current_user: CurrentUserDep):
    try:
        return await WizardService.save_tax_identity(db_session, current_user, payload)
    except HTTPException:
        raise
    except Exception as e:
        return _error_response(e, "save_tax_identity")


@kyc_router.post("/communities/{community_id}/wizard/submit", response_model=WizardStateResponse)
async def wizard_submit(
    payload: ActivationRequest,
    db_session: SessionDep,
    provider: ProviderDep,
    community: OwnedCommunityDep,
    current_user: CurrentUserDep,
):
    """Documents + bank step. Returns the wizard's next state; errors are routed to the owning step."""
    try:
        return await WizardService.submit(db_session, provider, community, current_user, payload)
    except HTTPException:
        raise
    except Exception as e:
        return _error_response(e, "wizard_submit")
