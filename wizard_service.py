"""
Wizard Service - server side of the Collection Wizard.

Loads pre-fill from the caller's own Field Store entry, persists the phone,
address and tax-identity steps, and hands the documents + bank step to the
activation orchestrator. Bank details and documents are never stored here.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from audit_service import AuditService
from field_store import FieldStore
from kyc_constants import WizardStep
from kyc_errors import ActivationError, sanitize_error
from kyc_service import KYCService
from kyc_validation import mask_tax_id
from models import Community, User
from provider_client import ProviderClient
from schemas import ActivationRequest, AddressStep, PhoneStep, TaxIdentityStep, WizardStateResponse
from wizard import CollectionWizard

log = logging.getLogger(__name__)


class WizardService:
    """Wizard entry, per-step persistence and submission"""

    @staticmethod
    async def get_state(db: AsyncSession, user: User) -> WizardStateResponse:
        entry = await FieldStore.get_entry(db, user.id)
        wizard = CollectionWizard.from_entry(entry)
        wizard.start()
        return wizard.to_response()

    @staticmethod
    async def save_phone(db: AsyncSession, user: User, step: PhoneStep):
        entry = await FieldStore.save_phone(db, user.id, step.phone)
        await AuditService.log_action("identity_update", "kyc_profile", user.id, user_id=user.id,
                                      new_value={"step": WizardStep.PHONE.value})
        return FieldStore.to_schema(entry)

    @staticmethod
    async def save_address(db: AsyncSession, user: User, step: AddressStep):
        entry = await FieldStore.save_address(
            db, user.id, step.street1, step.street2, step.city, step.state, step.postal_code
        )
        await AuditService.log_action("identity_update", "kyc_profile", user.id, user_id=user.id,
                                      new_value={"step": WizardStep.ADDRESS.value})
        return FieldStore.to_schema(entry)

    @staticmethod
    async def save_tax_identity(db: AsyncSession, user: User, step: TaxIdentityStep):
        entry = await FieldStore.save_tax_identity(db, user.id, step.tax_id, step.date_of_birth)
        await AuditService.log_action("identity_update", "kyc_profile", user.id, user_id=user.id,
                                      new_value={"step": WizardStep.TAX_ID.value,
                                                 "tax_id_masked": mask_tax_id(entry.tax_id)})
        return FieldStore.to_schema(entry)

    @staticmethod
    async def submit(
        db: AsyncSession,
        provider: ProviderClient,
        community: Community,
        user: User,
        request: ActivationRequest,
    ) -> WizardStateResponse:
        """
        Run the documents and bank steps, submit, and return where the wizard
        should go next. Activation errors come back inside the state, routed
        to the step that owns the failing field.
        """
        community_id = community.id
        entry = await FieldStore.get_entry(db, user.id)
        wizard = CollectionWizard.from_entry(entry)
        wizard.start()
        try:
            if request.documents:
                wizard.complete_step(WizardStep.DOCUMENTS, {"documents": request.documents})
            else:
                wizard.skip_documents()
            wizard.complete_step(WizardStep.BANK, {"bank_details": request.bank_details})
            result = await KYCService.submit_activation(db, provider, community, user, request)
        except ActivationError as e:
            safe = sanitize_error(e, "wizard_submit")
            next_step = wizard.apply_response(error=safe)
            log.info(f"Wizard for community {community_id} reopened at {next_step.value} ({safe.kind.value})")
            return wizard.to_response()

        next_step = wizard.apply_response(result=result)
        log.info(f"Wizard for community {community_id} -> {next_step.value} ({result.status.value})")
        return wizard.to_response()
