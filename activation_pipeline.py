"""
Activation pipeline: account -> stakeholder -> documents -> settlement.

Each step checks what the Linked Account Record already holds, does only the
missing work, and persists any identifier the provider returns before the
next step starts. A run that dies half way leaves a record the next run
resumes from.
"""

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from crud import utcnow
from field_store import FieldStore
from kyc_constants import ActivationAction, KYCStatus, ProviderErrorKind, map_provider_status
from kyc_errors import KYCValidationError, ProviderError, TerminalStateError
from kyc_validation import (
    decode_document,
    first_usable_name,
    mask_account_number,
    mask_tax_id,
    normalize_phone,
    normalize_tax_id,
    registered_street_line,
    sanitize_description,
    validate_bank_details,
)
from linked_account_store import LinkedAccountStore
from models import Community, KYCDocument, KYCProfile, LinkedAccount, User
from provider_client import (
    SETTLEMENT_PRODUCT,
    ProviderClient,
    bank_configured,
    currently_due,
    dashboard_onboarding_url,
    hosted_onboarding_url,
    idempotency_token,
    required_documents,
    requirement_errors,
    settlement_fields_due,
)
from schemas import ActivationRequest

log = logging.getLogger(__name__)

DEFAULT_SUB_TYPES = {
    "individual_proof_of_identification": "personal_pan",
    "individual_proof_of_address": "voter_id_front",
}
ALLOWED_SUB_TYPES = {
    "individual_proof_of_identification": {"personal_pan"},
    "individual_proof_of_address": {
        "aadhaar_front", "aadhaar_back", "voter_id_front", "voter_id_back", "passport_front", "passport_back",
    },
}

STATUS_MESSAGES = {
    KYCStatus.ACTIVATED: "KYC approved! Payouts enabled.",
    KYCStatus.PENDING: "Your details are under review. You'll be notified once verified.",
    KYCStatus.VERIFIED: "Your identity is verified. Settlement activation is still being reviewed.",
    KYCStatus.NEEDS_INFO: "The provider needs more information before payouts can be enabled.",
    KYCStatus.REJECTED: "Payout activation was not approved. Reset to start again.",
    KYCStatus.FAILED: "Payout activation failed. Reset to start again.",
    KYCStatus.IN_PROGRESS: "KYC submitted. Please check status.",
}
MANUAL_SETUP_NOTE = "Account requires manual KYC completion in the provider dashboard"
MANUAL_SETUP_MESSAGE = (
    "Your payout account exists but requires manual completion. "
    "Please complete KYC in the provider dashboard."
)
HOSTED_ONBOARDING_MESSAGE = "Bank details must be completed on the provider's onboarding page."


@dataclass
class PreparedDocument:
    document_type: str
    sub_type: str
    filename: str
    content_type: str
    content: bytes = field(repr=False)


@dataclass
class ActivationContext:
    """Everything one attempt needs, validated before the provider is contacted"""
    community: Community
    user: User
    profile: KYCProfile
    generation: int
    legal_name: str
    description: str
    street_line: str
    account_number: str = field(repr=False)
    ifsc: str = ""
    beneficiary_name: str = ""
    documents: List[PreparedDocument] = field(default_factory=list)

    attempt_token: Optional[str] = None
    account_id: Optional[str] = None
    stakeholder_id: Optional[str] = None
    product_id: Optional[str] = None
    settlement_sent: bool = False

    @property
    def community_id(self) -> str:
        return self.community.id

    def token(self, operation: str) -> str:
        return idempotency_token(self.community.id, self.generation, operation)


@dataclass
class ActivationOutcome:
    status: KYCStatus
    action: ActivationAction
    message: str
    onboarding_url: Optional[str] = None
    error_reason: Optional[str] = None
    status_note: Optional[str] = None
    missing_fields: List[str] = field(default_factory=list)
    requirement_errors: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status in (KYCStatus.ACTIVATED, KYCStatus.PENDING, KYCStatus.VERIFIED, KYCStatus.IN_PROGRESS)


def outcome_for_status(status: KYCStatus, **kwargs) -> ActivationOutcome:
    action = ActivationAction.SUCCESS if status == KYCStatus.ACTIVATED else ActivationAction.SUBMITTED
    return ActivationOutcome(status=status, action=action, message=STATUS_MESSAGES[status], **kwargs)


def content_token(ctx: ActivationContext, operation: str, payload: Dict[str, Any]) -> str:
    """Same payload replays the same token; changed values get a new one"""
    digest = hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()[:8]
    return ctx.token(f"{operation}_{digest}")


def identity_out_of_date(record: LinkedAccount, profile: KYCProfile) -> bool:
    """
    True when an account from an earlier attempt may hold identity details
    older than the Field Store: the provider asked for more information, the
    fields were edited since they were last sent, or they were never sent.
    """
    if not record.external_account_id:
        return False
    if record.kyc_status == KYCStatus.NEEDS_INFO.value:
        return True
    if record.identity_synced_at is None:
        return True
    return profile.updated_at is not None and profile.updated_at > record.identity_synced_at


def prepare_context(
    community: Community,
    user: User,
    profile: Optional[KYCProfile],
    request: ActivationRequest,
) -> ActivationContext:
    """
    Check every precondition and normalise the inputs.
    Raises KYCValidationError; nothing here touches the network or the database.
    """
    missing = FieldStore.missing_fields(profile)
    if missing:
        raise KYCValidationError(
            "Please complete your details before activating payouts",
            field=missing[0],
        )
    normalize_phone(profile.phone)
    normalize_tax_id(profile.tax_id)

    bank = request.bank_details
    account_number, ifsc, beneficiary = validate_bank_details(
        bank.account_number,
        bank.ifsc,
        bank.beneficiary_name,
        bank.confirm_beneficiary_name,
        confirm_account_number=bank.confirm_account_number,
        tnc_accepted=bank.tnc_accepted,
    )

    documents = []
    for doc in request.documents or []:
        sub_type = doc.sub_type or DEFAULT_SUB_TYPES[doc.document_type]
        if sub_type not in ALLOWED_SUB_TYPES[doc.document_type]:
            raise KYCValidationError("Unsupported document kind", field="document")
        filename, mime, content = decode_document(doc.filename, doc.content_type, doc.data)
        documents.append(PreparedDocument(doc.document_type, sub_type, filename, mime, content))

    return ActivationContext(
        community=community,
        user=user,
        profile=profile,
        generation=community.kyc_generation or 1,
        legal_name=first_usable_name(user.full_name, community.name, beneficiary),
        description=sanitize_description(community.description or community.name),
        street_line=registered_street_line(profile.street1, profile.street2, profile.city),
        account_number=account_number,
        ifsc=ifsc,
        beneficiary_name=beneficiary,
        documents=documents,
    )


class ActivationPipeline:
    """Runs the ordered provider steps for one claimed attempt"""

    def __init__(self, db: AsyncSession, provider: ProviderClient, step_delay: Optional[float] = None):
        self.db = db
        self.provider = provider
        self.step_delay = settings.PROVIDER_STEP_DELAY_SECONDS if step_delay is None else step_delay

    async def _pause(self) -> None:
        if self.step_delay:
            await asyncio.sleep(self.step_delay)

    async def run(self, ctx: ActivationContext, record: LinkedAccount) -> ActivationOutcome:
        """
        Caller must hold the attempt lease. The lease is released on every
        exit path: by the outcome write, or explicitly when a step raises.
        """
        community_id = ctx.community_id
        attempt_token = ctx.attempt_token
        ctx.account_id = record.external_account_id
        ctx.stakeholder_id = record.stakeholder_id
        ctx.product_id = record.product_id
        resync = identity_out_of_date(record, ctx.profile)
        try:
            outcome = await self.sync_identity(ctx) if resync else None
            if outcome is None:
                await self.ensure_account(ctx)
                await self._pause()
                outcome = await self.ensure_stakeholder(ctx)
            if outcome is None:
                await self.upload_documents(ctx)
                outcome = await self.configure_settlement(ctx)
        except Exception:
            # rollback expires every loaded instance, so only plain values from here on
            await self.db.rollback()
            await LinkedAccountStore.release_attempt(self.db, community_id, attempt_token)
            log.warning(
                f"Activation for community {community_id} stopped at "
                f"account={ctx.account_id} stakeholder={ctx.stakeholder_id} product={ctx.product_id}"
            )
            raise

        await self.persist(ctx, outcome)
        return outcome

    # -----------------------
    #  STEP 1: ACCOUNT
    # -----------------------
    def registered_address(self, ctx: ActivationContext) -> Dict[str, Any]:
        profile = ctx.profile
        return {
            "street1": ctx.street_line,
            "street2": profile.street2 or "",
            "city": profile.city,
            "state": profile.state,
            "postal_code": profile.postal_code,
            "country": "IN",
        }

    def account_payload(self, ctx: ActivationContext) -> Dict[str, Any]:
        reference = ctx.community_id.replace("-", "")[:14]
        return {
            "email": ctx.user.email,
            "phone": ctx.profile.phone,
            "type": "route",
            "reference_id": f"{reference}g{ctx.generation}"[:20],
            "legal_business_name": ctx.legal_name,
            "business_type": "individual",
            "contact_name": ctx.legal_name,
            "profile": {
                "category": "others",
                "subcategory": "others",
                "description": ctx.description,
                "addresses": {"registered": self.registered_address(ctx)},
            },
        }

    async def ensure_account(self, ctx: ActivationContext) -> None:
        if ctx.account_id:
            log.info(f"Reusing linked account {ctx.account_id} for community {ctx.community_id}")
            return

        try:
            data = await self.provider.create_account(self.account_payload(ctx), ctx.token("acc_create"))
            account_id = data.get("id")
            if not account_id:
                raise ProviderError(ProviderErrorKind.UNKNOWN, detail="account create returned no id")
            log.info(f"Linked account {account_id} created for community {ctx.community_id}")
            progress = {"identity_synced_at": utcnow()}
        except ProviderError as e:
            if e.kind != ProviderErrorKind.CONFLICT:
                raise
            if not e.existing_account_id:
                raise ProviderError(ProviderErrorKind.UNKNOWN, http_status=e.http_status, detail=e.detail) from e
            if e.existing_account_id == ctx.community.retired_account_id:
                raise TerminalStateError(
                    "This email is tied to a payout account that was not approved. Please contact support.",
                    detail=f"conflict points at retired account {e.existing_account_id}",
                ) from e
            account_id = e.existing_account_id
            # Left unsynced: the adopted account carries whatever an earlier attempt sent
            progress = {}
            log.info(f"Adopting existing linked account {account_id} for community {ctx.community_id}")

        ctx.account_id = account_id
        await LinkedAccountStore.record_progress(
            self.db,
            ctx.community_id,
            ctx.attempt_token,
            external_account_id=account_id,
            provider_environment=self.provider.environment,
            **progress,
        )

    # -----------------------
    #  STEP 2: STAKEHOLDER
    # -----------------------
    def stakeholder_identity(self, ctx: ActivationContext) -> Dict[str, Any]:
        """The stakeholder fields that come from the Field Store"""
        profile = ctx.profile
        return {
            "name": ctx.legal_name,
            "phone": {"primary": profile.phone},
            "kyc": {"pan": profile.tax_id},
            "addresses": {
                "residential": {
                    "street": ctx.street_line,
                    "city": profile.city,
                    "state": profile.state,
                    "postal_code": profile.postal_code,
                    "country": "IN",
                }
            },
        }

    def stakeholder_payload(self, ctx: ActivationContext) -> Dict[str, Any]:
        return {
            **self.stakeholder_identity(ctx),
            "email": ctx.user.email,
            "percentage_ownership": 100,
            "relationship": {"director": False, "executive": True},
        }

    def manual_setup(self, ctx: ActivationContext) -> ActivationOutcome:
        log.info(f"Provider denied programmatic access to {ctx.account_id}; manual setup required")
        return ActivationOutcome(
            status=KYCStatus.PENDING,
            action=ActivationAction.MANUAL_SETUP,
            message=MANUAL_SETUP_MESSAGE,
            onboarding_url=dashboard_onboarding_url(ctx.account_id),
            status_note=MANUAL_SETUP_NOTE,
        )

    async def ensure_stakeholder(self, ctx: ActivationContext) -> Optional[ActivationOutcome]:
        """Returns an outcome only for the manual-setup branch"""
        if ctx.stakeholder_id:
            log.info(f"Using existing stakeholder {ctx.stakeholder_id}")
            return None

        try:
            existing = await self.provider.list_stakeholders(ctx.account_id)
        except ProviderError as e:
            if e.kind == ProviderErrorKind.ACCESS_DENIED:
                return self.manual_setup(ctx)
            raise

        progress = {}
        if existing:
            stakeholder_id = existing[0].get("id")
            log.info(f"Adopting existing stakeholder {stakeholder_id}")
        else:
            log.info(f"Adding stakeholder with PAN {mask_tax_id(ctx.profile.tax_id)}")
            try:
                data = await self.provider.create_stakeholder(
                    ctx.account_id, self.stakeholder_payload(ctx), ctx.token("stk_create")
                )
            except ProviderError as e:
                if e.kind == ProviderErrorKind.ACCESS_DENIED:
                    return self.manual_setup(ctx)
                raise
            stakeholder_id = data.get("id")
            progress = {"identity_synced_at": utcnow()}

        ctx.stakeholder_id = stakeholder_id
        await LinkedAccountStore.record_progress(
            self.db, ctx.community_id, ctx.attempt_token, stakeholder_id=stakeholder_id, **progress
        )
        await self._pause()
        return None

    # -----------------------
    #  CORRECTIONS
    # -----------------------
    async def sync_identity(self, ctx: ActivationContext) -> Optional[ActivationOutcome]:
        """
        Send the current Field Store values to an account (and stakeholder)
        created by an earlier attempt, so details corrected after NEEDS_INFO
        reach the provider. Returns an outcome only for the manual-setup branch.
        """
        address = {"profile": {"addresses": {"registered": self.registered_address(ctx)}}}
        log.info(f"Updating registered address on {ctx.account_id}")
        try:
            await self.provider.update_account(ctx.account_id, address, content_token(ctx, "acc_update", address))
            if ctx.stakeholder_id:
                await self._pause()
                identity = self.stakeholder_identity(ctx)
                log.info(f"Updating stakeholder {ctx.stakeholder_id} with PAN {mask_tax_id(ctx.profile.tax_id)}")
                await self.provider.update_stakeholder(
                    ctx.account_id, ctx.stakeholder_id, identity, content_token(ctx, "stk_update", identity)
                )
        except ProviderError as e:
            if e.kind == ProviderErrorKind.ACCESS_DENIED:
                return self.manual_setup(ctx)
            if e.kind != ProviderErrorKind.FORM_LOCKED:
                raise
            log.info(f"Identity update refused while form is under review for {ctx.account_id}")
            return None

        await LinkedAccountStore.record_progress(
            self.db, ctx.community_id, ctx.attempt_token, identity_synced_at=utcnow()
        )
        await self._pause()
        return None

    # -----------------------
    #  STEP 3: DOCUMENTS
    # -----------------------
    async def _document_requirements(self, ctx: ActivationContext) -> Optional[List[str]]:
        """Documents the settlement product asks for; None when it cannot tell yet"""
        try:
            products = await self.provider.list_products(ctx.account_id)
        except ProviderError as e:
            log.warning(f"Could not read product requirements ({e.kind.value}); uploading all documents")
            return None
        product = next((p for p in products if p.get("product_name") == SETTLEMENT_PRODUCT), None)
        if product is None:
            return None
        return required_documents(product)

    async def _already_uploaded(self, ctx: ActivationContext, document_type: str) -> bool:
        result = await self.db.execute(
            select(KYCDocument.id).where(
                KYCDocument.community_id == ctx.community_id,
                KYCDocument.stakeholder_id == ctx.stakeholder_id,
                KYCDocument.document_type == document_type,
                KYCDocument.upload_status == "uploaded",
            )
        )
        return result.first() is not None

    async def upload_documents(self, ctx: ActivationContext) -> None:
        if not ctx.documents or not ctx.stakeholder_id:
            return

        required = await self._document_requirements(ctx)
        for doc in ctx.documents:
            if required is not None and doc.document_type not in required:
                log.info(f"{doc.document_type} not required for this account; skipping")
                continue
            if await self._already_uploaded(ctx, doc.document_type):
                continue

            row = KYCDocument(
                community_id=ctx.community_id,
                external_account_id=ctx.account_id,
                stakeholder_id=ctx.stakeholder_id,
                document_type=doc.document_type,
                document_name=doc.filename,
            )
            self.db.add(row)
            try:
                await self.provider.upload_document(
                    ctx.account_id,
                    ctx.stakeholder_id,
                    doc.document_type,
                    doc.sub_type,
                    doc.filename,
                    doc.content_type,
                    doc.content,
                    idempotency_key=ctx.token(f"doc_{doc.document_type}"),
                )
                row.upload_status = "uploaded"
                row.uploaded_at = utcnow()
                log.info(f"Document uploaded: {doc.document_type}")
            except ProviderError as e:
                if e.kind != ProviderErrorKind.NOT_REQUIRED:
                    row.upload_status = "failed"
                    row.error_message = e.public_message
                    await self.db.commit()
                    raise
                row.upload_status = "skipped"
                log.info(f"Provider says {doc.document_type} is not required; skipping")
            await self.db.commit()
        await self._pause()

    # -----------------------
    #  STEP 4: SETTLEMENT
    # -----------------------
    def settlement_token(self, ctx: ActivationContext) -> str:
        # Same details replay the same token; corrected details get a new one
        digest = hashlib.sha256(
            f"{ctx.account_number}|{ctx.ifsc}|{ctx.beneficiary_name}".encode()
        ).hexdigest()[:8]
        return ctx.token(f"prd_settlement_{digest}")

    async def configure_settlement(self, ctx: ActivationContext) -> ActivationOutcome:
        if not ctx.product_id:
            try:
                product = await self.provider.request_product(
                    ctx.account_id,
                    {"product_name": SETTLEMENT_PRODUCT, "tnc_accepted": True},
                    ctx.token("prd_request"),
                )
                ctx.product_id = product.get("id")
                await LinkedAccountStore.record_progress(
                    self.db,
                    ctx.community_id,
                    ctx.attempt_token,
                    product_id=ctx.product_id,
                    products_requested=True,
                    tnc_accepted_at=utcnow(),
                )
                log.info(f"Settlement product requested: {ctx.product_id}")
            except ProviderError as e:
                if e.kind != ProviderErrorKind.FORM_LOCKED:
                    raise
                log.info(f"Activation form locked for {ctx.account_id}; settlement applies after review")

        if not ctx.product_id:
            account = await self.provider.get_account(ctx.account_id)
            status = map_provider_status(None, account.get("status"))
            return outcome_for_status(status)

        await self._pause()
        payload = {
            "settlements": {
                "account_number": ctx.account_number,
                "ifsc_code": ctx.ifsc,
                "beneficiary_name": ctx.beneficiary_name,
            },
            "tnc_accepted": True,
        }
        log.info(f"PATCH settlement for product {ctx.product_id}: {mask_account_number(ctx.account_number)} / {ctx.ifsc}")
        try:
            await self.provider.update_product(ctx.account_id, ctx.product_id, payload, self.settlement_token(ctx))
            ctx.settlement_sent = True
        except ProviderError as e:
            if e.kind != ProviderErrorKind.FORM_LOCKED:
                raise
            log.info(f"Settlement PATCH refused while form is under review for {ctx.account_id}")

        await self._pause()
        # An acknowledged PATCH is not proof the bank fields persisted
        product = await self.provider.get_product(ctx.account_id, ctx.product_id)
        due = currently_due(product)
        errors = requirement_errors(product)

        if not bank_configured(product) and settlement_fields_due(product):
            account = await self.provider.get_account(ctx.account_id)
            log.info(f"Hosted onboarding required for bank details on {ctx.account_id}")
            return ActivationOutcome(
                status=KYCStatus.NEEDS_INFO,
                action=ActivationAction.HOSTED_ONBOARDING,
                message=HOSTED_ONBOARDING_MESSAGE,
                onboarding_url=hosted_onboarding_url(account),
                error_reason=HOSTED_ONBOARDING_MESSAGE,
                missing_fields=due,
                requirement_errors=errors,
            )

        status = map_provider_status(product.get("activation_status"), missing_fields=due)
        reason = None
        if status == KYCStatus.NEEDS_INFO:
            reason = f"Outstanding requirements: {', '.join(due)}" if due else STATUS_MESSAGES[status]
        return outcome_for_status(status, error_reason=reason, missing_fields=due, requirement_errors=errors)

    # -----------------------
    #  STEP 5: OUTCOME
    # -----------------------
    async def persist(self, ctx: ActivationContext, outcome: ActivationOutcome) -> None:
        fields: Dict[str, Any] = {
            "external_account_id": ctx.account_id,
            "stakeholder_id": ctx.stakeholder_id,
            "product_id": ctx.product_id,
            "provider_environment": self.provider.environment,
            "onboarding_url": outcome.onboarding_url,
            "status_note": outcome.status_note,
            "missing_fields": outcome.missing_fields,
            "requirement_errors": outcome.requirement_errors,
        }
        if ctx.settlement_sent:
            fields.update(
                bank_masked=mask_account_number(ctx.account_number),
                bank_ifsc=ctx.ifsc,
                bank_beneficiary_name=ctx.beneficiary_name,
            )
        await LinkedAccountStore.write_outcome(
            self.db,
            ctx.community_id,
            outcome.status,
            error_reason=outcome.error_reason,
            attempt_token=ctx.attempt_token,
            **fields,
        )
