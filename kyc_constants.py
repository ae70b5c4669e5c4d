"""
KYC / payout activation vocabulary.

Internal status enum, wizard steps, provider error kinds, and the two fixed
translation tables the workflow relies on:
- provider activation status -> internal KYCStatus
- field name (ours or the provider's dotted reference) -> wizard step
"""

from enum import Enum
from typing import Dict, Iterable, Optional


class KYCStatus(str, Enum):
    """Community.kyc_status values"""
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    ACTIVATED = "ACTIVATED"
    NEEDS_INFO = "NEEDS_INFO"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


# Attempts in these states are restarted, never resumed
TERMINAL_FAILURE_STATES = {KYCStatus.REJECTED, KYCStatus.FAILED}

# The provider is already reviewing; resubmitting would only race it
AWAITING_PROVIDER_STATES = {KYCStatus.PENDING, KYCStatus.VERIFIED}

# error_reason may only be non-empty in these states
ERROR_REASON_STATES = {KYCStatus.NEEDS_INFO, KYCStatus.REJECTED, KYCStatus.FAILED}


class WizardStep(str, Enum):
    """Collection wizard steps, in order, plus the resting state"""
    PHONE = "phone"
    ADDRESS = "address"
    TAX_ID = "tax_id"
    DOCUMENTS = "documents"
    BANK = "bank"
    IDLE = "idle"


STEP_ORDER = [
    WizardStep.PHONE,
    WizardStep.ADDRESS,
    WizardStep.TAX_ID,
    WizardStep.DOCUMENTS,
    WizardStep.BANK,
]


class ProviderErrorKind(str, Enum):
    """Structured classification produced at the provider-adapter boundary"""
    VALIDATION = "validation"
    FIELD = "field"
    CONFLICT = "conflict"
    ACCESS_DENIED = "access_denied"
    FORM_LOCKED = "form_locked"
    NOT_REQUIRED = "not_required"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    TERMINAL = "terminal"
    UNKNOWN = "unknown"


class ActivationAction(str, Enum):
    """What the caller should do next"""
    PROCEED = "proceed"
    WAIT = "wait"
    SUCCESS = "success"
    SUBMITTED = "submitted"
    MANUAL_SETUP = "manual_setup"
    HOSTED_ONBOARDING = "hosted_onboarding_required"


# Provider product activation_status -> internal status
PROVIDER_STATUS_MAP: Dict[str, KYCStatus] = {
    "activated": KYCStatus.ACTIVATED,
    "under_review": KYCStatus.PENDING,
    "needs_clarification": KYCStatus.NEEDS_INFO,
    "rejected": KYCStatus.REJECTED,
    "suspended": KYCStatus.REJECTED,
    "failed": KYCStatus.FAILED,
}

# The account object is not the settlement product; its "activated" only means
# the identity side is verified, so it can never yield ACTIVATED on its own.
PROVIDER_ACCOUNT_STATUS_MAP: Dict[str, KYCStatus] = {
    "activated": KYCStatus.VERIFIED,
    "verified": KYCStatus.VERIFIED,
    "under_review": KYCStatus.PENDING,
    "needs_clarification": KYCStatus.NEEDS_INFO,
    "rejected": KYCStatus.REJECTED,
    "suspended": KYCStatus.REJECTED,
}


def map_provider_status(
    product_status: Optional[str],
    account_status: Optional[str] = None,
    missing_fields: Iterable[str] = (),
) -> KYCStatus:
    """
    Translate provider vocabulary into KYCStatus.

    Product status wins when present. Outstanding requirements downgrade any
    non-terminal result to NEEDS_INFO.
    """
    missing = list(missing_fields)
    if product_status:
        status = PROVIDER_STATUS_MAP.get(product_status.lower(), KYCStatus.IN_PROGRESS)
    elif account_status:
        status = PROVIDER_ACCOUNT_STATUS_MAP.get(account_status.lower(), KYCStatus.IN_PROGRESS)
    else:
        status = KYCStatus.IN_PROGRESS

    if status in (KYCStatus.REJECTED, KYCStatus.FAILED, KYCStatus.ACTIVATED):
        return status
    if missing:
        return KYCStatus.NEEDS_INFO
    return status


# Field name -> wizard step. Keys are our own field names plus the provider's
# field references; dotted references also match on their last segment.
FIELD_STEP_MAP: Dict[str, WizardStep] = {
    "phone": WizardStep.PHONE,
    "phone.primary": WizardStep.PHONE,
    "contact_phone": WizardStep.PHONE,

    "address": WizardStep.ADDRESS,
    "street1": WizardStep.ADDRESS,
    "street2": WizardStep.ADDRESS,
    "street": WizardStep.ADDRESS,
    "city": WizardStep.ADDRESS,
    "state": WizardStep.ADDRESS,
    "postal_code": WizardStep.ADDRESS,
    "country": WizardStep.ADDRESS,

    "tax_id": WizardStep.TAX_ID,
    "pan": WizardStep.TAX_ID,
    "kyc.pan": WizardStep.TAX_ID,
    "date_of_birth": WizardStep.TAX_ID,
    "dob": WizardStep.TAX_ID,

    "document": WizardStep.DOCUMENTS,
    "documents": WizardStep.DOCUMENTS,
    "file": WizardStep.DOCUMENTS,
    "individual_proof_of_address": WizardStep.DOCUMENTS,
    "individual_proof_of_identification": WizardStep.DOCUMENTS,

    "bank": WizardStep.BANK,
    "bank_account": WizardStep.BANK,
    "account_number": WizardStep.BANK,
    "confirm_account_number": WizardStep.BANK,
    "ifsc": WizardStep.BANK,
    "ifsc_code": WizardStep.BANK,
    "beneficiary_name": WizardStep.BANK,
    "confirm_beneficiary_name": WizardStep.BANK,
    "tnc_accepted": WizardStep.BANK,
    "settlements": WizardStep.BANK,
}

# Prefixes of dotted provider references whose leaf is not specific enough
FIELD_PREFIX_STEP_MAP: Dict[str, WizardStep] = {
    "settlements.": WizardStep.BANK,
    "bank_account.": WizardStep.BANK,
    "profile.addresses.": WizardStep.ADDRESS,
    "addresses.": WizardStep.ADDRESS,
    "kyc.": WizardStep.TAX_ID,
    "phone.": WizardStep.PHONE,
    "documents.": WizardStep.DOCUMENTS,
}


def step_for_field(field: Optional[str]) -> Optional[WizardStep]:
    """Resolve a field name to the wizard step that owns it, or None if unknown"""
    if not field:
        return None
    key = field.strip().lower()
    if key in FIELD_STEP_MAP:
        return FIELD_STEP_MAP[key]
    # Prefixes go before the leaf so settlements.* never resolves through a
    # generic leaf like "name"
    for prefix, step in FIELD_PREFIX_STEP_MAP.items():
        if key.startswith(prefix):
            return step
    leaf = key.rsplit(".", 1)[-1]
    return FIELD_STEP_MAP.get(leaf)
