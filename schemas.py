# schemas.py
# Pydantic models for request/response validation and serialization.

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from kyc_constants import ActivationAction, KYCStatus, WizardStep


# -----------------------
#  WIZARD FIELD STEPS
# -----------------------
class PhoneStep(BaseModel):
    phone: str = Field(..., min_length=1, max_length=20)

class AddressStep(BaseModel):
    street1: str = Field(..., max_length=255)
    street2: Optional[str] = Field(None, max_length=255)
    city: str
    state: str
    postal_code: str

class TaxIdentityStep(BaseModel):
    tax_id: str = Field(..., repr=False)
    date_of_birth: date

class FieldStoreEntry(BaseModel):
    """Owner's view of their stored identity fields"""
    phone: Optional[str] = None
    street1: Optional[str] = None
    street2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    tax_id_masked: Optional[str] = None
    date_of_birth: Optional[date] = None
    missing_fields: List[str] = []
    updated_at: Optional[datetime] = None


# -----------------------
#  ACTIVATION INPUTS
# -----------------------
class BankDetails(BaseModel):
    """Held in memory for one attempt only; never persisted raw"""
    account_number: str = Field(..., repr=False)
    confirm_account_number: Optional[str] = Field(None, repr=False)
    ifsc: str
    beneficiary_name: str
    confirm_beneficiary_name: str
    tnc_accepted: bool = False

class SupportingDocument(BaseModel):
    document_type: Literal["individual_proof_of_address", "individual_proof_of_identification"]
    # e.g. personal_pan, aadhaar_front, voter_id_front
    sub_type: Optional[str] = None
    filename: Optional[str] = None
    content_type: str
    data: str = Field(..., repr=False)  # base64

class ActivationRequest(BaseModel):
    bank_details: BankDetails
    documents: Optional[List[SupportingDocument]] = None


# -----------------------
#  ACTIVATION OUTPUTS
# -----------------------
class ActivationCheckResponse(BaseModel):
    action: ActivationAction
    status: KYCStatus
    message: str
    missing_fields: List[str] = []
    onboarding_url: Optional[str] = None

class ActivationResult(BaseModel):
    success: bool
    status: KYCStatus
    action: ActivationAction
    message: str
    onboarding_url: Optional[str] = None
    external_account_id: Optional[str] = None
    missing_fields: List[str] = []

class ActivationErrorResponse(BaseModel):
    error: str
    kind: str
    retryable: bool = False
    field: Optional[str] = None
    step: Optional[WizardStep] = None
    reference: Optional[str] = None

class RefreshStatusResponse(BaseModel):
    status: KYCStatus
    missing_fields: List[str] = []
    requirement_errors: Dict[str, Any] = {}
    account_mismatch: bool = False
    needs_restart: bool = False
    hosted_onboarding_required: bool = False
    bank_configured: bool = False
    account_status: Optional[str] = None
    message: Optional[str] = None

class ResetResponse(BaseModel):
    success: bool
    message: str
    status: KYCStatus = KYCStatus.NOT_STARTED

class PayoutGateResponse(BaseModel):
    community_id: str
    kyc_status: KYCStatus
    can_create_paid_events: bool
    reason: Optional[str] = None


# -----------------------
#  WIZARD STATE
# -----------------------
class WizardStateResponse(BaseModel):
    step: WizardStep
    completed_steps: List[WizardStep] = []
    prefill: Dict[str, Dict[str, Any]] = {}
    error: Optional[ActivationErrorResponse] = None
    result: Optional[ActivationResult] = None
