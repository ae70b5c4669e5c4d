"""
Collection Wizard state machine.

The current step is a single WizardStep value. It moves forward as steps are
completed and is otherwise driven only by activation responses: success or
"wait" parks it at IDLE, an error naming a field reopens the step that owns
that field, anything unmapped restarts at PHONE.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from kyc_constants import STEP_ORDER, ActivationAction, KYCStatus, WizardStep, step_for_field
from kyc_errors import ActivationError, KYCValidationError
from kyc_validation import (
    decode_document,
    normalize_phone,
    normalize_tax_id,
    validate_address,
    validate_bank_details,
    validate_date_of_birth,
)
from models import KYCProfile
from schemas import ActivationErrorResponse, ActivationResult, BankDetails, SupportingDocument, WizardStateResponse

log = logging.getLogger(__name__)

# Steps whose data lives in the Field Store, with the fields that make them complete
STORED_STEPS = {
    WizardStep.PHONE: ("phone",),
    WizardStep.ADDRESS: ("street1", "city", "state", "postal_code"),
    WizardStep.TAX_ID: ("tax_id", "date_of_birth"),
}
PREFILL_FIELDS = {
    WizardStep.PHONE: ("phone",),
    WizardStep.ADDRESS: ("street1", "street2", "city", "state", "postal_code"),
    WizardStep.TAX_ID: ("tax_id", "date_of_birth"),
}

# Responses that leave nothing for the user to fix in the wizard
_RESTING_ACTIONS = {
    ActivationAction.SUCCESS,
    ActivationAction.WAIT,
    ActivationAction.MANUAL_SETUP,
    ActivationAction.HOSTED_ONBOARDING,
}


@dataclass
class WizardState:
    step: WizardStep = WizardStep.PHONE
    completed: List[WizardStep] = field(default_factory=list)
    prefill: Dict[WizardStep, Dict[str, Any]] = field(default_factory=dict)
    # Held for the current attempt only, never persisted
    bank_details: Optional[BankDetails] = field(default=None, repr=False)
    documents: List[SupportingDocument] = field(default_factory=list, repr=False)
    error: Optional[ActivationError] = None
    result: Optional[ActivationResult] = None


class CollectionWizard:
    """Phone -> address -> tax ID & DOB -> (optional) documents -> bank"""

    def __init__(self, prefill: Optional[Dict[WizardStep, Dict[str, Any]]] = None):
        self.state = WizardState(prefill=prefill or {})

    @classmethod
    def from_entry(cls, entry: Optional[KYCProfile]) -> "CollectionWizard":
        prefill: Dict[WizardStep, Dict[str, Any]] = {}
        if entry is not None:
            for step, fields in PREFILL_FIELDS.items():
                values = {name: getattr(entry, name) for name in fields if getattr(entry, name) is not None}
                if values:
                    prefill[step] = values
        return cls(prefill)

    def _is_stored(self, step: WizardStep) -> bool:
        values = self.state.prefill.get(step, {})
        return all(values.get(name) for name in STORED_STEPS[step])

    def start(self) -> WizardState:
        """Open at the first step with incomplete stored data, else at documents"""
        self.state.completed = []
        self.state.step = WizardStep.DOCUMENTS
        for step in STORED_STEPS:
            if not self._is_stored(step):
                self.state.step = step
                break
            self.state.completed.append(step)
        log.debug(f"Wizard starting at {self.state.step.value}")
        return self.state

    def _advance(self, step: WizardStep) -> None:
        if step not in self.state.completed:
            self.state.completed.append(step)
        index = STEP_ORDER.index(step)
        if index + 1 < len(STEP_ORDER):
            self.state.step = STEP_ORDER[index + 1]

    def _check_reachable(self, step: WizardStep) -> None:
        if step == self.state.step or step in self.state.completed:
            return
        raise KYCValidationError(
            "Please complete the previous steps first",
            field=self.state.step.value,
            step=self.state.step,
        )

    def complete_step(self, step: WizardStep, values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate one step and move to the next.
        Returns the normalised values the caller should persist (empty for
        documents and bank, which are held in memory only).
        """
        self._check_reachable(step)
        if step == WizardStep.PHONE:
            stored = {"phone": normalize_phone(values.get("phone"))}
        elif step == WizardStep.ADDRESS:
            stored = validate_address(
                values.get("street1"),
                values.get("street2"),
                values.get("city"),
                values.get("state"),
                values.get("postal_code"),
            )
        elif step == WizardStep.TAX_ID:
            dob = values.get("date_of_birth")
            if isinstance(dob, str):
                try:
                    dob = date.fromisoformat(dob)
                except ValueError:
                    raise KYCValidationError("Please enter a valid date of birth", field="date_of_birth")
            stored = {
                "tax_id": normalize_tax_id(values.get("tax_id")),
                "date_of_birth": validate_date_of_birth(dob),
            }
        elif step == WizardStep.DOCUMENTS:
            documents = values.get("documents") or []
            for doc in documents:
                decode_document(doc.filename, doc.content_type, doc.data)
            self.state.documents = list(documents)
            stored = {}
        elif step == WizardStep.BANK:
            bank: BankDetails = values["bank_details"]
            validate_bank_details(
                bank.account_number,
                bank.ifsc,
                bank.beneficiary_name,
                bank.confirm_beneficiary_name,
                confirm_account_number=bank.confirm_account_number,
                tnc_accepted=bank.tnc_accepted,
            )
            self.state.bank_details = bank
            stored = {}
        else:
            raise ValueError(f"{step.value} is not a collection step")

        if stored:
            self.state.prefill[step] = {**self.state.prefill.get(step, {}), **stored}
        self.state.error = None
        if step != WizardStep.BANK:
            self._advance(step)
        elif step not in self.state.completed:
            self.state.completed.append(step)
        return stored

    def skip_documents(self) -> WizardState:
        self._check_reachable(WizardStep.DOCUMENTS)
        self.state.documents = []
        self._advance(WizardStep.DOCUMENTS)
        return self.state

    def _reopen(self, step: WizardStep) -> None:
        self.state.step = step
        cut = STEP_ORDER.index(step)
        self.state.completed = [s for s in self.state.completed if STEP_ORDER.index(s) < cut]

    def apply_response(
        self,
        result: Optional[ActivationResult] = None,
        error: Optional[ActivationError] = None,
    ) -> WizardStep:
        """Move the wizard according to an activation response"""
        self.state.result = result
        self.state.error = error

        if error is not None:
            if error.retryable:
                # Keep bank details so the same submission can be retried
                self._reopen(WizardStep.BANK)
                return self.state.step
            self.state.bank_details = None
            self._reopen(error.step or step_for_field(error.field) or WizardStep.PHONE)
            return self.state.step

        self.state.bank_details = None
        if result is None or result.action in _RESTING_ACTIONS:
            self.state.step = WizardStep.IDLE
        elif result.status == KYCStatus.NEEDS_INFO:
            steps = [step_for_field(name) for name in result.missing_fields]
            self._reopen(next((s for s in steps if s is not None), WizardStep.PHONE))
        else:
            self.state.step = WizardStep.IDLE
        return self.state.step

    def to_response(self) -> WizardStateResponse:
        prefill = {step.value: dict(values) for step, values in self.state.prefill.items()}
        error = None
        if self.state.error is not None:
            error = ActivationErrorResponse(**self.state.error.to_response())
        return WizardStateResponse(
            step=self.state.step,
            completed_steps=list(self.state.completed),
            prefill=prefill,
            error=error,
            result=self.state.result,
        )
