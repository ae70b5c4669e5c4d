"""
Activation error taxonomy.

Every failure the workflow surfaces is one of these exceptions. Each carries a
structured kind, an optional field and wizard step, and a public message that
is safe to show the user. Raw provider text stays in `detail`, which is only
ever logged server-side.
"""

import logging
import uuid
from typing import Any, Dict, Optional

from kyc_constants import ProviderErrorKind, WizardStep, step_for_field

log = logging.getLogger(__name__)

GENERIC_MESSAGE = "Something went wrong while activating payouts. Please try again."

# Field-aware messages for provider-reported field errors
FIELD_MESSAGES = {
    WizardStep.PHONE: "The provider could not accept your phone number. Please check it and try again.",
    WizardStep.ADDRESS: "The provider could not accept your address. Please review your address details.",
    WizardStep.TAX_ID: "The provider could not verify your PAN or date of birth. Please review them.",
    WizardStep.DOCUMENTS: "One of your documents was not accepted. Please upload a clear JPG, PNG or PDF.",
    WizardStep.BANK: "The provider could not accept your bank details. Please review them and try again.",
}


class ActivationError(Exception):
    """Base class for all activation workflow errors"""

    kind = ProviderErrorKind.UNKNOWN
    status_code = 500
    retryable = False

    def __init__(
        self,
        public_message: str = GENERIC_MESSAGE,
        *,
        field: Optional[str] = None,
        step: Optional[WizardStep] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(public_message)
        self.public_message = public_message
        self.field = field
        self.step = step if step is not None else step_for_field(field)
        self.detail = detail
        self.reference: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "error": self.public_message,
            "kind": self.kind.value,
            "retryable": self.retryable,
        }
        if self.field:
            body["field"] = self.field
        if self.step:
            body["step"] = self.step.value
        if self.reference:
            body["reference"] = self.reference
        return body


class KYCValidationError(ActivationError):
    """Structural validation failure, raised before any network call"""
    kind = ProviderErrorKind.VALIDATION
    status_code = 422

    def __init__(self, public_message: str, *, field: str, step: Optional[WizardStep] = None):
        super().__init__(public_message, field=field, step=step)


class ProviderError(ActivationError):
    """
    Error returned by the provider, already classified by the adapter.

    `existing_account_id` is only set for duplicate-account conflicts.
    """

    status_code = 502

    def __init__(
        self,
        kind: ProviderErrorKind,
        *,
        http_status: Optional[int] = None,
        field: Optional[str] = None,
        detail: Optional[str] = None,
        existing_account_id: Optional[str] = None,
        public_message: Optional[str] = None,
    ):
        step = step_for_field(field)
        if public_message is None:
            public_message = FIELD_MESSAGES.get(step, GENERIC_MESSAGE)
        super().__init__(public_message, field=field, step=step, detail=detail)
        self.kind = kind
        self.http_status = http_status
        self.existing_account_id = existing_account_id
        if kind == ProviderErrorKind.FIELD:
            self.status_code = 400

    def __str__(self):
        return f"{self.kind.value} (http={self.http_status}, field={self.field})"


class TransientProviderError(ActivationError):
    """Network trouble or provider outage; the same call may simply be retried"""
    kind = ProviderErrorKind.TRANSIENT
    status_code = 503
    retryable = True

    def __init__(self, detail: Optional[str] = None):
        super().__init__(
            "The payout provider is temporarily unreachable. Please try again in a few minutes.",
            detail=detail,
        )


class TerminalStateError(ActivationError):
    """Operation not allowed from the current status; only a reset helps"""
    kind = ProviderErrorKind.TERMINAL
    status_code = 409


class AttemptInProgressError(ActivationError):
    """Another activation attempt currently holds the community's lease"""
    kind = ProviderErrorKind.CONFLICT
    status_code = 409
    retryable = True

    def __init__(self):
        super().__init__("An activation attempt is already in progress. Please try again shortly.")


def sanitize_error(error: Exception, context: str = "activation") -> ActivationError:
    """
    Turn any exception into an ActivationError safe for the client.

    Known errors keep their public message. Everything else is logged in full
    with a correlation id and replaced by a generic message carrying the first
    8 characters of that id.
    """
    log_id = str(uuid.uuid4())
    if isinstance(error, ActivationError):
        safe = error
    else:
        safe = ActivationError(GENERIC_MESSAGE, detail=str(error))

    if safe.kind == ProviderErrorKind.VALIDATION:
        return safe
    if safe.reference:
        return safe

    log.error(f"[{log_id}] {context} failed: {type(error).__name__}: {safe.detail or error}")
    safe.reference = log_id[:8]
    safe.public_message = f"{safe.public_message} (Ref: {safe.reference})"
    return safe
