"""
Structural validation for activation inputs.

These rules run in the wizard for fast feedback and again in the orchestrator
before any provider call. Every failure raises KYCValidationError tagged with
the field, so the wizard can reopen the step that owns it.
"""

import base64
import binascii
import re
from datetime import date
from typing import Dict, Optional, Tuple

from config import settings
from kyc_constants import WizardStep
from kyc_errors import KYCValidationError

PHONE_DIGITS = 10
POSTAL_CODE_RE = re.compile(r"^\d{6}$")
TAX_ID_RE = re.compile(r"^[A-Z]{5}[0-9]{4}[A-Z]$")
ACCOUNT_NUMBER_RE = re.compile(r"^\d{8,18}$")
# 4 bank letters, a zero, 6 branch characters; users often type O for the zero
ROUTING_CODE_RE = re.compile(r"^[A-Z]{4}[0O][A-Z0-9]{6}$")
BENEFICIARY_NAME_RE = re.compile(r"^[A-Za-z ]+$")
BENEFICIARY_NAME_MIN, BENEFICIARY_NAME_MAX = 3, 100
STREET_MIN, STREET_MAX = 10, 255
CITY_STATE_MIN = 3

ALLOWED_DOCUMENT_TYPES = {"image/jpeg", "image/png", "application/pdf"}
DOCUMENT_EXTENSIONS = {"image/jpeg": "jpg", "image/png": "png", "application/pdf": "pdf"}


def normalize_phone(raw: Optional[str]) -> str:
    digits = re.sub(r"\D", "", raw or "")
    if len(digits) == PHONE_DIGITS + 2 and digits.startswith("91"):
        digits = digits[2:]
    elif len(digits) == PHONE_DIGITS + 1 and digits.startswith("0"):
        digits = digits[1:]
    if len(digits) != PHONE_DIGITS:
        raise KYCValidationError(
            f"Please enter a valid {PHONE_DIGITS}-digit phone number",
            field="phone", step=WizardStep.PHONE,
        )
    return digits


def validate_address(
    street1: Optional[str],
    street2: Optional[str],
    city: Optional[str],
    state: Optional[str],
    postal_code: Optional[str],
) -> Dict[str, Optional[str]]:
    """Validate and normalise the address step. Returns the values to store."""
    street1 = (street1 or "").strip()
    street2 = (street2 or "").strip() or None
    city = (city or "").strip()
    state = (state or "").strip()
    postal = (postal_code or "").strip()

    if not street1:
        raise KYCValidationError("Street address is required", field="street1", step=WizardStep.ADDRESS)
    if len(city) < CITY_STATE_MIN:
        raise KYCValidationError("City must be at least 3 characters long", field="city", step=WizardStep.ADDRESS)
    if len(state) < CITY_STATE_MIN:
        raise KYCValidationError("State must be at least 3 characters long", field="state", step=WizardStep.ADDRESS)
    if not POSTAL_CODE_RE.match(postal):
        raise KYCValidationError("Please enter a valid 6-digit postal code", field="postal_code", step=WizardStep.ADDRESS)

    registered = registered_street_line(street1, street2, city)
    if len(registered) < STREET_MIN:
        raise KYCValidationError(
            "Address must be at least 10 characters long. Please include area or landmark.",
            field="street1", step=WizardStep.ADDRESS,
        )
    if len(street1) > STREET_MAX:
        raise KYCValidationError("Address must be less than 255 characters", field="street1", step=WizardStep.ADDRESS)

    return {
        "street1": street1,
        "street2": street2,
        "city": city,
        "state": state,
        "postal_code": postal,
    }


def registered_street_line(street1: str, street2: Optional[str], city: Optional[str]) -> str:
    """
    The provider rejects street lines under 10 characters. A short line with
    no second line is padded with the city, which is what users mean anyway.
    """
    line = (street1 or "").strip()
    if len(line) < STREET_MIN and not (street2 or "").strip() and city:
        line = f"{line}, {city.strip()}"
    return line[:STREET_MAX]


def normalize_tax_id(raw: Optional[str]) -> str:
    tax_id = (raw or "").strip().upper()
    if not TAX_ID_RE.match(tax_id):
        raise KYCValidationError(
            "Invalid PAN format. Should be like ABCDE1234F",
            field="tax_id", step=WizardStep.TAX_ID,
        )
    return tax_id


def age_on(dob: date, today: date) -> int:
    years = today.year - dob.year
    if (today.month, today.day) < (dob.month, dob.day):
        years -= 1
    return years


def validate_date_of_birth(dob: Optional[date], today: Optional[date] = None) -> date:
    if dob is None:
        raise KYCValidationError("Date of birth is required", field="date_of_birth", step=WizardStep.TAX_ID)
    today = today or date.today()
    if dob > today:
        raise KYCValidationError("Date of birth cannot be in the future", field="date_of_birth", step=WizardStep.TAX_ID)
    if age_on(dob, today) < settings.MIN_OWNER_AGE:
        raise KYCValidationError(
            f"You must be at least {settings.MIN_OWNER_AGE} years old",
            field="date_of_birth", step=WizardStep.TAX_ID,
        )
    return dob


def validate_bank_details(
    account_number: Optional[str],
    ifsc: Optional[str],
    beneficiary_name: Optional[str],
    confirm_beneficiary_name: Optional[str],
    confirm_account_number: Optional[str] = None,
    tnc_accepted: bool = True,
) -> Tuple[str, str, str]:
    """
    Validate settlement details. Returns (account_number, ifsc, beneficiary_name)
    normalised. Error messages never echo the submitted values.
    """
    account_number = re.sub(r"\s", "", account_number or "")
    routing = re.sub(r"\s", "", ifsc or "").upper()
    name = re.sub(r"\s+", " ", (beneficiary_name or "").strip())
    confirm_name = re.sub(r"\s+", " ", (confirm_beneficiary_name or "").strip())

    if not ACCOUNT_NUMBER_RE.match(account_number):
        raise KYCValidationError("Account number must be 8-18 digits", field="account_number", step=WizardStep.BANK)
    if confirm_account_number is not None and re.sub(r"\s", "", confirm_account_number) != account_number:
        raise KYCValidationError("Account numbers don't match", field="confirm_account_number", step=WizardStep.BANK)
    if not ROUTING_CODE_RE.match(routing):
        raise KYCValidationError("Invalid IFSC code format (e.g., SBIN0001234)", field="ifsc", step=WizardStep.BANK)
    if routing[4] == "O":
        routing = routing[:4] + "0" + routing[5:]
    if not (BENEFICIARY_NAME_MIN <= len(name) <= BENEFICIARY_NAME_MAX) or not BENEFICIARY_NAME_RE.match(name):
        raise KYCValidationError(
            "Beneficiary name must be 3-100 letters and spaces",
            field="beneficiary_name", step=WizardStep.BANK,
        )
    if name != confirm_name:
        raise KYCValidationError(
            "Beneficiary names don't match",
            field="confirm_beneficiary_name", step=WizardStep.BANK,
        )
    if not tnc_accepted:
        raise KYCValidationError("Please accept the terms and conditions", field="tnc_accepted", step=WizardStep.BANK)
    return account_number, routing, name


def decode_document(filename: Optional[str], content_type: Optional[str], data: Optional[str]) -> Tuple[str, str, bytes]:
    """
    Validate a base64 supporting document.
    Returns (filename_with_extension, mime_type, raw_bytes).
    """
    mime = (content_type or "").lower()
    if mime == "image/jpg":
        mime = "image/jpeg"
    if mime not in ALLOWED_DOCUMENT_TYPES:
        raise KYCValidationError("Unsupported file type. Use JPG, PNG or PDF", field="document", step=WizardStep.DOCUMENTS)

    try:
        raw = base64.b64decode(re.sub(r"\s", "", data or ""), validate=True)
    except (binascii.Error, ValueError):
        raise KYCValidationError("Corrupt file data. Please re-upload the document.", field="document", step=WizardStep.DOCUMENTS)
    if not raw:
        raise KYCValidationError("Document is empty", field="document", step=WizardStep.DOCUMENTS)
    if len(raw) > settings.MAX_DOCUMENT_BYTES:
        raise KYCValidationError("Document too large. Max size is 2 MB.", field="document", step=WizardStep.DOCUMENTS)

    name = (filename or "").strip() or "document"
    if not re.search(r"\.[a-z0-9]+$", name, re.IGNORECASE):
        name = f"{name}.{DOCUMENT_EXTENSIONS[mime]}"
    return name, mime, raw


# -------------------------
# Provider payload sanitisers
# -------------------------
def sanitize_name(name: Optional[str]) -> str:
    cleaned = re.sub(r"\s+", " ", re.sub(r"[^a-zA-Z\s]", "", name or "")).strip()[:50]
    if len(cleaned) < 3:
        raise KYCValidationError("Name must be at least 3 characters long", field="name")
    return cleaned


def first_usable_name(*candidates: Optional[str]) -> str:
    """
    Provider-safe legal name from the first candidate that survives
    sanitising. Names in non-Latin scripts sanitise to nothing, so callers
    pass the validated beneficiary name last.
    """
    for candidate in candidates:
        try:
            return sanitize_name(candidate)
        except KYCValidationError:
            continue
    raise KYCValidationError(
        "Name must be at least 3 characters long",
        field="beneficiary_name", step=WizardStep.BANK,
    )


def sanitize_description(description: Optional[str]) -> str:
    cleaned = re.sub(r"\s+", " ", re.sub(r"[^a-zA-Z0-9\s\-]", "", description or "")).strip()
    return cleaned[:200]


def mask_account_number(account_number: str) -> str:
    return f"****{account_number[-4:]}"


def mask_tax_id(tax_id: Optional[str]) -> Optional[str]:
    if not tax_id:
        return None
    return f"******{tax_id[-4:]}"
