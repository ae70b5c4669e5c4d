import base64
from datetime import date, timedelta

import pytest
from sqlalchemy import select, update

from conftest import COMMUNITY_ID, OWNER_EMAIL, activation_request, check, error_body, load, run, submit
import crud
from field_store import FieldStore
from kyc_constants import ActivationAction, KYCStatus, ProviderErrorKind, WizardStep
from kyc_errors import (
    AttemptInProgressError,
    KYCValidationError,
    ProviderError,
    TerminalStateError,
    TransientProviderError,
)
from linked_account_store import LinkedAccountStore
from models import KYCDocument, KYCProfile, LinkedAccount, User
from schemas import SupportingDocument

FORM_LOCKED = error_body("Activation form is locked as it is under review")


def pan_document():
    return SupportingDocument(
        document_type="individual_proof_of_identification",
        filename="pan",
        content_type="image/png",
        data=base64.b64encode(b"\x89PNG pan card").decode(),
    )


def test_fresh_activation_goes_under_review(session_factory, seeded, fake_provider):
    assert run(check(session_factory)).action == ActivationAction.PROCEED

    result = run(submit(session_factory, fake_provider))

    assert result.success
    assert result.status == KYCStatus.PENDING
    assert result.action == ActivationAction.SUBMITTED
    assert [op for op, _ in fake_provider.calls] == [
        "create_account",
        "list_stakeholders",
        "create_stakeholder",
        "request_product",
        "update_product",
        "get_product",
    ]

    community, record, records = run(load(session_factory))
    assert records == 1
    assert community.kyc_status == KYCStatus.PENDING.value
    assert record.kyc_status == KYCStatus.PENDING.value
    assert record.external_account_id == result.external_account_id
    assert record.stakeholder_id and record.product_id
    assert record.provider_environment == "test"
    assert record.bank_masked == "****9012"
    assert record.error_reason is None
    assert record.attempt_started_at is None
    # The raw account number is sent to the provider but never stored
    assert fake_provider.bodies("update_product")[0]["settlements"]["account_number"] == "123456789012"
    stored = [str(getattr(record, column.name)) for column in LinkedAccount.__table__.columns]
    assert not any("123456789012" in value for value in stored)

    assert run(check(session_factory)).action == ActivationAction.WAIT


def test_activation_payloads(session_factory, seeded, fake_provider):
    run(submit(session_factory, fake_provider))

    account = fake_provider.bodies("create_account")[0]
    assert account["email"] == OWNER_EMAIL
    assert account["phone"] == "9876543210"
    assert account["legal_business_name"] == "Jane Doe"
    assert account["profile"]["addresses"]["registered"]["postal_code"] == "560038"
    stakeholder = fake_provider.bodies("create_stakeholder")[0]
    assert stakeholder["kyc"] == {"pan": "ABCDE1234F"}
    assert stakeholder["phone"] == {"primary": "9876543210"}
    settlement = fake_provider.bodies("update_product")[0]["settlements"]
    assert settlement == {"account_number": "123456789012", "ifsc_code": "ABCD0123456", "beneficiary_name": "Jane Doe"}


def test_every_write_carries_generation_token(session_factory, seeded, fake_provider):
    run(submit(session_factory, fake_provider))
    keys = {key for _, key in fake_provider.idempotency}
    prefix = f"payouts_{COMMUNITY_ID}_g1_"
    assert f"{prefix}acc_create" in keys
    assert f"{prefix}stk_create" in keys
    assert f"{prefix}prd_request" in keys
    assert any(key.startswith(f"{prefix}prd_settlement_") for key in keys)


def test_second_submission_is_a_no_op_once_activated(session_factory, seeded, fake_provider):
    fake_provider.product_status = "activated"
    first = run(submit(session_factory, fake_provider))
    calls = len(fake_provider.calls)
    second = run(submit(session_factory, fake_provider))

    assert first.status == second.status == KYCStatus.ACTIVATED
    assert first.action == ActivationAction.SUCCESS
    assert second.action == ActivationAction.SUCCESS
    assert second.external_account_id == first.external_account_id
    assert len(fake_provider.calls) == calls
    _, record, records = run(load(session_factory))
    assert records == 1
    assert record.products_activated


def test_second_submission_waits_while_under_review(session_factory, seeded, fake_provider):
    run(submit(session_factory, fake_provider))
    second = run(submit(session_factory, fake_provider))
    assert second.action == ActivationAction.WAIT
    assert second.status == KYCStatus.PENDING
    assert fake_provider.count("create_account") == 1


def test_invalid_tax_id_is_rejected_before_any_provider_call(session_factory, seeded, fake_provider):
    async def corrupt_tax_id():
        async with session_factory() as db:
            await db.execute(update(KYCProfile).values(tax_id="INVALID123"))
            await db.commit()

    run(corrupt_tax_id())
    with pytest.raises(KYCValidationError) as exc:
        run(submit(session_factory, fake_provider))
    assert exc.value.step == WizardStep.TAX_ID
    assert fake_provider.calls == []
    _, record, _ = run(load(session_factory))
    assert record is None


def test_invalid_bank_details_are_rejected_before_any_provider_call(session_factory, seeded, fake_provider):
    with pytest.raises(KYCValidationError) as exc:
        run(submit(session_factory, fake_provider, activation_request(ifsc="ABCD1123456")))
    assert exc.value.field == "ifsc"
    assert exc.value.step == WizardStep.BANK
    assert fake_provider.calls == []


def test_missing_identity_fields_name_the_first_gap(session_factory, seeded_without_profile, fake_provider):
    with pytest.raises(KYCValidationError) as exc:
        run(submit(session_factory, fake_provider))
    assert exc.value.field == "phone"
    assert exc.value.step == WizardStep.PHONE
    assert fake_provider.calls == []


def test_existing_provider_account_is_reused(session_factory, seeded, fake_provider):
    existing = fake_provider.existing_account(OWNER_EMAIL)

    result = run(submit(session_factory, fake_provider))

    assert result.status == KYCStatus.PENDING
    assert result.external_account_id == existing
    assert len(fake_provider.accounts) == 1
    _, record, _ = run(load(session_factory))
    assert record.external_account_id == existing


def test_conflict_without_account_id_is_not_guessed(session_factory, seeded, fake_provider):
    fake_provider.fail("create_account", 400, error_body("Merchant email already exists"))

    with pytest.raises(ProviderError) as exc:
        run(submit(session_factory, fake_provider))
    assert exc.value.kind == ProviderErrorKind.UNKNOWN

    _, record, _ = run(load(session_factory))
    assert record.external_account_id is None
    assert record.kyc_status == KYCStatus.IN_PROGRESS.value
    assert record.attempt_started_at is None


def test_concurrent_submission_waits_for_the_first(session_factory, seeded, fake_provider):
    second = {}

    async def during_create(request):
        fake_provider.hooks.pop("create_account")
        second["result"] = await submit(session_factory, fake_provider)
        second["check"] = await check(session_factory)

    fake_provider.hooks["create_account"] = during_create
    first = run(submit(session_factory, fake_provider))

    assert first.status == KYCStatus.PENDING
    assert second["result"].action == ActivationAction.WAIT
    assert second["result"].status == KYCStatus.IN_PROGRESS
    assert second["check"].action == ActivationAction.WAIT
    assert fake_provider.count("create_account") == 1
    assert len(fake_provider.accounts) == 1
    _, _, records = run(load(session_factory))
    assert records == 1


def test_access_denied_stakeholder_needs_manual_setup(session_factory, seeded, fake_provider):
    fake_provider.fail("list_stakeholders", 403, error_body("Access Denied"))

    result = run(submit(session_factory, fake_provider))

    assert result.success
    assert result.status == KYCStatus.PENDING
    assert result.action == ActivationAction.MANUAL_SETUP
    assert result.onboarding_url.endswith(f"/{result.external_account_id}/onboarding")
    assert fake_provider.count("request_product") == 0

    community, record, _ = run(load(session_factory))
    assert community.kyc_status == KYCStatus.PENDING.value
    assert record.error_reason is None
    assert record.status_note
    assert record.bank_masked is None


def test_unsaved_bank_details_require_hosted_onboarding(session_factory, seeded, fake_provider):
    fake_provider.bank_persists = False
    fake_provider.currently_due = ["settlements.beneficiary_name"]
    fake_provider.activation_url = "https://provider.test/onboarding/acc"

    result = run(submit(session_factory, fake_provider))

    assert not result.success
    assert result.status == KYCStatus.NEEDS_INFO
    assert result.action == ActivationAction.HOSTED_ONBOARDING
    assert result.onboarding_url == "https://provider.test/onboarding/acc"
    community, record, _ = run(load(session_factory))
    assert community.kyc_status == KYCStatus.NEEDS_INFO.value
    assert record.error_reason
    assert record.missing_fields == ["settlements.beneficiary_name"]
    assert record.onboarding_url == "https://provider.test/onboarding/acc"


def test_outstanding_requirements_map_to_needs_info(session_factory, seeded, fake_provider):
    fake_provider.currently_due = ["individual_proof_of_address"]

    result = run(submit(session_factory, fake_provider))

    assert result.status == KYCStatus.NEEDS_INFO
    assert result.action == ActivationAction.SUBMITTED
    assert result.missing_fields == ["individual_proof_of_address"]
    _, record, _ = run(load(session_factory))
    assert "individual_proof_of_address" in record.error_reason


def test_interrupted_attempt_resumes_without_duplicates(session_factory, seeded, fake_provider):
    fake_provider.fail("request_product", 503, error_body("Service Unavailable"))

    with pytest.raises(TransientProviderError):
        run(submit(session_factory, fake_provider))
    _, record, _ = run(load(session_factory))
    assert record.external_account_id and record.stakeholder_id
    assert record.product_id is None
    assert record.kyc_status == KYCStatus.IN_PROGRESS.value
    assert record.attempt_started_at is None

    result = run(submit(session_factory, fake_provider))

    assert result.status == KYCStatus.PENDING
    assert result.external_account_id == record.external_account_id
    assert fake_provider.count("create_account") == 1
    assert fake_provider.count("create_stakeholder") == 1
    assert len(fake_provider.accounts) == 1


def test_locked_form_does_not_fail_the_attempt(session_factory, seeded, fake_provider):
    fake_provider.fail("update_product", 400, FORM_LOCKED)

    result = run(submit(session_factory, fake_provider))

    assert result.status == KYCStatus.PENDING
    _, record, _ = run(load(session_factory))
    assert record.kyc_status == KYCStatus.PENDING.value
    # Settlement never reached the provider, so nothing is recorded for it
    assert record.bank_masked is None


def test_locked_form_on_product_request_uses_account_status(session_factory, seeded, fake_provider):
    fake_provider.fail("request_product", 400, FORM_LOCKED)
    fake_provider.account_status = "activated"

    result = run(submit(session_factory, fake_provider))

    # Account-level activation alone never opens payouts
    assert result.status == KYCStatus.VERIFIED
    assert fake_provider.count("update_product") == 0
    community, record, _ = run(load(session_factory))
    assert community.kyc_status == KYCStatus.VERIFIED.value
    assert record.product_id is None


def test_provider_field_error_names_the_step(session_factory, seeded, fake_provider):
    fake_provider.fail("create_stakeholder", 400, error_body("The PAN could not be verified", field="kyc.pan"))

    with pytest.raises(ProviderError) as exc:
        run(submit(session_factory, fake_provider))
    assert exc.value.kind == ProviderErrorKind.FIELD
    assert exc.value.step == WizardStep.TAX_ID
    assert "could not be verified" not in exc.value.public_message
    _, record, _ = run(load(session_factory))
    assert record.attempt_started_at is None


def test_supporting_documents_are_uploaded_once(session_factory, seeded, fake_provider):
    fake_provider.fail("update_product", 503, error_body("Service Unavailable"))
    fake_provider.required_documents = ["individual_proof_of_identification"]
    request = activation_request(documents=[pan_document()])

    with pytest.raises(TransientProviderError):
        run(submit(session_factory, fake_provider, request))
    result = run(submit(session_factory, fake_provider, request))

    assert result.status == KYCStatus.PENDING
    assert fake_provider.count("upload_document") == 1

    async def documents():
        async with session_factory() as db:
            return (await db.execute(select(KYCDocument))).scalars().all()

    rows = run(documents())
    assert len(rows) == 1
    assert rows[0].upload_status == "uploaded"
    assert rows[0].document_name == "pan.png"


def test_document_not_in_requirements_is_skipped(session_factory, seeded, fake_provider):
    fake_provider.fail("update_product", 503, error_body("Service Unavailable"))
    fake_provider.required_documents = ["individual_proof_of_address"]

    with pytest.raises(TransientProviderError):
        run(submit(session_factory, fake_provider))

    # The product now exists and asks only for proof of address
    result = run(submit(session_factory, fake_provider, activation_request(documents=[pan_document()])))

    assert result.status == KYCStatus.PENDING
    assert fake_provider.count("list_products") == 1
    assert fake_provider.count("upload_document") == 0


def test_rejected_activation_restarts_with_new_generation(session_factory, seeded, fake_provider):
    fake_provider.product_status = "rejected"
    first = run(submit(session_factory, fake_provider))
    assert first.status == KYCStatus.REJECTED
    assert not first.success
    assert run(check(session_factory)).action == ActivationAction.PROCEED

    fake_provider.close_account(first.external_account_id)
    fake_provider.product_status = "under_review"
    second = run(submit(session_factory, fake_provider))

    assert second.status == KYCStatus.PENDING
    assert second.external_account_id != first.external_account_id
    assert fake_provider.bodies("create_account")[1]["reference_id"].endswith("g2")
    community, record, records = run(load(session_factory))
    assert records == 1
    assert community.kyc_generation == 2
    assert community.retired_account_id == first.external_account_id
    assert record.external_account_id == second.external_account_id


def test_retired_account_is_never_adopted(session_factory, seeded, fake_provider):
    fake_provider.product_status = "rejected"
    first = run(submit(session_factory, fake_provider))
    fake_provider.closed_emails_free = False

    with pytest.raises(TerminalStateError):
        run(submit(session_factory, fake_provider))

    _, record, _ = run(load(session_factory))
    assert record.external_account_id is None
    assert record.attempt_started_at is None
    community, _, _ = run(load(session_factory))
    assert community.retired_account_id == first.external_account_id
    assert len(fake_provider.accounts) == 1


async def _owner_id(db):
    return (await crud.get_user_by_email(db, OWNER_EMAIL)).id


def test_corrected_tax_id_reaches_existing_stakeholder(session_factory, seeded, fake_provider):
    fake_provider.currently_due = ["kyc.pan"]
    first = run(submit(session_factory, fake_provider))
    assert first.status == KYCStatus.NEEDS_INFO
    assert fake_provider.count("update_stakeholder") == 0

    async def correct():
        async with session_factory() as db:
            await FieldStore.save_tax_identity(db, await _owner_id(db), "ZZZZZ9999Z", date(1990, 1, 15))

    run(correct())
    fake_provider.currently_due = []
    second = run(submit(session_factory, fake_provider))

    assert second.status == KYCStatus.PENDING
    assert second.external_account_id == first.external_account_id
    assert fake_provider.count("create_account") == 1
    assert fake_provider.count("create_stakeholder") == 1
    assert fake_provider.bodies("update_stakeholder")[0]["kyc"] == {"pan": "ZZZZZ9999Z"}
    assert fake_provider.stakeholders[second.external_account_id][0]["kyc"] == {"pan": "ZZZZZ9999Z"}
    keys = [key for op, key in fake_provider.idempotency if op == "update_stakeholder"]
    assert keys and keys[0].startswith(f"payouts_{COMMUNITY_ID}_g1_stk_update_")
    _, record, _ = run(load(session_factory))
    assert record.kyc_status == KYCStatus.PENDING.value
    assert record.identity_synced_at is not None


def test_address_edited_after_interruption_is_sent_on_resume(session_factory, seeded, fake_provider):
    fake_provider.fail("request_product", 503, error_body("Service Unavailable"))
    with pytest.raises(TransientProviderError):
        run(submit(session_factory, fake_provider))

    async def correct():
        async with session_factory() as db:
            await FieldStore.save_address(
                db, await _owner_id(db), "45 Church Street, Shanthala Nagar", None, "Bengaluru", "Karnataka", "560001"
            )

    run(correct())
    result = run(submit(session_factory, fake_provider))

    assert result.status == KYCStatus.PENDING
    registered = fake_provider.bodies("update_account")[0]["profile"]["addresses"]["registered"]
    assert registered["street1"] == "45 Church Street, Shanthala Nagar"
    assert registered["postal_code"] == "560001"
    residential = fake_provider.bodies("update_stakeholder")[0]["addresses"]["residential"]
    assert residential["postal_code"] == "560001"
    assert fake_provider.count("create_account") == 1


def test_resume_without_edits_sends_no_corrections(session_factory, seeded, fake_provider):
    fake_provider.fail("request_product", 503, error_body("Service Unavailable"))
    with pytest.raises(TransientProviderError):
        run(submit(session_factory, fake_provider))

    run(submit(session_factory, fake_provider))

    assert fake_provider.count("update_account") == 0
    assert fake_provider.count("update_stakeholder") == 0


def test_locked_form_on_correction_is_not_fatal(session_factory, seeded, fake_provider):
    fake_provider.currently_due = ["addresses.residential.postal_code"]
    run(submit(session_factory, fake_provider))
    fake_provider.fail("update_account", 400, FORM_LOCKED)
    fake_provider.currently_due = []

    result = run(submit(session_factory, fake_provider))

    assert result.status == KYCStatus.PENDING
    assert fake_provider.count("update_account") == 1
    assert fake_provider.count("update_stakeholder") == 0


def test_attempt_that_lost_its_lease_stops(session_factory, seeded, fake_provider):
    taken = {}

    async def take_over(request):
        fake_provider.hooks.pop("create_account")
        async with session_factory() as db:
            stale = crud.utcnow() - timedelta(hours=1)
            await db.execute(update(LinkedAccount).values(attempt_started_at=stale))
            await db.commit()
            taken["token"] = await LinkedAccountStore.claim_attempt(db, COMMUNITY_ID, "test")

    fake_provider.hooks["create_account"] = take_over

    with pytest.raises(AttemptInProgressError):
        run(submit(session_factory, fake_provider))

    assert taken["token"]
    assert fake_provider.count("list_stakeholders") == 0
    _, record, _ = run(load(session_factory))
    assert record.attempt_token == taken["token"]
    assert record.attempt_started_at is not None
    assert record.external_account_id is None


def test_non_latin_owner_name_uses_community_name(session_factory, seeded, fake_provider):
    async def rename():
        async with session_factory() as db:
            await db.execute(update(User).where(User.email == OWNER_EMAIL).values(full_name="李"))
            await db.commit()

    run(rename())
    result = run(submit(session_factory, fake_provider))

    assert result.status == KYCStatus.PENDING
    assert fake_provider.bodies("create_account")[0]["legal_business_name"] == "Indiranagar Yoga Circle"
    assert fake_provider.bodies("create_stakeholder")[0]["name"] == "Indiranagar Yoga Circle"
