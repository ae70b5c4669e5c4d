import asyncio
import json
import os
import re
from collections import defaultdict
from datetime import date

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["PROVIDER_ENVIRONMENT"] = "test"
os.environ["PROVIDER_KEY_ID_TEST"] = "rzp_test_key"
os.environ["PROVIDER_KEY_SECRET_TEST"] = "rzp_test_secret"
os.environ["PROVIDER_STEP_DELAY_SECONDS"] = "0"
os.environ["SECRET_KEY"] = "test-secret"

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

import crud
from database import Base
from kyc_service import KYCService
from linked_account_store import LinkedAccountStore
from models import Community, KYCProfile, LinkedAccount, User
from provider_client import ProviderClient
from schemas import ActivationRequest, BankDetails

OWNER_EMAIL = "jane@example.com"
OTHER_EMAIL = "mallory@example.com"
COMMUNITY_ID = "5f0c6a52-8d4e-4f7e-9a55-2b1f0c3d9e11"
GOOD_BANK = {
    "account_number": "123456789012",
    "ifsc": "ABCD0123456",
    "beneficiary_name": "Jane Doe",
    "confirm_beneficiary_name": "Jane Doe",
    "tnc_accepted": True,
}


def run(coro):
    return asyncio.run(coro)


def activation_request(**overrides) -> ActivationRequest:
    documents = overrides.pop("documents", None)
    return ActivationRequest(bank_details=BankDetails(**{**GOOD_BANK, **overrides}), documents=documents)


def error_body(description, field=None, code="BAD_REQUEST_ERROR"):
    error = {"code": code, "description": description}
    if field:
        error["field"] = field
    return {"error": error}


class FakeProvider:
    """
    In-memory stand-in for the provider's v2 linked-account API, served
    through httpx.MockTransport. Idempotency keys replay the first response.
    """

    def __init__(self):
        self.accounts = {}
        self.stakeholders = defaultdict(list)
        self.products = {}
        self.documents = []
        self.calls = []
        self.idempotency = {}
        self.failures = defaultdict(list)
        self.hooks = {}
        self.product_status = "under_review"
        self.account_status = "created"
        self.currently_due = []
        self.required_documents = []
        self.bank_persists = True
        self.activation_url = None
        self.closed_emails_free = True
        self._ids = 0

    def _next_id(self, prefix):
        self._ids += 1
        return f"{prefix}_{self._ids:06d}"

    def fail(self, operation, status_code, body):
        """Queue one failure for the next call of `operation`"""
        self.failures[operation].append((status_code, body))

    def existing_account(self, email):
        account_id = self._next_id("acc")
        self.accounts[account_id] = {"id": account_id, "email": email, "status": self.account_status}
        return account_id

    def close_account(self, account_id):
        """The provider closes a rejected account; by default its email may register again"""
        self.accounts[account_id]["closed"] = True

    def count(self, operation):
        return sum(1 for op, _ in self.calls if op == operation)

    def bodies(self, operation):
        return [body for op, body in self.calls if op == operation]

    def client(self, environment="test"):
        return ProviderClient(
            "rzp_test_key",
            "rzp_test_secret",
            base_url="https://provider.test",
            environment=environment,
            transport=httpx.MockTransport(self.handler),
            retry_delay=0,
        )

    @staticmethod
    def _route(method, path):
        patterns = [
            ("POST", r"^/v2/accounts$", "create_account"),
            ("GET", r"^/v2/accounts/(?P<acc>[^/]+)$", "get_account"),
            ("PATCH", r"^/v2/accounts/(?P<acc>[^/]+)$", "update_account"),
            ("GET", r"^/v2/accounts/(?P<acc>[^/]+)/stakeholders$", "list_stakeholders"),
            ("POST", r"^/v2/accounts/(?P<acc>[^/]+)/stakeholders$", "create_stakeholder"),
            ("PATCH", r"^/v2/accounts/(?P<acc>[^/]+)/stakeholders/(?P<stk>[^/]+)$", "update_stakeholder"),
            ("POST", r"^/v2/accounts/(?P<acc>[^/]+)/stakeholders/(?P<stk>[^/]+)/documents$", "upload_document"),
            ("GET", r"^/v2/accounts/(?P<acc>[^/]+)/products$", "list_products"),
            ("POST", r"^/v2/accounts/(?P<acc>[^/]+)/products$", "request_product"),
            ("GET", r"^/v2/accounts/(?P<acc>[^/]+)/products/(?P<prd>[^/]+)$", "get_product"),
            ("PATCH", r"^/v2/accounts/(?P<acc>[^/]+)/products/(?P<prd>[^/]+)$", "update_product"),
        ]
        for verb, pattern, operation in patterns:
            match = re.match(pattern, path)
            if verb == method and match:
                return operation, match.groupdict()
        raise AssertionError(f"unexpected provider call {method} {path}")

    def _product_view(self, product):
        view = dict(product)
        view["activation_status"] = self.product_status
        view["requirements"] = {
            "currently_due": [{"field_reference": ref, "status": "required"} for ref in self.currently_due],
            "documents": list(self.required_documents),
            "errors": {},
        }
        bank = product.get("settlements") if self.bank_persists else None
        view["config"] = {"settlements": {"bank_account": bank} if bank else {}}
        return view

    async def handler(self, request: httpx.Request) -> httpx.Response:
        operation, params = self._route(request.method, request.url.path)
        body = None
        if request.headers.get("content-type", "").startswith("application/json"):
            body = json.loads(request.content)
        self.calls.append((operation, body))

        hook = self.hooks.get(operation)
        if hook is not None:
            await hook(request)

        if self.failures[operation]:
            status_code, payload = self.failures[operation].pop(0)
            return httpx.Response(status_code, json=payload)

        key = request.headers.get("X-Razorpay-Idempotency")
        if key and (operation, key) in self.idempotency:
            return httpx.Response(200, json=self.idempotency[(operation, key)])

        response = self._handle(operation, params, body)
        if key and response.status_code == 200:
            self.idempotency[(operation, key)] = response.json()
        return response

    def _handle(self, operation, params, body):
        acc = params.get("acc")
        if operation == "create_account":
            for account in self.accounts.values():
                if account["email"] == body["email"] and not (account.get("closed") and self.closed_emails_free):
                    return httpx.Response(
                        400, json=error_body(f"Merchant email already exists for account - {account['id']}")
                    )
            account_id = self._next_id("acc")
            self.accounts[account_id] = {"id": account_id, "email": body["email"], "status": self.account_status}
            return httpx.Response(200, json=self.accounts[account_id])

        if acc not in self.accounts:
            return httpx.Response(400, json=error_body("Access Denied"))

        if operation == "get_account":
            account = dict(self.accounts[acc], status=self.account_status)
            if self.activation_url:
                account["activation_url"] = self.activation_url
            return httpx.Response(200, json=account)
        if operation == "list_stakeholders":
            return httpx.Response(200, json={"entity": "collection", "items": self.stakeholders[acc]})
        if operation == "update_account":
            self.accounts[acc].update(body)
            return httpx.Response(200, json=self.accounts[acc])
        if operation == "create_stakeholder":
            stakeholder = {"id": self._next_id("sth"), "name": body["name"]}
            self.stakeholders[acc].append(stakeholder)
            return httpx.Response(200, json=stakeholder)
        if operation == "update_stakeholder":
            stakeholder = next(s for s in self.stakeholders[acc] if s["id"] == params["stk"])
            stakeholder.update(body)
            return httpx.Response(200, json=stakeholder)
        if operation == "upload_document":
            self.documents.append(acc)
            return httpx.Response(200, json={"individual_proof_of_address": [{"type": "voter_id_front"}]})
        if operation == "list_products":
            items = [self._product_view(p) for p in self.products.values() if p["account_id"] == acc]
            return httpx.Response(200, json={"items": items})
        if operation == "request_product":
            product_id = self._next_id("acc_prd")
            self.products[product_id] = {"id": product_id, "account_id": acc, "product_name": body["product_name"]}
            return httpx.Response(200, json=self._product_view(self.products[product_id]))
        if operation == "get_product":
            return httpx.Response(200, json=self._product_view(self.products[params["prd"]]))
        if operation == "update_product":
            self.products[params["prd"]]["settlements"] = body["settlements"]
            return httpx.Response(200, json=self._product_view(self.products[params["prd"]]))
        raise AssertionError(operation)


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payouts.db'}", poolclass=NullPool)

    async def create_tables():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    run(create_tables())
    yield async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    run(engine.dispose())


async def seed_owner(factory, with_profile=True):
    async with factory() as db:
        owner = User(full_name="Jane Doe", email=OWNER_EMAIL)
        other = User(full_name="Mallory Jones", email=OTHER_EMAIL)
        db.add_all([owner, other])
        await db.flush()
        db.add(Community(
            id=COMMUNITY_ID,
            owner_id=owner.id,
            name="Indiranagar Yoga Circle",
            description="Weekly yoga sessions in the park",
        ))
        if with_profile:
            db.add(KYCProfile(
                user_id=owner.id,
                phone="9876543210",
                street1="12 MG Road, Indiranagar",
                city="Bengaluru",
                state="Karnataka",
                postal_code="560038",
                tax_id="ABCDE1234F",
                date_of_birth=date(1990, 1, 15),
            ))
        await db.commit()
        return owner.id, other.id


@pytest.fixture
def seeded(session_factory):
    return run(seed_owner(session_factory))


@pytest.fixture
def seeded_without_profile(session_factory):
    return run(seed_owner(session_factory, with_profile=False))


async def submit(factory, fake, request=None, environment="test"):
    """One activation call as the owner, in its own session"""
    async with factory() as db:
        community = await crud.get_community(db, COMMUNITY_ID)
        user = await crud.get_user_by_email(db, OWNER_EMAIL)
        async with fake.client(environment) as provider:
            return await KYCService.submit_activation(db, provider, community, user, request or activation_request())


async def check(factory):
    async with factory() as db:
        return await KYCService.check_activation_status(db, await crud.get_community(db, COMMUNITY_ID))


async def load(factory):
    """(community, linked account record, number of records)"""
    async with factory() as db:
        community = await crud.get_community(db, COMMUNITY_ID)
        record = await LinkedAccountStore.get(db, COMMUNITY_ID)
        records = await db.scalar(select(func.count()).select_from(LinkedAccount))
        return community, record, records
