# models.py
# SQLAlchemy models for the payout activation workflow (User, Community, Field Store, Linked Account, KYC documents).

import uuid

from sqlalchemy import Boolean, Column, Integer, String, DateTime, Date, ForeignKey, Text, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base

from kyc_constants import KYCStatus


def _uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, server_default=func.now())

    communities = relationship("Community", back_populates="owner")
    kyc_profile = relationship("KYCProfile", uselist=False, back_populates="user")


class Community(Base):
    __tablename__ = "communities"

    id = Column(String(36), primary_key=True, default=_uuid)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    # ⚠️ Single source of truth for paid-event gating.
    # Written only by the activation orchestrator and the status reconciler.
    kyc_status = Column(String, default=KYCStatus.NOT_STARTED.value, nullable=False)
    # Monotonic suffix for provider idempotency tokens; bumped on every reset / restart
    kyc_generation = Column(Integer, default=1, nullable=False)
    # Provider account abandoned after REJECTED/FAILED; never adopted again
    retired_account_id = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    owner = relationship("User", back_populates="communities")
    linked_account = relationship("LinkedAccount", uselist=False, back_populates="community")


class KYCProfile(Base):
    """
    Field Store: identity fields collected by the wizard, one row per user.
    Independent of any activation attempt; only its owner reads or writes it.
    """
    __tablename__ = "kyc_profiles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    phone = Column(String, nullable=True)
    street1 = Column(String, nullable=True)
    street2 = Column(String, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    postal_code = Column(String, nullable=True)
    tax_id = Column(String, nullable=True)
    date_of_birth = Column(Date, nullable=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="kyc_profile")


class LinkedAccount(Base):
    """
    Linked Account Record: the provider account backing a community's payouts.
    One per community. Raw bank account numbers are never stored, only the mask.
    """
    __tablename__ = "linked_accounts"

    id = Column(Integer, primary_key=True, index=True)
    community_id = Column(String(36), ForeignKey("communities.id"), unique=True, nullable=False)
    external_account_id = Column(String, nullable=True, index=True)
    stakeholder_id = Column(String, nullable=True)
    product_id = Column(String, nullable=True)
    provider_environment = Column(String, nullable=False)

    kyc_status = Column(String, default=KYCStatus.IN_PROGRESS.value, nullable=False)
    error_reason = Column(Text, nullable=True)
    status_note = Column(Text, nullable=True)
    onboarding_url = Column(String, nullable=True)
    missing_fields = Column(JSON, nullable=True)
    requirement_errors = Column(JSON, nullable=True)

    # Settlement details (masked)
    bank_masked = Column(String, nullable=True)
    bank_ifsc = Column(String, nullable=True)
    bank_beneficiary_name = Column(String, nullable=True)
    tnc_accepted_at = Column(DateTime, nullable=True)
    products_requested = Column(Boolean, default=False, nullable=False)
    products_activated = Column(Boolean, default=False, nullable=False)

    # Attempt lease: set while an activation attempt is talking to the provider.
    # attempt_token identifies the holder; writes from any other attempt are refused.
    attempt_started_at = Column(DateTime, nullable=True)
    attempt_token = Column(String(32), nullable=True)
    # Last time Field Store values were sent to the provider account/stakeholder
    identity_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    last_updated = Column(DateTime, server_default=func.now(), onupdate=func.now())

    community = relationship("Community", back_populates="linked_account")


class KYCDocument(Base):
    __tablename__ = "kyc_documents"

    id = Column(Integer, primary_key=True, index=True)
    community_id = Column(String(36), ForeignKey("communities.id"), nullable=False, index=True)
    external_account_id = Column(String, nullable=False)
    stakeholder_id = Column(String, nullable=False)
    document_type = Column(String, nullable=False)  # individual_proof_of_address, individual_proof_of_identification
    document_name = Column(String, nullable=False)
    upload_status = Column(String, default="pending", nullable=False)  # pending, uploaded, failed, skipped
    error_message = Column(String, nullable=True)
    uploaded_at = Column(DateTime, nullable=True)
