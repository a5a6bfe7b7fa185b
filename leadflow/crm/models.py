from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum
from typing import Any

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from leadflow.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _days_between(start: datetime, end: datetime) -> int:
    seconds = abs((_as_utc(end) - _as_utc(start)).total_seconds())
    return -int(-seconds // 86400)


class LeadStatus(StrEnum):
    NEW = "new"
    QUALIFIED = "qualified"
    CONTACTED = "contacted"
    CONVERTED = "converted"
    LOST = "lost"


class OpportunityStage(StrEnum):
    PROSPECTING = "prospecting"
    QUALIFICATION = "qualification"
    NEEDS_ANALYSIS = "needs_analysis"
    PROPOSAL = "proposal"
    NEGOTIATION = "negotiation"
    CLOSED_WON = "closed_won"
    CLOSED_LOST = "closed_lost"


class AccountType(StrEnum):
    PROSPECT = "prospect"
    CUSTOMER = "customer"
    PARTNER = "partner"
    COMPETITOR = "competitor"
    OTHER = "other"


OPEN_STAGE_FLOW: list[OpportunityStage] = [
    OpportunityStage.PROSPECTING,
    OpportunityStage.QUALIFICATION,
    OpportunityStage.NEEDS_ANALYSIS,
    OpportunityStage.PROPOSAL,
    OpportunityStage.NEGOTIATION,
    OpportunityStage.CLOSED_WON,
]


class CRMAccount(Base):
    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False, default=AccountType.PROSPECT.value)
    industry: Mapped[str | None] = mapped_column(String(100), nullable=True)
    website: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    billing_address: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    shipping_address: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    revenue: Mapped[Decimal | None] = mapped_column(Numeric(15, 2), nullable=True)
    employee_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    parent_account_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("accounts.id", ondelete="SET NULL"),
        nullable=True,
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    custom_fields: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    created_by_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    contacts: Mapped[list[CRMContact]] = relationship("CRMContact", back_populates="account")
    opportunities: Mapped[list[CRMOpportunity]] = relationship("CRMOpportunity", back_populates="account")

    __table_args__ = (
        Index("ix_accounts_organization_id", "organization_id"),
        Index("ix_accounts_name", "name"),
        Index("ix_accounts_type", "type"),
        Index("ix_accounts_owner_id", "owner_id"),
        Index("ix_accounts_created_at", "created_at"),
    )

    @property
    def is_prospect(self) -> bool:
        return self.type == AccountType.PROSPECT

    @property
    def is_customer(self) -> bool:
        return self.type == AccountType.CUSTOMER

    @property
    def account_size(self) -> str:
        if not self.employee_count:
            return "small"
        if self.employee_count >= 1000:
            return "enterprise"
        if self.employee_count >= 100:
            return "large"
        if self.employee_count >= 10:
            return "medium"
        return "small"

    @property
    def revenue_range(self) -> str:
        if not self.revenue:
            return "Unknown"
        if self.revenue >= 100_000_000:
            return "$100M+"
        if self.revenue >= 10_000_000:
            return "$10M - $100M"
        if self.revenue >= 1_000_000:
            return "$1M - $10M"
        if self.revenue >= 100_000:
            return "$100K - $1M"
        return "Under $100K"


class CRMContact(Base):
    __tablename__ = "contacts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    mobile: Mapped[str | None] = mapped_column(String(20), nullable=True)
    job_title: Mapped[str | None] = mapped_column(String(100), nullable=True)
    department: Mapped[str | None] = mapped_column(String(100), nullable=True)
    account_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("accounts.id", ondelete="SET NULL"),
        nullable=True,
    )
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    do_not_call: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    do_not_email: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    custom_fields: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    full_name: Mapped[str | None] = mapped_column(String(201), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    created_by_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    account: Mapped[CRMAccount | None] = relationship("CRMAccount", back_populates="contacts")

    __table_args__ = (
        Index("ix_contacts_organization_id", "organization_id"),
        Index("ix_contacts_email", "email"),
        Index("ix_contacts_account_id", "account_id"),
        Index("ix_contacts_created_at", "created_at"),
    )

    def refresh_computed_fields(self) -> None:
        self.full_name = f"{self.first_name or ''} {self.last_name or ''}".strip()

    @property
    def can_be_contacted(self) -> bool:
        return not self.do_not_call or not self.do_not_email

    @property
    def can_be_emailed(self) -> bool:
        return not self.do_not_email and bool(self.email)

    @property
    def preferred_contact_method(self) -> str | None:
        if self.do_not_call and self.do_not_email:
            return None
        if self.do_not_email and self.phone:
            return "phone"
        if self.do_not_email and self.mobile:
            return "mobile"
        if self.do_not_call:
            return "email"
        if self.email:
            return "email"
        if self.mobile:
            return "mobile"
        if self.phone:
            return "phone"
        return None


class CRMLeadTag(Base):
    __tablename__ = "lead_tags"

    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("leads.id", ondelete="CASCADE"),
        primary_key=True,
    )
    tag: Mapped[str] = mapped_column(String(100), primary_key=True)

    __table_args__ = (Index("ix_lead_tags_tag", "tag"),)


class CRMLead(Base):
    __tablename__ = "leads"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    company: Mapped[str | None] = mapped_column(String(255), nullable=True)
    job_title: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=LeadStatus.NEW.value)
    source: Mapped[str] = mapped_column(String(100), nullable=False)
    score: Mapped[int | None] = mapped_column(Integer, nullable=True, default=0)
    assigned_to_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    converted_account_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    converted_contact_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    converted_opportunity_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    converted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_contacted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    custom_fields: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    full_name: Mapped[str | None] = mapped_column(String(201), nullable=True)
    is_converted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    created_by_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    tag_links: Mapped[list[CRMLeadTag]] = relationship(
        "CRMLeadTag",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="CRMLeadTag.tag",
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "email", name="uq_leads_organization_email"),
        Index("ix_leads_organization_id", "organization_id"),
        Index("ix_leads_email", "email"),
        Index("ix_leads_status", "status"),
        Index("ix_leads_assigned_to_id", "assigned_to_id"),
        Index("ix_leads_created_at", "created_at"),
        Index("ix_leads_score", "score"),
    )

    @property
    def tags(self) -> list[str]:
        return [link.tag for link in self.tag_links]

    def set_tags(self, tags: list[str]) -> None:
        # Rows that survive are kept as-is so the (lead_id, tag) key is never re-inserted in one flush.
        wanted = list(dict.fromkeys(tags))
        self.tag_links = [link for link in self.tag_links if link.tag in wanted]
        existing = {link.tag for link in self.tag_links}
        for tag in wanted:
            if tag not in existing:
                self.tag_links.append(CRMLeadTag(tag=tag))

    @property
    def score_level(self) -> str:
        if not self.score:
            return "low"
        if self.score >= 80:
            return "high"
        if self.score >= 50:
            return "medium"
        return "low"

    @property
    def days_since_created(self) -> int:
        return _days_between(self.created_at or utcnow(), utcnow())

    def refresh_computed_fields(self) -> None:
        self.full_name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        self.is_converted = bool(
            self.converted_at is not None
            and (self.converted_account_id or self.converted_contact_id or self.converted_opportunity_id)
        )


class CRMOpportunity(Base):
    __tablename__ = "opportunities"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    contact_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("contacts.id", ondelete="SET NULL"),
        nullable=True,
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    stage: Mapped[str] = mapped_column(String(32), nullable=False, default=OpportunityStage.PROSPECTING.value)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    probability: Mapped[int] = mapped_column(Integer, nullable=False)
    expected_close_date: Mapped[date] = mapped_column(Date, nullable=False)
    actual_close_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    source: Mapped[str] = mapped_column(String(100), nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    custom_fields: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    weighted_amount: Mapped[Decimal | None] = mapped_column(Numeric(15, 2), nullable=True)
    is_won: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_lost: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_closed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_overdue: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_stage_change_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    previous_stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    created_by_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    account: Mapped[CRMAccount] = relationship("CRMAccount", back_populates="opportunities")

    __table_args__ = (
        Index("ix_opportunities_organization_id", "organization_id"),
        Index("ix_opportunities_name", "name"),
        Index("ix_opportunities_account_id", "account_id"),
        Index("ix_opportunities_contact_id", "contact_id"),
        Index("ix_opportunities_owner_id", "owner_id"),
        Index("ix_opportunities_stage", "stage"),
        Index("ix_opportunities_expected_close_date", "expected_close_date"),
        Index("ix_opportunities_created_at", "created_at"),
    )

    @property
    def stage_progress(self) -> int:
        try:
            index = OPEN_STAGE_FLOW.index(OpportunityStage(self.stage))
        except ValueError:
            return 0
        return round(index / (len(OPEN_STAGE_FLOW) - 1) * 100)

    @property
    def next_stage(self) -> str | None:
        if self.stage in {OpportunityStage.CLOSED_WON, OpportunityStage.CLOSED_LOST}:
            return None
        try:
            index = OPEN_STAGE_FLOW.index(OpportunityStage(self.stage))
        except ValueError:
            return None
        return OPEN_STAGE_FLOW[index + 1].value

    def refresh_computed_fields(self) -> None:
        amount = Decimal(self.amount or 0)
        probability = Decimal(self.probability or 0)
        self.weighted_amount = (amount * probability / Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        self.is_won = self.stage == OpportunityStage.CLOSED_WON
        self.is_lost = self.stage == OpportunityStage.CLOSED_LOST
        self.is_closed = self.is_won or self.is_lost
        self.is_overdue = bool(
            not self.is_closed
            and self.expected_close_date is not None
            and self.expected_close_date < date.today()
        )


@event.listens_for(CRMLead, "before_insert")
@event.listens_for(CRMLead, "before_update")
@event.listens_for(CRMContact, "before_insert")
@event.listens_for(CRMContact, "before_update")
@event.listens_for(CRMOpportunity, "before_insert")
@event.listens_for(CRMOpportunity, "before_update")
def _refresh_computed_fields(mapper: Any, connection: Any, target: Any) -> None:
    target.refresh_computed_fields()
