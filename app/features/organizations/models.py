"""
Organization, membership and subscription models.

Organizations are the tenants. A user holds exactly one role per organization
through OrganizationMember, and each organization has at most one Subscription
whose plan selects the plan permission presets.
"""
from datetime import datetime, timezone
from sqlalchemy import String, ForeignKey, Boolean, DateTime, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, TimestampMixin, generate_ulid
from app.features.permissions.constants import DEFAULT_PLAN, OrgRole, SubscriptionStatus


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class Organization(Base, TimestampMixin):
    """An isolated customer account."""
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    owner_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    members: Mapped[list["OrganizationMember"]] = relationship(
        "OrganizationMember",
        back_populates="organization",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    subscription: Mapped["Subscription | None"] = relationship(
        "Subscription",
        back_populates="organization",
        cascade="all, delete-orphan",
        uselist=False,
        lazy="selectin"
    )

    @property
    def plan(self) -> str:
        return self.subscription.plan if self.subscription else DEFAULT_PLAN

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, name={self.name!r})>"


class OrganizationMember(Base, TimestampMixin):
    """A user's role inside an organization."""
    __tablename__ = "organization_members"
    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_organization_members_org_user"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    organization_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    user_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    role: Mapped[str] = mapped_column(String(50), nullable=False, default=OrgRole.STAFF.value)

    organization: Mapped["Organization"] = relationship(
        "Organization",
        back_populates="members",
        lazy="selectin"
    )
    user: Mapped["User"] = relationship(  # type: ignore
        "User",
        back_populates="memberships",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<OrganizationMember(org_id={self.organization_id}, user_id={self.user_id}, role={self.role})>"


class Subscription(Base, TimestampMixin):
    """The organization's plan and billing status."""
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    organization_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True
    )
    plan: Mapped[str] = mapped_column(String(50), nullable=False, default=DEFAULT_PLAN)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=SubscriptionStatus.TRIAL.value)
    user_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=2)

    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    organization: Mapped["Organization"] = relationship(
        "Organization",
        back_populates="subscription",
        lazy="selectin"
    )

    def trial_active(self, now: datetime | None = None) -> bool:
        if self.status != SubscriptionStatus.TRIAL.value:
            return False
        if self.trial_ends_at is None:
            return True
        now = now or datetime.now(timezone.utc)
        return as_utc(self.trial_ends_at) > now

    def is_active(self, now: datetime | None = None) -> bool:
        """Active subscriptions allow writes; lapsed ones are read-only."""
        return self.status == SubscriptionStatus.ACTIVE.value or self.trial_active(now)

    def __repr__(self) -> str:
        return f"<Subscription(org_id={self.organization_id}, plan={self.plan}, status={self.status})>"
