"""
Permission source tables and the audit log.

Three tables feed the resolver, each mapping a permission key to an enabled flag:

- GlobalRolePermission: (role, permission_key) defaults shared by every organization
- PlanPermissionPreset: (plan_name, role, permission_key) per subscription tier
- OrgSpecificPermission: (organization_id, role, permission_key) per tenant

OrgPermissionSettings decides which of the layers an organization actually uses.
"""
from typing import Any, Dict
from sqlalchemy import String, ForeignKey, JSON, Boolean, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin, generate_ulid


class GlobalRolePermission(Base, TimestampMixin):
    """
    Default capability matrix: whether a role has a permission key.

    Protected rows (core owner permissions) can never be disabled.
    """
    __tablename__ = "org_role_permissions"
    __table_args__ = (
        UniqueConstraint("role", "permission_key", name="uq_org_role_permissions_role_key"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    role: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    permission_key: Mapped[str] = mapped_column(String(100), nullable=False)
    permission_category: Mapped[str] = mapped_column(String(100), nullable=False, default="General")
    permission_label: Mapped[str] = mapped_column(String(255), nullable=False)

    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_protected: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    def __repr__(self) -> str:
        return f"<GlobalRolePermission(role={self.role}, key={self.permission_key}, enabled={self.is_enabled})>"


class PlanPermissionPreset(Base, TimestampMixin):
    """Per-plan override of the global default for a role."""
    __tablename__ = "plan_permission_presets"
    __table_args__ = (
        UniqueConstraint("plan_name", "role", "permission_key", name="uq_plan_permission_presets_plan_role_key"),
        Index("ix_plan_permission_presets_lookup", "plan_name", "role"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    plan_name: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(50), nullable=False)
    permission_key: Mapped[str] = mapped_column(String(100), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<PlanPermissionPreset(plan={self.plan_name}, role={self.role}, "
            f"key={self.permission_key}, enabled={self.is_enabled})>"
        )


class OrgSpecificPermission(Base, TimestampMixin):
    """Per-organization override; wins over plan and global when custom permissions are on."""
    __tablename__ = "org_specific_permissions"
    __table_args__ = (
        UniqueConstraint("organization_id", "role", "permission_key", name="uq_org_specific_permissions_org_role_key"),
        Index("ix_org_specific_permissions_lookup", "organization_id", "role"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    organization_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(50), nullable=False)
    permission_key: Mapped[str] = mapped_column(String(100), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<OrgSpecificPermission(org_id={self.organization_id}, role={self.role}, "
            f"key={self.permission_key}, enabled={self.is_enabled})>"
        )


class OrgPermissionSettings(Base, TimestampMixin):
    """
    Which permission layers an organization uses.

    - use_global_permissions: when true, organization overrides are ignored
    - override_plan_permissions: when true, plan presets are skipped

    An organization without a row behaves as (True, False).
    """
    __tablename__ = "org_permission_settings"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    organization_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    use_global_permissions: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    override_plan_permissions: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<OrgPermissionSettings(org_id={self.organization_id}, "
            f"use_global={self.use_global_permissions}, override_plan={self.override_plan_permissions})>"
        )


class AuditLog(Base, TimestampMixin):
    """
    Audit log for permission and subscription changes.

    Tracks who did what, when, and from where.
    """
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Actor
    user_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    actor_role: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)

    # Context
    organization_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, user_id={self.user_id}, action={self.action}, resource={self.resource_type})>"
