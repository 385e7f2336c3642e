"""
Server-side access decisions.

``check_access`` is what routes call before mutating tenant data. It layers,
in order: the super admin bypass, organization membership, subscription state,
plan features and finally the resolved permission key.
"""
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.organizations.models import Organization, OrganizationMember, Subscription
from app.features.permissions.cache import PermissionCache, permission_cache
from app.features.permissions.constants import (
    DEFAULT_PLAN,
    READ_ACTIONS,
    SUB_MENU_PARENTS,
    SUPER_ADMIN_ROLE,
    OrgRole,
    is_valid_permission_key,
    minimum_plan_for_feature,
    plan_has_feature,
)
from app.features.permissions.exceptions import OrganizationNotFoundError
from app.features.permissions.resolver import resolve
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)


@dataclass
class AccessDecision:
    has_access: bool
    is_super_admin: bool = False
    is_impersonating: bool = False
    org_role: Optional[str] = None
    plan: Optional[str] = None
    permission_key: Optional[str] = None
    blocked_by_plan: bool = False
    blocked_by_role: bool = False
    required_plan: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RoleResolution:
    user_id: str
    system_role: Optional[str]
    is_super_admin: bool
    org_role: Optional[str]
    organization_id: Optional[str]
    is_impersonating: bool
    effective_role: Optional[str]


async def get_membership(db: AsyncSession, user_id: str, organization_id: str) -> Optional[OrganizationMember]:
    result = await db.execute(
        select(OrganizationMember).where(
            OrganizationMember.user_id == user_id,
            OrganizationMember.organization_id == organization_id,
        )
    )
    return result.scalar_one_or_none()


async def get_subscription(db: AsyncSession, organization_id: str) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription).where(Subscription.organization_id == organization_id)
    )
    return result.scalar_one_or_none()


async def resolve_role(
    db: AsyncSession,
    user: User,
    organization_id: Optional[str] = None,
    impersonate: bool = False,
) -> RoleResolution:
    """
    Work out which role a user acts with.

    A super admin impersonating an organization acts as its owner. Everyone
    else acts with their membership role, or none.

    Raises:
        OrganizationNotFoundError: impersonation target does not exist
    """
    is_super_admin = bool(user.is_super_admin)
    system_role = SUPER_ADMIN_ROLE if is_super_admin else None

    if is_super_admin and impersonate and organization_id:
        if await db.get(Organization, organization_id) is None:
            raise OrganizationNotFoundError(organization_id)
        log.info("Super admin %s impersonating organization %s", user.id, organization_id)
        return RoleResolution(
            user_id=user.id,
            system_role=system_role,
            is_super_admin=True,
            org_role=OrgRole.OWNER.value,
            organization_id=organization_id,
            is_impersonating=True,
            effective_role=OrgRole.OWNER.value,
        )

    if not organization_id:
        return RoleResolution(
            user_id=user.id,
            system_role=system_role,
            is_super_admin=is_super_admin,
            org_role=None,
            organization_id=None,
            is_impersonating=False,
            effective_role=None,
        )

    membership = await get_membership(db, user.id, organization_id)
    org_role = membership.role if membership else None

    if org_role == OrgRole.OWNER.value:
        organization = await db.get(Organization, organization_id)
        if organization is not None and organization.owner_id != user.id:
            # Membership stays authoritative
            log.warning(
                "Owner mismatch for organization %s: owner_id=%s, membership user_id=%s",
                organization_id, organization.owner_id, user.id,
            )

    return RoleResolution(
        user_id=user.id,
        system_role=system_role,
        is_super_admin=is_super_admin,
        org_role=org_role,
        organization_id=organization_id,
        is_impersonating=False,
        effective_role=org_role,
    )


def _denial_message(key: str) -> str:
    module, action = key.split(".")
    if action == "access" or key in SUB_MENU_PARENTS:
        return "You don't have access to this section."
    return f"You don't have permission to {action} {module.replace('_', ' ')}."


async def check_access(
    db: AsyncSession,
    user: User,
    organization_id: str,
    module: Optional[str] = None,
    action: str = "view",
    feature: Optional[str] = None,
    permission_key: Optional[str] = None,
    is_impersonating: bool = False,
    cache: PermissionCache = permission_cache,
    now: Optional[datetime] = None,
) -> AccessDecision:
    """Decide whether ``user`` may perform an action inside an organization."""
    is_super_admin = bool(user.is_super_admin)

    # Without impersonation a super admin works at system level only
    if is_super_admin and not is_impersonating:
        return AccessDecision(
            has_access=True,
            is_super_admin=True,
            message="Super admin access (system level only)",
        )

    if is_super_admin:
        org_role = OrgRole.OWNER.value
    else:
        membership = await get_membership(db, user.id, organization_id)
        org_role = membership.role if membership else None

    if org_role is None:
        return AccessDecision(
            has_access=False,
            blocked_by_role=True,
            message="You are not a member of this organization.",
        )

    key = permission_key or (f"{module}.{action}" if module else None)
    if key is not None:
        if not is_valid_permission_key(key):
            return AccessDecision(
                has_access=False,
                org_role=org_role,
                permission_key=key,
                blocked_by_role=True,
                message=f"Invalid permission key {key!r}.",
            )
        action = key.split(".")[1]

    subscription = await get_subscription(db, organization_id)
    plan = subscription.plan if subscription else DEFAULT_PLAN
    subscription_active = subscription is not None and subscription.is_active(now)

    if not subscription_active and action not in READ_ACTIONS:
        return AccessDecision(
            has_access=False,
            org_role=org_role,
            plan=plan,
            permission_key=key,
            blocked_by_plan=True,
            message="Your subscription has expired. Please renew to continue.",
        )

    if feature and not plan_has_feature(plan, feature):
        return AccessDecision(
            has_access=False,
            org_role=org_role,
            plan=plan,
            blocked_by_plan=True,
            required_plan=minimum_plan_for_feature(feature),
            message="This feature requires a higher plan.",
        )

    if key is not None:
        effective = await resolve(db, organization_id, org_role, plan, cache=cache)
        if not effective.allows(key):
            log.debug("Denied %s for role %s in organization %s", key, org_role, organization_id)
            return AccessDecision(
                has_access=False,
                org_role=org_role,
                plan=plan,
                permission_key=key,
                blocked_by_role=True,
                message=_denial_message(key),
            )

    return AccessDecision(
        has_access=True,
        is_super_admin=is_super_admin,
        is_impersonating=is_super_admin and is_impersonating,
        org_role=org_role,
        plan=plan,
        permission_key=key,
    )
