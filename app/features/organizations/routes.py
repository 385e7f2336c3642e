"""
Organization feature routes.
"""
from dataclasses import asdict
from typing import Annotated
from datetime import datetime, timedelta, timezone
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError

from app.core.database.engine import get_db
from app.features.users.models import User
from app.features.users.dependencies import get_current_user, get_current_super_admin
from app.features.organizations.models import Organization, OrganizationMember, Subscription
from app.features.organizations.schemas import (
    MemberCreate,
    MemberResponse,
    MemberUpdate,
    OrganizationCreate,
    OrganizationResponse,
    RoleResolutionResponse,
    SubscriptionChange,
    SubscriptionChangeResponse,
    SubscriptionResponse,
)
from app.features.organizations.dependencies import get_organization_by_id, get_member_organization
from app.features.organizations.subscriptions import apply_plan_change, plan_change
from app.features.permissions.access import get_membership, resolve_role
from app.features.permissions.cache import permission_cache
from app.features.permissions.constants import DEFAULT_PLAN, PLAN_USER_LIMITS, OrgRole, SubscriptionStatus
from app.features.permissions.dependencies import create_audit_log, require_org_permission
from app.features.permissions.exceptions import OrganizationNotFoundError
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter(tags=["organizations"])


def _organization_response(organization: Organization) -> OrganizationResponse:
    response = OrganizationResponse.model_validate(organization)
    response.member_count = len(organization.members)
    return response


@router.post("/", response_model=OrganizationResponse, status_code=status.HTTP_201_CREATED)
async def create_organization(
    org_data: OrganizationCreate,
    request: Request,
    admin: Annotated[User, Depends(get_current_super_admin)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Create an organization with its owner membership and a trial subscription (super admin only)."""
    owner_id = org_data.owner_id or admin.id
    if await db.get(User, owner_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Owner user not found")

    new_org = Organization(name=org_data.name, owner_id=owner_id)
    db.add(new_org)
    await db.flush()

    now = datetime.now(timezone.utc)
    db.add(OrganizationMember(
        organization_id=new_org.id,
        user_id=owner_id,
        role=OrgRole.OWNER.value
    ))
    db.add(Subscription(
        organization_id=new_org.id,
        plan=org_data.plan,
        status=SubscriptionStatus.TRIAL.value,
        user_limit=PLAN_USER_LIMITS[org_data.plan],
        trial_ends_at=now + timedelta(days=org_data.trial_days),
    ))

    create_audit_log(
        db,
        admin,
        action="create",
        resource_type="organization",
        resource_id=new_org.id,
        organization_id=new_org.id,
        details=org_data.model_dump(),
        request=request,
    )
    await db.commit()
    await db.refresh(new_org, attribute_names=["members", "subscription", "created_at", "updated_at"])
    log.info(f"Created organization {new_org.id} owned by {owner_id}")

    return _organization_response(new_org)


@router.get("/{organization_id}", response_model=OrganizationResponse)
async def get_organization(
    organization: Annotated[Organization, Depends(get_member_organization)]
):
    """Get an organization (members and super admins)."""
    return _organization_response(organization)


@router.get("/{organization_id}/role", response_model=RoleResolutionResponse)
async def get_my_role(
    organization_id: str,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    impersonate: bool = False
):
    """The role the current user acts with in an organization."""
    try:
        resolution = await resolve_role(db, user, organization_id, impersonate=impersonate)
    except OrganizationNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")
    return RoleResolutionResponse(**asdict(resolution))


# Member endpoints
@router.post("/{organization_id}/members", response_model=MemberResponse, status_code=status.HTTP_201_CREATED)
async def add_member(
    organization_id: str,
    member_data: MemberCreate,
    request: Request,
    user: Annotated[User, Depends(require_org_permission("settings.team_members"))],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Add a user to the organization, within the plan's user limit."""
    organization = await get_organization_by_id(organization_id, db)

    if await db.get(User, member_data.user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    member_count = (await db.execute(
        select(func.count()).select_from(OrganizationMember)
        .where(OrganizationMember.organization_id == organization_id)
    )).scalar() or 0
    user_limit = organization.subscription.user_limit if organization.subscription else PLAN_USER_LIMITS[DEFAULT_PLAN]
    if member_count >= user_limit:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"User limit of {user_limit} reached for this plan"
        )

    member = OrganizationMember(
        organization_id=organization_id,
        user_id=member_data.user_id,
        role=member_data.role
    )
    db.add(member)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User is already a member of this organization"
        )

    create_audit_log(
        db,
        user,
        action="create",
        resource_type="organization_member",
        resource_id=member_data.user_id,
        organization_id=organization_id,
        details={"role": member_data.role},
        request=request,
    )
    await db.commit()
    await db.refresh(member)
    return member


@router.patch("/{organization_id}/members/{user_id}", response_model=MemberResponse)
async def update_member_role(
    organization_id: str,
    user_id: str,
    member_data: MemberUpdate,
    request: Request,
    user: Annotated[User, Depends(require_org_permission("settings.role_management"))],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Change a member's role. The owner role is neither granted nor revoked here."""
    member = await get_membership(db, user_id, organization_id)
    if member is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Member not found")
    if member.role == OrgRole.OWNER.value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="The owner's role cannot be changed"
        )

    previous_role = member.role
    member.role = member_data.role

    create_audit_log(
        db,
        user,
        action="role_change",
        resource_type="organization_member",
        resource_id=user_id,
        organization_id=organization_id,
        details={"before": {"role": previous_role}, "after": {"role": member_data.role}},
        request=request,
    )
    await db.commit()
    await db.refresh(member)
    return member


# Subscription endpoints
@router.put("/{organization_id}/subscription", response_model=SubscriptionChangeResponse)
async def change_plan(
    organization_id: str,
    change_data: SubscriptionChange,
    request: Request,
    admin: Annotated[User, Depends(get_current_super_admin)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Move an organization to another plan (super admin only)."""
    organization = await get_organization_by_id(organization_id, db)
    subscription = organization.subscription

    now = datetime.now(timezone.utc)
    change = plan_change(subscription, change_data.plan, now)

    if change.change_type == "no_change":
        return SubscriptionChangeResponse(
            organization_id=organization_id,
            previous_plan=change.previous_plan,
            previous_status=change.previous_status,
            change_type=change.change_type,
            subscription=SubscriptionResponse.model_validate(subscription),
        )

    before = None
    if subscription is None:
        subscription = Subscription(organization_id=organization_id)
        db.add(subscription)
    else:
        before = {"plan": subscription.plan, "status": subscription.status, "user_limit": subscription.user_limit}
    apply_plan_change(subscription, change, now)

    create_audit_log(
        db,
        admin,
        action="update",
        resource_type="subscription",
        resource_id=organization_id,
        organization_id=organization_id,
        details={
            "change_type": change.change_type,
            "before": before,
            "after": {"plan": change.new_plan, "status": change.new_status, "user_limit": change.user_limit},
        },
        request=request,
    )
    await db.commit()
    await db.refresh(subscription)

    permission_cache.invalidate(organization_id=organization_id)
    log.info(
        f"Plan {change.change_type} for organization {organization_id}: "
        f"{change.previous_plan} -> {change.new_plan}"
    )

    return SubscriptionChangeResponse(
        organization_id=organization_id,
        previous_plan=change.previous_plan,
        previous_status=change.previous_status,
        change_type=change.change_type,
        subscription=SubscriptionResponse.model_validate(subscription),
    )
