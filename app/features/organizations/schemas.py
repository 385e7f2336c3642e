"""
Pydantic schemas for organization-related requests and responses.
"""
from datetime import datetime
from pydantic import BaseModel, Field, field_validator

from app.features.permissions.constants import ORG_ROLES, PLAN_ORDER, DEFAULT_PLAN, OrgRole


def _check_plan(v: str) -> str:
    if v not in PLAN_ORDER:
        raise ValueError(f"Plan must be one of: {', '.join(PLAN_ORDER)}")
    return v


def _check_member_role(v: str) -> str:
    if v not in ORG_ROLES:
        raise ValueError(f"Role must be one of: {', '.join(ORG_ROLES)}")
    if v == OrgRole.OWNER.value:
        raise ValueError("The owner role cannot be assigned to members")
    return v


# Subscription Schemas
class SubscriptionResponse(BaseModel):
    """Schema for subscription responses."""
    plan: str
    status: str
    user_limit: int
    trial_ends_at: datetime | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None

    model_config = {"from_attributes": True}


class SubscriptionChange(BaseModel):
    """Schema for changing an organization's plan."""
    plan: str

    @field_validator('plan')
    @classmethod
    def plan_known(cls, v: str) -> str:
        return _check_plan(v)


class SubscriptionChangeResponse(BaseModel):
    organization_id: str
    previous_plan: str | None
    previous_status: str | None
    change_type: str
    subscription: SubscriptionResponse


# Organization Schemas
class OrganizationCreate(BaseModel):
    """Schema for creating a new organization."""
    name: str = Field(..., min_length=1, max_length=255)
    owner_id: str | None = Field(None, description="Owner user ID; defaults to the creating super admin")
    plan: str = Field(default=DEFAULT_PLAN)
    trial_days: int = Field(default=14, ge=0, le=365)

    @field_validator('plan')
    @classmethod
    def plan_known(cls, v: str) -> str:
        return _check_plan(v)


class OrganizationResponse(BaseModel):
    """Schema for organization responses."""
    id: str
    name: str
    owner_id: str | None
    is_active: bool
    plan: str
    subscription: SubscriptionResponse | None = None
    member_count: int = 0
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


# Member Schemas
class MemberCreate(BaseModel):
    """Schema for adding a user to an organization."""
    user_id: str
    role: str = Field(default=OrgRole.STAFF.value)

    @field_validator('role')
    @classmethod
    def role_assignable(cls, v: str) -> str:
        return _check_member_role(v)


class MemberUpdate(BaseModel):
    """Schema for changing a member's role."""
    role: str

    @field_validator('role')
    @classmethod
    def role_assignable(cls, v: str) -> str:
        return _check_member_role(v)


class MemberResponse(BaseModel):
    id: str
    organization_id: str
    user_id: str
    role: str
    created_at: datetime

    model_config = {"from_attributes": True}


class RoleResolutionResponse(BaseModel):
    """The role a user acts with inside an organization."""
    user_id: str
    system_role: str | None
    is_super_admin: bool
    org_role: str | None
    organization_id: str | None
    is_impersonating: bool
    effective_role: str | None
