"""
Pydantic schemas for user-related requests and responses.
"""
from datetime import datetime
from pydantic import BaseModel, EmailStr, Field


class UserBase(BaseModel):
    """Base user schema with common fields."""
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=255)


class MembershipSummary(BaseModel):
    """A user's role inside one organization."""
    organization_id: str
    role: str
    
    model_config = {"from_attributes": True}


class UserResponse(UserBase):
    """Schema for user responses."""
    id: str
    is_active: bool
    is_super_admin: bool
    system_role: str | None = None
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    
    memberships: list[MembershipSummary] = []
    
    model_config = {"from_attributes": True}
