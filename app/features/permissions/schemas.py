"""
Pydantic schemas for permission management.

Request and response models for the permission layers, access checks and audit logs.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.features.permissions.constants import ORG_ROLES, is_valid_permission_key


def _check_key(v: str) -> str:
    if not is_valid_permission_key(v):
        raise ValueError("Permission key must look like 'module.action' (lowercase letters, digits, underscores)")
    return v


def _check_role(v: str) -> str:
    if v not in ORG_ROLES:
        raise ValueError(f"Role must be one of: {', '.join(ORG_ROLES)}")
    return v


class PermissionRow(BaseModel):
    """A (role, permission_key, is_enabled) entry of a plan or organization layer."""
    role: str = Field(..., description="Organization role")
    permission_key: str = Field(..., max_length=100, description="Permission key, e.g. 'invoices.view'")
    is_enabled: bool

    @field_validator('role')
    @classmethod
    def role_known(cls, v: str) -> str:
        return _check_role(v)

    @field_validator('permission_key')
    @classmethod
    def key_format(cls, v: str) -> str:
        return _check_key(v)


# ============================================================================
# Global defaults
# ============================================================================

class GlobalPermissionCreate(BaseModel):
    """Schema for adding a key to the global matrix."""
    role: str
    permission_key: str = Field(..., max_length=100)
    permission_label: str = Field(..., min_length=1, max_length=255)
    permission_category: str = Field("General", min_length=1, max_length=100)
    is_enabled: bool = True
    is_protected: bool = False

    @field_validator('role')
    @classmethod
    def role_known(cls, v: str) -> str:
        return _check_role(v)

    @field_validator('permission_key')
    @classmethod
    def key_format(cls, v: str) -> str:
        return _check_key(v)


class GlobalPermissionResponse(BaseModel):
    id: str
    role: str
    permission_key: str
    permission_label: str
    permission_category: str
    is_enabled: bool
    is_protected: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class GlobalPermissionUpdate(BaseModel):
    permission_id: str
    is_enabled: bool


class BulkUpdateRequest(BaseModel):
    """Schema for bulk-updating global defaults."""
    updates: List[GlobalPermissionUpdate] = Field(..., min_length=1)


class UpdateResultResponse(BaseModel):
    id: str
    success: bool
    error: Optional[str] = None
    role: Optional[str] = None
    permission_key: Optional[str] = None
    previous_value: Optional[bool] = None
    new_value: Optional[bool] = None

    model_config = ConfigDict(from_attributes=True)


class BulkUpdateResponse(BaseModel):
    results: List[UpdateResultResponse]
    succeeded: int
    failed: int


# ============================================================================
# Plan presets
# ============================================================================

class PlanPresetResponse(BaseModel):
    id: str
    plan_name: str
    role: str
    permission_key: str
    is_enabled: bool
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PlanPresetUpsert(BaseModel):
    presets: List[PermissionRow] = Field(..., min_length=1)


class PlanResetResponse(BaseModel):
    plan: str
    presets_created: int


# ============================================================================
# Organization settings and overrides
# ============================================================================

class OrgSettingsResponse(BaseModel):
    organization_id: str
    use_global_permissions: bool
    override_plan_permissions: bool

    model_config = ConfigDict(from_attributes=True)


class OrgSettingsUpdate(BaseModel):
    use_global_permissions: Optional[bool] = None
    override_plan_permissions: Optional[bool] = None


class OrgOverrideResponse(BaseModel):
    id: str
    organization_id: str
    role: str
    permission_key: str
    is_enabled: bool
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OrgOverrideUpsert(BaseModel):
    overrides: List[PermissionRow] = Field(..., min_length=1)


# ============================================================================
# Effective permissions and access checks
# ============================================================================

class EffectivePermissionsResponse(BaseModel):
    """Resolved permission map for one role, as consumed by UI hooks."""
    organization_id: str
    role: str
    plan: str
    use_global_permissions: bool
    override_plan_permissions: bool
    permissions: Dict[str, bool]
    sources: Dict[str, str]
    enabled_modules: List[str]


class AccessCheckRequest(BaseModel):
    """Either a permission key or a module/action pair, optionally with a plan feature."""
    organization_id: str
    permission_key: Optional[str] = None
    module: Optional[str] = Field(None, max_length=50)
    action: str = Field("view", max_length=50)
    feature: Optional[str] = Field(None, max_length=50)
    is_impersonating: bool = False


class AccessDecisionResponse(BaseModel):
    has_access: bool
    is_super_admin: bool
    is_impersonating: bool
    org_role: Optional[str] = None
    plan: Optional[str] = None
    permission_key: Optional[str] = None
    blocked_by_plan: bool
    blocked_by_role: bool
    required_plan: Optional[str] = None
    message: Optional[str] = None


# ============================================================================
# Cache
# ============================================================================

class CacheInvalidateRequest(BaseModel):
    organization_id: Optional[str] = None
    role: Optional[str] = None


class CacheInvalidateResponse(BaseModel):
    removed: int


class CacheStatsResponse(BaseModel):
    size: int
    hits: int
    misses: int
    ttl_seconds: float


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    user_id: Optional[str]
    actor_role: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    organization_id: Optional[str]
    details: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int
