"""
Permission management API routes.

Provides endpoints for the three permission layers, effective permissions,
access checks, the permission cache and audit logs.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError

from app.core import config
from app.core.database.engine import get_db
from app.core.rate_limit import limiter
from app.features.organizations.models import Organization
from app.features.users.dependencies import get_current_user, get_current_super_admin
from app.features.users.models import User
from app.features.permissions import service
from app.features.permissions.access import check_access
from app.features.permissions.cache import permission_cache
from app.features.permissions.constants import ORG_ROLES, PLAN_ORDER, OrgRole
from app.features.permissions.exceptions import CustomPermissionsDisabledError
from app.features.permissions.models import (
    AuditLog,
    GlobalRolePermission,
    OrgSpecificPermission,
    PlanPermissionPreset,
)
from app.features.permissions.resolver import get_layer_settings, resolve
from app.features.permissions.schemas import (
    AccessCheckRequest,
    AccessDecisionResponse,
    AuditLogListResponse,
    AuditLogResponse,
    BulkUpdateRequest,
    BulkUpdateResponse,
    CacheInvalidateRequest,
    CacheInvalidateResponse,
    CacheStatsResponse,
    EffectivePermissionsResponse,
    GlobalPermissionCreate,
    GlobalPermissionResponse,
    OrgOverrideResponse,
    OrgOverrideUpsert,
    OrgSettingsResponse,
    OrgSettingsUpdate,
    PlanPresetResponse,
    PlanPresetUpsert,
    PlanResetResponse,
    UpdateResultResponse,
)
from app.features.permissions.dependencies import (
    create_audit_log,
    require_member_or_super_admin,
)
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


async def _get_organization_or_404(db: AsyncSession, organization_id: str) -> Organization:
    organization = await db.get(Organization, organization_id)
    if not organization:
        raise HTTPException(status_code=404, detail="Organization not found")
    return organization


def _check_plan_or_404(plan: str) -> None:
    if plan not in PLAN_ORDER:
        raise HTTPException(status_code=404, detail=f"Unknown plan '{plan}'")


def _check_role_or_400(role: str) -> None:
    if role not in ORG_ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Role must be one of: {', '.join(ORG_ROLES)}"
        )


# ============================================================================
# Global defaults
# ============================================================================

@router.get("/global", response_model=List[GlobalPermissionResponse])
async def list_global_permissions(
    role: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List the global role defaults, optionally for one role."""
    stmt = select(GlobalRolePermission)
    if role:
        stmt = stmt.where(GlobalRolePermission.role == role)
    stmt = stmt.order_by(
        GlobalRolePermission.role,
        GlobalRolePermission.permission_category,
        GlobalRolePermission.permission_key
    )
    result = await db.execute(stmt)
    return result.scalars().all()


@router.post("/global", response_model=GlobalPermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_global_permission(
    permission: GlobalPermissionCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_super_admin)
):
    """Add a key to the global matrix (super admin only)."""
    try:
        row = await service.create_global_permission(db, **permission.model_dump())
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Permission already exists for this role"
        )

    create_audit_log(
        db,
        current_user,
        action="create",
        resource_type="global_permission",
        resource_id=row.id,
        details=permission.model_dump(),
        request=request,
    )
    await db.commit()
    await db.refresh(row)
    return row


@router.put("/global", response_model=BulkUpdateResponse)
async def bulk_update_global_permissions(
    payload: BulkUpdateRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_super_admin)
):
    """
    Enable or disable global defaults in bulk (super admin only).

    Every item gets its own result. Responds 207 when any item failed.
    """
    results = await service.bulk_update_global_permissions(
        db, [(item.permission_id, item.is_enabled) for item in payload.updates]
    )

    for result in results:
        if not result.success:
            continue
        create_audit_log(
            db,
            current_user,
            action="update",
            resource_type="global_permission",
            resource_id=result.id,
            details={
                "role": result.role,
                "permission_key": result.permission_key,
                "previous_value": result.previous_value,
                "new_value": result.new_value,
            },
            request=request,
        )
    await db.commit()

    failed = sum(1 for r in results if not r.success)
    body = BulkUpdateResponse(
        results=[UpdateResultResponse.model_validate(r) for r in results],
        succeeded=len(results) - failed,
        failed=failed,
    )
    if failed:
        log.info(f"Bulk global update: {failed} of {len(results)} items failed")
        return JSONResponse(status_code=status.HTTP_207_MULTI_STATUS, content=body.model_dump())
    return body


# ============================================================================
# Plan presets
# ============================================================================

@router.get("/plans/{plan}", response_model=List[PlanPresetResponse])
async def list_plan_presets(
    plan: str,
    role: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List presets for a plan, optionally for one role."""
    _check_plan_or_404(plan)
    stmt = select(PlanPermissionPreset).where(PlanPermissionPreset.plan_name == plan)
    if role:
        stmt = stmt.where(PlanPermissionPreset.role == role)
    stmt = stmt.order_by(PlanPermissionPreset.role, PlanPermissionPreset.permission_key)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.put("/plans/{plan}", response_model=List[PlanPresetResponse])
async def upsert_plan_presets(
    plan: str,
    payload: PlanPresetUpsert,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_super_admin)
):
    """Insert or update presets for a plan (super admin only)."""
    _check_plan_or_404(plan)
    rows = [(p.role, p.permission_key, p.is_enabled) for p in payload.presets]
    try:
        presets = await service.upsert_plan_presets(db, plan, rows)
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Concurrent preset update, retry")

    create_audit_log(
        db,
        current_user,
        action="update",
        resource_type="plan_preset",
        resource_id=plan,
        details={"presets": [p.model_dump() for p in payload.presets]},
        request=request,
    )
    await db.commit()
    for preset in presets:
        await db.refresh(preset)
    return presets


@router.post("/plans/{plan}/reset", response_model=PlanResetResponse)
async def reset_plan_presets(
    plan: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_super_admin)
):
    """Regenerate a plan's presets from the global defaults (super admin only)."""
    _check_plan_or_404(plan)
    count = await service.reset_plan_presets(db, plan)
    create_audit_log(
        db,
        current_user,
        action="reset",
        resource_type="plan_preset",
        resource_id=plan,
        details={"presets_created": count},
        request=request,
    )
    await db.commit()
    return PlanResetResponse(plan=plan, presets_created=count)


# ============================================================================
# Organization settings and overrides
# ============================================================================

@router.get("/organizations/{organization_id}/settings", response_model=OrgSettingsResponse)
async def get_org_settings(
    organization_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Which permission layers the organization uses."""
    await _get_organization_or_404(db, organization_id)
    await require_member_or_super_admin(db, current_user, organization_id)
    settings = await get_layer_settings(db, organization_id)
    return OrgSettingsResponse(
        organization_id=organization_id,
        use_global_permissions=settings.use_global_permissions,
        override_plan_permissions=settings.override_plan_permissions,
    )


@router.put("/organizations/{organization_id}/settings", response_model=OrgSettingsResponse)
async def update_org_settings(
    organization_id: str,
    payload: OrgSettingsUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_super_admin)
):
    """Switch an organization between global and custom permissions (super admin only)."""
    await _get_organization_or_404(db, organization_id)
    before = await get_layer_settings(db, organization_id)
    settings = await service.update_settings(db, organization_id, **payload.model_dump())

    create_audit_log(
        db,
        current_user,
        action="update",
        resource_type="org_permission_settings",
        resource_id=organization_id,
        organization_id=organization_id,
        details={
            "before": {
                "use_global_permissions": before.use_global_permissions,
                "override_plan_permissions": before.override_plan_permissions,
            },
            "after": {
                "use_global_permissions": settings.use_global_permissions,
                "override_plan_permissions": settings.override_plan_permissions,
            },
        },
        request=request,
    )
    await db.commit()
    return OrgSettingsResponse(
        organization_id=organization_id,
        use_global_permissions=settings.use_global_permissions,
        override_plan_permissions=settings.override_plan_permissions,
    )


@router.get("/organizations/{organization_id}/overrides", response_model=List[OrgOverrideResponse])
async def list_org_overrides(
    organization_id: str,
    role: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List the organization's stored overrides."""
    await _get_organization_or_404(db, organization_id)
    await require_member_or_super_admin(db, current_user, organization_id)
    stmt = select(OrgSpecificPermission).where(OrgSpecificPermission.organization_id == organization_id)
    if role:
        stmt = stmt.where(OrgSpecificPermission.role == role)
    stmt = stmt.order_by(OrgSpecificPermission.role, OrgSpecificPermission.permission_key)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.put("/organizations/{organization_id}/overrides", response_model=List[OrgOverrideResponse])
async def upsert_org_overrides(
    organization_id: str,
    payload: OrgOverrideUpsert,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_super_admin)
):
    """Insert or update organization overrides (super admin only)."""
    await _get_organization_or_404(db, organization_id)
    rows = [(o.role, o.permission_key, o.is_enabled) for o in payload.overrides]
    try:
        overrides = await service.upsert_org_overrides(db, organization_id, rows)
    except CustomPermissionsDisabledError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Concurrent override update, retry")

    create_audit_log(
        db,
        current_user,
        action="update",
        resource_type="org_permission",
        resource_id=organization_id,
        organization_id=organization_id,
        details={"overrides": [o.model_dump() for o in payload.overrides]},
        request=request,
    )
    await db.commit()
    for override in overrides:
        await db.refresh(override)
    return overrides


@router.delete(
    "/organizations/{organization_id}/overrides/{role}/{permission_key}",
    status_code=status.HTTP_204_NO_CONTENT
)
async def delete_org_override(
    organization_id: str,
    role: str,
    permission_key: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_super_admin)
):
    """Remove one override so the key falls back to plan and global values (super admin only)."""
    deleted = await service.delete_org_override(db, organization_id, role, permission_key)
    if not deleted:
        raise HTTPException(status_code=404, detail="Override not found")

    create_audit_log(
        db,
        current_user,
        action="delete",
        resource_type="org_permission",
        resource_id=f"{role}:{permission_key}",
        organization_id=organization_id,
        request=request,
    )
    await db.commit()


# ============================================================================
# Effective permissions and access checks
# ============================================================================

@router.get("/organizations/{organization_id}/effective", response_model=EffectivePermissionsResponse)
async def get_effective_permissions(
    organization_id: str,
    role: Optional[str] = None,
    force_refresh: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    Resolved permission map for a role, as used by UI hooks.

    Members see their own role. Owners and super admins may ask for any role;
    super admins default to the owner role.
    """
    await _get_organization_or_404(db, organization_id)
    caller_role = await require_member_or_super_admin(db, current_user, organization_id)

    if role is None:
        role = caller_role or OrgRole.OWNER.value
    _check_role_or_400(role)

    if caller_role is not None and role != caller_role and caller_role != OrgRole.OWNER.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to view other roles' permissions"
        )

    effective = await resolve(db, organization_id, role, force_refresh=force_refresh)
    return EffectivePermissionsResponse(
        organization_id=organization_id,
        role=role,
        plan=effective.plan,
        use_global_permissions=effective.settings.use_global_permissions,
        override_plan_permissions=effective.settings.override_plan_permissions,
        permissions=effective.permissions,
        sources={key: source.value for key, source in effective.sources.items()},
        enabled_modules=effective.enabled_modules(),
    )


@router.post("/check", response_model=AccessDecisionResponse)
@limiter.limit(config.ACCESS_CHECK_RATE_LIMIT)
async def check_permission(
    request: Request,
    check_request: AccessCheckRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Check whether the current user may act in an organization. Denials respond 403."""
    decision = await check_access(
        db,
        current_user,
        check_request.organization_id,
        module=check_request.module,
        action=check_request.action,
        feature=check_request.feature,
        permission_key=check_request.permission_key,
        is_impersonating=check_request.is_impersonating,
    )
    if not decision.has_access:
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content=decision.to_dict())
    return AccessDecisionResponse(**decision.to_dict())


# ============================================================================
# Cache
# ============================================================================

@router.post("/cache/invalidate", response_model=CacheInvalidateResponse)
async def invalidate_cache(
    payload: CacheInvalidateRequest,
    current_user: User = Depends(get_current_super_admin)
):
    """Drop cached permission maps (super admin only)."""
    removed = permission_cache.invalidate(organization_id=payload.organization_id, role=payload.role)
    return CacheInvalidateResponse(removed=removed)


@router.get("/cache/stats", response_model=CacheStatsResponse)
async def cache_stats(current_user: User = Depends(get_current_super_admin)):
    """Permission cache counters (super admin only)."""
    return CacheStatsResponse(**permission_cache.stats())


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    skip: int = 0,
    limit: int = 50,
    organization_id: Optional[str] = None,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_super_admin)
):
    """List audit logs with optional filtering (super admin only)."""
    if skip < 0 or limit < 1:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid pagination")

    stmt = select(AuditLog)

    if organization_id:
        stmt = stmt.where(AuditLog.organization_id == organization_id)
    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)

    count_stmt = select(func.count()).select_from(stmt.subquery())
    total = (await db.execute(count_stmt)).scalar() or 0

    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    logs = result.scalars().all()

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=(skip // limit) + 1,
        page_size=limit,
        pages=(total + limit - 1) // limit,
    )
