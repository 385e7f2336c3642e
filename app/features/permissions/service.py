"""
Write side of the permission layers.

Every edit here validates keys, refuses to disable protected owner
permissions, and invalidates the permission cache for whatever it touched.
Generated plan presets are the exception: a plan's tier restrictions apply
to every row, protected ones included.
Callers own the transaction: nothing here commits.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions.cache import PermissionCache, permission_cache
from app.features.permissions.constants import (
    PLAN_ORDER,
    default_role_matrix,
    derive_plan_preset,
    parse_permission_key,
)
from app.features.permissions.exceptions import (
    CustomPermissionsDisabledError,
    PermissionConfigError,
    ProtectedPermissionError,
)
from app.features.permissions.models import (
    GlobalRolePermission,
    OrgPermissionSettings,
    OrgSpecificPermission,
    PlanPermissionPreset,
)
from app.utils import get_logger


log = get_logger(__name__)


@dataclass
class UpdateResult:
    id: str
    success: bool
    error: Optional[str] = None
    role: Optional[str] = None
    permission_key: Optional[str] = None
    previous_value: Optional[bool] = None
    new_value: Optional[bool] = None


async def protected_keys(db: AsyncSession, role: str) -> Set[str]:
    result = await db.execute(
        select(GlobalRolePermission.permission_key).where(
            GlobalRolePermission.role == role,
            GlobalRolePermission.is_protected.is_(True),
        )
    )
    return set(result.scalars().all())


async def _guard_protected(db: AsyncSession, role: str, key: str, is_enabled: bool) -> None:
    if not is_enabled and key in await protected_keys(db, role):
        log.warning("Refused to disable protected permission %s for role %s", key, role)
        raise ProtectedPermissionError(role, key)


def _dedupe(rows: Iterable[tuple]) -> List[tuple]:
    # Last value wins for a repeated (role, key); pending rows are not visible to selects
    latest = {}
    for role, permission_key, is_enabled in rows:
        latest[(role, permission_key)] = (role, permission_key, is_enabled)
    return list(latest.values())


# ============================================================================
# Global defaults
# ============================================================================

async def create_global_permission(
    db: AsyncSession,
    role: str,
    permission_key: str,
    permission_label: str,
    permission_category: str = "General",
    is_enabled: bool = True,
    is_protected: bool = False,
    cache: PermissionCache = permission_cache,
) -> GlobalRolePermission:
    parse_permission_key(permission_key)
    row = GlobalRolePermission(
        role=role,
        permission_key=permission_key,
        permission_label=permission_label,
        permission_category=permission_category,
        is_enabled=is_enabled,
        is_protected=is_protected,
    )
    db.add(row)
    await db.flush()
    cache.invalidate()
    return row


async def bulk_update_global_permissions(
    db: AsyncSession,
    updates: Iterable[tuple],
    cache: PermissionCache = permission_cache,
) -> List[UpdateResult]:
    """
    Apply ``(permission_id, is_enabled)`` pairs one by one.

    A failing item does not stop the others; each gets its own result.
    """
    results: List[UpdateResult] = []
    changed = False
    for permission_id, is_enabled in updates:
        row = await db.get(GlobalRolePermission, permission_id)
        if row is None:
            results.append(UpdateResult(id=permission_id, success=False, error="Permission not found"))
            continue
        if row.is_protected and row.is_enabled and not is_enabled:
            log.warning("Refused to disable protected permission %s for role %s", row.permission_key, row.role)
            results.append(UpdateResult(
                id=permission_id,
                success=False,
                error="Cannot disable protected permission",
                role=row.role,
                permission_key=row.permission_key,
            ))
            continue
        previous = row.is_enabled
        row.is_enabled = is_enabled
        changed = True
        results.append(UpdateResult(
            id=permission_id,
            success=True,
            role=row.role,
            permission_key=row.permission_key,
            previous_value=previous,
            new_value=is_enabled,
        ))

    if changed:
        await db.flush()
        cache.invalidate()
    return results


# ============================================================================
# Plan presets
# ============================================================================

def _check_plan(plan: str) -> None:
    if plan not in PLAN_ORDER:
        raise PermissionConfigError(f"Unknown plan {plan!r}")


async def upsert_plan_presets(
    db: AsyncSession,
    plan: str,
    rows: Iterable[tuple],
    cache: PermissionCache = permission_cache,
) -> List[PlanPermissionPreset]:
    """Insert or update ``(role, permission_key, is_enabled)`` rows for a plan."""
    _check_plan(plan)
    saved = []
    for role, permission_key, is_enabled in _dedupe(rows):
        parse_permission_key(permission_key)
        await _guard_protected(db, role, permission_key, is_enabled)
        result = await db.execute(
            select(PlanPermissionPreset).where(
                PlanPermissionPreset.plan_name == plan,
                PlanPermissionPreset.role == role,
                PlanPermissionPreset.permission_key == permission_key,
            )
        )
        preset = result.scalar_one_or_none()
        if preset is None:
            preset = PlanPermissionPreset(
                plan_name=plan, role=role, permission_key=permission_key, is_enabled=is_enabled
            )
            db.add(preset)
        else:
            preset.is_enabled = is_enabled
        saved.append(preset)

    await db.flush()
    cache.invalidate()
    return saved


async def reset_plan_presets(
    db: AsyncSession,
    plan: str,
    cache: PermissionCache = permission_cache,
) -> int:
    """Regenerate a plan's presets from the current global defaults."""
    _check_plan(plan)
    await db.execute(delete(PlanPermissionPreset).where(PlanPermissionPreset.plan_name == plan))

    result = await db.execute(select(GlobalRolePermission))
    count = 0
    for row in result.scalars().all():
        enabled = derive_plan_preset(plan, row.role, row.permission_key, row.is_enabled)
        db.add(PlanPermissionPreset(
            plan_name=plan,
            role=row.role,
            permission_key=row.permission_key,
            is_enabled=enabled,
        ))
        count += 1

    await db.flush()
    cache.invalidate()
    log.info("Regenerated %d presets for plan %s", count, plan)
    return count


# ============================================================================
# Organization settings and overrides
# ============================================================================

async def get_or_create_settings(db: AsyncSession, organization_id: str) -> OrgPermissionSettings:
    result = await db.execute(
        select(OrgPermissionSettings).where(OrgPermissionSettings.organization_id == organization_id)
    )
    settings = result.scalar_one_or_none()
    if settings is None:
        settings = OrgPermissionSettings(
            organization_id=organization_id,
            use_global_permissions=True,
            override_plan_permissions=False,
        )
        db.add(settings)
        await db.flush()
    return settings


async def update_settings(
    db: AsyncSession,
    organization_id: str,
    use_global_permissions: Optional[bool] = None,
    override_plan_permissions: Optional[bool] = None,
    cache: PermissionCache = permission_cache,
) -> OrgPermissionSettings:
    settings = await get_or_create_settings(db, organization_id)
    if use_global_permissions is not None:
        settings.use_global_permissions = use_global_permissions
    if override_plan_permissions is not None:
        settings.override_plan_permissions = override_plan_permissions
    await db.flush()
    cache.invalidate(organization_id=organization_id)
    return settings


async def upsert_org_overrides(
    db: AsyncSession,
    organization_id: str,
    rows: Iterable[tuple],
    cache: PermissionCache = permission_cache,
) -> List[OrgSpecificPermission]:
    """
    Insert or update ``(role, permission_key, is_enabled)`` overrides.

    Raises:
        CustomPermissionsDisabledError: the organization still uses global permissions
        ProtectedPermissionError: a row would disable a protected owner permission
    """
    settings = await get_or_create_settings(db, organization_id)
    if settings.use_global_permissions:
        raise CustomPermissionsDisabledError(organization_id)

    saved = []
    for role, permission_key, is_enabled in _dedupe(rows):
        parse_permission_key(permission_key)
        await _guard_protected(db, role, permission_key, is_enabled)
        result = await db.execute(
            select(OrgSpecificPermission).where(
                OrgSpecificPermission.organization_id == organization_id,
                OrgSpecificPermission.role == role,
                OrgSpecificPermission.permission_key == permission_key,
            )
        )
        override = result.scalar_one_or_none()
        if override is None:
            override = OrgSpecificPermission(
                organization_id=organization_id,
                role=role,
                permission_key=permission_key,
                is_enabled=is_enabled,
            )
            db.add(override)
        else:
            override.is_enabled = is_enabled
        saved.append(override)

    await db.flush()
    cache.invalidate(organization_id=organization_id)
    return saved


async def delete_org_override(
    db: AsyncSession,
    organization_id: str,
    role: str,
    permission_key: str,
    cache: PermissionCache = permission_cache,
) -> bool:
    result = await db.execute(
        delete(OrgSpecificPermission).where(
            OrgSpecificPermission.organization_id == organization_id,
            OrgSpecificPermission.role == role,
            OrgSpecificPermission.permission_key == permission_key,
        )
    )
    cache.invalidate(organization_id=organization_id, role=role)
    return result.rowcount > 0


# ============================================================================
# Seeding
# ============================================================================

async def seed_global_defaults(db: AsyncSession) -> int:
    """Insert missing default (role, key) rows; existing rows keep their values."""
    result = await db.execute(select(GlobalRolePermission.role, GlobalRolePermission.permission_key))
    existing = {(role, key) for role, key in result.all()}

    created = 0
    for row in default_role_matrix():
        if (row.role, row.key) in existing:
            continue
        db.add(GlobalRolePermission(
            role=row.role,
            permission_key=row.key,
            permission_category=row.category,
            permission_label=row.label,
            is_enabled=row.is_enabled,
            is_protected=row.is_protected,
        ))
        created += 1
    await db.flush()
    return created


async def seed_plan_presets(db: AsyncSession) -> Dict[str, int]:
    """Generate presets for every plan that has none yet."""
    counts = {}
    for plan in PLAN_ORDER:
        result = await db.execute(
            select(PlanPermissionPreset.id).where(PlanPermissionPreset.plan_name == plan).limit(1)
        )
        if result.first() is not None:
            counts[plan] = 0
            continue
        counts[plan] = await reset_plan_presets(db, plan)
    return counts
