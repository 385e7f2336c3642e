"""
Permission resolution.

For an (organization, role, plan) triple the effective value of a permission key
is taken from the first layer that defines it:

1. organization-specific override (only when the organization opted out of
   global permissions)
2. plan preset (unless the organization overrides plan presets)
3. global role default

Keys no layer defines are denied.
"""
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.organizations.models import Subscription
from app.features.permissions.cache import PermissionCache, permission_cache
from app.features.permissions.constants import (
    DEFAULT_PLAN,
    MENU_KEYS,
    MODULE_ACTIONS,
    SUB_MENU_PARENTS,
    PermissionSource,
    alias_keys,
    is_canonical_key,
    is_valid_permission_key,
    module_aliases,
    module_from_sidebar_key,
    normalize_module_name,
)
from app.features.permissions.models import (
    GlobalRolePermission,
    OrgPermissionSettings,
    OrgSpecificPermission,
    PlanPermissionPreset,
)
from app.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class LayerSettings:
    use_global_permissions: bool = True
    override_plan_permissions: bool = False

    @classmethod
    def from_row(cls, row: Optional[OrgPermissionSettings]) -> "LayerSettings":
        if row is None:
            return cls()
        return cls(
            use_global_permissions=row.use_global_permissions,
            override_plan_permissions=row.override_plan_permissions,
        )


@dataclass
class EffectivePermissions:
    """The resolved permission map for one role in one organization."""
    organization_id: str
    role: str
    plan: str
    permissions: Dict[str, bool] = field(default_factory=dict)
    sources: Dict[str, PermissionSource] = field(default_factory=dict)
    settings: LayerSettings = field(default_factory=LayerSettings)

    def has_permission(self, key: str) -> bool:
        if not is_valid_permission_key(key):
            return False
        return self.permissions.get(key) is True

    def has_any_permission(self, keys: Iterable[str]) -> bool:
        return any(self.has_permission(key) for key in keys)

    def has_all_permissions(self, keys: Iterable[str]) -> bool:
        return all(self.has_permission(key) for key in keys)

    def has_menu_access(self, menu_key: str) -> bool:
        return menu_key in MENU_KEYS and self.has_permission(menu_key)

    def has_sub_menu_access(self, sub_menu_key: str) -> bool:
        """Both the sub-menu key and its parent menu key must be enabled."""
        menu_key = SUB_MENU_PARENTS.get(sub_menu_key)
        if menu_key is None:
            return False
        return self.has_permission(menu_key) and self.has_permission(sub_menu_key)

    def allows(self, key: str) -> bool:
        """Server-side check of one key; sub-menu keys also need their menu."""
        if key in SUB_MENU_PARENTS:
            return self.has_sub_menu_access(key)
        return self.has_permission(key)

    def has_module_access(self, sidebar_key: str) -> bool:
        """True if any action is enabled for the module behind a sidebar key."""
        module = module_from_sidebar_key(sidebar_key)
        for alias in module_aliases(module):
            for action in MODULE_ACTIONS:
                if self.permissions.get(f"{alias}.{action}") is True:
                    return True
        return False

    def enabled_modules(self) -> List[str]:
        return sorted({
            normalize_module_name(key.split(".")[0])
            for key, enabled in self.permissions.items()
            if enabled
        })

    def source_of(self, key: str) -> Optional[PermissionSource]:
        return self.sources.get(key)


def merge_layers(
    global_defaults: Mapping[str, bool],
    plan_presets: Mapping[str, bool],
    org_overrides: Mapping[str, bool],
    settings: LayerSettings,
) -> Tuple[Dict[str, bool], Dict[str, PermissionSource]]:
    """
    Apply the three layers in increasing precedence.

    Each value is written under every alias of its module, so a later layer
    wins for all spellings of a key. Within one layer the canonical spelling
    wins over an alias.
    """
    permissions: Dict[str, bool] = {}
    sources: Dict[str, PermissionSource] = {}

    layers = [(global_defaults, PermissionSource.GLOBAL)]
    if not settings.override_plan_permissions:
        layers.append((plan_presets, PermissionSource.PLAN))
    if not settings.use_global_permissions:
        layers.append((org_overrides, PermissionSource.ORGANIZATION))

    for layer, source in layers:
        # sorted() is stable: aliases first, canonical spellings last
        for key, enabled in sorted(layer.items(), key=lambda item: is_canonical_key(item[0])):
            if not is_valid_permission_key(key):
                log.warning("Ignoring malformed permission key %r from %s layer", key, source.value)
                continue
            for spelling in alias_keys(key):
                permissions[spelling] = bool(enabled)
                sources[spelling] = source
    return permissions, sources


async def get_layer_settings(db: AsyncSession, organization_id: str) -> LayerSettings:
    result = await db.execute(
        select(OrgPermissionSettings).where(OrgPermissionSettings.organization_id == organization_id)
    )
    return LayerSettings.from_row(result.scalar_one_or_none())


async def get_organization_plan(db: AsyncSession, organization_id: str) -> str:
    result = await db.execute(
        select(Subscription.plan).where(Subscription.organization_id == organization_id)
    )
    return result.scalar_one_or_none() or DEFAULT_PLAN


async def _key_map(db: AsyncSession, stmt) -> Dict[str, bool]:
    result = await db.execute(stmt)
    return {key: enabled for key, enabled in result.all()}


async def load_layers(
    db: AsyncSession,
    organization_id: str,
    role: str,
    plan: str,
    settings: LayerSettings,
) -> Tuple[Dict[str, bool], Dict[str, bool], Dict[str, bool]]:
    """Fetch the rows of each layer the organization actually uses."""
    global_defaults = await _key_map(
        db,
        select(GlobalRolePermission.permission_key, GlobalRolePermission.is_enabled)
        .where(GlobalRolePermission.role == role)
    )

    plan_presets: Dict[str, bool] = {}
    if not settings.override_plan_permissions:
        plan_presets = await _key_map(
            db,
            select(PlanPermissionPreset.permission_key, PlanPermissionPreset.is_enabled)
            .where(
                PlanPermissionPreset.plan_name == plan,
                PlanPermissionPreset.role == role,
            )
        )

    org_overrides: Dict[str, bool] = {}
    if not settings.use_global_permissions:
        org_overrides = await _key_map(
            db,
            select(OrgSpecificPermission.permission_key, OrgSpecificPermission.is_enabled)
            .where(
                OrgSpecificPermission.organization_id == organization_id,
                OrgSpecificPermission.role == role,
            )
        )

    return global_defaults, plan_presets, org_overrides


async def resolve(
    db: AsyncSession,
    organization_id: str,
    role: str,
    plan: Optional[str] = None,
    *,
    force_refresh: bool = False,
    cache: PermissionCache = permission_cache,
) -> EffectivePermissions:
    """
    Resolve the full permission map for a role in an organization.

    Results are cached per (organization, role). ``force_refresh`` skips the
    cached entry and replaces it.
    """
    if plan is None:
        plan = await get_organization_plan(db, organization_id)

    if not force_refresh:
        cached = cache.get(organization_id, role, plan)
        if cached is not None:
            log.debug("Permission cache hit org=%s role=%s", organization_id, role)
            return cached

    settings = await get_layer_settings(db, organization_id)
    global_defaults, plan_presets, org_overrides = await load_layers(
        db, organization_id, role, plan, settings
    )
    permissions, sources = merge_layers(global_defaults, plan_presets, org_overrides, settings)

    effective = EffectivePermissions(
        organization_id=organization_id,
        role=role,
        plan=plan,
        permissions=permissions,
        sources=sources,
        settings=settings,
    )
    cache.set(organization_id, role, plan, effective)

    log.debug(
        "Resolved permissions org=%s role=%s plan=%s global=%d plan_presets=%d overrides=%d",
        organization_id, role, plan, len(global_defaults), len(plan_presets), len(org_overrides),
    )
    return effective


def _pick(values: Mapping[str, bool], key: str) -> Optional[bool]:
    """Value of a key from rows stored under any of its spellings."""
    # The canonical spelling wins, matching merge_layers
    for spelling in alias_keys(key):
        if spelling in values:
            return values[spelling]
    return None


async def resolve_permission(
    db: AsyncSession,
    organization_id: str,
    role: str,
    permission_key: str,
    plan: Optional[str] = None,
) -> bool:
    """
    Resolve a single key straight from the database, bypassing the cache.

    Intended for one-off checks where a stale answer is not acceptable. Gives
    the same answer as ``resolve(...).has_permission(permission_key)``.
    """
    if not is_valid_permission_key(permission_key):
        return False

    spellings = alias_keys(permission_key)
    settings = await get_layer_settings(db, organization_id)

    if not settings.use_global_permissions:
        enabled = _pick(await _key_map(
            db,
            select(OrgSpecificPermission.permission_key, OrgSpecificPermission.is_enabled).where(
                OrgSpecificPermission.organization_id == organization_id,
                OrgSpecificPermission.role == role,
                OrgSpecificPermission.permission_key.in_(spellings),
            )
        ), permission_key)
        if enabled is not None:
            return enabled

    if not settings.override_plan_permissions:
        if plan is None:
            plan = await get_organization_plan(db, organization_id)
        enabled = _pick(await _key_map(
            db,
            select(PlanPermissionPreset.permission_key, PlanPermissionPreset.is_enabled).where(
                PlanPermissionPreset.plan_name == plan,
                PlanPermissionPreset.role == role,
                PlanPermissionPreset.permission_key.in_(spellings),
            )
        ), permission_key)
        if enabled is not None:
            return enabled

    enabled = _pick(await _key_map(
        db,
        select(GlobalRolePermission.permission_key, GlobalRolePermission.is_enabled).where(
            GlobalRolePermission.role == role,
            GlobalRolePermission.permission_key.in_(spellings),
        )
    ), permission_key)
    return enabled is True
