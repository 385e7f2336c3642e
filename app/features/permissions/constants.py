"""
Roles, plans, permission keys and the default capability matrix.

Permission keys have the form ``module.action``. The same keys are used by all
three permission sources (global defaults, plan presets and organization
overrides) so that a lookup is a plain dictionary access.

The default matrix has three kinds of keys:

- menu keys (``sales_billing.access``) gating a whole sidebar section
- sub-menu keys (``sales.invoices``) gating one entry inside a section
- module keys (``invoices.view``, ``invoices.manage``) used by server checks
"""
import enum
import re
from typing import Dict, List, NamedTuple, Optional, Tuple

from app.features.permissions.exceptions import InvalidPermissionKeyError


class OrgRole(str, enum.Enum):
    OWNER = "owner"
    MANAGER = "manager"
    ACCOUNTS = "accounts"
    STAFF = "staff"


class Plan(str, enum.Enum):
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class SubscriptionStatus(str, enum.Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"


class PermissionSource(str, enum.Enum):
    ORGANIZATION = "organization"
    PLAN = "plan"
    GLOBAL = "global"


SUPER_ADMIN_ROLE = "super_admin"

ORG_ROLES: List[str] = [r.value for r in OrgRole]

# Ascending order; used to classify plan changes as upgrades or downgrades
PLAN_ORDER: List[str] = [p.value for p in Plan]

DEFAULT_PLAN = Plan.FREE.value


# ============================================================================
# Permission keys
# ============================================================================

_KEY_PART = r"[a-z0-9_]+"
PERMISSION_KEY_PATTERN = re.compile(rf"^{_KEY_PART}\.{_KEY_PART}$")


class PermissionKey(NamedTuple):
    module: str
    action: str


def parse_permission_key(key: str) -> PermissionKey:
    """
    Split ``module.action`` into its parts.

    Raises:
        InvalidPermissionKeyError: if the key is not exactly two lowercase
            identifiers joined by a single dot
    """
    if not isinstance(key, str) or not PERMISSION_KEY_PATTERN.match(key):
        raise InvalidPermissionKeyError(key)
    module, action = key.split(".")
    return PermissionKey(module, action)


def is_valid_permission_key(key: str) -> bool:
    return isinstance(key, str) and PERMISSION_KEY_PATTERN.match(key) is not None


# ============================================================================
# Module aliases
# ============================================================================

MODULE_ACTIONS = ("view", "manage", "create", "edit", "delete")

# Actions still allowed while a subscription has lapsed
READ_ACTIONS = frozenset({"view", "access"})

# Canonical module name -> names the same module is stored under
MODULE_NAME_ALIASES: Dict[str, List[str]] = {
    "dashboard": ["dashboard"],
    "invoices": ["invoices"],
    "payments": ["payments"],
    "quotations": ["quotations"],
    "price_calculation": ["price_calculation", "price_calculations"],
    "challan": ["challan", "delivery_challans"],
    "customers": ["customers"],
    "vendors": ["vendors"],
    "expenses": ["expenses"],
    "employees": ["employees"],
    "attendance": ["attendance"],
    "salary": ["salary"],
    "leave": ["leave"],
    "performance": ["performance"],
    "tasks": ["tasks"],
    "reports": ["reports"],
    "team": ["team", "team_members"],
    "settings": ["settings"],
}

_ALIAS_TO_CANONICAL: Dict[str, str] = {
    alias: canonical
    for canonical, aliases in MODULE_NAME_ALIASES.items()
    for alias in aliases
}


def normalize_module_name(module: str) -> str:
    return _ALIAS_TO_CANONICAL.get(module, module)


def module_aliases(module: str) -> List[str]:
    canonical = normalize_module_name(module)
    return MODULE_NAME_ALIASES.get(canonical, [canonical])


def alias_keys(key: str) -> List[str]:
    """
    Every spelling of a key whose module has aliases.

    ``delivery_challans.view`` -> ``["challan.view", "delivery_challans.view"]``.
    The canonical spelling always comes first.
    """
    module, action = key.split(".")
    return [f"{alias}.{action}" for alias in module_aliases(module)]


def is_canonical_key(key: str) -> bool:
    module = key.split(".")[0]
    return normalize_module_name(module) == module


def module_from_sidebar_key(sidebar_key: str) -> str:
    """``main.invoices`` -> ``invoices``; ``hr.employees`` -> ``employees``."""
    return sidebar_key.split(".")[-1]


# ============================================================================
# Plan features
# ============================================================================

_FREE_FEATURES = ["multi_user", "team_management", "notifications", "delivery_challans", "export_data"]
_BASIC_FEATURES = _FREE_FEATURES + ["reports"]
_PRO_FEATURES = _BASIC_FEATURES + [
    "analytics", "audit_logs", "advanced_invoicing", "bulk_operations", "priority_support",
]
_ENTERPRISE_FEATURES = _PRO_FEATURES + ["api_access", "custom_branding", "white_label"]

PLAN_FEATURES: Dict[str, frozenset] = {
    Plan.FREE.value: frozenset(_FREE_FEATURES),
    Plan.BASIC.value: frozenset(_BASIC_FEATURES),
    Plan.PRO.value: frozenset(_PRO_FEATURES),
    Plan.ENTERPRISE.value: frozenset(_ENTERPRISE_FEATURES),
}


def plan_has_feature(plan: Optional[str], feature: str) -> bool:
    features = PLAN_FEATURES.get(plan or DEFAULT_PLAN, PLAN_FEATURES[DEFAULT_PLAN])
    return feature in features


def minimum_plan_for_feature(feature: str) -> str:
    for plan in PLAN_ORDER:
        if feature in PLAN_FEATURES[plan]:
            return plan
    return Plan.ENTERPRISE.value


# Default member limits applied when a plan is assigned
PLAN_USER_LIMITS: Dict[str, int] = {
    Plan.FREE.value: 2,
    Plan.BASIC.value: 5,
    Plan.PRO.value: 15,
    Plan.ENTERPRISE.value: 999,
}


# ============================================================================
# Default global role matrix
# ============================================================================

class DefaultPermission(NamedTuple):
    key: str
    category: str
    label: str


# Menu key -> (category, menu label, [(sub-menu key, label), ...])
MENU_TREE: Dict[str, Tuple[str, str, List[Tuple[str, str]]]] = {
    "dashboard.access": ("Core", "Dashboard Access", []),
    "sales_billing.access": ("Sales & Billing", "Sales & Billing Menu", [
        ("sales.customers", "Customers"),
        ("sales.invoices", "Invoices"),
        ("sales.quotations", "Quotations"),
        ("sales.delivery_challans", "Delivery Challans"),
        ("sales.price_calculations", "Price Calculations"),
    ]),
    "expenses.access": ("Expenses", "Expenses Menu", [
        ("expenses.vendors", "Vendors"),
        ("expenses.expenses", "Expenses"),
    ]),
    "hr_workforce.access": ("HR & Workforce", "HR & Workforce Menu", [
        ("hr.employees", "Employees"),
        ("hr.attendance", "Attendance"),
        ("hr.leave_management", "Leave Management"),
        ("hr.payroll", "Payroll"),
        ("hr.performance", "Performance"),
        ("hr.tasks", "Tasks"),
    ]),
    "reports.access": ("Reports", "Reports Menu", [
        ("reports.financial", "Financial Reports"),
        ("reports.hr", "HR Reports"),
    ]),
    "settings.access": ("Settings", "Settings Menu", [
        ("settings.role_management", "Role Management"),
        ("settings.organization_settings", "Organization Settings"),
        ("settings.team_members", "Team Members"),
        ("settings.usage_limits", "Usage & Limits"),
        ("settings.notifications", "Notifications"),
        ("settings.white_label", "White-Label"),
        ("settings.billing", "Billing"),
        ("settings.platform_admin", "Platform Admin"),
    ]),
}

MENU_KEYS: Tuple[str, ...] = tuple(MENU_TREE)

# Sub-menu key -> the menu key that must also be enabled
SUB_MENU_PARENTS: Dict[str, str] = {
    sub_key: menu_key
    for menu_key, (_, _, children) in MENU_TREE.items()
    for sub_key, _ in children
}

# Module keys checked by server-side enforcement
MODULE_PERMISSIONS: List[DefaultPermission] = [
    DefaultPermission("dashboard.view", "Main", "View Dashboard"),
    DefaultPermission("invoices.view", "Main", "View Invoices"),
    DefaultPermission("invoices.manage", "Main", "Manage Invoices"),
    DefaultPermission("payments.view", "Main", "View Payments"),
    DefaultPermission("payments.create", "Main", "Create Payments"),
    DefaultPermission("payments.edit", "Main", "Edit Payments"),
    DefaultPermission("payments.delete", "Main", "Delete/Refund Payments"),
    DefaultPermission("payments.manage", "Main", "Manage Payments"),
    DefaultPermission("quotations.view", "Main", "View Quotations"),
    DefaultPermission("quotations.manage", "Main", "Manage Quotations"),
    DefaultPermission("price_calculations.view", "Main", "View Price Calculations"),
    DefaultPermission("delivery_challans.view", "Main", "View Challans"),
    DefaultPermission("delivery_challans.manage", "Main", "Manage Challans"),
    DefaultPermission("customers.view", "Business", "View Customers"),
    DefaultPermission("customers.manage", "Business", "Manage Customers"),
    DefaultPermission("vendors.view", "Business", "View Vendors"),
    DefaultPermission("vendors.manage", "Business", "Manage Vendors"),
    DefaultPermission("expenses.view", "Business", "View Expenses"),
    DefaultPermission("expenses.manage", "Business", "Manage Expenses"),
    DefaultPermission("employees.view", "HR & Operations", "View Employees"),
    DefaultPermission("employees.manage", "HR & Operations", "Manage Employees"),
    DefaultPermission("attendance.view", "HR & Operations", "View Attendance"),
    DefaultPermission("attendance.manage", "HR & Operations", "Manage Attendance"),
    DefaultPermission("salary.view", "HR & Operations", "View Salary"),
    DefaultPermission("salary.manage", "HR & Operations", "Manage Salary"),
    DefaultPermission("leave.view", "HR & Operations", "View Leave"),
    DefaultPermission("leave.manage", "HR & Operations", "Manage Leave"),
    DefaultPermission("performance.view", "HR & Operations", "View Performance"),
    DefaultPermission("performance.manage", "HR & Operations", "Manage Performance"),
    DefaultPermission("tasks.view", "HR & Operations", "View Tasks"),
    DefaultPermission("tasks.manage", "HR & Operations", "Manage Tasks"),
    DefaultPermission("reports.view", "System", "View Reports"),
    DefaultPermission("team_members.view", "System", "View Team"),
    DefaultPermission("team_members.manage", "System", "Manage Team"),
    DefaultPermission("settings.view", "System", "View Settings"),
    DefaultPermission("settings.manage", "System", "Manage Settings"),
]


def _menu_permissions() -> List[DefaultPermission]:
    rows = []
    for menu_key, (category, label, children) in MENU_TREE.items():
        rows.append(DefaultPermission(menu_key, category, label))
        rows.extend(DefaultPermission(sub_key, category, sub_label) for sub_key, sub_label in children)
    return rows


DEFAULT_PERMISSIONS: List[DefaultPermission] = _menu_permissions() + MODULE_PERMISSIONS

# Owner keys that can never be switched off
PROTECTED_OWNER_PERMISSIONS = frozenset({
    "dashboard.access",
    "sales_billing.access",
    "settings.access",
    "sales.invoices",
    "settings.role_management",
    "settings.organization_settings",
    "settings.billing",
    "settings.platform_admin",
    "payments.view",
    "payments.create",
    "payments.edit",
    "payments.delete",
    "payments.manage",
})

_ALL_SALES = {
    "sales.customers", "sales.invoices", "sales.quotations",
    "sales.delivery_challans", "sales.price_calculations",
}

# Keys enabled by default for each non-owner role; owners get everything
DEFAULT_ROLE_GRANTS: Dict[str, frozenset] = {
    OrgRole.MANAGER.value: frozenset({
        *MENU_KEYS,
        *_ALL_SALES,
        "expenses.vendors", "expenses.expenses",
        "hr.employees", "hr.attendance", "hr.leave_management", "hr.performance", "hr.tasks",
        "reports.financial", "reports.hr",
        "settings.team_members", "settings.usage_limits",
        "dashboard.view",
        "invoices.view", "invoices.manage",
        "payments.view", "payments.create", "payments.edit", "payments.delete", "payments.manage",
        "quotations.view", "quotations.manage",
        "price_calculations.view",
        "delivery_challans.view", "delivery_challans.manage",
        "customers.view", "customers.manage",
        "vendors.view", "vendors.manage",
        "expenses.view", "expenses.manage",
        "employees.view", "employees.manage",
        "attendance.view", "attendance.manage",
        "leave.view", "leave.manage",
        "performance.view", "performance.manage",
        "tasks.view", "tasks.manage",
        "reports.view",
        "team_members.view",
        "settings.view",
    }),
    OrgRole.ACCOUNTS.value: frozenset({
        "dashboard.access", "sales_billing.access", "expenses.access",
        "hr_workforce.access", "reports.access",
        *_ALL_SALES,
        "expenses.vendors", "expenses.expenses",
        "hr.attendance", "hr.leave_management", "hr.payroll", "hr.tasks",
        "reports.financial", "reports.hr",
        "settings.usage_limits",
        "dashboard.view",
        "invoices.view", "invoices.manage",
        "payments.view", "payments.create", "payments.edit", "payments.manage",
        "price_calculations.view",
        "delivery_challans.view",
        "customers.view",
        "vendors.view", "vendors.manage",
        "expenses.view", "expenses.manage",
        "employees.view",
        "attendance.view",
        "salary.view",
        "leave.view",
        "tasks.view", "tasks.manage",
    }),
    OrgRole.STAFF.value: frozenset({
        "dashboard.access", "sales_billing.access", "hr_workforce.access",
        *_ALL_SALES,
        "hr.attendance", "hr.leave_management", "hr.tasks",
        "settings.usage_limits",
        "dashboard.view",
        "invoices.view", "invoices.manage",
        "quotations.view", "quotations.manage",
        "price_calculations.view",
        "delivery_challans.view", "delivery_challans.manage",
        "customers.view", "customers.manage",
        "attendance.view",
        "leave.view",
        "tasks.view", "tasks.manage",
    }),
}


class DefaultRolePermission(NamedTuple):
    role: str
    key: str
    category: str
    label: str
    is_enabled: bool
    is_protected: bool


def default_role_matrix() -> List[DefaultRolePermission]:
    """Every (role, key) row of the global defaults, in seeding order."""
    rows = []
    for role in ORG_ROLES:
        for perm in DEFAULT_PERMISSIONS:
            if role == OrgRole.OWNER.value:
                enabled = True
                protected = perm.key in PROTECTED_OWNER_PERMISSIONS
            else:
                enabled = perm.key in DEFAULT_ROLE_GRANTS[role]
                protected = False
            rows.append(DefaultRolePermission(role, perm.key, perm.category, perm.label, enabled, protected))
    return rows


# ============================================================================
# Plan preset derivation
# ============================================================================

# Keys each plan switches off for every role
PLAN_RESTRICTED_KEYS: Dict[str, frozenset] = {
    Plan.FREE.value: frozenset({
        "reports.access", "reports.financial", "reports.hr",
        "hr.performance", "hr.payroll",
        "settings.white_label", "settings.platform_admin",
    }),
    Plan.BASIC.value: frozenset({
        "settings.white_label", "settings.platform_admin",
    }),
    Plan.PRO.value: frozenset({
        "settings.platform_admin",
    }),
    Plan.ENTERPRISE.value: frozenset(),
}

# Keys a plan switches off for some roles only
PLAN_ROLE_RESTRICTED_KEYS: Dict[str, Dict[str, frozenset]] = {
    Plan.BASIC.value: {
        "hr.performance": frozenset({OrgRole.STAFF.value, OrgRole.ACCOUNTS.value}),
    },
}


def derive_plan_preset(plan: str, role: str, key: str, global_enabled: bool) -> bool:
    """Value a plan preset takes when generated from a global default."""
    if key in PLAN_RESTRICTED_KEYS.get(plan, frozenset()):
        return False
    if role in PLAN_ROLE_RESTRICTED_KEYS.get(plan, {}).get(key, frozenset()):
        return False
    return global_enabled
