import pytest

from app.features.permissions.constants import (
    DEFAULT_ROLE_GRANTS,
    MENU_KEYS,
    PROTECTED_OWNER_PERMISSIONS,
    SUB_MENU_PARENTS,
    alias_keys,
    default_role_matrix,
    derive_plan_preset,
    is_canonical_key,
    is_valid_permission_key,
    minimum_plan_for_feature,
    module_aliases,
    normalize_module_name,
    parse_permission_key,
    plan_has_feature,
)
from app.features.permissions.exceptions import InvalidPermissionKeyError


@pytest.mark.parametrize("key", ["invoices.view", "team_members.view", "dashboard.access", "a1.b2"])
def test_valid_permission_keys(key):
    assert is_valid_permission_key(key)


@pytest.mark.parametrize("key", ["", "invoices", "Invoices.view", "invoices.view.extra", "invoices-view", ".view", None])
def test_invalid_permission_keys(key):
    assert not is_valid_permission_key(key)
    with pytest.raises(InvalidPermissionKeyError):
        parse_permission_key(key)


def test_parse_permission_key_splits_module_and_action():
    key = parse_permission_key("expenses.manage")
    assert key.module == "expenses"
    assert key.action == "manage"


def test_module_aliases_resolve_both_directions():
    assert normalize_module_name("delivery_challans") == "challan"
    assert module_aliases("delivery_challans") == ["challan", "delivery_challans"]
    assert module_aliases("challan") == ["challan", "delivery_challans"]
    assert module_aliases("widgets") == ["widgets"]


def test_alias_keys_put_canonical_spelling_first():
    assert alias_keys("delivery_challans.view") == ["challan.view", "delivery_challans.view"]
    assert alias_keys("sales.invoices") == ["sales.invoices"]
    assert is_canonical_key("challan.view")
    assert not is_canonical_key("delivery_challans.view")


def test_plan_features_are_cumulative():
    assert not plan_has_feature("free", "reports")
    assert plan_has_feature("basic", "reports")
    assert plan_has_feature("enterprise", "reports")
    assert not plan_has_feature("pro", "api_access")
    assert plan_has_feature(None, "multi_user")


def test_minimum_plan_for_feature():
    assert minimum_plan_for_feature("multi_user") == "free"
    assert minimum_plan_for_feature("reports") == "basic"
    assert minimum_plan_for_feature("analytics") == "pro"
    assert minimum_plan_for_feature("white_label") == "enterprise"
    assert minimum_plan_for_feature("unknown_feature") == "enterprise"


def test_menu_tree_covers_every_sub_menu():
    assert MENU_KEYS[0] == "dashboard.access"
    assert len(MENU_KEYS) == 6
    assert SUB_MENU_PARENTS["sales.invoices"] == "sales_billing.access"
    assert SUB_MENU_PARENTS["hr.payroll"] == "hr_workforce.access"
    assert SUB_MENU_PARENTS["settings.billing"] == "settings.access"
    assert len(SUB_MENU_PARENTS) == 23


def test_default_matrix_gives_owner_everything_and_protects_core_keys():
    rows = default_role_matrix()
    owner_rows = [r for r in rows if r.role == "owner"]
    assert owner_rows and all(r.is_enabled for r in owner_rows)
    assert {r.key for r in owner_rows if r.is_protected} == PROTECTED_OWNER_PERMISSIONS
    assert not any(r.is_protected for r in rows if r.role != "owner")


def test_default_matrix_seeds_menus_sub_menus_and_modules():
    owner_keys = {r.key for r in default_role_matrix() if r.role == "owner"}
    assert set(MENU_KEYS) <= owner_keys
    assert set(SUB_MENU_PARENTS) <= owner_keys
    assert {"invoices.view", "invoices.manage", "payments.delete", "settings.manage"} <= owner_keys
    # Every grant names a seeded key
    for grants in DEFAULT_ROLE_GRANTS.values():
        assert grants <= owner_keys


def test_default_matrix_role_grants():
    def enabled(role):
        return {r.key for r in default_role_matrix() if r.role == role and r.is_enabled}

    manager, accounts, staff = enabled("manager"), enabled("accounts"), enabled("staff")
    assert "hr.payroll" not in manager
    assert "settings.role_management" not in manager
    assert "settings.team_members" in manager
    assert "settings.access" not in accounts
    assert "hr.payroll" in accounts
    assert "payments.delete" not in accounts
    assert "expenses.access" not in staff
    assert {"sales.invoices", "invoices.view", "invoices.manage"} <= staff
    assert not any(key.startswith("payments.") for key in staff)


def test_derive_plan_preset_follows_plan_restrictions():
    assert derive_plan_preset("free", "manager", "reports.access", True) is False
    assert derive_plan_preset("free", "owner", "hr.payroll", True) is False
    assert derive_plan_preset("basic", "owner", "reports.access", True) is True
    assert derive_plan_preset("basic", "owner", "settings.white_label", True) is False
    assert derive_plan_preset("pro", "owner", "settings.white_label", True) is True
    assert derive_plan_preset("pro", "owner", "settings.platform_admin", True) is False
    assert derive_plan_preset("enterprise", "owner", "settings.platform_admin", True) is True


def test_derive_plan_preset_role_specific_restriction():
    assert derive_plan_preset("basic", "staff", "hr.performance", True) is False
    assert derive_plan_preset("basic", "accounts", "hr.performance", True) is False
    assert derive_plan_preset("basic", "manager", "hr.performance", True) is True
    assert derive_plan_preset("pro", "staff", "hr.performance", True) is True


def test_derive_plan_preset_never_enables():
    assert derive_plan_preset("enterprise", "staff", "salary.view", False) is False
