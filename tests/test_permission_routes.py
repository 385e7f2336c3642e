from sqlalchemy import select

from app.features.permissions.cache import permission_cache
from app.features.permissions.models import AuditLog, GlobalRolePermission

from conftest import as_user


async def _global_id(db, role, key):
    result = await db.execute(
        select(GlobalRolePermission.id).where(
            GlobalRolePermission.role == role,
            GlobalRolePermission.permission_key == key,
        )
    )
    return result.scalar_one()


async def test_list_global_permissions_by_role(client, world):
    response = await client.get("/permissions/global", params={"role": "staff"}, headers=as_user(world["staff"]))
    assert response.status_code == 200
    rows = response.json()
    assert rows and all(row["role"] == "staff" for row in rows)


async def test_create_global_permission_requires_super_admin(client, world):
    payload = {"role": "staff", "permission_key": "assets.view", "permission_label": "View Assets"}

    response = await client.post("/permissions/global", json=payload, headers=as_user(world["owner"]))
    assert response.status_code == 403

    response = await client.post("/permissions/global", json=payload, headers=as_user(world["super_admin"]))
    assert response.status_code == 201
    assert response.json()["permission_category"] == "General"

    response = await client.post("/permissions/global", json=payload, headers=as_user(world["super_admin"]))
    assert response.status_code == 409


async def test_create_global_permission_validates_key(client, world):
    payload = {"role": "staff", "permission_key": "Vendors View", "permission_label": "View Vendors"}
    response = await client.post("/permissions/global", json=payload, headers=as_user(world["super_admin"]))
    assert response.status_code == 400
    assert "permission_key" in response.json()


async def test_bulk_update_partial_failure_is_multi_status(client, db_session, world):
    protected_id = await _global_id(db_session, "owner", "settings.role_management")
    staff_id = await _global_id(db_session, "staff", "expenses.view")

    response = await client.put(
        "/permissions/global",
        json={"updates": [
            {"permission_id": staff_id, "is_enabled": True},
            {"permission_id": protected_id, "is_enabled": False},
        ]},
        headers=as_user(world["super_admin"]),
    )

    assert response.status_code == 207
    body = response.json()
    assert body["succeeded"] == 1
    assert body["failed"] == 1
    assert body["results"][1]["error"] == "Cannot disable protected permission"

    logs = (await db_session.execute(select(AuditLog).where(AuditLog.resource_type == "global_permission"))).scalars().all()
    assert [entry.resource_id for entry in logs] == [staff_id]
    assert logs[0].details["new_value"] is True
    assert logs[0].actor_role == "super_admin"


async def test_bulk_update_all_succeed(client, db_session, world):
    staff_id = await _global_id(db_session, "staff", "expenses.view")
    response = await client.put(
        "/permissions/global",
        json={"updates": [{"permission_id": staff_id, "is_enabled": True}]},
        headers=as_user(world["super_admin"]),
    )
    assert response.status_code == 200
    assert response.json()["failed"] == 0


async def test_plan_presets_roundtrip_and_reset(client, world):
    admin = as_user(world["super_admin"])

    response = await client.put(
        "/permissions/plans/basic",
        json={"presets": [{"role": "staff", "permission_key": "payments.view", "is_enabled": True}]},
        headers=admin,
    )
    assert response.status_code == 200
    assert response.json()[0]["is_enabled"] is True

    response = await client.get("/permissions/plans/basic", params={"role": "staff"}, headers=admin)
    rows = {row["permission_key"]: row["is_enabled"] for row in response.json()}
    assert rows["payments.view"] is True

    response = await client.post("/permissions/plans/basic/reset", headers=admin)
    assert response.status_code == 200
    assert response.json()["presets_created"] > 0

    response = await client.get("/permissions/plans/basic", params={"role": "staff"}, headers=admin)
    rows = {row["permission_key"]: row["is_enabled"] for row in response.json()}
    assert rows["payments.view"] is False


async def test_unknown_plan_is_404(client, world):
    response = await client.get("/permissions/plans/platinum", headers=as_user(world["super_admin"]))
    assert response.status_code == 404


async def test_plan_preset_cannot_disable_protected_owner_key(client, world):
    response = await client.put(
        "/permissions/plans/free",
        json={"presets": [{"role": "owner", "permission_key": "settings.billing", "is_enabled": False}]},
        headers=as_user(world["super_admin"]),
    )
    assert response.status_code == 400
    assert "protected" in response.json()["detail"]


async def test_overrides_need_custom_permissions(client, world):
    admin = as_user(world["super_admin"])
    url = f"/permissions/organizations/{world['org']}"
    override = {"overrides": [{"role": "staff", "permission_key": "expenses.view", "is_enabled": True}]}

    response = await client.put(f"{url}/overrides", json=override, headers=admin)
    assert response.status_code == 409

    response = await client.put(f"{url}/settings", json={"use_global_permissions": False}, headers=admin)
    assert response.status_code == 200
    assert response.json()["use_global_permissions"] is False

    response = await client.put(f"{url}/overrides", json=override, headers=admin)
    assert response.status_code == 200

    response = await client.get(f"{url}/effective", headers=as_user(world["staff"]))
    assert response.status_code == 200
    body = response.json()
    assert body["permissions"]["expenses.view"] is True
    assert body["sources"]["expenses.view"] == "organization"

    response = await client.delete(f"{url}/overrides/staff/expenses.view", headers=admin)
    assert response.status_code == 204

    response = await client.get(f"{url}/effective", headers=as_user(world["staff"]))
    assert response.json()["permissions"]["expenses.view"] is False

    response = await client.delete(f"{url}/overrides/staff/expenses.view", headers=admin)
    assert response.status_code == 404


async def test_settings_visible_to_members_only(client, world):
    url = f"/permissions/organizations/{world['org']}/settings"
    response = await client.get(url, headers=as_user(world["staff"]))
    assert response.status_code == 200
    assert response.json() == {
        "organization_id": world["org"],
        "use_global_permissions": True,
        "override_plan_permissions": False,
    }

    response = await client.get(url, headers=as_user(world["outsider"]))
    assert response.status_code == 403


async def test_effective_permissions_role_visibility(client, world):
    url = f"/permissions/organizations/{world['org']}/effective"

    response = await client.get(url, headers=as_user(world["staff"]))
    assert response.status_code == 200
    body = response.json()
    assert body["role"] == "staff"
    assert body["plan"] == "pro"
    assert body["permissions"]["invoices.view"] is True
    assert "invoices" in body["enabled_modules"]

    response = await client.get(url, params={"role": "manager"}, headers=as_user(world["staff"]))
    assert response.status_code == 403

    response = await client.get(url, params={"role": "manager"}, headers=as_user(world["owner"]))
    assert response.status_code == 200
    assert response.json()["role"] == "manager"

    response = await client.get(url, headers=as_user(world["super_admin"]))
    assert response.json()["role"] == "owner"

    response = await client.get(url, params={"role": "janitor"}, headers=as_user(world["owner"]))
    assert response.status_code == 400


async def test_check_access_allowed_and_denied(client, world):
    payload = {"organization_id": world["org"], "permission_key": "invoices.view"}
    response = await client.post("/permissions/check", json=payload, headers=as_user(world["staff"]))
    assert response.status_code == 200
    assert response.json()["has_access"] is True
    assert response.json()["org_role"] == "staff"

    payload = {"organization_id": world["org"], "module": "salary", "action": "manage"}
    response = await client.post("/permissions/check", json=payload, headers=as_user(world["staff"]))
    assert response.status_code == 403
    body = response.json()
    assert body["has_access"] is False
    assert body["blocked_by_role"] is True
    assert body["permission_key"] == "salary.manage"


async def test_check_access_feature_gate(client, world):
    payload = {"organization_id": world["org"], "feature": "api_access"}
    response = await client.post("/permissions/check", json=payload, headers=as_user(world["owner"]))
    assert response.status_code == 403
    assert response.json()["required_plan"] == "enterprise"


async def test_plan_change_is_visible_after_write(client, world):
    url = f"/permissions/organizations/{world['org']}/effective"
    response = await client.get(url, headers=as_user(world["staff"]))
    assert response.json()["permissions"]["vendors.view"] is False
    assert permission_cache.stats()["size"] == 1

    await client.put(
        "/permissions/plans/pro",
        json={"presets": [{"role": "staff", "permission_key": "vendors.view", "is_enabled": True}]},
        headers=as_user(world["super_admin"]),
    )

    response = await client.get(url, headers=as_user(world["staff"]))
    assert response.json()["permissions"]["vendors.view"] is True


async def test_global_change_is_visible_after_write(client, db_session, world):
    admin = as_user(world["super_admin"])
    url = f"/permissions/organizations/{world['org']}"
    # Plan presets would otherwise shadow the global default
    await client.put(f"{url}/settings", json={"override_plan_permissions": True}, headers=admin)

    response = await client.get(f"{url}/effective", headers=as_user(world["staff"]))
    assert response.json()["permissions"]["vendors.view"] is False

    staff_id = await _global_id(db_session, "staff", "vendors.view")
    await client.put(
        "/permissions/global",
        json={"updates": [{"permission_id": staff_id, "is_enabled": True}]},
        headers=admin,
    )

    response = await client.get(f"{url}/effective", headers=as_user(world["staff"]))
    assert response.json()["permissions"]["vendors.view"] is True
    assert response.json()["sources"]["vendors.view"] == "global"


async def test_cache_endpoints(client, world):
    admin = as_user(world["super_admin"])
    await client.get(f"/permissions/organizations/{world['org']}/effective", headers=as_user(world["staff"]))

    response = await client.get("/permissions/cache/stats", headers=admin)
    assert response.status_code == 200
    assert response.json()["size"] == 1

    response = await client.post("/permissions/cache/invalidate", json={"organization_id": world["org"]}, headers=admin)
    assert response.json() == {"removed": 1}

    response = await client.get("/permissions/cache/stats", headers=as_user(world["owner"]))
    assert response.status_code == 403


async def test_audit_logs_paginated(client, world):
    admin = as_user(world["super_admin"])
    for plan in ("free", "basic", "pro"):
        await client.post(f"/permissions/plans/{plan}/reset", headers=admin)

    response = await client.get("/permissions/audit-logs", params={"limit": 2}, headers=admin)
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 3
    assert body["pages"] == 2
    assert len(body["items"]) == 2

    response = await client.get(
        "/permissions/audit-logs", params={"resource_type": "plan_preset", "skip": 2, "limit": 2}, headers=admin
    )
    assert response.json()["page"] == 2
    assert len(response.json()["items"]) == 1

    response = await client.get("/permissions/audit-logs", headers=as_user(world["owner"]))
    assert response.status_code == 403
