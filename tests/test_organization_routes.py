from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from app.features.organizations.models import OrganizationMember, Subscription
from app.features.permissions.cache import permission_cache
from app.features.permissions.models import AuditLog

from conftest import as_user


async def test_create_organization(client, db_session, world):
    response = await client.post(
        "/organizations/",
        json={"name": "Globex", "owner_id": world["outsider"], "plan": "basic"},
        headers=as_user(world["super_admin"]),
    )
    assert response.status_code == 201
    body = response.json()
    assert body["owner_id"] == world["outsider"]
    assert body["plan"] == "basic"
    assert body["member_count"] == 1
    assert body["subscription"]["status"] == "trial"
    assert body["subscription"]["user_limit"] == 5

    role = await client.get(f"/organizations/{body['id']}/role", headers=as_user(world["outsider"]))
    assert role.json()["org_role"] == "owner"


async def test_create_organization_requires_super_admin(client, world):
    response = await client.post("/organizations/", json={"name": "Globex"}, headers=as_user(world["owner"]))
    assert response.status_code == 403


async def test_create_organization_rejects_unknown_plan(client, world):
    response = await client.post(
        "/organizations/", json={"name": "Globex", "plan": "platinum"}, headers=as_user(world["super_admin"])
    )
    assert response.status_code == 400
    assert "plan" in response.json()


async def test_get_organization_members_only(client, world):
    response = await client.get(f"/organizations/{world['org']}", headers=as_user(world["staff"]))
    assert response.status_code == 200
    assert response.json()["member_count"] == 4
    assert response.json()["plan"] == "pro"

    response = await client.get(f"/organizations/{world['org']}", headers=as_user(world["outsider"]))
    assert response.status_code == 403

    response = await client.get("/organizations/missing", headers=as_user(world["super_admin"]))
    assert response.status_code == 404


async def test_role_with_impersonation(client, world):
    url = f"/organizations/{world['org']}/role"
    response = await client.get(url, params={"impersonate": True}, headers=as_user(world["super_admin"]))
    body = response.json()
    assert body["is_impersonating"] is True
    assert body["effective_role"] == "owner"

    response = await client.get(
        "/organizations/missing/role", params={"impersonate": True}, headers=as_user(world["super_admin"])
    )
    assert response.status_code == 404


async def test_add_member_requires_permission(client, world):
    url = f"/organizations/{world['org']}/members"
    payload = {"user_id": world["outsider"], "role": "staff"}

    response = await client.post(url, json=payload, headers=as_user(world["staff"]))
    assert response.status_code == 403

    response = await client.post(url, json=payload, headers=as_user(world["owner"]))
    assert response.status_code == 201
    assert response.json()["role"] == "staff"

    response = await client.post(url, json=payload, headers=as_user(world["owner"]))
    assert response.status_code == 409


async def test_manager_manages_team_but_not_roles(client, world):
    url = f"/organizations/{world['org']}/members"
    payload = {"user_id": world["outsider"], "role": "staff"}

    response = await client.post(url, json=payload, headers=as_user(world["manager"]))
    assert response.status_code == 201

    response = await client.patch(
        f"{url}/{world['outsider']}", json={"role": "accounts"}, headers=as_user(world["manager"])
    )
    assert response.status_code == 403


async def test_add_member_cannot_grant_owner(client, world):
    response = await client.post(
        f"/organizations/{world['org']}/members",
        json={"user_id": world["outsider"], "role": "owner"},
        headers=as_user(world["owner"]),
    )
    assert response.status_code == 400


async def test_add_member_respects_user_limit(client, db_session, world):
    subscription = (await db_session.execute(
        select(Subscription).where(Subscription.organization_id == world["org"])
    )).scalar_one()
    subscription.user_limit = 4
    await db_session.commit()

    response = await client.post(
        f"/organizations/{world['org']}/members",
        json={"user_id": world["outsider"]},
        headers=as_user(world["owner"]),
    )
    assert response.status_code == 403
    assert "limit" in response.json()["detail"]


async def test_change_member_role(client, db_session, world):
    url = f"/organizations/{world['org']}/members"

    response = await client.patch(f"{url}/{world['staff']}", json={"role": "accounts"}, headers=as_user(world["manager"]))
    assert response.status_code == 403

    response = await client.patch(f"{url}/{world['staff']}", json={"role": "accounts"}, headers=as_user(world["owner"]))
    assert response.status_code == 200
    assert response.json()["role"] == "accounts"

    response = await client.patch(f"{url}/{world['owner']}", json={"role": "manager"}, headers=as_user(world["owner"]))
    assert response.status_code == 400

    response = await client.patch(f"{url}/{world['outsider']}", json={"role": "staff"}, headers=as_user(world["owner"]))
    assert response.status_code == 404

    role = (await db_session.execute(
        select(OrganizationMember.role).where(OrganizationMember.user_id == world["staff"])
    )).scalar_one()
    assert role == "accounts"


async def test_change_plan(client, db_session, world):
    url = f"/organizations/{world['org']}/subscription"
    admin = as_user(world["super_admin"])
    await client.get(f"/permissions/organizations/{world['org']}/effective", headers=as_user(world["owner"]))
    assert permission_cache.stats()["size"] == 1

    response = await client.put(url, json={"plan": "pro"}, headers=admin)
    assert response.json()["change_type"] == "no_change"

    response = await client.put(url, json={"plan": "basic"}, headers=admin)
    assert response.status_code == 200
    body = response.json()
    assert body["change_type"] == "downgrade"
    assert body["previous_plan"] == "pro"
    assert body["subscription"]["plan"] == "basic"
    assert body["subscription"]["user_limit"] == 5
    assert permission_cache.stats()["size"] == 0

    response = await client.get(f"/permissions/organizations/{world['org']}/effective", headers=as_user(world["owner"]))
    assert response.json()["plan"] == "basic"
    assert response.json()["permissions"]["settings.white_label"] is False

    entry = (await db_session.execute(
        select(AuditLog).where(AuditLog.resource_type == "subscription")
    )).scalar_one()
    assert entry.details["change_type"] == "downgrade"
    assert entry.details["before"]["plan"] == "pro"


async def test_change_plan_converts_expired_trial(client, db_session, world):
    subscription = (await db_session.execute(
        select(Subscription).where(Subscription.organization_id == world["org"])
    )).scalar_one()
    subscription.status = "trial"
    subscription.trial_ends_at = datetime.now(timezone.utc) - timedelta(days=1)
    await db_session.commit()

    response = await client.put(
        f"/organizations/{world['org']}/subscription",
        json={"plan": "enterprise"},
        headers=as_user(world["super_admin"]),
    )
    body = response.json()
    assert body["change_type"] == "conversion"
    assert body["subscription"]["status"] == "active"


async def test_change_plan_requires_super_admin(client, world):
    response = await client.put(
        f"/organizations/{world['org']}/subscription", json={"plan": "enterprise"}, headers=as_user(world["owner"])
    )
    assert response.status_code == 403


async def test_me_lists_memberships(client, world):
    response = await client.get("/users/me", headers=as_user(world["manager"]))
    assert response.status_code == 200
    body = response.json()
    assert body["system_role"] is None
    assert body["memberships"] == [{"organization_id": world["org"], "role": "manager"}]

    response = await client.get("/users/me", headers=as_user(world["super_admin"]))
    assert response.json()["system_role"] == "super_admin"
