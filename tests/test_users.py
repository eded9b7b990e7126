from propertyhub.models.models import AuditLog


def test_update_own_profile(client, db_session, make_tenant, auth_headers):
    tenant = make_tenant()

    response = client.patch(
        "/users/me",
        json={"first_name": "  Theodore ", "phone": "+1 555 010 0000"},
        headers=auth_headers(tenant),
    )

    assert response.status_code == 200
    assert response.json()["first_name"] == "Theodore"
    assert response.json()["phone"] == "+1 555 010 0000"
    entry = db_session.query(AuditLog).filter(AuditLog.action == "user.profile_update").one()
    assert entry.actor_user_id == tenant.id


def test_provider_only_fields_are_rejected_for_other_roles(client, make_owner, auth_headers):
    response = client.patch("/users/me", json={"company_name": "Acme"}, headers=auth_headers(make_owner()))

    assert response.status_code == 422
    assert "company_name" in response.json()["errors"]


def test_provider_updates_service_types(client, make_provider, auth_headers):
    provider = make_provider()
    headers = auth_headers(provider)

    updated = client.patch("/users/me", json={"service_types": ["HVAC", "cleaning"]}, headers=headers)
    assert updated.status_code == 200
    assert updated.json()["service_types"] == ["hvac", "cleaning"]

    invalid = client.patch("/users/me", json={"service_types": ["roofing"]}, headers=headers)
    assert invalid.status_code == 422
    assert "service_types" in invalid.json()["errors"]


def test_tenant_directory_is_owner_only(client, rented, make_tenant, auth_headers):
    owner, tenant, _apartment = rented
    free = make_tenant()

    everyone = client.get("/users/tenants", headers=auth_headers(owner)).json()
    assert {item["id"] for item in everyone["items"]} == {tenant.id, free.id}

    unassigned = client.get("/users/tenants", params={"unassigned": True}, headers=auth_headers(owner)).json()
    assert [item["id"] for item in unassigned["items"]] == [free.id]

    assert client.get("/users/tenants", headers=auth_headers(tenant)).status_code == 403


def test_provider_directory_filters_by_service_type(client, make_owner, make_provider, auth_headers):
    owner = make_owner()
    plumber = make_provider(service_types=["plumbing"])
    electrician = make_provider(service_types=["electrical", "hvac"])

    listed = client.get("/users/service-providers", params={"service_type": "HVAC"}, headers=auth_headers(owner)).json()

    assert [item["id"] for item in listed["items"]] == [electrician.id]
    assert listed["items"][0]["service_types"] == ["electrical", "hvac"]
    assert client.get("/users/service-providers", headers=auth_headers(plumber)).status_code == 403
