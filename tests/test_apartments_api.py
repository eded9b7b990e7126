import pytest

from propertyhub.models.models import Apartment, Tenant


def _apartment_payload(**overrides):
    payload = {
        "apartment_number": "A-101",
        "location": "12 Harbour Street, Springfield",
        "rent_amount": 1000,
        "rent_due_day": 5,
    }
    payload.update(overrides)
    return payload


def test_owner_lifecycle_scenario(client, db_session, make_owner, make_tenant, auth_headers):
    owner = make_owner()
    tenant = make_tenant()
    owner_headers = auth_headers(owner)

    created = client.post("/apartments", json=_apartment_payload(), headers=owner_headers)
    assert created.status_code == 201
    apartment = created.json()
    assert apartment["status"] == "vacant"
    assert float(apartment["rent_amount"]) == 1000.0

    assigned = client.post(
        f"/apartments/{apartment['id']}/assign-tenant",
        json={"tenant_id": tenant.id},
        headers=owner_headers,
    )
    assert assigned.status_code == 200
    assert assigned.json()["status"] == "occupied"
    assert assigned.json()["current_tenant_id"] == tenant.id
    db_session.expire_all()
    assert db_session.get(Tenant, tenant.id).current_apartment_id == apartment["id"]

    request = client.post(
        "/maintenance",
        data={
            "title": "Leaking pipe",
            "description": "Water under the sink.",
            "type": "plumbing",
            "priority": "high",
        },
        headers=auth_headers(tenant),
    )
    assert request.status_code == 201
    assert request.json()["status"] == "pending"
    db_session.expire_all()
    history = db_session.get(Apartment, apartment["id"]).maintenance_history
    assert [item.id for item in history] == [request.json()["id"]]
    shown = client.get(f"/apartments/{apartment['id']}", headers=owner_headers).json()
    assert shown["maintenance_history"] == [request.json()["id"]]
    tenant_me = client.get("/auth/me", headers=auth_headers(tenant)).json()
    assert tenant_me["maintenance_request_ids"] == [request.json()["id"]]
    assert tenant_me["owned_apartment_ids"] is None
    assert client.get("/auth/me", headers=owner_headers).json()["owned_apartment_ids"] == [apartment["id"]]

    blocked = client.delete(f"/apartments/{apartment['id']}", headers=owner_headers)
    assert blocked.status_code == 409
    assert blocked.json()["kind"] == "conflict"

    removed = client.post(f"/apartments/{apartment['id']}/remove-tenant", headers=owner_headers)
    assert removed.status_code == 200
    assert removed.json()["status"] == "vacant"

    deleted = client.delete(f"/apartments/{apartment['id']}", headers=owner_headers)
    assert deleted.status_code == 204
    assert client.get(f"/apartments/{apartment['id']}", headers=owner_headers).status_code == 404


@pytest.mark.parametrize("rent_due_day", [0, 32, 15.5, "5"])
def test_rent_due_day_rejects_out_of_range_and_fractional(client, make_owner, rent_due_day, auth_headers):
    response = client.post(
        "/apartments",
        json=_apartment_payload(rent_due_day=rent_due_day),
        headers=auth_headers(make_owner()),
    )

    assert response.status_code == 422
    assert "rent_due_day" in response.json()["errors"]


@pytest.mark.parametrize("rent_due_day", [1, 31])
def test_rent_due_day_accepts_bounds(client, make_owner, rent_due_day, auth_headers):
    response = client.post(
        "/apartments",
        json=_apartment_payload(rent_due_day=rent_due_day),
        headers=auth_headers(make_owner()),
    )

    assert response.status_code == 201
    assert response.json()["rent_due_day"] == rent_due_day


def test_duplicate_number_for_same_owner_conflicts(client, make_owner, auth_headers):
    owner = make_owner()
    headers = auth_headers(owner)
    assert client.post("/apartments", json=_apartment_payload(), headers=headers).status_code == 201

    duplicate = client.post("/apartments", json=_apartment_payload(), headers=headers)
    assert duplicate.status_code == 409

    other_owner = client.post("/apartments", json=_apartment_payload(), headers=auth_headers(make_owner()))
    assert other_owner.status_code == 201


def test_only_owners_create_apartments(client, make_tenant, make_provider, auth_headers):
    for user in (make_tenant(), make_provider()):
        response = client.post("/apartments", json=_apartment_payload(), headers=auth_headers(user))
        assert response.status_code == 403
        assert response.json()["kind"] == "forbidden"


def test_requests_without_token_are_unauthenticated(client):
    response = client.get("/apartments")

    assert response.status_code == 401
    assert response.json()["kind"] == "unauthenticated"


def test_list_envelope_explains_empty_results(client, make_owner, make_apartment, auth_headers):
    lonely_owner = make_owner()
    first = client.get("/apartments", headers=auth_headers(lonely_owner))
    assert first.json() == {"items": [], "count": 0, "message": "No apartments yet."}

    make_apartment(make_owner())
    scoped = client.get("/apartments", headers=auth_headers(lonely_owner))
    assert scoped.json()["count"] == 0
    assert scoped.json()["message"] == "No apartments are visible to your account."


def test_list_is_scoped_per_role(client, rented, make_apartment, make_provider, auth_headers):
    owner, tenant, apartment = rented
    make_apartment(owner)

    owner_view = client.get("/apartments", headers=auth_headers(owner)).json()
    tenant_view = client.get("/apartments", headers=auth_headers(tenant)).json()
    provider_view = client.get("/apartments", headers=auth_headers(make_provider())).json()

    assert owner_view["count"] == 2
    assert [item["id"] for item in tenant_view["items"]] == [apartment.id]
    assert provider_view["count"] == 0


def test_other_owners_apartment_is_hidden_and_immutable(client, rented, make_owner, auth_headers):
    _owner, _tenant, apartment = rented
    stranger = auth_headers(make_owner())

    assert client.get(f"/apartments/{apartment.id}", headers=stranger).status_code == 404
    patched = client.patch(f"/apartments/{apartment.id}", json={"location": "Somewhere else 1"}, headers=stranger)
    assert patched.status_code == 403


def test_status_updates_follow_occupancy(client, db_session, rented, make_apartment, auth_headers):
    owner, tenant, apartment = rented
    headers = auth_headers(owner)

    maintenance = client.patch(f"/apartments/{apartment.id}", json={"status": "maintenance"}, headers=headers)
    assert maintenance.status_code == 409

    vacated = client.patch(f"/apartments/{apartment.id}", json={"status": "vacant"}, headers=headers)
    assert vacated.status_code == 200
    assert vacated.json()["current_tenant_id"] is None
    db_session.expire_all()
    assert db_session.get(Tenant, tenant.id).current_apartment_id is None

    occupied = client.patch(f"/apartments/{apartment.id}", json={"status": "occupied"}, headers=headers)
    assert occupied.status_code == 422

    empty = make_apartment(owner)
    repaired = client.patch(
        f"/apartments/{empty.id}",
        json={"status": "maintenance", "rent_amount": "1100.00"},
        headers=headers,
    )
    assert repaired.status_code == 200
    assert repaired.json()["status"] == "maintenance"
    assert float(repaired.json()["rent_amount"]) == 1100.0


def test_assign_tenant_errors(client, rented, make_tenant, make_provider, make_apartment, auth_headers):
    owner, tenant, apartment = rented
    headers = auth_headers(owner)

    occupied = client.post(
        f"/apartments/{apartment.id}/assign-tenant", json={"tenant_id": make_tenant().id}, headers=headers
    )
    assert occupied.status_code == 409

    empty = make_apartment(owner)
    housed = client.post(f"/apartments/{empty.id}/assign-tenant", json={"tenant_id": tenant.id}, headers=headers)
    assert housed.status_code == 409
    not_tenant = client.post(
        f"/apartments/{empty.id}/assign-tenant", json={"tenant_id": make_provider().id}, headers=headers
    )
    assert not_tenant.status_code == 422
    missing = client.post(f"/apartments/{empty.id}/assign-tenant", json={"tenant_id": 9999}, headers=headers)
    assert missing.status_code == 404
    bad_lease = client.post(
        f"/apartments/{empty.id}/assign-tenant",
        json={"tenant_id": make_tenant().id, "lease_start": "2026-06-01", "lease_end": "2026-01-01"},
        headers=headers,
    )
    assert bad_lease.status_code == 422


def test_deleting_apartment_keeps_request_history_detached(client, db_session, rented, make_request, auth_headers):
    owner, tenant, apartment = rented
    request = make_request(tenant)
    headers = auth_headers(owner)

    assert client.post(f"/apartments/{apartment.id}/remove-tenant", headers=headers).status_code == 200
    assert client.delete(f"/apartments/{apartment.id}", headers=headers).status_code == 204

    detail = client.get(f"/maintenance/{request.id}", headers=headers)
    assert detail.status_code == 200
    assert detail.json()["apartment_id"] is None
