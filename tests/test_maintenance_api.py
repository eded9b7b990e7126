import asyncio
from datetime import datetime, timedelta
from io import BytesIO

import pytest
from fastapi import UploadFile
from starlette.datastructures import Headers

from propertyhub.api.dependencies import read_photo_uploads
from propertyhub.config import settings
from propertyhub.core.errors import ValidationError
from propertyhub.models.models import MaintenanceRequest, utcnow

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def _form(**overrides):
    data = {
        "title": "Leaking pipe",
        "description": "Water pools under the kitchen sink.",
        "type": "plumbing",
        "priority": "high",
    }
    data.update(overrides)
    return data


def _photos(count, content_type="image/png"):
    return [("photos", (f"photo{index}.png", PNG_BYTES, content_type)) for index in range(count)]


def test_tenant_creates_request_with_photos(client, rented, fake_storage, auth_headers):
    owner, tenant, apartment = rented

    response = client.post("/maintenance", data=_form(), files=_photos(2), headers=auth_headers(tenant))

    assert response.status_code == 201
    body = response.json()
    assert body["type"] == "plumbing"
    assert body["priority"] == "high"
    assert body["status"] == "pending"
    assert body["apartment_id"] == apartment.id
    assert body["owner_id"] == owner.id
    assert len(body["photos"]) == 2
    assert body["completion_photos"] == []
    assert sorted(fake_storage.files) == sorted(photo["path"] for photo in body["photos"])


def test_create_rejects_too_many_or_non_image_photos(client, db_session, rented, fake_storage, auth_headers):
    _owner, tenant, _apartment = rented
    headers = auth_headers(tenant)

    too_many = client.post("/maintenance", data=_form(), files=_photos(6), headers=headers)
    assert too_many.status_code == 422
    assert "photos" in too_many.json()["errors"]

    not_image = client.post("/maintenance", data=_form(), files=_photos(1, "application/pdf"), headers=headers)
    assert not_image.status_code == 422

    assert db_session.query(MaintenanceRequest).count() == 0
    assert fake_storage.files == {}


def test_oversize_photo_is_refused_before_storage(
    client, db_session, rented, make_request, make_provider, fake_storage, monkeypatch, auth_headers
):
    owner, tenant, _apartment = rented
    monkeypatch.setattr(settings, "max_photo_bytes", len(PNG_BYTES) - 1)

    created = client.post("/maintenance", data=_form(), files=_photos(1), headers=auth_headers(tenant))
    assert created.status_code == 422
    assert "exceeds" in created.json()["errors"]["photos"]
    assert db_session.query(MaintenanceRequest).count() == 0

    provider = make_provider()
    monkeypatch.setattr(settings, "max_photo_bytes", 5 * 1024 * 1024)
    request = make_request(tenant)
    client.patch(
        f"/maintenance/{request.id}/status",
        json={"status": "assigned", "service_provider_id": provider.id},
        headers=auth_headers(owner),
    )
    monkeypatch.setattr(settings, "max_photo_bytes", len(PNG_BYTES) - 1)

    completion = client.post(
        f"/maintenance/{request.id}/completion-photos", files=_photos(1), headers=auth_headers(provider)
    )
    assert completion.status_code == 422
    assert fake_storage.files == {}


def test_upload_without_declared_size_is_still_capped(monkeypatch):
    monkeypatch.setattr(settings, "max_photo_bytes", len(PNG_BYTES) - 1)
    unsized = UploadFile(BytesIO(PNG_BYTES), filename="big.png", headers=Headers({"content-type": "image/png"}))

    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(read_photo_uploads([unsized]))
    assert "big.png" in excinfo.value.errors["photos"]

    monkeypatch.setattr(settings, "max_photo_bytes", len(PNG_BYTES))
    fitting = UploadFile(BytesIO(PNG_BYTES), filename="ok.png", headers=Headers({"content-type": "image/png"}))
    assert [upload.content for upload in asyncio.run(read_photo_uploads([fitting]))] == [PNG_BYTES]


def test_create_validates_form_fields(client, rented, auth_headers):
    _owner, tenant, _apartment = rented

    response = client.post("/maintenance", data=_form(type="roofing"), headers=auth_headers(tenant))

    assert response.status_code == 422
    assert response.json()["errors"]["type"].startswith("Type must be one of")


def test_unhoused_tenant_cannot_create(client, make_tenant, auth_headers):
    response = client.post("/maintenance", data=_form(), headers=auth_headers(make_tenant()))

    assert response.status_code == 422
    assert "apartment_id" in response.json()["errors"]


def test_list_envelope_and_status_filter(client, rented, make_request, make_owner, auth_headers):
    owner, tenant, _apartment = rented
    make_request(tenant)

    listed = client.get("/maintenance", headers=auth_headers(owner)).json()
    assert listed["count"] == 1
    assert listed["message"] == "1 maintenance requests found."
    assert listed["items"][0]["type"] == "plumbing"

    filtered = client.get("/maintenance", params={"status": "completed"}, headers=auth_headers(owner)).json()
    assert filtered["count"] == 0
    assert filtered["message"] == "No maintenance requests are visible to your account."

    stranger = client.get("/maintenance", headers=auth_headers(make_owner())).json()
    assert stranger["items"] == []

    bad_filter = client.get("/maintenance", params={"status": "archived"}, headers=auth_headers(owner))
    assert bad_filter.status_code == 422


def test_status_walk_over_http(client, rented, make_request, make_provider, dispatcher, fake_transport, auth_headers):
    owner, tenant, _apartment = rented
    provider = make_provider()
    request = make_request(tenant)
    url = f"/maintenance/{request.id}/status"

    skipped = client.patch(url, json={"status": "in-progress"}, headers=auth_headers(owner))
    assert skipped.status_code == 409
    assert skipped.json()["kind"] == "invalid_transition"
    assert skipped.json()["from_status"] == "pending"

    assigned = client.patch(
        url, json={"status": "assigned", "service_provider_id": provider.id}, headers=auth_headers(owner)
    )
    assert assigned.status_code == 200
    assert assigned.json()["service_provider_id"] == provider.id

    started = client.patch(url, json={"status": "in-progress"}, headers=auth_headers(provider))
    assert started.status_code == 200
    finished = client.patch(url, json={"status": "completed"}, headers=auth_headers(provider))
    assert finished.status_code == 200
    assert datetime.fromisoformat(finished.json()["completion_date"]) >= datetime.fromisoformat(
        finished.json()["start_date"]
    )

    again = client.patch(
        url, json={"status": "assigned", "service_provider_id": provider.id}, headers=auth_headers(owner)
    )
    assert again.status_code == 409
    assert again.json()["kind"] == "invalid_transition"

    # Three transitions, three participants each.
    assert len(fake_transport.sent) == 9


def test_unassigned_provider_cannot_patch_status(client, db_session, rented, make_request, make_provider, auth_headers):
    owner, tenant, _apartment = rented
    assigned = make_provider()
    outsider = make_provider()
    request = make_request(tenant)
    client.patch(
        f"/maintenance/{request.id}/status",
        json={"status": "assigned", "service_provider_id": assigned.id},
        headers=auth_headers(owner),
    )

    response = client.patch(
        f"/maintenance/{request.id}/status", json={"status": "in-progress"}, headers=auth_headers(outsider)
    )

    assert response.status_code == 403
    assert response.json()["kind"] == "forbidden"
    db_session.expire_all()
    assert db_session.get(MaintenanceRequest, request.id).status == "assigned"


def test_unknown_request_is_not_found(client, make_owner, auth_headers):
    response = client.patch("/maintenance/999/status", json={"status": "cancelled"}, headers=auth_headers(make_owner()))

    assert response.status_code == 404


def test_detail_visibility(client, rented, make_request, make_provider, make_owner, auth_headers):
    owner, tenant, _apartment = rented
    request = make_request(tenant)

    assert client.get(f"/maintenance/{request.id}", headers=auth_headers(tenant)).status_code == 200
    # Open requests are visible to any provider so they can be claimed.
    assert client.get(f"/maintenance/{request.id}", headers=auth_headers(make_provider())).status_code == 200
    assert client.get(f"/maintenance/{request.id}", headers=auth_headers(make_owner())).status_code == 404


def test_conversation_endpoints(client, rented, make_request, auth_headers):
    owner, tenant, _apartment = rented
    request = make_request(tenant)

    message = client.post(
        f"/maintenance/{request.id}/messages", json={"body": "When can someone come by?"}, headers=auth_headers(tenant)
    )
    assert message.status_code == 201
    assert message.json()["read_by"] == [tenant.id]

    read = client.post(f"/maintenance/{request.id}/messages/read", headers=auth_headers(owner))
    assert read.json() == {"updated": 1}

    note = client.post(
        f"/maintenance/{request.id}/notes", json={"body": "Called the plumber."}, headers=auth_headers(owner)
    )
    assert note.status_code == 201

    detail = client.get(f"/maintenance/{request.id}", headers=auth_headers(owner)).json()
    assert len(detail["messages"]) == 1
    assert sorted(detail["messages"][0]["read_by"]) == sorted([tenant.id, owner.id])
    assert detail["notes"][0]["body"] == "Called the plumber."

    empty = client.post(f"/maintenance/{request.id}/messages", json={"body": ""}, headers=auth_headers(tenant))
    assert empty.status_code == 422


def test_completion_photos_endpoint(client, rented, make_request, make_provider, auth_headers):
    owner, tenant, _apartment = rented
    provider = make_provider()
    request = make_request(tenant)
    client.patch(
        f"/maintenance/{request.id}/status",
        json={"status": "assigned", "service_provider_id": provider.id},
        headers=auth_headers(owner),
    )

    response = client.post(
        f"/maintenance/{request.id}/completion-photos", files=_photos(2), headers=auth_headers(provider)
    )
    assert response.status_code == 201
    assert [photo["kind"] for photo in response.json()] == ["completion", "completion"]

    tenant_attempt = client.post(
        f"/maintenance/{request.id}/completion-photos", files=_photos(1), headers=auth_headers(tenant)
    )
    assert tenant_attempt.status_code == 403


def test_schedule_and_rating_endpoints(client, rented, make_request, make_provider, auth_headers):
    owner, tenant, _apartment = rented
    provider = make_provider()
    request = make_request(tenant)
    visit = (utcnow().date() + timedelta(days=2)).isoformat()

    proposed = client.post(
        f"/maintenance/{request.id}/schedule",
        json={"preferred_date": visit, "preferred_slot": "morning"},
        headers=auth_headers(tenant),
    )
    assert proposed.status_code == 200
    assert proposed.json()["preferred_slot"] == "morning"

    bad_slot = client.post(
        f"/maintenance/{request.id}/schedule",
        json={"preferred_date": visit, "preferred_slot": "noon"},
        headers=auth_headers(tenant),
    )
    assert bad_slot.status_code == 422

    client.patch(
        f"/maintenance/{request.id}/status",
        json={"status": "assigned", "service_provider_id": provider.id},
        headers=auth_headers(owner),
    )
    confirmed = client.post(
        f"/maintenance/{request.id}/schedule/confirm",
        json={"confirmed_date": visit, "confirmed_slot": "afternoon"},
        headers=auth_headers(provider),
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["confirmed_date"] == visit

    early = client.post(f"/maintenance/{request.id}/rating", json={"rating": 5}, headers=auth_headers(tenant))
    assert early.status_code == 422
    assert early.json()["kind"] == "invalid_state"

    for target in ("in-progress", "completed"):
        client.patch(f"/maintenance/{request.id}/status", json={"status": target}, headers=auth_headers(provider))

    rated = client.post(
        f"/maintenance/{request.id}/rating", json={"rating": 5, "comment": "Great job"}, headers=auth_headers(tenant)
    )
    assert rated.status_code == 200
    assert rated.json()["rating"] == 5

    out_of_range = client.post(f"/maintenance/{request.id}/rating", json={"rating": 0}, headers=auth_headers(tenant))
    assert out_of_range.status_code == 422


def test_delete_reports_files_that_could_not_be_removed(client, db_session, rented, make_request, fake_storage, auth_headers):
    owner, tenant, apartment = rented
    request = make_request(tenant, photos=2)
    request_id = request.id
    apartment_url = f"/apartments/{apartment.id}"
    assert client.get(apartment_url, headers=auth_headers(owner)).json()["maintenance_history"] == [request_id]
    paths = [photo.path for photo in request.photos]
    fake_storage.fail_on = {paths[1]}

    response = client.delete(f"/maintenance/{request_id}", headers=auth_headers(owner))

    assert response.status_code == 200
    assert response.json() == {"deleted": request_id, "failed_files": [paths[1]]}
    assert sorted(fake_storage.deleted) == sorted(paths)
    assert client.get(f"/maintenance/{request_id}", headers=auth_headers(owner)).status_code == 404
    assert client.get(apartment_url, headers=auth_headers(owner)).json()["maintenance_history"] == []
    me = client.get("/auth/me", headers=auth_headers(tenant)).json()
    assert me["maintenance_request_ids"] == []
