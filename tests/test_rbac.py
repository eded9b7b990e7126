from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from propertyhub.auth.jwt import get_current_user, require_roles
from propertyhub.constants import MaintenanceStatus, UserRole
from propertyhub.core.errors import register_exception_handlers
from propertyhub.services.policy import ROLE_PERMISSIONS, Action, can_act, scope_message
from propertyhub.models.models import Apartment


class DummyUser:
    def __init__(self, *roles: str):
        self._roles = set(roles)

    def has_any_role(self, *role_names: str) -> bool:
        return any(role in self._roles for role in role_names)


def _build_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/directory")
    def directory_route(_: object = Depends(require_roles(UserRole.OWNER))):
        return {"ok": True}

    @app.get("/requests")
    def requests_route(_: object = Depends(require_roles(UserRole.OWNER, UserRole.SERVICE_PROVIDER))):
        return {"ok": True}

    return app


def test_directory_route_requires_owner_role():
    app = _build_app()
    client = TestClient(app)

    app.dependency_overrides[get_current_user] = lambda: DummyUser(UserRole.TENANT)
    response = client.get("/directory")
    assert response.status_code == 403
    assert response.json()["kind"] == "forbidden"

    app.dependency_overrides[get_current_user] = lambda: DummyUser(UserRole.OWNER)
    response = client.get("/directory")
    assert response.status_code == 200


def test_requests_route_allows_owner_or_provider():
    app = _build_app()
    client = TestClient(app)

    app.dependency_overrides[get_current_user] = lambda: DummyUser(UserRole.TENANT)
    assert client.get("/requests").status_code == 403

    app.dependency_overrides[get_current_user] = lambda: DummyUser(UserRole.SERVICE_PROVIDER)
    assert client.get("/requests").status_code == 200

    app.dependency_overrides[get_current_user] = lambda: DummyUser(UserRole.OWNER)
    assert client.get("/requests").status_code == 200


def test_role_permissions_cover_every_role():
    assert set(ROLE_PERMISSIONS) == set(UserRole.ALL)
    assert Action.RENT_READ not in ROLE_PERMISSIONS[UserRole.SERVICE_PROVIDER]
    assert Action.REQUEST_CANCEL not in ROLE_PERMISSIONS[UserRole.TENANT]
    assert Action.REQUEST_CANCEL in ROLE_PERMISSIONS[UserRole.OWNER]


def test_can_act_explains_denials(db_session, rented, make_owner, make_provider, make_request):
    owner, tenant, apartment = rented
    request = make_request(tenant)

    assert can_act(owner, Action.APARTMENT_UPDATE, apartment)
    denied = can_act(make_owner(), Action.APARTMENT_UPDATE, apartment)
    assert not denied
    assert denied.reason == "You do not own this apartment."

    assert can_act(tenant, Action.APARTMENT_READ, apartment)
    assert not can_act(tenant, Action.APARTMENT_UPDATE, apartment)
    assert not can_act(None, Action.APARTMENT_READ)

    provider = make_provider()
    # Open requests can be claimed; the apartment stays hidden until one is assigned.
    assert can_act(provider, Action.REQUEST_CLAIM, request)
    assert not can_act(provider, Action.APARTMENT_READ, apartment)
    assert not can_act(provider, Action.REQUEST_PROGRESS, request)

    request.service_provider_id = provider.id
    request.status = MaintenanceStatus.ASSIGNED
    db_session.commit()
    assert can_act(provider, Action.APARTMENT_READ, apartment)
    assert can_act(provider, Action.REQUEST_PROGRESS, request)
    assert not can_act(provider, Action.REQUEST_CLAIM, request)


def test_inactive_accounts_are_denied(db_session, make_owner):
    owner = make_owner()
    owner.is_active = False
    db_session.commit()

    decision = can_act(owner, Action.APARTMENT_CREATE)

    assert not decision
    assert decision.reason == "This account is inactive."


def test_scope_message(db_session, make_owner, make_apartment):
    assert scope_message(db_session, Apartment, 0, "apartments") == "No apartments yet."
    make_apartment(make_owner())
    assert scope_message(db_session, Apartment, 0, "apartments") == "No apartments are visible to your account."
    assert scope_message(db_session, Apartment, 1, "apartments") == "1 apartments found."
