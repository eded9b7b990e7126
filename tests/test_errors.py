from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError

from propertyhub.core.errors import InvalidTransition, NotFound, Unauthenticated, ValidationError, register_exception_handlers


class Payload(BaseModel):
    name: str = Field(min_length=3, max_length=5)
    count: int


def _build_app(expose_details: bool = False) -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app, expose_details=expose_details)

    @app.post("/items")
    def create_item(payload: Payload):
        return payload.model_dump()

    @app.get("/missing")
    def missing():
        raise NotFound("Apartment not found.")

    @app.get("/transition")
    def transition():
        raise InvalidTransition("pending", "completed")

    @app.get("/fields")
    def fields():
        raise ValidationError({"title": "Title is required"})

    @app.get("/login")
    def login():
        raise Unauthenticated()

    @app.get("/boom")
    def boom():
        raise RuntimeError("secret stack detail")

    @app.get("/db-down")
    def db_down():
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    return app


def test_request_validation_reports_one_message_per_field():
    client = TestClient(_build_app())

    response = client.post("/items", json={"name": "x"})

    assert response.status_code == 422
    body = response.json()
    assert body["kind"] == "validation_error"
    assert set(body["errors"]) == {"name", "count"}
    assert all(isinstance(message, str) for message in body["errors"].values())


def test_domain_errors_keep_kind_and_status():
    client = TestClient(_build_app())

    missing = client.get("/missing")
    assert missing.status_code == 404
    assert missing.json() == {"kind": "not_found", "detail": "Apartment not found.", "path": "/missing"}

    transition = client.get("/transition")
    assert transition.status_code == 409
    assert transition.json()["from_status"] == "pending"
    assert transition.json()["to_status"] == "completed"

    fields = client.get("/fields")
    assert fields.status_code == 422
    assert fields.json()["errors"] == {"title": "Title is required"}

    login = client.get("/login")
    assert login.status_code == 401
    assert login.headers["WWW-Authenticate"] == "Bearer"


def test_unhandled_errors_hide_details_by_default():
    client = TestClient(_build_app(), raise_server_exceptions=False)

    response = client.get("/boom")

    assert response.status_code == 500
    assert response.json()["kind"] == "internal"
    assert "error" not in response.json()
    assert "secret stack detail" not in response.text


def test_unhandled_errors_can_expose_details():
    client = TestClient(_build_app(expose_details=True), raise_server_exceptions=False)

    response = client.get("/boom")

    assert response.status_code == 500
    assert response.json()["error"] == "RuntimeError: secret stack detail"


def test_database_outage_maps_to_unavailable():
    client = TestClient(_build_app())

    response = client.get("/db-down")

    assert response.status_code == 503
    assert response.json()["kind"] == "unavailable"
