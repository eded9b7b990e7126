import sys
from collections.abc import Callable, Generator
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from propertyhub.config import settings  # noqa: E402
from propertyhub.database import Database, database  # noqa: E402
import propertyhub.main as app_main  # noqa: E402
from propertyhub.api.dependencies import get_db, get_dispatcher, get_storage  # noqa: E402
from propertyhub.auth.jwt import create_token_for_user, get_password_hash  # noqa: E402
from propertyhub.core.rate_limit import limiter  # noqa: E402
from propertyhub.models.models import (  # noqa: E402
    Apartment,
    MaintenanceRequest,
    Owner,
    ServiceProvider,
    Tenant,
)
from propertyhub.services.apartments import create_apartment  # noqa: E402
from propertyhub.services.consistency import assign_tenant, create_request  # noqa: E402
from propertyhub.services.notifications import (  # noqa: E402
    NotificationCenter,
    NotificationDispatcher,
    OutboundMessage,
)
from propertyhub.services.storage import PhotoUpload, StoredFile  # noqa: E402

PASSWORD = "changeme123"
# bcrypt is slow; hash the shared test password once.
PASSWORD_HASH = get_password_hash(PASSWORD)
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


@pytest.fixture(scope="session", autouse=True)
def _configure_global_test_db(tmp_path_factory):
    """Bind the app-wide database and file paths to a scratch directory."""
    base_dir = tmp_path_factory.mktemp("globaldb")
    settings.uploads_dir = str(base_dir / "uploads")
    settings.email_output_dir = str(base_dir / "emails")
    settings.run_rent_scan_on_startup = False
    database.init(f"sqlite:///{base_dir / 'app.db'}", create_schema=True)
    yield
    database.dispose()


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
def test_database(tmp_path) -> Generator[Database, None, None]:
    """A fresh SQLite file per test; open extra sessions from it for race tests."""
    db = Database(f"sqlite:///{tmp_path / 'test.db'}", timeout_seconds=1.0)
    db.init(create_schema=True)
    yield db
    db.dispose()


@pytest.fixture
def db_session(test_database: Database) -> Generator[Session, None, None]:
    session = test_database.session()
    try:
        yield session
    finally:
        session.close()


class FakeStorage:
    """In-memory file store; paths listed in ``fail_on`` raise on delete."""

    def __init__(self) -> None:
        self.files: Dict[str, bytes] = {}
        self.deleted: List[str] = []
        self.fail_on: set = set()
        self.fail_saves = False

    def save_file(self, relative_path: str, content: bytes, content_type: Optional[str] = None) -> StoredFile:
        if self.fail_saves:
            raise OSError("disk full")
        self.files[relative_path] = content
        return StoredFile(relative_path=relative_path, public_path=f"uploads/{relative_path}")

    def delete_file(self, path: str) -> None:
        self.deleted.append(path)
        if path in self.fail_on:
            raise OSError(f"cannot delete {path}")
        self.files.pop(path, None)


class FakeTransport:
    def __init__(self) -> None:
        self.sent: List[tuple] = []
        self.fail = False

    def send(self, recipient_id: int, message: OutboundMessage) -> None:
        if self.fail:
            raise RuntimeError("transport down")
        self.sent.append((recipient_id, message))


@pytest.fixture
def fake_storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def dispatcher(fake_transport: FakeTransport) -> NotificationDispatcher:
    return NotificationDispatcher(fake_transport, timeout_seconds=2.0, center=NotificationCenter())


@pytest.fixture
def client(db_session: Session, fake_storage: FakeStorage, dispatcher: NotificationDispatcher) -> Generator[TestClient, None, None]:
    app = app_main.app

    def _get_db_override():
        yield db_session

    app.dependency_overrides[get_db] = _get_db_override
    app.dependency_overrides[get_storage] = lambda: fake_storage
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> Callable[..., Dict[str, str]]:
    def _headers(user) -> Dict[str, str]:
        return {"Authorization": f"Bearer {create_token_for_user(user)}"}

    return _headers


@pytest.fixture
def make_owner(db_session: Session) -> Callable[..., Owner]:
    counter = {"value": 0}

    def _create(email: Optional[str] = None, **fields) -> Owner:
        counter["value"] += 1
        owner = Owner(
            email=email or f"owner{counter['value']}@example.com",
            hashed_password=PASSWORD_HASH,
            first_name=fields.pop("first_name", "Olivia"),
            last_name=fields.pop("last_name", f"Owner{counter['value']}"),
            **fields,
        )
        db_session.add(owner)
        db_session.commit()
        return owner

    return _create


@pytest.fixture
def make_tenant(db_session: Session) -> Callable[..., Tenant]:
    counter = {"value": 0}

    def _create(email: Optional[str] = None, **fields) -> Tenant:
        counter["value"] += 1
        tenant = Tenant(
            email=email or f"tenant{counter['value']}@example.com",
            hashed_password=PASSWORD_HASH,
            first_name=fields.pop("first_name", "Theo"),
            last_name=fields.pop("last_name", f"Tenant{counter['value']}"),
            **fields,
        )
        db_session.add(tenant)
        db_session.commit()
        return tenant

    return _create


@pytest.fixture
def make_provider(db_session: Session) -> Callable[..., ServiceProvider]:
    counter = {"value": 0}

    def _create(email: Optional[str] = None, **fields) -> ServiceProvider:
        counter["value"] += 1
        provider = ServiceProvider(
            email=email or f"provider{counter['value']}@example.com",
            hashed_password=PASSWORD_HASH,
            first_name=fields.pop("first_name", "Pat"),
            last_name=fields.pop("last_name", f"Provider{counter['value']}"),
            company_name=fields.pop("company_name", f"Fix-It {counter['value']}"),
            service_types=fields.pop("service_types", ["plumbing"]),
            **fields,
        )
        db_session.add(provider)
        db_session.commit()
        return provider

    return _create


@pytest.fixture
def make_apartment(db_session: Session) -> Callable[..., Apartment]:
    counter = {"value": 0}

    def _create(owner: Owner, tenant: Optional[Tenant] = None, **fields) -> Apartment:
        counter["value"] += 1
        values = {
            "apartment_number": f"A-{100 + counter['value']}",
            "location": "12 Harbour Street, Springfield",
            "rent_amount": Decimal("1000.00"),
            "rent_due_day": 5,
        }
        values.update(fields)
        apartment = create_apartment(db_session, owner, values)
        if tenant is not None:
            apartment = assign_tenant(db_session, apartment, tenant, owner)
        return apartment

    return _create


@pytest.fixture
def make_request(db_session: Session, fake_storage: FakeStorage) -> Callable[..., MaintenanceRequest]:
    def _create(tenant: Tenant, photos: int = 0, **fields) -> MaintenanceRequest:
        uploads = [PhotoUpload(f"photo{index}.png", "image/png", PNG_BYTES) for index in range(photos)]
        return create_request(
            db_session,
            tenant,
            fields.pop("apartment_id", tenant.current_apartment_id),
            title=fields.pop("title", "Leaking tap"),
            description=fields.pop("description", "The kitchen tap drips all night."),
            request_type=fields.pop("request_type", "plumbing"),
            priority=fields.pop("priority", "medium"),
            photos=uploads,
            storage=fake_storage,
            **fields,
        )

    return _create


@pytest.fixture
def rented(make_owner, make_tenant, make_apartment):
    """An owner, a tenant and the apartment the tenant rents from them."""
    owner = make_owner()
    tenant = make_tenant()
    apartment = make_apartment(owner, tenant=tenant)
    return owner, tenant, apartment
