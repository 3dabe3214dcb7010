import os

os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SKIP_DB_INIT", "1")
os.environ.setdefault("REPOSITORY_RETRY_DELAY", "0")

from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from agenda.database import Base, get_db
from agenda.models.auth import AuthUser
from agenda.models import customer, service, package, customer_package  # noqa: F401  (register tables)
from agenda.repositories.catalog_repo import CatalogRepository
from agenda.repositories.customer_repo import CustomerRepository
from agenda.services.entitlement_engine import EntitlementEngine
from agenda.utils.security import create_access_token


class FrozenClock:
    def __init__(self, current: datetime):
        self.current = current

    def __call__(self) -> datetime:
        return self.current

    def set(self, *args) -> None:
        self.current = datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


def _make_owner(db, user_id: str) -> AuthUser:
    user = AuthUser(user_id=user_id, email=f"{user_id}@example.com", name=user_id, role="owner", active=True)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def owner(db) -> AuthUser:
    return _make_owner(db, "user_owner")


@pytest.fixture
def other_owner(db) -> AuthUser:
    return _make_owner(db, "user_other")


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def engine(db, clock) -> EntitlementEngine:
    return EntitlementEngine(db, clock=clock)


@pytest.fixture
def catalog(db, owner):
    """Massage and facial services, a 30-day '10 sessions' package and a never-expiring combo"""
    repo = CatalogRepository(db)
    massage = repo.create_service(owner.user_id, name="Massage", price=Decimal("120.00"), duration_minutes=60)
    facial = repo.create_service(owner.user_id, name="Facial", price=Decimal("90.00"), duration_minutes=45)
    ten_sessions = repo.create_package(
        owner.user_id,
        name="10 sessions",
        price=Decimal("1000.00"),
        expires_after_days=30,
        services=[{"service_id": massage.service_id, "quantity": 10}],
    )
    combo = repo.create_package(
        owner.user_id,
        name="Combo",
        price=Decimal("750.50"),
        services=[
            {"service_id": massage.service_id, "quantity": 5},
            {"service_id": facial.service_id, "quantity": 3},
        ],
    )
    return SimpleNamespace(massage=massage, facial=facial, ten_sessions=ten_sessions, combo=combo)


@pytest.fixture
def customer_row(db, owner):
    return CustomerRepository(db).create(owner.user_id, name="Maria Silva", phone="11999998888")


@pytest.fixture
def client(session_factory, owner):
    from agenda.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(owner) -> dict:
    token = create_access_token(owner.user_id)
    return {"Authorization": f"Bearer {token}"}
