"""
Test configuration and fixtures.

Provides:
- Database session with savepoint (rollback after each test)
- JWT token minting for authenticated tests
- HTTPX AsyncClient with a bearer token
"""
import os
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator, Generator

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///./.pytest_clinicops.db")
os.environ["TESTING"] = "1"
os.environ.setdefault("INTERNAL_SECRET", "test-internal-secret")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from clinicops.core.deps import get_db
from clinicops.core.security import create_session_token
from clinicops.db.base import Base
from clinicops.db.enums import Role
from clinicops.db.models import Clinic, Membership, Patient, User
from clinicops.db.session import SessionLocal, engine
from clinicops.main import app


# =============================================================================
# Database Fixtures (Savepoint pattern)
# =============================================================================

@pytest.fixture(scope="session")
def db_engine():
    """Create the schema once per test session."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db(db_engine) -> Generator[Session, None, None]:
    """
    Creates a database session with savepoint for test isolation.

    App code can call commit() freely; each commit releases a SAVEPOINT
    inside the outer transaction, which is rolled back at the end.
    """
    connection = db_engine.connect()
    transaction = connection.begin()
    session = SessionLocal(bind=connection, join_transaction_mode="create_savepoint")

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture(scope="function")
def test_clinic(db: Session) -> Clinic:
    """Create a test clinic."""
    clinic = Clinic(
        id=uuid.uuid4(),
        name="Test Clinic",
        slug=f"test-clinic-{uuid.uuid4().hex[:8]}",
        timezone="America/Los_Angeles",
    )
    db.add(clinic)
    db.flush()
    return clinic


def make_user(db: Session, clinic: Clinic, role: Role) -> User:
    user = User(
        id=uuid.uuid4(),
        email=f"{role.value}-{uuid.uuid4().hex[:8]}@test.com",
        display_name=f"{role.value} user",
        token_version=1,
        is_active=True,
    )
    db.add(user)
    db.flush()
    db.add(
        Membership(
            id=uuid.uuid4(),
            user_id=user.id,
            clinic_id=clinic.id,
            role=role.value,
        )
    )
    db.flush()
    return user


@pytest.fixture(scope="function")
def test_user(db: Session, test_clinic: Clinic) -> User:
    """Create a clinic admin in test_clinic."""
    return make_user(db, test_clinic, Role.ADMIN)


@pytest.fixture(scope="function")
def support_user(db: Session, test_clinic: Clinic) -> User:
    """Create a ticket agent in test_clinic."""
    return make_user(db, test_clinic, Role.SUPPORT)


@pytest.fixture(scope="function")
def test_patient(db: Session, test_clinic: Clinic) -> Patient:
    patient = Patient(
        id=uuid.uuid4(),
        clinic_id=test_clinic.id,
        first_name="Pat",
        last_name="Ient",
        email=f"patient-{uuid.uuid4().hex[:8]}@test.com",
    )
    db.add(patient)
    db.flush()
    return patient


# =============================================================================
# Auth Fixtures
# =============================================================================

@dataclass
class TestAuth:
    """Test authentication context."""
    user: User
    clinic: Clinic
    token: str

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


def mint_token(user: User, clinic: Clinic, role: Role) -> str:
    return create_session_token(
        user_id=user.id,
        clinic_id=clinic.id,
        role=role.value,
        token_version=user.token_version,
    )


@pytest.fixture(scope="function")
def test_auth(test_user: User, test_clinic: Clinic) -> TestAuth:
    """Create JWT token for test user."""
    return TestAuth(
        user=test_user,
        clinic=test_clinic,
        token=mint_token(test_user, test_clinic, Role.ADMIN),
    )


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated AsyncClient."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def authed_client(
    db: Session,
    test_auth: TestAuth,
) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient authenticated as a clinic admin."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers=test_auth.headers,
    ) as c:
        yield c

    app.dependency_overrides.clear()


@asynccontextmanager
async def role_client(db: Session, clinic: Clinic, role: Role):
    """AsyncClient for a fresh user holding `role` in `clinic`."""
    user = make_user(db, clinic, role)

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"Authorization": f"Bearer {mint_token(user, clinic, role)}"},
    ) as c:
        yield c, user

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def as_role(db: Session, test_clinic: Clinic):
    """`async with as_role(Role.SUPPORT) as (client, user)` in test_clinic."""
    def _open(role: Role):
        return role_client(db, test_clinic, role)
    return _open
