import os

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite://")
os.environ.setdefault("JWT_SECRET", "test-signing-key-0123456789abcdefghijklmnop")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_REQUESTS", "100000")
os.environ.setdefault("NOTIFICATIONS_ENABLED", "false")

from collections.abc import Callable, Iterator  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from clinicops.db.base import Base, init_db  # noqa: E402
from clinicops.db.session import get_db  # noqa: E402
from clinicops.main import app, notification_port  # noqa: E402
from clinicops.models import Branch, Role, Tenant, User, UserBranch  # noqa: E402
from clinicops.services.notifications import AppointmentCreatedEvent  # noqa: E402
from clinicops.services.passwords import hash_password  # noqa: E402
from clinicops.services.scope import ScopeHandle  # noqa: E402
from clinicops.services.tokens import issue_token  # noqa: E402


class RecordingNotificationPort:
    """Collects published events instead of sending them to a broker."""

    def __init__(self) -> None:
        self.events: list[AppointmentCreatedEvent] = []

    def publish(self, event: AppointmentCreatedEvent) -> None:
        self.events.append(event)


class FailingNotificationPort:
    def __init__(self) -> None:
        self.attempts = 0

    def publish(self, event: AppointmentCreatedEvent) -> None:
        self.attempts += 1
        raise ConnectionError("broker unavailable")


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    init_db(engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        future=True,
    )


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def notifications() -> RecordingNotificationPort:
    return RecordingNotificationPort()


@pytest.fixture()
def client(session_factory, notifications) -> Iterator[TestClient]:
    def override_get_db() -> Iterator[Session]:
        db = session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[notification_port] = lambda: notifications
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def make_tenant(db_session) -> Callable[..., Tenant]:
    counter = {"n": 0}

    def factory(name: str | None = None) -> Tenant:
        counter["n"] += 1
        tenant = Tenant(name=name or f"Tenant {counter['n']}")
        db_session.add(tenant)
        db_session.commit()
        return tenant

    return factory


@pytest.fixture()
def make_branch(db_session) -> Callable[..., Branch]:
    def factory(tenant: Tenant, name: str = "Main Street Branch") -> Branch:
        branch = Branch(tenant_id=tenant.id, name=name)
        db_session.add(branch)
        db_session.commit()
        return branch

    return factory


@pytest.fixture()
def make_user(db_session) -> Callable[..., User]:
    def factory(
        tenant: Tenant,
        username: str = "staff",
        role: Role = Role.USER,
        password: str = "secret123",
        branches: tuple[Branch, ...] = (),
    ) -> User:
        user = User(
            tenant_id=tenant.id,
            username=username,
            password_hash=hash_password(password),
            role=role,
        )
        db_session.add(user)
        db_session.flush()
        for branch in branches:
            db_session.add(UserBranch(tenant_id=tenant.id, user_id=user.id, branch_id=branch.id))
        db_session.commit()
        return user

    return factory


def _auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(user)}"}


def _scope_for(user: User) -> ScopeHandle:
    return ScopeHandle(
        tenant_id=user.tenant_id,
        user_id=user.id,
        role=user.role,
        username=user.username,
    )


@pytest.fixture()
def auth_headers() -> Callable[[User], dict[str, str]]:
    return _auth_headers


@pytest.fixture()
def scope_for() -> Callable[[User], ScopeHandle]:
    return _scope_for


@pytest.fixture()
def tenant(make_tenant) -> Tenant:
    return make_tenant("Downtown Clinic Group")


@pytest.fixture()
def branch(make_branch, tenant) -> Branch:
    return make_branch(tenant)


@pytest.fixture()
def admin(make_user, tenant, branch) -> User:
    return make_user(tenant, username="admin", role=Role.ADMIN, branches=(branch,))


@pytest.fixture()
def staff(make_user, tenant, branch) -> User:
    return make_user(tenant, username="user", role=Role.USER, branches=(branch,))


@pytest.fixture()
def viewer(make_user, tenant, branch) -> User:
    return make_user(tenant, username="viewer", role=Role.VIEWER, branches=(branch,))


@pytest.fixture()
def failing_notifications(client) -> FailingNotificationPort:
    port = FailingNotificationPort()
    app.dependency_overrides[notification_port] = lambda: port
    return port
