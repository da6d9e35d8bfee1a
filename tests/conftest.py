import os
import tempfile
import time
from typing import Generator

# Configure the app before it is imported: in-memory SQLite unless a
# TEST_DATABASE_URL is provided, and cheap bcrypt rounds.
os.environ.setdefault("DATABASE_URL", os.getenv("TEST_DATABASE_URL", "sqlite://"))
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("TOKEN_SECRET", "test-token-secret")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOG_DIR", os.path.join(tempfile.gettempdir(), "fittrack-test-logs"))

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from fittrack import models  # noqa: E402
from fittrack.auth import hash_password  # noqa: E402
from fittrack.config import Settings  # noqa: E402
from fittrack.database import Base, make_engine  # noqa: E402
from fittrack.main import create_app  # noqa: E402

PASSWORD = "Str0ng!Pass"


class FakeClock:
    """Controllable replacement for time.time."""

    def __init__(self):
        self.now = time.time()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settings() -> Settings:
    return Settings()


@pytest.fixture()
def engine(settings):
    """Fresh schema for each test for isolation."""
    engine = make_engine(settings.database_url)
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def app(settings, engine, clock):
    return create_app(settings=settings, engine=engine, clock=clock)


@pytest.fixture()
def client(app) -> Generator[TestClient, None, None]:
    """FastAPI test client that also runs the lifespan (tables, admin seed)."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def anon_client(app, client) -> Generator[TestClient, None, None]:
    """A second browser with its own cookie jar."""
    with TestClient(app) as other:
        yield other


@pytest.fixture()
def db_session(app):
    db = app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def make_user(db_session):
    def _make_user(username: str, password: str = PASSWORD, is_admin: bool = False) -> models.User:
        user = models.User(
            username=username,
            email=f"{username}@x.com",
            first_name=username.title(),
            last_name="Tester",
            password_hash=hash_password(password),
            is_admin=is_admin,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


def csrf(client: TestClient) -> str:
    return client.get("/auth/csrf-token").json()["csrfToken"]


def register(client: TestClient, username: str, password: str = PASSWORD, **overrides):
    data = {
        "username": username,
        "email": f"{username}@x.com",
        "first_name": username.title(),
        "last_name": "Tester",
        "password": password,
        "confirm_password": password,
        "_csrf": csrf(client),
    }
    data.update(overrides)
    return client.post("/auth/register", data=data, follow_redirects=False)


def login(client: TestClient, username: str, password: str = PASSWORD):
    return client.post(
        "/auth/login",
        data={"username": username, "password": password, "_csrf": csrf(client)},
        follow_redirects=False,
    )


def post_json(client: TestClient, url: str, payload: dict, method: str = "POST", **kwargs):
    headers = {"X-CSRF-Token": csrf(client)}
    headers.update(kwargs.pop("headers", {}))
    return client.request(method, url, json=payload, headers=headers, **kwargs)


def activity_payload(**overrides) -> dict:
    payload = {
        "activity_type": "Running",
        "duration_minutes": 30,
        "calories_burned": 300,
        "activity_time": "2024-01-01T10:00:00Z",
    }
    payload.update(overrides)
    return payload
