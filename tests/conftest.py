import os
import tempfile
from datetime import datetime, timedelta, timezone

os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(
    tempfile.gettempdir(), f"credlife-test-{os.getpid()}.db"
)
os.environ["JWT_SECRET"] = "test-jwt-secret-with-enough-length-for-hs256"
os.environ["CREDENTIAL_HASH_KEY"] = "test-pepper"

import pytest

from credlife.database import build_engine, build_session_factory, init_db
from credlife.schemas.errors import DeliveryError
from credlife.services.audit import AuditLog
from credlife.services.credentials import CredentialManager
from credlife.services.email_verification import EmailVerificationFlow
from credlife.services.password_reset import PasswordResetFlow
from credlife.services.rate_limit import RateLimiter
from credlife.services.sessions import SessionStore
from credlife.services.store import CredentialStore
from credlife.services.two_factor import TwoFactorConfigStore, TwoFactorService
from credlife.services.users import UserStore

TEST_ROUNDS = 4
STRONG_PASSWORD = "Correct-Horse-42"


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeMailer:
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.fail = False

    @property
    def configured(self) -> bool:
        return True

    def send(self, to: str, subject: str, body: str) -> None:
        if self.fail:
            raise DeliveryError("Failed to send email", provider="fake")
        self.sent.append({"to": to, "subject": subject, "body": body})

    def last_token(self) -> str:
        link = self.sent[-1]["body"].split()
        url = next(word for word in link if word.startswith("http"))
        return url.rstrip("/").rsplit("/", 1)[-1]


class FakeSms:
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.fail = False
        self.enabled = True

    @property
    def configured(self) -> bool:
        return self.enabled

    def send(self, to: str, body: str) -> None:
        if self.fail:
            raise DeliveryError("Failed to send SMS", provider="fake")
        self.sent.append({"to": to, "body": body})

    def last_code(self) -> str:
        body = self.sent[-1]["body"]
        return body.split("code is: ", 1)[1].split(".", 1)[0]


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'credlife.db'}")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return CredentialStore(session_factory)


@pytest.fixture
def rate_limiter(store, clock):
    return RateLimiter(store, clock=clock)


@pytest.fixture
def manager(store, rate_limiter, clock):
    return CredentialManager(
        store,
        rate_limiter=rate_limiter,
        clock=clock,
        recovery_code_rounds=TEST_ROUNDS,
    )


@pytest.fixture
def users(session_factory, clock):
    return UserStore(session_factory, clock=clock, password_rounds=TEST_ROUNDS)


@pytest.fixture
def sessions(session_factory, clock):
    return SessionStore(session_factory, clock=clock)


@pytest.fixture
def audit(session_factory, clock):
    return AuditLog(session_factory, clock=clock)


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def sms():
    return FakeSms()


@pytest.fixture
def user(users):
    return users.create_user("ada@example.com", STRONG_PASSWORD, "Ada Lovelace")


@pytest.fixture
def password_reset(manager, users, sessions, audit, mailer):
    return PasswordResetFlow(manager, users, sessions, audit, mailer)


@pytest.fixture
def email_verification(manager, users, audit, mailer):
    return EmailVerificationFlow(manager, users, audit, mailer)


@pytest.fixture
def two_factor(manager, session_factory, users, audit, sms, clock):
    return TwoFactorService(
        manager,
        TwoFactorConfigStore(session_factory, clock=clock),
        users,
        audit,
        sms,
        clock=clock,
    )


@pytest.fixture
def client(users, sessions, audit, password_reset, email_verification, two_factor):
    from fastapi.testclient import TestClient

    from credlife.main import app
    from credlife.routers import deps

    app.dependency_overrides[deps.get_user_store] = lambda: users
    app.dependency_overrides[deps.get_session_store] = lambda: sessions
    app.dependency_overrides[deps.get_audit_log] = lambda: audit
    app.dependency_overrides[deps.get_password_reset_flow] = lambda: password_reset
    app.dependency_overrides[deps.get_email_verification_flow] = lambda: email_verification
    app.dependency_overrides[deps.get_two_factor_service] = lambda: two_factor
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
