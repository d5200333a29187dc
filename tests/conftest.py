import pathlib
import sys
from datetime import UTC, datetime, timedelta

import jwt
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from clearance.context import build_context
from clearance.db.documents import InMemoryDocumentStore
from clearance.events import PRINCIPAL_CREATED
from clearance.identity import PrincipalRecord
from clearance.main import create_app
from clearance.object_storage import LocalObjectStorage, ObjectStorageConfig
from clearance.queue_backend import InMemoryQueueBackend
from clearance.security import CallerContext, JwtSecurityConfig
from clearance.settings import WorkflowSettings
from clearance.status import Role

JWT_SECRET = "jwt_test_secret"
INTERNAL_TOKEN = "internal_test_token"


class FixedClock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


def issue_token(uid: str, *, role: str | None = "user", email: str = "", name: str = "", expires_in: int = 1800) -> str:
    now = datetime.now(UTC)
    payload = {
        "sub": uid,
        "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    if role is not None:
        payload["role"] = role
    if email:
        payload["email"] = email
    if name:
        payload["name"] = name
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def _signup(ctx, uid: str, *, email: str | None = None, verified: bool = False, event_id: str | None = None) -> None:
    """Register a principal and deliver its principal-created trigger."""
    principal = PrincipalRecord(uid=uid, email=email or f"{uid}@example.com", email_verified=verified)
    ctx.identity.register(principal)
    ctx.publisher.publish_provider_event(
        PRINCIPAL_CREATED, f"principals/{uid}", principal.to_dict(), event_id=event_id
    )
    ctx.worker.run_until_idle()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 3, 2, 9, 0, 0, tzinfo=UTC))


@pytest.fixture
def ctx(tmp_path: pathlib.Path, clock: FixedClock):
    storage = LocalObjectStorage(
        config=ObjectStorageConfig(
            backend="local",
            bucket="clearance",
            root=str(tmp_path / "object_store"),
            prefix="",
            endpoint="",
            region="",
            access_key="",
            secret_key="",
            force_path_style=True,
        )
    )
    return build_context(
        store=InMemoryDocumentStore(clock=clock),
        queue=InMemoryQueueBackend(clock=clock),
        object_storage=storage,
        settings=WorkflowSettings(internal_token=INTERNAL_TOKEN),
        security_cfg=JwtSecurityConfig(
            issuer="test-issuer",
            audience="test-audience",
            shared_secret=JWT_SECRET,
            role_claim="role",
            log_redaction_enabled=True,
        ),
    )


@pytest.fixture
def client(ctx) -> TestClient:
    return TestClient(create_app(ctx))


@pytest.fixture
def internal_headers() -> dict[str, str]:
    return {"x-internal-token": INTERNAL_TOKEN}


@pytest.fixture
def bearer():
    def _headers(uid: str, **kwargs) -> dict[str, str]:
        return {"Authorization": f"Bearer {issue_token(uid, **kwargs)}"}

    return _headers


@pytest.fixture
def signup(ctx):
    def _run(uid: str, **kwargs) -> None:
        _signup(ctx, uid, **kwargs)

    return _run


@pytest.fixture
def officer() -> CallerContext:
    return CallerContext(uid="officer_1", email="officer@example.com", role=Role.OFFICER)


@pytest.fixture
def admin() -> CallerContext:
    return CallerContext(uid="admin_1", email="admin@example.com", role=Role.ADMIN)


@pytest.fixture
def read_stored(tmp_path: pathlib.Path):
    """Bytes behind an ``object://local/...`` URI written by the ctx fixture's storage."""

    def _read(uri: str) -> bytes:
        prefix = "object://local/"
        assert uri.startswith(prefix)
        return (tmp_path / "object_store" / uri[len(prefix) :]).read_bytes()

    return _read
