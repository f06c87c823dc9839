"""Test configuration."""
import asyncio
import os
from collections.abc import AsyncIterator, Callable, Iterator
from pathlib import Path
from typing import Any, Mapping
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# --- Default env for the app under test
os.environ.setdefault("DATABASE_URL", "sqlite:///./craftmarket_test.db")
os.environ.setdefault("API_KEY", "test-secret-key")
os.environ.setdefault("APP_ENV", "dev")

from app.main import app  # noqa: E402
from app.db import get_db  # noqa: E402
from app.models import Base, Escrow, Project, Quote, User  # noqa: E402
from app.models.api_key import ApiKey, ApiScope  # noqa: E402
from app.services import quotes as quotes_service  # noqa: E402
from app.services.escrow import confirm_deposit  # noqa: E402
from app.services.locks import reset_locks  # noqa: E402
from app.services.notifications import get_notification_sink  # noqa: E402
from app.services.payment_gateway import PaymentResult, get_payment_gateway  # noqa: E402
from app.services.projects import create_project  # noqa: E402
from app.services.state import escrow_for_project  # noqa: E402
from app.utils.apikey import hash_key  # noqa: E402


class StubGateway:
    """Deterministic payment gateway double."""

    def __init__(self) -> None:
        self.success = True
        self.message = "Payment completed."
        self.fees = 0
        self.delay = 0.0
        self.error: Exception | None = None
        self.calls: list[tuple[int, str, dict[str, Any]]] = []
        self.on_charge: Callable[[int], None] | None = None

    async def process_payment(self, amount: int, method: str, metadata: Mapping[str, Any] | None = None) -> PaymentResult:
        self.calls.append((amount, method, dict(metadata or {})))
        if self.on_charge is not None:
            self.on_charge(amount)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return PaymentResult(
            self.success,
            f"MBK-20261018-{len(self.calls):04d}",
            self.fees,
            self.message,
            transaction_id=f"PAY-TEST-{len(self.calls)}",
            method=method,
            amount=amount,
        )


class RecordingSink:
    def __init__(self) -> None:
        self.sent: list[tuple[int, str, dict[str, Any]]] = []

    def notify(self, user_id: int, template: str, payload: Mapping[str, Any]) -> None:
        self.sent.append((user_id, template, dict(payload)))

    def templates_for(self, user_id: int) -> list[str]:
        return [template for uid, template, _ in self.sent if uid == user_id]


class FailingSink:
    def notify(self, user_id: int, template: str, payload: Mapping[str, Any]) -> None:
        raise ConnectionError("notification backend down")


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "craftmarket.db"


@pytest.fixture
def session_factory(db_path: Path) -> Iterator[sessionmaker[Session]]:
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False}, future=True)
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    yield factory
    engine.dispose()


@pytest.fixture
def db_session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _fresh_locks() -> Iterator[None]:
    reset_locks()
    yield
    reset_locks()


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def failing_sink() -> FailingSink:
    return FailingSink()


@pytest.fixture(autouse=True)
def override_dependencies(db_session: Session, gateway: StubGateway) -> Iterator[None]:
    def _get_db() -> Iterator[Session]:
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield
    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_payment_gateway, None)
    app.dependency_overrides.pop(get_notification_sink, None)


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def make_user(db_session: Session) -> Callable[..., User]:
    def _factory(name: str = "user", *, verified: bool = False) -> User:
        suffix = uuid4().hex[:8]
        user = User(username=f"{name}-{suffix}", email=f"{name}-{suffix}@example.com", is_verified=verified)
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _factory


@pytest.fixture
def make_api_key(db_session: Session) -> Callable[..., ApiKey]:
    def _factory(
        name: str,
        key: str,
        scope: ApiScope = ApiScope.client,
        user: User | None = None,
        is_active: bool = True,
    ) -> ApiKey:
        api_key = ApiKey(
            name=name,
            prefix="test_" + scope.value,
            key_hash=hash_key(key),
            scope=scope,
            user_id=user.id if user else None,
            is_active=is_active,
        )
        db_session.add(api_key)
        db_session.commit()
        db_session.refresh(api_key)
        return api_key

    return _factory


@pytest.fixture
def headers_for(make_api_key: Callable[..., ApiKey]) -> Callable[..., dict[str, str]]:
    def _factory(user: User | None, scope: ApiScope) -> dict[str, str]:
        token = f"{scope.value}-{uuid4().hex}"
        make_api_key(name=f"{scope.value}-{uuid4().hex}", key=token, scope=scope, user=user)
        return {"Authorization": f"Bearer {token}"}

    return _factory


@pytest.fixture
def admin_headers(headers_for: Callable[..., dict[str, str]]) -> dict[str, str]:
    return headers_for(None, ApiScope.admin)


@pytest.fixture
def quoted_project(db_session: Session, make_user: Callable[..., User]) -> Callable[..., tuple[Project, Quote]]:
    """Open project with one pending quote from a fresh artisan."""

    def _factory(*, amount: int = 100_000, verified: bool = False, is_urgent: bool = False) -> tuple[Project, Quote]:
        client_user = make_user("client")
        artisan = make_user("artisan", verified=verified)
        project = create_project(db_session, client_user.id, "Rénovation cuisine", is_urgent=is_urgent)
        quote = quotes_service.submit_quote(db_session, project.id, artisan.id, amount)
        return project, quote

    return _factory


@pytest.fixture
def accepted_project(db_session: Session, quoted_project) -> Callable[..., tuple[Project, Quote, Escrow]]:
    """Project whose single quote is accepted, escrow pending."""

    def _factory(**kwargs: Any) -> tuple[Project, Quote, Escrow]:
        project, quote = quoted_project(**kwargs)
        project = quotes_service.accept_quote(db_session, quote.id)
        db_session.refresh(quote)
        return project, quote, escrow_for_project(db_session, project.id)

    return _factory


@pytest.fixture
def funded_project(db_session: Session, accepted_project, gateway: StubGateway):
    """Async factory: accepted project whose escrow deposit is confirmed (escrow held)."""

    async def _factory(**kwargs: Any) -> tuple[Project, Quote, Escrow]:
        project, quote, escrow = accepted_project(**kwargs)
        escrow = await confirm_deposit(db_session, escrow.id, "wave", gateway=gateway)
        db_session.refresh(project)
        return project, quote, escrow

    return _factory
