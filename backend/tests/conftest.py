"""Pytest configuration and fixtures."""

import json
import os
from typing import Any, Dict, Generator, List, Optional, Set

# Must be set before chalk_pos reads its settings
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-the-chalk-pos-suite-0123456789")
os.environ.setdefault("DEBUG", "true")

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from chalk_pos.core.security import create_access_token
from chalk_pos.db.base import Base
from chalk_pos.db.session import get_db
from chalk_pos.main import app
from chalk_pos.models import TseConfiguration
from chalk_pos.services.tse.config_store import FiscalConfig, TseConfigStore
from chalk_pos.services.tse.fiskaly_client import FiskalyClient, FiskalyConfig
from chalk_pos.services.tse.registry import TseManagerRegistry, get_tse_registry

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

ORG_ID = "00000000-0000-0000-0000-000000000001"
OTHER_ORG_ID = "00000000-0000-0000-0000-000000000002"
TSS_ID = "71a189fb-4117-423b-9d90-86890c59505f"
CLIENT_ID = "d9b2d63d-a233-4123-8478-f5f6e8e78988"
API_PREFIX = "/api/v2"


class FakeFiskaly:
    """In-process stand-in for the Fiskaly KassenSichV API.

    Keeps TSS state, registered clients and transactions, and records every
    request. ``fail`` maps a route name to the HTTP status it should return
    instead of succeeding, and ``replies`` maps a route name to a body it
    answers with status 200 instead of the real one.

    Route names: auth, get_tss, patch_tss, admin_auth, put_client,
    get_client, tx_start, tx_finish, tx_cancel, export.
    """

    def __init__(self, tss_state: str = "INITIALIZED", initializing_polls: int = 0):
        self.tss_state = tss_state
        self.initializing_polls = initializing_polls
        self.admin_pin = "1234"
        self.fail: Dict[str, int] = {}
        self.replies: Dict[str, Any] = {}
        self.requests: List[httpx.Request] = []
        self.routes: List[str] = []
        self.clients: Set[str] = set()
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.tokens: List[str] = []
        self.omit_token = False
        self.export_body = b"fake-tar-archive"
        self._counter = 0
        self._pending_polls = 0

    def count(self, route: str) -> int:
        return self.routes.count(route)

    def _json(self, status_code: int, payload: Any) -> httpx.Response:
        return httpx.Response(status_code, json=payload)

    def _scripted(self, route: str) -> Optional[httpx.Response]:
        status_code = self.fail.get(route)
        if status_code is not None:
            return self._json(status_code, {"code": "E_FAKE", "message": f"{route} refused"})
        if route in self.replies:
            return self._json(200, self.replies[route])
        return None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.startswith(API_PREFIX):
            path = path[len(API_PREFIX):]
        body = json.loads(request.content) if request.content else {}
        parts = path.strip("/").split("/")

        if path == "/auth":
            self.routes.append("auth")
            scripted = self._scripted("auth")
            if scripted is not None:
                return scripted
            if body.get("api_key") != "key" or body.get("api_secret") != "secret":
                return self._json(401, {"message": "invalid credentials"})
            token = f"token-{len(self.tokens) + 1}"
            self.tokens.append(token)
            if self.omit_token:
                return self._json(200, {})
            return self._json(200, {"access_token": token})

        authorization = request.headers.get("Authorization", "")
        if not self.tokens or authorization != f"Bearer {self.tokens[-1]}":
            return self._json(401, {"message": "missing or stale token"})

        if parts[0] != "tss" or len(parts) < 2 or parts[1] != TSS_ID:
            return self._json(404, {"message": "unknown TSS"})

        if len(parts) == 2:
            return self._tss(request.method, body)
        if parts[2:] == ["admin", "auth"]:
            self.routes.append("admin_auth")
            scripted = self._scripted("admin_auth")
            if scripted is not None:
                return scripted
            if body.get("admin_pin") != self.admin_pin:
                return self._json(401, {"message": "wrong admin PIN"})
            return self._json(200, {})
        if parts[2] == "client":
            return self._client(request.method, parts[3])
        if parts[2] == "tx":
            return self._tx(request, parts[3], body)
        if parts[2] == "export":
            self.routes.append("export")
            scripted = self._scripted("export")
            if scripted is not None:
                return scripted
            self.last_export = body
            return httpx.Response(200, content=self.export_body,
                                  headers={"Content-Type": "application/x-tar"})
        return self._json(404, {"message": "not found"})

    def _tss(self, method: str, body: Dict[str, Any]) -> httpx.Response:
        if method == "GET":
            self.routes.append("get_tss")
            scripted = self._scripted("get_tss")
            if scripted is not None:
                return scripted
            if self.tss_state == "INITIALIZING":
                if self._pending_polls > 0:
                    self._pending_polls -= 1
                else:
                    self.tss_state = "INITIALIZED"
            return self._json(200, {"_id": TSS_ID, "state": self.tss_state})

        self.routes.append("patch_tss")
        scripted = self._scripted("patch_tss")
        if scripted is not None:
            return scripted
        target = body.get("state")
        if target == "INITIALIZED" and self.initializing_polls:
            self.tss_state = "INITIALIZING"
            self._pending_polls = self.initializing_polls
        else:
            self.tss_state = target
        return self._json(200, {"_id": TSS_ID, "state": self.tss_state})

    def _client(self, method: str, client_id: str) -> httpx.Response:
        if method == "GET":
            self.routes.append("get_client")
            if client_id in self.clients:
                return self._json(200, {"_id": client_id, "serial_number": client_id})
            return self._json(404, {"message": "client not found"})

        self.routes.append("put_client")
        scripted = self._scripted("put_client")
        if scripted is not None:
            return scripted
        if client_id in self.clients:
            return self._json(409, {"message": "client already exists"})
        self.clients.add(client_id)
        return self._json(200, {"_id": client_id, "serial_number": client_id, "state": "REGISTERED"})

    def _tx(self, request: httpx.Request, tx_id: str, body: Dict[str, Any]) -> httpx.Response:
        state = body.get("state")
        route = {"ACTIVE": "tx_start", "FINISHED": "tx_finish", "CANCELLED": "tx_cancel"}[state]
        self.routes.append(route)
        scripted = self._scripted(route)
        if scripted is not None:
            return scripted

        tx = self.transactions.setdefault(tx_id, {"_id": tx_id})
        tx["state"] = state
        tx.setdefault("revisions", []).append(request.url.params.get("tx_revision"))
        if state == "ACTIVE":
            self._counter += 1
            tx["number"] = self._counter
            tx["time_start"] = 1760000000
            return self._json(200, {"_id": tx_id, "state": state, "number": tx["number"]})
        if state == "FINISHED":
            tx["schema"] = body.get("schema")
            return self._json(200, {
                "_id": tx_id,
                "state": state,
                "number": tx["number"],
                "time_start": tx["time_start"],
                "time_end": 1760000005,
                "qr_code_data": f"V0;{CLIENT_ID};Kassenbeleg-V1;{tx['number']}",
                "signature": {
                    "value": f"sig-{tx['number']}",
                    "algorithm": "ecdsa-plain-SHA384",
                    "counter": 100 + tx["number"],
                },
            })
        return self._json(200, {"_id": tx_id, "state": state})


@pytest.fixture
def fake_fiskaly() -> FakeFiskaly:
    return FakeFiskaly()


@pytest.fixture
def fiskaly_config() -> FiskalyConfig:
    return FiskalyConfig(
        api_key="key",
        api_secret="secret",
        tss_id=TSS_ID,
        client_id=CLIENT_ID,
        environment="sandbox",
        admin_pin="1234",
    )


@pytest.fixture
def client_factory(fake_fiskaly: FakeFiskaly):
    """Build FiskalyClients wired to the fake, with instant polling."""
    def factory(config: FiskalyConfig) -> FiskalyClient:
        return FiskalyClient(
            config,
            transport=httpx.MockTransport(fake_fiskaly.handler),
            poll_attempts=5,
            poll_interval=0,
        )
    return factory


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a test database session."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def config_store(session_factory) -> TseConfigStore:
    return TseConfigStore(session_factory)


@pytest.fixture
def tse_config(db_session: Session) -> TseConfiguration:
    """Active, complete TSE configuration for ORG_ID."""
    row = TseConfiguration(
        organization_id=ORG_ID,
        api_key="key",
        api_secret="secret",
        tss_id=TSS_ID,
        client_id=CLIENT_ID,
        admin_pin="1234",
        environment="sandbox",
        is_active=True,
    )
    db_session.add(row)
    db_session.commit()
    db_session.refresh(row)
    return row


@pytest.fixture
def fiscal_config(tse_config: TseConfiguration) -> FiscalConfig:
    return FiscalConfig.from_model(tse_config)


@pytest.fixture
def tse_registry(config_store: TseConfigStore, client_factory) -> TseManagerRegistry:
    return TseManagerRegistry(config_store, client_factory)


@pytest.fixture(scope="function")
def client(db_session: Session, tse_registry: TseManagerRegistry) -> Generator[TestClient, None, None]:
    """Create a test client with database and TSE registry overrides."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_tse_registry] = lambda: tse_registry
    # Disable rate limiter during tests to avoid flaky failures
    from chalk_pos.core.rate_limit import limiter
    limiter.enabled = False
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    limiter.enabled = True
    app.dependency_overrides.clear()


def make_headers(role: str = "manager", organization_id: str = ORG_ID) -> dict:
    token = create_access_token(
        data={
            "sub": f"user-{role}",
            "email": f"{role}@example.com",
            "role": role,
            "organization_id": organization_id,
        }
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def manager_headers() -> dict:
    return make_headers("manager")


@pytest.fixture
def staff_headers() -> dict:
    return make_headers("staff")


@pytest.fixture
def owner_headers() -> dict:
    return make_headers("owner")
