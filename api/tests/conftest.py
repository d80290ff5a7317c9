"""
Shared fixtures: a throwaway SQLite database per test, a fake Mercury API
served through httpx.MockTransport, and virtual clocks so retry and
throttling tests never really sleep.

Run with:
    pytest api/tests -v
"""
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from portal.container import build_container
from portal.core.config import EntityConfig, Settings
from portal.core.database import Base, build_engine, build_session_factory
import portal.models  # noqa: F401
from portal.services.store import ReconciliationStore

MERCURY_BASE = "https://mercury.test/api/v1"

TOKENS = {
    "alpha": "secret-token:alpha-000000000001",
    "bravo": "secret-token:bravo-000000000002",
    "charlie": "secret-token:charlie-0000000003",
}

ENTITIES = [
    EntityConfig(id="alpha", name="Alpha", legal_name="Alpha Holdings LLC", entity_type="parent"),
    EntityConfig(id="bravo", name="Bravo", legal_name="Bravo Operating LLC"),
    EntityConfig(id="charlie", name="Charlie", legal_name="Charlie Services LLC"),
]


# ── Fake Mercury ─────────────────────────────────────────────────────────────

class FakeMercury:
    """In-memory Mercury: accounts per token, transactions per account, injectable failures."""

    def __init__(self):
        self.accounts: dict[str, list[dict]] = {}
        self.transactions: dict[str, list[dict]] = {}
        self.token_failures: dict[str, int] = {}
        self.path_failures: dict[str, int] = {}
        self.requests: list[httpx.Request] = []

    # fixtures
    def add_account(
        self,
        token: str,
        account_id: str,
        *,
        balance: str = "1000.00",
        available: str | None = None,
        name: str | None = None,
        status: str = "active",
        kind: str = "checking",
        account_number: str = "9876543210",
    ) -> dict:
        account = {
            "id": account_id,
            "name": name or f"Mercury Checking {account_id[-4:]}",
            "status": status,
            "kind": kind,
            "routingNumber": "021000021",
            "accountNumber": account_number,
            "currentBalance": balance,
            "availableBalance": available if available is not None else balance,
            "legalBusinessName": "ignored by the client",
        }
        self.accounts.setdefault(token, []).append(account)
        return account

    def set_balance(self, account_id: str, balance: str) -> None:
        for accounts in self.accounts.values():
            for account in accounts:
                if account["id"] == account_id:
                    account["currentBalance"] = balance
                    account["availableBalance"] = balance

    def add_transaction(
        self,
        account_id: str,
        tx_id: str,
        *,
        amount: str = "-10.00",
        status: str = "sent",
        when: str = "2026-02-02T12:00:00Z",
        description: str | None = None,
        counterparty: str = "Acme Supplies",
    ) -> dict:
        tx = {
            "id": tx_id,
            "amount": amount,
            "status": status,
            "createdAt": when,
            "postedAt": when if status != "pending" else None,
            "bankDescription": description or f"Payment {tx_id}",
            "counterpartyName": counterparty,
            "counterpartyId": f"cp-{counterparty.lower().replace(' ', '-')}",
            "note": None,
            "mercuryCategory": "Software",
        }
        self.transactions.setdefault(account_id, []).append(tx)
        return tx

    def fail_token(self, token: str, status: int = 500) -> None:
        self.token_failures[token] = status

    def fail_path(self, suffix: str, status: int = 500) -> None:
        self.path_failures[suffix] = status

    # introspection
    def calls(self, suffix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix)]

    # transport
    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        path = request.url.path.removeprefix("/api/v1")

        if token in self.token_failures:
            return httpx.Response(self.token_failures[token], json={"errors": {"message": "boom"}})
        for suffix, status in self.path_failures.items():
            if path.endswith(suffix):
                return httpx.Response(status, json={"errors": {"message": "boom"}})
        if token not in self.accounts:
            return httpx.Response(401, json={"errors": {"errorCode": "unauthorized", "message": "Invalid token"}})

        owned = {a["id"]: a for a in self.accounts[token]}
        if path == "/accounts":
            return httpx.Response(200, json={"accounts": list(owned.values())})

        parts = path.strip("/").split("/")
        if len(parts) >= 2 and parts[0] == "account" and parts[1] in owned:
            if len(parts) == 2:
                return httpx.Response(200, json=owned[parts[1]])
            if parts[2] == "transactions":
                txs = self.transactions.get(parts[1], [])
                offset = int(request.url.params.get("offset", 0))
                limit = int(request.url.params.get("limit", 500))
                return httpx.Response(200, json={"transactions": txs[offset:offset + limit]})
        return httpx.Response(404, json={"errors": {"errorCode": "notFound", "message": "Not found"}})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


# ── Virtual time ─────────────────────────────────────────────────────────────

class VirtualClock:
    """Monotonic clock advanced only by ``sleep``."""

    def __init__(self, start: float = 1_000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FixedUtc:
    """Wall clock for stores, caches and coordinators."""

    def __init__(self, value: datetime):
        self.value = value

    def __call__(self) -> datetime:
        return self.value

    def advance(self, **kwargs) -> None:
        self.value += timedelta(**kwargs)


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
def mercury() -> FakeMercury:
    return FakeMercury()


@pytest.fixture
def vclock() -> VirtualClock:
    return VirtualClock()


@pytest.fixture
async def engine(tmp_path):
    # File-backed so concurrent sessions get their own connections
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'portal.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def store(session_factory) -> ReconciliationStore:
    store = ReconciliationStore(session_factory)
    await store.register_entities(ENTITIES)
    return store


def make_settings(**overrides) -> Settings:
    values = dict(
        environment="test",
        mercury_base_url=MERCURY_BASE,
        mercury_api_keys=dict(TOKENS),
        entities=list(ENTITIES),
        sync_guard_enabled=False,
        whatsapp_enabled=False,
        retry_max_attempts=3,
        retry_jitter_ratio=0.0,
        entity_sync_timeout_seconds=10.0,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
async def build(engine, mercury, vclock):
    """Factory for a fully wired container against the fake API and test database."""
    containers = []

    def _build(**overrides):
        container = build_container(
            make_settings(**overrides),
            engine=engine,
            http_transport=mercury.transport(),
            clock=vclock,
            sleep=vclock.sleep,
        )
        containers.append(container)
        return container

    yield _build
    for container in containers:
        await container.coordinator.wait_idle()
        await container.cache.drain()
        await container.transport.aclose()


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)
