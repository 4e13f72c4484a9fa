"""Shared test fixtures: environment, in-memory Supabase, app client and auth helpers."""

import copy
import itertools
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

# Settings are read at import time, so the environment must be ready first.
os.environ.update(
    {
        "SUPABASE_URL": "http://supabase.test",
        "SUPABASE_SERVICE_KEY": "test-service-key",
        "CRON_SECRET": "test-cron-secret",
        "ACTIVECAMPAIGN_BASE_URL": "https://hudlab.api-us1.com",
        "ACTIVECAMPAIGN_API_TOKEN": "test-ac-token",
        "ACTIVECAMPAIGN_WEBHOOK_SECRET": "",
        "ACTIVECAMPAIGN_REQUESTS_PER_SECOND": "0",
        "NUVEMSHOP_ACCESS_TOKEN": "test-ns-token",
        "NUVEMSHOP_USER_ID": "123456",
        "NUVEMSHOP_WEBHOOK_SECRET": "",
        "NUVEMSHOP_REQUESTS_PER_SECOND": "0",
        "NUVEMSHOP_SYNC_PAGE_SIZE": "2",
        "MAX_RETRY_ATTEMPTS": "1",
        "RETRY_INITIAL_DELAY_SECONDS": "0",
        "DEAL_SYNC_PAGE_SIZE": "2",
        "DEAL_SYNC_CONCURRENCY": "2",
        "WEBHOOK_BATCH_RETRY_DELAY_SECONDS": "0",
        "SLACK_ALERTS_ENABLED": "false",
        "APP_ENVIRONMENT": "test",
    }
)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

SAMPLE_OWNER_ID = "user_owner_001"
SAMPLE_ADMIN_ID = "user_admin_002"
SAMPLE_PARTNER_ID = "user_partner_003"
SAMPLE_USER_ID = "user_plain_004"
SAMPLE_MANAGER_ID = "user_manager_005"


# ============================================================================
# In-memory Supabase
# ============================================================================

UNIQUE_KEYS = {
    "deals_cache": "deal_id",
    "deals_live": "deal_id",
    "nuvemshop_orders": "order_id",
    "nuvemshop_products": "product_id",
    "sync_locks": "name",
    "generated_coupons": "code",
}

TABLE_DEFAULTS = {
    "nuvemshop_webhook_logs": {"retry_count": 0, "status": "received"},
    "generated_coupons": {"current_uses": 0, "is_active": True, "is_auto_generated": False},
    "user_notifications": {"read": False},
    "notifications": {"status": "pending"},
}

_clock = itertools.count()


def _timestamp() -> str:
    """Strictly increasing timestamps so ordering by creation time is stable."""
    base = datetime(2025, 1, 1, tzinfo=timezone.utc)
    return (base + timedelta(milliseconds=next(_clock))).isoformat()


def _sort_key(column: str) -> Callable[[Dict[str, Any]], Any]:
    def key(row: Dict[str, Any]):
        value = row.get(column)
        return (value is None, value if value is not None else 0)

    return key


class FakeResult:
    def __init__(self, data: List[Dict[str, Any]], count: Optional[int] = None):
        self.data = data
        self.count = count


class FakeQuery:
    """Chainable query builder with the subset of postgrest-py the services use."""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.operation = "select"
        self.payload: Any = None
        self.on_conflict: Optional[str] = None
        self.filters: List[Callable[[Dict[str, Any]], bool]] = []
        self.ordering: List[tuple] = []
        self.limit_count: Optional[int] = None
        self.range_bounds: Optional[tuple] = None
        self.count_mode: Optional[str] = None

    # operations

    def select(self, *columns, count: Optional[str] = None):
        self.operation = "select"
        self.count_mode = count
        return self

    def insert(self, data):
        self.operation = "insert"
        self.payload = data
        return self

    def update(self, data):
        self.operation = "update"
        self.payload = data
        return self

    def upsert(self, data, on_conflict: Optional[str] = None):
        self.operation = "upsert"
        self.payload = data
        self.on_conflict = on_conflict
        return self

    def delete(self):
        self.operation = "delete"
        return self

    # filters

    def _compare(self, column, predicate):
        def check(row):
            value = row.get(column)
            return value is not None and predicate(value)

        self.filters.append(check)
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column, value):
        self.filters.append(lambda row: row.get(column) != value)
        return self

    def gt(self, column, value):
        return self._compare(column, lambda v: v > value)

    def gte(self, column, value):
        return self._compare(column, lambda v: v >= value)

    def lt(self, column, value):
        return self._compare(column, lambda v: v < value)

    def lte(self, column, value):
        return self._compare(column, lambda v: v <= value)

    def in_(self, column, values):
        allowed = list(values)
        self.filters.append(lambda row: row.get(column) in allowed)
        return self

    def is_(self, column, value):
        if value in ("null", None):
            self.filters.append(lambda row: row.get(column) is None)
        else:
            self.filters.append(lambda row: row.get(column) == value)
        return self

    # modifiers

    def order(self, column, desc: bool = False):
        self.ordering.append((column, desc))
        return self

    def limit(self, count: int):
        self.limit_count = count
        return self

    def range(self, start: int, end: int):
        self.range_bounds = (start, end)
        return self

    # execution

    def _matches(self, row):
        return all(check(row) for check in self.filters)

    def execute(self) -> FakeResult:
        self.db.calls.append((self.table, self.operation))
        rows = self.db.tables.setdefault(self.table, [])

        if self.operation == "insert":
            items = self.payload if isinstance(self.payload, list) else [self.payload]
            return FakeResult([copy.deepcopy(self.db.insert_row(self.table, item)) for item in items])

        if self.operation == "upsert":
            items = self.payload if isinstance(self.payload, list) else [self.payload]
            key = self.on_conflict or "id"
            written = []
            for item in items:
                existing = next((r for r in rows if r.get(key) == item.get(key)), None)
                if existing is not None:
                    existing.update(copy.deepcopy(item))
                    written.append(copy.deepcopy(existing))
                else:
                    written.append(copy.deepcopy(self.db.insert_row(self.table, item)))
            return FakeResult(written)

        matched = [r for r in rows if self._matches(r)]

        if self.operation == "update":
            for row in matched:
                row.update(copy.deepcopy(self.payload))
            return FakeResult([copy.deepcopy(r) for r in matched])

        if self.operation == "delete":
            self.db.tables[self.table] = [r for r in rows if not self._matches(r)]
            return FakeResult([copy.deepcopy(r) for r in matched])

        for column, desc in reversed(self.ordering):
            matched = sorted(matched, key=_sort_key(column), reverse=desc)
        total = len(matched)
        if self.range_bounds is not None:
            start, end = self.range_bounds
            matched = matched[start:end + 1]
        if self.limit_count is not None:
            matched = matched[: self.limit_count]
        return FakeResult(
            [copy.deepcopy(r) for r in matched],
            count=total if self.count_mode else None,
        )


class FakeRPC:
    def __init__(self, db: "FakeSupabase", name: str, params: Dict[str, Any]):
        self.db = db
        self.name = name
        self.params = params

    def execute(self) -> FakeResult:
        handler = self.db.rpc_handlers.get(self.name)
        if handler is None:
            raise Exception(f"function {self.name} does not exist")
        return FakeResult(handler(self.params))


class FakeSupabase:
    """Stand-in for supabase.Client backed by lists of dicts."""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.calls: List[tuple] = []
        self.held_advisory_locks: set = set()
        self._sync_log_ids = itertools.count(1)
        self.rpc_handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {
            "pg_try_advisory_lock": self._try_advisory_lock,
            "pg_advisory_unlock": self._advisory_unlock,
        }

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, name: str, params: Dict[str, Any]) -> FakeRPC:
        return FakeRPC(self, name, params)

    def insert_row(self, table: str, item: Dict[str, Any]) -> Dict[str, Any]:
        rows = self.tables.setdefault(table, [])
        unique = UNIQUE_KEYS.get(table)
        if unique and any(r.get(unique) == item.get(unique) for r in rows):
            raise Exception(f'duplicate key value violates unique constraint "{table}_{unique}_key"')

        row = {**TABLE_DEFAULTS.get(table, {}), **copy.deepcopy(item)}
        if "id" not in row and table not in ("sync_locks",):
            row["id"] = next(self._sync_log_ids) if table == "deals_sync_log" else str(uuid.uuid4())
        row.setdefault("created_at", _timestamp())
        if table == "nuvemshop_webhook_logs":
            row.setdefault("received_at", row["created_at"])
        rows.append(row)
        return row

    def seed(self, table: str, *rows: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [self.insert_row(table, row) for row in rows]

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.get(table, [])

    def _try_advisory_lock(self, params):
        key = params["key"]
        if key in self.held_advisory_locks:
            return False
        self.held_advisory_locks.add(key)
        return True

    def _advisory_unlock(self, params):
        self.held_advisory_locks.discard(params["key"])
        return True


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def fake_db() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def supabase_service(fake_db):
    from hudlab.services.supabase_service import SupabaseService

    return SupabaseService(client=fake_db)


@pytest.fixture(autouse=True)
def reset_shared_state():
    """Process-wide caches and limiters must not leak between tests."""
    from hudlab.routers.webhooks import webhook_rate_limiter
    from hudlab.utils.swr_cache import response_cache
    from hudlab.utils.sync_state import sync_state

    response_cache.clear()
    sync_state.reset()
    webhook_rate_limiter.reset()
    yield
    response_cache.clear()
    sync_state.reset()
    webhook_rate_limiter.reset()


@pytest.fixture
def app(supabase_service):
    from hudlab.main import app as fastapi_app
    from hudlab.services.supabase_service import get_supabase_service

    fastapi_app.dependency_overrides[get_supabase_service] = lambda: supabase_service
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as http_client:
        yield http_client


@pytest.fixture
def login(app, fake_db):
    """
    Factory fixture: seed a profile and authenticate requests as that user.

    Usage: login("admin"), login("partners-media", brand="Zenith"), login("user", approved=False)
    """
    from hudlab.routers.auth import verify_token

    def _login(role: str, user_id: Optional[str] = None, approved: bool = True, brand: Optional[str] = None):
        user_id = user_id or f"user_{role}_{uuid.uuid4().hex[:6]}"
        fake_db.seed(
            "user_profiles",
            {
                "id": user_id,
                "email": f"{user_id}@hudlab.com.br",
                "role": role,
                "approved": approved,
                "assigned_brand": brand,
            },
        )
        app.dependency_overrides[verify_token] = lambda: {
            "user_id": user_id,
            "email": f"{user_id}@hudlab.com.br",
            "user": {"id": user_id},
        }
        return user_id

    return _login


@pytest.fixture
def mock_transport():
    """
    Factory fixture for httpx.MockTransport routing on (method, path).

    Handlers map "GET /api/3/deals/1" style keys to a dict (200 JSON), a
    (status, json) tuple, or a callable taking the request. Every request is
    recorded on transport.requests.
    """
    import httpx

    def _create(routes: Dict[str, Any]):
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            key = f"{request.method} {request.url.path}"
            route = routes.get(key)
            if route is None:
                return httpx.Response(404, json={"message": f"No route for {key}"})
            if callable(route):
                route = route(request)
            if isinstance(route, httpx.Response):
                return route
            if isinstance(route, tuple):
                status_code, body = route
                return httpx.Response(status_code, json=body)
            return httpx.Response(200, json=route)

        transport = httpx.MockTransport(handler)
        transport.requests = requests
        return transport

    return _create
