import json

import httpx
import pytest

from qrgate.cache import LocalCache
from qrgate.config import Settings
from qrgate.persistence import PersistenceGateway
from qrgate.redemption import RedemptionEngine
from qrgate.session import Session
from qrgate.store import GuestGroupStore
from qrgate.supabase import SupabaseClient


class FakePostgrest:
    """
    In-memory stand-in for the Supabase REST endpoint.

    Tables listed in `absent` answer 404 like a missing relation, tables in
    `timeouts` raise a read timeout, tables in `read_only` reject writes,
    tables in `html` answer 200 with a web page like a captive portal.
    """

    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.absent: set[str] = set()
        self.timeouts: set[str] = set()
        self.read_only: set[str] = set()
        self.html: set[str] = set()
        self.requests: list[tuple[str, str]] = []

    def rows(self, table: str) -> list[dict]:
        return self.tables.setdefault(table, [])

    def _filters(self, request: httpx.Request) -> dict[str, str]:
        reserved = {"select", "order", "limit", "on_conflict"}
        return {
            key: value[3:]
            for key, value in request.url.params.items()
            if key not in reserved and value.startswith("eq.")
        }

    def _matches(self, row: dict, filters: dict[str, str]) -> bool:
        return all(str(row.get(k)) == v for k, v in filters.items())

    def __call__(self, request: httpx.Request) -> httpx.Response:
        table = request.url.path.rsplit("/", 1)[-1]
        self.requests.append((request.method, table))

        if table in self.timeouts:
            raise httpx.ReadTimeout("timed out", request=request)
        if table in self.html:
            return httpx.Response(
                200, text="<html>captive portal</html>", headers={"Content-Type": "text/html"}
            )
        if table in self.absent:
            return httpx.Response(404, json={"message": f'relation "{table}" does not exist'})
        if request.method != "GET" and table in self.read_only:
            return httpx.Response(403, json={"message": "permission denied"})

        rows = self.rows(table)
        filters = self._filters(request)

        if request.method == "GET":
            found = [r for r in rows if self._matches(r, filters)]
            order = request.url.params.get("order")
            if order:
                column = order.split(".")[0]
                found.sort(key=lambda r: r.get(column) or "", reverse=order.endswith(".desc"))
            limit = request.url.params.get("limit")
            if limit:
                found = found[: int(limit)]
            return httpx.Response(200, json=found)

        if request.method == "POST":
            body = json.loads(request.content)
            if request.url.params.get("on_conflict") == "owner_code":
                rows[:] = [r for r in rows if r.get("owner_code") != body["owner_code"]]
            rows.append(body)
            return httpx.Response(201)

        if request.method == "PATCH":
            body = json.loads(request.content)
            updated = []
            for row in rows:
                if self._matches(row, filters):
                    row.update(body)
                    updated.append(row)
            return httpx.Response(200, json=updated)

        if request.method == "DELETE":
            rows[:] = [r for r in rows if not self._matches(r, filters)]
            return httpx.Response(204)

        return httpx.Response(405)


@pytest.fixture
def remote():
    return FakePostgrest()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        supabase_url="http://supabase.test",
        supabase_key="test-key",
        base_url="https://gate.test",
        cache_dir=str(tmp_path / "cache"),
        request_timeout=1.0,
    )


@pytest.fixture
def supabase(remote, settings):
    return SupabaseClient(
        url=settings.supabase_url,
        key=settings.supabase_key,
        timeout=settings.request_timeout,
        transport=httpx.MockTransport(remote),
    )


@pytest.fixture
def cache(settings):
    return LocalCache(settings.cache_dir)


@pytest.fixture
def gateway(supabase, cache, settings):
    return PersistenceGateway(supabase, cache, settings)


@pytest.fixture
def engine(gateway):
    return RedemptionEngine(gateway)


@pytest.fixture
def session(gateway, cache, engine):
    return Session(gateway, cache, engine=engine)


@pytest.fixture
def make_store(settings):
    def _make(owner_code="organizer", quotas=(2,), phone=None):
        store = GuestGroupStore(owner_code, base_url=settings.base_url)
        for quota in quotas:
            store.append(quota, phone=phone)
        return store

    return _make
