import os
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

BACKEND_DIR = Path(__file__).resolve().parents[1] / "backend"
sys.path.insert(0, str(BACKEND_DIR))

os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("OAUTH_STATE_SECRET", "test_state_secret")

from config import (  # noqa: E402
    CorsConfig,
    DashboardConfig,
    OAuthConfig,
    Settings,
    SupabaseConfig,
)


class FakeQuery:
    """Subconjunto do query builder do supabase-py usado pelo backend."""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table_name = table
        self.operation = "select"
        self.payload = None
        self.on_conflict = None
        self.filters = []
        self.ordering = None
        self.max_rows = None

    def select(self, _columns="*"):
        self.operation = "select"
        return self

    def insert(self, row):
        self.operation = "insert"
        self.payload = row
        return self

    def upsert(self, row, on_conflict=None):
        self.operation = "upsert"
        self.payload = row
        self.on_conflict = on_conflict
        return self

    def update(self, payload):
        self.operation = "update"
        self.payload = payload
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def order(self, column, desc=False):
        self.ordering = (column, desc)
        return self

    def limit(self, count):
        self.max_rows = count
        return self

    def _matching(self):
        return [row for row in self.db.rows(self.table_name) if all(check(row) for check in self.filters)]

    def execute(self):
        if self.table_name in self.db.failing_tables:
            raise RuntimeError(f"{self.table_name} unavailable")
        rows = self.db.rows(self.table_name)

        if self.operation == "insert":
            record = dict(self.payload)
            record.setdefault("id", f"{self.table_name}-{len(rows) + 1}")
            rows.append(record)
            return SimpleNamespace(data=[dict(record)])

        if self.operation == "upsert":
            record = dict(self.payload)
            keys = [key.strip() for key in (self.on_conflict or "id").split(",")]
            for existing in rows:
                if all(existing.get(key) == record.get(key) for key in keys):
                    existing.update(record)
                    return SimpleNamespace(data=[dict(existing)])
            rows.append(record)
            return SimpleNamespace(data=[dict(record)])

        if self.operation == "update":
            matched = self._matching()
            for row in matched:
                row.update(self.payload)
            return SimpleNamespace(data=[dict(row) for row in matched])

        matched = self._matching()
        if self.ordering:
            column, desc = self.ordering
            matched.sort(key=lambda row: row.get(column) or "", reverse=desc)
        if self.max_rows is not None:
            matched = matched[: self.max_rows]
        return SimpleNamespace(data=[dict(row) for row in matched])


class FakeSupabase:
    def __init__(self):
        self.tables = {}
        self.failing_tables = set()

    def rows(self, table):
        return self.tables.setdefault(table, [])

    def table(self, name):
        return FakeQuery(self, name)


class FakeAuth:
    def __init__(self, users):
        self.users = users

    def get_user(self, jwt):
        if jwt not in self.users:
            raise RuntimeError("invalid JWT")
        return SimpleNamespace(user=SimpleNamespace(id=self.users[jwt]))


@pytest.fixture()
def fake_supabase():
    return FakeSupabase()


@pytest.fixture()
def fake_auth_client():
    return SimpleNamespace(auth=FakeAuth({"valid-jwt": "user-123"}))


@pytest.fixture()
def settings():
    return Settings(
        dashboard=DashboardConfig(access_token="ig-token", business_id="17841400000000000"),
        oauth=OAuthConfig(
            facebook_app_id="fb-app",
            facebook_app_secret="fb-secret",
            instagram_app_id="ig-app",
            instagram_app_secret="ig-secret",
            state_secret="state-secret",
        ),
        supabase=SupabaseConfig(),
        cors=CorsConfig(),
    )
