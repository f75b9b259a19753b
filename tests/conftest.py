"""Pytest configuration and fixtures."""

import copy
import os
import re
import secrets
import uuid
from collections import defaultdict

import pytest
from postgrest.exceptions import APIError

# Generate a unique test secret for this test run to prevent token forgery
_TEST_JWT_SECRET = f"test-only-{secrets.token_urlsafe(32)}"

os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", _TEST_JWT_SECRET)
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["COOKIE_SECURE"] = "false"
os.environ.pop("WEBHOOK_SECRET", None)
os.environ.pop("ALLOW_ADMIN_REGISTRATION", None)

from fastapi.testclient import TestClient  # noqa: E402

from escao.auth import create_access_token, hash_password  # noqa: E402
from escao.config import get_settings  # noqa: E402
from escao.database import get_db, new_id, utcnow  # noqa: E402
from escao.main import app  # noqa: E402

TEST_PASSWORD = "correct-horse-battery"
_TEST_PASSWORD_HASH = hash_password(TEST_PASSWORD)


# =============================================================================
# In-memory Supabase
# =============================================================================

# Unique keys enforced on insert, per table
UNIQUE_KEYS = {
    "users": [("email",)],
    "payment_intents": [("pg_reference",)],
    "payouts": [("escrow_id",)],
    "webhook_events": [("source", "event_type", "external_reference")],
}

# Columns typed UUID in the schema; audit_logs.actor_id and entity_id are TEXT
UUID_COLUMNS = {
    "id",
    "user_id",
    "reviewed_by",
    "buyer_id",
    "seller_id",
    "escrow_id",
    "opened_by",
    "resolved_by",
    "dispute_id",
    "uploaded_by",
}


def check_uuid(column: str, value) -> None:
    """Raise like Postgres does when a non-UUID reaches a UUID column."""
    if column not in UUID_COLUMNS or value is None:
        return
    try:
        uuid.UUID(str(value))
    except ValueError:
        raise APIError(
            {
                "code": "22P02",
                "message": f'invalid input syntax for type uuid: "{value}"',
                "details": None,
                "hint": None,
            }
        )


class MockExecuteResult:
    def __init__(self, data: list, count: int | None = None):
        self.data = data
        self.count = count


class MockQueryBuilder:
    """Mock PostgREST query builder backed by a dict of row lists."""

    def __init__(self, db: "FakeSupabase", table: str):
        self._db = db
        self._table = table
        self._op = "select"
        self._payload = None
        self._fields = "*"
        self._count_mode = None
        self._filters = []
        self._order = None
        self._range = None
        self._limit_value = None

    # Operations

    def select(self, fields: str = "*", count: str = None) -> "MockQueryBuilder":
        self._fields = fields
        self._count_mode = count
        return self

    def insert(self, data) -> "MockQueryBuilder":
        self._op = "insert"
        self._payload = data
        return self

    def update(self, data: dict) -> "MockQueryBuilder":
        self._op = "update"
        self._payload = data
        return self

    # Filters

    def eq(self, field: str, value) -> "MockQueryBuilder":
        check_uuid(field, value)
        self._filters.append(lambda row: row.get(field) == value)
        return self

    def neq(self, field: str, value) -> "MockQueryBuilder":
        check_uuid(field, value)
        self._filters.append(lambda row: row.get(field) != value)
        return self

    def in_(self, field: str, values) -> "MockQueryBuilder":
        values = list(values)
        for value in values:
            check_uuid(field, value)
        self._filters.append(lambda row: row.get(field) in values)
        return self

    def ilike(self, field: str, pattern: str) -> "MockQueryBuilder":
        regex = re.compile(
            "^" + ".*".join(re.escape(part) for part in pattern.split("%")) + "$",
            re.IGNORECASE,
        )
        self._filters.append(lambda row: bool(regex.match(str(row.get(field) or ""))))
        return self

    def gte(self, field: str, value) -> "MockQueryBuilder":
        self._filters.append(lambda row: row.get(field) is not None and row[field] >= value)
        return self

    def lte(self, field: str, value) -> "MockQueryBuilder":
        self._filters.append(lambda row: row.get(field) is not None and row[field] <= value)
        return self

    # Modifiers

    def order(self, column: str, desc: bool = False) -> "MockQueryBuilder":
        self._order = (column, desc)
        return self

    def range(self, start: int, end: int) -> "MockQueryBuilder":
        self._range = (start, end)
        return self

    def limit(self, n: int) -> "MockQueryBuilder":
        self._limit_value = n
        return self

    # Execution

    def _matching(self) -> list[dict]:
        rows = self._db.tables[self._table]
        return [row for row in rows if all(f(row) for f in self._filters)]

    def _project(self, row: dict) -> dict:
        if self._fields.strip() == "*":
            return copy.deepcopy(row)
        columns = [c.strip() for c in self._fields.split(",")]
        return {c: copy.deepcopy(row.get(c)) for c in columns}

    def _check_unique(self, row: dict) -> None:
        rows = self._db.tables[self._table]
        for key in UNIQUE_KEYS.get(self._table, []):
            value = tuple(row.get(col) for col in key)
            if any(tuple(r.get(col) for col in key) == value for r in rows):
                raise APIError(
                    {
                        "code": "23505",
                        "message": f"duplicate key value violates unique constraint on {self._table}{key}",
                        "details": None,
                        "hint": None,
                    }
                )
        if self._table == "disputes" and row.get("status") == "open":
            if any(r["escrow_id"] == row["escrow_id"] and r["status"] == "open" for r in rows):
                raise APIError({"code": "23505", "message": "one open dispute per escrow"})

    def execute(self) -> MockExecuteResult:
        if self._op == "insert":
            payload = self._payload if isinstance(self._payload, list) else [self._payload]
            inserted = []
            for data in payload:
                row = copy.deepcopy(data)
                row.setdefault("id", new_id())
                row.setdefault("created_at", utcnow())
                for column, value in row.items():
                    check_uuid(column, value)
                self._check_unique(row)
                self._db.tables[self._table].append(row)
                inserted.append(copy.deepcopy(row))
            return MockExecuteResult(inserted)

        if self._op == "update":
            for column, value in self._payload.items():
                check_uuid(column, value)
            updated = []
            for row in self._matching():
                row.update(copy.deepcopy(self._payload))
                updated.append(copy.deepcopy(row))
            return MockExecuteResult(updated)

        rows = self._matching()
        total = len(rows)
        if self._order:
            column, desc = self._order
            rows = sorted(rows, key=lambda r: str(r.get(column) or ""), reverse=desc)
        if self._range:
            start, end = self._range
            rows = rows[start : end + 1]
        if self._limit_value is not None:
            rows = rows[: self._limit_value]

        count = total if self._count_mode == "exact" else None
        return MockExecuteResult([self._project(r) for r in rows], count)


class FakeSupabase:
    """Stand-in for ``supabase.Client``; only ``table()`` is used by the app."""

    def __init__(self):
        self.tables: dict[str, list[dict]] = defaultdict(list)

    def table(self, name: str) -> MockQueryBuilder:
        return MockQueryBuilder(self, name)

    def rows(self, table: str, **filters) -> list[dict]:
        """Rows of ``table`` matching all ``filters`` (test helper)."""
        return [
            row
            for row in self.tables[table]
            if all(row.get(k) == v for k, v in filters.items())
        ]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fake_db():
    return FakeSupabase()


@pytest.fixture
def client(fake_db):
    """Create a test client backed by the in-memory database."""
    app.dependency_overrides[get_db] = lambda: fake_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(fake_db):
    """Factory inserting a user row directly."""

    def _make_user(role: str = "buyer", kyc_status: str = "pending", email: str | None = None) -> dict:
        user_id = new_id()
        user = {
            "id": user_id,
            "email": email or f"{role}-{user_id[:8]}@example.com",
            "password_hash": _TEST_PASSWORD_HASH,
            "role": role,
            "kyc_status": kyc_status,
            "created_at": utcnow(),
            "updated_at": utcnow(),
        }
        fake_db.tables["users"].append(user)
        return user

    return _make_user


def headers_for(user: dict) -> dict:
    """Bearer auth headers for a user row."""
    token = create_access_token(user["id"], user["email"], user["role"], get_settings())
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def buyer(make_user):
    return make_user("buyer")


@pytest.fixture
def seller(make_user):
    return make_user("seller", kyc_status="verified")


@pytest.fixture
def admin(make_user):
    return make_user("admin")


@pytest.fixture
def escrow_factory(client, buyer, seller, admin):
    """Create an escrow through the API and drive it to ``status``."""

    path = ["created", "funded", "shipped", "confirmed", "released", "completed"]

    def _make(status: str = "created", amount: str = "100", ref: str | None = None) -> dict:
        response = client.post(
            "/api/escrow",
            json={"seller_id": seller["id"], "amount": amount},
            headers=headers_for(buyer),
        )
        assert response.status_code == 201, response.text
        escrow = response.json()["escrow"]
        escrow_id = escrow["id"]

        if status == "cancelled":
            response = client.post(f"/api/escrow/{escrow_id}/cancel", headers=headers_for(buyer))
            assert response.status_code == 200, response.text
            return response.json()["escrow"]

        for step in path[1 : path.index(status) + 1]:
            if step == "funded":
                response = client.post(
                    f"/api/escrow/{escrow_id}/fund",
                    json={"method": "qr", "pg_reference": ref or f"ref-{escrow_id[:8]}"},
                    headers=headers_for(buyer),
                )
            elif step == "shipped":
                response = client.post(
                    f"/api/escrow/{escrow_id}/ship",
                    json={"tracking_number": "TRK1"},
                    headers=headers_for(seller),
                )
            elif step == "confirmed":
                response = client.post(f"/api/escrow/{escrow_id}/confirm", headers=headers_for(buyer))
            elif step == "released":
                response = client.post(f"/api/escrow/{escrow_id}/release", headers=headers_for(buyer))
            elif step == "completed":
                response = client.post(
                    f"/api/admin/escrows/{escrow_id}/complete", headers=headers_for(admin)
                )
            assert response.status_code == 200, response.text
            escrow = response.json()["escrow"]
        return escrow

    return _make


@pytest.fixture
def auth_headers():
    """Factory for bearer auth headers: ``auth_headers(user)``."""
    return headers_for
