"""Pytest configuration and fixtures."""

import os
import time
import uuid
from collections.abc import Callable, Generator
from datetime import datetime, timezone
from typing import Any
from unittest.mock import MagicMock, patch

import jwt
import pytest
import stripe
from cryptography.hazmat.primitives.asymmetric import ec
from fastapi.testclient import TestClient
from jwt.algorithms import ECAlgorithm
from postgrest.exceptions import APIError as PostgrestAPIError

# Signing key for test access tokens; its public half is the configured JWK
TEST_SIGNING_KEY = ec.generate_private_key(ec.SECP256R1())

# Set test environment variables before importing application modules
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
os.environ["SUPABASE_SIGNING_KEY_JWK"] = ECAlgorithm.to_jwk(TEST_SIGNING_KEY.public_key())
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_stripe_secret_key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_webhook_secret")
os.environ.setdefault("RESEND_API_KEY", "re_test_key")
os.environ.setdefault("SITE_URL", "https://shop.test")

from src.core.stripe import StripeClient  # noqa: E402
from src.schemas.auth import UserContext  # noqa: E402

TEST_USER_ID = "550e8400-e29b-41d4-a716-446655440000"
OTHER_USER_ID = "660e8400-e29b-41d4-a716-446655440000"


# In-memory PostgREST double


class FakeResponse:
    def __init__(self, data: Any, count: int | None = None) -> None:
        self.data = data
        self.count = count


def api_error(code: str, message: str) -> PostgrestAPIError:
    """Build the error PostgREST raises for a failed statement."""
    return PostgrestAPIError({"code": code, "message": message, "details": None, "hint": None})


# (columns, predicate) per table; the predicate scopes partial indexes
UNIQUE_CONSTRAINTS: dict[str, list[tuple[tuple[str, ...], Callable[[dict], bool] | None]]] = {
    "stripe_webhook_events": [(("event_id",), None)],
    "email_logs": [(("dedupe_key",), None)],
    "orders": [(("user_id", "cart_fingerprint"), lambda row: row.get("status") == "pending")],
}


class FakeQuery:
    """Chainable query builder evaluated against in-memory tables."""

    def __init__(self, db: "FakeSupabaseClient", table: str) -> None:
        self.db = db
        self.table = table
        self.op = "select"
        self.payload: Any = None
        self.filters: list[Callable[[dict], bool]] = []
        self.order_by: tuple[str, bool] | None = None
        self.limit_n: int | None = None
        self.single = False
        self.count_mode: str | None = None

    def select(self, *columns: str, count: str | None = None) -> "FakeQuery":
        self.op = "select"
        self.count_mode = count
        return self

    def insert(self, rows: dict | list[dict]) -> "FakeQuery":
        self.op = "insert"
        self.payload = rows
        return self

    def update(self, values: dict) -> "FakeQuery":
        self.op = "update"
        self.payload = values
        return self

    def delete(self) -> "FakeQuery":
        self.op = "delete"
        return self

    def eq(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append(lambda row: row.get(column) != value)
        return self

    def in_(self, column: str, values: list[Any]) -> "FakeQuery":
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def is_(self, column: str, value: str) -> "FakeQuery":
        assert value == "null"
        self.filters.append(lambda row: row.get(column) is None)
        return self

    def gte(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append(lambda row: row.get(column) is not None and row.get(column) >= value)
        return self

    def order(self, column: str, desc: bool = False) -> "FakeQuery":
        self.order_by = (column, desc)
        return self

    def limit(self, n: int) -> "FakeQuery":
        self.limit_n = n
        return self

    def maybe_single(self) -> "FakeQuery":
        self.single = True
        return self

    def _matching(self) -> list[dict]:
        return [row for row in self.db.tables.setdefault(self.table, []) if all(f(row) for f in self.filters)]

    def execute(self) -> FakeResponse:
        self.db.calls.append((self.table, self.op))
        failure = self.db.failures.pop((self.table, self.op), None)
        if failure is not None:
            raise failure

        if self.op == "insert":
            return FakeResponse(self._insert())
        if self.op == "update":
            rows = self._matching()
            for row in rows:
                row.update(self.payload)
            return FakeResponse([dict(row) for row in rows])
        if self.op == "delete":
            rows = self._matching()
            table = self.db.tables[self.table]
            self.db.tables[self.table] = [row for row in table if row not in rows]
            return FakeResponse([dict(row) for row in rows])

        rows = self._matching()
        if self.order_by:
            column, desc = self.order_by
            rows = sorted(rows, key=lambda row: row.get(column) or "", reverse=desc)
        if self.limit_n is not None:
            rows = rows[: self.limit_n]
        rows = [dict(row) for row in rows]
        if self.single:
            return FakeResponse(rows[0] if rows else None)
        return FakeResponse(rows, count=len(rows) if self.count_mode else None)

    def _insert(self) -> list[dict]:
        rows = self.payload if isinstance(self.payload, list) else [self.payload]
        table = self.db.tables.setdefault(self.table, [])
        inserted = []
        for values in rows:
            row = {"id": str(uuid.uuid4()), "created_at": datetime.now(timezone.utc).isoformat(), **values}
            for columns, predicate in UNIQUE_CONSTRAINTS.get(self.table, []):
                if predicate and not predicate(row):
                    continue
                key = tuple(row.get(c) for c in columns)
                for existing in table:
                    if (predicate is None or predicate(existing)) and tuple(existing.get(c) for c in columns) == key:
                        raise api_error("23505", f"duplicate key value violates unique constraint on {columns}")
            table.append(row)
            inserted.append(dict(row))
        return inserted


class FakeRpc:
    def __init__(self, db: "FakeSupabaseClient", name: str, params: dict) -> None:
        self.db = db
        self.name = name
        self.params = params

    def execute(self) -> FakeResponse:
        self.db.calls.append(("rpc", self.name))
        failure = self.db.failures.pop(("rpc", self.name), None)
        if failure is not None:
            raise failure
        return FakeResponse(self.db.rpc_handlers[self.name](self.params))


class FakeSupabaseClient:
    """Enough of supabase-py's Client for the order, license and email tables.

    ``failures[(table, op)]`` raises once on the next matching statement.
    """

    def __init__(self) -> None:
        self.tables: dict[str, list[dict]] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], Exception] = {}
        self.rpc_handlers: dict[str, Callable[[dict], Any]] = {
            "assign_licenses_atomic": self._assign_licenses,
            "decrement_inventory": self._decrement_inventory,
        }

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, name: str, params: dict) -> FakeRpc:
        return FakeRpc(self, name, params)

    def rows(self, table: str, **filters: Any) -> list[dict]:
        return [
            row for row in self.tables.get(table, []) if all(row.get(k) == v for k, v in filters.items())
        ]

    def _assign_licenses(self, params: dict) -> list[dict]:
        free = [
            row for row in self.tables.get("licenses", [])
            if row["product_id"] == params["p_product_id"] and row.get("order_id") is None
        ]
        if len(free) < params["p_quantity"]:
            raise api_error("P0001", f"insufficient licenses for product {params['p_product_id']}")
        claimed = free[: params["p_quantity"]]
        for row in claimed:
            row["order_id"] = params["p_order_id"]
        return [dict(row) for row in claimed]

    def _decrement_inventory(self, params: dict) -> None:
        product = self.rows("products", id=params["p_product_id"])[0]
        if product["inventory"] < params["p_quantity"]:
            raise api_error("P0001", f"insufficient inventory for product {params['p_product_id']}")
        product["inventory"] -= params["p_quantity"]
        return None


class FakeStripe(StripeClient):
    """Stripe double for checkout sessions; webhook verification stays real."""

    def __init__(self, settings: Any = None) -> None:
        super().__init__(settings)
        self.sessions: dict[str, dict] = {}
        self.created: list[dict] = []
        self.expired: list[str] = []
        self.create_error: Exception | None = None
        self.retrieve_error: Exception | None = None
        self.expire_error: Exception | None = None

    def create_checkout_session(self, idempotency_key: str, **params: Any) -> dict:
        if self.create_error is not None:
            raise self.create_error
        self.created.append({"idempotency_key": idempotency_key, **params})
        session_id = f"cs_test_{len(self.created)}"
        self.sessions[session_id] = {
            "id": session_id,
            "url": f"https://checkout.stripe.com/c/pay/{session_id}",
            "status": "open",
            "payment_status": "unpaid",
            "expires_at": params.get("expires_at"),
            "metadata": params.get("metadata"),
        }
        return dict(self.sessions[session_id])

    def retrieve_checkout_session(self, session_id: str) -> dict:
        if self.retrieve_error is not None:
            raise self.retrieve_error
        if session_id not in self.sessions:
            raise stripe.InvalidRequestError(f"No such checkout.session: '{session_id}'", "id")
        return dict(self.sessions[session_id])

    def expire_checkout_session(self, session_id: str) -> dict:
        if self.expire_error is not None:
            raise self.expire_error
        self.expired.append(session_id)
        self.sessions[session_id]["status"] = "expired"
        return dict(self.sessions[session_id])


# Fixtures


@pytest.fixture(scope="session")
def test_settings() -> Generator[Any, None, None]:
    """Provide test settings with cleared cache.

    Yields:
        Settings: Test configuration settings.
    """
    from src.core.config import get_settings

    # Clear the cache to ensure fresh settings
    get_settings.cache_clear()

    settings = get_settings()
    yield settings

    # Clean up cache after tests
    get_settings.cache_clear()


@pytest.fixture
def fake_db() -> FakeSupabaseClient:
    """Provide an empty in-memory Supabase client."""
    return FakeSupabaseClient()


@pytest.fixture
def catalog(fake_db: FakeSupabaseClient) -> FakeSupabaseClient:
    """Seed products, variants and a license pool.

    Returns:
        FakeSupabaseClient: The seeded client.
    """
    fake_db.tables["products"] = [
        {"id": "win11-pro", "name": "Windows 11 Pro", "base_price": "189.90", "price": None,
         "inventory": 100, "is_active": True},
        {"id": "office-2021", "name": "Office 2021 Professional Plus", "base_price": "249.00", "price": "199.00",
         "inventory": 10, "is_active": True},
        {"id": "win10-home", "name": "Windows 10 Home", "base_price": "99.00", "price": None,
         "inventory": 10, "is_active": False},
    ]
    fake_db.tables["product_variants"] = [
        {"id": "win11-pro-digital", "product_id": "win11-pro", "name": "Digital", "delivery_format": "digital",
         "price_modifier": 0, "is_active": True},
        {"id": "win11-pro-usb", "product_id": "win11-pro", "name": "USB", "delivery_format": "usb",
         "price_modifier": "15.00", "is_active": True},
        {"id": "office-2021-digital", "product_id": "office-2021", "name": "Digital",
         "delivery_format": "digital", "price_modifier": 0, "is_active": True},
        {"id": "office-2021-dvd", "product_id": "office-2021", "name": "DVD", "delivery_format": "dvd",
         "price_modifier": "9.99", "is_active": False},
    ]
    fake_db.tables["licenses"] = [
        {"id": str(uuid.uuid4()), "product_id": "win11-pro", "key_code": f"W11PR-{n:05d}-ABCDE-FGHIJ-KLMNO",
         "order_id": None, "revoked": False}
        for n in range(5)
    ] + [
        {"id": str(uuid.uuid4()), "product_id": "office-2021", "key_code": f"OF21P-{n:05d}-ABCDE-FGHIJ-KLMNO",
         "order_id": None, "revoked": False}
        for n in range(2)
    ]
    return fake_db


@pytest.fixture
def fake_stripe(test_settings: Any) -> FakeStripe:
    return FakeStripe(test_settings)


@pytest.fixture
def mock_resend() -> Generator[MagicMock, None, None]:
    """Patch the Resend send call.

    Yields:
        MagicMock: The patched ``resend.Emails.send``.
    """
    with patch("src.services.email_service.resend.Emails.send", return_value={"id": "email_test_123"}) as mock_send:
        yield mock_send


@pytest.fixture
def user() -> UserContext:
    return UserContext(user_id=uuid.UUID(TEST_USER_ID), email="buyer@example.com", role="authenticated")


@pytest.fixture
def token_factory() -> Callable[..., str]:
    """Return a helper that signs Supabase-style access tokens."""

    def create_token(
        sub: str = TEST_USER_ID,
        email: str | None = "buyer@example.com",
        exp_offset: int = 3600,
        aud: str = "authenticated",
        key: Any = None,
    ) -> str:
        now = int(time.time())
        payload = {
            "sub": sub,
            "email": email,
            "role": "authenticated",
            "exp": now + exp_offset,
            "iat": now,
            "aud": aud,
            "iss": "https://test-project.supabase.co/auth/v1",
        }
        return jwt.encode(payload, key or TEST_SIGNING_KEY, algorithm="ES256")

    return create_token


@pytest.fixture
def auth_headers(token_factory: Callable[..., str]) -> dict[str, str]:
    return {"Authorization": f"Bearer {token_factory()}"}


@pytest.fixture
def client(
    catalog: FakeSupabaseClient,
    fake_stripe: FakeStripe,
    mock_resend: MagicMock,
) -> Generator[TestClient, None, None]:
    """Provide a test client whose lifespan wires services to the fakes.

    Args:
        catalog: Seeded in-memory database.
        fake_stripe: Stripe double.
        mock_resend: Patched email provider.

    Yields:
        TestClient: FastAPI test client.
    """
    from src.main import app

    with patch("src.main.get_supabase_client", return_value=catalog), \
         patch("src.main.StripeClient", return_value=fake_stripe):
        with TestClient(app) as test_client:
            yield test_client
    app.dependency_overrides.clear()
