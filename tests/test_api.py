import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from errors import ProviderError
from main import app, get_db, get_provider
from models import Category


@pytest.fixture
def provider_box():
    return {"provider": lambda prompt: "Spend less on takeaway."}


@pytest.fixture
def client(provider_box):
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    with TestingSession() as session:
        session.add_all(
            [Category(user_id=None, name="Salary"), Category(user_id=None, name="Food")]
        )
        session.commit()

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provider] = lambda: provider_box["provider"]
    yield TestClient(app)
    app.dependency_overrides.clear()


def _register(client, name="Dana") -> dict[str, str]:
    resp = client.post("/api/users", json={"name": name})
    assert resp.status_code == 201
    return {"X-User-Id": str(resp.json()["id"])}


def _category_id(client, headers, name) -> int:
    categories = client.get("/api/categories", headers=headers).json()
    return next(c["id"] for c in categories if c["name"] == name)


def _txn(category_id, **overrides) -> dict[str, object]:
    body = {
        "date": "2025-07-03",
        "type": "expense",
        "amount_cents": 500,
        "category_id": category_id,
    }
    body.update(overrides)
    return body


def test_owner_header_is_required(client) -> None:
    resp = client.get("/api/transactions")
    assert resp.status_code == 400


def test_transaction_lifecycle_and_summary(client) -> None:
    headers = _register(client)
    food = _category_id(client, headers, "Food")
    salary = _category_id(client, headers, "Salary")

    for body in [
        _txn(salary, type="income", amount_cents=100_000),
        _txn(food, date="2025-07-10", amount_cents=15_000),
        _txn(food, date="2025-08-01", amount_cents=4_000),
    ]:
        resp = client.post("/api/transactions", json=body, headers=headers)
        assert resp.status_code == 201

    resp = client.get(
        "/api/transactions/summary",
        params={"period": "month", "month": "2025-07"},
        headers=headers,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert (body["income"], body["expense"], body["balance"]) == (
        100_000,
        15_000,
        85_000,
    )
    assert body["period"] == {
        "slug": "2025-07",
        "start": "2025-07-01",
        "end": "2025-08-01",
    }

    resp = client.get(
        "/api/reports/category-breakdown",
        params={"period": "custom", "start": "2025-07-01", "end": "2025-09-01"},
        headers=headers,
    )
    assert resp.json()["items"] == [{"category": "Food", "amount_cents": 19_000}]
    assert resp.json()["total"] == 19_000
    assert resp.json()["type"] == "expense"

    resp = client.get(
        "/api/reports/category-breakdown",
        params={"period": "month", "month": "2025-07", "type": "income"},
        headers=headers,
    )
    assert resp.json()["type"] == "income"
    assert resp.json()["items"] == [{"category": "Salary", "amount_cents": 100_000}]

    resp = client.get(
        "/api/reports/category-breakdown",
        params={"type": "transfer"},
        headers=headers,
    )
    assert resp.status_code == 400


def test_validation_errors_map_to_400(client) -> None:
    headers = _register(client)
    food = _category_id(client, headers, "Food")

    for body in [
        _txn(food, amount_cents=-1),
        _txn(food, amount_cents=10**20),
        _txn(food, type="gift"),
        _txn(999),
    ]:
        resp = client.post("/api/transactions", json=body, headers=headers)
        assert resp.status_code == 400

    resp = client.get(
        "/api/transactions/summary", params={"period": "custom"}, headers=headers
    )
    assert resp.status_code == 400

    resp = client.get(
        "/api/transactions/summary",
        params={"period": "month", "month": "9999-12"},
        headers=headers,
    )
    assert resp.status_code == 400

    resp = client.get(
        "/api/reports/monthly-series", params={"months": 10**6}, headers=headers
    )
    assert resp.status_code == 400


def test_other_users_records_are_hidden(client) -> None:
    alice = _register(client, "Alice")
    bob = _register(client, "Bob")
    food = _category_id(client, alice, "Food")

    created = client.post("/api/transactions", json=_txn(food), headers=alice).json()
    url = f"/api/transactions/{created['id']}"

    assert client.get("/api/transactions", headers=bob).json() == []
    assert client.put(url, json=_txn(food, amount_cents=1), headers=bob).status_code == 404
    assert client.delete(url, headers=bob).status_code == 404
    assert client.get("/api/transactions", headers=alice).json()[0]["amount_cents"] == 500

    pets = client.post("/api/categories", json={"name": "Pets"}, headers=alice).json()
    pets_url = f"/api/categories/{pets['id']}"
    assert client.delete(pets_url, headers=bob).status_code == 403
    assert client.delete("/api/categories/9999", headers=bob).status_code == 404
    assert client.delete(pets_url, headers=alice).status_code == 204

    assert client.delete(url, headers=alice).status_code == 204
    assert client.delete(url, headers=alice).status_code == 404


def test_income_endpoints(client) -> None:
    headers = _register(client)
    resp = client.post(
        "/api/users/me/income/salaries",
        json={"salaries_cents": [300_000, 0, 320_000]},
        headers=headers,
    )
    assert resp.json()["average_income_cents"] == 310_000

    resp = client.put(
        "/api/users/me/income", json={"average_income_cents": 5}, headers=headers
    )
    assert resp.status_code == 200
    me = client.get("/api/users/me", headers=headers).json()
    assert me["average_income_cents"] == 5


def test_generate_and_history(client, provider_box) -> None:
    headers = _register(client)

    resp = client.post(
        "/api/suggestions/generate",
        json={"prompt": "Where can I save?"},
        headers=headers,
    )
    assert resp.status_code == 201
    assert resp.json()["response"] == "Spend less on takeaway."
    assert 'concisely: "Where can I save?"' in resp.json()["prompt"]

    def broken(prompt):
        raise ProviderError("upstream 503")

    provider_box["provider"] = broken
    resp = client.post("/api/suggestions/generate", json={}, headers=headers)
    assert resp.status_code == 502
    assert resp.json()["detail"] == "AI request failed. Please try again."

    history = client.get("/api/suggestions", headers=headers).json()
    assert len(history) == 1


def test_csv_export_labels_deleted_categories(client) -> None:
    headers = _register(client)
    pets = client.post("/api/categories", json={"name": "Pets"}, headers=headers).json()
    client.post(
        "/api/transactions",
        json=_txn(pets["id"], amount_cents=1_999, description="=cmd"),
        headers=headers,
    )
    client.delete(f"/api/categories/{pets['id']}", headers=headers)

    resp = client.get(
        "/api/transactions/export.csv",
        params={"period": "month", "month": "2025-07"},
        headers=headers,
    )
    lines = resp.text.splitlines()
    assert lines[0] == "Date,Type,Amount,Category,Description"
    assert lines[1] == "2025-07-03,expense,19.99,Uncategorized,\t=cmd"
