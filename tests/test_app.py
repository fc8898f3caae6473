import io
import logging
import sqlite3
from pathlib import Path

import pytest

from finance_tracker import create_app


@pytest.fixture()
def app(tmp_path: Path):
    db_path = tmp_path / "test.sqlite"
    app = create_app({"TESTING": True, "SECRET_KEY": "test", "DATABASE": str(db_path)})

    with app.app_context():
        app.init_db()

    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def auth_client(client):
    register(client)
    login(client)
    return client


def register(client, username="user1", password="password"):
    return client.post("/api/auth/register", json={"username": username, "password": password})


def login(client, username="user1", password="password"):
    return client.post("/api/auth/login", json={"username": username, "password": password})


def create_account(client, name="Checking", opening_balance=1000, account_type_id=1):
    response = client.post(
        "/api/accounts",
        json={"name": name, "account_type_id": account_type_id, "opening_balance": opening_balance},
    )
    assert response.status_code == 201
    return response.get_json()["account"]


def category_id(client, name):
    categories = client.get("/api/categories").get_json()["categories"]
    return next(row["id"] for row in categories if row["name"] == name)


def account_balance(client, account_id):
    accounts = client.get("/api/accounts").get_json()["accounts"]
    return next(row["current_balance"] for row in accounts if row["id"] == account_id)


def upload(client, filename, content):
    data = {"file": (io.BytesIO(content.encode("utf-8")), filename)}
    return client.post("/api/import", data=data, content_type="multipart/form-data")


def test_register_login_logout(client):
    response = register(client)
    assert response.status_code == 201

    with client.application.app_context():
        db = client.application.get_db()
        user = db.execute("SELECT password_hash FROM users WHERE username = ?", ("user1",)).fetchone()
    assert user["password_hash"] != "password"

    response = login(client)
    assert response.get_json()["user"]["username"] == "user1"
    assert client.get("/api/auth/session").get_json()["authenticated"] is True

    client.post("/api/auth/logout")
    assert client.get("/api/auth/session").get_json()["authenticated"] is False


def test_login_rejects_incorrect_password(client):
    register(client)

    response = login(client, password="wrong-password")

    assert response.status_code == 401
    assert response.get_json()["error"] == "Incorrect username or password."


def test_duplicate_registration_is_rejected(client):
    register(client)

    response = register(client)

    assert response.status_code == 400
    assert response.get_json()["error"] == "User already exists."


def test_api_requires_identity(client):
    for path in ["/api/accounts", "/api/transactions", "/api/reports"]:
        response = client.get(path)
        assert response.status_code == 401
        assert response.get_json() == {"error": "Unauthorized"}

    response = client.post("/api/import/confirm", json={"transactions": []})
    assert response.status_code == 401


def test_auth_disabled_uses_demo_user(tmp_path):
    app = create_app({"TESTING": True, "DATABASE": str(tmp_path / "demo.sqlite"), "AUTH_ENABLED": False})
    client = app.test_client()

    response = client.get("/api/categories")

    assert response.status_code == 200
    assert any(row["name"] == "Salary" for row in response.get_json()["categories"])


def test_log_level_accepts_lowercase_names(tmp_path):
    app = create_app({"TESTING": True, "DATABASE": str(tmp_path / "log.sqlite"), "LOG_LEVEL": "debug"})

    assert app.logger.level == logging.DEBUG


def test_registration_seeds_default_categories(auth_client):
    categories = auth_client.get("/api/categories?kind=income").get_json()["categories"]

    assert {row["name"] for row in categories} == {"Salary", "Other Income"}


def test_import_csv_preview(auth_client):
    content = "data,descrição,valor,categoria\n2024-01-15,Salário,5000,Salário\n2024-01-16,Posto,-180.00,Fuel\nbad,Row,1,\n"

    response = upload(auth_client, "extrato.csv", content)

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["count"] == 2
    assert payload["message"] == "2 transactions found"
    assert payload["transactions"][0] == {
        "date": "2024-01-15",
        "description": "Salário",
        "amount": 5000,
        "type": "income",
        "category": "Salário",
    }
    assert payload["transactions"][1]["type"] == "expense"
    assert payload["transactions"][1]["amount"] == 180
    assert payload["skipped"] == [{"line": 4, "reason": "invalid date 'bad'"}]


def test_import_ofx_preview(auth_client):
    content = "<STMTTRN><DTPOSTED>20240113</DTPOSTED><TRNAMT>-180.00</TRNAMT><MEMO>Combustível</MEMO></STMTTRN>"

    response = upload(auth_client, "bank.OFX", content)

    assert response.get_json()["transactions"] == [
        {"date": "2024-01-13", "description": "Combustível", "amount": 180, "type": "expense"}
    ]


def test_import_rejects_unsupported_format(auth_client):
    response = upload(auth_client, "statement.pdf", "%PDF-1.4")

    assert response.status_code == 400
    assert "Unsupported file format" in response.get_json()["error"]


def test_import_requires_file(auth_client):
    response = auth_client.post("/api/import", data={}, content_type="multipart/form-data")

    assert response.status_code == 400
    assert response.get_json()["error"] == "No file uploaded"


def test_import_rejects_undecodable_bytes(auth_client):
    data = {"file": (io.BytesIO(b"date,amount\n\x81\x8d\n"), "broken.csv")}

    response = auth_client.post("/api/import", data=data, content_type="multipart/form-data")

    assert response.status_code == 400
    assert response.get_json()["error"] == "File could not be decoded as text"


def test_import_preview_does_not_touch_store(auth_client):
    account = create_account(auth_client)

    upload(auth_client, "extrato.csv", "date,description,amount\n2024-01-15,Rent,-900\n")

    assert auth_client.get("/api/transactions").get_json()["transactions"] == []
    assert account_balance(auth_client, account["id"]) == 1000


def test_import_confirm_persists_into_first_account(auth_client):
    first = create_account(auth_client, "Checking")
    create_account(auth_client, "Savings")
    fuel_id = category_id(auth_client, "Fuel")

    response = auth_client.post(
        "/api/import/confirm",
        json={
            "transactions": [
                {"date": "2024-01-13", "description": "Posto", "amount": 180, "type": "expense", "category": "FUEL"},
                {"date": "2024-01-15", "description": "Pix", "amount": 50, "type": "income", "category": "Gifts", "account": "Savings"},
            ]
        },
    )

    assert response.status_code == 200
    assert response.get_json() == {
        "success": True,
        "imported": 2,
        "message": "2 transactions imported successfully",
    }
    rows = auth_client.get("/api/transactions").get_json()["transactions"]
    by_description = {row["description"]: row for row in rows}
    assert by_description["Posto"]["category_id"] == fuel_id
    assert by_description["Pix"]["category_id"] is None
    assert {row["account_id"] for row in rows} == {first["id"]}
    assert account_balance(auth_client, first["id"]) == 1000


def test_import_confirm_without_account_rejects_batch(auth_client):
    response = auth_client.post(
        "/api/import/confirm",
        json={"transactions": [{"date": "2024-01-13", "description": "Posto", "amount": 180, "type": "expense"}]},
    )

    assert response.status_code == 400
    assert response.get_json()["error"] == "No account found to import transactions into"
    with auth_client.application.app_context():
        count = auth_client.application.get_db().execute("SELECT COUNT(*) FROM transactions").fetchone()[0]
    assert count == 0


def test_import_confirm_rejects_invalid_payloads(auth_client):
    create_account(auth_client)

    for body in [
        {},
        {"transactions": "nope"},
        {"transactions": []},
        {"transactions": [{"date": "2024-01-13", "amount": -5, "type": "expense"}]},
    ]:
        response = auth_client.post("/api/import/confirm", json=body)
        assert response.status_code == 400

    assert auth_client.get("/api/transactions").get_json()["transactions"] == []


def test_import_confirm_store_failure_is_reported(auth_client, monkeypatch):
    create_account(auth_client)

    def failing_insert(self, rows):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr("finance_tracker.store.LedgerStore.insert_transactions", failing_insert)

    response = auth_client.post(
        "/api/import/confirm",
        json={"transactions": [{"date": "2024-01-13", "description": "Posto", "amount": 180, "type": "expense"}]},
    )

    assert response.status_code == 500
    assert response.get_json()["error"] == "Failed to save imported transactions"


def test_preview_then_confirm_round_trip(auth_client):
    create_account(auth_client)
    preview = upload(
        auth_client,
        "extrato.csv",
        "date,description,amount,category\n2024-02-01,Market,-42.30,Groceries\n2024-02-02,Salary,3000,Salary\n",
    ).get_json()

    selected = [row for row in preview["transactions"] if row["type"] == "expense"]
    response = auth_client.post("/api/import/confirm", json={"transactions": selected})

    assert response.get_json()["imported"] == 1
    (row,) = auth_client.get("/api/transactions").get_json()["transactions"]
    assert row["amount"] == 42.3
    assert row["kind"] == "expense"
    assert row["category_name"] == "Groceries"


def test_account_crud(auth_client):
    types = auth_client.get("/api/account-types").get_json()["account_types"]
    assert {row["name"] for row in types} >= {"Checking", "Savings", "Credit Card"}

    account = create_account(auth_client, "Wallet", 50)
    assert account["current_balance"] == 50

    response = auth_client.put(f"/api/accounts/{account['id']}", json={"name": "Cash wallet", "active": False})
    assert response.get_json()["account"]["name"] == "Cash wallet"
    assert response.get_json()["account"]["active"] == 0

    assert auth_client.post("/api/accounts", json={"name": "x"}).status_code == 400
    assert auth_client.post("/api/accounts", json={"name": "x", "account_type_id": 999, "opening_balance": 0}).status_code == 400

    assert auth_client.delete(f"/api/accounts/{account['id']}").get_json() == {"success": True}
    assert auth_client.delete(f"/api/accounts/{account['id']}").status_code == 404


def test_account_with_transactions_cannot_be_deleted(auth_client):
    account = create_account(auth_client)
    auth_client.post(
        "/api/transactions",
        json={"account_id": account["id"], "description": "Rent", "amount": 900, "kind": "expense", "date": "2024-01-05"},
    )

    response = auth_client.delete(f"/api/accounts/{account['id']}")

    assert response.status_code == 400
    assert response.get_json()["error"] == "Cannot delete account with existing transactions"


def test_accounts_are_scoped_to_owner(client):
    register(client, "alice")
    login(client, "alice")
    account = create_account(client)
    client.post("/api/auth/logout")

    register(client, "bob")
    login(client, "bob")

    assert client.get("/api/accounts").get_json()["accounts"] == []
    assert client.put(f"/api/accounts/{account['id']}", json={"name": "mine"}).status_code == 404


def test_category_crud(auth_client):
    response = auth_client.post("/api/categories", json={"name": "Pets", "kind": "expense", "color": "#123456"})
    assert response.status_code == 201
    category = response.get_json()["category"]

    duplicate = auth_client.post("/api/categories", json={"name": "Pets", "kind": "expense"})
    assert duplicate.status_code == 400

    assert auth_client.post("/api/categories", json={"name": "Bad", "kind": "transfer"}).status_code == 400

    updated = auth_client.put(f"/api/categories/{category['id']}", json={"name": "Pet care"}).get_json()["category"]
    assert updated["name"] == "Pet care"
    assert updated["color"] == "#123456"

    assert auth_client.delete(f"/api/categories/{category['id']}").get_json() == {"success": True}


def test_category_in_use_cannot_be_deleted(auth_client):
    account = create_account(auth_client)
    fuel_id = category_id(auth_client, "Fuel")
    auth_client.post(
        "/api/transactions",
        json={
            "account_id": account["id"],
            "category_id": fuel_id,
            "description": "Posto",
            "amount": 100,
            "kind": "expense",
            "date": "2024-01-05",
        },
    )

    response = auth_client.delete(f"/api/categories/{fuel_id}")

    assert response.status_code == 400


def test_transaction_create_applies_balance_delta(auth_client):
    account = create_account(auth_client, opening_balance=1000)

    auth_client.post(
        "/api/transactions",
        json={"account_id": account["id"], "description": "Rent", "amount": 900, "kind": "expense", "date": "2024-01-05"},
    )
    auth_client.post(
        "/api/transactions",
        json={"account_id": account["id"], "description": "Salary", "amount": "2500.50", "kind": "income", "date": "2024-01-06"},
    )

    assert account_balance(auth_client, account["id"]) == 2600.5


def test_transaction_update_reverses_then_applies(auth_client):
    checking = create_account(auth_client, "Checking", 1000)
    savings = create_account(auth_client, "Savings", 500)
    created = auth_client.post(
        "/api/transactions",
        json={"account_id": checking["id"], "description": "Rent", "amount": 200, "kind": "expense", "date": "2024-01-05"},
    ).get_json()["transaction"]
    assert account_balance(auth_client, checking["id"]) == 800

    auth_client.put(
        f"/api/transactions/{created['id']}",
        json={"account_id": savings["id"], "description": "Refund", "amount": 50, "kind": "income", "date": "2024-01-05"},
    )

    assert account_balance(auth_client, checking["id"]) == 1000
    assert account_balance(auth_client, savings["id"]) == 550


def test_transaction_update_without_money_change_keeps_balance(auth_client):
    account = create_account(auth_client, opening_balance=100)
    created = auth_client.post(
        "/api/transactions",
        json={"account_id": account["id"], "description": "Lunch", "amount": 20, "kind": "expense", "date": "2024-01-05"},
    ).get_json()["transaction"]

    response = auth_client.put(
        f"/api/transactions/{created['id']}",
        json={"account_id": account["id"], "description": "Team lunch", "amount": 20, "kind": "expense", "date": "2024-01-06"},
    )

    assert response.get_json()["transaction"]["description"] == "Team lunch"
    assert account_balance(auth_client, account["id"]) == 80


def test_transaction_delete_reverses_delta(auth_client):
    account = create_account(auth_client, opening_balance=100)
    created = auth_client.post(
        "/api/transactions",
        json={"account_id": account["id"], "description": "Lunch", "amount": 20, "kind": "expense", "date": "2024-01-05"},
    ).get_json()["transaction"]

    assert auth_client.delete(f"/api/transactions/{created['id']}").get_json() == {"success": True}
    assert account_balance(auth_client, account["id"]) == 100
    assert auth_client.delete(f"/api/transactions/{created['id']}").status_code == 404


def test_transaction_validation(auth_client):
    account = create_account(auth_client)
    base = {"account_id": account["id"], "description": "Rent", "amount": 900, "kind": "expense", "date": "2024-01-05"}

    for override in [{"amount": 0}, {"kind": "transfer"}, {"date": "05/01/2024"}, {"description": ""}]:
        response = auth_client.post("/api/transactions", json=dict(base, **override))
        assert response.status_code == 400

    response = auth_client.post("/api/transactions", json=dict(base, category_id=9999))
    assert response.status_code == 404
    assert account_balance(auth_client, account["id"]) == 1000


def test_transaction_filters_and_pagination(auth_client):
    account = create_account(auth_client)
    for day, kind in [(1, "expense"), (2, "income"), (3, "expense"), (4, "expense")]:
        auth_client.post(
            "/api/transactions",
            json={"account_id": account["id"], "description": f"Day {day}", "amount": 10, "kind": kind, "date": f"2024-03-0{day}"},
        )

    expenses = auth_client.get("/api/transactions?kind=expense").get_json()["transactions"]
    assert [row["description"] for row in expenses] == ["Day 4", "Day 3", "Day 1"]

    window = auth_client.get("/api/transactions?start=2024-03-02&end=2024-03-03").get_json()["transactions"]
    assert [row["description"] for row in window] == ["Day 3", "Day 2"]

    page = auth_client.get("/api/transactions?limit=2&offset=1").get_json()["transactions"]
    assert [row["description"] for row in page] == ["Day 3", "Day 2"]


def test_budgets_track_spending(auth_client):
    account = create_account(auth_client)
    groceries = category_id(auth_client, "Groceries")
    for day, amount in [("2024-03-02", 120), ("2024-03-20", 80), ("2024-04-01", 999)]:
        auth_client.post(
            "/api/transactions",
            json={"account_id": account["id"], "category_id": groceries, "description": "Market", "amount": amount, "kind": "expense", "date": day},
        )

    response = auth_client.post(
        "/api/budgets",
        json={"category_id": groceries, "limit_amount": 400, "period": "monthly", "month": 3, "year": 2024},
    )
    assert response.status_code == 201

    duplicate = auth_client.post(
        "/api/budgets",
        json={"category_id": groceries, "limit_amount": 100, "period": "monthly", "month": 3, "year": 2024},
    )
    assert duplicate.status_code == 400

    (budget,) = auth_client.get("/api/budgets?year=2024").get_json()["budgets"]
    assert budget["spent"] == 200
    assert budget["percent_used"] == 50
    assert budget["category_name"] == "Groceries"


def test_budget_validation_update_and_delete(auth_client):
    health = category_id(auth_client, "Health")

    missing_month = auth_client.post(
        "/api/budgets", json={"category_id": health, "limit_amount": 100, "period": "monthly", "year": 2024}
    )
    assert missing_month.status_code == 400
    assert missing_month.get_json()["error"] == "Month is required for monthly budgets"

    budget = auth_client.post(
        "/api/budgets", json={"category_id": health, "limit_amount": 1200, "period": "yearly", "year": 2024, "month": 5}
    ).get_json()["budget"]
    assert budget["month"] is None

    updated = auth_client.put(
        f"/api/budgets/{budget['id']}",
        json={"category_id": health, "limit_amount": 1500, "period": "yearly", "year": 2024},
    ).get_json()["budget"]
    assert updated["limit_amount"] == 1500

    assert auth_client.delete(f"/api/budgets/{budget['id']}").get_json() == {"success": True}
    assert auth_client.get("/api/budgets?year=2024").get_json()["budgets"] == []


def test_reports(auth_client):
    checking = create_account(auth_client, "Checking")
    groceries = category_id(auth_client, "Groceries")
    for payload in [
        {"description": "Salary", "amount": 3000, "kind": "income", "date": "2024-01-05"},
        {"description": "Market", "amount": 300, "kind": "expense", "date": "2024-01-10", "category_id": groceries},
        {"description": "Cinema", "amount": 100, "kind": "expense", "date": "2024-02-10"},
    ]:
        auth_client.post("/api/transactions", json=dict(payload, account_id=checking["id"]))

    summary = auth_client.get("/api/reports?type=summary").get_json()
    assert summary["summary"] == {
        "total_income": 3000,
        "total_expenses": 400,
        "balance": 2600,
        "transaction_count": 3,
    }
    breakdown = {row["name"]: row for row in summary["category_breakdown"]}
    assert breakdown["Groceries"]["percentage"] == 75
    assert breakdown["Uncategorized"]["amount"] == 100

    monthly = auth_client.get("/api/reports?type=monthly&start=2024-01-01").get_json()
    assert monthly["monthly_trends"] == [
        {"month": "2024-01", "income": 3000, "expenses": 300, "balance": 2700},
        {"month": "2024-02", "income": 0, "expenses": 100, "balance": -100},
    ]

    accounts = auth_client.get("/api/reports?type=accounts&end=2024-01-31").get_json()
    assert accounts["account_breakdown"] == [
        {"name": "Checking", "income": 3000, "expenses": 300, "balance": 2700, "count": 2}
    ]

    assert auth_client.get("/api/reports?type=weekly").status_code == 400


def test_db_health_endpoint(client):
    response = client.get("/health/db")

    assert response.status_code == 200
    assert response.get_json()["ok"] is True
