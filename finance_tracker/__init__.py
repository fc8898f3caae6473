import os
import secrets
from datetime import date
from functools import wraps

from flask import Flask, g, jsonify, request, session
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

from .db import STORE_ERRORS, connect_db, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .importer import (
    SUPPORTED_EXTENSIONS,
    CandidateTransaction,
    ImportPipelineError,
    InvalidSubmission,
    MalformedRow,
    NoDestinationAccount,
    PersistenceFailed,
    UnsupportedFormat,
    candidate_from_payload,
    commit_import,
    normalize_fields,
    parse_csv,
    parse_ofx,
    parse_statement,
    preview_payload,
    resolve_candidates,
)
from .reports import REPORT_TYPES, build_report
from .store import BUDGET_PERIODS, KINDS, LedgerStore, RecordInUse, RecordNotFound


class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be opened or migrated."""


DEFAULT_CATEGORIES = [
    ("Salary", "income", "#16a34a"),
    ("Other Income", "income", "#22c55e"),
    ("Groceries", "expense", "#f97316"),
    ("Restaurants", "expense", "#ef4444"),
    ("Housing", "expense", "#8b5cf6"),
    ("Utilities", "expense", "#0ea5e9"),
    ("Transport", "expense", "#eab308"),
    ("Fuel", "expense", "#f59e0b"),
    ("Health", "expense", "#ec4899"),
    ("Entertainment", "expense", "#6366f1"),
]
TRANSACTION_PAGE_SIZE = 50


def json_error(message, status):
    return jsonify({"error": message}), status


def parse_int(value):
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_positive_amount(value):
    if isinstance(value, bool):
        return None
    try:
        amount = round(float(value), 2)
    except (TypeError, ValueError):
        return None
    return amount if amount > 0 else None


def parse_iso_date(value):
    try:
        return date.fromisoformat((value or "").strip()).isoformat()
    except (AttributeError, ValueError):
        return None


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY="dev",
        DATABASE=os.path.join(app.instance_path, "finance_tracker.sqlite"),
        AUTH_ENABLED=True,
        DEMO_USERNAME="demo",
        MAX_CONTENT_LENGTH=5 * 1024 * 1024,
        LOG_LEVEL="INFO",
    )
    app.config.from_prefixed_env("FINANCE_TRACKER")

    if test_config is not None:
        app.config.update(test_config)

    app.logger.setLevel(str(app.config["LOG_LEVEL"]).upper())
    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def database_config():
        return parse_database_config(app.config["DATABASE"])

    def get_db():
        if "db" not in g:
            try:
                g.db = connect_db(database_config())
            except STORE_ERRORS as exc:
                message = f"Unable to open database at {app.config['DATABASE']}: {exc}"
                app.logger.error(message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def get_store():
        if "store" not in g:
            g.store = LedgerStore(get_db())
        return g.store

    def init_db():
        try:
            apply_migrations(database_config())
            app.config["DB_INIT_ERROR"] = None
        except (*STORE_ERRORS, OSError, RuntimeError) as exc:
            message = f"Failed to initialize database at {app.config['DATABASE']}: {exc}"
            app.logger.error(message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(database_config()))
        except STORE_ERRORS as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    @app.errorhandler(ImportPipelineError)
    def handle_import_error(exc):
        app.logger.warning("Import rejected: %s", exc)
        return json_error(str(exc), exc.status_code)

    @app.errorhandler(RecordNotFound)
    def handle_not_found(exc):
        return json_error(str(exc), 404)

    @app.errorhandler(RecordInUse)
    def handle_in_use(exc):
        return json_error(str(exc), 400)

    @app.errorhandler(DatabaseInitError)
    def handle_db_init_error(exc):
        return json_error(str(exc), 500)

    def handle_store_error(exc):
        app.logger.exception("Database error while handling %s %s", request.method, request.path)
        return json_error("Internal server error", 500)

    for store_error in STORE_ERRORS:
        app.register_error_handler(store_error, handle_store_error)

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        if request.path.startswith("/api/"):
            return json_error(exc.description, exc.code)
        return exc

    def ensure_default_categories(user_id):
        store = get_store()
        existing = {row["name"] for row in store.list_categories(user_id)}
        for name, kind, color in DEFAULT_CATEGORIES:
            if name not in existing:
                store.create_category(user_id, name, kind, color)

    def ensure_demo_user():
        store = get_store()
        username = app.config["DEMO_USERNAME"]
        user = store.get_user_by_username(username)
        if user is None:
            user_id = store.create_user(username, generate_password_hash(secrets.token_urlsafe(16)))
            ensure_default_categories(user_id)
            user = store.get_user(user_id)
        return user

    @app.before_request
    def load_logged_in_user():
        if app.config.get("DB_INIT_ERROR"):
            return json_error(app.config["DB_INIT_ERROR"], 500)

        if not app.config["AUTH_ENABLED"]:
            g.user = ensure_demo_user()
            return None

        user_id = session.get("user_id")
        g.user = None if user_id is None else get_store().get_user(user_id)
        return None

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if g.user is None:
                return json_error("Unauthorized", 401)
            return view(**kwargs)

        return wrapped_view

    def request_json():
        body = request.get_json(silent=True)
        return body if isinstance(body, dict) else {}

    # auth

    @app.post("/api/auth/register")
    def register():
        body = request_json()
        username = (body.get("username") or "").strip()
        password = body.get("password") or ""
        if not username:
            return json_error("Username is required.", 400)
        if not password:
            return json_error("Password is required.", 400)

        store = get_store()
        if store.get_user_by_username(username) is not None:
            return json_error("User already exists.", 400)
        user_id = store.create_user(username, generate_password_hash(password))
        ensure_default_categories(user_id)
        app.logger.info("Registered user %s", username)
        return jsonify({"user": {"id": user_id, "username": username}}), 201

    @app.post("/api/auth/login")
    def login():
        body = request_json()
        username = (body.get("username") or "").strip()
        user = get_store().get_user_by_username(username)
        if user is None or not check_password_hash(user["password_hash"], body.get("password") or ""):
            return json_error("Incorrect username or password.", 401)

        session.clear()
        session["user_id"] = user["id"]
        return jsonify({"user": {"id": user["id"], "username": user["username"]}})

    @app.post("/api/auth/logout")
    def logout():
        session.clear()
        return jsonify({"success": True})

    @app.get("/api/auth/session")
    def current_session():
        if g.user is None:
            return jsonify({"authenticated": False})
        return jsonify({"authenticated": True, "user": {"id": g.user["id"], "username": g.user["username"]}})

    # statement import

    @app.post("/api/import")
    @login_required
    def import_statement():
        upload = request.files.get("file")
        if upload is None or not upload.filename:
            return json_error("No file uploaded", 400)

        result = parse_statement(upload.filename, upload.read())
        app.logger.info(
            "Parsed %s: %s transactions, %s rows skipped",
            upload.filename,
            len(result.transactions),
            len(result.skipped),
        )
        return jsonify(preview_payload(result))

    @app.post("/api/import/confirm")
    @login_required
    def confirm_import():
        items = request_json().get("transactions")
        if not isinstance(items, list):
            raise InvalidSubmission()
        if not items:
            raise InvalidSubmission("No transactions to import")

        candidates = [candidate_from_payload(item) for item in items]
        result = commit_import(get_store(), g.user["id"], candidates)
        return jsonify({"success": True, "imported": result.imported, "message": result.message})

    # account types and accounts

    @app.get("/api/account-types")
    @login_required
    def account_types():
        return jsonify({"account_types": get_store().list_account_types()})

    @app.get("/api/accounts")
    @login_required
    def list_accounts():
        return jsonify({"accounts": get_store().list_accounts(g.user["id"])})

    @app.post("/api/accounts")
    @login_required
    def create_account():
        body = request_json()
        name = (body.get("name") or "").strip()
        account_type_id = parse_int(body.get("account_type_id"))
        try:
            opening_balance = round(float(body.get("opening_balance")), 2)
        except (TypeError, ValueError):
            opening_balance = None
        if not name or account_type_id is None or opening_balance is None:
            return json_error("Missing required fields", 400)

        store = get_store()
        if account_type_id not in {row["id"] for row in store.list_account_types()}:
            return json_error("Unknown account type", 400)
        account = store.create_account(
            g.user["id"], name, account_type_id, opening_balance, body.get("active", True)
        )
        return jsonify({"account": account}), 201

    @app.put("/api/accounts/<int:account_id>")
    @login_required
    def update_account(account_id):
        body = request_json()
        name = body.get("name")
        if name is not None and not str(name).strip():
            return json_error("Account name is required.", 400)
        account = get_store().update_account(
            g.user["id"],
            account_id,
            str(name).strip() if name is not None else None,
            parse_int(body.get("account_type_id")),
            body.get("active"),
        )
        return jsonify({"account": account})

    @app.delete("/api/accounts/<int:account_id>")
    @login_required
    def delete_account(account_id):
        get_store().delete_account(g.user["id"], account_id)
        return jsonify({"success": True})

    # categories

    @app.get("/api/categories")
    @login_required
    def list_categories():
        kind = request.args.get("kind") or None
        return jsonify({"categories": get_store().list_categories(g.user["id"], kind)})

    @app.post("/api/categories")
    @login_required
    def create_category():
        body = request_json()
        name = (body.get("name") or "").strip()
        kind = body.get("kind")
        if not name or kind not in KINDS:
            return json_error("Missing required fields", 400)

        store = get_store()
        if any(row["name"] == name for row in store.list_categories(g.user["id"])):
            return json_error("Category already exists.", 400)
        category = store.create_category(
            g.user["id"], name, kind, body.get("color") or "#6366f1", body.get("icon")
        )
        return jsonify({"category": category}), 201

    @app.put("/api/categories/<int:category_id>")
    @login_required
    def update_category(category_id):
        body = request_json()
        kind = body.get("kind")
        if kind is not None and kind not in KINDS:
            return json_error("Invalid category kind", 400)
        name = body.get("name")
        if name is not None and not str(name).strip():
            return json_error("Category name is required.", 400)
        category = get_store().update_category(
            g.user["id"],
            category_id,
            name=str(name).strip() if name is not None else None,
            kind=kind,
            color=body.get("color"),
            icon=body.get("icon"),
        )
        return jsonify({"category": category})

    @app.delete("/api/categories/<int:category_id>")
    @login_required
    def delete_category(category_id):
        get_store().delete_category(g.user["id"], category_id)
        return jsonify({"success": True})

    # transactions

    def transaction_values(body):
        values = {
            "account_id": parse_int(body.get("account_id")),
            "category_id": parse_int(body.get("category_id")),
            "description": (body.get("description") or "").strip(),
            "amount": parse_positive_amount(body.get("amount")),
            "kind": body.get("kind"),
            "date": parse_iso_date(body.get("date")),
            "notes": body.get("notes"),
        }
        required = ("account_id", "description", "amount", "kind", "date")
        if any(not values[key] for key in required) or values["kind"] not in KINDS:
            return None
        if values["category_id"] is not None:
            get_store().get_category(g.user["id"], values["category_id"])
        return values

    @app.get("/api/transactions")
    @login_required
    def list_transactions():
        limit = parse_int(request.args.get("limit")) or TRANSACTION_PAGE_SIZE
        offset = parse_int(request.args.get("offset")) or 0
        filters = {
            "category_id": parse_int(request.args.get("category_id")),
            "account_id": parse_int(request.args.get("account_id")),
            "kind": request.args.get("kind") or None,
            "start": parse_iso_date(request.args.get("start")),
            "end": parse_iso_date(request.args.get("end")),
        }
        transactions = get_store().list_transactions(g.user["id"], filters, limit=limit, offset=offset)
        return jsonify({"transactions": transactions})

    @app.post("/api/transactions")
    @login_required
    def create_transaction():
        values = transaction_values(request_json())
        if values is None:
            return json_error("Missing required fields", 400)
        transaction = get_store().create_transaction(g.user["id"], values)
        return jsonify({"transaction": transaction}), 201

    @app.put("/api/transactions/<int:transaction_id>")
    @login_required
    def update_transaction(transaction_id):
        get_store().get_transaction(g.user["id"], transaction_id)
        values = transaction_values(request_json())
        if values is None:
            return json_error("Missing required fields", 400)
        transaction = get_store().update_transaction(g.user["id"], transaction_id, values)
        return jsonify({"transaction": transaction})

    @app.delete("/api/transactions/<int:transaction_id>")
    @login_required
    def delete_transaction(transaction_id):
        get_store().delete_transaction(g.user["id"], transaction_id)
        return jsonify({"success": True})

    # budgets

    def budget_values(body):
        values = {
            "category_id": parse_int(body.get("category_id")),
            "limit_amount": parse_positive_amount(body.get("limit_amount")),
            "period": body.get("period"),
            "month": parse_int(body.get("month")),
            "year": parse_int(body.get("year")),
            "active": body.get("active", True),
        }
        if values["category_id"] is None or values["limit_amount"] is None or values["year"] is None:
            return None, "Missing required fields"
        if values["period"] not in BUDGET_PERIODS:
            return None, "Missing required fields"
        if values["period"] == "monthly":
            if values["month"] is None:
                return None, "Month is required for monthly budgets"
            if not 1 <= values["month"] <= 12:
                return None, "Month must be between 1 and 12"
        else:
            values["month"] = None
        get_store().get_category(g.user["id"], values["category_id"])
        return values, None

    @app.get("/api/budgets")
    @login_required
    def list_budgets():
        store = get_store()
        year = parse_int(request.args.get("year")) or date.today().year
        budgets = store.list_budgets(g.user["id"], year, parse_int(request.args.get("month")))
        for budget in budgets:
            spent = store.budget_spending(g.user["id"], budget)
            limit_amount = float(budget["limit_amount"])
            budget["spent"] = spent
            budget["percent_used"] = round(spent / limit_amount * 100, 2) if limit_amount > 0 else 0
        return jsonify({"budgets": budgets})

    @app.post("/api/budgets")
    @login_required
    def create_budget():
        values, error = budget_values(request_json())
        if error:
            return json_error(error, 400)
        store = get_store()
        if store.find_budget(g.user["id"], values["category_id"], values["period"], values["year"], values["month"]):
            return json_error("Budget already exists for this category and period", 400)
        return jsonify({"budget": store.create_budget(g.user["id"], values)}), 201

    @app.put("/api/budgets/<int:budget_id>")
    @login_required
    def update_budget(budget_id):
        store = get_store()
        store.get_budget(g.user["id"], budget_id)
        values, error = budget_values(request_json())
        if error:
            return json_error(error, 400)
        if store.find_budget(
            g.user["id"], values["category_id"], values["period"], values["year"], values["month"], exclude_id=budget_id
        ):
            return json_error("Budget already exists for this category and period", 400)
        return jsonify({"budget": store.update_budget(g.user["id"], budget_id, values)})

    @app.delete("/api/budgets/<int:budget_id>")
    @login_required
    def delete_budget(budget_id):
        get_store().delete_budget(g.user["id"], budget_id)
        return jsonify({"success": True})

    # reports

    @app.get("/api/reports")
    @login_required
    def reports():
        report_type = request.args.get("type") or "summary"
        if report_type not in REPORT_TYPES:
            return json_error(f"Unknown report type: {report_type}", 400)

        filters = {
            "start": parse_iso_date(request.args.get("start")),
            "end": parse_iso_date(request.args.get("end")),
            "account_id": parse_int(request.args.get("account_id")),
            "category_id": parse_int(request.args.get("category_id")),
        }
        transactions = get_store().list_transactions(g.user["id"], filters)
        payload = build_report(report_type, transactions)
        payload["transactions"] = transactions
        payload["filters"] = dict(filters, type=report_type)
        return jsonify(payload)

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.get_store = get_store
    app.init_db = init_db
    return app


__all__ = [
    "SUPPORTED_EXTENSIONS",
    "CandidateTransaction",
    "DEFAULT_CATEGORIES",
    "DatabaseInitError",
    "ImportPipelineError",
    "MalformedRow",
    "NoDestinationAccount",
    "PersistenceFailed",
    "UnsupportedFormat",
    "commit_import",
    "create_app",
    "normalize_fields",
    "parse_csv",
    "parse_ofx",
    "parse_statement",
    "resolve_candidates",
]
