"""Repository over the finance tables.

A ``LedgerStore`` wraps one open connection. The Flask app builds one per
request around the connection kept in ``flask.g``; tests build their own.
Every read and write is scoped by ``user_id``.
"""

import calendar
import logging

from .db import row_to_dict

logger = logging.getLogger(__name__)

KINDS = ("income", "expense")
BUDGET_PERIODS = ("monthly", "yearly")
TRANSACTION_COLUMNS = (
    "user_id",
    "account_id",
    "category_id",
    "description",
    "amount",
    "kind",
    "date",
)


class RecordNotFound(LookupError):
    """Raised when a user-scoped row does not exist."""


class RecordInUse(ValueError):
    """Raised when deleting a row that transactions still reference."""


def balance_delta(kind, amount):
    """Signed effect of one transaction on its account balance."""
    magnitude = abs(float(amount))
    return -magnitude if kind == "expense" else magnitude


def month_bounds(year, month):
    last_day = calendar.monthrange(year, month)[1]
    return f"{year:04d}-{month:02d}-01", f"{year:04d}-{month:02d}-{last_day:02d}"


class LedgerStore:
    def __init__(self, conn):
        self.conn = conn

    def transaction(self):
        return self.conn.transaction()

    # users

    def create_user(self, username, password_hash):
        with self.transaction():
            return self.conn.insert(
                "INSERT INTO users (username, password_hash) VALUES (?, ?)",
                (username, password_hash),
            )

    def get_user(self, user_id):
        return self.conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()

    def get_user_by_username(self, username):
        return self.conn.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()

    # account types

    def list_account_types(self):
        rows = self.conn.execute("SELECT id, name, description FROM account_types ORDER BY name").fetchall()
        return [row_to_dict(row) for row in rows]

    # accounts

    def list_accounts(self, user_id):
        rows = self.conn.execute(
            """
            SELECT a.*, t.name AS account_type_name
            FROM accounts a
            LEFT JOIN account_types t ON t.id = a.account_type_id
            WHERE a.user_id = ?
            ORDER BY a.id
            """,
            (user_id,),
        ).fetchall()
        return [row_to_dict(row) for row in rows]

    def get_account(self, user_id, account_id):
        row = self.conn.execute(
            "SELECT * FROM accounts WHERE id = ? AND user_id = ?",
            (account_id, user_id),
        ).fetchone()
        if row is None:
            raise RecordNotFound(f"Account {account_id} not found")
        return row_to_dict(row)

    def create_account(self, user_id, name, account_type_id, opening_balance, active=True):
        with self.transaction():
            account_id = self.conn.insert(
                """
                INSERT INTO accounts (user_id, account_type_id, name, opening_balance, current_balance, active)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (user_id, account_type_id, name, opening_balance, opening_balance, int(bool(active))),
            )
        return self.get_account(user_id, account_id)

    def update_account(self, user_id, account_id, name, account_type_id, active):
        current = self.get_account(user_id, account_id)
        with self.transaction():
            self.conn.execute(
                """
                UPDATE accounts
                SET name = ?, account_type_id = ?, active = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND user_id = ?
                """,
                (
                    name if name is not None else current["name"],
                    account_type_id if account_type_id is not None else current["account_type_id"],
                    int(bool(active)) if active is not None else current["active"],
                    account_id,
                    user_id,
                ),
            )
        return self.get_account(user_id, account_id)

    def delete_account(self, user_id, account_id):
        self.get_account(user_id, account_id)
        used = self.conn.execute(
            "SELECT 1 FROM transactions WHERE account_id = ? LIMIT 1", (account_id,)
        ).fetchone()
        if used is not None:
            raise RecordInUse("Cannot delete account with existing transactions")
        with self.transaction():
            self.conn.execute("DELETE FROM accounts WHERE id = ? AND user_id = ?", (account_id, user_id))

    def adjust_balance(self, account_id, delta):
        row = self.conn.execute("SELECT current_balance FROM accounts WHERE id = ?", (account_id,)).fetchone()
        if row is None:
            raise RecordNotFound(f"Account {account_id} not found")
        new_balance = round(float(row["current_balance"] or 0) + delta, 2)
        self.conn.execute(
            "UPDATE accounts SET current_balance = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (new_balance, account_id),
        )
        logger.debug("Account %s balance adjusted by %.2f to %.2f", account_id, delta, new_balance)
        return new_balance

    # categories

    def list_categories(self, user_id, kind=None):
        sql = "SELECT * FROM categories WHERE user_id = ?"
        params = [user_id]
        if kind:
            sql += " AND kind = ?"
            params.append(kind)
        rows = self.conn.execute(sql + " ORDER BY name", params).fetchall()
        return [row_to_dict(row) for row in rows]

    def get_category(self, user_id, category_id):
        row = self.conn.execute(
            "SELECT * FROM categories WHERE id = ? AND user_id = ?",
            (category_id, user_id),
        ).fetchone()
        if row is None:
            raise RecordNotFound(f"Category {category_id} not found")
        return row_to_dict(row)

    def create_category(self, user_id, name, kind, color="#6366f1", icon=None):
        with self.transaction():
            category_id = self.conn.insert(
                "INSERT INTO categories (user_id, name, kind, color, icon) VALUES (?, ?, ?, ?, ?)",
                (user_id, name, kind, color, icon),
            )
        return self.get_category(user_id, category_id)

    def update_category(self, user_id, category_id, **changes):
        current = self.get_category(user_id, category_id)
        merged = {key: changes.get(key) if changes.get(key) is not None else current[key] for key in ("name", "kind", "color", "icon")}
        with self.transaction():
            self.conn.execute(
                "UPDATE categories SET name = ?, kind = ?, color = ?, icon = ? WHERE id = ? AND user_id = ?",
                (merged["name"], merged["kind"], merged["color"], merged["icon"], category_id, user_id),
            )
        return self.get_category(user_id, category_id)

    def delete_category(self, user_id, category_id):
        self.get_category(user_id, category_id)
        used = self.conn.execute(
            "SELECT 1 FROM transactions WHERE category_id = ? LIMIT 1", (category_id,)
        ).fetchone()
        if used is not None:
            raise RecordInUse("Cannot delete category with existing transactions")
        with self.transaction():
            self.conn.execute("DELETE FROM budgets WHERE category_id = ? AND user_id = ?", (category_id, user_id))
            self.conn.execute("DELETE FROM categories WHERE id = ? AND user_id = ?", (category_id, user_id))

    # transactions

    def list_transactions(self, user_id, filters=None, limit=None, offset=0):
        filters = filters or {}
        where = ["t.user_id = ?"]
        params = [user_id]
        for column, key in (("t.category_id", "category_id"), ("t.account_id", "account_id"), ("t.kind", "kind")):
            if filters.get(key) not in (None, ""):
                where.append(f"{column} = ?")
                params.append(filters[key])
        if filters.get("start"):
            where.append("t.date >= ?")
            params.append(filters["start"])
        if filters.get("end"):
            where.append("t.date <= ?")
            params.append(filters["end"])

        sql = f"""
            SELECT t.*, c.name AS category_name, c.color AS category_color, a.name AS account_name
            FROM transactions t
            LEFT JOIN categories c ON c.id = t.category_id
            LEFT JOIN accounts a ON a.id = t.account_id
            WHERE {' AND '.join(where)}
            ORDER BY t.date DESC, t.id DESC
        """
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        return [row_to_dict(row) for row in self.conn.execute(sql, params).fetchall()]

    def get_transaction(self, user_id, transaction_id):
        row = self.conn.execute(
            "SELECT * FROM transactions WHERE id = ? AND user_id = ?",
            (transaction_id, user_id),
        ).fetchone()
        if row is None:
            raise RecordNotFound(f"Transaction {transaction_id} not found")
        return row_to_dict(row)

    def create_transaction(self, user_id, values):
        self.get_account(user_id, values["account_id"])
        with self.transaction():
            transaction_id = self.conn.insert(
                """
                INSERT INTO transactions (user_id, account_id, category_id, description, amount, kind, date, notes)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    values["account_id"],
                    values.get("category_id"),
                    values["description"],
                    values["amount"],
                    values["kind"],
                    values["date"],
                    values.get("notes"),
                ),
            )
            self.adjust_balance(values["account_id"], balance_delta(values["kind"], values["amount"]))
        return self.get_transaction(user_id, transaction_id)

    def update_transaction(self, user_id, transaction_id, values):
        original = self.get_transaction(user_id, transaction_id)
        self.get_account(user_id, values["account_id"])
        with self.transaction():
            self.conn.execute(
                """
                UPDATE transactions
                SET account_id = ?, category_id = ?, description = ?, amount = ?, kind = ?, date = ?,
                    notes = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND user_id = ?
                """,
                (
                    values["account_id"],
                    values.get("category_id"),
                    values["description"],
                    values["amount"],
                    values["kind"],
                    values["date"],
                    values.get("notes"),
                    transaction_id,
                    user_id,
                ),
            )
            if (
                original["account_id"] != values["account_id"]
                or float(original["amount"]) != float(values["amount"])
                or original["kind"] != values["kind"]
            ):
                self.adjust_balance(original["account_id"], -balance_delta(original["kind"], original["amount"]))
                self.adjust_balance(values["account_id"], balance_delta(values["kind"], values["amount"]))
        return self.get_transaction(user_id, transaction_id)

    def delete_transaction(self, user_id, transaction_id):
        original = self.get_transaction(user_id, transaction_id)
        with self.transaction():
            self.conn.execute("DELETE FROM transactions WHERE id = ? AND user_id = ?", (transaction_id, user_id))
            self.adjust_balance(original["account_id"], -balance_delta(original["kind"], original["amount"]))

    def insert_transactions(self, rows):
        """Batch insert without balance side effects; caller owns the transaction.

        Returns the number of rows written.
        """
        if not rows:
            return 0
        placeholders = ", ".join(["?"] * len(TRANSACTION_COLUMNS))
        return self.conn.executemany(
            f"INSERT INTO transactions ({', '.join(TRANSACTION_COLUMNS)}) VALUES ({placeholders})",
            [tuple(row[column] for column in TRANSACTION_COLUMNS) for row in rows],
        )

    # budgets

    def list_budgets(self, user_id, year, month=None):
        sql = """
            SELECT b.*, c.name AS category_name, c.color AS category_color, c.icon AS category_icon
            FROM budgets b
            LEFT JOIN categories c ON c.id = b.category_id
            WHERE b.user_id = ? AND b.year = ? AND b.active = 1
        """
        params = [user_id, year]
        if month:
            sql += " AND b.month = ?"
            params.append(month)
        rows = self.conn.execute(sql + " ORDER BY b.id DESC", params).fetchall()
        return [row_to_dict(row) for row in rows]

    def get_budget(self, user_id, budget_id):
        row = self.conn.execute(
            "SELECT * FROM budgets WHERE id = ? AND user_id = ?",
            (budget_id, user_id),
        ).fetchone()
        if row is None:
            raise RecordNotFound(f"Budget {budget_id} not found")
        return row_to_dict(row)

    def find_budget(self, user_id, category_id, period, year, month=None, exclude_id=None):
        sql = "SELECT id FROM budgets WHERE user_id = ? AND category_id = ? AND period = ? AND year = ?"
        params = [user_id, category_id, period, year]
        if period == "monthly":
            sql += " AND month = ?"
            params.append(month)
        if exclude_id is not None:
            sql += " AND id != ?"
            params.append(exclude_id)
        return self.conn.execute(sql, params).fetchone()

    def create_budget(self, user_id, values):
        with self.transaction():
            budget_id = self.conn.insert(
                """
                INSERT INTO budgets (user_id, category_id, limit_amount, period, month, year, active)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    values["category_id"],
                    values["limit_amount"],
                    values["period"],
                    values.get("month"),
                    values["year"],
                    int(bool(values.get("active", True))),
                ),
            )
        return self.get_budget(user_id, budget_id)

    def update_budget(self, user_id, budget_id, values):
        self.get_budget(user_id, budget_id)
        with self.transaction():
            self.conn.execute(
                """
                UPDATE budgets
                SET category_id = ?, limit_amount = ?, period = ?, month = ?, year = ?, active = ?
                WHERE id = ? AND user_id = ?
                """,
                (
                    values["category_id"],
                    values["limit_amount"],
                    values["period"],
                    values.get("month"),
                    values["year"],
                    int(bool(values.get("active", True))),
                    budget_id,
                    user_id,
                ),
            )
        return self.get_budget(user_id, budget_id)

    def delete_budget(self, user_id, budget_id):
        self.get_budget(user_id, budget_id)
        with self.transaction():
            self.conn.execute("DELETE FROM budgets WHERE id = ? AND user_id = ?", (budget_id, user_id))

    def budget_spending(self, user_id, budget):
        if budget["period"] == "monthly" and budget.get("month"):
            start, end = month_bounds(budget["year"], budget["month"])
        else:
            start, end = f"{budget['year']:04d}-01-01", f"{budget['year']:04d}-12-31"
        row = self.conn.execute(
            """
            SELECT COALESCE(SUM(amount), 0) AS spent
            FROM transactions
            WHERE user_id = ? AND category_id = ? AND kind = 'expense' AND date BETWEEN ? AND ?
            """,
            (user_id, budget["category_id"], start, end),
        ).fetchone()
        return round(float(row["spent"] or 0), 2)
