import random
from datetime import date, timedelta

from werkzeug.security import generate_password_hash

from finance_tracker import DEFAULT_CATEGORIES, create_app
from finance_tracker.store import KINDS

SAMPLE_ACCOUNTS = [
    ("Main Checking", "Checking", 1500.0),
    ("Emergency Fund", "Savings", 5000.0),
    ("Visa", "Credit Card", 0.0),
]


def main():
    app = create_app()
    with app.app_context():
        app.init_db()
        store = app.get_store()

        if store.get_user_by_username("demo") is not None:
            print("User 'demo' already exists; nothing to do.")
            return

        user_id = store.create_user("demo", generate_password_hash("demo123"))
        for name, kind, color in DEFAULT_CATEGORIES:
            store.create_category(user_id, name, kind, color)

        type_ids = {row["name"]: row["id"] for row in store.list_account_types()}
        account_ids = [
            store.create_account(user_id, name, type_ids.get(type_name), balance)["id"]
            for name, type_name, balance in SAMPLE_ACCOUNTS
        ]

        categories = {kind: [] for kind in KINDS}
        for category in store.list_categories(user_id):
            categories[category["kind"]].append(category["id"])

        start = date.today() - timedelta(days=90)
        for i in range(40):
            kind = "income" if i % 10 == 0 else "expense"
            amount = round(random.uniform(1500, 3000) if kind == "income" else random.uniform(5, 200), 2)
            store.create_transaction(
                user_id,
                {
                    "account_id": random.choice(account_ids),
                    "category_id": random.choice(categories[kind]),
                    "description": f"Sample {kind} {i + 1}",
                    "amount": amount,
                    "kind": kind,
                    "date": (start + timedelta(days=i * 2)).isoformat(),
                },
            )

    print("Sample data generated. Login with demo / demo123")


if __name__ == "__main__":
    main()
