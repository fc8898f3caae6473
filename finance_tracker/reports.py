from collections import OrderedDict

REPORT_TYPES = ("summary", "monthly", "accounts")
UNCATEGORIZED = "Uncategorized"
UNKNOWN_ACCOUNT = "Unknown account"
DEFAULT_COLOR = "#6b7280"


def _money(value):
    return round(float(value or 0), 2)


def summary_report(transactions):
    total_income = sum(_money(t["amount"]) for t in transactions if t["kind"] == "income")
    total_expenses = sum(_money(t["amount"]) for t in transactions if t["kind"] == "expense")

    breakdown = OrderedDict()
    for t in transactions:
        if t["kind"] != "expense":
            continue
        name = t.get("category_name") or UNCATEGORIZED
        entry = breakdown.setdefault(name, {"amount": 0.0, "color": t.get("category_color") or DEFAULT_COLOR, "count": 0})
        entry["amount"] += _money(t["amount"])
        entry["count"] += 1

    return {
        "summary": {
            "total_income": _money(total_income),
            "total_expenses": _money(total_expenses),
            "balance": _money(total_income - total_expenses),
            "transaction_count": len(transactions),
        },
        "category_breakdown": [
            {
                "name": name,
                "amount": _money(data["amount"]),
                "color": data["color"],
                "count": data["count"],
                "percentage": round(data["amount"] / total_expenses * 100, 2) if total_expenses > 0 else 0,
            }
            for name, data in breakdown.items()
        ],
    }


def monthly_report(transactions):
    months = {}
    for t in transactions:
        entry = months.setdefault(t["date"][:7], {"income": 0.0, "expenses": 0.0})
        if t["kind"] == "income":
            entry["income"] += _money(t["amount"])
        else:
            entry["expenses"] += _money(t["amount"])

    return {
        "monthly_trends": [
            {
                "month": month,
                "income": _money(data["income"]),
                "expenses": _money(data["expenses"]),
                "balance": _money(data["income"] - data["expenses"]),
            }
            for month, data in sorted(months.items())
        ]
    }


def accounts_report(transactions):
    accounts = OrderedDict()
    for t in transactions:
        entry = accounts.setdefault(
            t.get("account_name") or UNKNOWN_ACCOUNT,
            {"income": 0.0, "expenses": 0.0, "count": 0},
        )
        if t["kind"] == "income":
            entry["income"] += _money(t["amount"])
        else:
            entry["expenses"] += _money(t["amount"])
        entry["count"] += 1

    return {
        "account_breakdown": [
            {
                "name": name,
                "income": _money(data["income"]),
                "expenses": _money(data["expenses"]),
                "balance": _money(data["income"] - data["expenses"]),
                "count": data["count"],
            }
            for name, data in accounts.items()
        ]
    }


REPORT_BUILDERS = {
    "summary": summary_report,
    "monthly": monthly_report,
    "accounts": accounts_report,
}


def build_report(report_type, transactions):
    builder = REPORT_BUILDERS.get(report_type)
    if builder is None:
        raise ValueError(f"Unknown report type: {report_type}")
    return builder(transactions)
