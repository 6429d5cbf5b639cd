from datetime import date, timedelta
from decimal import Decimal
from typing import Any

from fintrack.core.config import settings
from fintrack.models.ledger import Polarity
from fintrack.services import state
from fintrack.services.parsing import CENT, now_utc

OWNER_BALANCE_TOTAL = """
    SELECT COALESCE(SUM(balance), 0) AS total, COUNT(*) AS accounts_count
    FROM accounts
    WHERE user_id=%s::uuid
"""

OWNER_TRANSACTION_TOTALS = """
    SELECT COALESCE(SUM(CASE WHEN type='income' THEN amount ELSE 0 END), 0) AS total_income,
           COALESCE(SUM(CASE WHEN type='expense' THEN amount ELSE 0 END), 0) AS total_expense,
           COUNT(*) AS transactions_count
    FROM transactions
    WHERE user_id=%s::uuid
"""

MONTHLY_TOTALS = """
    SELECT date_trunc('month', date)::date AS month,
           COALESCE(SUM(CASE WHEN type='income' THEN amount ELSE 0 END), 0) AS income,
           COALESCE(SUM(CASE WHEN type='expense' THEN amount ELSE 0 END), 0) AS expense,
           COUNT(*) AS transactions
    FROM transactions
    WHERE user_id=%s::uuid AND date >= %s
    GROUP BY 1
    ORDER BY 1 DESC
"""

NET_SINCE = """
    SELECT COALESCE(SUM(CASE WHEN type='income' THEN amount ELSE -amount END), 0) AS net
    FROM transactions
    WHERE user_id=%s::uuid AND date >= %s
"""

DAILY_TOTALS = """
    SELECT date AS day,
           COALESCE(SUM(CASE WHEN type='income' THEN amount ELSE 0 END), 0) AS income,
           COALESCE(SUM(CASE WHEN type='expense' THEN amount ELSE 0 END), 0) AS expense
    FROM transactions
    WHERE user_id=%s::uuid AND date >= %s AND date <= %s
    GROUP BY date
    ORDER BY date
"""

CATEGORY_TOTALS = """
    SELECT c.id::text AS category_id,
           c.name,
           c.icon,
           c.color,
           SUM(t.amount) AS total,
           COUNT(t.id) AS count
    FROM transactions t
    JOIN categories c ON c.id=t.category_id
    WHERE t.user_id=%s::uuid AND t.type=%s AND t.date >= %s AND t.date <= %s
    GROUP BY c.id, c.name, c.icon, c.color
    ORDER BY total DESC, c.name ASC
"""

PERIOD_DAYS = {"week": 7, "month": 30, "year": 365}


def _money(value: Any) -> Decimal:
    return Decimal(value or 0).quantize(CENT)


def invalidate_owner_cache(owner_id: str) -> None:
    state.cache.invalidate_prefix(f"{owner_id}:")


def _cached(key: str, compute):
    return state.cache.get_or_compute(key, settings.stats_cache_ttl, compute)


def _month_start(today: date, months_back: int) -> date:
    year, month = today.year, today.month - months_back
    while month <= 0:
        month += 12
        year -= 1
    return date(year, month, 1)


def get_summary(cur, owner_id: str) -> dict[str, Any]:
    def compute() -> dict[str, Any]:
        cur.execute(OWNER_BALANCE_TOTAL, (owner_id,))
        balances = cur.fetchone() or {}
        cur.execute(OWNER_TRANSACTION_TOTALS, (owner_id,))
        totals = cur.fetchone() or {}
        return {
            "balance": _money(balances.get("total")),
            "accounts_count": int(balances.get("accounts_count") or 0),
            "total_income": _money(totals.get("total_income")),
            "total_expense": _money(totals.get("total_expense")),
            "transactions_count": int(totals.get("transactions_count") or 0),
        }

    return _cached(f"{owner_id}:summary", compute)


def get_monthly_stats(cur, owner_id: str, months: int = 12, today: date | None = None) -> list[dict[str, Any]]:
    """Income/expense per calendar month, newest first; empty months are omitted."""
    today = today or now_utc().date()
    start = _month_start(today, months - 1)

    def compute() -> list[dict[str, Any]]:
        cur.execute(MONTHLY_TOTALS, (owner_id, start))
        result = []
        for row in cur.fetchall():
            income = _money(row["income"])
            expense = _money(row["expense"])
            month: date = row["month"]
            result.append(
                {
                    "month": month.strftime("%Y-%m"),
                    "year": month.year,
                    "income": income,
                    "expense": expense,
                    "balance": income - expense,
                    "transactions": int(row["transactions"] or 0),
                }
            )
        return result

    return _cached(f"{owner_id}:monthly:{start.isoformat()}", compute)


def get_balance_history(cur, owner_id: str, days: int = 30, today: date | None = None) -> list[dict[str, Any]]:
    """Daily running balance over the last ``days`` days, ending today.

    The opening balance is the current total minus everything booked inside
    the window, so the series stays anchored to the stored balances even when
    manual edits happened.
    """
    today = today or now_utc().date()
    start = today - timedelta(days=days - 1)

    def compute() -> list[dict[str, Any]]:
        cur.execute(OWNER_BALANCE_TOTAL, (owner_id,))
        current_total = _money((cur.fetchone() or {}).get("total"))
        cur.execute(NET_SINCE, (owner_id, start))
        net_in_window = _money((cur.fetchone() or {}).get("net"))
        cur.execute(DAILY_TOTALS, (owner_id, start, today))
        per_day = {row["day"]: row for row in cur.fetchall()}

        running = current_total - net_in_window
        history = []
        day = start
        while day <= today:
            row = per_day.get(day) or {}
            income = _money(row.get("income"))
            expense = _money(row.get("expense"))
            running += income - expense
            history.append({"date": day.isoformat(), "income": income, "expense": expense, "balance": running})
            day += timedelta(days=1)
        return history

    return _cached(f"{owner_id}:balance_history:{start.isoformat()}:{days}", compute)


def get_category_breakdown(
    cur,
    owner_id: str,
    polarity: Polarity,
    period: str = "month",
    date_from: date | None = None,
    date_to: date | None = None,
    today: date | None = None,
) -> dict[str, Any]:
    """Totals per category for one polarity, with each category's share in percent.

    An explicit ``date_from``/``date_to`` range wins over ``period``.
    """
    today = today or now_utc().date()
    if period not in PERIOD_DAYS:
        period = "month"
    start = date_from or today - timedelta(days=PERIOD_DAYS[period])
    end = date_to or today

    def compute() -> dict[str, Any]:
        cur.execute(CATEGORY_TOTALS, (owner_id, polarity.value, start, end))
        categories = []
        for row in cur.fetchall():
            categories.append(
                {
                    "category_id": row["category_id"],
                    "name": row["name"],
                    "icon": row["icon"],
                    "color": row["color"],
                    "amount": _money(row["total"]),
                    "count": int(row["count"] or 0),
                }
            )
        total = sum((c["amount"] for c in categories), Decimal("0.00"))
        for category in categories:
            share = category["amount"] / total * 100 if total > 0 else Decimal("0")
            category["percentage"] = share.quantize(CENT)
        return {
            "type": polarity.value,
            "period": period,
            "date_from": start.isoformat(),
            "date_to": end.isoformat(),
            "total": total,
            "categories": categories,
        }

    key = f"{owner_id}:category:{polarity.value}:{period}:{start.isoformat()}:{end.isoformat()}"
    return _cached(key, compute)
