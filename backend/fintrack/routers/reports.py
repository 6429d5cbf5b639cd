from fastapi import APIRouter, Request

from fintrack.core.config import settings
from fintrack.db.pool import db_conn
from fintrack.models.ledger import Polarity
from fintrack.routers.ledger import money_json
from fintrack.services.audit import action_stats, list_owner_actions
from fintrack.services.auth import require_owner
from fintrack.services.parsing import lenient_date, lenient_int, lenient_polarity
from fintrack.services.stats import (
    get_balance_history,
    get_category_breakdown,
    get_monthly_stats,
    get_summary,
)

router = APIRouter(prefix="/api/v1")


@router.get("/stats/summary")
def api_stats_summary(req: Request):
    owner_id = require_owner(req)
    with db_conn() as conn, conn.cursor() as cur:
        summary = get_summary(cur, owner_id)
    return {"ok": True, **money_json(summary)}


@router.get("/stats/monthly")
def api_stats_monthly(req: Request, months: str | None = None):
    owner_id = require_owner(req)
    months_count = lenient_int(months, 12, minimum=1, maximum=120)
    with db_conn() as conn, conn.cursor() as cur:
        items = get_monthly_stats(cur, owner_id, months_count)
    return {"ok": True, "months": months_count, "items": money_json(items)}


@router.get("/stats/category")
def api_stats_category(
    req: Request,
    type: str | None = None,
    period: str | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
):
    owner_id = require_owner(req)
    polarity = lenient_polarity(type) or Polarity.EXPENSE
    with db_conn() as conn, conn.cursor() as cur:
        breakdown = get_category_breakdown(
            cur,
            owner_id,
            polarity,
            period=(period or "month").strip().lower(),
            date_from=lenient_date(date_from) if date_from else None,
            date_to=lenient_date(date_to) if date_to else None,
        )
    return {"ok": True, **money_json(breakdown)}


@router.get("/stats/balance-history")
def api_stats_balance_history(req: Request, days: str | None = None):
    owner_id = require_owner(req)
    days_count = lenient_int(days, 30, minimum=1, maximum=366)
    with db_conn() as conn, conn.cursor() as cur:
        history = get_balance_history(cur, owner_id, days_count)
    return {"ok": True, "days": days_count, "items": money_json(history)}


@router.get("/logs")
def api_owner_logs(req: Request, limit: str | None = None, offset: str | None = None):
    owner_id = require_owner(req)
    page_limit = lenient_int(limit, settings.default_page_limit, minimum=1, maximum=settings.max_page_limit)
    page_offset = lenient_int(offset, 0)
    with db_conn() as conn, conn.cursor() as cur:
        items = list_owner_actions(cur, owner_id, page_limit, page_offset)
    return {"ok": True, "logs": items, "limit": page_limit, "offset": page_offset}


@router.get("/logs/stats")
def api_owner_log_stats(req: Request, days: str | None = None):
    owner_id = require_owner(req)
    days_count = lenient_int(days, 30, minimum=1, maximum=366)
    with db_conn() as conn, conn.cursor() as cur:
        return {"ok": True, **action_stats(cur, owner_id, days_count)}
