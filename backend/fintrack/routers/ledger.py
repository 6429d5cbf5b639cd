from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Request
from fastapi.encoders import jsonable_encoder

from fintrack.core.config import settings
from fintrack.db.pool import Deadline, db_conn
from fintrack.models.ledger import (
    AccountCreateRequest,
    AccountUpdateRequest,
    CategoryCreateRequest,
    CategoryUpdateRequest,
    TransactionCreateRequest,
    TransactionUpdateRequest,
)
from fintrack.services.accounts import (
    create_account,
    delete_account,
    get_account,
    get_account_stats,
    list_accounts,
    reconcile_balances,
    set_default_account,
    update_account,
)
from fintrack.services.auth import require_owner
from fintrack.services.categories import (
    create_category,
    delete_category,
    get_category,
    list_categories,
    update_category,
)
from fintrack.services.parsing import lenient_int, lenient_polarity, now_utc
from fintrack.services.transactions import (
    build_transaction_filter,
    create_transaction,
    delete_transaction,
    get_transaction,
    list_transactions,
    update_transaction,
)

router = APIRouter(prefix="/api/v1")


def request_deadline(req: Request) -> Deadline | None:
    timeout_ms = lenient_int(req.headers.get("x-request-timeout-ms"), settings.request_timeout_ms, minimum=1)
    return Deadline.after_ms(timeout_ms)


def money_json(payload: Any) -> Any:
    """Encode Decimals as strings, the way response models render them."""
    return jsonable_encoder(payload, custom_encoder={Decimal: str})


# Transactions


@router.post("/transactions", status_code=201)
def api_create_transaction(req: Request, payload: TransactionCreateRequest):
    owner_id = require_owner(req)
    with db_conn() as conn:
        tx = create_transaction(conn, owner_id, payload, deadline=request_deadline(req))
    return {"ok": True, "transaction": tx}


@router.get("/transactions")
def api_list_transactions(
    req: Request,
    account_id: str | None = None,
    category_id: str | None = None,
    type: str | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    limit: str | None = None,
    offset: str | None = None,
):
    owner_id = require_owner(req)
    filters = build_transaction_filter(
        account_id=account_id,
        category_id=category_id,
        polarity=type,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    with db_conn() as conn, conn.cursor() as cur:
        items = list_transactions(cur, owner_id, filters)
    return {"ok": True, "transactions": items, "limit": filters.limit, "offset": filters.offset}


@router.get("/transactions/{transaction_id}")
def api_get_transaction(transaction_id: str, req: Request):
    owner_id = require_owner(req)
    with db_conn() as conn, conn.cursor() as cur:
        return {"ok": True, "transaction": get_transaction(cur, owner_id, transaction_id)}


@router.put("/transactions/{transaction_id}")
def api_update_transaction(transaction_id: str, req: Request, payload: TransactionUpdateRequest):
    owner_id = require_owner(req)
    with db_conn() as conn:
        tx = update_transaction(conn, owner_id, transaction_id, payload, deadline=request_deadline(req))
    return {"ok": True, "transaction": tx}


@router.delete("/transactions/{transaction_id}")
def api_delete_transaction(transaction_id: str, req: Request):
    owner_id = require_owner(req)
    with db_conn() as conn:
        delete_transaction(conn, owner_id, transaction_id, deadline=request_deadline(req))
    return {"ok": True}


# Accounts


@router.post("/accounts", status_code=201)
def api_create_account(req: Request, payload: AccountCreateRequest):
    owner_id = require_owner(req)
    with db_conn() as conn:
        account = create_account(conn, owner_id, payload, deadline=request_deadline(req))
    return {"ok": True, "account": account}


@router.get("/accounts")
def api_list_accounts(req: Request):
    owner_id = require_owner(req)
    with db_conn() as conn, conn.cursor() as cur:
        return {"ok": True, "accounts": list_accounts(cur, owner_id)}


@router.get("/accounts/{account_id}")
def api_get_account(account_id: str, req: Request):
    owner_id = require_owner(req)
    with db_conn() as conn, conn.cursor() as cur:
        return {"ok": True, "account": get_account(cur, owner_id, account_id)}


@router.put("/accounts/{account_id}")
def api_update_account(account_id: str, req: Request, payload: AccountUpdateRequest):
    owner_id = require_owner(req)
    with db_conn() as conn:
        account = update_account(conn, owner_id, account_id, payload, deadline=request_deadline(req))
    return {"ok": True, "account": account}


@router.delete("/accounts/{account_id}")
def api_delete_account(account_id: str, req: Request):
    owner_id = require_owner(req)
    with db_conn() as conn:
        delete_account(conn, owner_id, account_id, deadline=request_deadline(req))
    return {"ok": True}


@router.post("/accounts/{account_id}/set-default")
def api_set_default_account(account_id: str, req: Request):
    owner_id = require_owner(req)
    with db_conn() as conn:
        account = set_default_account(conn, owner_id, account_id, deadline=request_deadline(req))
    return {"ok": True, "account": account}


@router.get("/accounts/{account_id}/stats")
def api_account_stats(account_id: str, req: Request):
    owner_id = require_owner(req)
    with db_conn() as conn, conn.cursor() as cur:
        return {"ok": True, "stats": get_account_stats(cur, owner_id, account_id)}


@router.get("/balances/reconcile")
def api_reconcile_balances(req: Request):
    owner_id = require_owner(req)
    with db_conn() as conn, conn.cursor() as cur:
        report = reconcile_balances(cur, owner_id)
    return {"ok": True, "checked_at": now_utc().isoformat().replace("+00:00", "Z"), **money_json(report)}


# Categories


@router.post("/categories", status_code=201)
def api_create_category(req: Request, payload: CategoryCreateRequest):
    owner_id = require_owner(req)
    with db_conn() as conn:
        category = create_category(conn, owner_id, payload, deadline=request_deadline(req))
    return {"ok": True, "category": category}


@router.get("/categories")
def api_list_categories(req: Request, type: str | None = None):
    owner_id = require_owner(req)
    polarity = lenient_polarity(type) if type else None
    with db_conn() as conn, conn.cursor() as cur:
        return {"ok": True, "categories": list_categories(cur, owner_id, polarity)}


@router.get("/categories/{category_id}")
def api_get_category(category_id: str, req: Request):
    owner_id = require_owner(req)
    with db_conn() as conn, conn.cursor() as cur:
        return {"ok": True, "category": get_category(cur, owner_id, category_id)}


@router.put("/categories/{category_id}")
def api_update_category(category_id: str, req: Request, payload: CategoryUpdateRequest):
    owner_id = require_owner(req)
    with db_conn() as conn:
        category = update_category(conn, owner_id, category_id, payload, deadline=request_deadline(req))
    return {"ok": True, "category": category}


@router.delete("/categories/{category_id}")
def api_delete_category(category_id: str, req: Request):
    owner_id = require_owner(req)
    with db_conn() as conn:
        delete_category(conn, owner_id, category_id, deadline=request_deadline(req))
    return {"ok": True}
