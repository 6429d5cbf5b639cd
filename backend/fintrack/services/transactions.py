import uuid
from datetime import date
from decimal import Decimal
from typing import Any

from fintrack.core.config import settings
from fintrack.core.errors import InvalidArgument, NotFound
from fintrack.core.observability import track
from fintrack.db.pool import Deadline, unit_of_work
from fintrack.models.ledger import (
    AuditVerb,
    Polarity,
    Transaction,
    TransactionCreateRequest,
    TransactionFilter,
    TransactionUpdateRequest,
)
from fintrack.services import state
from fintrack.services.accounts import apply_balance_delta, lock_accounts_for_update
from fintrack.services.categories import resolve_category_type
from fintrack.services.parsing import (
    lenient_date,
    lenient_int,
    lenient_polarity,
    lenient_uuid,
    now_utc,
    parse_amount,
    parse_uuid_value,
    parse_value_date,
)
from fintrack.services.stats import invalidate_owner_cache

TRANSACTION_COLUMNS = (
    "id::text AS id, user_id::text AS user_id, account_id::text AS account_id, "
    "category_id::text AS category_id, type, amount, description, date, created_at, updated_at"
)

LOCK_TRANSACTION = f"""
    SELECT {TRANSACTION_COLUMNS}
    FROM transactions
    WHERE id=%s::uuid AND user_id=%s::uuid
    FOR UPDATE
"""

INSERT_TRANSACTION = f"""
    INSERT INTO transactions (id, user_id, account_id, category_id, type, amount, description, date, created_at, updated_at)
    VALUES (%s::uuid, %s::uuid, %s::uuid, %s::uuid, %s, %s, %s, %s, %s, %s)
    RETURNING {TRANSACTION_COLUMNS}
"""

UPDATE_TRANSACTION = f"""
    UPDATE transactions
    SET account_id=%s::uuid,
        category_id=%s::uuid,
        type=%s,
        amount=%s,
        description=%s,
        date=%s,
        updated_at=%s
    WHERE id=%s::uuid AND user_id=%s::uuid
    RETURNING {TRANSACTION_COLUMNS}
"""

DELETE_TRANSACTION = "DELETE FROM transactions WHERE id=%s::uuid AND user_id=%s::uuid"

JOINED_SELECT = """
    SELECT t.id::text AS id,
           t.user_id::text AS user_id,
           t.account_id::text AS account_id,
           t.category_id::text AS category_id,
           t.type,
           t.amount,
           t.description,
           t.date,
           t.created_at,
           t.updated_at,
           a.name AS account_name,
           c.name AS category_name,
           c.icon AS category_icon,
           c.color AS category_color
    FROM transactions t
    JOIN accounts a ON a.id=t.account_id
    JOIN categories c ON c.id=t.category_id
"""

GET_TRANSACTION = JOINED_SELECT + " WHERE t.id=%s::uuid AND t.user_id=%s::uuid"

LIST_TRANSACTIONS = JOINED_SELECT + " WHERE t.user_id=%(owner_id)s::uuid"

LIST_ORDER = " ORDER BY t.date DESC, t.created_at DESC, t.id DESC LIMIT %(limit)s OFFSET %(offset)s"

# Fields whose change moves money between or within accounts.
BALANCE_FIELDS = ("account_id", "type", "amount")


def _plain(value: Any) -> Any:
    if isinstance(value, Polarity):
        return value.value
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def _snapshot(tx: Transaction) -> dict[str, Any]:
    return {
        "id": tx.id,
        "account_id": tx.account_id,
        "category_id": tx.category_id,
        "type": tx.type.value,
        "amount": str(tx.amount),
        "description": tx.description,
        "date": tx.date.isoformat(),
    }


def _description(value: str | None) -> str:
    return (value or "").strip()


def create_transaction(
    conn,
    owner_id: str,
    payload: TransactionCreateRequest,
    deadline: Deadline | None = None,
) -> Transaction:
    account_id = parse_uuid_value(payload.account_id, "account_id")
    category_id = parse_uuid_value(payload.category_id, "category_id")
    amount = parse_amount(payload.amount)
    value_date = parse_value_date(payload.date, default_today=True)
    description = _description(payload.description)

    with track("transaction.create", owner_id=owner_id, account_id=account_id, category_id=category_id) as span:
        with unit_of_work(conn, deadline) as cur:
            polarity = resolve_category_type(cur, owner_id, category_id)
            lock_accounts_for_update(cur, owner_id, [account_id])
            now = now_utc()
            cur.execute(
                INSERT_TRANSACTION,
                (
                    str(uuid.uuid4()),
                    owner_id,
                    account_id,
                    category_id,
                    polarity.value,
                    amount,
                    description,
                    value_date,
                    now,
                    now,
                ),
            )
            created = Transaction.model_validate(cur.fetchone())
            apply_balance_delta(cur, account_id, polarity.signed(amount))
            tx = get_transaction(cur, owner_id, created.id)
        span["transaction_id"] = tx.id

    state.audit_sink.emit(owner_id, AuditVerb.CREATE, "transaction", tx.id, {"action": "created", "data": _snapshot(tx)})
    invalidate_owner_cache(owner_id)
    return tx


def update_transaction(
    conn,
    owner_id: str,
    transaction_id: str,
    payload: TransactionUpdateRequest,
    deadline: Deadline | None = None,
) -> Transaction:
    """Apply a partial update, moving the balance effect as needed.

    Only fields present in the request are considered; a field equal to its
    current value counts as unchanged. When nothing changes no row is written
    and no audit entry is emitted.
    """
    transaction_id = parse_uuid_value(transaction_id, "transaction_id")
    requested: dict[str, Any] = {}
    for field_name in ("account_id", "category_id", "amount", "date"):
        if payload.supplied(field_name) and getattr(payload, field_name) is None:
            raise InvalidArgument(f"{field_name} cannot be null")
    if payload.supplied("account_id"):
        requested["account_id"] = parse_uuid_value(payload.account_id, "account_id")
    if payload.supplied("category_id"):
        requested["category_id"] = parse_uuid_value(payload.category_id, "category_id")
    if payload.supplied("amount"):
        requested["amount"] = parse_amount(payload.amount)
    if payload.supplied("date"):
        requested["date"] = parse_value_date(payload.date)
    if payload.supplied("description"):
        requested["description"] = _description(payload.description)

    with track("transaction.update", owner_id=owner_id, transaction_id=transaction_id):
        with unit_of_work(conn, deadline) as cur:
            cur.execute(LOCK_TRANSACTION, (transaction_id, owner_id))
            row = cur.fetchone()
            if not row:
                raise NotFound("Transaction not found")
            current = Transaction.model_validate(row)

            merged: dict[str, Any] = {
                "account_id": current.account_id,
                "category_id": current.category_id,
                "type": current.type,
                "amount": current.amount,
                "description": current.description,
                "date": current.date,
            }
            merged.update(requested)
            if merged["category_id"] != current.category_id:
                merged["type"] = resolve_category_type(cur, owner_id, merged["category_id"])

            changes: dict[str, dict[str, Any]] = {}
            for field_name, new_value in merged.items():
                old_value = getattr(current, field_name)
                if new_value != old_value:
                    changes[field_name] = {"old": _plain(old_value), "new": _plain(new_value)}
            if not changes:
                return get_transaction(cur, owner_id, transaction_id)

            moves_money = any(f in changes for f in BALANCE_FIELDS)
            if moves_money:
                lock_accounts_for_update(cur, owner_id, [current.account_id, merged["account_id"]])
                apply_balance_delta(cur, current.account_id, -current.type.signed(current.amount))

            cur.execute(
                UPDATE_TRANSACTION,
                (
                    merged["account_id"],
                    merged["category_id"],
                    merged["type"].value,
                    merged["amount"],
                    merged["description"],
                    merged["date"],
                    now_utc(),
                    transaction_id,
                    owner_id,
                ),
            )
            updated = Transaction.model_validate(cur.fetchone())

            if moves_money:
                apply_balance_delta(cur, updated.account_id, updated.type.signed(updated.amount))
            tx = get_transaction(cur, owner_id, transaction_id)

    state.audit_sink.emit(
        owner_id, AuditVerb.UPDATE, "transaction", transaction_id, {"action": "updated", "changes": changes}
    )
    invalidate_owner_cache(owner_id)
    return tx


def delete_transaction(conn, owner_id: str, transaction_id: str, deadline: Deadline | None = None) -> None:
    transaction_id = parse_uuid_value(transaction_id, "transaction_id")
    with track("transaction.delete", owner_id=owner_id, transaction_id=transaction_id):
        with unit_of_work(conn, deadline) as cur:
            cur.execute(LOCK_TRANSACTION, (transaction_id, owner_id))
            row = cur.fetchone()
            if not row:
                raise NotFound("Transaction not found")
            tx = Transaction.model_validate(row)
            lock_accounts_for_update(cur, owner_id, [tx.account_id])
            cur.execute(DELETE_TRANSACTION, (transaction_id, owner_id))
            apply_balance_delta(cur, tx.account_id, -tx.type.signed(tx.amount))

    state.audit_sink.emit(
        owner_id, AuditVerb.DELETE, "transaction", transaction_id, {"action": "deleted", "data": _snapshot(tx)}
    )
    invalidate_owner_cache(owner_id)


def get_transaction(cur, owner_id: str, transaction_id: str) -> Transaction:
    cur.execute(GET_TRANSACTION, (parse_uuid_value(transaction_id, "transaction_id"), owner_id))
    row = cur.fetchone()
    if not row:
        raise NotFound("Transaction not found")
    return Transaction.model_validate(row)


def build_transaction_filter(
    account_id: Any = None,
    category_id: Any = None,
    polarity: Any = None,
    date_from: Any = None,
    date_to: Any = None,
    limit: Any = None,
    offset: Any = None,
) -> TransactionFilter:
    """Turn raw query parameters into a filter; malformed values fall back to defaults."""
    return TransactionFilter(
        account_id=lenient_uuid(account_id) if account_id else None,
        category_id=lenient_uuid(category_id) if category_id else None,
        type=lenient_polarity(polarity) if polarity else None,
        date_from=lenient_date(date_from) if date_from else None,
        date_to=lenient_date(date_to) if date_to else None,
        limit=lenient_int(limit, settings.default_page_limit, minimum=1, maximum=settings.max_page_limit),
        offset=lenient_int(offset, 0),
    )


def list_transactions(cur, owner_id: str, filters: TransactionFilter) -> list[Transaction]:
    sql = LIST_TRANSACTIONS
    params: dict[str, Any] = {"owner_id": owner_id, "limit": filters.limit, "offset": filters.offset}
    if filters.account_id:
        sql += " AND t.account_id=%(account_id)s::uuid"
        params["account_id"] = filters.account_id
    if filters.category_id:
        sql += " AND t.category_id=%(category_id)s::uuid"
        params["category_id"] = filters.category_id
    if filters.type:
        sql += " AND t.type=%(type)s"
        params["type"] = filters.type.value
    if filters.date_from:
        sql += " AND t.date >= %(date_from)s"
        params["date_from"] = filters.date_from
    if filters.date_to:
        sql += " AND t.date <= %(date_to)s"
        params["date_to"] = filters.date_to
    sql += LIST_ORDER
    cur.execute(sql, params)
    return [Transaction.model_validate(row) for row in cur.fetchall()]
