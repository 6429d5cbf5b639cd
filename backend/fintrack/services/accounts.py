import uuid
from decimal import Decimal
from typing import Any

from psycopg.errors import UniqueViolation

from fintrack.core.errors import Conflict, InvalidArgument, NotFound
from fintrack.core.observability import track
from fintrack.db.pool import Deadline, unit_of_work
from fintrack.models.ledger import (
    Account,
    AccountCreateRequest,
    AccountStats,
    AccountUpdateRequest,
    AuditVerb,
)
from fintrack.services import state
from fintrack.services.categories import clone_system_categories
from fintrack.services.parsing import CENT, now_utc, parse_uuid_value, to_money
from fintrack.services.stats import invalidate_owner_cache

ACCOUNT_COLUMNS = "id::text AS id, user_id::text AS user_id, name, balance, is_default, created_at, updated_at"

GET_ACCOUNT = f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE id=%s::uuid AND user_id=%s::uuid"

LIST_ACCOUNTS = f"""
    SELECT {ACCOUNT_COLUMNS}
    FROM accounts
    WHERE user_id=%s::uuid
    ORDER BY is_default DESC, created_at ASC
"""

LOCK_ACCOUNTS = """
    SELECT id::text AS id
    FROM accounts
    WHERE user_id=%s::uuid AND id = ANY(%s::uuid[])
    ORDER BY id
    FOR UPDATE
"""

LOCK_OWNER_ACCOUNTS = f"""
    SELECT {ACCOUNT_COLUMNS}
    FROM accounts
    WHERE user_id=%s::uuid
    ORDER BY id
    FOR UPDATE
"""

APPLY_BALANCE_DELTA = """
    UPDATE accounts
    SET balance = balance + %s,
        updated_at=%s
    WHERE id=%s::uuid
    RETURNING balance
"""

CLEAR_DEFAULT = "UPDATE accounts SET is_default=false, updated_at=%s WHERE user_id=%s::uuid AND is_default"

INSERT_ACCOUNT = f"""
    INSERT INTO accounts (id, user_id, name, balance, is_default, created_at, updated_at)
    VALUES (%s::uuid, %s::uuid, %s, %s, %s, %s, %s)
    RETURNING {ACCOUNT_COLUMNS}
"""

UPDATE_ACCOUNT = f"""
    UPDATE accounts
    SET name=%s,
        balance=%s,
        updated_at=%s
    WHERE id=%s::uuid AND user_id=%s::uuid
    RETURNING {ACCOUNT_COLUMNS}
"""

MARK_DEFAULT = f"""
    UPDATE accounts
    SET is_default=true,
        updated_at=%s
    WHERE id=%s::uuid AND user_id=%s::uuid
    RETURNING {ACCOUNT_COLUMNS}
"""

COUNT_ACCOUNT_TRANSACTIONS = "SELECT COUNT(*) AS n FROM transactions WHERE account_id=%s::uuid"

DELETE_ACCOUNT = f"DELETE FROM accounts WHERE id=%s::uuid AND user_id=%s::uuid RETURNING {ACCOUNT_COLUMNS}"

PROMOTE_OLDEST_DEFAULT = """
    UPDATE accounts
    SET is_default=true,
        updated_at=%s
    WHERE id = (
        SELECT id FROM accounts
        WHERE user_id=%s::uuid
        ORDER BY created_at ASC, id ASC
        LIMIT 1
    )
    RETURNING id::text AS id
"""

ACCOUNT_TOTALS = """
    SELECT COALESCE(SUM(CASE WHEN type='income' THEN amount ELSE 0 END), 0) AS total_income,
           COALESCE(SUM(CASE WHEN type='expense' THEN amount ELSE 0 END), 0) AS total_expense
    FROM transactions
    WHERE account_id=%s::uuid AND user_id=%s::uuid
"""

DERIVED_BALANCES = """
    SELECT a.id::text AS id,
           a.name,
           a.balance,
           COUNT(t.id) AS transactions_count,
           COALESCE(SUM(CASE WHEN t.type='income' THEN t.amount ELSE -t.amount END), 0) AS derived_balance
    FROM accounts a
    LEFT JOIN transactions t ON t.account_id=a.id
    WHERE a.user_id=%s::uuid
    GROUP BY a.id, a.name, a.balance, a.created_at
    ORDER BY a.created_at ASC
"""


def _snapshot(account: Account) -> dict[str, Any]:
    return {
        "id": account.id,
        "name": account.name,
        "balance": str(account.balance),
        "is_default": account.is_default,
    }


def get_account(cur, owner_id: str, account_id: str) -> Account:
    cur.execute(GET_ACCOUNT, (parse_uuid_value(account_id, "account_id"), owner_id))
    row = cur.fetchone()
    if not row:
        raise NotFound("Account not found")
    return Account.model_validate(row)


def list_accounts(cur, owner_id: str) -> list[Account]:
    cur.execute(LIST_ACCOUNTS, (owner_id,))
    return [Account.model_validate(row) for row in cur.fetchall()]


def lock_accounts_for_update(cur, owner_id: str, account_ids: list[str]) -> None:
    """Row-lock the owner's accounts in id order; NotFound if any is missing."""
    unique_ids = sorted({parse_uuid_value(aid, "account_id") for aid in account_ids if aid})
    if not unique_ids:
        return
    cur.execute(LOCK_ACCOUNTS, (owner_id, unique_ids))
    if len(cur.fetchall()) != len(unique_ids):
        raise NotFound("Account not found")


def apply_balance_delta(cur, account_id: str, signed_delta: Decimal) -> Decimal:
    """Shift an account balance inside the caller's unit of work.

    The account row must already be locked by ``lock_accounts_for_update``.
    """
    cur.execute(APPLY_BALANCE_DELTA, (signed_delta, now_utc(), account_id))
    row = cur.fetchone()
    if not row:
        raise NotFound("Account not found")
    return row["balance"]


def create_account(conn, owner_id: str, payload: AccountCreateRequest, deadline: Deadline | None = None) -> Account:
    name = payload.name.strip()
    if not name:
        raise InvalidArgument("name required")
    balance = to_money(payload.balance, "balance")

    with track("account.create", owner_id=owner_id) as span:
        with unit_of_work(conn, deadline) as cur:
            cur.execute(LOCK_OWNER_ACCOUNTS, (owner_id,))
            existing = cur.fetchall()
            # The first account of an owner is always the default one.
            is_default = payload.is_default or not existing
            now = now_utc()
            if is_default:
                cur.execute(CLEAR_DEFAULT, (now, owner_id))
            try:
                cur.execute(
                    INSERT_ACCOUNT,
                    (str(uuid.uuid4()), owner_id, name, balance, is_default, now, now),
                )
            except UniqueViolation:
                raise Conflict("Another default account was created concurrently, please retry")
            account = Account.model_validate(cur.fetchone())
        span["account_id"] = account.id

    state.audit_sink.emit(
        owner_id, AuditVerb.CREATE, "account", account.id, {"action": "created", "data": _snapshot(account)}
    )
    invalidate_owner_cache(owner_id)
    return account


def update_account(
    conn,
    owner_id: str,
    account_id: str,
    payload: AccountUpdateRequest,
    deadline: Deadline | None = None,
) -> Account:
    account_id = parse_uuid_value(account_id, "account_id")
    supplied = payload.model_fields_set
    new_name = None
    new_balance = None
    if "name" in supplied:
        new_name = (payload.name or "").strip()
        if not new_name:
            raise InvalidArgument("name cannot be empty")
    if "balance" in supplied:
        new_balance = to_money(payload.balance, "balance")

    with track("account.update", owner_id=owner_id, account_id=account_id):
        with unit_of_work(conn, deadline) as cur:
            lock_accounts_for_update(cur, owner_id, [account_id])
            current = get_account(cur, owner_id, account_id)
            changes: dict[str, dict[str, Any]] = {}
            if new_name is not None and new_name != current.name:
                changes["name"] = {"old": current.name, "new": new_name}
            if new_balance is not None and new_balance != current.balance:
                changes["balance"] = {"old": str(current.balance), "new": str(new_balance)}
            if not changes:
                return current
            cur.execute(
                UPDATE_ACCOUNT,
                (
                    new_name if "name" in changes else current.name,
                    new_balance if "balance" in changes else current.balance,
                    now_utc(),
                    account_id,
                    owner_id,
                ),
            )
            account = Account.model_validate(cur.fetchone())

    details: dict[str, Any] = {"action": "updated", "changes": changes}
    if "balance" in changes:
        # Manual edits bypass the transaction history; flag them for reconciliation.
        details["source"] = "manual_balance_edit"
    state.audit_sink.emit(owner_id, AuditVerb.UPDATE, "account", account_id, details)
    invalidate_owner_cache(owner_id)
    return account


def delete_account(conn, owner_id: str, account_id: str, deadline: Deadline | None = None) -> None:
    account_id = parse_uuid_value(account_id, "account_id")
    with track("account.delete", owner_id=owner_id, account_id=account_id):
        with unit_of_work(conn, deadline) as cur:
            cur.execute(LOCK_OWNER_ACCOUNTS, (owner_id,))
            owned = {row["id"]: row for row in cur.fetchall()}
            if account_id not in owned:
                raise NotFound("Account not found")
            if len(owned) <= 1:
                raise Conflict("Cannot delete the only account")
            cur.execute(COUNT_ACCOUNT_TRANSACTIONS, (account_id,))
            if int(cur.fetchone()["n"]) > 0:
                raise Conflict("Cannot delete account with existing transactions")
            cur.execute(DELETE_ACCOUNT, (account_id, owner_id))
            deleted = Account.model_validate(cur.fetchone())
            if deleted.is_default:
                cur.execute(PROMOTE_OLDEST_DEFAULT, (now_utc(), owner_id))

    state.audit_sink.emit(
        owner_id, AuditVerb.DELETE, "account", account_id, {"action": "deleted", "data": _snapshot(deleted)}
    )
    invalidate_owner_cache(owner_id)


def set_default_account(conn, owner_id: str, account_id: str, deadline: Deadline | None = None) -> Account:
    account_id = parse_uuid_value(account_id, "account_id")
    with track("account.set_default", owner_id=owner_id, account_id=account_id):
        with unit_of_work(conn, deadline) as cur:
            cur.execute(LOCK_OWNER_ACCOUNTS, (owner_id,))
            owned = {row["id"]: row for row in cur.fetchall()}
            if account_id not in owned:
                raise NotFound("Account not found")
            if owned[account_id]["is_default"]:
                return Account.model_validate(owned[account_id])
            now = now_utc()
            cur.execute(CLEAR_DEFAULT, (now, owner_id))
            cur.execute(MARK_DEFAULT, (now, account_id, owner_id))
            account = Account.model_validate(cur.fetchone())

    state.audit_sink.emit(
        owner_id,
        AuditVerb.UPDATE,
        "account",
        account_id,
        {"action": "updated", "changes": {"is_default": {"old": False, "new": True}}},
    )
    invalidate_owner_cache(owner_id)
    return account


def get_account_stats(cur, owner_id: str, account_id: str) -> AccountStats:
    account = get_account(cur, owner_id, account_id)
    cur.execute(ACCOUNT_TOTALS, (account.id, owner_id))
    totals = cur.fetchone() or {}
    return AccountStats(
        total_income=Decimal(totals.get("total_income") or 0).quantize(CENT),
        total_expense=Decimal(totals.get("total_expense") or 0).quantize(CENT),
        current_balance=account.balance,
    )


def reconcile_balances(cur, owner_id: str) -> dict[str, Any]:
    """Compare stored balances with the sum of each account's transactions.

    A non-zero drift is expected after manual balance edits; it is reported,
    never corrected.
    """
    cur.execute(DERIVED_BALANCES, (owner_id,))
    accounts: list[dict[str, Any]] = []
    has_drift = False
    for row in cur.fetchall():
        stored = Decimal(row["balance"]).quantize(CENT)
        derived = Decimal(row["derived_balance"] or 0).quantize(CENT)
        drift = stored - derived
        if drift != 0:
            has_drift = True
        accounts.append(
            {
                "account_id": row["id"],
                "account_name": row["name"],
                "transactions_count": int(row["transactions_count"] or 0),
                "stored_balance": stored,
                "derived_balance": derived,
                "drift": drift,
            }
        )
    return {
        "accounts": accounts,
        "has_drift": has_drift,
        "total_stored": sum((a["stored_balance"] for a in accounts), Decimal("0.00")),
        "total_derived": sum((a["derived_balance"] for a in accounts), Decimal("0.00")),
    }


def provision_owner(conn, owner_id: str, account_name: str) -> dict[str, Any]:
    """Create the default account and personal categories for a new owner.

    Safe to call repeatedly: an owner that already has accounts or categories
    is left as is.
    """
    owner_id = parse_uuid_value(owner_id, "owner_id")
    with track("owner.provision", owner_id=owner_id):
        with unit_of_work(conn) as cur:
            cur.execute(LOCK_OWNER_ACCOUNTS, (owner_id,))
            account_created = False
            if not cur.fetchall():
                now = now_utc()
                cur.execute(
                    INSERT_ACCOUNT,
                    (str(uuid.uuid4()), owner_id, account_name, Decimal("0.00"), True, now, now),
                )
                account_created = True
            categories_cloned = clone_system_categories(cur, owner_id)

    invalidate_owner_cache(owner_id)
    return {"owner_id": owner_id, "account_created": account_created, "categories_cloned": categories_cloned}
