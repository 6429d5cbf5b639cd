import uuid
from typing import Any

from psycopg.errors import ForeignKeyViolation, UniqueViolation

from fintrack.core.errors import Conflict, InvalidArgument, NotFound
from fintrack.core.observability import track
from fintrack.db.pool import Deadline, unit_of_work
from fintrack.models.ledger import (
    AuditVerb,
    Category,
    CategoryCreateRequest,
    CategoryUpdateRequest,
    Polarity,
)
from fintrack.services import state
from fintrack.services.parsing import now_utc, parse_uuid_value
from fintrack.services.stats import invalidate_owner_cache

CATEGORY_COLUMNS = "id::text AS id, user_id::text AS user_id, name, type, icon, color, is_system, created_at"

VISIBLE_TO_OWNER = "(user_id=%s::uuid OR user_id IS NULL)"

RESOLVE_CATEGORY_TYPE = f"SELECT type FROM categories WHERE id=%s::uuid AND {VISIBLE_TO_OWNER}"

GET_CATEGORY = f"SELECT {CATEGORY_COLUMNS} FROM categories WHERE id=%s::uuid AND {VISIBLE_TO_OWNER}"

LOCK_CATEGORY = f"SELECT {CATEGORY_COLUMNS} FROM categories WHERE id=%s::uuid AND {VISIBLE_TO_OWNER} FOR UPDATE"

LIST_CATEGORIES = f"""
    SELECT {CATEGORY_COLUMNS}
    FROM categories
    WHERE {VISIBLE_TO_OWNER}
    ORDER BY is_system DESC, name ASC
"""

LIST_CATEGORIES_BY_TYPE = f"""
    SELECT {CATEGORY_COLUMNS}
    FROM categories
    WHERE {VISIBLE_TO_OWNER} AND type=%s
    ORDER BY is_system DESC, name ASC
"""

CATEGORY_NAME_TAKEN = """
    SELECT 1 AS taken
    FROM categories
    WHERE user_id=%s::uuid AND type=%s AND name=%s AND id IS DISTINCT FROM %s::uuid
    LIMIT 1
"""

INSERT_CATEGORY = f"""
    INSERT INTO categories (id, user_id, name, type, icon, color, is_system, created_at)
    VALUES (%s::uuid, %s::uuid, %s, %s, %s, %s, false, %s)
    RETURNING {CATEGORY_COLUMNS}
"""

UPDATE_CATEGORY = f"""
    UPDATE categories
    SET name=%s,
        icon=%s,
        color=%s
    WHERE id=%s::uuid AND user_id=%s::uuid
    RETURNING {CATEGORY_COLUMNS}
"""

COUNT_CATEGORY_TRANSACTIONS = "SELECT COUNT(*) AS n FROM transactions WHERE category_id=%s::uuid"

DELETE_CATEGORY = "DELETE FROM categories WHERE id=%s::uuid AND user_id=%s::uuid"

CLONE_SYSTEM_CATEGORIES = """
    INSERT INTO categories (id, user_id, name, type, icon, color, is_system, created_at)
    SELECT gen_random_uuid(), %s::uuid, name, type, icon, color, false, now()
    FROM categories
    WHERE user_id IS NULL
    ON CONFLICT DO NOTHING
"""


def _snapshot(category: Category) -> dict[str, Any]:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "icon": category.icon,
        "color": category.color,
    }


def resolve_category_type(cur, owner_id: str, category_id: str) -> Polarity:
    """Read the category's polarity as stored right now.

    Called inside the engine's unit of work; the result is never cached.
    """
    cur.execute(RESOLVE_CATEGORY_TYPE, (parse_uuid_value(category_id, "category_id"), owner_id))
    row = cur.fetchone()
    if not row:
        raise NotFound("Category not found")
    return Polarity(row["type"])


def get_category(cur, owner_id: str, category_id: str) -> Category:
    cur.execute(GET_CATEGORY, (parse_uuid_value(category_id, "category_id"), owner_id))
    row = cur.fetchone()
    if not row:
        raise NotFound("Category not found")
    return Category.model_validate(row)


def list_categories(cur, owner_id: str, polarity: Polarity | None = None) -> list[Category]:
    if polarity is None:
        cur.execute(LIST_CATEGORIES, (owner_id,))
    else:
        cur.execute(LIST_CATEGORIES_BY_TYPE, (owner_id, polarity.value))
    return [Category.model_validate(row) for row in cur.fetchall()]


def _ensure_name_free(cur, owner_id: str, polarity: Polarity, name: str, exclude_id: str | None = None) -> None:
    cur.execute(CATEGORY_NAME_TAKEN, (owner_id, polarity.value, name, exclude_id))
    if cur.fetchone():
        raise Conflict("Category with this name already exists")


def create_category(
    conn,
    owner_id: str,
    payload: CategoryCreateRequest,
    deadline: Deadline | None = None,
) -> Category:
    name = payload.name.strip()
    if not name:
        raise InvalidArgument("name required")

    with track("category.create", owner_id=owner_id) as span:
        with unit_of_work(conn, deadline) as cur:
            _ensure_name_free(cur, owner_id, payload.type, name)
            try:
                cur.execute(
                    INSERT_CATEGORY,
                    (
                        str(uuid.uuid4()),
                        owner_id,
                        name,
                        payload.type.value,
                        payload.icon.strip(),
                        payload.color.strip(),
                        now_utc(),
                    ),
                )
            except UniqueViolation:
                raise Conflict("Category with this name already exists")
            category = Category.model_validate(cur.fetchone())
        span["category_id"] = category.id

    state.audit_sink.emit(
        owner_id, AuditVerb.CREATE, "category", category.id, {"action": "created", "data": _snapshot(category)}
    )
    return category


def update_category(
    conn,
    owner_id: str,
    category_id: str,
    payload: CategoryUpdateRequest,
    deadline: Deadline | None = None,
) -> Category:
    category_id = parse_uuid_value(category_id, "category_id")
    supplied = payload.model_fields_set
    requested: dict[str, str] = {}
    for field_name in ("name", "icon", "color"):
        if field_name not in supplied:
            continue
        value = (getattr(payload, field_name) or "").strip()
        if field_name == "name" and not value:
            raise InvalidArgument("name cannot be empty")
        requested[field_name] = value

    with track("category.update", owner_id=owner_id, category_id=category_id):
        with unit_of_work(conn, deadline) as cur:
            cur.execute(LOCK_CATEGORY, (category_id, owner_id))
            row = cur.fetchone()
            if not row:
                raise NotFound("Category not found")
            current = Category.model_validate(row)
            if current.is_system:
                raise Conflict("System categories cannot be modified")

            changes: dict[str, dict[str, Any]] = {}
            for field_name, value in requested.items():
                old = getattr(current, field_name)
                if value != old:
                    changes[field_name] = {"old": old, "new": value}
            if not changes:
                return current
            if "name" in changes:
                _ensure_name_free(cur, owner_id, current.type, requested["name"], exclude_id=category_id)

            merged = {f: changes[f]["new"] if f in changes else getattr(current, f) for f in ("name", "icon", "color")}
            try:
                cur.execute(
                    UPDATE_CATEGORY,
                    (merged["name"], merged["icon"], merged["color"], category_id, owner_id),
                )
            except UniqueViolation:
                raise Conflict("Category with this name already exists")
            category = Category.model_validate(cur.fetchone())

    state.audit_sink.emit(
        owner_id, AuditVerb.UPDATE, "category", category_id, {"action": "updated", "changes": changes}
    )
    invalidate_owner_cache(owner_id)
    return category


def delete_category(conn, owner_id: str, category_id: str, deadline: Deadline | None = None) -> None:
    category_id = parse_uuid_value(category_id, "category_id")
    with track("category.delete", owner_id=owner_id, category_id=category_id):
        with unit_of_work(conn, deadline) as cur:
            cur.execute(LOCK_CATEGORY, (category_id, owner_id))
            row = cur.fetchone()
            if not row:
                raise NotFound("Category not found")
            category = Category.model_validate(row)
            if category.is_system:
                raise Conflict("System categories cannot be deleted")
            cur.execute(COUNT_CATEGORY_TRANSACTIONS, (category_id,))
            if int(cur.fetchone()["n"]) > 0:
                raise Conflict("Cannot delete category with existing transactions")
            try:
                cur.execute(DELETE_CATEGORY, (category_id, owner_id))
            except ForeignKeyViolation:
                raise Conflict("Cannot delete category with existing transactions")

    state.audit_sink.emit(
        owner_id, AuditVerb.DELETE, "category", category_id, {"action": "deleted", "data": _snapshot(category)}
    )
    invalidate_owner_cache(owner_id)


def clone_system_categories(cur, owner_id: str) -> int:
    """Give an owner personal copies of every system category; existing names are kept."""
    cur.execute(CLONE_SYSTEM_CATEGORIES, (owner_id,))
    return max(cur.rowcount or 0, 0)
