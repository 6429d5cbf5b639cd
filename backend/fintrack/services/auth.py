import hashlib
import secrets
from datetime import datetime, timezone

from fastapi import HTTPException, Request

from fintrack.core.config import settings
from fintrack.db.pool import db_conn

FIND_API_KEY_OWNER = """
    SELECT k.user_id::text AS user_id
    FROM api_keys k
    WHERE k.key_hash=%s AND k.revoked_at IS NULL
"""

TOUCH_API_KEY = "UPDATE api_keys SET last_used_at=%s WHERE key_hash=%s"


def parse_bearer_token(req: Request) -> str:
    header = req.headers.get("authorization", "")
    parts = header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise HTTPException(status_code=401, detail="Missing API key")
    return parts[1].strip()


def get_owner_by_token(token: str) -> str:
    token_hash = hashlib.sha256(token.encode("utf-8")).hexdigest()
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(FIND_API_KEY_OWNER, (token_hash,))
        row = cur.fetchone()
        if not row:
            raise HTTPException(status_code=401, detail="Invalid API key")
        cur.execute(TOUCH_API_KEY, (datetime.now(timezone.utc), token_hash))
        conn.commit()
        return row["user_id"]


def require_owner(req: Request) -> str:
    token = parse_bearer_token(req)
    return get_owner_by_token(token)


def require_internal_token(req: Request) -> None:
    expected = settings.internal_token
    if not expected:
        raise HTTPException(status_code=403, detail="Internal API disabled")
    supplied = req.headers.get("x-internal-token", "")
    if not secrets.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=403, detail="Invalid internal token")
