import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

import psycopg
import structlog
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from fintrack.core.config import settings
from fintrack.core.errors import DeadlineExceeded, StorageError

logger = structlog.get_logger(__name__)

DB_POOL = ConnectionPool(
    settings.database_url,
    min_size=settings.db_pool_min,
    max_size=settings.db_pool_max,
    timeout=settings.db_pool_timeout,
    max_waiting=settings.db_pool_max_waiting,
    open=False,
    kwargs={"row_factory": dict_row},
)

SET_STATEMENT_TIMEOUT = "SELECT set_config('statement_timeout', %s, true)"


def open_db_pool() -> None:
    DB_POOL.open()


def close_db_pool() -> None:
    DB_POOL.close()


@contextmanager
def db_conn():
    with DB_POOL.connection() as conn:
        yield conn


@dataclass(frozen=True)
class Deadline:
    expires_at: float

    @classmethod
    def after_ms(cls, timeout_ms: int | None) -> "Deadline | None":
        if not timeout_ms or timeout_ms <= 0:
            return None
        return cls(time.monotonic() + timeout_ms / 1000)

    def remaining_ms(self) -> int:
        return max(0, int((self.expires_at - time.monotonic()) * 1000))

    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at


@contextmanager
def unit_of_work(conn, deadline: Deadline | None = None) -> Iterator:
    """Run the block as one atomic database transaction.

    Commits only when the block finishes before the deadline; any failure rolls
    back every statement issued inside the block. Driver errors surface as
    ``StorageError``.
    """
    try:
        with conn.cursor() as cur:
            if deadline is not None:
                if deadline.expired():
                    raise DeadlineExceeded("Deadline exceeded before the operation started")
                cur.execute(SET_STATEMENT_TIMEOUT, (str(max(1, deadline.remaining_ms())),))
            yield cur
            if deadline is not None and deadline.expired():
                raise DeadlineExceeded("Deadline exceeded before commit")
        conn.commit()
    except psycopg.errors.QueryCanceled as exc:
        conn.rollback()
        logger.warning("deadline_exceeded", error=str(exc))
        raise DeadlineExceeded("Deadline exceeded while waiting on storage") from exc
    except psycopg.Error as exc:
        conn.rollback()
        raise StorageError("Storage failure, no changes were applied") from exc
    except BaseException:
        conn.rollback()
        raise
