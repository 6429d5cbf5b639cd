import time
from contextlib import contextmanager
from typing import Any, Iterator

import structlog

from fintrack.core.errors import LedgerError

logger = structlog.get_logger("fintrack.ledger")


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)


@contextmanager
def track(operation: str, **fields: Any) -> Iterator[dict[str, Any]]:
    """Emit exactly one ``ledger_operation`` event for the wrapped block.

    The yielded dict lets the caller attach identifiers that only become known
    inside the block (e.g. a freshly generated transaction id).
    """
    bound: dict[str, Any] = {}
    started = time.perf_counter()
    try:
        yield bound
    except LedgerError as exc:
        logger.warning(
            "ledger_operation",
            **{**fields, **bound},
            operation=operation,
            outcome="error",
            error_kind=exc.code,
            detail=exc.detail,
            duration_ms=_elapsed_ms(started),
        )
        raise
    except Exception as exc:
        logger.error(
            "ledger_operation",
            **{**fields, **bound},
            operation=operation,
            outcome="error",
            error_kind="unexpected",
            detail=repr(exc),
            duration_ms=_elapsed_ms(started),
        )
        raise
    logger.info(
        "ledger_operation",
        **{**fields, **bound},
        operation=operation,
        outcome="ok",
        duration_ms=_elapsed_ms(started),
    )
