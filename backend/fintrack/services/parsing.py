import uuid
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from fintrack.core.errors import InvalidArgument
from fintrack.models.ledger import Polarity

CENT = Decimal("0.01")
# Largest magnitude a NUMERIC(15, 2) column holds.
MAX_MONEY = Decimal("9999999999999.99")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def parse_uuid_value(value: Any, field_name: str) -> str:
    raw = str(value or "").strip()
    if not raw:
        raise InvalidArgument(f"{field_name} required")
    try:
        return str(uuid.UUID(raw))
    except (TypeError, ValueError, AttributeError):
        raise InvalidArgument(f"Invalid {field_name}")


def to_money(value: Any, field_name: str = "amount") -> Decimal:
    if value is None or isinstance(value, bool):
        raise InvalidArgument(f"{field_name} required")
    try:
        amount = Decimal(str(value))
        if not amount.is_finite():
            raise InvalidArgument(f"Invalid {field_name}")
        amount = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise InvalidArgument(f"Invalid {field_name}")
    if abs(amount) > MAX_MONEY:
        raise InvalidArgument(f"{field_name} must not exceed {MAX_MONEY}")
    return amount


def parse_amount(value: Any) -> Decimal:
    amount = to_money(value)
    if amount <= 0:
        raise InvalidArgument("amount must be > 0")
    return amount


def parse_value_date(value: Any, default_today: bool = False) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value or "").strip()
    if not raw:
        if default_today:
            return now_utc().date()
        raise InvalidArgument("date required")
    try:
        return datetime.strptime(raw, "%Y-%m-%d").date()
    except ValueError:
        raise InvalidArgument("Invalid date format, expected YYYY-MM-DD")


# Lenient parsers for query parameters: malformed input means "use the default".


def lenient_int(value: Any, default: int, minimum: int = 0, maximum: int | None = None) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    if parsed < minimum or (maximum is not None and parsed > maximum):
        return default
    return parsed


def lenient_uuid(value: Any) -> str | None:
    try:
        return str(uuid.UUID(str(value or "").strip()))
    except ValueError:
        return None


def lenient_date(value: Any) -> date | None:
    try:
        return datetime.strptime(str(value or "").strip(), "%Y-%m-%d").date()
    except ValueError:
        return None


def lenient_polarity(value: Any) -> Polarity | None:
    try:
        return Polarity(str(value or "").strip().lower())
    except ValueError:
        return None
