import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Polarity(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"

    def signed(self, amount: Decimal) -> Decimal:
        """Balance effect of a positive ``amount`` carried with this polarity."""
        return amount if self is Polarity.INCOME else -amount


class AuditVerb(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Account(BaseModel):
    id: str
    user_id: str
    name: str
    balance: Decimal
    is_default: bool
    created_at: dt.datetime
    updated_at: dt.datetime


class Category(BaseModel):
    id: str
    user_id: str | None = None
    name: str
    type: Polarity
    icon: str = ""
    color: str = ""
    is_system: bool = False
    created_at: dt.datetime


class Transaction(BaseModel):
    id: str
    user_id: str
    account_id: str
    category_id: str
    type: Polarity
    amount: Decimal
    description: str = ""
    date: dt.date
    created_at: dt.datetime
    updated_at: dt.datetime

    account_name: str | None = None
    category_name: str | None = None
    category_icon: str | None = None
    category_color: str | None = None


class AccountStats(BaseModel):
    total_income: Decimal
    total_expense: Decimal
    current_balance: Decimal


class AccountCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    balance: Decimal = Decimal("0")
    is_default: bool = False


class AccountUpdateRequest(BaseModel):
    """Partial update; a field counts as supplied only if present in the body."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, max_length=100)
    balance: Decimal | None = None


class CategoryCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    type: Polarity
    icon: str = Field(default="", max_length=50)
    color: str = Field(default="", max_length=7)


class CategoryUpdateRequest(BaseModel):
    # No "type" field: polarity is fixed at creation and extra="forbid" rejects it.
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, max_length=100)
    icon: str | None = Field(default=None, max_length=50)
    color: str | None = Field(default=None, max_length=7)


class TransactionCreateRequest(BaseModel):
    account_id: str
    category_id: str
    amount: Decimal
    description: str | None = None
    date: str | None = None


class TransactionUpdateRequest(BaseModel):
    """Partial update of a transaction.

    Presence is read from ``model_fields_set``: an omitted field is left alone,
    while an explicit ``null`` for anything but ``description`` is rejected.
    """

    model_config = ConfigDict(extra="forbid")

    account_id: str | None = None
    category_id: str | None = None
    amount: Decimal | None = None
    description: str | None = None
    date: str | None = None

    def supplied(self, field_name: str) -> bool:
        return field_name in self.model_fields_set


class TransactionFilter(BaseModel):
    account_id: str | None = None
    category_id: str | None = None
    type: Polarity | None = None
    date_from: dt.date | None = None
    date_to: dt.date | None = None
    limit: int
    offset: int = 0


class AuditActionRequest(BaseModel):
    user_id: str
    action: AuditVerb
    entity: str = Field(min_length=1, max_length=50)
    entity_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
