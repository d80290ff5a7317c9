"""Mercury payload shapes.

Only the fields the sync core reads are declared; anything else the provider
sends is ignored. A missing or mistyped declared field is a parse failure,
which the client turns into ``InvalidResponse``.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class _ProviderModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class MercuryAccount(_ProviderModel):
    id: str = Field(min_length=1)
    name: str
    nickname: str | None = None
    kind: str = "checking"
    status: str
    routing_number: str | None = Field(default=None, alias="routingNumber")
    account_number: str | None = Field(default=None, alias="accountNumber")
    current_balance: Decimal = Field(alias="currentBalance")
    available_balance: Decimal | None = Field(default=None, alias="availableBalance")
    currency: str = "USD"


class MercuryAccountList(_ProviderModel):
    accounts: list[MercuryAccount]


class MercuryTransaction(_ProviderModel):
    id: str = Field(min_length=1)
    amount: Decimal
    status: str
    created_at: datetime = Field(alias="createdAt")
    posted_at: datetime | None = Field(default=None, alias="postedAt")
    bank_description: str | None = Field(default=None, alias="bankDescription")
    counterparty_name: str | None = Field(default=None, alias="counterpartyName")
    counterparty_id: str | None = Field(default=None, alias="counterpartyId")
    note: str | None = None
    category: str | None = Field(default=None, alias="mercuryCategory")


class MercuryTransactionList(_ProviderModel):
    transactions: list[MercuryTransaction]


class MercuryErrorBody(_ProviderModel):
    message: str | None = None
    error_code: str | None = Field(default=None, alias="errorCode")
