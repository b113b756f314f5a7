from __future__ import annotations
from datetime import date, datetime, UTC
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4
from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


class TransactionDirection(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


class TradeType(str, Enum):
    BUY = "buy"
    SELL = "sell"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Account(SQLModel, table=True):
    __tablename__ = "accounts"

    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    owner_id: str = Field(index=True)
    display_name: str
    default_currency: str
    is_hidden: bool = Field(default=False)
    created_at: datetime = Field(default_factory=_utcnow)


class AccountAsset(SQLModel, table=True):
    __tablename__ = "account_assets"

    account_id: UUID = Field(foreign_key="accounts.id", primary_key=True)
    currency: str = Field(primary_key=True)
    amount: Decimal = Field(default=Decimal("0"), max_digits=38, decimal_places=18)


class Tag(SQLModel, table=True):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("owner_id", "name", name="uq_tags_owner_name"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    owner_id: str = Field(index=True)
    name: str
    created_at: datetime = Field(default_factory=_utcnow)


class Transaction(SQLModel, table=True):
    __tablename__ = "transactions"

    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    owner_id: str = Field(index=True)
    direction: TransactionDirection = Field(index=True)
    account_id: UUID = Field(foreign_key="accounts.id", index=True)
    from_account_id: Optional[UUID] = Field(default=None, foreign_key="accounts.id")
    to_account_id: Optional[UUID] = Field(default=None, foreign_key="accounts.id")
    amount: Decimal = Field(max_digits=38, decimal_places=18)
    currency: str
    converted_amount: Optional[Decimal] = Field(default=None, max_digits=38, decimal_places=18)
    convert_to_currency: Optional[str] = None
    amount_usd: Optional[Decimal] = Field(default=None, max_digits=38, decimal_places=18)
    category: Optional[str] = Field(default=None, index=True)
    tag_id: Optional[UUID] = Field(default=None, foreign_key="tags.id", index=True)
    trade_type: Optional[TradeType] = None
    trade_base_currency: Optional[str] = None
    trade_base_amount: Optional[Decimal] = Field(default=None, max_digits=38, decimal_places=18)
    trade_quote_currency: Optional[str] = None
    trade_quote_amount: Optional[Decimal] = Field(default=None, max_digits=38, decimal_places=18)
    execution_price: Optional[Decimal] = Field(default=None, max_digits=38, decimal_places=18)
    trade_fee_amount: Optional[Decimal] = Field(default=None, max_digits=38, decimal_places=18)
    trade_fee_currency: Optional[str] = None
    description: Optional[str] = None
    transaction_date: datetime = Field(default_factory=_utcnow, index=True)
    created_at: datetime = Field(default_factory=_utcnow)


class RateSnapshot(SQLModel, table=True):
    __tablename__ = "exchange_rate_snapshots"

    day: date = Field(primary_key=True)
    base_currency: str = Field(default="USD", primary_key=True)
    rates: dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=_utcnow)
