from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from .db import TradeType, TransactionDirection


class AssetResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    currency: str
    amount: Decimal


class AccountCreate(BaseModel):
    display_name: str = Field(..., min_length=1, description="Name shown to the owner")
    default_currency: str = Field(..., min_length=1, description="ISO code or coin symbol")
    is_hidden: bool = Field(default=False, description="Placeholder for money outside the wallet")


class AccountResponse(BaseModel):
    id: UUID
    owner_id: str
    display_name: str
    default_currency: str
    is_hidden: bool
    created_at: datetime
    assets: list[AssetResponse] = Field(default_factory=list)


class TagCreate(BaseModel):
    name: str = Field(..., min_length=1)


class TagResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str


class _DraftBase(BaseModel):
    account_id: UUID
    amount: Optional[Decimal] = Field(default=None, description="Positive magnitude")
    currency: Optional[str] = None
    converted_amount: Optional[Decimal] = Field(
        default=None, description="Amount actually booked in convert_to_currency"
    )
    convert_to_currency: Optional[str] = None
    tag_id: Optional[UUID] = None
    description: Optional[str] = None
    transaction_date: Optional[datetime] = None


class ExpenseDraft(_DraftBase):
    kind: Literal["expense"] = "expense"
    category: Optional[str] = None


class IncomeDraft(_DraftBase):
    kind: Literal["income"] = "income"
    category: Optional[str] = None


class TransferDraft(_DraftBase):
    kind: Literal["transfer"] = "transfer"
    to_account_id: UUID
    from_account_id: Optional[UUID] = None


class TradeDraft(_DraftBase):
    kind: Literal["trade"] = "trade"
    trade_type: TradeType
    base_currency: Optional[str] = None
    base_amount: Optional[Decimal] = None
    quote_currency: Optional[str] = None
    quote_amount: Optional[Decimal] = None
    execution_price: Optional[Decimal] = None
    fee_amount: Optional[Decimal] = None
    fee_currency: Optional[str] = None
    to_account_id: Optional[UUID] = Field(
        default=None, description="Defaults to account_id for a swap inside one account"
    )


TransactionDraft = Annotated[
    Union[ExpenseDraft, IncomeDraft, TransferDraft, TradeDraft],
    Field(discriminator="kind"),
]


class TransactionUpdate(BaseModel):
    direction: Optional[TransactionDirection] = None
    account_id: Optional[UUID] = None
    from_account_id: Optional[UUID] = None
    to_account_id: Optional[UUID] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    converted_amount: Optional[Decimal] = None
    convert_to_currency: Optional[str] = None
    category: Optional[str] = None
    tag_id: Optional[UUID] = None
    description: Optional[str] = None
    transaction_date: Optional[datetime] = None


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    owner_id: str
    direction: TransactionDirection
    account_id: UUID
    from_account_id: Optional[UUID] = None
    to_account_id: Optional[UUID] = None
    amount: Decimal
    currency: str
    converted_amount: Optional[Decimal] = None
    convert_to_currency: Optional[str] = None
    amount_usd: Optional[Decimal] = None
    category: Optional[str] = None
    tag_id: Optional[UUID] = None
    trade_type: Optional[TradeType] = None
    trade_base_currency: Optional[str] = None
    trade_base_amount: Optional[Decimal] = None
    trade_quote_currency: Optional[str] = None
    trade_quote_amount: Optional[Decimal] = None
    execution_price: Optional[Decimal] = None
    trade_fee_amount: Optional[Decimal] = None
    trade_fee_currency: Optional[str] = None
    description: Optional[str] = None
    transaction_date: datetime
    created_at: datetime


class TransactionPage(BaseModel):
    items: list[TransactionResponse]
    total: int
    page: int
    page_size: int


# ----------------------------------------------------------------------
# Analytics
# ----------------------------------------------------------------------
class SummaryResult(BaseModel):
    balance: Decimal
    expenses: Decimal
    income: Decimal
    expenses_prev: Decimal
    income_prev: Decimal
    expenses_trend_pct: Optional[Decimal] = Field(
        default=None, description="None when the previous window had no expenses"
    )
    income_trend_pct: Optional[Decimal] = None
    burn_rate: Decimal


class DetailItem(BaseModel):
    label: str
    amount: Decimal
    currency: str


class TagDetail(BaseModel):
    tag_name: str
    sum: Decimal


class CategorySum(BaseModel):
    category: str
    sum: Decimal
    pct: Decimal
    tag_details: list[TagDetail] = Field(default_factory=list)
    detail_items: list[DetailItem] = Field(default_factory=list)


class TagSum(BaseModel):
    tag_id: UUID
    tag_name: str
    sum: Decimal
    pct: Decimal


class TransferSum(BaseModel):
    from_account_name: str
    to_account_name: str
    sum: Decimal
    pct: Decimal
    descriptions: list[str] = Field(default_factory=list)
    detail_items: list[DetailItem] = Field(default_factory=list)


class ByTypeResult(BaseModel):
    expense: Decimal
    income: Decimal
    transfer: Decimal


class AnomalyRow(BaseModel):
    transaction_id: UUID
    amount: Decimal
    currency: str
    description: Optional[str] = None
    transaction_date: datetime
    tag_or_category: Optional[str] = None


class DetailPage(BaseModel):
    transactions: list[AnomalyRow]
    total: int


class PortfolioSplit(BaseModel):
    fiat: Decimal
    crypto: Decimal
    total: Decimal


class ConversionResponse(BaseModel):
    amount: Decimal
    from_currency: str
    to_currency: str
    converted: Decimal


# ----------------------------------------------------------------------
# Reconciliation
# ----------------------------------------------------------------------
class ReconcileRow(BaseModel):
    account_id: UUID
    account_name: str
    currency: str
    current: Decimal
    target: Decimal
    diff: Decimal


class ReconcileReport(BaseModel):
    owner_id: str
    transactions_total: int
    canonicalized_trades: list[UUID] = Field(default_factory=list)
    rows: list[ReconcileRow] = Field(default_factory=list)
    applied: bool = False
