from decimal import Decimal
from typing import Annotated, Optional, Union
from uuid import UUID

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status

from ..core.config import Settings, get_settings
from ..core.dependencies import (
    get_analytics_service,
    get_converter,
    get_ledger_service,
    get_owner_id,
)
from ..models import (
    AccountCreate,
    AccountResponse,
    AnomalyRow,
    ByTypeResult,
    CategorySum,
    ConversionResponse,
    DetailPage,
    ExpenseDraft,
    IncomeDraft,
    PortfolioSplit,
    SummaryResult,
    TagCreate,
    TagResponse,
    TagSum,
    TradeDraft,
    TransactionDirection,
    TransactionPage,
    TransactionResponse,
    TransactionUpdate,
    TransferDraft,
    TransferSum,
)
from ..services import AnalyticsPeriod, AnalyticsService, CurrencyConverter, LedgerService


router = APIRouter(prefix="/accounts", tags=["accounts"])

@router.post("", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def create_account(
    payload: AccountCreate,
    owner_id: str = Depends(get_owner_id),
    service: LedgerService = Depends(get_ledger_service),
) -> AccountResponse:
    return service.create_account(owner_id, payload)

@router.get("", response_model=list[AccountResponse])
def list_accounts(
    include_hidden: bool = False,
    owner_id: str = Depends(get_owner_id),
    service: LedgerService = Depends(get_ledger_service),
) -> list[AccountResponse]:
    return service.list_accounts(owner_id, include_hidden=include_hidden)

@router.get("/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: UUID,
    owner_id: str = Depends(get_owner_id),
    service: LedgerService = Depends(get_ledger_service),
) -> AccountResponse:
    return service.get_account(account_id, owner_id)

@router.post("/{account_id}/hide", response_model=AccountResponse)
def hide_account(
    account_id: UUID,
    hidden: bool = True,
    owner_id: str = Depends(get_owner_id),
    service: LedgerService = Depends(get_ledger_service),
) -> AccountResponse:
    return service.hide_account(account_id, owner_id, hidden=hidden)


tags_router = APIRouter(prefix="/tags", tags=["tags"])

@tags_router.post("", response_model=TagResponse, status_code=status.HTTP_201_CREATED)
def create_tag(
    payload: TagCreate,
    owner_id: str = Depends(get_owner_id),
    service: LedgerService = Depends(get_ledger_service),
) -> TagResponse:
    return service.create_tag(owner_id, payload)

@tags_router.get("", response_model=list[TagResponse])
def list_tags(
    owner_id: str = Depends(get_owner_id),
    service: LedgerService = Depends(get_ledger_service),
) -> list[TagResponse]:
    return service.list_tags(owner_id)


transactions_router = APIRouter(prefix="/transactions", tags=["transactions"])

DraftBody = Annotated[
    Union[ExpenseDraft, IncomeDraft, TransferDraft, TradeDraft],
    Body(discriminator="kind"),
]

def _found(transaction: Optional[TransactionResponse]) -> TransactionResponse:
    if transaction is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return transaction

@transactions_router.post(
    "", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED
)
def create_transaction(
    payload: DraftBody,
    owner_id: str = Depends(get_owner_id),
    service: LedgerService = Depends(get_ledger_service),
) -> TransactionResponse:
    return service.create(owner_id, payload)

@transactions_router.get("", response_model=TransactionPage)
def list_transactions(
    page: int = Query(default=0, ge=0),
    page_size: int = Query(default=20, ge=1, le=200),
    account_id: Optional[UUID] = None,
    owner_id: str = Depends(get_owner_id),
    service: LedgerService = Depends(get_ledger_service),
) -> TransactionPage:
    return service.list_transactions(owner_id, page=page, page_size=page_size, account_id=account_id)

@transactions_router.get("/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: UUID,
    owner_id: str = Depends(get_owner_id),
    service: LedgerService = Depends(get_ledger_service),
) -> TransactionResponse:
    return _found(service.get_transaction(transaction_id, owner_id))

@transactions_router.patch("/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: UUID,
    payload: TransactionUpdate,
    owner_id: str = Depends(get_owner_id),
    service: LedgerService = Depends(get_ledger_service),
) -> TransactionResponse:
    return _found(service.update(transaction_id, owner_id, payload))

@transactions_router.delete("/{transaction_id}", response_model=TransactionResponse)
def delete_transaction(
    transaction_id: UUID,
    owner_id: str = Depends(get_owner_id),
    service: LedgerService = Depends(get_ledger_service),
) -> TransactionResponse:
    return _found(service.delete(transaction_id, owner_id))


analytics_router = APIRouter(prefix="/analytics", tags=["analytics"])

def _main_currency(
    main_currency: Optional[str] = None,
    settings: Settings = Depends(get_settings),
) -> str:
    return (main_currency or settings.default_main_currency).strip().upper()

@analytics_router.get("/summary", response_model=SummaryResult)
def get_summary(
    period: AnalyticsPeriod = AnalyticsPeriod.THIRTY_DAYS,
    account_id: Optional[UUID] = None,
    main_currency: str = Depends(_main_currency),
    owner_id: str = Depends(get_owner_id),
    service: AnalyticsService = Depends(get_analytics_service),
) -> SummaryResult:
    return service.get_summary(owner_id, period, main_currency, account_id)

@analytics_router.get("/categories", response_model=list[CategorySum])
def get_top_categories(
    period: AnalyticsPeriod = AnalyticsPeriod.THIRTY_DAYS,
    limit: int = Query(default=5, ge=1, le=50),
    direction: TransactionDirection = TransactionDirection.EXPENSE,
    account_id: Optional[UUID] = None,
    beginning_balance: Optional[Decimal] = None,
    main_currency: str = Depends(_main_currency),
    owner_id: str = Depends(get_owner_id),
    service: AnalyticsService = Depends(get_analytics_service),
) -> list[CategorySum]:
    if direction is TransactionDirection.TRANSFER:
        raise HTTPException(status_code=400, detail="Categories apply to income or expense")
    return service.get_top_categories(
        owner_id,
        period,
        main_currency,
        limit=limit,
        account_id=account_id,
        beginning_balance=beginning_balance,
        direction=direction,
    )

@analytics_router.get("/categories/{category}/transactions", response_model=DetailPage)
def get_category_detail(
    category: str,
    period: AnalyticsPeriod = AnalyticsPeriod.THIRTY_DAYS,
    page: int = Query(default=0, ge=0),
    page_size: int = Query(default=10, ge=1, le=100),
    account_id: Optional[UUID] = None,
    main_currency: str = Depends(_main_currency),
    owner_id: str = Depends(get_owner_id),
    service: AnalyticsService = Depends(get_analytics_service),
) -> DetailPage:
    return service.get_category_detail(
        owner_id, category, period, page, page_size, main_currency, account_id
    )

@analytics_router.get("/tags", response_model=list[TagSum])
def get_top_tags(
    period: AnalyticsPeriod = AnalyticsPeriod.THIRTY_DAYS,
    limit: int = Query(default=10, ge=1, le=50),
    account_id: Optional[UUID] = None,
    beginning_balance: Optional[Decimal] = None,
    main_currency: str = Depends(_main_currency),
    owner_id: str = Depends(get_owner_id),
    service: AnalyticsService = Depends(get_analytics_service),
) -> list[TagSum]:
    return service.get_top_tags(
        owner_id,
        period,
        main_currency,
        limit=limit,
        account_id=account_id,
        beginning_balance=beginning_balance,
    )

@analytics_router.get("/tags/{tag_id}/transactions", response_model=DetailPage)
def get_tag_detail(
    tag_id: UUID,
    period: AnalyticsPeriod = AnalyticsPeriod.THIRTY_DAYS,
    page: int = Query(default=0, ge=0),
    page_size: int = Query(default=10, ge=1, le=100),
    account_id: Optional[UUID] = None,
    main_currency: str = Depends(_main_currency),
    owner_id: str = Depends(get_owner_id),
    service: AnalyticsService = Depends(get_analytics_service),
) -> DetailPage:
    return service.get_tag_detail(
        owner_id, tag_id, period, page, page_size, main_currency, account_id
    )

@analytics_router.get("/transfers", response_model=list[TransferSum])
def get_top_transfers(
    period: AnalyticsPeriod = AnalyticsPeriod.THIRTY_DAYS,
    limit: int = Query(default=10, ge=1, le=50),
    account_id: Optional[UUID] = None,
    beginning_balance: Optional[Decimal] = None,
    main_currency: str = Depends(_main_currency),
    owner_id: str = Depends(get_owner_id),
    service: AnalyticsService = Depends(get_analytics_service),
) -> list[TransferSum]:
    return service.get_top_transfers(
        owner_id,
        period,
        main_currency,
        limit=limit,
        account_id=account_id,
        beginning_balance=beginning_balance,
    )

@analytics_router.get("/anomalies", response_model=list[AnomalyRow])
def get_anomalies(
    period: AnalyticsPeriod = AnalyticsPeriod.THIRTY_DAYS,
    threshold: Optional[Decimal] = None,
    account_id: Optional[UUID] = None,
    beginning_balance: Optional[Decimal] = None,
    main_currency: str = Depends(_main_currency),
    owner_id: str = Depends(get_owner_id),
    service: AnalyticsService = Depends(get_analytics_service),
    settings: Settings = Depends(get_settings),
) -> list[AnomalyRow]:
    return service.get_anomalies(
        owner_id,
        period,
        main_currency,
        threshold if threshold is not None else settings.anomaly_threshold,
        account_id=account_id,
        beginning_balance=beginning_balance,
    )

@analytics_router.get("/by-type", response_model=ByTypeResult)
def get_by_type(
    period: AnalyticsPeriod = AnalyticsPeriod.THIRTY_DAYS,
    account_id: Optional[UUID] = None,
    main_currency: str = Depends(_main_currency),
    owner_id: str = Depends(get_owner_id),
    service: AnalyticsService = Depends(get_analytics_service),
) -> ByTypeResult:
    return service.get_by_type(owner_id, period, main_currency, account_id)

@analytics_router.get("/portfolio", response_model=PortfolioSplit)
def get_portfolio(
    account_id: Optional[UUID] = None,
    main_currency: str = Depends(_main_currency),
    owner_id: str = Depends(get_owner_id),
    service: AnalyticsService = Depends(get_analytics_service),
) -> PortfolioSplit:
    return service.get_portfolio_split(owner_id, main_currency, account_id)


rates_router = APIRouter(prefix="/rates", tags=["rates"])

@rates_router.get("/convert", response_model=ConversionResponse)
def convert(
    amount: Decimal,
    from_currency: str = Query(..., alias="from", min_length=1),
    to_currency: str = Query(..., alias="to", min_length=1),
    converter: CurrencyConverter = Depends(get_converter),
) -> ConversionResponse:
    return ConversionResponse(
        amount=amount,
        from_currency=from_currency.strip().upper(),
        to_currency=to_currency.strip().upper(),
        converted=converter.convert(amount, from_currency, to_currency),
    )

__all__ = ["analytics_router", "rates_router", "router", "tags_router", "transactions_router"]
