from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlmodel import Session

from ..services import AnalyticsService, CurrencyConverter, LedgerRepository, LedgerService, RateSource
from .config import Settings, get_settings
from .db import get_session


def get_owner_id(x_owner_id: Optional[str] = Header(default=None)) -> str:
    owner_id = (x_owner_id or "").strip()
    if not owner_id:
        raise HTTPException(status_code=401, detail="X-Owner-Id header is required")
    return owner_id


def get_rate_source(request: Request) -> RateSource:
    return request.app.state.rate_source


def get_converter(rate_source: RateSource = Depends(get_rate_source)) -> CurrencyConverter:
    return CurrencyConverter(rate_source)


def get_repository(session: Session = Depends(get_session)) -> LedgerRepository:
    return LedgerRepository(session)


def get_ledger_service(
    repository: LedgerRepository = Depends(get_repository),
    converter: CurrencyConverter = Depends(get_converter),
    settings: Settings = Depends(get_settings),
) -> LedgerService:
    return LedgerService(repository, converter, retry_attempts=settings.ledger_retry_attempts)


def get_analytics_service(
    repository: LedgerRepository = Depends(get_repository),
    converter: CurrencyConverter = Depends(get_converter),
) -> AnalyticsService:
    return AnalyticsService(repository, converter)
