import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI

from .api.exceptions import register_exception_handlers
from .api.routes import analytics_router, rates_router, router as accounts_router
from .api.routes import tags_router, transactions_router
from .core.config import Settings, get_settings
from .core.db import get_engine, init_db
from .services import (
    CoinMarketCapProvider,
    ExchangeRateApiProvider,
    RateSource,
    SqlRateSnapshotStore,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)

logger = logging.getLogger(__name__)


def build_rate_source(settings: Settings) -> RateSource:
    crypto_provider = None
    if settings.coinmarketcap_api_key:
        crypto_provider = CoinMarketCapProvider(
            settings.coinmarketcap_api_key,
            url=settings.coinmarketcap_api_url,
            timeout=settings.http_timeout_seconds,
        )
    return RateSource(
        ExchangeRateApiProvider(
            settings.exchange_api_key,
            base_url=settings.exchange_api_url,
            timeout=settings.http_timeout_seconds,
        ),
        crypto_provider=crypto_provider,
        snapshot_store=SqlRateSnapshotStore(get_engine()),
        ttl=timedelta(seconds=settings.rates_ttl_seconds),
        crypto_ttl=timedelta(seconds=settings.crypto_rates_ttl_seconds),
        failure_cooldown=timedelta(seconds=settings.rates_failure_cooldown_seconds),
        max_cached_days=settings.rates_max_cached_days,
    )

@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.rate_source = build_rate_source(settings)
    logger.info("app.started", extra={"app_name": settings.app_name})
    yield
    app.state.rate_source.close()

app = FastAPI(title=settings.app_name, lifespan=lifespan)

app.include_router(accounts_router)
app.include_router(tags_router)
app.include_router(transactions_router)
app.include_router(analytics_router)
app.include_router(rates_router)
register_exception_handlers(app)

@app.get("/health")
def read_health() -> dict[str, str]:
    return {"status": "ok"}
