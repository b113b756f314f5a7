from .analytics import AnalyticsPeriod, AnalyticsService, date_range, period_days, prev_date_range
from .converter import CurrencyConverter
from .ledger import LedgerService, balance_deltas, effective_amount
from .rates import (
    CoinMarketCapProvider,
    ExchangeRateApiProvider,
    RateSource,
    RateTable,
)
from .reconcile import reconcile_assets
from .repository import LedgerRepository, SqlRateSnapshotStore
from .trades import CanonicalTrade, canonicalize_trade

__all__ = [
    "AnalyticsPeriod",
    "AnalyticsService",
    "CanonicalTrade",
    "CoinMarketCapProvider",
    "CurrencyConverter",
    "ExchangeRateApiProvider",
    "LedgerRepository",
    "LedgerService",
    "RateSource",
    "RateTable",
    "SqlRateSnapshotStore",
    "balance_deltas",
    "canonicalize_trade",
    "date_range",
    "effective_amount",
    "period_days",
    "prev_date_range",
    "reconcile_assets",
]
