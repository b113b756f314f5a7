from .db import Account as AccountModel
from .db import AccountAsset as AccountAssetModel
from .db import RateSnapshot as RateSnapshotModel
from .db import Tag as TagModel
from .db import TradeType, TransactionDirection
from .db import Transaction as TransactionModel
from .schemas import (
    AccountCreate,
    AccountResponse,
    AnomalyRow,
    AssetResponse,
    ByTypeResult,
    CategorySum,
    ConversionResponse,
    DetailItem,
    DetailPage,
    ExpenseDraft,
    IncomeDraft,
    PortfolioSplit,
    ReconcileReport,
    ReconcileRow,
    SummaryResult,
    TagCreate,
    TagDetail,
    TagResponse,
    TagSum,
    TradeDraft,
    TransactionDraft,
    TransactionPage,
    TransactionResponse,
    TransactionUpdate,
    TransferDraft,
    TransferSum,
)

__all__ = [
    "AccountCreate",
    "AccountResponse",
    "AnomalyRow",
    "AssetResponse",
    "ByTypeResult",
    "CategorySum",
    "ConversionResponse",
    "DetailItem",
    "DetailPage",
    "ExpenseDraft",
    "IncomeDraft",
    "PortfolioSplit",
    "ReconcileReport",
    "ReconcileRow",
    "SummaryResult",
    "TagCreate",
    "TagDetail",
    "TagResponse",
    "TagSum",
    "TradeDraft",
    "TransactionDraft",
    "TransactionPage",
    "TransactionResponse",
    "TransactionUpdate",
    "TransferDraft",
    "TransferSum",
    "AccountModel",
    "AccountAssetModel",
    "RateSnapshotModel",
    "TagModel",
    "TransactionModel",
    "TradeType",
    "TransactionDirection",
]
