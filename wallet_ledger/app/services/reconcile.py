from __future__ import annotations

import logging
from collections import defaultdict
from decimal import Decimal
from types import SimpleNamespace
from typing import Any
from uuid import UUID

from ..models import ReconcileReport, ReconcileRow, TransactionModel
from .converter import to_decimal
from .ledger import balance_deltas
from .repository import LedgerStore
from .trades import canonicalize_trade


logger = logging.getLogger(__name__)

TOLERANCE = Decimal("1e-12")

_CANONICAL_FIELDS = (
    "amount",
    "currency",
    "converted_amount",
    "convert_to_currency",
    "trade_base_currency",
    "trade_base_amount",
    "trade_quote_currency",
    "trade_quote_amount",
    "execution_price",
    "trade_fee_currency",
    "trade_fee_amount",
)


def _canonical_changes(tx: TransactionModel) -> dict[str, Any]:
    trade = canonicalize_trade(
        tx.trade_type,
        amount=tx.amount,
        currency=tx.currency,
        converted_amount=tx.converted_amount,
        convert_to_currency=tx.convert_to_currency,
        base_currency=tx.trade_base_currency,
        base_amount=tx.trade_base_amount,
        quote_currency=tx.trade_quote_currency,
        quote_amount=tx.trade_quote_amount,
        execution_price=tx.execution_price,
        fee_amount=tx.trade_fee_amount,
        fee_currency=tx.trade_fee_currency,
    )
    if trade is None:
        return {}
    changes: dict[str, Any] = {}
    for name in _CANONICAL_FIELDS:
        value = getattr(trade, name)
        if name == "trade_fee_currency" and not trade.trade_fee_amount:
            value = tx.trade_fee_currency
        if value is None or value == getattr(tx, name):
            continue
        changes[name] = value
    return changes


def reconcile_assets(
    repository: LedgerStore, owner_id: str, apply: bool = False
) -> ReconcileReport:
    """Rebuild balances from the transaction history and compare with stored assets.

    Every transaction is replayed from zero through the same effect rules the
    ledger uses, with trades canonicalized first. With ``apply`` the stored
    balances are overwritten and canonicalized trades written back in one unit.
    """
    transactions = repository.find_transactions(owner_id, include_hidden=True)
    accounts = {
        account.id: account
        for account in repository.list_accounts(owner_id, include_hidden=True)
    }

    targets: dict[tuple[UUID, str], Decimal] = defaultdict(Decimal)
    rewrites: dict[UUID, tuple[TransactionModel, dict[str, Any]]] = {}
    for tx in transactions:
        view: Any = tx
        if tx.trade_type is not None:
            changes = _canonical_changes(tx)
            if changes:
                rewrites[tx.id] = (tx, changes)
                view = SimpleNamespace(**{**tx.model_dump(), **changes})
        for key, delta in balance_deltas(view).items():
            targets[key] += delta

    current = {
        (asset.account_id, asset.currency): to_decimal(asset.amount)
        for asset in repository.list_assets(owner_id, include_hidden=True)
    }

    rows: list[ReconcileRow] = []
    for account_id, currency in sorted(
        set(targets) | set(current), key=lambda key: (str(key[0]), key[1])
    ):
        have = current.get((account_id, currency), Decimal("0"))
        want = targets.get((account_id, currency), Decimal("0"))
        diff = want - have
        if abs(diff) <= TOLERANCE:
            continue
        account = accounts.get(account_id)
        rows.append(
            ReconcileRow(
                account_id=account_id,
                account_name=account.display_name if account is not None else str(account_id),
                currency=currency,
                current=have,
                target=want,
                diff=diff,
            )
        )

    applied = False
    if apply and (rows or rewrites):
        with repository.atomic():
            for tx, changes in rewrites.values():
                repository.update_transaction(tx, changes)
            for row in rows:
                repository.upsert_asset(row.account_id, row.currency, row.target)
        applied = True

    logger.info(
        "reconcile.completed",
        extra={
            "owner_id": owner_id,
            "transactions": len(transactions),
            "mismatches": len(rows),
            "canonicalized_trades": len(rewrites),
            "applied": applied,
        },
    )
    return ReconcileReport(
        owner_id=owner_id,
        transactions_total=len(transactions),
        canonicalized_trades=list(rewrites),
        rows=rows,
        applied=applied,
    )
