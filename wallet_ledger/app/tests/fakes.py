from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.exc import OperationalError

from ..core.errors import RateProviderUnavailable
from ..models import (
    AccountAssetModel,
    AccountModel,
    TagModel,
    TransactionDirection,
    TransactionModel,
)
from ..services import CurrencyConverter, RateSource


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class StubRateProvider:
    def __init__(
        self,
        rates: Optional[Mapping[str, Any]] = None,
        historical: Optional[Mapping[date, Mapping[str, Any]]] = None,
    ) -> None:
        self.rates = {code: Decimal(str(rate)) for code, rate in (rates or {}).items()}
        self.historical = {
            day: {code: Decimal(str(rate)) for code, rate in table.items()}
            for day, table in (historical or {}).items()
        }
        self.fail = False
        self.latest_calls = 0
        self.historical_calls = 0

    def fetch_latest(self) -> Mapping[str, Decimal]:
        self.latest_calls += 1
        if self.fail:
            raise RateProviderUnavailable("provider down")
        return dict(self.rates)

    def fetch_historical(self, day: date) -> Optional[Mapping[str, Decimal]]:
        self.historical_calls += 1
        if self.fail:
            raise RateProviderUnavailable("provider down")
        return self.historical.get(day)


class StubCryptoProvider:
    def __init__(self, prices: Mapping[str, Any]) -> None:
        self.prices = {code: Decimal(str(price)) for code, price in prices.items()}
        self.fail = False
        self.calls = 0

    def fetch_prices(self) -> Mapping[str, Decimal]:
        self.calls += 1
        if self.fail:
            raise RateProviderUnavailable("crypto provider down")
        return dict(self.prices)


class InMemorySnapshotStore:
    def __init__(self) -> None:
        self.snapshots: dict[tuple[date, str], dict[str, Decimal]] = {}

    def get_snapshot(self, day: date, base_currency: str) -> Optional[Mapping[str, Decimal]]:
        return self.snapshots.get((day, base_currency))

    def save_snapshot(self, day: date, base_currency: str, rates: Mapping[str, Decimal]) -> None:
        self.snapshots[(day, base_currency)] = dict(rates)


class BrokenSnapshotStore:
    def __init__(self) -> None:
        self.attempts = 0

    def get_snapshot(self, day: date, base_currency: str) -> Optional[Mapping[str, Decimal]]:
        self.attempts += 1
        raise RuntimeError("snapshot table unavailable")

    def save_snapshot(self, day: date, base_currency: str, rates: Mapping[str, Decimal]) -> None:
        self.attempts += 1
        raise RuntimeError("snapshot table unavailable")


def make_converter(
    rates: Optional[Mapping[str, Any]] = None,
    historical: Optional[Mapping[date, Mapping[str, Any]]] = None,
) -> CurrencyConverter:
    provider = StubRateProvider(rates or {"USD": 1}, historical)
    return CurrencyConverter(RateSource(provider))


class InMemoryLedgerStore:
    """Dict-backed store honouring the ledger store contracts.

    ``atomic()`` snapshots assets and transactions and restores them when the
    block raises. ``fail_commits`` makes the next N units raise
    ``OperationalError`` at commit time.
    """

    def __init__(self) -> None:
        self.accounts: dict[UUID, AccountModel] = {}
        self.tags: dict[UUID, TagModel] = {}
        self.assets: dict[tuple[UUID, str], Decimal] = {}
        self.transactions: dict[UUID, TransactionModel] = {}
        self.fail_commits = 0
        self.commits = 0
        self.rollbacks = 0
        self.in_unit = False

    # Units ----------------------------------------------------------------
    @contextmanager
    def atomic(self) -> Iterator[None]:
        assets = dict(self.assets)
        transactions = {tx_id: (tx, tx.model_dump()) for tx_id, tx in self.transactions.items()}
        self.in_unit = True
        try:
            yield
            if self.fail_commits:
                self.fail_commits -= 1
                raise OperationalError("COMMIT", {}, Exception("database is locked"))
            self.commits += 1
        except Exception:
            self.rollbacks += 1
            self.assets = assets
            self.transactions = {}
            for tx_id, (tx, fields) in transactions.items():
                for name, value in fields.items():
                    setattr(tx, name, value)
                self.transactions[tx_id] = tx
            raise
        finally:
            self.in_unit = False

    # Accounts and tags ------------------------------------------------------
    def add_account(
        self, owner_id: str, display_name: str, default_currency: str, is_hidden: bool = False
    ) -> AccountModel:
        account = AccountModel(
            owner_id=owner_id,
            display_name=display_name,
            default_currency=default_currency,
            is_hidden=is_hidden,
        )
        self.accounts[account.id] = account
        return account

    def get_account(self, account_id: UUID, owner_id: str) -> Optional[AccountModel]:
        account = self.accounts.get(account_id)
        if account is None or account.owner_id != owner_id:
            return None
        return account

    def list_accounts(self, owner_id: str, include_hidden: bool = True) -> list[AccountModel]:
        return [
            account
            for account in self.accounts.values()
            if account.owner_id == owner_id and (include_hidden or not account.is_hidden)
        ]

    def set_account_hidden(self, account: AccountModel, hidden: bool) -> AccountModel:
        account.is_hidden = hidden
        return account

    def add_tag(self, owner_id: str, name: str) -> TagModel:
        tag = TagModel(owner_id=owner_id, name=name)
        self.tags[tag.id] = tag
        return tag

    def get_tag(self, tag_id: UUID, owner_id: str) -> Optional[TagModel]:
        tag = self.tags.get(tag_id)
        if tag is None or tag.owner_id != owner_id:
            return None
        return tag

    def list_tags(self, owner_id: str) -> list[TagModel]:
        return sorted(
            (tag for tag in self.tags.values() if tag.owner_id == owner_id),
            key=lambda tag: tag.name,
        )

    def get_tag_names(self, tag_ids: Iterable[UUID]) -> dict[UUID, str]:
        return {tag_id: self.tags[tag_id].name for tag_id in set(tag_ids) if tag_id in self.tags}

    # Assets -------------------------------------------------------------------
    def get_asset(
        self, account_id: UUID, currency: str, *, for_update: bool = False
    ) -> Optional[Decimal]:
        return self.assets.get((account_id, currency))

    def upsert_asset(self, account_id: UUID, currency: str, amount: Decimal) -> None:
        self.assets[(account_id, currency)] = amount

    def list_assets(
        self,
        owner_id: str,
        account_id: Optional[UUID] = None,
        include_hidden: bool = False,
    ) -> list[AccountAssetModel]:
        rows = []
        for (asset_account_id, currency), amount in sorted(
            self.assets.items(), key=lambda item: item[0][1]
        ):
            account = self.accounts.get(asset_account_id)
            if account is None or account.owner_id != owner_id:
                continue
            if account_id is not None:
                if asset_account_id != account_id:
                    continue
            elif account.is_hidden and not include_hidden:
                continue
            rows.append(
                AccountAssetModel(account_id=asset_account_id, currency=currency, amount=amount)
            )
        return rows

    def balance(self, account_id: UUID, currency: str) -> Decimal:
        return self.assets.get((account_id, currency), Decimal("0"))

    # Transactions -------------------------------------------------------------
    def add_transaction(self, **fields: Any) -> TransactionModel:
        tx = TransactionModel(**fields)
        self.transactions[tx.id] = tx
        return tx

    def find_transaction(self, transaction_id: UUID, owner_id: str) -> Optional[TransactionModel]:
        tx = self.transactions.get(transaction_id)
        if tx is None or tx.owner_id != owner_id:
            return None
        return tx

    def update_transaction(
        self, transaction: TransactionModel, fields: Mapping[str, Any]
    ) -> TransactionModel:
        for name, value in fields.items():
            setattr(transaction, name, value)
        return transaction

    def delete_transaction(self, transaction: TransactionModel) -> None:
        self.transactions.pop(transaction.id, None)

    def _matches(
        self,
        tx: TransactionModel,
        owner_id: str,
        directions: Optional[Iterable[TransactionDirection]],
        date_from: Optional[datetime],
        date_to: Optional[datetime],
        account_id: Optional[UUID],
        include_hidden: bool,
        category: Optional[str],
        tag_id: Optional[UUID],
        trade_only: bool,
    ) -> bool:
        if tx.owner_id != owner_id:
            return False
        if directions is not None and tx.direction not in set(directions):
            return False
        when = _aware(tx.transaction_date)
        if date_from is not None and when < date_from:
            return False
        if date_to is not None and when > date_to:
            return False
        if account_id is not None:
            if tx.account_id != account_id:
                return False
        elif not include_hidden:
            account = self.accounts.get(tx.account_id)
            if account is None or account.is_hidden:
                return False
        if category is not None and tx.category != category:
            return False
        if tag_id is not None and tx.tag_id != tag_id:
            return False
        if trade_only and tx.trade_type is None:
            return False
        return True

    def find_transactions(
        self,
        owner_id: str,
        *,
        directions: Optional[Iterable[TransactionDirection]] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        account_id: Optional[UUID] = None,
        include_hidden: bool = False,
        category: Optional[str] = None,
        tag_id: Optional[UUID] = None,
        trade_only: bool = False,
        order_by_date_desc: bool = False,
        offset: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[TransactionModel]:
        directions = list(directions) if directions is not None else None
        rows = [
            tx
            for tx in self.transactions.values()
            if self._matches(
                tx,
                owner_id,
                directions,
                date_from,
                date_to,
                account_id,
                include_hidden,
                category,
                tag_id,
                trade_only,
            )
        ]
        rows.sort(key=lambda tx: _aware(tx.transaction_date), reverse=order_by_date_desc)
        start = offset or 0
        end = start + limit if limit is not None else None
        return rows[start:end]

    def count_transactions(self, owner_id: str, **filters: Any) -> int:
        return len(self.find_transactions(owner_id, **filters))
