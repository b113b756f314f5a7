from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Any, ContextManager, Optional, Protocol
from uuid import UUID

from sqlalchemy import func
from sqlmodel import Session, col, select

from ..models import (
    AccountAssetModel,
    AccountModel,
    RateSnapshotModel,
    TagModel,
    TransactionDirection,
    TransactionModel,
)
from .rates import parse_rates


# ----------------------------------------------------------------------
# Store contracts
# ----------------------------------------------------------------------
class AccountAssetStore(Protocol):
    def get_asset(
        self, account_id: UUID, currency: str, *, for_update: bool = False
    ) -> Optional[Decimal]: ...

    def upsert_asset(self, account_id: UUID, currency: str, amount: Decimal) -> None: ...

    def list_assets(
        self,
        owner_id: str,
        account_id: Optional[UUID] = None,
        include_hidden: bool = False,
    ) -> list[AccountAssetModel]: ...


class TransactionStore(Protocol):
    def atomic(self) -> ContextManager[None]: ...

    def add_transaction(self, **fields: Any) -> TransactionModel: ...

    def find_transaction(
        self, transaction_id: UUID, owner_id: str
    ) -> Optional[TransactionModel]: ...

    def update_transaction(
        self, transaction: TransactionModel, fields: Mapping[str, Any]
    ) -> TransactionModel: ...

    def delete_transaction(self, transaction: TransactionModel) -> None: ...


class AccountStore(Protocol):
    def add_account(
        self, owner_id: str, display_name: str, default_currency: str, is_hidden: bool = False
    ) -> AccountModel: ...

    def get_account(self, account_id: UUID, owner_id: str) -> Optional[AccountModel]: ...

    def list_accounts(self, owner_id: str, include_hidden: bool = True) -> list[AccountModel]: ...

    def set_account_hidden(self, account: AccountModel, hidden: bool) -> AccountModel: ...

    def add_tag(self, owner_id: str, name: str) -> TagModel: ...

    def get_tag(self, tag_id: UUID, owner_id: str) -> Optional[TagModel]: ...

    def list_tags(self, owner_id: str) -> list[TagModel]: ...


class TransactionQuery(Protocol):
    """Read-only view of the ledger used by analytics."""

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
    ) -> list[TransactionModel]: ...

    def count_transactions(
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
    ) -> int: ...

    def list_accounts(self, owner_id: str, include_hidden: bool = True) -> list[AccountModel]: ...

    def get_tag_names(self, tag_ids: Iterable[UUID]) -> dict[UUID, str]: ...

    def list_assets(
        self,
        owner_id: str,
        account_id: Optional[UUID] = None,
        include_hidden: bool = False,
    ) -> list[AccountAssetModel]: ...


class LedgerStore(AccountAssetStore, TransactionStore, AccountStore, TransactionQuery, Protocol):
    """Everything the ledger service needs from persistence."""


# ----------------------------------------------------------------------
# SQLModel implementation
# ----------------------------------------------------------------------
class LedgerRepository:
    """Thin data access layer around the SQLModel session."""

    def __init__(self, session: Session) -> None:
        self.session = session

    @contextmanager
    def atomic(self) -> Iterator[None]:
        try:
            yield
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    # Accounts and tags --------------------------------------------------
    def add_account(
        self, owner_id: str, display_name: str, default_currency: str, is_hidden: bool = False
    ) -> AccountModel:
        account = AccountModel(
            owner_id=owner_id,
            display_name=display_name,
            default_currency=default_currency,
            is_hidden=is_hidden,
        )
        self.session.add(account)
        self.session.flush()
        self.session.refresh(account)
        return account

    def get_account(self, account_id: UUID, owner_id: str) -> Optional[AccountModel]:
        account = self.session.get(AccountModel, account_id)
        if account is None or account.owner_id != owner_id:
            return None
        return account

    def list_accounts(self, owner_id: str, include_hidden: bool = True) -> list[AccountModel]:
        stmt = select(AccountModel).where(AccountModel.owner_id == owner_id)
        if not include_hidden:
            stmt = stmt.where(AccountModel.is_hidden == False)  # noqa: E712
        return list(self.session.exec(stmt.order_by(AccountModel.created_at)))

    def set_account_hidden(self, account: AccountModel, hidden: bool) -> AccountModel:
        account.is_hidden = hidden
        self.session.add(account)
        self.session.flush()
        return account

    def add_tag(self, owner_id: str, name: str) -> TagModel:
        tag = TagModel(owner_id=owner_id, name=name)
        self.session.add(tag)
        self.session.flush()
        self.session.refresh(tag)
        return tag

    def get_tag(self, tag_id: UUID, owner_id: str) -> Optional[TagModel]:
        tag = self.session.get(TagModel, tag_id)
        if tag is None or tag.owner_id != owner_id:
            return None
        return tag

    def list_tags(self, owner_id: str) -> list[TagModel]:
        stmt = select(TagModel).where(TagModel.owner_id == owner_id).order_by(TagModel.name)
        return list(self.session.exec(stmt))

    def get_tag_names(self, tag_ids: Iterable[UUID]) -> dict[UUID, str]:
        ids = list(set(tag_ids))
        if not ids:
            return {}
        stmt = select(TagModel).where(col(TagModel.id).in_(ids))
        return {tag.id: tag.name for tag in self.session.exec(stmt)}

    # Assets ---------------------------------------------------------------
    def get_asset(
        self, account_id: UUID, currency: str, *, for_update: bool = False
    ) -> Optional[Decimal]:
        stmt = (
            select(AccountAssetModel)
            .where(AccountAssetModel.account_id == account_id)
            .where(AccountAssetModel.currency == currency)
        )
        if for_update:
            stmt = stmt.with_for_update()
        asset = self.session.exec(stmt).first()
        return None if asset is None else Decimal(asset.amount)

    def upsert_asset(self, account_id: UUID, currency: str, amount: Decimal) -> None:
        asset = self.session.get(AccountAssetModel, (account_id, currency))
        if asset is None:
            asset = AccountAssetModel(account_id=account_id, currency=currency, amount=amount)
        else:
            asset.amount = amount
        self.session.add(asset)
        self.session.flush()

    def list_assets(
        self,
        owner_id: str,
        account_id: Optional[UUID] = None,
        include_hidden: bool = False,
    ) -> list[AccountAssetModel]:
        stmt = (
            select(AccountAssetModel)
            .join(AccountModel, AccountModel.id == AccountAssetModel.account_id)
            .where(AccountModel.owner_id == owner_id)
        )
        if account_id is not None:
            stmt = stmt.where(AccountAssetModel.account_id == account_id)
        elif not include_hidden:
            stmt = stmt.where(AccountModel.is_hidden == False)  # noqa: E712
        return list(self.session.exec(stmt.order_by(AccountAssetModel.currency)))

    # Transactions -----------------------------------------------------------
    def add_transaction(self, **fields: Any) -> TransactionModel:
        transaction = TransactionModel(**fields)
        self.session.add(transaction)
        self.session.flush()
        self.session.refresh(transaction)
        return transaction

    def find_transaction(
        self, transaction_id: UUID, owner_id: str
    ) -> Optional[TransactionModel]:
        stmt = (
            select(TransactionModel)
            .where(TransactionModel.id == transaction_id)
            .where(TransactionModel.owner_id == owner_id)
        )
        return self.session.exec(stmt).first()

    def update_transaction(
        self, transaction: TransactionModel, fields: Mapping[str, Any]
    ) -> TransactionModel:
        for name, value in fields.items():
            setattr(transaction, name, value)
        self.session.add(transaction)
        self.session.flush()
        return transaction

    def delete_transaction(self, transaction: TransactionModel) -> None:
        self.session.delete(transaction)
        self.session.flush()

    def _filtered(
        self,
        stmt,
        owner_id: str,
        *,
        directions: Optional[Iterable[TransactionDirection]],
        date_from: Optional[datetime],
        date_to: Optional[datetime],
        account_id: Optional[UUID],
        include_hidden: bool,
        category: Optional[str],
        tag_id: Optional[UUID],
        trade_only: bool,
    ):
        stmt = stmt.where(TransactionModel.owner_id == owner_id)
        if directions is not None:
            stmt = stmt.where(col(TransactionModel.direction).in_(list(directions)))
        if date_from is not None:
            stmt = stmt.where(TransactionModel.transaction_date >= date_from)
        if date_to is not None:
            stmt = stmt.where(TransactionModel.transaction_date <= date_to)
        if account_id is not None:
            stmt = stmt.where(TransactionModel.account_id == account_id)
        elif not include_hidden:
            stmt = stmt.join(AccountModel, AccountModel.id == TransactionModel.account_id).where(
                AccountModel.is_hidden == False  # noqa: E712
            )
        if category is not None:
            stmt = stmt.where(TransactionModel.category == category)
        if tag_id is not None:
            stmt = stmt.where(TransactionModel.tag_id == tag_id)
        if trade_only:
            stmt = stmt.where(col(TransactionModel.trade_type).is_not(None))
        return stmt

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
        stmt = self._filtered(
            select(TransactionModel),
            owner_id,
            directions=directions,
            date_from=date_from,
            date_to=date_to,
            account_id=account_id,
            include_hidden=include_hidden,
            category=category,
            tag_id=tag_id,
            trade_only=trade_only,
        )
        if order_by_date_desc:
            stmt = stmt.order_by(col(TransactionModel.transaction_date).desc())
        else:
            stmt = stmt.order_by(TransactionModel.transaction_date)
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.exec(stmt))

    def count_transactions(
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
    ) -> int:
        stmt = self._filtered(
            select(func.count()).select_from(TransactionModel),
            owner_id,
            directions=directions,
            date_from=date_from,
            date_to=date_to,
            account_id=account_id,
            include_hidden=include_hidden,
            category=category,
            tag_id=tag_id,
            trade_only=trade_only,
        )
        return int(self.session.exec(stmt).one())


class SqlRateSnapshotStore:
    """Rate snapshots persisted per (day, base). Opens its own short sessions."""

    def __init__(self, engine) -> None:
        self.engine = engine

    def get_snapshot(self, day: date, base_currency: str) -> Optional[Mapping[str, Decimal]]:
        with Session(self.engine) as session:
            row = session.get(RateSnapshotModel, (day, base_currency))
            if row is None:
                return None
            return parse_rates(row.rates)

    def save_snapshot(
        self, day: date, base_currency: str, rates: Mapping[str, Decimal]
    ) -> None:
        with Session(self.engine) as session:
            row = session.get(RateSnapshotModel, (day, base_currency))
            if row is None:
                row = RateSnapshotModel(day=day, base_currency=base_currency)
            row.rates = {code: str(rate) for code, rate in rates.items()}
            session.add(row)
            session.commit()


def page_bounds(page: int, page_size: int) -> tuple[int, int]:
    page = max(page, 0)
    page_size = max(page_size, 1)
    return page * page_size, page_size
