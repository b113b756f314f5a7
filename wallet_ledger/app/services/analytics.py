from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterable, Optional
from uuid import UUID

from ..models import (
    AccountModel,
    AnomalyRow,
    ByTypeResult,
    CategorySum,
    DetailItem,
    DetailPage,
    PortfolioSplit,
    SummaryResult,
    TagDetail,
    TagSum,
    TransactionDirection,
    TransactionModel,
    TransferSum,
)
from .converter import CurrencyConverter, to_decimal
from .ledger import effective_amount
from .repository import TransactionQuery, page_bounds


logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
ANOMALY_BALANCE_SHARE = Decimal("0.5")
DETAIL_ITEMS_PER_GROUP = 3
OUTSIDE_WALLET = "Outside wallet"
UNKNOWN_LABEL = "—"


class AnalyticsPeriod(str, Enum):
    SEVEN_DAYS = "7d"
    THIRTY_DAYS = "30d"
    NINETY_DAYS = "90d"
    WEEK = "week"
    MONTH = "month"
    THREE_MONTHS = "3month"


ROLLING_DAYS = {
    AnalyticsPeriod.SEVEN_DAYS: 7,
    AnalyticsPeriod.THIRTY_DAYS: 30,
    AnalyticsPeriod.NINETY_DAYS: 90,
}

Window = tuple[datetime, datetime]


def _now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(UTC)
    if now.tzinfo is None:
        return now.replace(tzinfo=UTC)
    return now


def date_range(period: AnalyticsPeriod | str, now: Optional[datetime] = None) -> Window:
    """Window for ``period`` ending at the last millisecond of the current day.

    Rolling periods count whole days including today, so ``30d`` starts at
    midnight 29 days ago. ``week`` starts on Monday, ``month`` on the 1st and
    ``3month`` on the 1st of the month two months back.
    """
    period = AnalyticsPeriod(period)
    now = _now(now)
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    end = now.replace(hour=23, minute=59, second=59, microsecond=999000)

    days = ROLLING_DAYS.get(period)
    if days is not None:
        start = start_of_day - timedelta(days=days - 1)
    elif period is AnalyticsPeriod.WEEK:
        start = start_of_day - timedelta(days=now.weekday())
    elif period is AnalyticsPeriod.MONTH:
        start = start_of_day.replace(day=1)
    else:
        year, month = now.year, now.month - 2
        if month <= 0:
            month += 12
            year -= 1
        start = start_of_day.replace(year=year, month=month, day=1)
    return start, end


def prev_date_range(period: AnalyticsPeriod | str, now: Optional[datetime] = None) -> Window:
    start, end = date_range(period, now)
    span = end - start
    return start - span, start - timedelta(milliseconds=1)


def period_days(period: AnalyticsPeriod | str, now: Optional[datetime] = None) -> int:
    start, end = date_range(period, now)
    return max(1, math.ceil((end - start).total_seconds() / 86400))


def _pct(value: Decimal, beginning_balance: Optional[Decimal]) -> Decimal:
    denom = beginning_balance if beginning_balance is not None and beginning_balance > 0 else 1
    return value / Decimal(denom) * HUNDRED


def _trend(current: Decimal, previous: Decimal) -> Optional[Decimal]:
    if previous == 0:
        return None
    return (current - previous) / previous * HUNDRED


def _label(tx: TransactionModel) -> str:
    return (tx.description or "").strip() or UNKNOWN_LABEL


class _Group:
    __slots__ = ("sum", "items", "tag_sums", "descriptions")

    def __init__(self) -> None:
        self.sum = ZERO
        self.items: list[tuple[Decimal, DetailItem]] = []
        self.tag_sums: dict[str, Decimal] = defaultdict(Decimal)
        self.descriptions: list[str] = []

    def add(self, tx: TransactionModel, in_main: Decimal) -> None:
        self.sum += in_main
        label = _label(tx)
        self.items.append(
            (in_main, DetailItem(label=label, amount=abs(to_decimal(tx.amount)), currency=tx.currency))
        )
        if label not in self.descriptions:
            self.descriptions.append(label)

    def top_items(self) -> list[DetailItem]:
        ranked = sorted(self.items, key=lambda pair: pair[0], reverse=True)
        return [item for _, item in ranked[:DETAIL_ITEMS_PER_GROUP]]


class AnalyticsService:
    """Read-only reports over the ledger in one reporting currency.

    Every row is converted on its own (historical rate for its date, then the
    stored USD snapshot, then the live rate) before being summed, so groups
    mixing currencies add up in ``main_currency``. Empty windows produce zeros
    and empty lists.
    """

    def __init__(
        self,
        query: TransactionQuery,
        converter: CurrencyConverter,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.query = query
        self.converter = converter
        self._clock = clock or (lambda: datetime.now(UTC))

    # ------------------------------------------------------------------
    # Helper utilities
    # ------------------------------------------------------------------
    def window(self, period: AnalyticsPeriod | str) -> Window:
        return date_range(period, self._clock())

    def previous_window(self, period: AnalyticsPeriod | str) -> Window:
        return prev_date_range(period, self._clock())

    def period_days(self, period: AnalyticsPeriod | str) -> int:
        return period_days(period, self._clock())

    def _in_main(self, tx: TransactionModel, main_currency: str) -> Decimal:
        amount, currency = effective_amount(tx)
        return self.converter.to_main_currency(
            amount,
            currency,
            main_currency,
            transaction_date=tx.transaction_date,
            pre_computed_usd=tx.amount_usd,
        )

    def _rows(
        self,
        owner_id: str,
        direction: TransactionDirection,
        window: Window,
        account_id: Optional[UUID] = None,
        **filters,
    ) -> list[TransactionModel]:
        return self.query.find_transactions(
            owner_id,
            directions=[direction],
            date_from=window[0],
            date_to=window[1],
            account_id=account_id,
            **filters,
        )

    def _sum(self, rows: Iterable[TransactionModel], main_currency: str) -> Decimal:
        return sum((self._in_main(tx, main_currency) for tx in rows), ZERO)

    def _accounts(self, owner_id: str) -> dict[UUID, AccountModel]:
        return {
            account.id: account
            for account in self.query.list_accounts(owner_id, include_hidden=True)
        }

    def _holdings(
        self, owner_id: str, main_currency: str, account_id: Optional[UUID]
    ) -> list[tuple[str, Decimal]]:
        assets = self.query.list_assets(owner_id, account_id=account_id)
        return [
            (
                asset.currency,
                self.converter.to_main_currency(asset.amount, asset.currency, main_currency),
            )
            for asset in assets
        ]

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------
    def get_summary(
        self,
        owner_id: str,
        period: AnalyticsPeriod | str,
        main_currency: str,
        account_id: Optional[UUID] = None,
    ) -> SummaryResult:
        current = self.window(period)
        previous = self.previous_window(period)

        expenses = self._sum(
            self._rows(owner_id, TransactionDirection.EXPENSE, current, account_id), main_currency
        )
        income = self._sum(
            self._rows(owner_id, TransactionDirection.INCOME, current, account_id), main_currency
        )
        expenses_prev = self._sum(
            self._rows(owner_id, TransactionDirection.EXPENSE, previous, account_id), main_currency
        )
        income_prev = self._sum(
            self._rows(owner_id, TransactionDirection.INCOME, previous, account_id), main_currency
        )
        balance = sum(
            (value for _, value in self._holdings(owner_id, main_currency, account_id)), ZERO
        )

        return SummaryResult(
            balance=balance,
            expenses=expenses,
            income=income,
            expenses_prev=expenses_prev,
            income_prev=income_prev,
            expenses_trend_pct=_trend(expenses, expenses_prev),
            income_trend_pct=_trend(income, income_prev),
            burn_rate=expenses / self.period_days(period),
        )

    def get_burn_rate(
        self,
        owner_id: str,
        period: AnalyticsPeriod | str,
        main_currency: str,
        account_id: Optional[UUID] = None,
    ) -> Decimal:
        return self.get_summary(owner_id, period, main_currency, account_id).burn_rate

    def get_by_type(
        self,
        owner_id: str,
        period: AnalyticsPeriod | str,
        main_currency: str,
        account_id: Optional[UUID] = None,
    ) -> ByTypeResult:
        current = self.window(period)
        totals = {
            direction: self._sum(
                self._rows(owner_id, direction, current, account_id), main_currency
            )
            for direction in TransactionDirection
        }
        return ByTypeResult(
            expense=totals[TransactionDirection.EXPENSE],
            income=totals[TransactionDirection.INCOME],
            transfer=totals[TransactionDirection.TRANSFER],
        )

    # ------------------------------------------------------------------
    # Top-N breakdowns
    # ------------------------------------------------------------------
    def get_top_categories(
        self,
        owner_id: str,
        period: AnalyticsPeriod | str,
        main_currency: str,
        limit: int = 5,
        account_id: Optional[UUID] = None,
        beginning_balance: Optional[Decimal] = None,
        direction: TransactionDirection = TransactionDirection.EXPENSE,
    ) -> list[CategorySum]:
        rows = [
            tx
            for tx in self._rows(owner_id, direction, self.window(period), account_id)
            if tx.category
        ]
        tag_names = self.query.get_tag_names(tx.tag_id for tx in rows if tx.tag_id)

        groups: dict[str, _Group] = defaultdict(_Group)
        for tx in rows:
            in_main = self._in_main(tx, main_currency)
            group = groups[tx.category]
            group.add(tx, in_main)
            if tx.tag_id is not None:
                group.tag_sums[tag_names.get(tx.tag_id, UNKNOWN_LABEL)] += in_main

        ranked = sorted(groups.items(), key=lambda item: item[1].sum, reverse=True)[:limit]
        return [
            CategorySum(
                category=name,
                sum=group.sum,
                pct=_pct(group.sum, beginning_balance),
                tag_details=[
                    TagDetail(tag_name=tag_name, sum=tag_sum)
                    for tag_name, tag_sum in group.tag_sums.items()
                ],
                detail_items=group.top_items(),
            )
            for name, group in ranked
        ]

    def get_top_income_categories(
        self,
        owner_id: str,
        period: AnalyticsPeriod | str,
        main_currency: str,
        limit: int = 5,
        account_id: Optional[UUID] = None,
        beginning_balance: Optional[Decimal] = None,
    ) -> list[CategorySum]:
        return self.get_top_categories(
            owner_id,
            period,
            main_currency,
            limit=limit,
            account_id=account_id,
            beginning_balance=beginning_balance,
            direction=TransactionDirection.INCOME,
        )

    def get_top_tags(
        self,
        owner_id: str,
        period: AnalyticsPeriod | str,
        main_currency: str,
        limit: int = 10,
        account_id: Optional[UUID] = None,
        beginning_balance: Optional[Decimal] = None,
    ) -> list[TagSum]:
        rows = [
            tx
            for tx in self._rows(
                owner_id, TransactionDirection.EXPENSE, self.window(period), account_id
            )
            if tx.tag_id is not None
        ]
        sums: dict[UUID, Decimal] = defaultdict(Decimal)
        for tx in rows:
            sums[tx.tag_id] += self._in_main(tx, main_currency)

        tag_names = self.query.get_tag_names(sums)
        ranked = sorted(sums.items(), key=lambda item: item[1], reverse=True)[:limit]
        return [
            TagSum(
                tag_id=tag_id,
                tag_name=tag_names.get(tag_id, UNKNOWN_LABEL),
                sum=total,
                pct=_pct(total, beginning_balance),
            )
            for tag_id, total in ranked
        ]

    def get_top_transfers(
        self,
        owner_id: str,
        period: AnalyticsPeriod | str,
        main_currency: str,
        limit: int = 10,
        account_id: Optional[UUID] = None,
        beginning_balance: Optional[Decimal] = None,
    ) -> list[TransferSum]:
        rows = self._rows(owner_id, TransactionDirection.TRANSFER, self.window(period), account_id)
        groups: dict[tuple[Optional[UUID], Optional[UUID]], _Group] = defaultdict(_Group)
        for tx in rows:
            key = (tx.from_account_id or tx.account_id, tx.to_account_id)
            groups[key].add(tx, self._in_main(tx, main_currency))

        accounts = self._accounts(owner_id)

        def name(account_id: Optional[UUID]) -> str:
            if account_id is None:
                return OUTSIDE_WALLET
            account = accounts.get(account_id)
            return account.display_name if account is not None else UNKNOWN_LABEL

        ranked = sorted(groups.items(), key=lambda item: item[1].sum, reverse=True)[:limit]
        return [
            TransferSum(
                from_account_name=name(source),
                to_account_name=name(target),
                sum=group.sum,
                pct=_pct(group.sum, beginning_balance),
                descriptions=group.descriptions,
                detail_items=group.top_items(),
            )
            for (source, target), group in ranked
        ]

    # ------------------------------------------------------------------
    # Anomalies and drill-down
    # ------------------------------------------------------------------
    def get_anomalies(
        self,
        owner_id: str,
        period: AnalyticsPeriod | str,
        main_currency: str,
        threshold: Decimal,
        account_id: Optional[UUID] = None,
        beginning_balance: Optional[Decimal] = None,
    ) -> list[AnomalyRow]:
        if beginning_balance is not None and beginning_balance > 0:
            effective_threshold = to_decimal(beginning_balance) * ANOMALY_BALANCE_SHARE
        else:
            effective_threshold = to_decimal(threshold)

        rows = self._rows(owner_id, TransactionDirection.EXPENSE, self.window(period), account_id)
        tag_names = self.query.get_tag_names(tx.tag_id for tx in rows if tx.tag_id)

        flagged: list[AnomalyRow] = []
        for tx in rows:
            in_main = self._in_main(tx, main_currency)
            if in_main < effective_threshold:
                continue
            flagged.append(
                AnomalyRow(
                    transaction_id=tx.id,
                    amount=in_main,
                    currency=main_currency,
                    description=tx.description,
                    transaction_date=tx.transaction_date,
                    tag_or_category=(
                        tag_names.get(tx.tag_id) if tx.tag_id is not None else tx.category
                    ),
                )
            )
        flagged.sort(key=lambda row: row.amount, reverse=True)
        logger.debug(
            "analytics.anomalies",
            extra={
                "owner_id": owner_id,
                "threshold": str(effective_threshold),
                "flagged": len(flagged),
            },
        )
        return flagged

    def _detail(
        self,
        owner_id: str,
        period: AnalyticsPeriod | str,
        page: int,
        page_size: int,
        main_currency: str,
        account_id: Optional[UUID],
        **filters,
    ) -> DetailPage:
        start, end = self.window(period)
        offset, limit = page_bounds(page, page_size)
        scope = dict(
            directions=[TransactionDirection.EXPENSE],
            date_from=start,
            date_to=end,
            account_id=account_id,
            **filters,
        )
        total = self.query.count_transactions(owner_id, **scope)
        rows = self.query.find_transactions(
            owner_id, order_by_date_desc=True, offset=offset, limit=limit, **scope
        )
        return DetailPage(
            transactions=[
                AnomalyRow(
                    transaction_id=tx.id,
                    amount=self._in_main(tx, main_currency),
                    currency=main_currency,
                    description=tx.description,
                    transaction_date=tx.transaction_date,
                )
                for tx in rows
            ],
            total=total,
        )

    def get_category_detail(
        self,
        owner_id: str,
        category: str,
        period: AnalyticsPeriod | str,
        page: int,
        page_size: int,
        main_currency: str,
        account_id: Optional[UUID] = None,
    ) -> DetailPage:
        return self._detail(
            owner_id, period, page, page_size, main_currency, account_id, category=category
        )

    def get_tag_detail(
        self,
        owner_id: str,
        tag_id: UUID,
        period: AnalyticsPeriod | str,
        page: int,
        page_size: int,
        main_currency: str,
        account_id: Optional[UUID] = None,
    ) -> DetailPage:
        return self._detail(
            owner_id, period, page, page_size, main_currency, account_id, tag_id=tag_id
        )

    # ------------------------------------------------------------------
    # Cash flow
    # ------------------------------------------------------------------
    def _external_transfers(
        self,
        owner_id: str,
        period: AnalyticsPeriod | str,
        account_id: Optional[UUID],
    ) -> list[tuple[TransactionModel, bool]]:
        """Transfers crossing the wallet boundary, paired with ``True`` when money left."""
        rows = self._rows(
            owner_id,
            TransactionDirection.TRANSFER,
            self.window(period),
            include_hidden=True,
        )
        accounts = self._accounts(owner_id)

        def hidden(account_id: Optional[UUID]) -> bool:
            account = accounts.get(account_id) if account_id is not None else None
            return account is None or account.is_hidden

        crossing: list[tuple[TransactionModel, bool]] = []
        for tx in rows:
            if tx.to_account_id is None:
                continue
            source = tx.from_account_id or tx.account_id
            source_hidden = hidden(source)
            target_hidden = hidden(tx.to_account_id)
            if account_id is not None:
                if source == account_id and target_hidden:
                    crossing.append((tx, True))
                elif tx.to_account_id == account_id and source_hidden:
                    crossing.append((tx, False))
            elif not source_hidden and target_hidden:
                crossing.append((tx, True))
            elif source_hidden and not target_hidden:
                crossing.append((tx, False))
        return crossing

    def get_transfer_cashflow(
        self,
        owner_id: str,
        period: AnalyticsPeriod | str,
        main_currency: str,
        account_id: Optional[UUID] = None,
    ) -> Decimal:
        """Net money moved into the wallet from hidden accounts (negative when it left)."""
        net = ZERO
        for tx, outgoing in self._external_transfers(owner_id, period, account_id):
            in_main = self._in_main(tx, main_currency)
            net += -in_main if outgoing else in_main
        return net

    def get_external_transfer_out_total(
        self,
        owner_id: str,
        period: AnalyticsPeriod | str,
        main_currency: str,
        account_id: Optional[UUID] = None,
    ) -> Decimal:
        return sum(
            (
                self._in_main(tx, main_currency)
                for tx, outgoing in self._external_transfers(owner_id, period, account_id)
                if outgoing
            ),
            ZERO,
        )

    def get_transfers_total(
        self,
        owner_id: str,
        period: AnalyticsPeriod | str,
        main_currency: str,
        account_id: Optional[UUID] = None,
    ) -> Decimal:
        rows = self._rows(owner_id, TransactionDirection.TRANSFER, self.window(period), account_id)
        return self._sum(rows, main_currency)

    def get_cashflow(
        self,
        owner_id: str,
        period: AnalyticsPeriod | str,
        main_currency: str,
        account_id: Optional[UUID] = None,
    ) -> Decimal:
        summary = self.get_summary(owner_id, period, main_currency, account_id)
        transfers = self.get_transfer_cashflow(owner_id, period, main_currency, account_id)
        return summary.income - summary.expenses + transfers

    def get_beginning_balance(
        self,
        owner_id: str,
        period: AnalyticsPeriod | str,
        main_currency: str,
        account_id: Optional[UUID] = None,
    ) -> Decimal:
        summary = self.get_summary(owner_id, period, main_currency, account_id)
        transfers = self.get_transfer_cashflow(owner_id, period, main_currency, account_id)
        return summary.balance - (summary.income - summary.expenses) - transfers

    def get_trade_fees_total(
        self,
        owner_id: str,
        period: AnalyticsPeriod | str,
        main_currency: str,
        account_id: Optional[UUID] = None,
    ) -> Decimal:
        start, end = self.window(period)
        rows = self.query.find_transactions(
            owner_id,
            date_from=start,
            date_to=end,
            account_id=account_id,
            trade_only=True,
        )
        total = ZERO
        for tx in rows:
            if tx.trade_fee_amount is None or not tx.trade_fee_currency:
                continue
            total += self.converter.to_main_currency(
                tx.trade_fee_amount,
                tx.trade_fee_currency,
                main_currency,
                transaction_date=tx.transaction_date,
            )
        return total

    # ------------------------------------------------------------------
    # Holdings
    # ------------------------------------------------------------------
    def get_portfolio_split(
        self,
        owner_id: str,
        main_currency: str,
        account_id: Optional[UUID] = None,
    ) -> PortfolioSplit:
        fiat = ZERO
        crypto = ZERO
        for currency, value in self._holdings(owner_id, main_currency, account_id):
            if self.converter.is_crypto(currency):
                crypto += value
            else:
                fiat += value
        return PortfolioSplit(fiat=fiat, crypto=crypto, total=fiat + crypto)
