from __future__ import annotations

import logging
from collections import defaultdict
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Callable, Optional, TypeVar
from uuid import UUID

from sqlalchemy.exc import OperationalError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.errors import (
    AccountNotFoundError,
    InvalidAmountError,
    InvalidCurrencyError,
    InvalidTransferError,
    TagNotFoundError,
)
from ..models import (
    AccountCreate,
    AccountModel,
    AccountResponse,
    AssetResponse,
    ExpenseDraft,
    IncomeDraft,
    TagCreate,
    TagResponse,
    TradeDraft,
    TransactionDirection,
    TransactionDraft,
    TransactionModel,
    TransactionPage,
    TransactionResponse,
    TransactionUpdate,
    TransferDraft,
)
from .converter import USD, CurrencyConverter, to_decimal
from .rates import normalize_code
from .repository import LedgerStore, page_bounds
from .trades import canonicalize_trade


logger = logging.getLogger(__name__)

T = TypeVar("T")

AssetKey = tuple[UUID, str]

_TRADE_FIELDS = (
    "trade_base_currency",
    "trade_base_amount",
    "trade_quote_currency",
    "trade_quote_amount",
    "execution_price",
    "trade_fee_currency",
    "trade_fee_amount",
)


def effective_amount(tx: TransactionModel) -> tuple[Decimal, str]:
    """The pair actually booked: converted side when both fields are set."""
    if tx.converted_amount is not None and tx.convert_to_currency:
        return to_decimal(tx.converted_amount), normalize_code(tx.convert_to_currency)
    return to_decimal(tx.amount), normalize_code(tx.currency)


def balance_deltas(tx: TransactionModel) -> dict[AssetKey, Decimal]:
    """Per (account, currency) deltas that booking ``tx`` produces.

    Expense debits and income credits the effective pair on ``account_id``.
    A transfer debits the source by the raw pair (plus any trade fee) and
    credits ``to_account_id`` by the effective pair.
    """
    deltas: dict[AssetKey, Decimal] = defaultdict(Decimal)
    amount, currency = effective_amount(tx)
    direction = TransactionDirection(tx.direction)

    if direction is TransactionDirection.EXPENSE:
        deltas[(tx.account_id, currency)] -= amount
    elif direction is TransactionDirection.INCOME:
        deltas[(tx.account_id, currency)] += amount
    elif direction is TransactionDirection.TRANSFER and tx.to_account_id is not None:
        source = tx.from_account_id or tx.account_id
        deltas[(source, normalize_code(tx.currency))] -= to_decimal(tx.amount)
        deltas[(tx.to_account_id, currency)] += amount
        if tx.trade_fee_amount and tx.trade_fee_currency:
            fee = abs(to_decimal(tx.trade_fee_amount))
            deltas[(source, normalize_code(tx.trade_fee_currency))] -= fee

    return {key: delta for key, delta in deltas.items() if delta != 0}


def _as_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.now(UTC)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _optional_code(value: Optional[str]) -> Optional[str]:
    code = normalize_code(value)
    return code or None


class LedgerService:
    def __init__(
        self,
        repository: LedgerStore,
        converter: CurrencyConverter,
        retry_attempts: int = 3,
    ) -> None:
        self.repository = repository
        self.converter = converter
        self.retry_attempts = max(retry_attempts, 1)

    # ------------------------------------------------------------------
    # Helper utilities
    # ------------------------------------------------------------------
    def _atomic(self, operation: Callable[[], T]) -> T:
        """Run ``operation`` as one storage unit, retrying the whole unit on lock errors."""
        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=0.05, max=1),
            retry=retry_if_exception_type(OperationalError),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                with self.repository.atomic():
                    result = operation()
        return result

    def _get_account(self, account_id: UUID, owner_id: str) -> AccountModel:
        account = self.repository.get_account(account_id, owner_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return account

    def _validate_amounts(
        self,
        amount: Optional[Decimal],
        currency: Optional[str],
        converted_amount: Optional[Decimal],
    ) -> None:
        if amount is None or not amount.is_finite() or amount <= 0:
            raise InvalidAmountError("Amount must be greater than zero")
        if not currency:
            raise InvalidCurrencyError("Currency is required")
        if converted_amount is not None and (
            not converted_amount.is_finite() or converted_amount <= 0
        ):
            raise InvalidAmountError("Converted amount must be greater than zero")

    def _validate_references(self, owner_id: str, fields: dict[str, Any]) -> None:
        for name in ("account_id", "from_account_id", "to_account_id"):
            account_id = fields.get(name)
            if account_id is not None:
                self._get_account(account_id, owner_id)
        tag_id = fields.get("tag_id")
        if tag_id is not None and self.repository.get_tag(tag_id, owner_id) is None:
            raise TagNotFoundError(f"Tag {tag_id} not found")

    def _usd_snapshot(self, amount: Decimal, currency: str) -> Optional[Decimal]:
        return self.converter.try_convert(amount, currency, USD)

    def _draft_fields(self, draft: TransactionDraft) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "account_id": draft.account_id,
            "amount": draft.amount,
            "currency": normalize_code(draft.currency),
            "converted_amount": draft.converted_amount,
            "convert_to_currency": _optional_code(draft.convert_to_currency),
            "tag_id": draft.tag_id,
            "description": draft.description,
            "transaction_date": _as_utc(draft.transaction_date),
        }
        if isinstance(draft, ExpenseDraft):
            fields.update(direction=TransactionDirection.EXPENSE, category=draft.category)
        elif isinstance(draft, IncomeDraft):
            fields.update(direction=TransactionDirection.INCOME, category=draft.category)
        elif isinstance(draft, TransferDraft):
            fields.update(
                direction=TransactionDirection.TRANSFER,
                to_account_id=draft.to_account_id,
                from_account_id=draft.from_account_id,
            )
        elif isinstance(draft, TradeDraft):
            trade = canonicalize_trade(
                draft.trade_type,
                amount=draft.amount,
                currency=draft.currency,
                converted_amount=draft.converted_amount,
                convert_to_currency=draft.convert_to_currency,
                base_currency=draft.base_currency,
                base_amount=draft.base_amount,
                quote_currency=draft.quote_currency,
                quote_amount=draft.quote_amount,
                execution_price=draft.execution_price,
                fee_amount=draft.fee_amount,
                fee_currency=draft.fee_currency,
            )
            fields.update(
                direction=TransactionDirection.TRANSFER,
                to_account_id=draft.to_account_id or draft.account_id,
                trade_type=trade.trade_type,
                amount=trade.amount,
                currency=trade.currency or "",
                converted_amount=trade.converted_amount,
                convert_to_currency=trade.convert_to_currency,
                trade_base_currency=trade.trade_base_currency,
                trade_base_amount=trade.trade_base_amount,
                trade_quote_currency=trade.trade_quote_currency,
                trade_quote_amount=trade.trade_quote_amount,
                execution_price=trade.execution_price,
                trade_fee_currency=trade.trade_fee_currency if trade.trade_fee_amount else None,
                trade_fee_amount=trade.trade_fee_amount,
            )
        return fields

    def _retrade(self, existing: TransactionModel, patch: dict[str, Any]) -> None:
        """Re-derive trade sides after the booked pair of a trade was edited."""
        trade = canonicalize_trade(
            existing.trade_type,
            amount=patch.get("amount", existing.amount),
            currency=patch.get("currency", existing.currency),
            converted_amount=patch.get("converted_amount", existing.converted_amount),
            convert_to_currency=patch.get("convert_to_currency", existing.convert_to_currency),
            fee_amount=existing.trade_fee_amount,
            fee_currency=existing.trade_fee_currency,
        )
        if trade is None:
            return
        for name in _TRADE_FIELDS:
            patch[name] = getattr(trade, name)
        if not trade.trade_fee_amount:
            patch["trade_fee_currency"] = None

    @staticmethod
    def _merged_pair(existing: TransactionModel, patch: dict[str, Any]) -> tuple[Any, Any]:
        return patch.get("amount", existing.amount), patch.get("currency", existing.currency)

    def _pending_usd_snapshots(
        self, current: Optional[TransactionModel], patch: dict[str, Any]
    ) -> dict[tuple[Decimal, str], Optional[Decimal]]:
        """USD snapshot for the edited pair, keyed so a concurrent edit is not mispriced."""
        if current is None or ("amount" not in patch and "currency" not in patch):
            return {}
        amount, currency = self._merged_pair(current, patch)
        if amount is None or not currency:
            return {}
        amount = to_decimal(amount)
        if not amount.is_finite() or amount <= 0:
            return {}
        if amount == current.amount and currency == current.currency:
            return {}
        return {(amount, currency): self._usd_snapshot(amount, currency)}

    def _reshape_direction(self, existing: TransactionModel, patch: dict[str, Any]) -> None:
        """Keep transfer-only fields consistent with the merged direction."""
        direction = TransactionDirection(patch.get("direction", existing.direction))
        if direction is TransactionDirection.TRANSFER:
            if patch.get("to_account_id", existing.to_account_id) is None:
                raise InvalidTransferError("Transfer requires a destination account")
            return
        patch["to_account_id"] = None
        patch["from_account_id"] = None
        if existing.trade_type is not None:
            patch["trade_type"] = None
            for name in _TRADE_FIELDS:
                patch[name] = None

    def _to_response(self, tx: TransactionModel) -> TransactionResponse:
        return TransactionResponse.model_validate(tx)

    def _account_to_response(
        self, account: AccountModel, assets: Optional[list[AssetResponse]] = None
    ) -> AccountResponse:
        return AccountResponse(
            id=account.id,
            owner_id=account.owner_id,
            display_name=account.display_name,
            default_currency=account.default_currency,
            is_hidden=account.is_hidden,
            created_at=account.created_at,
            assets=assets or [],
        )

    # ------------------------------------------------------------------
    # Balance effects
    # ------------------------------------------------------------------
    def upsert_asset_delta(self, account_id: UUID, currency: str, delta: Decimal) -> Decimal:
        current = self.repository.get_asset(account_id, currency, for_update=True)
        updated = (current or Decimal("0")) + delta
        self.repository.upsert_asset(account_id, currency, updated)
        return updated

    def apply_balance_effect(self, tx: TransactionModel) -> None:
        for (account_id, currency), delta in balance_deltas(tx).items():
            self.upsert_asset_delta(account_id, currency, delta)

    def reverse_balance_effect(self, tx: TransactionModel) -> None:
        for (account_id, currency), delta in balance_deltas(tx).items():
            self.upsert_asset_delta(account_id, currency, -delta)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------
    def create(self, owner_id: str, draft: TransactionDraft) -> TransactionResponse:
        fields = self._draft_fields(draft)
        self._validate_amounts(fields["amount"], fields["currency"], fields["converted_amount"])
        self._validate_references(owner_id, fields)
        fields["amount_usd"] = self._usd_snapshot(fields["amount"], fields["currency"])

        def operation() -> TransactionResponse:
            tx = self.repository.add_transaction(owner_id=owner_id, **fields)
            self.apply_balance_effect(tx)
            return self._to_response(tx)

        created = self._atomic(operation)
        logger.info(
            "transaction.created",
            extra={
                "transaction_id": str(created.id),
                "owner_id": owner_id,
                "direction": created.direction.value,
                "amount": str(created.amount),
                "currency": created.currency,
            },
        )
        return created

    def update(
        self,
        transaction_id: UUID,
        owner_id: str,
        changes: TransactionUpdate,
    ) -> Optional[TransactionResponse]:
        patch = changes.model_dump(exclude_unset=True)
        for name in ("direction", "account_id", "amount", "currency", "transaction_date"):
            if name in patch and patch[name] is None:
                del patch[name]
        for name in ("currency", "convert_to_currency"):
            if name in patch:
                patch[name] = _optional_code(patch[name])
        if "transaction_date" in patch:
            patch["transaction_date"] = _as_utc(patch["transaction_date"])
        if patch.get("direction") is not None:
            patch["direction"] = TransactionDirection(patch["direction"])

        # Rate lookups may refresh and persist a snapshot, so they run before
        # the unit takes any write lock.
        usd_snapshots = self._pending_usd_snapshots(
            self.repository.find_transaction(transaction_id, owner_id), patch
        )

        def operation() -> Optional[TransactionResponse]:
            existing = self.repository.find_transaction(transaction_id, owner_id)
            if existing is None:
                return None

            fields = dict(patch)
            amount, currency = self._merged_pair(existing, fields)
            self._validate_amounts(
                to_decimal(amount) if amount is not None else None,
                currency,
                fields.get("converted_amount", existing.converted_amount),
            )
            self._validate_references(owner_id, fields)
            self._reshape_direction(existing, fields)

            pair_changed = any(
                name in fields and fields[name] != getattr(existing, name)
                for name in ("amount", "currency", "converted_amount", "convert_to_currency")
            )
            if fields.get("trade_type", existing.trade_type) is not None and pair_changed:
                self._retrade(existing, fields)
            if amount != existing.amount or currency != existing.currency:
                fields["amount_usd"] = usd_snapshots.get((to_decimal(amount), currency))

            self.reverse_balance_effect(existing)
            updated = self.repository.update_transaction(existing, fields)
            self.apply_balance_effect(updated)
            return self._to_response(updated)

        result = self._atomic(operation)
        if result is None:
            logger.info(
                "transaction.update.not_found",
                extra={"transaction_id": str(transaction_id), "owner_id": owner_id},
            )
            return None
        logger.info(
            "transaction.updated",
            extra={
                "transaction_id": str(transaction_id),
                "owner_id": owner_id,
                "fields": sorted(patch),
            },
        )
        return result

    def delete(self, transaction_id: UUID, owner_id: str) -> Optional[TransactionResponse]:
        def operation() -> Optional[TransactionResponse]:
            existing = self.repository.find_transaction(transaction_id, owner_id)
            if existing is None:
                return None
            snapshot = self._to_response(existing)
            self.reverse_balance_effect(existing)
            self.repository.delete_transaction(existing)
            return snapshot

        removed = self._atomic(operation)
        logger.info(
            "transaction.deleted" if removed is not None else "transaction.delete.not_found",
            extra={"transaction_id": str(transaction_id), "owner_id": owner_id},
        )
        return removed

    def get_transaction(
        self, transaction_id: UUID, owner_id: str
    ) -> Optional[TransactionResponse]:
        tx = self.repository.find_transaction(transaction_id, owner_id)
        return None if tx is None else self._to_response(tx)

    def list_transactions(
        self,
        owner_id: str,
        page: int = 0,
        page_size: int = 20,
        account_id: Optional[UUID] = None,
    ) -> TransactionPage:
        offset, limit = page_bounds(page, page_size)
        rows = self.repository.find_transactions(
            owner_id,
            account_id=account_id,
            include_hidden=True,
            order_by_date_desc=True,
            offset=offset,
            limit=limit,
        )
        total = self.repository.count_transactions(
            owner_id, account_id=account_id, include_hidden=True
        )
        return TransactionPage(
            items=[self._to_response(tx) for tx in rows],
            total=total,
            page=offset // limit,
            page_size=limit,
        )

    # ------------------------------------------------------------------
    # Accounts and tags
    # ------------------------------------------------------------------
    def create_account(self, owner_id: str, payload: AccountCreate) -> AccountResponse:
        def operation() -> AccountResponse:
            account = self.repository.add_account(
                owner_id,
                payload.display_name.strip(),
                normalize_code(payload.default_currency),
                payload.is_hidden,
            )
            return self._account_to_response(account)

        created = self._atomic(operation)
        logger.info(
            "account.created",
            extra={"account_id": str(created.id), "owner_id": owner_id},
        )
        return created

    def get_account(self, account_id: UUID, owner_id: str) -> AccountResponse:
        account = self._get_account(account_id, owner_id)
        assets = self.repository.list_assets(owner_id, account_id=account_id)
        return self._account_to_response(
            account, [AssetResponse.model_validate(asset) for asset in assets]
        )

    def list_accounts(self, owner_id: str, include_hidden: bool = False) -> list[AccountResponse]:
        accounts = self.repository.list_accounts(owner_id, include_hidden=include_hidden)
        assets_by_account: dict[UUID, list[AssetResponse]] = defaultdict(list)
        for asset in self.repository.list_assets(owner_id, include_hidden=include_hidden):
            assets_by_account[asset.account_id].append(AssetResponse.model_validate(asset))
        return [
            self._account_to_response(account, assets_by_account.get(account.id))
            for account in accounts
        ]

    def hide_account(
        self, account_id: UUID, owner_id: str, hidden: bool = True
    ) -> AccountResponse:
        def operation() -> AccountModel:
            account = self._get_account(account_id, owner_id)
            return self.repository.set_account_hidden(account, hidden)

        self._atomic(operation)
        logger.info(
            "account.visibility_changed",
            extra={"account_id": str(account_id), "owner_id": owner_id, "hidden": hidden},
        )
        return self.get_account(account_id, owner_id)

    def create_tag(self, owner_id: str, payload: TagCreate) -> TagResponse:
        def operation() -> TagResponse:
            tag = self.repository.add_tag(owner_id, payload.name.strip())
            return TagResponse.model_validate(tag)

        return self._atomic(operation)

    def list_tags(self, owner_id: str) -> list[TagResponse]:
        return [TagResponse.model_validate(tag) for tag in self.repository.list_tags(owner_id)]
