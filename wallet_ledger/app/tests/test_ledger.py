from datetime import UTC, date, datetime
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel

from ..core.db import create_engine_for_url
from ..core.errors import (
    AccountNotFoundError,
    InvalidAmountError,
    InvalidCurrencyError,
    InvalidTransferError,
    TagNotFoundError,
)
from ..models import (
    AccountCreate,
    ExpenseDraft,
    IncomeDraft,
    TagCreate,
    TradeDraft,
    TransactionDirection,
    TransactionUpdate,
    TransferDraft,
)
from ..services import (
    CurrencyConverter,
    LedgerRepository,
    LedgerService,
    RateSource,
    SqlRateSnapshotStore,
)
from .fakes import (
    BrokenSnapshotStore,
    FixedClock,
    InMemoryLedgerStore,
    StubRateProvider,
    make_converter,
)


OWNER = "owner-1"


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def service(store: InMemoryLedgerStore) -> LedgerService:
    return LedgerService(store, make_converter({"USD": 1, "EUR": "0.9"}), retry_attempts=3)


def _account(service: LedgerService, name: str = "Main", currency: str = "USD", hidden: bool = False):
    return service.create_account(
        OWNER, AccountCreate(display_name=name, default_currency=currency, is_hidden=hidden)
    )


def test_expense_debits_and_delete_restores(service: LedgerService, store: InMemoryLedgerStore) -> None:
    account = _account(service)
    store.upsert_asset(account.id, "USD", Decimal("1000"))
    tag = service.create_tag(OWNER, TagCreate(name="food"))

    tx = service.create(
        OWNER,
        ExpenseDraft(account_id=account.id, amount=Decimal("200"), currency="usd", tag_id=tag.id),
    )

    assert tx.direction is TransactionDirection.EXPENSE
    assert tx.currency == "USD"
    assert tx.amount_usd == Decimal("200")
    assert store.balance(account.id, "USD") == Decimal("800")

    removed = service.delete(tx.id, OWNER)

    assert removed is not None and removed.id == tx.id
    assert store.balance(account.id, "USD") == Decimal("1000")
    assert service.get_transaction(tx.id, OWNER) is None


def test_transfer_moves_money_between_accounts(service: LedgerService, store: InMemoryLedgerStore) -> None:
    source = _account(service, "A")
    target = _account(service, "B")
    store.upsert_asset(source.id, "USD", Decimal("500"))

    service.create(
        OWNER,
        TransferDraft(
            account_id=source.id, to_account_id=target.id, amount=Decimal("100"), currency="USD"
        ),
    )

    assert store.balance(source.id, "USD") == Decimal("400")
    assert store.balance(target.id, "USD") == Decimal("100")
    assert sum(store.assets.values()) == Decimal("500")


def test_converted_expense_books_the_converted_side(
    service: LedgerService, store: InMemoryLedgerStore
) -> None:
    account = _account(service)

    service.create(
        OWNER,
        ExpenseDraft(
            account_id=account.id,
            amount=Decimal("90"),
            currency="EUR",
            converted_amount=Decimal("100"),
            convert_to_currency="USD",
        ),
    )

    assert store.balance(account.id, "USD") == Decimal("-100")
    assert (account.id, "EUR") not in store.assets


def test_edit_reverses_before_reapplying(service: LedgerService, store: InMemoryLedgerStore) -> None:
    account = _account(service)
    store.upsert_asset(account.id, "USD", Decimal("1000"))
    tx = service.create(
        OWNER, ExpenseDraft(account_id=account.id, amount=Decimal("100"), currency="USD")
    )

    updated = service.update(tx.id, OWNER, TransactionUpdate(amount=Decimal("150")))

    assert updated is not None and updated.amount == Decimal("150")
    assert updated.amount_usd == Decimal("150")
    assert store.balance(account.id, "USD") == Decimal("850")


def test_repeated_edits_do_not_drift(service: LedgerService, store: InMemoryLedgerStore) -> None:
    source = _account(service, "A")
    target = _account(service, "B", "EUR")
    tx = service.create(
        OWNER,
        TransferDraft(
            account_id=source.id,
            to_account_id=target.id,
            amount=Decimal("100"),
            currency="USD",
            converted_amount=Decimal("90"),
            convert_to_currency="EUR",
        ),
    )

    for amount in ("120", "80", "100"):
        service.update(
            tx.id,
            OWNER,
            TransactionUpdate(amount=Decimal(amount), converted_amount=Decimal(amount) * Decimal("0.9")),
        )

    assert store.balance(source.id, "USD") == Decimal("-100")
    assert store.balance(target.id, "EUR") == Decimal("90.0")

    service.delete(tx.id, OWNER)
    assert all(value == 0 for value in store.assets.values())


def test_update_matches_delete_then_create(store: InMemoryLedgerStore) -> None:
    converter = make_converter({"USD": 1, "EUR": "0.9"})
    edited = LedgerService(store, converter)
    account = _account(edited)
    other = _account(edited, "Other", "EUR")
    tx = edited.create(
        OWNER, ExpenseDraft(account_id=account.id, amount=Decimal("40"), currency="USD")
    )
    edited.update(
        tx.id,
        OWNER,
        TransactionUpdate(
            direction=TransactionDirection.INCOME,
            account_id=other.id,
            amount=Decimal("70"),
            currency="EUR",
        ),
    )

    fresh_store = InMemoryLedgerStore()
    fresh = LedgerService(fresh_store, converter)
    fresh_store.accounts = dict(store.accounts)
    fresh.create(OWNER, IncomeDraft(account_id=other.id, amount=Decimal("70"), currency="EUR"))

    assert {k: v for k, v in store.assets.items() if v != 0} == fresh_store.assets


def test_trade_fee_is_debited_from_the_source(service: LedgerService, store: InMemoryLedgerStore) -> None:
    account = _account(service, "Exchange", "USDT")
    store.upsert_asset(account.id, "USDT", Decimal("1000"))

    tx = service.create(
        OWNER,
        TradeDraft(
            account_id=account.id,
            trade_type="buy",
            base_currency="BTC",
            base_amount=Decimal("0.01"),
            quote_currency="USDT",
            quote_amount=Decimal("600"),
            fee_amount=Decimal("1"),
        ),
    )

    assert tx.direction is TransactionDirection.TRANSFER
    assert tx.to_account_id == account.id
    assert (tx.amount, tx.currency) == (Decimal("600"), "USDT")
    assert tx.execution_price == Decimal("60000")
    assert store.balance(account.id, "USDT") == Decimal("399")
    assert store.balance(account.id, "BTC") == Decimal("0.01")

    service.delete(tx.id, OWNER)
    assert store.balance(account.id, "USDT") == Decimal("1000")
    assert store.balance(account.id, "BTC") == Decimal("0")


def test_trade_edit_rederives_trade_fields(service: LedgerService, store: InMemoryLedgerStore) -> None:
    account = _account(service, "Exchange", "USDT")
    tx = service.create(
        OWNER,
        TradeDraft(
            account_id=account.id,
            trade_type="buy",
            base_currency="BTC",
            base_amount=Decimal("0.01"),
            quote_currency="USDT",
            quote_amount=Decimal("600"),
        ),
    )

    updated = service.update(tx.id, OWNER, TransactionUpdate(amount=Decimal("700")))

    assert updated.trade_quote_amount == Decimal("700")
    assert updated.execution_price == Decimal("70000")
    assert store.balance(account.id, "USDT") == Decimal("-700")


@pytest.mark.parametrize(
    "amount, currency, error",
    [
        (Decimal("0"), "USD", InvalidAmountError),
        (Decimal("-5"), "USD", InvalidAmountError),
        (None, "USD", InvalidAmountError),
        (Decimal("5"), "  ", InvalidCurrencyError),
        (Decimal("5"), None, InvalidCurrencyError),
    ],
)
def test_invalid_input_is_rejected_before_mutation(
    service: LedgerService, store: InMemoryLedgerStore, amount, currency, error
) -> None:
    account = _account(service)

    with pytest.raises(error):
        service.create(OWNER, ExpenseDraft(account_id=account.id, amount=amount, currency=currency))

    assert store.transactions == {}
    assert store.assets == {}


def test_invalid_update_leaves_state_untouched(service: LedgerService, store: InMemoryLedgerStore) -> None:
    account = _account(service)
    tx = service.create(OWNER, ExpenseDraft(account_id=account.id, amount=Decimal("10"), currency="USD"))

    with pytest.raises(InvalidAmountError):
        service.update(tx.id, OWNER, TransactionUpdate(amount=Decimal("-1")))

    assert store.balance(account.id, "USD") == Decimal("-10")
    assert service.get_transaction(tx.id, OWNER).amount == Decimal("10")


def test_foreign_accounts_and_tags_are_rejected(service: LedgerService) -> None:
    account = _account(service)
    stranger = service.create_account(
        "someone-else", AccountCreate(display_name="X", default_currency="USD")
    )

    with pytest.raises(AccountNotFoundError):
        service.create(
            OWNER,
            TransferDraft(
                account_id=account.id, to_account_id=stranger.id, amount=Decimal("1"), currency="USD"
            ),
        )
    with pytest.raises(TagNotFoundError):
        service.create(
            OWNER,
            ExpenseDraft(account_id=account.id, amount=Decimal("1"), currency="USD", tag_id=uuid4()),
        )


def test_missing_transaction_returns_none(service: LedgerService) -> None:
    assert service.update(uuid4(), OWNER, TransactionUpdate(amount=Decimal("1"))) is None
    assert service.delete(uuid4(), OWNER) is None


def test_other_owner_cannot_touch_transaction(service: LedgerService, store: InMemoryLedgerStore) -> None:
    account = _account(service)
    tx = service.create(OWNER, ExpenseDraft(account_id=account.id, amount=Decimal("10"), currency="USD"))

    assert service.delete(tx.id, "intruder") is None
    assert store.balance(account.id, "USD") == Decimal("-10")


def test_update_cannot_leave_a_transfer_without_destination(
    service: LedgerService, store: InMemoryLedgerStore
) -> None:
    source = _account(service, "A")
    target = _account(service, "B")
    transfer = service.create(
        OWNER,
        TransferDraft(account_id=source.id, to_account_id=target.id, amount=Decimal("5"), currency="USD"),
    )
    expense = service.create(
        OWNER, ExpenseDraft(account_id=source.id, amount=Decimal("50"), currency="USD")
    )

    with pytest.raises(InvalidTransferError):
        service.update(transfer.id, OWNER, TransactionUpdate(to_account_id=None))
    with pytest.raises(InvalidTransferError):
        service.update(expense.id, OWNER, TransactionUpdate(direction=TransactionDirection.TRANSFER))

    assert store.balance(source.id, "USD") == Decimal("-55")
    assert store.balance(target.id, "USD") == Decimal("5")
    assert service.get_transaction(expense.id, OWNER).direction is TransactionDirection.EXPENSE


def test_leaving_transfer_clears_transfer_fields(service: LedgerService, store: InMemoryLedgerStore) -> None:
    source = _account(service, "A")
    target = _account(service, "B")
    tx = service.create(
        OWNER,
        TransferDraft(account_id=source.id, to_account_id=target.id, amount=Decimal("5"), currency="USD"),
    )

    updated = service.update(tx.id, OWNER, TransactionUpdate(direction=TransactionDirection.EXPENSE))

    assert updated.to_account_id is None
    assert updated.from_account_id is None
    assert store.balance(source.id, "USD") == Decimal("-5")
    assert store.balance(target.id, "USD") == Decimal("0")

    moved = service.update(
        tx.id,
        OWNER,
        TransactionUpdate(direction=TransactionDirection.TRANSFER, to_account_id=target.id),
    )
    assert moved.to_account_id == target.id
    assert store.balance(target.id, "USD") == Decimal("5")


@pytest.mark.parametrize("converted", [False, True], ids=["plain", "converted"])
@pytest.mark.parametrize("kind", ["expense", "income", "transfer"])
def test_create_edit_delete_restores_every_balance(
    service: LedgerService, store: InMemoryLedgerStore, kind: str, converted: bool
) -> None:
    source = _account(service, "A")
    target = _account(service, "B", "EUR")
    store.upsert_asset(source.id, "USD", Decimal("100"))
    store.upsert_asset(source.id, "EUR", Decimal("7"))
    store.upsert_asset(target.id, "EUR", Decimal("50"))
    before = dict(store.assets)

    fields = {"account_id": source.id, "amount": Decimal("30"), "currency": "USD"}
    if converted:
        fields.update(converted_amount=Decimal("27"), convert_to_currency="EUR")
    if kind == "transfer":
        draft = TransferDraft(to_account_id=target.id, **fields)
    elif kind == "income":
        draft = IncomeDraft(**fields)
    else:
        draft = ExpenseDraft(**fields)

    tx = service.create(OWNER, draft)
    assert store.assets != before
    service.update(tx.id, OWNER, TransactionUpdate(amount=Decimal("45")))
    service.delete(tx.id, OWNER)

    for (account_id, currency), amount in before.items():
        assert store.balance(account_id, currency) == amount
    assert all(amount == 0 for key, amount in store.assets.items() if key not in before)


def test_snapshot_store_failure_does_not_fail_writes(store: InMemoryLedgerStore) -> None:
    rates = RateSource(
        StubRateProvider({"USD": 1, "EUR": "0.5"}), snapshot_store=BrokenSnapshotStore()
    )
    service = LedgerService(store, CurrencyConverter(rates))
    account = _account(service)

    tx = service.create(OWNER, ExpenseDraft(account_id=account.id, amount=Decimal("10"), currency="EUR"))

    assert tx.amount_usd == Decimal("20")
    assert store.balance(account.id, "EUR") == Decimal("-10")


def test_update_prices_the_edit_before_opening_the_unit(store: InMemoryLedgerStore) -> None:
    clock = FixedClock(datetime(2026, 3, 10, tzinfo=UTC))
    units_open = []

    class RecordingProvider(StubRateProvider):
        def fetch_latest(self):
            units_open.append(store.in_unit)
            return super().fetch_latest()

    rates = RateSource(RecordingProvider({"USD": 1, "EUR": "0.5"}), clock=clock)
    service = LedgerService(store, CurrencyConverter(rates))
    account = _account(service)
    tx = service.create(OWNER, ExpenseDraft(account_id=account.id, amount=Decimal("10"), currency="EUR"))

    clock.advance(days=2)
    updated = service.update(tx.id, OWNER, TransactionUpdate(amount=Decimal("20")))

    assert updated.amount_usd == Decimal("40")
    assert units_open == [False, False]


def test_sqlite_update_after_rates_expire(tmp_path) -> None:
    engine = create_engine_for_url(f"sqlite:///{tmp_path / 'ledger.db'}")
    SQLModel.metadata.create_all(engine)
    clock = FixedClock(datetime(2026, 3, 10, tzinfo=UTC))
    rates = RateSource(
        StubRateProvider({"USD": 1, "EUR": "0.5"}),
        snapshot_store=SqlRateSnapshotStore(engine),
        clock=clock,
    )

    with Session(engine) as session:
        service = LedgerService(LedgerRepository(session), CurrencyConverter(rates), retry_attempts=1)
        account = _account(service)
        tx = service.create(
            OWNER, ExpenseDraft(account_id=account.id, amount=Decimal("10"), currency="EUR")
        )
        clock.advance(days=2)
        updated = service.update(tx.id, OWNER, TransactionUpdate(amount=Decimal("20")))

    assert updated.amount_usd == Decimal("40")
    assert SqlRateSnapshotStore(engine).get_snapshot(date(2026, 3, 12), "USD") is not None
    engine.dispose()


def test_lock_errors_retry_the_whole_unit(service: LedgerService, store: InMemoryLedgerStore) -> None:
    account = _account(service)
    store.fail_commits = 2

    tx = service.create(OWNER, ExpenseDraft(account_id=account.id, amount=Decimal("25"), currency="USD"))

    assert store.rollbacks == 2
    assert len(store.transactions) == 1
    assert store.balance(account.id, "USD") == Decimal("-25")
    assert service.get_transaction(tx.id, OWNER) is not None


def test_retries_give_up_and_roll_back(store: InMemoryLedgerStore) -> None:
    service = LedgerService(store, make_converter(), retry_attempts=2)
    account = _account(service)
    store.fail_commits = 5

    with pytest.raises(OperationalError):
        service.create(OWNER, ExpenseDraft(account_id=account.id, amount=Decimal("25"), currency="USD"))

    assert store.transactions == {}
    assert store.assets == {}


def test_naive_dates_are_treated_as_utc(service: LedgerService) -> None:
    account = _account(service)
    tx = service.create(
        OWNER,
        IncomeDraft(
            account_id=account.id,
            amount=Decimal("1"),
            currency="USD",
            transaction_date=datetime(2026, 1, 2, 3, 4),
        ),
    )

    assert tx.transaction_date == datetime(2026, 1, 2, 3, 4, tzinfo=UTC)


def test_accounts_listing_and_hiding(service: LedgerService, store: InMemoryLedgerStore) -> None:
    visible = _account(service, "Visible")
    hidden = _account(service, "Outside", hidden=True)
    store.upsert_asset(visible.id, "USD", Decimal("5"))

    assert [a.id for a in service.list_accounts(OWNER)] == [visible.id]
    assert {a.id for a in service.list_accounts(OWNER, include_hidden=True)} == {visible.id, hidden.id}
    assert service.get_account(visible.id, OWNER).assets[0].amount == Decimal("5")

    service.hide_account(visible.id, OWNER)
    assert service.list_accounts(OWNER) == []
    with pytest.raises(AccountNotFoundError):
        service.get_account(visible.id, "someone-else")


def test_list_transactions_pages_newest_first(service: LedgerService) -> None:
    account = _account(service)
    for day in (1, 2, 3):
        service.create(
            OWNER,
            ExpenseDraft(
                account_id=account.id,
                amount=Decimal(day),
                currency="USD",
                transaction_date=datetime(2026, 1, day, tzinfo=UTC),
            ),
        )

    first = service.list_transactions(OWNER, page=0, page_size=2)
    second = service.list_transactions(OWNER, page=1, page_size=2)

    assert first.total == 3
    assert [tx.amount for tx in first.items] == [Decimal("3"), Decimal("2")]
    assert [tx.amount for tx in second.items] == [Decimal("1")]
