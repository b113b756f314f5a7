"""Rebuild account balances from transaction history and report or fix drift."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

from .core.config import get_settings
from .core.db import create_engine_for_url, init_db, session_scope
from .services import LedgerRepository, reconcile_assets


logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reconcile stored account assets with the ledger")
    parser.add_argument("--owner-id", help="Owner whose ledger is replayed")
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Overwrite stored assets with the replayed balances",
    )
    parser.add_argument(
        "--database-url",
        help="Database URL (defaults to WALLET_DATABASE_URL)",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)

    if not args.owner_id:
        print("Missing --owner-id", file=sys.stderr)
        parser.print_usage(sys.stderr)
        return 1

    engine = create_engine_for_url(args.database_url or settings.database_url)
    init_db(engine)
    try:
        with session_scope(engine) as session:
            report = reconcile_assets(LedgerRepository(session), args.owner_id, apply=args.apply)
    finally:
        engine.dispose()

    print(f"Owner: {report.owner_id}")
    print(f"Transactions replayed: {report.transactions_total}")
    print(f"Trades canonicalized: {len(report.canonicalized_trades)}")
    if not report.rows:
        print("Balances match the ledger.")
    for row in report.rows:
        print(
            f"{row.account_name}\t{row.currency}\tcurrent={row.current}"
            f"\ttarget={row.target}\tdiff={row.diff}"
        )
    print("Applied." if report.applied else "Dry run, nothing written.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
