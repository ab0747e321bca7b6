"""
Display counters (leaderboards, profile stats) as a projection of the ledger.

The counters on an account are bumped best-effort after each money movement and
may drift if one of those writes fails. ``project_account_stats`` recomputes
them from the transaction log and the purchase records, which are the source of
truth.
"""

from decimal import Decimal
from typing import Iterable

from .models import Purchase, Transaction, TransactionKind


def project_account_stats(transactions: Iterable[Transaction], purchases: Iterable[Purchase]) -> dict:
    total_sales = Decimal("0.00")
    total_referral_earnings = Decimal("0.00")
    for tx in transactions:
        if tx.kind == TransactionKind.SALE:
            total_sales += tx.amount
        elif tx.kind == TransactionKind.REFERRAL and tx.amount > 0:
            total_referral_earnings += tx.amount

    return {
        "total_sales": total_sales,
        "total_purchases": sum(1 for _ in purchases),
        "total_referral_earnings": total_referral_earnings,
    }
