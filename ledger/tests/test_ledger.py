"""
Unit Tests for the Ledger Service

Tests cover:
1. Account opening and the opening balance entry
2. Transfer conservation and balance snapshots
3. Insufficient funds and unknown accounts (no writes)
4. Unlimited (admin) accounts
5. Idempotency keys
6. Gifts, top-ups, verification and referral payouts
7. History and audit
"""

import pytest
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

from ledger.config import Settings
from ledger.errors import (
    AccountExistsError,
    AccountNotFoundError,
    AlreadySubscribedError,
    IdempotencyConflictError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidTransferError,
)
from ledger.models import Bundle, TransactionKind, utcnow
from ledger.service import LedgerService, bundle_price, split_evenly, to_money


def make_service(**overrides) -> LedgerService:
    return LedgerService(settings=Settings(database_url="", **overrides))


def transaction_count(service: LedgerService) -> int:
    return len(service.storage.transactions)


class TestOpenAccount:
    """Tests for account creation."""

    def test_opening_balance_is_recorded(self):
        """New accounts start at the configured balance with one ledger entry."""
        service = make_service()

        account = service.open_account("alice")

        assert account.balance == Decimal("2500.00")
        history = service.get_history(account.id)
        assert history.total_count == 1
        entry = history.entries[0]
        assert entry.kind == TransactionKind.TOPUP
        assert entry.amount == Decimal("2500.00")
        assert entry.balance_after == Decimal("2500.00")
        assert entry.description == "Opening balance"

    def test_zero_starting_balance_writes_no_entry(self):
        service = make_service(starting_balance=Decimal("0"))

        account = service.open_account("bob")

        assert account.balance == Decimal("0.00")
        assert service.get_history(account.id).total_count == 0

    def test_duplicate_account_id_rejected(self):
        service = make_service()
        account = service.open_account("alice")

        with pytest.raises(AccountExistsError):
            service.open_account("alice-again", account_id=account.id)

        assert service.get_account(account.id).balance == Decimal("2500.00")


class TestTransfer:
    """Tests for the two-sided and one-sided transfer flow."""

    def test_purchase_pair_example(self):
        """Buyer at 2500 pays 100 to a seller at 50."""
        service = make_service(starting_balance=Decimal("50.00"))
        buyer = service.open_account("buyer")
        seller = service.open_account("seller")
        service.topup(buyer.id, Decimal("2450.00"))

        result = service.transfer(
            buyer.id, seller.id, Decimal("100.00"), TransactionKind.PURCHASE,
            'Purchased "Widget"', payee_description='Sold "Widget"',
        )

        assert result.payer_balance == Decimal("2400.00")
        assert result.payee_balance == Decimal("150.00")
        assert service.get_account(buyer.id).balance == Decimal("2400.00")
        assert service.get_account(seller.id).balance == Decimal("150.00")

        debit, credit = result.transactions
        assert debit.account_id == buyer.id
        assert debit.kind == TransactionKind.PURCHASE
        assert debit.amount == Decimal("-100.00")
        assert debit.balance_after == Decimal("2400.00")
        assert debit.counterparty_id == seller.id
        assert credit.account_id == seller.id
        assert credit.kind == TransactionKind.SALE
        assert credit.amount == Decimal("100.00")
        assert credit.balance_after == Decimal("150.00")
        assert credit.description == 'Sold "Widget"'
        assert debit.transfer_id == credit.transfer_id == result.transfer_id

    def test_two_sided_transfer_conserves_money(self):
        service = make_service()
        payer = service.open_account("payer")
        payee = service.open_account("payee")

        result = service.transfer(payer.id, payee.id, "12.34", TransactionKind.GIFT, "Thanks")

        assert sum(t.amount for t in result.transactions) == Decimal("0.00")
        total = service.get_account(payer.id).balance + service.get_account(payee.id).balance
        assert total == Decimal("5000.00")

    def test_one_sided_credit(self):
        service = make_service()
        account = service.open_account("alice")

        result = service.transfer(None, account.id, Decimal("40"), TransactionKind.GIFT, "Gift from Admin")

        assert len(result.transactions) == 1
        assert result.transactions[0].amount == Decimal("40.00")
        assert result.payee_balance == Decimal("2540.00")

    def test_one_sided_debit(self):
        service = make_service()
        account = service.open_account("alice")

        result = service.transfer(account.id, None, Decimal("500"), TransactionKind.VERIFICATION, "Badge")

        assert [t.amount for t in result.transactions] == [Decimal("-500.00")]
        assert service.get_account(account.id).balance == Decimal("2000.00")

    def test_insufficient_funds_blocks_all_writes(self):
        service = make_service()
        payer = service.open_account("payer")
        payee = service.open_account("payee")
        before = transaction_count(service)

        with pytest.raises(InsufficientFundsError) as exc_info:
            service.transfer(payer.id, payee.id, Decimal("2600.00"), TransactionKind.PURCHASE, "Too much")

        assert exc_info.value.shortfall == Decimal("100.00")
        assert exc_info.value.context["shortfall"] == "100.00"
        assert service.get_account(payer.id).balance == Decimal("2500.00")
        assert service.get_account(payee.id).balance == Decimal("2500.00")
        assert transaction_count(service) == before

    def test_unknown_payee_blocks_debit(self):
        service = make_service()
        payer = service.open_account("payer")

        with pytest.raises(AccountNotFoundError):
            service.transfer(payer.id, uuid4(), Decimal("10"), TransactionKind.GIFT, "Lost")

        assert service.get_account(payer.id).balance == Decimal("2500.00")
        assert service.get_history(payer.id).total_count == 1

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5"), "0.001", "abc"])
    def test_invalid_amounts_rejected(self, amount):
        service = make_service()
        payer = service.open_account("payer")
        payee = service.open_account("payee")

        with pytest.raises(InvalidAmountError):
            service.transfer(payer.id, payee.id, amount, TransactionKind.GIFT, "Bad")

    def test_transfer_needs_distinct_parties(self):
        service = make_service()
        account = service.open_account("alice")

        with pytest.raises(InvalidTransferError):
            service.transfer(account.id, account.id, Decimal("1"), TransactionKind.GIFT, "Self")
        with pytest.raises(InvalidTransferError):
            service.transfer(None, None, Decimal("1"), TransactionKind.GIFT, "Nobody")


class TestUnlimitedAccounts:
    """Tests for admin accounts flagged with an unlimited balance."""

    def test_unlimited_payer_never_debited(self):
        service = make_service()
        admin = service.open_account("admin", is_admin_unlimited=True)
        user = service.open_account("user")

        result = service.transfer(admin.id, user.id, Decimal("1000000.00"), TransactionKind.GIFT, "Big gift")

        assert service.get_account(admin.id).balance == Decimal("2500.00")
        assert service.get_account(user.id).balance == Decimal("1002500.00")
        assert [t.account_id for t in result.transactions] == [user.id]

    def test_unlimited_balance_display(self):
        service = make_service()
        admin = service.open_account("admin", is_admin_unlimited=True)
        user = service.open_account("user")

        assert service.get_balance(admin.id).display_balance == "∞"
        assert service.get_balance(admin.id).is_unlimited is True
        assert service.get_balance(user.id).display_balance == "$2,500.00"


class TestIdempotency:
    """Tests for caller-supplied idempotency keys."""

    def test_same_key_replays_first_result(self):
        service = make_service()
        payer = service.open_account("payer")
        payee = service.open_account("payee")

        first = service.transfer(payer.id, payee.id, Decimal("100"), TransactionKind.GIFT, "Gift",
                                 idempotency_key="gift-001")
        second = service.transfer(payer.id, payee.id, Decimal("100"), TransactionKind.GIFT, "Gift",
                                  idempotency_key="gift-001")

        assert first.replayed is False
        assert second.replayed is True
        assert second.transfer_id == first.transfer_id
        assert service.get_account(payer.id).balance == Decimal("2400.00")
        assert service.get_history(payer.id).total_count == 2

    def test_same_key_different_request_conflicts(self):
        service = make_service()
        payer = service.open_account("payer")
        payee = service.open_account("payee")
        service.transfer(payer.id, payee.id, Decimal("100"), TransactionKind.GIFT, "Gift",
                         idempotency_key="gift-002")

        with pytest.raises(IdempotencyConflictError):
            service.transfer(payer.id, payee.id, Decimal("200"), TransactionKind.GIFT, "Gift",
                             idempotency_key="gift-002")

        assert service.get_account(payer.id).balance == Decimal("2400.00")

    def test_failed_request_does_not_consume_key(self):
        service = make_service()
        payer = service.open_account("payer")
        payee = service.open_account("payee")

        with pytest.raises(InsufficientFundsError):
            service.transfer(payer.id, payee.id, Decimal("3000"), TransactionKind.GIFT, "Gift",
                             idempotency_key="gift-003")

        service.topup(payer.id, Decimal("500"))
        result = service.transfer(payer.id, payee.id, Decimal("3000"), TransactionKind.GIFT, "Gift",
                                  idempotency_key="gift-003")

        assert result.replayed is False
        assert service.get_account(payer.id).balance == Decimal("0.00")


class TestBalanceOperations:
    """Tests for gifts, top-ups, verification and referrals."""

    def test_admin_gift_is_pure_credit_with_notification(self):
        service = make_service()
        user = service.open_account("user")

        result = service.gift(user.id, Decimal("250"))

        assert result.payer_id is None
        assert result.transactions[0].kind == TransactionKind.GIFT
        assert result.transactions[0].description == "Gift from Admin"
        assert service.get_account(user.id).balance == Decimal("2750.00")
        notifications = service.get_notifications(user.id)
        assert [n.title for n in notifications] == ["You received a gift!"]
        assert "$250.00 from Admin" in notifications[0].message

    def test_user_to_user_gift(self):
        service = make_service()
        alice = service.open_account("alice")
        bob = service.open_account("bob")

        service.gift(bob.id, Decimal("10"), payer_id=alice.id)

        assert service.get_account(alice.id).balance == Decimal("2490.00")
        assert service.get_account(bob.id).balance == Decimal("2510.00")

    def test_topup(self):
        service = make_service()
        user = service.open_account("user")

        result = service.topup(user.id, "99.99")

        assert result.transactions[0].kind == TransactionKind.TOPUP
        assert result.payee_balance == Decimal("2599.99")

    def test_verification_subscription(self):
        service = make_service()
        user = service.open_account("user")
        service.topup(user.id, Decimal("3000"))

        result = service.subscribe_verification(user.id)

        assert result.is_verified is True
        assert result.balance == Decimal("500.00")
        assert result.transfer.transactions[0].kind == TransactionKind.VERIFICATION
        assert result.transfer.transactions[0].amount == Decimal("-5000.00")
        expected_expiry = utcnow() + timedelta(days=30)
        assert abs(result.verification_expires_at - expected_expiry) < timedelta(minutes=1)
        assert service.get_account(user.id).is_verified is True

    def test_verification_requires_funds(self):
        service = make_service()
        user = service.open_account("user")

        with pytest.raises(InsufficientFundsError):
            service.subscribe_verification(user.id)

        account = service.get_account(user.id)
        assert account.is_verified is False
        assert account.balance == Decimal("2500.00")

    def test_active_verification_cannot_be_bought_twice(self):
        service = make_service(verification_price=Decimal("100"))
        user = service.open_account("user")
        service.subscribe_verification(user.id)

        with pytest.raises(AlreadySubscribedError):
            service.subscribe_verification(user.id)

        assert service.get_account(user.id).balance == Decimal("2400.00")

    def test_cancel_then_resubscribe(self):
        service = make_service(verification_price=Decimal("100"))
        user = service.open_account("user")
        service.subscribe_verification(user.id)

        cancelled = service.cancel_verification(user.id)
        assert cancelled.is_verified is False
        assert cancelled.balance == Decimal("2400.00")

        service.subscribe_verification(user.id)
        assert service.get_account(user.id).balance == Decimal("2300.00")

    def test_unlimited_account_verifies_without_debit(self):
        service = make_service()
        admin = service.open_account("admin", is_admin_unlimited=True)

        result = service.subscribe_verification(admin.id)

        assert result.is_verified is True
        assert result.transfer.transactions == []
        assert service.get_account(admin.id).balance == Decimal("2500.00")

    def test_referral_payout(self):
        service = make_service()
        referrer = service.open_account("referrer")
        referred = service.open_account("referred")

        result = service.pay_referral(referrer.id, referred.id, Decimal("25"))

        leg = result.transactions[0]
        assert leg.kind == TransactionKind.REFERRAL
        assert leg.counterparty_id == referred.id
        assert leg.description == "Referral commission for referred"
        account = service.get_account(referrer.id)
        assert account.balance == Decimal("2525.00")
        assert account.total_referral_earnings == Decimal("25.00")

    def test_self_referral_rejected(self):
        service = make_service()
        user = service.open_account("user")

        with pytest.raises(InvalidTransferError):
            service.pay_referral(user.id, user.id, Decimal("25"))


class TestHistoryAndAudit:
    """Tests for history retrieval and ledger audit."""

    def test_history_newest_first_with_pagination(self):
        service = make_service()
        user = service.open_account("user")
        for amount in ("1", "2", "3"):
            service.topup(user.id, amount)

        history = service.get_history(user.id, limit=2)

        assert history.total_count == 4
        assert [e.amount for e in history.entries] == [Decimal("3.00"), Decimal("2.00")]
        assert history.current_balance == Decimal("2506.00")
        assert service.get_history(user.id, limit=2, offset=2).entries[-1].description == "Opening balance"

    def test_audit_consistent_after_activity(self):
        service = make_service()
        alice = service.open_account("alice")
        bob = service.open_account("bob")
        service.transfer(alice.id, bob.id, Decimal("300"), TransactionKind.PURCHASE, "Buy")
        service.gift(alice.id, Decimal("50"))
        service.transfer(bob.id, None, Decimal("20"), TransactionKind.VERIFICATION, "Fee")

        for account in (alice, bob):
            audit = service.audit_account(account.id)
            assert audit.consistent, audit.discrepancies

        assert service.audit_account(alice.id).ledger_total == Decimal("2250.00")

    def test_audit_detects_out_of_band_balance_change(self):
        service = make_service()
        user = service.open_account("user")
        service.storage.accounts[user.id]["balance"] = Decimal("9999.00")

        audit = service.audit_account(user.id)

        assert audit.consistent is False
        assert any("ledger total" in d for d in audit.discrepancies)


class TestMoneyHelpers:
    """Tests for amount rounding and splitting."""

    def test_split_evenly_absorbs_remainder(self):
        shares = split_evenly(Decimal("100.00"), 3)

        assert shares == [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]
        assert sum(shares) == Decimal("100.00")

    def test_bundle_price_applies_discount(self):
        bundle = Bundle(creator_id=uuid4(), title="Kit", original_price=Decimal("300"),
                        discount_percentage=Decimal("10"))

        assert bundle_price(bundle) == Decimal("270.00")

    def test_to_money_normalizes_whole_cents(self):
        assert to_money(2) == Decimal("2.00")
        assert to_money("1.50") == Decimal("1.50")
        assert to_money("1.000") == Decimal("1.00")

    @pytest.mark.parametrize("amount", ["1.005", "100.005", Decimal("0.001")])
    def test_to_money_rejects_fractions_of_a_cent(self, amount):
        with pytest.raises(InvalidAmountError):
            to_money(amount)

    def test_sub_cent_transfer_moves_nothing(self):
        service = make_service()
        payer = service.open_account("payer")
        payee = service.open_account("payee")

        with pytest.raises(InvalidAmountError):
            service.transfer(payer.id, payee.id, "100.005", TransactionKind.GIFT, "Gift")

        assert service.get_account(payer.id).balance == Decimal("2500.00")
        assert service.get_account(payee.id).balance == Decimal("2500.00")

    def test_bundle_price_rounds_half_up(self):
        bundle = Bundle(creator_id=uuid4(), title="Kit", original_price=Decimal("0.15"),
                        discount_percentage=Decimal("50"))

        assert bundle_price(bundle) == Decimal("0.08")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
