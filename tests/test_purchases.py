"""
Tests for the Purchase Ledger
"""

from decimal import Decimal

import pytest

from core.errors import InvalidAmount, TransactionNotFound, TransactionStateError
from persistence.models import TransactionStatus, TransactionType
from persistence.repository import BalanceRepository


class TestCreatePurchase:
    """Test purchase creation and pricing validation."""

    def test_create_pending(self, services):
        """A new purchase is pending and does not touch the balance."""
        tx = services.purchases.create_purchase("buyer", "10", "100")

        assert tx.status == TransactionStatus.PENDING
        assert tx.amount_usd == Decimal("10.00")
        assert tx.credits_purchased == Decimal("100.0000")
        assert services.engine.get_balance("buyer") == Decimal("0")

    def test_minimum_amount(self, services):
        """Purchases under $1 are rejected."""
        with pytest.raises(InvalidAmount):
            services.purchases.create_purchase("buyer", "0.50", "5")

    def test_minimum_credits(self, services):
        """At least one credit must be bought."""
        with pytest.raises(InvalidAmount):
            services.purchases.create_purchase("buyer", "10", "0.5")

    def test_bonus_ratio_cap(self, services):
        """Credits may exceed the base rate by at most 50%."""
        services.purchases.create_purchase("buyer", "10", "150")

        with pytest.raises(InvalidAmount, match="Invalid credit amount"):
            services.purchases.create_purchase("buyer", "10", "150.0001")


class TestCompletePurchase:
    """Test purchase completion idempotency."""

    def test_complete_credits_balance(self, services):
        """Completion credits the purchased amount."""
        tx = services.purchases.create_purchase("buyer", "25", "275")

        done = services.purchases.complete_purchase(tx.id, "ch_123")

        assert done.status == TransactionStatus.COMPLETED
        assert done.charge_id == "ch_123"
        assert done.completed_at is not None
        assert services.engine.get_balance("buyer") == Decimal("275.0000")

    def test_complete_twice_credits_once(self, services):
        """A duplicate completion returns silently with no balance effect."""
        tx = services.purchases.create_purchase("buyer", "10", "100")

        services.purchases.complete_purchase(tx.id, "ch_1")
        again = services.purchases.complete_purchase(tx.id, "ch_1")

        assert again.status == TransactionStatus.COMPLETED
        balance = BalanceRepository(services.db).get("buyer")
        assert balance.balance == Decimal("100.0000")
        assert balance.total_purchased == Decimal("100.0000")

    def test_complete_unknown(self, services):
        """Unknown transaction ids raise TransactionNotFound."""
        with pytest.raises(TransactionNotFound):
            services.purchases.complete_purchase("missing", None)

    def test_complete_failed_rejected(self, services):
        """A failed purchase cannot be completed."""
        tx = services.purchases.create_purchase("buyer", "10", "100")
        services.purchases.fail_purchase(tx.id, "card declined")

        with pytest.raises(TransactionStateError):
            services.purchases.complete_purchase(tx.id, "ch_late")
        assert services.engine.get_balance("buyer") == Decimal("0")


class TestFailPurchase:
    """Test purchase failure."""

    def test_fail_records_reason(self, services):
        """Failing stores the reason and leaves the balance alone."""
        tx = services.purchases.create_purchase("buyer", "10", "100")

        failed = services.purchases.fail_purchase(tx.id, "card declined")

        assert failed.status == TransactionStatus.FAILED
        assert failed.failure_reason == "card declined"
        assert services.engine.get_balance("buyer") == Decimal("0")

    def test_fail_twice_is_noop(self, services):
        """Repeated failure keeps the first reason."""
        tx = services.purchases.create_purchase("buyer", "10", "100")
        services.purchases.fail_purchase(tx.id, "first")

        again = services.purchases.fail_purchase(tx.id, "second")

        assert again.failure_reason == "first"

    def test_fail_completed_rejected(self, services):
        """A completed purchase cannot be failed."""
        tx = services.purchases.create_purchase("buyer", "10", "100")
        services.purchases.complete_purchase(tx.id, "ch_1")

        with pytest.raises(TransactionStateError):
            services.purchases.fail_purchase(tx.id, "chargeback")


class TestBonusAndListing:
    """Test bonuses, transaction listing and pricing."""

    def test_award_bonus(self, services):
        """Bonuses are completed 'bonus' transactions."""
        record = services.purchases.award_bonus("buyer", "5", "Loyalty", performed_by="admin-1")

        assert record.transaction_type == TransactionType.BONUS
        assert record.metadata["performed_by"] == "admin-1"
        assert services.engine.get_balance("buyer") == Decimal("5.0000")

    def test_balance_invariant_with_bonus_and_usage(self, services):
        """balance == purchased + bonus - used after mixed activity."""
        tx = services.purchases.create_purchase("buyer", "10", "100")
        services.purchases.complete_purchase(tx.id, "ch_1")
        services.purchases.award_bonus("buyer", "5", "Loyalty")
        services.engine.deduct("buyer", "42.5", "usage")

        balance = BalanceRepository(services.db).get("buyer")
        assert balance.balance == Decimal("62.5000")
        assert balance.balance == balance.total_purchased + balance.total_bonus - balance.total_used

    def test_list_transactions(self, services):
        """Transactions are listed newest first."""
        first = services.purchases.create_purchase("buyer", "10", "100")
        services.purchases.award_bonus("buyer", "1", "bonus")

        listed = services.purchases.list_transactions("buyer")

        assert len(listed) == 2
        assert first.id in {t.id for t in listed}

    def test_list_limit_bounds(self, services):
        """limit must be within 1..200."""
        with pytest.raises(InvalidAmount):
            services.purchases.list_transactions("buyer", limit=0)
        with pytest.raises(InvalidAmount):
            services.purchases.list_transactions("buyer", limit=201)

    def test_pricing_packages_within_bonus_cap(self, services):
        """Every offered package passes purchase validation."""
        pricing = services.purchases.get_credit_pricing()

        for package in pricing["packages"]:
            services.purchases.create_purchase(
                "buyer", package["amount_usd"], package["total_credits"]
            )
