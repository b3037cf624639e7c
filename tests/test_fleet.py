"""
Tests for Fleet Billing

Covers the daily charge gate, deactivation on insufficient credits and
failure isolation between entities.
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from structlog.testing import capture_logs

from billing.fleet import FleetBillingScheduler
from core.errors import FleetBillingError, StorageUnavailable
from persistence.repository import DailyChargeRepository


def today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


@pytest.fixture
def charges(services):
    return DailyChargeRepository(services.db)


def add_store(entities, fund, store_id, owner, balance, published=True):
    entities.create_account(owner)
    fund(owner, balance)
    entities.create_store(store_id, f"Store {store_id}", owner, published=published)


class TestStoreBilling:
    """Test daily store charges."""

    def test_mixed_balances(self, services, entities, fund, charges):
        """Balances [2.00, 0.00, 1.00] at 1.00/day -> 2 charged, 1 failed."""
        add_store(entities, fund, "s1", "owner-1", "2.00")
        add_store(entities, fund, "s2", "owner-2", "0")
        add_store(entities, fund, "s3", "owner-3", "1.00")

        summary = services.fleet.run_billing_cycle()
        stores = summary["stores"]

        assert stores["processed"] == 3
        assert stores["successful"] == 2
        assert stores["failed"] == 1
        assert stores["deactivated"] == 1
        assert charges.get("s1", today()) is not None
        assert charges.get("s3", today()) is not None
        assert charges.get("s2", today()) is None

        assert services.engine.get_balance("owner-1") == Decimal("1.0000")
        assert services.engine.get_balance("owner-3") == Decimal("0")
        assert entities.get_store("s2").active is False
        assert "Insufficient credits" in entities.get_store("s2").deactivation_reason

    def test_charge_row_finalized(self, services, entities, fund, charges):
        """The uptime row carries balances before/after and the usage id."""
        add_store(entities, fund, "s1", "owner-1", "3")

        services.fleet.run_billing_cycle()
        row = charges.get("s1", today())

        assert row.credits_charged == Decimal("1.0000")
        assert row.balance_before == Decimal("3.0000")
        assert row.balance_after == Decimal("2.0000")
        usage = services.engine.usage.get(row.usage_id)
        assert usage.reference_type == "store_publishing"
        assert usage.entity_id == "s1"

    def test_rerun_same_day_charges_nothing(self, services, entities, fund, charges):
        """A second run on the same day skips every entity."""
        add_store(entities, fund, "s1", "owner-1", "5")
        add_store(entities, fund, "s2", "owner-2", "5")
        services.fleet.run_billing_cycle()

        summary = services.fleet.run_billing_cycle()

        assert summary["stores"]["skipped"] == 2
        assert summary["stores"]["successful"] == 0
        assert services.engine.get_balance("owner-1") == Decimal("4.0000")
        assert services.engine.get_balance("owner-2") == Decimal("4.0000")
        assert charges.count_for_entity("s1") == 1
        assert len(services.engine.usage.list_by_account("owner-1")) == 1

    def test_next_day_charges_again(self, services, entities, fund, charges):
        """The gate is per day."""
        add_store(entities, fund, "s1", "owner-1", "5")

        services.fleet.run_billing_cycle(date(2026, 3, 1))
        services.fleet.run_billing_cycle(date(2026, 3, 2))

        assert charges.count_for_entity("s1") == 2
        assert services.engine.get_balance("owner-1") == Decimal("3.0000")

    def test_unpublished_store_ignored(self, services, entities, fund):
        """Only published stores are billed."""
        add_store(entities, fund, "s1", "owner-1", "5", published=False)

        summary = services.fleet.run_billing_cycle()

        assert summary["stores"]["processed"] == 0


class TestDomainBilling:
    """Test daily custom domain charges."""

    def test_domain_deactivated_on_low_balance(self, services, entities, fund):
        """Balance 0.30 against 0.50/day -> domain deactivated."""
        add_store(entities, fund, "s1", "owner-1", "0.30", published=False)
        entities.create_domain("d1", "shop.example.com", "s1")

        with pytest.raises(FleetBillingError) as exc:
            services.fleet.run_billing_cycle()
        domains = exc.value.summary["domains"]

        assert domains["failed"] == 1
        assert domains["details"][0]["domain_deactivated"] is True
        assert entities.get_domain("d1").active is False
        assert services.engine.get_balance("owner-1") == Decimal("0.3000")

    def test_domain_charged_to_store_owner(self, services, entities, fund):
        """Domains bill the owner of their store."""
        add_store(entities, fund, "s1", "owner-1", "2", published=False)
        entities.create_domain("d1", "shop.example.com", "s1")

        summary = services.fleet.run_billing_cycle()

        assert summary["domains"]["successful"] == 1
        assert services.engine.get_balance("owner-1") == Decimal("1.5000")

    def test_unverified_domain_ignored(self, services, entities, fund):
        """Pending verification domains are not billable."""
        add_store(entities, fund, "s1", "owner-1", "2", published=False)
        entities.create_domain("d1", "shop.example.com", "s1", verification_status="pending")

        summary = services.fleet.run_billing_cycle()

        assert summary["domains"]["processed"] == 0


class TestIsolation:
    """Test that one entity's failure does not stop the rest."""

    def test_missing_owner_recorded(self, services, entities, fund):
        """An entity without a resolvable owner is an error, others proceed."""
        entities.create_store("orphan", "Orphan", "ghost-account")
        add_store(entities, fund, "s1", "owner-1", "5")

        summary = services.fleet.run_billing_cycle()
        stores = summary["stores"]

        assert stores["successful"] == 1
        assert stores["failed"] == 1
        assert stores["errors"][0]["store_id"] == "orphan"
        assert stores["errors"][0]["code"] == "ENTITY_NOT_FOUND"

    def test_insufficient_owner_does_not_block_other(self, services, entities, fund):
        """Entity A's empty account does not affect entity B."""
        add_store(entities, fund, "a", "owner-a", "0")
        add_store(entities, fund, "b", "owner-b", "1")

        summary = services.fleet.run_billing_cycle()

        assert summary["stores"]["successful"] == 1
        assert services.engine.get_balance("owner-b") == Decimal("0")

    def test_zero_success_raises(self, services, entities, fund):
        """A non-empty fleet with no charges raises FleetBillingError with the summary."""
        add_store(entities, fund, "a", "owner-a", "0")

        with pytest.raises(FleetBillingError) as exc:
            services.fleet.run_billing_cycle()
        assert exc.value.summary["stores"]["deactivated"] == 1

    def test_empty_fleet_does_not_raise(self, services):
        """No billable entities is a normal, empty run."""
        summary = services.fleet.run_billing_cycle()

        assert summary["stores"]["processed"] == 0
        assert summary["domains"]["processed"] == 0

    def test_storage_failure_aborts(self, services, entities, fund, monkeypatch):
        """StorageUnavailable is not per-entity attrition."""
        add_store(entities, fund, "s1", "owner-1", "5")

        def unavailable(*args, **kwargs):
            raise StorageUnavailable("database is locked")

        monkeypatch.setattr(services.engine, "deduct", unavailable)

        with pytest.raises(StorageUnavailable):
            services.fleet.run_billing_cycle()

    def test_failure_inside_charge_transaction_leaves_nothing(self, services, entities, fund, charges, monkeypatch):
        """An error after the debit undoes the day row and the debit; a rerun charges cleanly."""
        owners = {"s1": "owner-1", "s2": "owner-2"}
        for store_id, owner in owners.items():
            add_store(entities, fund, store_id, owner, "5")

        original = services.fleet.charges.finalize
        calls = []

        def finalize_once(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise RuntimeError("disk full")
            return original(*args, **kwargs)

        monkeypatch.setattr(services.fleet.charges, "finalize", finalize_once)

        summary = services.fleet.run_billing_cycle()
        stores = summary["stores"]

        assert stores["successful"] == 1
        assert stores["failed"] == 1
        failed_id = stores["errors"][0]["store_id"]
        charged_id = "s2" if failed_id == "s1" else "s1"

        assert charges.get(failed_id, today()) is None
        assert services.engine.get_balance(owners[failed_id]) == Decimal("5.0000")
        assert services.engine.usage.list_by_account(owners[failed_id]) == []
        assert charges.get(charged_id, today()) is not None
        assert services.engine.get_balance(owners[charged_id]) == Decimal("4.0000")

        rerun = services.fleet.run_billing_cycle()

        assert rerun["stores"]["successful"] == 1
        assert rerun["stores"]["skipped"] == 1
        assert charges.count_for_entity(failed_id) == 1
        assert services.engine.get_balance(owners[failed_id]) == Decimal("4.0000")
        assert services.engine.get_balance(owners[charged_id]) == Decimal("4.0000")

    def test_rolled_back_charge_not_logged_as_deducted(self, services, entities, fund, monkeypatch):
        """A deduction undone by the fleet transaction never reports usage_deducted."""
        add_store(entities, fund, "s1", "owner-1", "5")

        def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(services.fleet.charges, "finalize", broken)

        with capture_logs() as logs:
            with pytest.raises(FleetBillingError):
                services.fleet.run_billing_cycle()

        assert [e for e in logs if e["event"] == "usage_deducted"] == []
        assert any(e["event"] == "fleet_entity_failed" for e in logs)


class TestRates:
    """Test rate lookup for the billing cycle."""

    def test_fallback_rate_when_service_inactive(self, services, entities, fund):
        """An inactive catalog entry falls back to the configured default."""
        services.catalog.toggle_active("store_daily_publishing")
        add_store(entities, fund, "s1", "owner-1", "5")

        summary = services.fleet.run_billing_cycle()

        assert summary["stores"]["details"][0]["credits_charged"] == 1.0
        assert services.engine.get_balance("owner-1") == Decimal("4.0000")

    def test_catalog_rate_used(self, services, entities, fund):
        """A catalog change applies to the next run."""
        services.catalog.update_cost("store_daily_publishing", "0.25")
        add_store(entities, fund, "s1", "owner-1", "1")

        services.fleet.run_billing_cycle()

        assert services.engine.get_balance("owner-1") == Decimal("0.7500")

    def test_injected_clock_sets_billing_day(self, services, entities, fund):
        """The billing day comes from the scheduler clock."""
        add_store(entities, fund, "s1", "owner-1", "1")
        scheduler = FleetBillingScheduler(
            services.db,
            services.engine,
            services.directory,
            services.config,
            clock=lambda: datetime(2026, 1, 15, 23, 59, tzinfo=timezone.utc),
        )

        summary = scheduler.run_billing_cycle()

        assert summary["charged_date"] == "2026-01-15"
