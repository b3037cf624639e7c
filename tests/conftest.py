"""
Pytest Configuration and Fixtures
"""

import os
import sys
from decimal import Decimal

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["API_KEY"] = "test-key-12345"
os.environ.pop("STRIPE_API_KEY", None)
os.environ.pop("STRIPE_WEBHOOK_SECRET", None)

from core.config import LedgerConfig  # noqa: E402
from persistence.database import Database  # noqa: E402
from persistence.repository import EntityRepository  # noqa: E402

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def db_url(tmp_path):
    """URL of a temporary SQLite database file."""
    return f"sqlite:///{tmp_path / 'ledger.db'}"


@pytest.fixture
def db(db_url):
    """Initialized temporary database."""
    database = Database(db_url)
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def config(db_url):
    """Ledger configuration pointing at the temporary database."""
    return LedgerConfig(
        database_url=db_url,
        api_key="test-key-12345",
        stripe_webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture
def services(config):
    """Fully wired ledger components with the default rate catalog."""
    from api.server import AppState

    state = AppState(config)
    yield state
    state.close()


@pytest.fixture
def entities(services):
    """Entity repository over the wired database."""
    return EntityRepository(services.db)


@pytest.fixture
def fund(services):
    """Give an account a starting balance through the purchase path."""
    def _fund(account_id: str, amount: str) -> None:
        if Decimal(amount) > 0:
            services.engine.award(account_id, amount, "test funding", category="purchase")
        else:
            services.engine.get_balance(account_id)
    return _fund
