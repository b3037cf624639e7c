"""
Credit Ledger - API Module

FastAPI server for balances, deductions, purchases, the rate catalog,
reporting and fleet billing.
"""

from .server import app, create_app, AppState

__all__ = ["app", "create_app", "AppState"]
