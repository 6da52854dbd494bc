"""
Quota Ledger - API Module

FastAPI server exposing balances, consumption, grants, payments and the
Stripe webhook.
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
