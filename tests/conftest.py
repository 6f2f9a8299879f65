"""
Pytest configuration and shared fixtures.

Provides the database fixture for integration tests (skipped without
DATABASE_URL) and factories for rules, transactions and line items.
"""

from datetime import date
from decimal import Decimal

import pytest
import os
from dotenv import load_dotenv

from db.database import init_connection_pool, close_connection_pool, health_check
from models.royalty import CalculationLineItem, RoyaltyRule, SalesTransaction


@pytest.fixture(scope="module")
def db_connection():
    """
    Initialize database connection pool for tests.

    This fixture:
    - Loads environment variables from .env file
    - Checks for DATABASE_URL
    - Initializes the connection pool
    - Verifies database connectivity
    - Cleans up connection pool after tests complete

    Scope is 'module' to share connection pool across all tests in a module.
    """
    load_dotenv()

    if not os.getenv("DATABASE_URL"):
        pytest.skip("DATABASE_URL not set - skipping database tests")

    init_connection_pool(min_connections=1, max_connections=5)

    if not health_check():
        pytest.skip("Database health check failed - skipping tests")

    yield

    close_connection_pool()


@pytest.fixture
def make_rule():
    """Factory for RoyaltyRule snapshots with sensible defaults."""
    def _make(**overrides):
        data = {
            "id": 1,
            "contract_id": 7,
            "rule_type": "percentage",
            "rule_name": "Standard Royalty",
            "priority": 10,
            "base_rate": Decimal("5"),
        }
        data.update(overrides)
        return RoyaltyRule.model_validate(data)
    return _make


@pytest.fixture
def make_txn():
    """Factory for SalesTransaction records."""
    def _make(**overrides):
        data = {
            "id": 1,
            "transaction_date": date(2024, 2, 15),
            "product_name": "Cascade Pale Ale",
            "category": "Beer",
            "territory": "US",
            "vendor": "Northwind Brewing",
            "quantity": Decimal("100"),
            "gross_amount": Decimal("1000.00"),
        }
        data.update(overrides)
        return SalesTransaction.model_validate(data)
    return _make


@pytest.fixture
def make_line_item():
    """Factory for CalculationLineItem results."""
    def _make(**overrides):
        data = {
            "calculation_id": 42,
            "sales_id": 1,
            "transaction_date": date(2024, 2, 15),
            "quantity": Decimal("100"),
            "gross_amount": Decimal("1000.00"),
            "calculated_fee": Decimal("50.00"),
            "rule_name": "Standard Royalty",
            "rule_type": "percentage",
            "status": "matched",
            "vendor_name": "Northwind Brewing",
            "item_name": "Cascade Pale Ale",
            "item_class": "Beer",
            "territory": "US",
            "period": "2024-02",
        }
        data.update(overrides)
        return CalculationLineItem.model_validate(data)
    return _make
