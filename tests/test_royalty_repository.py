"""
Tests for repository failure handling without a database.
"""

import pytest
from datetime import date
from unittest.mock import patch

from db.erp_mapping_repository import ErpMappingRepository
from db.royalty_repository import RoyaltyRepository


def connection_refused(*args, **kwargs):
    raise ConnectionError("connection refused")


@pytest.mark.parametrize("call", [
    lambda repo: repo.get_contract(7),
    lambda repo: repo.get_active_rules(7),
    lambda repo: repo.get_sales_transactions(7, date(2024, 1, 1), date(2024, 3, 31)),
    lambda repo: repo.get_confirmed_mappings(7),
    lambda repo: repo.get_prior_period_totals(7, 2024, date(2024, 10, 1)),
    lambda repo: repo.get_calculation(42),
    lambda repo: repo.get_line_items(42),
])
@patch("db.royalty_repository.get_db_connection", side_effect=connection_refused)
def test_fee_inputs_raise_on_database_error(mock_connection, call):
    with pytest.raises(ConnectionError, match="connection refused"):
        call(RoyaltyRepository())


@patch("db.royalty_repository.get_db_connection", side_effect=connection_refused)
def test_optional_reads_degrade_to_empty(mock_connection):
    repository = RoyaltyRepository()

    assert repository.get_calculation_approach(3) is None
    assert repository.get_latest_blueprints(7) == []


@patch("db.erp_mapping_repository.get_db_connection", side_effect=connection_refused)
def test_erp_rule_sets_raise_on_database_error(mock_connection):
    with pytest.raises(ConnectionError):
        ErpMappingRepository().get_active_rule_sets(7, date(2024, 3, 31))
