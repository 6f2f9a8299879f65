"""
Tests for the calculation and blueprint API endpoints.

Engine and approval service are mocked; these tests cover request
validation, status-code mapping and response formats.
"""

import pytest
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient

from main import app
from models.royalty import AggregationReport, AggregationRow, CalculationRun, RunStatus
from services.royalty.blueprint_materializer import MaterializationSummary
from services.royalty.errors import (
    CalculationNotFoundError,
    CalculationRunError,
    InvalidStatusTransitionError,
)


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def pending_run():
    return CalculationRun(
        id=42,
        contract_id=7,
        period_start=date(2024, 1, 1),
        period_end=date(2024, 3, 31),
        status=RunStatus.PENDING_APPROVAL,
        total_sales_amount=Decimal("65000.00"),
        calculated_fee=Decimal("7899.85"),
        total_fee=Decimal("7899.85"),
        sales_count=1,
        matched_count=1,
    )


@pytest.fixture
def territory_report():
    return AggregationReport(
        calculation_id=42,
        dimension_key="territory",
        rows=[AggregationRow(dimension_value="US", transaction_count=1, total_fee=Decimal("7899.85"))],
        totals=AggregationRow(dimension_value="Total", transaction_count=1, total_fee=Decimal("7899.85")),
    )


# Service endpoints

def test_root(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["status"] == "running"


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "healthy",
        "service": "royalty-calculation-backend",
        "version": "1.0.0",
    }


# Calculation runs

@patch("api.calculations.RoyaltyCalculationEngine")
def test_run_calculation(mock_engine_cls, client, pending_run):
    mock_engine_cls.return_value.run_calculation.return_value = pending_run

    response = client.post("/api/calculations/run", json={
        "contract_id": 7, "period_start": "2024-01-01", "period_end": "2024-03-31",
    })

    assert response.status_code == 200
    data = response.json()
    assert data["id"] == 42
    assert data["status"] == "pending_approval"
    assert Decimal(str(data["total_fee"])) == Decimal("7899.85")
    assert "line_items" not in data
    mock_engine_cls.return_value.run_calculation.assert_called_once_with(
        contract_id=7, period_start=date(2024, 1, 1), period_end=date(2024, 3, 31), dry_run=False
    )


@patch("api.calculations.RoyaltyCalculationEngine")
def test_run_calculation_rejects_inverted_period(mock_engine_cls, client):
    response = client.post("/api/calculations/run", json={
        "contract_id": 7, "period_start": "2024-03-31", "period_end": "2024-01-01",
    })

    assert response.status_code == 400
    mock_engine_cls.return_value.run_calculation.assert_not_called()


@patch("api.calculations.RoyaltyCalculationEngine")
def test_run_calculation_persist_failure_is_500(mock_engine_cls, client):
    mock_engine_cls.return_value.run_calculation.side_effect = CalculationRunError(
        "Failed to persist calculation run: connection lost"
    )

    response = client.post("/api/calculations/run", json={
        "contract_id": 7, "period_start": "2024-01-01", "period_end": "2024-03-31",
    })

    assert response.status_code == 500
    assert "connection lost" in response.json()["detail"]


def test_run_calculation_validates_body(client):
    response = client.post("/api/calculations/run", json={"contract_id": 7})

    assert response.status_code == 422


@patch("api.calculations.RoyaltyCalculationEngine")
def test_get_calculation_not_found(mock_engine_cls, client):
    mock_engine_cls.return_value.get_calculation.side_effect = CalculationNotFoundError(
        "Calculation 404 not found"
    )

    response = client.get("/api/calculations/404")

    assert response.status_code == 404
    assert response.json()["detail"] == "Calculation 404 not found"


def test_dimensions_lists_groupable_keys(client):
    response = client.get("/api/calculations/dimensions")

    assert response.status_code == 200
    keys = {d["dimension_key"]: d["is_groupable"] for d in response.json()}
    assert keys["territory"] is True
    assert keys["summary"] is False


# Aggregation

@patch("api.calculations.RoyaltyCalculationEngine")
def test_aggregate_json(mock_engine_cls, client, territory_report):
    mock_engine_cls.return_value.get_aggregate.return_value = territory_report

    response = client.get("/api/calculations/42/aggregate", params={"dimension": "territory"})

    assert response.status_code == 200
    data = response.json()
    assert data["dimension_key"] == "territory"
    assert data["rows"][0]["dimension_value"] == "US"
    mock_engine_cls.return_value.get_aggregate.assert_called_once_with(42, "territory")


@patch("api.calculations.RoyaltyCalculationEngine")
def test_aggregate_csv(mock_engine_cls, client, territory_report):
    engine = mock_engine_cls.return_value
    engine.get_aggregate.return_value = territory_report
    engine.reporter.to_csv.return_value = "territory,total_fee\nUS,7899.85\nTotal,7899.85\n"

    response = client.get(
        "/api/calculations/42/aggregate", params={"dimension": "territory", "format": "csv"}
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert "calculation_42_territory.csv" in response.headers["content-disposition"]
    assert response.text.startswith("territory,total_fee")


@patch("api.calculations.RoyaltyCalculationEngine")
def test_aggregate_invalid_dimension_is_400(mock_engine_cls, client):
    mock_engine_cls.return_value.get_aggregate.side_effect = ValueError("Invalid dimension key: 'a-b'")

    response = client.get("/api/calculations/42/aggregate", params={"dimension": "a-b"})

    assert response.status_code == 400


# Approval workflow

@patch("api.calculations.CalculationApprovalService")
def test_approve(mock_service_cls, client, pending_run):
    approved = pending_run.model_copy(update={"status": RunStatus.APPROVED, "approved_by": "finance-lead"})
    mock_service_cls.return_value.approve.return_value = approved

    response = client.post("/api/calculations/42/approve", json={"approver_id": "finance-lead"})

    assert response.status_code == 200
    assert response.json()["status"] == "approved"
    mock_service_cls.return_value.approve.assert_called_once_with(42, "finance-lead")


@patch("api.calculations.CalculationApprovalService")
def test_approve_twice_is_conflict(mock_service_cls, client):
    mock_service_cls.return_value.approve.side_effect = InvalidStatusTransitionError(42, "approved", "approved")

    response = client.post("/api/calculations/42/approve", json={"approver_id": "finance-lead"})

    assert response.status_code == 409


def test_reject_requires_reason(client):
    response = client.post("/api/calculations/42/reject", json={"approver_id": "finance-lead", "reason": ""})

    assert response.status_code == 422


@patch("api.calculations.CalculationApprovalService")
def test_reject(mock_service_cls, client, pending_run):
    rejected = pending_run.model_copy(update={
        "status": RunStatus.REJECTED, "rejection_reason": "Wrong territory mapping",
    })
    mock_service_cls.return_value.reject.return_value = rejected

    response = client.post("/api/calculations/42/reject", json={
        "approver_id": "finance-lead", "reason": "Wrong territory mapping",
    })

    assert response.status_code == 200
    assert response.json()["rejection_reason"] == "Wrong territory mapping"


@patch("api.calculations.CalculationApprovalService")
def test_mark_paid_from_pending_is_conflict(mock_service_cls, client):
    mock_service_cls.return_value.mark_paid.side_effect = InvalidStatusTransitionError(
        42, "pending_approval", "paid"
    )

    response = client.post("/api/calculations/42/paid", json={})

    assert response.status_code == 409


# Blueprints

@patch("api.blueprints.RoyaltyCalculationEngine")
def test_materialize_blueprints(mock_engine_cls, client):
    mock_engine_cls.return_value.materialize_blueprints.return_value = MaterializationSummary(
        contract_id=7, blueprints_created=2, fully_mapped=1, partially_mapped=1
    )

    response = client.post("/api/blueprints/contracts/7/materialize")

    assert response.status_code == 200
    assert response.json()["blueprints_created"] == 2


@patch("api.blueprints.RoyaltyCalculationEngine")
def test_get_blueprints(mock_engine_cls, client):
    mock_engine_cls.return_value.get_blueprints.return_value = []

    response = client.get("/api/blueprints/contracts/7")

    assert response.status_code == 200
    assert response.json() == []
